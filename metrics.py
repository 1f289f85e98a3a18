"""Prometheus metrics for the question detection service."""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response
import time
from functools import wraps
from logger import logger

utterances_finalized = Counter(
    'utterances_finalized_total',
    'Utterances finalized by the utterance buffer',
    ['reason']
)

candidates_emitted = Counter(
    'question_candidates_total',
    'Question candidates emitted by the detection pipeline',
    ['strategy']
)

strategy_failures = Counter(
    'strategy_failures_total',
    'Strategy calls that contributed nothing because of a failure',
    ['strategy', 'error_type']
)

merge_discarded = Counter(
    'merge_discarded_total',
    'Candidates discarded by the candidate merger',
    ['policy']
)

strategy_latency = Histogram(
    'strategy_latency_seconds',
    'Time spent inside a strategy detect call',
    ['strategy']
)

active_sessions = Gauge(
    'active_sessions',
    'Number of detection sessions not yet closed'
)

evaluation_runs = Counter(
    'evaluation_runs_total',
    'Evaluation replays performed',
    ['strategy']
)

evaluation_duration = Histogram(
    'evaluation_duration_seconds',
    'Wall time of a full evaluation replay'
)


def track_time(metric_histogram):
    """Decorator to track execution time."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
                return result
            finally:
                duration = time.time() - start_time
                metric_histogram.observe(duration)
                logger.debug(f"{func.__name__} took {duration:.3f}s", extra={
                    'function': func.__name__,
                    'duration': duration
                })
        return wrapper
    return decorator


async def get_metrics():
    """Generate Prometheus metrics."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
