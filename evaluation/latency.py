"""Detection latency statistics."""

import math
import statistics
from dataclasses import dataclass, asdict
from typing import Iterable


def percentile(sorted_values: list[float], pct: float) -> float:
    """Linearly interpolated percentile of already sorted values."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return sorted_values[0]

    index = pct / 100 * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = min(math.ceil(index), len(sorted_values) - 1)
    fraction = index - lower
    return sorted_values[lower] * (1 - fraction) + sorted_values[upper] * fraction


@dataclass(frozen=True)
class LatencyStats:
    """Distribution of detection latencies, in milliseconds."""
    count: int = 0
    min_ms: float = 0.0
    max_ms: float = 0.0
    average_ms: float = 0.0
    median_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    stdev_ms: float = 0.0

    @classmethod
    def from_latencies(cls, latencies: Iterable[float]) -> 'LatencyStats':
        values = sorted(latencies)
        if not values:
            return cls()
        return cls(
            count=len(values),
            min_ms=values[0],
            max_ms=values[-1],
            average_ms=sum(values) / len(values),
            median_ms=percentile(values, 50),
            p95_ms=percentile(values, 95),
            p99_ms=percentile(values, 99),
            stdev_ms=statistics.stdev(values) if len(values) > 1 else 0.0,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


def latency_by_strategy(results) -> dict[str, LatencyStats]:
    """
    Latency statistics per strategy over several evaluation runs.

    Args:
        results: Evaluation results; candidates are grouped by the variant under test

    Returns:
        Statistics keyed by strategy name, in first-seen order
    """
    grouped: dict[str, list[float]] = {}
    for result in results:
        grouped.setdefault(result.strategy_name, []).extend(
            candidate.detection_latency_ms for candidate in result.candidates
        )
    return {name: LatencyStats.from_latencies(values) for name, values in grouped.items()}
