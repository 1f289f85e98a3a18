"""Offline scoring of detection strategies against ground truth."""

from dataclasses import dataclass, field
from typing import Optional

from config import config
from detection.base import DetectionStrategy
from detection.pipeline import DetectionPipeline
from detection.similarity import match_similarity
from evaluation.ground_truth import order_ground_truth
from evaluation.latency import LatencyStats
from evaluation.report import MetricsAggregator
from logger import log_info
from metrics import evaluation_duration, evaluation_runs, track_time
from models import GroundTruthQuestion, MatchResult, Metrics, QuestionCandidate, TranscriptEvent


def match_candidates(
    candidates: list[QuestionCandidate],
    ground_truth: list[GroundTruthQuestion],
    threshold: float,
) -> list[MatchResult]:
    """
    Greedy bipartite matching of candidates to ground truth.

    Ground truth is visited in transcript order; each item claims the
    unclaimed candidate with the highest similarity at or above the
    threshold. Earlier candidates win ties.

    Returns:
        Matched pairs, then unmatched ground truth, then unmatched candidates
    """
    claimed = set()
    matched = []
    missed = []

    for gt in order_ground_truth(ground_truth):
        best_index, best_score = None, 0.0
        for index, candidate in enumerate(candidates):
            if index in claimed:
                continue
            score = match_similarity(gt.text, candidate.text)
            if score >= threshold and (best_index is None or score > best_score):
                best_index, best_score = index, score

        if best_index is None:
            missed.append(MatchResult(candidate=None, ground_truth=gt, is_match=False))
        else:
            claimed.add(best_index)
            matched.append(MatchResult(candidate=candidates[best_index], ground_truth=gt,
                                       is_match=True, similarity=best_score))

    false_alarms = [
        MatchResult(candidate=candidate, ground_truth=None, is_match=False)
        for index, candidate in enumerate(candidates) if index not in claimed
    ]
    return matched + missed + false_alarms


@dataclass
class EvaluationResult:
    session_id: str
    strategy_name: str
    candidates: list[QuestionCandidate]
    matches: list[MatchResult]
    metrics: Metrics
    latency: LatencyStats = field(default_factory=LatencyStats)

    @property
    def average_latency_ms(self) -> float:
        return self.latency.average_ms

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'session_id': self.session_id,
            'strategy_name': self.strategy_name,
            'metrics': self.metrics.to_dict(),
            'average_latency_ms': self.average_latency_ms,
            'latency': self.latency.to_dict(),
            'candidates': [c.to_dict() for c in self.candidates],
            'matches': [
                {
                    'outcome': m.outcome,
                    'candidate': m.candidate.text if m.candidate else None,
                    'ground_truth': m.ground_truth.text if m.ground_truth else None,
                    'similarity': m.similarity,
                }
                for m in self.matches
            ],
        }


@dataclass
class StrategyComparison:
    """Results of several strategies on the same events and ground truth."""
    results: list[EvaluationResult] = field(default_factory=list)

    def _best(self, key) -> Optional[EvaluationResult]:
        if not self.results:
            return None
        return max(self.results, key=key)

    @property
    def best_by_f1(self) -> Optional[EvaluationResult]:
        return self._best(lambda r: r.metrics.f1)

    @property
    def best_by_precision(self) -> Optional[EvaluationResult]:
        return self._best(lambda r: r.metrics.precision)

    @property
    def best_by_recall(self) -> Optional[EvaluationResult]:
        return self._best(lambda r: r.metrics.recall)


class Evaluator:
    """Replays recorded sessions through a pipeline and scores the output."""

    def __init__(self, match_threshold: float = None, strategy_timeout: float = None,
                 aggregator: MetricsAggregator = None):
        """
        Initialize evaluator.

        Args:
            match_threshold: Minimum text similarity for a candidate to claim a ground truth item
            strategy_timeout: Per-call strategy timeout in seconds during replay
            aggregator: Optional accumulator receiving every run's metrics
        """
        self.match_threshold = match_threshold if match_threshold is not None else config.match_threshold
        self.strategy_timeout = strategy_timeout
        self.aggregator = aggregator

    @track_time(evaluation_duration)
    async def run(
        self,
        events: list[TranscriptEvent],
        ground_truth: list[GroundTruthQuestion],
        strategy: DetectionStrategy,
        session_id: str = None,
    ) -> EvaluationResult:
        """
        Replay events through a single-strategy pipeline and score it.

        Args:
            events: Recorded events of one session
            ground_truth: Ground truth of one extraction run
            strategy: Strategy variant under test
            session_id: Overrides the session id taken from the events

        Returns:
            Candidates, match rows and metrics
        """
        session_id = session_id or (events[0].session_id if events else "")
        pipeline = DetectionPipeline(session_id, strategy, strategy_timeout=self.strategy_timeout)
        emitted = await pipeline.process(events)
        candidates = self._in_transcript_order(emitted, pipeline)

        matches = match_candidates(candidates, ground_truth, self.match_threshold)
        metrics = Metrics.from_matches(matches)
        latency = LatencyStats.from_latencies(c.detection_latency_ms for c in candidates)

        evaluation_runs.labels(strategy=strategy.name).inc()
        if self.aggregator is not None:
            self.aggregator.add(session_id, strategy.name, metrics, len(ground_truth))

        log_info("Evaluation complete", session_id=session_id, strategy=strategy.name,
                 **metrics.to_dict())
        return EvaluationResult(
            session_id=session_id,
            strategy_name=strategy.name,
            candidates=candidates,
            matches=matches,
            metrics=metrics,
            latency=latency,
        )

    async def evaluate(
        self,
        events: list[TranscriptEvent],
        ground_truth: list[GroundTruthQuestion],
        strategy: DetectionStrategy,
    ) -> Metrics:
        result = await self.run(events, ground_truth, strategy)
        return result.metrics

    async def compare(
        self,
        events: list[TranscriptEvent],
        ground_truth: list[GroundTruthQuestion],
        strategies: list[DetectionStrategy],
    ) -> StrategyComparison:
        """Run every strategy on the same replayed events and ground truth."""
        comparison = StrategyComparison()
        for strategy in strategies:
            comparison.results.append(await self.run(events, ground_truth, strategy))
        return comparison

    @staticmethod
    def _in_transcript_order(candidates: list[QuestionCandidate], pipeline: DetectionPipeline):
        # Completion order of concurrent calls is not part of the result
        position = {utterance.id: index for index, utterance in enumerate(pipeline.utterances)}
        return sorted(candidates, key=lambda c: (position.get(c.utterance_id, len(position)), c.span,
                                                 c.strategy_name))
