"""Confidence threshold tuning and confidence breakdown of evaluation runs."""

from dataclasses import dataclass
from typing import Optional

from config import config
from evaluation.evaluator import EvaluationResult, match_candidates
from logger import log_info
from models import Metrics


@dataclass(frozen=True)
class ThresholdResult:
    """Metrics when only candidates at or above a confidence threshold are kept."""
    threshold: float
    metrics: Metrics


@dataclass
class ThresholdSweep:
    results: list[ThresholdResult]
    current_threshold: float

    def _best(self, key) -> ThresholdResult:
        # max keeps the first of equals, i.e. the lowest threshold
        return max(self.results, key=key)

    @property
    def best_by_f1(self) -> ThresholdResult:
        return self._best(lambda r: r.metrics.f1)

    @property
    def best_by_precision(self) -> ThresholdResult:
        return self._best(lambda r: r.metrics.precision)

    @property
    def best_by_recall(self) -> ThresholdResult:
        return self._best(lambda r: r.metrics.recall)

    @property
    def balanced(self) -> ThresholdResult:
        """Best F1 among thresholds with at least 50% precision."""
        precise = [r for r in self.results if r.metrics.precision >= 0.5]
        if not precise:
            return self.best_by_f1
        return max(precise, key=lambda r: r.metrics.f1)

    def at(self, threshold: float) -> Optional[ThresholdResult]:
        for result in self.results:
            if abs(result.threshold - threshold) < 0.01:
                return result
        return None

    def recommendations(self) -> list[str]:
        """Human readable advice on moving the current threshold."""
        current = self.at(self.current_threshold)
        if current is None:
            return [f"Current threshold {self.current_threshold:.2f} was not in the tested range."]

        advice = []
        optimal = self.best_by_f1
        if abs(current.metrics.f1 - optimal.metrics.f1) < 0.01:
            advice.append("Current threshold is already optimal for F1 score.")
        elif optimal.metrics.f1 > current.metrics.f1:
            gain = (optimal.metrics.f1 - current.metrics.f1) * 100
            advice.append(f"Changing threshold from {self.current_threshold:.2f} to {optimal.threshold:.2f} "
                          f"could improve F1 by {gain:.1f}%.")

        if current.metrics.precision < 0.5:
            precise = [r for r in self.results if r.metrics.precision >= 0.6]
            if precise:
                pick = max(precise, key=lambda r: r.metrics.f1)
                advice.append(f"For better precision (60%+), consider threshold {pick.threshold:.2f} "
                              f"(Precision: {pick.metrics.precision:.0%}, Recall: {pick.metrics.recall:.0%}).")

        if current.metrics.recall < 0.7:
            sensitive = [r for r in self.results if r.metrics.recall >= 0.8]
            if sensitive:
                pick = max(sensitive, key=lambda r: r.metrics.precision)
                advice.append(f"For better recall (80%+), consider threshold {pick.threshold:.2f} "
                              f"(Recall: {pick.metrics.recall:.0%}, Precision: {pick.metrics.precision:.0%}).")
        return advice


def threshold_grid(minimum: float = 0.3, maximum: float = 0.95, step: float = 0.05) -> list[float]:
    """Evenly spaced thresholds, both ends included."""
    if step <= 0 or minimum > maximum:
        raise ValueError(f"Invalid threshold grid {minimum}..{maximum} step {step}")
    count = int(round((maximum - minimum) / step)) + 1
    return [round(minimum + index * step, 2) for index in range(count)]


class ThresholdTuner:
    """
    Sweeps the candidate confidence threshold over finished evaluation runs.

    Candidates below each threshold are dropped and the rest are matched
    again against the same ground truth, so no strategy is called twice.
    """

    def __init__(self, minimum: float = 0.3, maximum: float = 0.95, step: float = 0.05,
                 match_threshold: float = None):
        self.thresholds = threshold_grid(minimum, maximum, step)
        self.match_threshold = match_threshold if match_threshold is not None else config.match_threshold

    def _metrics_at(self, results: list[EvaluationResult], threshold: float) -> Metrics:
        tp = fp = fn = 0
        for result in results:
            ground_truth = [row.ground_truth for row in result.matches if row.ground_truth is not None]
            kept = [c for c in result.candidates if c.confidence >= threshold]
            metrics = Metrics.from_matches(match_candidates(kept, ground_truth, self.match_threshold))
            tp += metrics.true_positive
            fp += metrics.false_positive
            fn += metrics.false_negative
        return Metrics.from_counts(tp, fp, fn)

    def tune(self, results: list[EvaluationResult], current_threshold: float = 0.7) -> ThresholdSweep:
        """
        Evaluate every threshold of the grid.

        Args:
            results: Runs of one strategy, over one or more sessions
            current_threshold: Threshold in use, for recommendations

        Returns:
            Metrics per threshold
        """
        sweep = ThresholdSweep(
            results=[ThresholdResult(t, self._metrics_at(results, t)) for t in self.thresholds],
            current_threshold=current_threshold,
        )
        best = sweep.best_by_f1
        log_info("Threshold sweep complete", thresholds=len(sweep.results), best_threshold=best.threshold,
                 f1=best.metrics.f1)
        return sweep


@dataclass(frozen=True)
class ConfidenceBucket:
    lower: float
    upper: float
    true_positive: int
    false_positive: int

    @property
    def total(self) -> int:
        return self.true_positive + self.false_positive

    @property
    def precision(self) -> float:
        return self.true_positive / self.total if self.total else 0.0


def confidence_buckets(results: list[EvaluationResult], width: float = 0.1) -> list[ConfidenceBucket]:
    """Where true and false positives fall by confidence; 1.0 lands in the top bucket."""
    if not 0 < width <= 1:
        raise ValueError(f"Bucket width must be within (0, 1], got {width}")
    count = max(int(round(1 / width)), 1)
    tp = [0] * count
    fp = [0] * count
    for result in results:
        for row in result.matches:
            if row.candidate is None:
                continue
            index = min(int(round(row.candidate.confidence / width, 6)), count - 1)
            if row.is_match:
                tp[index] += 1
            else:
                fp[index] += 1
    return [
        ConfidenceBucket(round(i * width, 2), round(min((i + 1) * width, 1.0), 2), tp[i], fp[i])
        for i in range(count)
    ]
