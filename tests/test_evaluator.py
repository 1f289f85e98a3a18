"""Tests for the Evaluator, matching and reporting."""

import asyncio
import random
import string

import pytest

from detection.base import DetectionStrategy, locate_span, make_candidate
from detection.question_detector import PatternStrategy
from evaluation.evaluator import Evaluator, match_candidates
from evaluation.report import MetricsAggregator, format_report
from models import GroundTruthQuestion, Metrics, QuestionCandidate, TranscriptEvent

SESSION = [
    "Thanks for joining today.",
    "Can you walk me through your current role?",
    "Sounds interesting.",
    "What was the hardest bug you fixed last year?",
    "Right.",
    "How do you decide when to refactor?",
]

GROUND_TRUTH = [
    "Can you walk me through your current role?",
    "What was the hardest bug you fixed last year?",
    "How do you decide when to refactor?",
]


def session_events(session_id="s1"):
    return [
        TranscriptEvent(session_id=session_id, sequence_number=i + 1, text=text, is_final=True,
                        timestamp_ms=i * 2000)
        for i, text in enumerate(SESSION)
    ]


def ground_truth(texts=GROUND_TRUTH, session_id="s1"):
    return [GroundTruthQuestion(session_id=session_id, text=t, approx_position=i) for i, t in enumerate(texts)]


class StubSemanticStrategy(DetectionStrategy):
    """Returns exactly the known questions found in each utterance."""

    name = "semantic"

    def __init__(self, questions, confidence=0.85):
        self.questions = questions
        self.confidence = confidence

    async def detect(self, utterance):
        started = asyncio.get_running_loop().time()
        await asyncio.sleep(0.01)
        for question in self.questions:
            span = locate_span(utterance.text, question)
            if span:
                yield make_candidate(utterance, self.name, span, self.confidence, started,
                                     clock=asyncio.get_running_loop().time)


def random_text(rng, words=6):
    return " ".join("".join(rng.choice(string.ascii_lowercase) for _ in range(8)) for _ in range(words)) + "?"


def candidate(text, index):
    return QuestionCandidate(
        utterance_id=f"s1-utt-{index:04d}",
        strategy_name="pattern",
        text=text,
        span=(0, len(text)),
        confidence=0.5,
        emitted_at_ms=index,
        detection_latency_ms=1.0,
    )


class TestMatchCandidates:

    def test_greedy_prefers_best_candidate(self):
        """Test that ground truth claims its most similar candidate."""
        gt = ground_truth(["How do you decide when to refactor?"])
        weak = candidate("How do you decide when to eat?", 1)
        strong = candidate("How do you decide when to refactor", 2)

        rows = match_candidates([weak, strong], gt, threshold=0.7)

        assert [r.outcome for r in rows] == ["tp", "fp"]
        assert rows[0].candidate is strong
        assert rows[1].candidate is weak

    def test_candidate_claims_at_most_one_ground_truth(self):
        """Test that one candidate never matches two ground truth items."""
        gt = ground_truth(["Why did you leave?", "Why did you leave?"])
        rows = match_candidates([candidate("Why did you leave?", 1)], gt, threshold=0.7)

        assert sorted(r.outcome for r in rows) == ["fn", "tp"]

    def test_pronoun_resolved_candidate_matches(self):
        """Test matching when the candidate spells out a pronoun."""
        gt = ground_truth(["How did you migrate it?"])
        rows = match_candidates([candidate("How did you migrate the billing database?", 1)], gt, threshold=0.7)
        assert rows[0].is_match

    def test_thirty_nine_questions_one_hundred_five_spans(self):
        """Test metrics for 39 known questions and 105 detected spans."""
        rng = random.Random(7)
        gt_texts = [random_text(rng) for _ in range(39)]
        matching = [candidate(text, i) for i, text in enumerate(gt_texts[:29])]
        noise = [candidate(random_text(rng), 100 + i) for i in range(76)]

        rows = match_candidates(matching + noise, ground_truth(gt_texts), threshold=0.7)
        metrics = Metrics.from_matches(rows)

        assert metrics.detected == 105
        assert metrics.true_positive == 29
        assert metrics.false_positive == 76
        assert metrics.false_negative == 10
        assert metrics.precision == pytest.approx(0.28, abs=0.005)
        assert metrics.recall == pytest.approx(0.74, abs=0.005)


class TestEvaluator:
    """Test suite for Evaluator."""

    @pytest.mark.asyncio
    async def test_exact_semantic_detection_scores_perfectly(self):
        """Test that detecting exactly the known questions scores 1.0."""
        metrics = await Evaluator(match_threshold=0.7).evaluate(
            session_events(), ground_truth(), StubSemanticStrategy(GROUND_TRUTH)
        )

        assert metrics == Metrics(detected=3, true_positive=3, false_positive=0, false_negative=0,
                                  precision=1.0, recall=1.0, f1=1.0)

    @pytest.mark.asyncio
    async def test_evaluation_is_deterministic(self):
        """Test that repeated runs give identical metrics."""
        evaluator = Evaluator(match_threshold=0.7)
        runs = [
            await evaluator.evaluate(session_events(), ground_truth(), PatternStrategy(min_confidence=0.4))
            for _ in range(3)
        ]
        assert runs[0] == runs[1] == runs[2]

    @pytest.mark.asyncio
    async def test_run_reports_matches_and_latency(self):
        """Test the full evaluation result of a run."""
        result = await Evaluator(match_threshold=0.7).run(
            session_events(), ground_truth(), PatternStrategy(min_confidence=0.4)
        )

        assert result.session_id == "s1"
        assert result.strategy_name == "pattern"
        assert result.metrics.true_positive == 3
        assert len(result.matches) == result.metrics.detected + result.metrics.false_negative
        assert result.average_latency_ms >= 0.0

    @pytest.mark.asyncio
    async def test_empty_ground_truth(self):
        """Test that every detection is a false positive without ground truth."""
        metrics = await Evaluator().evaluate(session_events(), [], PatternStrategy(min_confidence=0.4))

        assert metrics.false_negative == 0
        assert metrics.recall == 0.0
        assert metrics.false_positive == metrics.detected

    @pytest.mark.asyncio
    async def test_compare_strategies_on_same_events(self):
        """Test side-by-side comparison of strategies."""
        aggregator = MetricsAggregator()
        evaluator = Evaluator(match_threshold=0.7, aggregator=aggregator)

        comparison = await evaluator.compare(
            session_events(), ground_truth(),
            [StubSemanticStrategy(GROUND_TRUTH[:1]), PatternStrategy(min_confidence=0.4)],
        )

        assert [r.strategy_name for r in comparison.results] == ["semantic", "pattern"]
        assert comparison.best_by_recall.strategy_name == "pattern"
        assert comparison.best_by_precision.metrics.precision == 1.0
        assert aggregator.strategies == ["semantic", "pattern"]
        assert len(aggregator.rows) == 2


class TestReport:

    def test_totals_are_micro_averaged(self):
        """Test that totals sum counts before computing ratios."""
        aggregator = MetricsAggregator()
        aggregator.add("s1", "pattern", Metrics.from_counts(3, 7, 1), 4)
        aggregator.add("s2", "pattern", Metrics.from_counts(1, 1, 3), 4)

        totals = aggregator.totals("pattern")

        assert (totals.true_positive, totals.false_positive, totals.false_negative) == (4, 8, 4)
        assert totals.precision == pytest.approx(4 / 12)
        assert totals.recall == pytest.approx(0.5)

    def test_format_report(self):
        """Test the report table layout."""
        aggregator = MetricsAggregator()
        aggregator.add("s1", "semantic", Metrics.from_counts(3, 0, 0), 3)
        aggregator.add("s1", "intent", Metrics.from_counts(0, 0, 3), 3)

        report = format_report(aggregator.rows, aggregator)
        lines = report.splitlines()

        assert lines[0].split()[:3] == ["Session", "Strategy", "GT"]
        assert "100.0%" in lines[2]
        assert lines[-1].startswith("TOTAL")
        assert len(lines) == 2 + 2 + 2

    def test_independent_aggregators(self):
        """Test that aggregators do not share state."""
        first, second = MetricsAggregator(), MetricsAggregator()
        first.add("s1", "pattern", Metrics.from_counts(1, 0, 0), 1)
        assert second.rows == []
