"""Tests for MergedStrategy."""

import asyncio

import pytest

from detection.base import DetectionStrategy, collect_candidates, make_candidate, locate_span
from detection.merger import CandidateMerger, MergePolicy
from detection.parallel import MergedStrategy
from detection.question_detector import PatternStrategy
from models import Utterance

TEXT = ("I see you worked at Acme for five years. What made you leave? "
        "I'd love to hear about the migration project you led.")

SLOW_ANSWERS = ["What made you leave?", "I'd love to hear about the migration project you led."]


class SlowStrategy(DetectionStrategy):
    """Semantic-like strategy that answers after a delay."""

    name = "semantic"

    def __init__(self, answers, delay=0.05, error=None):
        self.answers = answers
        self.delay = delay
        self.error = error
        self.calls = 0

    async def detect(self, utterance):
        self.calls += 1
        started = asyncio.get_running_loop().time()
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        for text in self.answers:
            span = locate_span(utterance.text, text)
            yield make_candidate(utterance, self.name, span, 0.9, started,
                                 clock=asyncio.get_running_loop().time)


@pytest.fixture
def utterance():
    return Utterance(id="s1-utt-0001", session_id="s1", text=TEXT, start_ms=0, end_ms=6000)


def merged(policy, slow=None, timeout=None):
    return MergedStrategy(
        [PatternStrategy(min_confidence=0.4), slow or SlowStrategy(SLOW_ANSWERS)],
        merger=CandidateMerger(policy),
        timeout=timeout,
    )


def spans(candidates):
    return [c.span for c in candidates]


class TestMergedStrategy:
    """Test suite for MergedStrategy."""

    def test_requires_two_strategies(self):
        """Test that one inner strategy is not enough."""
        with pytest.raises(ValueError):
            MergedStrategy([PatternStrategy()])

    @pytest.mark.asyncio
    async def test_first_arrival_low_threshold_equals_fast_strategy(self, utterance):
        """Test the degenerate merge where only the fast strategy survives."""
        fast_only = await collect_candidates(PatternStrategy(min_confidence=0.4), utterance)
        strategy = merged(MergePolicy(similarity_threshold=0.0, emission="first_arrival"))

        result = await collect_candidates(strategy, utterance)

        assert len(fast_only) == 1
        assert spans(result) == spans(fast_only)
        assert [c.text for c in result] == ["What made you leave?"]

    @pytest.mark.asyncio
    async def test_wait_for_all_diverges_from_fast_strategy(self, utterance):
        """Test that waiting for all keeps the slow strategy's questions."""
        fast_only = await collect_candidates(PatternStrategy(min_confidence=0.4), utterance)
        strategy = merged(MergePolicy(similarity_threshold=0.6, emission="wait_for_all"))

        result = await collect_candidates(strategy, utterance)

        assert spans(result) != spans(fast_only)
        assert [c.text for c in result] == SLOW_ANSWERS
        assert result[0].sources == ("pattern", "semantic")
        assert result[0].confidence == 0.9
        assert result[1].sources == ("semantic",)

    @pytest.mark.asyncio
    async def test_first_arrival_default_threshold_keeps_distinct_slow_candidate(self, utterance):
        """Test first arrival keeps a distinct late candidate."""
        strategy = merged(MergePolicy(similarity_threshold=0.6, emission="first_arrival"))
        result = await collect_candidates(strategy, utterance)

        assert [c.text for c in result] == SLOW_ANSWERS
        assert [c.strategy_name for c in result] == ["pattern", "semantic"]

    @pytest.mark.asyncio
    async def test_agreement_keeps_only_confirmed_span(self, utterance):
        """Test that agreement keeps the span both strategies found."""
        strategy = merged(MergePolicy(similarity_threshold=0.6, emission="agreement", agreement_key="span"))
        result = await collect_candidates(strategy, utterance)
        assert [c.text for c in result] == ["What made you leave?"]

    @pytest.mark.asyncio
    async def test_agreement_on_utterance_keeps_all(self, utterance):
        """Test utterance agreement keeps every candidate."""
        strategy = merged(MergePolicy(similarity_threshold=0.6, emission="agreement",
                                      agreement_key="utterance"))
        result = await collect_candidates(strategy, utterance)
        assert [c.text for c in result] == SLOW_ANSWERS

    @pytest.mark.asyncio
    async def test_gate_skips_slow_strategy_without_fast_signal(self):
        """Test that the gate skips the slow strategy."""
        slow = SlowStrategy(SLOW_ANSWERS)
        strategy = merged(MergePolicy(gate_on_first=True, emission="wait_for_all"), slow=slow)
        statement = Utterance(id="s1-utt-0002", session_id="s1", text="I'd love to hear more.",
                              start_ms=0, end_ms=100)

        assert await collect_candidates(strategy, statement) == []
        assert slow.calls == 0

    @pytest.mark.asyncio
    async def test_gate_calls_slow_strategy_on_fast_signal(self, utterance):
        """Test that the gate calls the slow strategy after a hit."""
        slow = SlowStrategy(SLOW_ANSWERS)
        strategy = merged(MergePolicy(gate_on_first=True, emission="wait_for_all"), slow=slow)

        result = await collect_candidates(strategy, utterance)

        assert slow.calls == 1
        assert len(result) == 2

    @pytest.mark.asyncio
    async def test_inner_failure_contributes_nothing(self, utterance):
        """Test that a failing inner strategy contributes nothing."""
        slow = SlowStrategy(SLOW_ANSWERS, error=RuntimeError("boom"))
        strategy = merged(MergePolicy(emission="wait_for_all"), slow=slow)

        result = await collect_candidates(strategy, utterance)

        assert [c.text for c in result] == ["What made you leave?"]

    @pytest.mark.asyncio
    async def test_inner_timeout_contributes_nothing(self, utterance):
        """Test that a timed-out inner strategy contributes nothing."""
        slow = SlowStrategy(SLOW_ANSWERS, delay=5.0)
        strategy = merged(MergePolicy(emission="wait_for_all"), slow=slow, timeout=0.05)

        result = await collect_candidates(strategy, utterance)

        assert [c.text for c in result] == ["What made you leave?"]

    @pytest.mark.asyncio
    async def test_merge_is_independent_of_response_order(self, utterance):
        """Test that response order does not change the merge."""
        policy = MergePolicy(similarity_threshold=0.6, emission="wait_for_all")
        fast_first = await collect_candidates(merged(policy, SlowStrategy(SLOW_ANSWERS, delay=0.05)), utterance)
        slow_first = await collect_candidates(
            MergedStrategy([SlowStrategy(SLOW_ANSWERS, delay=0.0), PatternStrategy(min_confidence=0.4)],
                           merger=CandidateMerger(policy)),
            utterance,
        )
        assert spans(fast_first) == spans(slow_first)

    def test_call_budget_leaves_room_to_merge(self):
        """The whole call outlasts the slowest inner call."""
        strategy = merged(MergePolicy(emission="wait_for_all"), timeout=0.2)
        gated = merged(MergePolicy(emission="wait_for_all", gate_on_first=True), timeout=0.2)

        assert strategy.call_budget(None) > 0.2
        assert gated.call_budget(None) > 0.4
