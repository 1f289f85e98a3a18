"""Tests for SemanticStrategy and its response parsing."""

import asyncio
import json

import pytest
from prometheus_client import REGISTRY

from detection.base import collect_candidates
from detection.errors import BackendTimeout, BackendUnavailable, MalformedResponse
from detection.semantic import SYSTEM_PROMPT, SemanticStrategy, parse_json_payload, parse_question_spans
from models import Utterance


class StubBackend:
    """Semantic backend answering with a canned payload."""

    def __init__(self, answer=None, error=None, delay=0.0):
        self.answer = answer
        self.error = error
        self.delay = delay
        self.calls = []

    async def complete(self, system_prompt, user_prompt):
        self.calls.append((system_prompt, user_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.answer


def utterance(text):
    return Utterance(id="s1-utt-0001", session_id="s1", text=text, start_ms=0, end_ms=500)


def answer(*questions):
    return json.dumps({"questions": list(questions)})


class TestParsing:
    """Test suite for semantic response parsing."""

    def test_parse_question_spans(self):
        """Test parsing model output."""
        raw = answer({"text": "Why Python?", "span": [0, 11], "confidence": 0.9})
        assert parse_question_spans(raw) == [{"text": "Why Python?", "span": (0, 11), "confidence": 0.9}]

    def test_code_fence_is_tolerated(self):
        """Test that code fences are stripped."""
        raw = "```json\n" + answer({"text": "Why?", "confidence": 0.8}) + "\n```"
        assert parse_question_spans(raw)[0]["span"] is None

    def test_invalid_json(self):
        """Test that invalid JSON raises MalformedResponse."""
        with pytest.raises(MalformedResponse) as exc:
            parse_json_payload("not json at all")
        assert exc.value.raw == "not json at all"

    def test_missing_questions_list(self):
        """Test that a missing questions list raises MalformedResponse."""
        with pytest.raises(MalformedResponse):
            parse_question_spans(json.dumps({"answer": 42}))

    def test_invalid_confidence(self):
        """Test that a non-numeric confidence raises MalformedResponse."""
        with pytest.raises(MalformedResponse):
            parse_question_spans(answer({"text": "Why?", "confidence": "very"}))

    @pytest.mark.parametrize("raw", [
        '{"questions": [{"text": "Why?", "confidence": NaN}]}',
        '{"questions": [{"text": "Why?", "confidence": Infinity}]}',
    ])
    def test_non_finite_confidence(self, raw):
        """Test that NaN and infinite confidences raise MalformedResponse."""
        with pytest.raises(MalformedResponse):
            parse_question_spans(raw)


class TestSemanticStrategy:
    """Test suite for SemanticStrategy."""

    @pytest.mark.asyncio
    async def test_emits_reported_spans(self):
        """Test that reported spans are used."""
        text = "Thanks for joining. What drew you to this role? Where do you see yourself?"
        backend = StubBackend(answer(
            {"text": "What drew you to this role?", "span": [20, 47], "confidence": 0.95},
            {"text": "Where do you see yourself?", "confidence": 0.85},
        ))
        strategy = SemanticStrategy(backend, min_confidence=0.7)

        candidates = await collect_candidates(strategy, utterance(text))

        assert [c.text for c in candidates] == ["What drew you to this role?", "Where do you see yourself?"]
        assert candidates[0].span == (20, 47)
        assert text[candidates[1].span[0]:candidates[1].span[1]] == "Where do you see yourself?"
        assert all(c.strategy_name == "semantic" for c in candidates)
        assert backend.calls[0][0] == SYSTEM_PROMPT
        assert text in backend.calls[0][1]

    @pytest.mark.asyncio
    async def test_low_confidence_dropped(self):
        """Test that low confidence items are dropped."""
        backend = StubBackend(answer({"text": "Isn't that great?", "confidence": 0.3}))
        strategy = SemanticStrategy(backend, min_confidence=0.7)
        assert await collect_candidates(strategy, utterance("Isn't that great?")) == []

    @pytest.mark.asyncio
    async def test_unlocatable_text_spans_whole_utterance(self):
        """Test the fallback span for unlocatable text."""
        text = "um so the scaling thing how would you do that"
        backend = StubBackend(answer({"text": "How would you approach scaling?", "confidence": 0.9}))
        candidates = await collect_candidates(SemanticStrategy(backend, min_confidence=0.7), utterance(text))

        assert candidates[0].span == (0, len(text))
        assert candidates[0].text == "How would you approach scaling?"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        BackendUnavailable("connection refused"),
        BackendTimeout("deadline exceeded"),
    ])
    async def test_backend_failure_yields_nothing(self, error):
        """Test that a backend failure yields nothing."""
        strategy = SemanticStrategy(StubBackend(error=error), min_confidence=0.7)
        assert await collect_candidates(strategy, utterance("Why?")) == []

    @pytest.mark.asyncio
    async def test_malformed_answer_yields_nothing(self):
        """Test that a malformed answer yields nothing."""
        strategy = SemanticStrategy(StubBackend("{broken"), min_confidence=0.7)
        assert await collect_candidates(strategy, utterance("Why?")) == []

    @pytest.mark.asyncio
    async def test_nan_confidence_counts_as_malformed(self):
        """Test that a NaN confidence is recorded as a malformed answer."""
        def failures(error_type):
            return REGISTRY.get_sample_value(
                "strategy_failures_total", {"strategy": "semantic", "error_type": error_type}) or 0.0

        malformed, unexpected = failures("MalformedResponse"), failures("unexpected")
        strategy = SemanticStrategy(StubBackend('{"questions": [{"text": "Why?", "confidence": NaN}]}'),
                                    min_confidence=0.7)

        assert await collect_candidates(strategy, utterance("Why?")) == []
        assert failures("MalformedResponse") == malformed + 1
        assert failures("unexpected") == unexpected

    @pytest.mark.asyncio
    async def test_caller_timeout_yields_nothing(self):
        """Test that a caller timeout yields nothing."""
        backend = StubBackend(answer({"text": "Why?", "confidence": 0.9}), delay=1.0)
        strategy = SemanticStrategy(backend, min_confidence=0.7)
        assert await collect_candidates(strategy, utterance("Why?"), timeout=0.05) == []

    @pytest.mark.asyncio
    async def test_empty_utterance_skips_backend(self):
        """Test that an empty utterance needs no backend call."""
        backend = StubBackend(answer())
        assert await collect_candidates(SemanticStrategy(backend), utterance("   ")) == []
        assert backend.calls == []
