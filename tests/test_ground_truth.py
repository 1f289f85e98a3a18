"""Tests for GroundTruthExtractor."""

import json

import pytest

from detection.errors import BackendUnavailable, ExtractionFailure
from evaluation.ground_truth import SYSTEM_PROMPT, GroundTruthExtractor, parse_ground_truth

TRANSCRIPT = ("Thanks for coming. Tell me about yourself. Nice. "
              "Why do you want this job? And what are your salary expectations?")


class StubBackend:
    model_name = "stub-model"

    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.prompts = []

    async def complete(self, system_prompt, user_prompt):
        self.prompts.append((system_prompt, user_prompt))
        if self.error:
            raise self.error
        return self.answer


class TestParseGroundTruth:

    def test_objects_with_positions(self):
        """Test parsing items with text and position."""
        raw = json.dumps({"questions": [
            {"text": "Why do you want this job?", "confidence": 0.95, "position": 50},
            {"text": "Tell me about yourself.", "confidence": 0.9, "position": 19},
        ]})
        questions = parse_ground_truth(raw, TRANSCRIPT, "s1")

        assert [q.text for q in questions] == ["Tell me about yourself.", "Why do you want this job?"]
        assert all(q.session_id == "s1" for q in questions)

    def test_plain_strings_are_located(self):
        """Test that plain strings are located in the transcript."""
        raw = json.dumps({"questions": ["what are your salary expectations?", "Tell me about yourself."]})
        questions = parse_ground_truth(raw, TRANSCRIPT)

        assert questions[0].text == "Tell me about yourself."
        assert questions[0].approx_position == TRANSCRIPT.index("Tell me")
        assert questions[1].approx_position == TRANSCRIPT.index("what are")

    def test_unlocatable_questions_go_last(self):
        """Test that questions not found in the transcript sort last."""
        raw = json.dumps({"questions": ["Where did you study?", "Why do you want this job?"]})
        questions = parse_ground_truth(raw, TRANSCRIPT)

        assert [q.text for q in questions] == ["Why do you want this job?", "Where did you study?"]
        assert questions[1].approx_position == -1


class TestGroundTruthExtractor:
    """Test suite for GroundTruthExtractor."""

    @pytest.mark.asyncio
    async def test_extract(self):
        """Test extraction over the full transcript."""
        backend = StubBackend(json.dumps({"questions": ["Why do you want this job?"]}))
        questions = await GroundTruthExtractor(backend).extract(TRANSCRIPT, session_id="s1")

        assert [q.text for q in questions] == ["Why do you want this job?"]
        system_prompt, user_prompt = backend.prompts[0]
        assert system_prompt == SYSTEM_PROMPT
        assert TRANSCRIPT in user_prompt

    @pytest.mark.asyncio
    async def test_each_run_is_tagged(self):
        """Test that every run gets its own id and model."""
        backend = StubBackend(json.dumps({"questions": []}))
        extractor = GroundTruthExtractor(backend)

        first = await extractor.extract_run(TRANSCRIPT, "s1")
        second = await extractor.extract_run(TRANSCRIPT, "s1")

        assert first.run_id != second.run_id
        assert first.model == "stub-model"
        assert first.raw_response == json.dumps({"questions": []})

    @pytest.mark.asyncio
    async def test_empty_transcript_skips_backend(self):
        """Test that an empty transcript needs no backend call."""
        backend = StubBackend()
        run = await GroundTruthExtractor(backend).extract_run("   ", "s1")

        assert run.questions == []
        assert backend.prompts == []

    @pytest.mark.asyncio
    async def test_backend_failure_is_fatal_to_run(self):
        """Test that a backend failure aborts extraction."""
        extractor = GroundTruthExtractor(StubBackend(error=BackendUnavailable("down")))
        with pytest.raises(ExtractionFailure):
            await extractor.extract(TRANSCRIPT)

    @pytest.mark.asyncio
    async def test_malformed_answer_is_fatal_to_run(self):
        """Test that a malformed answer aborts extraction."""
        extractor = GroundTruthExtractor(StubBackend("Sure! Here are the questions:"))
        with pytest.raises(ExtractionFailure):
            await extractor.extract(TRANSCRIPT)
