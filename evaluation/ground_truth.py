"""Ground truth question extraction from a complete session transcript."""

import uuid
from typing import Protocol

from detection.errors import BackendError, ExtractionFailure, MalformedResponse
from detection.semantic import parse_json_payload
from logger import log_error, log_info
from models import GroundTruthExtraction, GroundTruthQuestion

SYSTEM_PROMPT = """You are a question extraction system. Your task is to identify ALL questions in a transcript.

For each question found, provide:
- text: The exact question text as it appears (or slightly cleaned up for clarity)
- confidence: How confident you are this is a genuine question (0.0 to 1.0)
- position: Approximate character position in the transcript where the question appears

Question types to detect:
- Direct questions with question marks
- Implied questions ("I wonder if...", "Do you know...")
- Interview questions ("Tell me about...", "Can you explain...")

DO NOT include:
- Incomplete sentence fragments
- Statements that don't seek information
- Filler phrases

Be thorough - extract EVERY question, even if they seem similar.
Questions from all speakers should be included.

Respond with JSON: {"questions": [...]}
If no questions found: {"questions": []}
"""


class GroundTruthBackend(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        ...


def parse_ground_truth(raw: str, full_transcript: str, session_id: str = "") -> list[GroundTruthQuestion]:
    """
    Parse an extraction answer into ground truth questions.

    Items may be plain strings or objects with text and position. Missing
    positions are recovered by searching the transcript; the result is
    ordered by position with unknown positions last.

    Raises:
        MalformedResponse: If the answer has no question list
    """
    payload = parse_json_payload(raw)
    items = payload.get("questions") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise MalformedResponse("Response has no 'questions' list", raw=raw)

    lowered = full_transcript.lower()
    questions = []
    for item in items:
        if isinstance(item, str):
            text, position = item, None
        elif isinstance(item, dict):
            text, position = item.get("text"), item.get("position")
        else:
            raise MalformedResponse(f"Question entry is not a string or object: {item!r}", raw=raw)

        if not isinstance(text, str) or not text.strip():
            continue
        text = text.strip()

        if not isinstance(position, int) or position < 0:
            position = lowered.find(text.lower())
        questions.append(GroundTruthQuestion(session_id=session_id, text=text, approx_position=position))

    return order_ground_truth(questions)


def order_ground_truth(questions: list[GroundTruthQuestion]) -> list[GroundTruthQuestion]:
    """Sort into transcript order; unknown positions keep their relative order at the end."""
    known = sorted((q for q in questions if q.approx_position >= 0), key=lambda q: q.approx_position)
    unknown = [q for q in questions if q.approx_position < 0]
    return known + unknown


class GroundTruthExtractor:
    """
    Reads an entire transcript once and lists every question in it.

    Extractions are not stable across runs or model versions, so each call
    is tagged with its own run id and evaluation is relative to that run.
    """

    def __init__(self, backend: GroundTruthBackend, model: str = ""):
        self.backend = backend
        self.model = model or getattr(backend, "model_name", "")

    async def extract(self, full_transcript: str, session_id: str = "") -> list[GroundTruthQuestion]:
        """Extract the ground truth question list for a session."""
        run = await self.extract_run(full_transcript, session_id)
        return run.questions

    async def extract_run(self, full_transcript: str, session_id: str = "") -> GroundTruthExtraction:
        """
        Extract ground truth along with the raw model answer.

        Raises:
            ExtractionFailure: If the backend fails or answers unparseably
        """
        run_id = str(uuid.uuid4())
        if not full_transcript or not full_transcript.strip():
            return GroundTruthExtraction(run_id=run_id, session_id=session_id, model=self.model)

        user_prompt = f"Extract all questions from this transcript:\n\n{full_transcript}"
        try:
            raw = await self.backend.complete(SYSTEM_PROMPT, user_prompt)
            questions = parse_ground_truth(raw, full_transcript, session_id)
        except MalformedResponse as e:
            log_error("Ground truth answer could not be parsed", session_id=session_id,
                      run_id=run_id, raw_payload=e.raw)
            raise ExtractionFailure(f"Ground truth extraction failed: {e}") from e
        except BackendError as e:
            log_error("Ground truth backend failed", session_id=session_id, run_id=run_id)
            raise ExtractionFailure(f"Ground truth extraction failed: {e}") from e

        log_info("Ground truth extracted", session_id=session_id, run_id=run_id, questions=len(questions))
        return GroundTruthExtraction(
            run_id=run_id,
            session_id=session_id,
            questions=questions,
            raw_response=raw,
            model=self.model,
        )
