"""Semantic (LLM-backed) question detection."""

import json
import math
import re
import time
from typing import Optional, Protocol

from config import config
from detection.base import DetectionStrategy, locate_span, make_candidate, record_failure
from detection.errors import BackendError, MalformedResponse
from logger import log_debug

SYSTEM_PROMPT = """You are a question detection system analyzing a live interview transcript.
Identify every span of the given text that is a genuine question directed at the listener,
including implied questions such as "Tell me about..." or "I'd like to hear how...".

Do NOT flag:
- Rhetorical questions the speaker answers themselves
- Filler phrases, false starts and incomplete fragments
- Statements that merely mention a question

For each question provide:
- text: the question exactly as it appears in the transcript
- span: [start, end] character offsets of the question within the transcript
- confidence: 0.0 to 1.0, how sure you are that this is a genuine question

Respond with JSON: {"questions": [...]}
If there are no questions, respond with: {"questions": []}
"""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class SemanticBackend(Protocol):
    """Text-completion service answering with a JSON document."""

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        ...


def parse_json_payload(raw: str):
    """Decode a model's JSON answer, tolerating a markdown code fence."""
    if raw is None:
        raise MalformedResponse("Empty response", raw="")
    cleaned = _CODE_FENCE.sub("", raw.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Response is not valid JSON: {e}", raw=raw) from e


def parse_question_spans(raw: str) -> list[dict]:
    """
    Parse a semantic backend answer.

    Args:
        raw: JSON text of the form {"questions": [{"text", "span", "confidence"}]}

    Returns:
        List of dicts with keys text, span (tuple or None), confidence

    Raises:
        MalformedResponse: If the structure cannot be interpreted
    """
    payload = parse_json_payload(raw)
    items = payload.get("questions") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise MalformedResponse("Response has no 'questions' list", raw=raw)

    parsed = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedResponse(f"Question entry is not an object: {item!r}", raw=raw)
        text = item.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        try:
            confidence = float(item.get("confidence", 0.0))
        except (TypeError, ValueError) as e:
            raise MalformedResponse(f"Invalid confidence: {item.get('confidence')!r}", raw=raw) from e
        if not math.isfinite(confidence):
            raise MalformedResponse(f"Invalid confidence: {confidence!r}", raw=raw)

        span = item.get("span")
        if isinstance(span, (list, tuple)) and len(span) == 2 and all(isinstance(v, int) for v in span):
            span = (span[0], span[1])
        else:
            span = None
        parsed.append({"text": text.strip(), "span": span, "confidence": confidence})
    return parsed


def resolve_span(utterance_text: str, text: str, span: Optional[tuple[int, int]]) -> tuple[int, int]:
    """Use the reported span when it is valid, else locate the text, else the whole utterance."""
    if span is not None and 0 <= span[0] < span[1] <= len(utterance_text):
        return span
    located = locate_span(utterance_text, text)
    if located is not None:
        return located
    return 0, len(utterance_text)


def build_user_prompt(text: str) -> str:
    return f"Transcript to analyze:\n{text}"


class SemanticStrategy(DetectionStrategy):
    """Asks a text-understanding backend which spans are questions."""

    name = "semantic"

    def __init__(self, backend: SemanticBackend, min_confidence: float = None,
                 timeout: float = None, clock=time.monotonic):
        self.backend = backend
        self.min_confidence = min_confidence if min_confidence is not None else config.semantic_min_confidence
        self.timeout = timeout
        self._clock = clock

    async def detect(self, utterance):
        if not utterance.text.strip():
            return

        started = self._clock()
        try:
            raw = await self.backend.complete(SYSTEM_PROMPT, build_user_prompt(utterance.text))
            items = parse_question_spans(raw)
        except MalformedResponse as e:
            record_failure(self.name, e, utterance_id=utterance.id, raw_payload=e.raw)
            return
        except BackendError as e:
            record_failure(self.name, e, utterance_id=utterance.id)
            return

        for item in items:
            if item["confidence"] < self.min_confidence:
                log_debug("Semantic candidate below threshold", utterance_id=utterance.id,
                          confidence=item["confidence"])
                continue
            span = resolve_span(utterance.text, item["text"], item["span"])
            yield make_candidate(utterance, self.name, span, item["confidence"], started,
                                 self._clock, text=item["text"])
