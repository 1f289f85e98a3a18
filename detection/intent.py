"""External intent-classification strategy."""

from dataclasses import dataclass
import time
from typing import Callable, Optional, Protocol

from config import config
from detection.base import DetectionStrategy, make_candidate, record_failure
from detection.errors import BackendError, MalformedResponse
from logger import log_debug

# Label fragments that indicate the speaker is asking for something
QUESTION_LABEL_MARKERS = (
    "ask", "question", "inquire", "wonder", "explain", "describe", "tell",
    "find out", "learn", "understand", "know", "clarif", "seek",
)


@dataclass(frozen=True)
class IntentLabel:
    """Top intent reported by a classifier."""
    label: str
    confidence: float


class IntentBackend(Protocol):
    """Intent classifier returning the top label for a text."""

    async def classify(self, text: str) -> Optional[IntentLabel]:
        ...


def question_like_label(label: str) -> bool:
    """Check whether an intent label reads as a question or request."""
    lowered = label.lower()
    return any(marker in lowered for marker in QUESTION_LABEL_MARKERS)


class ExternalIntentStrategy(DetectionStrategy):
    """
    Emits the whole utterance when a classifier's top intent is question-like.

    The strategy abstains when confidence is below the threshold or the
    label is rejected by the question-like rule.
    """

    name = "intent"

    def __init__(
        self,
        backend: IntentBackend,
        is_question_like: Callable[[str], bool] = question_like_label,
        min_confidence: float = None,
        timeout: float = None,
        clock=time.monotonic,
    ):
        self.backend = backend
        self.is_question_like = is_question_like
        self.min_confidence = min_confidence if min_confidence is not None else config.intent_min_confidence
        self.timeout = timeout
        self._clock = clock

    async def detect(self, utterance):
        if not utterance.text.strip():
            return

        started = self._clock()
        try:
            intent = await self.backend.classify(utterance.text)
        except MalformedResponse as e:
            record_failure(self.name, e, utterance_id=utterance.id, raw_payload=e.raw)
            return
        except BackendError as e:
            record_failure(self.name, e, utterance_id=utterance.id)
            return

        if intent is None:
            return
        if intent.confidence < self.min_confidence or not self.is_question_like(intent.label):
            log_debug("Intent strategy abstained", utterance_id=utterance.id,
                      intent_label=intent.label, confidence=intent.confidence)
            return

        yield make_candidate(utterance, self.name, (0, len(utterance.text)), intent.confidence,
                             started, self._clock)
