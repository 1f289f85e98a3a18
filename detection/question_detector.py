"""Pattern-based question detection."""

import re
import time
from typing import Iterator

from config import config
from detection.base import DetectionStrategy, make_candidate

WH_WORDS = ["what", "why", "how", "when", "where", "who", "which", "whose"]
AUX_VERBS = [
    "is", "are", "was", "were", "do", "does", "did", "can", "could", "would",
    "should", "have", "has", "will", "shall", "may", "might",
]
REQUEST_PHRASES = ["tell me", "explain", "describe", "walk me through"]

QUESTION_MARKERS = WH_WORDS + AUX_VERBS + REQUEST_PHRASES

_SENTENCE = re.compile(r"[^.?!]+[.?!]*")
_CLAUSE_BREAK = re.compile(r"[,;:]\s*|(?:^|\s+)(?:and|but|so|or)\s+", re.IGNORECASE)
_WORD = re.compile(r"\w")

_WH_START = re.compile(r"^(?:%s)\b" % "|".join(WH_WORDS))
_AUX_START = re.compile(r"^(?:%s)\b" % "|".join(AUX_VERBS))
_REQUEST_START = re.compile(r"^(?:%s)\b" % "|".join(re.escape(p) for p in REQUEST_PHRASES))
_KNOW = re.compile(r"\b(?:do you know|can you tell me|could you|can you|would you|what's|what is)\b")
_COMPARE = re.compile(r"\b(?:difference between|compare|compared to|versus|vs)\b")


class PatternStrategy(DetectionStrategy):
    """
    Flags clauses that open with an interrogative lead word or end in '?'.

    Cheap and synchronous, tuned for recall rather than precision. Scores
    are rule-derived: the same text always yields the same spans and
    confidences.
    """

    name = "pattern"

    def __init__(self, markers: list[str] = None, min_confidence: float = None,
                 clock=time.monotonic):
        """
        Initialize detector.

        Args:
            markers: Lead words/phrases that open a question clause
            min_confidence: Minimum rule score to emit a candidate
            clock: Monotonic clock used for latency measurement
        """
        self.markers = markers or QUESTION_MARKERS
        self.min_confidence = min_confidence if min_confidence is not None else config.pattern_min_confidence
        self._lead = re.compile(
            r"^(?:%s)\b" % "|".join(re.escape(m) for m in sorted(self.markers, key=len, reverse=True)),
            re.IGNORECASE,
        )
        self._clock = clock

    def scan(self, text: str) -> Iterator[tuple[tuple[int, int], float]]:
        """
        Find question spans in text.

        Args:
            text: Utterance text

        Yields:
            ((start, end), confidence) per flagged sentence
        """
        for match in _SENTENCE.finditer(text):
            raw = match.group()
            start = match.start() + (len(raw) - len(raw.lstrip()))
            end = match.end() - (len(raw) - len(raw.rstrip()))
            sentence = text[start:end]
            if not _WORD.search(sentence):
                continue

            asks = sentence.endswith("?")
            clause_start = self._lead_clause_start(sentence)
            if clause_start is None and not asks:
                continue

            offset = clause_start or 0
            score = self._score(sentence[offset:].lower(), asks)
            if score < self.min_confidence:
                continue
            yield (start + offset, end), round(min(score, 1.0), 2)

    def is_question(self, text: str) -> bool:
        """Check if text contains at least one question span."""
        return any(True for _ in self.scan(text or ""))

    async def detect(self, utterance):
        started = self._clock()
        for span, confidence in self.scan(utterance.text):
            yield make_candidate(utterance, self.name, span, confidence, started, self._clock)

    def _lead_clause_start(self, sentence: str):
        starts = [0] + [m.end() for m in _CLAUSE_BREAK.finditer(sentence)]
        for position in starts:
            if self._lead.match(sentence[position:]):
                return position
        return None

    @staticmethod
    def _score(clause: str, asks: bool) -> float:
        score = 0.0
        if asks:
            score += 0.5
        if _WH_START.match(clause):
            score += 0.4
        if _AUX_START.match(clause):
            score += 0.3
        if _REQUEST_START.match(clause):
            score += 0.4
        if _KNOW.search(clause):
            score += 0.3
        if _COMPARE.search(clause):
            score += 0.5
        return score
