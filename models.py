"""Data models for the application."""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


class CloseReason(str, Enum):
    """Why the utterance buffer finalized an utterance."""
    SILENCE_GAP = "silence_gap"
    TERMINAL_PUNCTUATION = "terminal_punctuation"
    MAX_DURATION = "max_duration"
    MAX_LENGTH = "max_length"
    SESSION_END = "session_end"


@dataclass(frozen=True)
class TranscriptEvent:
    """Single partial or final fragment from the speech recognizer."""
    session_id: str
    sequence_number: int
    text: str
    is_final: bool
    timestamp_ms: int

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'TranscriptEvent':
        """Create from dictionary."""
        return cls(
            session_id=str(data['session_id']),
            sequence_number=int(data['sequence_number']),
            text=data.get('text') or '',
            is_final=bool(data.get('is_final', False)),
            timestamp_ms=int(data['timestamp_ms']),
        )


@dataclass(frozen=True)
class Utterance:
    """Finalized span of transcript text handed to detection strategies."""
    id: str
    session_id: str
    text: str
    start_ms: int
    end_ms: int
    finalized: bool = True
    close_reason: Optional[CloseReason] = None

    def __post_init__(self):
        if self.start_ms > self.end_ms:
            raise ValueError(f"Utterance {self.id} starts after it ends ({self.start_ms} > {self.end_ms})")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        data = asdict(self)
        data['close_reason'] = self.close_reason.value if self.close_reason else None
        return data


@dataclass(frozen=True)
class QuestionCandidate:
    """A strategy's claim that a span of an utterance is a question."""
    utterance_id: str
    strategy_name: str
    text: str
    span: tuple[int, int]
    confidence: float
    emitted_at_ms: int
    detection_latency_ms: float
    sources: tuple[str, ...] = ()

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")
        start, end = self.span
        if start < 0 or end < start:
            raise ValueError(f"Invalid span {self.span}")
        if not self.sources:
            object.__setattr__(self, 'sources', (self.strategy_name,))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        data = asdict(self)
        data['span'] = list(self.span)
        data['sources'] = list(self.sources)
        return data


@dataclass(frozen=True)
class GroundTruthQuestion:
    """Authoritative question derived from a full session transcript."""
    session_id: str
    text: str
    approx_position: int = -1

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'GroundTruthQuestion':
        """Create from dictionary."""
        return cls(
            session_id=str(data.get('session_id', '')),
            text=data['text'],
            approx_position=int(data.get('approx_position', -1)),
        )


@dataclass
class GroundTruthExtraction:
    """One specific extraction run; evaluation is always relative to a run."""
    run_id: str
    session_id: str
    questions: list[GroundTruthQuestion] = field(default_factory=list)
    raw_response: str = ''
    model: str = ''


@dataclass(frozen=True)
class MatchResult:
    """One row of the candidate / ground truth bipartite matching."""
    candidate: Optional[QuestionCandidate]
    ground_truth: Optional[GroundTruthQuestion]
    is_match: bool
    similarity: float = 0.0

    @property
    def outcome(self) -> str:
        """Get 'tp', 'fp' or 'fn'."""
        if self.is_match:
            return 'tp'
        return 'fp' if self.candidate is not None else 'fn'


@dataclass(frozen=True)
class Metrics:
    """Detection quality for one (session, strategy) pair."""
    detected: int
    true_positive: int
    false_positive: int
    false_negative: int
    precision: float
    recall: float
    f1: float

    @classmethod
    def from_counts(cls, true_positive: int, false_positive: int, false_negative: int) -> 'Metrics':
        """Compute precision, recall and F1 from raw counts."""
        detected = true_positive + false_positive
        precision = true_positive / detected if detected else 0.0
        relevant = true_positive + false_negative
        recall = true_positive / relevant if relevant else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        return cls(
            detected=detected,
            true_positive=true_positive,
            false_positive=false_positive,
            false_negative=false_negative,
            precision=precision,
            recall=recall,
            f1=f1,
        )

    @classmethod
    def from_matches(cls, rows: list[MatchResult]) -> 'Metrics':
        """Derive metrics from a set of match rows."""
        outcomes = [row.outcome for row in rows]
        return cls.from_counts(outcomes.count('tp'), outcomes.count('fp'), outcomes.count('fn'))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)
