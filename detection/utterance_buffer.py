"""Utterance segmentation for a stream of transcript events."""

from typing import Iterable, Optional

from config import config
from detection.errors import BufferOverflow
from logger import log_debug, log_warning
from metrics import utterances_finalized
from models import CloseReason, TranscriptEvent, Utterance

TERMINAL_PUNCTUATION = ("?", ".", "!")


class _OpenUtterance:
    """Mutable state of the utterance currently accumulating events."""

    def __init__(self, utterance_id: str, start_ms: int):
        self.id = utterance_id
        self.start_ms = start_ms
        self.last_event_ms = start_ms
        self.segments: list[str] = []
        self.pending_partial: Optional[str] = None

    @property
    def text(self) -> str:
        parts = list(self.segments)
        if self.pending_partial:
            parts.append(self.pending_partial)
        return " ".join(parts)

    def ends_with_terminal_punctuation(self) -> bool:
        return bool(self.segments) and self.segments[-1].endswith(TERMINAL_PUNCTUATION)


class UtteranceBuffer:
    """
    Turns the raw event stream of one session into finalized utterances.

    Final events are committed, partial events are held as a pending
    hypothesis that the next partial or final replaces. An utterance is
    finalized on a silence gap, on terminal punctuation followed by a
    short pause, when it hits the duration/length ceiling, or on flush().
    """

    def __init__(
        self,
        session_id: str,
        silence_gap_ms: int = None,
        punctuation_grace_ms: int = None,
        max_duration_ms: int = None,
        max_length: int = None,
    ):
        self.session_id = session_id
        self.silence_gap_ms = silence_gap_ms if silence_gap_ms is not None else config.silence_gap_ms
        self.punctuation_grace_ms = (
            punctuation_grace_ms if punctuation_grace_ms is not None else config.punctuation_grace_ms
        )
        self.max_duration_ms = max_duration_ms if max_duration_ms is not None else config.max_utterance_duration_ms
        self.max_length = max_length if max_length is not None else config.max_utterance_length

        self._current: Optional[_OpenUtterance] = None
        self._counter = 0
        self._last_final_seq: Optional[int] = None

    @property
    def has_open_utterance(self) -> bool:
        return self._current is not None

    @property
    def current_text(self) -> str:
        return self._current.text if self._current else ""

    def ingest(self, event: TranscriptEvent) -> Optional[Utterance]:
        """
        Add one event to the open utterance.

        Args:
            event: Transcript event of this buffer's session

        Returns:
            The utterance this event closed, if any
        """
        if event.session_id != self.session_id:
            raise ValueError(f"Event for session {event.session_id} sent to buffer of {self.session_id}")

        if self._last_final_seq is not None and event.sequence_number <= self._last_final_seq:
            log_debug("Dropping stale transcript event", session_id=self.session_id,
                      sequence_number=event.sequence_number)
            return None

        text = event.text.strip()
        if event.is_final:
            self._last_final_seq = event.sequence_number

        has_pending = self._current is not None and self._current.pending_partial is not None
        if not text and not (event.is_final and has_pending):
            return None

        finalized = None
        # A pending partial is resolved by the next event, so never split before it
        if self._current is not None and not has_pending:
            reason = self._boundary_before(event, text)
            if reason is not None:
                finalized = self._finalize(reason)

        self._append(event, text)
        return finalized

    def tick(self, now_ms: int) -> Optional[Utterance]:
        """Finalize the open utterance if a timeout elapsed without new events."""
        current = self._current
        if current is None or current.pending_partial is not None:
            return None

        gap = now_ms - current.last_event_ms
        if gap > self.silence_gap_ms:
            return self._finalize(CloseReason.SILENCE_GAP)
        if current.ends_with_terminal_punctuation() and gap > self.punctuation_grace_ms:
            return self._finalize(CloseReason.TERMINAL_PUNCTUATION)
        if now_ms - current.start_ms > self.max_duration_ms:
            return self._finalize(CloseReason.MAX_DURATION)
        return None

    def flush(self) -> Optional[Utterance]:
        """Session end: finalize whatever is open, pending partial included."""
        if self._current is None:
            return None
        return self._finalize(CloseReason.SESSION_END)

    def _boundary_before(self, event: TranscriptEvent, text: str) -> Optional[CloseReason]:
        current = self._current
        gap = event.timestamp_ms - current.last_event_ms

        if gap > self.silence_gap_ms:
            return CloseReason.SILENCE_GAP
        if current.ends_with_terminal_punctuation() and gap > self.punctuation_grace_ms:
            return CloseReason.TERMINAL_PUNCTUATION
        if event.timestamp_ms - current.start_ms > self.max_duration_ms:
            return CloseReason.MAX_DURATION
        if len(current.text) + 1 + len(text) > self.max_length:
            return CloseReason.MAX_LENGTH
        return None

    def _append(self, event: TranscriptEvent, text: str) -> None:
        if self._current is None:
            self._counter += 1
            self._current = _OpenUtterance(f"{self.session_id}-utt-{self._counter:04d}", event.timestamp_ms)

        current = self._current
        current.last_event_ms = max(current.last_event_ms, event.timestamp_ms)

        if event.is_final:
            current.pending_partial = None
            if text:
                current.segments.append(text)
            elif not current.segments:
                # The final resolved the only partial to nothing
                self._current = None
        else:
            current.pending_partial = text

    def _finalize(self, reason: CloseReason) -> Optional[Utterance]:
        current = self._current
        self._current = None
        utterances_finalized.labels(reason=reason.value).inc()

        if reason in (CloseReason.MAX_DURATION, CloseReason.MAX_LENGTH):
            log_warning("Utterance force-finalized at ceiling", session_id=self.session_id,
                        utterance_id=current.id, close_reason=reason.value,
                        error_type=BufferOverflow.__name__)

        text = current.text
        if not text:
            return None

        return Utterance(
            id=current.id,
            session_id=self.session_id,
            text=text,
            start_ms=current.start_ms,
            end_ms=current.last_event_ms,
            finalized=True,
            close_reason=reason,
        )


def build_transcript(events: Iterable[TranscriptEvent]) -> str:
    """
    Reconstruct the full transcript of a session.

    Finals are kept in order, each partial replaces the previous pending
    partial, and a trailing partial with no final is kept.
    """
    segments = []
    pending = None
    last_final_seq = None

    for event in events:
        if last_final_seq is not None and event.sequence_number <= last_final_seq:
            continue
        text = event.text.strip()
        if event.is_final:
            last_final_seq = event.sequence_number
            pending = None
            if text:
                segments.append(text)
        elif text:
            pending = text

    if pending:
        segments.append(pending)
    return " ".join(segments)
