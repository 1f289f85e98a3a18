"""Per-session detection pipeline: buffer, strategy, output stream."""

import asyncio
import inspect
from enum import Enum
from typing import AsyncIterator, Callable, Iterable, Optional, Union

from config import config
from detection.base import DetectionStrategy, run_detect
from detection.parallel import MergedStrategy
from detection.utterance_buffer import UtteranceBuffer
from logger import log_debug, log_info, log_warning
from metrics import active_sessions, candidates_emitted
from models import QuestionCandidate, TranscriptEvent, Utterance

_CLOSED = object()


class SessionState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


class DetectionPipeline:
    """
    Orchestrates one session from transcript events to question candidates.

    Event ingestion never waits on a strategy: every finalized utterance
    gets its own detection task. Closing the session flushes the open
    utterance, lets in-flight calls finish within the drain timeout and
    cancels the rest.
    """

    def __init__(
        self,
        session_id: str,
        strategy: Union[DetectionStrategy, list[DetectionStrategy]],
        buffer: UtteranceBuffer = None,
        strategy_timeout: Optional[float] = None,
        on_candidate: Callable = None,
    ):
        """
        Initialize pipeline.

        Args:
            session_id: Session identifier
            strategy: Strategy, or a list of strategies to run merged
            buffer: Utterance buffer, one is created when omitted
            strategy_timeout: Per-call timeout in seconds for strategies without their own
            on_candidate: Optional sync or async callback for every emitted candidate
        """
        self.strategy_timeout = strategy_timeout if strategy_timeout is not None else config.strategy_timeout_seconds
        if isinstance(strategy, (list, tuple)):
            strategy = MergedStrategy(list(strategy), timeout=self.strategy_timeout)
        self.session_id = session_id
        self.strategy = strategy
        self.buffer = buffer or UtteranceBuffer(session_id)
        self.on_candidate = on_candidate

        self.state = SessionState.IDLE
        self.utterances: list[Utterance] = []
        self.emitted: list[QuestionCandidate] = []
        self._tasks: set[asyncio.Task] = set()
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def ingest(self, event: TranscriptEvent) -> Optional[Utterance]:
        """
        Feed one transcript event.

        Returns:
            The utterance finalized by this event, if any

        Raises:
            RuntimeError: If the session is draining or closed
        """
        if self.state in (SessionState.DRAINING, SessionState.CLOSED):
            raise RuntimeError(f"Session {self.session_id} is {self.state.value}, no new events accepted")
        self._start()
        utterance = self.buffer.ingest(event)
        if utterance is not None:
            self._dispatch(utterance)
        return utterance

    def tick(self, now_ms: int) -> Optional[Utterance]:
        """Let silence and punctuation timeouts fire without a new event."""
        if self.state is not SessionState.STREAMING:
            return None
        utterance = self.buffer.tick(now_ms)
        if utterance is not None:
            self._dispatch(utterance)
        return utterance

    async def close(self, drain_timeout: Optional[float] = None) -> None:
        """Session end: flush, drain in-flight strategy calls, then close."""
        if self.state in (SessionState.DRAINING, SessionState.CLOSED):
            return
        was_active = self.state is SessionState.STREAMING
        self.state = SessionState.DRAINING

        utterance = self.buffer.flush()
        if utterance is not None:
            self._dispatch(utterance)

        drain_timeout = drain_timeout if drain_timeout is not None else config.drain_timeout_seconds
        pending = set(self._tasks)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=drain_timeout)
        if pending:
            log_warning("Cancelling strategy calls still running at session close",
                        session_id=self.session_id, cancelled=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self.state = SessionState.CLOSED
        if was_active:
            active_sessions.dec()
        self._queue.put_nowait(_CLOSED)
        log_info("Session closed", session_id=self.session_id, utterances=len(self.utterances),
                 candidates=len(self.emitted))

    async def process(self, events: Iterable[TranscriptEvent],
                      drain_timeout: Optional[float] = None) -> list[QuestionCandidate]:
        """Replay a recorded event sequence and return every emitted candidate."""
        for event in events:
            self.ingest(event)
        await self.close(drain_timeout)
        return list(self.emitted)

    async def stream(self) -> AsyncIterator[QuestionCandidate]:
        """Consume candidates as they are emitted, until the session closes."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def _start(self) -> None:
        if self.state is SessionState.IDLE:
            self.state = SessionState.STREAMING
            active_sessions.inc()
            log_debug("Session streaming", session_id=self.session_id, strategy=self.strategy.name)

    def _dispatch(self, utterance: Utterance) -> None:
        if not utterance.finalized:
            return
        self.utterances.append(utterance)
        task = asyncio.create_task(self._detect(utterance))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _detect(self, utterance: Utterance) -> None:
        # A merged strategy bounds its inner calls itself and needs time to merge after them
        timeout = self.strategy.call_budget(self.strategy_timeout)
        await run_detect(self.strategy, utterance, self._emit, timeout=timeout)

    async def _emit(self, candidate: QuestionCandidate) -> None:
        if self.state is SessionState.CLOSED:
            log_debug("Discarding candidate that arrived after close", session_id=self.session_id,
                      utterance_id=candidate.utterance_id)
            return

        self.emitted.append(candidate)
        candidates_emitted.labels(strategy=self.strategy.name).inc()
        self._queue.put_nowait(candidate)

        if self.on_candidate is not None:
            result = self.on_candidate(candidate)
            if inspect.isawaitable(result):
                await result
