"""Detection strategy capability and the failure boundary around it."""

from abc import ABC, abstractmethod
import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from detection.errors import BackendTimeout
from logger import log_error, log_warning
from metrics import strategy_failures, strategy_latency
from models import QuestionCandidate, Utterance


class DetectionStrategy(ABC):
    """Decides which spans of a finalized utterance are questions."""

    name: str = "strategy"
    # Caller-imposed timeout in seconds; None defers to the caller's default
    timeout: Optional[float] = None

    @abstractmethod
    def detect(self, utterance: Utterance) -> AsyncIterator[QuestionCandidate]:
        """
        Lazily produce question candidates for an utterance.

        Args:
            utterance: Finalized utterance, never modified

        Returns:
            Async iterator of candidates, possibly empty
        """

    def call_budget(self, default: Optional[float]) -> Optional[float]:
        """Longest a whole detect call may take, given the caller's default timeout."""
        return self.timeout if self.timeout is not None else default

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def locate_span(haystack: str, needle: str) -> Optional[tuple[int, int]]:
    """Find needle in haystack ignoring case, as a (start, end) span."""
    needle = needle.strip()
    if not needle:
        return None
    index = haystack.lower().find(needle.lower())
    if index < 0:
        return None
    return index, index + len(needle)


def make_candidate(
    utterance: Utterance,
    strategy_name: str,
    span: tuple[int, int],
    confidence: float,
    started_at: float,
    clock: Callable[[], float] = time.monotonic,
    text: str = None,
) -> QuestionCandidate:
    """Build a candidate, measuring latency from when detection started."""
    latency_ms = max(clock() - started_at, 0.0) * 1000
    return QuestionCandidate(
        utterance_id=utterance.id,
        strategy_name=strategy_name,
        text=text if text is not None else utterance.text[span[0]:span[1]],
        span=span,
        confidence=round(min(max(confidence, 0.0), 1.0), 4),
        emitted_at_ms=utterance.end_ms + int(latency_ms),
        detection_latency_ms=latency_ms,
    )


def record_failure(strategy_name: str, error: Exception, **context) -> None:
    """Count and log a strategy failure that was recovered as no candidates."""
    error_type = type(error).__name__
    strategy_failures.labels(strategy=strategy_name, error_type=error_type).inc()
    log_warning(f"Strategy {strategy_name} contributed nothing: {error}",
                strategy=strategy_name, error_type=error_type, **context)


async def run_detect(
    strategy: DetectionStrategy,
    utterance: Utterance,
    on_candidate: Callable[[QuestionCandidate], Awaitable[None]],
    timeout: Optional[float] = None,
) -> bool:
    """
    Drive one strategy call, forwarding candidates as they arrive.

    Timeouts and unexpected exceptions are absorbed here so that no
    strategy can stall or crash the caller.

    Returns:
        True if the call completed, False if it failed or timed out
    """
    started = time.monotonic()

    async def _drain():
        async for candidate in strategy.detect(utterance):
            await on_candidate(candidate)

    try:
        await asyncio.wait_for(_drain(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        record_failure(strategy.name, BackendTimeout(f"no answer within {timeout}s"),
                       utterance_id=utterance.id)
        return False
    except Exception as e:
        strategy_failures.labels(strategy=strategy.name, error_type="unexpected").inc()
        log_error(f"Strategy {strategy.name} failed: {e}", strategy=strategy.name,
                  utterance_id=utterance.id)
        return False
    finally:
        strategy_latency.labels(strategy=strategy.name).observe(time.monotonic() - started)


async def collect_candidates(
    strategy: DetectionStrategy,
    utterance: Utterance,
    timeout: Optional[float] = None,
) -> list[QuestionCandidate]:
    """Run a strategy to completion; a failed or timed-out call yields nothing."""
    found = []

    async def _keep(candidate):
        found.append(candidate)

    completed = await run_detect(strategy, utterance, _keep, timeout=timeout)
    return found if completed else []
