"""Merged strategy running several inner strategies concurrently."""

import asyncio
from typing import Optional

from config import config
from detection.base import DetectionStrategy, collect_candidates, run_detect
from detection.merger import CandidateMerger, EmissionPolicy, MergePolicy
from logger import log_debug

_DONE = object()

# Time allowed on top of the inner calls for merging their results
MERGE_MARGIN_SECONDS = 1.0


class MergedStrategy(DetectionStrategy):
    """
    Fans detect out to an ordered set of inner strategies.

    Raw results are passed through the candidate merger; what comes out
    depends only on the merge policy. With gate_on_first the first inner
    strategy runs alone and the others are only called if it found
    something.
    """

    def __init__(
        self,
        strategies: list[DetectionStrategy],
        merger: CandidateMerger = None,
        timeout: Optional[float] = None,
        name: str = "parallel",
    ):
        if len(strategies) < 2:
            raise ValueError("MergedStrategy needs at least two inner strategies")
        self.strategies = list(strategies)
        self.merger = merger or CandidateMerger(MergePolicy.from_config())
        self.timeout = timeout if timeout is not None else config.strategy_timeout_seconds
        self.name = name

    @property
    def policy(self) -> MergePolicy:
        return self.merger.policy

    def _timeout_for(self, strategy: DetectionStrategy) -> Optional[float]:
        return strategy.call_budget(self.timeout)

    def call_budget(self, default: Optional[float]) -> Optional[float]:
        """
        Inner calls enforce their own timeouts, so the whole call is bounded
        by the slowest inner call, plus the gate when it runs first.
        """
        budgets = [self._timeout_for(strategy) for strategy in self.strategies]
        if any(budget is None for budget in budgets):
            return None
        if self.policy.gate_on_first:
            total = budgets[0] + max(budgets[1:])
        else:
            total = max(budgets)
        return total + MERGE_MARGIN_SECONDS

    async def _pump(self, strategy: DetectionStrategy, utterance, queue: asyncio.Queue) -> None:
        try:
            if self.policy.emission is EmissionPolicy.FIRST_ARRIVAL:
                await run_detect(strategy, utterance, queue.put, timeout=self._timeout_for(strategy))
            else:
                for candidate in await collect_candidates(strategy, utterance, timeout=self._timeout_for(strategy)):
                    queue.put_nowait(candidate)
        finally:
            queue.put_nowait(_DONE)

    async def detect(self, utterance):
        collector = self.merger.collector(utterance.id)
        first_arrival = self.policy.emission is EmissionPolicy.FIRST_ARRIVAL
        queue: asyncio.Queue = asyncio.Queue()
        inner = self.strategies
        tasks = []

        try:
            if self.policy.gate_on_first:
                gate = inner[0]
                found = await collect_candidates(gate, utterance, timeout=self._timeout_for(gate))
                if not found:
                    log_debug("Gate strategy found nothing, skipping the rest", utterance_id=utterance.id,
                              strategy=gate.name)
                    return
                for candidate in found:
                    queue.put_nowait(candidate)
                inner = inner[1:]

            tasks = [asyncio.create_task(self._pump(strategy, utterance, queue)) for strategy in inner]
            running = len(tasks)
            while running:
                item = await queue.get()
                if item is _DONE:
                    running -= 1
                    continue
                if first_arrival:
                    accepted = await collector.offer(item)
                    if accepted is not None:
                        yield accepted
                else:
                    await collector.add(item)

            if not first_arrival:
                for candidate in await collector.finish():
                    yield candidate
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
