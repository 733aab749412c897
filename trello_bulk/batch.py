"""Sequential batches, concurrent items.

Batch ``N + 1`` starts only after every item of batch ``N`` has finished.
Inside a batch every item runs concurrently, and an item's exception is
captured as an :class:`ItemFailure` so it never cancels its siblings or the
batches after it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import OperationCancelled
from .executor import SleepFn
from .report import ItemFailure, ItemOutcome, ItemSuccess
from .selection import Candidate

logger = logging.getLogger(__name__)

ItemOperation = Callable[[Candidate], Awaitable[Any]]


@dataclass
class BatchRun:
    outcomes: list[ItemOutcome] = field(default_factory=list)
    safety_limit_applied: bool = False
    batches: int = 0


def partition(candidates: Sequence[Candidate], batch_size: int) -> list[list[Candidate]]:
    return [
        list(candidates[start : start + batch_size])
        for start in range(0, len(candidates), batch_size)
    ]


class BatchExecutor:
    def __init__(
        self,
        *,
        batch_size: int = 10,
        safety_cap: int | None = None,
        pacing: float = 0.3,
        sleep: SleepFn = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if safety_cap is not None and safety_cap < 1:
            raise ValueError("safety_cap must be >= 1")
        self.batch_size = batch_size
        self.safety_cap = safety_cap
        self.pacing = max(0.0, pacing)
        self._sleep = sleep

    async def run(
        self,
        candidates: Sequence[Candidate],
        op: ItemOperation,
        *,
        cancel: asyncio.Event | None = None,
    ) -> BatchRun:
        run = BatchRun()
        if self.safety_cap is not None and len(candidates) > self.safety_cap:
            logger.warning(
                "Safety cap applied: processing %d of %d candidates",
                self.safety_cap,
                len(candidates),
            )
            candidates = candidates[: self.safety_cap]
            run.safety_limit_applied = True

        batches = partition(candidates, self.batch_size)
        for number, batch in enumerate(batches, start=1):
            if cancel is not None and cancel.is_set():
                skipped = [c for rest in batches[number - 1 :] for c in rest]
                logger.warning("Bulk run cancelled; skipping %d candidates", len(skipped))
                run.outcomes.extend(
                    ItemFailure(c, OperationCancelled("Bulk operation was cancelled."))
                    for c in skipped
                )
                break

            logger.info("Batch %d/%d: %d items", number, len(batches), len(batch))
            results = await asyncio.gather(*(self._run_item(c, op) for c in batch))
            run.outcomes.extend(results)
            run.batches += 1
            failed = sum(1 for r in results if isinstance(r, ItemFailure))
            logger.info("Batch %d/%d done: %d failed", number, len(batches), failed)

            if number < len(batches) and self.pacing:
                await self._sleep(self.pacing)
        return run

    @staticmethod
    async def _run_item(candidate: Candidate, op: ItemOperation) -> ItemOutcome:
        try:
            result = await op(candidate)
        except Exception as exc:
            logger.debug("Item %d (%s) failed: %s", candidate.index, candidate.id, exc)
            return ItemFailure(candidate, exc)
        return ItemSuccess(candidate, result)
