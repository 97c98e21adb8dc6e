"""Bounded-concurrency batch executor.

Splits a list of independent inputs into fixed-size batches and runs up to
max_concurrent_batches of them at once. Items within a batch run one after
another, each wrapped in the retry executor; one item's failure is recorded
and never aborts its siblings. Results come back in input order no matter
which batch finished first.

Usage:
    from followup.core.batch import BatchExecutor, BatchOptions

    executor = BatchExecutor(retry_executor)
    result = await executor.run(groups, resolve_group, BatchOptions(batch_size=10))
    if not result.success:
        logger.warning("batch_had_errors", errors=len(result.errors))
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from followup.core.errors import BatchItemError
from followup.core.logging import get_logger
from followup.core.resilience import RetryPolicy

if TYPE_CHECKING:
    from followup.config_schema import BatchConfig
    from followup.core.resilience import RetryExecutor

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BatchProgress:
    """Progress report passed to on_progress after every item.

    Attributes:
        run_id: Identifier of the batch run
        processed: Items finished so far (succeeded or failed)
        total: Items in the run
        batch_index: Batch that just finished an item
        total_batches: Number of batches in the run
    """

    run_id: str
    processed: int
    total: int
    batch_index: int
    total_batches: int

    @property
    def percent(self) -> float:
        return self.processed / self.total * 100 if self.total else 100.0


@dataclass(slots=True)
class BatchOptions:
    """Options for one batch run.

    Attributes:
        batch_size: Items per batch
        max_concurrent_batches: Batches allowed to run at the same time
        retry_policy: Per-item retry policy (executor default if None)
        breaker_key: Circuit breaker guarding every item, if any
        run_id: Identifier used for cancellation (generated if None)
        on_progress: Called after each item with a BatchProgress
        on_batch_complete: Called with (batch_index, results, errors) per batch
        on_item_error: Called with each BatchItemError as it happens
    """

    batch_size: int = 10
    max_concurrent_batches: int = 3
    retry_policy: RetryPolicy | None = None
    breaker_key: str | None = None
    run_id: str | None = None
    on_progress: Callable[[BatchProgress], None] | None = None
    on_batch_complete: Callable[[int, list[Any], list[BatchItemError]], None] | None = None
    on_item_error: Callable[[BatchItemError], None] | None = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_concurrent_batches < 1:
            raise ValueError(
                f"max_concurrent_batches must be >= 1, got {self.max_concurrent_batches}"
            )

    @classmethod
    def from_config(cls, config: BatchConfig, **overrides: Any) -> BatchOptions:
        values: dict[str, Any] = {
            "batch_size": config.batch_size,
            "max_concurrent_batches": config.max_concurrent_batches,
            "retry_policy": RetryPolicy.from_config(config.item_retry),
        }
        values.update(overrides)
        return cls(**values)


@dataclass(slots=True)
class BatchResult[R]:
    """Aggregate outcome of a batch run.

    Attributes:
        results: Successful item results, in input order
        errors: One BatchItemError per failed item, in input order
        total_processed: Items that were started and finished
        total_batches: Number of batches the input was split into
        processing_time: Wall time of the run (seconds)
        cancelled: True if cancellation was requested during the run
        run_id: Identifier of the run
    """

    results: list[R] = field(default_factory=list)
    errors: list[BatchItemError] = field(default_factory=list)
    total_processed: int = 0
    total_batches: int = 0
    processing_time: float = 0.0
    cancelled: bool = False
    run_id: str = ""

    @property
    def success(self) -> bool:
        return not self.errors


class BatchExecutor:
    """Runs many independent async operations with bounded concurrency.

    Each run gets its own cancellation flag, registered under its run id so
    cancel() can stop one run or all of them. Cancellation is cooperative:
    an item already awaiting its processor finishes, but nothing new starts.
    """

    def __init__(self, retry_executor: RetryExecutor | None = None):
        """Initialize the executor.

        Args:
            retry_executor: Wraps each item's processing; items run once if None
        """
        self._retry = retry_executor
        self._runs: dict[str, asyncio.Event] = {}

    def active_runs(self) -> list[str]:
        """Ids of runs in progress that have not been cancelled."""
        return [run_id for run_id, flag in self._runs.items() if not flag.is_set()]

    def cancel(self, run_id: str | None = None) -> int:
        """Request cancellation of one run, or of every active run.

        Returns:
            Number of runs newly flagged
        """
        targets = [run_id] if run_id is not None else list(self._runs)
        flagged = 0
        for target in targets:
            flag = self._runs.get(target)
            if flag is not None and not flag.is_set():
                flag.set()
                flagged += 1
                logger.info("batch_run_cancel_requested", run_id=target)
        return flagged

    async def run[T, R](
        self,
        items: Iterable[T],
        processor: Callable[[T], Awaitable[R]],
        options: BatchOptions | None = None,
    ) -> BatchResult[R]:
        """Process every item and aggregate the outcome.

        Args:
            items: Independent inputs
            processor: Coroutine function applied to each item
            options: Batch options (defaults if not provided)

        Returns:
            BatchResult with results and errors in input order
        """
        options = options or BatchOptions()
        inputs = list(items)
        run_id = options.run_id or uuid.uuid4().hex[:12]
        size = options.batch_size
        batches = [inputs[i : i + size] for i in range(0, len(inputs), size)]

        cancel_flag = asyncio.Event()
        self._runs[run_id] = cancel_flag
        semaphore = asyncio.Semaphore(options.max_concurrent_batches)

        batch_results: list[list[R]] = [[] for _ in batches]
        batch_errors: list[list[BatchItemError]] = [[] for _ in batches]
        processed = 0
        start_time = time.monotonic()

        logger.info(
            "batch_run_started",
            run_id=run_id,
            items=len(inputs),
            batches=len(batches),
            max_concurrent_batches=options.max_concurrent_batches,
        )

        async def run_batch(batch_index: int, batch: list[T]) -> None:
            nonlocal processed
            async with semaphore:
                if cancel_flag.is_set():
                    return
                for offset, item in enumerate(batch):
                    if cancel_flag.is_set():
                        break
                    item_index = batch_index * size + offset
                    try:
                        result = await self._process_item(item, processor, options)
                    except Exception as e:
                        error = BatchItemError(batch_index, item_index, item, e)
                        batch_errors[batch_index].append(error)
                        logger.warning(
                            "batch_item_failed",
                            run_id=run_id,
                            batch_index=batch_index,
                            item_index=item_index,
                            error=str(e),
                        )
                        if options.on_item_error is not None:
                            options.on_item_error(error)
                    else:
                        batch_results[batch_index].append(result)

                    processed += 1
                    if options.on_progress is not None:
                        options.on_progress(
                            BatchProgress(
                                run_id=run_id,
                                processed=processed,
                                total=len(inputs),
                                batch_index=batch_index,
                                total_batches=len(batches),
                            )
                        )

                if options.on_batch_complete is not None:
                    options.on_batch_complete(
                        batch_index, batch_results[batch_index], batch_errors[batch_index]
                    )

        try:
            await asyncio.gather(*(run_batch(i, batch) for i, batch in enumerate(batches)))
        finally:
            self._runs.pop(run_id, None)

        result = BatchResult(
            results=[r for chunk in batch_results for r in chunk],
            errors=[e for chunk in batch_errors for e in chunk],
            total_processed=processed,
            total_batches=len(batches),
            processing_time=time.monotonic() - start_time,
            cancelled=cancel_flag.is_set(),
            run_id=run_id,
        )

        logger.info(
            "batch_run_complete",
            run_id=run_id,
            processed=result.total_processed,
            errors=len(result.errors),
            cancelled=result.cancelled,
            duration_ms=int(result.processing_time * 1000),
        )
        return result

    async def _process_item[T, R](
        self,
        item: T,
        processor: Callable[[T], Awaitable[R]],
        options: BatchOptions,
    ) -> R:
        if self._retry is None:
            return await processor(item)
        return await self._retry.execute(
            lambda: processor(item),
            policy=options.retry_policy,
            breaker_key=options.breaker_key,
        )
