"""
Batch processing with bounded concurrency and per-chunk retry.

Splits a work list into chunks, runs a bounded number of chunks at once and
retries the retryable failures of each chunk with exponential backoff.
Partial failure is a normal result: a failing chunk never aborts its
siblings, and every input item ends up with exactly one outcome.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pos_sync.core.models import ConflictRecord
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.config import BatchSettings
from pos_sync.utils.exceptions import (
    OperationCancelled, RateLimited, RepositoryError, WouldExceedDeadline, error_code_for,
)
from pos_sync.utils.logger import get_logger
from pos_sync.utils.rate_limiting import RateLimiter
from pos_sync.utils.retry import ExponentialBackoff, RetryPolicy

logger = get_logger(__name__)


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ItemOutcome:
    """Result of processing one item."""

    key: str
    status: ItemStatus
    action: Optional[str] = None  # created, updated, conflicted, unchanged, ...
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0
    conflicts: List[ConflictRecord] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, key: str, action: str, conflicts: Optional[List[ConflictRecord]] = None,
                **detail) -> "ItemOutcome":
        return cls(key=key, status=ItemStatus.SUCCESS, action=action,
                   conflicts=list(conflicts or []), detail=detail)

    @classmethod
    def skipped(cls, key: str, reason: str, **detail) -> "ItemOutcome":
        return cls(key=key, status=ItemStatus.SKIPPED, action=reason, detail=detail)

    @classmethod
    def failed(cls, key: str, error: BaseException, attempts: int = 1) -> "ItemOutcome":
        return cls(key=key, status=ItemStatus.FAILED, error_code=error_code_for(error),
                   error_message=str(error)[:500], attempts=attempts)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"key": self.key, "status": self.status.value}
        if self.action:
            data["action"] = self.action
        if self.error_code:
            data["error_code"] = self.error_code
            data["error"] = self.error_message
        if self.attempts > 1:
            data["attempts"] = self.attempts
        if self.conflicts:
            data["conflicts"] = [c.to_dict() for c in self.conflicts]
        if self.detail:
            data["detail"] = self.detail
        return data


@dataclass
class BatchResult:
    """Aggregated outcomes of one ``BatchProcessor.run``."""

    total: int = 0
    outcomes: List[ItemOutcome] = field(default_factory=list)
    cancelled: bool = False
    chunks: int = 0
    retries: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ItemStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ItemStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ItemStatus.SKIPPED)

    @property
    def conflicts(self) -> List[ConflictRecord]:
        return [c for o in self.outcomes for c in o.conflicts]

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "success"
        if self.failed == self.total:
            return "failed"
        return "partial_success"

    def counts(self) -> Dict[str, int]:
        """Counts in SyncLog terms."""
        counts = {"created": 0, "updated": 0, "skipped": 0, "conflicted": 0, "failed": 0}
        for outcome in self.outcomes:
            if outcome.status == ItemStatus.FAILED:
                counts["failed"] += 1
            elif outcome.status == ItemStatus.SKIPPED:
                counts["skipped"] += 1
            elif outcome.action in counts:
                counts[outcome.action] += 1
            else:
                counts["updated"] += 1
        return counts

    def failures_by_code(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for outcome in self.outcomes:
            if outcome.status == ItemStatus.FAILED:
                summary[outcome.error_code] = summary.get(outcome.error_code, 0) + 1
        return summary

    def merge(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            total=self.total + other.total,
            outcomes=self.outcomes + other.outcomes,
            cancelled=self.cancelled or other.cancelled,
            chunks=self.chunks + other.chunks,
            retries=self.retries + other.retries,
        )


Operation = Callable[[Any, Any], Awaitable[ItemOutcome]]
ChunkSetup = Callable[[List[Any]], Awaitable[Any]]
ChunkCallback = Callable[[List[ItemOutcome]], Any]


class _RunState:
    """Mutable state shared by the chunk workers of one run."""

    def __init__(self):
        self.abort_error: Optional[BaseException] = None
        self.retries = 0


class BatchProcessor:
    """
    Runs an async per-item operation over many items.

    ``operation(item, context)`` returns an ``ItemOutcome`` or raises; the
    optional ``chunk_setup(items)`` runs once per chunk attempt (e.g. to
    prefetch inventory levels) and its return value is passed as
    ``context``. A failing setup fails or retries the whole chunk attempt.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 settings: Optional[BatchSettings] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
                 on_chunk_complete: Optional[ChunkCallback] = None):
        self.settings = settings or BatchSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.rate_limiter = rate_limiter
        self.on_chunk_complete = on_chunk_complete
        self._sleep = sleep

    async def run(self, items: Iterable[Any], operation: Operation,
                  batch_size: Optional[int] = None, max_concurrency: Optional[int] = None,
                  key: Optional[Callable[[Any], str]] = None,
                  chunk_setup: Optional[ChunkSetup] = None,
                  cancel_token: Optional[CancellationToken] = None,
                  on_chunk_complete: Optional[ChunkCallback] = None) -> BatchResult:
        """
        Process ``items`` in chunks.

        Args:
            items: Work items
            operation: ``async (item, context) -> ItemOutcome``
            batch_size: Max items per chunk (default from settings, 100)
            max_concurrency: Chunks in flight at once (default from settings, 5)
            key: Item -> display key for outcomes
            chunk_setup: ``async (chunk_items) -> context``
            cancel_token: Stops new chunk work once it fires; chunks already
                running finish their current attempt
            on_chunk_complete: ``(chunk_outcomes) -> None``, overrides the
                processor-wide hook

        Returns:
            BatchResult with one outcome per item, in input order

        Raises:
            RepositoryError: Persistence failed; remaining work was abandoned.
        """
        items = list(items)
        batch_size = batch_size or self.settings.batch_size
        max_concurrency = max_concurrency or self.settings.max_concurrency
        key = key or str
        on_chunk_complete = on_chunk_complete or self.on_chunk_complete

        if batch_size < 1 or max_concurrency < 1:
            raise ValueError("batch_size and max_concurrency must be positive")

        chunks = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]
        if not chunks:
            return BatchResult(total=0)

        logger.info(f"Processing {len(items)} items in {len(chunks)} chunk(s), "
                    f"concurrency={max_concurrency}")

        semaphore = asyncio.Semaphore(max_concurrency)
        state = _RunState()

        async def run_chunk(index: int, chunk: List[Any]) -> List[ItemOutcome]:
            async with semaphore:
                if state.abort_error is not None or (cancel_token is not None and cancel_token.cancelled):
                    outcomes = [ItemOutcome.skipped(key(item), "cancelled") for item in chunk]
                else:
                    outcomes = await self._process_chunk(index, len(chunks), chunk, operation, key,
                                                         chunk_setup, cancel_token, state)
                if on_chunk_complete is not None and state.abort_error is None:
                    try:
                        on_chunk_complete(outcomes)
                    except RepositoryError as e:
                        state.abort_error = e
                        raise
                return outcomes

        chunk_results = await asyncio.gather(
            *(run_chunk(i, chunk) for i, chunk in enumerate(chunks)),
            return_exceptions=True,
        )

        if state.abort_error is not None:
            raise state.abort_error
        for chunk_result in chunk_results:
            if isinstance(chunk_result, BaseException):
                raise chunk_result

        result = BatchResult(
            total=len(items),
            outcomes=[outcome for chunk_result in chunk_results for outcome in chunk_result],
            cancelled=cancel_token is not None and cancel_token.cancelled,
            chunks=len(chunks),
            retries=state.retries,
        )

        logger.info(f"Batch complete: {result.succeeded} succeeded, {result.failed} failed, "
                    f"{result.skipped} skipped of {result.total}")
        return result

    async def _process_chunk(self, index: int, chunk_count: int, chunk: List[Any],
                             operation: Operation, key: Callable[[Any], str],
                             chunk_setup: Optional[ChunkSetup],
                             cancel_token: Optional[CancellationToken],
                             state: _RunState) -> List[ItemOutcome]:
        outcomes: Dict[int, ItemOutcome] = {}
        attempts: Dict[int, int] = {i: 0 for i in range(len(chunk))}
        pending = list(range(len(chunk)))
        backoff = ExponentialBackoff(self.retry_policy)

        # Set when an item of this chunk hit the deadline or was cancelled while waiting
        halted = False

        def stop_requested() -> bool:
            return state.abort_error is not None or (cancel_token is not None and cancel_token.cancelled)

        while pending:
            retry_errors: Dict[int, BaseException] = {}

            context = None
            if chunk_setup is not None:
                try:
                    context = await chunk_setup([chunk[i] for i in pending])
                except RepositoryError as e:
                    state.abort_error = e
                    raise
                except (WouldExceedDeadline, OperationCancelled):
                    self._cancel(cancel_token)
                    for i in pending:
                        outcomes[i] = ItemOutcome.skipped(key(chunk[i]), "cancelled")
                    break
                except Exception as e:
                    for i in pending:
                        attempts[i] += 1
                    if self.retry_policy.is_retryable(e):
                        retry_errors = {i: e for i in pending}
                    else:
                        logger.error(f"Chunk {index + 1}/{chunk_count} setup failed: {e}")
                        for i in pending:
                            outcomes[i] = ItemOutcome.failed(key(chunk[i]), e, attempts[i])
                        break

            if not retry_errors:
                for i in pending:
                    item = chunk[i]
                    item_key = key(item)
                    if halted or state.abort_error is not None:
                        outcomes[i] = ItemOutcome.skipped(item_key, "cancelled")
                        continue

                    attempts[i] += 1
                    try:
                        outcome = await operation(item, context)
                        outcome.attempts = attempts[i]
                        outcomes[i] = outcome
                    except RepositoryError as e:
                        state.abort_error = e
                        raise
                    except (WouldExceedDeadline, OperationCancelled):
                        self._cancel(cancel_token)
                        halted = True
                        outcomes[i] = ItemOutcome.skipped(item_key, "cancelled")
                    except Exception as e:
                        if self.retry_policy.is_retryable(e):
                            retry_errors[i] = e
                        else:
                            logger.warning(f"Item {item_key} failed permanently: {e}")
                            outcomes[i] = ItemOutcome.failed(item_key, e, attempts[i])

            if not retry_errors:
                break

            # Throttling drives the backoff when present
            error = next((e for e in retry_errors.values() if isinstance(e, RateLimited)),
                         next(iter(retry_errors.values())))

            if backoff.should_retry(error) and not stop_requested():
                delay = backoff.calculate_delay(error)
                state.retries += 1
                logger.warning(f"Chunk {index + 1}/{chunk_count}: {len(retry_errors)} item(s) hit "
                               f"{error_code_for(error)}, retry {backoff.attempt}/"
                               f"{self.retry_policy.max_retries} in {delay:.2f}s")
                await self._backoff(delay, error, cancel_token)
                pending = sorted(retry_errors)
                continue

            for i, e in retry_errors.items():
                logger.warning(f"Item {key(chunk[i])} failed after {attempts[i]} attempt(s): {e}")
                outcomes[i] = ItemOutcome.failed(key(chunk[i]), e, attempts[i])
            break

        result = [outcomes[i] for i in range(len(chunk))]
        failed = sum(1 for o in result if o.status == ItemStatus.FAILED)
        logger.debug(f"Chunk {index + 1}/{chunk_count} finished: {len(result) - failed} ok, {failed} failed")
        return result

    async def call_with_retry(self, func: Callable[..., Awaitable[Any]], *args,
                              cancel_token: Optional[CancellationToken] = None, **kwargs) -> Any:
        """
        Await one provider call outside the chunk loop with the same retry policy.

        Used for work that has to happen before there are items to chunk,
        such as paging through the catalog listing.

        Raises:
            The last error once it is not retryable or retries are exhausted.
        """
        backoff = ExponentialBackoff(self.retry_policy)
        while True:
            try:
                return await func(*args, cancel_token=cancel_token, **kwargs)
            except Exception as e:
                if not backoff.should_retry(e) or (cancel_token is not None and cancel_token.cancelled):
                    raise
                delay = backoff.calculate_delay(e)
                logger.warning(f"{getattr(func, '__name__', 'call')} hit {error_code_for(e)}, "
                               f"retry {backoff.attempt}/{self.retry_policy.max_retries} in {delay:.2f}s")
                await self._backoff(delay, e, cancel_token)

    @staticmethod
    def _cancel(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None and not cancel_token.cancelled:
            cancel_token.cancel("deadline_exceeded")

    async def _backoff(self, delay: float, error: BaseException,
                       cancel_token: Optional[CancellationToken]) -> None:
        if self.rate_limiter is not None and isinstance(error, RateLimited):
            # Siblings sharing the limiter back off too
            self.rate_limiter.pause(delay)

        if self._sleep is not None:
            await self._sleep(delay)
        elif cancel_token is not None:
            await cancel_token.sleep(delay)
        else:
            await asyncio.sleep(delay)
