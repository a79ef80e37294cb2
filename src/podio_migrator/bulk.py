"""Bounded-concurrency execution of independent write requests.

Requests are split into sequential batches of ``concurrency`` width. All
requests of a batch run concurrently on a thread pool; the next batch starts
only once the whole previous batch has finished. One request failing never
aborts its batch. With ``stop_on_error`` the run halts after the batch that
contained the first failure.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from . import items as item_api

if TYPE_CHECKING:
    from .http_client import PodioHttpClient

logger: logging.Logger = logging.getLogger(__name__)

R = TypeVar("R")
T = TypeVar("T")

DEFAULT_CONCURRENCY = 5


@dataclass
class BulkSuccess(Generic[R, T]):
    index: int
    request: R
    result: T


@dataclass
class BulkFailure(Generic[R]):
    index: int
    request: R
    error: str
    exception: Exception | None = None


@dataclass
class BatchProgress:
    batch_number: int  # 1-based
    total_batches: int
    completed: int
    total: int
    success_count: int
    failure_count: int


@dataclass
class BulkResult(Generic[R, T]):
    successes: list[BulkSuccess[R, T]] = field(default_factory=list)
    failures: list[BulkFailure[R]] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


@dataclass
class CreateRequest:
    fields: dict[str, Any]
    external_id: str | None = None
    source_item_id: int | None = None


@dataclass
class UpdateRequest:
    item_id: int
    fields: dict[str, Any]
    source_item_id: int | None = None


class BulkExecutor:
    """Runs batches of independent operations with failure isolation."""

    def __init__(self, *, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        if concurrency < 1:
            msg = f"concurrency must be at least 1, got {concurrency}"
            raise ValueError(msg)
        self.concurrency = concurrency

    def execute(
        self,
        requests: Sequence[R],
        operation: Callable[[R], T],
        *,
        stop_on_error: bool = False,
        on_progress: Callable[[BatchProgress], None] | None = None,
        label: str = "operation",
    ) -> BulkResult[R, T]:
        """Apply ``operation`` to every request.

        Args:
            requests: Independent requests, processed in submission order by batch
            operation: Performs one request; raising marks it failed
            stop_on_error: Halt after the batch containing the first failure
            on_progress: Called after every batch with aggregate counts
            label: Name used in log messages

        Returns:
            Successes and failures, each carrying the original index.
        """
        result: BulkResult[R, T] = BulkResult()
        total = len(requests)
        if total == 0:
            return result
        total_batches = (total + self.concurrency - 1) // self.concurrency

        def run(index: int) -> tuple[int, T | None, Exception | None]:
            try:
                return index, operation(requests[index]), None
            except Exception as e:  # noqa: BLE001
                return index, None, e

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for batch_number, start in enumerate(range(0, total, self.concurrency), start=1):
                indexes = range(start, min(start + self.concurrency, total))
                batch_failed = False
                for index, value, error in pool.map(run, indexes):
                    if error is None:
                        result.successes.append(BulkSuccess(index, requests[index], value))  # type: ignore[arg-type]
                    else:
                        batch_failed = True
                        logger.warning(f"Bulk {label} #{index} failed: {error}")
                        result.failures.append(BulkFailure(index, requests[index], str(error), error))

                if on_progress is not None:
                    on_progress(
                        BatchProgress(
                            batch_number=batch_number,
                            total_batches=total_batches,
                            completed=indexes.stop,
                            total=total,
                            success_count=result.success_count,
                            failure_count=result.failure_count,
                        )
                    )

                if batch_failed and stop_on_error:
                    result.stopped_early = indexes.stop < total
                    logger.warning(f"Stopping bulk {label} after batch {batch_number}/{total_batches} on error")
                    break

        logger.info(f"Bulk {label} finished: {result.success_count} succeeded, {result.failure_count} failed")
        return result


def bulk_create_items(
    client: PodioHttpClient,
    app_id: int,
    requests: Sequence[CreateRequest],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    hook: bool = False,
    silent: bool = True,
    stop_on_error: bool = False,
    on_progress: Callable[[BatchProgress], None] | None = None,
) -> BulkResult[CreateRequest, int]:
    def create(request: CreateRequest) -> int:
        return item_api.create_item(
            client, app_id, request.fields, external_id=request.external_id, hook=hook, silent=silent
        )

    return BulkExecutor(concurrency=concurrency).execute(
        requests, create, stop_on_error=stop_on_error, on_progress=on_progress, label="create"
    )


def bulk_update_items(
    client: PodioHttpClient,
    requests: Sequence[UpdateRequest],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    hook: bool = False,
    silent: bool = True,
    stop_on_error: bool = False,
    on_progress: Callable[[BatchProgress], None] | None = None,
) -> BulkResult[UpdateRequest, int]:
    def update(request: UpdateRequest) -> int:
        item_api.update_item(client, request.item_id, request.fields, hook=hook, silent=silent)
        return request.item_id

    return BulkExecutor(concurrency=concurrency).execute(
        requests, update, stop_on_error=stop_on_error, on_progress=on_progress, label="update"
    )


def bulk_delete_items(
    client: PodioHttpClient,
    item_ids: Sequence[int],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    hook: bool = False,
    silent: bool = True,
    stop_on_error: bool = False,
    on_progress: Callable[[BatchProgress], None] | None = None,
) -> BulkResult[int, int]:
    def delete(item_id: int) -> int:
        item_api.delete_item(client, item_id, hook=hook, silent=silent)
        return item_id

    return BulkExecutor(concurrency=concurrency).execute(
        item_ids, delete, stop_on_error=stop_on_error, on_progress=on_progress, label="delete"
    )
