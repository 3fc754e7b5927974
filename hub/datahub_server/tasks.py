"""
Asynchronous batch execution for long-running sweeps.

Administrative sweeps such as wiping a search corpus are too large to run
inside a request. Callers register a named processor once, then enqueue
a (possibly lazy) sequence of ids; a producer task cuts the sequence into
batches and worker tasks feed each batch to the processor.

Invariants:
    - enqueue_process() returns before any batch has been processed
    - A failing batch is logged and does not stop the sweep
    - Unknown processor names fail at enqueue time, not in a worker
    - The pending queue is bounded; producers wait when it is full

How to change safely:
    - Processors must tolerate ids that no longer exist
    - Keep batch processing idempotent, batches are not retried
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

Processor = Callable[[list[str]], Awaitable[None]]

# Fetches the page of ids after the given last id (None for the first page).
PageFetcher = Callable[[str | None], Awaitable[list[str]]]


async def iterate_pages(fetch_page: PageFetcher) -> AsyncIterator[str]:
    """Lazily chain pages of ids, each page starting after the last id seen.

    Example:
        >>> ids = iterate_pages(lambda last: backend.list_ids("ROOT", last, 100))
        >>> async for doc_id in ids:
        ...     print(doc_id)
    """
    last: str | None = None
    while True:
        page = await fetch_page(last)
        if not page:
            return
        for item in page:
            yield item
        last = page[-1]


class TaskQueue:
    """Bounded async work queue with named batch processors.

    Example:
        >>> tasks = TaskQueue(workers=2)
        >>> tasks.register("delete-index:ROOT", remove_batch)
        >>> await tasks.start()
        >>> tasks.enqueue_process(doc_ids, 100, "delete-index:ROOT")
        >>> await tasks.join()
    """

    def __init__(self, workers: int = 2, max_pending: int = 1000) -> None:
        self.workers = workers
        self.max_pending = max_pending
        self._processors: dict[str, Processor] = {}
        self._queue: asyncio.Queue[tuple[str, list[str]]] | None = None
        self._worker_tasks: list[asyncio.Task] = []
        self._producers: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._queue is not None

    def register(self, name: str, processor: Processor) -> None:
        if name in self._processors:
            raise ValueError(f"Processor already registered: {name}")
        self._processors[name] = processor

    async def start(self) -> None:
        if self._queue is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        self._worker_tasks = [
            asyncio.create_task(self._worker(i), name=f"task-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"Task queue started with {self.workers} workers")

    async def stop(self) -> None:
        """Cancel producers and workers; pending batches are dropped."""
        if self._queue is None:
            return
        tasks = [*self._producers, *self._worker_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        dropped = self._queue.qsize()
        self._queue = None
        self._worker_tasks = []
        self._producers.clear()
        logger.info("Task queue stopped", extra={"dropped_batches": dropped})

    def enqueue_process(
        self,
        items: Iterable[str] | AsyncIterable[str],
        batch_size: int,
        processor_name: str,
    ) -> asyncio.Task:
        """Schedule items to be processed in batches.

        Returns:
            The producer task, done once every batch has been queued

        Raises:
            KeyError: If no processor is registered under processor_name
            RuntimeError: If the queue has not been started
        """
        if processor_name not in self._processors:
            raise KeyError(f"No such processor: {processor_name}")
        if self._queue is None:
            raise RuntimeError("Task queue is not running")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        producer = asyncio.create_task(self._produce(items, batch_size, processor_name))
        self._producers.add(producer)
        producer.add_done_callback(self._producers.discard)
        return producer

    async def join(self) -> None:
        """Wait until every enqueued item has been processed."""
        while self._producers:
            await asyncio.gather(*list(self._producers), return_exceptions=True)
        if self._queue is not None:
            await self._queue.join()

    async def _produce(
        self,
        items: Iterable[str] | AsyncIterable[str],
        batch_size: int,
        processor_name: str,
    ) -> None:
        assert self._queue is not None
        batch: list[str] = []
        count = 0

        async def flush() -> None:
            nonlocal batch
            await self._queue.put((processor_name, batch))
            batch = []

        try:
            if isinstance(items, AsyncIterable):
                async for item in items:
                    batch.append(item)
                    count += 1
                    if len(batch) >= batch_size:
                        await flush()
            else:
                for item in items:
                    batch.append(item)
                    count += 1
                    if len(batch) >= batch_size:
                        await flush()
            if batch:
                await flush()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Failed producing batches for {processor_name}")
            return

        logger.debug(f"Enqueued {count} items for {processor_name}")

    async def _worker(self, worker_id: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            processor_name, batch = await queue.get()
            try:
                await self._processors[processor_name](batch)
            except Exception:
                logger.exception(
                    f"Batch failed in {processor_name}",
                    extra={"worker": worker_id, "batch_size": len(batch)},
                )
            finally:
                queue.task_done()
