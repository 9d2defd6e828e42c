"""Concurrent purge: one discovery task feeding a fixed pool of workers."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .batch import DEFAULT_BATCH_SIZE, BatchProcessor
from .checkpoint import CheckpointStore
from .client import DEFAULT_REQUEST_DELAY, ClientFactory, RateLimitedClient, RemoteClient
from .errors import RemoteError
from .logging import log_with_context
from .models import BatchResult
from .walker import list_folder

MIN_WORKERS = 1
MAX_WORKERS = 64
DEFAULT_POLL_INTERVAL = 0.05


def clamp_workers(workers: int) -> int:
    return max(MIN_WORKERS, min(MAX_WORKERS, workers))


@dataclass
class FolderWork:
    """A discovered folder and the files the worker must purge."""

    path: str
    files: list[str] = field(default_factory=list)


class SubtreeTracker:
    """
    Decide when a folder's whole subtree is finished.

    Each discovered folder has one slot for its own files plus one per
    subfolder still to visit. Settling the last slot records the folder
    (unless something below it was left unfinished) and settles the
    folder's slot in its parent.
    """

    def __init__(self, store: CheckpointStore, dry_run: bool = False):
        self.store = store
        self.dry_run = dry_run
        self._outstanding: dict[str, int] = {}
        self._parents: dict[str, Optional[str]] = {}
        self._incomplete: set[str] = set()
        self._lock = asyncio.Lock()

    def register(self, path: str, parent: Optional[str], pending_subfolders: int) -> None:
        """Track a listed folder; must happen before any of its slots settle."""
        self._parents[path] = parent
        self._outstanding[path] = pending_subfolders + 1

    @property
    def open_folders(self) -> int:
        return len(self._outstanding)

    async def settle(self, path: Optional[str], complete: bool = True) -> None:
        """
        Settle one slot of ``path``.

        Args:
            path: Folder whose slot settles; None (a root's parent) is ignored
            complete: False if the work behind the slot was left unfinished
        """
        async with self._lock:
            while path is not None:
                if not complete:
                    self._incomplete.add(path)

                remaining = self._outstanding[path] - 1
                if remaining > 0:
                    self._outstanding[path] = remaining
                    return

                del self._outstanding[path]
                parent = self._parents.pop(path)
                complete = path not in self._incomplete and not self.dry_run
                self._incomplete.discard(path)
                if complete:
                    await self.store.record_folder(path)
                path = parent


class Worker:
    """
    One long-lived worker with a private queue and a private connection.

    The connection is created on the first work item and closed on
    shutdown; it is never shared with another worker.
    """

    def __init__(self, index: int, pool: "WorkerPool"):
        self.index = index
        self.pool = pool
        self.queue: asyncio.Queue[FolderWork] = asyncio.Queue()
        self.client: Optional[RateLimitedClient] = None
        self.processor: Optional[BatchProcessor] = None
        self.result = BatchResult()
        self.folders_done = 0

    async def _connect(self) -> BatchProcessor:
        if self.processor is None:
            pool = self.pool
            self.client = RateLimitedClient(await pool.client_factory(), pool.request_delay)
            self.processor = BatchProcessor(
                self.client,
                pool.store,
                pool.abort,
                logger=pool.logger,
                batch_size=pool.batch_size,
                dry_run=pool.dry_run,
            )
            pool.logger.debug(f"Worker {self.index} connected")
        return self.processor

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                work = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                await asyncio.sleep(self.pool.poll_interval)
                continue

            try:
                await self._handle(work)
            finally:
                self.queue.task_done()

    async def _handle(self, work: FolderWork) -> None:
        pool = self.pool
        if pool.abort.is_set():
            # Drain without touching the remote side
            return

        processor = await self._connect()
        log_with_context(
            pool.logger,
            "info",
            "Cleaning folder",
            {"path": work.path, "files": len(work.files), "worker": self.index},
        )
        result = await processor.process_files(work.files)
        self.result.add(result)
        if pool.abort.is_set():
            return

        self.folders_done += 1
        await pool.tracker.settle(work.path, complete=result.files_unfinished == 0)
        await pool.store.maybe_save()

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.close()
        except (RemoteError, OSError) as e:
            log_with_context(
                self.pool.logger,
                "warning",
                "Error closing worker connection",
                {"worker": self.index, "error": str(e), "error_kind": type(e).__name__},
            )
        self.client = None
        self.processor = None


class WorkerPool:
    """
    Spread folder work across N workers, each with its own connection.

    Discovery runs as a single task on the caller's connection and only
    lists folders. Each listed folder is handed to the next worker in
    round-robin order as soon as it is found, so deletion work starts while
    discovery is still going.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        store: CheckpointStore,
        abort: asyncio.Event,
        logger: Optional[logging.Logger] = None,
        workers: int = 4,
        batch_size: int = DEFAULT_BATCH_SIZE,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        dry_run: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """
        Initialize the worker pool.

        Args:
            client_factory: Coroutine function opening a new connection
            store: Shared checkpoint store
            abort: Cooperative cancellation flag
            logger: Logger instance
            workers: Number of workers (clamped to 1..64)
            batch_size: Maximum files per remote call
            request_delay: Seconds each connection sleeps after a call
            dry_run: If True, nothing is deleted or recorded
            poll_interval: Seconds an idle worker sleeps before polling again
        """
        self.client_factory = client_factory
        self.store = store
        self.abort = abort
        self.logger = logger or logging.getLogger("historypurge")
        self.batch_size = batch_size
        self.request_delay = request_delay
        self.dry_run = dry_run
        self.poll_interval = poll_interval

        clamped = clamp_workers(workers)
        if clamped != workers:
            log_with_context(
                self.logger,
                "warning",
                "Worker count out of range, clamped",
                {"requested": workers, "workers": clamped},
            )

        self.tracker = SubtreeTracker(store, dry_run=dry_run)
        self.workers = [Worker(i, self) for i in range(clamped)]
        self.stats = {
            "folders_discovered": 0,
            "folders_skipped": 0,
        }

        self._next_worker = 0
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def queue_depths(self) -> list[int]:
        return [w.queue.qsize() for w in self.workers]

    @property
    def result(self) -> BatchResult:
        total = BatchResult()
        for worker in self.workers:
            total.add(worker.result)
        return total

    def processor_stats(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for worker in self.workers:
            if worker.processor is not None:
                for key, value in worker.processor.stats.items():
                    totals[key] = totals.get(key, 0) + value
        return totals

    def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(worker.run(self._stop), name=f"historypurge-worker-{worker.index}")
            for worker in self.workers
        ]

    def submit(self, work: FolderWork) -> None:
        worker = self.workers[self._next_worker]
        self._next_worker = (self._next_worker + 1) % len(self.workers)
        worker.queue.put_nowait(work)

    async def discover(self, client: RemoteClient, roots: Iterable[str]) -> None:
        """
        List every unfinished folder below ``roots`` and queue its files.

        Subtrees already recorded as processed are not descended into.
        """
        stack: list[tuple[str, Optional[str]]] = [
            (root, None) for root in sorted(roots, reverse=True) if not self.store.is_processed(root)
        ]

        while stack:
            if self.abort.is_set():
                return

            path, parent = stack.pop()
            try:
                listing = await list_folder(client, path, self.abort, self.logger)
            except RemoteError:
                self.stats["folders_skipped"] += 1
                await self.tracker.settle(parent, complete=False)
                continue
            if listing is None:
                self.stats["folders_skipped"] += 1
                await self.tracker.settle(parent, complete=True)
                continue
            if self.abort.is_set():
                return

            pending = [s for s in sorted(listing.subfolders) if not self.store.is_processed(s)]
            self.tracker.register(path, parent, len(pending))
            self.stats["folders_discovered"] += 1
            self.submit(FolderWork(path, list(listing.files)))

            for subfolder in reversed(pending):
                stack.append((subfolder, path))

    async def wait(self) -> None:
        """
        Block until every queue has drained.

        Raises:
            RuntimeError: If a worker stopped before its queue drained
        """
        drained = asyncio.gather(*(worker.queue.join() for worker in self.workers))
        done, _ = await asyncio.wait([drained, *self._tasks], return_when=asyncio.FIRST_COMPLETED)
        if drained in done:
            return

        drained.cancel()
        for task in done:
            # Re-raises the worker's own exception if it crashed
            task.result()
        raise RuntimeError("Worker stopped before its queue drained")

    async def shutdown(self) -> None:
        """Stop workers after their current item, close connections, save the checkpoint."""
        self._stop.set()
        if self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for worker, outcome in zip(self.workers, results):
                if isinstance(outcome, Exception):
                    log_with_context(
                        self.logger,
                        "error",
                        "Worker failed",
                        {"worker": worker.index, "error": str(outcome), "error_kind": type(outcome).__name__},
                    )
            self._tasks = []

        for worker in self.workers:
            await worker.close()

        await self.store.save()

    async def run(self, client: RemoteClient, roots: Iterable[str]) -> None:
        """Discover on ``client``, purge on the workers, then shut down."""
        self.start()
        try:
            await self.discover(client, roots)
            await self.wait()
        finally:
            await self.shutdown()
