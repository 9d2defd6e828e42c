"""Resumable purge of file version history across a remote site."""

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import Optional

import psutil

from . import __version__
from .batch import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE, BatchProcessor
from .checkpoint import DEFAULT_AUTOSAVE_INTERVAL, CheckpointStore, Counters, compute_session_key
from .client import DEFAULT_REQUEST_DELAY, ClientFactory, RateLimitedClient, RemoteClient
from .errors import AuthorizationError, RemoteError, StartupError
from .logging import log_with_context, setup_logging
from .models import BatchResult, format_size
from .pool import WorkerPool
from .walker import TreeWalker


def get_memory_usage_mb() -> float:
    """Get current memory usage in MB."""
    return psutil.Process().memory_info().rss / 1024 / 1024


class VersionPurger:
    """
    Purge the version history of every file on a remote site.

    Features:
    - Batched version loading and deletion with per-file fallback
    - Checkpointed progress, resumed on the next run for the same site and user
    - Optional worker pool with one connection per worker
    - Cooperative abort that still saves the checkpoint
    """

    def __init__(
        self,
        site: str,
        username: str,
        client_factory: ClientFactory,
        state_dir: str = ".",
        workers: int = 0,
        batch_size: int = DEFAULT_BATCH_SIZE,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        autosave_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
        dry_run: bool = False,
        log_level: str = "INFO",
        checkpoint_path: Optional[str] = None,
    ):
        """
        Initialize the purger.

        Args:
            site: Identifier of the remote site (usually its URL)
            username: Identity the client authenticates as
            client_factory: Coroutine function opening a new connection
            state_dir: Directory holding the checkpoint file
            workers: 0 for the single-task engine, otherwise the worker pool size (max 64)
            batch_size: Maximum files per remote call
            request_delay: Seconds slept after every remote call
            autosave_interval: Seconds between periodic checkpoint saves
            dry_run: If True, only report what would be deleted
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            checkpoint_path: Explicit checkpoint file, overrides the derived name

        Raises:
            ValueError: If invalid parameters are provided
        """
        if not site or not site.strip():
            raise ValueError("site must not be empty")

        if workers < 0:
            raise ValueError(f"workers must be >= 0, got {workers}")

        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")

        if request_delay < 0:
            raise ValueError(f"request_delay must be >= 0, got {request_delay}")

        if autosave_interval < 0:
            raise ValueError(f"autosave_interval must be >= 0, got {autosave_interval}")

        self.site = site.strip()
        self.username = username
        self.client_factory = client_factory
        self.workers = workers
        self.batch_size = batch_size
        self.request_delay = request_delay
        self.autosave_interval = autosave_interval
        self.dry_run = dry_run

        if checkpoint_path:
            self.checkpoint_path = Path(checkpoint_path)
        else:
            self.checkpoint_path = Path(state_dir) / compute_session_key(self.site, username)

        self.abort = asyncio.Event()
        self.store: Optional[CheckpointStore] = None
        self.walker: Optional[TreeWalker] = None
        self.pool: Optional[WorkerPool] = None

        # Logging
        self.logger = setup_logging("historypurge", log_level)

        # Progress tracking
        self.start_time = time.time()
        self.progress_interval = 30  # Log progress every 30 seconds
        self.peak_memory_mb = 0.0

    def request_abort(self) -> None:
        """Ask the purge to stop at the next safe point."""
        if not self.abort.is_set():
            self.abort.set()
            self.logger.warning("Aborting...")

    async def _connect(self) -> RateLimitedClient:
        try:
            client = await self.client_factory()
        except (RemoteError, OSError) as e:
            raise StartupError(f"Could not connect to {self.site}: {e}") from e
        return RateLimitedClient(client, self.request_delay)

    async def _list_roots(self, client: RemoteClient) -> list[str]:
        try:
            return await client.list_root_folders()
        except AuthorizationError as e:
            raise StartupError(f"Access denied to {self.site}: {e}") from e
        except RemoteError as e:
            raise StartupError(f"Could not list the top-level folders of {self.site}: {e}") from e

    def _result(self) -> BatchResult:
        if self.pool is not None:
            return self.pool.result
        if self.walker is not None:
            return self.walker.result
        return BatchResult()

    def _processor_stats(self) -> dict[str, int]:
        if self.pool is not None:
            return self.pool.processor_stats()
        if self.walker is not None:
            return dict(self.walker.processor.stats)
        return {}

    def _sample_memory(self) -> float:
        """Current memory usage in MB, remembered if it is the highest seen."""
        current = get_memory_usage_mb()
        self.peak_memory_mb = max(self.peak_memory_mb, current)
        return current

    async def _background_progress_reporter(self) -> None:
        """Log progress every ``progress_interval`` seconds."""
        while True:
            await asyncio.sleep(self.progress_interval)
            if self.store is None:
                continue

            run, _, processed = await self.store.snapshot()
            current_time = time.time()
            elapsed = current_time - self.start_time

            progress_data = {
                "elapsed_seconds": round(elapsed, 1),
                "files_processed": run.files,
                "folders_processed": run.folders,
                "versions_deleted": run.versions,
                "bytes_freed": run.bytes_freed,
                "files_per_second": round(run.files / elapsed, 1) if elapsed > 0 else 0.0,
                "memory_mb": round(self._sample_memory(), 1),
            }
            if self.dry_run:
                result = self._result()
                progress_data["versions_to_delete"] = result.versions_to_delete
                progress_data["bytes_to_free"] = result.bytes_to_free

            # DEBUG-only detailed metrics
            if self.logger.isEnabledFor(logging.DEBUG):
                progress_data["processed_paths"] = processed
                progress_data.update(self._processor_stats())
                if self.pool is not None:
                    progress_data["queue_depths"] = self.pool.queue_depths
                    progress_data["open_folders"] = self.pool.tracker.open_folders
                if self.walker is not None:
                    progress_data["current_folder"] = self.walker.current_folder

            log_with_context(self.logger, "info", "Progress update", progress_data)

    async def purge(self) -> dict:
        """
        Run the purge to completion, abort or fatal failure.

        Returns:
            Dictionary with run and session statistics

        Raises:
            StartupError: If the site cannot be reached or its root listed
        """
        self.start_time = time.time()
        mode = "DRY RUN" if self.dry_run else "PURGE"

        log_with_context(
            self.logger,
            "info",
            f"Starting version history purge - {mode} MODE",
            {
                "version": __version__,
                "site": self.site,
                "username": self.username,
                "checkpoint_path": str(self.checkpoint_path),
                "workers": self.workers,
                "batch_size": self.batch_size,
                "request_delay": self.request_delay,
                "autosave_interval": self.autosave_interval,
                "dry_run": self.dry_run,
                "progress_interval_seconds": self.progress_interval,
            },
        )

        self.store = await CheckpointStore.open(
            self.checkpoint_path,
            logger=self.logger,
            autosave_interval=self.autosave_interval,
            read_only=self.dry_run,
        )

        client = await self._connect()
        progress_task: Optional[asyncio.Task] = None
        try:
            roots = await self._list_roots(client)
            log_with_context(self.logger, "info", "Top-level folders found", {"folders": len(roots)})

            progress_task = asyncio.create_task(self._background_progress_reporter())
            try:
                if self.workers > 0:
                    self.pool = WorkerPool(
                        self.client_factory,
                        self.store,
                        self.abort,
                        logger=self.logger,
                        workers=self.workers,
                        batch_size=self.batch_size,
                        request_delay=self.request_delay,
                        dry_run=self.dry_run,
                    )
                    await self.pool.run(client, roots)
                else:
                    processor = BatchProcessor(
                        client,
                        self.store,
                        self.abort,
                        logger=self.logger,
                        batch_size=self.batch_size,
                        dry_run=self.dry_run,
                    )
                    self.walker = TreeWalker(client, self.store, processor, self.abort, logger=self.logger)
                    await self.walker.clean_all(roots)
            finally:
                # The checkpoint is flushed however the walk ended
                await self.store.save()
        finally:
            if progress_task is not None:
                progress_task.cancel()
                try:
                    await progress_task
                except asyncio.CancelledError:
                    pass  # Expected
                except Exception as e:
                    log_with_context(
                        self.logger,
                        "error",
                        "Progress reporter failed",
                        {"error": str(e), "error_kind": type(e).__name__},
                    )
            await client.close()

        return await self._final_stats()

    async def _final_stats(self) -> dict:
        run, session, processed = await self.store.snapshot()
        result = self._result()
        duration = time.time() - self.start_time
        self._sample_memory()

        final_stats = {
            "duration_seconds": round(duration, 2),
            "files_processed": run.files,
            "folders_processed": run.folders,
            "versions_deleted": run.versions,
            "bytes_freed": run.bytes_freed,
            "mb_freed": round(run.bytes_freed / (1024 * 1024), 2),
            "session_files_processed": session.files,
            "session_folders_processed": session.folders,
            "session_versions_deleted": session.versions,
            "session_bytes_freed": session.bytes_freed,
            "aborted": self.abort.is_set(),
            "peak_memory_mb": round(self.peak_memory_mb, 1),
        }
        if self.dry_run:
            final_stats["versions_to_delete"] = result.versions_to_delete
            final_stats["bytes_to_free"] = result.bytes_to_free
        final_stats.update(self._processor_stats())

        log_with_context(
            self.logger,
            "info",
            f"This run: processed {run.files} files and {run.folders} folders; "
            f"deleted {run.versions} past versions ({format_size(run.bytes_freed)})",
            {"processed_paths": processed},
        )
        log_with_context(self.logger, "info", _cumulative_message(session), {})
        log_with_context(self.logger, "info", "Purge operation completed", final_stats)

        return final_stats


def _cumulative_message(session: Counters) -> str:
    return (
        f"Cumulative: processed {session.files} files and {session.folders} folders; "
        f"deleted {session.versions} past versions ({format_size(session.bytes_freed)})"
    )


async def async_main(
    site: str,
    username: str,
    client_factory: ClientFactory,
    state_dir: str = ".",
    workers: int = 0,
    batch_size: int = DEFAULT_BATCH_SIZE,
    request_delay: float = DEFAULT_REQUEST_DELAY,
    autosave_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
    dry_run: bool = False,
    log_level: str = "INFO",
    checkpoint_path: Optional[str] = None,
) -> dict:
    """
    Async entry point for the purger.

    SIGINT and SIGTERM request a cooperative abort instead of killing the
    process, so the checkpoint is saved before returning.

    Returns:
        Operation statistics
    """
    purger = VersionPurger(
        site=site,
        username=username,
        client_factory=client_factory,
        state_dir=state_dir,
        workers=workers,
        batch_size=batch_size,
        request_delay=request_delay,
        autosave_interval=autosave_interval,
        dry_run=dry_run,
        log_level=log_level,
        checkpoint_path=checkpoint_path,
    )

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, purger.request_abort)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass

    try:
        return await purger.purge()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
