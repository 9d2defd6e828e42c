"""Batched loading and deletion of file version history."""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Sequence, TypeVar

from .checkpoint import CheckpointStore
from .client import RemoteClient
from .errors import AuthorizationError, NotInitializedError, RemoteError, TransientError
from .logging import log_remote_failure, log_with_context
from .models import BatchResult, LeafResource, format_size

DEFAULT_BATCH_SIZE = 50
MAX_BATCH_SIZE = 1000

T = TypeVar("T")


class BatchProcessor:
    """
    Delete the version history of a folder's files in bounded batches.

    For each batch, versions are loaded with one remote call and deleted with
    one more. When a batched call fails (after one retry for transient
    errors), the same work is repeated file by file and files that still fail
    are left unrecorded so a later run picks them up.

    A file is recorded in the checkpoint only once its deletion was accepted.
    """

    def __init__(
        self,
        client: RemoteClient,
        store: CheckpointStore,
        abort: asyncio.Event,
        logger: Optional[logging.Logger] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
    ):
        """
        Initialize the batch processor.

        Args:
            client: Connection used for every remote call of this processor
            store: Checkpoint store progress is recorded into
            abort: Cooperative cancellation flag
            logger: Logger for warnings and batch summaries
            batch_size: Maximum files per remote call
            dry_run: If True, load and count versions but delete nothing

        Raises:
            ValueError: If batch_size is out of range
        """
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")

        self.client = client
        self.store = store
        self.abort = abort
        self.logger = logger or logging.getLogger("historypurge")
        self.batch_size = batch_size
        self.dry_run = dry_run

        self.stats = {
            "batches": 0,
            "batch_retries": 0,
            "batch_fallbacks": 0,
            "files_skipped": 0,
        }

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()

    async def process_files(self, files: Iterable[str]) -> BatchResult:
        """
        Purge the version history of every file not yet processed.

        Args:
            files: Paths of the files of one folder

        Returns:
            Totals for the files recorded by this call. ``files_unfinished``
            counts the files this call could not record.
        """
        result = BatchResult()
        pending = [path for path in dict.fromkeys(files) if not self.store.is_processed(path)]

        for start in range(0, len(pending), self.batch_size):
            if self.aborted:
                break
            batch = pending[start : start + self.batch_size]
            result.add(await self._process_batch(batch))

        if not self.dry_run:
            result.files_unfinished = len(pending) - result.files_processed
        return result

    async def _process_batch(self, batch: list[str]) -> BatchResult:
        result = BatchResult()
        self.stats["batches"] += 1

        leaves = await self._load_versions(batch)
        if not leaves:
            return result

        with_history: list[LeafResource] = []
        for leaf in leaves:
            if leaf.versions:
                with_history.append(leaf)
            elif not self.dry_run and await self.store.record_file(leaf.path):
                # Nothing to delete, so nothing can be lost by recording it now
                result.files_processed += 1

        if self.dry_run:
            for leaf in with_history:
                result.versions_to_delete += len(leaf.versions)
                result.bytes_to_free += leaf.version_bytes
                self.logger.debug(f"Would delete {len(leaf.versions)} versions of {leaf.path}")
            return result

        if with_history and not self.aborted:
            await self._delete_versions(with_history, result)

        if result.versions_deleted > 0:
            log_with_context(
                self.logger,
                "info",
                f"Batch deleted {result.versions_deleted} past versions ({format_size(result.bytes_freed)})",
                {
                    "files": result.files_processed,
                    "versions_deleted": result.versions_deleted,
                    "bytes_freed": result.bytes_freed,
                },
            )

        await self.store.maybe_save()
        return result

    async def _call_with_retry(self, call: Callable[[Sequence[str]], Awaitable[T]], paths: list[str]) -> T:
        """Run a batched call, retrying it once on a transient failure."""
        try:
            return await call(paths)
        except TransientError as e:
            if self.aborted:
                raise
            self.stats["batch_retries"] += 1
            log_remote_failure(self.logger, "warning", "Transient failure, retrying batch", e, files=len(paths))
            return await call(paths)

    async def _load_versions(self, batch: list[str]) -> list[LeafResource]:
        try:
            versions = await self._call_with_retry(self.client.load_versions, batch)
        except RemoteError as e:
            if self.aborted:
                return []
            self.stats["batch_fallbacks"] += 1
            log_remote_failure(
                self.logger,
                "warning",
                "Failed to load versions for batch, retrying files individually",
                e,
                files=len(batch),
            )
            return await self._load_versions_individually(batch)

        return self._collect(batch, versions)

    async def _load_versions_individually(self, batch: list[str]) -> list[LeafResource]:
        leaves: list[LeafResource] = []
        for path in batch:
            if self.aborted:
                break
            try:
                versions = await self.client.load_versions([path])
            except RemoteError as e:
                self.stats["files_skipped"] += 1
                message = "Skipping file requiring elevated permission" if isinstance(
                    e, AuthorizationError
                ) else "Failed to load versions"
                log_remote_failure(self.logger, "warning", message, e, path=path)
                continue
            leaves.extend(self._collect([path], versions))
        return leaves

    def _collect(self, paths: list[str], versions: dict) -> list[LeafResource]:
        leaves = []
        for path in paths:
            records = versions.get(path)
            if records is None:
                # No version data came back; leave it for a later run
                self.stats["files_skipped"] += 1
                log_with_context(self.logger, "warning", "No version data returned", {"path": path})
                continue
            leaves.append(LeafResource(path, list(records)))
        return leaves

    async def _delete_versions(self, leaves: list[LeafResource], result: BatchResult) -> None:
        paths = [leaf.path for leaf in leaves]
        try:
            await self._call_with_retry(self.client.delete_all_versions, paths)
        except NotInitializedError:
            # Not a failure: find the files without loaded history one by one
            await self._delete_versions_individually(leaves, result)
            return
        except RemoteError as e:
            if self.aborted:
                return
            self.stats["batch_fallbacks"] += 1
            log_remote_failure(
                self.logger,
                "warning",
                "Failed to delete version histories for batch, retrying files individually",
                e,
                files=len(paths),
            )
            await self._delete_versions_individually(leaves, result)
            return

        for leaf in leaves:
            await self._record_deleted(leaf, result)

    async def _delete_versions_individually(self, leaves: list[LeafResource], result: BatchResult) -> None:
        for leaf in leaves:
            if self.aborted:
                break
            try:
                await self.client.delete_all_versions([leaf.path])
            except NotInitializedError:
                # Never loaded means no history: processed with nothing deleted
                if await self.store.record_file(leaf.path):
                    result.files_processed += 1
                continue
            except RemoteError as e:
                self.stats["files_skipped"] += 1
                log_remote_failure(self.logger, "warning", "Failed to delete version history", e, path=leaf.path)
                continue
            await self._record_deleted(leaf, result)

    async def _record_deleted(self, leaf: LeafResource, result: BatchResult) -> None:
        if await self.store.record_file(leaf.path, len(leaf.versions), leaf.version_bytes):
            result.files_processed += 1
            result.versions_deleted += len(leaf.versions)
            result.bytes_freed += leaf.version_bytes
