"""Depth-first, resumable traversal of the remote folder tree."""

import asyncio
import logging
from typing import Iterable, Optional

from .batch import BatchProcessor
from .checkpoint import CheckpointStore
from .client import RemoteClient
from .errors import AuthorizationError, RemoteError, TransientError
from .logging import log_remote_failure, log_with_context
from .models import BatchResult, ResourceNode


class TreeWalker:
    """
    Visit folders depth-first and purge the version history of their files.

    Subfolders are visited in lexicographic path order. A folder is recorded
    processed only after its files and every subfolder were handled, so a
    resumed run skips exactly the subtrees that were finished. A folder with
    a file or subfolder left for a later run stays unrecorded, and so do its
    ancestors; subfolders denied to the identity do not count against it.

    The traversal keeps an explicit stack of enter/exit frames instead of
    recursing, which keeps very deep trees within the interpreter's limits.
    """

    def __init__(
        self,
        client: RemoteClient,
        store: CheckpointStore,
        processor: BatchProcessor,
        abort: asyncio.Event,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.store = store
        self.processor = processor
        self.abort = abort
        self.logger = logger or logging.getLogger("historypurge")

        self.result = BatchResult()
        self.stats = {
            "folders_listed": 0,
            "folders_skipped": 0,
        }
        # Folder currently being worked on (for progress diagnostics)
        self.current_folder: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()

    async def clean_all(self, folders: Iterable[str]) -> None:
        """Clean each top-level folder in lexicographic order."""
        for folder in sorted(folders):
            if self.aborted:
                break
            await self.clean(folder)

    async def clean(self, folder: str) -> None:
        """
        Purge every file below ``folder``.

        Args:
            folder: Path of the folder to clean
        """
        # (path, parent, exiting): an exit frame sits below the folder's children
        stack: list[tuple[str, Optional[str], bool]] = [(folder, None, False)]
        # Folders with a file or subtree left for a later run
        incomplete: set[str] = set()

        while stack:
            if self.aborted:
                return

            path, parent, exiting = stack.pop()

            if exiting:
                if path in incomplete or self.processor.dry_run:
                    incomplete.discard(path)
                    if parent is not None:
                        incomplete.add(parent)
                    continue
                await self.store.record_folder(path)
                await self.store.maybe_save()
                continue

            if self.store.is_processed(path):
                continue

            try:
                listing = await self.list_folder(path)
            except RemoteError:
                if parent is not None:
                    incomplete.add(parent)
                continue
            if listing is None or self.aborted:
                continue

            self.current_folder = path
            log_with_context(
                self.logger,
                "info",
                "Cleaning folder",
                {"path": path, "files": len(listing.files), "subfolders": len(listing.subfolders)},
            )

            result = await self.processor.process_files(listing.files)
            self.result.add(result)
            if self.aborted:
                return
            if result.files_unfinished:
                incomplete.add(path)

            stack.append((path, parent, True))
            for subfolder in sorted(listing.subfolders, reverse=True):
                stack.append((subfolder, path, False))

    async def list_folder(self, path: str) -> Optional[ResourceNode]:
        """List a folder, keeping count of listed and skipped folders."""
        try:
            listing = await list_folder(self.client, path, self.abort, self.logger)
        except RemoteError:
            self.stats["folders_skipped"] += 1
            raise
        if listing is None:
            self.stats["folders_skipped"] += 1
        else:
            self.stats["folders_listed"] += 1
        return listing


async def list_folder(
    client: RemoteClient,
    path: str,
    abort: asyncio.Event,
    logger: logging.Logger,
) -> Optional[ResourceNode]:
    """
    List a folder's immediate children, retrying once on a transient failure.

    Returns None for a folder the identity may not read: its subtree is
    skipped for good and does not hold back its parent. Any other remote
    failure is logged and re-raised so the caller leaves the parent
    unrecorded and a later run retries the subtree.
    """
    try:
        try:
            return await client.list_children(path)
        except TransientError as e:
            if abort.is_set():
                raise
            log_remote_failure(logger, "warning", "Transient failure, retrying folder listing", e, path=path)
            return await client.list_children(path)
    except AuthorizationError as e:
        # A folder may legitimately need more rights than the identity has
        log_remote_failure(logger, "debug", "Skipping folder requiring elevated permission", e, path=path)
        return None
    except RemoteError as e:
        log_remote_failure(logger, "warning", "Failed to list folder, skipping subtree", e, path=path)
        raise
