"""Persisted purge progress: load, save, staleness and the mutation boundary."""

import asyncio
import json
import logging
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import aiofiles
import aiofiles.os

from .logging import log_with_context

SCHEMA_VERSION = 1
MAX_SESSION_AGE = timedelta(days=7)
MAX_CONTINUATION_GAP = timedelta(days=1)
DEFAULT_AUTOSAVE_INTERVAL = 60.0

SESSION_KEY_PREFIX = "historypurge"
_UNSAFE_KEY_CHARS = " +-:/\\<>()*.?@"
_KEY_TRANSLATION = str.maketrans({c: "_" for c in _UNSAFE_KEY_CHARS})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Counters:
    files: int = 0
    folders: int = 0
    versions: int = 0
    bytes_freed: int = 0


@dataclass
class Checkpoint:
    """
    Progress of a purge session.

    ``run`` counters cover the current process only and are never persisted.
    ``session`` counters accumulate over every run that resumed this session.
    """

    started_at: datetime
    last_continued_at: datetime
    processed: set[str] = field(default_factory=set)
    session: Counters = field(default_factory=Counters)
    run: Counters = field(default_factory=Counters)

    @classmethod
    def fresh(cls, now: Optional[datetime] = None) -> "Checkpoint":
        now = now or utcnow()
        return cls(started_at=now, last_continued_at=now)

    def is_processed(self, path: str) -> bool:
        return path in self.processed

    def record_file(self, path: str, versions: int = 0, bytes_freed: int = 0) -> bool:
        """Mark a file processed. Returns False (and counts nothing) if it already was."""
        if path in self.processed:
            return False
        self.processed.add(path)
        for counters in (self.run, self.session):
            counters.files += 1
            counters.versions += versions
            counters.bytes_freed += bytes_freed
        return True

    def record_folder(self, path: str) -> bool:
        """Mark a folder processed. Returns False if it already was."""
        if path in self.processed:
            return False
        self.processed.add(path)
        self.run.folders += 1
        self.session.folders += 1
        return True

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """A session too old to resume against a remote tree that may have changed."""
        now = now or utcnow()
        return (now - self.started_at) >= MAX_SESSION_AGE or (now - self.last_continued_at) >= MAX_CONTINUATION_GAP

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "started_at": self.started_at.isoformat(),
            "last_continued_at": self.last_continued_at.isoformat(),
            "processed": sorted(self.processed),
            "files": self.session.files,
            "folders": self.session.folders,
            "versions": self.session.versions,
            "bytes_freed": self.session.bytes_freed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        """
        Build a checkpoint from its persisted form.

        Raises:
            ValueError: On an unknown schema version or malformed field
            KeyError: If a required field is missing
        """
        schema = data.get("schema_version")
        if schema != SCHEMA_VERSION:
            raise ValueError(f"Unsupported checkpoint schema_version: {schema!r}")

        processed = data["processed"]
        if not isinstance(processed, list) or not all(isinstance(p, str) for p in processed):
            raise ValueError("Checkpoint 'processed' must be a list of path strings")

        return cls(
            started_at=_parse_timestamp(data["started_at"]),
            last_continued_at=_parse_timestamp(data["last_continued_at"]),
            processed=set(processed),
            session=Counters(
                files=int(data["files"]),
                folders=int(data["folders"]),
                versions=int(data["versions"]),
                bytes_freed=int(data["bytes_freed"]),
            ),
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_session_key(site: str, username: str) -> str:
    """
    Derive the checkpoint file name for a site and identity.

    The same site and username always map to the same file, so re-running
    resumes the same session. CRC-32 of the normalised key is enough to keep
    different targets apart.
    """
    normalized = site.strip().lower()
    if normalized.startswith("https://"):
        normalized = normalized[len("https://") :]
    key = f"{normalized.translate(_KEY_TRANSLATION)}_{username.strip()}"
    digest = zlib.crc32(key.encode("utf-8")) & 0xFFFFFFFF
    return f"{SESSION_KEY_PREFIX}_{digest}.json"


async def load_checkpoint(
    path: Path,
    logger: logging.Logger,
    clock: Callable[[], datetime] = utcnow,
) -> Checkpoint:
    """
    Load a checkpoint, falling back to a fresh one.

    Never raises: an unreadable, malformed or stale checkpoint is replaced by
    a fresh one so the purge itself can always proceed.
    """
    checkpoint: Optional[Checkpoint] = None

    if await aiofiles.os.path.exists(path):
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
            checkpoint = Checkpoint.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            log_with_context(
                logger,
                "error",
                "Could not read checkpoint, starting a new session",
                {"path": str(path), "error": str(e), "error_kind": type(e).__name__},
            )
            checkpoint = None

    now = clock()
    if checkpoint is not None and checkpoint.is_stale(now):
        log_with_context(
            logger,
            "info",
            "Discarding stale checkpoint",
            {
                "path": str(path),
                "started_at": checkpoint.started_at.isoformat(),
                "last_continued_at": checkpoint.last_continued_at.isoformat(),
            },
        )
        checkpoint = None

    if checkpoint is None:
        return Checkpoint.fresh(now)

    checkpoint.last_continued_at = now
    log_with_context(
        logger,
        "info",
        "Resuming session",
        {
            "path": str(path),
            "started_at": checkpoint.started_at.isoformat(),
            "processed": len(checkpoint.processed),
        },
    )
    return checkpoint


async def save_checkpoint(
    checkpoint: Checkpoint,
    path: Path,
    logger: logging.Logger,
    clock: Callable[[], datetime] = utcnow,
) -> bool:
    """
    Write a checkpoint atomically. Returns False if the write failed.

    Failures are logged, never raised: losing durability degrades resuming
    but must not stop the purge.
    """
    return await _write_document(_stamped_document(checkpoint, clock), path, logger)


def _stamped_document(checkpoint: Checkpoint, clock: Callable[[], datetime]) -> dict[str, Any]:
    """Mark the checkpoint continued now and return the document to persist."""
    checkpoint.last_continued_at = clock()
    return checkpoint.to_dict()


async def _write_document(document: dict[str, Any], path: Path, logger: logging.Logger) -> bool:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        if str(path.parent) not in ("", "."):
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document))
        await aiofiles.os.replace(tmp_path, path)
    except OSError as e:
        log_with_context(
            logger,
            "error",
            "Could not write checkpoint",
            {"path": str(path), "error": str(e), "error_kind": type(e).__name__},
        )
        return False

    logger.debug(f"Checkpoint written to {path}")
    return True


class CheckpointStore:
    """
    Owner of the live checkpoint.

    All components record progress through this object. Mutations happen
    under one lock, held only while the in-memory state changes, never
    across a remote call or a file write.
    """

    def __init__(
        self,
        path: Path,
        checkpoint: Checkpoint,
        logger: Optional[logging.Logger] = None,
        autosave_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        read_only: bool = False,
    ):
        if autosave_interval < 0:
            raise ValueError(f"autosave_interval must be >= 0, got {autosave_interval}")

        self.path = Path(path)
        self.checkpoint = checkpoint
        self.logger = logger or logging.getLogger("historypurge")
        self.autosave_interval = autosave_interval
        self.clock = clock
        self.saves = 0
        # Dry runs consult the checkpoint but never write it
        self.read_only = read_only

        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._last_save = time.monotonic()

    @classmethod
    async def open(
        cls,
        path: Path,
        logger: Optional[logging.Logger] = None,
        autosave_interval: float = DEFAULT_AUTOSAVE_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        read_only: bool = False,
    ) -> "CheckpointStore":
        """Load the checkpoint at ``path`` (or start fresh) and wrap it in a store."""
        logger = logger or logging.getLogger("historypurge")
        checkpoint = await load_checkpoint(Path(path), logger, clock)
        return cls(
            path,
            checkpoint,
            logger=logger,
            autosave_interval=autosave_interval,
            clock=clock,
            read_only=read_only,
        )

    def is_processed(self, path: str) -> bool:
        # Set membership is a single atomic step on the event loop
        return self.checkpoint.is_processed(path)

    async def record_file(self, path: str, versions: int = 0, bytes_freed: int = 0) -> bool:
        async with self._lock:
            return self.checkpoint.record_file(path, versions, bytes_freed)

    async def record_folder(self, path: str) -> bool:
        async with self._lock:
            return self.checkpoint.record_folder(path)

    async def snapshot(self) -> tuple[Counters, Counters, int]:
        """Copy of (run counters, session counters, processed count)."""
        async with self._lock:
            cp = self.checkpoint
            return (
                Counters(**vars(cp.run)),
                Counters(**vars(cp.session)),
                len(cp.processed),
            )

    async def save(self) -> bool:
        if self.read_only:
            return False
        async with self._lock:
            document = _stamped_document(self.checkpoint, self.clock)
        async with self._write_lock:
            ok = await _write_document(document, self.path, self.logger)
        self._last_save = time.monotonic()
        if ok:
            self.saves += 1
            log_with_context(
                self.logger,
                "info",
                "Checkpoint saved",
                {"path": str(self.path), "processed": len(document["processed"])},
            )
        return ok

    async def maybe_save(self) -> bool:
        """Save if the autosave interval has elapsed since the last save."""
        if time.monotonic() - self._last_save < self.autosave_interval:
            return False
        return await self.save()
