"""Value types for folders, files and version records."""

from dataclasses import dataclass, field

SIZE_SUFFIXES = ("B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")


@dataclass(frozen=True)
class VersionRecord:
    """One historical revision of a file."""

    size: int
    label: str = ""


@dataclass
class ResourceNode:
    """
    A folder as returned by a listing call.

    Folders are identified by their path alone; the child lists hold the paths
    of the immediate subfolders and files.
    """

    path: str
    subfolders: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


@dataclass
class LeafResource:
    """A file and the versions loaded for it."""

    path: str
    versions: list[VersionRecord] = field(default_factory=list)

    @property
    def version_bytes(self) -> int:
        return sum(v.size for v in self.versions)


@dataclass
class BatchResult:
    """Totals for a call to BatchProcessor.process_files()."""

    files_processed: int = 0
    versions_deleted: int = 0
    bytes_freed: int = 0
    # Dry run only: what would have been deleted
    versions_to_delete: int = 0
    bytes_to_free: int = 0
    # Files left unrecorded (failed, skipped or cut short by abort)
    files_unfinished: int = 0

    def add(self, other: "BatchResult") -> None:
        self.files_processed += other.files_processed
        self.versions_deleted += other.versions_deleted
        self.bytes_freed += other.bytes_freed
        self.versions_to_delete += other.versions_to_delete
        self.bytes_to_free += other.bytes_to_free
        self.files_unfinished += other.files_unfinished


def format_size(num_bytes: int) -> str:
    """Render a byte count with a binary unit suffix, e.g. ``1.5 MB``."""
    if num_bytes == 0:
        return "0 B"

    value = float(num_bytes)
    exponent = 0
    while value >= 1024.0:
        value /= 1024.0
        exponent += 1
    if exponent >= len(SIZE_SUFFIXES):
        return f"{num_bytes} B"

    text = f"{value:.2f}".rstrip("0")
    if text.endswith("."):
        text += "0"
    return f"{text} {SIZE_SUFFIXES[exponent]}"
