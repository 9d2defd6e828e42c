"""historypurge - Resumable bulk purge of file version history in remote document stores."""

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path


def _source_tree_version() -> str:
    """Version from pyproject.toml when running from a checkout."""
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            return tomllib.load(f)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "unknown"


try:
    __version__ = version("historypurge")
except PackageNotFoundError:
    __version__ = _source_tree_version()
