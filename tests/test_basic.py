"""Basic tests for historypurge."""

import pytest


def test_version():
    """Test that version is defined and matches pyproject.toml."""
    import tomllib
    from pathlib import Path

    from historypurge import __version__, _source_tree_version

    # Read version from pyproject.toml (single source of truth)
    pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
    with open(pyproject_path, "rb") as f:
        pyproject = tomllib.load(f)
        expected_version = pyproject["project"]["version"]

    # Version should be a valid semantic version format
    assert __version__.count(".") >= 1, f"Invalid version format: {__version__}"
    # A source checkout reports the pyproject.toml version
    assert _source_tree_version() == expected_version


def test_imports():
    """Test that all modules can be imported."""
    from historypurge import batch, checkpoint, cli, client, logging, pool, purger, walker

    assert batch is not None
    assert checkpoint is not None
    assert cli is not None
    assert client is not None
    assert logging is not None
    assert pool is not None
    assert purger is not None
    assert walker is not None


@pytest.mark.asyncio
async def test_purger_initialization(tmp_path):
    """Test that VersionPurger can be initialized."""
    from fakes import FakeRemoteStore

    from historypurge.purger import VersionPurger

    purger = VersionPurger(
        site="https://example.sharepoint.com/sites/team",
        username="alice@example.com",
        client_factory=FakeRemoteStore().factory,
        state_dir=str(tmp_path),
        batch_size=25,
        log_level="INFO",
    )

    assert purger.batch_size == 25
    assert purger.workers == 0
    assert purger.dry_run is False
    assert purger.checkpoint_path.parent == tmp_path
    assert purger.checkpoint_path.name.startswith("historypurge_")


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"batch_size": 0}, "batch_size must be between"),
        ({"batch_size": 5000}, "batch_size must be between"),
        ({"workers": -1}, "workers must be >= 0"),
        ({"request_delay": -0.1}, "request_delay must be >= 0"),
        ({"autosave_interval": -1}, "autosave_interval must be >= 0"),
        ({"site": "   "}, "site must not be empty"),
    ],
)
def test_purger_validation(kwargs, message):
    """Test that invalid parameters are rejected."""
    from fakes import FakeRemoteStore

    from historypurge.purger import VersionPurger

    params = {
        "site": "https://example.sharepoint.com",
        "username": "alice",
        "client_factory": FakeRemoteStore().factory,
    }
    params.update(kwargs)

    with pytest.raises(ValueError, match=message):
        VersionPurger(**params)
