"""Pytest fixtures for change block tracking applier tests."""

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest
import structlog

from cbt_applier.config import Settings
from cbt_applier.vsphere_client import VSphereClient


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(
        server="vcenter.test",
        user="administrator@vsphere.local",
        password="secret",
        task_timeout_seconds=5,
        task_poll_interval_seconds=0.01,
        snapshot_prefix="cbt-apply",
        skip_unchanged=False,
    )


@pytest.fixture
def make_vm() -> Callable[..., MagicMock]:
    """Factory for mock VirtualMachine objects."""

    def _make_vm(name: str, cbt_enabled: bool = False) -> MagicMock:
        vm = MagicMock()
        vm.name = name
        vm.config.changeTrackingEnabled = cbt_enabled
        return vm

    return _make_vm


@pytest.fixture
def mock_client(settings: Settings) -> MagicMock:
    """Create a mock vSphere client with a live session."""
    client = MagicMock(spec=VSphereClient)
    client.settings = settings
    client.ensure_session.return_value = None
    client.get_current_setting.return_value = True
    return client


@pytest.fixture
def inventory(make_vm: Callable[..., MagicMock]) -> dict[str, MagicMock]:
    """A small VM inventory keyed by name."""
    return {name: make_vm(name) for name in ("srv1", "srv2", "db1")}


@pytest.fixture
def resolver(inventory: dict[str, MagicMock]) -> Callable[[str], object]:
    """resolve_vms side effect backed by the inventory fixture."""
    import fnmatch

    from cbt_applier.models import NotFound

    def _resolve(pattern: str) -> object:
        matches = [vm for name, vm in inventory.items() if fnmatch.fnmatchcase(name, pattern)]
        return matches or NotFound(pattern)

    return _resolve
