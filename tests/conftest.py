"""Shared test fixtures for cityctl tests."""

import pytest

from cityctl.beads import MemBeadStore
from cityctl.events import MemoryEventRecorder
from cityctl.session import FakeSessionProvider, ReconcileOps


@pytest.fixture
def city_dir(tmp_path, monkeypatch):
    """Create a minimal city: .gc/ plus a city.yaml with one agent."""
    city = tmp_path / "demo"
    (city / ".gc").mkdir(parents=True)
    (city / "city.yaml").write_text("""
city:
  name: demo
agents:
  - name: mayor
    command: claude
""")
    monkeypatch.delenv("CITY_DIR", raising=False)
    return city


@pytest.fixture
def fake_provider():
    return FakeSessionProvider()


@pytest.fixture
def ops(fake_provider):
    return ReconcileOps(fake_provider)


@pytest.fixture
def mem_store():
    return MemBeadStore()


@pytest.fixture
def recorder():
    return MemoryEventRecorder()
