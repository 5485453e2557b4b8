"""
Pytest fixtures and test configuration for boothsync tests.
"""

import time
from typing import Callable, Dict, List, Optional

import pytest

from boothsync.storage import InMemoryObjectStore, SQLiteStateStore
from boothsync.sync.notifications import NotificationBus
from boothsync.sync.orchestrator import RetryPolicy, SyncOrchestrator
from boothsync.types import Entity, EntityKind, EntityRef


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.boothsync and AWS environment."""
    home = tmp_path / "home"
    monkeypatch.setenv("BOOTHSYNC_HOME", str(home))
    for name in (
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "S3_BUCKET_NAME",
        "S3_REGION",
        "BOOTHSYNC_BACKEND",
        "BOOTHSYNC_BACKEND_URL",
        "BOOTHSYNC_AUTH_TOKEN",
        "BOOTHSYNC_DEVICE_ID",
        "BOOTHSYNC_PREFIX",
        "BOOTHSYNC_INTERVAL_MINUTES",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def store(tmp_path):
    return SQLiteStateStore(tmp_path / "booth-a.db", device_id="BOOTH-A-000001")


@pytest.fixture
def other_store(tmp_path):
    return SQLiteStateStore(tmp_path / "booth-b.db", device_id="BOOTH-B-000002")


@pytest.fixture
def remote():
    return InMemoryObjectStore()


@pytest.fixture
def bus():
    bus = NotificationBus()
    yield bus
    bus.close()


@pytest.fixture
def sleeps():
    """Delays requested by RetryPolicy, recorded instead of slept."""
    return []


@pytest.fixture
def retry(sleeps):
    return RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=8.0, sleep=sleeps.append)


@pytest.fixture
def make_orchestrator(bus, retry):
    """Factory building an orchestrator for a given device."""

    def factory(store, remote, device_id=None, **kwargs):
        kwargs.setdefault("retry", retry)
        return SyncOrchestrator(
            store, remote, bus, device_id=device_id or store.device_id, **kwargs
        )

    return factory


def template(name: str, layout: str = "2x2", assets: Optional[Dict[str, bytes]] = None) -> Entity:
    return Entity(
        kind=EntityKind.TEMPLATE,
        name=name,
        data={"layout": layout, "width": 1800, "height": 1200},
        assets=dict(assets or {}),
    )


def event(name: str, templates: List[str] = (), **data) -> Entity:
    return Entity(
        kind=EntityKind.EVENT,
        name=name,
        data={"venue": "Hall", **data},
        refs=[EntityRef(kind=EntityKind.TEMPLATE, name=t) for t in templates],
    )


def setting(name: str, value) -> Entity:
    return Entity(kind=EntityKind.SETTING, name=name, data={"value": value})


class FlakyRemote:
    """Wraps a remote store and fails selected calls.

    ``failures`` maps ``(method, key)`` to either an exception instance,
    raised every time, or a list of exceptions consumed one per call.
    """

    def __init__(self, inner):
        self.inner = inner
        self.failures: Dict[tuple, object] = {}
        self.calls: List[tuple] = []

    def fail(self, method: str, key: str, error) -> None:
        self.failures[(method, key)] = error

    def _maybe_fail(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        error = self.failures.get((method, key))
        if isinstance(error, list):
            if error:
                raise error.pop(0)
        elif error is not None:
            raise error

    def put(self, key, data):
        self._maybe_fail("put", key)
        self.inner.put(key, data)

    def get(self, key):
        self._maybe_fail("get", key)
        return self.inner.get(key)

    def list(self, prefix):
        self._maybe_fail("list", prefix)
        return self.inner.list(prefix)

    def delete(self, key):
        self._maybe_fail("delete", key)
        self.inner.delete(key)

    def probe(self):
        self._maybe_fail("probe", "")
        self.inner.probe()


@pytest.fixture
def flaky(remote):
    return FlakyRemote(remote)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
