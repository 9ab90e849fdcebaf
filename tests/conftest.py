"""Shared pytest fixtures for shipyard-driver tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from blueprint import ResourceType, Status
from common import ProviderResult
from config import DriverConfig
from engine.scheduler import Scheduler
from engine.state import StateStore
from providers.base import ProviderRegistry


class FakeProvider:
    """In-memory provider that records every call.

    Attributes:
        calls: (method, reference) tuples in call order
        live: References currently "existing"
        fail_create: References whose create fails
        fail_destroy: References whose destroy fails
        on_create: Optional callback run inside create (e.g. to cancel)
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.live: set[str] = set()
        self.fail_create: set[str] = set()
        self.fail_destroy: set[str] = set()
        self.on_create = None
        self._lock = threading.Lock()

    def _record(self, method, resource):
        with self._lock:
            self.calls.append((method, resource.reference))

    def create(self, resource):
        self._record('create', resource)
        if self.on_create:
            self.on_create(resource)
        if resource.reference in self.fail_create:
            return ProviderResult(success=False, message='boom')
        with self._lock:
            existed = resource.reference in self.live
            self.live.add(resource.reference)
        return ProviderResult(success=True, message='created', already_exists=existed)

    def destroy(self, resource):
        self._record('destroy', resource)
        if resource.reference in self.fail_destroy:
            return ProviderResult(success=False, message='stuck')
        with self._lock:
            self.live.discard(resource.reference)
        return ProviderResult(success=True, message='destroyed')

    def probe(self, resource):
        return Status.CREATED if resource.reference in self.live else Status.DESTROYED

    def refs(self, method):
        """References passed to one method, in call order."""
        return [ref for m, ref in self.calls if m == method]


@pytest.fixture
def driver_config(tmp_path):
    """DriverConfig rooted in a temporary home directory."""
    return DriverConfig(home=tmp_path / 'home', max_workers=4)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_registry(fake_provider):
    """Registry with the fake provider registered for every type."""
    registry = ProviderRegistry()
    for resource_type in ResourceType:
        registry.register(resource_type, fake_provider)
    return registry


@pytest.fixture
def state_store(driver_config):
    return StateStore(driver_config.state_file, domain=driver_config.domain)


@pytest.fixture
def scheduler(fake_registry, state_store):
    return Scheduler(fake_registry, state_store, max_workers=4)
