"""
Shared fixtures for the workflow engine test suite
"""

import pytest
from datetime import datetime, timezone, timedelta

from caseflow.audit import AuditTrail
from caseflow.cases import InMemoryCaseRepository
from caseflow.catalog import WorkflowCatalog
from caseflow.engine import TransitionEngine
from caseflow.events import EventDispatcher
from caseflow.instances import WorkflowInstanceStore
from caseflow.storage import InMemoryStorage


T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock for time-dependent tests"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def catalog():
    """The bundled workflow catalog"""
    return WorkflowCatalog.load_default()


@pytest.fixture
def cases():
    """Case repository with a few registered actors"""
    repository = InMemoryCaseRepository()
    repository.register_actor("parent-1", [])
    repository.register_actor("teacher-1", ["teacher"])
    repository.register_actor("principal-1", ["principal"])
    repository.register_actor("officer-1", ["enrollment_officer"])
    return repository


@pytest.fixture
def instances(storage):
    return WorkflowInstanceStore(storage)


@pytest.fixture
def audit_trail(storage):
    """Create audit trail for testing"""
    return AuditTrail(storage)


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def engine(catalog, cases, instances, audit_trail, events, clock):
    """Create transition engine for testing"""
    return TransitionEngine(catalog, cases, instances, audit_trail, events=events, clock=clock)


@pytest.fixture
def recorded_events(events):
    """Collect every published event"""
    received = []
    events.subscribe_all(received.append)
    return received
