"""
Shared fixtures for the approval engine test suite
"""

import pytest
from datetime import datetime, timezone, timedelta

from approval_engine.config import WaypointConfig
from approval_engine.directory import ActorDirectory, Role
from approval_engine.events import EventDispatcher
from approval_engine.instances import RequestRepository
from approval_engine.ledger import AuditLedger
from approval_engine.lifecycle import RequestLifecycleManager
from approval_engine.sla import SLATracker
from approval_engine.storage import InMemoryStorage
from approval_engine.workflows import Step, StepAction, WorkflowStore, new_definition


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


APPROVE_REJECT = frozenset({StepAction.APPROVE, StepAction.REJECT})
ALL_ACTIONS = frozenset(StepAction)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return WaypointConfig(database_url="memory://")


@pytest.fixture
def directory(storage):
    return ActorDirectory(storage)


@pytest.fixture
def employee(directory):
    return directory.create_actor("erin@example.com", Role.EMPLOYEE, "Erin Employee", actor_id="emp-1")


@pytest.fixture
def other_employee(directory):
    return directory.create_actor("oscar@example.com", Role.EMPLOYEE, "Oscar Other", actor_id="emp-2")


@pytest.fixture
def manager(directory):
    return directory.create_actor("maya@example.com", Role.MANAGER, "Maya Manager", actor_id="mgr-1")


@pytest.fixture
def admin(directory):
    return directory.create_actor("ada@example.com", Role.ADMIN, "Ada Admin", actor_id="adm-1")


@pytest.fixture
def store(storage):
    return WorkflowStore(storage, max_steps=10)


@pytest.fixture
def repository(storage):
    return RequestRepository(storage)


@pytest.fixture
def ledger(storage, directory, clock):
    return AuditLedger(storage, directory, enable_chain=True, clock=clock)


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def tracker(repository, clock):
    return SLATracker(repository, clock=clock)


@pytest.fixture
def lifecycle(repository, store, ledger, tracker, dispatcher, directory, settings, clock):
    return RequestLifecycleManager(
        repository, store, ledger,
        tracker=tracker,
        dispatcher=dispatcher,
        directory=directory,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def single_step_workflow(store):
    """One manager step with a 24 hour SLA"""
    definition = new_definition(
        name="Leave Request Approval",
        flow_key="leave-approval",
        steps=[Step("mgr-approval", Role.MANAGER, ALL_ACTIONS, sla_hours=24)],
    )
    store.create(definition)
    return definition


@pytest.fixture
def two_step_workflow(store):
    """Manager step followed by an admin step"""
    definition = new_definition(
        name="Expense Approval",
        flow_key="expense-approval",
        steps=[
            Step("mgr-approval", Role.MANAGER, APPROVE_REJECT, sla_hours=24),
            Step("admin-approval", Role.ADMIN, APPROVE_REJECT, sla_hours=72),
        ],
    )
    store.create(definition)
    return definition
