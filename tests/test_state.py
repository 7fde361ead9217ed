"""
Test suite for workflow instance state and its persistence
"""

import pytest
from datetime import timedelta

from caseflow.state import CompletedStep, LastAction, WorkflowState
from caseflow.storage import InMemoryStorage, SQLiteStorage
from caseflow.instances import WorkflowInstanceStore

from conftest import T0


@pytest.fixture
def state():
    return WorkflowState.start(
        case_id="case-1",
        category="student_enrollment",
        initial_step="draft",
        started_at=T0,
        metadata={'created_by': 'parent-1', 'tenant_id': 'school-9'},
    )


class TestWorkflowState:
    """Test state transitions and invariants"""

    def test_start(self, state):
        assert state.current_step == "draft"
        assert state.steps_completed == []
        assert state.last_action is None
        assert state.version == 0
        assert state.created_by == "parent-1"
        assert state.is_consistent("draft")

    def test_record_transition(self, state):
        at = T0 + timedelta(hours=1)
        entry = state.record_transition("review", "parent-1", at)

        assert entry == CompletedStep(step="draft", completed_at=at, completed_by="parent-1", action="review")
        assert state.current_step == "review"
        assert state.last_action == LastAction(action="review", performed_by="parent-1", performed_at=at)
        assert state.started_at == T0

    def test_consistency_after_many_transitions(self, state):
        path = ["review", "needs_info", "review", "needs_info", "review", "approved"]
        for hour, action in enumerate(path, start=1):
            state.record_transition(action, "principal-1", T0 + timedelta(hours=hour))
            assert state.is_consistent("draft")

        assert [entry.step for entry in state.steps_completed] == ["draft"] + path[:-1]
        assert [entry.action for entry in state.steps_completed] == path
        assert state.started_at == T0

    def test_inconsistent_state_detected(self, state):
        state.record_transition("review", "parent-1", T0)
        state.current_step = "approved"
        assert not state.is_consistent("draft")

    def test_round_trip(self, state):
        state.record_transition("review", "parent-1", T0 + timedelta(minutes=5))
        state.record_transition("needs_info", "officer-1", T0 + timedelta(hours=2))
        state.version = 3

        restored = WorkflowState.from_dict(state.to_dict())

        assert restored == state
        assert restored.steps_completed[1].completed_at.tzinfo is not None

    def test_round_trip_without_history(self, state):
        assert WorkflowState.from_dict(state.to_dict()) == state


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    storage = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield WorkflowInstanceStore(storage)
    storage.close()


class TestWorkflowInstanceStore:
    """Test versioned instance persistence"""

    def test_load_missing(self, store):
        assert store.load_for_update("case-1") == (None, 0)
        assert store.load_read_only("case-1") is None

    def test_insert_if_absent(self, store, state):
        assert store.save("case-1", state, 0) is True
        assert state.version == 1

        loaded, version = store.load_for_update("case-1")
        assert version == 1
        assert loaded.current_step == "draft"

        # A second initializer loses
        duplicate = WorkflowState.start("case-1", "student_enrollment", "draft", T0)
        assert store.save("case-1", duplicate, 0) is False

    def test_stale_version_rejected(self, store, state):
        store.save("case-1", state, 0)

        first, first_version = store.load_for_update("case-1")
        second, second_version = store.load_for_update("case-1")

        first.record_transition("review", "parent-1", T0)
        assert store.save("case-1", first, first_version) is True

        second.record_transition("review", "parent-1", T0)
        assert store.save("case-1", second, second_version) is False

        loaded = store.load_read_only("case-1")
        assert loaded.version == 2
        assert len(loaded.steps_completed) == 1

    def test_list_and_delete(self, store, state):
        store.save("case-1", state, 0)
        other = WorkflowState.start("case-2", "grades", "draft", T0)
        store.save("case-2", other, 0)

        assert {s.case_id for s in store.list_all()} == {"case-1", "case-2"}
        assert [s.case_id for s in store.list_by_category("grades")] == ["case-2"]

        assert store.delete("case-1") is True
        assert store.delete("case-1") is False
        assert store.load_read_only("case-1") is None
