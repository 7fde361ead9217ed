"""
Test suite for concurrent transitions

Two actors racing on the same case must never both win: the loser either
retries against the winner's state or gets ConcurrentModificationError.
"""

import threading

import pytest

from caseflow.audit import AuditOutcome
from caseflow.engine import RejectionReason, TransitionEngine
from caseflow.exceptions import ConcurrentModificationError
from caseflow.instances import WorkflowInstanceStore


class InterleavingStore(WorkflowInstanceStore):
    """Runs a competing request right after the first load, before the save"""

    def __init__(self, storage):
        super().__init__(storage)
        self.on_first_load = None
        self._fired = False

    def load_for_update(self, case_id):
        loaded = super().load_for_update(case_id)
        if self.on_first_load is not None and not self._fired:
            self._fired = True
            self.on_first_load()
        return loaded


class AlwaysConflictingStore(WorkflowInstanceStore):
    def __init__(self, storage):
        super().__init__(storage)
        self.save_calls = 0

    def save(self, case_id, state, expected_version):
        self.save_calls += 1
        return False


@pytest.fixture
def submitted_case(engine, cases):
    cases.register_case("case-1", "student_enrollment", created_by="parent-1")
    engine.execute("case-1", "review", cases.get_actor("parent-1"))
    return "case-1"


class TestInterleavedTransitions:
    """Deterministic interleaving of two conflicting requests"""

    def test_loser_retries_and_sees_winner(self, catalog, cases, storage, audit_trail, events, clock, submitted_case):
        store = InterleavingStore(storage)
        engine = TransitionEngine(catalog, cases, store, audit_trail, events=events, clock=clock)
        principal = cases.get_actor("principal-1")
        officer = cases.get_actor("officer-1")

        competing = []
        store.on_first_load = lambda: competing.append(engine.execute(submitted_case, "approved", officer))

        result = engine.execute(submitted_case, "rejected", principal)

        assert competing[0].accepted
        assert not result.accepted
        assert result.reason == RejectionReason.INVALID_TRANSITION
        assert result.current_step == "approved"

        state = store.load_read_only(submitted_case)
        assert state.current_step == "approved"
        assert [entry.action for entry in state.steps_completed] == ["review", "approved"]

        outcomes = [(e.action, e.outcome) for e in audit_trail.entries_for_case(submitted_case)]
        assert outcomes == [
            ("review", AuditOutcome.ACCEPTED),
            ("approved", AuditOutcome.ACCEPTED),
            ("rejected", AuditOutcome.REJECTED_INVALID_TRANSITION),
        ]

    def test_single_attempt_surfaces_conflict(self, catalog, cases, storage, audit_trail, clock, submitted_case):
        store = InterleavingStore(storage)
        engine = TransitionEngine(catalog, cases, store, audit_trail, clock=clock, max_attempts=1)
        officer = cases.get_actor("officer-1")

        store.on_first_load = lambda: engine.execute(submitted_case, "needs_info", officer)

        with pytest.raises(ConcurrentModificationError) as excinfo:
            engine.execute(submitted_case, "approved", cases.get_actor("principal-1"))

        assert excinfo.value.retryable is True
        assert store.load_read_only(submitted_case).current_step == "needs_info"

    def test_persistent_conflict_raises_after_retry(self, catalog, cases, storage, audit_trail, clock, submitted_case):
        store = AlwaysConflictingStore(storage)
        engine = TransitionEngine(catalog, cases, store, audit_trail, clock=clock)

        with pytest.raises(ConcurrentModificationError) as excinfo:
            engine.execute(submitted_case, "approved", cases.get_actor("principal-1"))

        assert store.save_calls == 2
        assert excinfo.value.attempts == 2
        # Nothing accepted beyond the original submission
        assert len(audit_trail.entries_by_outcome(AuditOutcome.ACCEPTED)) == 1


class TestThreadedRace:

    def test_exactly_one_winner(self, engine, cases, instances, submitted_case):
        actors = [cases.get_actor("principal-1"), cases.get_actor("officer-1")]
        actions = ["approved", "rejected"]
        barrier = threading.Barrier(2)
        results = [None, None]

        def worker(index):
            barrier.wait()
            results[index] = engine.execute(submitted_case, actions[index], actors[index])

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        accepted = [result for result in results if result.accepted]
        assert len(accepted) == 1
        loser = next(result for result in results if not result.accepted)
        assert loser.reason == RejectionReason.INVALID_TRANSITION

        state = instances.load_read_only(submitted_case)
        assert state.current_step == accepted[0].new_step
        assert len(state.steps_completed) == 2
        assert state.version == 2
