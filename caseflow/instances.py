"""
Workflow instance persistence.

Reads and writes WorkflowState documents through the storage backend, using
the per-record version for optimistic concurrency.
"""

from typing import List, Optional, Tuple

from .state import WorkflowState
from .storage import StorageInterface


class WorkflowInstanceStore:
    """Per-case WorkflowState repository"""

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_instances"):
        self.storage = storage
        self.table_name = table_name

    def load_for_update(self, case_id: str) -> Tuple[Optional[WorkflowState], int]:
        """
        Load the state together with the version token to write back against.

        Returns (None, 0) when the case has no instance yet.
        """
        data = self.storage.load(self.table_name, case_id)
        if not data:
            return None, 0
        state = WorkflowState.from_dict(data)
        return state, state.version

    def save(self, case_id: str, state: WorkflowState, expected_version: int) -> bool:
        """Persist the state if nobody else wrote since ``expected_version``"""
        written = self.storage.compare_and_swap(self.table_name, case_id, state.to_dict(), expected_version)
        if written:
            state.version = expected_version + 1
        return written

    def load_read_only(self, case_id: str) -> Optional[WorkflowState]:
        data = self.storage.load(self.table_name, case_id)
        return WorkflowState.from_dict(data) if data else None

    def list_all(self) -> List[WorkflowState]:
        return [WorkflowState.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def list_by_category(self, category: str) -> List[WorkflowState]:
        return [
            WorkflowState.from_dict(data)
            for data in self.storage.find(self.table_name, {'category': category})
        ]

    def delete(self, case_id: str) -> bool:
        return self.storage.delete(self.table_name, case_id)
