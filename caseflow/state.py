"""
Workflow instance state.

One WorkflowState per case: where the case currently sits in its category's
graph plus the append-only history of how it got there.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


def _parse_timestamp(value):
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass(frozen=True)
class CompletedStep:
    """A step the case left, and the action that moved it on"""
    step: str
    completed_at: datetime
    completed_by: str
    action: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step': self.step,
            'completed_at': self.completed_at.isoformat(),
            'completed_by': self.completed_by,
            'action': self.action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompletedStep':
        return cls(
            step=data['step'],
            completed_at=_parse_timestamp(data['completed_at']),
            completed_by=data['completed_by'],
            action=data['action'],
        )


@dataclass(frozen=True)
class LastAction:
    """Most recent action on the instance"""
    action: str
    performed_by: str
    performed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'performed_by': self.performed_by,
            'performed_at': self.performed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LastAction':
        return cls(
            action=data['action'],
            performed_by=data['performed_by'],
            performed_at=_parse_timestamp(data['performed_at']),
        )


@dataclass
class WorkflowState:
    """
    Current workflow position of a single case.

    ``started_at`` and ``metadata`` are fixed at creation. ``steps_completed``
    only grows, and ``current_step`` always equals the action of its last
    entry (or the category's initial step while it is empty).
    ``version`` is the optimistic concurrency token kept by the store.
    """
    case_id: str
    category: str
    current_step: str
    started_at: datetime
    steps_completed: List[CompletedStep] = field(default_factory=list)
    last_action: Optional[LastAction] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @classmethod
    def start(cls, case_id: str, category: str, initial_step: str, started_at: datetime,
              metadata: Optional[Dict[str, Any]] = None) -> 'WorkflowState':
        return cls(
            case_id=case_id,
            category=category,
            current_step=initial_step,
            started_at=started_at,
            metadata=dict(metadata or {}),
        )

    @property
    def created_by(self) -> Optional[str]:
        return self.metadata.get('created_by')

    def record_transition(self, action: str, actor_id: str, at: datetime) -> CompletedStep:
        """Leave the current step via ``action``; the action names the destination step"""
        entry = CompletedStep(
            step=self.current_step,
            completed_at=at,
            completed_by=actor_id,
            action=action,
        )
        self.steps_completed.append(entry)
        self.current_step = action
        self.last_action = LastAction(action=action, performed_by=actor_id, performed_at=at)
        return entry

    def is_consistent(self, initial_step: str) -> bool:
        if not self.steps_completed:
            return self.current_step == initial_step
        return self.current_step == self.steps_completed[-1].action

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.case_id,
            'case_id': self.case_id,
            'category': self.category,
            'current_step': self.current_step,
            'started_at': self.started_at.isoformat(),
            'steps_completed': [entry.to_dict() for entry in self.steps_completed],
            'last_action': self.last_action.to_dict() if self.last_action else None,
            'metadata': dict(self.metadata),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowState':
        last_action = data.get('last_action')
        return cls(
            case_id=data['case_id'],
            category=data['category'],
            current_step=data['current_step'],
            started_at=_parse_timestamp(data['started_at']),
            steps_completed=[CompletedStep.from_dict(entry) for entry in data.get('steps_completed', [])],
            last_action=LastAction.from_dict(last_action) if last_action else None,
            metadata=dict(data.get('metadata') or {}),
            version=int(data.get('version', 0)),
        )
