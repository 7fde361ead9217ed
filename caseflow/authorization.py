"""
Authorization gate for workflow transitions.

Decides whether an actor may take an action from a case's current step.
Roles are checked per category, with an optional per-step override.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Tuple

from .catalog import StepDefinition, WorkflowDefinition
from .state import WorkflowState


@dataclass(frozen=True)
class Actor:
    """Identity and role set of whoever requests a transition"""
    id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, actor_id: str, roles: Iterable[str] = ()) -> 'Actor':
        return cls(id=str(actor_id), roles=frozenset(roles))

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return bool(self.roles & set(roles))


class AuthorizationGate:
    """
    Transition authorization policy, first match wins:

    1. the case creator may take any action legal from the current step;
    2. an actor holding one of the effective approver roles may act;
    3. everyone else is denied.
    """

    def effective_roles(self, definition: WorkflowDefinition, step: StepDefinition) -> Tuple[str, ...]:
        """Approver roles for a step: its own override, else the category list"""
        if step is not None and step.approver_roles is not None:
            return step.approver_roles
        return definition.approver_roles

    def can_perform(self, actor: Actor, definition: WorkflowDefinition,
                    state: WorkflowState, action: str) -> bool:
        step = definition.step(state.current_step)
        if step is None:
            return False

        creator = state.created_by
        if creator is not None and actor.id == str(creator) and step.allows(action):
            return True

        return actor.has_any_role(self.effective_roles(definition, step))
