"""
Workflow Transition Engine

Data-driven state machine interpreter. Every case category is a directed
graph from the WorkflowCatalog; the engine validates a requested action
against the case's current step, authorizes the actor, and commits the move
with an optimistic version check so two racing actors can never both win.
Every attempt, accepted or not, lands in the audit trail.

Actions are named after their destination step: executing "approved" from
"review" moves the case to the "approved" step.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditOutcome, AuditTrail
from .authorization import Actor, AuthorizationGate
from .cases import CaseRepository
from .catalog import StepDefinition, WorkflowCatalog, WorkflowDefinition
from .events import DomainEvent, EventDispatcher, create_case_event
from .exceptions import (
    AuditAppendError, ConcurrentModificationError, ConfigurationDriftError,
    TransitionTimeoutError,
)
from .instances import WorkflowInstanceStore
from .logging_config import get_logger, log_action
from .state import CompletedStep, LastAction, WorkflowState


logger = get_logger("caseflow.engine")


class CaseStatus(Enum):
    """Externally visible case status derived from the workflow step"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    TERMINAL_SUCCESS = "terminal_success"
    TERMINAL_FAILURE = "terminal_failure"


# Shared by every category; unknown step names are in progress.
STEP_STATUS_MAPPING = {
    'draft': CaseStatus.DRAFT,
    'submitted': CaseStatus.SUBMITTED,
    'approved': CaseStatus.TERMINAL_SUCCESS,
    'published': CaseStatus.TERMINAL_SUCCESS,
    'resolved': CaseStatus.TERMINAL_SUCCESS,
    'completed': CaseStatus.TERMINAL_SUCCESS,
    'rejected': CaseStatus.TERMINAL_FAILURE,
}


def derive_case_status(step: str) -> CaseStatus:
    return STEP_STATUS_MAPPING.get(step, CaseStatus.IN_PROGRESS)


class RejectionReason(Enum):
    """Why a transition request was not applied"""
    NO_WORKFLOW_CONFIGURED = "no_workflow_configured"
    INVALID_TRANSITION = "invalid_transition"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of TransitionEngine.execute"""
    accepted: bool
    case_id: str
    action: str
    message: str
    reason: Optional[RejectionReason] = None
    new_step: Optional[str] = None
    previous_step: Optional[str] = None
    current_step: Optional[str] = None
    case_status: Optional[CaseStatus] = None
    next_available_actions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accepted': self.accepted,
            'case_id': self.case_id,
            'action': self.action,
            'message': self.message,
            'reason': self.reason.value if self.reason else None,
            'new_step': self.new_step,
            'previous_step': self.previous_step,
            'current_step': self.current_step,
            'case_status': self.case_status.value if self.case_status else None,
            'next_available_actions': list(self.next_available_actions),
        }


@dataclass(frozen=True)
class WorkflowStatusView:
    """Read model of a case's workflow position"""
    case_id: str
    category: str
    kind: str
    current_step: str
    current_step_display_name: str
    editable: bool
    next_available_actions: Tuple[str, ...]
    steps_completed: Tuple[CompletedStep, ...]
    started_at: Optional[datetime]
    last_action: Optional[LastAction]
    sla_hours: int
    approver_roles: Tuple[str, ...]
    case_status: CaseStatus
    sla_deadline: Optional[datetime] = None
    initialized: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'case_id': self.case_id,
            'category': self.category,
            'kind': self.kind,
            'current_step': self.current_step,
            'current_step_display_name': self.current_step_display_name,
            'editable': self.editable,
            'next_available_actions': list(self.next_available_actions),
            'steps_completed': [entry.to_dict() for entry in self.steps_completed],
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'last_action': self.last_action.to_dict() if self.last_action else None,
            'sla_hours': self.sla_hours,
            'approver_roles': list(self.approver_roles),
            'case_status': self.case_status.value,
            'sla_deadline': self.sla_deadline.isoformat() if self.sla_deadline else None,
            'initialized': self.initialized,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransitionEngine:
    """Executes workflow transitions for cases"""

    def __init__(self, catalog: WorkflowCatalog, cases: CaseRepository,
                 instances: WorkflowInstanceStore, audit: AuditTrail,
                 events: Optional[EventDispatcher] = None,
                 gate: Optional[AuthorizationGate] = None,
                 clock: Callable[[], datetime] = utc_now,
                 max_attempts: int = 2,
                 default_timeout: Optional[float] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.catalog = catalog
        self.cases = cases
        self.instances = instances
        self.audit = audit
        self.events = events or EventDispatcher()
        self.gate = gate or AuthorizationGate()
        self.clock = clock
        self.max_attempts = max_attempts
        self.default_timeout = default_timeout

    # Transitions

    def execute(self, case_id: str, action: str, actor: Actor,
                timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> TransitionResult:
        """
        Move a case along its workflow graph.

        Args:
            case_id: Case to transition
            action: Requested action (the destination step name)
            actor: Who is asking; authorization uses its id and roles
            timeout: Seconds the caller is willing to wait
            cancel_event: Set by the caller to abandon the request

        Returns:
            TransitionResult; rejections are results, not exceptions

        Raises:
            CaseNotFoundError: unknown case
            ConfigurationDriftError: current step missing from the definition
            ConcurrentModificationError: version conflict on every attempt
            TransitionTimeoutError: deadline passed or cancelled before the write
        """
        timeout = timeout if timeout is not None else self.default_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None

        category = self.cases.get_category(case_id)
        definition = self.catalog.lookup(category)
        if definition is None:
            return TransitionResult(
                accepted=False,
                case_id=case_id,
                action=action,
                reason=RejectionReason.NO_WORKFLOW_CONFIGURED,
                message=f"No workflow configured for category '{category}'",
            )

        for attempt in range(1, self.max_attempts + 1):
            self._check_deadline(case_id, deadline, cancel_event)

            state, version = self.instances.load_for_update(case_id)
            created = state is None
            if created:
                state = self._new_state(case_id, definition)

            step = self._current_step(definition, state, action=action, actor=actor)

            if not step.allows(action):
                return self._reject(
                    definition, state, step, action, actor,
                    RejectionReason.INVALID_TRANSITION,
                    AuditOutcome.REJECTED_INVALID_TRANSITION,
                    self._invalid_transition_message(action, step),
                )

            if not self.gate.can_perform(actor, definition, state, action):
                return self._reject(
                    definition, state, step, action, actor,
                    RejectionReason.UNAUTHORIZED,
                    AuditOutcome.REJECTED_UNAUTHORIZED,
                    f"Actor '{actor.id}' is not authorized to perform '{action}' "
                    f"from step '{step.name}'",
                )

            previous_step = state.current_step
            now = self.clock()
            state.record_transition(action, actor.id, now)

            self._check_deadline(case_id, deadline, cancel_event)
            if self.instances.save(case_id, state, version):
                break

            logger.warning(
                f"Version conflict on case {case_id} (attempt {attempt}/{self.max_attempts})"
            )
        else:
            raise ConcurrentModificationError(case_id, self.max_attempts)

        self._audit(state, action, actor, previous_step, action, AuditOutcome.ACCEPTED, None, now)

        new_step = definition.step(action)
        case_status = derive_case_status(action)
        log_action(
            logger, "info",
            f"Case {case_id} moved {previous_step} -> {action}",
            user_id=actor.id, action=action, resource=f"case:{case_id}",
            extra={'category': definition.category, 'case_status': case_status.value},
        )

        if created:
            self._publish(DomainEvent.WORKFLOW_INITIALIZED, state, {
                'category': definition.category,
                'initial_step': definition.initial_step,
            })
        self._publish_transition(definition, state, previous_step, actor, case_status)

        return TransitionResult(
            accepted=True,
            case_id=case_id,
            action=action,
            message=f"Successfully moved to step: {action}",
            new_step=action,
            previous_step=previous_step,
            current_step=action,
            case_status=case_status,
            next_available_actions=new_step.next_steps,
        )

    def initialize(self, case_id: str) -> Optional[WorkflowState]:
        """
        Eagerly create the workflow instance for a case.

        Idempotent: an existing instance is returned unchanged. Returns None
        when the case's category has no workflow.
        """
        category = self.cases.get_category(case_id)
        definition = self.catalog.lookup(category)
        if definition is None:
            return None

        existing = self.instances.load_read_only(case_id)
        if existing is not None:
            return existing

        state = self._new_state(case_id, definition)
        if not self.instances.save(case_id, state, 0):
            # Someone else initialized it first
            return self.instances.load_read_only(case_id)

        logger.info(f"Initialized {definition.category} workflow for case {case_id} at '{state.current_step}'")
        self._publish(DomainEvent.WORKFLOW_INITIALIZED, state, {
            'category': definition.category,
            'initial_step': definition.initial_step,
        })
        return state

    # Queries

    def get_status(self, case_id: str) -> Optional[WorkflowStatusView]:
        """Workflow position of a case, or None when no workflow applies"""
        category = self.cases.get_category(case_id)
        definition = self.catalog.lookup(category)
        if definition is None:
            return None

        state = self.instances.load_read_only(case_id)
        initialized = state is not None
        if state is None:
            state = WorkflowState(
                case_id=case_id,
                category=definition.category,
                current_step=definition.initial_step,
                started_at=None,
            )

        step = self._current_step(definition, state)
        return WorkflowStatusView(
            case_id=case_id,
            category=definition.category,
            kind=definition.kind.value,
            current_step=step.name,
            current_step_display_name=step.display_name,
            editable=step.editable,
            next_available_actions=step.next_steps,
            steps_completed=tuple(state.steps_completed),
            started_at=state.started_at,
            last_action=state.last_action,
            sla_hours=definition.sla_hours,
            approver_roles=self.gate.effective_roles(definition, step),
            case_status=derive_case_status(step.name),
            sla_deadline=state.started_at + timedelta(hours=definition.sla_hours) if state.started_at else None,
            initialized=initialized,
        )

    def available_actions(self, case_id: str, actor: Actor) -> List[str]:
        """Legal next actions the actor is also authorized to perform"""
        category = self.cases.get_category(case_id)
        definition = self.catalog.lookup(category)
        if definition is None:
            return []

        state = self.instances.load_read_only(case_id) or self._new_state(case_id, definition)
        step = self._current_step(definition, state)
        return [
            action for action in step.next_steps
            if self.gate.can_perform(actor, definition, state, action)
        ]

    def is_editable(self, case_id: str) -> bool:
        """Whether the case's business content may be edited in its current step"""
        status = self.get_status(case_id)
        return True if status is None else status.editable

    def history(self, case_id: str) -> List[CompletedStep]:
        state = self.instances.load_read_only(case_id)
        return list(state.steps_completed) if state else []

    # Lifecycle

    def purge_case(self, case_id: str, archive: bool = True) -> Dict[str, Any]:
        """Remove a deleted case's instance together with its audit entries"""
        deleted = self.instances.delete(case_id)
        if archive:
            audit_entries = self.audit.archive_case(case_id)
        else:
            audit_entries = self.audit.purge_case(case_id)
        logger.info(
            f"Purged workflow for case {case_id} "
            f"(instance removed: {deleted}, audit entries {'archived' if archive else 'deleted'}: {audit_entries})"
        )
        return {'instance_deleted': deleted, 'audit_entries': audit_entries, 'archived': archive}

    # Private helpers

    def _new_state(self, case_id: str, definition: WorkflowDefinition) -> WorkflowState:
        return WorkflowState.start(
            case_id=case_id,
            category=definition.category,
            initial_step=definition.initial_step,
            started_at=self.clock(),
            metadata=self.cases.get_metadata(case_id),
        )

    def _current_step(self, definition: WorkflowDefinition, state: WorkflowState,
                      action: Optional[str] = None, actor: Optional[Actor] = None) -> StepDefinition:
        step = definition.step(state.current_step)
        if step is not None:
            return step

        logger.critical(
            f"Configuration drift: case {state.case_id} is in step '{state.current_step}' "
            f"which category '{definition.category}' no longer defines"
        )
        if action is not None and actor is not None:
            self._audit(
                state, action, actor, state.current_step, action,
                AuditOutcome.REJECTED_CONFIGURATION_DRIFT,
                "current step missing from workflow definition", self.clock(),
            )
        self._publish(DomainEvent.WORKFLOW_DRIFT_DETECTED, state, {
            'category': definition.category,
            'current_step': state.current_step,
            'defined_steps': list(definition.steps),
        })
        raise ConfigurationDriftError(state.case_id, definition.category, state.current_step)

    def _reject(self, definition: WorkflowDefinition, state: WorkflowState, step: StepDefinition,
                action: str, actor: Actor, reason: RejectionReason, outcome: AuditOutcome,
                message: str) -> TransitionResult:
        self._audit(state, action, actor, state.current_step, action, outcome, message, self.clock())
        log_action(
            logger, "info", f"Rejected '{action}' on case {state.case_id}: {reason.value}",
            user_id=actor.id, action=action, resource=f"case:{state.case_id}",
        )
        return TransitionResult(
            accepted=False,
            case_id=state.case_id,
            action=action,
            message=message,
            reason=reason,
            current_step=state.current_step,
            case_status=derive_case_status(state.current_step),
            next_available_actions=step.next_steps,
        )

    @staticmethod
    def _invalid_transition_message(action: str, step: StepDefinition) -> str:
        if step.is_terminal:
            return f"Action '{action}' is not allowed: step '{step.name}' is terminal"
        allowed = ", ".join(step.next_steps)
        return f"Action '{action}' is not allowed from step '{step.name}'; allowed actions: {allowed}"

    def _audit(self, state: WorkflowState, action: str, actor: Actor, from_step: str,
               to_step: str, outcome: AuditOutcome, reason: Optional[str], at: datetime) -> None:
        try:
            self.audit.record(
                case_id=state.case_id,
                category=state.category,
                action=action,
                actor_id=actor.id,
                from_step=from_step,
                to_step=to_step,
                outcome=outcome,
                reason=reason,
                timestamp=at,
            )
        except AuditAppendError as e:
            # The transition already committed; losing the entry is a compliance alert
            logger.critical(f"Audit append failed for case {state.case_id} ({outcome.value}): {e}")

    def _check_deadline(self, case_id: str, deadline: Optional[float],
                        cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TransitionTimeoutError(case_id, f"Transition for case {case_id} was cancelled")
        if deadline is not None and time.monotonic() > deadline:
            raise TransitionTimeoutError(case_id)

    def _publish(self, event_type: DomainEvent, state: WorkflowState, data: Dict[str, Any]) -> None:
        try:
            self.events.publish(create_case_event(event_type, state.case_id, data))
        except Exception as e:
            logger.error(f"Failed to publish {event_type.value} for case {state.case_id}: {e}")

    def _publish_transition(self, definition: WorkflowDefinition, state: WorkflowState,
                            previous_step: str, actor: Actor, case_status: CaseStatus) -> None:
        data = {
            'category': definition.category,
            'from_step': previous_step,
            'to_step': state.current_step,
            'action': state.current_step,
            'actor_id': actor.id,
            'case_status': case_status.value,
            'metadata': dict(state.metadata),
        }
        self._publish(DomainEvent.WORKFLOW_TRANSITIONED, state, data)
        if definition.is_terminal(state.current_step):
            if case_status == CaseStatus.TERMINAL_FAILURE:
                self._publish(DomainEvent.WORKFLOW_REJECTED, state, data)
            else:
                self._publish(DomainEvent.WORKFLOW_COMPLETED, state, data)
