"""
SLA Monitor Module

Periodic sweep over workflow instances that flags cases still open past
their category's SLA window. Escalations fire once per breach: a marker keyed
by case and breach date is stored before the event is published, and later
sweeps skip cases that already have one. The monitor only reads workflow
state; it never moves a case.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .catalog import WorkflowCatalog
from .events import DomainEvent, EventDispatcher, create_case_event
from .instances import WorkflowInstanceStore
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("caseflow.sla")


@dataclass(frozen=True)
class SLABreach:
    """A case found open past its SLA window"""
    case_id: str
    category: str
    current_step: str
    sla_hours: int
    started_at: datetime
    deadline: datetime
    detected_at: datetime
    elapsed_hours: float

    @property
    def dedupe_key(self) -> str:
        return breach_key(self.case_id, self.deadline)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'case_id': self.case_id,
            'category': self.category,
            'current_step': self.current_step,
            'sla_hours': self.sla_hours,
            'started_at': self.started_at.isoformat(),
            'deadline': self.deadline.isoformat(),
            'detected_at': self.detected_at.isoformat(),
            'elapsed_hours': round(self.elapsed_hours, 2),
        }


def breach_key(case_id: str, deadline: datetime) -> str:
    """Idempotency key for an escalation: case id plus the UTC date of the breach"""
    return f"{case_id}:{deadline.astimezone(timezone.utc).date().isoformat()}"


class SLAMonitor:
    """Detects SLA breaches and emits escalation events"""

    def __init__(self, catalog: WorkflowCatalog, instances: WorkflowInstanceStore,
                 storage: StorageInterface, events: EventDispatcher,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 markers_table: str = "sla_escalations"):
        self.catalog = catalog
        self.instances = instances
        self.storage = storage
        self.events = events
        self.clock = clock
        self.markers_table = markers_table
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

    def sweep(self, now: Optional[datetime] = None) -> List[SLABreach]:
        """
        Scan all instances once and escalate new breaches.

        Returns:
            Breaches escalated by this sweep (already-escalated ones excluded)
        """
        now = now or self.clock()
        escalated = []

        with self._sweep_lock:
            for state in self.instances.list_all():
                definition = self.catalog.lookup(state.category)
                if definition is None:
                    continue

                step = definition.step(state.current_step)
                if step is None:
                    logger.critical(
                        f"SLA sweep skipped case {state.case_id}: step '{state.current_step}' "
                        f"is not defined for category '{state.category}'"
                    )
                    continue
                if step.is_terminal:
                    continue

                window = timedelta(hours=definition.sla_hours)
                elapsed = now - state.started_at
                if elapsed <= window:
                    continue

                breach = SLABreach(
                    case_id=state.case_id,
                    category=state.category,
                    current_step=state.current_step,
                    sla_hours=definition.sla_hours,
                    started_at=state.started_at,
                    deadline=state.started_at + window,
                    detected_at=now,
                    elapsed_hours=elapsed.total_seconds() / 3600,
                )
                if self.storage.exists(self.markers_table, breach.dedupe_key):
                    continue

                self.storage.save(self.markers_table, breach.dedupe_key, {
                    'id': breach.dedupe_key,
                    **breach.to_dict(),
                })
                self._escalate(breach)
                escalated.append(breach)

        if escalated:
            logger.info(f"SLA sweep escalated {len(escalated)} case(s)")
        return escalated

    def escalations(self, case_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stored escalation markers, optionally for one case"""
        if case_id is None:
            return self.storage.load_all(self.markers_table)
        return self.storage.find(self.markers_table, {'case_id': case_id})

    def clear_markers(self, case_id: str) -> int:
        removed = 0
        for marker in self.escalations(case_id):
            if self.storage.delete(self.markers_table, marker['id']):
                removed += 1
        return removed

    # Background execution

    def start(self, interval_seconds: float) -> None:
        """Run sweeps every ``interval_seconds`` on a daemon thread"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(interval_seconds,), name="caseflow-sla-monitor", daemon=True
        )
        self._thread.start()
        logger.info(f"SLA monitor started (interval {interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("SLA monitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"SLA sweep failed: {e}", exc_info=True)
            self._stop_event.wait(interval_seconds)

    def _escalate(self, breach: SLABreach) -> None:
        log_action(
            logger, "warning",
            f"SLA exceeded for case {breach.case_id} ({breach.category}): "
            f"{breach.elapsed_hours:.1f}h elapsed of {breach.sla_hours}h",
            action="sla_breach", resource=f"case:{breach.case_id}",
            extra=breach.to_dict(),
        )
        self.events.publish(create_case_event(DomainEvent.WORKFLOW_SLA_BREACHED, breach.case_id, breach.to_dict()))
