"""
System wiring.

Builds the engine's collaborators from configuration. Catalog validation
happens here, so a malformed workflow catalog stops startup.
"""

from typing import Any, Dict, Optional

from .audit import AuditTrail
from .cases import CaseRepository, StorageCaseRepository
from .catalog import WorkflowCatalog
from .config import CaseflowConfig, get_config
from .engine import TransitionEngine
from .events import EventDispatcher
from .instances import WorkflowInstanceStore
from .logging_config import get_logger
from .notifications import (
    InAppChannelProvider, LogChannelProvider, NotificationDispatcher, WebhookChannelProvider,
)
from .sla import SLAMonitor
from .storage import StorageInterface, create_storage


logger = get_logger("caseflow.system")


class WorkflowSystem:
    """The workflow engine and everything around it"""

    def __init__(self, config: CaseflowConfig, storage: StorageInterface,
                 catalog: WorkflowCatalog, cases: CaseRepository):
        self.config = config
        self.storage = storage
        self.catalog = catalog
        self.cases = cases
        self.events = EventDispatcher()
        self.audit = AuditTrail(storage)
        self.instances = WorkflowInstanceStore(storage)

        providers = [LogChannelProvider(), InAppChannelProvider(storage)]
        if config.notification_webhook_url:
            providers.append(WebhookChannelProvider(
                config.notification_webhook_url, timeout=config.notification_webhook_timeout
            ))
        self.notifications = NotificationDispatcher(
            storage,
            providers=providers,
            queue_size=config.notification_queue_size,
            max_retries=config.notification_max_retries,
        )
        self.notifications.attach(self.events)

        self.engine = TransitionEngine(
            catalog=catalog,
            cases=cases,
            instances=self.instances,
            audit=self.audit,
            events=self.events,
            max_attempts=config.transition_max_attempts,
            default_timeout=config.transition_timeout_seconds,
        )
        self.sla_monitor = SLAMonitor(catalog, self.instances, storage, self.events)

    @classmethod
    def from_config(cls, config: Optional[CaseflowConfig] = None,
                    cases: Optional[CaseRepository] = None) -> 'WorkflowSystem':
        config = config or get_config()
        if config.catalog_path:
            catalog = WorkflowCatalog.from_yaml(config.catalog_path)
        else:
            catalog = WorkflowCatalog.load_default()

        storage = create_storage(config.database_url)
        system = cls(config, storage, catalog, cases or StorageCaseRepository(storage))
        logger.info(
            f"Workflow system ready: {len(catalog)} categories, catalog checksum {catalog.checksum()[:12]}"
        )
        return system

    def start(self) -> None:
        self.notifications.start()
        if self.config.sla_monitor_enabled:
            self.sla_monitor.start(self.config.sla_sweep_interval_seconds)

    def shutdown(self) -> None:
        self.sla_monitor.stop()
        self.notifications.stop()
        self.storage.close()

    def purge_case(self, case_id: str, archive: bool = True) -> Dict[str, Any]:
        """Delete a case and, with it, its workflow instance, audit entries and SLA markers"""
        result = self.engine.purge_case(case_id, archive=archive)
        result['sla_markers'] = self.sla_monitor.clear_markers(case_id)
        delete_case = getattr(self.cases, 'delete_case', None)
        if delete_case is not None:
            result['case_deleted'] = delete_case(case_id)
        return result
