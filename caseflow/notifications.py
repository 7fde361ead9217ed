"""
Notification Dispatcher Module

Turns workflow events into human-facing notifications and delivers them
through channel providers. Publishing only enqueues; delivery runs on a
worker thread with bounded retries, so a slow or failing channel never
blocks or fails the transition that produced the event.
"""

import queue
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger
from .storage import StorageInterface


logger = get_logger("caseflow.notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    LOG = "log"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class NotificationPriority(Enum):
    """Notification priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class Notification:
    """Individual notification instance"""
    event_type: str
    channel: NotificationChannel
    priority: NotificationPriority
    case_id: str
    subject: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: Optional[datetime] = None
    attempts: int = 0
    failed_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'event_type': self.event_type,
            'channel': self.channel.value,
            'priority': self.priority.value,
            'case_id': self.case_id,
            'subject': self.subject,
            'body': self.body,
            'payload': self.payload,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'attempts': self.attempts,
            'failed_reason': self.failed_reason,
        }


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""
    channel: NotificationChannel

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the application log"""
    channel = NotificationChannel.LOG

    def __init__(self, channel_logger=None):
        self.logger = channel_logger or logger

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"[{notification.priority.value.upper()}] {notification.subject} | {notification.body[:200]}"
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """Stores notifications for in-app display"""
    channel = NotificationChannel.IN_APP

    def __init__(self, storage: StorageInterface, table: str = "in_app_notifications"):
        self.storage = storage
        self.table = table

    def send(self, notification: Notification) -> bool:
        self.storage.save(self.table, notification.id, {
            **notification.to_dict(),
            'read': False,
        })
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""
    channel = NotificationChannel.WEBHOOK

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.event_type,
            "priority": notification.priority.value,
            "case_id": notification.case_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "payload": notification.payload,
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )
        return 200 <= response.status_code < 300


class _TemplateValues(dict):
    def __missing__(self, key):
        return "{" + key + "}"


# event type -> (subject, body, priority)
NOTIFICATION_TEMPLATES = {
    DomainEvent.WORKFLOW_INITIALIZED.value: (
        "Workflow started for case {case_id}",
        "A {category} workflow was started at step '{initial_step}'.",
        NotificationPriority.LOW,
    ),
    DomainEvent.WORKFLOW_TRANSITIONED.value: (
        "Case {case_id} moved to {to_step}",
        "{actor_id} moved the {category} case from '{from_step}' to '{to_step}'.",
        NotificationPriority.MEDIUM,
    ),
    DomainEvent.WORKFLOW_COMPLETED.value: (
        "Case {case_id} completed",
        "The {category} case finished in step '{to_step}'.",
        NotificationPriority.MEDIUM,
    ),
    DomainEvent.WORKFLOW_REJECTED.value: (
        "Case {case_id} rejected",
        "The {category} case was rejected by {actor_id}.",
        NotificationPriority.MEDIUM,
    ),
    DomainEvent.WORKFLOW_SLA_BREACHED.value: (
        "SLA exceeded for case {case_id}",
        "The {category} case has been open {elapsed_hours} hours in step '{current_step}' "
        "against an SLA of {sla_hours} hours.",
        NotificationPriority.HIGH,
    ),
    DomainEvent.WORKFLOW_DRIFT_DETECTED.value: (
        "Workflow configuration drift on case {case_id}",
        "Case is in step '{current_step}', which category {category} no longer defines.",
        NotificationPriority.CRITICAL,
    ),
}

DEFAULT_TEMPLATE = ("Workflow event {event_type} for case {case_id}", "{event_type}", NotificationPriority.LOW)

_STOP = object()


class NotificationDispatcher:
    """Queue-backed, best-effort notification delivery"""

    def __init__(self, storage: StorageInterface,
                 providers: Optional[List[ChannelProvider]] = None,
                 queue_size: int = 1000, max_retries: int = 3,
                 table: str = "notifications"):
        self.storage = storage
        self.providers = providers if providers is not None else [LogChannelProvider()]
        self.max_retries = max_retries
        self.table = table
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._worker: Optional[threading.Thread] = None

    def attach(self, events: EventDispatcher) -> None:
        """Receive every event published on the bus"""
        events.subscribe_all(self.handle_event)

    def handle_event(self, event: EventPayload) -> None:
        self.publish(event.event_type.value, event.to_dict())

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """
        Enqueue an event for delivery without blocking.

        Returns:
            False if the queue is full and the event was dropped
        """
        try:
            self._queue.put_nowait((event_type, payload))
            return True
        except queue.Full:
            logger.warning(f"Notification queue full; dropped {event_type} for {payload.get('entity_id')}")
            return False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def process_pending(self) -> int:
        """Deliver everything currently queued on the calling thread"""
        delivered = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            try:
                if item is _STOP:
                    continue
                self._deliver(*item)
                delivered += 1
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="caseflow-notifications", daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None

    def notifications(self, case_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if case_id is None:
            return self.storage.load_all(self.table)
        return self.storage.find(self.table, {'case_id': case_id})

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(*item)
            except Exception as e:
                logger.error(f"Notification worker failed to process event: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def render(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        subject_template, body_template, priority = NOTIFICATION_TEMPLATES.get(event_type, DEFAULT_TEMPLATE)
        values = _TemplateValues(payload.get('data') or {})
        values.setdefault('case_id', payload.get('entity_id', ''))
        values.setdefault('event_type', event_type)
        return {
            'subject': subject_template.format_map(values),
            'body': body_template.format_map(values),
            'priority': priority,
        }

    def _deliver(self, event_type: str, payload: Dict[str, Any]) -> None:
        rendered = self.render(event_type, payload)
        for provider in self.providers:
            notification = Notification(
                event_type=event_type,
                channel=provider.channel,
                priority=rendered['priority'],
                case_id=str(payload.get('entity_id', '')),
                subject=rendered['subject'],
                body=rendered['body'],
                payload=payload,
            )
            self._send_with_retries(provider, notification)
            self.storage.save(self.table, notification.id, notification.to_dict())

    def _send_with_retries(self, provider: ChannelProvider, notification: Notification) -> None:
        while notification.attempts < self.max_retries:
            notification.attempts += 1
            try:
                if provider.send(notification):
                    notification.status = NotificationStatus.SENT
                    notification.sent_at = datetime.now(timezone.utc)
                    notification.failed_reason = None
                    return
                notification.failed_reason = "provider reported failure"
            except Exception as e:
                notification.failed_reason = str(e)
            logger.warning(
                f"{provider.channel.value} delivery failed for {notification.event_type} on case "
                f"{notification.case_id} (attempt {notification.attempts}/{self.max_retries}): "
                f"{notification.failed_reason}"
            )

        notification.status = NotificationStatus.FAILED
        logger.error(
            f"Giving up on {provider.channel.value} notification {notification.id} for case {notification.case_id}"
        )
