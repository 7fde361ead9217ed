"""
Case repository.

The engine only needs three things from the case store: a case's category,
its creation metadata, and the role set of an actor. Case content itself is
owned elsewhere.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import threading

from .authorization import Actor
from .exceptions import CaseNotFoundError
from .storage import StorageInterface


@dataclass
class CaseRecord:
    """Minimal view of a case as seen by the workflow engine"""
    case_id: str
    category: str
    created_by: Optional[str] = None
    tenant_id: Optional[str] = None
    template_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    extra: Dict[str, Any] = field(default_factory=dict)

    def metadata(self) -> Dict[str, Any]:
        """Context captured onto the workflow instance at creation"""
        data = dict(self.extra)
        data.update({
            'created_by': self.created_by,
            'tenant_id': self.tenant_id,
            'template_id': self.template_id,
        })
        return {k: v for k, v in data.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.case_id,
            'case_id': self.case_id,
            'category': self.category,
            'created_by': self.created_by,
            'tenant_id': self.tenant_id,
            'template_id': self.template_id,
            'created_at': self.created_at.isoformat(),
            'extra': dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CaseRecord':
        created_at = data.get('created_at')
        return cls(
            case_id=data['case_id'],
            category=data['category'],
            created_by=data.get('created_by'),
            tenant_id=data.get('tenant_id'),
            template_id=data.get('template_id'),
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(timezone.utc),
            extra=dict(data.get('extra') or {}),
        )


class CaseRepository(ABC):
    """Boundary to the system that owns cases and users"""

    @abstractmethod
    def get_category(self, case_id: str) -> str:
        """Category of a case; raises CaseNotFoundError for unknown cases"""
        pass

    @abstractmethod
    def get_metadata(self, case_id: str) -> Dict[str, Any]:
        """Creation context (created_by, tenant_id, template_id, ...)"""
        pass

    @abstractmethod
    def get_actor(self, actor_id: str) -> Actor:
        """Actor with its current role set (empty roles for unknown actors)"""
        pass


class InMemoryCaseRepository(CaseRepository):
    """Dictionary-backed repository for tests and embedding"""

    def __init__(self):
        self._cases: Dict[str, CaseRecord] = {}
        self._roles: Dict[str, frozenset] = {}
        self._lock = threading.RLock()

    def register_case(self, case_id: str, category: str, created_by: Optional[str] = None,
                      tenant_id: Optional[str] = None, template_id: Optional[str] = None,
                      **extra) -> CaseRecord:
        record = CaseRecord(
            case_id=case_id,
            category=category,
            created_by=created_by,
            tenant_id=tenant_id,
            template_id=template_id,
            extra=extra,
        )
        with self._lock:
            self._cases[case_id] = record
        return record

    def register_actor(self, actor_id: str, roles: Iterable[str] = ()) -> Actor:
        with self._lock:
            self._roles[actor_id] = frozenset(roles)
        return Actor(id=actor_id, roles=self._roles[actor_id])

    def delete_case(self, case_id: str) -> bool:
        with self._lock:
            return self._cases.pop(case_id, None) is not None

    def list_cases(self) -> List[CaseRecord]:
        with self._lock:
            return list(self._cases.values())

    def _get(self, case_id: str) -> CaseRecord:
        with self._lock:
            record = self._cases.get(case_id)
        if record is None:
            raise CaseNotFoundError(case_id)
        return record

    def get_category(self, case_id: str) -> str:
        return self._get(case_id).category

    def get_metadata(self, case_id: str) -> Dict[str, Any]:
        return self._get(case_id).metadata()

    def get_actor(self, actor_id: str) -> Actor:
        with self._lock:
            roles = self._roles.get(actor_id, frozenset())
        return Actor(id=actor_id, roles=roles)


class StorageCaseRepository(CaseRepository):
    """Repository persisted through a storage backend"""

    def __init__(self, storage: StorageInterface, cases_table: str = "cases",
                 actors_table: str = "actors"):
        self.storage = storage
        self.cases_table = cases_table
        self.actors_table = actors_table

    def register_case(self, case_id: str, category: str, created_by: Optional[str] = None,
                      tenant_id: Optional[str] = None, template_id: Optional[str] = None,
                      **extra) -> CaseRecord:
        record = CaseRecord(
            case_id=case_id,
            category=category,
            created_by=created_by,
            tenant_id=tenant_id,
            template_id=template_id,
            extra=extra,
        )
        self.storage.save(self.cases_table, case_id, record.to_dict())
        return record

    def register_actor(self, actor_id: str, roles: Iterable[str] = ()) -> Actor:
        roles = sorted(set(roles))
        self.storage.save(self.actors_table, actor_id, {'id': actor_id, 'roles': roles})
        return Actor.of(actor_id, roles)

    def delete_case(self, case_id: str) -> bool:
        return self.storage.delete(self.cases_table, case_id)

    def _get(self, case_id: str) -> CaseRecord:
        data = self.storage.load(self.cases_table, case_id)
        if not data:
            raise CaseNotFoundError(case_id)
        return CaseRecord.from_dict(data)

    def get_category(self, case_id: str) -> str:
        return self._get(case_id).category

    def get_metadata(self, case_id: str) -> Dict[str, Any]:
        return self._get(case_id).metadata()

    def get_actor(self, actor_id: str) -> Actor:
        data = self.storage.load(self.actors_table, actor_id)
        return Actor.of(actor_id, data.get('roles', []) if data else [])
