"""
Audit Trail Module

Append-only, hash-chained log of every attempted workflow transition,
accepted or rejected. Each entry carries the SHA-256 of its predecessor so
tampering or removal is detectable. Entries are archived, never edited.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import AuditAppendError
from .storage import StorageInterface


class AuditOutcome(Enum):
    """Outcome of a transition attempt"""
    ACCEPTED = "accepted"
    REJECTED_UNAUTHORIZED = "rejected-unauthorized"
    REJECTED_INVALID_TRANSITION = "rejected-invalid-transition"
    REJECTED_CONFIGURATION_DRIFT = "rejected-configuration-drift"


@dataclass
class AuditEntry:
    """
    One transition attempt.

    ``to_step`` is the requested destination; for rejected attempts the case
    stayed in ``from_step``.
    """
    case_id: str
    category: str
    action: str
    actor_id: str
    from_step: str
    to_step: str
    outcome: AuditOutcome
    timestamp: datetime
    reason: Optional[str] = None
    id: str = ""
    sequence: int = 0
    previous_hash: str = ""
    current_hash: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome == AuditOutcome.ACCEPTED

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'case_id': self.case_id,
            'category': self.category,
            'action': self.action,
            'actor_id': self.actor_id,
            'from_step': self.from_step,
            'to_step': self.to_step,
            'outcome': self.outcome.value,
            'reason': self.reason,
            'timestamp': self.timestamp.isoformat(),
            'previous_hash': self.previous_hash,
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'case_id': self.case_id,
            'category': self.category,
            'action': self.action,
            'actor_id': self.actor_id,
            'from_step': self.from_step,
            'to_step': self.to_step,
            'outcome': self.outcome.value,
            'reason': self.reason,
            'timestamp': self.timestamp.isoformat(),
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            id=data['id'],
            sequence=int(data.get('sequence', 0)),
            case_id=data['case_id'],
            category=data['category'],
            action=data['action'],
            actor_id=data['actor_id'],
            from_step=data['from_step'],
            to_step=data['to_step'],
            outcome=AuditOutcome(data['outcome']),
            reason=data.get('reason'),
            timestamp=timestamp,
            previous_hash=data.get('previous_hash', ""),
            current_hash=data.get('current_hash', ""),
        )


class AuditTrail:
    """
    Hash-chained audit sink for workflow transitions
    """

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_audit",
                 archive_table: str = "workflow_audit_archive"):
        self.storage = storage
        self.table_name = table_name
        self.archive_table = archive_table
        self._lock = threading.Lock()
        self._head: Optional[Tuple[int, str]] = None

    def _load_chain_head(self) -> Tuple[int, str]:
        """
        Sequence number and hash of the most recent entry, live or archived.

        Scanned once, then kept current by append; purge_case drops it.
        """
        if self._head is not None:
            return self._head
        head_sequence, head_hash = 0, ""
        for table in (self.table_name, self.archive_table):
            for data in self.storage.load_all(table):
                sequence = int(data.get('sequence', 0))
                if sequence > head_sequence:
                    head_sequence, head_hash = sequence, data.get('current_hash', "")
        self._head = (head_sequence, head_hash)
        return self._head

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Chain and persist an entry.

        Raises:
            AuditAppendError: if the storage backend rejects the write
        """
        with self._lock:
            try:
                head_sequence, head_hash = self._load_chain_head()

                entry.id = entry.id or str(uuid.uuid4())
                entry.sequence = head_sequence + 1
                entry.previous_hash = head_hash
                entry.current_hash = entry.calculate_hash()

                self.storage.save(self.table_name, entry.id, entry.to_dict())
                self._head = (entry.sequence, entry.current_hash)
            except Exception as e:
                raise AuditAppendError(f"Failed to append audit entry for case {entry.case_id}: {e}") from e

            return entry

    def record(self, case_id: str, category: str, action: str, actor_id: str,
               from_step: str, to_step: str, outcome: AuditOutcome,
               reason: Optional[str] = None, timestamp: Optional[datetime] = None) -> AuditEntry:
        """Build and append an entry in one call"""
        return self.append(AuditEntry(
            case_id=case_id,
            category=category,
            action=action,
            actor_id=actor_id,
            from_step=from_step,
            to_step=to_step,
            outcome=outcome,
            reason=reason,
            timestamp=timestamp or datetime.now(timezone.utc),
        ))

    def _sorted(self, rows: List[Dict[str, Any]]) -> List[AuditEntry]:
        entries = [AuditEntry.from_dict(data) for data in rows]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def entries_for_case(self, case_id: str, include_archived: bool = False) -> List[AuditEntry]:
        """All entries for a case in append order"""
        rows = self.storage.find(self.table_name, {'case_id': case_id})
        if include_archived:
            rows += self.storage.find(self.archive_table, {'case_id': case_id})
        return self._sorted(rows)

    def entries_by_outcome(self, outcome: AuditOutcome) -> List[AuditEntry]:
        return self._sorted(self.storage.find(self.table_name, {'outcome': outcome.value}))

    def all_entries(self, include_archived: bool = False) -> List[AuditEntry]:
        rows = self.storage.load_all(self.table_name)
        if include_archived:
            rows += self.storage.load_all(self.archive_table)
        return self._sorted(rows)

    def archive_case(self, case_id: str) -> int:
        """Move a deleted case's entries to the archive table"""
        with self._lock:
            moved = 0
            for data in self.storage.find(self.table_name, {'case_id': case_id}):
                self.storage.save(self.archive_table, data['id'], data)
                self.storage.delete(self.table_name, data['id'])
                moved += 1
            return moved

    def purge_case(self, case_id: str) -> int:
        """Delete a case's entries outright (live and archived)"""
        with self._lock:
            removed = 0
            for table in (self.table_name, self.archive_table):
                for data in self.storage.find(table, {'case_id': case_id}):
                    if self.storage.delete(table, data['id']):
                        removed += 1
            self._head = None
            return removed

    def count_entries(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the hash chain across live and archived entries

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self.all_entries(include_archived=True)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash,
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash,
                })
            previous_hash = entry.current_hash

        return result
