"""
Audit Ledger Module

Append-only history of every action taken against an approval request.
Each entry snapshots the actor's role and email at write time and is
SHA-256 chained to the previous entry of the same request for tamper
detection. There is no update or delete path.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any, Union

from .config import get_config
from .directory import Actor, ActorDirectory
from .locks import KeyedLocks
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("waypoint.ledger")


class HistoryAction(Enum):
    """Actions recorded in the ledger"""
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    ESCALATE = "escalate"
    DELEGATE = "delegate"
    SLA_TIMEOUT = "sla_timeout"


def _json_safe(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class HistoryEntry(StorageRecord):
    """
    Immutable ledger entry.

    ``actor_role`` and ``actor_email`` are copies taken when the entry was
    written; they are never refreshed from the directory.
    """
    request_id: str
    actor_id: Optional[str]
    action: HistoryAction
    performed_at: datetime
    sequence: int
    actor_role: Optional[str] = None
    actor_email: Optional[str] = None
    step_id: Optional[str] = None
    comment: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    current_hash: str = ""

    def __post_init__(self):
        if self.metadata:
            self.metadata = _json_safe(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'request_id': self.request_id,
            'actor_id': self.actor_id,
            'actor_role': self.actor_role,
            'actor_email': self.actor_email,
            'action': self.action.value,
            'step_id': self.step_id,
            'comment': self.comment,
            'metadata': self.metadata,
            'performed_at': self.performed_at.isoformat(),
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['action'] = self.action.value
        data['performed_at'] = self.performed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        data = dict(data)
        data['action'] = HistoryAction(data['action'])
        for key in ('created_at', 'updated_at', 'performed_at'):
            data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class AuditLedger:
    """Append-only ledger of request history"""

    TABLE = 'request_history'

    def __init__(self, storage: StorageInterface, directory: Optional[ActorDirectory] = None,
                 enable_chain: Optional[bool] = None, clock=None):
        self.storage = storage
        self.directory = directory
        self.enable_chain = get_config().enable_audit_chain if enable_chain is None else enable_chain
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = KeyedLocks()

    def append(
        self,
        request_id: str,
        actor: Union[Actor, str, None],
        action: HistoryAction,
        step_id: Optional[str] = None,
        comment: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        """
        Append an entry for a request

        Args:
            request_id: Request the entry belongs to
            actor: Actor value, or an actor id resolved through the directory
            action: What happened
            step_id: Step the action applied to
            comment: Free text supplied by the actor
            metadata: Extra structured data

        Returns:
            The stored HistoryEntry
        """
        actor_id, actor_role, actor_email = self._snapshot_actor(actor)

        with self._locks.hold(request_id):
            last = self._last_entry(request_id)
            now = self._clock()
            # Entries of one request are strictly ordered in time
            if last is not None and now <= last.performed_at:
                now = last.performed_at + timedelta(microseconds=1)

            entry = HistoryEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                request_id=request_id,
                actor_id=actor_id,
                actor_role=actor_role,
                actor_email=actor_email,
                action=action,
                step_id=step_id,
                comment=comment,
                metadata=metadata or {},
                performed_at=now,
                sequence=last.sequence + 1 if last else 1,
                previous_hash=last.current_hash if last and self.enable_chain else "",
            )
            if self.enable_chain:
                entry.current_hash = entry.calculate_hash()

            if not self.storage.insert(self.TABLE, entry.id, entry.to_dict()):
                raise RuntimeError(f"History entry {entry.id} already exists")

        logger.debug(f"Recorded {action.value} on request {request_id} by {actor_id}")
        return entry

    def read(self, request_id: str) -> List[HistoryEntry]:
        """Entries of one request, oldest first"""
        entries = [HistoryEntry.from_dict(d) for d in self.storage.find(self.TABLE, {'request_id': request_id})]
        entries.sort(key=lambda e: (e.performed_at, e.sequence))
        return entries

    def read_range(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        action: Optional[HistoryAction] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[HistoryEntry]:
        """
        Entries across all requests within a time range, oldest first

        Args:
            start_time: Start of time range (inclusive)
            end_time: End of time range (inclusive)
            action: Only entries with this action
            limit: Maximum number of entries to return
            offset: Entries to skip
        """
        filters = {'action': action.value} if action else {}
        entries = [HistoryEntry.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        if start_time:
            entries = [e for e in entries if e.performed_at >= start_time]
        if end_time:
            entries = [e for e in entries if e.performed_at <= end_time]
        entries.sort(key=lambda e: (e.performed_at, e.sequence))
        if limit is not None:
            return entries[offset:offset + limit]
        return entries[offset:]

    def activity_by_actor(self, actor_id: str, limit: int = 20) -> List[HistoryEntry]:
        """Most recent entries written by one actor"""
        entries = [HistoryEntry.from_dict(d) for d in self.storage.find(self.TABLE, {'actor_id': actor_id})]
        entries.sort(key=lambda e: e.performed_at, reverse=True)
        return entries[:limit]

    def recent_activity(self, limit: int = 50) -> List[HistoryEntry]:
        entries = [HistoryEntry.from_dict(d) for d in self.storage.load_all(self.TABLE)]
        entries.sort(key=lambda e: e.performed_at, reverse=True)
        return entries[:limit]

    def count_entries(self, request_id: Optional[str] = None) -> int:
        if request_id is None:
            return self.storage.count(self.TABLE)
        return len(self.storage.find(self.TABLE, {'request_id': request_id}))

    def verify_integrity(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify the hash chains of one request, or of every request

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        if request_id is not None:
            request_ids = [request_id]
        else:
            request_ids = sorted({d['request_id'] for d in self.storage.load_all(self.TABLE)})

        for rid in request_ids:
            entries = self.read(rid)
            result['total_entries'] += len(entries)
            previous_hash = ""
            for position, entry in enumerate(entries):
                # Entries written with the chain disabled carry no hash
                if entry.current_hash and not entry.verify_hash():
                    result['valid'] = False
                    result['hash_errors'].append({
                        'entry_id': entry.id,
                        'request_id': rid,
                        'position': position,
                    })
                if entry.previous_hash != previous_hash:
                    result['valid'] = False
                    result['chain_breaks'].append({
                        'entry_id': entry.id,
                        'request_id': rid,
                        'position': position,
                        'expected_previous_hash': previous_hash,
                        'actual_previous_hash': entry.previous_hash,
                    })
                previous_hash = entry.current_hash

        return result

    # Private helper methods

    def _snapshot_actor(self, actor: Union[Actor, str, None]):
        if actor is None:
            return None, None, None
        if isinstance(actor, Actor):
            return actor.id, actor.role.value, actor.email or None
        resolved = self.directory.get_actor(actor) if self.directory else None
        if resolved is None:
            # Unknown ids are kept; the identity backup stays empty
            return actor, None, None
        return resolved.id, resolved.role.value, resolved.email or None

    def _last_entry(self, request_id: str) -> Optional[HistoryEntry]:
        entries = self.read(request_id)
        return entries[-1] if entries else None
