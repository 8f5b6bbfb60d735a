"""
Request Instance Module

Approval requests bound to a frozen snapshot of their workflow's steps, and
the repository that persists them. Every state change goes through
``RequestRepository.save_transition``, a write guarded by the status, step
index and version the caller read.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import uuid

from .directory import Role
from .errors import RequestNotFoundError
from .storage import StorageInterface, StorageRecord
from .workflows import Step


class RequestStatus(Enum):
    """Status of an approval request"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != RequestStatus.PENDING


@dataclass(frozen=True)
class RequestState:
    """Position in the state machine: pending(i) or a terminal status"""
    status: RequestStatus
    step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.status == RequestStatus.PENDING:
            return f"pending({self.step_index})"
        return self.status.value


@dataclass
class RequestInstance(StorageRecord):
    """A single approval case"""
    type: str
    workflow_id: str
    steps: Tuple[Step, ...]
    created_by: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: RequestStatus = RequestStatus.PENDING
    current_step_index: int = 0
    sla_hours: Optional[int] = None
    sla_deadline: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    escalated_to: Optional[Role] = None
    delegated_to: Optional[str] = None
    version: int = 1

    @property
    def state(self) -> RequestState:
        if self.status == RequestStatus.PENDING:
            return RequestState(self.status, self.current_step_index)
        return RequestState(self.status)

    @property
    def current_step(self) -> Optional[Step]:
        """Step being worked on, or None once the index leaves the snapshot"""
        if self.status != RequestStatus.PENDING:
            return None
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def is_final_step(self) -> bool:
        return self.current_step_index >= len(self.steps) - 1

    @property
    def expected_role(self) -> Optional[Role]:
        step = self.current_step
        if step is None:
            return None
        return self.escalated_to or step.role

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'type': self.type,
            'workflow_id': self.workflow_id,
            'steps': [step.to_dict() for step in self.steps],
            'created_by': self.created_by,
            'payload': self.payload,
            'status': self.status.value,
            'current_step_index': self.current_step_index,
            'sla_hours': self.sla_hours,
            'sla_deadline': self.sla_deadline.isoformat() if self.sla_deadline else None,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'escalated_to': self.escalated_to.value if self.escalated_to else None,
            'delegated_to': self.delegated_to,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RequestInstance':
        def parse_time(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            type=data['type'],
            workflow_id=data['workflow_id'],
            steps=tuple(Step.from_dict(step) for step in data.get('steps', [])),
            created_by=data['created_by'],
            payload=data.get('payload') or {},
            status=RequestStatus(data['status']),
            current_step_index=data.get('current_step_index', 0),
            sla_hours=data.get('sla_hours'),
            sla_deadline=parse_time(data.get('sla_deadline')),
            submitted_at=parse_time(data.get('submitted_at')),
            completed_at=parse_time(data.get('completed_at')),
            escalated_to=Role(data['escalated_to']) if data.get('escalated_to') else None,
            delegated_to=data.get('delegated_to'),
            version=data.get('version', 1),
        )


@dataclass
class RequestFilters:
    """Query filters for listing requests"""
    status: Optional[RequestStatus] = None
    type: Optional[str] = None
    created_by: Optional[str] = None
    workflow_id: Optional[str] = None
    pending_for_role: Optional[Role] = None
    sla_breached_at: Optional[datetime] = None
    submitted_from: Optional[datetime] = None
    submitted_to: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0


class RequestRepository:
    """Persistence for request instances"""

    TABLE = 'requests'

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def new_id(self) -> str:
        return str(uuid.uuid4())

    def add(self, request: RequestInstance) -> None:
        if not self.storage.insert(self.TABLE, request.id, request.to_dict()):
            raise ValueError(f"Request {request.id} already exists")

    def get(self, request_id: str) -> RequestInstance:
        data = self.storage.load(self.TABLE, request_id)
        if not data:
            raise RequestNotFoundError(request_id)
        return RequestInstance.from_dict(data)

    def save_transition(self, request: RequestInstance, expected: RequestState,
                        expected_version: int) -> bool:
        """
        Write ``request`` only if the stored row is still at ``expected``.

        Returns False when another transition committed in between; the
        caller must treat that as a lost race.
        """
        guard = {
            'status': expected.status.value,
            'current_step_index': expected.step_index,
            'version': expected_version,
        }
        return self.storage.update_if(self.TABLE, request.id, request.to_dict(), guard)

    def list(self, filters: Optional[RequestFilters] = None) -> List[RequestInstance]:
        """List requests, most recently submitted first"""
        filters = filters or RequestFilters()
        exact: Dict[str, Any] = {}
        if filters.status:
            exact['status'] = filters.status.value
        if filters.type:
            exact['type'] = filters.type
        if filters.created_by:
            exact['created_by'] = filters.created_by
        if filters.workflow_id:
            exact['workflow_id'] = filters.workflow_id

        requests = [RequestInstance.from_dict(d) for d in self.storage.find(self.TABLE, exact)]

        if filters.pending_for_role:
            requests = [
                r for r in requests
                if r.status == RequestStatus.PENDING and r.expected_role == filters.pending_for_role
            ]
        if filters.sla_breached_at:
            requests = [
                r for r in requests
                if r.sla_deadline is not None and r.sla_deadline < filters.sla_breached_at
            ]
        if filters.submitted_from:
            requests = [r for r in requests if r.submitted_at and r.submitted_at >= filters.submitted_from]
        if filters.submitted_to:
            requests = [r for r in requests if r.submitted_at and r.submitted_at <= filters.submitted_to]

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        requests.sort(key=lambda r: r.submitted_at or epoch, reverse=True)
        if filters.limit is not None:
            return requests[filters.offset:filters.offset + filters.limit]
        return requests[filters.offset:]

    def pending(self) -> List[RequestInstance]:
        return [
            RequestInstance.from_dict(d)
            for d in self.storage.find(self.TABLE, {'status': RequestStatus.PENDING.value})
        ]
