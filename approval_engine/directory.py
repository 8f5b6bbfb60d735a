"""
Actor Directory Module

Users who submit and act on approval requests, with their single role.
The audit ledger reads identities from here at write time, so later role or
email changes never rewrite history.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any

from .errors import ActorNotFoundError
from .storage import StorageInterface, StorageRecord


class Role(Enum):
    """Roles known to the authorizer"""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    ADMIN = "admin"


@dataclass
class Actor(StorageRecord):
    """A user as seen by the approval engine"""
    role: Role
    email: str = ""
    full_name: str = ""
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['role'] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Actor':
        data = dict(data)
        data['role'] = Role(data['role'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


def make_actor(actor_id: str, role: Role, email: str = "", full_name: str = "") -> Actor:
    """Build an unsaved actor value, e.g. for callers that authenticate elsewhere"""
    now = datetime.now(timezone.utc)
    return Actor(id=actor_id, created_at=now, updated_at=now, role=role,
                 email=email, full_name=full_name)


SYSTEM_ACTOR = make_actor("system", Role.ADMIN, email="system@waypoint.local",
                          full_name="Waypoint Scheduler")


class ActorDirectory:
    """Stores actors and resolves identities for authorization and auditing"""

    TABLE = 'actors'

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_actor(self, email: str, role: Role, full_name: str = "",
                     actor_id: Optional[str] = None) -> Actor:
        """Create a new actor"""
        now = datetime.now(timezone.utc)
        actor = Actor(
            id=actor_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            role=role,
            email=email,
            full_name=full_name,
        )
        self.storage.save(self.TABLE, actor.id, actor.to_dict())
        return actor

    def get_actor(self, actor_id: str) -> Optional[Actor]:
        """Get actor by ID"""
        data = self.storage.load(self.TABLE, actor_id)
        if not data:
            return None
        return Actor.from_dict(data)

    def require_actor(self, actor_id: str) -> Actor:
        actor = self.get_actor(actor_id)
        if actor is None:
            raise ActorNotFoundError(actor_id)
        return actor

    def list_actors(self, role: Optional[Role] = None,
                    is_active: Optional[bool] = None) -> List[Actor]:
        """List actors with optional filters"""
        filters: Dict[str, Any] = {}
        if role is not None:
            filters['role'] = role.value
        if is_active is not None:
            filters['is_active'] = is_active
        actors = [Actor.from_dict(data) for data in self.storage.find(self.TABLE, filters)]
        return sorted(actors, key=lambda a: a.email)

    def update_actor(self, actor_id: str, role: Optional[Role] = None,
                     email: Optional[str] = None, full_name: Optional[str] = None) -> Actor:
        """Update actor properties"""
        actor = self.require_actor(actor_id)
        if role is not None:
            actor.role = role
        if email is not None:
            actor.email = email
        if full_name is not None:
            actor.full_name = full_name
        actor.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, actor.id, actor.to_dict())
        return actor

    def deactivate_actor(self, actor_id: str) -> Actor:
        actor = self.require_actor(actor_id)
        actor.is_active = False
        actor.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, actor.id, actor.to_dict())
        return actor
