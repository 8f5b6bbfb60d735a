"""
Workflow Definition Module

Named, versioned sequences of approval steps. Definitions are read by the
lifecycle manager only when a request is submitted; the request keeps its own
snapshot of the steps, so nothing done here reaches requests already in flight.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Any
from enum import Enum
import logging
import uuid

from .config import get_config
from .directory import Role
from .errors import WorkflowNotFoundError, WorkflowValidationError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("waypoint.workflows")


class StepAction(Enum):
    """Actions an approver can take on a step"""
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"
    DELEGATE = "delegate"


@dataclass(frozen=True)
class Step:
    """Definition of a single approval step"""
    step_id: str
    role: Role
    actions: FrozenSet[StepAction]
    sla_hours: Optional[int] = None
    required: bool = True
    order: Optional[int] = None
    escalation_role: Optional[Role] = None
    escalation_hours: Optional[int] = None

    def allows(self, action: StepAction) -> bool:
        return action in self.actions

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step_id': self.step_id,
            'role': self.role.value if self.role else None,
            'actions': [a.value for a in StepAction if a in (self.actions or ())],
            'sla_hours': self.sla_hours,
            'required': self.required,
            'order': self.order,
            'escalation_role': self.escalation_role.value if self.escalation_role else None,
            'escalation_hours': self.escalation_hours,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        # Unknown keys are ignored so stored snapshots survive schema changes
        escalation_role = data.get('escalation_role')
        return cls(
            step_id=data['step_id'],
            role=Role(data['role']),
            actions=frozenset(StepAction(a) for a in data.get('actions', [])),
            sla_hours=data.get('sla_hours'),
            required=data.get('required', True),
            order=data.get('order'),
            escalation_role=Role(escalation_role) if escalation_role else None,
            escalation_hours=data.get('escalation_hours'),
        )


@dataclass
class WorkflowDefinition(StorageRecord):
    """Workflow definition (template)"""
    name: str
    flow_key: str
    steps: List[Step]
    description: str = ""
    version: int = 1
    is_active: bool = True
    created_by: str = ""
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['steps'] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        data = dict(data)
        data['steps'] = [Step.from_dict(step) for step in data.get('steps', [])]
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


def new_definition(name: str, flow_key: str, steps: List[Step],
                   description: str = "", created_by: str = "") -> WorkflowDefinition:
    """Build an unsaved definition; ``WorkflowStore.create`` assigns id and version"""
    now = datetime.now(timezone.utc)
    return WorkflowDefinition(id="", created_at=now, updated_at=now, name=name,
                              flow_key=flow_key, steps=list(steps),
                              description=description, created_by=created_by)


class WorkflowStore:
    """Create, look up and (de)activate workflow definitions"""

    TABLE = 'workflow_definitions'

    def __init__(self, storage: StorageInterface, max_steps: Optional[int] = None):
        self.storage = storage
        self.max_steps = max_steps if max_steps is not None else get_config().max_steps

    def create(self, definition: WorkflowDefinition) -> str:
        """Validate and store a definition, returning its new id"""
        errors = self.validate(definition)
        if errors:
            raise WorkflowValidationError(errors)

        now = datetime.now(timezone.utc)
        definition.id = definition.id or str(uuid.uuid4())
        definition.created_at = now
        definition.updated_at = now
        definition.version = self._next_version(definition.flow_key)

        self.storage.save(self.TABLE, definition.id, definition.to_dict())
        logger.info(f"Created workflow {definition.flow_key} v{definition.version} ({definition.id})")
        return definition.id

    def validate(self, definition: WorkflowDefinition) -> List[str]:
        """Collect every structural violation of a definition"""
        errors = []

        if not definition.name or not definition.name.strip():
            errors.append("Workflow name is required")
        if not definition.flow_key or not definition.flow_key.strip():
            errors.append("Flow key is required")

        if not definition.steps:
            errors.append("At least one workflow step is required")
            return errors

        if len(definition.steps) > self.max_steps:
            errors.append(f"A workflow may have at most {self.max_steps} steps")

        seen_ids = set()
        for index, step in enumerate(definition.steps, start=1):
            if not step.step_id:
                errors.append(f"Step {index}: Step ID is required")
            elif step.step_id in seen_ids:
                errors.append(f"Step {index}: Step ID {step.step_id} is duplicated")
            else:
                seen_ids.add(step.step_id)

            if not step.role:
                errors.append(f"Step {index}: Role is required")

            if not step.actions:
                errors.append(f"Step {index}: At least one action is required")

            if step.order is not None and (not isinstance(step.order, int) or step.order < 1):
                errors.append(f"Step {index}: Order must be a positive number")

            if step.sla_hours is not None and step.sla_hours < 0:
                errors.append(f"Step {index}: SLA hours must not be negative")

            if step.escalation_hours is not None and step.escalation_hours < 0:
                errors.append(f"Step {index}: Escalation hours must not be negative")

        return errors

    def get(self, definition_id: str) -> WorkflowDefinition:
        """Get a definition by id, active or not"""
        data = self.storage.load(self.TABLE, definition_id)
        if not data:
            raise WorkflowNotFoundError(definition_id)
        return WorkflowDefinition.from_dict(data)

    def find_active(self, flow_key: str) -> WorkflowDefinition:
        """Latest active definition for a flow key"""
        candidates = self.storage.find(self.TABLE, {'flow_key': flow_key, 'is_active': True})
        if not candidates:
            raise WorkflowNotFoundError(flow_key)
        latest = max(candidates, key=lambda d: (d.get('version', 1), d['created_at']))
        return WorkflowDefinition.from_dict(latest)

    def list(self, active: Optional[bool] = None, search: Optional[str] = None,
             limit: int = 50, offset: int = 0) -> List[WorkflowDefinition]:
        """List definitions, newest first"""
        definitions = self._filtered(active, search)
        definitions.sort(key=lambda d: d.created_at, reverse=True)
        return definitions[offset:offset + limit]

    def count(self, active: Optional[bool] = None, search: Optional[str] = None) -> int:
        return len(self._filtered(active, search))

    def update(self, definition_id: str, name: Optional[str] = None,
               description: Optional[str] = None,
               updated_by: Optional[str] = None) -> WorkflowDefinition:
        """Update metadata. Steps change only by creating a new definition."""
        definition = self.get(definition_id)
        if name is not None:
            if not name.strip():
                raise WorkflowValidationError(["Workflow name is required"])
            definition.name = name
        if description is not None:
            definition.description = description
        return self._touch(definition, updated_by)

    def activate(self, definition_id: str, updated_by: Optional[str] = None) -> WorkflowDefinition:
        definition = self.get(definition_id)
        definition.is_active = True
        return self._touch(definition, updated_by)

    def deactivate(self, definition_id: str, updated_by: Optional[str] = None) -> WorkflowDefinition:
        definition = self.get(definition_id)
        definition.is_active = False
        return self._touch(definition, updated_by)

    def clone(self, definition_id: str, new_flow_key: str, new_name: str,
              created_by: Optional[str] = None) -> str:
        """Copy a definition's steps under a new flow key"""
        original = self.get(definition_id)
        copy = new_definition(
            name=new_name,
            flow_key=new_flow_key,
            steps=original.steps,
            description=original.description,
            created_by=created_by or original.created_by,
        )
        return self.create(copy)

    # Private helper methods

    def _filtered(self, active: Optional[bool], search: Optional[str]) -> List[WorkflowDefinition]:
        filters = {} if active is None else {'is_active': active}
        definitions = [WorkflowDefinition.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        if search:
            needle = search.lower()
            definitions = [
                d for d in definitions
                if needle in d.name.lower()
                or needle in d.description.lower()
                or needle in d.flow_key.lower()
            ]
        return definitions

    def _next_version(self, flow_key: str) -> int:
        existing = self.storage.find(self.TABLE, {'flow_key': flow_key})
        return max((d.get('version', 1) for d in existing), default=0) + 1

    def _touch(self, definition: WorkflowDefinition, updated_by: Optional[str]) -> WorkflowDefinition:
        definition.updated_at = datetime.now(timezone.utc)
        if updated_by is not None:
            definition.updated_by = updated_by
        self.storage.save(self.TABLE, definition.id, definition.to_dict())
        logger.info(f"Updated workflow {definition.id} (active={definition.is_active})")
        return definition
