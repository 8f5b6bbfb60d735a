"""
Pydantic schemas for engine inputs

Accepts both the camelCase field names used on the wire and the snake_case
attribute names.
"""

from typing import Dict, List, Optional, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import get_config
from .directory import Role
from .workflows import Step, StepAction, WorkflowDefinition, new_definition


class StepInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(..., alias="stepId", min_length=1)
    role: Role
    sla_hours: Optional[int] = Field(
        default_factory=lambda: get_config().default_sla_hours,
        alias="slaHours", ge=1, le=720,
    )
    actions: List[StepAction] = Field(
        default_factory=lambda: [StepAction.APPROVE, StepAction.REJECT], min_length=1
    )
    required: bool = True
    order: Optional[int] = Field(default=None, ge=1)
    escalation_hours: Optional[int] = Field(default=None, alias="escalationHours", ge=0)
    escalation_role: Optional[Role] = Field(default=None, alias="escalationRole")

    @field_validator("step_id", mode="before")
    @classmethod
    def coerce_step_id(cls, value):
        # Older definitions number their steps
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def to_step(self) -> Step:
        return Step(
            step_id=self.step_id,
            role=self.role,
            actions=frozenset(self.actions),
            sla_hours=self.sla_hours,
            required=self.required,
            order=self.order,
            escalation_role=self.escalation_role,
            escalation_hours=self.escalation_hours,
        )


class WorkflowDefinitionInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=3, max_length=100)
    flow_key: str = Field(..., alias="flowKey", min_length=1, max_length=50)
    description: str = Field(default="", max_length=500)
    steps: List[StepInput] = Field(..., min_length=1)

    def to_definition(self, created_by: str = "") -> WorkflowDefinition:
        return new_definition(
            name=self.name,
            flow_key=self.flow_key,
            steps=[step.to_step() for step in self.steps],
            description=self.description,
            created_by=created_by,
        )


class CreateRequestInput(BaseModel):
    """A new request; without workflowId or flowKey the type doubles as flow key"""
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1, max_length=100)
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    flow_key: Optional[str] = Field(default=None, alias="flowKey")
    payload: Dict[str, Any]


class ActionInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: StepAction
    comment: Optional[str] = Field(default=None, max_length=1000)
    delegate_to: Optional[str] = Field(default=None, alias="delegateTo")
    escalate_to: Optional[Role] = Field(default=None, alias="escalateTo")

    @field_validator("comment")
    @classmethod
    def strip_comment(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip()

    @model_validator(mode="after")
    def check_required_fields(self) -> 'ActionInput':
        if self.action == StepAction.REJECT:
            # Minimum length is enforced by the lifecycle against its own settings
            if not self.comment:
                raise ValueError("comment is required when rejecting")
        if self.action == StepAction.DELEGATE and not self.delegate_to:
            raise ValueError("delegateTo is required when delegating")
        return self
