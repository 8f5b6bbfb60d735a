"""
Default workflows

The stock leave, expense and equipment workflows a fresh installation
starts with.
"""

from typing import Dict, List, Any
import logging

from .errors import WorkflowNotFoundError
from .schemas import WorkflowDefinitionInput
from .workflows import WorkflowStore

logger = logging.getLogger("waypoint.defaults")

DEFAULT_WORKFLOWS: List[Dict[str, Any]] = [
    {
        "name": "Leave Request Approval",
        "flowKey": "leave-approval",
        "description": "Standard leave request approval workflow",
        "steps": [
            {
                "stepId": "mgr-approval",
                "order": 1,
                "role": "manager",
                "actions": ["approve", "reject"],
                "slaHours": 48,
                "escalationRole": "admin",
            },
        ],
    },
    {
        "name": "Expense Approval (Two-Step)",
        "flowKey": "expense-approval",
        "description": "Two-step expense approval for amounts over $500",
        "steps": [
            {
                "stepId": "mgr-approval",
                "order": 1,
                "role": "manager",
                "actions": ["approve", "reject"],
                "slaHours": 24,
                "escalationRole": "admin",
            },
            {
                "stepId": "admin-approval",
                "order": 2,
                "role": "admin",
                "actions": ["approve", "reject"],
                "slaHours": 72,
                "required": False,
            },
        ],
    },
    {
        "name": "Equipment Request",
        "flowKey": "equipment-request",
        "description": "IT equipment request approval workflow",
        "steps": [
            {
                "stepId": "it-manager-approval",
                "order": 1,
                "role": "manager",
                "actions": ["approve", "reject"],
                "slaHours": 48,
            },
        ],
    },
]


def seed_default_workflows(store: WorkflowStore, created_by: str = "system") -> List[str]:
    """
    Create the default workflows whose flow key has no active definition yet.

    Returns:
        Ids of the definitions that were created
    """
    created = []
    for raw in DEFAULT_WORKFLOWS:
        workflow_input = WorkflowDefinitionInput.model_validate(raw)
        if _has_active(store, workflow_input.flow_key):
            continue
        created.append(store.create(workflow_input.to_definition(created_by)))

    logger.info(f"Seeded {len(created)} default workflow(s)")
    return created


def _has_active(store: WorkflowStore, flow_key: str) -> bool:
    try:
        store.find_active(flow_key)
    except WorkflowNotFoundError:
        return False
    return True
