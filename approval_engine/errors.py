"""
Typed Exception Hierarchy

Every failure of a single attempted transition is reported as a typed
exception with a machine-readable ``code`` class attribute and structured
attributes, so callers catch by type and never parse messages.

    ApprovalError (base)
    |
    +-- WorkflowError
    |   +-- WorkflowNotFoundError
    |   +-- WorkflowValidationError
    |   +-- NoStepsConfiguredError
    |
    +-- RequestError
    |   +-- RequestNotFoundError
    |   +-- RequestNotPendingError
    |   +-- NoActiveStepError
    |   +-- CancelNotAllowedError
    |   +-- RequestAccessDeniedError
    |
    +-- ActionError
    |   +-- InvalidActionError
    |   +-- InsufficientRoleError
    |   +-- MissingCommentError
    |   +-- MissingTargetError
    |
    +-- ActorNotFoundError
    |
    +-- ConcurrentModificationError

None of these are retried by the engine.
"""

from typing import Iterable, List, Optional


class ApprovalError(Exception):
    """Base exception for all approval engine errors."""

    code: str = "APPROVAL_ERROR"


# Workflow definition errors


class WorkflowError(ApprovalError):
    """Base exception for workflow definition errors."""

    code: str = "WORKFLOW_ERROR"


class WorkflowNotFoundError(WorkflowError):
    """No (active) workflow definition for the given id or flow key."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Workflow not found: {reference}")


class WorkflowValidationError(WorkflowError):
    """Workflow definition is structurally invalid. Carries every violation."""

    code: str = "WORKFLOW_VALIDATION_ERROR"

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__(
            f"Workflow definition invalid ({len(self.errors)} error(s)): "
            + "; ".join(self.errors)
        )


class NoStepsConfiguredError(WorkflowError):
    """The workflow yields no steps to snapshot for a new request."""

    code: str = "NO_WORKFLOW_STEPS"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"No workflow steps configured for workflow {workflow_id}")


# Request errors


class RequestError(ApprovalError):
    """Base exception for request instance errors."""

    code: str = "REQUEST_ERROR"


class RequestNotFoundError(RequestError):
    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request not found: {request_id}")


class RequestNotPendingError(RequestError):
    """The request already reached a terminal status."""

    code: str = "REQUEST_NOT_PENDING"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Request {request_id} is already {status}")


class NoActiveStepError(RequestError):
    """Pending request whose step index points outside its snapshot."""

    code: str = "NO_ACTIVE_STEP"

    def __init__(self, request_id: str, step_index: int):
        self.request_id = request_id
        self.step_index = step_index
        super().__init__(f"No active step for request {request_id} at index {step_index}")


class CancelNotAllowedError(RequestError):
    code: str = "CANCEL_NOT_ALLOWED"

    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Cannot cancel request {request_id}: {reason}")


class RequestAccessDeniedError(RequestError):
    """The actor may not view the request."""

    code: str = "REQUEST_ACCESS_DENIED"

    def __init__(self, request_id: str, actor_id: str):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} may not access request {request_id}")


# Action errors


class ActionError(ApprovalError):
    """Base exception for rejected actions."""

    code: str = "ACTION_ERROR"


class InvalidActionError(ActionError):
    code: str = "INVALID_ACTION"

    def __init__(self, action: str, allowed: Iterable[str]):
        self.action = action
        self.allowed = sorted(allowed)
        super().__init__(f"Invalid action {action}. Allowed: {', '.join(self.allowed)}")


class InsufficientRoleError(ActionError):
    code: str = "INSUFFICIENT_ROLE"

    def __init__(self, actor_id: str, role: str, expected_role: str):
        self.actor_id = actor_id
        self.role = role
        self.expected_role = expected_role
        super().__init__(
            f"Role {role} cannot perform this action (expected {expected_role})"
        )


class MissingCommentError(ActionError):
    code: str = "MISSING_COMMENT"

    def __init__(self, action: str, min_length: int):
        self.action = action
        self.min_length = min_length
        super().__init__(
            f"A comment of at least {min_length} characters is required to {action}"
        )


class MissingTargetError(ActionError):
    """Delegation without somebody to delegate to."""

    code: str = "MISSING_TARGET"

    def __init__(self, action: str, field_name: str):
        self.action = action
        self.field_name = field_name
        super().__init__(f"{field_name} is required when the action is {action}")


class ActorNotFoundError(ApprovalError):
    code: str = "ACTOR_NOT_FOUND"

    def __init__(self, actor_id: str):
        self.actor_id = actor_id
        super().__init__(f"Actor not found: {actor_id}")


class ConcurrentModificationError(ApprovalError):
    """Another transition committed first, or one is in flight right now."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, request_id: str, detail: Optional[str] = None):
        self.request_id = request_id
        self.detail = detail
        message = f"Request {request_id} was modified concurrently"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
