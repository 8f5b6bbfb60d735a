"""
Action Authorization Module

Decides whether an actor may act on, cancel or view an approval request.
Checks run in a fixed order so the error a caller sees is deterministic:
pending status, active step, action membership, then role.
"""

import dataclasses
from typing import Optional

from .directory import Actor, Role
from .errors import (
    CancelNotAllowedError,
    InsufficientRoleError,
    InvalidActionError,
    NoActiveStepError,
    RequestNotPendingError,
)
from .instances import RequestFilters, RequestInstance, RequestStatus
from .workflows import Step, StepAction


class ActionAuthorizer:
    """Stateless gatekeeper for request transitions"""

    def authorize(self, request: RequestInstance, actor: Actor, action: StepAction) -> Step:
        """
        Authorize ``actor`` to perform ``action`` on the request's current step.

        Returns:
            The current step

        Raises:
            RequestNotPendingError: Request already reached a terminal status
            NoActiveStepError: Step index points outside the snapshot
            InvalidActionError: Action is not allowed on the current step
            InsufficientRoleError: Actor holds neither the expected role,
                admin, nor the delegation for this step
        """
        if request.status != RequestStatus.PENDING:
            raise RequestNotPendingError(request.id, request.status.value)

        step = request.current_step
        if step is None:
            raise NoActiveStepError(request.id, request.current_step_index)

        if not step.allows(action):
            raise InvalidActionError(action.value, [a.value for a in step.actions])

        expected_role = request.escalated_to or step.role
        if not self.holds_step(request, actor, expected_role):
            raise InsufficientRoleError(actor.id, actor.role.value, expected_role.value)

        return step

    def holds_step(self, request: RequestInstance, actor: Actor,
                   expected_role: Optional[Role] = None) -> bool:
        expected_role = expected_role or request.expected_role
        if actor.role == Role.ADMIN or actor.role == expected_role:
            return True
        return request.delegated_to is not None and request.delegated_to == actor.id

    def check_cancel(self, request: RequestInstance, actor: Actor) -> None:
        """Only the creator or an admin may cancel, and only while pending"""
        if request.created_by != actor.id and actor.role != Role.ADMIN:
            raise CancelNotAllowedError(request.id, "only the requestor or an admin can cancel")
        if request.status != RequestStatus.PENDING:
            raise CancelNotAllowedError(
                request.id, f"cannot cancel request with status {request.status.value}"
            )

    def can_cancel(self, request: RequestInstance, actor: Actor) -> bool:
        try:
            self.check_cancel(request, actor)
        except CancelNotAllowedError:
            return False
        return True

    def can_view(self, request: RequestInstance, actor: Actor) -> bool:
        if actor.role == Role.ADMIN or request.created_by == actor.id:
            return True
        if actor.role == Role.MANAGER:
            step = self._indexed_step(request)
            if step is not None and (step.role == Role.MANAGER or request.escalated_to == Role.ADMIN):
                return True
        return request.delegated_to is not None and request.delegated_to == actor.id

    def visible_filter(self, actor: Actor, filters: Optional[RequestFilters] = None) -> RequestFilters:
        """
        Narrow list filters to what ``actor`` may see.

        Employees only see their own requests. Managers default to the
        manager queue when they filter by neither creator nor role. Admins
        see everything.
        """
        filters = dataclasses.replace(filters) if filters is not None else RequestFilters()
        if actor.role == Role.EMPLOYEE:
            filters.created_by = actor.id
        elif actor.role == Role.MANAGER:
            if filters.created_by is None and filters.pending_for_role is None:
                filters.pending_for_role = Role.MANAGER
        return filters

    @staticmethod
    def _indexed_step(request: RequestInstance) -> Optional[Step]:
        # Unlike current_step, still answers once the request is terminal
        if 0 <= request.current_step_index < len(request.steps):
            return request.steps[request.current_step_index]
        return None
