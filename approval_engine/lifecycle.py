"""
Request Lifecycle Module

The approval state machine. A request starts at ``pending(0)`` and moves
through its snapshot of steps until it is approved, rejected or cancelled.

Every transition runs the same pipeline:

1. take the request's lock without waiting (a held lock means another
   transition is in flight and the attempt fails)
2. load the request and authorize the actor
3. compute the next state, including the deadline of a newly current step
4. inside one storage transaction, write the request guarded by the state
   and version that were read, then append the history entry
5. after commit, publish a TransitionEvent

A failure in steps 2-4 leaves neither a state change nor a history entry.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any, Tuple, Union
import logging

from .authorization import ActionAuthorizer
from .config import WaypointConfig, get_config
from .directory import SYSTEM_ACTOR, Actor, ActorDirectory, Role
from .errors import (
    ActorNotFoundError,
    ApprovalError,
    ConcurrentModificationError,
    MissingCommentError,
    MissingTargetError,
    NoActiveStepError,
    NoStepsConfiguredError,
    RequestAccessDeniedError,
    RequestNotPendingError,
    WorkflowNotFoundError,
)
from .events import EventDispatcher, TransitionEvent
from .instances import (
    RequestFilters,
    RequestInstance,
    RequestRepository,
    RequestStatus,
)
from .ledger import AuditLedger, HistoryAction, HistoryEntry
from .locks import KeyedLocks
from .logging_config import log_action
from .schemas import ActionInput
from .sla import SLATracker
from .workflows import StepAction, WorkflowDefinition, WorkflowStore

logger = logging.getLogger("waypoint.lifecycle")

SUBMIT_COMMENT = "Request submitted"
CANCEL_COMMENT = "Request cancelled by requestor"

# Applies an action to a loaded request; returns the step id and extra metadata
Transition = Callable[[RequestInstance, datetime], Tuple[Optional[str], Dict[str, Any]]]


class RequestLifecycleManager:
    """Creates requests and applies actions to them"""

    def __init__(
        self,
        repository: RequestRepository,
        store: WorkflowStore,
        ledger: AuditLedger,
        authorizer: Optional[ActionAuthorizer] = None,
        tracker: Optional[SLATracker] = None,
        dispatcher: Optional[EventDispatcher] = None,
        directory: Optional[ActorDirectory] = None,
        settings: Optional[WaypointConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.store = store
        self.ledger = ledger
        self.authorizer = authorizer or ActionAuthorizer()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tracker = tracker or SLATracker(repository, clock=self.clock)
        self.dispatcher = dispatcher or EventDispatcher()
        self.directory = directory
        self.settings = settings or get_config()
        self.storage = repository.storage
        self._locks = KeyedLocks()

    # Creation

    def submit(
        self,
        payload: Dict[str, Any],
        creator: Union[Actor, str],
        workflow: Optional[WorkflowDefinition] = None,
        workflow_id: Optional[str] = None,
        flow_key: Optional[str] = None,
        type: Optional[str] = None,
    ) -> RequestInstance:
        """
        Create a request from a workflow definition.

        The definition is chosen from ``workflow``, ``workflow_id`` or
        ``flow_key``, in that order; with none of them the request type is
        used as flow key. Optional steps are left out of the snapshot.

        Raises:
            WorkflowNotFoundError: Unknown or inactive definition
            NoStepsConfiguredError: No required steps to snapshot
        """
        creator = self._resolve_actor(creator)
        definition = self._resolve_definition(workflow, workflow_id, flow_key or type)

        steps = tuple(step for step in definition.steps if step.required)
        if not steps:
            raise NoStepsConfiguredError(definition.id)

        now = self.clock()
        request = RequestInstance(
            id=self.repository.new_id(),
            created_at=now,
            updated_at=now,
            type=type or definition.flow_key,
            workflow_id=definition.id,
            steps=steps,
            created_by=creator.id,
            payload=dict(payload or {}),
            status=RequestStatus.PENDING,
            current_step_index=0,
            sla_hours=steps[0].sla_hours,
            sla_deadline=self.tracker.deadline_for(steps[0], now),
            submitted_at=now,
        )

        with self.storage.atomic():
            self.repository.add(request)
            self.ledger.append(
                request.id, creator, HistoryAction.SUBMIT,
                comment=SUBMIT_COMMENT, metadata={'payload': request.payload},
            )

        log_action(logger, "info", f"Request {request.id} submitted on workflow {definition.flow_key}",
                   user_id=creator.id, action=HistoryAction.SUBMIT.value, resource="request",
                   request_id=request.id, extra={'steps': len(steps)})
        self.dispatcher.publish(TransitionEvent(
            request_id=request.id,
            from_state="new",
            to_state=str(request.state),
            actor_id=creator.id,
            action=HistoryAction.SUBMIT,
            occurred_at=now,
        ))
        return request

    # Actions

    def approve(self, request_id: str, actor: Union[Actor, str],
                comment: Optional[str] = None) -> RequestInstance:
        """Approve the current step; the last approval completes the request"""
        actor = self._resolve_actor(actor)

        def apply(request: RequestInstance, now: datetime):
            step = self.authorizer.authorize(request, actor, StepAction.APPROVE)
            if request.is_final_step:
                self._complete(request, RequestStatus.APPROVED, now)
            else:
                self._advance(request, now)
            return step.step_id, {}

        return self._transition(request_id, actor, HistoryAction.APPROVE, apply, comment)

    def reject(self, request_id: str, actor: Union[Actor, str], comment: Optional[str]) -> RequestInstance:
        """Reject the request. A comment of ``reject_comment_min_length`` is required."""
        actor = self._resolve_actor(actor)
        comment = (comment or "").strip()

        def apply(request: RequestInstance, now: datetime):
            step = self.authorizer.authorize(request, actor, StepAction.REJECT)
            min_length = self.settings.reject_comment_min_length
            if len(comment) < min_length:
                raise MissingCommentError(StepAction.REJECT.value, min_length)
            self._complete(request, RequestStatus.REJECTED, now)
            return step.step_id, {}

        return self._transition(request_id, actor, HistoryAction.REJECT, apply, comment)

    def cancel(self, request_id: str, actor: Union[Actor, str],
               comment: Optional[str] = None) -> RequestInstance:
        """Cancel a pending request; only its creator or an admin may"""
        actor = self._resolve_actor(actor)
        comment = comment.strip() if comment else None

        def apply(request: RequestInstance, now: datetime):
            self.authorizer.check_cancel(request, actor)
            min_length = self.settings.cancel_comment_min_length
            if comment is not None and len(comment) < min_length:
                raise MissingCommentError(HistoryAction.CANCEL.value, min_length)
            step = request.current_step
            self._complete(request, RequestStatus.CANCELLED, now)
            return (step.step_id if step else None), {}

        return self._transition(request_id, actor, HistoryAction.CANCEL, apply,
                                comment or CANCEL_COMMENT)

    def escalate(self, request_id: str, actor: Union[Actor, str],
                 escalate_to: Optional[Role] = None,
                 comment: Optional[str] = None) -> RequestInstance:
        """
        Hand the current step to another role without advancing it.

        The target defaults to the step's escalation role, then admin. The
        deadline is left as it is.
        """
        actor = self._resolve_actor(actor)

        def apply(request: RequestInstance, now: datetime):
            step = self.authorizer.authorize(request, actor, StepAction.ESCALATE)
            target = escalate_to or step.escalation_role or Role.ADMIN
            previous = request.expected_role
            request.escalated_to = target
            request.delegated_to = None
            return step.step_id, {'escalated_from': previous.value, 'escalated_to': target.value}

        return self._transition(request_id, actor, HistoryAction.ESCALATE, apply, comment)

    def delegate(self, request_id: str, actor: Union[Actor, str],
                 delegate_to: Optional[str],
                 comment: Optional[str] = None) -> RequestInstance:
        """Hand the current step to one individual without advancing it"""
        actor = self._resolve_actor(actor)

        def apply(request: RequestInstance, now: datetime):
            step = self.authorizer.authorize(request, actor, StepAction.DELEGATE)
            if not delegate_to:
                raise MissingTargetError(StepAction.DELEGATE.value, "delegate_to")
            if self.directory is not None:
                self.directory.require_actor(delegate_to)
            request.delegated_to = delegate_to
            return step.step_id, {'delegated_to': delegate_to}

        return self._transition(request_id, actor, HistoryAction.DELEGATE, apply, comment)

    def perform_action(self, request_id: str, actor: Union[Actor, str],
                       action_input: ActionInput) -> RequestInstance:
        """Apply a validated ActionInput"""
        action = action_input.action
        if action == StepAction.APPROVE:
            return self.approve(request_id, actor, action_input.comment)
        elif action == StepAction.REJECT:
            return self.reject(request_id, actor, action_input.comment)
        elif action == StepAction.ESCALATE:
            return self.escalate(request_id, actor, action_input.escalate_to, action_input.comment)
        return self.delegate(request_id, actor, action_input.delegate_to, action_input.comment)

    def record_sla_timeout(self, request_id: str) -> RequestInstance:
        """Escalate an overdue step on behalf of the scheduler"""

        def apply(request: RequestInstance, now: datetime):
            if request.status != RequestStatus.PENDING:
                raise RequestNotPendingError(request.id, request.status.value)
            step = request.current_step
            if step is None:
                raise NoActiveStepError(request.id, request.current_step_index)
            target = step.escalation_role or Role.ADMIN
            request.escalated_to = target
            request.delegated_to = None
            metadata = {
                'escalated_to': target.value,
                'sla_deadline': request.sla_deadline.isoformat() if request.sla_deadline else None,
            }
            return step.step_id, metadata

        return self._transition(request_id, SYSTEM_ACTOR, HistoryAction.SLA_TIMEOUT, apply,
                                "SLA deadline exceeded")

    # Reads

    def get(self, request_id: str) -> RequestInstance:
        return self.repository.get(request_id)

    def list(self, filters: Optional[RequestFilters] = None,
             actor: Optional[Union[Actor, str]] = None) -> List[RequestInstance]:
        """List requests, narrowed to what ``actor`` may see when given"""
        if actor is not None:
            filters = self.authorizer.visible_filter(self._resolve_actor(actor), filters)
        return self.repository.list(filters)

    def history(self, request_id: str) -> List[HistoryEntry]:
        self.repository.get(request_id)
        return self.ledger.read(request_id)

    def view(self, request_id: str, actor: Union[Actor, str]) -> RequestInstance:
        """Get a request, provided ``actor`` may see it"""
        actor = self._resolve_actor(actor)
        request = self.repository.get(request_id)
        if not self.authorizer.can_view(request, actor):
            raise RequestAccessDeniedError(request_id, actor.id)
        return request

    # Private helper methods

    def _transition(self, request_id: str, actor: Actor, action: HistoryAction,
                    apply: Transition, comment: Optional[str] = None) -> RequestInstance:
        with self._locks.hold(request_id, timeout=0) as acquired:
            if not acquired:
                log_action(logger, "warning", f"{action.value} on {request_id} lost the request lock",
                           user_id=actor.id, action=action.value, resource="request",
                           request_id=request_id)
                raise ConcurrentModificationError(request_id, "another transition is in progress")

            try:
                request = self.repository.get(request_id)
                before = request.state
                expected_version = request.version
                now = self.clock()

                step_id, metadata = apply(request, now)
                request.version = expected_version + 1
                request.updated_at = now

                with self.storage.atomic():
                    if not self.repository.save_transition(request, before, expected_version):
                        raise ConcurrentModificationError(request_id)
                    self.ledger.append(
                        request_id, actor, action, step_id=step_id, comment=comment or None,
                        metadata=dict(metadata, from_state=str(before), to_state=str(request.state)),
                    )
            except ApprovalError as e:
                log_action(logger, "warning", f"{action.value} on {request_id} refused: {e}",
                           user_id=actor.id, action=action.value, resource="request",
                           request_id=request_id, extra={'code': e.code})
                raise

        log_action(logger, "info", f"Request {request_id} {before} -> {request.state}",
                   user_id=actor.id, action=action.value, resource="request",
                   request_id=request_id)
        self.dispatcher.publish(TransitionEvent(
            request_id=request_id,
            from_state=str(before),
            to_state=str(request.state),
            actor_id=actor.id,
            action=action,
            occurred_at=now,
        ))
        return request

    def _advance(self, request: RequestInstance, now: datetime) -> None:
        request.current_step_index += 1
        step = request.current_step
        request.sla_hours = step.sla_hours
        request.sla_deadline = self.tracker.deadline_for(step, now)
        # Overrides belong to the step that was just completed
        request.escalated_to = None
        request.delegated_to = None

    @staticmethod
    def _complete(request: RequestInstance, status: RequestStatus, now: datetime) -> None:
        request.status = status
        request.completed_at = now

    def _resolve_actor(self, actor: Union[Actor, str]) -> Actor:
        if isinstance(actor, Actor):
            return actor
        if self.directory is None:
            raise ActorNotFoundError(actor)
        return self.directory.require_actor(actor)

    def _resolve_definition(self, workflow: Optional[WorkflowDefinition],
                            workflow_id: Optional[str],
                            flow_key: Optional[str]) -> WorkflowDefinition:
        if workflow is not None:
            definition = workflow
        elif workflow_id:
            definition = self.store.get(workflow_id)
        elif flow_key:
            return self.store.find_active(flow_key)
        else:
            raise WorkflowNotFoundError("")
        if not definition.is_active:
            raise WorkflowNotFoundError(definition.id or definition.flow_key)
        return definition
