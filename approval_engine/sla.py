"""
SLA Deadline Module

Deadline arithmetic and SLA monitoring queries. Deadlines are flat wall-clock
offsets from the moment a step becomes current. The tracker only reads; the
escalator is the scheduler-side consumer that turns breaches into
``sla_timeout`` transitions.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional
import logging

from .config import get_config
from .errors import ApprovalError
from .instances import RequestInstance, RequestRepository, RequestStatus
from .workflows import Step

logger = logging.getLogger("waypoint.sla")


class SLATracker:
    """Computes deadlines and answers warning/overdue queries"""

    def __init__(self, repository: RequestRepository, clock=None):
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def deadline_for(step: Optional[Step], now: datetime) -> Optional[datetime]:
        """Deadline for a step that becomes current at ``now``, or None without SLA hours"""
        if step is None or step.sla_hours is None:
            return None
        return now + timedelta(hours=step.sla_hours)

    def get_warnings(self, threshold_hours: Optional[float] = None) -> List[RequestInstance]:
        """
        Pending requests due within the warning window.

        Args:
            threshold_hours: Window size; defaults to ``sla_warning_hours``

        Returns:
            Requests with a deadline in [now, now + threshold], earliest first
        """
        if threshold_hours is None:
            threshold_hours = get_config().sla_warning_hours
        now = self.now()
        horizon = now + timedelta(hours=threshold_hours)
        due = [
            r for r in self.repository.pending()
            if r.sla_deadline is not None and now <= r.sla_deadline <= horizon
        ]
        return sorted(due, key=lambda r: r.sla_deadline)

    def get_overdue(self) -> List[RequestInstance]:
        """Pending requests whose deadline already passed, most overdue first"""
        now = self.now()
        overdue = [
            r for r in self.repository.pending()
            if r.sla_deadline is not None and r.sla_deadline < now
        ]
        return sorted(overdue, key=lambda r: r.sla_deadline)

    def is_overdue(self, request: RequestInstance) -> bool:
        return (
            request.status == RequestStatus.PENDING
            and request.sla_deadline is not None
            and request.sla_deadline < self.now()
        )


class SLAEscalator:
    """
    Escalates overdue steps. How often ``run_once`` is called is up to the
    external scheduler.
    """

    def __init__(self, tracker: SLATracker, lifecycle, clock=None):
        self.tracker = tracker
        self.lifecycle = lifecycle
        self._clock = clock or tracker.now

    def due_for_escalation(self, request: RequestInstance) -> bool:
        if request.status != RequestStatus.PENDING or request.escalated_to is not None:
            return False
        step = request.current_step
        if step is None or request.sla_deadline is None:
            return False
        grace = timedelta(hours=step.escalation_hours or 0)
        return self._clock() >= request.sla_deadline + grace

    def run_once(self) -> List[str]:
        """
        Escalate every overdue step whose grace period has elapsed.

        Returns:
            Ids of the requests that were escalated
        """
        escalated = []
        for candidate in self.tracker.get_overdue():
            # The overdue listing may be stale by now
            try:
                request = self.lifecycle.get(candidate.id)
            except ApprovalError as e:
                logger.warning(f"Skipping SLA check for {candidate.id}: {e}")
                continue
            if not self.due_for_escalation(request):
                continue
            try:
                self.lifecycle.record_sla_timeout(request.id)
            except ApprovalError as e:
                logger.warning(f"SLA escalation of {request.id} skipped: {e}")
                continue
            escalated.append(request.id)

        if escalated:
            logger.info(f"Escalated {len(escalated)} overdue request(s)")
        return escalated
