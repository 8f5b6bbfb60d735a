"""
Analytics read surface

Ranged, read-only access to requests and history entries for external
reporting jobs. Nothing here aggregates or writes.
"""

from datetime import datetime
from typing import List, Optional

from .instances import RequestFilters, RequestInstance, RequestRepository, RequestStatus
from .ledger import AuditLedger, HistoryAction, HistoryEntry


class AnalyticsReader:
    """Read-only queries over requests and their history"""

    def __init__(self, repository: RequestRepository, ledger: AuditLedger):
        self.repository = repository
        self.ledger = ledger

    def requests_between(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        status: Optional[RequestStatus] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[RequestInstance]:
        """Requests submitted within [start_time, end_time], newest first"""
        return self.repository.list(RequestFilters(
            status=status,
            type=type,
            submitted_from=start_time,
            submitted_to=end_time,
            limit=limit,
            offset=offset,
        ))

    def history_between(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        action: Optional[HistoryAction] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[HistoryEntry]:
        """History entries of every request within [start_time, end_time], oldest first"""
        return self.ledger.read_range(start_time, end_time, action=action, limit=limit, offset=offset)

    def history_for(self, request_id: str) -> List[HistoryEntry]:
        return self.ledger.read(request_id)

    def completed_between(self, start_time: datetime, end_time: datetime) -> List[RequestInstance]:
        """Terminal requests whose completion falls within the range"""
        return [
            r for r in self.repository.list()
            if r.status.is_terminal and r.completed_at is not None
            and start_time <= r.completed_at <= end_time
        ]
