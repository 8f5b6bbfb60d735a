"""
Tests for the analytics read surface
"""

import pytest
from datetime import timedelta

from approval_engine.instances import RequestStatus
from approval_engine.ledger import HistoryAction
from approval_engine.reporting import AnalyticsReader


@pytest.fixture
def analytics(repository, ledger):
    return AnalyticsReader(repository, ledger)


@pytest.fixture
def activity(lifecycle, clock, single_step_workflow, employee, manager):
    """Three requests submitted an hour apart; the first is approved"""
    start = clock()
    first = lifecycle.submit({"n": 1}, employee, workflow=single_step_workflow)
    clock.advance(hours=1)
    second = lifecycle.submit({"n": 2}, employee, workflow=single_step_workflow)
    clock.advance(hours=1)
    third = lifecycle.submit({"n": 3}, employee, workflow=single_step_workflow)
    clock.advance(hours=1)
    lifecycle.approve(first.id, manager)
    return start, [first, second, third]


class TestAnalyticsReader:
    """Test ranged read-only access"""

    def test_requests_between(self, analytics, activity):
        start, (first, second, third) = activity

        window = analytics.requests_between(start + timedelta(minutes=30), start + timedelta(hours=2))
        assert [r.id for r in window] == [third.id, second.id]

        approved = analytics.requests_between(status=RequestStatus.APPROVED)
        assert [r.id for r in approved] == [first.id]

        assert len(analytics.requests_between(limit=2)) == 2

    def test_history_between(self, analytics, activity):
        start, (first, _, _) = activity

        assert len(analytics.history_between()) == 4
        approvals = analytics.history_between(action=HistoryAction.APPROVE)
        assert [e.request_id for e in approvals] == [first.id]
        assert len(analytics.history_between(start, start + timedelta(minutes=90))) == 2

    def test_history_for_and_completed(self, analytics, activity, clock):
        start, (first, second, _) = activity

        assert [e.action for e in analytics.history_for(first.id)] == [
            HistoryAction.SUBMIT, HistoryAction.APPROVE
        ]
        completed = analytics.completed_between(start, clock())
        assert [r.id for r in completed] == [first.id]
        assert analytics.completed_between(start, start + timedelta(hours=1)) == []
