"""
Tests for the transition event dispatcher
"""

import logging
import pytest
from dataclasses import FrozenInstanceError

from approval_engine.events import TransitionEvent
from approval_engine.ledger import HistoryAction


def make_event(action=HistoryAction.APPROVE, to_state="pending(1)"):
    return TransitionEvent(
        request_id="req-1",
        from_state="pending(0)",
        to_state=to_state,
        actor_id="mgr-1",
        action=action,
    )


class TestEventDispatcher:
    """Test subscribe, publish and unsubscribe"""

    def test_global_handler_receives_everything(self, dispatcher):
        received = []
        dispatcher.subscribe(received.append)

        dispatcher.publish(make_event())
        dispatcher.publish(make_event(HistoryAction.CANCEL, "cancelled"))

        assert [e.action for e in received] == [HistoryAction.APPROVE, HistoryAction.CANCEL]

    def test_action_filter(self, dispatcher):
        rejections = []
        dispatcher.subscribe(rejections.append, actions=[HistoryAction.REJECT])

        dispatcher.publish(make_event())
        dispatcher.publish(make_event(HistoryAction.REJECT, "rejected"))

        assert len(rejections) == 1
        assert rejections[0].is_terminal
        assert dispatcher.get_handler_count(HistoryAction.REJECT) == 1
        assert dispatcher.get_handler_count() == 1

    def test_unsubscribe(self, dispatcher):
        received = []
        dispatcher.subscribe(received.append)
        dispatcher.subscribe(received.append, actions=[HistoryAction.APPROVE])
        dispatcher.unsubscribe(received.append)

        dispatcher.publish(make_event())
        assert received == []
        assert dispatcher.get_handler_count() == 0

    def test_handler_errors_are_logged_and_swallowed(self, dispatcher, caplog):
        """Test one failing handler neither raises nor starves the others"""
        received = []

        def broken(event):
            raise RuntimeError("webhook timeout")

        dispatcher.subscribe(broken)
        dispatcher.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="waypoint.events"):
            dispatcher.publish(make_event())

        assert len(received) == 1
        assert "webhook timeout" in caplog.text

    def test_clear(self, dispatcher):
        dispatcher.subscribe(lambda e: None)
        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestTransitionEvent:
    """Test the event value"""

    def test_serialization(self):
        event = make_event()
        data = event.to_dict()
        assert data["action"] == "approve"
        assert data["from_state"] == "pending(0)"
        assert TransitionEvent.from_dict(data) == event

    def test_events_are_frozen(self):
        event = make_event()
        with pytest.raises(FrozenInstanceError):
            event.to_state = "approved"
