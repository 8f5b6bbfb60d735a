"""
Event System Module

Post-commit transition events and a publish/subscribe dispatcher. The
lifecycle manager publishes one TransitionEvent after each committed state
change; delivery concerns (notifications, webhooks) live in subscribers and
never take part in the transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Any
import logging
import uuid

from .ledger import HistoryAction


@dataclass(frozen=True)
class TransitionEvent:
    """A committed transition of one request"""
    request_id: str
    from_state: str
    to_state: str
    actor_id: Optional[str]
    action: HistoryAction
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_terminal(self) -> bool:
        return not self.to_state.startswith("pending")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_id': self.event_id,
            'request_id': self.request_id,
            'from_state': self.from_state,
            'to_state': self.to_state,
            'actor_id': self.actor_id,
            'action': self.action.value,
            'occurred_at': self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransitionEvent':
        occurred_at = data['occurred_at']
        return cls(
            request_id=data['request_id'],
            from_state=data['from_state'],
            to_state=data['to_state'],
            actor_id=data.get('actor_id'),
            action=HistoryAction(data['action']),
            occurred_at=datetime.fromisoformat(occurred_at) if isinstance(occurred_at, str) else occurred_at,
            event_id=data['event_id'],
        )


TransitionHandler = Callable[[TransitionEvent], Any]


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Publish/subscribe for transition events"""

    def __init__(self):
        self._handlers: Dict[HistoryAction, List[TransitionHandler]] = {}
        self._global_handlers: List[TransitionHandler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("waypoint.events")

    def subscribe(self, handler: TransitionHandler,
                  actions: Optional[Iterable[HistoryAction]] = None) -> None:
        """
        Subscribe a handler to transition events.

        Args:
            handler: Callable receiving a TransitionEvent
            actions: Restrict delivery to these actions; all events when omitted
        """
        with self._lock:
            if actions is None:
                self._global_handlers.append(handler)
                self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")
                return
            for action in actions:
                self._handlers.setdefault(action, []).append(handler)
                self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {action.value}")

    def unsubscribe(self, handler: TransitionHandler) -> None:
        """Remove a handler from every subscription it holds"""
        with self._lock:
            removed = False
            if handler in self._global_handlers:
                self._global_handlers.remove(handler)
                removed = True
            for handlers in self._handlers.values():
                if handler in handlers:
                    handlers.remove(handler)
                    removed = True
            if not removed:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed")

    def publish(self, event: TransitionEvent) -> None:
        """
        Deliver an event to its subscribers.

        Handler errors are logged and swallowed; the transition that produced
        the event is already committed.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.action, [])) + list(self._global_handlers)

        self.logger.debug(
            f"Publishing {event.action.value} for request {event.request_id} "
            f"({event.from_state} -> {event.to_state})"
        )
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for "
                    f"{event.action.value} on request {event.request_id}: {e}",
                    exc_info=True,
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, action: Optional[HistoryAction] = None) -> int:
        """Get count of handlers for a specific action or all"""
        with self._lock:
            if action:
                return len(self._handlers.get(action, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)
