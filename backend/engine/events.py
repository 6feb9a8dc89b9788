"""
POST-COMMIT EVENT DISPATCH

Collaborators (SMS notifications, ledger posting, report caches) subscribe to
named events. Events are queued on the unit of work and only published after
it commits, so a failing subscriber can never roll back a core change.
"""

from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Tuple
import logging

logger = logging.getLogger(__name__)

RECEIPT_APPROVED = "receipt.approved"
EXPENSE_APPROVED = "expense.approved"
CANCELLATION_APPROVED = "cancellation.approved"
REFUND_RECORDED = "refund.recorded"

KNOWN_EVENTS = (RECEIPT_APPROVED, EXPENSE_APPROVED, CANCELLATION_APPROVED, REFUND_RECORDED)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventDispatcher:

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> "EventDispatcher":
        if event_name not in KNOWN_EVENTS:
            logger.warning(f"[EVENTS] Subscribing to unknown event '{event_name}'")
        self._handlers[event_name].append(handler)
        return self

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> int:
        """
        Deliver one event to every subscriber.

        Returns the number of handlers that completed. Handler failures are
        logged and do not stop delivery to the remaining subscribers.
        """
        delivered = 0
        for handler in list(self._handlers.get(event_name, [])):
            try:
                await handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"[EVENTS] Handler {getattr(handler, '__name__', handler)} "
                    f"failed for {event_name}: {e}"
                )
        return delivered

    async def publish_all(self, events: Iterable[Tuple[str, Dict[str, Any]]]) -> None:
        for event_name, payload in events:
            logger.info(f"[EVENTS] Publishing {event_name}")
            await self.publish(event_name, payload)
