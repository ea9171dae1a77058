"""
Billing event sink.

Operational events (limit reached, blocked messages, credited top-ups,
subscription changes) are emitted through an EventSink that is passed
explicitly to the components that produce them. The default sink writes
them to the application log.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)

PLAN_LIMIT_REACHED = "plan.limit_reached"
PLAN_DELINQUENT_BLOCKED = "plan.delinquent_blocked"
WALLET_MESSAGE_BLOCKED = "wallet.message_blocked"
WALLET_TOPUP_CREDITED = "wallet.topup_credited"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
BILLING_DUE_SOON = "billing.due_soon"
BILLING_BLOCKED = "billing.blocked"


class EventSink(ABC):
    @abstractmethod
    async def emit(self, event_type: str, payload: dict) -> None:
        ...


class LoggingEventSink(EventSink):
    """Writes events to the application log."""

    async def emit(self, event_type: str, payload: dict) -> None:
        logger.info(f"[{event_type}] {payload}")


def get_event_sink() -> EventSink:
    """FastAPI dependency for the sink used by request handlers."""
    return LoggingEventSink()


async def safe_emit(sink: Optional[EventSink], event_type: str, payload: dict):
    """Emit an event; a failing sink is logged and never breaks the caller."""
    if sink is None:
        return
    try:
        await sink.emit(event_type, payload)
    except Exception as e:
        logger.error(f"Event sink failed for {event_type}: {e}")
