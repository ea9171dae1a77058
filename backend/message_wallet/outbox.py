"""
WhatsApp message outbox.

Send flow: plan guard -> wallet debit (with the per-appointment cap) ->
transport delivery. The credit is consumed on attempt: a transport failure
keeps the debit and the result reports send_failed.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .config import MAX_MESSAGES_PER_APPOINTMENT
from .events import PLAN_LIMIT_REACHED, WALLET_MESSAGE_BLOCKED, EventSink, safe_emit
from .models import DebitResult
from .wallet_service import WalletService

logger = logging.getLogger(__name__)

BLOCKING_REASONS = {"insufficient_balance", "per_appointment_limit"}


class MessageTransport(ABC):
    """Delivers an outbound message (WhatsApp provider, SMS gateway, ...)."""

    @abstractmethod
    async def send(self, tenant_id: str, to: str, body: str, message_id: str,
                   metadata: Optional[dict] = None) -> Optional[dict]:
        ...


class LoggingTransport(MessageTransport):
    """Transport that only logs; used when no provider is configured."""

    async def send(self, tenant_id, to, body, message_id, metadata=None):
        logger.info(f"[outbox] tenant={tenant_id} to={to} message_id={message_id} ({len(body or '')} chars)")
        return {"message_id": message_id, "status": "logged"}


class MessageOutbox:
    """
    Usage:
        outbox = MessageOutbox(wallet_service, event_sink, transport, guard)
        result = await outbox.send_message(tenant_id, "+5511999999999", "Reminder", appointment_id="apt-1")
        if result.blocked:
            ...
    """

    def __init__(
        self,
        wallet_service: WalletService,
        event_sink: Optional[EventSink] = None,
        transport: Optional[MessageTransport] = None,
        guard=None,
        max_per_appointment: int = MAX_MESSAGES_PER_APPOINTMENT
    ):
        self.wallet_service = wallet_service
        self.event_sink = event_sink
        self.transport = transport or LoggingTransport()
        self.guard = guard
        self.max_per_appointment = max_per_appointment

    async def debit_message(
        self,
        tenant_id: str,
        provider_message_id: str,
        appointment_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None
    ) -> DebitResult:
        """
        Debit one message. A refusal (no balance, appointment cap) is recorded
        as a blocked ledger entry and reported as ok with blocked=True.
        """
        result = await self.wallet_service.debit(
            tenant_id,
            provider_message_id,
            appointment_id=appointment_id,
            max_per_appointment=self.max_per_appointment,
            metadata=metadata,
            now=now
        )
        if result.ok or result.reason not in BLOCKING_REASONS:
            return result

        blocked_metadata = {"provider_message_id": provider_message_id, **(metadata or {})}
        await self.wallet_service.record_blocked(
            tenant_id, result.reason, appointment_id=appointment_id, metadata=blocked_metadata
        )
        payload = {
            "tenant_id": tenant_id,
            "reason": result.reason,
            "appointment_id": appointment_id,
            "provider_message_id": provider_message_id
        }
        await safe_emit(self.event_sink, WALLET_MESSAGE_BLOCKED, payload)
        if result.reason == "insufficient_balance":
            await safe_emit(self.event_sink, PLAN_LIMIT_REACHED, {**payload, "limit": "wa_messages"})

        logger.info(f"Message blocked for tenant {tenant_id}: {result.reason}")
        return DebitResult(
            ok=True,
            sent=False,
            blocked=True,
            reason=result.reason,
            provider_message_id=provider_message_id
        )

    async def send_message(
        self,
        tenant_id: str,
        to: str,
        body: str,
        appointment_id: Optional[str] = None,
        message_id: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> DebitResult:
        if self.guard is not None:
            check = await self.guard.check(tenant_id, "send_message")
            if not check.allowed:
                return DebitResult(ok=False, sent=False, blocked=True, reason=check.error_code,
                                   provider_message_id=message_id)

        message_id = message_id or f"msg-{uuid.uuid4().hex}"
        result = await self.debit_message(tenant_id, message_id, appointment_id, metadata)
        if not result.ok or result.blocked:
            return result
        if result.idempotent:
            # Already debited and handed to the transport earlier
            return result

        try:
            await self.transport.send(tenant_id, to, body, message_id, metadata)
        except Exception as e:
            logger.error(f"Transport failed for tenant {tenant_id} message {message_id}: {e}")
            return result.model_copy(update={"sent": False, "error": "send_failed"})

        return result.model_copy(update={"sent": True})
