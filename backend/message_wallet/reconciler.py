"""
Gateway Reconciler

Applies payment gateway events to subscriptions and wallets. Events are
delivered at least once, in any order, possibly long after the payment, so
every branch is safe to replay:
- subscription transitions are compare-and-set on the allowed source
  statuses, so a stale approval never revives a superseded subscription
- top-up credits are deduplicated by the wallet ledger (tenant, payment_id)
- checkout status changes never downgrade a consumed checkout
"""

import logging
from datetime import datetime
from typing import Optional, Union

from pydantic import ValidationError

from .config import (
    APPROVED_STATUSES,
    CANCELLED_STATUSES,
    CURRENT_SUBSCRIPTION_STATUSES,
    PAYMENT_KIND_SUBSCRIPTION,
    PAYMENT_KIND_TOPUP,
    REJECTED_STATUSES,
    SUBSCRIPTION_TRANSITIONS,
)
from .checkout import parse_plan_reference, plan_price_cents
from .events import (
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_PAYMENT_FAILED,
    WALLET_TOPUP_CREDITED,
    EventSink,
    safe_emit,
)
from .models import PaymentEvent, ReconcileResult
from .plan_resolver import (
    add_billing_cycle,
    normalize_billing_cycle,
    normalize_plan,
    parse_datetime,
    pick_current_subscription,
    utc_now,
)
from .wallet_service import WalletService

logger = logging.getLogger(__name__)


class GatewayReconciler:
    """
    Usage:
        reconciler = GatewayReconciler(store, wallet_service, event_sink)
        result = await reconciler.reconcile_payment_event(event)
    """

    def __init__(self, store, wallet_service: Optional[WalletService] = None,
                 event_sink: Optional[EventSink] = None):
        self.store = store
        self.wallet_service = wallet_service or WalletService(store)
        self.event_sink = event_sink

    async def reconcile_payment_event(self, event: Union[PaymentEvent, dict],
                                      now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        if isinstance(event, dict):
            try:
                event = PaymentEvent(**event)
            except ValidationError as e:
                logger.warning(f"Rejected malformed payment event: {e}")
                return ReconcileResult(ok=False, reason="invalid_event")

        if event.type == PAYMENT_KIND_SUBSCRIPTION:
            return await self._reconcile_subscription(event, now)
        if event.type == PAYMENT_KIND_TOPUP:
            return await self._reconcile_topup(event, now)

        logger.info(f"Ignoring payment event type: {event.type} (payment {event.payment_id})")
        return ReconcileResult(ok=False, reason="unsupported_event_type")

    # ==================== SUBSCRIPTIONS ====================

    async def _resolve_subscription(self, event: PaymentEvent) -> Optional[dict]:
        if event.preference_id:
            sub = await self.store.subscriptions.find_latest(gateway_preference_id=event.preference_id)
            if sub:
                return sub
        if event.external_reference:
            return await self.store.subscriptions.find_latest(external_reference=event.external_reference)
        return None

    async def _reconcile_subscription(self, event: PaymentEvent, now: datetime) -> ReconcileResult:
        status = event.status.lower()
        sub = await self._resolve_subscription(event)

        if sub is None:
            parsed = parse_plan_reference(event.external_reference)
            if status not in APPROVED_STATUSES or not parsed:
                logger.warning(f"No subscription matches payment {event.payment_id}")
                return ReconcileResult(ok=False, reason="subscription_not_found")
            sub = await self.store.subscriptions.create({
                "tenant_id": parsed["tenant_id"],
                "plan": parsed["plan"],
                "status": "pending",
                "billing_cycle": parsed["billing_cycle"],
                "amount_cents": plan_price_cents(parsed["plan"], parsed["billing_cycle"]),
                "currency": event.currency or "BRL",
                "gateway": "mercadopago",
                "gateway_preference_id": event.preference_id,
                "external_reference": event.external_reference
            })
            logger.info(f"Created subscription {sub['id']} from external reference of payment {event.payment_id}")

        if event.tenant_id and event.tenant_id != sub["tenant_id"]:
            logger.warning(
                f"Payment {event.payment_id} tenant {event.tenant_id} does not match "
                f"subscription {sub['id']} tenant {sub['tenant_id']}"
            )
            return ReconcileResult(ok=False, reason="tenant_mismatch", subscription_id=sub["id"])

        if status in APPROVED_STATUSES:
            return await self._activate(sub, event, now)
        if status in REJECTED_STATUSES:
            return await self._fail(sub, event, "delinquent", now)
        if status in CANCELLED_STATUSES:
            return await self._fail(sub, event, "canceled", now)

        return ReconcileResult(ok=True, reason=f"status_{status}_ignored",
                               subscription_id=sub["id"], tenant_id=sub["tenant_id"])

    async def _activate(self, sub: dict, event: PaymentEvent, now: datetime) -> ReconcileResult:
        tenant_id = sub["tenant_id"]
        plan_code = normalize_plan(sub.get("plan")) or "starter"
        billing_cycle = normalize_billing_cycle(sub.get("billing_cycle")) or "monthly"

        expected = sub.get("amount_cents")
        if event.amount is not None and expected is not None and round(float(event.amount) * 100) != expected:
            logger.error(
                f"Amount mismatch for subscription {sub['id']} payment {event.payment_id}: "
                f"got {event.amount}, expected {expected / 100:.2f}"
            )
            return ReconcileResult(ok=False, reason="amount_mismatch",
                                   subscription_id=sub["id"], tenant_id=tenant_id)

        trial_end = parse_datetime(sub.get("trial_ends_at"))
        if trial_end is not None and trial_end > now:
            target = "trialing"
            period_end = add_billing_cycle(trial_end, billing_cycle)
        else:
            target = "active"
            period_end = add_billing_cycle(now, billing_cycle)

        changed = await self.store.subscriptions.update(sub["id"], {
            "status": target,
            "current_period_end": period_end.isoformat(),
            "last_event_id": event.payment_id
        }, only_from=SUBSCRIPTION_TRANSITIONS[target])
        if not changed:
            # Already promoted, or superseded/canceled since: a replay changes nothing
            logger.info(
                f"Subscription {sub['id']} is {sub.get('status')}, "
                f"approval of payment {event.payment_id} not applied again"
            )
            return ReconcileResult(ok=True, idempotent=True, subscription_id=sub["id"], tenant_id=tenant_id)

        # The new subscription supersedes any other current one
        others = await self.store.subscriptions.list_for_tenant(tenant_id, statuses=CURRENT_SUBSCRIPTION_STATUSES)
        for other in others:
            if other["id"] != sub["id"]:
                await self.store.subscriptions.update(other["id"], {
                    "status": "canceled",
                    "canceled_at": now.isoformat()
                }, only_from=SUBSCRIPTION_TRANSITIONS["canceled"])

        await self.store.tenants.update_plan(tenant_id, {
            "plan": plan_code,
            "plan_status": target,
            "plan_cycle": billing_cycle,
            "plan_active_until": period_end.isoformat(),
            "plan_trial_ends_at": sub.get("trial_ends_at"),
            "plan_subscription_id": sub["id"]
        })
        await self._record_event(sub, "payment.approved", event)
        await safe_emit(self.event_sink, SUBSCRIPTION_ACTIVATED, {
            "tenant_id": tenant_id,
            "subscription_id": sub["id"],
            "plan": plan_code,
            "billing_cycle": billing_cycle,
            "status": target,
            "active_until": period_end.isoformat()
        })
        logger.info(f"Subscription {sub['id']} for tenant {tenant_id} is now {target} until {period_end.isoformat()}")
        return ReconcileResult(ok=True, applied=True, subscription_id=sub["id"], tenant_id=tenant_id)

    async def _fail(self, sub: dict, event: PaymentEvent, target: str, now: datetime) -> ReconcileResult:
        tenant_id = sub["tenant_id"]
        fields = {"status": target, "last_event_id": event.payment_id}
        if target == "canceled":
            fields["canceled_at"] = now.isoformat()

        changed = await self.store.subscriptions.update(sub["id"], fields, only_from=SUBSCRIPTION_TRANSITIONS[target])
        if not changed:
            return ReconcileResult(ok=True, idempotent=True, subscription_id=sub["id"], tenant_id=tenant_id)

        # Another paid subscription keeps the tenant active
        others = await self.store.subscriptions.list_for_tenant(tenant_id, statuses=CURRENT_SUBSCRIPTION_STATUSES)
        still_current = pick_current_subscription([o for o in others if o["id"] != sub["id"]], now)
        if still_current is None:
            await self.store.tenants.update_plan(tenant_id, {
                "plan_status": target,
                "plan_subscription_id": sub["id"]
            })

        await self._record_event(sub, f"payment.{event.status.lower()}", event)
        await safe_emit(self.event_sink, SUBSCRIPTION_PAYMENT_FAILED, {
            "tenant_id": tenant_id,
            "subscription_id": sub["id"],
            "status": target,
            "payment_status": event.status
        })
        logger.warning(f"Subscription {sub['id']} for tenant {tenant_id} moved to {target} ({event.status})")
        return ReconcileResult(ok=True, applied=True, subscription_id=sub["id"], tenant_id=tenant_id)

    async def _record_event(self, sub: dict, event_type: str, event: PaymentEvent):
        await self.store.subscriptions.append_event({
            "subscription_id": sub["id"],
            "event_type": event_type,
            "gateway_event_id": event.payment_id,
            "payload": event.raw or event.model_dump(exclude={"raw"})
        })

    # ==================== TOP-UPS ====================

    async def _reconcile_topup(self, event: PaymentEvent, now: datetime) -> ReconcileResult:
        status = event.status.lower()
        checkout = await self.store.checkouts.get_by_payment_id(event.payment_id)
        if not checkout:
            logger.warning(f"No pending top-up checkout for payment {event.payment_id}")
            return ReconcileResult(ok=False, reason="checkout_not_found")

        tenant_id = checkout["tenant_id"]
        if event.tenant_id and event.tenant_id != tenant_id:
            logger.warning(f"Payment {event.payment_id} tenant {event.tenant_id} does not match checkout tenant {tenant_id}")
            return ReconcileResult(ok=False, reason="tenant_mismatch", tenant_id=tenant_id)

        if status in APPROVED_STATUSES:
            if event.amount is not None and round(float(event.amount) * 100) != checkout["amount_cents"]:
                logger.error(
                    f"Amount mismatch for payment {event.payment_id}: got {event.amount}, "
                    f"expected {checkout['amount_cents'] / 100:.2f}"
                )
                return ReconcileResult(ok=False, reason="amount_mismatch", tenant_id=tenant_id)

            credit = await self.wallet_service.credit_topup(
                tenant_id,
                event.payment_id,
                checkout["pack_code"],
                metadata={"gateway": "mercadopago", "amount": event.amount},
                now=now
            )
            await self.store.checkouts.mark(event.payment_id, "consumed")

            if not credit.idempotent:
                await safe_emit(self.event_sink, WALLET_TOPUP_CREDITED, {
                    "tenant_id": tenant_id,
                    "payment_id": event.payment_id,
                    "pack_code": checkout["pack_code"],
                    "wa_messages": checkout["wa_messages"]
                })
            return ReconcileResult(ok=True, applied=not credit.idempotent,
                                   idempotent=credit.idempotent, tenant_id=tenant_id)

        if status in REJECTED_STATUSES or status in CANCELLED_STATUSES:
            changed = await self.store.checkouts.mark(event.payment_id, "failed", unless_status="consumed")
            if changed:
                logger.info(f"Top-up checkout {event.payment_id} failed ({status})")
            return ReconcileResult(ok=True, applied=changed, idempotent=not changed, tenant_id=tenant_id)

        return ReconcileResult(ok=True, reason=f"status_{status}_ignored", tenant_id=tenant_id)
