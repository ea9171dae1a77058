"""
Billing Monitor - Periodic sweep over billed tenants

Classifies every tenant with a plan due date:
- due_soon: the plan ends within BILLING_REMINDER_WARN_DAYS
- blocked: the plan lapsed with no current subscription; the tenant's cached
  plan_status is written as delinquent
- trial / ok: nothing to do

Each reminder is emitted once per (tenant, due date, kind); the marker is
stored by TenantStore.mark_reminder, so overlapping or repeated ticks
never notify twice.

Usage:
    monitor = BillingMonitor(store, event_sink)
    counts = await monitor.run_tick()
"""

import logging
import math
from datetime import datetime
from typing import Optional

from .config import BILLING_MONITOR_BATCH_SIZE, BILLING_REMINDER_WARN_DAYS
from .events import BILLING_BLOCKED, BILLING_DUE_SOON, EventSink, safe_emit
from .models import BillingState
from .plan_resolver import EntitlementResolver, parse_datetime, utc_now

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400


def resolve_billing_state(tenant: dict, now: datetime,
                          warn_days: int = BILLING_REMINDER_WARN_DAYS) -> BillingState:
    """Billing state from the tenant's cached plan columns."""
    status = (tenant.get("plan_status") or "active").lower()
    due_at = parse_datetime(tenant.get("plan_active_until"))
    if due_at is None and status == "trialing":
        due_at = parse_datetime(tenant.get("plan_trial_ends_at"))

    if due_at is None:
        return BillingState(state="blocked" if status == "delinquent" else "ok", plan_status=status)

    seconds_left = (due_at - now).total_seconds()
    if seconds_left > 0:
        days_to_due = math.ceil(seconds_left / DAY_SECONDS)
        if status == "trialing":
            state = "trial"
        else:
            state = "due_soon" if days_to_due <= warn_days else "ok"
        return BillingState(state=state, plan_status=status, due_at=due_at.isoformat(),
                            days_to_due=days_to_due)

    return BillingState(
        state="blocked",
        plan_status="delinquent",
        due_at=due_at.isoformat(),
        days_to_due=0,
        days_overdue=math.floor(-seconds_left / DAY_SECONDS)
    )


class BillingMonitor:

    def __init__(self, store, event_sink: Optional[EventSink] = None,
                 resolver: Optional[EntitlementResolver] = None):
        self.store = store
        self.event_sink = event_sink
        self.resolver = resolver or EntitlementResolver(store)

    async def run_tick(self, now: Optional[datetime] = None) -> dict:
        """Sweep billed tenants once. Returns reminder counts per kind."""
        now = now or utc_now()
        counts = {"checked": 0, "due_soon": 0, "blocked": 0}

        for tenant in await self.store.tenants.list_billed(BILLING_MONITOR_BATCH_SIZE):
            counts["checked"] += 1
            try:
                state, notified = await self.handle_tenant(tenant, now)
            except Exception as e:
                logger.error(f"Billing check failed for tenant {tenant.get('id')}: {e}")
                continue
            if notified:
                counts[state.state] += 1

        if counts["due_soon"] or counts["blocked"]:
            logger.info(f"Billing reminders sent: due_soon={counts['due_soon']} blocked={counts['blocked']}")
        return counts

    async def handle_tenant(self, tenant: dict, now: datetime):
        """Classify one tenant, apply delinquency and emit its reminder. Returns (state, notified)."""
        tenant_id = tenant["id"]
        state = resolve_billing_state(tenant, now)

        if state.state == "blocked":
            # Stale cached columns: a current subscription still covers the tenant
            entitlement = await self.resolver.resolve(tenant_id, now)
            if not entitlement.is_delinquent:
                return BillingState(state="ok", plan_status=entitlement.status), False
            await self.apply_delinquent_status(tenant)
        elif state.state != "due_soon":
            return state, False

        if not await self.store.tenants.mark_reminder(tenant_id, state.due_at or "", state.state):
            return state, False

        event_type = BILLING_BLOCKED if state.state == "blocked" else BILLING_DUE_SOON
        await safe_emit(self.event_sink, event_type, {
            "tenant_id": tenant_id,
            "plan": tenant.get("plan"),
            "due_at": state.due_at,
            "days_to_due": state.days_to_due,
            "days_overdue": state.days_overdue
        })
        return state, True

    async def apply_delinquent_status(self, tenant: dict) -> bool:
        if (tenant.get("plan_status") or "").lower() == "delinquent":
            return False
        await self.store.tenants.update_plan(tenant["id"], {"plan_status": "delinquent"})
        logger.warning(f"Tenant {tenant['id']} marked delinquent (plan lapsed at {tenant.get('plan_active_until')})")
        return True
