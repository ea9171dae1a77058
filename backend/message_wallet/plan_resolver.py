"""
Plan Resolver - Resolves a tenant's effective entitlement

Reads the tenant's cached plan columns and its subscriptions to decide
which plan applies right now.

Rules:
- A current subscription (active/trialing, period not ended) is authoritative;
  the latest current_period_end wins, ties broken by highest id
- Without one, an elapsed plan_active_until (or trial end) degrades the
  tenant to its last plan with delinquent status
- A delinquent tenant gets no included WhatsApp messages
- Default to 'starter' if the plan cannot be determined; never raises
"""

import calendar
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from .config import (
    BILLING_CYCLE_ALIASES,
    BILLING_CYCLES,
    CURRENT_SUBSCRIPTION_STATUSES,
    DEFAULT_PLAN,
    PLAN_ALIASES,
    PLAN_CATALOG,
    TRIAL_WARN_DAYS,
)
from .models import Entitlement

logger = logging.getLogger(__name__)


# ==================== DATE HELPERS ====================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Unparseable datetime value: {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def compute_month_cycle(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Calendar month (UTC) containing `now`, as a half-open [start, end) window."""
    now = now or utc_now()
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def month_label(cycle_start: datetime) -> str:
    return cycle_start.strftime("%Y-%m")


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_billing_cycle(dt: datetime, billing_cycle: str) -> datetime:
    cycle = normalize_billing_cycle(billing_cycle) or "monthly"
    return add_months(dt, BILLING_CYCLES[cycle]["months"])


# ==================== NORMALIZATION ====================

def normalize_plan(plan: Optional[str]) -> Optional[str]:
    """Map a plan code or alias to a catalog code, or None if unknown."""
    if not plan:
        return None
    return PLAN_ALIASES.get(str(plan).strip().lower())


def normalize_billing_cycle(cycle: Optional[str]) -> Optional[str]:
    if not cycle:
        return None
    return BILLING_CYCLE_ALIASES.get(str(cycle).strip().lower())


def compute_trial_info(trial_ends_at: Optional[datetime], now: datetime) -> Tuple[Optional[int], bool]:
    """Days left in the trial (rounded up, floored at 0) and whether to warn."""
    if trial_ends_at is None:
        return None, False
    seconds_left = (trial_ends_at - now).total_seconds()
    days_left = max(0, math.ceil(seconds_left / 86400))
    return days_left, days_left <= TRIAL_WARN_DAYS


def wallet_included_limit(entitlement: Entitlement) -> int:
    """Included messages the wallet should grant for the current cycle."""
    if entitlement.is_delinquent or not entitlement.allow_whatsapp:
        return 0
    return entitlement.included_limit


def default_entitlement(tenant_id: str) -> Entitlement:
    plan = PLAN_CATALOG[DEFAULT_PLAN]
    return Entitlement(
        tenant_id=tenant_id,
        plan_code=DEFAULT_PLAN,
        status="active",
        included_limit=plan["included_wa_messages"],
        max_professionals=plan["max_professionals"],
        allow_whatsapp=plan["allow_whatsapp"]
    )


def pick_current_subscription(subscriptions: list, now: datetime) -> Optional[dict]:
    """Latest current_period_end among current subscriptions, ties broken by highest id."""
    candidates = []
    for sub in subscriptions:
        if sub.get("status") not in CURRENT_SUBSCRIPTION_STATUSES:
            continue
        period_end = parse_datetime(sub.get("current_period_end"))
        if period_end is not None and period_end <= now:
            continue
        # An open-ended period sorts after any dated one
        sort_end = period_end or datetime.max.replace(tzinfo=timezone.utc)
        candidates.append((sort_end, sub.get("id") or 0, sub))
    if not candidates:
        return None
    candidates.sort(key=lambda c: (c[0], c[1]), reverse=True)
    return candidates[0][2]


class EntitlementResolver:
    """
    Resolves the effective plan of a tenant.

    Usage:
        resolver = EntitlementResolver(store)
        entitlement = await resolver.resolve(tenant_id)
    """

    def __init__(self, store):
        self.store = store

    async def resolve(self, tenant_id: str, now: Optional[datetime] = None) -> Entitlement:
        now = now or utc_now()
        try:
            return await self._resolve(tenant_id, now)
        except Exception as e:
            logger.error(f"Error resolving entitlement for tenant {tenant_id}: {e}")
            return default_entitlement(tenant_id)

    async def _resolve(self, tenant_id: str, now: datetime) -> Entitlement:
        tenant = await self.store.tenants.get(tenant_id)
        subscriptions = await self.store.subscriptions.list_for_tenant(
            tenant_id, statuses=CURRENT_SUBSCRIPTION_STATUSES
        )
        current = pick_current_subscription(subscriptions, now)

        if current is None and not tenant:
            logger.warning(f"Tenant not found for entitlement resolution: {tenant_id}")
            return default_entitlement(tenant_id)

        tenant = tenant or {}
        is_delinquent = False

        if current is not None:
            plan_code = normalize_plan(current.get("plan")) or DEFAULT_PLAN
            status = current["status"]
            billing_cycle = normalize_billing_cycle(current.get("billing_cycle")) or "monthly"
            active_until = current.get("current_period_end")
            trial_ends_at = current.get("trial_ends_at") or tenant.get("plan_trial_ends_at")
            subscription_id = current.get("id")
        else:
            plan_code = normalize_plan(tenant.get("plan")) or DEFAULT_PLAN
            status = (tenant.get("plan_status") or "active").lower()
            billing_cycle = normalize_billing_cycle(tenant.get("plan_cycle")) or "monthly"
            active_until = tenant.get("plan_active_until")
            trial_ends_at = tenant.get("plan_trial_ends_at")
            subscription_id = tenant.get("plan_subscription_id")

            deadline = parse_datetime(active_until)
            if deadline is None and status == "trialing":
                deadline = parse_datetime(trial_ends_at)

            if status == "delinquent":
                is_delinquent = True
            elif deadline is not None and deadline <= now:
                logger.info(f"Tenant {tenant_id} plan {plan_code} lapsed at {deadline.isoformat()}")
                is_delinquent = True
                status = "delinquent"

        trial_days_left, trial_warn = None, False
        if status == "trialing":
            trial_days_left, trial_warn = compute_trial_info(parse_datetime(trial_ends_at), now)

        plan = PLAN_CATALOG[plan_code]
        entitlement = Entitlement(
            tenant_id=tenant_id,
            plan_code=plan_code,
            status=status,
            billing_cycle=billing_cycle,
            included_limit=plan["included_wa_messages"],
            max_professionals=plan["max_professionals"],
            max_services=None,
            allow_whatsapp=plan.get("allow_whatsapp", True),
            is_delinquent=is_delinquent,
            trial_days_left=trial_days_left,
            trial_warn=trial_warn,
            trial_ends_at=trial_ends_at,
            active_until=active_until,
            subscription_id=subscription_id
        )
        entitlement.included_limit = wallet_included_limit(entitlement)
        return entitlement


async def resolve_entitlement(store, tenant_id: str, now: Optional[datetime] = None) -> Entitlement:
    """Convenience wrapper around EntitlementResolver."""
    return await EntitlementResolver(store).resolve(tenant_id, now)
