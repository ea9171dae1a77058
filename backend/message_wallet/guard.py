"""
Plan Guard - Entitlement gate before state-changing actions

Enforces:
- Delinquent tenants cannot create new obligations (402 plan_delinquent)
- Professional count is capped by the plan (403 professional_limit_reached)

Read and cancel actions are never gated. Appointment volume and service
count are unlimited on every plan.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException

from database import get_store
from utils.auth import get_current_tenant
from .config import ERROR_CODES, GUARDED_ACTIONS, PROFESSIONAL_ACTIONS
from .events import PLAN_DELINQUENT_BLOCKED, PLAN_LIMIT_REACHED, EventSink, get_event_sink, safe_emit
from .models import PlanGuardResult
from .plan_resolver import EntitlementResolver

logger = logging.getLogger(__name__)


class PlanGuard:
    """
    Usage:
        guard = PlanGuard(store, event_sink=sink)
        result = await guard.check(tenant_id, "create_professional")
        if not result.allowed:
            raise_for_guard(result)
    """

    def __init__(self, store, resolver: Optional[EntitlementResolver] = None,
                 event_sink: Optional[EventSink] = None):
        self.store = store
        self.resolver = resolver or EntitlementResolver(store)
        self.event_sink = event_sink

    async def check(self, tenant_id: str, action: str, professional_count: Optional[int] = None,
                    now=None) -> PlanGuardResult:
        if action not in GUARDED_ACTIONS:
            return PlanGuardResult(allowed=True, action=action)

        entitlement = await self.resolver.resolve(tenant_id, now)

        if entitlement.is_delinquent:
            logger.info(f"Blocked {action} for delinquent tenant {tenant_id}")
            await safe_emit(self.event_sink, PLAN_DELINQUENT_BLOCKED, {
                "tenant_id": tenant_id,
                "action": action,
                "plan": entitlement.plan_code
            })
            return PlanGuardResult(
                allowed=False,
                action=action,
                error_code="plan_delinquent",
                error_message=ERROR_CODES["plan_delinquent"],
                status_code=402,
                plan_code=entitlement.plan_code
            )

        if action in PROFESSIONAL_ACTIONS and entitlement.max_professionals is not None:
            total = professional_count
            if total is None:
                total = await self.store.tenants.count_active_professionals(tenant_id)
            if total >= entitlement.max_professionals:
                await safe_emit(self.event_sink, PLAN_LIMIT_REACHED, {
                    "tenant_id": tenant_id,
                    "limit": "professionals",
                    "max": entitlement.max_professionals,
                    "total": total,
                    "plan": entitlement.plan_code
                })
                return PlanGuardResult(
                    allowed=False,
                    action=action,
                    error_code="professional_limit_reached",
                    error_message=ERROR_CODES["professional_limit_reached"],
                    status_code=403,
                    limit=entitlement.max_professionals,
                    total=total,
                    plan_code=entitlement.plan_code
                )

        return PlanGuardResult(allowed=True, action=action, plan_code=entitlement.plan_code)


def raise_for_guard(result: PlanGuardResult):
    """Turn a rejected guard result into the HTTP error of the API edge."""
    if result.allowed:
        return
    detail = {"error_code": result.error_code, "message": result.error_message}
    if result.limit is not None:
        detail["limit"] = result.limit
        detail["total"] = result.total
    raise HTTPException(status_code=result.status_code or 403, detail=detail)


def plan_guarded(action: str):
    """
    Route dependency for handlers that create new obligations.

    Usage:
        @router.post("/professionals", dependencies=[Depends(plan_guarded("create_professional"))])
        async def create_professional(payload: dict, tenant: dict = Depends(get_current_tenant)):
            ...
    """
    async def dependency(
        tenant: dict = Depends(get_current_tenant),
        store=Depends(get_store),
        event_sink: EventSink = Depends(get_event_sink)
    ) -> PlanGuardResult:
        result = await PlanGuard(store, event_sink=event_sink).check(tenant["id"], action)
        raise_for_guard(result)
        return result

    return dependency
