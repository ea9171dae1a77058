"""
Checkout initiation for plan subscriptions and WhatsApp top-up packs.

Both flows create a PIX payment at the gateway first and then record the
local row that the reconciler will match when the payment is confirmed:
- plan checkout -> pending subscription (gateway_preference_id = payment id)
- top-up checkout -> pending topup_checkouts row keyed by payment_id
"""

import logging
import os
import re
import uuid
from typing import Optional

from .config import BILLING_CYCLES, PAYMENT_KIND_SUBSCRIPTION, PAYMENT_KIND_TOPUP, PLAN_CATALOG
from .errors import InvalidPlanError
from .models import PlanCheckoutResponse, TopupCheckoutResponse
from .plan_resolver import normalize_billing_cycle, normalize_plan, utc_now
from .wallet_service import normalize_topup_pack

logger = logging.getLogger(__name__)

PLAN_REFERENCE_RE = re.compile(
    r"^plan:(?P<plan>[^:]+):cycle:(?P<cycle>[^:]+):tenant:(?P<tenant_id>[^:]+)(?::(?P<nonce>.+))?$"
)


def build_plan_reference(plan_code: str, billing_cycle: str, tenant_id: str) -> str:
    return f"plan:{plan_code}:cycle:{billing_cycle}:tenant:{tenant_id}:{uuid.uuid4().hex}"


def build_topup_reference(pack_code: str, tenant_id: str) -> str:
    return f"topup:{pack_code}:tenant:{tenant_id}:{uuid.uuid4().hex}"


def parse_plan_reference(reference: Optional[str]) -> Optional[dict]:
    """
    Parse 'plan:<code>:cycle:<cycle>:tenant:<id>[:<nonce>]'.

    Returns None unless the plan and cycle are known.
    """
    match = PLAN_REFERENCE_RE.match(reference or "")
    if not match:
        return None
    plan_code = normalize_plan(match.group("plan"))
    billing_cycle = normalize_billing_cycle(match.group("cycle"))
    if not plan_code or not billing_cycle:
        return None
    return {"plan": plan_code, "billing_cycle": billing_cycle, "tenant_id": match.group("tenant_id")}


def plan_price_cents(plan_code: str, billing_cycle: str) -> int:
    plan = PLAN_CATALOG[plan_code]
    if billing_cycle == "annual":
        return plan["annual_price_cents"]
    return plan["price_cents"]


class CheckoutService:
    """Creates PIX checkouts and the pending rows they are reconciled against."""

    def __init__(self, store, gateway):
        self.store = store
        self.gateway = gateway

    @property
    def currency(self) -> str:
        return os.environ.get("BILLING_CURRENCY", "BRL")

    async def create_topup_checkout(self, tenant_id: str, pack_code: str,
                                    payer_email: Optional[str] = None) -> TopupCheckoutResponse:
        pack = normalize_topup_pack(pack_code)
        reference = build_topup_reference(pack["code"], tenant_id)

        payment = await self.gateway.create_pix_payment(
            amount_cents=pack["price_cents"],
            description=f"WhatsApp top-up - {pack['name']}",
            external_reference=reference,
            metadata={
                "kind": PAYMENT_KIND_TOPUP,
                "tenant_id": tenant_id,
                "pack_code": pack["code"],
                "wa_messages": pack["wa_messages"]
            },
            payer_email=payer_email,
            idempotency_key=reference
        )

        await self.store.checkouts.create({
            "payment_id": payment["payment_id"],
            "tenant_id": tenant_id,
            "pack_code": pack["code"],
            "wa_messages": pack["wa_messages"],
            "amount_cents": pack["price_cents"],
            "currency": self.currency,
            "external_reference": reference,
            "status": "pending",
            "created_at": utc_now().isoformat()
        })
        logger.info(f"Top-up checkout {payment['payment_id']} created for tenant {tenant_id} ({pack['code']})")

        return TopupCheckoutResponse(
            payment_id=payment["payment_id"],
            pack_code=pack["code"],
            wa_messages=pack["wa_messages"],
            amount_cents=pack["price_cents"],
            qr_code=payment.get("qr_code"),
            qr_code_base64=payment.get("qr_code_base64"),
            ticket_url=payment.get("ticket_url"),
            expires_at=payment.get("expires_at")
        )

    async def create_plan_checkout(self, tenant_id: str, plan: str, billing_cycle: str = "monthly",
                                   payer_email: Optional[str] = None) -> PlanCheckoutResponse:
        plan_code = normalize_plan(plan)
        if not plan_code:
            raise InvalidPlanError(details={"plan": plan})
        cycle = normalize_billing_cycle(billing_cycle)
        if cycle not in BILLING_CYCLES:
            raise InvalidPlanError("Invalid billing cycle.", details={"billing_cycle": billing_cycle})

        amount_cents = plan_price_cents(plan_code, cycle)
        reference = build_plan_reference(plan_code, cycle, tenant_id)

        payment = await self.gateway.create_pix_payment(
            amount_cents=amount_cents,
            description=f"Plan {PLAN_CATALOG[plan_code]['label']} ({cycle})",
            external_reference=reference,
            metadata={
                "kind": PAYMENT_KIND_SUBSCRIPTION,
                "tenant_id": tenant_id,
                "plan": plan_code,
                "billing_cycle": cycle
            },
            payer_email=payer_email,
            idempotency_key=reference
        )

        subscription = await self.store.subscriptions.create({
            "tenant_id": tenant_id,
            "plan": plan_code,
            "status": "pending",
            "billing_cycle": cycle,
            "amount_cents": amount_cents,
            "currency": self.currency,
            "gateway": "mercadopago",
            "gateway_preference_id": payment["payment_id"],
            "external_reference": reference
        })
        logger.info(f"Plan checkout {payment['payment_id']} created for tenant {tenant_id} ({plan_code}/{cycle})")

        return PlanCheckoutResponse(
            subscription_id=subscription["id"],
            plan=plan_code,
            billing_cycle=cycle,
            payment_id=payment["payment_id"],
            amount_cents=amount_cents,
            qr_code=payment.get("qr_code"),
            qr_code_base64=payment.get("qr_code_base64"),
            ticket_url=payment.get("ticket_url"),
            expires_at=payment.get("expires_at")
        )
