"""
Billing API Routes

Endpoints:
- GET /api/billing/entitlement - Effective plan of the tenant
- GET /api/billing/whatsapp/wallet - WhatsApp message wallet snapshot
- GET /api/billing/whatsapp/topups - Recent top-up credits
- GET /api/billing/whatsapp/packs - Top-up pack catalog
- POST /api/billing/whatsapp/topup-checkout - Create a PIX top-up checkout
- POST /api/billing/checkout - Create a PIX plan checkout
- POST /api/billing/webhook - Mercado Pago webhook handler
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Query

from database import get_store
from utils.auth import get_current_tenant
from .checkout import CheckoutService
from .config import MERCADOPAGO_CONFIG, TOPUP_PACKS
from .errors import WalletError
from .events import EventSink, get_event_sink
from .gateway_client import MercadoPagoClient
from .models import (
    Entitlement,
    PlanCheckoutRequest,
    PlanCheckoutResponse,
    TopupCheckoutRequest,
    TopupCheckoutResponse,
    TopupPack,
    TopupPackList,
    WalletSnapshot,
)
from .plan_resolver import resolve_entitlement
from .reconciler import GatewayReconciler
from .wallet_service import WalletService

logger = logging.getLogger(__name__)

billing_router = APIRouter(prefix="/billing", tags=["Billing"])


def get_gateway() -> MercadoPagoClient:
    return MercadoPagoClient()


def _raise_wallet_error(e: WalletError):
    raise HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== ENTITLEMENT ====================

@billing_router.get("/entitlement", response_model=Entitlement)
async def get_entitlement(tenant: dict = Depends(get_current_tenant), store=Depends(get_store)):
    """Current plan, limits, trial and delinquency state."""
    return await resolve_entitlement(store, tenant["id"])


# ==================== WHATSAPP WALLET ====================

@billing_router.get("/whatsapp/wallet", response_model=WalletSnapshot)
async def get_whatsapp_wallet(tenant: dict = Depends(get_current_tenant), store=Depends(get_store)):
    """
    Get the tenant's WhatsApp message wallet.

    The wallet is created on first access and its cycle rolled forward
    when the month changed.
    """
    try:
        return await WalletService(store).get_wallet_snapshot(tenant["id"])
    except WalletError as e:
        _raise_wallet_error(e)


@billing_router.get("/whatsapp/topups")
async def list_whatsapp_topups(
    limit: int = Query(5, ge=1, le=50),
    tenant: dict = Depends(get_current_tenant),
    store=Depends(get_store)
):
    entries = await WalletService(store).list_topup_history(tenant["id"], limit)
    return {
        "topups": [entry.model_dump() for entry in entries],
        "count": len(entries)
    }


@billing_router.get("/whatsapp/packs", response_model=TopupPackList)
async def get_whatsapp_packs():
    return TopupPackList(
        packs=[TopupPack(code=code, **pack) for code, pack in TOPUP_PACKS.items()]
    )


@billing_router.post("/whatsapp/topup-checkout", response_model=TopupCheckoutResponse)
async def create_whatsapp_topup_checkout(
    request: TopupCheckoutRequest,
    tenant: dict = Depends(get_current_tenant),
    store=Depends(get_store),
    gateway: MercadoPagoClient = Depends(get_gateway)
):
    """
    Create a PIX payment for a top-up pack.

    Messages are credited when the payment webhook confirms it.
    """
    try:
        return await CheckoutService(store, gateway).create_topup_checkout(
            tenant["id"], request.pack_code, payer_email=tenant.get("email")
        )
    except WalletError as e:
        _raise_wallet_error(e)


# ==================== PLAN CHECKOUT ====================

@billing_router.post("/checkout", response_model=PlanCheckoutResponse)
async def create_plan_checkout(
    request: PlanCheckoutRequest,
    tenant: dict = Depends(get_current_tenant),
    store=Depends(get_store),
    gateway: MercadoPagoClient = Depends(get_gateway)
):
    try:
        return await CheckoutService(store, gateway).create_plan_checkout(
            tenant["id"], request.plan, request.billing_cycle, payer_email=tenant.get("email")
        )
    except WalletError as e:
        _raise_wallet_error(e)


# ==================== WEBHOOK ====================

@billing_router.post("/webhook")
async def mercadopago_webhook(
    request: Request,
    store=Depends(get_store),
    gateway: MercadoPagoClient = Depends(get_gateway),
    event_sink: EventSink = Depends(get_event_sink)
):
    """
    Handle Mercado Pago payment notifications.

    The notification only carries the payment id; the payment itself is
    fetched from the gateway before being reconciled. Unknown or
    unresolvable notifications are acknowledged with 200; a failed payment
    lookup or store error is not, so the gateway redelivers it.
    """
    body = await request.body()
    try:
        data = json.loads(body.decode()) if body else {}
    except (ValueError, UnicodeDecodeError):
        data = {}
    if not isinstance(data, dict):
        data = {}

    params = request.query_params
    topic = params.get("type") or params.get("topic") or data.get("type") or data.get("topic")
    data_id = (
        params.get("data.id")
        or (data.get("data") or {}).get("id")
        or params.get("id")
    )

    if not gateway.verify_webhook_signature(request.headers, str(data_id or "")):
        raise HTTPException(status_code=401, detail="Invalid signature")

    logger.info(f"Received Mercado Pago webhook: {topic} (data.id={data_id})")

    if topic not in MERCADOPAGO_CONFIG["payment_topics"] or not data_id:
        return {"status": "received", "processed": False, "reason": "ignored_topic"}

    try:
        payment = await gateway.get_payment(str(data_id))
    except WalletError as e:
        # Non-2xx makes Mercado Pago redeliver the notification
        logger.error(f"Could not fetch payment {data_id}: {e}")
        _raise_wallet_error(e)

    event = gateway.to_payment_event(payment)
    reconciler = GatewayReconciler(store, WalletService(store), event_sink)
    result = await reconciler.reconcile_payment_event(event)

    if not result.ok:
        logger.warning(f"Webhook for payment {data_id} not applied: {result.reason}")

    return {"status": "received", "processed": result.ok, **result.model_dump()}
