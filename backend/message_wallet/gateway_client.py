"""
Mercado Pago Service for PIX payments

Implements the Mercado Pago REST API v1 for one-time PIX charges used by
plan checkouts and WhatsApp top-up packs.

Features:
- PIX payment creation with idempotency key and external_reference tracking
- Payment lookup for webhook notifications
- Webhook signature verification (x-signature, two secrets for rotation)
- Normalization of a gateway payment into a PaymentEvent

Required Environment Variables:
- MERCADOPAGO_ACCESS_TOKEN
- MERCADOPAGO_WEBHOOK_SECRET (and optionally MERCADOPAGO_WEBHOOK_SECRET_2)
- MERCADOPAGO_NOTIFICATION_URL (optional)
"""

import hashlib
import hmac
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .config import MERCADOPAGO_CONFIG, PAYMENT_KIND_SUBSCRIPTION, PAYMENT_KIND_TOPUP
from .errors import GatewayError
from .models import PaymentEvent

logger = logging.getLogger(__name__)


def parse_signature_header(value: str) -> Dict[str, str]:
    """Parse 'ts=...,v1=...' into a dict."""
    parts = {}
    for item in (value or "").split(","):
        if "=" not in item:
            continue
        key, _, val = item.partition("=")
        parts[key.strip()] = val.strip()
    return parts


def build_signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    manifest = ""
    if data_id:
        # Alphanumeric ids are signed in lowercase
        manifest += f"id:{str(data_id).lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    if ts:
        manifest += f"ts:{ts};"
    return manifest


def detect_payment_kind(payment: Dict[str, Any]) -> Optional[str]:
    metadata = payment.get("metadata") or {}
    kind = metadata.get("kind")
    if kind in (PAYMENT_KIND_SUBSCRIPTION, PAYMENT_KIND_TOPUP):
        return kind
    reference = payment.get("external_reference") or ""
    if reference.startswith("plan:"):
        return PAYMENT_KIND_SUBSCRIPTION
    if reference.startswith("topup:"):
        return PAYMENT_KIND_TOPUP
    return kind


class MercadoPagoClient:
    """Mercado Pago client for PIX charges."""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    @property
    def api_base(self) -> str:
        return MERCADOPAGO_CONFIG["api_base"]

    @property
    def access_token(self) -> str:
        return os.environ.get("MERCADOPAGO_ACCESS_TOKEN", "")

    @property
    def webhook_secrets(self) -> List[str]:
        secrets = [
            os.environ.get("MERCADOPAGO_WEBHOOK_SECRET", ""),
            os.environ.get("MERCADOPAGO_WEBHOOK_SECRET_2", "")
        ]
        return [s for s in secrets if s]

    @property
    def notification_url(self) -> Optional[str]:
        return os.environ.get("MERCADOPAGO_NOTIFICATION_URL") or None

    @property
    def currency(self) -> str:
        return os.environ.get("BILLING_CURRENCY", "BRL")

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        if not self.access_token:
            raise GatewayError("MERCADOPAGO_ACCESS_TOKEN is not configured")
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json"
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    async def create_pix_payment(
        self,
        amount_cents: int,
        description: str,
        external_reference: str,
        metadata: Dict[str, Any],
        payer_email: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a PIX payment.

        Returns:
            Dict with payment_id, status, qr_code, qr_code_base64, ticket_url, expires_at
        """
        payment_data = {
            "transaction_amount": round(amount_cents / 100.0, 2),
            "description": description,
            "payment_method_id": "pix",
            "external_reference": external_reference,
            "metadata": metadata,
            "payer": {"email": payer_email or "pagador@example.com"}
        }
        if self.notification_url:
            payment_data["notification_url"] = self.notification_url

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/v1/payments",
                headers=self._headers(idempotency_key or external_reference),
                json=payment_data
            )

        if response.status_code not in [200, 201]:
            logger.error(f"Mercado Pago payment creation failed ({response.status_code}): {response.text}")
            raise GatewayError(
                f"Failed to create PIX payment: HTTP {response.status_code}",
                details={"status_code": response.status_code}
            )

        result = response.json()
        transaction_data = (result.get("point_of_interaction") or {}).get("transaction_data") or {}
        return {
            "payment_id": str(result["id"]),
            "status": result.get("status"),
            "qr_code": transaction_data.get("qr_code"),
            "qr_code_base64": transaction_data.get("qr_code_base64"),
            "ticket_url": transaction_data.get("ticket_url"),
            "expires_at": result.get("date_of_expiration")
        }

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.api_base}/v1/payments/{payment_id}",
                headers=self._headers()
            )

        if response.status_code != 200:
            logger.error(f"Mercado Pago payment lookup failed for {payment_id}: {response.text}")
            raise GatewayError(
                f"Failed to fetch payment {payment_id}: HTTP {response.status_code}",
                details={"status_code": response.status_code, "payment_id": payment_id}
            )
        return response.json()

    def verify_webhook_signature(self, headers: Mapping[str, str], data_id: str) -> bool:
        """
        Verify the x-signature header of a webhook notification.

        The signed manifest is "id:<data.id>;request-id:<x-request-id>;ts:<ts>;"
        and v1 is its HMAC-SHA256 hex digest with the webhook secret.
        Any configured secret is accepted.
        """
        secrets = self.webhook_secrets
        if not secrets:
            if os.environ.get("APP_ENV", "development").lower() == "production":
                logger.error("MERCADOPAGO_WEBHOOK_SECRET not configured in production, rejecting webhook")
                return False
            logger.warning("MERCADOPAGO_WEBHOOK_SECRET not configured, skipping verification")
            return True

        signature = parse_signature_header(headers.get("x-signature", ""))
        ts = signature.get("ts")
        v1 = signature.get("v1")
        if not ts or not v1:
            logger.warning("Missing Mercado Pago webhook signature parts")
            return False

        manifest = build_signature_manifest(data_id, headers.get("x-request-id", ""), ts)
        for secret in secrets:
            expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
            if hmac.compare_digest(expected, v1):
                return True

        logger.warning(f"Invalid Mercado Pago webhook signature for data.id={data_id}")
        return False

    def to_payment_event(self, payment: Dict[str, Any]) -> PaymentEvent:
        """Normalize a gateway payment resource."""
        metadata = payment.get("metadata") or {}
        payment_id = str(payment.get("id"))
        return PaymentEvent(
            type=detect_payment_kind(payment) or "unknown",
            payment_id=payment_id,
            status=(payment.get("status") or "").lower(),
            amount=payment.get("transaction_amount"),
            currency=payment.get("currency_id"),
            preference_id=payment_id,
            external_reference=payment.get("external_reference"),
            tenant_id=metadata.get("tenant_id"),
            metadata=metadata,
            raw=payment
        )
