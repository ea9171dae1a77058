"""
Message Wallet Data Models

Pydantic models for wallet, ledger, subscription and reconciliation operations.
These define the structure of documents stored in MongoDB collections and
the results returned to callers.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Dict, Any


TransactionKind = Literal["cycle_reset", "topup_credit", "debit", "blocked"]
Bucket = Literal["included", "extra"]


# ==================== WALLET MODELS ====================

class MessageWallet(BaseModel):
    """Tenant's message wallet (one per tenant)"""
    tenant_id: str
    cycle_start: str  # ISO datetime string
    cycle_end: str  # ISO datetime string
    included_limit: int = 0
    included_balance: int = 0
    extra_balance: int = 0
    lock_version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WalletSnapshot(BaseModel):
    """Response model for wallet endpoint"""
    tenant_id: str
    month_label: Optional[str] = None
    cycle_start: str
    cycle_end: str
    included_limit: int
    included_balance: int
    extra_balance: int
    total_balance: int
    plan: str
    plan_status: Optional[str] = None


# ==================== LEDGER MODELS ====================

class WalletTransaction(BaseModel):
    """Immutable ledger entry for balance-affecting events"""
    id: int
    tenant_id: str
    kind: TransactionKind
    delta: int = 0
    included_delta: int = 0
    extra_delta: int = 0
    dedup_key: Optional[str] = None
    provider_message_id: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[int] = None
    cycle_start: Optional[str] = None
    cycle_end: Optional[str] = None
    appointment_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: str


class TopupHistoryEntry(BaseModel):
    """Top-up credit as listed to the tenant"""
    id: int
    delta: int
    included_delta: int
    extra_delta: int
    payment_id: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: Optional[str] = None


# ==================== SUBSCRIPTION MODELS ====================

class Subscription(BaseModel):
    """Plan subscription record (one current row per tenant, others historical)"""
    id: int
    tenant_id: str
    plan: str
    status: str
    billing_cycle: str = "monthly"
    amount_cents: Optional[int] = None
    currency: str = "BRL"
    gateway: str = "mercadopago"
    gateway_subscription_id: Optional[str] = None
    gateway_preference_id: Optional[str] = None
    external_reference: Optional[str] = None
    trial_ends_at: Optional[str] = None
    current_period_end: Optional[str] = None
    canceled_at: Optional[str] = None
    last_event_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SubscriptionEvent(BaseModel):
    """Audit trail entry of a webhook applied to a subscription"""
    subscription_id: int
    event_type: str
    gateway_event_id: Optional[str] = None
    payload: Optional[dict] = None
    created_at: str


# ==================== CHECKOUT MODELS ====================

class TopupCheckout(BaseModel):
    """Pending PIX top-up checkout"""
    payment_id: str
    tenant_id: str
    pack_code: str
    wa_messages: int
    amount_cents: int
    status: Literal["pending", "consumed", "failed"] = "pending"
    created_at: str
    consumed_at: Optional[str] = None


class TopupCheckoutRequest(BaseModel):
    """Request to create a top-up checkout"""
    pack_code: str = Field(..., description="Top-up pack code, e.g. wa_100")


class TopupCheckoutResponse(BaseModel):
    """PIX data returned after creating a top-up checkout"""
    payment_id: str
    pack_code: str
    wa_messages: int
    amount_cents: int
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None
    expires_at: Optional[str] = None


class PlanCheckoutRequest(BaseModel):
    """Request to start a plan subscription checkout"""
    plan: str = Field(..., description="Plan code: starter, pro or premium")
    billing_cycle: str = Field("monthly", description="monthly or annual")


class PlanCheckoutResponse(BaseModel):
    """PIX data returned after creating a plan checkout"""
    subscription_id: int
    plan: str
    billing_cycle: str
    plan_status: str = "pending"
    payment_id: str
    amount_cents: int
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None
    expires_at: Optional[str] = None


# ==================== GATEWAY EVENT MODELS ====================

class PaymentEvent(BaseModel):
    """Normalized payment gateway notification"""
    type: str  # subscription_charge | wallet_topup
    payment_id: str
    status: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    preference_id: Optional[str] = None
    external_reference: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw: Optional[dict] = None


# ==================== RESULT MODELS ====================

class DebitResult(BaseModel):
    """Result of a message debit attempt"""
    ok: bool
    sent: Optional[bool] = None
    blocked: bool = False
    reason: Optional[str] = None
    bucket: Optional[Bucket] = None
    idempotent: bool = False
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class CreditResult(BaseModel):
    """Result of a top-up credit"""
    ok: bool
    idempotent: bool = False
    error: Optional[str] = None
    wallet: Optional[WalletSnapshot] = None


class ReconcileResult(BaseModel):
    """Result of applying a gateway event"""
    ok: bool
    applied: bool = False
    idempotent: bool = False
    reason: Optional[str] = None
    subscription_id: Optional[int] = None
    tenant_id: Optional[str] = None


# ==================== ENTITLEMENT MODELS ====================

class Entitlement(BaseModel):
    """Effective plan of a tenant"""
    tenant_id: str
    plan_code: str
    status: str
    billing_cycle: str = "monthly"
    included_limit: int
    max_professionals: Optional[int] = None
    max_services: Optional[int] = None
    allow_whatsapp: bool = True
    is_delinquent: bool = False
    trial_days_left: Optional[int] = None
    trial_warn: bool = False
    trial_ends_at: Optional[str] = None
    active_until: Optional[str] = None
    subscription_id: Optional[int] = None


class BillingState(BaseModel):
    """Billing position of a tenant relative to its plan due date"""
    state: str  # ok, trial, due_soon, blocked
    plan_status: str
    due_at: Optional[str] = None
    days_to_due: Optional[int] = None
    days_overdue: Optional[int] = None


class PlanGuardResult(BaseModel):
    """Result from plan guard"""
    allowed: bool
    action: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    status_code: Optional[int] = None
    limit: Optional[int] = None
    total: Optional[int] = None
    plan_code: Optional[str] = None


class TopupPack(BaseModel):
    """Top-up pack from the catalog"""
    code: str
    name: Optional[str] = None
    wa_messages: int
    price_cents: int


class TopupPackList(BaseModel):
    packs: List[TopupPack]
    currency: str = "BRL"
