"""
Message Wallet Configuration and Constants

Plan catalog, top-up packs, billing cycles and limits are defined here.
All prices are in cents (BRL).
"""

# ==================== PLAN CATALOG ====================
# max_professionals=None means unlimited
PLAN_CATALOG = {
    "starter": {
        "code": "starter",
        "label": "Starter",
        "price_cents": 1490,
        "annual_price_cents": 14900,
        "max_professionals": 2,
        "included_wa_messages": 250,
        "allow_whatsapp": True
    },
    "pro": {
        "code": "pro",
        "label": "Pro",
        "price_cents": 4990,
        "annual_price_cents": 49900,
        "max_professionals": 10,
        "included_wa_messages": 1000,
        "allow_whatsapp": True
    },
    "premium": {
        "code": "premium",
        "label": "Premium",
        "price_cents": 19900,
        "annual_price_cents": 199000,
        "max_professionals": None,
        "included_wa_messages": 3000,
        "allow_whatsapp": True
    }
}

DEFAULT_PLAN = "starter"

# Legacy and localized plan names
PLAN_ALIASES = {
    "starter": "starter",
    "basic": "starter",
    "basico": "starter",
    "pro": "pro",
    "profissional": "pro",
    "premium": "premium"
}

# ==================== PLAN STATUSES ====================
# Subscription status -> statuses it may be entered from
SUBSCRIPTION_TRANSITIONS = {
    "active": {"pending", "delinquent"},
    "trialing": {"pending", "delinquent"},
    "delinquent": {"pending", "trialing", "active"},
    "canceled": {"pending", "trialing", "active", "delinquent"}
}

# Statuses that make a subscription count as current
CURRENT_SUBSCRIPTION_STATUSES = {"active", "trialing"}

TRIAL_WARN_DAYS = 3

# ==================== BILLING MONITOR ====================
BILLING_REMINDER_WARN_DAYS = 3
BILLING_MONITOR_INTERVAL_MINUTES = 30
BILLING_MONITOR_BATCH_SIZE = 1000

# ==================== BILLING CYCLES ====================
BILLING_CYCLES = {
    "monthly": {"label": "Monthly", "months": 1},
    "annual": {"label": "Annual", "months": 12}
}

BILLING_CYCLE_ALIASES = {
    "monthly": "monthly",
    "mensal": "monthly",
    "annual": "annual",
    "yearly": "annual",
    "anual": "annual"
}

# ==================== WHATSAPP TOP-UP PACKS ====================
TOPUP_PACKS = {
    "wa_100": {"name": "100 messages", "wa_messages": 100, "price_cents": 990},
    "wa_200": {"name": "200 messages", "wa_messages": 200, "price_cents": 1690},
    "wa_300": {"name": "300 messages", "wa_messages": 300, "price_cents": 2490},
    "wa_500": {"name": "500 messages", "wa_messages": 500, "price_cents": 3990},
    "wa_1000": {"name": "1,000 messages", "wa_messages": 1000, "price_cents": 7990},
    "wa_2500": {"name": "2,500 messages", "wa_messages": 2500, "price_cents": 19990}
}

# ==================== MESSAGE LIMITS ====================
MAX_MESSAGES_PER_APPOINTMENT = 5

# ==================== PLAN GUARD ACTIONS ====================
# Actions that create new obligations; blocked for delinquent tenants
GUARDED_ACTIONS = {
    "create_professional",
    "activate_professional",
    "create_service",
    "create_appointment",
    "toggle_slot",
    "send_message"
}

PROFESSIONAL_ACTIONS = {"create_professional", "activate_professional"}

# ==================== STORE RETRY POLICY ====================
WALLET_TX_MAX_ATTEMPTS = 3
WALLET_TX_RETRY_BASE_MS = 75
WALLET_TX_RETRY_MAX_MS = 1200

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "wallet_unavailable": "Message wallet is unavailable. Please try again.",
    "insufficient_balance": "No message credits left. Buy a top-up pack or wait for the next cycle.",
    "per_appointment_limit": "This appointment already received the maximum number of messages.",
    "plan_delinquent": "Your plan payment is overdue. Pay the pending PIX to continue.",
    "professional_limit_reached": "You reached the professional limit of your plan. Upgrade to add more.",
    "invalid_package": "Invalid top-up pack.",
    "invalid_plan": "Invalid plan.",
    "gateway_error": "Payment gateway request failed."
}

# ==================== MERCADO PAGO CONFIGURATION ====================
MERCADOPAGO_CONFIG = {
    "api_base": "https://api.mercadopago.com",
    # Webhook topics that carry a payment id
    "payment_topics": ["payment"]
}

# Payment metadata "kind" values set at checkout creation
PAYMENT_KIND_SUBSCRIPTION = "subscription_charge"
PAYMENT_KIND_TOPUP = "wallet_topup"

# Gateway payment statuses
APPROVED_STATUSES = {"approved", "paid"}
REJECTED_STATUSES = {"rejected", "charged_back"}
CANCELLED_STATUSES = {"cancelled", "canceled", "expired", "refunded"}
