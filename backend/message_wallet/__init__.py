"""
Message Wallet Module
Messaging-credit wallet and subscription reconciliation for tenants

This module provides:
- Per-tenant message wallet (included + extra buckets)
- Exactly-once debits keyed by provider message id
- Idempotent PIX top-up credits keyed by gateway payment id
- Plan entitlement resolution from subscriptions and the plan catalog
- Gateway webhook reconciliation (subscription charges and wallet top-ups)
- Plan guard for state-changing actions
- Billing monitor sweep (due-soon reminders, delinquency on lapse)

Collections used:
- message_wallets: Tenant balances and current cycle
- wallet_transactions: Append-only ledger (dedup_key unique)
- subscriptions: Plan subscriptions and gateway correlation keys
- subscription_events: Audit trail of applied webhooks
- topup_checkouts: Pending/consumed PIX top-up checkouts
- tenants: Cached plan columns per tenant
- professionals: Active professionals per tenant (read-only here)
- billing_reminders: Billing reminders already sent per due date
- counters: Monotonic ids
"""

__version__ = "1.0.0"
