"""
Message Wallet Store Interfaces

Repository interfaces used by the wallet engine. The production
implementation lives in mongo_store.py; tests use an in-memory double
implementing the same interfaces.

Every method takes an optional `session`. When given, the call joins the
running store transaction opened by Store.transaction().

Dedup keys (unique in the transaction log):
- debit:<provider_message_id>
- topup_credit:<tenant_id>:<payment_id>
- cycle_reset:<tenant_id>:<cycle_start ISO>
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Awaitable, Callable, List, Optional

from .config import WALLET_TX_MAX_ATTEMPTS, WALLET_TX_RETRY_BASE_MS, WALLET_TX_RETRY_MAX_MS

logger = logging.getLogger(__name__)


def debit_dedup_key(provider_message_id: str) -> str:
    return f"debit:{provider_message_id}"


def topup_dedup_key(tenant_id: str, payment_id: str) -> str:
    return f"topup_credit:{tenant_id}:{payment_id}"


def cycle_reset_dedup_key(tenant_id: str, cycle_start: str) -> str:
    return f"cycle_reset:{tenant_id}:{cycle_start}"


def compute_retry_delay(attempt: int) -> float:
    """Exponential backoff with jitter, in seconds."""
    base = min(WALLET_TX_RETRY_BASE_MS * (2 ** (attempt - 1)), WALLET_TX_RETRY_MAX_MS)
    jitter = random.randint(0, WALLET_TX_RETRY_BASE_MS)
    return min(base + jitter, WALLET_TX_RETRY_MAX_MS) / 1000.0


# ==================== REPOSITORIES ====================

class WalletStore(ABC):
    """One wallet document per tenant."""

    @abstractmethod
    async def get(self, tenant_id: str, session=None) -> Optional[dict]:
        ...

    @abstractmethod
    async def lock(self, tenant_id: str, session) -> Optional[dict]:
        """Take the row lock on the wallet for the running transaction and return it."""

    @abstractmethod
    async def create_if_absent(self, wallet: dict, session=None) -> bool:
        """Insert the wallet unless one exists. Returns True if this call created it."""

    @abstractmethod
    async def update(self, tenant_id: str, fields: dict, session=None) -> None:
        ...

    @abstractmethod
    async def decrement(self, tenant_id: str, bucket: str, session=None) -> bool:
        """Decrement included_balance or extra_balance by one, never below zero."""

    @abstractmethod
    async def increment_extra(self, tenant_id: str, amount: int, session=None) -> None:
        ...

    @abstractmethod
    async def list_due_for_reset(self, now_iso: str, limit: int = 500) -> List[str]:
        """Tenant ids whose cycle_end is at or before now."""


class TransactionLog(ABC):
    """Append-only wallet ledger."""

    @abstractmethod
    async def find_by_dedup_key(self, dedup_key: str, session=None) -> Optional[dict]:
        ...

    @abstractmethod
    async def append(self, entry: dict, session=None) -> Optional[dict]:
        """
        Append an entry and assign its monotonic id.

        Returns the stored entry, or None when an entry with the same
        dedup_key already exists (insert-ignore).
        """

    @abstractmethod
    async def count(self, tenant_id: str, kind: str, session=None, **match) -> int:
        ...

    @abstractmethod
    async def list(self, tenant_id: str, kind: str, limit: int) -> List[dict]:
        """Most recent first."""


class SubscriptionStore(ABC):

    @abstractmethod
    async def get(self, subscription_id: int) -> Optional[dict]:
        ...

    @abstractmethod
    async def find_latest(self, **match) -> Optional[dict]:
        """Most recent (highest id) subscription matching every given field."""

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str, statuses: Optional[set] = None) -> List[dict]:
        ...

    @abstractmethod
    async def create(self, subscription: dict) -> dict:
        """Insert with a new monotonic id and return the stored document."""

    @abstractmethod
    async def update(self, subscription_id: int, fields: dict, only_from: Optional[set] = None) -> bool:
        """
        Apply `fields`. With `only_from`, the update is a compare-and-set
        that only applies while the current status is one of those statuses.
        Returns True when a document was modified.
        """

    @abstractmethod
    async def append_event(self, event: dict) -> bool:
        """Record a webhook in the audit trail. False if this gateway event was already recorded."""


class TenantStore(ABC):

    @abstractmethod
    async def get(self, tenant_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def update_plan(self, tenant_id: str, fields: dict) -> None:
        """Update the tenant's cached plan columns."""

    @abstractmethod
    async def count_active_professionals(self, tenant_id: str) -> int:
        ...

    @abstractmethod
    async def list_billed(self, limit: int = 1000) -> List[dict]:
        """Tenants with a plan due date or a delinquent plan status."""

    @abstractmethod
    async def mark_reminder(self, tenant_id: str, due_at: str, kind: str) -> bool:
        """Record a billing reminder once per (tenant, due date, kind). False if already recorded."""


class CheckoutStore(ABC):

    @abstractmethod
    async def create(self, checkout: dict) -> None:
        ...

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def mark(self, payment_id: str, status: str, unless_status: Optional[str] = None) -> bool:
        """
        Set the checkout status unless it already is `status` (or `unless_status`).
        Returns True when the checkout changed.
        """


# ==================== AGGREGATE ====================

class Store(ABC):
    """
    Aggregate of the repositories plus the transaction boundary.

    Usage:
        async def op(session):
            wallet = await store.wallets.lock(tenant_id, session)
            ...
        result = await store.run_in_transaction(op, op_name="debit")
    """

    wallets: WalletStore
    transactions: TransactionLog
    subscriptions: SubscriptionStore
    tenants: TenantStore
    checkouts: CheckoutStore

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Any]:
        """Async context manager yielding a session; commits on exit, aborts on error."""

    def is_retryable(self, exc: BaseException) -> bool:
        """Whether a failed transaction may be retried from the top."""
        return False

    async def run_in_transaction(
        self,
        operation: Callable[[Any], Awaitable[Any]],
        op_name: str = "wallet_tx",
        max_attempts: int = WALLET_TX_MAX_ATTEMPTS
    ) -> Any:
        """Run `operation(session)` atomically, retrying lock conflicts with backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.transaction() as session:
                    return await operation(session)
            except Exception as e:
                if attempt >= max_attempts or not self.is_retryable(e):
                    raise
                delay = compute_retry_delay(attempt)
                logger.warning(
                    f"{op_name}: transaction conflict on attempt {attempt}/{max_attempts}, "
                    f"retrying in {delay * 1000:.0f}ms: {e}"
                )
                await asyncio.sleep(delay)
