"""
Message Wallet Service

Core wallet operations including:
- Lazy wallet creation (with an opening cycle_reset ledger entry)
- Calendar-month cycle rollover (extra balance carries over)
- Message debits (exactly once per provider message id)
- Top-up credits (exactly once per payment id)
- Blocked-send audit entries and top-up history

CRITICAL: Every balance mutation happens inside Store.run_in_transaction,
after taking the wallet row lock, together with the ledger insert that
carries its dedup key. Two debits for the same tenant never read the same
balance.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from .config import TOPUP_PACKS
from .errors import InvalidPackError, WalletUnavailableError
from .models import (
    CreditResult,
    DebitResult,
    Entitlement,
    TopupHistoryEntry,
    WalletSnapshot,
)
from .plan_resolver import (
    EntitlementResolver,
    compute_month_cycle,
    month_label,
    parse_datetime,
    utc_now,
)
from .store import (
    Store,
    cycle_reset_dedup_key,
    debit_dedup_key,
    topup_dedup_key,
)

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 50


def normalize_topup_pack(pack: Union[str, int, dict, None]) -> dict:
    """
    Resolve a top-up pack from its code, its message count or a pack dict.

    Raises:
        InvalidPackError: unknown pack
    """
    if isinstance(pack, dict):
        code = pack.get("code") or pack.get("pack_code")
        if code:
            return normalize_topup_pack(code)
        messages = pack.get("wa_messages")
        if messages is not None:
            return normalize_topup_pack(messages)
        raise InvalidPackError(details={"pack": pack})

    if isinstance(pack, str):
        key = pack.strip().lower()
        if key in TOPUP_PACKS:
            return {"code": key, **TOPUP_PACKS[key]}
        if key.isdigit():
            return normalize_topup_pack(int(key))
        raise InvalidPackError(details={"pack": pack})

    if isinstance(pack, int) and not isinstance(pack, bool):
        for code, definition in TOPUP_PACKS.items():
            if definition["wa_messages"] == pack:
                return {"code": code, **definition}

    raise InvalidPackError(details={"pack": pack})


def bucket_of(entry: dict) -> Optional[str]:
    if entry.get("included_delta", 0) < 0:
        return "included"
    if entry.get("extra_delta", 0) < 0:
        return "extra"
    return None


class WalletService:
    """Service for managing tenant message wallets."""

    def __init__(self, store: Store, resolver: Optional[EntitlementResolver] = None):
        self.store = store
        self.resolver = resolver or EntitlementResolver(store)

    # ==================== CYCLE ====================

    async def _ensure_wallet_exists(self, tenant_id: str, included_limit: int, now: datetime) -> None:
        """Create the wallet for the current month unless one exists."""
        cycle_start, cycle_end = compute_month_cycle(now)
        start_iso = cycle_start.isoformat()
        wallet_doc = {
            "tenant_id": tenant_id,
            "cycle_start": start_iso,
            "cycle_end": cycle_end.isoformat(),
            "included_limit": included_limit,
            "included_balance": included_limit,
            "extra_balance": 0,
            "lock_version": 0,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat()
        }
        created = await self.store.wallets.create_if_absent(wallet_doc)
        if not created:
            return

        logger.info(f"Created message wallet for tenant {tenant_id} ({included_limit} included)")
        await self.store.transactions.append({
            "tenant_id": tenant_id,
            "kind": "cycle_reset",
            "delta": included_limit,
            "included_delta": included_limit,
            "extra_delta": 0,
            "dedup_key": cycle_reset_dedup_key(tenant_id, start_iso),
            "cycle_start": start_iso,
            "cycle_end": cycle_end.isoformat(),
            "metadata": {"type": "initial_creation"},
            "created_at": now.isoformat()
        })

    async def _ensure_cycle_locked(self, session, tenant_id: str, included_limit: int, now: datetime) -> dict:
        """
        Lock the wallet, roll the cycle forward if it ended and align the
        included limit with the current plan. Returns the wallet as it is
        after these changes.
        """
        wallet = await self.store.wallets.lock(tenant_id, session)
        if wallet is None:
            raise WalletUnavailableError(details={"tenant_id": tenant_id})

        fields = {}
        cycle_end = parse_datetime(wallet.get("cycle_end"))

        if cycle_end is None or now >= cycle_end:
            new_start, new_end = compute_month_cycle(now)
            start_iso = new_start.isoformat()
            dedup_key = cycle_reset_dedup_key(tenant_id, start_iso)
            included_delta = included_limit - wallet.get("included_balance", 0)

            if await self.store.transactions.find_by_dedup_key(dedup_key, session) is None:
                await self.store.transactions.append({
                    "tenant_id": tenant_id,
                    "kind": "cycle_reset",
                    "delta": included_delta,
                    "included_delta": included_delta,
                    "extra_delta": 0,
                    "dedup_key": dedup_key,
                    "cycle_start": start_iso,
                    "cycle_end": new_end.isoformat(),
                    "metadata": {
                        "previous_cycle_start": wallet.get("cycle_start"),
                        "extra_balance": wallet.get("extra_balance", 0)
                    },
                    "created_at": now.isoformat()
                }, session)

            fields = {
                "cycle_start": start_iso,
                "cycle_end": new_end.isoformat(),
                "included_limit": included_limit,
                "included_balance": included_limit
            }
            logger.info(f"Wallet cycle reset for tenant {tenant_id}: {month_label(new_start)}")

        elif wallet.get("included_limit") != included_limit:
            # Plan changed mid-cycle: keep what was already used, counted from the ledger
            old_limit = wallet.get("included_limit", 0)
            used = await self.store.transactions.count(
                tenant_id, "debit", session=session,
                cycle_start=wallet.get("cycle_start"), included_delta=-1
            )
            fields = {
                "included_limit": included_limit,
                "included_balance": max(included_limit - used, 0)
            }
            logger.info(
                f"Wallet limit for tenant {tenant_id} changed {old_limit} -> {included_limit} "
                f"(used {used})"
            )

        if fields:
            await self.store.wallets.update(tenant_id, fields, session)
            wallet = {**wallet, **fields}
        return wallet

    async def ensure_cycle(self, tenant_id: str, entitlement: Optional[Entitlement] = None,
                           now: Optional[datetime] = None) -> dict:
        """Idempotently create the wallet and/or roll its cycle forward."""
        now = now or utc_now()
        entitlement = entitlement or await self.resolver.resolve(tenant_id, now)
        limit = entitlement.included_limit
        await self._ensure_wallet_exists(tenant_id, limit, now)

        async def op(session):
            return await self._ensure_cycle_locked(session, tenant_id, limit, now)

        return await self.store.run_in_transaction(op, op_name="ensure_cycle")

    async def reset_due_cycles(self, now: Optional[datetime] = None) -> int:
        """Roll forward every wallet whose cycle ended. Returns how many were processed."""
        now = now or utc_now()
        processed = 0
        for tenant_id in await self.store.wallets.list_due_for_reset(now.isoformat()):
            try:
                await self.ensure_cycle(tenant_id, now=now)
                processed += 1
            except Exception as e:
                logger.error(f"Cycle reset failed for tenant {tenant_id}: {e}")
        return processed

    # ==================== QUERIES ====================

    async def get_wallet_snapshot(self, tenant_id: str, now: Optional[datetime] = None) -> WalletSnapshot:
        now = now or utc_now()
        entitlement = await self.resolver.resolve(tenant_id, now)
        wallet = await self.ensure_cycle(tenant_id, entitlement, now)
        return self._to_snapshot(wallet, entitlement)

    def _to_snapshot(self, wallet: dict, entitlement: Entitlement) -> WalletSnapshot:
        included = wallet.get("included_balance", 0)
        extra = wallet.get("extra_balance", 0)
        cycle_start = parse_datetime(wallet["cycle_start"])
        return WalletSnapshot(
            tenant_id=wallet["tenant_id"],
            month_label=month_label(cycle_start) if cycle_start else None,
            cycle_start=wallet["cycle_start"],
            cycle_end=wallet["cycle_end"],
            included_limit=wallet.get("included_limit", 0),
            included_balance=included,
            extra_balance=extra,
            total_balance=included + extra,
            plan=entitlement.plan_code,
            plan_status=entitlement.status
        )

    async def list_topup_history(self, tenant_id: str, limit: int = 5) -> list:
        """Top-up credits, most recent first."""
        limit = max(1, min(int(limit or 5), MAX_HISTORY_LIMIT))
        entries = await self.store.transactions.list(tenant_id, "topup_credit", limit)
        return [
            TopupHistoryEntry(
                id=entry["id"],
                delta=entry.get("delta", 0),
                included_delta=entry.get("included_delta", 0),
                extra_delta=entry.get("extra_delta", 0),
                payment_id=entry.get("payment_id"),
                metadata=entry.get("metadata"),
                created_at=entry.get("created_at")
            )
            for entry in entries
        ]

    # ==================== DEBIT ====================

    async def debit(
        self,
        tenant_id: str,
        provider_message_id: str,
        appointment_id: Optional[str] = None,
        max_per_appointment: Optional[int] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None
    ) -> DebitResult:
        """
        Debit one message from the wallet.

        A replayed provider_message_id returns ok with idempotent=True and
        changes nothing. With max_per_appointment, the appointment's prior
        debits (counted from the ledger under the wallet lock) cap the send.
        Business refusals (insufficient_balance, per_appointment_limit) are
        returned with ok=False; no ledger entry is written for them.
        """
        if not provider_message_id:
            raise ValueError("provider_message_id is required")

        now = now or utc_now()
        dedup_key = debit_dedup_key(provider_message_id)

        existing = await self.store.transactions.find_by_dedup_key(dedup_key)
        if existing:
            return DebitResult(ok=True, idempotent=True, bucket=bucket_of(existing),
                               provider_message_id=provider_message_id)

        entitlement = await self.resolver.resolve(tenant_id, now)
        limit = entitlement.included_limit
        await self._ensure_wallet_exists(tenant_id, limit, now)

        async def op(session):
            wallet = await self._ensure_cycle_locked(session, tenant_id, limit, now)

            existing = await self.store.transactions.find_by_dedup_key(dedup_key, session)
            if existing:
                return DebitResult(ok=True, idempotent=True, bucket=bucket_of(existing),
                                   provider_message_id=provider_message_id)

            if appointment_id and max_per_appointment is not None:
                sent = await self.store.transactions.count(
                    tenant_id, "debit", session=session, appointment_id=appointment_id
                )
                if sent >= max_per_appointment:
                    return DebitResult(ok=False, reason="per_appointment_limit",
                                       provider_message_id=provider_message_id)

            if wallet.get("included_balance", 0) > 0:
                bucket = "included"
            elif wallet.get("extra_balance", 0) > 0:
                bucket = "extra"
            else:
                return DebitResult(ok=False, reason="insufficient_balance",
                                   provider_message_id=provider_message_id)

            entry = await self.store.transactions.append({
                "tenant_id": tenant_id,
                "kind": "debit",
                "delta": -1,
                "included_delta": -1 if bucket == "included" else 0,
                "extra_delta": -1 if bucket == "extra" else 0,
                "dedup_key": dedup_key,
                "provider_message_id": provider_message_id,
                "appointment_id": appointment_id,
                "cycle_start": wallet.get("cycle_start"),
                "cycle_end": wallet.get("cycle_end"),
                "metadata": metadata,
                "created_at": now.isoformat()
            }, session)
            if entry is None:
                return DebitResult(ok=True, idempotent=True, provider_message_id=provider_message_id)

            if not await self.store.wallets.decrement(tenant_id, bucket, session):
                raise WalletUnavailableError(
                    f"Wallet balance changed while locked for tenant {tenant_id}",
                    details={"tenant_id": tenant_id, "bucket": bucket}
                )
            return DebitResult(ok=True, bucket=bucket, provider_message_id=provider_message_id)

        return await self.store.run_in_transaction(op, op_name="wallet_debit")

    # ==================== CREDIT ====================

    async def credit_topup(
        self,
        tenant_id: str,
        payment_id: str,
        pack,
        subscription_id: Optional[int] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None
    ) -> CreditResult:
        """Add a top-up pack to extra_balance, once per (tenant, payment_id)."""
        if not payment_id:
            raise ValueError("payment_id is required")

        now = now or utc_now()
        pack = normalize_topup_pack(pack)
        dedup_key = topup_dedup_key(tenant_id, str(payment_id))

        if await self.store.transactions.find_by_dedup_key(dedup_key):
            return CreditResult(ok=True, idempotent=True)

        entitlement = await self.resolver.resolve(tenant_id, now)
        limit = entitlement.included_limit
        await self._ensure_wallet_exists(tenant_id, limit, now)

        async def op(session):
            wallet = await self._ensure_cycle_locked(session, tenant_id, limit, now)
            if await self.store.transactions.find_by_dedup_key(dedup_key, session):
                return CreditResult(ok=True, idempotent=True)

            messages = pack["wa_messages"]
            entry = await self.store.transactions.append({
                "tenant_id": tenant_id,
                "kind": "topup_credit",
                "delta": messages,
                "included_delta": 0,
                "extra_delta": messages,
                "dedup_key": dedup_key,
                "payment_id": str(payment_id),
                "subscription_id": subscription_id,
                "cycle_start": wallet.get("cycle_start"),
                "cycle_end": wallet.get("cycle_end"),
                "metadata": {
                    "pack_code": pack["code"],
                    "wa_messages": messages,
                    "price_cents": pack["price_cents"],
                    **(metadata or {})
                },
                "created_at": now.isoformat()
            }, session)
            if entry is None:
                return CreditResult(ok=True, idempotent=True)

            await self.store.wallets.increment_extra(tenant_id, messages, session)
            wallet = {**wallet, "extra_balance": wallet.get("extra_balance", 0) + messages}
            return CreditResult(ok=True, wallet=self._to_snapshot(wallet, entitlement))

        result = await self.store.run_in_transaction(op, op_name="wallet_topup_credit")
        if not result.idempotent:
            logger.info(f"Credited {pack['wa_messages']} messages to tenant {tenant_id} (payment {payment_id})")
        return result

    # ==================== BLOCKED ====================

    async def record_blocked(
        self,
        tenant_id: str,
        reason: str,
        appointment_id: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> bool:
        """Write an informational blocked entry. Never raises."""
        try:
            await self.store.transactions.append({
                "tenant_id": tenant_id,
                "kind": "blocked",
                "delta": 0,
                "included_delta": 0,
                "extra_delta": 0,
                "appointment_id": appointment_id,
                "reason": reason,
                "metadata": metadata,
                "created_at": utc_now().isoformat()
            })
            return True
        except Exception as e:
            logger.error(f"Failed to record blocked message for tenant {tenant_id}: {e}")
            return False
