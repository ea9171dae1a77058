"""
Test Suite: Message Wallet Ledger
=================================

Tests the wallet ledger on the in-memory store:
- Lazy wallet creation and snapshot shape
- Exactly-once debits (replay by provider message id)
- Bucket preference (included before extra) and non-negative balances
- Per-appointment cap counted from the ledger
- Exactly-once top-up credits
- Calendar-month cycle rollover keeps extra balance
- Mid-cycle plan changes keep the usage recorded in the ledger
- Concurrent debits and credits
- Transaction retry on write conflicts
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from fakes import TransientConflict
from message_wallet.errors import InvalidPackError
from message_wallet.wallet_service import normalize_topup_pack

APRIL_2 = datetime(2026, 4, 2, 9, 0, tzinfo=timezone.utc)


async def _open_wallet(wallet_service, store, now, included=None, extra=None):
    await wallet_service.get_wallet_snapshot("t1", now=now)
    wallet = store.wallet("t1")
    if included is not None:
        wallet["included_balance"] = included
    if extra is not None:
        wallet["extra_balance"] = extra
    return wallet


async def _send_many(wallet_service, count, now, prefix="m"):
    for i in range(count):
        result = await wallet_service.debit("t1", f"{prefix}-{i}", now=now)
        assert result.ok is True


class TestWalletSnapshot:

    @pytest.mark.asyncio
    async def test_wallet_created_lazily_with_plan_allowance(self, wallet_service, store, now):
        """First access creates the starter wallet for the current month."""
        snapshot = await wallet_service.get_wallet_snapshot("t1", now=now)

        assert snapshot.included_limit == 250
        assert snapshot.included_balance == 250
        assert snapshot.extra_balance == 0
        assert snapshot.total_balance == 250
        assert snapshot.cycle_start == "2026-03-01T00:00:00+00:00"
        assert snapshot.cycle_end == "2026-04-01T00:00:00+00:00"
        assert snapshot.month_label == "2026-03"
        assert snapshot.plan == "starter"

        resets = store.ledger("t1", "cycle_reset")
        assert len(resets) == 1
        assert resets[0]["included_delta"] == 250

    @pytest.mark.asyncio
    async def test_snapshot_is_idempotent(self, wallet_service, store, now):
        await wallet_service.get_wallet_snapshot("t1", now=now)
        await wallet_service.get_wallet_snapshot("t1", now=now)

        assert len(store.ledger("t1", "cycle_reset")) == 1

    @pytest.mark.asyncio
    async def test_delinquent_tenant_gets_no_included_messages(self, wallet_service, store, now):
        store.add_tenant("t1", plan="pro", plan_status="delinquent")

        snapshot = await wallet_service.get_wallet_snapshot("t1", now=now)

        assert snapshot.included_limit == 0
        assert snapshot.included_balance == 0
        assert snapshot.plan_status == "delinquent"

    @pytest.mark.asyncio
    async def test_plan_change_mid_cycle_preserves_usage(self, wallet_service, store, now):
        """Upgrading from starter to pro keeps the 50 messages already used."""
        await _send_many(wallet_service, 50, now)
        store.add_tenant("t1", plan="pro", plan_status="active")

        snapshot = await wallet_service.get_wallet_snapshot("t1", now=now)

        assert snapshot.included_limit == 1000
        assert snapshot.included_balance == 950

    @pytest.mark.asyncio
    async def test_downgrade_never_goes_negative(self, wallet_service, store, now):
        store.add_tenant("t1", plan="pro", plan_status="active")
        await _send_many(wallet_service, 300, now)
        store.add_tenant("t1", plan="starter", plan_status="active")

        snapshot = await wallet_service.get_wallet_snapshot("t1", now=now)

        assert snapshot.included_limit == 250
        assert snapshot.included_balance == 0

    @pytest.mark.asyncio
    async def test_reactivation_in_same_cycle_does_not_restore_usage(self, wallet_service, store, now):
        await _send_many(wallet_service, 100, now)
        store.add_tenant("t1", plan="starter", plan_status="delinquent")
        delinquent = await wallet_service.get_wallet_snapshot("t1", now=now)
        store.add_tenant("t1", plan="starter", plan_status="active")

        snapshot = await wallet_service.get_wallet_snapshot("t1", now=now)

        assert delinquent.included_balance == 0
        assert snapshot.included_limit == 250
        assert snapshot.included_balance == 150

    @pytest.mark.asyncio
    async def test_extra_debits_do_not_count_as_included_usage(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=0, extra=10)
        await _send_many(wallet_service, 10, now)
        store.add_tenant("t1", plan="pro", plan_status="active")

        snapshot = await wallet_service.get_wallet_snapshot("t1", now=now)

        assert snapshot.included_balance == 1000
        assert snapshot.extra_balance == 0


class TestDebit:

    @pytest.mark.asyncio
    async def test_debit_then_replay(self, wallet_service, store, now):
        """Starter wallet: msg-123 debits once, the replay changes nothing."""
        first = await wallet_service.debit("t1", "msg-123", now=now)
        assert first.ok is True
        assert first.bucket == "included"
        assert first.idempotent is False
        assert store.wallet("t1")["included_balance"] == 249

        second = await wallet_service.debit("t1", "msg-123", now=now)
        assert second.ok is True
        assert second.idempotent is True
        assert store.wallet("t1")["included_balance"] == 249
        assert len(store.ledger("t1", "debit")) == 1

    @pytest.mark.asyncio
    async def test_included_bucket_is_used_first(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=1, extra=5)

        first = await wallet_service.debit("t1", "m-1", now=now)
        second = await wallet_service.debit("t1", "m-2", now=now)

        assert first.bucket == "included"
        assert second.bucket == "extra"
        wallet = store.wallet("t1")
        assert wallet["included_balance"] == 0
        assert wallet["extra_balance"] == 4

        debit = store.ledger("t1", "debit")[1]
        assert debit["extra_delta"] == -1
        assert debit["included_delta"] == 0

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_state_unchanged(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=0, extra=0)

        result = await wallet_service.debit("t1", "m-1", now=now)

        assert result.ok is False
        assert result.reason == "insufficient_balance"
        wallet = store.wallet("t1")
        assert wallet["included_balance"] == 0
        assert wallet["extra_balance"] == 0
        assert store.ledger("t1", "debit") == []

    @pytest.mark.asyncio
    async def test_balances_never_negative(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=2, extra=1)

        results = [await wallet_service.debit("t1", f"m-{i}", now=now) for i in range(6)]

        assert [r.ok for r in results] == [True, True, True, False, False, False]
        wallet = store.wallet("t1")
        assert wallet["included_balance"] == 0
        assert wallet["extra_balance"] == 0

    @pytest.mark.asyncio
    async def test_per_appointment_cap(self, wallet_service, store, now):
        """The 6th message for one appointment is refused even with balance left."""
        for i in range(5):
            result = await wallet_service.debit("t1", f"apt-msg-{i}", appointment_id="apt-1",
                                                max_per_appointment=5, now=now)
            assert result.ok is True

        sixth = await wallet_service.debit("t1", "apt-msg-5", appointment_id="apt-1",
                                           max_per_appointment=5, now=now)
        other = await wallet_service.debit("t1", "apt-2-msg", appointment_id="apt-2",
                                           max_per_appointment=5, now=now)

        assert sixth.ok is False
        assert sixth.reason == "per_appointment_limit"
        assert other.ok is True
        assert store.wallet("t1")["included_balance"] == 244

    @pytest.mark.asyncio
    async def test_replay_is_not_blocked_by_cap(self, wallet_service, store, now):
        for i in range(5):
            await wallet_service.debit("t1", f"apt-msg-{i}", appointment_id="apt-1",
                                       max_per_appointment=5, now=now)

        replay = await wallet_service.debit("t1", "apt-msg-4", appointment_id="apt-1",
                                            max_per_appointment=5, now=now)

        assert replay.ok is True
        assert replay.idempotent is True

    @pytest.mark.asyncio
    async def test_provider_message_id_required(self, wallet_service, now):
        with pytest.raises(ValueError):
            await wallet_service.debit("t1", "", now=now)


class TestTopupCredit:

    @pytest.mark.asyncio
    async def test_credit_is_applied_once(self, wallet_service, store, now):
        first = await wallet_service.credit_topup("t1", "pay-1", "wa_100", now=now)
        second = await wallet_service.credit_topup("t1", "pay-1", "wa_100", now=now)

        assert first.ok is True and first.idempotent is False
        assert first.wallet.extra_balance == 100
        assert second.ok is True and second.idempotent is True
        assert store.wallet("t1")["extra_balance"] == 100

        credits = store.ledger("t1", "topup_credit")
        assert len(credits) == 1
        assert credits[0]["payment_id"] == "pay-1"
        assert credits[0]["metadata"]["pack_code"] == "wa_100"
        assert credits[0]["metadata"]["price_cents"] == 990

    @pytest.mark.asyncio
    async def test_invalid_pack_rejected(self, wallet_service, store, now):
        with pytest.raises(InvalidPackError) as exc_info:
            await wallet_service.credit_topup("t1", "pay-1", "wa_7", now=now)

        assert exc_info.value.to_dict()["error_code"] == "invalid_package"
        assert store.ledger("t1", "topup_credit") == []

    @pytest.mark.asyncio
    async def test_topup_history_most_recent_first(self, wallet_service, now):
        await wallet_service.credit_topup("t1", "pay-1", "wa_100", now=now)
        await wallet_service.credit_topup("t1", "pay-2", "wa_200", now=now)
        await wallet_service.credit_topup("t1", "pay-3", "wa_500", now=now)

        history = await wallet_service.list_topup_history("t1", limit=2)

        assert [h.payment_id for h in history] == ["pay-3", "pay-2"]
        assert history[0].extra_delta == 500
        assert history[0].included_delta == 0

    def test_normalize_pack_variants(self):
        assert normalize_topup_pack("wa_300")["wa_messages"] == 300
        assert normalize_topup_pack(" WA_1000 ")["code"] == "wa_1000"
        assert normalize_topup_pack(500)["code"] == "wa_500"
        assert normalize_topup_pack("2500")["code"] == "wa_2500"
        assert normalize_topup_pack({"wa_messages": 200})["code"] == "wa_200"
        with pytest.raises(InvalidPackError):
            normalize_topup_pack(123)
        with pytest.raises(InvalidPackError):
            normalize_topup_pack(None)


class TestCycleRollover:

    @pytest.mark.asyncio
    async def test_rollover_resets_included_and_keeps_extra(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=100, extra=12)

        snapshot = await wallet_service.get_wallet_snapshot("t1", now=APRIL_2)

        assert snapshot.extra_balance == 12
        assert snapshot.included_balance == 250
        assert snapshot.cycle_start == "2026-04-01T00:00:00+00:00"
        assert snapshot.month_label == "2026-04"

        april_reset = [r for r in store.ledger("t1", "cycle_reset")
                       if r["cycle_start"] == "2026-04-01T00:00:00+00:00"]
        assert len(april_reset) == 1
        assert april_reset[0]["included_delta"] == 150
        assert april_reset[0]["extra_delta"] == 0

    @pytest.mark.asyncio
    async def test_rollover_applied_once(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=10)

        await wallet_service.get_wallet_snapshot("t1", now=APRIL_2)
        await wallet_service.debit("t1", "april-1", now=APRIL_2)
        await wallet_service.get_wallet_snapshot("t1", now=APRIL_2)

        assert len(store.ledger("t1", "cycle_reset")) == 2
        assert store.wallet("t1")["included_balance"] == 249

    @pytest.mark.asyncio
    async def test_rollover_skips_missed_months(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now)

        snapshot = await wallet_service.get_wallet_snapshot(
            "t1", now=datetime(2026, 7, 10, tzinfo=timezone.utc)
        )

        assert snapshot.cycle_start == "2026-07-01T00:00:00+00:00"
        assert len(store.ledger("t1", "cycle_reset")) == 2

    @pytest.mark.asyncio
    async def test_reset_due_cycles(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=3)
        store.add_tenant("t2", plan="pro", plan_status="active")
        await wallet_service.get_wallet_snapshot("t2", now=APRIL_2)

        processed = await wallet_service.reset_due_cycles(now=APRIL_2)

        assert processed == 1
        assert store.wallet("t1")["included_balance"] == 250
        assert store.wallet("t1")["cycle_start"] == "2026-04-01T00:00:00+00:00"


class TestBlockedEntries:

    @pytest.mark.asyncio
    async def test_record_blocked_writes_entry(self, wallet_service, store):
        ok = await wallet_service.record_blocked("t1", "insufficient_balance", appointment_id="apt-1",
                                                 metadata={"provider_message_id": "m-1"})

        assert ok is True
        blocked = store.ledger("t1", "blocked")
        assert len(blocked) == 1
        assert blocked[0]["reason"] == "insufficient_balance"
        assert blocked[0]["delta"] == 0
        assert "dedup_key" not in blocked[0] or blocked[0]["dedup_key"] is None

    @pytest.mark.asyncio
    async def test_record_blocked_never_raises(self, wallet_service, store):
        store.transactions.append = AsyncMock(side_effect=RuntimeError("store down"))

        ok = await wallet_service.record_blocked("t1", "per_appointment_limit")

        assert ok is False


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_parallel_debits_never_overspend(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now, included=3, extra=0)

        results = await asyncio.gather(*[
            wallet_service.debit("t1", f"par-{i}", now=now) for i in range(10)
        ])

        assert sum(1 for r in results if r.ok) == 3
        assert sum(1 for r in results if r.reason == "insufficient_balance") == 7
        assert store.wallet("t1")["included_balance"] == 0
        assert len(store.ledger("t1", "debit")) == 3

    @pytest.mark.asyncio
    async def test_parallel_replays_debit_once(self, wallet_service, store, now):
        results = await asyncio.gather(*[
            wallet_service.debit("t1", "same-msg", now=now) for _ in range(5)
        ])

        assert all(r.ok for r in results)
        assert sum(1 for r in results if not r.idempotent) == 1
        assert store.wallet("t1")["included_balance"] == 249

    @pytest.mark.asyncio
    async def test_parallel_identical_topups_credit_once(self, wallet_service, store, now):
        results = await asyncio.gather(*[
            wallet_service.credit_topup("t1", "pay-9", "wa_100", now=now) for _ in range(5)
        ])

        assert sum(1 for r in results if not r.idempotent) == 1
        assert store.wallet("t1")["extra_balance"] == 100
        assert len(store.ledger("t1", "topup_credit")) == 1


class TestTransactionRetry:

    @pytest.mark.asyncio
    async def test_conflicts_are_retried(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now)
        store.conflicts_to_raise = 2
        started = store.transactions_started

        with patch("message_wallet.store.compute_retry_delay", return_value=0):
            result = await wallet_service.debit("t1", "retry-1", now=now)

        assert result.ok is True
        assert store.transactions_started - started == 3
        assert store.wallet("t1")["included_balance"] == 249

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now)
        store.conflicts_to_raise = 3

        with patch("message_wallet.store.compute_retry_delay", return_value=0):
            with pytest.raises(TransientConflict):
                await wallet_service.debit("t1", "retry-2", now=now)

        assert store.wallet("t1")["included_balance"] == 250
        assert store.ledger("t1", "debit") == []

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, wallet_service, store, now):
        await _open_wallet(wallet_service, store, now)
        store.wallets.decrement = AsyncMock(side_effect=RuntimeError("disk full"))

        with pytest.raises(RuntimeError):
            await wallet_service.debit("t1", "rollback-1", now=now)

        assert store.ledger("t1", "debit") == []
        assert store.wallet("t1")["included_balance"] == 250
