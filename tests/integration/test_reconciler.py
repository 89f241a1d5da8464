"""Settlement reconciliation: confirmations, retries, failure flagging and balance snapshots."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from bodydfi.db.models import DataPurchase, TokenTransaction
from bodydfi.ledger.schemas import TransactionType, TxMeta
from bodydfi.ledger.service import LedgerStore
from bodydfi.marketplace.schemas import PurchaseRequest
from bodydfi.settlement.reconciler import refresh_submitted, retry_unresolved, verify_balances
from bodydfi.settlement.schemas import SettlementStatus


async def _reward(db_session, user_id: int, reference: str) -> TokenTransaction:
    tx = await LedgerStore(db_session).credit(
        user_id, Decimal("10"), TxMeta(TransactionType.REWARD, f"reward:{reference}")
    )
    await db_session.commit()
    return tx


class TestRetryUnresolved:
    @pytest.mark.asyncio
    async def test_resubmits_then_confirms(self, db_session, make_user, gateway):
        user = await make_user("alice", wallet="wallet-a")
        tx = await _reward(db_session, user.id, "r1")
        assert tx.settlement_state == "unresolved"

        stats = await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)
        assert stats.resubmitted == 1
        assert tx.settlement_state == "submitted"
        assert tx.settlement_signature == "sig-1"
        assert gateway.submitted[0].kind.value == "mint"

        gateway.statuses["sig-1"] = SettlementStatus(confirmations=40, slot=1234, finalized=True)
        refreshed = await refresh_submitted(db_session, gateway)
        assert refreshed.confirmed == 1
        assert tx.settlement_state == "confirmed"
        assert tx.settlement_confirmations == 40
        assert tx.settlement_slot == 1234

    @pytest.mark.asyncio
    async def test_flags_failed_after_max_attempts(self, db_session, make_user, gateway):
        user = await make_user("alice", wallet="wallet-a")
        tx = await _reward(db_session, user.id, "r1")
        gateway.fail = True

        for _ in range(3):
            await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)
        assert tx.settlement_attempts == 3
        assert tx.settlement_state == "unresolved"

        stats = await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)
        assert stats.failed == 1
        assert tx.settlement_state == "failed"
        assert (await LedgerStore(db_session).get_balance(user.id)).balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_missing_wallet_is_skipped(self, db_session, make_user, gateway):
        user = await make_user("alice")
        tx = await _reward(db_session, user.id, "r1")

        stats = await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)

        assert stats.skipped == 1
        assert tx.settlement_state == "skipped"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_purchase_legs_follow_the_purchase(self, db_session, marketplace, make_user, make_listing, gateway):
        buyer = await make_user("buyer", wallet="wallet-buyer")
        provider = await make_user("provider", wallet="wallet-provider")
        await LedgerStore(db_session).credit(buyer.id, Decimal("200"), TxMeta(TransactionType.REWARD, "grant"))
        await db_session.commit()
        listing = await make_listing(provider, price=100)
        gateway.fail = True
        result = await marketplace.purchase_listing(PurchaseRequest(listing_id=listing.id, buyer_id=buyer.id))
        gateway.fail = False

        await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)

        purchase = await db_session.get(DataPurchase, result.purchase_id)
        assert purchase.settlement_state == "submitted"
        [purchase_instruction] = [i for i in gateway.submitted if i.kind.value == "purchase_access"]
        assert purchase_instruction.reference_id == result.purchase_id
        legs = (
            await db_session.execute(
                select(TokenTransaction).where(TokenTransaction.reference_id == result.purchase_id)
            )
        ).scalars().all()
        assert {tx.settlement_signature for tx in legs} == {purchase.settlement_signature}
        assert {tx.settlement_attempts for tx in legs} == {2}


class TestRefreshSubmitted:
    @pytest.mark.asyncio
    async def test_rejected_settlement_goes_back_to_unresolved(self, db_session, make_user, gateway):
        user = await make_user("alice", wallet="wallet-a")
        tx = await _reward(db_session, user.id, "r1")
        await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)
        gateway.statuses["sig-1"] = SettlementStatus(confirmations=0, slot=10, finalized=False, error="InstructionError")

        await refresh_submitted(db_session, gateway)

        assert tx.settlement_state == "unresolved"
        assert tx.settlement_error == "InstructionError"

    @pytest.mark.asyncio
    async def test_unknown_status_leaves_row_untouched(self, db_session, make_user, gateway):
        user = await make_user("alice", wallet="wallet-a")
        tx = await _reward(db_session, user.id, "r1")
        await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)

        stats = await refresh_submitted(db_session, gateway)

        assert stats.checked == 1
        assert stats.confirmed == 0
        assert tx.settlement_state == "submitted"

    @pytest.mark.asyncio
    async def test_pending_confirmations_recorded(self, db_session, make_user, gateway):
        user = await make_user("alice", wallet="wallet-a")
        tx = await _reward(db_session, user.id, "r1")
        await retry_unresolved(db_session, gateway, max_attempts=3, timeout=0.5)
        gateway.statuses["sig-1"] = SettlementStatus(confirmations=5, slot=11, finalized=False)

        await refresh_submitted(db_session, gateway)

        assert tx.settlement_state == "submitted"
        assert tx.settlement_confirmations == 5


class TestVerifyBalances:
    @pytest.mark.asyncio
    async def test_snapshots_known_wallets(self, db_session, make_user, gateway):
        alice = await make_user("alice", balance=10, wallet="wallet-a")
        bob = await make_user("bob", balance=5, wallet="wallet-b")
        gateway.balances["wallet-a"] = Decimal("10")

        verified = await verify_balances(db_session, gateway)

        assert verified == 1
        ledger = LedgerStore(db_session)
        alice_view = await ledger.get_balance(alice.id)
        assert alice_view.last_verified_balance == Decimal("10")
        assert alice_view.last_verified_at is not None
        assert (await ledger.get_balance(bob.id)).last_verified_at is None
