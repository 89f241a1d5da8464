"""Out-of-band settlement reconciliation.

Runs outside request handling. It only touches settlement metadata and
verification snapshots; balances are never changed here.

- refresh_submitted: poll SUBMITTED rows, record confirmations, flip to CONFIRMED
- retry_unresolved: resubmit UNRESOLVED rows, flag FAILED at the attempt limit
- verify_balances: snapshot settlement-layer balances for wallets we track
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.db.models import DataPurchase, TokenBalance, TokenTransaction, User
from bodydfi.ledger.schemas import TransactionType
from bodydfi.ledger.service import LedgerStore
from bodydfi.settlement.gateway import SettlementGateway, apply_outcome, submit_best_effort
from bodydfi.settlement.schemas import (
    InstructionKind,
    SettlementHandle,
    SettlementInstruction,
    SettlementState,
)

logger = structlog.get_logger()

# Purchase and fee legs settle through their purchase row.
_INSTRUCTION_KINDS = {
    TransactionType.REWARD.value: InstructionKind.MINT,
    TransactionType.TRANSFER.value: InstructionKind.TRANSFER,
    TransactionType.REFUND.value: InstructionKind.REFUND,
}


@dataclass
class ReconcileStats:
    checked: int = 0
    confirmed: int = 0
    resubmitted: int = 0
    failed: int = 0
    skipped: int = 0


async def _wallets(db: AsyncSession, user_ids: set[int | None]) -> dict[int, str | None]:
    ids = [uid for uid in user_ids if uid is not None]
    if not ids:
        return {}
    result = await db.execute(select(User.id, User.wallet_address).where(User.id.in_(ids)))
    return {uid: wallet for uid, wallet in result.all()}


async def _mirror_purchase_legs(db: AsyncSession, purchase: DataPurchase) -> None:
    result = await db.execute(
        select(TokenTransaction).where(
            TokenTransaction.reference_id == purchase.id,
            TokenTransaction.type.in_([TransactionType.PURCHASE.value, TransactionType.PLATFORM_FEE.value]),
        )
    )
    for tx in result.scalars():
        tx.settlement_state = purchase.settlement_state
        tx.settlement_signature = purchase.settlement_signature
        tx.settlement_confirmations = purchase.settlement_confirmations
        tx.settlement_slot = purchase.settlement_slot
        tx.settlement_attempts = purchase.settlement_attempts
        tx.settlement_error = purchase.settlement_error
        tx.settlement_updated_at = purchase.settlement_updated_at


async def refresh_submitted(db: AsyncSession, gateway: SettlementGateway, batch_size: int = 100) -> ReconcileStats:
    """Update confirmation data for submitted transactions and purchases."""
    stats = ReconcileStats()
    now = datetime.now(timezone.utc)

    tx_rows = await db.execute(
        select(TokenTransaction)
        .where(
            TokenTransaction.settlement_state == SettlementState.SUBMITTED.value,
            TokenTransaction.type.in_(list(_INSTRUCTION_KINDS)),
        )
        .order_by(TokenTransaction.id)
        .limit(batch_size)
    )
    purchase_rows = await db.execute(
        select(DataPurchase)
        .where(DataPurchase.settlement_state == SettlementState.SUBMITTED.value)
        .order_by(DataPurchase.created_at)
        .limit(batch_size)
    )
    records: list[TokenTransaction | DataPurchase] = [*tx_rows.scalars(), *purchase_rows.unique().scalars()]

    for record in records:
        if not record.settlement_signature:
            continue
        stats.checked += 1
        try:
            status = await gateway.get_status(SettlementHandle(record.settlement_signature, now))
        except Exception as exc:
            logger.warning("settlement_status_unavailable", signature=record.settlement_signature, error=str(exc))
            continue

        record.settlement_confirmations = status.confirmations
        record.settlement_slot = status.slot
        record.settlement_updated_at = now
        if status.error is not None:
            record.settlement_state = SettlementState.UNRESOLVED.value
            record.settlement_error = status.error[:256]
            logger.warning("settlement_rejected", signature=record.settlement_signature, error=status.error)
        elif status.finalized:
            record.settlement_state = SettlementState.CONFIRMED.value
            stats.confirmed += 1
        if isinstance(record, DataPurchase):
            await _mirror_purchase_legs(db, record)

    await db.commit()
    if stats.checked:
        logger.info("settlement_refresh_complete", checked=stats.checked, confirmed=stats.confirmed)
    return stats


async def retry_unresolved(
    db: AsyncSession,
    gateway: SettlementGateway,
    max_attempts: int,
    timeout: float,
    batch_size: int = 100,
) -> ReconcileStats:
    """Resubmit unresolved settlements. Rows at the attempt limit become FAILED."""
    stats = ReconcileStats()

    tx_rows = await db.execute(
        select(TokenTransaction)
        .where(
            TokenTransaction.settlement_state == SettlementState.UNRESOLVED.value,
            TokenTransaction.type.in_(list(_INSTRUCTION_KINDS)),
        )
        .order_by(TokenTransaction.id)
        .limit(batch_size)
    )
    transactions = list(tx_rows.scalars())
    purchase_rows = await db.execute(
        select(DataPurchase)
        .where(DataPurchase.settlement_state == SettlementState.UNRESOLVED.value)
        .order_by(DataPurchase.created_at)
        .limit(batch_size)
    )
    purchases = list(purchase_rows.unique().scalars())

    wallets = await _wallets(
        db,
        {tx.from_user_id for tx in transactions}
        | {tx.to_user_id for tx in transactions}
        | {p.buyer_id for p in purchases}
        | {p.provider_id for p in purchases},
    )

    pending: list[tuple[TokenTransaction | DataPurchase, SettlementInstruction]] = []
    for tx in transactions:
        pending.append((tx, SettlementInstruction(
            kind=_INSTRUCTION_KINDS[tx.type],
            amount=tx.amount,
            reference_id=tx.reference_id,
            source_wallet=wallets.get(tx.from_user_id) if tx.from_user_id is not None else None,
            destination_wallet=wallets.get(tx.to_user_id) if tx.to_user_id is not None else None,
            memo=tx.reason or tx.type,
        )))
    for purchase in purchases:
        pending.append((purchase, SettlementInstruction(
            kind=InstructionKind.PURCHASE_ACCESS,
            amount=purchase.price,
            reference_id=purchase.id,
            source_wallet=wallets.get(purchase.buyer_id),
            destination_wallet=wallets.get(purchase.provider_id),
            memo="Data purchase",
            extra={"listing_id": purchase.listing_id, "platform_fee": str(purchase.platform_fee)},
        )))

    for record, instruction in pending:
        stats.checked += 1
        if record.settlement_attempts >= max_attempts:
            record.settlement_state = SettlementState.FAILED.value
            record.settlement_updated_at = datetime.now(timezone.utc)
            stats.failed += 1
            logger.error(
                "settlement_failed_manual_review",
                reference_id=instruction.reference_id,
                attempts=record.settlement_attempts,
                last_error=record.settlement_error,
            )
        else:
            outcome = await submit_best_effort(gateway, instruction, timeout=timeout)
            apply_outcome(record, outcome)
            if outcome.state is SettlementState.SUBMITTED:
                stats.resubmitted += 1
            elif outcome.state is SettlementState.SKIPPED:
                stats.skipped += 1
        if isinstance(record, DataPurchase):
            await _mirror_purchase_legs(db, record)

    await db.commit()
    if stats.checked:
        logger.info(
            "settlement_retry_complete",
            checked=stats.checked,
            resubmitted=stats.resubmitted,
            failed=stats.failed,
        )
    return stats


async def verify_balances(db: AsyncSession, gateway: SettlementGateway, batch_size: int = 100) -> int:
    """Record settlement-layer balances for the least recently verified wallets."""
    result = await db.execute(
        select(TokenBalance.user_id, TokenBalance.wallet_address)
        .where(TokenBalance.wallet_address.is_not(None))
        .order_by(TokenBalance.last_verified_at.asc().nulls_first(), TokenBalance.user_id)
        .limit(batch_size)
    )
    rows = result.all()
    ledger = LedgerStore(db)
    verified = 0
    for user_id, wallet in rows:
        try:
            amount = await gateway.get_token_balance(wallet)
        except Exception as exc:
            logger.warning("balance_verification_unavailable", user_id=user_id, error=str(exc))
            continue
        await ledger.record_verified_balance(user_id, amount, datetime.now(timezone.utc))
        verified += 1
    await db.commit()
    return verified
