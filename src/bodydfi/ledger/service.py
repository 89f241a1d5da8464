"""Ledger store: the only writer of token balances and token transactions.

Every mutation runs inside the caller's database transaction:
1. Lazily create missing balance rows for known users
2. Lock every touched balance row (SELECT ... FOR UPDATE, ascending user id)
3. Replay check on (type, reference_id)
4. Validate available funds, apply deltas, append COMPLETED transactions

The caller owns commit/rollback so multi-step operations stay all-or-nothing.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.db.models import TokenBalance, TokenTransaction, User
from bodydfi.db.upsert import insert_for
from bodydfi.errors import (
    InsufficientFunds,
    IntegrityViolation,
    InvalidAmount,
    SelfTransferNotAllowed,
    UnknownRecipient,
    UnknownUser,
)
from bodydfi.ledger.amounts import ZERO, to_amount
from bodydfi.ledger.schemas import (
    BalanceView,
    LedgerEntry,
    TransactionHistory,
    TransactionStatus,
    TransactionType,
    TransactionView,
    TxMeta,
)

logger = structlog.get_logger()


@dataclass
class Posting:
    """Result of a multi-party ledger operation."""

    transactions: list[TokenTransaction]
    replayed: bool


def _balance_view(row: TokenBalance) -> BalanceView:
    return BalanceView(
        user_id=row.user_id,
        balance=row.balance,
        locked=row.locked,
        available=row.balance - row.locked,
        lifetime_earned=row.lifetime_earned,
        lifetime_spent=row.lifetime_spent,
        wallet_address=row.wallet_address,
        last_verified_balance=row.last_verified_balance,
        last_verified_at=row.last_verified_at,
    )


class LedgerStore:
    """Balance and transaction store bound to one database session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, user_id: int) -> BalanceView:
        """Current balance snapshot. Creates a zero balance for a known user on first access."""
        row = await self._get_balance_row(user_id)
        if row is None:
            await self._ensure_balances([user_id])
            row = await self._get_balance_row(user_id)
        if row is None:
            raise IntegrityViolation(f"Balance row missing for user {user_id}")
        return _balance_view(row)

    async def find_transaction(self, tx_type: TransactionType, reference_id: str) -> TokenTransaction | None:
        """Look up a transaction by its idempotency key."""
        result = await self.db.execute(
            select(TokenTransaction).where(
                TokenTransaction.type == tx_type.value,
                TokenTransaction.reference_id == reference_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_transaction_history(
        self,
        user_id: int,
        *,
        include_types: Iterable[TransactionType] | None = None,
        exclude_types: Iterable[TransactionType] | None = None,
        status: TransactionStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionHistory:
        """Paginated history of transactions touching a user, newest first."""
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        filters = [or_(TokenTransaction.from_user_id == user_id, TokenTransaction.to_user_id == user_id)]
        if include_types:
            filters.append(TokenTransaction.type.in_([t.value for t in include_types]))
        if exclude_types:
            filters.append(TokenTransaction.type.not_in([t.value for t in exclude_types]))
        if status is not None:
            filters.append(TokenTransaction.status == status.value)
        if start_date is not None:
            filters.append(TokenTransaction.created_at >= start_date)
        if end_date is not None:
            filters.append(TokenTransaction.created_at <= end_date)

        total = (
            await self.db.execute(select(func.count()).select_from(TokenTransaction).where(*filters))
        ).scalar_one()

        result = await self.db.execute(
            select(TokenTransaction)
            .where(*filters)
            .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )

        views = []
        for tx in result.scalars():
            view = TransactionView.model_validate(tx)
            if tx.from_user_id == tx.to_user_id:
                view.direction, view.net_amount = "internal", ZERO
            elif tx.to_user_id == user_id:
                view.direction, view.net_amount = "incoming", tx.amount
            else:
                view.direction, view.net_amount = "outgoing", -tx.amount
            views.append(view)

        return TransactionHistory(
            user_id=user_id,
            transactions=views,
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    async def get_reward_history(self, user_id: int, *, page: int = 1, limit: int = 20) -> TransactionHistory:
        """Paginated REWARD transactions credited to a user."""
        return await self.get_transaction_history(
            user_id, include_types=[TransactionType.REWARD], page=page, limit=limit
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def credit(self, user_id: int, amount: Decimal, meta: TxMeta) -> TokenTransaction:
        """Issue tokens to a user (no sender)."""
        posting = await self.apply_transfers([LedgerEntry(None, user_id, amount, meta)])
        return posting.transactions[0]

    async def debit(self, user_id: int, amount: Decimal, meta: TxMeta) -> TokenTransaction:
        """Remove tokens from a user's available balance (no recipient)."""
        posting = await self.apply_transfers([LedgerEntry(user_id, None, amount, meta)])
        return posting.transactions[0]

    async def transfer_atomic(
        self,
        from_user_id: int,
        to_user_id: int,
        amount: Decimal,
        meta: TxMeta,
    ) -> TokenTransaction:
        """Debit one user and credit another as a single indivisible unit."""
        if from_user_id == to_user_id:
            raise SelfTransferNotAllowed("Cannot transfer tokens to yourself", user_id=from_user_id)
        if await self._load_user(to_user_id) is None:
            raise UnknownRecipient(f"Recipient {to_user_id} does not exist", user_id=to_user_id)
        posting = await self.apply_transfers([LedgerEntry(from_user_id, to_user_id, amount, meta)])
        return posting.transactions[0]

    async def apply_transfers(self, entries: Sequence[LedgerEntry]) -> Posting:
        """Apply several ledger legs atomically.

        Either every leg applies or none does. Replaying the same set of
        idempotency keys returns the original transactions untouched.
        """
        if not entries:
            raise InvalidAmount("No ledger entries supplied")

        legs: list[tuple[LedgerEntry, Decimal]] = []
        for entry in entries:
            amount = to_amount(entry.amount)
            if amount <= ZERO:
                raise InvalidAmount("Amount must be greater than zero", amount=str(entry.amount))
            if entry.from_user_id is not None and entry.from_user_id == entry.to_user_id:
                raise SelfTransferNotAllowed("Cannot transfer tokens to yourself", user_id=entry.from_user_id)
            legs.append((entry, amount))

        user_ids = sorted(
            {uid for entry, _ in legs for uid in (entry.from_user_id, entry.to_user_id) if uid is not None}
        )
        balances = await self._lock_balances(user_ids)

        existing = await self._existing_transactions([entry.meta for entry, _ in legs])
        if existing:
            if len(existing) != len(legs):
                references = ", ".join(entry.meta.reference_id for entry, _ in legs)
                raise IntegrityViolation(f"Partial replay of a multi-party ledger operation: {references}")
            logger.info("ledger_replay", references=[tx.reference_id for tx in existing])
            return Posting(transactions=existing, replayed=True)

        outgoing: dict[int, Decimal] = {}
        for entry, amount in legs:
            if entry.from_user_id is not None:
                outgoing[entry.from_user_id] = outgoing.get(entry.from_user_id, ZERO) + amount
        for uid, required in outgoing.items():
            row = balances[uid]
            available = row.balance - row.locked
            if available < required:
                raise InsufficientFunds(
                    "Insufficient available balance",
                    user_id=uid,
                    available=str(available),
                    required=str(required),
                )

        now = datetime.now(timezone.utc)
        transactions: list[TokenTransaction] = []
        for entry, amount in legs:
            if entry.from_user_id is not None:
                sender = balances[entry.from_user_id]
                sender.balance -= amount
                sender.lifetime_spent += amount
                sender.updated_at = now
            if entry.to_user_id is not None:
                recipient = balances[entry.to_user_id]
                recipient.balance += amount
                recipient.lifetime_earned += amount
                recipient.updated_at = now
            tx = TokenTransaction(
                from_user_id=entry.from_user_id,
                to_user_id=entry.to_user_id,
                amount=amount,
                type=entry.meta.type.value,
                status=TransactionStatus.PENDING.value,
                reference_id=entry.meta.reference_id,
                reason=entry.meta.reason,
                tx_metadata=dict(entry.meta.metadata),
                created_at=now,
            )
            self.db.add(tx)
            transactions.append(tx)

        self._assert_invariants(balances.values())
        await self._flush()

        for tx in transactions:
            tx.status = TransactionStatus.COMPLETED.value
            tx.completed_at = now
        await self._flush()

        return Posting(transactions=transactions, replayed=False)

    async def stake(self, user_id: int, amount: Decimal, meta: TxMeta) -> TokenTransaction:
        """Reserve part of the available balance (balance unchanged, locked grows)."""
        return await self._move_lock(user_id, to_amount(amount), meta, direction=1)

    async def unstake(self, user_id: int, amount: Decimal, meta: TxMeta) -> TokenTransaction:
        """Release previously staked tokens back to the available balance."""
        return await self._move_lock(user_id, to_amount(amount), meta, direction=-1)

    async def record_verified_balance(self, user_id: int, amount: Decimal, verified_at: datetime) -> None:
        """Store a settlement-layer balance snapshot for later comparison."""
        balances = await self._lock_balances([user_id])
        row = balances[user_id]
        row.last_verified_balance = to_amount(amount)
        row.last_verified_at = verified_at
        if row.last_verified_balance != row.balance:
            logger.warning(
                "balance_verification_mismatch",
                user_id=user_id,
                ledger_balance=str(row.balance),
                settlement_balance=str(row.last_verified_balance),
            )
        await self._flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _move_lock(self, user_id: int, amount: Decimal, meta: TxMeta, direction: int) -> TokenTransaction:
        if amount <= ZERO:
            raise InvalidAmount("Amount must be greater than zero", amount=str(amount))

        balances = await self._lock_balances([user_id])
        row = balances[user_id]

        existing = await self.find_transaction(meta.type, meta.reference_id)
        if existing is not None:
            return existing

        if direction > 0 and row.balance - row.locked < amount:
            raise InsufficientFunds(
                "Insufficient available balance to stake",
                user_id=user_id,
                available=str(row.balance - row.locked),
                required=str(amount),
            )
        if direction < 0 and row.locked < amount:
            raise InsufficientFunds(
                "Insufficient staked balance",
                user_id=user_id,
                locked=str(row.locked),
                required=str(amount),
                constraint="locked",
            )

        now = datetime.now(timezone.utc)
        row.locked += amount * direction
        row.updated_at = now
        tx = TokenTransaction(
            from_user_id=user_id,
            to_user_id=user_id,
            amount=amount,
            type=meta.type.value,
            status=TransactionStatus.COMPLETED.value,
            reference_id=meta.reference_id,
            reason=meta.reason,
            tx_metadata=dict(meta.metadata),
            created_at=now,
            completed_at=now,
        )
        self.db.add(tx)
        self._assert_invariants([row])
        await self._flush()
        return tx

    async def _get_balance_row(self, user_id: int) -> TokenBalance | None:
        result = await self.db.execute(select(TokenBalance).where(TokenBalance.user_id == user_id))
        return result.scalar_one_or_none()

    async def _load_user(self, user_id: int) -> User | None:
        result = await self.db.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
        return result.scalar_one_or_none()

    async def _ensure_balances(self, user_ids: Sequence[int]) -> None:
        """Create zero balance rows for known users that have none yet."""
        result = await self.db.execute(
            select(TokenBalance.user_id).where(TokenBalance.user_id.in_(user_ids))
        )
        missing = set(user_ids) - set(result.scalars())
        for user_id in sorted(missing):
            user = await self._load_user(user_id)
            if user is None:
                raise UnknownUser(f"User {user_id} does not exist", user_id=user_id)
            stmt = (
                insert_for(self.db, TokenBalance)
                .values(
                    user_id=user_id,
                    balance=ZERO,
                    locked=ZERO,
                    lifetime_earned=ZERO,
                    lifetime_spent=ZERO,
                    wallet_address=user.wallet_address,
                    updated_at=datetime.now(timezone.utc),
                )
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
            await self.db.execute(stmt)

    async def _lock_balances(self, user_ids: Sequence[int]) -> dict[int, TokenBalance]:
        """Lock balance rows in ascending user-id order to avoid deadlocks."""
        await self._ensure_balances(user_ids)
        result = await self.db.execute(
            select(TokenBalance)
            .where(TokenBalance.user_id.in_(user_ids))
            .order_by(TokenBalance.user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {row.user_id: row for row in result.scalars()}

    async def _existing_transactions(self, metas: Sequence[TxMeta]) -> list[TokenTransaction]:
        keys = [
            and_(TokenTransaction.type == meta.type.value, TokenTransaction.reference_id == meta.reference_id)
            for meta in metas
        ]
        result = await self.db.execute(
            select(TokenTransaction)
            .where(or_(*keys))
            .order_by(TokenTransaction.id)
        )
        return list(result.scalars())

    @staticmethod
    def _assert_invariants(rows: Iterable[TokenBalance]) -> None:
        for row in rows:
            if row.locked < ZERO or row.balance < row.locked:
                raise IntegrityViolation(
                    f"Balance invariant broken for user {row.user_id}: "
                    f"balance={row.balance} locked={row.locked}"
                )

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            logger.error("ledger_integrity_violation", error=str(exc.orig))
            await self.db.rollback()
            raise IntegrityViolation("Ledger write rejected by database constraint") from exc
