"""Reward disbursement coordinator.

Flow per activity event:
1. Select applicable rules (priority order)
2. Per rule: dedup check, conditions, amount, atomic cap reservation, ledger credit
3. Commit the ledger state
4. Best-effort settlement per credited transaction, then commit settlement metadata
5. Publish reward events
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.config import Settings, get_settings
from bodydfi.db.models import RewardAccrualCounter, RewardRule, TokenTransaction, User
from bodydfi.db.upsert import insert_for
from bodydfi.errors import FormulaError, SelfTransferNotAllowed, UnknownRecipient
from bodydfi.identity import get_user, require_user
from bodydfi.ledger.amounts import ZERO
from bodydfi.ledger.schemas import LedgerEntry, TransactionType, TxMeta
from bodydfi.ledger.service import LedgerStore
from bodydfi.redis_client import publish_event
from bodydfi.rewards.engine import RewardRuleEngine, period_keys, rule_limits
from bodydfi.rewards.schemas import (
    ActivityEvent,
    RewardResult,
    RuleOutcome,
    RuleOutcomeStatus,
    TransferRequest,
    TransferResult,
)
from bodydfi.settlement.gateway import SettlementGateway, apply_outcome, submit_best_effort
from bodydfi.settlement.schemas import InstructionKind, SettlementInstruction

logger = structlog.get_logger()

REWARD_CHANNEL = "pubsub:token_reward"
TRANSFER_CHANNEL = "pubsub:token_transfer"


def reward_reference(rule_id: str, dedup_key: str) -> str:
    return f"reward:{rule_id}:{dedup_key}"


class RewardDisbursementCoordinator:
    """Turns activity events into REWARD credits and moves tokens between users."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: SettlementGateway,
        redis: object = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.redis = redis
        self.settings = settings or get_settings()
        self.ledger = LedgerStore(db)
        self.engine = RewardRuleEngine(db)

    async def process_reward(self, event: ActivityEvent, now: datetime | None = None) -> RewardResult:
        """Evaluate every applicable rule for an activity and credit the passing ones.

        Re-processing the same event (same dedup key) is a no-op per rule.
        """
        now = now or datetime.now(timezone.utc)
        dedup_key = event.effective_dedup_key()

        try:
            user = await require_user(self.db, event.user_id)
            rules = await self.engine.find_applicable_rules(event.activity_type, now)

            outcomes: list[RuleOutcome] = []
            credited: list[tuple[RuleOutcome, RewardRule, TokenTransaction]] = []
            for rule in rules:
                outcome, tx = await self._apply_rule(user, rule, event, dedup_key, now)
                outcomes.append(outcome)
                if tx is not None:
                    credited.append((outcome, rule, tx))

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if credited:
            await self._settle_rewards(user, credited)

        total = sum((outcome.amount for outcome, _, _ in credited), ZERO)
        for outcome, rule, tx in credited:
            await publish_event(self.redis, REWARD_CHANNEL, {
                "user_id": user.id,
                "rule_id": rule.id,
                "rule_name": rule.name,
                "activity_type": event.activity_type,
                "amount": str(outcome.amount),
                "transaction_id": tx.id,
            })

        balance = await self.ledger.get_balance(user.id)
        await self.db.commit()
        logger.info(
            "reward_processed",
            user_id=user.id,
            activity_type=event.activity_type,
            rules_evaluated=len(rules),
            rules_credited=len(credited),
            total_reward=str(total),
        )
        return RewardResult(
            user_id=user.id,
            rewarded=total > ZERO,
            total_reward=total,
            outcomes=outcomes,
            new_balance=balance.balance,
        )

    async def transfer_tokens(self, request: TransferRequest) -> TransferResult:
        """Move tokens between two users, then settle best-effort.

        Rejections (insufficient funds, self transfer, unknown recipient)
        propagate unchanged.
        """
        if request.from_user_id == request.to_user_id:
            raise SelfTransferNotAllowed("Cannot transfer tokens to yourself", user_id=request.from_user_id)

        reference_id = f"transfer:{request.from_user_id}:{request.reference_id}"
        try:
            sender = await require_user(self.db, request.from_user_id)
            recipient = await get_user(self.db, request.to_user_id)
            if recipient is None or not recipient.is_active:
                raise UnknownRecipient(
                    f"Recipient {request.to_user_id} does not exist", user_id=request.to_user_id
                )

            existing = await self.ledger.find_transaction(TransactionType.TRANSFER, reference_id)
            replayed = existing is not None
            tx = existing or await self.ledger.transfer_atomic(
                sender.id,
                recipient.id,
                request.amount,
                TxMeta(
                    type=TransactionType.TRANSFER,
                    reference_id=reference_id,
                    reason=request.reason,
                ),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if not replayed:
            outcome = await submit_best_effort(
                self.gateway,
                SettlementInstruction(
                    kind=InstructionKind.TRANSFER,
                    amount=tx.amount,
                    reference_id=reference_id,
                    source_wallet=sender.wallet_address,
                    destination_wallet=recipient.wallet_address,
                    memo=request.reason or "Token transfer",
                ),
                timeout=self.settings.settlement_timeout_seconds,
            )
            apply_outcome(tx, outcome)
            await self.db.commit()
            await publish_event(self.redis, TRANSFER_CHANNEL, {
                "from_user_id": sender.id,
                "to_user_id": recipient.id,
                "amount": str(tx.amount),
                "transaction_id": tx.id,
            })
            logger.info(
                "tokens_transferred",
                from_user_id=sender.id,
                to_user_id=recipient.id,
                amount=str(tx.amount),
                settlement_state=tx.settlement_state,
            )

        balance = await self.ledger.get_balance(sender.id)
        await self.db.commit()
        return TransferResult(
            transaction_id=tx.id,
            from_user_id=sender.id,
            to_user_id=recipient.id,
            amount=tx.amount,
            replayed=replayed,
            settlement_state=tx.settlement_state,
            from_balance=balance.balance,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply_rule(
        self,
        user: User,
        rule: RewardRule,
        event: ActivityEvent,
        dedup_key: str,
        now: datetime,
    ) -> tuple[RuleOutcome, TokenTransaction | None]:
        reference_id = reward_reference(rule.id, dedup_key)

        def outcome(status: RuleOutcomeStatus, amount: Decimal = ZERO, **kwargs: object) -> RuleOutcome:
            return RuleOutcome(rule_id=rule.id, rule_name=rule.name, amount=amount, status=status, **kwargs)

        existing = await self.ledger.find_transaction(TransactionType.REWARD, reference_id)
        if existing is not None:
            return outcome(RuleOutcomeStatus.DUPLICATE, existing.amount, transaction_id=existing.id), None

        if not self.engine.matches_conditions(rule, event.payload):
            return outcome(RuleOutcomeStatus.CONDITIONS_NOT_MET), None

        try:
            amount = self.engine.compute_amount(rule, event.payload)
        except FormulaError as exc:
            logger.warning("reward_formula_error", rule_id=rule.id, error=str(exc))
            return outcome(RuleOutcomeStatus.FORMULA_ERROR, reason=str(exc)), None

        if amount <= ZERO:
            return outcome(RuleOutcomeStatus.ZERO_AMOUNT), None

        if not await self._reserve_accrual(user.id, rule, amount, now):
            return outcome(RuleOutcomeStatus.CAP_EXCEEDED, reason="Reward limit reached for this period"), None

        posting = await self.ledger.apply_transfers([
            LedgerEntry(
                from_user_id=None,
                to_user_id=user.id,
                amount=amount,
                meta=TxMeta(
                    type=TransactionType.REWARD,
                    reference_id=reference_id,
                    reason=rule.name if not rule.description else f"{rule.name} - {rule.description}"[:256],
                    metadata={"rule_id": rule.id, "activity_type": event.activity_type},
                ),
            )
        ])
        tx = posting.transactions[0]
        if posting.replayed:
            await self._release_accrual(user.id, rule, amount, now)
            return outcome(RuleOutcomeStatus.DUPLICATE, tx.amount, transaction_id=tx.id), None

        logger.info("reward_credited", user_id=user.id, rule_id=rule.id, amount=str(amount))
        return outcome(RuleOutcomeStatus.CREDITED, amount, transaction_id=tx.id), tx

    async def _reserve_accrual(self, user_id: int, rule: RewardRule, amount: Decimal, now: datetime) -> bool:
        """Atomically add ``amount`` to every period bucket, each bounded by its limit.

        Each bucket is a conditional UPDATE, so concurrent events cannot push a
        counter past its cap. When a later bucket refuses, earlier increments
        are reverted inside the same transaction.
        """
        keys = period_keys(now)
        limits = rule_limits(rule)

        for period, key in keys.items():
            await self.db.execute(
                insert_for(self.db, RewardAccrualCounter)
                .values(
                    user_id=user_id,
                    rule_id=rule.id,
                    period=period,
                    period_key=key,
                    reward_total=ZERO,
                    reward_count=0,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "rule_id", "period", "period_key"])
            )

        applied: list[str] = []
        for period, key in keys.items():
            stmt = (
                update(RewardAccrualCounter)
                .where(
                    RewardAccrualCounter.user_id == user_id,
                    RewardAccrualCounter.rule_id == rule.id,
                    RewardAccrualCounter.period == period,
                    RewardAccrualCounter.period_key == key,
                )
                .values(
                    reward_total=RewardAccrualCounter.reward_total + amount,
                    reward_count=RewardAccrualCounter.reward_count + 1,
                    last_reward_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            limit = limits[period]
            if limit is not None:
                stmt = stmt.where(RewardAccrualCounter.reward_total + amount <= limit)
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                await self._adjust_counters(user_id, rule.id, {p: keys[p] for p in applied}, -amount)
                logger.info("reward_cap_exceeded", user_id=user_id, rule_id=rule.id, period=period)
                return False
            applied.append(period)
        return True

    async def _release_accrual(self, user_id: int, rule: RewardRule, amount: Decimal, now: datetime) -> None:
        await self._adjust_counters(user_id, rule.id, period_keys(now), -amount)

    async def _adjust_counters(self, user_id: int, rule_id: str, keys: dict[str, str], delta: Decimal) -> None:
        step = 1 if delta > ZERO else -1
        for period, key in keys.items():
            await self.db.execute(
                update(RewardAccrualCounter)
                .where(
                    RewardAccrualCounter.user_id == user_id,
                    RewardAccrualCounter.rule_id == rule_id,
                    RewardAccrualCounter.period == period,
                    RewardAccrualCounter.period_key == key,
                )
                .values(
                    reward_total=RewardAccrualCounter.reward_total + delta,
                    reward_count=RewardAccrualCounter.reward_count + step,
                )
                .execution_options(synchronize_session=False)
            )

    async def _settle_rewards(
        self,
        user: User,
        credited: list[tuple[RuleOutcome, RewardRule, TokenTransaction]],
    ) -> None:
        for outcome, rule, tx in credited:
            settlement = await submit_best_effort(
                self.gateway,
                SettlementInstruction(
                    kind=InstructionKind.MINT,
                    amount=tx.amount,
                    reference_id=tx.reference_id,
                    destination_wallet=user.wallet_address,
                    memo=f"Reward: {rule.name}",
                ),
                timeout=self.settings.settlement_timeout_seconds,
            )
            apply_outcome(tx, settlement)
            outcome.settlement_state = tx.settlement_state
        await self.db.commit()
