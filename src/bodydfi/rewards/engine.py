"""Reward rule engine: rule selection, condition matching, amounts and caps.

Everything here is read-only with respect to the ledger. Counter writes
belong to the disbursement coordinator.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.db.models import RewardAccrualCounter, RewardRule
from bodydfi.errors import FormulaError, InvalidRule
from bodydfi.ledger.amounts import MAX_AMOUNT, ZERO, to_amount
from bodydfi.rewards.conditions import Predicate, matches, parse_conditions, specificity
from bodydfi.rewards.formula import evaluate_formula, parse_formula
from bodydfi.rewards.schemas import RewardRuleInput

logger = structlog.get_logger()

PERIOD_DAY = "day"
PERIOD_WEEK = "week"
PERIOD_MONTH = "month"


def period_keys(now: datetime) -> dict[str, str]:
    """UTC bucket keys, e.g. {'day': '2026-10-18', 'week': '2026-W42', 'month': '2026-10'}."""
    now = now.astimezone(timezone.utc)
    return {
        PERIOD_DAY: now.strftime("%Y-%m-%d"),
        PERIOD_WEEK: now.strftime("%G-W%V"),
        PERIOD_MONTH: now.strftime("%Y-%m"),
    }


def rule_limits(rule: RewardRule) -> dict[str, Decimal | None]:
    return {
        PERIOD_DAY: rule.daily_limit,
        PERIOD_WEEK: rule.weekly_limit,
        PERIOD_MONTH: rule.monthly_limit,
    }


def _predicate(rule: RewardRule) -> Predicate | None:
    try:
        return parse_conditions(rule.conditions)
    except ValueError:
        logger.warning("reward_rule_conditions_invalid", rule_id=rule.id, exc_info=True)
        raise


class RewardRuleEngine:
    """Evaluates activity payloads against admin-authored reward rules."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_applicable_rules(self, activity_type: str, now: datetime | None = None) -> list[RewardRule]:
        """Active, in-window rules for an activity type.

        Ordered by priority descending, then by specificity (more leaf
        conditions first), then oldest first.
        """
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(RewardRule).where(
                RewardRule.activity_type == activity_type,
                RewardRule.is_active.is_(True),
                RewardRule.start_date <= now,
                or_(RewardRule.end_date.is_(None), RewardRule.end_date > now),
            )
        )
        rules = list(result.scalars())

        def rank(rule: RewardRule) -> tuple[int, int, datetime, str]:
            try:
                narrowness = specificity(parse_conditions(rule.conditions))
            except ValueError:
                narrowness = 0
            return (-rule.priority, -narrowness, rule.created_at, rule.id)

        return sorted(rules, key=rank)

    def matches_conditions(self, rule: RewardRule, payload: dict[str, Any]) -> bool:
        """Structural predicate match. Malformed stored conditions never match."""
        try:
            predicate = _predicate(rule)
        except ValueError:
            return False
        return matches(predicate, payload)

    def compute_amount(self, rule: RewardRule, payload: dict[str, Any]) -> Decimal:
        """Reward for this payload, clamped to [0, max_reward]. Raises FormulaError."""
        if rule.reward_formula:
            raw = evaluate_formula(rule.reward_formula, payload)
        else:
            raw = rule.amount if rule.amount is not None else ZERO

        try:
            amount = max(ZERO, Decimal(raw))
            if rule.max_reward is not None:
                amount = min(amount, rule.max_reward)
            amount = to_amount(amount)
        except ArithmeticError as exc:
            raise FormulaError(f"Reward amount is not representable: {exc}") from exc
        if amount > MAX_AMOUNT:
            raise FormulaError(f"Reward amount exceeds the maximum of {MAX_AMOUNT}")
        return amount

    async def get_accruals(self, user_id: int, rule: RewardRule, now: datetime) -> dict[str, Decimal]:
        """Current accrued totals per period bucket (missing buckets are zero)."""
        keys = period_keys(now)
        result = await self.db.execute(
            select(RewardAccrualCounter)
            .where(
                RewardAccrualCounter.user_id == user_id,
                RewardAccrualCounter.rule_id == rule.id,
                or_(*[
                    (RewardAccrualCounter.period == period) & (RewardAccrualCounter.period_key == key)
                    for period, key in keys.items()
                ]),
            )
            .execution_options(populate_existing=True)
        )
        totals = {period: ZERO for period in keys}
        for counter in result.scalars():
            totals[counter.period] = counter.reward_total
        return totals

    async def check_caps(self, user_id: int, rule: RewardRule, amount: Decimal, now: datetime) -> bool:
        """Advisory read: would crediting ``amount`` stay within every configured limit?"""
        accrued = await self.get_accruals(user_id, rule, now)
        for period, limit in rule_limits(rule).items():
            if limit is not None and accrued[period] + amount > limit:
                return False
        return True

    # ------------------------------------------------------------------
    # Rule administration
    # ------------------------------------------------------------------

    async def get_active_reward_rules(self, now: datetime | None = None) -> list[RewardRule]:
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(RewardRule)
            .where(
                RewardRule.is_active.is_(True),
                RewardRule.start_date <= now,
                or_(RewardRule.end_date.is_(None), RewardRule.end_date > now),
            )
            .order_by(RewardRule.activity_type, RewardRule.priority.desc())
        )
        return list(result.scalars())

    async def save_reward_rule(self, data: RewardRuleInput, rule_id: str | None = None) -> RewardRule:
        """Create or update a rule. Formula and conditions are validated before saving."""
        if data.reward_formula:
            try:
                parse_formula(data.reward_formula)
            except FormulaError as exc:
                raise InvalidRule(str(exc), field="reward_formula") from exc
        try:
            parse_conditions(data.conditions)
        except ValueError as exc:
            raise InvalidRule(str(exc), field="conditions") from exc

        now = datetime.now(timezone.utc)
        values = data.model_dump(exclude={"start_date"})
        if rule_id is not None:
            result = await self.db.execute(select(RewardRule).where(RewardRule.id == rule_id))
            rule = result.scalar_one_or_none()
            if rule is None:
                raise InvalidRule(f"Reward rule {rule_id} not found", rule_id=rule_id)
            for key, value in values.items():
                setattr(rule, key, value)
            if data.start_date is not None:
                rule.start_date = data.start_date
            rule.updated_at = now
        else:
            rule = RewardRule(**values, start_date=data.start_date or now, created_at=now)
            self.db.add(rule)

        await self.db.commit()
        logger.info("reward_rule_saved", rule_id=rule.id, activity_type=rule.activity_type)
        return rule
