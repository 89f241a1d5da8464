"""Reward disbursement: rule evaluation, caps, idempotency and token transfers."""

from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bodydfi.db.models import RewardAccrualCounter, TokenTransaction
from bodydfi.errors import (
    InsufficientFunds,
    InvalidRule,
    SelfTransferNotAllowed,
    UnknownRecipient,
)
from bodydfi.ledger.service import LedgerStore
from bodydfi.rewards.engine import RewardRuleEngine
from bodydfi.rewards.schemas import ActivityEvent, RewardRuleInput, RuleOutcomeStatus, TransferRequest
from bodydfi.rewards.service import REWARD_CHANNEL, TRANSFER_CHANNEL


async def _rule(db_session, now, **fields):
    fields.setdefault("name", "Data upload bonus")
    fields.setdefault("activity_type", "data_upload")
    fields.setdefault("start_date", now - timedelta(days=1))
    return await RewardRuleEngine(db_session).save_reward_rule(RewardRuleInput(**fields))


def _event(user_id: int, **payload) -> ActivityEvent:
    return ActivityEvent(user_id=user_id, activity_type="data_upload", payload=payload)


async def _reward_count(db_session, user_id: int) -> int:
    result = await db_session.execute(
        select(func.count()).select_from(TokenTransaction).where(
            TokenTransaction.type == "REWARD",
            TokenTransaction.to_user_id == user_id,
            TokenTransaction.reference_id.like("reward:%"),
        )
    )
    return result.scalar_one()


async def _counter(db_session, user_id: int, rule_id: str, period: str) -> tuple[Decimal, int]:
    result = await db_session.execute(
        select(RewardAccrualCounter.reward_total, RewardAccrualCounter.reward_count).where(
            RewardAccrualCounter.user_id == user_id,
            RewardAccrualCounter.rule_id == rule_id,
            RewardAccrualCounter.period == period,
        )
    )
    total, count = result.one()
    return Decimal(str(total)), count


class TestProcessReward:
    @pytest.mark.asyncio
    async def test_credits_settles_and_publishes(self, rewards, db_session, make_user, gateway, redis, now):
        user = await make_user("alice", wallet="wallet-a")
        rule = await _rule(db_session, now, amount=Decimal("10"))

        result = await rewards.process_reward(_event(user.id, dataPointsCount=40), now)

        assert result.rewarded is True
        assert result.total_reward == Decimal("10")
        assert result.new_balance == Decimal("10")
        [outcome] = result.outcomes
        assert outcome.rule_id == rule.id
        assert outcome.status is RuleOutcomeStatus.CREDITED
        assert outcome.settlement_state == "submitted"
        assert gateway.submitted[0].kind.value == "mint"
        assert gateway.submitted[0].destination_wallet == "wallet-a"

        redis.publish.assert_awaited_once()
        channel, body = redis.publish.await_args.args
        assert channel == REWARD_CHANNEL
        assert json.loads(body)["amount"] == "10.000000"

    @pytest.mark.asyncio
    async def test_same_event_rewards_once(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, amount=Decimal("10"))
        event = _event(user.id, dataPointsCount=40)

        await rewards.process_reward(event, now)
        again = await rewards.process_reward(event, now)

        assert again.rewarded is False
        assert again.outcomes[0].status is RuleOutcomeStatus.DUPLICATE
        assert again.new_balance == Decimal("10")
        assert await _reward_count(db_session, user.id) == 1

    @pytest.mark.asyncio
    async def test_explicit_dedup_key_wins_over_payload(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, amount=Decimal("10"))

        await rewards.process_reward(ActivityEvent(user_id=user.id, activity_type="data_upload",
                                                   payload={"n": 1}, dedup_key="upload-77"), now)
        again = await rewards.process_reward(ActivityEvent(user_id=user.id, activity_type="data_upload",
                                                           payload={"n": 2}, dedup_key="upload-77"), now)

        assert again.outcomes[0].status is RuleOutcomeStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_daily_cap_blocks_excess(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        rule = await _rule(db_session, now, amount=Decimal("15"), daily_limit=Decimal("50"))

        statuses = []
        for n in range(4):
            result = await rewards.process_reward(_event(user.id, n=n), now)
            statuses.append(result.outcomes[0].status)

        assert statuses == [RuleOutcomeStatus.CREDITED] * 3 + [RuleOutcomeStatus.CAP_EXCEEDED]
        assert (await LedgerStore(db_session).get_balance(user.id)).balance == Decimal("45")
        assert await _counter(db_session, user.id, rule.id, "day") == (Decimal("45"), 3)
        assert await _reward_count(db_session, user.id) == 3

    @pytest.mark.asyncio
    async def test_cap_resets_next_day(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, amount=Decimal("15"), daily_limit=Decimal("20"))

        await rewards.process_reward(_event(user.id, n=1), now)
        blocked = await rewards.process_reward(_event(user.id, n=2), now)
        next_day = await rewards.process_reward(_event(user.id, n=3), now + timedelta(days=1))

        assert blocked.outcomes[0].status is RuleOutcomeStatus.CAP_EXCEEDED
        assert next_day.outcomes[0].status is RuleOutcomeStatus.CREDITED

    @pytest.mark.asyncio
    async def test_refused_bucket_reverts_earlier_buckets(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        rule = await _rule(
            db_session, now, amount=Decimal("15"), daily_limit=Decimal("100"), weekly_limit=Decimal("20")
        )

        await rewards.process_reward(_event(user.id, n=1), now)
        result = await rewards.process_reward(_event(user.id, n=2), now)

        assert result.outcomes[0].status is RuleOutcomeStatus.CAP_EXCEEDED
        assert await _counter(db_session, user.id, rule.id, "day") == (Decimal("15"), 1)
        assert await _counter(db_session, user.id, rule.id, "week") == (Decimal("15"), 1)

    @pytest.mark.asyncio
    async def test_check_caps_is_advisory(self, db_session, rewards, make_user, now):
        user = await make_user("alice")
        rule = await _rule(db_session, now, amount=Decimal("15"), daily_limit=Decimal("20"))
        engine = RewardRuleEngine(db_session)

        assert await engine.check_caps(user.id, rule, Decimal("15"), now) is True
        await rewards.process_reward(_event(user.id, n=1), now)
        assert await engine.check_caps(user.id, rule, Decimal("15"), now) is False
        assert await engine.check_caps(user.id, rule, Decimal("5"), now) is True

    @pytest.mark.asyncio
    async def test_conditions_not_met(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(
            db_session, now, amount=Decimal("10"),
            conditions={"field": "dataType", "operator": "equals", "value": "sleep"},
        )

        result = await rewards.process_reward(_event(user.id, dataType="heart_rate"), now)

        assert result.rewarded is False
        assert result.outcomes[0].status is RuleOutcomeStatus.CONDITIONS_NOT_MET

    @pytest.mark.asyncio
    async def test_formula_is_clamped_to_max_reward(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, reward_formula="dataPointsCount * 0.5", max_reward=Decimal("15"))

        small = await rewards.process_reward(_event(user.id, dataPointsCount=10), now)
        large = await rewards.process_reward(_event(user.id, dataPointsCount=400), now)

        assert small.total_reward == Decimal("5")
        assert large.total_reward == Decimal("15")

    @pytest.mark.asyncio
    async def test_formula_error_skips_rule(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, reward_formula="dataPointsCount * 0.5")

        result = await rewards.process_reward(_event(user.id, steps=10), now)

        assert result.outcomes[0].status is RuleOutcomeStatus.FORMULA_ERROR
        assert "dataPointsCount" in result.outcomes[0].reason

    @pytest.mark.asyncio
    async def test_oversized_formula_skips_only_that_rule(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        fixed = await _rule(db_session, now, name="Base", amount=Decimal("5"), priority=5)
        huge = await _rule(db_session, now, name="Runaway", reward_formula="steps * 1000000000000000000000000")

        result = await rewards.process_reward(_event(user.id, steps=1000000), now)

        by_rule = {o.rule_id: o for o in result.outcomes}
        assert by_rule[fixed.id].status is RuleOutcomeStatus.CREDITED
        assert by_rule[huge.id].status is RuleOutcomeStatus.FORMULA_ERROR
        assert result.total_reward == Decimal("5")
        assert await _reward_count(db_session, user.id) == 1

    @pytest.mark.asyncio
    async def test_amount_above_column_maximum_is_formula_error(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, reward_formula="steps * 1000000000000")

        result = await rewards.process_reward(_event(user.id, steps=1000), now)

        assert result.outcomes[0].status is RuleOutcomeStatus.FORMULA_ERROR
        assert "maximum" in result.outcomes[0].reason
        assert await _reward_count(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_zero_amount_is_not_credited(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(db_session, now, reward_formula="dataPointsCount - 100")

        result = await rewards.process_reward(_event(user.id, dataPointsCount=10), now)

        assert result.outcomes[0].status is RuleOutcomeStatus.ZERO_AMOUNT
        assert await _reward_count(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_rules_evaluated_by_priority(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        low = await _rule(db_session, now, name="Base", amount=Decimal("1"), priority=1)
        high = await _rule(db_session, now, name="Boost", amount=Decimal("2"), priority=5)

        result = await rewards.process_reward(_event(user.id), now)

        assert [o.rule_id for o in result.outcomes] == [high.id, low.id]
        assert result.total_reward == Decimal("3")

    @pytest.mark.asyncio
    async def test_expired_rule_is_ignored(self, rewards, db_session, make_user, now):
        user = await make_user("alice")
        await _rule(
            db_session, now, amount=Decimal("10"),
            start_date=now - timedelta(days=10), end_date=now - timedelta(days=1),
        )

        result = await rewards.process_reward(_event(user.id), now)

        assert result.outcomes == []
        assert await RewardRuleEngine(db_session).get_active_reward_rules(now) == []

    @pytest.mark.asyncio
    async def test_settlement_outage_keeps_credit(self, rewards, db_session, make_user, gateway, now):
        user = await make_user("alice", wallet="wallet-a")
        await _rule(db_session, now, amount=Decimal("10"))
        gateway.fail = True

        result = await rewards.process_reward(_event(user.id), now)

        assert result.new_balance == Decimal("10")
        assert result.outcomes[0].settlement_state == "unresolved"

    @pytest.mark.asyncio
    async def test_no_wallet_skips_settlement(self, rewards, db_session, make_user, gateway, now):
        user = await make_user("alice")
        await _rule(db_session, now, amount=Decimal("10"))

        result = await rewards.process_reward(_event(user.id), now)

        assert result.outcomes[0].settlement_state == "skipped"
        assert gateway.submitted == []


class TestRuleAdministration:
    @pytest.mark.asyncio
    async def test_invalid_formula_rejected(self, db_session, now):
        with pytest.raises(InvalidRule) as exc_info:
            await _rule(db_session, now, reward_formula="__import__('os')")
        assert exc_info.value.context["field"] == "reward_formula"

    @pytest.mark.asyncio
    async def test_invalid_conditions_rejected(self, db_session, now):
        with pytest.raises(InvalidRule):
            await _rule(db_session, now, amount=Decimal("1"), conditions={"field": "x", "operator": "regex"})

    @pytest.mark.asyncio
    async def test_update_existing_rule(self, db_session, now):
        rule = await _rule(db_session, now, amount=Decimal("1"))
        updated = await RewardRuleEngine(db_session).save_reward_rule(
            RewardRuleInput(name="Renamed", activity_type="data_upload", amount=Decimal("3")), rule_id=rule.id
        )
        assert updated.id == rule.id
        assert updated.name == "Renamed"
        assert updated.amount == Decimal("3")


class TestTransfers:
    @pytest.mark.asyncio
    async def test_transfer_moves_and_settles(self, rewards, db_session, make_user, gateway, redis):
        alice = await make_user("alice", balance=50, wallet="wallet-a")
        bob = await make_user("bob", balance=10, wallet="wallet-b")

        result = await rewards.transfer_tokens(
            TransferRequest(from_user_id=alice.id, to_user_id=bob.id, amount=Decimal("30"), reference_id="r1")
        )

        assert result.from_balance == Decimal("20")
        assert result.replayed is False
        assert result.settlement_state == "submitted"
        assert (await LedgerStore(db_session).get_balance(bob.id)).balance == Decimal("40")
        assert gateway.submitted[0].source_wallet == "wallet-a"
        assert redis.publish.await_args.args[0] == TRANSFER_CHANNEL

    @pytest.mark.asyncio
    async def test_transfer_replay(self, rewards, make_user, gateway):
        alice = await make_user("alice", balance=50, wallet="wallet-a")
        bob = await make_user("bob", wallet="wallet-b")
        request = TransferRequest(from_user_id=alice.id, to_user_id=bob.id, amount=Decimal("5"), reference_id="r1")

        first = await rewards.transfer_tokens(request)
        second = await rewards.transfer_tokens(request)

        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert second.from_balance == Decimal("45")
        assert len(gateway.submitted) == 1

    @pytest.mark.asyncio
    async def test_transfer_rejections(self, rewards, db_session, make_user):
        alice = await make_user("alice", balance=50)
        bob = await make_user("bob")
        alice_id, bob_id = alice.id, bob.id

        with pytest.raises(SelfTransferNotAllowed):
            await rewards.transfer_tokens(TransferRequest(from_user_id=alice_id, to_user_id=alice_id, amount=Decimal("1")))
        with pytest.raises(UnknownRecipient):
            await rewards.transfer_tokens(TransferRequest(from_user_id=alice_id, to_user_id=9999, amount=Decimal("1")))
        with pytest.raises(InsufficientFunds):
            await rewards.transfer_tokens(TransferRequest(from_user_id=alice_id, to_user_id=bob_id, amount=Decimal("51")))

        assert (await LedgerStore(db_session).get_balance(alice_id)).balance == Decimal("50")
