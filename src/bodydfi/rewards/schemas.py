"""Reward inputs and results."""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ActivityEvent(BaseModel):
    """One user activity submitted for reward processing."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    activity_type: str = Field(min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    dedup_key: str | None = Field(default=None, min_length=1, max_length=128)

    def effective_dedup_key(self) -> str:
        """Caller-supplied key, else a digest of the canonical (activity_type, payload) JSON."""
        if self.dedup_key:
            return self.dedup_key
        canonical = json.dumps(
            [self.activity_type, self.payload],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RuleOutcomeStatus(str, Enum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    CONDITIONS_NOT_MET = "conditions_not_met"
    FORMULA_ERROR = "formula_error"
    ZERO_AMOUNT = "zero_amount"
    CAP_EXCEEDED = "cap_exceeded"


class RuleOutcome(BaseModel):
    rule_id: str
    rule_name: str
    amount: Decimal = Decimal("0")
    status: RuleOutcomeStatus
    transaction_id: int | None = None
    settlement_state: str | None = None
    reason: str | None = None


class RewardResult(BaseModel):
    user_id: int
    rewarded: bool
    total_reward: Decimal
    outcomes: list[RuleOutcome]
    new_balance: Decimal


class TransferRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_user_id: int
    to_user_id: int
    amount: Decimal = Field(gt=0)
    reason: str | None = Field(default=None, max_length=200)
    reference_id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, max_length=128)


class TransferResult(BaseModel):
    transaction_id: int
    from_user_id: int
    to_user_id: int
    amount: Decimal
    replayed: bool
    settlement_state: str
    from_balance: Decimal


class RewardRuleInput(BaseModel):
    """Admin-authored rule definition."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    activity_type: str = Field(min_length=1, max_length=64)
    conditions: dict[str, Any] | list[Any] | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    reward_formula: str | None = None
    max_reward: Decimal | None = Field(default=None, ge=0)
    daily_limit: Decimal | None = Field(default=None, gt=0)
    weekly_limit: Decimal | None = Field(default=None, gt=0)
    monthly_limit: Decimal | None = Field(default=None, gt=0)
    is_active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None
    priority: int = 0

    @model_validator(mode="after")
    def _check_amount_source(self) -> RewardRuleInput:
        if self.amount is None and not self.reward_formula:
            raise ValueError("Either amount or reward_formula is required")
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class RewardRuleView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    activity_type: str
    conditions: dict[str, Any] | list[Any] | None = None
    amount: Decimal | None = None
    reward_formula: str | None = None
    max_reward: Decimal | None = None
    daily_limit: Decimal | None = None
    weekly_limit: Decimal | None = None
    monthly_limit: Decimal | None = None
    is_active: bool
    start_date: datetime
    end_date: datetime | None = None
    priority: int
