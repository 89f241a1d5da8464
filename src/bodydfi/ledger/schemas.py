"""Ledger value types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class TransactionType(str, Enum):
    REWARD = "REWARD"
    PURCHASE = "PURCHASE"
    TRANSFER = "TRANSFER"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    PLATFORM_FEE = "PLATFORM_FEE"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class TxMeta:
    """Describes the economic event behind a ledger mutation.

    ``reference_id`` doubles as the idempotency key together with ``type``.
    """

    type: TransactionType
    reference_id: str
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerEntry:
    """One leg of a multi-party ledger operation. ``from_user_id=None`` issues new tokens."""

    from_user_id: int | None
    to_user_id: int | None
    amount: Decimal
    meta: TxMeta


class BalanceView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    balance: Decimal
    locked: Decimal
    available: Decimal
    lifetime_earned: Decimal
    lifetime_spent: Decimal
    wallet_address: str | None = None
    last_verified_balance: Decimal | None = None
    last_verified_at: datetime | None = None


class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    status: str
    from_user_id: int | None = None
    to_user_id: int | None = None
    amount: Decimal
    reference_id: str
    reason: str | None = None
    created_at: datetime
    settlement_state: str
    settlement_signature: str | None = None
    direction: str | None = None
    net_amount: Decimal | None = None


class TransactionHistory(BaseModel):
    user_id: int
    transactions: list[TransactionView]
    total: int
    page: int
    limit: int
    pages: int
