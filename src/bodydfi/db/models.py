"""ORM models for the marketplace ledger core.

Money-safety invariants live in the schema, not only in application code:
CHECK constraints keep balances non-negative, the (type, reference_id)
unique key makes every economic event idempotent, and a partial unique
index allows a single active purchase per buyer and listing.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bodydfi.db.base import Base, BigIntPK, UTCDateTime

TokenAmount = Numeric(20, 6)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Identity directory
# ---------------------------------------------------------------------------


class User(Base):
    """Maps to the 'users' table owned by the identity service."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user", server_default="user")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class SettlementColumns:
    """Settlement tracking shared by ledger transactions and purchases."""

    settlement_state: Mapped[str] = mapped_column(String(16), nullable=False, default="unresolved", server_default="unresolved")
    settlement_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    settlement_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    settlement_slot: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    settlement_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    settlement_error: Mapped[str | None] = mapped_column(String(256), nullable=True)
    settlement_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class TokenBalance(Base):
    """Denormalized running balance, one row per user, mutated only by the ledger store."""

    __tablename__ = "token_balances"
    __table_args__ = (
        CheckConstraint("locked >= 0", name="ck_token_balances_locked_non_negative"),
        CheckConstraint("balance >= locked", name="ck_token_balances_balance_covers_locked"),
    )

    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True
    )
    balance: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False, default=Decimal("0"), server_default="0")
    locked: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False, default=Decimal("0"), server_default="0")
    lifetime_earned: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False, default=Decimal("0"), server_default="0")
    lifetime_spent: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False, default=Decimal("0"), server_default="0")
    wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_verified_balance: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    last_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow, server_default=func.now())


class TokenTransaction(SettlementColumns, Base):
    """Append-only record of one economic event. UNIQUE(type, reference_id) is the idempotency key."""

    __tablename__ = "token_transactions"
    __table_args__ = (
        UniqueConstraint("type", "reference_id", name="uq_token_transactions_type_reference"),
        CheckConstraint("amount > 0", name="ck_token_transactions_amount_positive"),
        CheckConstraint(
            "from_user_id IS NOT NULL OR to_user_id IS NOT NULL",
            name="ck_token_transactions_has_party",
        ),
        Index("idx_token_transactions_from", "from_user_id"),
        Index("idx_token_transactions_to", "to_user_id"),
        Index("idx_token_transactions_settlement", "settlement_state"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    from_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=True)
    to_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", server_default="PENDING")
    reference_id: Mapped[str] = mapped_column(String(200), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    tx_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


class RewardRule(Base):
    """Admin-authored reward rule. Read-mostly; never mutated by the reward path."""

    __tablename__ = "reward_rules"
    __table_args__ = (
        Index("idx_reward_rules_activity", "activity_type", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    reward_formula: Mapped[str | None] = mapped_column(String(512), nullable=True)
    max_reward: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    daily_limit: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    weekly_limit: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    monthly_limit: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class RewardAccrualCounter(Base):
    """Per (user, rule, period bucket) accumulator used to enforce reward caps."""

    __tablename__ = "reward_accrual_counters"
    __table_args__ = (
        UniqueConstraint("user_id", "rule_id", "period", "period_key", name="uq_reward_accrual_bucket"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("reward_rules.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[str] = mapped_column(String(8), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    reward_total: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False, default=Decimal("0"), server_default="0")
    reward_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_reward_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# ---------------------------------------------------------------------------
# Device / data catalog (read-only here)
# ---------------------------------------------------------------------------


class DataPoint(Base):
    """Content-addressed sensor reading owned by the data catalog."""

    __tablename__ = "data_points"
    __table_args__ = (
        Index("idx_data_points_user_time", "user_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    data_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    device_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed", server_default="confirmed")
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))


# ---------------------------------------------------------------------------
# Marketplace
# ---------------------------------------------------------------------------


class MarketplaceSettings(Base):
    """Global marketplace configuration overriding the deployment defaults."""

    __tablename__ = "marketplace_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(16), unique=True, nullable=False, default="global", server_default="global")
    platform_fee_rate: Mapped[float] = mapped_column(Float, nullable=False, default=5.0, server_default="5")
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class DataListing(Base):
    """A provider's offer of time-limited access to a set of data points."""

    __tablename__ = "data_listings"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_data_listings_price_non_negative"),
        CheckConstraint("access_period_days >= 1", name="ck_data_listings_access_period"),
        Index("idx_data_listings_status", "status"),
        Index("idx_data_listings_provider", "provider_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_type: Mapped[str] = mapped_column(String(32), nullable=False, default="basic", server_default="basic")
    category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    price: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    access_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30, server_default="30")
    data_hashes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    data_points_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    timeframe_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    timeframe_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    purchases_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    views_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    rating_avg: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class DataPurchase(SettlementColumns, Base):
    """A buyer's paid, time-bounded access grant to one listing."""

    __tablename__ = "data_purchases"
    __table_args__ = (
        Index(
            "uq_data_purchases_active_grant",
            "buyer_id",
            "listing_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_data_purchases_provider", "provider_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    buyer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    listing_id: Mapped[str] = mapped_column(String(36), ForeignKey("data_listings.id"), nullable=False)
    provider_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    provider_amount: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    access_start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    access_end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    access_key: Mapped[str] = mapped_column(Text, nullable=False)
    rating_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rating_comment: Mapped[str | None] = mapped_column(String(500), nullable=True)
    rated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    listing: Mapped[DataListing] = relationship("DataListing", lazy="joined")


class PurchaseAccessLog(Base):
    """One row per access to purchased data."""

    __tablename__ = "purchase_access_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    purchase_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("data_purchases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    details: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
