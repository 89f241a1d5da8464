"""Shared test fixtures.

Each test gets a fresh SQLite database (aiosqlite) built from the ORM
metadata, a fake settlement gateway and a mocked redis client.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.config import Settings
from bodydfi.database import close_db, create_all, get_session, init_db
from bodydfi.db.models import DataListing, User
from bodydfi.errors import SettlementUnavailable
from bodydfi.identity import ensure_platform_account
from bodydfi.ledger.schemas import TransactionType, TxMeta
from bodydfi.ledger.service import LedgerStore
from bodydfi.marketplace.service import MarketplaceCoordinator
from bodydfi.rewards.service import RewardDisbursementCoordinator
from bodydfi.security.encryption import AccessKeyCipher
from bodydfi.settlement.gateway import SettlementGateway
from bodydfi.settlement.schemas import SettlementHandle, SettlementInstruction, SettlementStatus

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)
PLATFORM_ID = 1


class FakeGateway(SettlementGateway):
    """In-memory settlement network."""

    def __init__(self) -> None:
        self.submitted: list[SettlementInstruction] = []
        self.fail = False
        self.statuses: dict[str, SettlementStatus] = {}
        self.balances: dict[str, Decimal] = {}
        self._counter = 0

    async def submit(self, instruction: SettlementInstruction) -> SettlementHandle:
        if self.fail:
            raise SettlementUnavailable("relay unreachable")
        self._counter += 1
        self.submitted.append(instruction)
        return SettlementHandle(signature=f"sig-{self._counter}", submitted_at=datetime.now(timezone.utc))

    async def get_status(self, handle: SettlementHandle) -> SettlementStatus:
        if handle.signature not in self.statuses:
            raise SettlementUnavailable(f"unknown signature {handle.signature}")
        return self.statuses[handle.signature]

    async def get_token_balance(self, wallet_address: str) -> Decimal:
        if wallet_address not in self.balances:
            raise SettlementUnavailable(f"unknown wallet {wallet_address}")
        return self.balances[wallet_address]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        encryption_key="11" * 32,
        platform_fee_rate=5.0,
        platform_account_id=PLATFORM_ID,
        settlement_timeout_seconds=0.5,
        settlement_max_attempts=3,
    )


@pytest.fixture
def cipher(settings: Settings) -> AccessKeyCipher:
    return AccessKeyCipher.from_settings(settings)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def redis() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def db_session(tmp_path: Path) -> AsyncGenerator[AsyncSession, None]:
    """Session on a fresh schema. The platform fee account always has id 1."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_all()
    async for session in get_session():
        await ensure_platform_account(session, PLATFORM_ID)
        await session.commit()
        yield session
    await close_db()


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory: create a user, optionally funded through a seed REWARD credit."""

    async def _make(
        username: str,
        balance: Decimal | int = 0,
        wallet: str | None = None,
        role: str = "user",
    ) -> User:
        user = User(username=username, wallet_address=wallet, role=role)
        db_session.add(user)
        await db_session.flush()
        if balance:
            await LedgerStore(db_session).credit(
                user.id, Decimal(balance), TxMeta(TransactionType.REWARD, f"seed:{user.id}")
            )
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_listing(db_session: AsyncSession) -> Callable[..., Awaitable[DataListing]]:
    async def _make(
        provider: User,
        price: Decimal | int = 100,
        access_period_days: int = 30,
        status: str = "active",
        **fields: object,
    ) -> DataListing:
        listing = DataListing(
            provider_id=provider.id,
            title=fields.pop("title", "Sleep data, October"),
            price=Decimal(price),
            access_period_days=access_period_days,
            data_hashes=fields.pop("data_hashes", []),
            status=status,
            created_at=NOW - timedelta(days=1),
            **fields,
        )
        db_session.add(listing)
        await db_session.commit()
        return listing

    return _make


@pytest.fixture
def marketplace(
    db_session: AsyncSession,
    gateway: FakeGateway,
    cipher: AccessKeyCipher,
    redis: AsyncMock,
    settings: Settings,
) -> MarketplaceCoordinator:
    return MarketplaceCoordinator(db_session, gateway, cipher=cipher, redis=redis, settings=settings)


@pytest.fixture
def rewards(
    db_session: AsyncSession,
    gateway: FakeGateway,
    redis: AsyncMock,
    settings: Settings,
) -> RewardDisbursementCoordinator:
    return RewardDisbursementCoordinator(db_session, gateway, redis=redis, settings=settings)


@pytest.fixture
def now() -> datetime:
    """Fixed clock: Sunday 2026-10-18 12:00 UTC (ISO week 42)."""
    return NOW
