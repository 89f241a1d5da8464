"""Identity directory lookups used by the ledger and coordinators."""

from __future__ import annotations

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.db.models import User
from bodydfi.errors import PlatformAccountMissing, UnknownUser

PLATFORM_ROLE = "platform"
ADMIN_ROLE = "admin"


async def get_user(db: AsyncSession, user_id: int) -> User | None:
    """Fetch a user by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def require_user(db: AsyncSession, user_id: int) -> User:
    """Fetch an active user or reject with UnknownUser."""
    user = await get_user(db, user_id)
    if user is None or not user.is_active:
        raise UnknownUser(f"User {user_id} does not exist", user_id=user_id)
    return user


async def require_platform_account(db: AsyncSession, account_id: int) -> User:
    """Fetch the system account that collects platform fees.

    The account is provisioned out of band by ``ensure_platform_account``.
    A missing row or a regular user at the configured id is rejected.
    """
    user = await get_user(db, account_id)
    if user is None:
        raise PlatformAccountMissing(f"Platform account {account_id} does not exist", account_id)
    if user.role != PLATFORM_ROLE:
        raise PlatformAccountMissing(
            f"User {account_id} is not a platform account (role={user.role})", account_id
        )
    return user


async def ensure_platform_account(db: AsyncSession, account_id: int) -> User:
    """Provision the platform account at a fixed id.

    On PostgreSQL the ``users.id`` sequence is moved past the explicit id so
    the next regular signup does not collide with it.
    """
    user = await get_user(db, account_id)
    if user is not None:
        if user.role != PLATFORM_ROLE:
            raise PlatformAccountMissing(
                f"User {account_id} already exists and is not a platform account", account_id
            )
        return user

    user = User(id=account_id, username="platform", role=PLATFORM_ROLE)
    db.add(user)
    await db.flush()
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        await db.execute(
            text("SELECT setval(pg_get_serial_sequence('users', 'id'), (SELECT MAX(id) FROM users))")
        )
    return user
