"""Settlement reconciliation arq worker.

Periodic tasks: refresh submitted settlements, retry unresolved ones and
snapshot on-chain balances. Each task opens its own session.
"""

from __future__ import annotations

import structlog
from arq import cron
from sqlalchemy.ext.asyncio import AsyncSession

from bodydfi.config import get_settings
from bodydfi.database import close_db, get_session, init_db
from bodydfi.log_setup import setup_logging
from bodydfi.settlement.gateway import SettlementGateway, build_gateway
from bodydfi.settlement.reconciler import refresh_submitted, retry_unresolved, verify_balances

logger = structlog.get_logger()


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


async def reconcile_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB and settlement gateway on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["gateway"] = build_gateway(settings)
    logger.info("reconcile_worker_started", settlement_enabled=settings.settlement_enabled)


async def reconcile_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    gateway: SettlementGateway | None = ctx.get("gateway")
    if gateway is not None:
        await gateway.aclose()
    await close_db()
    logger.info("reconcile_worker_stopped")


async def refresh_settlements(ctx: dict) -> None:  # type: ignore[type-arg]
    """Periodic task: pull confirmations for submitted settlements."""
    settings = get_settings()
    db = await _get_db_session()
    try:
        await refresh_submitted(db, ctx["gateway"], batch_size=settings.reconcile_batch_size)
    except Exception:
        logger.exception("settlement_refresh_failed")
        await db.rollback()
    finally:
        await db.close()


async def retry_settlements(ctx: dict) -> None:  # type: ignore[type-arg]
    """Periodic task: resubmit unresolved settlements."""
    settings = get_settings()
    db = await _get_db_session()
    try:
        await retry_unresolved(
            db,
            ctx["gateway"],
            max_attempts=settings.settlement_max_attempts,
            timeout=settings.settlement_timeout_seconds,
            batch_size=settings.reconcile_batch_size,
        )
    except Exception:
        logger.exception("settlement_retry_failed")
        await db.rollback()
    finally:
        await db.close()


async def verify_wallet_balances(ctx: dict) -> None:  # type: ignore[type-arg]
    """Nightly task: snapshot settlement-layer balances."""
    settings = get_settings()
    db = await _get_db_session()
    try:
        verified = await verify_balances(db, ctx["gateway"], batch_size=settings.reconcile_batch_size)
        logger.info("balance_verification_complete", verified=verified)
    except Exception:
        logger.exception("balance_verification_failed")
        await db.rollback()
    finally:
        await db.close()


class ReconcileWorkerSettings:
    """arq worker settings for settlement reconciliation."""

    functions = [refresh_settlements, retry_settlements, verify_wallet_balances]
    cron_jobs = [
        cron(refresh_settlements, second={0}),
        cron(retry_settlements, minute=set(range(0, 60, 5)), second={30}),
        cron(verify_wallet_balances, hour={3}, minute={15}),
    ]
    on_startup = reconcile_startup
    on_shutdown = reconcile_shutdown
    max_jobs = 4
    job_timeout = 300
