"""Tests for the settlement reconciliation worker."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from bodydfi.workers import reconcile_worker
from bodydfi.workers.reconcile_worker import (
    ReconcileWorkerSettings,
    refresh_settlements,
    retry_settlements,
    verify_wallet_balances,
)
from bodydfi.workers.settings import WorkerSettings


class TestWorkerSettings:
    """arq wiring."""

    def test_functions_registered(self) -> None:
        names = {fn.__name__ for fn in ReconcileWorkerSettings.functions}
        assert names == {"refresh_settlements", "retry_settlements", "verify_wallet_balances"}

    def test_cron_jobs(self) -> None:
        assert len(ReconcileWorkerSettings.cron_jobs) == 3

    def test_lifecycle_hooks(self) -> None:
        assert ReconcileWorkerSettings.on_startup is reconcile_worker.reconcile_startup
        assert ReconcileWorkerSettings.on_shutdown is reconcile_worker.reconcile_shutdown

    def test_entrypoint_has_redis_settings(self) -> None:
        assert issubclass(WorkerSettings, ReconcileWorkerSettings)
        assert WorkerSettings.redis_settings is not None


class TestTaskErrorHandling:
    """A failing reconciliation pass is logged and rolled back, never raised."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "task,target",
        [
            (refresh_settlements, "refresh_submitted"),
            (retry_settlements, "retry_unresolved"),
            (verify_wallet_balances, "verify_balances"),
        ],
    )
    async def test_failure_rolls_back(self, task, target) -> None:
        session = AsyncMock()
        with (
            patch.object(reconcile_worker, "_get_db_session", AsyncMock(return_value=session)),
            patch.object(reconcile_worker, target, AsyncMock(side_effect=RuntimeError("boom"))),
        ):
            await task({"gateway": object()})

        session.rollback.assert_awaited_once()
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_success_closes_session(self) -> None:
        session = AsyncMock()
        gateway = object()
        with (
            patch.object(reconcile_worker, "_get_db_session", AsyncMock(return_value=session)),
            patch.object(reconcile_worker, "refresh_submitted", AsyncMock()) as refresh,
        ):
            await refresh_settlements({"gateway": gateway})

        refresh.assert_awaited_once()
        assert refresh.await_args.args[1] is gateway
        session.rollback.assert_not_awaited()
        session.close.assert_awaited_once()
