"""arq worker settings module.

Import path for arq CLI: arq bodydfi.workers.settings.WorkerSettings
"""

from __future__ import annotations

from arq.connections import RedisSettings

from bodydfi.config import get_settings
from bodydfi.workers.reconcile_worker import ReconcileWorkerSettings


class WorkerSettings(ReconcileWorkerSettings):
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)


__all__ = ["WorkerSettings"]
