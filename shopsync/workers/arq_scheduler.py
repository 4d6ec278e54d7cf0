"""ARQ scheduler - cron jobs only.

WHAT:
    A separate ARQ worker process whose only job is firing the daily
    reconciliation at RECONCILE_HOUR:00 in RECONCILE_TIMEZONE
    (02:00 Asia/Kolkata by default).

WHY:
    - Exactly one scheduler runs; job workers scale independently
    - `unique=True` keeps a slow run from overlapping the next one
    - The scheduler listens on its own queue so it never picks up order jobs

USAGE:
    arq shopsync.workers.arq_scheduler.SchedulerSettings

    # Or
    python -m shopsync.workers.start_arq_worker --scheduler
"""

from __future__ import annotations

import logging
from typing import Dict
from zoneinfo import ZoneInfo

from arq import cron

from shopsync.deps import get_settings
from shopsync.telemetry import init_observability
from shopsync.workers.arq_enqueue import get_redis_settings
from shopsync.workers.arq_worker import scheduled_daily_reconciliation

logger = logging.getLogger(__name__)

_settings = get_settings()


async def scheduler_startup(ctx: Dict) -> None:
    init_observability()
    logger.info(
        "[SCHEDULER] Daily reconciliation at %02d:00 %s",
        _settings.RECONCILE_HOUR, _settings.RECONCILE_TIMEZONE,
    )


class SchedulerSettings:
    """ARQ settings for the cron-only scheduler process."""

    functions = []

    cron_jobs = [
        cron(
            scheduled_daily_reconciliation,
            hour={_settings.RECONCILE_HOUR},
            minute={0},
            second={0},
            unique=True,
            timeout=3600,
        ),
    ]

    on_startup = scheduler_startup

    # Cron times are interpreted in this zone
    timezone = ZoneInfo(_settings.RECONCILE_TIMEZONE)

    redis_settings = get_redis_settings()
    queue_name = f"{_settings.ARQ_QUEUE_NAME}:scheduler"
    keep_result = 86400
