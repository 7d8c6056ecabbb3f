"""ARQ worker — reconciliation, webhook replay and retention crons."""

import logging

from arq import cron
from arq.connections import RedisSettings

from billing.config import get_settings
from billing.constants import ARQ_JOB_TIMEOUT, ARQ_MAX_JOBS
from billing.utils import setup_logging

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    setup_logging(get_settings().debug)


async def reconciliation_tick(ctx: dict) -> None:
    """Cron job: every hour, reconcile subscriptions with the gateway."""
    from billing.scheduler_tasks import run_reconciliation

    report = await run_reconciliation()
    if report["skipped"]:
        logger.info("Reconciliation tick skipped, lease held by another worker")


async def webhook_replay_tick(ctx: dict) -> None:
    """Cron job: retry webhook events that could not be applied on arrival."""
    from billing.services.subscription_service import policy_from_settings
    from billing.services.webhook_service import replay_unresolved_events

    await replay_unresolved_events(policy_from_settings(get_settings()))


async def webhook_cleanup_tick(ctx: dict) -> None:
    """Cron job: daily, drop settled webhook events past the retention window."""
    from billing.services.webhook_service import cleanup_webhook_events

    await cleanup_webhook_events()


class WorkerSettings:
    """ARQ worker configuration."""

    functions = []
    cron_jobs = [
        cron(reconciliation_tick, minute=0),  # Every hour at :00
        cron(webhook_replay_tick, minute={5, 20, 35, 50}),
        cron(webhook_cleanup_tick, hour=2, minute=0),  # Daily at 02:00
    ]
    on_startup = startup

    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)

    max_jobs = ARQ_MAX_JOBS
    job_timeout = ARQ_JOB_TIMEOUT
