"""arq worker: dispatch job tasks plus the scheduled lifecycle runs.

One worker process consumes one priority queue::

    arq duka_billing.worker.WorkerSettings              # normal queue + cron
    arq duka_billing.worker.UrgentWorkerSettings
    arq duka_billing.worker.LowPriorityWorkerSettings
"""

import logging
from typing import Any

from arq import Retry, cron
from arq.connections import RedisSettings

from duka_billing.core import database
from duka_billing.core.config import settings
from duka_billing.core.logging_config import configure_logging
from duka_billing.schemas.job import Job
from duka_billing.services.dispatch_service import (
    DispatchConfig,
    Dispatcher,
    RunInProgressError,
)
from duka_billing.services.dunning_service import DunningService
from duka_billing.services.job_executor import JobExecutor
from duka_billing.services.subscription_sweep import SubscriptionSweepService
from duka_billing.services.webhook_ingestion import WebhookIngestionService

logger = logging.getLogger(__name__)

redis_settings = RedisSettings.from_dsn(settings.REDIS_URL or "redis://localhost:6379")


def _dispatcher(ctx: dict[str, Any]) -> Dispatcher:
    dispatcher = ctx.get("dispatcher")
    if dispatcher is None:
        # Not started by arq (e.g. called directly): jobs run inline
        dispatcher = Dispatcher(DispatchConfig.from_settings())
    return dispatcher


async def startup(ctx: dict[str, Any]) -> None:
    configure_logging()
    ctx["dispatcher"] = Dispatcher.from_pool(DispatchConfig.from_settings(), ctx["redis"])


# ===== Dispatch job tasks =====


async def _run_job(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    """Execute one job, asking arq to retry with backoff until attempts run out."""
    job = Job.model_validate(job_data)
    outcome = await JobExecutor().execute(job)
    if outcome.success:
        return outcome.model_dump()

    attempt = int(ctx.get("job_try") or 1)
    if attempt < job.retry.max_attempts:
        delay = job.retry.delay_for(attempt)
        logger.warning(
            "%s job failed (attempt %d/%d), retrying in %.0fs: %s",
            job.kind.value,
            attempt,
            job.retry.max_attempts,
            delay,
            outcome.error,
        )
        raise Retry(defer=delay)

    logger.error(
        "%s job failed after %d attempts: %s", job.kind.value, attempt, outcome.error
    )
    return outcome.model_dump()


async def send_email_task(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    return await _run_job(ctx, job_data)


async def create_notification_task(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    return await _run_job(ctx, job_data)


async def send_message_task(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    return await _run_job(ctx, job_data)


async def process_alert_task(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    return await _run_job(ctx, job_data)


async def generate_report_task(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    return await _run_job(ctx, job_data)


async def process_payment_callback_task(ctx: dict[str, Any], job_data: dict[str, Any]) -> dict[str, Any]:
    return await _run_job(ctx, job_data)


# ===== Scheduled runs =====


async def subscription_sweep_task(ctx: dict[str, Any]) -> dict[str, Any]:
    """Background task: transition lapsed subscriptions and send their notices.

    Runs daily. Skips when another sweep holds the lock.
    """
    dispatcher = _dispatcher(ctx)
    db = database.SessionLocal()
    try:
        async with dispatcher.single_flight("sweep", settings.SWEEP_LOCK_TTL_SECONDS):
            dunning = DunningService(db, dispatcher=dispatcher)
            result = await SubscriptionSweepService(db, dunning=dunning).run()
        return result.model_dump()
    except RunInProgressError:
        logger.info("Sweep already running, skipping scheduled run")
        return {"skipped": True}
    finally:
        db.close()


async def dunning_notifications_task(ctx: dict[str, Any]) -> int:
    """Background task: expiry warnings, grace reminders and pending notices.

    Runs daily. Returns the number of notices sent.
    """
    dispatcher = _dispatcher(ctx)
    db = database.SessionLocal()
    try:
        async with dispatcher.single_flight("dunning", settings.SWEEP_LOCK_TTL_SECONDS):
            results = await DunningService(db, dispatcher=dispatcher).process_dunning_notifications()
        return sum(1 for r in results if r.success)
    except RunInProgressError:
        logger.info("Dunning already running, skipping scheduled run")
        return 0
    finally:
        db.close()


async def replay_webhook_events_task(ctx: dict[str, Any]) -> int:
    """Background task: re-run failed webhook events. Runs every 15 minutes."""
    db = database.SessionLocal()
    try:
        service = WebhookIngestionService(db, dispatcher=_dispatcher(ctx))
        result = await service.replay_failed_events()
        return result.succeeded
    finally:
        db.close()


async def purge_webhook_events_task(ctx: dict[str, Any]) -> int:
    """Background task: delete processed ledger rows past retention. Runs daily."""
    db = database.SessionLocal()
    try:
        return WebhookIngestionService(db, dispatcher=_dispatcher(ctx)).purge_expired_events()
    finally:
        db.close()


JOB_FUNCTIONS = [
    send_email_task,
    create_notification_task,
    send_message_task,
    process_alert_task,
    generate_report_task,
    process_payment_callback_task,
]


class WorkerSettings:
    functions = [
        *JOB_FUNCTIONS,
        subscription_sweep_task,
        dunning_notifications_task,
        replay_webhook_events_task,
        purge_webhook_events_task,
    ]
    cron_jobs = [
        cron(subscription_sweep_task, hour={0}, minute={5}),  # daily 00:05
        cron(dunning_notifications_task, hour={9}, minute={0}),  # daily 09:00
        cron(replay_webhook_events_task, minute={0, 15, 30, 45}),  # every 15 minutes
        cron(purge_webhook_events_task, hour={3}, minute={0}),  # daily 03:00
    ]
    queue_name = settings.QUEUE_NORMAL
    redis_settings = redis_settings
    on_startup = startup
    # Upper bound only; each job's retry policy decides when to stop
    max_tries = 10
    keep_result = settings.DISPATCH_JOB_RESULT_TTL_SECONDS


class UrgentWorkerSettings(WorkerSettings):
    functions = JOB_FUNCTIONS
    cron_jobs: list[Any] = []
    queue_name = settings.QUEUE_URGENT


class LowPriorityWorkerSettings(WorkerSettings):
    functions = JOB_FUNCTIONS
    cron_jobs: list[Any] = []
    queue_name = settings.QUEUE_LOW
