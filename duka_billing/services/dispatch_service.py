"""Dispatch layer: hands jobs to the arq broker, or reports that it cannot.

Broker availability is decided once per process by ``Dispatcher.start``.
Callers treat ``submit`` returning ``None`` as "run the job inline now" and use
``JobExecutor`` for that, so the side effect happens either way.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import in_progress_key_prefix, job_key_prefix, result_key_prefix
from redis.exceptions import RedisError

from duka_billing.core.config import Settings, settings
from duka_billing.schemas.job import (
    AlertJobData,
    DispatchStats,
    EmailJobData,
    Job,
    JobKind,
    JobPriority,
    MessageJobData,
    NotificationJobData,
    PaymentCallbackJobData,
    ReportJobData,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# arq function name registered by the worker for each job kind
TASK_NAMES: dict[JobKind, str] = {
    JobKind.EMAIL: "send_email_task",
    JobKind.NOTIFICATION: "create_notification_task",
    JobKind.MESSAGE: "send_message_task",
    JobKind.ALERT: "process_alert_task",
    JobKind.REPORT: "generate_report_task",
    JobKind.PAYMENT_CALLBACK: "process_payment_callback_task",
}

LOCK_KEY_PREFIX = "duka:lock:"

_RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RunInProgressError(RuntimeError):
    """Raised by ``single_flight`` when another run holds the named lock."""

    def __init__(self, name: str):
        super().__init__(f"A '{name}' run is already in progress")
        self.name = name


@dataclass(frozen=True)
class DispatchConfig:
    redis_url: str = ""
    probe_timeout: float = 3.0
    result_ttl: int = 3600
    queues: dict[JobPriority, str] = field(
        default_factory=lambda: {
            JobPriority.URGENT: "duka:queue:urgent",
            JobPriority.NORMAL: "duka:queue:normal",
            JobPriority.LOW: "duka:queue:low",
        }
    )

    @classmethod
    def from_settings(cls, s: Settings = settings) -> DispatchConfig:
        return cls(
            redis_url=s.REDIS_URL,
            probe_timeout=s.DISPATCH_PROBE_TIMEOUT_SECONDS,
            result_ttl=s.DISPATCH_JOB_RESULT_TTL_SECONDS,
            queues={
                JobPriority.URGENT: s.QUEUE_URGENT,
                JobPriority.NORMAL: s.QUEUE_NORMAL,
                JobPriority.LOW: s.QUEUE_LOW,
            },
        )

    def redis_settings(self) -> RedisSettings:
        """Broker settings with no connection retries, bounded by the probe timeout."""
        redis_settings = RedisSettings.from_dsn(self.redis_url)
        redis_settings.conn_retries = 0
        redis_settings.conn_timeout = max(1, int(self.probe_timeout))
        return redis_settings


PoolFactory = Callable[..., Awaitable[ArqRedis]]


class Dispatcher:
    def __init__(self, config: DispatchConfig, pool_factory: PoolFactory = create_pool):
        self.config = config
        self._pool_factory = pool_factory
        self._pool: ArqRedis | None = None
        self._local_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_pool(cls, config: DispatchConfig, pool: ArqRedis) -> Dispatcher:
        """Wrap an already connected pool, e.g. the one an arq worker owns."""
        dispatcher = cls(config)
        dispatcher._pool = pool
        return dispatcher

    @property
    def available(self) -> bool:
        return self._pool is not None

    async def start(self) -> bool:
        """Probe the broker once; the answer holds for the process lifetime."""
        if self._pool is not None:
            return True
        if not self.config.redis_url:
            logger.info("REDIS_URL not configured, jobs will run inline")
            return False

        pool: ArqRedis | None = None
        try:
            pool = await asyncio.wait_for(
                self._pool_factory(
                    self.config.redis_settings(),
                    default_queue_name=self.config.queues[JobPriority.NORMAL],
                ),
                timeout=self.config.probe_timeout,
            )
            await asyncio.wait_for(pool.ping(), timeout=self.config.probe_timeout)
        except (RedisError, OSError, TimeoutError) as exc:
            logger.warning("Job broker unavailable, jobs will run inline: %s", exc)
            if pool is not None:
                await pool.aclose()
            return False

        self._pool = pool
        logger.info("Job broker connected, dispatching to arq queues")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    def queue_for(self, priority: JobPriority) -> str:
        return self.config.queues[priority]

    async def submit(self, job: Job) -> str | None:
        """Enqueue ``job`` and return its id.

        Returns None when the broker is unavailable or enqueueing fails; the
        caller is then expected to execute the job inline.
        """
        if self._pool is None:
            return None

        queue_name = self.queue_for(job.priority)
        try:
            if job.dedupe_key:
                if await self._pool.exists(in_progress_key_prefix + job.dedupe_key):
                    logger.info("Job %s already running, not replaced", job.dedupe_key)
                    return job.dedupe_key
                await self._discard_queued(job.dedupe_key)

            arq_job = await self._pool.enqueue_job(
                TASK_NAMES[job.kind],
                job.model_dump(mode="json"),
                _job_id=job.dedupe_key,
                _queue_name=queue_name,
            )
        except (RedisError, OSError, TimeoutError):
            logger.exception("Failed to enqueue %s job", job.kind.value)
            return None

        if arq_job is None:
            # Lost a race with another producer using the same dedupe key
            return job.dedupe_key
        logger.info("Queued %s job %s on %s", job.kind.value, arq_job.job_id, queue_name)
        return arq_job.job_id

    async def _discard_queued(self, job_id: str) -> None:
        """Drop a queued (not running) job so a newer one can take its id."""
        if self._pool is None:
            return
        async with self._pool.pipeline(transaction=True) as pipe:
            pipe.delete(job_key_prefix + job_id, result_key_prefix + job_id)
            for queue_name in self.config.queues.values():
                pipe.zrem(queue_name, job_id)
            await pipe.execute()

    async def stats(self) -> DispatchStats:
        if self._pool is None:
            return DispatchStats(available=False)
        queues: dict[str, int] = {}
        for priority, queue_name in self.config.queues.items():
            queues[priority.value] = await self._pool.zcard(queue_name)
        return DispatchStats(available=True, queues=queues)

    @asynccontextmanager
    async def single_flight(self, name: str, ttl: int) -> AsyncIterator[None]:
        """Hold the named lock for the duration of the block.

        Uses a Redis key with a TTL when the broker is available so that one
        run is active across processes; otherwise a process-local lock.

        Raises:
            RunInProgressError: If the lock is already held.
        """
        if self._pool is None:
            lock = self._local_locks.setdefault(name, asyncio.Lock())
            if lock.locked():
                raise RunInProgressError(name)
            async with lock:
                yield
            return

        key = LOCK_KEY_PREFIX + name
        token = uuid.uuid4().hex
        acquired = await self._pool.set(key, token, nx=True, ex=ttl)
        if not acquired:
            raise RunInProgressError(name)
        try:
            yield
        finally:
            await self._pool.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)


# ===== Job factories =====


def email_job(
    to: str,
    subject: str,
    html: str,
    *,
    shop_id: Any = None,
    priority: JobPriority = JobPriority.NORMAL,
) -> Job:
    data = EmailJobData(
        to=to, subject=subject, html=html, shop_id=str(shop_id) if shop_id else None
    )
    return Job(
        kind=JobKind.EMAIL,
        payload=data.model_dump(),
        priority=priority,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=5),
    )


def notification_job(
    shop_id: Any,
    title: str,
    message: str,
    *,
    user_id: Any = None,
    category: str = "subscription",
    data: dict[str, Any] | None = None,
    priority: JobPriority = JobPriority.NORMAL,
) -> Job:
    payload = NotificationJobData(
        shop_id=str(shop_id),
        user_id=str(user_id) if user_id else None,
        category=category,
        title=title,
        message=message,
        data=data,
    )
    return Job(
        kind=JobKind.NOTIFICATION,
        payload=payload.model_dump(),
        priority=priority,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=2),
    )


def message_job(to: str, text: str, *, channel: str = "sms", shop_id: Any = None) -> Job:
    data = MessageJobData(
        to=to, text=text, channel=channel, shop_id=str(shop_id) if shop_id else None
    )
    return Job(
        kind=JobKind.MESSAGE,
        payload=data.model_dump(),
        priority=JobPriority.URGENT,
        retry=RetryPolicy(max_attempts=3, backoff_seconds=5),
    )


def alert_job(
    shop_id: Any,
    product_id: str,
    product_name: str,
    *,
    alert_type: str = "low_stock",
    current_stock: int = 0,
    reorder_level: int = 0,
) -> Job:
    """Stock alert job; at most one per (shop, product) waits in the queue."""
    data = AlertJobData(
        shop_id=str(shop_id),
        product_id=product_id,
        product_name=product_name,
        alert_type=alert_type,
        current_stock=current_stock,
        reorder_level=reorder_level,
    )
    priority = JobPriority.URGENT if alert_type == "out_of_stock" else JobPriority.NORMAL
    return Job(
        kind=JobKind.ALERT,
        payload=data.model_dump(),
        priority=priority,
        dedupe_key=f"alert:{shop_id}:{product_id}",
        retry=RetryPolicy(max_attempts=3, backoff_seconds=2),
    )


def report_job(
    shop_id: Any,
    report_type: str,
    start: str,
    end: str,
    *,
    email: str | None = None,
    requested_by: str = "system",
) -> Job:
    data = ReportJobData(
        shop_id=str(shop_id),
        report_type=report_type,
        start=start,
        end=end,
        email=email,
        requested_by=requested_by,
    )
    return Job(
        kind=JobKind.REPORT,
        payload=data.model_dump(),
        priority=JobPriority.LOW,
        retry=RetryPolicy(max_attempts=2, backoff_seconds=30, backoff="fixed"),
    )


def payment_callback_job(
    provider_payment_id: str,
    *,
    shop_id: Any = None,
    amount_cents: int = 0,
    currency: str = "KES",
    result_code: int = 0,
    result_desc: str | None = None,
    receipt_number: str | None = None,
    paid_at: str | None = None,
    provider: str = "mpesa",
) -> Job:
    """Payment result callback; jumps the queue and is retried hardest."""
    data = PaymentCallbackJobData(
        provider=provider,
        provider_payment_id=provider_payment_id,
        shop_id=str(shop_id) if shop_id else None,
        amount_cents=amount_cents,
        currency=currency,
        result_code=result_code,
        result_desc=result_desc,
        receipt_number=receipt_number,
        paid_at=paid_at,
    )
    return Job(
        kind=JobKind.PAYMENT_CALLBACK,
        payload=data.model_dump(),
        priority=JobPriority.URGENT,
        dedupe_key=f"payment:{provider}:{provider_payment_id}",
        retry=RetryPolicy(max_attempts=5, backoff_seconds=2),
    )
