"""Tests for worker tasks, retry behaviour and cron job registration."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from arq import Retry

from duka_billing.models.shared import utc_now
from duka_billing.models.subscription import SubscriptionStatus
from duka_billing.schemas.job import JobOutcome
from duka_billing.schemas.lifecycle import DunningResult, SweepResult
from duka_billing.schemas.webhook_event import ReplayResult
from duka_billing.services.dispatch_service import (
    DispatchConfig,
    Dispatcher,
    email_job,
    payment_callback_job,
)
from duka_billing.worker import (
    LowPriorityWorkerSettings,
    UrgentWorkerSettings,
    WorkerSettings,
    dunning_notifications_task,
    process_payment_callback_task,
    purge_webhook_events_task,
    replay_webhook_events_task,
    send_email_task,
    startup,
    subscription_sweep_task,
)
from tests.conftest import make_subscription


def _job_data():
    return email_job("owner@example.com", "Hello", "<p>Hello</p>").model_dump(mode="json")


def _executor(outcome):
    executor = MagicMock()
    executor.execute = AsyncMock(return_value=outcome)
    return executor


class TestJobTasks:
    @pytest.mark.asyncio
    async def test_success_returns_outcome(self):
        outcome = JobOutcome(success=True, message_id="<abc@example.com>")
        with patch("duka_billing.worker.JobExecutor", return_value=_executor(outcome)):
            result = await send_email_task({"job_try": 1}, _job_data())

        assert result == {"success": True, "error": None, "message_id": "<abc@example.com>"}

    @pytest.mark.asyncio
    async def test_failure_asks_arq_to_retry_with_backoff(self):
        outcome = JobOutcome(success=False, error="timeout")
        with (
            patch("duka_billing.worker.JobExecutor", return_value=_executor(outcome)),
            pytest.raises(Retry) as exc_info,
        ):
            await send_email_task({"job_try": 2}, _job_data())

        # email jobs back off 5s, doubling per attempt
        assert exc_info.value.defer_score == 10_000

    @pytest.mark.asyncio
    async def test_last_attempt_gives_up(self):
        outcome = JobOutcome(success=False, error="timeout")
        with patch("duka_billing.worker.JobExecutor", return_value=_executor(outcome)):
            result = await send_email_task({"job_try": 3}, _job_data())

        assert result["success"] is False
        assert result["error"] == "timeout"

    @pytest.mark.asyncio
    async def test_payment_callback_keeps_retrying_past_three_attempts(self):
        outcome = JobOutcome(success=False, error="database is locked")
        job_data = payment_callback_job("ws_CO_009", amount_cents=100).model_dump(mode="json")
        with (
            patch("duka_billing.worker.JobExecutor", return_value=_executor(outcome)),
            pytest.raises(Retry) as exc_info,
        ):
            await process_payment_callback_task({"job_try": 4}, job_data)

        assert exc_info.value.defer_score == 16_000


class TestScheduledTasks:
    @pytest.mark.asyncio
    async def test_sweep_task_returns_result(self):
        service = MagicMock()
        service.run = AsyncMock(return_value=SweepResult(processed=2, past_due=1))

        with patch("duka_billing.worker.SubscriptionSweepService", return_value=service):
            result = await subscription_sweep_task({})

        assert result["processed"] == 2
        assert result["past_due"] == 1

    @pytest.mark.asyncio
    async def test_sweep_task_skips_when_locked(self):
        dispatcher = Dispatcher(DispatchConfig())
        with patch("duka_billing.worker.SubscriptionSweepService") as mock_cls:
            async with dispatcher.single_flight("sweep", ttl=60):
                result = await subscription_sweep_task({"dispatcher": dispatcher})

        assert result == {"skipped": True}
        mock_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_sweep_task_against_database(self, db_session, shop, admin, plan):
        sub = make_subscription(
            db_session, shop, plan, current_period_end=utc_now() - timedelta(days=1)
        )

        result = await subscription_sweep_task({})

        assert result["past_due"] == 1
        db_session.refresh(sub)
        assert sub.status == SubscriptionStatus.PAST_DUE.value

    @pytest.mark.asyncio
    async def test_dunning_task_counts_sent_notices(self):
        service = MagicMock()
        service.process_dunning_notifications = AsyncMock(
            return_value=[
                DunningResult(shop_id="a", action="expiry_warning_7d", success=True),
                DunningResult(shop_id="b", action="expiry_warning_7d", success=False, error="x"),
            ]
        )

        with patch("duka_billing.worker.DunningService", return_value=service):
            assert await dunning_notifications_task({}) == 1

    @pytest.mark.asyncio
    async def test_replay_task_returns_succeeded(self):
        service = MagicMock()
        service.replay_failed_events = AsyncMock(return_value=ReplayResult(attempted=3, succeeded=2))

        with patch("duka_billing.worker.WebhookIngestionService", return_value=service):
            assert await replay_webhook_events_task({}) == 2

    @pytest.mark.asyncio
    async def test_purge_task_closes_session_on_error(self):
        service = MagicMock()
        service.purge_expired_events.side_effect = RuntimeError("DB error")

        with (
            patch("duka_billing.worker.WebhookIngestionService", return_value=service),
            pytest.raises(RuntimeError, match="DB error"),
        ):
            await purge_webhook_events_task({})

    @pytest.mark.asyncio
    async def test_startup_wraps_worker_pool(self):
        pool = MagicMock()
        ctx = {"redis": pool}

        await startup(ctx)

        assert ctx["dispatcher"].available is True


class TestWorkerSettings:
    def test_cron_jobs_registered(self):
        scheduled = {job.coroutine.__name__ for job in WorkerSettings.cron_jobs}

        assert scheduled == {
            "subscription_sweep_task",
            "dunning_notifications_task",
            "replay_webhook_events_task",
            "purge_webhook_events_task",
        }

    def test_sweep_runs_daily_after_midnight(self):
        sweep = next(
            job for job in WorkerSettings.cron_jobs if job.coroutine.__name__ == "subscription_sweep_task"
        )
        assert sweep.hour == {0}
        assert sweep.minute == {5}

    def test_priority_workers_consume_their_queue_only(self):
        assert UrgentWorkerSettings.queue_name == "duka:queue:urgent"
        assert LowPriorityWorkerSettings.queue_name == "duka:queue:low"
        assert UrgentWorkerSettings.cron_jobs == []
        assert "send_email_task" in {f.__name__ for f in UrgentWorkerSettings.functions}
        assert "process_payment_callback_task" in {f.__name__ for f in UrgentWorkerSettings.functions}
