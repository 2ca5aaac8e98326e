"""Operator endpoints: forced runs, ledger replay and inspection."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from duka_billing.core.config import settings
from duka_billing.core.database import get_db
from duka_billing.core.dependencies import get_dispatcher
from duka_billing.repositories.audit_log_repository import AuditLogRepository
from duka_billing.repositories.webhook_event_repository import WebhookEventRepository
from duka_billing.schemas.audit_log import AuditLogResponse
from duka_billing.schemas.job import DispatchStats
from duka_billing.schemas.lifecycle import DunningResult, SweepResult
from duka_billing.schemas.subscription import ConsistencyReport
from duka_billing.schemas.webhook_event import ReplayResult, WebhookEventResponse
from duka_billing.services.dispatch_service import Dispatcher, RunInProgressError
from duka_billing.services.dunning_service import DunningService
from duka_billing.services.subscription_service import SubscriptionService
from duka_billing.services.subscription_sweep import SubscriptionSweepService
from duka_billing.services.webhook_ingestion import WebhookIngestionService

router = APIRouter()


@router.post(
    "/sweep",
    response_model=SweepResult,
    summary="Run the subscription sweep now",
    responses={409: {"description": "A sweep is already running"}},
)
async def force_sweep(
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SweepResult:
    dunning = DunningService(db, dispatcher=dispatcher)
    try:
        async with dispatcher.single_flight("sweep", settings.SWEEP_LOCK_TTL_SECONDS):
            return await SubscriptionSweepService(db, dunning=dunning).run()
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.post(
    "/dunning",
    response_model=list[DunningResult],
    summary="Run the dunning notifications now",
    responses={409: {"description": "A dunning run is already in progress"}},
)
async def force_dunning(
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> list[DunningResult]:
    try:
        async with dispatcher.single_flight("dunning", settings.SWEEP_LOCK_TTL_SECONDS):
            return await DunningService(db, dispatcher=dispatcher).process_dunning_notifications()
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.post(
    "/webhook-events/replay",
    response_model=ReplayResult,
    summary="Replay failed webhook events",
)
async def replay_webhook_events(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> ReplayResult:
    return await WebhookIngestionService(db, dispatcher=dispatcher).replay_failed_events(limit=limit)


@router.get(
    "/webhook-events",
    response_model=list[WebhookEventResponse],
    summary="List webhook ledger entries",
)
async def list_webhook_events(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    processed: bool | None = None,
    event_type: str | None = None,
    db: Session = Depends(get_db),
) -> list[WebhookEventResponse]:
    repo = WebhookEventRepository(db)
    return [
        WebhookEventResponse.model_validate(event)
        for event in repo.get_all(skip=skip, limit=limit, processed=processed, event_type=event_type)
    ]


@router.get("/dispatch", response_model=DispatchStats, summary="Job queue status")
async def dispatch_stats(dispatcher: Dispatcher = Depends(get_dispatcher)) -> DispatchStats:
    return await dispatcher.stats()


@router.get(
    "/audit-logs",
    response_model=list[AuditLogResponse],
    summary="List audit logs",
)
async def list_audit_logs(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    shop_id: UUID | None = None,
    action: str | None = None,
    performed_by: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    db: Session = Depends(get_db),
) -> list[AuditLogResponse]:
    """List audit logs with optional filters."""
    repo = AuditLogRepository(db)
    return [
        AuditLogResponse.model_validate(log)
        for log in repo.get_all(
            skip=skip,
            limit=limit,
            shop_id=shop_id,
            action=action,
            performed_by=performed_by,
            start_date=start_date,
            end_date=end_date,
        )
    ]


@router.post(
    "/subscriptions/consistency",
    response_model=ConsistencyReport,
    summary="Audit subscription invariants",
)
async def audit_subscription_consistency(
    dry_run: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> ConsistencyReport:
    return SubscriptionService(db).audit_consistency(dry_run=dry_run)
