"""Inbound payment provider webhooks."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from duka_billing.core.config import settings
from duka_billing.core.database import get_db
from duka_billing.core.dependencies import get_dispatcher
from duka_billing.services.dispatch_service import Dispatcher
from duka_billing.services.webhook_ingestion import WebhookIngestionService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _receive(
    request: Request,
    stripe_signature: str | None,
    signature: str | None,
    db: Session,
    dispatcher: Dispatcher,
) -> dict[str, Any]:
    if not settings.stripe_enabled:
        raise HTTPException(status_code=503, detail="Stripe webhooks are not configured")

    raw_body = await request.body()
    service = WebhookIngestionService(db, dispatcher=dispatcher)
    result = await service.ingest(raw_body, stripe_signature or signature)
    logger.debug("Webhook delivery %s: %s", result.event_id, result.status)
    # Acknowledge every delivery; failures stay in the ledger for replay
    return {"received": True}


@router.post(
    "/webhook",
    summary="Receive a Stripe webhook",
    responses={503: {"description": "Stripe webhook secret not configured"}},
)
async def receive_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    signature: str | None = Header(None),
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    return await _receive(request, stripe_signature, signature, db, dispatcher)


@router.post(
    "/v1/webhooks/stripe",
    summary="Receive a Stripe webhook",
    responses={503: {"description": "Stripe webhook secret not configured"}},
)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    signature: str | None = Header(None),
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    return await _receive(request, stripe_signature, signature, db, dispatcher)
