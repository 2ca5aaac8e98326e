"""Subscription API endpoints."""

from typing import NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from duka_billing.core.database import get_db
from duka_billing.core.dependencies import get_dispatcher
from duka_billing.schemas.subscription import (
    SubscriptionCancel,
    SubscriptionReactivate,
    SubscriptionResponse,
)
from duka_billing.services.dispatch_service import Dispatcher
from duka_billing.services.dunning_service import DunningService
from duka_billing.services.subscription_service import SubscriptionService

router = APIRouter()


def _raise_for(error: ValueError) -> NoReturn:
    detail = str(error)
    if "not found" in detail.lower():
        raise HTTPException(status_code=404, detail=detail) from None
    raise HTTPException(status_code=400, detail=detail) from None


@router.get(
    "/{shop_id}",
    response_model=SubscriptionResponse,
    summary="Get a shop's subscription",
    responses={404: {"description": "Subscription not found"}},
)
async def get_subscription(shop_id: UUID, db: Session = Depends(get_db)) -> SubscriptionResponse:
    try:
        subscription = SubscriptionService(db).get_for_shop(shop_id)
    except ValueError as e:
        _raise_for(e)
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{shop_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel a shop's subscription",
    responses={
        400: {"description": "Subscription already cancelled"},
        404: {"description": "Subscription not found"},
    },
)
async def cancel_subscription(
    shop_id: UUID,
    data: SubscriptionCancel,
    db: Session = Depends(get_db),
) -> SubscriptionResponse:
    try:
        subscription = SubscriptionService(db).cancel(shop_id, data)
    except ValueError as e:
        _raise_for(e)
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{shop_id}/reactivate",
    response_model=SubscriptionResponse,
    summary="Reactivate a lapsed or cancelled subscription",
    responses={
        400: {"description": "Subscription cannot be reactivated"},
        404: {"description": "Subscription not found"},
    },
)
async def reactivate_subscription(
    shop_id: UUID,
    data: SubscriptionReactivate | None = None,
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SubscriptionResponse:
    performed_by = data.performed_by if data else "admin"
    service = SubscriptionService(db, dunning=DunningService(db, dispatcher=dispatcher))
    try:
        subscription, _ = await service.reactivate(shop_id, performed_by=performed_by)
    except ValueError as e:
        _raise_for(e)
    return SubscriptionResponse.model_validate(subscription)
