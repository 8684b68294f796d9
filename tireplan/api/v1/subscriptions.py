from __future__ import annotations

from fastapi import APIRouter, Depends

from tireplan.api.dependencies import get_current_owner, get_subscription_service
from tireplan.schemas.subscription import CreateSubscriptionRequest
from tireplan.services.subscription_service import SubscriptionService

router = APIRouter()


@router.post("")
async def create_subscription(
    payload: CreateSubscriptionRequest,
    owner_id: str = Depends(get_current_owner),
    service: SubscriptionService = Depends(get_subscription_service),
):
    result = await service.create(
        owner_id,
        plan=payload.plan,
        billing_cycle=payload.billing_cycle,
        billing_key_id=payload.billing_key_id,
    )
    return {"subscriptionId": result.subscription_id, "message": result.message}


@router.post("/cancel")
async def cancel_subscription(
    owner_id: str = Depends(get_current_owner),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return {"message": await service.cancel(owner_id)}


@router.get("/current")
async def current_subscription(
    owner_id: str = Depends(get_current_owner),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.current(owner_id).to_dict()


@router.get("/payments")
async def payment_history(
    owner_id: str = Depends(get_current_owner),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return {"items": [entry.to_dict() for entry in service.payment_history(owner_id)]}


@router.get("/billing-keys")
async def billing_keys(
    owner_id: str = Depends(get_current_owner),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return {"items": [key.to_dict() for key in service.billing_keys(owner_id)]}


@router.get("/features/{feature}")
async def feature_access(
    feature: str,
    owner_id: str = Depends(get_current_owner),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return {"feature": feature, "enabled": service.feature_enabled(owner_id, feature)}
