"""Shared API dependencies."""
from __future__ import annotations

from fastapi import Request

from tireplan.core.security import get_current_owner
from tireplan.services.subscription_service import SubscriptionService


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.billing.service


__all__ = ["get_current_owner", "get_subscription_service"]
