from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Plain strings so unknown values reach the service and map to invalid-argument.
    plan: str
    billing_cycle: str = Field(alias="billingCycle")
    billing_key_id: Optional[str] = Field(default=None, alias="billingKeyId")
