"""
SQLAlchemy models for subscription billing.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, Integer, Text, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionPlan(str, enum.Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELED = "CANCELED"
    SUSPENDED = "SUSPENDED"


class PaymentStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


# Statuses that occupy the owner's single current-subscription slot.
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.INACTIVE)


def _enum_column(enum_cls: type[enum.Enum], **kwargs) -> Column:
    return Column(
        Enum(enum_cls, native_enum=False, validate_strings=True, length=16),
        **kwargs,
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Text, primary_key=True, default=new_id)
    owner_id = Column(Text, nullable=False, index=True)
    plan = _enum_column(SubscriptionPlan, nullable=False)
    billing_cycle = _enum_column(BillingCycle, nullable=False)
    status = _enum_column(SubscriptionStatus, nullable=False, default=SubscriptionStatus.ACTIVE)
    billing_key_id = Column(Text, nullable=False, default="")
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    next_billing_date = Column(DateTime, nullable=False, index=True)
    canceled_at = Column(DateTime)
    # Order id of a plan-selection charge still in flight; cleared once it settles.
    pending_order_id = Column(Text)
    pending_since = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_subscriptions_owner_current",
            "owner_id",
            unique=True,
            postgresql_where=text("status IN ('ACTIVE', 'INACTIVE')"),
            sqlite_where=text("status IN ('ACTIVE', 'INACTIVE')"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "plan": self.plan.value,
            "billingCycle": self.billing_cycle.value,
            "status": self.status.value,
            "billingKeyId": self.billing_key_id,
            "currentPeriodStart": self.current_period_start.isoformat(),
            "currentPeriodEnd": self.current_period_end.isoformat(),
            "nextBillingDate": self.next_billing_date.isoformat(),
            "canceledAt": self.canceled_at.isoformat() if self.canceled_at else None,
            "paymentPending": self.pending_order_id is not None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class BillingKey(Base):
    __tablename__ = "billing_keys"

    id = Column(Text, primary_key=True, default=new_id)
    owner_id = Column(Text, nullable=False, index=True)
    customer_key = Column(Text, nullable=False)
    card_number = Column(Text)
    card_company = Column(Text)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "cardNumber": self.card_number,
            "cardCompany": self.card_company,
            "isDefault": self.is_default,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


class PaymentHistory(Base):
    __tablename__ = "payment_history"

    id = Column(Text, primary_key=True, default=new_id)
    owner_id = Column(Text, nullable=False, index=True)
    subscription_id = Column(Text, nullable=False, index=True)
    billing_key_id = Column(Text, nullable=False)
    order_id = Column(Text, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)
    billing_cycle = _enum_column(BillingCycle, nullable=False)
    status = _enum_column(PaymentStatus, nullable=False)
    failure_reason = Column(Text)
    paid_at = Column(DateTime, nullable=False)
    next_retry_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "subscriptionId": self.subscription_id,
            "billingKeyId": self.billing_key_id,
            "orderId": self.order_id,
            "amount": self.amount,
            "billingCycle": self.billing_cycle.value,
            "status": self.status.value,
            "failureReason": self.failure_reason,
            "paidAt": self.paid_at.isoformat(),
            "nextRetryAt": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
