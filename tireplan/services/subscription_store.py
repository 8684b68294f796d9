"""
Read/write access to subscriptions, billing keys and payment history.

One store instance is built at startup and shared by the scheduler, the
billing worker and the subscription service. Every public method runs in
its own session; ``batch`` gives callers an all-or-nothing transaction.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from tireplan.core.exceptions import FailedPreconditionError
from tireplan.models import (
    CURRENT_STATUSES,
    BillingKey,
    PaymentHistory,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

# Subscription fields copied when snapshotting for rollback.
SUBSCRIPTION_FIELDS = (
    "plan",
    "billing_cycle",
    "status",
    "billing_key_id",
    "current_period_start",
    "current_period_end",
    "next_billing_date",
    "canceled_at",
)

# A plan-selection charge older than this is treated as abandoned (crashed caller).
DEFAULT_PENDING_CHARGE_TTL = timedelta(minutes=10)


def _current_stmt(owner_id: str):
    return select(Subscription).where(
        Subscription.owner_id == owner_id,
        Subscription.status.in_(CURRENT_STATUSES),
    )


@dataclass
class PlanChange:
    """Result of writing the owner's current subscription."""

    subscription: Subscription
    # Fields before an in-place update; None when a new row was inserted.
    previous: Optional[Dict[str, Any]] = None
    # Order id of the first charge this change waits on, if any.
    order_id: Optional[str] = None
    unchanged: bool = False


class SubscriptionStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pending_charge_ttl: timedelta = DEFAULT_PENDING_CHARGE_TTL,
    ):
        self._session_factory = session_factory
        self.pending_charge_ttl = pending_charge_ttl

    @contextmanager
    def batch(self) -> Iterator[Session]:
        """Yield a session whose writes commit together or not at all."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -- subscriptions -------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._session_factory() as db:
            return db.get(Subscription, subscription_id)

    def lock_subscription(self, db: Session, subscription_id: str) -> Optional[Subscription]:
        """Load a subscription row for update inside an open batch."""
        stmt = select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        return db.execute(stmt).scalars().first()

    def due_subscription_ids(self, cutoff: datetime) -> List[str]:
        """Ids of ACTIVE subscriptions whose next billing date is before ``cutoff``."""
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.next_billing_date < cutoff,
            )
            .order_by(Subscription.next_billing_date.asc())
        )
        with self._session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def find_current_subscription(self, owner_id: str) -> Optional[Subscription]:
        with self._session_factory() as db:
            return db.execute(_current_stmt(owner_id)).scalars().first()

    def _current_for_update(self, db: Session, owner_id: str) -> Optional[Subscription]:
        return db.execute(_current_stmt(owner_id).with_for_update()).scalars().first()

    def upsert_current_subscription(
        self,
        owner_id: str,
        values: Dict[str, Any],
        order_id_for: Optional[Callable[[str, bool], str]] = None,
        now: Optional[datetime] = None,
    ) -> PlanChange:
        """Update the owner's ACTIVE/INACTIVE subscription in place, or create one.

        With ``order_id_for`` the row is marked pending on the returned order
        id until ``settle_first_charge`` runs; while that charge is in flight
        other plan changes for the owner are refused. Re-selecting the plan,
        cycle and key of a settled ACTIVE row changes nothing.

        A concurrent insert for the same owner trips the partial unique index;
        the loser retries once and then sees the winner's row.
        """
        now = now or utcnow()
        try:
            return self._upsert_once(owner_id, values, order_id_for, now)
        except IntegrityError:
            logger.info("Concurrent subscription insert for owner %s; retrying as update", owner_id)
            return self._upsert_once(owner_id, values, order_id_for, now)

    def _upsert_once(
        self,
        owner_id: str,
        values: Dict[str, Any],
        order_id_for: Optional[Callable[[str, bool], str]],
        now: datetime,
    ) -> PlanChange:
        with self.batch() as db:
            existing = self._current_for_update(db, owner_id)
            if existing is None:
                subscription = Subscription(id=new_id(), owner_id=owner_id, **values)
                if order_id_for is not None:
                    subscription.pending_order_id = order_id_for(subscription.id, True)
                    subscription.pending_since = now
                db.add(subscription)
                db.flush()
                logger.info("New subscription created: %s", subscription.id)
                return PlanChange(subscription, order_id=subscription.pending_order_id)

            if existing.pending_order_id is not None:
                if existing.pending_since and now - existing.pending_since < self.pending_charge_ttl:
                    raise FailedPreconditionError("A plan change is already being processed")
                logger.warning(
                    "Abandoning stale pending charge %s on subscription %s",
                    existing.pending_order_id,
                    existing.id,
                )
            elif existing.status == SubscriptionStatus.ACTIVE and all(
                getattr(existing, field) == values[field]
                for field in ("plan", "billing_cycle", "billing_key_id")
                if field in values
            ):
                return PlanChange(existing, unchanged=True)

            snapshot = {field: getattr(existing, field) for field in SUBSCRIPTION_FIELDS}
            for field, value in values.items():
                setattr(existing, field, value)
            existing.pending_order_id = order_id_for(existing.id, False) if order_id_for else None
            existing.pending_since = now if order_id_for else None
            db.flush()
            logger.info("Subscription updated: %s", existing.id)
            return PlanChange(existing, previous=snapshot, order_id=existing.pending_order_id)

    def settle_first_charge(self, entry: PaymentHistory, previous: Optional[Dict[str, Any]]) -> bool:
        """Record a plan-selection charge and settle the change it paid for.

        On success the pending mark is cleared; on failure a new row is deleted
        and an updated row gets ``previous`` back. Both happen only while the
        row still waits on ``entry.order_id``. Returns False when the change was
        canceled or taken over meanwhile, in which case only history is written.
        """
        with self.batch() as db:
            db.add(entry)
            db.flush()
            subscription = self.lock_subscription(db, entry.subscription_id)
            if subscription is None or subscription.pending_order_id != entry.order_id:
                return False

            subscription.pending_order_id = None
            subscription.pending_since = None
            if entry.status == PaymentStatus.SUCCESS:
                return True
            if previous is None:
                db.delete(subscription)
            else:
                for field, value in previous.items():
                    setattr(subscription, field, value)
            return True

    def cancel_active_subscription(self, owner_id: str, canceled_at: datetime) -> Optional[Subscription]:
        with self.batch() as db:
            stmt = (
                select(Subscription)
                .where(
                    Subscription.owner_id == owner_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                )
                .with_for_update()
            )
            subscription = db.execute(stmt).scalars().first()
            if subscription is None:
                return None
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = canceled_at
            subscription.pending_order_id = None
            subscription.pending_since = None
            db.flush()
            return subscription

    # -- billing keys --------------------------------------------------------

    def get_billing_key(self, billing_key_id: str) -> Optional[BillingKey]:
        if not billing_key_id:
            return None
        with self._session_factory() as db:
            return db.get(BillingKey, billing_key_id)

    def list_billing_keys(self, owner_id: str) -> List[BillingKey]:
        stmt = (
            select(BillingKey)
            .where(BillingKey.owner_id == owner_id)
            .order_by(BillingKey.created_at.desc())
        )
        with self._session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def add_billing_key(
        self,
        owner_id: str,
        customer_key: str,
        card_number: Optional[str] = None,
        card_company: Optional[str] = None,
        is_default: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> BillingKey:
        """Register a new payment instrument; a new default clears the others."""
        with self.batch() as db:
            if is_default:
                db.execute(
                    update(BillingKey)
                    .where(BillingKey.owner_id == owner_id)
                    .values(is_default=False)
                )
            billing_key = BillingKey(
                owner_id=owner_id,
                customer_key=customer_key,
                card_number=card_number,
                card_company=card_company,
                is_default=is_default,
                expires_at=expires_at,
            )
            db.add(billing_key)
            db.flush()
            return billing_key

    # -- payment history -----------------------------------------------------

    def list_payment_history(self, owner_id: str) -> List[PaymentHistory]:
        stmt = (
            select(PaymentHistory)
            .where(PaymentHistory.owner_id == owner_id)
            .order_by(PaymentHistory.created_at.desc())
        )
        with self._session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def recent_payment_statuses(self, db: Session, subscription_id: str, limit: int) -> List[PaymentStatus]:
        """Newest-first statuses of the last ``limit`` attempts, read inside a batch.

        A declined first charge at plan selection (``-INIT`` order) was rolled
        back with its subscription change and does not count toward dunning.
        """
        stmt = (
            select(PaymentHistory.status)
            .where(
                PaymentHistory.subscription_id == subscription_id,
                ~and_(
                    PaymentHistory.order_id.like("%-INIT"),
                    PaymentHistory.status == PaymentStatus.FAILED,
                ),
            )
            .order_by(PaymentHistory.created_at.desc())
            .limit(limit)
        )
        return list(db.execute(stmt).scalars().all())

    def count_orders_with_prefix(self, prefix: str) -> int:
        stmt = (
            select(func.count())
            .select_from(PaymentHistory)
            .where(PaymentHistory.order_id.startswith(prefix, autoescape=True))
        )
        with self._session_factory() as db:
            return int(db.execute(stmt).scalar_one())

    def add_payment(self, entry: PaymentHistory) -> PaymentHistory:
        with self.batch() as db:
            db.add(entry)
            db.flush()
            return entry
