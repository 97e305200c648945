# ledger.py
"""
Entitlement ledger: subscription plans and the subscription state machine.

    (created) --renew--> active --cancel--> cancelled
                           |
                           +---- end <= now, sweep ----> expired

cancelled and expired rows are terminal; a later purchase creates a new row.
Rows are never deleted. Validity is always re-derived from the timestamps
(``Subscription.is_valid``), the ``status`` column may lag until the sweep runs.

Functions commit by default. Callers that need the mutation to share a
transaction with their own writes (payment reconciliation) pass
``commit=False`` and commit themselves.
"""
import logging
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import utcnow
from errors import (
    ActiveSubscriptionExists, ConflictError, NoPlanAvailable, NotFoundError,
    PlanNotFound, TrialAlreadyUsed, ValidationError,
)
from models import (
    Subscription, SubscriptionEvent, SubscriptionPlan,
    SUB_ACTIVE, SUB_CANCELLED, SUB_EXPIRED, PAY_PAID, PAY_TRIAL,
)

log = logging.getLogger("ledger")

TRIAL_PERIOD = timedelta(days=int(os.getenv("TRIAL_DAYS", "3")))
RENEW_CAS_ATTEMPTS = 3

DEFAULT_PLANS = [
    {"name": "Monthly", "description": "Full access to all video content, billed monthly",
     "duration_months": 1, "price": Decimal("9.90")},
    {"name": "Yearly", "description": "Full access to all video content, best value yearly plan",
     "duration_months": 12, "price": Decimal("99.90")},
]


def add_months(moment: datetime, months: int) -> datetime:
    # calendar months, clamped to the last day (Jan 31 + 1 -> Feb 28/29)
    return moment + relativedelta(months=months)


def _finish(db: Session, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()


def record_event(db: Session, subscription: Subscription, event_type: str, source: str, detail: str = None) -> None:
    db.add(SubscriptionEvent(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        event_type=event_type,
        source=source,
        detail=detail,
    ))


# --- Plans --------------------------------------------------------------------

def list_active_plans(db: Session) -> list[SubscriptionPlan]:
    return (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.price.asc())
        .all()
    )


def get_active_plan(db: Session, plan_id) -> SubscriptionPlan:
    plan = (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.id == plan_id, SubscriptionPlan.is_active.is_(True))
        .first()
    )
    if not plan:
        raise PlanNotFound(plan_id)
    return plan


def trial_plan(db: Session) -> Optional[SubscriptionPlan]:
    """Cheapest active one-month plan; trials always bind to it."""
    return (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.duration_months == 1, SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.price.asc(), SubscriptionPlan.id.asc())
        .first()
    )


def ensure_default_plans(db: Session) -> list[SubscriptionPlan]:
    """Seed the default plans on an empty table. A monthly plan is mandatory for trials."""
    if db.query(SubscriptionPlan).count() == 0:
        log.info("no subscription plans found, seeding defaults")
        for values in DEFAULT_PLANS:
            db.add(SubscriptionPlan(is_active=True, **values))
        db.commit()
    if trial_plan(db) is None:
        raise RuntimeError("No active monthly plan exists; trial activation cannot work")
    return list_active_plans(db)


# --- Queries ------------------------------------------------------------------

def get_subscription(db: Session, subscription_id: int) -> Subscription:
    sub = db.get(Subscription, subscription_id)
    if not sub:
        raise NotFoundError("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
    return sub


def find_active_for_user(db: Session, user_id: int, now: datetime = None) -> Optional[Subscription]:
    """
    The currently valid row for a user, or None.

    If duplicate active rows ever exist the one ending latest wins.
    """
    now = now or utcnow()
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status == SUB_ACTIVE,
            Subscription.end_date > now,
        )
        .order_by(Subscription.end_date.desc())
        .first()
    )


def has_used_trial(db: Session, user_id: int) -> bool:
    return db.query(
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            or_(Subscription.is_trial.is_(True), Subscription.payment_status == PAY_TRIAL),
        )
        .exists()
    ).scalar()


def history_for_user(db: Session, user_id: int, limit: int = 10, offset: int = 0) -> list[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )


def events_for_user(db: Session, user_id: int, limit: int = 50) -> list[SubscriptionEvent]:
    return (
        db.query(SubscriptionEvent)
        .filter(SubscriptionEvent.user_id == user_id)
        .order_by(SubscriptionEvent.created_at.desc(), SubscriptionEvent.id.desc())
        .limit(limit)
        .all()
    )


# --- Mutations ----------------------------------------------------------------

def _retire_lapsed(db: Session, user_id: int, now: datetime) -> int:
    # rows still marked active but past their end date would block the
    # one-active-row index; they are logically expired already
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status == SUB_ACTIVE,
            Subscription.end_date <= now,
        )
        .update({Subscription.status: SUB_EXPIRED, Subscription.updated_at: now}, synchronize_session=False)
    )


def create_subscription(
    db: Session,
    user_id: int,
    plan_id: int,
    duration_months: int,
    is_trial: bool = False,
    source: str = "user",
    now: datetime = None,
    end_date: datetime = None,
    commit: bool = True,
) -> Subscription:
    """
    Insert a new active row. Callers check for a conflicting active
    subscription first; the storage layer rejects the losers of a race with
    ActiveSubscriptionExists (or TrialAlreadyUsed for trials).
    """
    now = now or utcnow()
    plan = get_active_plan(db, plan_id)

    if end_date is None:
        end_date = now + TRIAL_PERIOD if is_trial else add_months(now, duration_months)
    if end_date <= now:
        raise ValidationError("End date must be in the future", code="INVALID_END_DATE")

    _retire_lapsed(db, user_id, now)
    sub = Subscription(
        user_id=user_id,
        plan_id=plan.id,
        start_date=now,
        end_date=end_date,
        status=SUB_ACTIVE,
        payment_status=PAY_TRIAL if is_trial else PAY_PAID,
        is_trial=is_trial,
        created_at=now,
        updated_at=now,
    )
    db.add(sub)
    try:
        db.flush()
        record_event(db, sub, "trial_started" if is_trial else "created", source,
                     f"plan={plan.id} end={end_date.isoformat()}")
        _finish(db, commit)
    except IntegrityError:
        db.rollback()
        log.warning("create_subscription rejected by storage constraint user=%s trial=%s", user_id, is_trial)
        if is_trial and has_used_trial(db, user_id):
            raise TrialAlreadyUsed()
        raise ActiveSubscriptionExists()

    log.info("subscription %s created user=%s plan=%s trial=%s end=%s source=%s",
             sub.id, user_id, plan.id, is_trial, end_date.isoformat(), source)
    return sub


def renew(
    db: Session,
    subscription_id: int,
    duration_months: int,
    source: str = "user",
    now: datetime = None,
    commit: bool = True,
) -> Subscription:
    """
    Extend a valid subscription by ``duration_months`` from its current end
    date, so renewing early stacks time. A trial row becomes paid.
    """
    if duration_months <= 0:
        raise ValidationError("Renewal duration must be positive")
    now = now or utcnow()

    for _ in range(RENEW_CAS_ATTEMPTS):
        sub = get_subscription(db, subscription_id)
        if not sub.is_valid(now):
            raise ConflictError("Only a currently valid subscription can be renewed",
                                code="SUBSCRIPTION_NOT_RENEWABLE")
        prior_end = sub.end_date
        new_end = add_months(prior_end, duration_months)
        # compare-and-set on the end date: concurrent renewals never lose an extension
        updated = (
            db.query(Subscription)
            .filter(
                Subscription.id == subscription_id,
                Subscription.status == SUB_ACTIVE,
                Subscription.end_date == prior_end,
            )
            .update(
                {
                    Subscription.end_date: new_end,
                    Subscription.payment_status: PAY_PAID,
                    Subscription.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated == 1:
            db.expire(sub)
            record_event(db, sub, "renewed", source,
                         f"{prior_end.isoformat()} -> {new_end.isoformat()} (+{duration_months}m)")
            _finish(db, commit)
            log.info("subscription %s renewed +%sm to %s source=%s",
                     subscription_id, duration_months, new_end.isoformat(), source)
            return sub
        db.expire(sub)

    raise ConflictError("Subscription changed concurrently, please retry", code="CONCURRENT_UPDATE")


def cancel(db: Session, subscription_id: int, source: str = "user", now: datetime = None,
           commit: bool = True) -> Subscription:
    """active -> cancelled. Cancelling a cancelled or expired row is a no-op."""
    now = now or utcnow()
    sub = get_subscription(db, subscription_id)
    if sub.status != SUB_ACTIVE:
        return sub
    sub.status = SUB_CANCELLED
    sub.updated_at = now
    record_event(db, sub, "cancelled", source)
    _finish(db, commit)
    log.info("subscription %s cancelled source=%s", subscription_id, source)
    return sub


def cancel_all_for_user(db: Session, user_id: int, source: str, now: datetime = None,
                        commit: bool = True) -> int:
    now = now or utcnow()
    rows = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status == SUB_ACTIVE)
        .all()
    )
    for sub in rows:
        sub.status = SUB_CANCELLED
        sub.updated_at = now
        record_event(db, sub, "cancelled", source)
    _finish(db, commit)
    return len(rows)


def expire_batch(db: Session, as_of: datetime = None) -> int:
    """Mark every active row with end <= as_of as expired. Idempotent."""
    as_of = as_of or utcnow()
    count = (
        db.query(Subscription)
        .filter(Subscription.status == SUB_ACTIVE, Subscription.end_date <= as_of)
        .update({Subscription.status: SUB_EXPIRED, Subscription.updated_at: as_of}, synchronize_session=False)
    )
    db.commit()
    return count


def create_trial(db: Session, user_id: int, now: datetime = None) -> Subscription:
    now = now or utcnow()
    if has_used_trial(db, user_id):
        raise TrialAlreadyUsed()
    active = find_active_for_user(db, user_id, now)
    if active and active.is_valid(now):
        raise ActiveSubscriptionExists(active.to_safe_dict(now))
    plan = trial_plan(db)
    if plan is None:
        raise NoPlanAvailable()
    return create_subscription(db, user_id, plan.id, plan.duration_months, is_trial=True, now=now)


def subscribe(db: Session, user_id: int, plan_id: int, source: str = "user", now: datetime = None) -> Subscription:
    """Check-then-create for a paid subscription."""
    now = now or utcnow()
    plan = get_active_plan(db, plan_id)
    active = find_active_for_user(db, user_id, now)
    if active and active.is_valid(now):
        raise ActiveSubscriptionExists(active.to_safe_dict(now))
    return create_subscription(db, user_id, plan.id, plan.duration_months, source=source, now=now)


def extend_or_create(
    db: Session,
    user_id: int,
    plan: SubscriptionPlan,
    source: str,
    now: datetime = None,
    commit: bool = True,
) -> tuple[Subscription, str]:
    """
    Apply one paid period of ``plan``: renew the valid subscription if there
    is one, otherwise start a new row. Returns (subscription, "renewed"|"created").
    """
    now = now or utcnow()
    active = find_active_for_user(db, user_id, now)
    if active and active.is_valid(now):
        return renew(db, active.id, plan.duration_months, source=source, now=now, commit=commit), "renewed"
    sub = create_subscription(db, user_id, plan.id, plan.duration_months, source=source, now=now, commit=commit)
    return sub, "created"


def override(
    db: Session,
    user_id: int,
    plan_id: int,
    end_date: datetime,
    actor: str,
    now: datetime = None,
) -> Subscription:
    """Operator override: cancel whatever is active and install a paid row ending at ``end_date``."""
    now = now or utcnow()
    get_active_plan(db, plan_id)
    cancelled = cancel_all_for_user(db, user_id, source=f"admin:{actor}", now=now, commit=False)
    sub = create_subscription(
        db, user_id, plan_id, 0, source=f"admin:{actor}", now=now, end_date=end_date, commit=False,
    )
    record_event(db, sub, "overridden", f"admin:{actor}", f"replaced {cancelled} active row(s)")
    db.commit()
    log.warning("admin %s overrode subscription for user=%s plan=%s end=%s",
                actor, user_id, plan_id, end_date.isoformat())
    return sub
