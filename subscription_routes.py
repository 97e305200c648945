# subscription_routes.py
"""
Subscription API: plans, the current entitlement, history, trial and cancel.

Direct `/subscribe` and `/renew` skip the payment providers and are only open
when SKIP_PAYMENT_ENABLED is set (dev/demo). Otherwise they answer 403
PAYMENT_REQUIRED and clients go through `/api/payment/{provider}/create`.
"""
import os
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

import access
import ledger
from auth import get_current_user
from db import get_db, utcnow
from errors import ForbiddenError, NotFoundError, ok
from models import User

router = APIRouter(prefix="/api/subscription", tags=["subscription"])

# Direct subscribe/renew without going through a payment provider (dev/demo only)
SKIP_PAYMENT_ENABLED = os.getenv("SKIP_PAYMENT_ENABLED", "").strip().lower() in ("1", "true", "yes", "y", "t")


class PlanIn(BaseModel):
    plan_id: int

    @field_validator("plan_id")
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("plan_id must be positive")
        return v


class RenewIn(BaseModel):
    plan_id: Optional[int] = None


def _require_skip_payment():
    if not SKIP_PAYMENT_ENABLED:
        raise ForbiddenError(
            "Direct subscription is disabled (SKIP_PAYMENT_ENABLED is off), create a payment order instead",
            code="PAYMENT_REQUIRED",
        )


def _no_active():
    return NotFoundError("No active subscription", code="NO_ACTIVE_SUBSCRIPTION")


@router.get("/plans")
def plans(db: Session = Depends(get_db)):
    return ok([p.to_safe_dict() for p in ledger.list_active_plans(db)])


@router.post("/subscribe", status_code=201)
def subscribe(payload: PlanIn, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _require_skip_payment()
    sub = ledger.subscribe(db, current_user.id, payload.plan_id, source="user")
    return ok(sub.to_safe_dict(), "Subscription created")


@router.get("/current")
def current(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    now = utcnow()
    sub = ledger.find_active_for_user(db, current_user.id, now)
    if not sub:
        return {"success": True, "data": None, "message": "No active subscription"}
    return ok(sub.to_safe_dict(now))


@router.get("/history")
def history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    # one extra row tells us whether another page exists
    rows = ledger.history_for_user(db, current_user.id, limit=limit + 1, offset=(page - 1) * limit)
    now = utcnow()
    return ok({
        "items": [s.to_safe_dict(now) for s in rows[:limit]],
        "page": page,
        "limit": limit,
        "has_more": len(rows) > limit,
    })


@router.post("/renew")
def renew(payload: RenewIn, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _require_skip_payment()
    now = utcnow()
    sub = ledger.find_active_for_user(db, current_user.id, now)
    if not sub or not sub.is_valid(now):
        raise _no_active()
    plan = ledger.get_active_plan(db, payload.plan_id or sub.plan_id)
    sub = ledger.renew(db, sub.id, plan.duration_months, source="user", now=now)
    return ok(sub.to_safe_dict(now), "Subscription renewed")


@router.post("/cancel")
def cancel(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    now = utcnow()
    sub = ledger.find_active_for_user(db, current_user.id, now)
    if not sub:
        raise _no_active()
    sub = ledger.cancel(db, sub.id, source="user", now=now)
    return ok(sub.to_safe_dict(now), "Subscription cancelled")


@router.post("/trial", status_code=201)
def trial(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    sub = ledger.create_trial(db, current_user.id)
    return ok(sub.to_safe_dict(), "Trial activated")


@router.get("/trial/eligibility")
def trial_eligibility(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    now = utcnow()
    used = ledger.has_used_trial(db, current_user.id)
    active = ledger.find_active_for_user(db, current_user.id, now)
    has_active = bool(active and active.is_valid(now))
    plan = ledger.trial_plan(db)

    reason = None
    if used:
        reason = "TRIAL_ALREADY_USED"
    elif has_active:
        reason = "ACTIVE_SUBSCRIPTION_EXISTS"
    elif plan is None:
        reason = "NO_PLAN_AVAILABLE"
    return ok({
        "eligible": reason is None,
        "reason": reason,
        "has_used_trial": used,
        "has_active_subscription": has_active,
        "trial_days": ledger.TRIAL_PERIOD.days,
    })


@router.get("/status")
def status(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    now = utcnow()
    sub = ledger.find_active_for_user(db, current_user.id, now)
    return ok({
        "has_valid_subscription": access.is_authorized(db, current_user, now),
        "subscription": sub.to_safe_dict(now) if sub else None,
    })


@router.get("/access")
def access_check(current_user: User = Depends(access.require_subscription)):
    """Gate for the content relay (e.g. an auth_request subrequest): 200, 401 or 403."""
    return ok({"user_id": current_user.id, "authorized": True})
