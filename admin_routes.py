# admin_routes.py
"""
Operator surface: ledger read access, overrides, order audit and on-demand sweeps.
Every route requires an admin (is_admin flag or an ADMIN_EMAIL address).
"""
import logging
from datetime import datetime, time, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import auth
import ledger
from db import get_db, utcnow
from errors import ConflictError, NotFoundError, ValidationError, ok
from models import PaymentOrder, Subscription, User, ORDER_SUCCEEDED, SUB_ACTIVE, USER_ACTIVE, USER_INACTIVE
from payments import PaymentGateway, get_gateway
from sweeper import ExpirySweeper, get_sweeper

log = logging.getLogger("admin")
router = APIRouter(prefix="/api/admin", tags=["admin"])


class OverrideIn(BaseModel):
    plan_id: int
    end_date: Optional[datetime] = None
    duration_months: Optional[int] = None

    @field_validator("end_date")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @model_validator(mode="after")
    def one_of(self):
        if (self.end_date is None) == (self.duration_months is None):
            raise ValueError("provide exactly one of end_date or duration_months")
        if self.duration_months is not None and self.duration_months <= 0:
            raise ValueError("duration_months must be positive")
        return self


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    return user


def _revenue(db: Session, since: Optional[datetime] = None) -> Dict[str, float]:
    q = db.query(PaymentOrder.currency, func.coalesce(func.sum(PaymentOrder.amount), 0)).filter(
        PaymentOrder.state == ORDER_SUCCEEDED
    )
    if since is not None:
        q = q.filter(PaymentOrder.completed_at >= since)
    return {currency: float(total) for currency, total in q.group_by(PaymentOrder.currency).all()}


@router.get("/stats")
def stats(db: Session = Depends(get_db), admin: User = Depends(auth.get_current_admin)) -> Dict[str, Any]:
    now = utcnow()
    today = datetime.combine(now.date(), time.min)
    month_start = today.replace(day=1)

    active_rows = db.query(Subscription).filter(Subscription.status == SUB_ACTIVE)
    return ok({
        "users": {
            "total": db.query(User).count(),
            "active": db.query(User).filter(User.status == USER_ACTIVE).count(),
            "new_today": db.query(User).filter(User.created_at >= today).count(),
        },
        "subscriptions": {
            "valid": active_rows.filter(Subscription.end_date > now).count(),
            "valid_trials": active_rows.filter(Subscription.end_date > now, Subscription.is_trial.is_(True)).count(),
            # lapsed but the sweeper has not flipped them yet
            "lapsed_unswept": active_rows.filter(Subscription.end_date <= now).count(),
        },
        "revenue": {
            "total": _revenue(db),
            "this_month": _revenue(db, since=month_start),
        },
        "generated_at": now.isoformat(),
    })


@router.get("/users")
def list_users(
    search: str = "",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: User = Depends(auth.get_current_admin),
):
    q = db.query(User)
    if search.strip():
        like = f"%{search.strip()}%"
        q = q.filter(or_(User.username.ilike(like), User.email.ilike(like)))
    total = q.count()
    users = q.order_by(User.created_at.desc(), User.id.desc()).limit(limit).offset((page - 1) * limit).all()

    now = utcnow()
    items = []
    for u in users:
        row = u.to_safe_dict()
        sub = ledger.find_active_for_user(db, u.id, now)
        row["is_admin"] = auth.is_admin(u)
        row["subscription"] = sub.to_safe_dict(now) if sub else None
        items.append(row)
    return ok({"items": items, "total": total, "page": page, "limit": limit})


@router.get("/users/{user_id}")
def user_detail(user_id: int, db: Session = Depends(get_db), admin: User = Depends(auth.get_current_admin)):
    user = _get_user(db, user_id)
    now = utcnow()
    active = ledger.find_active_for_user(db, user.id, now)
    data = user.to_safe_dict()
    data.update({
        "is_admin": auth.is_admin(user),
        "has_used_trial": ledger.has_used_trial(db, user.id),
        "subscription": active.to_safe_dict(now) if active else None,
        "history": [s.to_safe_dict(now) for s in ledger.history_for_user(db, user.id, limit=100)],
        "events": [e.to_safe_dict() for e in ledger.events_for_user(db, user.id)],
    })
    return ok(data)


@router.put("/users/{user_id}/subscription")
def override_subscription(
    user_id: int,
    payload: OverrideIn,
    db: Session = Depends(get_db),
    admin: User = Depends(auth.get_current_admin),
):
    user = _get_user(db, user_id)
    now = utcnow()
    end_date = payload.end_date or ledger.add_months(now, payload.duration_months)
    if end_date <= now:
        raise ValidationError("End date must be in the future", code="INVALID_END_DATE")
    sub = ledger.override(db, user.id, payload.plan_id, end_date, actor=admin.username, now=now)
    return ok(sub.to_safe_dict(now), "Subscription overridden")


@router.delete("/users/{user_id}/subscription")
def cancel_subscription(user_id: int, db: Session = Depends(get_db), admin: User = Depends(auth.get_current_admin)):
    user = _get_user(db, user_id)
    count = ledger.cancel_all_for_user(db, user.id, source=f"admin:{admin.username}")
    log.warning("admin %s cancelled %s subscription(s) for user=%s", admin.username, count, user.id)
    return ok({"cancelled": count}, "Subscription cancelled" if count else "No active subscription")


@router.delete("/users/{user_id}")
def deactivate_user(user_id: int, db: Session = Depends(get_db), admin: User = Depends(auth.get_current_admin)):
    """Soft delete: the row and its ledger history stay, access and sessions go."""
    user = _get_user(db, user_id)
    if user.id == admin.id:
        raise ConflictError("Admins cannot deactivate themselves", code="CANNOT_DEACTIVATE_SELF")
    cancelled = ledger.cancel_all_for_user(db, user.id, source=f"admin:{admin.username}", commit=False)
    sessions = auth.delete_user_sessions(db, user.id)
    user.status = USER_INACTIVE
    db.commit()
    log.warning("admin %s deactivated user=%s (cancelled=%s sessions=%s)", admin.username, user.id, cancelled, sessions)
    return ok({"id": user.id, "status": user.status, "cancelled": cancelled}, "User deactivated")


@router.get("/orders")
def list_orders(
    state: str = "",
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: User = Depends(auth.get_current_admin),
    gateway: PaymentGateway = Depends(get_gateway),
):
    rows, total = gateway.list_orders(db, user_id=user_id, state=state or None, limit=limit,
                                      offset=(page - 1) * limit)
    items = []
    for o in rows:
        row = o.to_safe_dict()
        row.update({"user_id": o.user_id, "external_order_id": o.external_order_id,
                    "external_transaction_id": o.external_transaction_id})
        items.append(row)
    return ok({"items": items, "total": total, "page": page, "limit": limit})


@router.post("/sweep")
def run_sweep(admin: User = Depends(auth.get_current_admin), sweeper: ExpirySweeper = Depends(get_sweeper)):
    result = sweeper.run_once()
    if result is None:
        raise ConflictError("A sweep is already running", code="SWEEP_IN_PROGRESS")
    log.info("admin %s triggered sweep: %s", admin.username, result)
    return ok(result, "Sweep completed")
