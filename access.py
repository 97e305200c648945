# access.py
"""
Access policy: is a user entitled to protected content right now?

Evaluated fresh on every call. Expiry is a function of wall-clock time, so a
subscription can stop being valid between two requests without any write.
"""
from datetime import datetime
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

import ledger
from auth import get_current_user
from db import get_db, utcnow
from errors import SubscriptionRequired
from models import User, USER_ACTIVE


def is_authorized(db: Session, user: Optional[User], now: datetime = None) -> bool:
    if user is None or user.status != USER_ACTIVE:
        return False
    now = now or utcnow()
    sub = ledger.find_active_for_user(db, user.id, now)
    return sub is not None and sub.is_valid(now)


def require_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> User:
    """Dependency for the content relay: 401 without identity, 403 without entitlement."""
    if not is_authorized(db, current_user):
        raise SubscriptionRequired()
    return current_user
