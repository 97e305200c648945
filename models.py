# models.py
from datetime import timedelta

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric, Text, ForeignKey, Index, text,
)
from sqlalchemy.orm import relationship

from db import Base, utcnow

EXPIRING_SOON_WINDOW = timedelta(days=7)

# status / payment_status vocabularies
USER_ACTIVE = "active"
USER_INACTIVE = "inactive"

SUB_ACTIVE = "active"
SUB_CANCELLED = "cancelled"
SUB_EXPIRED = "expired"

PAY_PAID = "paid"
PAY_TRIAL = "trial"

ORDER_PENDING = "pending"
ORDER_SUCCEEDED = "succeeded"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(32), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    salt = Column(String(64), nullable=False)
    status = Column(String(16), default=USER_ACTIVE, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_safe_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)  # sha256 hex of the bearer token
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    duration_months = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # CNY
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_safe_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "duration_months": self.duration_months,
            "price": float(self.price),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Subscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    status = Column(String(16), default=SUB_ACTIVE, nullable=False)
    payment_status = Column(String(16), default=PAY_PAID, nullable=False)
    # set once at creation; survives a trial row being renewed into paid
    is_trial = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plan = relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        # one status='active' row per user; lapsed rows are expired before a new insert
        Index(
            "uq_user_subscriptions_one_active", "user_id", unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        # lifetime-once trial
        Index(
            "uq_user_subscriptions_one_trial", "user_id", unique=True,
            sqlite_where=text("is_trial = 1"),
            postgresql_where=text("is_trial"),
        ),
    )

    def is_valid(self, now=None) -> bool:
        now = now or utcnow()
        return (
            self.status == SUB_ACTIVE
            and self.end_date > now
            and self.payment_status in (PAY_PAID, PAY_TRIAL)
        )

    def is_expiring_soon(self, now=None) -> bool:
        now = now or utcnow()
        return self.is_valid(now) and self.end_date <= now + EXPIRING_SOON_WINDOW

    def to_safe_dict(self, now=None) -> dict:
        data = {
            "id": self.id,
            "plan_id": self.plan_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status": self.status,
            "payment_status": self.payment_status,
            "is_valid": self.is_valid(now),
            "is_expiring_soon": self.is_expiring_soon(now),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if self.plan is not None:
            data.update({
                "plan_name": self.plan.name,
                "plan_description": self.plan.description,
                "duration_months": self.plan.duration_months,
                "price": float(self.plan.price),
            })
        return data


class PaymentOrder(Base):
    """Correlates a provider transaction with the ledger mutation it pays for."""
    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True)
    order_no = Column(String(64), unique=True, nullable=False, index=True)
    provider = Column(String(16), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    is_renewal = Column(Boolean, default=False, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    state = Column(String(16), default=ORDER_PENDING, nullable=False)
    external_order_id = Column(String(128), nullable=True, index=True)
    external_transaction_id = Column(String(128), nullable=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def to_safe_dict(self) -> dict:
        return {
            "order_no": self.order_no,
            "provider": self.provider,
            "plan_id": self.plan_id,
            "is_renewal": self.is_renewal,
            "amount": float(self.amount),
            "currency": self.currency,
            "state": self.state,
            "subscription_id": self.subscription_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    event_type = Column(String(32), nullable=False)
    source = Column(String(64), nullable=False)  # user / payment:<provider> / admin / system
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_safe_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "event_type": self.event_type,
            "source": self.source,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
