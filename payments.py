# payments.py
"""
Payment reconciliation gateway.

Correlates provider transactions with ledger mutations through the
``payment_orders`` table. The internal order number is the idempotency key:

    pending --verified success--> succeeded   (ledger extended exactly once)
    pending --verified failure--> failed
    pending --buyer/provider----> cancelled

The pending -> succeeded transition is a compare-and-set executed in the same
transaction as the ledger mutation, so duplicate callbacks, retried
deliveries and a poll racing a webhook all collapse onto one extension.
"""
import logging
import os
import secrets
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.orm import Session

import ledger
from db import utcnow
from errors import (
    ActiveSubscriptionExists, ConflictError, NotFoundError, PaymentProviderError,
    SignatureError, ValidationError,
)
from models import (
    PaymentOrder, SubscriptionPlan, User,
    ORDER_CANCELLED, ORDER_FAILED, ORDER_PENDING, ORDER_SUCCEEDED,
)
from providers import OrderSpec, PaymentProvider, PaymentState, money

log = logging.getLogger("payments")

PAYPAL_CNY_USD_RATE = Decimal(os.getenv("PAYPAL_CNY_USD_RATE", "0.14"))

ORDER_PREFIXES = {"alipay": "LTV", "paypal": "PP"}
PAYMENT_TYPES = ("web", "mobile")

RESULT_URLS = {
    ORDER_SUCCEEDED: os.getenv("PAYMENT_SUCCESS_URL", "/payment/success"),
    ORDER_PENDING: os.getenv("PAYMENT_PENDING_URL", "/payment/pending"),
    ORDER_FAILED: os.getenv("PAYMENT_FAILED_URL", "/payment/failed"),
    ORDER_CANCELLED: os.getenv("PAYMENT_CANCELLED_URL", "/payment/cancelled"),
}

_TERMINAL = {
    PaymentState.SUCCEEDED: ORDER_SUCCEEDED,
    PaymentState.FAILED: ORDER_FAILED,
    PaymentState.CANCELLED: ORDER_CANCELLED,
}

# local terminal states a verified provider payment still overrides
_LATE_PAYABLE = (ORDER_CANCELLED, ORDER_FAILED)


def new_order_no(provider_name: str) -> str:
    """Provider prefix + epoch millis + random suffix, e.g. LTV1714550400000A1B2C3."""
    prefix = ORDER_PREFIXES.get(provider_name, provider_name[:3].upper())
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(3).upper()}"


def cny_to_usd(amount, rate: Decimal = None) -> Decimal:
    return money(Decimal(str(amount)) * (rate or PAYPAL_CNY_USD_RATE))


def result_url(state: str, order_no: str = None) -> str:
    base = RESULT_URLS[state]
    return f"{base}?order_no={order_no}" if order_no else base


class PaymentGateway:
    def __init__(self, providers: Dict[str, PaymentProvider], cny_usd_rate: Decimal = None, clock=utcnow):
        self.providers = providers
        self.cny_usd_rate = cny_usd_rate or PAYPAL_CNY_USD_RATE
        self.clock = clock

    # --- providers ---
    def provider(self, name: str) -> PaymentProvider:
        p = self.providers.get((name or "").lower())
        if p is None:
            raise ValidationError(f"Unsupported payment provider: {name}", code="UNSUPPORTED_PROVIDER")
        return p

    def configured_provider(self, name: str) -> PaymentProvider:
        p = self.provider(name)
        if not p.is_configured():
            raise PaymentProviderError(f"{p.name} payment is not configured", code="PAYMENT_NOT_CONFIGURED",
                                       status_code=503)
        return p

    def config_status(self) -> Dict[str, Any]:
        status = {name: p.config_status() for name, p in self.providers.items()}
        status["supported_methods"] = [name for name, p in self.providers.items() if p.is_configured()]
        return status

    # --- orders ---
    def get_order(self, db: Session, order_no: str, user: Optional[User] = None) -> PaymentOrder:
        q = db.query(PaymentOrder).filter(PaymentOrder.order_no == order_no)
        if user is not None:
            q = q.filter(PaymentOrder.user_id == user.id)
        order = q.first()
        if not order:
            raise NotFoundError("Payment order not found", code="ORDER_NOT_FOUND")
        return order

    def find_by_external(self, db: Session, provider_name: str, external_order_id: str) -> PaymentOrder:
        order = (
            db.query(PaymentOrder)
            .filter(PaymentOrder.provider == provider_name, PaymentOrder.external_order_id == external_order_id)
            .first()
        )
        if not order:
            raise NotFoundError("Payment order not found", code="ORDER_NOT_FOUND")
        return order

    def list_orders(self, db: Session, user_id: int = None, state: str = None, limit: int = 20, offset: int = 0):
        q = db.query(PaymentOrder)
        if user_id is not None:
            q = q.filter(PaymentOrder.user_id == user_id)
        if state:
            q = q.filter(PaymentOrder.state == state)
        total = q.count()
        rows = q.order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc()).limit(limit).offset(offset).all()
        return rows, total

    # --- operations ---
    def initiate(
        self,
        db: Session,
        user: User,
        plan_id: int,
        provider_name: str,
        is_renewal: bool = False,
        payment_type: str = "web",
    ) -> tuple[PaymentOrder, str]:
        """Record a pending order and ask the provider for a payment URL."""
        provider = self.configured_provider(provider_name)
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError("payment_type must be web or mobile", code="INVALID_PAYMENT_TYPE")
        plan = ledger.get_active_plan(db, plan_id)

        now = self.clock()
        active = ledger.find_active_for_user(db, user.id, now)
        if is_renewal and not (active and active.is_valid(now)):
            raise NotFoundError("No active subscription to renew", code="NO_ACTIVE_SUBSCRIPTION")
        if not is_renewal and active and active.is_valid(now):
            raise ActiveSubscriptionExists(active.to_safe_dict(now))

        amount = money(plan.price)
        if provider.currency == "USD":
            amount = cny_to_usd(plan.price, self.cny_usd_rate)

        order = PaymentOrder(
            order_no=new_order_no(provider.name),
            provider=provider.name,
            user_id=user.id,
            plan_id=plan.id,
            is_renewal=is_renewal,
            amount=amount,
            currency=provider.currency,
            state=ORDER_PENDING,
        )
        db.add(order)
        db.commit()

        kind = "renewal" if is_renewal else "subscription"
        spec = OrderSpec(
            order_no=order.order_no,
            subject=f"LibreTV {plan.name}",
            body=f"LibreTV {plan.name} {kind} ({plan.duration_months} month(s))",
            amount=amount,
            currency=provider.currency,
            payment_type=payment_type,
        )
        try:
            created = provider.create_order(spec)
        except PaymentProviderError:
            order.state = ORDER_FAILED
            db.commit()
            raise

        order.external_order_id = created.external_order_id
        db.commit()
        log.info("order %s created provider=%s user=%s plan=%s amount=%s %s renewal=%s",
                 order.order_no, provider.name, user.id, plan.id, amount, provider.currency, is_renewal)
        return order, created.payment_url

    def reconcile(self, db: Session, provider_name: str, payload: Dict[str, Any]) -> PaymentOrder:
        """Apply a provider callback. Unverified payloads never reach the ledger."""
        provider = self.configured_provider(provider_name)
        if not provider.verify_callback(payload):
            log.warning("%s callback failed verification", provider.name)
            raise SignatureError()

        event = provider.parse_callback(payload)
        order = self._locate(db, provider.name, event.order_no, event.external_order_id)
        self._check_amount(order, event.amount)

        if event.state == PaymentState.PENDING:
            if order.state != ORDER_PENDING:
                return order
            # not a final answer (e.g. PayPal approval); ask the provider directly
            return self._poll(db, provider, order)
        return self._apply(db, order, event.state, event.transaction_id)

    def poll_status(self, db: Session, order_no: str, user: Optional[User] = None) -> PaymentOrder:
        order = self.get_order(db, order_no, user)
        if order.state != ORDER_PENDING:
            return order
        return self._poll(db, self.configured_provider(order.provider), order)

    def complete_return(self, db: Session, provider_name: str, params: Dict[str, Any]) -> PaymentOrder:
        """Buyer redirected back from the provider. The redirect only names the order."""
        provider = self.configured_provider(provider_name)
        if provider.name == "alipay":
            if not provider.verify_callback(params):
                log.warning("alipay return failed verification")
                raise SignatureError()
            order = self.get_order(db, params.get("out_trade_no", ""))
        else:
            order = self.find_by_external(db, provider.name, params.get("token", ""))
        if order.state != ORDER_PENDING:
            return order
        return self._poll(db, provider, order)

    def cancel(self, db: Session, order_no: str, user: Optional[User] = None) -> PaymentOrder:
        """
        Close the order at the provider, then mark it cancelled. An order the
        provider cannot confirm as closed stays pending, so a payment that still
        lands through the cashier page is applied normally.
        """
        order = self.get_order(db, order_no, user)
        if order.state == ORDER_CANCELLED:
            return order
        if order.state != ORDER_PENDING:
            raise ConflictError("Only pending orders can be cancelled", code="ORDER_NOT_PENDING")

        provider = self.configured_provider(order.provider)
        if order.external_order_id and not provider.close_order(order.external_order_id):
            log.warning("order %s not closed at %s, left pending", order.order_no, provider.name)
            raise ConflictError("The payment could not be closed at the provider yet, try again later",
                                code="ORDER_NOT_CLOSABLE")

        if not self._transition(db, order, ORDER_CANCELLED):
            db.rollback()
            db.refresh(order)
            return order
        db.commit()
        db.refresh(order)
        log.info("order %s cancelled", order.order_no)
        return order

    def refund(self, db: Session, order_no: str, amount=None, reason: str = "") -> Dict[str, Any]:
        """Provider refund for a succeeded order. Entitlement is left as is."""
        order = self.get_order(db, order_no)
        if order.state != ORDER_SUCCEEDED:
            raise ConflictError("Only paid orders can be refunded", code="ORDER_NOT_PAID")
        amount = money(amount if amount is not None else order.amount)
        if amount <= 0 or amount > order.amount:
            raise ValidationError("Refund amount must be positive and not exceed the paid amount",
                                  code="INVALID_REFUND_AMOUNT")
        provider = self.configured_provider(order.provider)
        result = provider.refund(order.external_order_id, amount, reason or "refund",
                                 transaction_id=order.external_transaction_id)
        log.warning("refund order=%s amount=%s %s success=%s refund_id=%s",
                    order.order_no, amount, order.currency, result.success, result.refund_id)
        return {
            "order_no": order.order_no,
            "success": result.success,
            "refund_id": result.refund_id,
            "amount": float(result.amount if result.amount is not None else amount),
            "currency": order.currency,
            "message": result.message,
        }

    # --- internals ---
    def _locate(self, db: Session, provider_name: str, order_no: Optional[str],
                external_order_id: Optional[str]) -> PaymentOrder:
        if order_no:
            order = db.query(PaymentOrder).filter(PaymentOrder.order_no == order_no).first()
        elif external_order_id:
            order = (
                db.query(PaymentOrder)
                .filter(PaymentOrder.provider == provider_name,
                        PaymentOrder.external_order_id == external_order_id)
                .first()
            )
        else:
            order = None
        if order is None or order.provider != provider_name:
            log.warning("%s callback for unknown order no=%s external=%s", provider_name, order_no, external_order_id)
            raise NotFoundError("Payment order not found", code="ORDER_NOT_FOUND")
        return order

    def _check_amount(self, order: PaymentOrder, amount: Optional[Decimal]) -> None:
        if amount is not None and money(amount) != money(order.amount):
            log.error("order %s amount mismatch: provider=%s expected=%s", order.order_no, amount, order.amount)
            raise SignatureError()

    def _poll(self, db: Session, provider: PaymentProvider, order: PaymentOrder) -> PaymentOrder:
        status = provider.query_status(order.external_order_id or order.order_no)
        if status.state == PaymentState.SUCCEEDED:
            self._check_amount(order, status.amount)
        return self._apply(db, order, status.state, status.transaction_id)

    def _transition(self, db: Session, order: PaymentOrder, state: str, values: dict = None,
                    expected: str = ORDER_PENDING) -> bool:
        # compare-and-set: only the caller that moves the row out of ``expected`` wins
        now = self.clock()
        values = dict(values or {})
        values.update({PaymentOrder.state: state, PaymentOrder.updated_at: now})
        if state == ORDER_SUCCEEDED:
            values[PaymentOrder.completed_at] = now
        claimed = (
            db.query(PaymentOrder)
            .filter(PaymentOrder.id == order.id, PaymentOrder.state == expected)
            .update(values, synchronize_session=False)
        )
        return claimed == 1

    def _apply(self, db: Session, order: PaymentOrder, state: PaymentState,
               transaction_id: Optional[str] = None) -> PaymentOrder:
        if state == PaymentState.PENDING:
            return order
        target = _TERMINAL[state]
        extra = {PaymentOrder.external_transaction_id: transaction_id} if transaction_id else {}

        try:
            claimed = self._transition(db, order, target, extra)
            if not claimed:
                db.rollback()
                db.refresh(order)
                if target != ORDER_SUCCEEDED or order.state not in _LATE_PAYABLE:
                    log.info("order %s already %s, ignoring duplicate %s", order.order_no, order.state, target)
                    return order
                # verified payment for an order closed locally
                log.error("order %s is %s but the provider reports it paid, applying late payment",
                          order.order_no, order.state)
                claimed = self._transition(db, order, target, extra, expected=order.state)
                if not claimed:
                    db.rollback()
                    db.refresh(order)
                    return order

            if target == ORDER_SUCCEEDED:
                self._extend_ledger(db, order)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        log.info("order %s -> %s", order.order_no, order.state)
        return order

    def _extend_ledger(self, db: Session, order: PaymentOrder) -> None:
        plan = db.get(SubscriptionPlan, order.plan_id)
        source = f"payment:{order.provider}"
        sub, action = ledger.extend_or_create(db, order.user_id, plan, source=source, now=self.clock(),
                                              commit=False)
        db.query(PaymentOrder).filter(PaymentOrder.id == order.id).update(
            {PaymentOrder.subscription_id: sub.id}, synchronize_session=False,
        )
        ledger.record_event(db, sub, "payment_applied", source, f"order={order.order_no} {action}")
        log.info("order %s applied to subscription %s (%s) user=%s", order.order_no, sub.id, action, order.user_id)


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway
