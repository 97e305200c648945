from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from auth import get_current_admin, get_current_user
from db import get_db
from errors import AppError, PaymentProviderError, ValidationError, ok
from models import User, ORDER_FAILED, ORDER_PENDING
from payments import PAYMENT_TYPES, PaymentGateway, get_gateway, result_url

log = logging.getLogger("payments")
router = APIRouter(prefix="/api/payment", tags=["payment"])


class CreateBody(BaseModel):
    plan_id: int
    is_renewal: bool = False
    payment_type: str = "web"

    @field_validator("payment_type")
    @classmethod
    def known_type(cls, v: str) -> str:
        v = (v or "web").strip().lower()
        if v not in PAYMENT_TYPES:
            raise ValueError("payment_type must be web or mobile")
        return v


class RefundBody(BaseModel):
    order_no: str
    amount: Optional[float] = None
    reason: str = ""


# ------------------------- Config -------------------------------------------

@router.get("/config/status")
def config_status(gateway: PaymentGateway = Depends(get_gateway)):
    return ok(gateway.config_status())


# ------------------------- Provider callbacks (authoritative) ----------------

@router.post("/alipay/notify")
async def alipay_notify(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Alipay async notification (form-encoded). Alipay keeps redelivering until
    it reads the literal body ``success``.
    """
    form = await request.form()
    payload = {k: v for k, v in form.items()}
    try:
        order = gateway.reconcile(db, "alipay", payload)
    except AppError as e:
        log.warning("alipay notify not applied out_trade_no=%s: %s", payload.get("out_trade_no"), e.code)
        return PlainTextResponse("fail")
    log.info("alipay notify out_trade_no=%s state=%s", order.order_no, order.state)
    return PlainTextResponse("success")


@router.post("/paypal/notify")
async def paypal_notify(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Webhook body must be JSON", code="INVALID_CALLBACK")
    order = gateway.reconcile(db, "paypal", {"headers": dict(request.headers), "body": body})
    return ok({"order_no": order.order_no, "state": order.state})


# ------------------------- Buyer redirects -----------------------------------

@router.get("/paypal/cancel")
def paypal_cancel(
    order_no: str = "",
    token: str = "",
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Buyer abandoned the PayPal approval page."""
    try:
        order = gateway.get_order(db, order_no)
        # the redirect is unauthenticated; the PayPal order id must match
        if order.provider == "paypal" and token and token == order.external_order_id:
            order = gateway.cancel(db, order.order_no)
    except AppError as e:
        log.warning("paypal cancel redirect order_no=%s: %s", order_no, e.code)
        return RedirectResponse(result_url(ORDER_FAILED), status_code=302)
    return RedirectResponse(result_url(order.state, order.order_no), status_code=302)


@router.get("/{provider}/return")
def payment_return(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    params = dict(request.query_params)
    try:
        order = gateway.complete_return(db, provider, params)
    except PaymentProviderError as e:
        # provider unreachable: the payment may still land through the callback
        log.warning("%s return could not confirm payment: %s", provider, e.message)
        order_no = params.get("out_trade_no") or params.get("order_no") or ""
        base = result_url(ORDER_PENDING, order_no or None)
        return RedirectResponse(base, status_code=302)
    except AppError as e:
        log.warning("%s return rejected: %s", provider, e.code)
        return RedirectResponse(result_url(ORDER_FAILED), status_code=302)
    return RedirectResponse(result_url(order.state, order.order_no), status_code=302)


# ------------------------- User operations -----------------------------------

@router.post("/{provider}/create", status_code=201)
def create_payment(
    provider: str,
    body: CreateBody,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    order, payment_url = gateway.initiate(
        db, current_user, body.plan_id, provider, is_renewal=body.is_renewal, payment_type=body.payment_type,
    )
    data = order.to_safe_dict()
    data["payment_url"] = payment_url
    return ok(data, "Payment order created")


@router.get("/{provider}/query/{order_no}")
def query_payment(
    provider: str,
    order_no: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    gateway.provider(provider)
    order = gateway.poll_status(db, order_no, user=current_user)
    return ok(order.to_safe_dict())


@router.post("/{provider}/cancel/{order_no}")
def cancel_payment(
    provider: str,
    order_no: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    gateway.provider(provider)
    order = gateway.cancel(db, order_no, user=current_user)
    return ok(order.to_safe_dict(), "Payment order cancelled")


@router.post("/{provider}/refund")
def refund_payment(
    provider: str,
    body: RefundBody,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    gateway.provider(provider)
    log.warning("admin %s requested refund order=%s amount=%s", admin.username, body.order_no, body.amount)
    result = gateway.refund(db, body.order_no, body.amount, body.reason)
    return ok(result, "Refund submitted" if result["success"] else "Refund rejected by provider")
