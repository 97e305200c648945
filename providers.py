"""
Payment providers.

Each provider implements the same capability set:

- create_order(spec)                 -> CreatedOrder(payment_url, external_order_id)
- query_status(external_order_id)    -> ProviderStatus
- verify_callback(payload)           -> bool
- parse_callback(payload)            -> CallbackEvent   (only after verify_callback)
- refund(external_order_id, amount, reason, transaction_id) -> RefundResult

Outbound calls carry a bounded timeout and are retried a small number of times
on transport failures. When retries are exhausted a PaymentProviderError is
raised; an outbound call never silently succeeds.
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
from alipay import AliPay, AliPayConfig
from alipay.exceptions import AliPayException, AliPayValidationError

from errors import PaymentProviderError

log = logging.getLogger("providers")

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))
PROVIDER_RETRY_DELAY = float(os.getenv("PROVIDER_RETRY_DELAY", "0.5"))

CENT = Decimal("0.01")


class PaymentState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class OrderSpec:
    order_no: str
    subject: str
    body: str
    amount: Decimal
    currency: str
    payment_type: str = "web"


@dataclass
class CreatedOrder:
    payment_url: str
    external_order_id: str


@dataclass
class ProviderStatus:
    state: PaymentState
    external_order_id: str
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallbackEvent:
    order_no: Optional[str]
    state: PaymentState
    external_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def call_with_retries(
    operation: str,
    fn: Callable[[], Any],
    transient: tuple = (httpx.TransportError, OSError),
    attempts: int = None,
    delay: float = None,
):
    """Run ``fn``; retry transient failures, then surface a retryable PaymentProviderError."""
    attempts = (PROVIDER_MAX_RETRIES if attempts is None else attempts) + 1
    delay = PROVIDER_RETRY_DELAY if delay is None else delay
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except transient as e:
            log.warning("%s failed (attempt %s/%s): %s", operation, attempt, attempts, e)
            if attempt == attempts:
                raise PaymentProviderError(f"{operation} failed: payment provider unreachable") from e
            time.sleep(delay * attempt)


class PaymentProvider(ABC):
    name: str = ""
    currency: str = "CNY"

    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    def config_status(self) -> Dict[str, Any]: ...

    @abstractmethod
    def create_order(self, spec: OrderSpec) -> CreatedOrder: ...

    @abstractmethod
    def query_status(self, external_order_id: str) -> ProviderStatus: ...

    @abstractmethod
    def verify_callback(self, payload: Dict[str, Any]) -> bool: ...

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent: ...

    @abstractmethod
    def refund(self, external_order_id: str, amount: Decimal, reason: str,
               transaction_id: Optional[str] = None) -> RefundResult: ...

    def close_order(self, external_order_id: str) -> bool:
        """Close an unpaid order at the provider. True only when it can no longer be paid."""
        return False


# ------------------------------ Alipay ----------------------------------------

ALIPAY_SUCCESS_CODE = "10000"
ALIPAY_TRADE_STATES = {
    "WAIT_BUYER_PAY": PaymentState.PENDING,
    "TRADE_SUCCESS": PaymentState.SUCCEEDED,
    "TRADE_FINISHED": PaymentState.SUCCEEDED,
    "TRADE_CLOSED": PaymentState.CANCELLED,
}


def _pem(key: str, kind: str) -> str:
    key = (key or "").strip().replace("\\n", "\n")
    if not key or key.startswith("-----BEGIN"):
        return key
    return f"-----BEGIN {kind}-----\n{key}\n-----END {kind}-----"


class AlipayProvider(PaymentProvider):
    """Alipay page/wap pay. The merchant order number doubles as the external id."""

    name = "alipay"
    currency = "CNY"

    def __init__(
        self,
        app_id: str = None,
        private_key: str = None,
        public_key: str = None,
        gateway: str = None,
        notify_url: str = None,
        return_url: str = None,
        client: Any = None,
    ):
        self.app_id = app_id if app_id is not None else os.getenv("ALIPAY_APP_ID", "").strip()
        self.private_key = private_key if private_key is not None else os.getenv("ALIPAY_PRIVATE_KEY", "")
        self.public_key = public_key if public_key is not None else os.getenv("ALIPAY_PUBLIC_KEY", "")
        self.gateway = gateway or os.getenv("ALIPAY_GATEWAY", "https://openapi.alipay.com/gateway.do")
        self.notify_url = notify_url or os.getenv(
            "ALIPAY_NOTIFY_URL", "http://localhost:8000/api/payment/alipay/notify")
        self.return_url = return_url or os.getenv(
            "ALIPAY_RETURN_URL", "http://localhost:8000/api/payment/alipay/return")
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.app_id and self.private_key and self.public_key)

    def config_status(self) -> Dict[str, Any]:
        return {
            "has_app_id": bool(self.app_id),
            "has_private_key": bool(self.private_key),
            "has_public_key": bool(self.public_key),
            "is_configured": self.is_configured(),
        }

    @property
    def client(self) -> AliPay:
        if self._client is None:
            if not self.is_configured():
                raise PaymentProviderError("Alipay is not configured", code="PAYMENT_NOT_CONFIGURED",
                                           status_code=503)
            self._client = AliPay(
                appid=self.app_id,
                app_notify_url=self.notify_url,
                app_private_key_string=_pem(self.private_key, "RSA PRIVATE KEY"),
                alipay_public_key_string=_pem(self.public_key, "PUBLIC KEY"),
                sign_type="RSA2",
                debug="alipaydev" in self.gateway or "sandbox" in self.gateway,
                config=AliPayConfig(timeout=PROVIDER_TIMEOUT_SECONDS),
            )
        return self._client

    def _exec(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_retries(f"alipay {operation}", fn)
        except PaymentProviderError:
            raise
        except Exception as e:
            log.exception("alipay %s rejected", operation)
            raise PaymentProviderError(f"alipay {operation} failed: {e}") from e

    def create_order(self, spec: OrderSpec) -> CreatedOrder:
        pay = (self.client.api_alipay_trade_wap_pay if spec.payment_type == "mobile"
               else self.client.api_alipay_trade_page_pay)
        order_string = self._exec("create_order", lambda: pay(
            subject=spec.subject,
            out_trade_no=spec.order_no,
            total_amount=str(money(spec.amount)),
            return_url=self.return_url,
            notify_url=self.notify_url,
            body=spec.body,
            timeout_express="30m",
        ))
        return CreatedOrder(payment_url=f"{self.gateway}?{order_string}", external_order_id=spec.order_no)

    def query_status(self, external_order_id: str) -> ProviderStatus:
        result = self._exec("query", lambda: self.client.api_alipay_trade_query(out_trade_no=external_order_id))
        code = str(result.get("code", ""))
        if code != ALIPAY_SUCCESS_CODE:
            if result.get("sub_code") == "ACQ.TRADE_NOT_EXIST":
                # the trade only exists once the buyer opened the cashier page
                return ProviderStatus(PaymentState.PENDING, external_order_id, raw=result)
            raise PaymentProviderError(f"alipay query failed: {result.get('sub_msg') or result.get('msg')}")
        state = ALIPAY_TRADE_STATES.get(result.get("trade_status"), PaymentState.PENDING)
        amount = result.get("total_amount")
        return ProviderStatus(
            state=state,
            external_order_id=external_order_id,
            transaction_id=result.get("trade_no"),
            amount=money(amount) if amount else None,
            raw=result,
        )

    def verify_callback(self, payload: Dict[str, Any]) -> bool:
        data = dict(payload)
        signature = data.pop("sign", None)
        if not signature:
            return False
        if data.get("app_id") and data.get("app_id") != self.app_id:
            log.error("alipay callback app_id mismatch: %s", data.get("app_id"))
            return False
        try:
            return bool(self.client.verify(data, signature))
        except (AliPayException, AliPayValidationError, ValueError, TypeError) as e:
            log.error("alipay signature check raised: %s", e)
            return False

    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent:
        amount = payload.get("total_amount")
        state = ALIPAY_TRADE_STATES.get(payload.get("trade_status"), PaymentState.PENDING)
        return CallbackEvent(
            order_no=payload.get("out_trade_no"),
            state=state,
            external_order_id=payload.get("out_trade_no"),
            transaction_id=payload.get("trade_no"),
            amount=money(amount) if amount else None,
        )

    def refund(self, external_order_id: str, amount: Decimal, reason: str,
               transaction_id: Optional[str] = None) -> RefundResult:
        request_no = uuid.uuid4().hex
        result = self._exec("refund", lambda: self.client.api_alipay_trade_refund(
            refund_amount=str(money(amount)),
            out_trade_no=external_order_id,
            out_request_no=request_no,
            refund_reason=reason,
        ))
        ok = str(result.get("code", "")) == ALIPAY_SUCCESS_CODE
        return RefundResult(
            success=ok,
            refund_id=request_no,
            amount=money(result["refund_fee"]) if result.get("refund_fee") else None,
            message=result.get("sub_msg") or result.get("msg", ""),
            raw=result,
        )

    def close_order(self, external_order_id: str) -> bool:
        """
        True only when Alipay confirms the trade is closed. ACQ.TRADE_NOT_EXIST
        means the buyer has not opened the cashier yet, and the signed page-pay
        URL can still create and pay the trade, so it is not a close.
        """
        result = self._exec("close", lambda: self.client.api_alipay_trade_close(out_trade_no=external_order_id))
        if str(result.get("code", "")) == ALIPAY_SUCCESS_CODE:
            return True
        log.warning("alipay close %s refused: %s %s", external_order_id, result.get("sub_code"),
                    result.get("sub_msg") or result.get("msg"))
        return False


# ------------------------------ PayPal ----------------------------------------

PAYPAL_ORDER_STATES = {
    "CREATED": PaymentState.PENDING,
    "SAVED": PaymentState.PENDING,
    "APPROVED": PaymentState.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentState.PENDING,
    "COMPLETED": PaymentState.SUCCEEDED,
    "VOIDED": PaymentState.CANCELLED,
}
PAYPAL_WEBHOOK_STATES = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentState.SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": PaymentState.FAILED,
    "PAYMENT.CAPTURE.DECLINED": PaymentState.FAILED,
    "CHECKOUT.ORDER.VOIDED": PaymentState.CANCELLED,
}
PAYPAL_WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PaypalProvider(PaymentProvider):
    """
    PayPal Orders v2 over REST.

    The external id is PayPal's order id. An order becomes paid only after it
    is approved by the buyer and captured by us; query_status captures
    approved orders so polling and the return redirect both complete payment.
    """

    name = "paypal"
    currency = "USD"

    def __init__(
        self,
        client_id: str = None,
        client_secret: str = None,
        mode: str = None,
        webhook_id: str = None,
        return_url: str = None,
        cancel_url: str = None,
        http: httpx.Client = None,
    ):
        self.client_id = client_id if client_id is not None else os.getenv("PAYPAL_CLIENT_ID", "").strip()
        self.client_secret = client_secret if client_secret is not None else os.getenv("PAYPAL_CLIENT_SECRET", "").strip()
        self.mode = (mode or os.getenv("PAYPAL_MODE", "sandbox")).lower()
        self.webhook_id = webhook_id if webhook_id is not None else os.getenv("PAYPAL_WEBHOOK_ID", "").strip()
        self.return_url = return_url or os.getenv(
            "PAYPAL_RETURN_URL", "http://localhost:8000/api/payment/paypal/return")
        self.cancel_url = cancel_url or os.getenv(
            "PAYPAL_CANCEL_URL", "http://localhost:8000/api/payment/paypal/cancel")
        base_url = "https://api-m.paypal.com" if self.mode == "live" else "https://api-m.sandbox.paypal.com"
        self._http = http or httpx.Client(base_url=base_url, timeout=PROVIDER_TIMEOUT_SECONDS)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def config_status(self) -> Dict[str, Any]:
        return {
            "has_client_id": bool(self.client_id),
            "has_client_secret": bool(self.client_secret),
            "mode": self.mode,
            "is_configured": self.is_configured(),
        }

    def close(self) -> None:
        self._http.close()

    # -- transport --
    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self.is_configured():
            raise PaymentProviderError("PayPal is not configured", code="PAYMENT_NOT_CONFIGURED", status_code=503)

        def fetch():
            resp = self._http.post(
                "/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
            )
            resp.raise_for_status()
            return resp.json()

        data = self._send("oauth token", fetch)
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    def _send(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_retries(f"paypal {operation}", fn)
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            log.error("paypal %s returned %s: %s", operation, e.response.status_code, body)
            raise PaymentProviderError(f"paypal {operation} failed with status {e.response.status_code}") from e

    def _request(self, method: str, path: str, json: Dict[str, Any] = None,
                 idempotency_key: str = None) -> Dict[str, Any]:
        token = self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if idempotency_key:
            headers["PayPal-Request-Id"] = idempotency_key

        def send():
            resp = self._http.request(method, path, json=json, headers=headers)
            if resp.status_code >= 500:
                # provider-side hiccup, same treatment as a transport failure
                raise httpx.TransportError(f"{resp.status_code} from PayPal")
            resp.raise_for_status()
            return resp.json() if resp.content else {}

        return self._send(f"{method} {path}", send)

    # -- capability --
    def create_order(self, spec: OrderSpec) -> CreatedOrder:
        value = str(money(spec.amount))
        order = self._request("POST", "/v2/checkout/orders", idempotency_key=spec.order_no, json={
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": spec.order_no,
                "custom_id": spec.order_no,
                "description": spec.body[:127],
                "amount": {"currency_code": spec.currency, "value": value},
            }],
            "application_context": {
                "brand_name": "LibreTV",
                "user_action": "PAY_NOW",
                "return_url": self.return_url,
                "cancel_url": f"{self.cancel_url}?order_no={spec.order_no}",
            },
        })
        approve = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approve:
            raise PaymentProviderError("paypal create_order returned no approval link")
        return CreatedOrder(payment_url=approve, external_order_id=order["id"])

    def _status_from_order(self, order: Dict[str, Any]) -> ProviderStatus:
        state = PAYPAL_ORDER_STATES.get(order.get("status"), PaymentState.PENDING)
        units = order.get("purchase_units") or [{}]
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        capture = captures[0] if captures else {}
        if capture.get("status") in ("DECLINED", "FAILED"):
            state = PaymentState.FAILED
        amount = (capture.get("amount") or units[0].get("amount") or {}).get("value")
        return ProviderStatus(
            state=state,
            external_order_id=order.get("id"),
            transaction_id=capture.get("id"),
            amount=money(amount) if amount else None,
            raw=order,
        )

    def query_status(self, external_order_id: str) -> ProviderStatus:
        order = self._request("GET", f"/v2/checkout/orders/{external_order_id}")
        if order.get("status") == "APPROVED":
            order = self._request("POST", f"/v2/checkout/orders/{external_order_id}/capture",
                                  idempotency_key=f"capture-{external_order_id}")
        return self._status_from_order(order)

    def verify_callback(self, payload: Dict[str, Any]) -> bool:
        """``payload`` is {"headers": {...}, "body": {...}} of a PayPal webhook delivery."""
        headers = {k.lower(): v for k, v in (payload.get("headers") or {}).items()}
        body = payload.get("body")
        if not self.webhook_id or not body:
            return False
        verification = {k: headers.get(h) for k, h in PAYPAL_WEBHOOK_HEADERS.items()}
        if not all(verification.values()):
            return False
        result = self._request("POST", "/v1/notifications/verify-webhook-signature", json={
            **verification,
            "webhook_id": self.webhook_id,
            "webhook_event": body,
        })
        return result.get("verification_status") == "SUCCESS"

    def parse_callback(self, payload: Dict[str, Any]) -> CallbackEvent:
        body = payload.get("body") or {}
        resource = body.get("resource") or {}
        state = PAYPAL_WEBHOOK_STATES.get(body.get("event_type"), PaymentState.PENDING)
        if body.get("event_type", "").startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            amount = (resource.get("amount") or {}).get("value")
            return CallbackEvent(
                order_no=resource.get("custom_id"),
                state=state,
                external_order_id=related.get("order_id"),
                transaction_id=resource.get("id"),
                amount=money(amount) if amount else None,
            )
        units = resource.get("purchase_units") or [{}]
        return CallbackEvent(
            order_no=units[0].get("custom_id"),
            state=state,
            external_order_id=resource.get("id"),
        )

    def close_order(self, external_order_id: str) -> bool:
        # money only moves when we capture, and non-pending orders are never captured
        return True

    def refund(self, external_order_id: str, amount: Decimal, reason: str,
               transaction_id: Optional[str] = None) -> RefundResult:
        if not transaction_id:
            raise PaymentProviderError("paypal refund needs the capture id of a completed order",
                                       code="REFUND_NOT_POSSIBLE", status_code=409)
        result = self._request(
            "POST", f"/v2/payments/captures/{transaction_id}/refund",
            idempotency_key=uuid.uuid4().hex,
            json={
                "amount": {"value": str(money(amount)), "currency_code": self.currency},
                "note_to_payer": reason[:255],
            },
        )
        refunded = (result.get("amount") or {}).get("value")
        return RefundResult(
            success=result.get("status") in ("COMPLETED", "PENDING"),
            refund_id=result.get("id"),
            amount=money(refunded) if refunded else None,
            message=result.get("status", ""),
            raw=result,
        )


def build_providers() -> Dict[str, PaymentProvider]:
    return {"alipay": AlipayProvider(), "paypal": PaypalProvider()}
