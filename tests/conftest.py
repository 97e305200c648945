import hashlib
import hmac
import os
from decimal import Decimal

# must be set before the app modules read their configuration
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ledger
from db import get_db, init_db
from main import app
from models import User
from payments import PaymentGateway, get_gateway
from providers import (
    CallbackEvent, CreatedOrder, PaymentProvider, PaymentState, ProviderStatus, RefundResult,
)
from sweeper import ExpirySweeper, get_sweeper

PASSWORD = "Passw0rdX"

FAKE_TRADE_STATES = {
    "WAIT_BUYER_PAY": PaymentState.PENDING,
    "TRADE_SUCCESS": PaymentState.SUCCEEDED,
    "TRADE_CLOSED": PaymentState.CANCELLED,
    "TRADE_FAILED": PaymentState.FAILED,
}


class FakeProvider(PaymentProvider):
    """In-memory provider: HMAC-signed callbacks, scripted query results."""

    def __init__(self, name: str, currency: str, secret: str = "fake-secret"):
        self.name = name
        self.currency = currency
        self.secret = secret.encode()
        self.configured = True
        self.fail_create = False
        self.fail_close = False
        self.close_result = True
        self.statuses = {}
        self.created = []
        self.refunds = []
        self.closed = []
        self.queries = 0

    def is_configured(self):
        return self.configured

    def config_status(self):
        return {"is_configured": self.configured}

    def create_order(self, spec):
        if self.fail_create:
            from errors import PaymentProviderError
            raise PaymentProviderError("provider down")
        self.created.append(spec)
        return CreatedOrder(f"https://pay.example/{spec.order_no}", f"EXT-{spec.order_no}")

    def succeed(self, external_order_id, amount):
        self.statuses[external_order_id] = (PaymentState.SUCCEEDED, Decimal(str(amount)))

    def query_status(self, external_order_id):
        self.queries += 1
        state, amount = self.statuses.get(external_order_id, (PaymentState.PENDING, None))
        tx = f"TX-{external_order_id}" if state == PaymentState.SUCCEEDED else None
        return ProviderStatus(state, external_order_id, transaction_id=tx, amount=amount)

    def _sig(self, data):
        message = "&".join(f"{k}={data[k]}" for k in sorted(data))
        return hmac.new(self.secret, message.encode(), hashlib.sha256).hexdigest()

    def sign(self, data):
        return {**data, "sign": self._sig(data)}

    def verify_callback(self, payload):
        data = dict(payload)
        signature = data.pop("sign", None)
        return bool(signature) and hmac.compare_digest(signature, self._sig(data))

    def parse_callback(self, payload):
        amount = payload.get("total_amount")
        return CallbackEvent(
            order_no=payload.get("out_trade_no"),
            state=FAKE_TRADE_STATES.get(payload.get("trade_status"), PaymentState.PENDING),
            external_order_id=payload.get("out_trade_no"),
            transaction_id=payload.get("trade_no"),
            amount=Decimal(amount) if amount else None,
        )

    def refund(self, external_order_id, amount, reason, transaction_id=None):
        self.refunds.append((external_order_id, amount, reason, transaction_id))
        return RefundResult(success=True, refund_id=f"RF-{len(self.refunds)}", amount=amount)

    def close_order(self, external_order_id):
        if self.fail_close:
            from errors import PaymentProviderError
            raise PaymentProviderError("provider down")
        self.closed.append(external_order_id)
        return self.close_result


def notify_payload(order, trade_status="TRADE_SUCCESS", amount=None):
    return {
        "out_trade_no": order.order_no,
        "trade_no": f"ALI-{order.order_no}",
        "trade_status": trade_status,
        "total_amount": str(amount if amount is not None else order.amount),
        "app_id": "test-app",
    }


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def plans(db):
    monthly, yearly = ledger.ensure_default_plans(db)
    return monthly, yearly


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(username=None, email=None, **extra):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        user = User(
            username=username,
            email=email or f"{username}@example.com",
            password_hash="x",
            salt="x",
            **extra,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def alipay():
    return FakeProvider("alipay", "CNY")


@pytest.fixture
def paypal():
    return FakeProvider("paypal", "USD")


@pytest.fixture
def gateway(alipay, paypal):
    return PaymentGateway({"alipay": alipay, "paypal": paypal})


@pytest.fixture
def client(session_factory, plans, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    sweeper = ExpirySweeper(session_factory=session_factory)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_sweeper] = lambda: sweeper
    yield TestClient(app)
    app.dependency_overrides.clear()


def register(client, username, email=None, password=PASSWORD):
    resp = client.post("/api/auth/register", json={
        "username": username,
        "email": email or f"{username}@example.com",
        "password": password,
        "confirm_password": password,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_token(client):
    return register(client, "viewer")["token"]


@pytest.fixture
def admin_token(client):
    return register(client, "boss", email="admin@example.com")["token"]
