from conftest import bearer, notify_payload
from models import PaymentOrder, Subscription


def _create(client, token, plan_id, provider="alipay", **extra):
    resp = client.post(f"/api/payment/{provider}/create", headers=bearer(token), json={"plan_id": plan_id, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _order(db, order_no):
    db.expire_all()
    return db.query(PaymentOrder).filter(PaymentOrder.order_no == order_no).one()


def test_config_status(client, alipay, paypal):
    paypal.configured = False
    data = client.get("/api/payment/config/status").json()["data"]
    assert data["supported_methods"] == ["alipay"]


def test_create_requires_login_and_known_provider(client, user_token, plans):
    resp = client.post("/api/payment/alipay/create", json={"plan_id": plans[0].id})
    assert resp.status_code == 401
    resp = client.post("/api/payment/stripe/create", headers=bearer(user_token), json={"plan_id": plans[0].id})
    assert (resp.status_code, resp.json()["error"]) == (400, "UNSUPPORTED_PROVIDER")
    resp = client.post("/api/payment/alipay/create", headers=bearer(user_token),
                       json={"plan_id": plans[0].id, "payment_type": "kiosk"})
    assert resp.status_code == 400


def test_unconfigured_provider(client, user_token, plans, paypal):
    paypal.configured = False
    resp = client.post("/api/payment/paypal/create", headers=bearer(user_token), json={"plan_id": plans[0].id})
    assert (resp.status_code, resp.json()["error"]) == (503, "PAYMENT_NOT_CONFIGURED")


def test_alipay_notify_flow(client, db, user_token, plans, alipay):
    order = _create(client, user_token, plans[0].id, payment_type="mobile")
    assert order["payment_url"].startswith("https://pay.example/")
    assert order["state"] == "pending"
    assert alipay.created[0].payment_type == "mobile"
    assert client.get("/api/subscription/access", headers=bearer(user_token)).status_code == 403

    payload = alipay.sign(notify_payload(_order(db, order["order_no"])))
    for _ in range(2):
        resp = client.post("/api/payment/alipay/notify", data=payload)
        assert resp.status_code == 200
        assert resp.text == "success"

    assert client.get("/api/subscription/access", headers=bearer(user_token)).status_code == 200
    assert db.query(Subscription).count() == 1

    resp = client.get(f"/api/payment/alipay/query/{order['order_no']}", headers=bearer(user_token))
    assert resp.json()["data"]["state"] == "succeeded"


def test_alipay_notify_rejects_forgery(client, db, user_token, plans, alipay):
    order = _create(client, user_token, plans[0].id)
    payload = alipay.sign(notify_payload(_order(db, order["order_no"])))
    payload["sign"] = "0" * 64
    resp = client.post("/api/payment/alipay/notify", data=payload)
    assert resp.text == "fail"
    assert _order(db, order["order_no"]).state == "pending"
    assert client.get("/api/subscription/access", headers=bearer(user_token)).status_code == 403


def test_paypal_notify_rejects_unverified(client, user_token, plans):
    _create(client, user_token, plans[0].id, provider="paypal")
    resp = client.post("/api/payment/paypal/notify", json={"event_type": "PAYMENT.CAPTURE.COMPLETED"})
    assert (resp.status_code, resp.json()["error"]) == (400, "INVALID_CALLBACK")
    assert resp.json()["message"] == "Callback rejected"


def test_query_polls_provider(client, db, user_token, plans, alipay):
    order = _create(client, user_token, plans[0].id)
    url = f"/api/payment/alipay/query/{order['order_no']}"
    assert client.get(url, headers=bearer(user_token)).json()["data"]["state"] == "pending"

    row = _order(db, order["order_no"])
    alipay.succeed(row.external_order_id, row.amount)
    data = client.get(url, headers=bearer(user_token)).json()["data"]
    assert data["state"] == "succeeded"
    assert data["subscription_id"] is not None


def test_query_other_users_order(client, user_token, plans):
    from conftest import register
    order = _create(client, user_token, plans[0].id)
    other = register(client, "other")["token"]
    resp = client.get(f"/api/payment/alipay/query/{order['order_no']}", headers=bearer(other))
    assert (resp.status_code, resp.json()["error"]) == (404, "ORDER_NOT_FOUND")


def test_return_redirects_by_outcome(client, db, user_token, plans, alipay):
    order = _create(client, user_token, plans[0].id)
    row = _order(db, order["order_no"])
    alipay.succeed(row.external_order_id, row.amount)
    params = alipay.sign({"out_trade_no": order["order_no"], "total_amount": str(row.amount)})

    resp = client.get("/api/payment/alipay/return", params=params, follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == f"/payment/success?order_no={order['order_no']}"

    resp = client.get("/api/payment/alipay/return", params={"out_trade_no": order["order_no"], "sign": "x"},
                      follow_redirects=False)
    assert resp.headers["location"] == "/payment/failed"


def test_paypal_return_uses_provider_order_id(client, db, user_token, plans, paypal):
    order = _create(client, user_token, plans[0].id, provider="paypal")
    row = _order(db, order["order_no"])
    resp = client.get("/api/payment/paypal/return", params={"token": row.external_order_id, "PayerID": "X"},
                      follow_redirects=False)
    assert resp.headers["location"] == f"/payment/pending?order_no={order['order_no']}"

    paypal.succeed(row.external_order_id, row.amount)
    resp = client.get("/api/payment/paypal/return", params={"token": row.external_order_id},
                      follow_redirects=False)
    assert resp.headers["location"] == f"/payment/success?order_no={order['order_no']}"


def test_paypal_cancel_redirect(client, db, user_token, plans):
    order = _create(client, user_token, plans[0].id, provider="paypal")
    row = _order(db, order["order_no"])

    # without the matching PayPal token the order is left alone
    resp = client.get("/api/payment/paypal/cancel", params={"order_no": order["order_no"]}, follow_redirects=False)
    assert resp.headers["location"] == f"/payment/pending?order_no={order['order_no']}"

    resp = client.get("/api/payment/paypal/cancel",
                      params={"order_no": order["order_no"], "token": row.external_order_id},
                      follow_redirects=False)
    assert resp.headers["location"] == f"/payment/cancelled?order_no={order['order_no']}"
    assert _order(db, order["order_no"]).state == "cancelled"


def test_user_cancels_pending_order(client, user_token, plans, alipay):
    order = _create(client, user_token, plans[0].id)
    resp = client.post(f"/api/payment/alipay/cancel/{order['order_no']}", headers=bearer(user_token))
    assert resp.json()["data"]["state"] == "cancelled"
    assert len(alipay.closed) == 1


def test_refund_is_admin_only(client, db, user_token, admin_token, plans, alipay):
    order = _create(client, user_token, plans[0].id)
    client.post("/api/payment/alipay/notify", data=alipay.sign(notify_payload(_order(db, order["order_no"]))))

    body = {"order_no": order["order_no"], "amount": 9.9, "reason": "customer request"}
    resp = client.post("/api/payment/alipay/refund", headers=bearer(user_token), json=body)
    assert (resp.status_code, resp.json()["error"]) == (403, "ADMIN_REQUIRED")

    resp = client.post("/api/payment/alipay/refund", headers=bearer(admin_token), json=body)
    assert resp.status_code == 200
    assert resp.json()["data"]["success"] is True
    # entitlement is not revoked by a refund
    assert client.get("/api/subscription/access", headers=bearer(user_token)).status_code == 200


def test_cancel_refused_when_provider_cannot_close(client, db, user_token, plans, alipay):
    order = _create(client, user_token, plans[0].id)
    alipay.close_result = False
    resp = client.post(f"/api/payment/alipay/cancel/{order['order_no']}", headers=bearer(user_token))
    assert (resp.status_code, resp.json()["error"]) == (409, "ORDER_NOT_CLOSABLE")
    assert _order(db, order["order_no"]).state == "pending"

    # a payment that still lands is honoured
    resp = client.post("/api/payment/alipay/notify", data=alipay.sign(notify_payload(_order(db, order["order_no"]))))
    assert resp.text == "success"
    assert client.get("/api/subscription/access", headers=bearer(user_token)).status_code == 200
