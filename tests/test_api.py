import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from jose import jwt

from petiq import config
from petiq.main import app as fastapi_app
import petiq.auth
import petiq.checkout


def _charge(client, pm_id, amount=4999, **extra):
    body = {
        "amountMinorUnits": amount,
        "currencyCode": "LKR",
        "paymentMethodId": pm_id,
        "sourceTag": "appointment",
        "referenceId": "APPT_100",
    }
    body.update(extra)
    return client.post("/api/payment-intent", json=body)


def _ledger(client, **params):
    return client.get("/api/db/tx", params=params).json()


def test_root_reports_demo_gateway(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "gateway": "demo"}
    assert response.headers["x-request-id"]


def test_order_lookup(client):
    assert client.get("/api/order/demo1").json()["amount_cents"] == 4999

    response = client.get("/api/order/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "Order not found"}


def test_setup_intent(client):
    response = client.post("/api/setup-intent")

    assert response.status_code == 200
    data = response.json()
    assert data["clientSecret"].endswith("_secret_demo")
    assert data["customer"].startswith("cus_demo_")


def test_saved_card_is_listed_and_mirrored(client, save_card):
    card = save_card(name="Nimal Perera")

    listed = client.get("/api/payment-methods").json()
    assert [c["id"] for c in listed] == [card["id"]]
    assert listed[0]["billingName"] == "Nimal Perera"

    [row] = client.get("/api/db/cards").json()
    assert row["externalId"] == card["id"]
    assert row["ownerCustomerRef"] == card["customer"]
    assert row["last4"] == "4242"


def test_card_cap_refuses_setup_intent(client, save_card, gateway):
    for _ in range(3):
        save_card()

    response = client.post("/api/setup-intent")

    assert response.status_code == 409
    assert response.json() == {"error": "You can only save up to 3 cards.", "code": "limit_exceeded"}
    assert len(client.get("/api/payment-methods").json()) == 3


def test_card_cap_rechecked_when_two_saves_race(client, save_card, gateway):
    save_card()
    save_card()
    # Both tabs get a setup intent while the customer is still under the cap
    first = client.post("/api/setup-intent").json()["clientSecret"]
    second = client.post("/api/setup-intent").json()["clientSecret"]
    pm_a = gateway.tokenize_card("4242424242424242", 12, 2030)
    pm_b = gateway.tokenize_card("4000056655665556", 12, 2030)
    gateway.confirm_setup_intent(first, pm_a)
    gateway.confirm_setup_intent(second, pm_b)

    rejected = client.get(f"/api/payment-method/{pm_a}")
    accepted = client.get(f"/api/payment-method/{pm_b}")

    assert rejected.status_code == 409
    assert rejected.json()["code"] == "limit_exceeded"
    assert accepted.status_code == 200
    ids = [c["id"] for c in client.get("/api/payment-methods").json()]
    assert len(ids) == 3
    assert pm_a not in ids
    assert pm_a not in [row["externalId"] for row in client.get("/api/db/cards").json()]


def test_payment_method_of_another_customer_is_refused(client, save_card, claims):
    card = save_card()
    claims["email"] = "someone-else@petiq.lk"

    response = client.get(f"/api/payment-method/{card['id']}")
    assert response.status_code == 409
    assert response.json()["code"] == "conflict"


def test_edit_card(client, save_card):
    card = save_card()

    response = client.patch(
        f"/api/payment-method/{card['id']}",
        json={"name": "Kamala Silva", "expMonth": 6, "expYear": 2031},
    )

    assert response.status_code == 200
    assert response.json() == {"id": card["id"], "billingName": "Kamala Silva", "expMonth": 6, "expYear": 2031}
    [row] = client.get("/api/db/cards").json()
    assert (row["billingName"], row["expMonth"], row["expYear"]) == ("Kamala Silva", 6, 2031)


def test_edit_rejects_month_13(client, save_card):
    card = save_card()

    response = client.patch(f"/api/payment-method/{card['id']}", json={"expMonth": 13})

    assert response.status_code == 400
    assert "expMonth" in response.json()["fields"]


def test_edit_needs_something_to_change(client, save_card):
    card = save_card()

    response = client.patch(f"/api/payment-method/{card['id']}", json={"name": "   "})

    assert response.status_code == 400
    assert response.json()["error"] == "Provide name and/or expMonth, expYear"


def test_delete_card(client, save_card):
    card = save_card()

    response = client.delete(f"/api/payment-method/{card['id']}")

    assert response.json() == {"success": True}
    assert client.get("/api/payment-methods").json() == []
    assert client.get("/api/db/cards").json() == []


def test_delete_unknown_card_still_succeeds(client):
    response = client.delete("/api/payment-method/pm_gone")
    assert response.status_code == 200
    assert response.json() == {"success": True}


def test_default_payment_method(client, save_card, gateway):
    card = save_card()

    response = client.post("/api/default-payment-method", json={"paymentMethodId": card["id"]})

    assert response.json()["defaultPaymentMethod"] == card["id"]
    assert gateway.defaults[card["customer"]] == card["id"]


def test_charge_success_is_ledgered(client, save_card):
    card = save_card()

    response = _charge(client, card["id"])

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "succeeded"
    assert data["amount"] == 4999
    [tx] = _ledger(client, source="appointment")
    assert tx["externalId"] == data["id"]
    assert tx["amountMinorUnits"] == 4999
    assert tx["currencyCode"] == "lkr"
    assert tx["referenceId"] == "APPT_100"
    assert tx["description"] == "APPOINTMENT APPT_100"


@pytest.mark.parametrize("amount", [4999.5, 49.99, 0, -1, "4999"])
def test_charge_rejects_non_integer_amounts(client, save_card, amount):
    card = save_card()

    response = _charge(client, card["id"], amount=amount)

    assert response.status_code == 400
    assert "amountMinorUnits" in response.json()["fields"]
    assert _ledger(client) == []


def test_charge_rejects_bad_currency(client, save_card):
    card = save_card()

    response = _charge(client, card["id"], currencyCode="RUPEES")

    assert response.status_code == 400
    assert "currencyCode" in response.json()["fields"]


def test_charge_rejects_unknown_fields(client, save_card):
    card = save_card()
    assert _charge(client, card["id"], amountCents=4999).status_code == 400


def test_decline_is_ledgered_as_failed(client, save_card):
    card = save_card()

    response = _charge(client, card["id"], amount=5002)

    assert response.status_code == 400
    assert response.json() == {"error": "Your card was declined.", "code": "payment_failed"}
    [tx] = _ledger(client)
    assert tx["status"] == "failed"


def test_cross_customer_charge_is_refused_without_ledger_entry(client, save_card, claims):
    card = save_card()
    claims["email"] = "intruder@petiq.lk"

    response = _charge(client, card["id"])

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"
    assert _ledger(client) == []


def test_idempotent_retry_leaves_one_ledger_row(client, save_card):
    card = save_card()

    first = _charge(client, card["id"], idempotencyKey="attempt-0001").json()
    second = _charge(client, card["id"], idempotencyKey="attempt-0001").json()

    assert first["id"] == second["id"]
    assert len(_ledger(client)) == 1


def test_requires_action_is_not_ledgered_until_confirmed(client, save_card, gateway):
    card = save_card()

    pending = _charge(client, card["id"], amount=5003).json()

    assert pending["requiresAction"] is True
    assert pending["clientSecret"]
    assert pending["amount"] == 5003
    assert _ledger(client) == []

    # Not authenticated yet: still an action, still nothing ledgered
    again = client.post(f"/api/payment-intent/{pending['id']}/confirm").json()
    assert again["requiresAction"] is True
    assert _ledger(client) == []

    gateway.complete_authentication(pending["clientSecret"])
    confirmed = client.post(f"/api/payment-intent/{pending['id']}/confirm")

    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "succeeded"
    [tx] = _ledger(client)
    assert tx["status"] == "succeeded"
    assert tx["sourceTag"] == "appointment"
    assert tx["referenceId"] == "APPT_100"


def test_failed_authentication_is_ledgered_as_failed(client, save_card, gateway):
    card = save_card()
    pending = _charge(client, card["id"], amount=5003).json()
    gateway.complete_authentication(pending["clientSecret"], approve=False)

    response = client.post(f"/api/payment-intent/{pending['id']}/confirm")

    assert response.status_code == 400
    assert response.json()["error"] == "Payment authentication failed."
    [tx] = _ledger(client)
    assert tx["status"] == "failed"


def test_confirm_refuses_other_customers_payment(client, save_card, claims):
    card = save_card()
    pending = _charge(client, card["id"], amount=5003).json()
    claims["email"] = "intruder@petiq.lk"

    response = client.post(f"/api/payment-intent/{pending['id']}/confirm")
    assert response.status_code == 409


def test_refund_refuses_other_customers_payment(client, save_card, claims, gateway):
    card = save_card()
    pi_id = _charge(client, card["id"], amount=5000).json()["id"]
    claims["email"] = "intruder@petiq.lk"

    response = client.post("/api/refund", json={"paymentIntentId": pi_id})

    assert response.status_code == 409
    assert response.json() == {"error": "Payment belongs to a different customer", "code": "conflict"}
    assert gateway._refunded == {}


def test_admin_routes_need_admin_role(client, claims):
    claims.pop("role")

    assert client.get("/api/admin/tx").status_code == 403
    assert client.post("/api/admin/tx/bulk-delete", json={"all": True}).status_code == 403
    assert client.post("/api/admin/cards/reconcile").status_code == 403
    assert client.get("/api/db/tx").status_code == 403
    assert client.get("/api/db/cards").status_code == 403
    assert client.request("DELETE", "/api/db/tx", params={"all": "true"}).status_code == 403
    # Customer routes stay open to the same token
    assert client.get("/api/payment-methods").status_code == 200


def test_gateway_is_built_once_under_concurrency(monkeypatch):
    built = []

    def slow_build():
        time.sleep(0.05)
        built.append(object())
        return built[-1]

    monkeypatch.setattr(petiq.checkout, "_gateway", None)
    monkeypatch.setattr(petiq.checkout, "build_gateway", slow_build)

    with ThreadPoolExecutor(max_workers=8) as pool:
        gateways = list(pool.map(lambda _: petiq.checkout.get_gateway(), range(8)))

    assert len(built) == 1
    assert all(gw is built[0] for gw in gateways)


def test_refund(client, save_card):
    card = save_card()
    pi_id = _charge(client, card["id"], amount=5000).json()["id"]

    partial = client.post("/api/refund", json={"paymentIntentId": pi_id, "amountMinorUnits": 1000})
    rest = client.post("/api/refund", json={"paymentIntentId": pi_id})
    over = client.post("/api/refund", json={"paymentIntentId": pi_id, "amountMinorUnits": 1})

    assert partial.json()["refund"]["amount"] == 1000
    assert rest.json()["refund"]["amount"] == 4000
    assert over.status_code == 400


def test_missing_token_is_unauthorized(client):
    fastapi_app.dependency_overrides.pop(petiq.auth.verify_token)

    assert client.get("/api/payment-methods").status_code == 401
    assert client.get("/api/payment-methods", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/api/admin/tx").status_code == 401


def test_token_email_selects_customer(client, gateway):
    fastapi_app.dependency_overrides.pop(petiq.auth.verify_token)
    token = jwt.encode({"email": "token-holder@petiq.lk"}, config.JWT_SECRET, algorithm="HS256")

    response = client.post("/api/setup-intent", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["customer"] == gateway.resolve_customer("token-holder@petiq.lk")
