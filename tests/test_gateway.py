import pytest

from petiq.errors import Conflict, GatewayError, NotFound, PaymentFailed, ValidationError
from petiq.gateway import FAILED, SUCCEEDED, DemoGateway


@pytest.fixture
def gw():
    return DemoGateway()


def _saved_card(gw, email="a@petiq.lk", number="4242424242424242"):
    customer = gw.resolve_customer(email)
    secret = gw.create_setup_intent(customer)
    pm_id = gw.tokenize_card(number, 12, 2030, billing_name="Nimal Perera")
    gw.confirm_setup_intent(secret, pm_id)
    return customer, pm_id


def test_customers_are_resolved_per_email(gw):
    a = gw.resolve_customer("a@petiq.lk")
    b = gw.resolve_customer("b@petiq.lk")

    assert a != b
    assert gw.resolve_customer("a@petiq.lk") == a

    gw.invalidate_customer("a@petiq.lk")
    assert gw.resolve_customer("a@petiq.lk") == a


def test_setup_intent_secret_is_marked_as_demo(gw):
    secret = gw.create_setup_intent(gw.resolve_customer("a@petiq.lk"))
    assert secret.endswith("_secret_demo")


def test_tokenized_card_is_listed_for_its_customer(gw):
    customer, pm_id = _saved_card(gw, number="5555 5555 5555 4444")

    [card] = gw.list_payment_methods(customer)
    assert card.id == pm_id
    assert card.brand == "mastercard"
    assert card.last4 == "4444"
    assert card.customer == customer
    assert gw.list_payment_methods(gw.resolve_customer("b@petiq.lk")) == []


def test_tokenize_rejects_short_numbers(gw):
    with pytest.raises(GatewayError):
        gw.tokenize_card("4242", 12, 2030)


def test_unknown_demo_method_is_materialized_unowned(gw):
    card = gw.retrieve_payment_method("pm_demo_999")
    assert (card.brand, card.last4, card.customer) == ("visa", "4242", None)

    with pytest.raises(NotFound):
        gw.retrieve_payment_method("pm_live_999")


def test_charge_outcome_follows_amount(gw):
    customer, pm_id = _saved_card(gw)

    ok = gw.create_and_confirm_payment_intent(4999, "lkr", pm_id, customer)
    assert ok.status == SUCCEEDED

    action = gw.create_and_confirm_payment_intent(5003, "lkr", pm_id, customer)
    assert action.requires_action
    assert action.client_secret

    with pytest.raises(PaymentFailed) as exc:
        gw.create_and_confirm_payment_intent(5002, "lkr", pm_id, customer)
    assert exc.value.outcome.status == FAILED
    assert exc.value.message == "Your card was declined."


@pytest.mark.parametrize("amount", [0, -100, 49.99, 4999.5, True, "4999"])
def test_charge_rejects_anything_but_positive_integers(gw, amount):
    customer, pm_id = _saved_card(gw)
    with pytest.raises(ValidationError):
        gw.create_and_confirm_payment_intent(amount, "lkr", pm_id, customer)


def test_charge_attaches_unowned_method_first(gw):
    customer = gw.resolve_customer("a@petiq.lk")
    outcome = gw.create_and_confirm_payment_intent(1000, "lkr", "pm_demo_77", customer)

    assert outcome.status == SUCCEEDED
    assert gw.retrieve_payment_method("pm_demo_77").customer == customer


def test_charge_refuses_method_owned_by_someone_else(gw):
    _, pm_id = _saved_card(gw, "a@petiq.lk")
    intruder = gw.resolve_customer("b@petiq.lk")

    with pytest.raises(Conflict):
        gw.create_and_confirm_payment_intent(1000, "lkr", pm_id, intruder)
    assert gw._intents == {}


def test_idempotency_key_replays_first_outcome(gw):
    customer, pm_id = _saved_card(gw)

    first = gw.create_and_confirm_payment_intent(1000, "lkr", pm_id, customer, idempotency_key="attempt-0001")
    second = gw.create_and_confirm_payment_intent(1000, "lkr", pm_id, customer, idempotency_key="attempt-0001")
    third = gw.create_and_confirm_payment_intent(1000, "lkr", pm_id, customer, idempotency_key="attempt-0002")

    assert first.id == second.id
    assert third.id != first.id


@pytest.mark.parametrize("approve,status", [(True, SUCCEEDED), (False, FAILED)])
def test_complete_authentication(gw, approve, status):
    customer, pm_id = _saved_card(gw)
    action = gw.create_and_confirm_payment_intent(5003, "lkr", pm_id, customer)

    assert gw.complete_authentication(action.client_secret, approve).status == status
    assert gw.retrieve_payment_intent(action.id).status == status


def test_refund_tracks_remaining_amount(gw):
    customer, pm_id = _saved_card(gw)
    pi = gw.create_and_confirm_payment_intent(5000, "lkr", pm_id, customer)

    partial = gw.refund(pi.id, 2000)
    rest = gw.refund(pi.id)

    assert (partial.amount, rest.amount) == (2000, 3000)
    assert rest.to_dict()["paymentIntent"] == pi.id
    with pytest.raises(GatewayError):
        gw.refund(pi.id, 1)


def test_update_payment_method(gw):
    _, pm_id = _saved_card(gw)

    card = gw.update_payment_method(pm_id, billing_name="Kamala Silva", exp_month=6, exp_year=2031)
    assert (card.billing_name, card.exp_month, card.exp_year) == ("Kamala Silva", 6, 2031)

    with pytest.raises(ValidationError):
        gw.update_payment_method(pm_id)
    with pytest.raises(GatewayError):
        gw.update_payment_method(pm_id, exp_month=13)
    with pytest.raises(NotFound):
        gw.update_payment_method("pm_missing", billing_name="x")


def test_detach_is_idempotent(gw):
    customer, pm_id = _saved_card(gw)

    assert gw.detach_payment_method(pm_id) is True
    assert gw.detach_payment_method(pm_id) is False
    assert gw.list_payment_methods(customer) == []


def test_default_payment_method_must_be_owned(gw):
    customer, pm_id = _saved_card(gw, "a@petiq.lk")
    gw.set_default_payment_method(customer, pm_id)
    assert gw.defaults[customer] == pm_id

    with pytest.raises(Conflict):
        gw.set_default_payment_method(gw.resolve_customer("b@petiq.lk"), pm_id)
