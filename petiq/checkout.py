"""Checkout orchestration: sequences gateway calls, applies business rules and
keeps the local mirrors in step with the provider."""

import logging
import threading

from petiq.config import MAX_SAVED_CARDS, STRIPE_SECRET_KEY, stripe_configured
from petiq.errors import Conflict, LimitExceeded, NotFound, PaymentFailed
from petiq.gateway import DemoGateway, PaymentGateway, FAILED
from petiq.mirror import (
    TransactionFilters,
    best_effort,
    delete_card,
    delete_transactions,
    query_transactions,
    reconcile_cards,
    upsert_card,
    upsert_transaction,
)
from petiq.schemas import BulkDeleteRequest, CardUpdateRequest, ChargeRequest, RefundRequest

logger = logging.getLogger(__name__)

# Sample bills the storefront links to while there is no order service
ORDERS = {
    "demo1": {"amount_cents": 4999, "currency": "usd", "description": "Outpatient bill #demo1"},
    "demo2": {"amount_cents": 12999, "currency": "usd", "description": "Cart #demo2"},
    "demo3": {"amount_cents": 2599, "currency": "usd", "description": "Lab tests #demo3"},
}

_gateway: PaymentGateway | None = None
_gateway_lock = threading.Lock()


def build_gateway() -> PaymentGateway:
    if stripe_configured():
        from petiq.stripe_service import StripeGateway

        logger.info("Stripe configured successfully")
        return StripeGateway(STRIPE_SECRET_KEY)
    logger.warning("Stripe not configured or demo mode forced; payments will be simulated")
    return DemoGateway()


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                _gateway = build_gateway()
    return _gateway


def get_order(order_id: str) -> dict:
    order = ORDERS.get(order_id)
    if order is None:
        raise NotFound("Order not found")
    return order


def _limit_message() -> str:
    return f"You can only save up to {MAX_SAVED_CARDS} cards."


def _owned_card(gateway: PaymentGateway, customer: str, payment_method_id: str):
    card = gateway.retrieve_payment_method(payment_method_id)
    if card.customer is not None and card.customer != customer:
        raise Conflict("Payment method belongs to a different customer")
    return card


def begin_card_save(db, gateway: PaymentGateway, email: str) -> dict:
    """Start a card save. Refused up front when the customer is at the cap."""
    customer = gateway.resolve_customer(email)
    cards = gateway.list_payment_methods(customer)
    for card in cards:
        best_effort(db, "upsert card", upsert_card, card, customer)
    if len(cards) >= MAX_SAVED_CARDS:
        logger.info("card limit reached customer=%s count=%s", customer, len(cards))
        raise LimitExceeded(_limit_message())
    return {"clientSecret": gateway.create_setup_intent(customer), "customer": customer}


def fetch_payment_method(db, gateway: PaymentGateway, email: str, payment_method_id: str) -> dict:
    """Normalize a tokenized method and mirror it once it belongs to the caller.

    A freshly attached card that takes the customer past the cap (two saves
    racing from separate tabs) is detached again and rejected.
    """
    customer = gateway.resolve_customer(email)
    card = _owned_card(gateway, customer, payment_method_id)
    if card.customer == customer:
        owned = gateway.list_payment_methods(customer)
        if len(owned) > MAX_SAVED_CARDS:
            gateway.detach_payment_method(payment_method_id)
            best_effort(db, "delete card", delete_card, payment_method_id)
            raise LimitExceeded(_limit_message())
        best_effort(db, "upsert card", upsert_card, card, customer)
    return card.to_dict()


def list_payment_methods(db, gateway: PaymentGateway, email: str) -> list[dict]:
    customer = gateway.resolve_customer(email)
    cards = gateway.list_payment_methods(customer)
    for card in cards:
        best_effort(db, "upsert card", upsert_card, card, customer)
    return [card.to_dict() for card in cards]


def edit_payment_method(db, gateway: PaymentGateway, email: str, payment_method_id: str,
                        update: CardUpdateRequest) -> dict:
    customer = gateway.resolve_customer(email)
    _owned_card(gateway, customer, payment_method_id)
    card = gateway.update_payment_method(
        payment_method_id,
        billing_name=update.name,
        exp_month=update.exp_month,
        exp_year=update.exp_year,
    )
    best_effort(db, "upsert card", upsert_card, card, customer)
    return {
        "id": card.id,
        "billingName": card.billing_name,
        "expMonth": card.exp_month,
        "expYear": card.exp_year,
    }


def remove_payment_method(db, gateway: PaymentGateway, email: str, payment_method_id: str) -> dict:
    customer = gateway.resolve_customer(email)
    try:
        _owned_card(gateway, customer, payment_method_id)
    except NotFound:
        logger.info("payment method %s unknown to gateway, clearing mirror only", payment_method_id)
    else:
        gateway.detach_payment_method(payment_method_id)
    best_effort(db, "delete card", delete_card, payment_method_id)
    return {"success": True}


def set_default_payment_method(gateway: PaymentGateway, email: str, payment_method_id: str) -> dict:
    customer = gateway.resolve_customer(email)
    _owned_card(gateway, customer, payment_method_id)
    gateway.set_default_payment_method(customer, payment_method_id)
    return {"success": True, "customer": customer, "defaultPaymentMethod": payment_method_id}


def _charge_result(row_status: str, outcome) -> dict:
    return {"success": True, "id": outcome.id, "status": row_status, "amount": outcome.amount}


def _action_result(outcome) -> dict:
    return {
        "requiresAction": True,
        "id": outcome.id,
        "clientSecret": outcome.client_secret,
        "amount": outcome.amount,
    }


def charge(db, gateway: PaymentGateway, email: str, req: ChargeRequest) -> dict:
    """Charge a saved card.

    Only terminal or semi-terminal outcomes reach the ledger; a step-up
    challenge is handed back to the client and recorded once
    `confirm_payment` sees it resolved.
    """
    customer = gateway.resolve_customer(email)
    description = req.default_description()
    metadata = {}
    if req.source_tag:
        metadata["source"] = req.source_tag
    if req.reference_id:
        metadata["ref_id"] = req.reference_id

    try:
        outcome = gateway.create_and_confirm_payment_intent(
            req.amount_minor_units,
            req.currency_code,
            req.payment_method_id,
            customer,
            metadata=metadata,
            description=description,
            idempotency_key=req.idempotency_key,
        )
    except PaymentFailed as e:
        if e.outcome is not None:
            best_effort(db, "upsert tx", upsert_transaction, e.outcome, req.source_tag, req.reference_id, description)
        raise

    if outcome.requires_action:
        logger.info("payment %s requires action", outcome.id)
        return _action_result(outcome)

    row = best_effort(db, "upsert tx", upsert_transaction, outcome, req.source_tag, req.reference_id, description)
    logger.info("payment %s %s amount=%s %s", outcome.id, outcome.status, outcome.amount, outcome.currency)
    return _charge_result(row.status if row else outcome.status, outcome)


def confirm_payment(db, gateway: PaymentGateway, email: str, payment_intent_id: str) -> dict:
    """Re-read an intent after client-side authentication and ledger the result."""
    customer = gateway.resolve_customer(email)
    outcome = gateway.retrieve_payment_intent(payment_intent_id)
    if outcome.customer is not None and outcome.customer != customer:
        raise Conflict("Payment belongs to a different customer")
    if outcome.requires_action:
        return _action_result(outcome)

    row = best_effort(db, "upsert tx", upsert_transaction, outcome)
    if outcome.status == FAILED:
        raise PaymentFailed("Payment authentication failed.", outcome)
    return _charge_result(row.status if row else outcome.status, outcome)


def refund(gateway: PaymentGateway, email: str, req: RefundRequest) -> dict:
    customer = gateway.resolve_customer(email)
    outcome = gateway.retrieve_payment_intent(req.payment_intent_id)
    if outcome.customer is not None and outcome.customer != customer:
        raise Conflict("Payment belongs to a different customer")
    result = gateway.refund(req.payment_intent_id, req.amount_minor_units)
    logger.info("refund %s for %s amount=%s", result.id, result.payment_intent, result.amount)
    return {"success": True, "refund": result.to_dict()}


def list_transactions(db, filters: TransactionFilters) -> list[dict]:
    return [row.to_dict() for row in query_transactions(db, filters)]


def bulk_delete(db, req: BulkDeleteRequest) -> dict:
    deleted = delete_transactions(db, all_rows=req.all, ids=req.ids, source=req.source, ref=req.ref)
    logger.info("bulk delete removed %s transactions", deleted)
    return {"success": True, "deletedCount": deleted}


def reconcile(db, gateway: PaymentGateway, email: str) -> dict:
    customer = gateway.resolve_customer(email)
    result = reconcile_cards(db, customer, gateway.list_payment_methods(customer))
    logger.info("reconciled cards customer=%s %s", customer, result)
    return {"customer": customer, **result}
