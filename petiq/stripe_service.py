import logging

import stripe

from petiq.config import DEMO_CUSTOMER_EMAIL, STRIPE_CUSTOMER_ID
from petiq.errors import GatewayError, GatewayUnavailable, NotFound, PaymentFailed
from petiq.gateway import (
    FAILED,
    PROCESSING,
    REQUIRES_ACTION,
    SUCCEEDED,
    CardDetails,
    PaymentGateway,
    PaymentOutcome,
    RefundOutcome,
    require_card_update,
)

logger = logging.getLogger(__name__)

_INTENT_STATUS = {
    "succeeded": SUCCEEDED,
    "processing": PROCESSING,
    "requires_capture": PROCESSING,
    "requires_action": REQUIRES_ACTION,
}


def _get(obj, name, default=None):
    if obj is None:
        return default
    value = getattr(obj, name, None)
    if value is None and isinstance(obj, dict):
        value = obj.get(name)
    return default if value is None else value


def card_from_stripe(pm) -> CardDetails:
    card = _get(pm, "card")
    return CardDetails(
        id=_get(pm, "id"),
        brand=_get(card, "brand"),
        last4=_get(card, "last4"),
        exp_month=_get(card, "exp_month"),
        exp_year=_get(card, "exp_year"),
        customer=_get(pm, "customer"),
        billing_name=_get(_get(pm, "billing_details"), "name"),
    )


def outcome_from_stripe(pi) -> PaymentOutcome:
    return PaymentOutcome(
        id=_get(pi, "id"),
        status=_INTENT_STATUS.get(_get(pi, "status"), FAILED),
        amount=_get(pi, "amount"),
        currency=_get(pi, "currency"),
        client_secret=_get(pi, "client_secret"),
        description=_get(pi, "description"),
        metadata=dict(_get(pi, "metadata", {}) or {}),
        customer=_get(pi, "customer"),
    )


def _message(err) -> str:
    return getattr(err, "user_message", None) or str(err) or "Payment provider error"


def _translate(op: str, err):
    """Map a Stripe exception onto the checkout error taxonomy."""
    if isinstance(err, stripe.APIConnectionError):
        logger.error("stripe %s unreachable: %s", op, err)
        return GatewayUnavailable()
    if isinstance(err, stripe.InvalidRequestError) and getattr(err, "code", None) == "resource_missing":
        return NotFound(_message(err))
    logger.error("stripe %s failed: %s", op, err)
    return GatewayError(_message(err))


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key: str):
        super().__init__()
        stripe.api_key = api_key
        if STRIPE_CUSTOMER_ID:
            self._customers[DEMO_CUSTOMER_EMAIL] = STRIPE_CUSTOMER_ID

    def _find_or_create_customer(self, email: str) -> str:
        try:
            found = stripe.Customer.search(query=f"email:'{email}'")
            if found.data:
                return found.data[0].id
        except stripe.StripeError as e:
            logger.warning("customer search failed, will create: %s", e)
        try:
            return stripe.Customer.create(email=email, name="PetIQ Customer").id
        except stripe.StripeError as e:
            raise _translate("customer.create", e) from e

    def create_setup_intent(self, customer: str) -> str:
        try:
            si = stripe.SetupIntent.create(usage="off_session", customer=customer)
        except stripe.StripeError as e:
            raise _translate("setup_intent.create", e) from e
        return si.client_secret

    def retrieve_payment_method(self, payment_method_id: str) -> CardDetails:
        try:
            pm = stripe.PaymentMethod.retrieve(payment_method_id)
        except stripe.StripeError as e:
            raise _translate("payment_method.retrieve", e) from e
        if not pm:
            raise NotFound(f"No such PaymentMethod: '{payment_method_id}'")
        return card_from_stripe(pm)

    def list_payment_methods(self, customer: str) -> list[CardDetails]:
        try:
            page = stripe.PaymentMethod.list(customer=customer, type="card")
        except stripe.StripeError as e:
            raise _translate("payment_method.list", e) from e
        cards = []
        for pm in page.data:
            card = card_from_stripe(pm)
            card.customer = card.customer or customer
            cards.append(card)
        return cards

    def update_payment_method(self, payment_method_id, billing_name=None, exp_month=None, exp_year=None):
        require_card_update(billing_name, exp_month, exp_year)
        update = {}
        if billing_name:
            update["billing_details"] = {"name": billing_name}
        if exp_month or exp_year:
            update["card"] = {}
            if exp_month:
                update["card"]["exp_month"] = int(exp_month)
            if exp_year:
                update["card"]["exp_year"] = int(exp_year)
        try:
            pm = stripe.PaymentMethod.modify(payment_method_id, **update)
        except stripe.StripeError as e:
            raise _translate("payment_method.modify", e) from e
        return card_from_stripe(pm)

    def detach_payment_method(self, payment_method_id: str) -> bool:
        try:
            stripe.PaymentMethod.detach(payment_method_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing" or "not attached" in str(e):
                logger.info("payment method %s already detached", payment_method_id)
                return False
            raise _translate("payment_method.detach", e) from e
        except stripe.StripeError as e:
            raise _translate("payment_method.detach", e) from e
        return True

    def _attach(self, payment_method_id: str, customer: str) -> None:
        try:
            stripe.PaymentMethod.attach(payment_method_id, customer=customer)
        except stripe.StripeError as e:
            raise _translate("payment_method.attach", e) from e

    def _create_intent(self, *, amount, currency, payment_method_id, customer, metadata, description,
                       idempotency_key):
        params = dict(
            amount=amount,
            currency=currency,
            customer=customer,
            payment_method=payment_method_id,
            confirm=True,
            off_session=True,
            description=description,
            metadata=metadata,
        )
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            pi = stripe.PaymentIntent.create(**params)
        except stripe.CardError as e:
            pi = getattr(getattr(e, "error", None), "payment_intent", None)
            if pi is not None and _get(pi, "status") == "requires_action":
                return outcome_from_stripe(pi)
            logger.info("card declined: %s", e)
            declined = None
            if pi is not None and _get(pi, "id"):
                declined = outcome_from_stripe(pi)
                declined.status = FAILED
            raise PaymentFailed(_message(e), declined) from e
        except stripe.StripeError as e:
            raise _translate("payment_intent.create", e) from e

        outcome = outcome_from_stripe(pi)
        if outcome.status == FAILED:
            err = _get(pi, "last_payment_error")
            raise PaymentFailed(_get(err, "message", "Payment failed"), outcome)
        return outcome

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentOutcome:
        try:
            pi = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            raise _translate("payment_intent.retrieve", e) from e
        return outcome_from_stripe(pi)

    def refund(self, payment_intent_id: str, amount: int | None = None) -> RefundOutcome:
        params = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = amount
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            raise _translate("refund.create", e) from e
        return RefundOutcome(
            id=_get(refund, "id"),
            payment_intent=_get(refund, "payment_intent", payment_intent_id),
            amount=_get(refund, "amount", amount),
            status=_get(refund, "status"),
        )

    def set_default_payment_method(self, customer: str, payment_method_id: str) -> None:
        try:
            stripe.Customer.modify(customer, invoice_settings={"default_payment_method": payment_method_id})
        except stripe.StripeError as e:
            raise _translate("customer.modify", e) from e
