"""Payment gateway seam.

`PaymentGateway` is the only thing the orchestrator knows about the card
provider. `StripeGateway` (see `petiq.stripe_service`) talks to Stripe;
`DemoGateway` answers deterministically from memory when no usable key is
configured, so the whole checkout can be exercised offline.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace

from petiq.errors import Conflict, GatewayError, NotFound, PaymentFailed, ValidationError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
REQUIRES_ACTION = "requires_action"
PROCESSING = "processing"
FAILED = "failed"

# Sentinel callers use to recognise offline setup-intent secrets
DEMO_SENTINEL = "demo"


@dataclass
class CardDetails:
    id: str
    brand: str | None
    last4: str | None
    exp_month: int | None
    exp_year: int | None
    customer: str | None = None
    billing_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "last4": self.last4,
            "expMonth": self.exp_month,
            "expYear": self.exp_year,
            "customer": self.customer,
            "billingName": self.billing_name,
        }


@dataclass
class PaymentOutcome:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    description: str | None = None
    metadata: dict = field(default_factory=dict)
    customer: str | None = None

    @property
    def requires_action(self) -> bool:
        return self.status == REQUIRES_ACTION


@dataclass
class RefundOutcome:
    id: str
    payment_intent: str
    amount: int
    status: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "paymentIntent": self.payment_intent,
            "amount": self.amount,
            "status": self.status,
        }


def require_card_update(billing_name, exp_month, exp_year) -> None:
    if not billing_name and not exp_month and not exp_year:
        raise ValidationError("Provide name and/or expMonth, expYear")


class PaymentGateway(ABC):
    """Customer lookups are cached per email; call `invalidate_customer` to drop one."""

    name = "abstract"

    def __init__(self):
        self._customers: dict[str, str] = {}

    def resolve_customer(self, email: str) -> str:
        customer = self._customers.get(email)
        if customer is None:
            customer = self._find_or_create_customer(email)
            self._customers[email] = customer
        return customer

    def invalidate_customer(self, email: str) -> None:
        self._customers.pop(email, None)

    def create_and_confirm_payment_intent(
        self,
        amount: int,
        currency: str,
        payment_method_id: str,
        customer: str,
        metadata: dict | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentOutcome:
        """Charge a saved method off-session.

        The method is attached to `customer` first when it has no owner; a
        method owned by anyone else is refused before any charge is created.
        Declines raise `PaymentFailed`; a step-up challenge comes back as a
        `requires_action` outcome.
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 1:
            raise ValidationError("amount must be an integer (minor units) >= 1", {"amountMinorUnits": "Must be a positive integer"})

        pm = self.retrieve_payment_method(payment_method_id)
        if pm.customer is None:
            self._attach(payment_method_id, customer)
        elif pm.customer != customer:
            raise Conflict("Payment method belongs to a different customer")

        return self._create_intent(
            amount=amount,
            currency=currency,
            payment_method_id=payment_method_id,
            customer=customer,
            metadata=metadata or {},
            description=description,
            idempotency_key=idempotency_key,
        )

    @abstractmethod
    def _find_or_create_customer(self, email: str) -> str: ...

    @abstractmethod
    def _attach(self, payment_method_id: str, customer: str) -> None: ...

    @abstractmethod
    def _create_intent(self, *, amount, currency, payment_method_id, customer, metadata, description,
                       idempotency_key) -> PaymentOutcome: ...

    @abstractmethod
    def create_setup_intent(self, customer: str) -> str:
        """Return the client secret of a new off-session SetupIntent."""

    @abstractmethod
    def retrieve_payment_method(self, payment_method_id: str) -> CardDetails: ...

    @abstractmethod
    def list_payment_methods(self, customer: str) -> list[CardDetails]: ...

    @abstractmethod
    def update_payment_method(self, payment_method_id: str, billing_name=None, exp_month=None,
                              exp_year=None) -> CardDetails: ...

    @abstractmethod
    def detach_payment_method(self, payment_method_id: str) -> bool:
        """Detach; returns False when the provider says it was already gone."""

    @abstractmethod
    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentOutcome: ...

    @abstractmethod
    def refund(self, payment_intent_id: str, amount: int | None = None) -> RefundOutcome: ...

    @abstractmethod
    def set_default_payment_method(self, customer: str, payment_method_id: str) -> None: ...


def _brand_for(number: str) -> str:
    if number.startswith("4"):
        return "visa"
    if number[:2] in ("34", "37"):
        return "amex"
    if number[:1] == "5" or number[:1] == "2":
        return "mastercard"
    return "unknown"


class DemoGateway(PaymentGateway):
    """Offline stand-in with predictable ids.

    Amounts ending in 02 are declined and amounts ending in 03 require
    step-up authentication, everything else succeeds.
    """

    name = "demo"

    def __init__(self):
        super().__init__()
        self._seq = itertools.count(1)
        self._emails: dict[str, str] = {}
        self._setup_intents: dict[str, str] = {}
        self._methods: dict[str, CardDetails] = {}
        self._intents: dict[str, PaymentOutcome] = {}
        self._by_key: dict[str, str] = {}
        self._refunded: dict[str, int] = {}
        self.defaults: dict[str, str] = {}

    def _next(self, prefix: str) -> str:
        return f"{prefix}_demo_{next(self._seq)}"

    def _find_or_create_customer(self, email: str) -> str:
        if email not in self._emails:
            self._emails[email] = self._next("cus")
            logger.info("demo customer created email=%s id=%s", email, self._emails[email])
        return self._emails[email]

    def create_setup_intent(self, customer: str) -> str:
        secret = f"{self._next('seti')}_secret_{DEMO_SENTINEL}"
        self._setup_intents[secret] = customer
        return secret

    # Client-side tokenization, as the browser widget would perform it
    def tokenize_card(self, number: str, exp_month: int, exp_year: int, billing_name: str | None = None) -> str:
        digits = "".join(ch for ch in number if ch.isdigit())
        if len(digits) < 12:
            raise GatewayError("Your card number is incomplete.")
        pm_id = self._next("pm")
        self._methods[pm_id] = CardDetails(
            id=pm_id,
            brand=_brand_for(digits),
            last4=digits[-4:],
            exp_month=exp_month,
            exp_year=exp_year,
            billing_name=billing_name,
        )
        return pm_id

    def confirm_setup_intent(self, client_secret: str, payment_method_id: str) -> None:
        customer = self._setup_intents.pop(client_secret, None)
        if customer is None:
            raise GatewayError("No such setupintent")
        self._attach(payment_method_id, customer)

    def complete_authentication(self, client_secret: str, approve: bool = True) -> PaymentOutcome:
        for outcome in self._intents.values():
            if outcome.client_secret == client_secret:
                if outcome.status == REQUIRES_ACTION:
                    outcome.status = SUCCEEDED if approve else FAILED
                return replace(outcome)
        raise GatewayError("No such payment_intent")

    def retrieve_payment_method(self, payment_method_id: str) -> CardDetails:
        pm = self._methods.get(payment_method_id)
        if pm is None:
            if not payment_method_id.startswith("pm_demo_"):
                raise NotFound(f"No such PaymentMethod: '{payment_method_id}'")
            # Unknown demo ids come from a browser that tokenized on its own
            pm = CardDetails(payment_method_id, "visa", "4242", 12, 2030, None, "Demo User")
            self._methods[payment_method_id] = pm
        return replace(pm)

    def list_payment_methods(self, customer: str) -> list[CardDetails]:
        return [replace(pm) for pm in self._methods.values() if pm.customer == customer]

    def update_payment_method(self, payment_method_id, billing_name=None, exp_month=None, exp_year=None):
        require_card_update(billing_name, exp_month, exp_year)
        pm = self._methods.get(payment_method_id)
        if pm is None:
            raise NotFound(f"No such PaymentMethod: '{payment_method_id}'")
        if exp_month and not 1 <= int(exp_month) <= 12:
            raise GatewayError("Your card's expiration month is invalid.")
        if billing_name:
            pm.billing_name = billing_name
        if exp_month:
            pm.exp_month = int(exp_month)
        if exp_year:
            pm.exp_year = int(exp_year)
        return replace(pm)

    def detach_payment_method(self, payment_method_id: str) -> bool:
        pm = self._methods.get(payment_method_id)
        if pm is None or pm.customer is None:
            return False
        pm.customer = None
        return True

    def _attach(self, payment_method_id: str, customer: str) -> None:
        pm = self._methods.get(payment_method_id)
        if pm is None:
            raise NotFound(f"No such PaymentMethod: '{payment_method_id}'")
        pm.customer = customer

    def _create_intent(self, *, amount, currency, payment_method_id, customer, metadata, description,
                       idempotency_key):
        if idempotency_key and idempotency_key in self._by_key:
            outcome = replace(self._intents[self._by_key[idempotency_key]])
        else:
            pi_id = self._next("pi")
            if amount % 100 == 2:
                status = FAILED
            elif amount % 100 == 3:
                status = REQUIRES_ACTION
            else:
                status = SUCCEEDED
            outcome = PaymentOutcome(
                id=pi_id,
                status=status,
                amount=amount,
                currency=currency,
                client_secret=f"{pi_id}_secret_{DEMO_SENTINEL}",
                description=description,
                metadata=dict(metadata),
                customer=customer,
            )
            self._intents[pi_id] = outcome
            if idempotency_key:
                self._by_key[idempotency_key] = pi_id
            outcome = replace(outcome)

        if outcome.status == FAILED:
            raise PaymentFailed("Your card was declined.", outcome)
        return outcome

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentOutcome:
        outcome = self._intents.get(payment_intent_id)
        if outcome is None:
            raise NotFound(f"No such payment_intent: '{payment_intent_id}'")
        return replace(outcome)

    def refund(self, payment_intent_id: str, amount: int | None = None) -> RefundOutcome:
        outcome = self.retrieve_payment_intent(payment_intent_id)
        if outcome.status != SUCCEEDED:
            raise GatewayError("This PaymentIntent does not have a successful charge to refund.")
        remaining = outcome.amount - self._refunded.get(payment_intent_id, 0)
        amount = remaining if amount is None else amount
        if amount < 1 or amount > remaining:
            raise GatewayError(f"Refund amount ({amount}) is greater than unrefunded amount ({remaining}).")
        self._refunded[payment_intent_id] = self._refunded.get(payment_intent_id, 0) + amount
        return RefundOutcome(self._next("re"), payment_intent_id, amount, SUCCEEDED)

    def set_default_payment_method(self, customer: str, payment_method_id: str) -> None:
        pm = self.retrieve_payment_method(payment_method_id)
        if pm.customer != customer:
            raise Conflict("Payment method belongs to a different customer")
        self.defaults[customer] = payment_method_id
