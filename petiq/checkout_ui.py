"""Checkout screen controller: add/edit cards, pick one, pay.

Headless: every screen, field error, banner and URL change is plain state on
`CheckoutController`, so any front end (or a test) can drive it. Raw card
data never passes through here; the `Tokenizer` hands the gateway the card
and gives back an opaque payment-method id.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

from petiq.api_client import ApiError, BusinessError, FieldErrors, NetworkError, PaymentsApi
from petiq.checkout_session import BrowserHistory, CheckoutSession, LocalStore
from petiq.errors import GatewayError
from petiq.expiry import ExpiryBuffer

logger = logging.getLogger(__name__)

FORM = "form"
REVIEW = "review"
SUCCESS = "success"
STEPS = (FORM, REVIEW, SUCCESS)

ADD = "add"
EDIT = "edit"
MODES = (ADD, EDIT)

MAX_CARDS = 3
MISSING = "-"
CARD_GONE = "That card is no longer saved. Pick a card from the list."

# Server field names onto the form's inputs
_FIELD_MAP = {"name": "nameOnCard", "expMonth": "expiry", "expYear": "expiry"}


@dataclass
class FieldStatus:
    complete: bool = False
    error: str = ""


@dataclass
class SetupResult:
    payment_method_id: str | None = None
    error: str | None = None


class Tokenizer(Protocol):
    """The gateway's card widget: collects the PAN/CVC and talks to the gateway directly."""

    fields: dict[str, FieldStatus]

    def confirm_card_setup(self, client_secret: str, billing_name: str) -> SetupResult: ...

    def confirm_card_payment(self, client_secret: str) -> str | None:
        """Run step-up authentication; returns an error message or None."""


class DemoTokenizer:
    """Widget stand-in for demo mode.

    With a `DemoGateway` it tokenizes against it the way the real widget does
    against Stripe; without one it just mints `pm_demo_*` ids.
    """

    def __init__(self, gateway=None, approve_step_up: bool = True):
        self.gateway = gateway
        self.approve_step_up = approve_step_up
        self.fields = {name: FieldStatus() for name in ("cardNumber", "expiry", "cvv")}
        self._number = ""
        self._expiry = (None, None)
        self._minted = 0

    def enter(self, number: str = "", expiry: str = "", cvc: str = "") -> None:
        digits = "".join(c for c in number if c.isdigit())
        self._number = digits
        self.fields["cardNumber"] = (
            FieldStatus(True) if 12 <= len(digits) <= 19 else FieldStatus(False, "Your card number is incomplete." if digits else "")
        )
        mm, _, yy = expiry.partition("/")
        if mm.isdigit() and yy.isdigit() and 1 <= int(mm) <= 12 and len(yy) == 2:
            self._expiry = (int(mm), 2000 + int(yy))
            self.fields["expiry"] = FieldStatus(True)
        else:
            self.fields["expiry"] = FieldStatus(False, "Your card's expiration date is incomplete." if expiry else "")
        self.fields["cvv"] = (
            FieldStatus(True) if cvc.isdigit() and 3 <= len(cvc) <= 4 else FieldStatus(False, "Your card's security code is incomplete." if cvc else "")
        )

    def clear(self) -> None:
        self.enter()

    def confirm_card_setup(self, client_secret: str, billing_name: str) -> SetupResult:
        if self.gateway is None:
            self._minted += 1
            return SetupResult(payment_method_id=f"pm_demo_local_{self._minted}")
        try:
            pm_id = self.gateway.tokenize_card(self._number, *self._expiry, billing_name=billing_name)
            self.gateway.confirm_setup_intent(client_secret, pm_id)
        except GatewayError as e:
            return SetupResult(error=e.message)
        return SetupResult(payment_method_id=pm_id)

    def confirm_card_payment(self, client_secret: str) -> str | None:
        if self.gateway is None:
            return None if self.approve_step_up else "Payment authentication failed."
        try:
            outcome = self.gateway.complete_authentication(client_secret, self.approve_step_up)
        except GatewayError as e:
            return e.message
        return None if outcome.status == "succeeded" else "Payment authentication failed."


@dataclass
class SavedCard:
    id: str
    last4: str | None
    name: str
    brand: str
    exp_month: int | None
    exp_year: int | None

    @classmethod
    def from_api(cls, pm: dict) -> "SavedCard":
        return cls(
            id=pm["id"],
            last4=pm.get("last4") or "••••",
            name=pm.get("billingName") or MISSING,
            brand=pm.get("brand") or "",
            exp_month=pm.get("expMonth"),
            exp_year=pm.get("expYear"),
        )

    @property
    def expiry_display(self) -> str:
        if not self.exp_month or not self.exp_year:
            return MISSING
        yyyy = f"20{self.exp_year}" if len(str(self.exp_year)) == 2 else str(self.exp_year)
        return f"{int(self.exp_month):02d}/{yyyy}"


@dataclass
class Receipt:
    payment_id: str
    amount: Decimal
    currency: str
    paid_at: datetime
    source: str
    ref: str | None

    def display_amount(self) -> str:
        return f"{self.currency} {self.amount:,.2f}"


def _empty_errors() -> dict:
    return {"cardNumber": None, "expiry": None, "cvv": None, "nameOnCard": None}


@dataclass
class _Form:
    name_on_card: str = ""
    errors: dict = field(default_factory=_empty_errors)


class CheckoutController:
    def __init__(
        self,
        api: PaymentsApi,
        tokenizer: Tokenizer,
        history: BrowserHistory,
        store: LocalStore,
        nav_state: dict | None = None,
        max_cards: int = MAX_CARDS,
        min_year: int | None = None,
        clock=datetime.now,
    ):
        self.api = api
        self.tokenizer = tokenizer
        self.history = history
        self.store = store
        self.max_cards = max_cards
        self.min_year = min_year
        self.clock = clock
        self.session = CheckoutSession.resolve(history, store, nav_state)

        self.cards: list[SavedCard] = []
        self.selected_id: str | None = None
        self.editing_id: str | None = None
        self.form = _Form()
        self.expiry = ExpiryBuffer(min_year=min_year)
        self.card_error: str | None = None
        self.notice: str | None = None
        self.confirm_delete_id: str | None = None
        self.receipt: Receipt | None = None
        self.saving = False
        self._attempt_key: str | None = None

        self.step, self.mode = self._read_url(history.query)
        history.on_pop(self._on_pop)
        if self.step == REVIEW:
            self.load_cards()

    # url <-> state

    def _read_url(self, query: dict):
        step = query.get("step") if query.get("step") in STEPS else REVIEW
        mode = query.get("mode") if query.get("mode") in MODES else ADD
        if step == SUCCESS and self.receipt is None:
            step = REVIEW
        return step, mode

    def _go(self, step: str, mode: str | None = None) -> None:
        self.step = step
        if mode is not None:
            self.mode = mode
        self.history.push(step=self.step, mode=self.mode)
        if step == REVIEW:
            self.load_cards()

    def _on_pop(self, query: dict) -> None:
        self.step, self.mode = self._read_url(query)
        if self.step == REVIEW:
            self.load_cards()

    # review screen

    @property
    def at_limit(self) -> bool:
        return len(self.cards) >= self.max_cards

    @property
    def errors(self) -> dict:
        return self.form.errors

    @property
    def name_on_card(self) -> str:
        return self.form.name_on_card

    def limit_message(self) -> str:
        return f"You can only save up to {self.max_cards} cards."

    def dismiss_notice(self) -> None:
        self.notice = None

    def load_cards(self) -> None:
        try:
            self.cards = [SavedCard.from_api(pm) for pm in self.api.list_payment_methods()]
        except ApiError as e:
            logger.warning("failed to load cards: %s", e.message)
            self.card_error = e.message

    def toggle_select(self, card_id: str) -> None:
        self.selected_id = None if self.selected_id == card_id else card_id

    def start_add(self) -> None:
        if self.at_limit:
            self.notice = self.limit_message()
            return
        self.editing_id = None
        self.reset_form()
        self._go(FORM, ADD)

    def start_edit(self, card_id: str) -> None:
        card = next((c for c in self.cards if c.id == card_id), None)
        if card is None:
            self.card_error = CARD_GONE
            return
        self.reset_form()
        self.editing_id = card.id
        self.form.name_on_card = card.name if card.name != MISSING else ""
        self.expiry = ExpiryBuffer.from_card(card.exp_month, card.exp_year, min_year=self.min_year)
        self._go(FORM, EDIT)

    def cancel_form(self) -> None:
        self.editing_id = None
        self.reset_form()
        self._go(REVIEW, ADD)

    def request_delete(self, card_id: str) -> None:
        self.confirm_delete_id = card_id

    def cancel_delete(self) -> None:
        self.confirm_delete_id = None

    def confirm_delete(self) -> None:
        card_id = self.confirm_delete_id
        if card_id is None:
            return
        try:
            self.api.delete_payment_method(card_id)
        except BusinessError as e:
            self.notice = e.message
            self.confirm_delete_id = None
            return
        except ApiError as e:
            self.card_error = e.message
            return
        self.confirm_delete_id = None
        if self.selected_id == card_id:
            self.selected_id = None
        self.load_cards()

    # form screen

    def reset_form(self) -> None:
        self.form = _Form()
        self.expiry = ExpiryBuffer(min_year=self.min_year)
        self.card_error = None
        if hasattr(self.tokenizer, "clear"):
            self.tokenizer.clear()

    def set_name(self, value: str) -> None:
        self.form.name_on_card = "".join(c for c in value if not c.isdigit())
        if self.form.name_on_card.strip():
            self.form.errors["nameOnCard"] = None

    def type_expiry(self, key: str) -> None:
        if key == "Backspace":
            self.expiry.backspace()
        else:
            self.expiry.type(key)
        if self.expiry.complete:
            self.form.errors["expiry"] = None

    def paste_expiry(self, text: str) -> None:
        self.expiry.paste(text)
        if self.expiry.complete:
            self.form.errors["expiry"] = None

    def submit(self) -> None:
        self.card_error = None
        if self.mode == ADD and self.at_limit:
            self.notice = self.limit_message()
            self._go(REVIEW)
            return
        self.saving = True
        try:
            if self.mode == ADD:
                self._submit_add()
            else:
                self._submit_edit()
        finally:
            self.saving = False

    def _require(self, errors: dict) -> bool:
        self.form.errors.update(errors)
        return not any(errors.values())

    def _submit_add(self) -> None:
        name = self.form.name_on_card.strip()
        status = self.tokenizer.fields
        ok = self._require({
            "nameOnCard": None if name else "Name on card is required.",
            "cardNumber": None if status["cardNumber"].complete else status["cardNumber"].error or "Card number is required.",
            "expiry": None if status["expiry"].complete else status["expiry"].error or "Expiry is required.",
            "cvv": None if status["cvv"].complete else status["cvv"].error or "CVV is required.",
        })
        if not ok:
            return

        try:
            setup = self.api.begin_card_save()
        except BusinessError as e:
            self.notice = e.message
            self._go(REVIEW, ADD)
            return
        except ApiError as e:
            self.card_error = e.message
            return

        result = self.tokenizer.confirm_card_setup(setup["clientSecret"], name)
        if result.error:
            self.card_error = result.error
            return

        try:
            pm = self.api.get_payment_method(result.payment_method_id)
        except BusinessError as e:
            self.notice = e.message
            self._go(REVIEW, ADD)
            return
        except ApiError as e:
            self.card_error = e.message
            return

        card = SavedCard.from_api(pm)
        card.name = name
        self.cards.append(card)
        self.selected_id = None
        self.editing_id = None
        self.reset_form()
        self._go(REVIEW, ADD)

    def _submit_edit(self) -> None:
        # Edit mode restored from the URL has no card behind it
        if self.editing_id is None:
            self.card_error = CARD_GONE
            self._go(REVIEW, ADD)
            return
        name = self.form.name_on_card.strip()
        ok = self._require({
            "expiry": None if self.expiry.complete else "Enter full expiry as MM/YY.",
            "nameOnCard": None if name else "Name on card is required.",
            "cardNumber": None,
            "cvv": None,
        })
        if not ok:
            return

        try:
            data = self.api.update_payment_method(self.editing_id, name, self.expiry.month, self.expiry.year)
        except FieldErrors as e:
            self.form.errors.update({_FIELD_MAP.get(k, k): v for k, v in e.fields.items()})
            return
        except BusinessError as e:
            self.notice = e.message
            return
        except ApiError as e:
            self.card_error = e.message
            return

        for card in self.cards:
            if card.id == self.editing_id:
                card.name = data.get("billingName") or name
                card.exp_month = data.get("expMonth") or card.exp_month
                card.exp_year = data.get("expYear") or card.exp_year
        self.editing_id = None
        self.reset_form()
        self._go(REVIEW, ADD)

    # paying

    def pay(self) -> bool:
        """Charge the selected card; True once the payment has succeeded."""
        if not self.selected_id or self.saving:
            return False
        self.card_error = None
        # One key per attempt; kept across network failures so a retry can't double-charge
        self._attempt_key = self._attempt_key or uuid4().hex
        self.saving = True
        try:
            return self._pay()
        finally:
            self.saving = False

    def _fail(self, message: str, keep_key: bool = False) -> bool:
        self.card_error = message
        if not keep_key:
            self._attempt_key = None
        return False

    def _pay(self) -> bool:
        session = self.session
        try:
            res = self.api.charge(
                session.amount_minor_units(),
                session.currency,
                self.selected_id,
                source=session.source,
                ref=session.ref,
                description=session.description(),
                idempotency_key=self._attempt_key,
            )
        except NetworkError as e:
            return self._fail(e.message, keep_key=True)
        except BusinessError as e:
            self.notice = e.message
            self._attempt_key = None
            return False
        except ApiError as e:
            return self._fail(e.message)

        if res.get("requiresAction"):
            error = self.tokenizer.confirm_card_payment(res["clientSecret"])
            if error:
                return self._fail(error)
            try:
                res = self.api.confirm_payment(res["id"])
            except NetworkError as e:
                return self._fail(e.message, keep_key=True)
            except ApiError as e:
                return self._fail(e.message)
            if res.get("requiresAction"):
                return self._fail("Payment authentication was not completed.")

        if not res.get("success") or res.get("status") != "succeeded":
            self.notice = "Your payment is processing. We'll confirm it shortly."
            self._attempt_key = None
            return False

        self.receipt = Receipt(
            payment_id=res["id"],
            amount=Decimal(res["amount"]) / 100,
            currency=session.currency,
            paid_at=self.clock(),
            source=session.source,
            ref=session.ref,
        )
        self._attempt_key = None
        self._go(SUCCESS)
        return True
