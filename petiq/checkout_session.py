"""Client-side checkout context and the browser surfaces it is restored from."""

import json
import re
import time
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

STORE_KEY = "petiq:checkout"
DEFAULT_CURRENCY = "LKR"
_CURRENCY = re.compile(r"^[A-Z]{3}$")


class LocalStore:
    """String key/value store with localStorage semantics."""

    def __init__(self, initial: dict | None = None):
        self._data = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class BrowserHistory:
    """Address bar plus back/forward stack."""

    def __init__(self, url: str = "http://localhost:5173/payment"):
        self._entries = [url]
        self._index = 0
        self._listeners = []

    @property
    def url(self) -> str:
        return self._entries[self._index]

    @property
    def query(self) -> dict:
        return dict(parse_qsl(urlsplit(self.url).query))

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, **params) -> None:
        """Set query params on the current URL and push it as a new entry."""
        parts = urlsplit(self.url)
        query = dict(parse_qsl(parts.query))
        query.update({k: str(v) for k, v in params.items() if v is not None})
        self._entries = self._entries[: self._index + 1]
        self._entries.append(urlunsplit(parts._replace(query=urlencode(query))))
        self._index += 1

    def on_pop(self, listener) -> None:
        self._listeners.append(listener)

    def back(self) -> None:
        if self._index > 0:
            self._index -= 1
            self._pop()

    def forward(self) -> None:
        if self._index < len(self._entries) - 1:
            self._index += 1
            self._pop()

    def _pop(self) -> None:
        for listener in self._listeners:
            listener(self.query)


def _amount(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() and amount >= 0 else None


@dataclass
class CheckoutSession:
    """What is being paid for. `amount` is in major units (e.g. rupees)."""

    amount: Decimal = Decimal("0")
    currency: str = DEFAULT_CURRENCY
    source: str = "unknown"
    ref: str | None = None
    selected_address_id: str | None = None

    @classmethod
    def resolve(cls, history: BrowserHistory, store: LocalStore, nav_state: dict | None = None) -> "CheckoutSession":
        """Navigation state first, then the URL, then the stored session.

        Values found in the URL are written back to the store so a reload
        keeps the context.
        """
        saved = cls.load(store)
        params = history.query
        nav_state = nav_state or {}

        order = nav_state.get("orderData")
        appointment = nav_state.get("appointment")
        if order:
            amount = _amount(order.get("totalPrice"))
            source = "product_order"
            ref = f"ORDER_{int(time.time() * 1000)}"
        elif appointment:
            amount = _amount(appointment.get("price"))
            source = "appointment"
            ref = appointment.get("_id") or f"APPT_{int(time.time() * 1000)}"
        else:
            amount = _amount(params.get("total"))
            if amount is None:
                amount = saved.amount
            source = (params.get("source") or saved.source or "unknown").strip()
            ref = (params.get("ref") or saved.ref or "").strip() or None

        url_currency = (params.get("currency") or "").upper()
        currency = url_currency if _CURRENCY.match(url_currency) else saved.currency
        if not _CURRENCY.match(currency or ""):
            currency = DEFAULT_CURRENCY

        session = cls(
            amount=amount if amount is not None else Decimal("0"),
            currency=currency,
            source=source,
            ref=ref,
            selected_address_id=saved.selected_address_id,
        )
        if any(params.get(k) for k in ("total", "currency", "source", "ref")):
            session.save(store)
        return session

    @classmethod
    def load(cls, store: LocalStore) -> "CheckoutSession":
        raw = store.get(STORE_KEY)
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except ValueError:
            return cls()
        return cls(
            amount=_amount(data.get("amount")) or Decimal("0"),
            currency=data.get("currency") or DEFAULT_CURRENCY,
            source=data.get("source") or "unknown",
            ref=data.get("ref"),
            selected_address_id=data.get("selected_address_id"),
        )

    def save(self, store: LocalStore) -> None:
        data = asdict(self)
        data["amount"] = str(self.amount)
        store.set(STORE_KEY, json.dumps(data))

    def amount_minor_units(self) -> int:
        return int((self.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def description(self) -> str | None:
        if self.source and self.source != "unknown":
            return f"{self.source.upper()} {self.ref or ''}".strip()
        return None
