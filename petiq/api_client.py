"""HTTP client the checkout UI uses to reach the orchestrator."""

import logging

import httpx

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "We couldn't reach the payment service. Please check your connection and try again."


class ApiError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FieldErrors(ApiError):
    """Rendered under the offending inputs."""

    def __init__(self, message: str, fields: dict):
        super().__init__(message)
        self.fields = fields


class BusinessError(ApiError):
    """Rendered as a dismissible banner (card cap, ownership)."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class FormError(ApiError):
    """Rendered as a form-level error (gateway rejections and the like)."""


class NetworkError(ApiError):
    def __init__(self, message: str = RETRY_MESSAGE):
        super().__init__(message)


class PaymentsApi:
    def __init__(self, client: httpx.Client, token: str | None = None, prefix: str = "/api"):
        self.client = client
        self.prefix = prefix
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    def _request(self, method: str, path: str, **kwargs):
        try:
            resp = self.client.request(method, f"{self.prefix}{path}", headers=self.headers, **kwargs)
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise NetworkError() from e

        if resp.status_code < 400:
            return resp.json()
        if resp.status_code >= 500:
            raise NetworkError()

        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get("error") or body.get("detail") or f"Request failed ({resp.status_code})"
        if resp.status_code == 409:
            raise BusinessError(message, body.get("code"))
        if body.get("fields"):
            raise FieldErrors(message, body["fields"])
        raise FormError(message)

    def begin_card_save(self) -> dict:
        return self._request("POST", "/setup-intent", json={})

    def get_payment_method(self, pm_id: str) -> dict:
        return self._request("GET", f"/payment-method/{pm_id}")

    def list_payment_methods(self) -> list[dict]:
        return self._request("GET", "/payment-methods")

    def update_payment_method(self, pm_id: str, name: str, exp_month: int, exp_year: int) -> dict:
        return self._request(
            "PATCH",
            f"/payment-method/{pm_id}",
            json={"name": name, "expMonth": exp_month, "expYear": exp_year},
        )

    def delete_payment_method(self, pm_id: str) -> dict:
        return self._request("DELETE", f"/payment-method/{pm_id}")

    def charge(self, amount_minor_units: int, currency: str, payment_method_id: str, source=None,
               ref=None, description=None, idempotency_key=None) -> dict:
        body = {
            "amountMinorUnits": amount_minor_units,
            "currencyCode": currency,
            "paymentMethodId": payment_method_id,
            "sourceTag": source,
            "referenceId": ref,
            "description": description,
            "idempotencyKey": idempotency_key,
        }
        return self._request("POST", "/payment-intent", json={k: v for k, v in body.items() if v is not None})

    def confirm_payment(self, payment_intent_id: str) -> dict:
        return self._request("POST", f"/payment-intent/{payment_intent_id}/confirm")
