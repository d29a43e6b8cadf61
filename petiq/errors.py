"""Error taxonomy for the checkout API and its JSON rendering."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    status_code = 400
    code = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def body(self) -> dict:
        body = {"error": self.message}
        if self.code:
            body["code"] = self.code
        return body


class ValidationError(CheckoutError):
    """Missing or malformed input; `fields` maps form fields to messages."""

    def __init__(self, message: str, fields: dict | None = None):
        super().__init__(message)
        self.fields = fields or {}

    def body(self) -> dict:
        body = super().body()
        if self.fields:
            body["fields"] = self.fields
        return body


class BusinessRuleError(CheckoutError):
    status_code = 409
    code = "business_rule"


class LimitExceeded(BusinessRuleError):
    code = "limit_exceeded"


class Conflict(BusinessRuleError):
    code = "conflict"


class NotFound(CheckoutError):
    status_code = 404


class GatewayError(CheckoutError):
    """The payment provider rejected the operation. Message is passed through."""


class PaymentFailed(GatewayError):
    code = "payment_failed"

    def __init__(self, message: str, outcome=None):
        super().__init__(message)
        # Declined intent, when the provider created one
        self.outcome = outcome


class GatewayUnavailable(GatewayError):
    status_code = 503

    def __init__(self, message: str = "Payment service is unreachable. Please try again in a moment."):
        super().__init__(message)


class StorageMirrorError(Exception):
    """A local mirror write failed. Never surfaced to the client."""


def _field_name(loc) -> str | None:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or None


async def checkout_error_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.body())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = {}
    general = []
    for err in exc.errors():
        msg = err.get("msg", "Invalid value").removeprefix("Value error, ")
        name = _field_name(err.get("loc", ()))
        if name is None:
            general.append(msg)
        elif name not in fields:
            fields[name] = msg
    message = "; ".join(general + [f"{k}: {v}" for k, v in fields.items()]) or "Invalid request"
    return JSONResponse(status_code=400, content=ValidationError(message, fields).body())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
