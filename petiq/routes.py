from datetime import date

from fastapi import APIRouter, Body, Depends, Query
from pydantic import ValidationError as PydanticValidationError

from petiq import checkout
from petiq.auth import customer_email, require_admin
from petiq.checkout import get_gateway
from petiq.database import SessionLocal
from petiq.mirror import TransactionFilters, list_cards
from petiq.schemas import BulkDeleteRequest, CardUpdateRequest, ChargeRequest, DefaultCardRequest, RefundRequest
from petiq.errors import ValidationError

router = APIRouter()
admin_router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/order/{order_id}")
def get_order(order_id: str):
    return checkout.get_order(order_id)


@router.post("/setup-intent")
def create_setup_intent(email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        return checkout.begin_card_save(db, gateway, email)
    finally:
        db.close()


@router.get("/payment-method/{pm_id}")
def get_payment_method(pm_id: str, email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        return checkout.fetch_payment_method(db, gateway, email, pm_id)
    finally:
        db.close()


@router.get("/payment-methods")
def get_payment_methods(email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        return checkout.list_payment_methods(db, gateway, email)
    finally:
        db.close()


@router.patch("/payment-method/{pm_id}")
def update_payment_method(
    pm_id: str,
    request: CardUpdateRequest,
    email: str = Depends(customer_email),
    gateway=Depends(get_gateway),
):
    db = SessionLocal()
    try:
        return checkout.edit_payment_method(db, gateway, email, pm_id, request)
    finally:
        db.close()


@router.delete("/payment-method/{pm_id}")
def delete_payment_method(pm_id: str, email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        return checkout.remove_payment_method(db, gateway, email, pm_id)
    finally:
        db.close()


@router.post("/default-payment-method")
def set_default_payment_method(
    request: DefaultCardRequest,
    email: str = Depends(customer_email),
    gateway=Depends(get_gateway),
):
    return checkout.set_default_payment_method(gateway, email, request.payment_method_id)


@router.post("/payment-intent")
def create_payment_intent(
    request: ChargeRequest,
    email: str = Depends(customer_email),
    gateway=Depends(get_gateway),
):
    db = SessionLocal()
    try:
        return checkout.charge(db, gateway, email, request)
    finally:
        db.close()


@router.post("/payment-intent/{pi_id}/confirm")
def confirm_payment_intent(pi_id: str, email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        return checkout.confirm_payment(db, gateway, email, pi_id)
    finally:
        db.close()


@router.post("/refund")
def refund(request: RefundRequest, email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    return checkout.refund(gateway, email, request)


@router.get("/db/cards")
def get_cards(auth=Depends(require_admin)):
    db = SessionLocal()
    try:
        return [row.to_dict() for row in list_cards(db)]
    finally:
        db.close()


@router.get("/db/tx")
def get_transactions(source: str | None = None, ref: str | None = None, auth=Depends(require_admin)):
    db = SessionLocal()
    try:
        return checkout.list_transactions(db, TransactionFilters(source=source, ref=ref, ref_exact=True))
    finally:
        db.close()


@router.delete("/db/tx")
def delete_transactions(
    all: bool = False,
    body: dict | None = Body(default=None),
    auth=Depends(require_admin),
):
    body = dict(body or {})
    if all:
        body["all"] = True
    try:
        request = BulkDeleteRequest.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"].removeprefix("Value error, "))
    db = SessionLocal()
    try:
        return checkout.bulk_delete(db, request)
    finally:
        db.close()


@admin_router.get("/admin/tx")
def get_admin_transactions(
    source: str | None = None,
    ref: str | None = None,
    currency: str | None = None,
    status: str | None = None,
    q: str | None = None,
    min: int | None = Query(default=None, ge=0),
    max: int | None = Query(default=None, ge=0),
    from_: date | None = Query(default=None, alias="from"),
    to: date | None = None,
):
    filters = TransactionFilters(
        source=source,
        ref=ref,
        currency=currency,
        status=status,
        q=q,
        min=min,
        max=max,
        from_date=from_,
        to_date=to,
    )
    db = SessionLocal()
    try:
        return checkout.list_transactions(db, filters)
    finally:
        db.close()


@admin_router.post("/admin/tx/bulk-delete")
def bulk_delete_transactions(request: BulkDeleteRequest):
    db = SessionLocal()
    try:
        return checkout.bulk_delete(db, request)
    finally:
        db.close()


@admin_router.post("/admin/cards/reconcile")
def reconcile_cards(email: str = Depends(customer_email), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        return checkout.reconcile(db, gateway, email)
    finally:
        db.close()
