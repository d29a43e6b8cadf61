"""Local mirrors of provider objects: saved cards and the transaction ledger.

The provider is the source of truth. Rows here are upserted by the provider's
own ids, so replays are harmless and the last write wins.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from petiq.errors import StorageMirrorError
from petiq.gateway import FAILED, PROCESSING, REQUIRES_ACTION, SUCCEEDED, CardDetails, PaymentOutcome
from petiq.models import PaymentMethodRecord, TransactionRecord

logger = logging.getLogger(__name__)

LEDGER_STATUS = {
    SUCCEEDED: "succeeded",
    PROCESSING: "processing",
    FAILED: "failed",
    REQUIRES_ACTION: "pending_action",
}


def best_effort(db, what: str, fn, *args, **kwargs):
    """Run a mirror write; on storage failure roll back, log and carry on."""
    try:
        result = fn(db, *args, **kwargs)
        db.commit()
        return result
    except SQLAlchemyError as e:
        db.rollback()
        err = StorageMirrorError(f"{what}: {e}")
        logger.warning("mirror write failed (%s): %s", what, err)
        return None


def upsert_card(db, card: CardDetails, customer: str | None = None) -> PaymentMethodRecord:
    row = db.query(PaymentMethodRecord).filter_by(external_id=card.id).first()
    if row is None:
        row = PaymentMethodRecord(external_id=card.id)
        db.add(row)
    row.brand = card.brand
    row.last4 = card.last4
    row.exp_month = card.exp_month
    row.exp_year = card.exp_year
    row.billing_name = card.billing_name
    row.owner_customer_ref = card.customer or customer
    db.flush()
    return row


def delete_card(db, external_id: str) -> int:
    return db.query(PaymentMethodRecord).filter_by(external_id=external_id).delete()


def list_cards(db):
    return db.query(PaymentMethodRecord).order_by(PaymentMethodRecord.updated_at.desc()).all()


def upsert_transaction(db, outcome: PaymentOutcome, source=None, ref_id=None, description=None) -> TransactionRecord:
    row = db.query(TransactionRecord).filter_by(external_id=outcome.id).first()
    if row is None:
        row = TransactionRecord(external_id=outcome.id)
        db.add(row)
    if outcome.amount is not None:
        row.amount = outcome.amount
    if outcome.currency:
        row.currency = outcome.currency.lower()
    row.status = LEDGER_STATUS.get(outcome.status, outcome.status)
    # Keep what an earlier write knew when the provider payload omits it
    row.source = source or outcome.metadata.get("source") or row.source
    row.ref_id = ref_id or outcome.metadata.get("ref_id") or row.ref_id
    row.description = outcome.description or description or row.description
    db.flush()
    return row


def reconcile_cards(db, customer: str, cards: list[CardDetails]) -> dict:
    """Make the mirror for `customer` match the provider's listing exactly."""
    live = {c.id for c in cards}
    for card in cards:
        upsert_card(db, card, customer)
    stale_query = db.query(PaymentMethodRecord).filter(PaymentMethodRecord.owner_customer_ref == customer)
    if live:
        stale_query = stale_query.filter(PaymentMethodRecord.external_id.notin_(live))
    stale = stale_query.all()
    for row in stale:
        db.delete(row)
    db.commit()
    return {"upserted": len(cards), "removed": len(stale)}


@dataclass
class TransactionFilters:
    source: str | None = None
    ref: str | None = None
    currency: str | None = None
    status: str | None = None
    q: str | None = None
    min: int | None = None
    max: int | None = None
    from_date: date | None = None
    to_date: date | None = None
    ref_exact: bool = False


def _escape_like(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _contains(column, text: str):
    return func.lower(column).like(f"%{_escape_like(text.lower())}%", escape="\\")


def _given(value) -> bool:
    return value not in (None, "", "any")


def query_transactions(db, filters: TransactionFilters):
    query = db.query(TransactionRecord)
    if _given(filters.source):
        query = query.filter(TransactionRecord.source == filters.source)
    if _given(filters.currency):
        query = query.filter(TransactionRecord.currency == filters.currency.lower())
    if _given(filters.status):
        query = query.filter(TransactionRecord.status == filters.status)
    if filters.ref:
        if filters.ref_exact:
            query = query.filter(TransactionRecord.ref_id == filters.ref)
        else:
            query = query.filter(_contains(TransactionRecord.ref_id, filters.ref))
    if filters.min is not None:
        query = query.filter(TransactionRecord.amount >= filters.min)
    if filters.max is not None:
        query = query.filter(TransactionRecord.amount <= filters.max)
    if filters.from_date:
        start = datetime.combine(filters.from_date, time.min, tzinfo=timezone.utc)
        query = query.filter(TransactionRecord.created_at >= start)
    if filters.to_date:
        # whole `to` day is included
        end = datetime.combine(filters.to_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        query = query.filter(TransactionRecord.created_at < end)
    if filters.q:
        query = query.filter(
            or_(
                _contains(TransactionRecord.description, filters.q),
                _contains(TransactionRecord.source, filters.q),
                _contains(TransactionRecord.ref_id, filters.q),
            )
        )
    return query.order_by(TransactionRecord.created_at.desc()).all()


def delete_transactions(db, all_rows=False, ids=None, source=None, ref=None) -> int:
    """Delete by the first mode present: all_rows, then ids, then source/ref."""
    query = db.query(TransactionRecord)
    if all_rows:
        deleted = query.delete(synchronize_session=False)
    elif ids:
        deleted = query.filter(
            or_(TransactionRecord.id.in_(ids), TransactionRecord.external_id.in_(ids))
        ).delete(synchronize_session=False)
    elif source or ref:
        if source:
            query = query.filter(TransactionRecord.source == source)
        if ref:
            query = query.filter(TransactionRecord.ref_id == ref)
        deleted = query.delete(synchronize_session=False)
    else:
        raise ValueError("no delete mode given")
    db.commit()
    return deleted
