from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, String, Integer, DateTime
from petiq.database import Base


def _now():
    return datetime.now(timezone.utc)


def _new_id():
    return uuid4().hex


class PaymentMethodRecord(Base):
    __tablename__ = "payment_methods"

    id = Column(String, primary_key=True, default=_new_id)
    external_id = Column(String, unique=True, index=True, nullable=False)  # Stripe PaymentMethod ID
    brand = Column(String)
    last4 = Column(String(4))
    exp_month = Column(Integer)
    exp_year = Column(Integer)
    billing_name = Column(String)
    owner_customer_ref = Column(String, index=True)                       # Stripe Customer ID
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "externalId": self.external_id,
            "brand": self.brand,
            "last4": self.last4,
            "expMonth": self.exp_month,
            "expYear": self.exp_year,
            "billingName": self.billing_name,
            "ownerCustomerRef": self.owner_customer_ref,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class TransactionRecord(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=_new_id)
    external_id = Column(String, unique=True, index=True, nullable=False)  # Stripe PaymentIntent ID
    amount = Column(Integer, nullable=False)                               # minor units
    currency = Column(String(3))
    status = Column(String, index=True)                                   # pending_action | succeeded | failed | processing
    source = Column(String, index=True)
    ref_id = Column(String, index=True)
    description = Column(String)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "externalId": self.external_id,
            "amountMinorUnits": self.amount,
            "currencyCode": self.currency,
            "status": self.status,
            "sourceTag": self.source,
            "referenceId": self.ref_id,
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
