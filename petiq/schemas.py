"""Request/response contracts for the checkout endpoints.

Bodies use camelCase on the wire; snake_case names are accepted as well.
"""

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


def _blank_to_none(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ChargeRequest(ApiModel):
    """Charge a saved card. Amounts are integer minor units (cents)."""

    amount_minor_units: StrictInt = Field(gt=0)
    currency_code: str = Field(pattern=r"^[A-Za-z]{3}$")
    payment_method_id: str = Field(min_length=1)
    source_tag: str | None = None
    reference_id: str | None = None
    description: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=255)

    @field_validator("currency_code")
    @classmethod
    def lower_currency(cls, v: str) -> str:
        return v.lower()

    @field_validator("source_tag", "reference_id", "description", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _blank_to_none(v)

    def default_description(self) -> str | None:
        if self.description:
            return self.description
        if self.source_tag:
            return f"{self.source_tag.upper()} {self.reference_id or ''}".strip()
        return None


class CardUpdateRequest(ApiModel):
    """Only billing name and expiry can change once a card is tokenized."""

    name: str | None = None
    exp_month: int | None = Field(default=None, ge=1, le=12)
    exp_year: int | None = Field(default=None, ge=2000, le=2100)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def something_to_change(self):
        if not self.name and not self.exp_month and not self.exp_year:
            raise ValueError("Provide name and/or expMonth, expYear")
        return self


class DefaultCardRequest(ApiModel):
    payment_method_id: str = Field(min_length=1)


class RefundRequest(ApiModel):
    payment_intent_id: str = Field(min_length=1)
    amount_minor_units: StrictInt | None = Field(default=None, gt=0)


class BulkDeleteRequest(ApiModel):
    all: bool = False
    ids: list[str] | None = None
    source: str | None = None
    ref: str | None = None

    @field_validator("source", "ref", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def one_mode(self):
        if not self.all and not self.ids and not self.source and not self.ref:
            raise ValueError("Provide 'all': true, or 'ids': [], or 'source/ref' to delete.")
        return self

