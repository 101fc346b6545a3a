from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from .common.time_util import to_iso_z
from .core.registry import Status


PURCHASE_STATUSES = ("Pending", "Processing", "Completed", "Cancelled", "Refunded")
PAYMENT_METHODS = ("CreditCard", "DebitCard", "PayPal", "BankTransfer", "Cash")

# ISO-8601 UTC with a Z suffix whenever the value is rendered to JSON.
UtcDatetime = Annotated[datetime, PlainSerializer(to_iso_z, return_type=str, when_used="json")]


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase on input, dumps camelCase with by_alias=True."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------------------------
# HTTP envelopes & errors
# -------------------------

class OkEnvelope(BaseModel):
    status: Literal["ok"] = "ok"
    trace_id: str
    data: Any


class ErrorEnvelope(BaseModel):
    status: Literal["error"] = "error"
    code: str
    message: str
    trace_id: str
    data: Any = Field(default_factory=dict)


# -------------------------
# Capabilities
# -------------------------

class CapabilityItem(BaseModel):
    name: str
    status: Status
    last_changed_at_utc: str
    enabled: Optional[bool] = None
    mode: Optional[str] = None
    detail: Optional[str] = None


class CapabilitiesResponse(BaseModel):
    items: List[CapabilityItem]


# -------------------------
# Purchases
# -------------------------

class BuyerAddress(CamelModel):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


class BuyerDetails(CamelModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    address: BuyerAddress = Field(default_factory=BuyerAddress)
    payment_method: str = ""


class PurchaseWrite(CamelModel):
    """Body of POST /purchases and PUT /purchases/{id}."""

    buyer_id: int = Field(gt=0)
    offer_id: int = Field(gt=0)
    purchase_date: UtcDatetime
    amount: Decimal = Field(gt=0, max_digits=18, decimal_places=2)
    status: str = Field(default="Pending", min_length=1, max_length=50)
    buyer_details: BuyerDetails = Field(default_factory=BuyerDetails)

    @field_validator("amount")
    @classmethod
    def _two_places(cls, v: Decimal) -> Decimal:
        return v.quantize(Decimal("0.01"))


class PurchaseRecord(PurchaseWrite):
    purchase_id: int
    created_at: UtcDatetime
    updated_at: UtcDatetime


class PurchaseListResult(BaseModel):
    items: List[PurchaseRecord]
    page: int
    page_size: int


class PublishOutcome(BaseModel):
    """What the caller learns about the event side effect of a write.

    `confirmed` is always False: the broker is not asked to confirm delivery.
    """

    published: bool
    event_type: str
    routing_key: Optional[str] = None
    message_id: Optional[str] = None
    confirmed: bool = False
    error: Optional[str] = None
