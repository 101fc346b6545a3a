"""Entity identity for event payloads.

Payloads handed to the publisher are resolved once, at the call boundary,
into one of three shapes:

- PurchaseSnapshot   -> integer identifier (the stored record)
- PurchaseEventData  -> string identifier (the projection the HTTP layer sends)
- UnrecognizedPayload -> no identifier we know how to read

`extract_id` then reads only the identifier. Unrecognized payloads get a
generated id flagged as synthetic; the caller is expected to warn about it
because the envelope can no longer be traced back to a stored purchase.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, ClassVar, Literal, Optional, Union

from pydantic import Field

from ..common.trace import new_id
from ..models import BuyerDetails, CamelModel, UtcDatetime

IdentityKind = Literal["integer", "string", "unrecognized"]


class PurchaseSnapshot(CamelModel):
    identity_kind: ClassVar[IdentityKind] = "integer"

    purchase_id: int
    buyer_id: int
    offer_id: int
    purchase_date: UtcDatetime
    amount: Decimal
    status: str
    buyer_details: BuyerDetails = Field(default_factory=BuyerDetails)
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None


class PurchaseEventData(CamelModel):
    identity_kind: ClassVar[IdentityKind] = "string"

    purchase_id: str
    buyer_id: str
    offer_id: str
    amount: Decimal
    status: str
    purchase_date: UtcDatetime


@dataclass(frozen=True)
class UnrecognizedPayload:
    identity_kind: ClassVar[IdentityKind] = "unrecognized"

    value: Any


EventPayload = Union[PurchaseSnapshot, PurchaseEventData, UnrecognizedPayload]

_KNOWN_SHAPES = (PurchaseSnapshot, PurchaseEventData, UnrecognizedPayload)


@dataclass(frozen=True)
class ResolvedId:
    value: str
    synthetic: bool = False


def as_event_payload(obj: Any) -> EventPayload:
    """Resolve an arbitrary object into the payload union.

    Anything that is not already a known shape is wrapped as-is; mappings
    are not guessed at, even if they happen to carry a purchaseId key.
    """
    if isinstance(obj, _KNOWN_SHAPES):
        return obj
    return UnrecognizedPayload(value=obj)


def _integer_id(payload: Any) -> Optional[str]:
    return str(int(payload.purchase_id))


def _string_id(payload: Any) -> Optional[str]:
    value = payload.purchase_id
    return value if value.strip() else None


_READERS: dict[str, Callable[[Any], Optional[str]]] = {
    "integer": _integer_id,
    "string": _string_id,
}


def extract_id(payload: EventPayload) -> ResolvedId:
    reader = _READERS.get(payload.identity_kind)
    value = reader(payload) if reader is not None else None
    if value:
        return ResolvedId(value=value)
    return ResolvedId(value=new_id(), synthetic=True)
