from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from ..common.time_util import parse_iso, to_iso_z, utc_now
from .identity import UnrecognizedPayload
from .models import ENTITY_TYPE, UNKNOWN_EVENT_TYPE, EventEnvelope

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"


def build_envelope(
    payload: Any,
    event_type: Optional[str],
    entity_id: str,
    entity_type: str = ENTITY_TYPE,
    now: Optional[datetime] = None,
) -> EventEnvelope:
    """Wrap a payload into an EventEnvelope.

    A blank event type is recorded as "Unknown"; any other tag is kept
    verbatim even when routing treats it as unrecognized.
    """
    occurred_at = now or utc_now()
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    if isinstance(payload, UnrecognizedPayload):
        payload = payload.value
    return EventEnvelope(
        event_type=event_type if isinstance(event_type, str) and event_type.strip() else UNKNOWN_EVENT_TYPE,
        entity_type=entity_type,
        entity_id=entity_id,
        occurred_at=occurred_at.astimezone(timezone.utc),
        payload=payload,
    )


def payload_to_wire(payload: Any) -> Any:
    """Render a payload as JSON-compatible data in its own shape.

    pydantic models use their own aliases (camelCase for purchase payloads);
    everything else goes through pydantic's generic encoder. Decimals become
    strings so the exact amount text survives any JSON decoder.
    """
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True)
    return to_jsonable_python(payload, fallback=str)


def envelope_to_wire(envelope: EventEnvelope) -> dict[str, Any]:
    return {
        "eventType": envelope.event_type,
        "entityType": envelope.entity_type,
        "entityId": envelope.entity_id,
        "occurredAt": to_iso_z(envelope.occurred_at),
        "payload": payload_to_wire(envelope.payload),
    }


def serialize_envelope(envelope: EventEnvelope) -> bytes:
    return json.dumps(envelope_to_wire(envelope), ensure_ascii=False, separators=(",", ":")).encode(CONTENT_ENCODING)


def deserialize_envelope(body: bytes) -> EventEnvelope:
    """Decode a message body back into an envelope (payload stays plain JSON data)."""
    data = json.loads(body.decode(CONTENT_ENCODING))
    return EventEnvelope(
        event_type=data["eventType"],
        entity_type=data["entityType"],
        entity_id=data["entityId"],
        occurred_at=parse_iso(data["occurredAt"]),
        payload=data.get("payload"),
    )
