from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

ENTITY_TYPE = "PURCHASE"
UNKNOWN_EVENT_TYPE = "Unknown"


@dataclass(frozen=True)
class EventEnvelope:
    """Transport envelope for one domain event.

    Note:
    - Wire names are camelCase (eventType, entityType, entityId, occurredAt,
      payload); see envelope.envelope_to_wire.
    - `payload` keeps its native shape; it is never flattened into the envelope.
    - `entity_id` is never empty.
    """

    event_type: str
    entity_type: str
    entity_id: str
    occurred_at: datetime
    payload: Any

    def __post_init__(self) -> None:
        if not self.entity_id:
            raise ValueError("EventEnvelope.entity_id must not be empty")
        if self.occurred_at.tzinfo is None:
            raise ValueError("EventEnvelope.occurred_at must be timezone-aware")
