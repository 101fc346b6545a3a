from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

PURCHASE_CREATED = "PurchaseCreated"
PURCHASE_UPDATED = "PurchaseUpdated"

FALLBACK_ROUTING_KEY = "search.event.unknown"

# Exact, case-sensitive match on the event type tag.
ROUTING_TABLE: Mapping[str, str] = MappingProxyType(
    {
        PURCHASE_CREATED: "search.purchase.created",
        PURCHASE_UPDATED: "search.purchase.updated",
    }
)


def is_known_event_type(event_type: Any) -> bool:
    return isinstance(event_type, str) and event_type in ROUTING_TABLE


def resolve_routing_key(event_type: Any) -> str:
    """Map an event type tag to its routing key. Never raises."""
    if not is_known_event_type(event_type):
        return FALLBACK_ROUTING_KEY
    return ROUTING_TABLE[event_type]
