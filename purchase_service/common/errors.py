from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

@dataclass
class ApiError(Exception):
    """Business error rendered into the HTTP error envelope."""
    code: str
    message: str
    http_status: int = 400
    data: Optional[dict[str, Any]] = None


class EventsError(Exception):
    """Base class for everything raised by the event-publication subsystem."""


class ConfigurationError(EventsError):
    """Broker settings are missing or invalid. Fatal at startup."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class TopologyError(EventsError):
    """The broker could not be reached, rejected the credentials,
    or refused to declare/bind the exchange and queue."""


class PublishError(EventsError):
    """A single publish call failed. The write was not handed to the broker."""

    def __init__(self, message: str, *, event_type: Optional[str] = None, entity_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.entity_id = entity_id


class PublisherUnavailableError(PublishError):
    """The publisher is degraded and could not recover its channel."""


class PublisherClosedError(PublishError):
    """The publisher was shut down."""
