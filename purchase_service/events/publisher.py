"""Event publisher: persisted purchase change -> routed broker message.

Delivery is best-effort. The channel runs without publisher confirms, so a
successful `publish()` means the message was written to the broker
connection, not that the broker stored or routed it. `PublishResult.confirmed`
is always False to keep that visible to callers.

State machine:

    uninitialized --start()--> ready --publish()--> publishing --> ready
                         \\                                    \\--> degraded
                          \\--(TopologyError)--> degraded
    degraded --publish(): recover channel + redeclare--> publishing ...
    any --close()--> closed

All channel work happens under one asyncio.Lock: at most one write in
flight on the channel at any time.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from aio_pika import DeliveryMode, Message

from ..common.errors import PublishError, PublisherClosedError, PublisherUnavailableError, TopologyError
from ..common.time_util import utc_now
from ..common.trace import new_id
from ..core.config import BrokerConfig
from .broker import BrokerConnection
from .envelope import CONTENT_ENCODING, CONTENT_TYPE, build_envelope, serialize_envelope
from .identity import as_event_payload, extract_id
from .models import ENTITY_TYPE
from .routing import resolve_routing_key
from .topology import BrokerTopology, DeclaredTopology, TopologyInitializer

logger = logging.getLogger(__name__)


class PublisherState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    PUBLISHING = "publishing"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass(frozen=True)
class PublishResult:
    event_type: str
    entity_id: str
    routing_key: str
    message_id: str
    synthetic_id: bool = False
    # no publisher confirms: the broker never acknowledges individual messages
    confirmed: bool = False


StateListener = Callable[[PublisherState, Optional[str]], None]


class EventPublisher:
    def __init__(
        self,
        config: BrokerConfig,
        *,
        publish_timeout_s: float = 5.0,
        connect_timeout_s: float = 10.0,
        connection: Optional[BrokerConnection] = None,
        entity_type: str = ENTITY_TYPE,
        clock: Callable[[], datetime] = utc_now,
        on_state_change: Optional[StateListener] = None,
    ) -> None:
        self.config = config
        self.publish_timeout_s = publish_timeout_s
        self.entity_type = entity_type
        self._connection = connection or BrokerConnection(config, connect_timeout_s=connect_timeout_s)
        self._clock = clock
        self.on_state_change = on_state_change
        # created on first use so it belongs to the loop that runs the publisher
        self._lock_obj: Optional[asyncio.Lock] = None
        self._state = PublisherState.UNINITIALIZED
        self._initializer: Optional[TopologyInitializer] = None
        self._declared: Optional[DeclaredTopology] = None

    @property
    def _lock(self) -> asyncio.Lock:
        if self._lock_obj is None:
            self._lock_obj = asyncio.Lock()
        return self._lock_obj

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def topology(self) -> Optional[BrokerTopology]:
        return self._declared.topology if self._declared else None

    def _set_state(self, state: PublisherState, detail: Optional[str] = None) -> None:
        if state is self._state:
            return
        self._state = state
        if state is PublisherState.DEGRADED:
            logger.warning("Event publisher degraded: %s", detail or "channel unusable")
        if self.on_state_change is not None:
            self.on_state_change(state, detail)

    async def start(self) -> BrokerTopology:
        """Validate settings, connect, and declare the topology.

        Raises ConfigurationError before any network activity if settings are
        missing, TopologyError if the broker cannot be reached or refuses the
        declarations (the publisher is then left degraded).
        """
        async with self._lock:
            if self._state is PublisherState.CLOSED:
                raise PublisherClosedError("Event publisher is closed")
            self.config.require()
            self._initializer = TopologyInitializer(BrokerTopology.from_config(self.config))
            try:
                self._declared = await self._initializer.initialize(self._connection)
            except TopologyError as e:
                self._set_state(PublisherState.DEGRADED, str(e))
                raise
            self._set_state(PublisherState.READY)
            logger.info("Event publisher ready on %s", self.config.safe_url())
            return self._declared.topology

    async def _recover(self) -> DeclaredTopology:
        assert self._initializer is not None
        await self._connection.discard_channel()
        try:
            self._declared = await self._initializer.initialize(self._connection)
        except TopologyError as e:
            raise PublisherUnavailableError(f"Broker channel could not be recovered: {e}") from e
        self._set_state(PublisherState.READY)
        logger.info("Event publisher recovered its channel")
        return self._declared

    async def _ensure_ready(self) -> DeclaredTopology:
        if self._state is PublisherState.CLOSED:
            raise PublisherClosedError("Event publisher is closed")
        if self._initializer is None:
            raise PublisherUnavailableError("Event publisher was not started")
        if self._state is PublisherState.READY and not self._connection.channel_is_open:
            self._set_state(PublisherState.DEGRADED, "channel closed by broker")
        if self._state is PublisherState.DEGRADED or self._declared is None:
            return await self._recover()
        return self._declared

    def _build_message(self, payload: Any, event_type: str) -> tuple[Message, PublishResult]:
        resolved = as_event_payload(payload)
        rid = extract_id(resolved)
        if rid.synthetic:
            logger.warning(
                "Payload of type %s has no recognizable purchase id; using generated id %s for %s",
                type(payload).__name__,
                rid.value,
                event_type,
            )
        envelope = build_envelope(resolved, event_type, rid.value, self.entity_type, self._clock())
        routing_key = resolve_routing_key(envelope.event_type)
        message_id = new_id()
        message = Message(
            body=serialize_envelope(envelope),
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
            timestamp=envelope.occurred_at,
            type=envelope.event_type,
            headers={"entity-type": envelope.entity_type, "entity-id": envelope.entity_id},
        )
        result = PublishResult(
            event_type=envelope.event_type,
            entity_id=envelope.entity_id,
            routing_key=routing_key,
            message_id=message_id,
            synthetic_id=rid.synthetic,
        )
        return message, result

    async def publish(self, payload: Any, event_type: str) -> PublishResult:
        """Publish one event. Best-effort: see module docstring.

        Raises PublishError (or a subclass) on failure; nothing is retried.
        """
        message, result = self._build_message(payload, event_type)

        async with self._lock:
            try:
                declared = await self._ensure_ready()
            except PublishError:
                logger.error("Dropping %s for purchase %s: publisher unavailable", result.event_type, result.entity_id)
                raise

            self._set_state(PublisherState.PUBLISHING)
            try:
                await asyncio.wait_for(
                    declared.exchange.publish(message, routing_key=result.routing_key, mandatory=False),
                    timeout=self.publish_timeout_s,
                )
            except asyncio.CancelledError:
                # the write may be half done; never reuse this channel
                self._set_state(PublisherState.DEGRADED, "publish cancelled")
                raise
            except asyncio.TimeoutError as e:
                await self._fail(result, f"timed out after {self.publish_timeout_s}s")
                raise PublishError(
                    f"Publishing {result.event_type} timed out",
                    event_type=result.event_type,
                    entity_id=result.entity_id,
                ) from e
            except Exception as e:  # noqa: BLE001
                await self._fail(result, str(e) or type(e).__name__, exc_info=True)
                raise PublishError(
                    f"Publishing {result.event_type} failed: {e}",
                    event_type=result.event_type,
                    entity_id=result.entity_id,
                ) from e
            self._set_state(PublisherState.READY)

        logger.info(
            "Published %s for %s %s (routing_key=%s, message_id=%s)",
            result.event_type,
            self.entity_type,
            result.entity_id,
            result.routing_key,
            result.message_id,
        )
        return result

    async def _fail(self, result: PublishResult, reason: str, exc_info: bool = False) -> None:
        logger.error(
            "Failed to publish %s for purchase %s: %s",
            result.event_type,
            result.entity_id,
            reason,
            exc_info=exc_info,
        )
        self._set_state(PublisherState.DEGRADED, reason)
        await self._connection.discard_channel()

    async def close(self) -> None:
        """Release channel and connection. Safe to call more than once."""
        async with self._lock:
            if self._state is PublisherState.CLOSED:
                return
            try:
                await self._connection.close()
            finally:
                self._declared = None
                self._set_state(PublisherState.CLOSED)
                logger.info("Event publisher closed")

    async def __aenter__(self) -> "EventPublisher":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
