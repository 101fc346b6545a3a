from __future__ import annotations

import logging
from dataclasses import dataclass

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from aio_pika.exceptions import ChannelPreconditionFailed

from ..common.errors import TopologyError
from ..core.config import BrokerConfig
from .broker import BrokerConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerTopology:
    exchange: str
    queue: str
    binding_patterns: tuple[str, ...]
    exchange_type: ExchangeType = ExchangeType.TOPIC
    durable: bool = True
    auto_delete: bool = False

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "BrokerTopology":
        patterns = tuple(dict.fromkeys(p.strip() for p in config.binding_patterns if p.strip()))
        return cls(exchange=str(config.exchange), queue=str(config.queue), binding_patterns=patterns)


@dataclass(frozen=True)
class DeclaredTopology:
    """Handles returned by the broker for a declared topology."""

    topology: BrokerTopology
    exchange: AbstractExchange
    queue: AbstractQueue


class TopologyInitializer:
    """Declare exchange, queue and bindings.

    AMQP declarations are idempotent when the arguments match, so this is
    safe to run again after a channel is reopened. A declaration that
    disagrees with what already exists on the broker (different type,
    durability, auto-delete) is rejected by the broker with
    PRECONDITION_FAILED and surfaces here as a TopologyError.
    """

    def __init__(self, topology: BrokerTopology) -> None:
        self.topology = topology

    async def initialize(self, connection: BrokerConnection) -> DeclaredTopology:
        try:
            channel = await connection.open()
        except Exception as e:  # noqa: BLE001
            raise TopologyError(
                f"Cannot open broker channel at {connection.config.safe_url()}: {e}"
            ) from e
        return await self.declare(channel)

    async def declare(self, channel: AbstractChannel) -> DeclaredTopology:
        t = self.topology
        try:
            exchange = await channel.declare_exchange(
                t.exchange,
                type=t.exchange_type,
                durable=t.durable,
                auto_delete=t.auto_delete,
            )
            queue = await channel.declare_queue(
                t.queue,
                durable=t.durable,
                auto_delete=t.auto_delete,
            )
            for pattern in t.binding_patterns:
                await queue.bind(exchange, routing_key=pattern)
        except ChannelPreconditionFailed as e:
            raise TopologyError(
                f"Exchange {t.exchange!r} or queue {t.queue!r} already exists with different arguments: {e}"
            ) from e
        except Exception as e:  # noqa: BLE001
            raise TopologyError(f"Failed to declare topology on exchange {t.exchange!r}: {e}") from e

        logger.info(
            "Declared topology: exchange=%s (%s) queue=%s bindings=%s",
            t.exchange,
            t.exchange_type.value,
            t.queue,
            ",".join(t.binding_patterns),
        )
        return DeclaredTopology(topology=t, exchange=exchange, queue=queue)
