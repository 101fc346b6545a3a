from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection

from ..core.config import BrokerConfig

logger = logging.getLogger(__name__)

Connect = Callable[..., Awaitable[AbstractConnection]]


class BrokerConnection:
    """Owns the AMQP connection and the single publishing channel.

    Opened once at startup, closed once at shutdown. Recovery after a failed
    publish goes through `discard_channel()` + `open()`; nothing else in the
    process holds a reference to the channel.

    Channels are opened without publisher confirms: a publish returns once
    the frame is written, not when the broker has accepted the message.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        connect_timeout_s: float = 10.0,
        connect: Optional[Connect] = None,
    ) -> None:
        self.config = config
        self.connect_timeout_s = connect_timeout_s
        self._connect: Connect = connect or aio_pika.connect
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None

    @property
    def is_open(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    @property
    def channel_is_open(self) -> bool:
        return self.is_open and self.channel is not None and not self.channel.is_closed

    async def open(self) -> AbstractChannel:
        """Return an open channel, (re)connecting as needed."""
        if not self.is_open:
            self.channel = None
            cfg = self.config
            self.connection = await asyncio.wait_for(
                self._connect(
                    host=cfg.host,
                    port=int(cfg.port),  # type: ignore[arg-type]
                    login=cfg.username,
                    password=cfg.password,
                    virtualhost=cfg.virtual_host,
                ),
                timeout=self.connect_timeout_s,
            )
            logger.info("Connected to broker %s", cfg.safe_url())

        if not self.channel_is_open:
            assert self.connection is not None
            self.channel = await asyncio.wait_for(
                self.connection.channel(publisher_confirms=False),
                timeout=self.connect_timeout_s,
            )
            logger.debug("Opened publishing channel")
        assert self.channel is not None
        return self.channel

    async def discard_channel(self) -> None:
        """Drop the current channel so the next open() starts from a fresh one."""
        channel, self.channel = self.channel, None
        if channel is None or channel.is_closed:
            return
        try:
            await asyncio.wait_for(channel.close(), timeout=self.connect_timeout_s)
        except Exception as e:  # noqa: BLE001
            # the channel is already unusable; closing it is best-effort
            logger.debug("Ignoring error while closing broken channel: %s", e)

    async def close(self) -> None:
        """Close channel, then connection. Both steps run even if one fails."""
        channel, self.channel = self.channel, None
        connection, self.connection = self.connection, None
        try:
            if channel is not None and not channel.is_closed:
                await channel.close()
        finally:
            if connection is not None and not connection.is_closed:
                await connection.close()
                logger.info("Disconnected from broker %s", self.config.safe_url())

    async def __aenter__(self) -> "BrokerConnection":
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
