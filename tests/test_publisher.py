import asyncio
import json
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from aio_pika import DeliveryMode

from purchase_service.common.errors import (
    ConfigurationError,
    PublishError,
    PublisherClosedError,
    PublisherUnavailableError,
    TopologyError,
)
from purchase_service.core.config import BrokerConfig
from purchase_service.events.broker import BrokerConnection
from purchase_service.events.identity import PurchaseEventData, PurchaseSnapshot
from purchase_service.events.publisher import EventPublisher, PublisherState

from fakes import FakeBroker, broker_config

WHEN = datetime(2024, 1, 1, tzinfo=timezone.utc)


def created_payload(purchase_id=456):
    return PurchaseSnapshot(
        purchase_id=purchase_id,
        buyer_id=123,
        offer_id=789,
        purchase_date=WHEN,
        amount=Decimal("25000.00"),
        status="Pending",
    )


def make_publisher(broker, cfg=None, **kwargs):
    cfg = cfg or broker_config()
    states = []
    publisher = EventPublisher(
        cfg,
        connection=BrokerConnection(cfg, connect=broker.connect),
        clock=lambda: WHEN,
        on_state_change=lambda state, detail: states.append(state),
        **kwargs,
    )
    return publisher, states


class TestPublisherLifecycle(unittest.IsolatedAsyncioTestCase):
    async def test_start_declares_topology_and_becomes_ready(self):
        broker = FakeBroker()
        publisher, states = make_publisher(broker)
        self.assertIs(publisher.state, PublisherState.UNINITIALIZED)
        topology = await publisher.start()
        self.assertEqual(topology.exchange, "purchase.events")
        self.assertIs(publisher.state, PublisherState.READY)
        self.assertEqual(states, [PublisherState.READY])
        self.assertIn("purchase.events", broker.exchanges)
        await publisher.close()

    async def test_missing_settings_fail_before_network(self):
        broker = FakeBroker()
        cfg = BrokerConfig(host="rabbit.local", port=5672)
        publisher, _ = make_publisher(broker, cfg)
        with self.assertRaises(ConfigurationError) as ctx:
            await publisher.start()
        self.assertEqual(
            ctx.exception.missing,
            ["username", "password", "virtual_host", "exchange", "queue"],
        )
        self.assertEqual(broker.connections, [])
        self.assertIs(publisher.state, PublisherState.UNINITIALIZED)

    async def test_unreachable_broker_leaves_publisher_degraded(self):
        broker = FakeBroker(connect_error=ConnectionRefusedError("refused"))
        publisher, states = make_publisher(broker)
        with self.assertRaises(TopologyError):
            await publisher.start()
        self.assertIs(publisher.state, PublisherState.DEGRADED)
        self.assertEqual(states, [PublisherState.DEGRADED])

    async def test_start_twice_is_idempotent(self):
        broker = FakeBroker()
        publisher, _ = make_publisher(broker)
        await publisher.start()
        state = broker.state()
        await publisher.start()
        self.assertEqual(broker.state(), state)
        self.assertIs(publisher.state, PublisherState.READY)
        await publisher.close()

    async def test_close_releases_channel_and_connection(self):
        broker = FakeBroker()
        publisher, states = make_publisher(broker)
        await publisher.start()
        await publisher.close()
        await publisher.close()
        self.assertIs(publisher.state, PublisherState.CLOSED)
        self.assertTrue(broker.connections[0].is_closed)
        self.assertTrue(all(ch.is_closed for ch in broker.channels))
        self.assertEqual(states[-1], PublisherState.CLOSED)

    async def test_context_manager(self):
        broker = FakeBroker()
        publisher, _ = make_publisher(broker)
        async with publisher:
            await publisher.publish(created_payload(), "PurchaseCreated")
        self.assertIs(publisher.state, PublisherState.CLOSED)
        self.assertEqual(len(broker.published), 1)


class TestPublish(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.broker = FakeBroker()
        self.publisher, self.states = make_publisher(self.broker)
        await self.publisher.start()

    async def asyncTearDown(self):
        await self.publisher.close()

    async def test_created_event_scenario(self):
        result = await self.publisher.publish(created_payload(456), "PurchaseCreated")
        self.assertEqual(result.entity_id, "456")
        self.assertEqual(result.routing_key, "search.purchase.created")
        self.assertFalse(result.confirmed)
        self.assertFalse(result.synthetic_id)

        sent = self.broker.published[0]
        self.assertEqual(sent.exchange, "purchase.events")
        self.assertEqual(sent.routing_key, "search.purchase.created")
        body = json.loads(sent.message.body)
        self.assertEqual(body["entityType"], "PURCHASE")
        self.assertEqual(body["entityId"], "456")
        self.assertEqual(body["eventType"], "PurchaseCreated")
        self.assertEqual(body["occurredAt"], "2024-01-01T00:00:00Z")
        self.assertEqual(body["payload"]["amount"], "25000.00")
        self.assertEqual(body["payload"]["status"], "Pending")

    async def test_message_properties(self):
        result = await self.publisher.publish(created_payload(), "PurchaseCreated")
        message = self.broker.published[0].message
        self.assertEqual(message.content_type, "application/json")
        self.assertEqual(message.content_encoding, "utf-8")
        self.assertEqual(message.delivery_mode, DeliveryMode.PERSISTENT)
        self.assertEqual(message.message_id, result.message_id)
        self.assertEqual(message.type, "PurchaseCreated")

    async def test_updated_event_with_string_id_projection(self):
        data = PurchaseEventData(
            purchase_id="42",
            buyer_id="1",
            offer_id="2",
            amount=Decimal("10.00"),
            status="Completed",
            purchase_date=WHEN,
        )
        result = await self.publisher.publish(data, "PurchaseUpdated")
        self.assertEqual(result.entity_id, "42")
        self.assertEqual(self.broker.published[0].routing_key, "search.purchase.updated")

    async def test_unrecognized_payload_gets_generated_id_and_warning(self):
        with self.assertLogs("purchase_service.events.publisher", level="WARNING") as logs:
            result = await self.publisher.publish({"foo": "bar"}, "SomethingElse")
        self.assertTrue(result.synthetic_id)
        self.assertTrue(result.entity_id)
        self.assertEqual(result.routing_key, "search.event.unknown")
        self.assertTrue(any("no recognizable purchase id" in line for line in logs.output))
        body = json.loads(self.broker.published[0].message.body)
        self.assertEqual(body["entityId"], result.entity_id)
        self.assertEqual(body["payload"], {"foo": "bar"})

    async def test_failure_then_recovery(self):
        self.broker.publish_errors.append(ConnectionResetError("channel broke"))
        with self.assertRaises(PublishError) as ctx:
            await self.publisher.publish(created_payload(1), "PurchaseCreated")
        self.assertNotIsInstance(ctx.exception, PublisherUnavailableError)
        self.assertEqual(ctx.exception.entity_id, "1")
        self.assertIs(self.publisher.state, PublisherState.DEGRADED)

        result = await self.publisher.publish(created_payload(2), "PurchaseCreated")
        self.assertEqual(result.entity_id, "2")
        self.assertIs(self.publisher.state, PublisherState.READY)
        self.assertEqual([json.loads(p.message.body)["entityId"] for p in self.broker.published], ["2"])
        # a fresh channel was opened on the same connection
        self.assertEqual(len(self.broker.channels), 2)
        self.assertTrue(self.broker.channels[0].is_closed)
        self.assertEqual(
            self.states,
            [PublisherState.READY, PublisherState.PUBLISHING, PublisherState.DEGRADED,
             PublisherState.READY, PublisherState.PUBLISHING, PublisherState.READY],
        )

    async def test_channel_closed_by_broker_is_detected_before_publish(self):
        self.broker.channels[0].is_closed = True
        result = await self.publisher.publish(created_payload(3), "PurchaseCreated")
        self.assertEqual(result.entity_id, "3")
        self.assertEqual(len(self.broker.channels), 2)

    async def test_failed_recovery_fails_fast(self):
        self.broker.publish_errors.append(ConnectionResetError("channel broke"))
        with self.assertRaises(PublishError):
            await self.publisher.publish(created_payload(1), "PurchaseCreated")

        self.broker.channel_error = ConnectionResetError("broker gone")
        with self.assertRaises(PublisherUnavailableError):
            await self.publisher.publish(created_payload(2), "PurchaseCreated")
        self.assertIs(self.publisher.state, PublisherState.DEGRADED)
        self.assertEqual(self.broker.published, [])

        self.broker.channel_error = None
        await self.publisher.publish(created_payload(3), "PurchaseCreated")
        self.assertEqual(len(self.broker.published), 1)

    async def test_publish_timeout(self):
        self.publisher.publish_timeout_s = 0.01
        self.broker.publish_delay_s = 0.2
        with self.assertRaises(PublishError) as ctx:
            await self.publisher.publish(created_payload(), "PurchaseCreated")
        self.assertIn("timed out", str(ctx.exception))
        self.assertIs(self.publisher.state, PublisherState.DEGRADED)

    async def test_at_most_one_write_in_flight(self):
        self.broker.publish_delay_s = 0.01
        results = await asyncio.gather(
            *(self.publisher.publish(created_payload(i), "PurchaseCreated") for i in range(1, 11))
        )
        self.assertEqual(self.broker.max_in_flight, 1)
        self.assertEqual(len(self.broker.published), 10)
        self.assertEqual(sorted(int(r.entity_id) for r in results), list(range(1, 11)))

    async def test_padded_event_type_is_not_normalised(self):
        result = await self.publisher.publish(created_payload(), " PurchaseCreated ")
        self.assertEqual(result.event_type, " PurchaseCreated ")
        self.assertEqual(result.routing_key, "search.event.unknown")

    async def test_cancelled_publish_degrades_then_recovers(self):
        self.broker.publish_delay_s = 0.5
        task = asyncio.ensure_future(self.publisher.publish(created_payload(1), "PurchaseCreated"))
        while self.broker.in_flight == 0:
            await asyncio.sleep(0)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertIs(self.publisher.state, PublisherState.DEGRADED)
        self.assertEqual(self.broker.published, [])

        self.broker.publish_delay_s = 0
        result = await self.publisher.publish(created_payload(2), "PurchaseCreated")
        self.assertEqual(result.entity_id, "2")
        self.assertIs(self.publisher.state, PublisherState.READY)
        self.assertEqual(len(self.broker.channels), 2)
        self.assertTrue(self.broker.channels[0].is_closed)

    async def test_publish_after_close(self):
        await self.publisher.close()
        with self.assertRaises(PublisherClosedError):
            await self.publisher.publish(created_payload(), "PurchaseCreated")


class TestPublisherBuiltOutsideLoop(unittest.TestCase):
    def test_concurrent_publishes_on_a_later_loop(self):
        # built the way main.py builds it: at import time, no loop running
        broker = FakeBroker(publish_delay_s=0.01)
        publisher, _ = make_publisher(broker)

        async def run():
            await publisher.start()
            try:
                await asyncio.gather(*(publisher.publish(created_payload(i), "PurchaseCreated") for i in (1, 2, 3)))
            finally:
                await publisher.close()

        asyncio.run(run())
        self.assertEqual(len(broker.published), 3)
        self.assertEqual(broker.max_in_flight, 1)


class TestPublishBeforeStart(unittest.IsolatedAsyncioTestCase):
    async def test_not_started(self):
        broker = FakeBroker()
        publisher, _ = make_publisher(broker)
        with self.assertRaises(PublisherUnavailableError):
            await publisher.publish(created_payload(), "PurchaseCreated")
        self.assertEqual(broker.connections, [])

    async def test_degraded_start_recovers_on_first_publish(self):
        broker = FakeBroker(connect_error=ConnectionRefusedError("refused"))
        publisher, _ = make_publisher(broker)
        with self.assertRaises(TopologyError):
            await publisher.start()
        broker.connect_error = None
        result = await publisher.publish(created_payload(7), "PurchaseCreated")
        self.assertEqual(result.entity_id, "7")
        self.assertIs(publisher.state, PublisherState.READY)
        self.assertIn("search.purchases", broker.queues)
        await publisher.close()


if __name__ == "__main__":
    unittest.main()
