"""
事件总线测试（memory 后端）
"""
import pytest
import pytest_asyncio

from mf_core.event_bus import EventBus, EventPayload


@pytest_asyncio.fixture
async def bus(settings):
    event_bus = EventBus(settings)
    await event_bus.initialize()
    yield event_bus
    await event_bus.shutdown()


class TestPublishSubscribe:
    """发布与订阅"""

    async def test_subscribers_receive_payload(self, bus):
        received = []

        async def handler(payload):
            received.append(payload)

        await bus.subscribe("mf.order.paid", handler)
        event_id = await bus.publish("mf.order.paid", {"order_no": "A1", "member_id": 3}, key="A1")

        assert event_id
        assert received == [{"order_no": "A1", "member_id": 3}]

    async def test_unsubscribed_topic_is_dropped(self, bus):
        await bus.publish("mf.order.created", {"order_no": "A1"})

        assert bus.dead_letters == []

    async def test_topic_must_use_project_prefix(self, bus):
        async def handler(payload):
            return None

        with pytest.raises(ValueError):
            await bus.publish("order.paid", {})
        with pytest.raises(ValueError):
            await bus.subscribe("ef.order.paid", handler)

    async def test_pending_messages_empty_in_memory(self, bus):
        async def handler(payload):
            return None

        assert await bus.get_pending_messages("mf.order.paid", handler) == []


class TestRetryAndDeadLetter:
    """重试与死信"""

    async def test_transient_failure_is_retried(self, bus):
        calls = []

        async def flaky(payload):
            calls.append(payload)
            if len(calls) < 2:
                raise RuntimeError("temporary")

        await bus.subscribe("mf.order.paid", flaky)
        await bus.publish("mf.order.paid", {"order_no": "A1"})

        assert len(calls) == 2
        assert bus.dead_letters == []

    async def test_exhausted_delivery_goes_to_dead_letter_and_replays(self, bus, settings):
        calls = []
        healthy = []
        broken = {"on": True}

        async def failing(payload):
            calls.append(payload)
            if broken["on"]:
                raise RuntimeError("downstream unavailable")

        async def other(payload):
            healthy.append(payload)

        await bus.subscribe("mf.order.paid", failing)
        await bus.subscribe("mf.order.paid", other)
        await bus.publish("mf.order.paid", {"order_no": "A1"})

        assert len(calls) == settings.event_max_deliveries
        assert healthy == [{"order_no": "A1"}]
        assert len(bus.dead_letters) == 1
        letter = bus.dead_letters[0]
        assert letter.topic == "mf.order.paid"
        assert letter.deliveries == settings.event_max_deliveries
        assert "downstream unavailable" in letter.error

        broken["on"] = False
        assert await bus.retry_dead_letters() == 1
        assert bus.dead_letters == []
        assert healthy == [{"order_no": "A1"}]

    async def test_failed_replay_keeps_dead_letter(self, bus):
        async def failing(payload):
            raise RuntimeError("still broken")

        await bus.subscribe("mf.order.cancelled", failing)
        await bus.publish("mf.order.cancelled", {"order_no": "A2"})

        assert await bus.retry_dead_letters("mf.order.cancelled") == 0
        assert len(bus.dead_letters) == 1


class TestEventPayload:

    def test_from_dict_keeps_identity(self):
        event = EventPayload(topic="mf.order.paid", member_id=5, payload={"order_no": "A1"})

        restored = EventPayload.from_dict(event.to_dict())

        assert restored.event_id == event.event_id
        assert restored.timestamp == event.timestamp
        assert restored.payload == {"order_no": "A1"}
