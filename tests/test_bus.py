import asyncio

import pytest

from runboard.bus.events import EventBus


def test_publish_reaches_every_subscriber_in_order() -> None:
    bus: EventBus[int] = EventBus("test")
    seen: list[tuple[str, int]] = []
    bus.subscribe(lambda e: seen.append(("a", e)))
    bus.subscribe(lambda e: seen.append(("b", e)))

    bus.publish(1)

    assert seen == [("a", 1), ("b", 1)]


def test_failing_subscriber_does_not_block_others() -> None:
    bus: EventBus[int] = EventBus("test")
    seen: list[int] = []

    def _broken(_event: int) -> None:
        raise RuntimeError("broken")

    bus.subscribe(_broken)
    bus.subscribe(seen.append)

    bus.publish(7)

    assert seen == [7]


def test_unsubscribe() -> None:
    bus: EventBus[int] = EventBus("test")
    seen: list[int] = []
    unsubscribe = bus.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    bus.publish(1)

    assert seen == []
    assert len(bus) == 0


@pytest.mark.asyncio
async def test_async_subscriber_is_scheduled_on_the_loop() -> None:
    bus: EventBus[str] = EventBus("test")
    seen: list[str] = []

    async def _handler(event: str) -> None:
        seen.append(event)

    bus.subscribe(_handler)
    bus.publish("hello")
    assert seen == []

    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert seen == ["hello"]


def test_async_subscriber_without_loop_is_dropped() -> None:
    bus: EventBus[str] = EventBus("test")
    seen: list[str] = []

    async def _handler(event: str) -> None:
        seen.append(event)

    bus.subscribe(_handler)
    bus.publish("hello")

    assert seen == []
