import pytest

from deskcollab.services.dispatcher import EventDispatcher


pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def test_dispatch_runs_sync_and_async_handlers() -> None:
    dispatcher = EventDispatcher()
    seen: list[tuple[str, dict]] = []

    def sync_handler(data):
        seen.append(("sync", dict(data)))

    async def async_handler(data):
        seen.append(("async", dict(data)))

    dispatcher.register("receive_message", sync_handler)
    dispatcher.register("receive_message", async_handler)
    dispatcher.register("receive_message", sync_handler)

    delivered = await dispatcher.dispatch("receive_message", {"id": "m1"})

    assert delivered == 2
    assert seen == [("sync", {"id": "m1"}), ("async", {"id": "m1"})]


async def test_failing_handler_does_not_block_others() -> None:
    dispatcher = EventDispatcher()
    seen: list[dict] = []

    def broken(data):
        raise RuntimeError("boom")

    dispatcher.register("ticket:viewer:joined", broken)
    dispatcher.register("ticket:viewer:joined", seen.append)

    delivered = await dispatcher.dispatch("ticket:viewer:joined", None)

    assert delivered == 1
    assert seen == [{}]


async def test_unregistered_events_are_ignored() -> None:
    dispatcher = EventDispatcher()
    seen: list[dict] = []
    dispatcher.register("message_sent", seen.append)
    dispatcher.unregister("message_sent", seen.append)
    dispatcher.unregister("message_sent", seen.append)

    assert await dispatcher.dispatch("message_sent", {"id": "m1"}) == 0
    assert await dispatcher.dispatch("unknown", {}) == 0
    assert not dispatcher.handles("message_sent")
    assert seen == []
