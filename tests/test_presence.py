import pytest

from deskcollab.schemas.presence import Viewer
from deskcollab.services.channel import ChannelTimeoutError
from deskcollab.services.presence import PresenceTracker


pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


LOCAL = Viewer(user_id="u1", user_name="Ada")


class StubChannel:
    def __init__(self, *, connected: bool = True, ack=None, error: Exception | None = None) -> None:
        self.is_connected = connected
        self.ack = ack if ack is not None else {"success": True, "viewers": []}
        self.error = error
        self.requests: list[tuple[str, dict]] = []
        self.emitted: list[tuple[str, dict]] = []
        self.wait_calls: list[tuple[int, float]] = []

    async def wait_until_connected(self, *, attempts, interval):
        self.wait_calls.append((attempts, interval))
        return self.is_connected

    async def request(self, event_type, data=None):
        self.requests.append((event_type, dict(data or {})))
        if self.error is not None:
            raise self.error
        return self.ack

    async def emit(self, event_type, data=None):
        self.emitted.append((event_type, dict(data or {})))


def _tracker(channel, **kwargs) -> PresenceTracker:
    return PresenceTracker("T-1", LOCAL, channel, **kwargs)


async def test_local_viewer_is_present_before_any_server_answer() -> None:
    tracker = _tracker(StubChannel())

    assert tracker.viewers == (LOCAL,)


async def test_announce_view_merges_server_viewers_after_local() -> None:
    channel = StubChannel(
        ack={
            "success": True,
            "viewers": [
                {"userId": "u2", "userName": "Bob"},
                {"userId": "u1", "userName": "Ada (other tab)"},
                {"userId": 3, "userName": "Cy"},
                {"userName": "missing id"},
            ],
        }
    )
    tracker = _tracker(channel)

    viewers = await tracker.announce_view()

    assert [viewer.user_id for viewer in viewers] == ["u1", "u2", "3"]
    assert viewers[0] == LOCAL
    event_type, payload = channel.requests[0]
    assert event_type == "ticket:view"
    assert payload == {"ticketId": "T-1", "userId": "u1", "userName": "Ada", "userAvatar": None}


async def test_announce_view_without_viewer_list_falls_back_to_local() -> None:
    channel = StubChannel(ack={"success": False})
    tracker = _tracker(channel)
    tracker.handle_joined({"ticketId": "T-1", "viewer": {"userId": "u2"}})

    viewers = await tracker.announce_view()

    assert viewers == (LOCAL,)


async def test_announce_view_when_channel_never_connects_shows_local_only() -> None:
    channel = StubChannel(connected=False)
    tracker = _tracker(channel, wait_attempts=50, wait_interval=0.1)

    viewers = await tracker.announce_view()

    assert viewers == (LOCAL,)
    assert channel.wait_calls == [(50, 0.1)]
    assert channel.requests == []


async def test_announce_view_timeout_keeps_current_viewers() -> None:
    channel = StubChannel(error=ChannelTimeoutError("no ack"))
    tracker = _tracker(channel)
    tracker.handle_joined({"ticketId": "T-1", "viewer": {"userId": "u2"}})

    viewers = await tracker.announce_view()

    assert [viewer.user_id for viewer in viewers] == ["u1", "u2"]


async def test_joined_and_left_events_update_viewers_once() -> None:
    snapshots = []
    tracker = _tracker(StubChannel(), on_change=snapshots.append)

    tracker.handle_joined({"ticketId": "T-1", "viewer": {"userId": "u2", "userName": "Bob"}})
    tracker.handle_joined({"ticketId": "T-1", "viewer": {"userId": "u2", "userName": "Bob"}})
    tracker.handle_joined({"ticketId": "T-9", "viewer": {"userId": "u3"}})

    assert [viewer.user_id for viewer in tracker.viewers] == ["u1", "u2"]
    assert len(snapshots) == 1

    tracker.handle_left({"ticketId": "T-1", "userId": "u2"})
    tracker.handle_left({"ticketId": "T-1", "userId": "u2"})

    assert tracker.viewers == (LOCAL,)
    assert len(snapshots) == 2


async def test_left_event_for_local_user_is_ignored() -> None:
    tracker = _tracker(StubChannel())

    tracker.handle_left({"ticketId": "T-1", "userId": "u1"})

    assert tracker.viewers == (LOCAL,)


async def test_leave_emits_only_when_connected() -> None:
    connected = StubChannel()
    offline = StubChannel(connected=False)

    await _tracker(connected).leave()
    await _tracker(offline).leave()

    assert connected.emitted == [("ticket:leave", {"ticketId": "T-1"})]
    assert offline.emitted == []
