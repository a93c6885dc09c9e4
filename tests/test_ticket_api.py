import httpx
import pytest

from deskcollab.schemas.sla import RiskStatus
from deskcollab.schemas.worklogs import StopReasonType
from deskcollab.services import ticket_api
from deskcollab.services.ticket_api import TicketAPIClient, TicketAPIError


@pytest.fixture
def anyio_backend():
    return "asyncio"


def install_client(monkeypatch, responses):
    """Replace httpx.AsyncClient with a stub replaying ``responses`` in order."""

    recorded: list[dict[str, object]] = []
    queue = list(responses)

    class DummyClient:
        def __init__(self, *args, **kwargs):
            recorded.append({"client_kwargs": kwargs})

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, headers=None, params=None, json=None):
            recorded[-1].update(
                {"method": method, "url": url, "headers": headers, "params": params, "json": json}
            )
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

    monkeypatch.setattr(ticket_api.httpx, "AsyncClient", DummyClient)
    return recorded


def _client() -> TicketAPIClient:
    return TicketAPIClient("https://desk.example/api/agent/", token="secret", timeout=5)


@pytest.mark.anyio
async def test_get_worklogs_unwraps_envelope(monkeypatch):
    recorded = install_client(
        monkeypatch,
        [
            httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "activeLog": None,
                        "totalSeconds": 420,
                        "historyLogs": [
                            {
                                "id": 7,
                                "startedAt": "2024-05-01T09:00:00Z",
                                "endedAt": "2024-05-01T09:07:00Z",
                                "durationSeconds": 420,
                                "stopReason": "Lunch",
                            }
                        ],
                    },
                },
            )
        ],
    )

    state = await _client().get_worklogs("1001")

    assert state.total_seconds == 420
    assert state.active_session is None
    assert state.history_sessions[0].id == "7"
    request = recorded[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://desk.example/api/agent/worklogs"
    assert request["params"] == {"ticketNumber": "1001"}
    assert request["headers"]["Authorization"] == "Bearer secret"
    assert request["client_kwargs"] == {"timeout": 5}


@pytest.mark.anyio
async def test_stop_worklog_sends_reason(monkeypatch):
    recorded = install_client(monkeypatch, [httpx.Response(200, json={"success": True})])

    await _client().stop_worklog("1001", reason_id="r1", stop_reason="Lunch")

    assert recorded[0]["method"] == "POST"
    assert recorded[0]["url"] == "https://desk.example/api/agent/worklogs/stop"
    assert recorded[0]["json"] == {"ticketNumber": "1001", "reasonId": "r1", "stopReason": "Lunch"}


@pytest.mark.anyio
async def test_start_worklog_reports_unsuccessful_response(monkeypatch):
    install_client(
        monkeypatch,
        [httpx.Response(200, json={"success": False, "message": "Ticket is resolved"})],
    )

    with pytest.raises(TicketAPIError) as excinfo:
        await _client().start_worklog("1001")

    assert str(excinfo.value) == "Ticket is resolved"


@pytest.mark.anyio
async def test_error_status_raises_with_server_message(monkeypatch):
    install_client(monkeypatch, [httpx.Response(409, json={"message": "Timer already running"})])

    with pytest.raises(TicketAPIError) as excinfo:
        await _client().start_worklog("1001")

    assert excinfo.value.status_code == 409
    assert str(excinfo.value) == "Timer already running"


@pytest.mark.anyio
async def test_transport_error_is_wrapped(monkeypatch):
    install_client(monkeypatch, [httpx.ConnectError("connection refused")])

    with pytest.raises(TicketAPIError) as excinfo:
        await _client().get_worklogs("1001")

    assert excinfo.value.status_code is None
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.anyio
async def test_get_stop_reasons_requests_active_only(monkeypatch):
    recorded = install_client(
        monkeypatch,
        [
            httpx.Response(
                200,
                json={
                    "success": True,
                    "data": [
                        {"id": 1, "name": "Lunch", "type": "BREAK", "isActive": True},
                        {"id": 2, "name": "", "type": "WORK"},
                        {"id": 3, "name": "Escalated", "type": "WORK"},
                    ],
                },
            )
        ],
    )

    reasons = await _client().get_stop_reasons()

    assert [reason.name for reason in reasons] == ["Lunch", "Escalated"]
    assert reasons[0].type is StopReasonType.BREAK
    assert recorded[0]["url"] == "https://desk.example/api/agent/worklogs/reasons"
    assert recorded[0]["params"] == {"activeOnly": "true"}


@pytest.mark.anyio
async def test_get_sla_timers_treats_unknown_statuses_as_on_track(monkeypatch):
    install_client(
        monkeypatch,
        [
            httpx.Response(
                200,
                json={
                    "timers": [
                        {"displayStatus": "AT_RISK", "percentageElapsed": 80, "policyName": "Gold"},
                        {"displayStatus": "exploded", "percentageElapsed": 10},
                        {"percentageElapsed": 5},
                    ]
                },
            )
        ],
    )

    timers = await _client().get_sla_timers("T-1")

    assert [timer.display_status for timer in timers] == [RiskStatus.AT_RISK, RiskStatus.ON_TRACK]
    assert timers[0].policy_name == "Gold"


@pytest.mark.anyio
async def test_get_ticket_parses_summary_and_messages(monkeypatch):
    recorded = install_client(
        monkeypatch,
        [
            httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "ticket": {
                            "id": 55,
                            "ticketNumber": 1001,
                            "status": "OPEN",
                            "assigneeId": 9,
                            "priority": "high",
                        },
                        "messages": [
                            {
                                "id": 1,
                                "conversationId": 55,
                                "content": "Printer is on fire",
                                "senderType": "customer",
                                "createdAt": "2024-05-01T09:00:00Z",
                            }
                        ],
                    },
                },
            )
        ],
    )

    detail = await _client().get_ticket("55")

    assert recorded[0]["url"] == "https://desk.example/api/agent/tickets/55"
    assert detail.ticket.ticket_number == "1001"
    assert detail.ticket.is_assigned_to("9")
    assert detail.messages[0].conversation_id == "55"


@pytest.mark.anyio
async def test_no_content_response_returns_none(monkeypatch):
    install_client(monkeypatch, [httpx.Response(204)])

    await _client().start_worklog("1001")
