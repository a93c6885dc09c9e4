import pytest

from deskcollab.schemas.sla import RiskStatus, SLATimer
from deskcollab.services.sla import SlaMonitor, evaluate
from deskcollab.services.ticket_api import TicketAPIError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _timers(*statuses: str) -> list[SLATimer]:
    return [SLATimer(display_status=status, percentage_elapsed=50) for status in statuses]


def test_no_timers_yields_no_risk() -> None:
    assert evaluate([]) is None


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        (("on_track", "breached"), RiskStatus.BREACHED),
        (("at_risk", "critical", "on_track"), RiskStatus.CRITICAL),
        (("on_track", "at_risk"), RiskStatus.AT_RISK),
        (("paused", "on_track"), RiskStatus.PAUSED),
        (("on_track", "on_track"), RiskStatus.ON_TRACK),
    ],
)
def test_worst_status_wins(statuses, expected) -> None:
    assert evaluate(_timers(*statuses)) is expected


def test_mappings_with_unknown_status_count_as_on_track() -> None:
    timers = [{"displayStatus": "escalated"}, {"display_status": "on_track"}]

    assert evaluate(timers) is RiskStatus.ON_TRACK
    assert evaluate([{"displayStatus": "escalated"}]) is RiskStatus.ON_TRACK
    assert evaluate([{"displayStatus": "paused"}, {"displayStatus": "bogus"}]) is RiskStatus.PAUSED


def test_parsed_and_raw_unknown_statuses_agree() -> None:
    raw = [{"displayStatus": "escalated"}, {"displayStatus": "Exploded"}]
    parsed = [SLATimer.model_validate(item) for item in raw]

    assert [timer.display_status for timer in parsed] == [RiskStatus.ON_TRACK, RiskStatus.ON_TRACK]
    assert evaluate(parsed) is RiskStatus.ON_TRACK
    assert evaluate(raw) is RiskStatus.ON_TRACK
    assert evaluate([{"displayStatus": "CRITICAL"}]) is evaluate(_timers("critical"))


class FakeSlaAPI:
    def __init__(self, timers) -> None:
        self.timers = timers
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def get_sla_timers(self, conversation_id):
        self.calls.append(conversation_id)
        if self.error is not None:
            raise self.error
        return list(self.timers)


@pytest.mark.anyio
async def test_monitor_reports_only_risk_changes() -> None:
    api = FakeSlaAPI(_timers("on_track"))
    changes = []
    monitor = SlaMonitor("T-1", api, on_change=lambda risk, timers: changes.append(risk))

    assert await monitor.poll() is RiskStatus.ON_TRACK
    assert await monitor.poll() is RiskStatus.ON_TRACK
    api.timers = _timers("on_track", "critical")
    assert await monitor.poll() is RiskStatus.CRITICAL

    assert changes == [RiskStatus.ON_TRACK, RiskStatus.CRITICAL]
    assert api.calls == ["T-1", "T-1", "T-1"]


@pytest.mark.anyio
async def test_monitor_keeps_last_known_risk_when_polling_fails() -> None:
    api = FakeSlaAPI(_timers("at_risk"))
    monitor = SlaMonitor("T-1", api)
    await monitor.poll()
    api.error = TicketAPIError("timeout")

    assert await monitor.poll() is RiskStatus.AT_RISK
    assert len(monitor.timers) == 1
