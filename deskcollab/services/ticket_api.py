"""HTTP client for the ticket, worklog and SLA endpoints of the support backend."""
from __future__ import annotations

from typing import Any, Mapping

import httpx
from pydantic import ValidationError

from deskcollab.core.config import Settings, get_settings
from deskcollab.core.logging import log_error, log_info, log_warning
from deskcollab.schemas.sla import SLATimer
from deskcollab.schemas.tickets import TicketDetail
from deskcollab.schemas.worklogs import StopReason, TimerState


class TicketAPIError(RuntimeError):
    """Raised when the support backend rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _unwrap(payload: Any) -> Any:
    """Return ``data`` from ``{"success": ..., "data": ...}`` envelopes."""

    if isinstance(payload, Mapping) and "data" in payload and isinstance(payload["data"], (Mapping, list)):
        return payload["data"]
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, Mapping):
        message = body.get("message") or body.get("detail") or body.get("error")
        if message:
            return str(message)
    return f"Request failed with status {response.status_code}"


class TicketAPIClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        resolved = settings or get_settings()
        self.base_url = str(base_url or resolved.api_base_url).rstrip("/")
        self.token = token if token is not None else resolved.api_token
        self.timeout = timeout if timeout is not None else resolved.request_timeout

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> Any:
        url = f"{self.base_url}{path if path.startswith('/') else f'/{path}'}"
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        log_info("Calling support API", url=url, method=method)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json,
                )
            except httpx.HTTPError as exc:
                log_error("Support API request failed", url=url, error=str(exc))
                raise TicketAPIError(str(exc)) from exc

        if response.status_code >= 400:
            message = _error_message(response)
            log_error(
                "Support API responded with an error",
                url=url,
                status=response.status_code,
                error=message,
            )
            raise TicketAPIError(message, status_code=response.status_code)
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TicketAPIError("Support API returned invalid JSON", status_code=response.status_code) from exc

    async def get_ticket(self, ticket_id: str) -> TicketDetail:
        payload = _unwrap(await self._request("GET", f"/tickets/{ticket_id}"))
        try:
            return TicketDetail.model_validate(payload)
        except ValidationError as exc:
            raise TicketAPIError(f"Unexpected ticket payload: {exc}") from exc

    async def start_worklog(self, ticket_number: str) -> None:
        payload = await self._request("POST", "/worklogs/start", json={"ticketNumber": ticket_number})
        self._ensure_success(payload, "Failed to start worklog")

    async def stop_worklog(
        self,
        ticket_number: str,
        *,
        reason_id: str | None = None,
        stop_reason: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"ticketNumber": ticket_number}
        if reason_id:
            body["reasonId"] = reason_id
        if stop_reason:
            body["stopReason"] = stop_reason
        payload = await self._request("POST", "/worklogs/stop", json=body)
        self._ensure_success(payload, "Failed to stop worklog")

    async def get_worklogs(self, ticket_number: str) -> TimerState:
        payload = _unwrap(
            await self._request("GET", "/worklogs", params={"ticketNumber": ticket_number})
        )
        try:
            return TimerState.model_validate(payload or {})
        except ValidationError as exc:
            raise TicketAPIError(f"Unexpected worklog payload: {exc}") from exc

    async def get_stop_reasons(self, *, active_only: bool = True) -> list[StopReason]:
        params = {"activeOnly": "true"} if active_only else None
        payload = _unwrap(await self._request("GET", "/worklogs/reasons", params=params))
        reasons: list[StopReason] = []
        for item in payload or []:
            try:
                reasons.append(StopReason.model_validate(item))
            except ValidationError as exc:
                log_warning("Skipping invalid stop reason", error=str(exc))
        return reasons

    async def get_sla_timers(self, conversation_id: str) -> list[SLATimer]:
        payload = await self._request(
            "GET", "/sla/timers", params={"conversationId": conversation_id}
        )
        if isinstance(payload, Mapping) and "timers" not in payload:
            payload = _unwrap(payload)
        items = payload.get("timers") if isinstance(payload, Mapping) else payload
        timers: list[SLATimer] = []
        for item in items or []:
            try:
                timers.append(SLATimer.model_validate(item))
            except ValidationError as exc:
                log_warning("Skipping invalid SLA timer", error=str(exc))
        return timers

    @staticmethod
    def _ensure_success(payload: Any, fallback: str) -> None:
        if isinstance(payload, Mapping) and payload.get("success") is False:
            raise TicketAPIError(str(payload.get("message") or fallback))
