"""Async HTTP client for the roster and attendance endpoints."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

PLAYER_PROFILE_MISSING_DETAIL = "Player profile not found for this user"
DEFAULT_TIMEOUT = 10.0


class AttendanceAPIError(RuntimeError):
    """A request to the attendance API failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlayerProfileMissing(AttendanceAPIError):
    """The signed-in user has no roster entry, so they cannot set their own attendance."""


class AttendanceAPI:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def from_url(cls, base_url: str, **kwargs: Any) -> "AttendanceAPI":
        kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
        return cls(httpx.AsyncClient(base_url=base_url, **kwargs))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AttendanceAPI":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def login(self, username: str, password: str) -> dict[str, Any]:
        return await self._request("POST", "/api/login", json={"username": username, "password": password})

    async def list_players(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/players")

    async def list_attendances(self, match_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/matches/{match_id}/attendances")

    async def set_own_attendance(self, match_id: str, status: str) -> dict[str, Any]:
        try:
            return await self._request("POST", "/api/attendances", json={"matchId": match_id, "status": status})
        except AttendanceAPIError as exc:
            if exc.status_code == 404 and str(exc) == PLAYER_PROFILE_MISSING_DETAIL:
                raise PlayerProfileMissing(str(exc), exc.status_code) from exc
            raise

    async def set_player_attendance(self, match_id: str, player_id: str, status: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/api/admin/attendances",
            json={"matchId": match_id, "playerId": player_id, "status": status},
        )

    async def _request(self, method: str, url: str, *, json: Any = None) -> Any:
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise AttendanceAPIError(str(exc) or exc.__class__.__name__) from exc

        if response.is_error:
            raise AttendanceAPIError(_error_detail(response), response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("message")
        if isinstance(detail, str):
            return detail
    return response.reason_phrase
