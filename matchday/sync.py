"""Optimistic attendance updates kept in step with the attendance API.

Every status change is described by an ``AttendanceChange`` event. Before
the request is sent the event is applied to the lineup store and to the
per-match mirror of the server's attendance list; ``invert`` derives the
compensating ``AttendanceRollback`` from the state the change overwrote,
so undoing a failed write is a pure function of that prior state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Mapping, Sequence

from .client import AttendanceAPI, AttendanceAPIError, PlayerProfileMissing
from .lineup import AttendanceStatus, LineupStore, PlayerLocation, PlayerRef, build_player_ref

logger = logging.getLogger(__name__)

Record = dict[str, Any]


@dataclass(frozen=True)
class AttendanceChange:
    match_id: str
    player_id: str
    status: AttendanceStatus
    confirmed_at: str
    temp_id: str


@dataclass(frozen=True)
class AttendanceRollback:
    match_id: str
    player_id: str
    status: AttendanceStatus | None
    record: Record | None
    had_records: bool
    player: PlayerRef | None = None
    location: PlayerLocation | None = None


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"


@dataclass
class AttendanceOutcome:
    ok: bool
    record: Record | None = None
    error: Exception | None = None


SUCCESS_MESSAGES_ADMIN = {
    AttendanceStatus.CONFIRMED: "Asistencia confirmada",
    AttendanceStatus.ABSENT: "Marcado como ausente",
    AttendanceStatus.PENDING: "Marcado como pendiente",
}
SUCCESS_MESSAGES_PLAYER = {
    AttendanceStatus.CONFIRMED: "Has confirmado tu asistencia",
    AttendanceStatus.ABSENT: "Has indicado que no asistirás",
    AttendanceStatus.PENDING: "Tu asistencia queda pendiente",
}
PROFILE_MISSING_MESSAGE = (
    "Tu usuario no tiene un perfil de jugador asociado. Contacta con el administrador del equipo."
)
GENERIC_ERROR_MESSAGE = "No se pudo actualizar la asistencia. Inténtalo de nuevo."


def _record_player_id(record: Mapping[str, Any]) -> str | None:
    value = record.get("userId", record.get("playerId"))
    return None if value is None else str(value)


def new_change(match_id: str, player_id: str, status: AttendanceStatus | str) -> AttendanceChange:
    now = datetime.now(timezone.utc)
    return AttendanceChange(
        match_id=str(match_id),
        player_id=str(player_id),
        status=AttendanceStatus(status),
        confirmed_at=now.isoformat(),
        temp_id=f"temp-{int(time.time() * 1000)}",
    )


def apply_change(records: Sequence[Record] | None, change: AttendanceChange) -> list[Record]:
    """Return ``records`` with ``change`` applied; the input is never mutated."""
    updated = [dict(record) for record in records or ()]
    for record in updated:
        if _record_player_id(record) == change.player_id:
            record["status"] = change.status.value
            record["confirmedAt"] = change.confirmed_at
            return updated
    updated.append(
        {
            "id": change.temp_id,
            "matchId": change.match_id,
            "userId": change.player_id,
            "status": change.status.value,
            "confirmedAt": change.confirmed_at,
        }
    )
    return updated


def invert(
    change: AttendanceChange,
    prior_records: Sequence[Record] | None,
    prior_status: AttendanceStatus | None,
    prior_player: PlayerRef | None = None,
    prior_location: PlayerLocation | None = None,
) -> AttendanceRollback:
    """Build the event that undoes ``change`` given the state it is about to overwrite.

    ``prior_player`` and ``prior_location`` describe where the player sat on
    the board, so a rollback can undo the eviction an ``absent`` change causes.
    """
    prior_record = next(
        (dict(record) for record in prior_records or () if _record_player_id(record) == change.player_id),
        None,
    )
    return AttendanceRollback(
        match_id=change.match_id,
        player_id=change.player_id,
        status=prior_status,
        record=prior_record,
        had_records=prior_records is not None,
        player=prior_player if prior_location is not None else None,
        location=prior_location if prior_player is not None else None,
    )


def apply_rollback(records: Sequence[Record] | None, rollback: AttendanceRollback) -> list[Record] | None:
    if not rollback.had_records:
        return None
    restored: list[Record] = []
    replaced = False
    for record in records or ():
        if _record_player_id(record) != rollback.player_id:
            restored.append(dict(record))
        elif rollback.record is not None and not replaced:
            restored.append(dict(rollback.record))
            replaced = True
    if rollback.record is not None and not replaced:
        restored.append(dict(rollback.record))
    return restored


class AttendanceCache:
    """Client-side mirror of each match's attendance list plus the roster."""

    def __init__(self, api: AttendanceAPI) -> None:
        self._api = api
        self._records: dict[str, list[Record]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self.roster: list[Record] = []

    def get(self, match_id: str) -> list[Record] | None:
        return self._records.get(str(match_id))

    def set(self, match_id: str, records: list[Record] | None) -> None:
        if records is None:
            self._records.pop(str(match_id), None)
        else:
            self._records[str(match_id)] = records

    def patch(self, event: AttendanceChange | AttendanceRollback) -> list[Record] | None:
        """Apply a change or rollback to the mirrored list of its match."""
        current = self.get(event.match_id)
        if isinstance(event, AttendanceChange):
            records = apply_change(current, event)
        else:
            records = apply_rollback(current, event)
        self.set(event.match_id, records)
        return records

    def fetch(self, match_id: str) -> asyncio.Task:
        """Start (or join) the read of ``match_id``'s attendance list."""
        key = str(match_id)
        task = self._tasks.get(key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._load(key))
            task.add_done_callback(partial(self._forget, key))
            self._tasks[key] = task
        return task

    def cancel(self, match_id: str) -> None:
        task = self._tasks.pop(str(match_id), None)
        if task is not None and not task.done():
            logger.debug("Cancelling attendance read for match %s", match_id)
            task.cancel()

    async def invalidate(self, match_id: str) -> list[Record] | None:
        """Refetch ``match_id``'s list; stale data stays visible if the read fails."""
        self.cancel(match_id)
        task = self.fetch(match_id)
        await asyncio.wait({task})
        if task.cancelled():
            return None
        exc = task.exception()
        if exc is not None:
            logger.warning("Could not refresh attendances for match %s: %s", match_id, exc)
            return None
        return task.result()

    async def load_roster(self) -> list[Record]:
        self.roster = await self._api.list_players()
        return self.roster

    def find_player(self, player_id: str) -> Record | None:
        return next((player for player in self.roster if str(player.get("id")) == str(player_id)), None)

    async def _load(self, match_id: str) -> list[Record]:
        records = await self._api.list_attendances(match_id)
        self._records[match_id] = records
        return records

    def _forget(self, match_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(match_id) is task:
            del self._tasks[match_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Attendance read for match %s failed: %s", match_id, task.exception())


class AttendanceSynchronizer:
    def __init__(
        self,
        store: LineupStore,
        api: AttendanceAPI,
        cache: AttendanceCache | None = None,
        *,
        is_admin: bool = False,
        notify: Callable[[Notification], None] | None = None,
    ) -> None:
        self.store = store
        self.api = api
        self.cache = cache or AttendanceCache(api)
        self.is_admin = is_admin
        self._notify = notify

    async def confirm_attendance(
        self, match_id: str, player_id: str, status: AttendanceStatus | str
    ) -> AttendanceOutcome:
        change = new_change(match_id, player_id, status)

        self.cache.cancel(change.match_id)
        if self._owns_match(change.match_id):
            rollback = invert(
                change,
                self.cache.get(change.match_id),
                self.store.attendances.get(change.player_id),
                self.store.find_player(change.player_id),
                self.store.find_player_position(change.player_id),
            )
        else:
            rollback = invert(change, self.cache.get(change.match_id), None)
        self.apply(change)

        try:
            if self.is_admin:
                result = await self.api.set_player_attendance(change.match_id, change.player_id, change.status.value)
            else:
                result = await self.api.set_own_attendance(change.match_id, change.status.value)
        except AttendanceAPIError as exc:
            logger.warning("Attendance update for %s failed: %s", change.player_id, exc)
            outcome = self._fail(rollback, exc)
        except Exception as exc:
            logger.exception("Unexpected error updating attendance for %s", change.player_id)
            outcome = self._fail(rollback, exc)
        else:
            messages = SUCCESS_MESSAGES_ADMIN if self.is_admin else SUCCESS_MESSAGES_PLAYER
            self.notify(Notification("✓ Estado actualizado", messages[change.status]))
            if change.status is AttendanceStatus.CONFIRMED:
                self._place_confirmed(change.match_id, change.player_id, result)
            outcome = AttendanceOutcome(ok=True, record=result)

        await self.cache.invalidate(change.match_id)
        return outcome

    def apply(self, event: AttendanceChange | AttendanceRollback) -> None:
        """Apply an event to both the cache mirror and the lineup store."""
        self.cache.patch(event)
        if not self._owns_match(event.match_id):
            return
        if isinstance(event, AttendanceChange):
            self.store.update_attendance(event.player_id, event.status)
            return

        if event.status is None:
            self.store.clear_attendance(event.player_id)
        else:
            self.store.update_attendance(event.player_id, event.status)
        if event.player is not None and self.store.find_player_position(event.player_id) != event.location:
            self.store.restore_player(event.player, event.location)

    def notify(self, notification: Notification) -> None:
        logger.info("%s: %s", notification.title, notification.description)
        if self._notify is not None:
            self._notify(notification)

    def _owns_match(self, match_id: str) -> bool:
        return self.store.match_id is None or str(self.store.match_id) == str(match_id)

    def _fail(self, rollback: AttendanceRollback, exc: Exception) -> AttendanceOutcome:
        self.apply(rollback)
        if isinstance(exc, PlayerProfileMissing) and not self.is_admin:
            description = PROFILE_MISSING_MESSAGE
        else:
            description = GENERIC_ERROR_MESSAGE
        self.notify(Notification("Error", description, variant="destructive"))
        return AttendanceOutcome(ok=False, error=exc)

    def _place_confirmed(self, match_id: str, player_id: str, result: Mapping[str, Any] | None) -> None:
        if not self._owns_match(match_id):
            return
        player = (result or {}).get("player") or self.cache.find_player(player_id)
        if not player:
            logger.warning("No roster entry for confirmed player %s; skipping auto-assignment", player_id)
            return
        if self.store.find_player_position(player_id) is None:
            location = self.store.auto_assign_player(build_player_ref(player))
            logger.debug("Auto-assigned %s to %s", player_id, location)
