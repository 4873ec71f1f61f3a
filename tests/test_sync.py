import asyncio
import json

import httpx
import pytest

from conftest import create_match, create_player
from matchday.client import PLAYER_PROFILE_MISSING_DETAIL, AttendanceAPI, AttendanceAPIError, PlayerProfileMissing
from matchday.lineup import AttendanceStatus, LineupStore, PlayerLocation, PlayerRef
from matchday.sync import (
    GENERIC_ERROR_MESSAGE,
    PROFILE_MISSING_MESSAGE,
    AttendanceCache,
    AttendanceRollback,
    AttendanceSynchronizer,
    apply_change,
    apply_rollback,
    invert,
    new_change,
)

INITIAL_RECORDS = [
    {"id": "a1", "matchId": "m1", "userId": "p1", "status": "pending", "confirmedAt": None},
    {"id": "a2", "matchId": "m1", "userId": "p2", "status": "confirmed", "confirmedAt": "2025-03-01T10:00:00"},
]
ROSTER = [
    {"id": "p1", "name": "Fernando", "jerseyNumber": 9, "position": "DELANTERO"},
    {"id": "p2", "name": "Carles", "jerseyNumber": 5, "position": "DEFENSA"},
]


def _mock_api(handler) -> AttendanceAPI:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")
    return AttendanceAPI(client)


def _synchronizer(api: AttendanceAPI, *, is_admin: bool = True, match_id: str = "m1"):
    store = LineupStore()
    store.set_match(match_id)
    notifications = []
    sync = AttendanceSynchronizer(store, api, is_admin=is_admin, notify=notifications.append)
    return sync, store, notifications


def test_apply_change_updates_existing_record():
    change = new_change("m1", "p1", "confirmed")
    updated = apply_change(INITIAL_RECORDS, change)
    assert updated[0]["status"] == "confirmed"
    assert updated[0]["id"] == "a1"
    assert INITIAL_RECORDS[0]["status"] == "pending"


def test_apply_change_synthesizes_temporary_record():
    change = new_change("m1", "p9", "absent")
    updated = apply_change(INITIAL_RECORDS, change)
    assert len(updated) == 3
    assert updated[-1]["id"].startswith("temp-")
    assert updated[-1]["userId"] == "p9"


def test_rollback_restores_prior_records():
    for player_id in ("p1", "p9"):
        change = new_change("m1", player_id, "confirmed")
        rollback = invert(change, INITIAL_RECORDS, AttendanceStatus.PENDING)
        assert apply_rollback(apply_change(INITIAL_RECORDS, change), rollback) == INITIAL_RECORDS
        assert rollback.status is AttendanceStatus.PENDING


def test_rollback_of_empty_cache_clears_it():
    change = new_change("m1", "p1", "confirmed")
    rollback = invert(change, None, None)
    assert apply_rollback(apply_change(None, change), rollback) is None


@pytest.mark.asyncio
async def test_failed_write_rolls_back_store_and_cache():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(500, json={"detail": "database unavailable"})
        return httpx.Response(503, json={"detail": "try later"})

    api = _mock_api(handler)
    sync, store, notifications = _synchronizer(api)
    sync.cache.set("m1", [dict(record) for record in INITIAL_RECORDS])
    store.update_attendance("p1", "pending")

    outcome = await sync.confirm_attendance("m1", "p1", "confirmed")

    assert outcome.ok is False
    assert isinstance(outcome.error, AttendanceAPIError)
    assert outcome.error.status_code == 500
    assert store.attendances["p1"] == "pending"
    assert sync.cache.get("m1") == INITIAL_RECORDS
    assert store.find_player_position("p1") is None
    assert notifications[-1].variant == "destructive"
    assert notifications[-1].description == GENERIC_ERROR_MESSAGE
    await api.aclose()


@pytest.mark.asyncio
async def test_failed_write_forgets_status_the_store_never_had():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api = _mock_api(handler)
    sync, store, notifications = _synchronizer(api)

    outcome = await sync.confirm_attendance("m1", "p1", "absent")

    assert outcome.ok is False
    assert "p1" not in store.attendances
    assert sync.cache.get("m1") is None
    assert notifications[-1].description == GENERIC_ERROR_MESSAGE
    await api.aclose()


@pytest.mark.asyncio
async def test_missing_profile_message_for_players_only():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(404, json={"detail": PLAYER_PROFILE_MISSING_DETAIL})
        return httpx.Response(200, json=INITIAL_RECORDS)

    api = _mock_api(handler)
    player_sync, _, player_notes = _synchronizer(api, is_admin=False)
    outcome = await player_sync.confirm_attendance("m1", "p1", "confirmed")
    assert isinstance(outcome.error, PlayerProfileMissing)
    assert player_notes[-1].description == PROFILE_MISSING_MESSAGE

    admin_sync, _, admin_notes = _synchronizer(api, is_admin=True)
    outcome = await admin_sync.confirm_attendance("m1", "p1", "confirmed")
    assert not isinstance(outcome.error, PlayerProfileMissing)
    assert admin_notes[-1].description == GENERIC_ERROR_MESSAGE
    await api.aclose()


@pytest.mark.asyncio
async def test_role_selects_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(201, json={"id": "a1", "matchId": "m1", "userId": "p1", "status": "pending"})
        return httpx.Response(200, json=INITIAL_RECORDS)

    api = _mock_api(handler)
    admin_sync, _, _ = _synchronizer(api, is_admin=True)
    await admin_sync.confirm_attendance("m1", "p1", "pending")
    player_sync, _, _ = _synchronizer(api, is_admin=False)
    await player_sync.confirm_attendance("m1", "p1", "pending")

    assert seen == [
        ("/api/admin/attendances", {"matchId": "m1", "playerId": "p1", "status": "pending"}),
        ("/api/attendances", {"matchId": "m1", "status": "pending"}),
    ]
    await api.aclose()


@pytest.mark.asyncio
async def test_in_flight_read_is_cancelled_before_patch():
    release = asyncio.Event()
    reads = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal reads
        if request.method == "GET":
            reads += 1
            if reads == 1:
                await release.wait()
            return httpx.Response(200, json=INITIAL_RECORDS)
        return httpx.Response(201, json={"id": "a1", "matchId": "m1", "userId": "p1", "status": "absent"})

    api = _mock_api(handler)
    sync, store, _ = _synchronizer(api)
    stale_read = sync.cache.fetch("m1")
    while reads == 0:
        await asyncio.sleep(0)

    outcome = await sync.confirm_attendance("m1", "p1", "absent")

    assert outcome.ok is True
    assert stale_read.cancelled()
    assert reads == 2
    assert store.attendances["p1"] == "absent"
    await api.aclose()


@pytest.mark.asyncio
async def test_confirmation_falls_back_to_cached_roster():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "a1", "matchId": "m1", "userId": "p1", "status": "confirmed"})
        if request.url.path == "/api/players":
            return httpx.Response(200, json=ROSTER)
        return httpx.Response(200, json=INITIAL_RECORDS)

    api = _mock_api(handler)
    sync, store, _ = _synchronizer(api)
    await sync.cache.load_roster()

    outcome = await sync.confirm_attendance("m1", "p1", "confirmed")

    assert outcome.ok is True
    assert store.find_player_position("p1") == PlayerLocation("DEL", 0)
    await api.aclose()


@pytest.mark.asyncio
async def test_confirm_attendance_against_api(admin_client):
    striker = await create_player(admin_client, "Fernando Torres", 9, "DELANTERO")
    second = await create_player(admin_client, "David Villa", 7, "DELANTERO")
    match = await create_match(admin_client)

    api = AttendanceAPI(admin_client)
    sync, store, notifications = _synchronizer(api, match_id=match["id"])
    await sync.cache.invalidate(match["id"])
    assert {record["status"] for record in sync.cache.get(match["id"])} == {"pending"}

    outcome = await sync.confirm_attendance(match["id"], striker["id"], "confirmed")
    assert outcome.ok is True
    assert outcome.record["player"]["id"] == striker["id"]
    assert store.find_player_position(striker["id"]) == PlayerLocation("DEL", 0)
    assert notifications[-1].description == "Asistencia confirmada"

    await sync.confirm_attendance(match["id"], second["id"], "confirmed")
    assert store.find_player_position(second["id"]) == PlayerLocation("DEL", 1)

    mirrored = {record["userId"]: record["status"] for record in sync.cache.get(match["id"])}
    assert mirrored == {striker["id"]: "confirmed", second["id"]: "confirmed"}

    outcome = await sync.confirm_attendance(match["id"], striker["id"], "absent")
    assert outcome.ok is True
    assert store.attendances[striker["id"]] == "absent"
    assert store.find_player_position(striker["id"]) is None


@pytest.mark.asyncio
async def test_player_confirms_own_attendance(admin_client, make_client):
    player = await create_player(admin_client, "Marcos Senna", 19, "MEDIOCENTRO", password="pivote")
    match = await create_match(admin_client)
    player_client = await make_client(player["username"], "pivote")

    sync, store, notifications = _synchronizer(AttendanceAPI(player_client), is_admin=False, match_id=match["id"])
    outcome = await sync.confirm_attendance(match["id"], player["id"], "confirmed")

    assert outcome.ok is True
    assert notifications[-1].description == "Has confirmado tu asistencia"
    assert store.find_player_position(player["id"]) == PlayerLocation("MED", 0)
    assert sync.cache.get(match["id"])[0]["status"] == "confirmed"


def test_cache_patch_applies_change_and_rollback():
    cache = AttendanceCache(api=None)
    cache.set("m1", [dict(record) for record in INITIAL_RECORDS])
    change = new_change("m1", "p2", "absent")
    rollback = invert(change, cache.get("m1"), AttendanceStatus.CONFIRMED)

    patched = cache.patch(change)
    assert patched is cache.get("m1")
    assert patched[1]["status"] == "absent"

    assert cache.patch(rollback) == INITIAL_RECORDS
    assert cache.get("m1") == INITIAL_RECORDS


@pytest.mark.asyncio
async def test_failed_absent_write_puts_player_back_in_slot():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(500, json={"detail": "database unavailable"})
        return httpx.Response(200, json=INITIAL_RECORDS)

    api = _mock_api(handler)
    sync, store, _ = _synchronizer(api)
    striker = PlayerRef("p1", "Fernando", "9", "DELANTERO")
    store.update_attendance("p1", "confirmed")
    assert store.auto_assign_player(striker) == PlayerLocation("DEL", 0)

    outcome = await sync.confirm_attendance("m1", "p1", "absent")

    assert outcome.ok is False
    assert store.attendances["p1"] == "confirmed"
    assert store.find_player_position("p1") == PlayerLocation("DEL", 0)
    await api.aclose()


def test_rollback_into_full_slot_falls_back_to_auto_assign():
    store = LineupStore()
    store.set_match("m1")
    striker = PlayerRef("p1", "Fernando", "9", "DELANTERO")
    store.update_attendance("p1", "confirmed")
    store.auto_assign_player(striker)
    sync = AttendanceSynchronizer(store, api=None)

    change = new_change("m1", "p1", "absent")
    rollback = invert(change, None, AttendanceStatus.CONFIRMED, striker, store.find_player_position("p1"))
    sync.apply(change)
    for number, player_id in (("7", "p7"), ("11", "p11")):
        store.auto_assign_player(PlayerRef(player_id, "Delantero", number, "DELANTERO"))
    store.place_player("p11", "DEL", "DEL", 0)
    sync.apply(rollback)

    assert isinstance(rollback, AttendanceRollback)
    assert store.find_player_position("p1") == PlayerLocation("DEL", 1)


@pytest.mark.asyncio
async def test_failed_background_read_is_forgotten():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "try later"})

    api = _mock_api(handler)
    cache = AttendanceCache(api)
    task = cache.fetch("m1")
    await asyncio.wait({task})
    await asyncio.sleep(0)

    assert "m1" not in cache._tasks
    assert isinstance(task.exception(), AttendanceAPIError)
    assert cache.fetch("m1") is not task
    await asyncio.wait({cache.fetch("m1")})
    await api.aclose()
