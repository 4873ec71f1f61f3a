from __future__ import annotations

import hmac
import logging
import os
import secrets
import time
from datetime import datetime
from io import BytesIO
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field
from sqlmodel import Session

try:  # Optional – used for HEIC conversion
    from pillow_heif import read_heif
    from PIL import Image
except ImportError:  # pragma: no cover - graceful fallback when libs missing
    read_heif = None
    Image = None

from .client import PLAYER_PROFILE_MISSING_DETAIL
from .database import (
    ATTENDANCE_STATUSES,
    ROLE_ADMIN,
    UPLOAD_DIR,
    Match,
    MatchAttendance,
    Player,
    User,
    convoke_players,
    create_user_for_player,
    get_match,
    get_match_attendances,
    get_matches,
    get_player,
    get_player_attendances,
    get_player_by_user,
    get_players,
    get_session,
    get_user_by_credentials,
    upsert_attendance,
)
from .formations import get_formation
from .lineup import BENCH, FIELD_LINES, LineupStore
from .storage import ImageStorageError, delete_profile_image, image_url, profile_image_name, save_profile_image

BASE_DIR = Path(__file__).resolve().parent

router = APIRouter()
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

logger = logging.getLogger(__name__)
ALLOWED_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".heic", ".heif"}
MAX_TEXT_LENGTH = 120

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "matchday_session")
SESSION_SECRET = os.getenv("SESSION_SECRET") or os.getenv("SECRET_KEY") or secrets.token_hex(32)
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(7 * 24 * 3600)))  # one week default
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "true").lower() != "false"


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=MAX_TEXT_LENGTH)
    password: str = Field(..., max_length=MAX_TEXT_LENGTH)


class PlayerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    jerseyNumber: int | None = Field(default=None, ge=0, le=999)
    position: str = Field(..., min_length=1, max_length=32)
    email: str | None = Field(default=None, max_length=255)
    phoneNumber: str | None = Field(default=None, max_length=40)
    password: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)


class MatchCreate(BaseModel):
    date: datetime
    opponent: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    venue: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    competition: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)
    notes: str | None = None


class AttendanceRequest(BaseModel):
    matchId: str
    playerId: str | None = None
    status: str
    notes: str | None = None


class AttendanceUpdate(BaseModel):
    status: str | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def _sign_payload(payload: str) -> str:
    secret = SESSION_SECRET.encode("utf-8")
    return hmac.new(secret, payload.encode("utf-8"), "sha256").hexdigest()


def _encode_session(user_id: str) -> str:
    timestamp = str(int(time.time()))
    payload = f"{user_id}|{timestamp}"
    signature = _sign_payload(payload)
    return f"{payload}|{signature}"


def _decode_session(raw: str) -> str | None:
    try:
        user_id, timestamp, signature = raw.split("|")
    except ValueError:
        return None
    payload = f"{user_id}|{timestamp}"
    expected = _sign_payload(payload)
    if not hmac.compare_digest(expected, signature):
        return None
    try:
        issued_at = int(timestamp)
    except ValueError:
        return None
    if int(time.time()) - issued_at > SESSION_MAX_AGE:
        return None
    return user_id


def _session_user(request: Request, session: Session) -> User | None:
    cookie_value = request.cookies.get(SESSION_COOKIE_NAME)
    user_id = _decode_session(cookie_value) if cookie_value else None
    if not user_id:
        return None
    user = session.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


def current_user(request: Request, session: Session = Depends(get_session)) -> User:
    user = _session_user(request, session)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def _require_admin(user: User) -> None:
    if user.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden: Admin access required")


def _validate_status(status: str) -> str:
    if status not in ATTENDANCE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid attendance status: {status}")
    return status


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def _user_payload(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "organizationId": user.organization_id,
        "username": user.username,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role,
        "profileImageUrl": user.profile_image_url,
    }


def _player_payload(player: Player) -> dict[str, object]:
    return {
        "id": player.id,
        "name": player.name,
        "jerseyNumber": player.jersey_number,
        "position": player.position,
        "email": player.email,
        "phoneNumber": player.phone_number,
        "profileImageUrl": image_url(player.profile_image_url) if player.profile_image_url else None,
        "isActive": player.is_active,
    }


def _match_payload(match: Match) -> dict[str, object]:
    return {
        "id": match.id,
        "date": match.date,
        "opponent": match.opponent,
        "venue": match.venue,
        "competition": match.competition,
        "ourScore": match.our_score,
        "opponentScore": match.opponent_score,
        "status": match.status,
        "notes": match.notes,
    }


def _attendance_payload(attendance: MatchAttendance, player: Player | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": attendance.id,
        "matchId": attendance.match_id,
        "userId": attendance.user_id,
        "status": attendance.status,
        "confirmedAt": attendance.confirmed_at,
        "notes": attendance.notes,
    }
    if player is not None:
        payload["player"] = _player_payload(player)
    return payload


def _require_match(session: Session, match_id: str, user: User) -> Match:
    match = get_match(session, match_id, user.organization_id)
    if not match:
        raise HTTPException(status_code=404, detail="Match not found")
    return match


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@router.post("/api/login", name="login")
async def login(payload: LoginRequest, response: Response, session: Session = Depends(get_session)):
    user = get_user_by_credentials(session, payload.username, payload.password)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid username or password")

    user.last_access = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)

    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=_encode_session(user.id),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    return _user_payload(user)


@router.post("/api/logout", status_code=204, name="logout")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


@router.get("/api/me", name="me")
async def me(user: User = Depends(current_user), session: Session = Depends(get_session)):
    payload = _user_payload(user)
    player = get_player_by_user(session, user)
    payload["playerId"] = player.id if player else None
    return payload


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------

@router.get("/api/players", name="list_players")
async def list_players(user: User = Depends(current_user), session: Session = Depends(get_session)):
    return [_player_payload(player) for player in get_players(session, user.organization_id)]


@router.post("/api/players", status_code=201, name="create_player")
async def create_player(
    payload: PlayerCreate,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    _require_admin(user)
    player = Player(
        organization_id=user.organization_id,
        name=payload.name.strip(),
        jersey_number=payload.jerseyNumber,
        position=payload.position.strip().upper(),
        email=payload.email,
        phone_number=payload.phoneNumber,
    )
    session.add(player)
    session.flush()
    account = create_user_for_player(session, player, payload.password)
    session.commit()
    session.refresh(player)
    result = _player_payload(player)
    result["username"] = account.username
    return result


@router.post("/api/players/{player_id}/profile-image", name="upload_profile_image")
async def upload_profile_image(
    player_id: str,
    image: UploadFile = File(...),
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    player = get_player(session, player_id, user.organization_id)
    if not player:
        raise HTTPException(status_code=404, detail="Player not found")
    if user.role != ROLE_ADMIN:
        own_player = get_player_by_user(session, user)
        if not own_player or own_player.id != player.id:
            raise HTTPException(status_code=403, detail="You can only change your own profile image")

    original_name = image.filename or "upload.png"
    content_type = (image.content_type or "").lower()
    suffix = Path(original_name).suffix.lower() or ".png"

    if not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail=f"{original_name}: only image uploads are allowed.")
    if suffix not in ALLOWED_IMAGE_SUFFIXES:
        raise HTTPException(status_code=400, detail=f"{original_name}: use PNG, JPG, GIF, HEIC, or WebP images.")

    file_bytes = await image.read()

    if suffix in {".heic", ".heif"}:
        if not read_heif or not Image:
            raise HTTPException(status_code=400, detail=f"{original_name}: HEIC support is not available on the server.")
        try:
            heif_file = read_heif(file_bytes)
            img = Image.frombytes(heif_file.mode, heif_file.size, heif_file.data, "raw")
            buffer = BytesIO()
            img.save(buffer, format="JPEG")
            file_bytes = buffer.getvalue()
            suffix = ".jpg"
            content_type = "image/jpeg"
        except Exception:
            logger.exception("HEIC conversion failed for %s", original_name)
            raise HTTPException(status_code=400, detail=f"{original_name}: could not convert HEIC image.")
    elif suffix in {".jpg", ".jpeg"}:
        content_type = "image/jpeg"

    previous = player.profile_image_url
    try:
        player.profile_image_url = save_profile_image(
            file_bytes,
            object_name=profile_image_name(user.organization_id, player.id, suffix),
            content_type=content_type,
            upload_dir=UPLOAD_DIR,
        )
        session.add(player)
        session.commit()
        session.refresh(player)
    except ImageStorageError as exc:
        logger.exception("Profile image upload failed: %s", exc)
        session.rollback()
        raise HTTPException(status_code=500, detail=str(exc))

    if previous and previous != player.profile_image_url:
        try:
            delete_profile_image(previous, upload_dir=UPLOAD_DIR)
        except ImageStorageError as exc:
            logger.warning("Could not remove replaced image for player %s: %s", player.id, exc)
    return _player_payload(player)


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------

@router.get("/api/matches", name="list_matches")
async def list_matches(user: User = Depends(current_user), session: Session = Depends(get_session)):
    return [_match_payload(match) for match in get_matches(session, user.organization_id)]


@router.get("/api/matches/{match_id}", name="get_match")
async def match_detail(match_id: str, user: User = Depends(current_user), session: Session = Depends(get_session)):
    return _match_payload(_require_match(session, match_id, user))


@router.post("/api/matches", status_code=201, name="create_match")
async def create_match(
    payload: MatchCreate,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    _require_admin(user)
    match = Match(
        organization_id=user.organization_id,
        date=payload.date,
        opponent=payload.opponent.strip(),
        venue=payload.venue.strip(),
        competition=payload.competition.strip(),
        notes=payload.notes,
    )
    session.add(match)
    session.commit()
    session.refresh(match)

    try:
        count = convoke_players(session, match)
        logger.info("Convoked %s players for match %s", count, match.id)
    except Exception:
        logger.warning("Failed to convoke players for match %s", match.id, exc_info=True)
        session.rollback()

    return _match_payload(match)


@router.delete("/api/matches/{match_id}", status_code=204, name="delete_match")
async def delete_match(match_id: str, user: User = Depends(current_user), session: Session = Depends(get_session)):
    _require_admin(user)
    match = _require_match(session, match_id, user)
    for attendance in get_match_attendances(session, match.id, user.organization_id):
        session.delete(attendance)
    session.delete(match)
    session.commit()


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

@router.get("/api/matches/{match_id}/attendances", name="match_attendances")
async def match_attendances(
    match_id: str,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    _require_match(session, match_id, user)
    return [
        _attendance_payload(attendance)
        for attendance in get_match_attendances(session, match_id, user.organization_id)
    ]


@router.get("/api/attendances/user/{player_id}", name="player_attendances")
async def player_attendances(
    player_id: str,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    return [
        _attendance_payload(attendance)
        for attendance in get_player_attendances(session, player_id, user.organization_id)
    ]


@router.post("/api/attendances", status_code=201, name="set_own_attendance")
async def set_own_attendance(
    payload: AttendanceRequest,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    status = _validate_status(payload.status)
    player = get_player_by_user(session, user)
    if not player:
        logger.info("No player profile linked to user %s", user.username)
        raise HTTPException(status_code=404, detail=PLAYER_PROFILE_MISSING_DETAIL)
    _require_match(session, payload.matchId, user)

    attendance = upsert_attendance(
        session,
        organization_id=user.organization_id,
        match_id=payload.matchId,
        player_id=player.id,
        status=status,
        notes=payload.notes,
    )
    return _attendance_payload(attendance, player)


@router.post("/api/admin/attendances", status_code=201, name="set_player_attendance")
async def set_player_attendance(
    payload: AttendanceRequest,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    _require_admin(user)
    status = _validate_status(payload.status)
    if not payload.playerId:
        raise HTTPException(status_code=400, detail="playerId is required")
    _require_match(session, payload.matchId, user)
    player = get_player(session, payload.playerId, user.organization_id)
    if not player:
        raise HTTPException(status_code=404, detail="Player not found")

    attendance = upsert_attendance(
        session,
        organization_id=user.organization_id,
        match_id=payload.matchId,
        player_id=player.id,
        status=status,
        notes=payload.notes,
    )
    return _attendance_payload(attendance, player)


@router.patch("/api/attendances/{attendance_id}", name="update_attendance")
async def update_attendance(
    attendance_id: str,
    payload: AttendanceUpdate,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    _require_admin(user)
    attendance = session.get(MatchAttendance, attendance_id)
    if not attendance or attendance.organization_id != user.organization_id:
        raise HTTPException(status_code=404, detail="Attendance not found")

    if payload.status is not None:
        attendance.status = _validate_status(payload.status)
        attendance.confirmed_at = datetime.utcnow()
    if payload.notes is not None:
        attendance.notes = payload.notes
    attendance.updated_at = datetime.utcnow()
    session.add(attendance)
    session.commit()
    session.refresh(attendance)
    return _attendance_payload(attendance)


# ---------------------------------------------------------------------------
# Match sheet
# ---------------------------------------------------------------------------

@router.get("/matches/{match_id}/sheet", response_class=HTMLResponse, name="match_sheet")
async def match_sheet(
    request: Request,
    match_id: str,
    formation: str | None = None,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    match = _require_match(session, match_id, user)
    store = LineupStore(match.id)
    if formation:
        try:
            store.set_formation(get_formation(formation))
        except KeyError:
            raise HTTPException(status_code=400, detail=f"Unknown formation: {formation}")

    attendances = [
        _attendance_payload(attendance)
        for attendance in get_match_attendances(session, match.id, user.organization_id)
    ]
    roster = [_player_payload(player) for player in get_players(session, user.organization_id)]
    store.sync_from_server(attendances, roster)

    context = {
        "match": match,
        "sheet": store.snapshot(),
        "field_lines": FIELD_LINES,
        "bench_key": BENCH,
        "is_admin": user.role == ROLE_ADMIN,
    }
    return templates.TemplateResponse(request, "match_sheet.html", context)
