"""Database models and helpers for organizations, rosters, matches and attendance."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Iterator
from uuid import uuid4

from sqlmodel import Field, Session, SQLModel, create_engine, select

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_SQLITE_PATH = "sqlite:///./matchday.db"
DEFAULT_ORGANIZATION_SLUG = os.getenv("DEFAULT_ORGANIZATION", "mi-equipo")
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "matchday")
DEFAULT_PLAYER_PASSWORD = os.getenv("DEFAULT_PLAYER_PASSWORD", "jugador123")

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ATTENDANCE_STATUSES = {"pending", "confirmed", "absent"}

logger = logging.getLogger(__name__)


def _build_engine_url() -> str:
    """Return the configured database URL or fall back to SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_SQLITE_PATH)


def _build_engine() -> "Engine":
    url = _build_engine_url()
    engine_kwargs = {}
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for FastAPI concurrency,
        # but passing this flag to other drivers (e.g., psycopg2) raises errors.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


engine = _build_engine()

STATIC_DIR = BASE_DIR / "static"
UPLOAD_DIR = STATIC_DIR / "uploads"


def _new_id() -> str:
    return uuid4().hex


class Organization(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(nullable=False, max_length=120)
    slug: str = Field(nullable=False, unique=True, index=True)
    logo_url: str | None = Field(default=None)
    is_active: bool = Field(default=True, nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class User(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organization.id", nullable=False, index=True)
    username: str = Field(nullable=False, unique=True, index=True, max_length=120)
    password_hash: str = Field(nullable=False)
    email: str | None = Field(default=None, max_length=255)
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)
    profile_image_url: str | None = Field(default=None)
    role: str = Field(default=ROLE_USER, nullable=False)
    is_active: bool = Field(default=True, nullable=False)
    last_access: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class Player(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organization.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=120)
    jersey_number: int | None = Field(default=None)
    position: str = Field(nullable=False, max_length=32)
    email: str | None = Field(default=None, max_length=255)
    phone_number: str | None = Field(default=None, max_length=40)
    profile_image_url: str | None = Field(default=None)
    is_active: bool = Field(default=True, nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class Match(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organization.id", nullable=False, index=True)
    date: datetime = Field(nullable=False)
    opponent: str = Field(nullable=False, max_length=120)
    venue: str = Field(nullable=False, max_length=120)
    competition: str = Field(nullable=False, max_length=120)
    our_score: int | None = Field(default=None)
    opponent_score: int | None = Field(default=None)
    status: str = Field(default="scheduled", nullable=False)
    notes: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class MatchAttendance(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(foreign_key="organization.id", nullable=False, index=True)
    match_id: str = Field(foreign_key="match.id", nullable=False, index=True)
    user_id: str = Field(foreign_key="player.id", nullable=False, index=True)
    status: str = Field(default="pending", nullable=False)
    confirmed_at: datetime | None = Field(default=None)
    notes: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


def init_db() -> None:
    """Create tables if they don't already exist."""
    SQLModel.metadata.create_all(engine)
    _ensure_upload_dir()
    _ensure_default_organization()


def get_session() -> Iterator[Session]:
    """Yield a SQLModel session for dependency injection."""
    with Session(engine) as session:
        yield session


def _ensure_upload_dir() -> None:
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)


def _ensure_default_organization() -> Organization:
    with Session(engine, expire_on_commit=False) as session:
        organization = session.exec(
            select(Organization).where(Organization.slug == DEFAULT_ORGANIZATION_SLUG)
        ).first()
        if not organization:
            organization = Organization(name="Mi Equipo", slug=DEFAULT_ORGANIZATION_SLUG)
            session.add(organization)
            session.commit()
            session.refresh(organization)

        admin = session.exec(select(User).where(User.username == ADMIN_USERNAME)).first()
        if not admin:
            session.add(
                User(
                    organization_id=organization.id,
                    username=ADMIN_USERNAME,
                    password_hash=hash_password(ADMIN_PASSWORD),
                    role=ROLE_ADMIN,
                )
            )
            session.commit()
            logger.info("Created bootstrap admin %s for %s", ADMIN_USERNAME, organization.slug)
        session.expunge(organization)
    return organization


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

def _pbkdf2_hash(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode(), 100000).hex()


def hash_password(password: str) -> str:
    """Hash with PBKDF2-SHA256, stored as hex:salt."""
    salt = secrets.token_hex(16)
    return _pbkdf2_hash(password, salt) + ":" + salt


def verify_password(plain: str, hashed: str) -> bool:
    digest, _, salt = hashed.rpartition(":")
    if not digest or not salt:
        return False
    return secrets.compare_digest(_pbkdf2_hash(plain, salt), digest)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_user_by_credentials(session: Session, username: str, password: str) -> User | None:
    user = session.exec(select(User).where(User.username == username)).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def get_players(session: Session, organization_id: str, *, active_only: bool = False) -> list[Player]:
    query = select(Player).where(Player.organization_id == organization_id)
    if active_only:
        query = query.where(Player.is_active == True)  # noqa: E712
    return list(session.exec(query.order_by(Player.created_at.desc())).all())


def get_player(session: Session, player_id: str, organization_id: str) -> Player | None:
    player = session.get(Player, player_id)
    if not player or player.organization_id != organization_id:
        return None
    return player


def get_player_by_user(session: Session, user: User) -> Player | None:
    """Find the roster entry linked to ``user`` by case-insensitive email."""
    if not user.email:
        return None
    email = user.email.lower()
    for player in get_players(session, user.organization_id):
        if player.email and player.email.lower() == email:
            return player
    return None


def create_user_for_player(session: Session, player: Player, password: str | None = None) -> User:
    """Give a roster entry a login, reusing an existing account with the same email."""
    if player.email:
        existing = session.exec(select(User).where(User.email == player.email)).first()
        if existing:
            logger.info("User already exists for player %s: %s", player.name, existing.username)
            return existing

    base = re.sub(r"[^\w.]", "", re.sub(r"\s+", ".", player.name.lower())) or "jugador"
    username = base
    counter = 1
    while session.exec(select(User).where(User.username == username)).first():
        username = f"{base}{counter}"
        counter += 1

    first_name, _, last_name = player.name.partition(" ")
    user = User(
        organization_id=player.organization_id,
        username=username,
        password_hash=hash_password(password or DEFAULT_PLAYER_PASSWORD),
        first_name=first_name,
        last_name=last_name,
        email=player.email or f"{username}@matchday.local",
        role=ROLE_USER,
    )
    if not player.email:
        player.email = user.email
        session.add(player)
    session.add(user)
    logger.info("Created user account %s for player %s", username, player.name)
    return user


def get_matches(session: Session, organization_id: str) -> list[Match]:
    return list(
        session.exec(
            select(Match).where(Match.organization_id == organization_id).order_by(Match.date)
        ).all()
    )


def get_match(session: Session, match_id: str, organization_id: str) -> Match | None:
    match = session.get(Match, match_id)
    if not match or match.organization_id != organization_id:
        return None
    return match


def convoke_players(session: Session, match: Match) -> int:
    """Create a pending attendance for every active player of the match's organization."""
    players = get_players(session, match.organization_id, active_only=True)
    for player in players:
        session.add(
            MatchAttendance(
                organization_id=match.organization_id,
                match_id=match.id,
                user_id=player.id,
                status="pending",
            )
        )
    session.commit()
    return len(players)


def get_match_attendances(session: Session, match_id: str, organization_id: str) -> list[MatchAttendance]:
    return list(
        session.exec(
            select(MatchAttendance)
            .where(MatchAttendance.match_id == match_id)
            .where(MatchAttendance.organization_id == organization_id)
            .order_by(MatchAttendance.created_at.desc())
        ).all()
    )


def get_player_attendances(session: Session, player_id: str, organization_id: str) -> list[MatchAttendance]:
    return list(
        session.exec(
            select(MatchAttendance)
            .where(MatchAttendance.user_id == player_id)
            .where(MatchAttendance.organization_id == organization_id)
            .order_by(MatchAttendance.created_at.desc())
        ).all()
    )


def upsert_attendance(
    session: Session,
    *,
    organization_id: str,
    match_id: str,
    player_id: str,
    status: str,
    notes: str | None = None,
) -> MatchAttendance:
    """Create or update the single attendance record for ``(match_id, player_id)``."""
    now = datetime.utcnow()
    attendance = session.exec(
        select(MatchAttendance)
        .where(MatchAttendance.match_id == match_id)
        .where(MatchAttendance.user_id == player_id)
    ).first()
    if attendance:
        attendance.status = status
        attendance.updated_at = now
        if notes is not None:
            attendance.notes = notes
    else:
        attendance = MatchAttendance(
            organization_id=organization_id,
            match_id=match_id,
            user_id=player_id,
            status=status,
            notes=notes,
        )
    attendance.confirmed_at = now
    session.add(attendance)
    session.commit()
    session.refresh(attendance)
    return attendance
