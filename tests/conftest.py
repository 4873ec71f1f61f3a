import os
import tempfile
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

TEST_DB = Path(tempfile.gettempdir()) / "matchday_test_app.sqlite3"
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "matchday")

from matchday import app  # noqa: E402
from matchday.database import engine, init_db  # noqa: E402

ADMIN_CREDENTIALS = {"username": os.environ["ADMIN_USERNAME"], "password": os.environ["ADMIN_PASSWORD"]}


@pytest.fixture
def _cleanup_db():
    engine.dispose()
    if TEST_DB.exists():
        TEST_DB.unlink()
    init_db()
    yield
    engine.dispose()
    if TEST_DB.exists():
        TEST_DB.unlink()


def _client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest_asyncio.fixture
async def async_client(_cleanup_db):
    async with _client() as client:
        yield client


@pytest_asyncio.fixture
async def admin_client(_cleanup_db):
    async with _client() as client:
        response = await client.post("/api/login", json=ADMIN_CREDENTIALS)
        assert response.status_code == 200
        yield client


@pytest_asyncio.fixture
async def make_client(_cleanup_db):
    """Open extra clients (e.g. a player's session) that share the app."""
    opened: list[httpx.AsyncClient] = []

    async def factory(username: str | None = None, password: str | None = None) -> httpx.AsyncClient:
        client = _client()
        opened.append(client)
        if username:
            response = await client.post("/api/login", json={"username": username, "password": password})
            assert response.status_code == 200, response.text
        return client

    yield factory
    for client in opened:
        await client.aclose()


async def create_player(client: httpx.AsyncClient, name: str, number: int, position: str, **extra) -> dict:
    response = await client.post(
        "/api/players",
        json={"name": name, "jerseyNumber": number, "position": position, **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


async def create_match(client: httpx.AsyncClient, opponent: str = "CD Hesperides") -> dict:
    response = await client.post(
        "/api/matches",
        json={
            "date": "2025-03-15T10:30:00",
            "opponent": opponent,
            "venue": "Campo Municipal",
            "competition": "Liga",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()
