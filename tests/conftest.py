"""
Shared fixtures

- Each test gets a fresh in-memory Mongo (mongomock-motor) swapped into server.db
- Outbound email is captured in an outbox list instead of going to Resend
- Seeded admin/manager accounts log in through the real /api/auth/login route
"""
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "techbazar_test")

import server  # noqa: E402

ADMIN = ("admin@techbazaar.com", "Admin@123")
MANAGER = ("manager@techbazaar.com", "Manager@123")
SHOPPER = ("shopper@example.com", "Shopper123")


@pytest_asyncio.fixture
async def db(monkeypatch):
    database = AsyncMongoMockClient()["techbazar_test"]
    monkeypatch.setattr(server, "db", database)
    await server.ensure_indexes()
    return database


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    async def fake_send_email(to, subject, html):
        sent.append({"to": to, "subject": subject, "html": html})
        return True

    monkeypatch.setattr(server, "send_email", fake_send_email)
    return sent


@pytest_asyncio.fixture
async def client(db, outbox):
    transport = ASGITransport(app=server.app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest_asyncio.fixture
async def seeded(db):
    return await server.seed_database()


@pytest.fixture
def login(client):
    async def _login(email: str, password: str) -> dict:
        response = await client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _login


@pytest_asyncio.fixture
async def admin_headers(seeded, login):
    return await login(*ADMIN)


@pytest_asyncio.fixture
async def manager_headers(seeded, login):
    return await login(*MANAGER)


@pytest_asyncio.fixture
async def shopper_headers(seeded, login):
    await server.ensure_user(SHOPPER[0], SHOPPER[1], "Sam Shopper", "User")
    return await login(*SHOPPER)


@pytest_asyncio.fixture
async def products(seeded, db):
    docs = await db.products.find({}, {"_id": 0}).to_list(100)
    return {p["name"]: p for p in docs}


@pytest_asyncio.fixture
async def categories(seeded, db):
    docs = await db.categories.find({}, {"_id": 0}).to_list(100)
    return {c["name"]: c for c in docs}
