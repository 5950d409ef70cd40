from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from libraryhub import crud
from libraryhub.auth import create_access_token, hash_password
from libraryhub.main import app
from libraryhub.models import Role
from libraryhub.notifications import NotificationGateway
from libraryhub.schemas import BookCreate, UserCreate
from libraryhub.storage import ensure_indexes, get_db
from libraryhub.workflow import BorrowWorkflow, RequestContext

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
PASSWORD = "secret-pass"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["test_library_db"]
    await ensure_indexes(database)
    yield database


@pytest.fixture
def messaging():
    manager = MagicMock()
    manager.connected = True
    manager.publish_message = AsyncMock()
    return manager


@pytest.fixture
def notifications(messaging):
    return NotificationGateway(messaging, queue_name="test_emails")


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def workflow(db, notifications, clock):
    return BorrowWorkflow(db, notifications, clock=clock)


async def make_user(db, email: str, full_name: str = "Test User", role: Role = Role.USER):
    user = await crud.create_user(
        db,
        UserCreate(
            full_name=full_name,
            email=email,
            password=PASSWORD,
            date_of_birth=datetime(1995, 5, 17),
        ),
        hash_password(PASSWORD),
    )
    if role != Role.USER:
        user = await crud.update_user_fields(db, user["_id"], {"role": role.value})
    return user


async def make_book(db, isbn: str = "9780306406157", **overrides):
    data = {
        "title": "The Left Hand of Darkness",
        "author": "Ursula K. Le Guin",
        "description": "A diplomat on the planet Gethen.",
        "category": "Science Fiction",
        "publication_year": 1969,
        "isbn": isbn,
        "price": 100,
        "total_copies": 1,
    }
    data.update(overrides)
    return await crud.create_book(db, BookCreate(**data))


@pytest.fixture
async def alice(db):
    return await make_user(db, "alice@example.com", "Alice Reader")


@pytest.fixture
async def bob(db):
    return await make_user(db, "bob@example.com", "Bob Borrower")


@pytest.fixture
async def admin(db):
    return await make_user(db, "admin@example.com", "Ada Admin", Role.ADMIN)


@pytest.fixture
async def book(db):
    return await make_book(db)


@pytest.fixture
def alice_ctx(alice):
    return RequestContext(user_id=alice["_id"])


@pytest.fixture
def bob_ctx(bob):
    return RequestContext(user_id=bob["_id"])


@pytest.fixture
def admin_ctx(admin):
    return RequestContext(user_id=admin["_id"], role=Role.ADMIN.value)


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user['_id'])}"}


@pytest.fixture
async def api_client(db, notifications):
    app.dependency_overrides[get_db] = lambda: db
    app.state.notifications = notifications
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope="module")
def client():
    app.state.testing = True
    with TestClient(app) as c:
        yield c
    app.state.testing = False
