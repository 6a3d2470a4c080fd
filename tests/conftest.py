"""
Pytest configuration and shared fixtures for testing.
Swaps MongoDB for an in-memory mongomock database and sets up the test client.
"""

import os

# Configure the app through the environment before any app imports
os.environ["SKIP_ENV_FILE"] = "1"
os.environ["TEST_MODE"] = "1"  # Disables rate limiting
os.environ["APP_ENV"] = "test"
os.environ["MONGO_URL"] = "mongodb://localhost:27017"
os.environ["MONGO_DB_NAME"] = "tour_service_test"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-that-is-at-least-32-characters-long"
os.environ["BCRYPT_ROUNDS"] = "4"  # Fast hashing for tests
os.environ["CACHE_ENABLED"] = "false"
os.environ["EMAIL_HOST"] = ""
os.environ["LOG_FILE"] = ""
os.environ["DB_RETRY_BASE_DELAY"] = "0.01"

import mongomock
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tour_service import db as app_db
from tour_service import services
from tour_service.auth import create_access_token, hash_password
from tour_service.config import settings
from tour_service.crud import insert_user
from tour_service.main import app
from tour_service.models import Role, new_user_document
from tour_service.schemas import TourCreate


# ==================== Async mongomock adapter ====================

class FakeCursor:
    """Async-iterable facade over a mongomock cursor."""

    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count):
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    async def to_list(self, length=None):
        documents = list(self._cursor)
        return documents if length is None else documents[:length]


class FakeCollection:
    """Mirrors pymongo's AsyncCollection: coroutine methods, synchronous find()."""

    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return FakeCursor(self._collection.find(*args, **kwargs))

    async def aggregate(self, pipeline, **kwargs):
        return FakeCursor(self._collection.aggregate(pipeline, **kwargs))

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        async def method(*args, **kwargs):
            return attr(*args, **kwargs)

        return method


class FakeDatabase:
    def __init__(self, database):
        self._database = database

    def __getitem__(self, name):
        return FakeCollection(self._database[name])

    async def command(self, *args, **kwargs):
        return self._database.command(*args, **kwargs)


# ==================== Fixtures ====================

@pytest_asyncio.fixture(scope="function")
async def test_db():
    """Fresh in-memory database with production indexes for every test."""
    mongo = mongomock.MongoClient(tz_aware=True)
    fake_db = FakeDatabase(mongo[settings.MONGO_DB_NAME])

    original_database = app_db.database
    app_db.database = fake_db
    await app_db.ensure_indexes()

    yield fake_db

    app_db.database = original_database
    mongo.close()


@pytest_asyncio.fixture(scope="function")
async def client(test_db):
    """Create a test HTTP client bound to the in-memory database."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        timeout=30.0
    ) as ac:
        yield ac


@pytest.fixture
def api():
    """Prefix helper: api('/tours') -> '/api/v1/tours'."""
    return lambda path: f"{settings.API_PREFIX}{path}"


@pytest.fixture
def sample_user():
    """Sample signup payload."""
    return {
        "name": "Test User",
        "email": "test@example.com",
        "password": "password123",
        "confirmPassword": "password123",
    }


@pytest.fixture
def sample_tour():
    """Sample tour payload."""
    return {
        "name": "The Forest Hiker",
        "duration": 5,
        "maxGroupSize": 25,
        "difficulty": "easy",
        "price": 397,
        "summary": "Breathtaking hike through the Canadian Banff National Park",
        "description": "Ut enim ad minim veniam, quis nostrud exercitation ullamco laboris.",
        "imageCover": "tour-1-cover.jpg",
        "startDates": ["2021-04-25T09:00:00Z", "2021-07-20T09:00:00Z", "2021-10-05T09:00:00Z"],
        "startLocation": {
            "type": "Point",
            "coordinates": [-115.570154, 51.178456],
            "address": "224 Banff Ave, Banff, AB, Canada",
            "description": "Banff, CAN",
        },
    }


@pytest.fixture
def make_user(test_db):
    """Factory inserting a user directly into the store."""
    counter = {"n": 0}

    async def _make_user(role: Role = Role.USER, email: str | None = None,
                         password: str = "password123", name: str = "Factory User") -> dict:
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        document = new_user_document(name, email, hash_password(password), role=role)
        return await insert_user(document)

    return _make_user


@pytest.fixture
def make_tour(test_db, sample_tour):
    """Factory creating a tour through the service layer."""
    counter = {"n": 0}

    async def _make_tour(**overrides) -> dict:
        counter["n"] += 1
        data = {**sample_tour, "name": f"{sample_tour['name']} {counter['n']}", **overrides}
        return await services.create_tour(TourCreate(**data))

    return _make_tour


def auth_headers(user: dict) -> dict:
    """Bearer header for a stored user."""
    return {"Authorization": f"Bearer {create_access_token(str(user['_id']))}"}


@pytest.fixture
def headers_for():
    return auth_headers


@pytest_asyncio.fixture
async def admin_headers(make_user):
    admin = await make_user(role=Role.ADMIN, email="admin@example.com", name="Admin")
    return auth_headers(admin)


@pytest_asyncio.fixture
async def user_headers(make_user):
    user = await make_user(role=Role.USER, email="member@example.com", name="Member")
    return auth_headers(user)
