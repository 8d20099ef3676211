"""
Shared pytest fixtures.
"""

import pytest

from leaddesk.app import Services, create_app
from leaddesk.auth.permissions import Role
from leaddesk.config import Settings
from leaddesk.db import Database


ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789abcdef"
REFRESH_SECRET = "test-refresh-secret-fedcba9876543210fedcba9876543210"
PASSWORD = "Str0ng!Pass"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        bcrypt_rounds=10,
        database_path=tmp_path / "leaddesk.db",
        monitoring_interval_seconds=0,
    )


@pytest.fixture
def db(settings):
    database = Database(settings.database_path, max_connections=settings.db_pool_size)
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def services(settings):
    built = Services.build(settings)
    yield built
    built.db.close()


@pytest.fixture
def make_user(services):
    """Create a user directly in the store, bypassing the registration limit."""

    def _make_user(email="viewer@example.com", role=Role.VIEWER, password=PASSWORD,
                   first_name="Vera", last_name="Viewer"):
        return services.users.users.create_user(
            email=email,
            first_name=first_name,
            last_name=last_name,
            password_hash=services.passwords.hash(password),
            role_id=role,
        )

    return _make_user


@pytest.fixture
async def client(aiohttp_client, settings, services):
    return await aiohttp_client(create_app(settings, services))
