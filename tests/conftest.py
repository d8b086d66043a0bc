"""
Shared fixtures: a fresh SQLite file per test, a fixed JWT secret,
a fake clock, a recording mailer and a deterministic OTP.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from storefront.catalog import ProductCatalog
from storefront.cart import CartService
from storefront.core.config import Config
from storefront.core.database import init_all_tables
from storefront.core.errors import DependencyError
from storefront.core.security import PasswordHasher, TokenIssuer
from storefront.models.user import Role, User
from storefront.otp import OtpManager
from storefront.users import AccountService, UserStore

TEST_SECRET = "test-secret-0123456789"
TEST_OTP = 482913


def run(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingMailer:
    """Stands in for the mail API. Set fail=True to simulate an outage."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, to_address: str, subject: str, body: str) -> None:
        if self.fail:
            raise DependencyError("Mail transport unreachable")
        self.sent.append((to_address, subject, body))


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.ENV = "test"
    config.DB_PATH = str(tmp_path / "storefront-test.db")
    config.DB_TIMEOUT = 5.0
    config.JWT_SECRET = TEST_SECRET
    config.BCRYPT_ROUNDS = 4
    config.RESEND_API_KEY = ""
    config.GOOGLE_CLIENT_ID = ""
    config.GOOGLE_CLIENT_SECRET = ""
    return config


@pytest.fixture
def db_path(config):
    run(init_all_tables(config.DB_PATH))
    return config.DB_PATH


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def tokens(config, clock):
    return TokenIssuer.from_config(config, clock=clock)


@pytest.fixture
def store(db_path):
    return UserStore(db_path)


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def accounts(store, hasher, tokens, mailer, clock):
    return AccountService(
        store=store,
        hasher=hasher,
        tokens=tokens,
        otp=OtpManager(clock=clock, generator=lambda: TEST_OTP),
        mailer=mailer,
        clock=clock,
    )


@pytest.fixture
def catalog(db_path):
    return ProductCatalog(db_path)


@pytest.fixture
def carts(db_path, catalog):
    return CartService(db_path, catalog)


@pytest.fixture
def make_user(store, hasher):
    """Insert a user directly, bypassing registration."""

    def _make(email="bob@example.com", password="secret123", role=Role.MEMBER,
              verified=True, permission=True, status=True, name="Bob"):
        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            account=email,
            role=role,
            password_hash=hasher.hash(password) if password else None,
            status=status,
            permission=permission,
            verified=verified,
            otp=None,
            otp_expiry=None,
            created_at=now,
            updated_at=now,
        )
        run(store.insert(user))
        return user

    return _make
