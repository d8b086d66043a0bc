"""
Store error translation, lock waits and the HTTP bodies they produce.
"""

import sqlite3

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_OTP, run
from storefront.core.database import get_db, translate_db_error, write_transaction
from storefront.core.errors import (
    ConflictError,
    DependencyError,
    DependencyTimeout,
    InternalError,
    NotFound,
)
from storefront.main import create_app
from storefront.otp import OtpManager


class TestTranslateDbError:

    def test_unique_violation_is_conflict(self):
        error = translate_db_error(sqlite3.IntegrityError("UNIQUE constraint failed: users.email"))
        assert isinstance(error, ConflictError)
        assert error.detail == "email already exists"

    def test_other_integrity_error_is_internal(self):
        error = translate_db_error(sqlite3.IntegrityError("NOT NULL constraint failed: users.name"))
        assert isinstance(error, InternalError)
        assert error.detail == "Internal server error"

    @pytest.mark.parametrize("message", ["database is locked", "database table is locked: users"])
    def test_lock_is_timeout(self, message):
        assert isinstance(translate_db_error(sqlite3.OperationalError(message)), DependencyTimeout)

    def test_other_failure_is_dependency_error(self):
        error = translate_db_error(sqlite3.OperationalError("disk I/O error"))
        assert type(error) is DependencyError
        assert error.detail == "Upstream service unavailable"


class TestConnections:

    def test_bad_statement(self, db_path):
        async def query():
            async with get_db(db_path) as db:
                await db.execute("SELECT * FROM no_such_table")

        with pytest.raises(DependencyError) as exc:
            run(query())
        assert not isinstance(exc.value, DependencyTimeout)

    def test_unreachable_file(self, tmp_path):
        async def query():
            async with get_db(str(tmp_path / "missing-dir" / "store.db")) as db:
                await db.execute("SELECT 1")

        with pytest.raises(DependencyError):
            run(query())


class TestWriteTransaction:

    def test_lock_wait_times_out(self, db_path):
        """A writer blocked longer than the timeout gives up instead of hanging."""

        async def nested():
            async with write_transaction(db_path, 0.2):
                async with write_transaction(db_path, 0.2):
                    pass

        with pytest.raises(DependencyTimeout):
            run(nested())

    def test_lock_released_after_timeout(self, db_path):
        async def nested():
            async with write_transaction(db_path, 0.2):
                async with write_transaction(db_path, 0.2):
                    pass

        async def write_again():
            async with write_transaction(db_path, 0.2) as db:
                await db.execute(
                    "INSERT INTO shopping_carts (id, user_id_fk, created_at, updated_at) "
                    "VALUES ('c1', 'u1', 't', 't')"
                )

        with pytest.raises(DependencyTimeout):
            run(nested())
        run(write_again())

    def test_error_rolls_back(self, db_path):
        async def failing():
            async with write_transaction(db_path) as db:
                await db.execute(
                    "INSERT INTO shopping_carts (id, user_id_fk, created_at, updated_at) "
                    "VALUES ('c1', 'u1', 't', 't')"
                )
                raise NotFound("stop")

        async def count():
            async with get_db(db_path) as db:
                async with db.execute("SELECT COUNT(*) AS c FROM shopping_carts") as cur:
                    return (await cur.fetchone())["c"]

        with pytest.raises(NotFound):
            run(failing())
        assert run(count()) == 0


class TestStoreFailuresOverHttp:
    """502 / 504 bodies never carry the raw sqlite message."""

    @pytest.fixture
    def client(self, config, mailer):
        config.DB_TIMEOUT = 0.2
        app = create_app(config, mailer=mailer, otp=OtpManager(generator=lambda: TEST_OTP))
        with TestClient(app) as client:
            yield client

    @staticmethod
    def _add(client):
        return client.post("/shopping_cart", json={
            "user_id_fk": "u1", "cart": [{"product_id": "P1", "color_id": "C1", "quantity": 1}],
        })

    def test_locked_store_is_504(self, client, config):
        holder = sqlite3.connect(config.DB_PATH, isolation_level=None)
        try:
            holder.execute("BEGIN IMMEDIATE")
            res = self._add(client)
        finally:
            holder.execute("ROLLBACK")
            holder.close()

        assert res.status_code == 504
        assert res.json() == {"error": "dependency_timeout", "detail": "Upstream service timed out"}
        assert self._add(client).status_code == 200

    def test_broken_store_is_502(self, client, config):
        holder = sqlite3.connect(config.DB_PATH)
        holder.execute("DROP TABLE cart_lines")
        holder.commit()
        holder.close()

        res = self._add(client)
        assert res.status_code == 502
        assert res.json() == {"error": "dependency_error", "detail": "Upstream service unavailable"}
