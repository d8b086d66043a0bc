"""
Storefront — core/database.py
─────────────────────────────────────────────────────────────────
Single place for:
  - DB connection helpers (plain + write-locked transaction)
  - ALL table CREATE statements
  - sqlite error → StorefrontError translation
  - One init_all_tables() call on startup

Usage:
    from storefront.core.database import get_db, write_transaction

    async with get_db(db_path) as db:
        await db.execute(...)

    # Serialised read-modify-write (cart merge):
    async with write_transaction(db_path) as db:
        await db.execute(...)        # COMMIT on exit, ROLLBACK on error
─────────────────────────────────────────────────────────────────
"""

import logging
import re
import sqlite3
from contextlib import asynccontextmanager

import aiosqlite

from storefront.core.errors import (
    ConflictError,
    DependencyError,
    DependencyTimeout,
    InternalError,
    StorefrontError,
)

logger = logging.getLogger("storefront.database")

DEFAULT_TIMEOUT = 5.0


# ─────────────────────────────────────────────
# Error translation
# ─────────────────────────────────────────────
_UNIQUE_RE = re.compile(r"UNIQUE constraint failed: (?:\w+)\.(\w+)")


def translate_db_error(exc: sqlite3.Error) -> StorefrontError:
    """Map a raw sqlite error onto the storefront taxonomy."""
    message = str(exc)

    if isinstance(exc, sqlite3.IntegrityError):
        match = _UNIQUE_RE.search(message)
        if match:
            return ConflictError(f"{match.group(1)} already exists")
        return InternalError(message)

    if isinstance(exc, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    ):
        return DependencyTimeout(message)

    return DependencyError(message)


# ─────────────────────────────────────────────
# Connection helpers
# ─────────────────────────────────────────────
@asynccontextmanager
async def get_db(db_path: str, timeout: float = DEFAULT_TIMEOUT, **kwargs):
    """
    Use instead of aiosqlite.connect() everywhere.

    timeout is sqlite's busy timeout: a writer waiting longer than
    this for the lock gets DependencyTimeout instead of hanging.
    """
    try:
        async with aiosqlite.connect(db_path, timeout=timeout, **kwargs) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db
    except sqlite3.Error as e:
        error = translate_db_error(e)
        if isinstance(error, DependencyError):
            logger.error(f"Store failure on {db_path}: {e}")
        raise error from e


@asynccontextmanager
async def write_transaction(db_path: str, timeout: float = DEFAULT_TIMEOUT):
    """
    BEGIN IMMEDIATE … COMMIT.

    The write lock is taken before the first read, so two callers
    doing read-modify-write on the same rows run one after the other.
    """
    async with get_db(db_path, timeout, isolation_level=None) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            if db.in_transaction:
                await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")


# ─────────────────────────────────────────────
# Table Definitions
# ─────────────────────────────────────────────

# ── Users ─────────────────────────────────────
USERS_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        firstname   TEXT,
        lastname    TEXT,
        role        TEXT NOT NULL DEFAULT 'Member',
        isd_code    INTEGER,
        phone       INTEGER UNIQUE,
        email       TEXT UNIQUE NOT NULL,
        account     TEXT UNIQUE NOT NULL,
        password    TEXT,                    -- NULL for federated-only accounts
        status      INTEGER NOT NULL DEFAULT 1,
        permission  INTEGER NOT NULL DEFAULT 1,
        birthday    TEXT,
        verified    INTEGER NOT NULL DEFAULT 0,
        remark      TEXT,
        otp         INTEGER,
        otp_expiry  TEXT,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_users_login
        ON users(email, verified, permission, status);
"""

# ── Catalog ───────────────────────────────────
PRODUCTS_SQL = """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        document    TEXT NOT NULL,           -- JSON body of the catalog entry
        status      INTEGER NOT NULL DEFAULT 1,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );
"""

# ── Shopping cart ─────────────────────────────
CART_SQL = """
    CREATE TABLE IF NOT EXISTS shopping_carts (
        id          TEXT PRIMARY KEY,
        user_id_fk  TEXT UNIQUE NOT NULL,    -- one cart per user
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS cart_lines (
        user_id_fk  TEXT NOT NULL
                    REFERENCES shopping_carts(user_id_fk) ON DELETE CASCADE,
        product_id  TEXT NOT NULL,
        color_id    TEXT NOT NULL,
        quantity    INTEGER NOT NULL,
        position    INTEGER NOT NULL,
        PRIMARY KEY (user_id_fk, product_id)  -- product_id is the merge key
    );

    CREATE INDEX IF NOT EXISTS idx_cart_lines_order
        ON cart_lines(user_id_fk, position);
"""


# ─────────────────────────────────────────────
# Init (call once on startup)
# ─────────────────────────────────────────────
async def init_all_tables(db_path: str, timeout: float = DEFAULT_TIMEOUT):
    """
    Creates all tables in correct order.
    Safe to call multiple times (IF NOT EXISTS).
    """
    async with get_db(db_path, timeout) as db:
        # WAL lets readers proceed while a cart merge holds the write lock
        await db.execute("PRAGMA journal_mode = WAL")

        await db.executescript(USERS_SQL)
        logger.info("✓ Users table")

        await db.executescript(PRODUCTS_SQL)
        logger.info("✓ Products table")

        await db.executescript(CART_SQL)
        logger.info("✓ Shopping cart tables")

        await db.commit()

    logger.info(f"✅ Database ready → {db_path}")
