import logging
import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
SQLITE_PATH = Path(os.getenv("SQLITE_PATH", "").strip() or BASE_DIR / "data" / "budget.db")

DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
USE_POSTGRES = DATABASE_URL.startswith("postgres://") or DATABASE_URL.startswith("postgresql://")

POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
ACQUIRE_TIMEOUT_SECONDS = float(os.getenv("DB_ACQUIRE_TIMEOUT_SECONDS", "10"))

DEFAULT_ASSET_TYPES = [
    {"name": "Cash", "icon": "fas fa-money-bill-wave", "color": "#4CAF50", "description": "Cash and wallet money"},
    {"name": "Bank deposit", "icon": "fas fa-university", "color": "#2196F3", "description": "Bank deposit accounts"},
    {"name": "Savings", "icon": "fas fa-piggy-bank", "color": "#FF9800", "description": "Fixed-term savings"},
    {"name": "Investment", "icon": "fas fa-chart-line", "color": "#9C27B0", "description": "Stocks, funds, bonds"},
    {"name": "Real estate", "icon": "fas fa-home", "color": "#795748", "description": "Houses, land, shops"},
    {"name": "Other assets", "icon": "fas fa-box", "color": "#607D8B", "description": "Anything else"},
]


class PoolTimeout(RuntimeError):
    """No connection became available within the acquire timeout."""


class DBCursor:
    def __init__(self, cursor, use_postgres: bool):
        self._cursor = cursor
        self._use_postgres = use_postgres

    def execute(self, query: str, params: tuple | list | None = None):
        q = _adapt_query(query, self._use_postgres)
        self._cursor.execute(q, tuple(params or ()))
        return self

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self):
        return self._cursor.rowcount

    @property
    def lastrowid(self):
        return self._cursor.lastrowid


class DBConn:
    """Wraps a pooled connection; `close()` hands it back to the pool."""

    def __init__(self, conn, use_postgres: bool):
        self._conn = conn
        self._use_postgres = use_postgres
        self._released = False

    @property
    def use_postgres(self) -> bool:
        return self._use_postgres

    def execute(self, query: str, params: tuple | list | None = None):
        q = _adapt_query(query, self._use_postgres)
        return self._conn.execute(q, tuple(params or ()))

    def insert(self, query: str, params: tuple | list | None = None) -> int:
        """Run an INSERT and return the new row id on either backend."""
        if self._use_postgres:
            row = self.execute(query.rstrip().rstrip(";") + " RETURNING id", params).fetchone()
            return int(row["id"])
        cur = self.execute(query, params)
        return int(cur.lastrowid)

    def cursor(self):
        return DBCursor(self._conn.cursor(), self._use_postgres)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        if self._released:
            return
        self._released = True
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type:
                self.rollback()
            else:
                self.commit()
        finally:
            self.close()
        return False


def _adapt_query(query: str, use_postgres: bool) -> str:
    if not use_postgres:
        return query

    q = query

    # SQLite -> Postgres compatibility for "INSERT OR IGNORE"
    if re.match(r"^\s*INSERT\s+OR\s+IGNORE\s+INTO\s+", q, re.IGNORECASE):
        q = re.sub(r"^\s*INSERT\s+OR\s+IGNORE\s+INTO\s+", "INSERT INTO ", q, flags=re.IGNORECASE)
        if "ON CONFLICT" not in q.upper():
            q = q.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"

    # sqlite qmark style -> psycopg format style
    q = q.replace("?", "%s")
    return q


def _connect_raw():
    if USE_POSTGRES:
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as e:
            raise RuntimeError(
                "PostgreSQL enabled via DATABASE_URL, but psycopg is not installed."
            ) from e

        return psycopg.connect(
            DATABASE_URL,
            row_factory=dict_row,
            connect_timeout=int(ACQUIRE_TIMEOUT_SECONDS),
        )

    SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(SQLITE_PATH, check_same_thread=False, timeout=ACQUIRE_TIMEOUT_SECONDS)
    raw.execute("PRAGMA journal_mode=WAL;")
    raw.execute(f"PRAGMA busy_timeout={int(ACQUIRE_TIMEOUT_SECONDS * 1000)};")
    raw.execute("PRAGMA synchronous=NORMAL;")
    raw.execute("PRAGMA foreign_keys=ON;")
    raw.row_factory = sqlite3.Row
    return raw


def _new_pool() -> QueuePool:
    return QueuePool(
        _connect_raw,
        pool_size=max(1, int(POOL_SIZE)),
        max_overflow=0,
        timeout=ACQUIRE_TIMEOUT_SECONDS,
        reset_on_return="rollback",
    )


_pool: QueuePool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> QueuePool:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = _new_pool()
        return _pool


def configure(
    sqlite_path: str | Path | None = None,
    database_url: str | None = None,
    pool_size: int | None = None,
    acquire_timeout: float | None = None,
) -> None:
    """Re-point the adapter (tests, scripts) and drop the current pool."""
    global SQLITE_PATH, DATABASE_URL, USE_POSTGRES, POOL_SIZE, ACQUIRE_TIMEOUT_SECONDS, _pool
    if sqlite_path is not None:
        SQLITE_PATH = Path(sqlite_path)
    if database_url is not None:
        DATABASE_URL = database_url.strip()
        USE_POSTGRES = DATABASE_URL.startswith("postgres://") or DATABASE_URL.startswith("postgresql://")
    if pool_size is not None:
        POOL_SIZE = int(pool_size)
    if acquire_timeout is not None:
        ACQUIRE_TIMEOUT_SECONDS = float(acquire_timeout)
    with _pool_lock:
        if _pool is not None:
            _pool.dispose()
        _pool = None


def get_conn() -> DBConn:
    pool = _get_pool()
    try:
        conn = pool.connect()
    except SQLAlchemyTimeoutError as e:
        logger.error("Connection pool exhausted after %.1fs (size=%d)", ACQUIRE_TIMEOUT_SECONDS, pool.size())
        raise PoolTimeout(f"Could not acquire a database connection within {ACQUIRE_TIMEOUT_SECONDS:.0f}s") from e
    return DBConn(conn, use_postgres=USE_POSTGRES)


@contextmanager
def transaction():
    """One connection, one atomic unit: commit on success, rollback on any error."""
    conn = get_conn()
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def pool_status() -> dict:
    pool = _get_pool()
    active = pool.checkedout()
    idle = pool.checkedin()
    return {
        "active_connections": active,
        "idle_connections": idle,
        "total_connections": active + idle,
        "connection_limit": pool.size(),
    }


def is_missing_table_error(exc: BaseException, table: str) -> bool:
    msg = str(exc).lower()
    if table.lower() not in msg:
        return False
    return any(
        marker in msg
        for marker in ("no such table", "does not exist", "doesn't exist", "unknown table")
    )


def _sqlite_schema(cur):
    cur.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('income', 'expense')),
        color TEXT NOT NULL DEFAULT '#007bff',
        user_id INTEGER,
        parent_id INTEGER,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(user_id) REFERENCES users(id),
        FOREIGN KEY(parent_id) REFERENCES categories(id) ON DELETE SET NULL
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS asset_types (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        icon TEXT NOT NULL DEFAULT 'fas fa-wallet',
        color TEXT NOT NULL DEFAULT '#000000',
        description TEXT,
        user_id INTEGER,
        is_default INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(user_id) REFERENCES users(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS assets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        asset_type_id INTEGER NOT NULL,
        amount_cents INTEGER NOT NULL DEFAULT 0,
        description TEXT,
        user_id INTEGER NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(asset_type_id) REFERENCES asset_types(id),
        FOREIGN KEY(user_id) REFERENCES users(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
        description TEXT NOT NULL DEFAULT '',
        category_id INTEGER,
        type TEXT NOT NULL CHECK (type IN ('income', 'expense', 'transfer')),
        date TEXT NOT NULL,
        user_id INTEGER,
        account TEXT,
        card TEXT,
        memo TEXT,
        asset_id INTEGER,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(category_id) REFERENCES categories(id) ON DELETE SET NULL,
        FOREIGN KEY(asset_id) REFERENCES assets(id),
        FOREIGN KEY(user_id) REFERENCES users(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS initial_balance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,
        amount_cents INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(user_id) REFERENCES users(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS memos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        content TEXT,
        date TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
        visibility TEXT NOT NULL DEFAULT 'private' CHECK (visibility IN ('private', 'public')),
        is_completed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(user_id) REFERENCES users(id)
    );
    """)

    _indexes(cur)


def _postgres_schema(cur):
    cur.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS categories (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('income', 'expense')),
        color TEXT NOT NULL DEFAULT '#007bff',
        user_id BIGINT REFERENCES users(id),
        parent_id BIGINT REFERENCES categories(id) ON DELETE SET NULL,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS asset_types (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        icon TEXT NOT NULL DEFAULT 'fas fa-wallet',
        color TEXT NOT NULL DEFAULT '#000000',
        description TEXT,
        user_id BIGINT REFERENCES users(id),
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS assets (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        asset_type_id BIGINT NOT NULL REFERENCES asset_types(id),
        amount_cents BIGINT NOT NULL DEFAULT 0,
        description TEXT,
        user_id BIGINT NOT NULL REFERENCES users(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS transactions (
        id BIGSERIAL PRIMARY KEY,
        amount_cents BIGINT NOT NULL CHECK (amount_cents > 0),
        description TEXT NOT NULL DEFAULT '',
        category_id BIGINT REFERENCES categories(id) ON DELETE SET NULL,
        type TEXT NOT NULL CHECK (type IN ('income', 'expense', 'transfer')),
        date TEXT NOT NULL,
        user_id BIGINT REFERENCES users(id),
        account TEXT,
        card TEXT,
        memo TEXT,
        asset_id BIGINT REFERENCES assets(id),
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS initial_balance (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL UNIQUE REFERENCES users(id),
        amount_cents BIGINT NOT NULL DEFAULT 0,
        updated_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS memos (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id),
        title TEXT NOT NULL,
        content TEXT,
        date TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
        visibility TEXT NOT NULL DEFAULT 'private' CHECK (visibility IN ('private', 'public')),
        is_completed BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    _indexes(cur)


def _indexes(cur):
    cur.execute("CREATE INDEX IF NOT EXISTS idx_categories_user ON categories(user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_categories_parent ON categories(parent_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tx_user_date ON transactions(user_id, date)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tx_category ON transactions(category_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tx_asset ON transactions(asset_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_assets_user ON assets(user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_asset_types_user ON asset_types(user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_memos_user_date ON memos(user_id, date)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_memos_visibility ON memos(visibility)")


def _seed_default_asset_types(cur):
    row = cur.execute("SELECT COUNT(*) AS n FROM asset_types WHERE is_default = TRUE").fetchone()
    if row and int(row["n"] or 0) > 0:
        return
    for t in DEFAULT_ASSET_TYPES:
        cur.execute(
            """
            INSERT INTO asset_types(name, icon, color, description, user_id, is_default)
            VALUES (?, ?, ?, ?, NULL, TRUE)
            """,
            (t["name"], t["icon"], t["color"], t["description"]),
        )
    logger.info("Seeded %d default asset types", len(DEFAULT_ASSET_TYPES))


def init_db() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        if USE_POSTGRES:
            _postgres_schema(cur)
        else:
            _sqlite_schema(cur)
        _seed_default_asset_types(cur)
    logger.info("Database ready (%s)", "postgres" if USE_POSTGRES else SQLITE_PATH)
