import tempfile
import unittest
from pathlib import Path

import auth
import db


class TempDBTestCase(unittest.TestCase):
    """Each test gets a fresh SQLite file with the full schema."""

    pool_size = 5
    acquire_timeout = 2.0

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        db.configure(
            sqlite_path=Path(self._tmp.name) / "test.db",
            database_url="",
            pool_size=self.pool_size,
            acquire_timeout=self.acquire_timeout,
        )
        db.init_db()

    def tearDown(self):
        db.configure()
        self._tmp.cleanup()

    def make_user(self, username: str = "alice", password: str = "secret1") -> int:
        user = auth.register_user(username, f"{username}@example.com", password)
        return int(user["id"])

    def asset_amount(self, asset_id: int):
        conn = db.get_conn()
        row = conn.execute("SELECT amount_cents FROM assets WHERE id = ?", (asset_id,)).fetchone()
        conn.close()
        return int(row["amount_cents"])
