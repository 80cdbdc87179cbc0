import logging
import math
from typing import Any

from db import get_conn
from utils import parse_date

logger = logging.getLogger(__name__)

PRIORITIES = {"low", "medium", "high"}
VISIBILITIES = {"private", "public"}
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

_MEMO_SELECT = """
    SELECT
        m.id, m.user_id, m.title, m.content, m.date, m.priority, m.visibility,
        m.is_completed, m.created_at, u.username
    FROM memos m
    JOIN users u ON m.user_id = u.id
"""


def _memo_row(row: Any) -> dict:
    d = dict(row)
    d["is_completed"] = bool(d.get("is_completed"))
    if d.get("created_at") is not None:
        d["created_at"] = str(d["created_at"])
    return d


def _page_args(page, limit) -> tuple[int, int]:
    try:
        p = int(page or 1)
    except (TypeError, ValueError):
        p = 1
    try:
        lim = int(limit or DEFAULT_PAGE_SIZE)
    except (TypeError, ValueError):
        lim = DEFAULT_PAGE_SIZE
    return max(1, p), min(max(1, lim), MAX_PAGE_SIZE)


def _like_pattern(text: str) -> str:
    escaped = text.replace("!", "!!").replace("%", "!%").replace("_", "!_")
    return f"%{escaped}%"


def _paginate(where: str, params: list, page, limit, search: str | None) -> dict:
    p, lim = _page_args(page, limit)
    s = (search or "").strip().lower()
    if s:
        where += (
            " AND (LOWER(m.title) LIKE ? ESCAPE '!'"
            " OR LOWER(COALESCE(m.content, '')) LIKE ? ESCAPE '!')"
        )
        pattern = _like_pattern(s)
        params = [*params, pattern, pattern]

    conn = get_conn()
    total_row = conn.execute(f"SELECT COUNT(*) AS total FROM memos m {where}", params).fetchone()
    rows = conn.execute(
        _MEMO_SELECT + f" {where} ORDER BY m.created_at DESC, m.id DESC LIMIT ? OFFSET ?",
        [*params, lim, (p - 1) * lim],
    ).fetchall()
    conn.close()

    total = int(total_row["total"] or 0) if total_row else 0
    return {
        "memos": [_memo_row(r) for r in rows],
        "pagination": {
            "current": p,
            "limit": lim,
            "total": total,
            "pages": math.ceil(total / lim),
        },
    }


def list_my_memos(user_id: int, page=1, limit=DEFAULT_PAGE_SIZE, search: str | None = None) -> dict:
    return _paginate("WHERE m.user_id = ?", [int(user_id)], page, limit, search)


def list_public_memos(page=1, limit=DEFAULT_PAGE_SIZE, search: str | None = None) -> dict:
    return _paginate("WHERE m.visibility = 'public'", [], page, limit, search)


def list_memos_by_date(user_id: int, memo_date: str) -> list[dict]:
    d = parse_date(memo_date)
    if not d:
        raise ValueError("Date must be in YYYY-MM-DD format.")
    conn = get_conn()
    rows = conn.execute(
        _MEMO_SELECT + " WHERE m.user_id = ? AND m.date = ? ORDER BY m.created_at DESC, m.id DESC",
        (int(user_id), d),
    ).fetchall()
    conn.close()
    return [_memo_row(r) for r in rows]


def get_memo(memo_id: int) -> dict | None:
    conn = get_conn()
    row = conn.execute(_MEMO_SELECT + " WHERE m.id = ?", (int(memo_id),)).fetchone()
    conn.close()
    return _memo_row(row) if row else None


def is_memo_owner(memo_id: int, user_id: int) -> bool:
    conn = get_conn()
    row = conn.execute("SELECT user_id FROM memos WHERE id = ?", (int(memo_id),)).fetchone()
    conn.close()
    if not row:
        return False
    return int(row["user_id"]) == int(user_id)


def _memo_values(data: dict) -> tuple:
    title = str(data.get("title") or "").strip()
    raw_date = data.get("date")
    if not title or not raw_date:
        raise ValueError("Title and date are required.")
    d = parse_date(raw_date)
    if not d:
        raise ValueError("Date must be in YYYY-MM-DD format.")
    priority = str(data.get("priority") or "medium").strip()
    if priority not in PRIORITIES:
        raise ValueError("Priority must be one of low, medium, high.")
    visibility = str(data.get("visibility") or "private").strip()
    if visibility not in VISIBILITIES:
        raise ValueError("Visibility must be private or public.")
    content = data.get("content")
    content = str(content) if content not in (None, "") else None
    return title, content, d, priority, visibility, bool(data.get("is_completed") or False)


def create_memo(data: dict, user_id: int) -> dict:
    title, content, d, priority, visibility, done = _memo_values(data)
    conn = get_conn()
    new_id = conn.insert(
        """
        INSERT INTO memos(user_id, title, content, date, priority, visibility, is_completed)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (int(user_id), title, content, d, priority, visibility, done),
    )
    conn.commit()
    conn.close()
    logger.info("Created memo %s (%s)", new_id, visibility)
    return get_memo(new_id)


def update_memo(memo_id: int, data: dict) -> int:
    title, content, d, priority, visibility, done = _memo_values(data)
    conn = get_conn()
    cur = conn.execute(
        """
        UPDATE memos
        SET title = ?, content = ?, date = ?, priority = ?, visibility = ?, is_completed = ?
        WHERE id = ?
        """,
        (title, content, d, priority, visibility, done, int(memo_id)),
    )
    conn.commit()
    updated = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    return int(updated)


def delete_memo(memo_id: int) -> int:
    conn = get_conn()
    cur = conn.execute("DELETE FROM memos WHERE id = ?", (int(memo_id),))
    conn.commit()
    deleted = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    if deleted:
        logger.info("Deleted memo %s", memo_id)
    return int(deleted)


def toggle_memo(memo_id: int) -> int:
    conn = get_conn()
    cur = conn.execute("UPDATE memos SET is_completed = NOT is_completed WHERE id = ?", (int(memo_id),))
    conn.commit()
    updated = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    return int(updated)
