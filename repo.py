import logging
from typing import Any

from db import PoolTimeout, get_conn, transaction
from utils import from_cents, money_fields, month_bounds, parse_amount, parse_date, to_cents

logger = logging.getLogger(__name__)

CATEGORY_TYPES = {"income", "expense"}
TRANSACTION_TYPES = {"income", "expense", "transfer"}
DEFAULT_CATEGORY_COLOR = "#007bff"
MAX_CATEGORY_DEPTH = 3


class CategoryNotFound(LookupError):
    pass


class TransactionNotFound(LookupError):
    pass


class BalanceUpdateError(RuntimeError):
    """The transaction/asset unit failed and was rolled back."""


def is_owner(resource: dict | None, user_id: int | None) -> bool:
    if not resource or user_id is None or resource.get("user_id") is None:
        return False
    return int(resource["user_id"]) == int(user_id)


def is_owner_or_shared(resource: dict | None, user_id: int | None) -> bool:
    """Owned by `user_id`, or global (no owner)."""
    if not resource:
        return False
    if resource.get("user_id") is None:
        return True
    return user_id is not None and int(resource["user_id"]) == int(user_id)


# ---------------------------------------------------------------- categories


def _category_row(row: Any) -> dict:
    d = dict(row)
    if d.get("created_at") is not None:
        d["created_at"] = str(d["created_at"])
    return d


def list_categories(user_id: int | None = None) -> list[dict]:
    """Global categories plus the user's own, each with the user's usage count."""
    if user_id is not None:
        usage_filter = "WHERE user_id = ?"
        owner_filter = "WHERE c.user_id = ? OR c.user_id IS NULL"
        params: list = [int(user_id), int(user_id)]
    else:
        usage_filter = "WHERE user_id IS NULL"
        owner_filter = "WHERE c.user_id IS NULL"
        params = []

    conn = get_conn()
    rows = conn.execute(
        f"""
        SELECT
            c.id, c.name, c.type, c.color, c.user_id, c.parent_id, c.created_at,
            COALESCE(t.usage_count, 0) AS usage_count
        FROM categories c
        LEFT JOIN (
            SELECT category_id, COUNT(*) AS usage_count
            FROM transactions
            {usage_filter}
            GROUP BY category_id
        ) t ON c.id = t.category_id
        {owner_filter}
        ORDER BY c.type, c.name, c.id
        """,
        params,
    ).fetchall()
    conn.close()
    return [_category_row(r) for r in rows]


def list_categories_by_type(cat_type: str, user_id: int | None = None) -> list[dict]:
    conn = get_conn()
    if user_id is not None:
        rows = conn.execute(
            """
            SELECT id, name, type, color, user_id, parent_id, created_at
            FROM categories
            WHERE type = ? AND (user_id = ? OR user_id IS NULL)
            ORDER BY name, id
            """,
            (cat_type, int(user_id)),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT id, name, type, color, user_id, parent_id, created_at
            FROM categories
            WHERE type = ? AND user_id IS NULL
            ORDER BY name, id
            """,
            (cat_type,),
        ).fetchall()
    conn.close()
    return [_category_row(r) for r in rows]


def get_category(category_id: int) -> dict | None:
    conn = get_conn()
    row = conn.execute(
        "SELECT id, name, type, color, user_id, parent_id, created_at FROM categories WHERE id = ?",
        (int(category_id),),
    ).fetchone()
    conn.close()
    return _category_row(row) if row else None


def category_level(category_id: int) -> int:
    """1 for a top-level category, 2 for its children, 3 for leaves."""
    conn = get_conn()
    level = 0
    seen: set[int] = set()
    current: int | None = int(category_id)
    while current is not None and current not in seen:
        seen.add(current)
        row = conn.execute("SELECT parent_id FROM categories WHERE id = ?", (current,)).fetchone()
        if not row:
            break
        level += 1
        current = int(row["parent_id"]) if row["parent_id"] is not None else None
    conn.close()
    return level


def create_category(
    name: str | None,
    cat_type: str | None,
    color: str | None = None,
    user_id: int | None = None,
    parent_id: int | None = None,
) -> dict:
    nm = (name or "").strip()
    kind = (cat_type or "").strip()
    if not nm or not kind:
        raise ValueError("Category name and type are required.")
    if kind not in CATEGORY_TYPES:
        raise ValueError("Type must be either income or expense.")

    if parent_id is not None:
        parent = get_category(int(parent_id))
        if not parent or not is_owner_or_shared(parent, user_id):
            raise ValueError("Parent category not found.")
        if parent["type"] != kind:
            raise ValueError("Category type must match its parent's type.")
        if category_level(int(parent_id)) >= MAX_CATEGORY_DEPTH:
            raise ValueError(f"Categories can be nested at most {MAX_CATEGORY_DEPTH} levels deep.")

    col = (color or "").strip() or DEFAULT_CATEGORY_COLOR
    conn = get_conn()
    new_id = conn.insert(
        "INSERT INTO categories(name, type, color, user_id, parent_id) VALUES (?, ?, ?, ?, ?)",
        (nm, kind, col, user_id, int(parent_id) if parent_id is not None else None),
    )
    conn.commit()
    conn.close()
    logger.info("Created category %s (%s, parent=%s)", new_id, kind, parent_id)
    return {
        "id": new_id,
        "name": nm,
        "type": kind,
        "color": col,
        "user_id": user_id,
        "parent_id": int(parent_id) if parent_id is not None else None,
    }


def update_category(
    category_id: int,
    name: str | None,
    cat_type: str | None,
    color: str | None = None,
    user_id: int | None = None,
) -> int:
    nm = (name or "").strip()
    kind = (cat_type or "").strip()
    if not nm or not kind:
        raise ValueError("Category name and type are required.")
    if kind not in CATEGORY_TYPES:
        raise ValueError("Type must be either income or expense.")
    col = (color or "").strip() or DEFAULT_CATEGORY_COLOR

    q = "UPDATE categories SET name = ?, type = ?, color = ? WHERE id = ?"
    params: list = [nm, kind, col, int(category_id)]
    if user_id is not None:
        q += " AND (user_id = ? OR user_id IS NULL)"
        params.append(int(user_id))

    conn = get_conn()
    cur = conn.execute(q, params)
    conn.commit()
    updated = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    return int(updated)


def delete_category(category_id: int, user_id: int | None = None) -> int:
    q = "DELETE FROM categories WHERE id = ?"
    params: list = [int(category_id)]
    if user_id is not None:
        q += " AND (user_id = ? OR user_id IS NULL)"
        params.append(int(user_id))

    conn = get_conn()
    cur = conn.execute(q, params)
    conn.commit()
    deleted = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    if deleted:
        logger.info("Deleted category %s", category_id)
    return int(deleted)


def get_category_usage(category_id: int, user_id: int | None = None) -> dict:
    q = """
        SELECT
            COUNT(*) AS total_count,
            COALESCE(SUM(amount_cents), 0) AS total_amount_cents,
            MAX(date) AS last_used
        FROM transactions
        WHERE category_id = ?
    """
    params: list = [int(category_id)]
    if user_id is not None:
        q += " AND user_id = ?"
        params.append(int(user_id))

    conn = get_conn()
    row = conn.execute(q, params).fetchone()
    conn.close()
    return {
        "total_count": int(row["total_count"] or 0) if row else 0,
        "total_amount": from_cents(row["total_amount_cents"] if row else 0),
        "last_used": row["last_used"] if row else None,
    }


def category_tree(user_id: int | None = None, cat_type: str | None = None) -> list[dict]:
    rows = list_categories(user_id=user_id)
    if cat_type:
        rows = [r for r in rows if r["type"] == cat_type]

    nodes = {int(r["id"]): {**r, "children": []} for r in rows}
    roots: list[dict] = []
    for r in rows:
        node = nodes[int(r["id"])]
        parent = nodes.get(int(r["parent_id"])) if r["parent_id"] is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)
    return roots


# -------------------------------------------------------------- transactions

_TX_SELECT = """
    SELECT
        t.id, t.amount_cents, t.description, t.category_id, t.type, t.date,
        t.user_id, t.account, t.card, t.memo, t.asset_id, t.created_at,
        c.name AS category_name, c.color AS category_color,
        a.name AS asset_name
    FROM transactions t
    LEFT JOIN categories c ON c.id = t.category_id
    LEFT JOIN assets a ON a.id = t.asset_id
"""


def _tx_row(row: Any) -> dict:
    d = money_fields(dict(row), "amount")
    if d.get("created_at") is not None:
        d["created_at"] = str(d["created_at"])
    return d


def _opt_text(value) -> str | None:
    txt = str(value).strip() if value is not None else ""
    return txt or None


def _opt_id(value) -> int | None:
    if value in (None, "", 0, "0"):
        return None
    return int(value)


def normalize_transaction(data: dict) -> dict:
    """Validated column values for a transaction row; raises ValueError."""
    amount = data.get("amount")
    tx_type = str(data.get("type") or "").strip()
    tx_date = data.get("date")
    if amount in (None, "") or not tx_type or not tx_date:
        raise ValueError("Amount, type and date are required.")
    if tx_type not in TRANSACTION_TYPES:
        raise ValueError("Type must be one of income, expense, transfer.")
    amt = parse_amount(amount)
    if amt is None or amt <= 0:
        raise ValueError("Please enter a valid amount.")
    d = parse_date(tx_date)
    if not d:
        raise ValueError("Date must be in YYYY-MM-DD format.")
    return {
        "amount_cents": to_cents(amt),
        "description": str(data.get("description") or "").strip(),
        "category_id": _opt_id(data.get("category_id")),
        "type": tx_type,
        "date": d,
        "account": _opt_text(data.get("account")),
        "card": _opt_text(data.get("card")),
        "memo": _opt_text(data.get("memo")),
        "asset_id": _opt_id(data.get("asset_id")),
    }


def balance_delta(tx_type: str, amount_cents: int) -> int:
    """Signed effect of a transaction on its linked asset; transfers move nothing."""
    if tx_type == "income":
        return int(amount_cents)
    if tx_type == "expense":
        return -int(amount_cents)
    return 0


def _apply_asset_delta(conn, asset_id: int | None, delta: int, user_id: int | None = None) -> None:
    if asset_id is None or delta == 0:
        return
    q = "UPDATE assets SET amount_cents = amount_cents + ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?"
    params: list = [int(delta), int(asset_id)]
    if user_id is not None:
        q += " AND user_id = ?"
        params.append(int(user_id))
    cur = conn.execute(q, params)
    if not cur.rowcount:
        raise BalanceUpdateError(f"Asset {asset_id} could not be updated.")


def list_transactions(user_id: int | None = None) -> list[dict]:
    q = _TX_SELECT
    params: list = []
    if user_id is not None:
        q += " WHERE t.user_id = ?"
        params.append(int(user_id))
    q += " ORDER BY t.date DESC, t.created_at DESC, t.id DESC"

    conn = get_conn()
    rows = conn.execute(q, params).fetchall()
    conn.close()
    return [_tx_row(r) for r in rows]


def list_transactions_by_month(year: int, month: int, user_id: int | None = None) -> list[dict]:
    start, end = month_bounds(year, month)
    q = _TX_SELECT + " WHERE t.date BETWEEN ? AND ?"
    params: list = [start, end]
    if user_id is not None:
        q += " AND t.user_id = ?"
        params.append(int(user_id))
    q += " ORDER BY t.date DESC, t.created_at DESC, t.id DESC"

    conn = get_conn()
    rows = conn.execute(q, params).fetchall()
    conn.close()
    return [_tx_row(r) for r in rows]


def get_transaction(tx_id: int, user_id: int | None = None) -> dict | None:
    q = _TX_SELECT + " WHERE t.id = ?"
    params: list = [int(tx_id)]
    if user_id is not None:
        q += " AND t.user_id = ?"
        params.append(int(user_id))

    conn = get_conn()
    row = conn.execute(q, params).fetchone()
    conn.close()
    return _tx_row(row) if row else None


def is_transaction_owner(tx_id: int, user_id: int) -> bool:
    conn = get_conn()
    row = conn.execute("SELECT user_id FROM transactions WHERE id = ?", (int(tx_id),)).fetchone()
    conn.close()
    return is_owner(dict(row) if row else None, user_id)


def create_transaction(data: dict, user_id: int | None = None) -> dict:
    v = normalize_transaction(data)
    try:
        with transaction() as conn:
            tx_id = conn.insert(
                """
                INSERT INTO transactions(
                    amount_cents, description, category_id, type, date,
                    user_id, account, card, memo, asset_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    v["amount_cents"],
                    v["description"],
                    v["category_id"],
                    v["type"],
                    v["date"],
                    int(user_id) if user_id is not None else None,
                    v["account"],
                    v["card"],
                    v["memo"],
                    v["asset_id"],
                ),
            )
            _apply_asset_delta(conn, v["asset_id"], balance_delta(v["type"], v["amount_cents"]), user_id)
    except PoolTimeout:
        raise
    except Exception as e:
        logger.exception("Creating transaction failed; rolled back")
        raise BalanceUpdateError("Could not create the transaction.") from e

    logger.info("Created transaction %s (%s, asset=%s)", tx_id, v["type"], v["asset_id"])
    return get_transaction(tx_id)


def update_transaction(tx_id: int, data: dict, user_id: int | None = None) -> dict:
    """Reverse the old row's effect on its asset, rewrite it, apply the new effect."""
    v = normalize_transaction(data)
    owner_sql = " AND user_id = ?" if user_id is not None else ""
    owner_params = [int(user_id)] if user_id is not None else []

    try:
        with transaction() as conn:
            old = conn.execute(
                "SELECT id, amount_cents, type, asset_id FROM transactions WHERE id = ?" + owner_sql,
                [int(tx_id), *owner_params],
            ).fetchone()
            if not old:
                raise TransactionNotFound(f"Transaction {tx_id} not found.")

            old_asset = int(old["asset_id"]) if old["asset_id"] is not None else None
            _apply_asset_delta(conn, old_asset, -balance_delta(old["type"], old["amount_cents"]), user_id)

            conn.execute(
                """
                UPDATE transactions
                SET amount_cents = ?, description = ?, category_id = ?, type = ?, date = ?,
                    account = ?, card = ?, memo = ?, asset_id = ?
                WHERE id = ?
                """
                + owner_sql,
                [
                    v["amount_cents"],
                    v["description"],
                    v["category_id"],
                    v["type"],
                    v["date"],
                    v["account"],
                    v["card"],
                    v["memo"],
                    v["asset_id"],
                    int(tx_id),
                    *owner_params,
                ],
            )
            _apply_asset_delta(conn, v["asset_id"], balance_delta(v["type"], v["amount_cents"]), user_id)
    except (TransactionNotFound, PoolTimeout):
        raise
    except Exception as e:
        logger.exception("Updating transaction %s failed; rolled back", tx_id)
        raise BalanceUpdateError("Could not modify the transaction.") from e

    logger.info("Updated transaction %s (asset %s -> %s)", tx_id, old_asset, v["asset_id"])
    return get_transaction(tx_id)


def delete_transaction(tx_id: int, user_id: int | None = None) -> None:
    owner_sql = " AND user_id = ?" if user_id is not None else ""
    owner_params = [int(user_id)] if user_id is not None else []

    try:
        with transaction() as conn:
            old = conn.execute(
                "SELECT id, amount_cents, type, asset_id FROM transactions WHERE id = ?" + owner_sql,
                [int(tx_id), *owner_params],
            ).fetchone()
            if not old:
                raise TransactionNotFound(f"Transaction {tx_id} not found.")

            old_asset = int(old["asset_id"]) if old["asset_id"] is not None else None
            _apply_asset_delta(conn, old_asset, -balance_delta(old["type"], old["amount_cents"]), user_id)
            conn.execute("DELETE FROM transactions WHERE id = ?" + owner_sql, [int(tx_id), *owner_params])
    except (TransactionNotFound, PoolTimeout):
        raise
    except Exception as e:
        logger.exception("Deleting transaction %s failed; rolled back", tx_id)
        raise BalanceUpdateError("Could not delete the transaction.") from e

    logger.info("Deleted transaction %s", tx_id)


# ----------------------------------------------------------- initial balance


def get_initial_balance(user_id: int) -> dict:
    conn = get_conn()
    row = conn.execute(
        "SELECT user_id, amount_cents, updated_at FROM initial_balance WHERE user_id = ?",
        (int(user_id),),
    ).fetchone()
    conn.close()
    if not row:
        return {"user_id": int(user_id), "amount": from_cents(0), "updated_at": None}
    d = money_fields(dict(row), "amount")
    d["updated_at"] = str(d["updated_at"]) if d.get("updated_at") is not None else None
    return d


def set_initial_balance(user_id: int, amount) -> dict:
    amt = parse_amount(amount)
    if amt is None:
        raise ValueError("Please enter a valid amount.")
    conn = get_conn()
    conn.execute(
        """
        INSERT INTO initial_balance(user_id, amount_cents, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
            amount_cents = excluded.amount_cents,
            updated_at = CURRENT_TIMESTAMP
        """,
        (int(user_id), to_cents(amt)),
    )
    conn.commit()
    conn.close()
    logger.info("Initial balance set for user %s", user_id)
    return {"user_id": int(user_id), "amount": amt}
