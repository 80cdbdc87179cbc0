import logging
from typing import Any

from db import DEFAULT_ASSET_TYPES, get_conn, is_missing_table_error
from utils import from_cents, money_fields, parse_amount, to_cents

logger = logging.getLogger(__name__)

DEFAULT_ICON = "fas fa-wallet"
DEFAULT_COLOR = "#000000"


def _type_row(row: Any) -> dict:
    d = dict(row)
    d["is_default"] = bool(d.get("is_default"))
    for k in ("created_at", "updated_at"):
        if d.get(k) is not None:
            d[k] = str(d[k])
    return d


def _asset_row(row: Any) -> dict:
    d = money_fields(dict(row), "amount")
    d["is_active"] = bool(d.get("is_active"))
    for k in ("created_at", "updated_at"):
        if d.get(k) is not None:
            d[k] = str(d[k])
    return d


def default_asset_types() -> list[dict]:
    """Built-in list served when the asset_types table is not there yet."""
    return [{"id": i, **t, "user_id": None, "is_default": True} for i, t in enumerate(DEFAULT_ASSET_TYPES, start=1)]


# --------------------------------------------------------------- asset types


def list_asset_types(user_id: int) -> list[dict]:
    conn = get_conn()
    try:
        rows = conn.execute(
            """
            SELECT id, name, icon, color, description, user_id, is_default, created_at, updated_at
            FROM asset_types
            WHERE user_id = ? OR is_default = TRUE
            ORDER BY is_default DESC, name ASC, id ASC
            """,
            (int(user_id),),
        ).fetchall()
    except Exception as e:
        if not is_missing_table_error(e, "asset_types"):
            raise
        logger.warning("asset_types table missing; serving built-in defaults")
        return default_asset_types()
    finally:
        conn.close()
    return [_type_row(r) for r in rows]


def get_asset_type(type_id: int) -> dict | None:
    conn = get_conn()
    row = conn.execute(
        """
        SELECT id, name, icon, color, description, user_id, is_default, created_at, updated_at
        FROM asset_types
        WHERE id = ?
        """,
        (int(type_id),),
    ).fetchone()
    conn.close()
    return _type_row(row) if row else None


def is_asset_type_visible(asset_type: dict | None, user_id: int) -> bool:
    if not asset_type:
        return False
    if asset_type.get("is_default"):
        return True
    return asset_type.get("user_id") is not None and int(asset_type["user_id"]) == int(user_id)


def create_asset_type(
    name: str | None,
    user_id: int,
    icon: str | None = None,
    color: str | None = None,
    description: str | None = None,
) -> dict:
    nm = (name or "").strip()
    if not nm:
        raise ValueError("Please enter an asset type name.")
    ic = (icon or "").strip() or DEFAULT_ICON
    col = (color or "").strip() or DEFAULT_COLOR
    desc = (description or "").strip() or None

    conn = get_conn()
    new_id = conn.insert(
        """
        INSERT INTO asset_types(name, icon, color, description, user_id, is_default)
        VALUES (?, ?, ?, ?, ?, FALSE)
        """,
        (nm, ic, col, desc, int(user_id)),
    )
    conn.commit()
    conn.close()
    logger.info("Created asset type %s", new_id)
    return {
        "id": new_id,
        "name": nm,
        "icon": ic,
        "color": col,
        "description": desc,
        "user_id": int(user_id),
        "is_default": False,
    }


def update_asset_type(
    type_id: int,
    name: str | None,
    user_id: int,
    icon: str | None = None,
    color: str | None = None,
    description: str | None = None,
) -> int:
    """Only the owner's custom types change; defaults are never touched."""
    nm = (name or "").strip()
    if not nm:
        raise ValueError("Please enter an asset type name.")
    conn = get_conn()
    cur = conn.execute(
        """
        UPDATE asset_types
        SET name = ?, icon = ?, color = ?, description = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND user_id = ? AND is_default = FALSE
        """,
        (
            nm,
            (icon or "").strip() or DEFAULT_ICON,
            (color or "").strip() or DEFAULT_COLOR,
            (description or "").strip() or None,
            int(type_id),
            int(user_id),
        ),
    )
    conn.commit()
    updated = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    return int(updated)


def delete_asset_type(type_id: int, user_id: int) -> int:
    conn = get_conn()
    in_use = conn.execute(
        "SELECT COUNT(*) AS n FROM assets WHERE asset_type_id = ?",
        (int(type_id),),
    ).fetchone()
    if in_use and int(in_use["n"] or 0) > 0:
        conn.close()
        raise ValueError("This asset type is still used by assets.")

    cur = conn.execute(
        "DELETE FROM asset_types WHERE id = ? AND user_id = ? AND is_default = FALSE",
        (int(type_id), int(user_id)),
    )
    conn.commit()
    deleted = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    if deleted:
        logger.info("Deleted asset type %s", type_id)
    return int(deleted)


# -------------------------------------------------------------------- assets

_ASSET_SELECT = """
    SELECT
        a.id, a.name, a.asset_type_id, a.amount_cents, a.description, a.user_id,
        a.is_active, a.created_at, a.updated_at,
        at.name AS type_name, at.icon, at.color
    FROM assets a
    JOIN asset_types at ON a.asset_type_id = at.id
"""


def list_assets(user_id: int) -> list[dict]:
    conn = get_conn()
    try:
        rows = conn.execute(
            _ASSET_SELECT + " WHERE a.user_id = ? AND a.is_active = TRUE ORDER BY at.name, a.name, a.id",
            (int(user_id),),
        ).fetchall()
    except Exception as e:
        if not is_missing_table_error(e, "assets"):
            raise
        logger.warning("assets table missing; serving an empty list")
        return []
    finally:
        conn.close()
    return [_asset_row(r) for r in rows]


def list_assets_by_type(type_id: int, user_id: int) -> list[dict]:
    conn = get_conn()
    rows = conn.execute(
        _ASSET_SELECT
        + " WHERE a.asset_type_id = ? AND a.user_id = ? AND a.is_active = TRUE ORDER BY a.name, a.id",
        (int(type_id), int(user_id)),
    ).fetchall()
    conn.close()
    return [_asset_row(r) for r in rows]


def get_asset(asset_id: int, user_id: int) -> dict | None:
    """Active asset owned by `user_id`, or None."""
    conn = get_conn()
    row = conn.execute(
        _ASSET_SELECT + " WHERE a.id = ? AND a.user_id = ? AND a.is_active = TRUE",
        (int(asset_id), int(user_id)),
    ).fetchone()
    conn.close()
    return _asset_row(row) if row else None


def _asset_values(data: dict, user_id: int) -> tuple:
    name = str(data.get("name") or "").strip()
    type_id = data.get("asset_type_id")
    amount = data.get("amount")
    if not name or type_id in (None, "") or amount in (None, ""):
        raise ValueError("Name, asset type and amount are required.")
    amt = parse_amount(amount)
    if amt is None:
        raise ValueError("Please enter a valid amount.")
    asset_type = get_asset_type(int(type_id))
    if not is_asset_type_visible(asset_type, user_id):
        raise ValueError("Invalid asset type.")
    desc = str(data.get("description") or "").strip() or None
    return name, int(type_id), to_cents(amt), desc


def create_asset(data: dict, user_id: int) -> dict:
    name, type_id, cents, desc = _asset_values(data, user_id)
    conn = get_conn()
    new_id = conn.insert(
        """
        INSERT INTO assets(name, asset_type_id, amount_cents, description, user_id, is_active)
        VALUES (?, ?, ?, ?, ?, TRUE)
        """,
        (name, type_id, cents, desc, int(user_id)),
    )
    conn.commit()
    conn.close()
    logger.info("Created asset %s (type=%s)", new_id, type_id)
    return get_asset(new_id, user_id)


def update_asset(asset_id: int, data: dict, user_id: int) -> dict | None:
    """Explicit overwrite, amount included; None when the asset is not the user's."""
    name, type_id, cents, desc = _asset_values(data, user_id)
    conn = get_conn()
    cur = conn.execute(
        """
        UPDATE assets
        SET name = ?, asset_type_id = ?, amount_cents = ?, description = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND user_id = ? AND is_active = TRUE
        """,
        (name, type_id, cents, desc, int(asset_id), int(user_id)),
    )
    conn.commit()
    updated = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    if not updated:
        return None
    logger.info("Updated asset %s", asset_id)
    return get_asset(asset_id, user_id)


def delete_asset(asset_id: int, user_id: int) -> int:
    """Soft delete: the row stays so linked transactions keep their asset."""
    conn = get_conn()
    cur = conn.execute(
        """
        UPDATE assets
        SET is_active = FALSE, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND user_id = ? AND is_active = TRUE
        """,
        (int(asset_id), int(user_id)),
    )
    conn.commit()
    deleted = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    if deleted:
        logger.info("Deactivated asset %s", asset_id)
    return int(deleted)


def asset_totals(user_id: int) -> dict:
    conn = get_conn()
    try:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(amount_cents), 0) AS total_cents, COUNT(*) AS asset_count
            FROM assets
            WHERE user_id = ? AND is_active = TRUE
            """,
            (int(user_id),),
        ).fetchone()
    except Exception as e:
        if not is_missing_table_error(e, "assets"):
            raise
        return {"total_assets": from_cents(0), "asset_count": 0}
    finally:
        conn.close()
    return {
        "total_assets": from_cents(row["total_cents"] if row else 0),
        "asset_count": int(row["asset_count"] or 0) if row else 0,
    }
