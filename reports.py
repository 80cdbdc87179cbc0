import pandas as pd

import asset_repo
import repo
from db import get_conn
from utils import from_cents, month_bounds


def df_transactions(
    date_from: str | None = None,
    date_to: str | None = None,
    user_id: int | None = None,
) -> pd.DataFrame:
    """Transactions of one user joined with their category, amounts in cents."""
    conn = get_conn()
    q = """
        SELECT
            t.id,
            t.date,
            t.type,
            t.amount_cents,
            t.category_id,
            c.name AS category_name,
            c.color AS category_color
        FROM transactions t
        LEFT JOIN categories c ON c.id = t.category_id
        WHERE t.user_id = ?
    """
    params: list = [int(user_id) if user_id is not None else None]
    if date_from:
        q += " AND t.date >= ?"
        params.append(date_from)
    if date_to:
        q += " AND t.date <= ?"
        params.append(date_to)

    q += " ORDER BY t.date ASC, t.id ASC"
    rows = conn.execute(q, params).fetchall()
    conn.close()

    df = pd.DataFrame([dict(r) for r in rows])
    if not df.empty:
        df["date"] = pd.to_datetime(df["date"])
        df["amount_cents"] = df["amount_cents"].astype("int64")
    return df


def _month_df(year: int, month: int, user_id: int | None) -> pd.DataFrame:
    if user_id is None:
        return pd.DataFrame()
    start, end = month_bounds(year, month)
    return df_transactions(date_from=start, date_to=end, user_id=user_id)


def monthly_stats(year: int, month: int, user_id: int | None = None) -> dict:
    stats = {
        "income": {"total": from_cents(0), "count": 0},
        "expense": {"total": from_cents(0), "count": 0},
    }
    df = _month_df(year, month, user_id)
    if df.empty:
        return stats

    g = df.groupby("type")["amount_cents"].agg(["sum", "count"])
    for tx_type, row in g.iterrows():
        stats[str(tx_type)] = {"total": from_cents(int(row["sum"])), "count": int(row["count"])}
    return stats


def category_stats(year: int, month: int, user_id: int | None = None) -> list[dict]:
    df = _month_df(year, month, user_id)
    if df.empty:
        return []

    g = (
        df.groupby(["category_id", "type"], dropna=False)
        .agg(
            category_name=("category_name", "first"),
            category_color=("category_color", "first"),
            total_cents=("amount_cents", "sum"),
            tx_count=("id", "count"),
        )
        .reset_index()
        .sort_values(["type", "total_cents"], ascending=[True, False])
    )

    out = []
    for r in g.itertuples(index=False):
        out.append(
            {
                "category_id": int(r.category_id) if pd.notna(r.category_id) else None,
                "category_name": r.category_name if pd.notna(r.category_name) else None,
                "category_color": r.category_color if pd.notna(r.category_color) else None,
                "type": r.type,
                "total_amount": from_cents(int(r.total_cents)),
                "count": int(r.tx_count),
            }
        )
    return out


def total_balance(user_id: int) -> dict:
    """initial + all-time income - all-time expense; transfers are left out."""
    initial = repo.get_initial_balance(user_id)["amount"]
    df = df_transactions(user_id=user_id)
    income = expense = 0
    if not df.empty:
        by_type = df.groupby("type")["amount_cents"].sum()
        income = int(by_type.get("income", 0))
        expense = int(by_type.get("expense", 0))

    total_income = from_cents(income)
    total_expense = from_cents(expense)
    return {
        "initial_balance": initial,
        "total_income": total_income,
        "total_expense": total_expense,
        "current_balance": initial + total_income - total_expense,
        "total_assets": asset_repo.asset_totals(user_id)["total_assets"],
    }
