import logging
from datetime import date
from typing import Any

from client import ApiError

logger = logging.getLogger(__name__)

PAGE_DATA_REQUIREMENTS: dict[str, list[str]] = {
    "/": ["categories", "transactions", "monthlyStats", "totalBalance"],
    "/transactions": ["categories", "transactions"],
    "/categories": ["categories"],
    "/calendar": ["transactions"],
    "/memos": [],
    "/statistics": ["categories", "monthlyStats", "totalBalance"],
    "/assets": ["totalBalance"],
}

TRANSACTION_DOMAINS = ["transactions", "monthlyStats", "totalBalance"]
MONTH_DOMAINS = ["transactions", "monthlyStats"]


def _empty_stats() -> dict:
    return {"income": {"total": 0, "count": 0}, "expense": {"total": 0, "count": 0}}


def _empty_balance() -> dict:
    return {"initial_balance": 0, "total_income": 0, "total_expense": 0, "current_balance": 0}


class DataCache:
    """Per-session page data, fetched once per key until a mutation invalidates it.

    Keys are `categories`, `transactions-{y}-{m}`, `monthlyStats-{y}-{m}` and
    `totalBalance`. Staleness is only resolved by explicit invalidation.
    """

    def __init__(self, client, path: str = "/", year: int | None = None, month: int | None = None):
        today = date.today()
        self.client = client
        self.path = path
        self.year = int(year or today.year)
        self.month = int(month or today.month)
        self.user: dict | None = None
        self.loaded: set[str] = set()
        self._reset_values()

    def _reset_values(self) -> None:
        self.categories: list[dict] = []
        self.transactions: list[dict] = []
        self.monthly_stats: dict = _empty_stats()
        self.total_balance: dict = _empty_balance()

    # keys

    def _month_key(self, domain: str, year: int, month: int) -> str:
        return f"{domain}-{int(year)}-{int(month)}"

    def required_data(self, path: str | None = None) -> list[str]:
        return list(PAGE_DATA_REQUIREMENTS.get(path if path is not None else self.path, []))

    # loaders

    def load_categories(self, force: bool = False) -> None:
        if not force and "categories" in self.loaded:
            return
        try:
            self.categories = self.client.get_categories()
        except ApiError as e:
            logger.warning("Loading categories failed: %s", e)
            return
        self.loaded.add("categories")

    def load_transactions(self, year: int, month: int, force: bool = False) -> None:
        key = self._month_key("transactions", year, month)
        if not force and key in self.loaded:
            return
        try:
            self.transactions = self.client.get_transactions_by_month(year, month)
        except ApiError as e:
            logger.warning("Loading transactions for %s-%s failed: %s", year, month, e)
            return
        self.loaded.add(key)

    def load_monthly_stats(self, year: int, month: int, force: bool = False) -> None:
        key = self._month_key("monthlyStats", year, month)
        if not force and key in self.loaded:
            return
        try:
            self.monthly_stats = self.client.get_monthly_stats(year, month)
        except ApiError as e:
            logger.warning("Loading monthly stats for %s-%s failed: %s", year, month, e)
            return
        self.loaded.add(key)

    def load_total_balance(self, force: bool = False) -> None:
        if not self.user:
            return
        if not force and "totalBalance" in self.loaded:
            return
        try:
            self.total_balance = self.client.get_total_balance()
        except ApiError as e:
            logger.warning("Loading total balance failed: %s", e)
            return
        self.loaded.add("totalBalance")

    def load_required(self, required: list[str] | None = None, force: bool = False) -> None:
        if not self.user:
            return
        domains = required if required is not None else self.required_data()
        if "categories" in domains:
            self.load_categories(force=force)
        if "transactions" in domains:
            self.load_transactions(self.year, self.month, force=force)
        if "monthlyStats" in domains:
            self.load_monthly_stats(self.year, self.month, force=force)
        if "totalBalance" in domains:
            self.load_total_balance(force=force)

    def invalidate(self, data_types: str | list[str]) -> None:
        """A list drops every key starting with one of its prefixes; a string drops that exact key."""
        if isinstance(data_types, str):
            self.loaded.discard(data_types)
            return
        for prefix in data_types:
            self.loaded = {k for k in self.loaded if not k.startswith(prefix)}

    def _refresh(self, domains: list[str]) -> None:
        self.invalidate(domains)
        needed = [d for d in self.required_data() if d in domains]
        self.load_required(needed, force=True)

    # session / navigation

    def set_user(self, user: dict | None) -> None:
        self.user = user
        self.loaded.clear()
        self._reset_values()

    def navigate(self, path: str) -> None:
        self.path = path
        self.load_required()

    def set_month(self, year: int, month: int) -> None:
        self.year, self.month = int(year), int(month)
        self.invalidate(MONTH_DOMAINS)
        self.load_required()

    # mutations

    def add_transaction(self, data: dict) -> Any:
        created = self.client.create_transaction(data)
        self._refresh(TRANSACTION_DOMAINS)
        return created

    def update_transaction(self, tx_id: int, data: dict) -> Any:
        updated = self.client.update_transaction(tx_id, data)
        self._refresh(TRANSACTION_DOMAINS)
        return updated

    def delete_transaction(self, tx_id: int) -> None:
        self.client.delete_transaction(tx_id)
        self._refresh(TRANSACTION_DOMAINS)

    def add_category(self, data: dict) -> Any:
        created = self.client.create_category(data)
        self._refresh(["categories"])
        return created

    def update_category(self, category_id: int, data: dict) -> Any:
        updated = self.client.update_category(category_id, data)
        self._refresh(["categories"])
        return updated

    def delete_category(self, category_id: int) -> None:
        self.client.delete_category(category_id)
        self._refresh(["categories"])

    def set_initial_balance(self, amount) -> Any:
        saved = self.client.set_initial_balance(amount)
        self._refresh(["totalBalance"])
        return saved
