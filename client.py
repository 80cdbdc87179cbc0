import logging
import os
from typing import Any

import requests

logger = logging.getLogger(__name__)

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000/api").rstrip("/")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "15"))


class ApiError(RuntimeError):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = int(status)
        self.message = message


class ApiClient:
    """Thin wrapper over the JSON API; unwraps `{success, data|message}` envelopes."""

    def __init__(self, base_url: str | None = None, token: str | None = None, session=None):
        self.base_url = (base_url or API_BASE_URL).rstrip("/")
        self.token = token
        self.session = session if session is not None else requests.Session()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def request(self, method: str, path: str, json: Any = None, params: dict | None = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        r = self.session.request(
            method,
            url,
            json=json,
            params=params,
            headers=self._headers(),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code >= 400 or not body.get("success", False):
            message = body.get("message") or f"HTTP {r.status_code}"
            logger.warning("%s %s failed: %s %s", method, path, r.status_code, message)
            raise ApiError(r.status_code, message)
        return body.get("data")

    # auth

    def login(self, username: str, password: str) -> dict:
        data = self.request("POST", "/auth/login", json={"username": username, "password": password})
        self.token = data["token"]
        return data["user"]

    def register(self, username: str, email: str, password: str) -> dict:
        data = self.request(
            "POST", "/auth/register", json={"username": username, "email": email, "password": password}
        )
        self.token = data["token"]
        return data["user"]

    def logout(self) -> None:
        self.token = None

    # reads

    def get_categories(self) -> list[dict]:
        return self.request("GET", "/categories") or []

    def get_transactions_by_month(self, year: int, month: int) -> list[dict]:
        return self.request("GET", f"/transactions/{int(year)}/{int(month)}") or []

    def get_monthly_stats(self, year: int, month: int) -> dict:
        return self.request("GET", f"/stats/{int(year)}/{int(month)}") or {}

    def get_total_balance(self) -> dict:
        return self.request("GET", "/balance/total") or {}

    # writes

    def create_transaction(self, data: dict) -> dict:
        return self.request("POST", "/transactions", json=data)

    def update_transaction(self, tx_id: int, data: dict) -> dict:
        return self.request("PUT", f"/transactions/{int(tx_id)}", json=data)

    def delete_transaction(self, tx_id: int) -> None:
        self.request("DELETE", f"/transactions/{int(tx_id)}")

    def create_category(self, data: dict) -> dict:
        return self.request("POST", "/categories", json=data)

    def update_category(self, category_id: int, data: dict) -> dict:
        return self.request("PUT", f"/categories/{int(category_id)}", json=data)

    def delete_category(self, category_id: int) -> None:
        self.request("DELETE", f"/categories/{int(category_id)}")

    def set_initial_balance(self, amount) -> dict:
        return self.request("POST", "/balance/initial", json={"amount": str(amount)})
