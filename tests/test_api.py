import unittest

from fastapi.testclient import TestClient

import asset_repo
from api.main import app
from api.security import create_token
from support import TempDBTestCase


class ApiTestCase(TempDBTestCase):
    def setUp(self):
        super().setUp()
        self.client = TestClient(app)

    def register(self, username="alice", password="secret1"):
        r = self.client.post(
            "/api/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": password},
        )
        self.assertEqual(r.status_code, 201, r.text)
        data = r.json()["data"]
        return data["user"]["id"], {"Authorization": f"Bearer {data['token']}"}


class HealthAndAuthTests(ApiTestCase):
    def test_health_and_pool_status(self):
        body = self.client.get("/api/health").json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"], {"status": "ok"})
        body = self.client.get("/api/db-status").json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["connection_limit"], 5)

    def test_register_password_length(self):
        r = self.client.post(
            "/api/auth/register", json={"username": "bob", "email": "bob@example.com", "password": "12345"}
        )
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["success"], False)
        self.assertIn("at least 6", r.json()["message"])

    def test_login_failures_are_indistinguishable(self):
        self.register("alice", "secret1")
        wrong_pw = self.client.post("/api/auth/login", json={"username": "alice", "password": "nope123"})
        no_user = self.client.post("/api/auth/login", json={"username": "ghost", "password": "secret1"})
        self.assertEqual(wrong_pw.status_code, 401)
        self.assertEqual(no_user.status_code, wrong_pw.status_code)
        self.assertEqual(no_user.json(), wrong_pw.json())

    def test_login_and_profile(self):
        uid, _ = self.register()
        r = self.client.post("/api/auth/login", json={"username": "alice", "password": "secret1"})
        self.assertEqual(r.status_code, 200)
        token = r.json()["data"]["token"]
        profile = self.client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(profile.json()["data"]["id"], uid)
        self.assertNotIn("password_hash", profile.json()["data"])

    def test_missing_token_is_401_invalid_token_is_403(self):
        self.assertEqual(self.client.get("/api/auth/profile").status_code, 401)
        bad = self.client.get("/api/auth/profile", headers={"Authorization": "Bearer abc.def.ghi"})
        self.assertEqual(bad.status_code, 403)
        expired = create_token(1, "alice", ttl=-5)
        r = self.client.get("/api/balance/total", headers={"Authorization": f"Bearer {expired}"})
        self.assertEqual(r.status_code, 403)

    def test_change_password_uses_camel_case_fields(self):
        _, headers = self.register()
        r = self.client.put(
            "/api/auth/change-password",
            json={"currentPassword": "secret1", "newPassword": "secret2"},
            headers=headers,
        )
        self.assertEqual(r.status_code, 200, r.text)
        r = self.client.post("/api/auth/login", json={"username": "alice", "password": "secret2"})
        self.assertEqual(r.status_code, 200)

    def test_find_username_and_reset_password(self):
        self.register()
        r = self.client.post("/api/auth/find-username", json={"email": "alice@example.com"})
        self.assertEqual(r.json()["data"]["username"], "alice")
        self.assertEqual(self.client.post("/api/auth/find-username", json={"email": "x@y.io"}).status_code, 404)

        temp = self.client.post("/api/auth/reset-password", json={"email": "alice@example.com"}).json()["data"][
            "tempPassword"
        ]
        r = self.client.post("/api/auth/login", json={"username": "alice", "password": temp})
        self.assertEqual(r.status_code, 200)

    def test_malformed_body_is_400(self):
        r = self.client.post(
            "/api/auth/login", content="{not json", headers={"Content-Type": "application/json"}
        )
        self.assertEqual(r.status_code, 400)
        self.assertFalse(r.json()["success"])


class CategoryApiTests(ApiTestCase):
    def test_hierarchy_and_type_mismatch(self):
        _, headers = self.register()
        food = self.client.post("/api/categories", json={"name": "Food", "type": "expense"}, headers=headers)
        self.assertEqual(food.status_code, 201)
        food_id = food.json()["data"]["id"]

        child = self.client.post(
            "/api/categories",
            json={"name": "Groceries", "type": "expense", "parent_id": food_id},
            headers=headers,
        )
        self.assertEqual(child.status_code, 201)

        bad = self.client.post(
            "/api/categories", json={"name": "Bad", "type": "income", "parent_id": food_id}, headers=headers
        )
        self.assertEqual(bad.status_code, 400)

        tree = self.client.get("/api/categories/tree", headers=headers).json()["data"]
        self.assertEqual(tree[0]["children"][0]["name"], "Groceries")

    def test_anonymous_listing_and_ownership(self):
        _, alice = self.register("alice")
        _, bob = self.register("bob")
        cat_id = self.client.post(
            "/api/categories", json={"name": "Food", "type": "expense"}, headers=alice
        ).json()["data"]["id"]

        self.assertEqual(self.client.get("/api/categories").json()["data"], [])
        self.assertEqual(len(self.client.get("/api/categories", headers=alice).json()["data"]), 1)
        self.assertEqual(self.client.get("/api/categories/expense", headers=bob).json()["data"], [])
        self.assertEqual(self.client.get("/api/categories/savings").status_code, 400)

        r = self.client.put(f"/api/categories/{cat_id}", json={"name": "X", "type": "expense"}, headers=bob)
        self.assertEqual(r.status_code, 403)
        self.assertEqual(self.client.delete(f"/api/categories/{cat_id}", headers=bob).status_code, 403)
        self.assertEqual(self.client.delete("/api/categories/999", headers=bob).status_code, 404)

        r = self.client.put(f"/api/categories/{cat_id}", json={"name": "Meals", "type": "expense"}, headers=alice)
        self.assertEqual(r.json()["data"]["name"], "Meals")
        usage = self.client.get(f"/api/categories/{cat_id}/usage", headers=alice).json()["data"]
        self.assertEqual(usage["total_count"], 0)
        self.assertEqual(self.client.delete(f"/api/categories/{cat_id}", headers=alice).status_code, 200)


class TransactionApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.uid, self.headers = self.register()
        self.asset_id = asset_repo.create_asset(
            {"name": "Checking", "asset_type_id": 1, "amount": 1000}, self.uid
        )["id"]

    def _asset_amount(self):
        r = self.client.get(f"/api/assets/{self.asset_id}", headers=self.headers)
        return float(r.json()["data"]["amount"])

    def test_balance_scenario_over_http(self):
        r = self.client.post(
            "/api/transactions",
            json={"type": "income", "amount": 500, "date": "2025-02-03", "asset_id": self.asset_id},
            headers=self.headers,
        )
        self.assertEqual(r.status_code, 201, r.text)
        tx_id = r.json()["data"]["id"]
        self.assertEqual(self._asset_amount(), 1500.0)

        r = self.client.put(
            f"/api/transactions/{tx_id}",
            json={"type": "expense", "amount": 200, "date": "2025-02-03", "asset_id": self.asset_id},
            headers=self.headers,
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(self._asset_amount(), 800.0)

        self.assertEqual(self.client.delete(f"/api/transactions/{tx_id}", headers=self.headers).status_code, 200)
        self.assertEqual(self._asset_amount(), 1000.0)

    def test_validation_errors(self):
        for body in (
            {"type": "expense", "amount": 0, "date": "2025-01-01"},
            {"type": "gift", "amount": 5, "date": "2025-01-01"},
            {"type": "expense", "amount": 5},
            {"type": "expense", "amount": "lots", "date": "2025-01-01"},
        ):
            with self.subTest(body=body):
                r = self.client.post("/api/transactions", json=body, headers=self.headers)
                self.assertEqual(r.status_code, 400)
                self.assertFalse(r.json()["success"])

    def test_oversized_amounts_are_400(self):
        for amount in ("1e30", "100000000000000000000"):
            with self.subTest(amount=amount):
                r = self.client.post(
                    "/api/transactions",
                    json={"type": "expense", "amount": amount, "date": "2025-01-01", "asset_id": self.asset_id},
                    headers=self.headers,
                )
                self.assertEqual(r.status_code, 400, r.text)
                self.assertEqual(r.json()["message"], "Please enter a valid amount.")

                r = self.client.post("/api/balance/initial", json={"amount": amount}, headers=self.headers)
                self.assertEqual(r.status_code, 400, r.text)

                r = self.client.post(
                    "/api/assets", json={"name": "Vault", "asset_type_id": 1, "amount": amount}, headers=self.headers
                )
                self.assertEqual(r.status_code, 400, r.text)
        self.assertEqual(self._asset_amount(), 1000.0)

    def test_other_users_asset_and_transaction_forbidden(self):
        other_id, other = self.register("bob")
        r = self.client.post(
            "/api/transactions",
            json={"type": "income", "amount": 5, "date": "2025-01-01", "asset_id": self.asset_id},
            headers=other,
        )
        self.assertEqual(r.status_code, 403)
        self.assertEqual(self._asset_amount(), 1000.0)

        tx_id = self.client.post(
            "/api/transactions", json={"type": "expense", "amount": 5, "date": "2025-01-01"}, headers=self.headers
        ).json()["data"]["id"]
        body = {"type": "expense", "amount": 1, "date": "2025-01-01"}
        self.assertEqual(self.client.put(f"/api/transactions/{tx_id}", json=body, headers=other).status_code, 403)
        self.assertEqual(self.client.delete(f"/api/transactions/{tx_id}", headers=other).status_code, 403)
        self.assertEqual(self.client.delete("/api/transactions/999", headers=other).status_code, 404)

    def test_month_listing_stats_and_anonymous_access(self):
        for tx_type, amount, day in (("income", 100, "2025-02-01"), ("expense", 40, "2025-02-10")):
            self.client.post(
                "/api/transactions", json={"type": tx_type, "amount": amount, "date": day}, headers=self.headers
            )

        rows = self.client.get("/api/transactions/2025/2", headers=self.headers).json()["data"]
        self.assertEqual(len(rows), 2)
        self.assertEqual(self.client.get("/api/transactions/2025/2").json()["data"], [])
        self.assertEqual(self.client.get("/api/transactions/2025/13", headers=self.headers).status_code, 400)

        stats = self.client.get("/api/stats/2025/2", headers=self.headers).json()["data"]
        self.assertEqual(stats["income"]["count"], 1)
        self.assertEqual(float(stats["expense"]["total"]), 40.0)
        anon = self.client.get("/api/stats/2025/2").json()["data"]
        self.assertEqual(anon["income"]["count"], 0)

        cats = self.client.get("/api/stats/2025/2/categories", headers=self.headers).json()["data"]
        self.assertEqual(len(cats), 2)

    def test_balance_endpoints(self):
        self.assertEqual(float(self.client.get("/api/balance/initial", headers=self.headers).json()["data"]["amount"]), 0)
        r = self.client.post("/api/balance/initial", json={"amount": "150.5"}, headers=self.headers)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(self.client.post("/api/balance/initial", json={}, headers=self.headers).status_code, 400)

        self.client.post(
            "/api/transactions", json={"type": "income", "amount": 50, "date": "2025-01-01"}, headers=self.headers
        )
        total = self.client.get("/api/balance/total", headers=self.headers).json()["data"]
        self.assertEqual(float(total["current_balance"]), 200.5)
        self.assertEqual(float(total["total_assets"]), 1000.0)


class AssetApiTests(ApiTestCase):
    def test_asset_crud(self):
        _, headers = self.register()
        r = self.client.post(
            "/api/assets", json={"name": "Wallet", "asset_type_id": 1, "amount": 20}, headers=headers
        )
        self.assertEqual(r.status_code, 201, r.text)
        asset_id = r.json()["data"]["id"]

        self.assertEqual(
            self.client.post("/api/assets", json={"name": "X", "asset_type_id": 42, "amount": 1}, headers=headers).status_code,
            400,
        )
        r = self.client.put(
            f"/api/assets/{asset_id}", json={"name": "Purse", "asset_type_id": 1, "amount": 35}, headers=headers
        )
        self.assertEqual(float(r.json()["data"]["amount"]), 35.0)

        total = self.client.get("/api/assets/total", headers=headers).json()["data"]
        self.assertEqual(total["asset_count"], 1)
        self.assertEqual(len(self.client.get("/api/assets/type/1", headers=headers).json()["data"]), 1)

        self.assertEqual(self.client.delete(f"/api/assets/{asset_id}", headers=headers).status_code, 200)
        self.assertEqual(self.client.get(f"/api/assets/{asset_id}", headers=headers).status_code, 404)
        self.assertEqual(self.client.get("/api/assets", headers=headers).json()["data"], [])

    def test_asset_types(self):
        _, headers = self.register()
        rows = self.client.get("/api/asset-types", headers=headers).json()["data"]
        self.assertEqual(len(rows), 6)

        self.assertEqual(
            self.client.put("/api/asset-types/1", json={"name": "Mine"}, headers=headers).status_code, 403
        )
        self.assertEqual(self.client.delete("/api/asset-types/1", headers=headers).status_code, 403)

        r = self.client.post("/api/asset-types", json={"name": "Crypto"}, headers=headers)
        self.assertEqual(r.status_code, 201)
        type_id = r.json()["data"]["id"]
        r = self.client.put(f"/api/asset-types/{type_id}", json={"name": "Coins"}, headers=headers)
        self.assertEqual(r.json()["data"]["name"], "Coins")

        _, bob = self.register("bob")
        r = self.client.put(f"/api/asset-types/{type_id}", json={"name": "Mine"}, headers=bob)
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.json()["message"], "You do not have permission for this asset type.")
        self.assertEqual(self.client.delete(f"/api/asset-types/{type_id}", headers=bob).status_code, 403)

        self.assertEqual(self.client.delete(f"/api/asset-types/{type_id}", headers=headers).status_code, 200)
        self.assertEqual(self.client.delete(f"/api/asset-types/{type_id}", headers=headers).status_code, 404)


class MemoApiTests(ApiTestCase):
    def test_memo_flow(self):
        _, alice = self.register("alice")
        _, bob = self.register("bob")

        r = self.client.post(
            "/api/memos", json={"title": "Budget review", "date": "2025-07-01", "visibility": "public"}, headers=alice
        )
        self.assertEqual(r.status_code, 201, r.text)
        public_id = r.json()["data"]["id"]
        private_id = self.client.post(
            "/api/memos", json={"title": "Secret", "date": "2025-07-01"}, headers=alice
        ).json()["data"]["id"]

        public = self.client.get("/api/memos/public").json()["data"]
        self.assertEqual([m["title"] for m in public["memos"]], ["Budget review"])
        self.assertEqual(public["pagination"]["total"], 1)

        mine = self.client.get("/api/memos/my", params={"search": "secret"}, headers=alice).json()["data"]
        self.assertEqual([m["title"] for m in mine["memos"]], ["Secret"])
        self.assertEqual(self.client.get("/api/memos/my").status_code, 401)

        self.assertEqual(len(self.client.get("/api/memos/date/2025-07-01", headers=alice).json()["data"]), 2)
        self.assertEqual(self.client.get("/api/memos/date/July", headers=alice).status_code, 400)

        self.assertEqual(self.client.get(f"/api/memos/{public_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/memos/{private_id}", headers=bob).status_code, 403)
        self.assertEqual(self.client.get(f"/api/memos/{private_id}", headers=alice).status_code, 200)

        body = {"title": "Hacked", "date": "2025-07-02"}
        self.assertEqual(self.client.put(f"/api/memos/{private_id}", json=body, headers=bob).status_code, 403)
        self.assertEqual(self.client.patch(f"/api/memos/{private_id}/toggle", headers=bob).status_code, 403)
        self.assertEqual(self.client.delete(f"/api/memos/{private_id}", headers=bob).status_code, 403)
        self.assertEqual(self.client.delete("/api/memos/999", headers=bob).status_code, 404)

        r = self.client.patch(f"/api/memos/{private_id}/toggle", headers=alice)
        self.assertTrue(r.json()["data"]["is_completed"])
        r = self.client.put(f"/api/memos/{private_id}", json={"title": "Less secret", "date": "2025-07-02"}, headers=alice)
        self.assertEqual(r.json()["data"]["title"], "Less secret")
        self.assertEqual(self.client.delete(f"/api/memos/{private_id}", headers=alice).status_code, 200)


if __name__ == "__main__":
    unittest.main()
