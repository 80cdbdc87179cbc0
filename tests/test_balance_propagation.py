import unittest
from decimal import Decimal

import asset_repo
import db
import repo
from support import TempDBTestCase


class BalancePropagationTests(TempDBTestCase):
    def setUp(self):
        super().setUp()
        self.uid = self.make_user()
        self.checking = asset_repo.create_asset(
            {"name": "Checking", "asset_type_id": 1, "amount": 1000}, self.uid
        )["id"]
        self.savings = asset_repo.create_asset(
            {"name": "Savings", "asset_type_id": 3, "amount": "250.50"}, self.uid
        )["id"]

    def _tx(self, **fields):
        data = {"amount": 100, "type": "expense", "date": "2025-05-10"}
        data.update(fields)
        return data

    def test_income_edit_to_expense_then_delete_round_trip(self):
        tx = repo.create_transaction(self._tx(type="income", amount=500, asset_id=self.checking), self.uid)
        self.assertEqual(self.asset_amount(self.checking), 150000)

        repo.update_transaction(tx["id"], self._tx(type="expense", amount=200, asset_id=self.checking), self.uid)
        self.assertEqual(self.asset_amount(self.checking), 80000)

        repo.delete_transaction(tx["id"], self.uid)
        self.assertEqual(self.asset_amount(self.checking), 100000)

    def test_expense_decrements(self):
        repo.create_transaction(self._tx(amount="0.75", asset_id=self.savings), self.uid)
        self.assertEqual(self.asset_amount(self.savings), 24975)
        self.assertEqual(asset_repo.get_asset(self.savings, self.uid)["amount"], Decimal("249.75"))

    def test_moving_transaction_between_assets(self):
        tx = repo.create_transaction(self._tx(type="income", amount=40, asset_id=self.checking), self.uid)
        repo.update_transaction(tx["id"], self._tx(type="income", amount=40, asset_id=self.savings), self.uid)
        self.assertEqual(self.asset_amount(self.checking), 100000)
        self.assertEqual(self.asset_amount(self.savings), 29050)

        repo.update_transaction(tx["id"], self._tx(type="expense", amount=10), self.uid)
        self.assertEqual(self.asset_amount(self.savings), 25050)

        repo.delete_transaction(tx["id"], self.uid)
        self.assertEqual(self.asset_amount(self.checking), 100000)
        self.assertEqual(self.asset_amount(self.savings), 25050)

    def test_transfer_never_moves_balance(self):
        tx = repo.create_transaction(self._tx(type="transfer", amount=300, asset_id=self.checking), self.uid)
        self.assertEqual(self.asset_amount(self.checking), 100000)
        repo.update_transaction(tx["id"], self._tx(type="income", amount=300, asset_id=self.checking), self.uid)
        self.assertEqual(self.asset_amount(self.checking), 130000)
        repo.update_transaction(tx["id"], self._tx(type="transfer", amount=300, asset_id=self.checking), self.uid)
        self.assertEqual(self.asset_amount(self.checking), 100000)
        repo.delete_transaction(tx["id"], self.uid)
        self.assertEqual(self.asset_amount(self.checking), 100000)

    def test_no_asset_is_plain_crud(self):
        tx = repo.create_transaction(self._tx(description="coffee"), self.uid)
        self.assertIsNone(tx["asset_id"])
        self.assertEqual(tx["amount"], Decimal("100.00"))
        repo.delete_transaction(tx["id"], self.uid)
        self.assertIsNone(repo.get_transaction(tx["id"]))
        self.assertEqual(self.asset_amount(self.checking), 100000)

    def test_failed_create_leaves_nothing_behind(self):
        with self.assertRaises(repo.BalanceUpdateError):
            repo.create_transaction(self._tx(asset_id=9999), self.uid)
        self.assertEqual(repo.list_transactions(user_id=self.uid), [])

    def test_failed_update_rolls_back_the_reversal(self):
        other = self.make_user("bob")
        foreign = asset_repo.create_asset({"name": "Bob's", "asset_type_id": 1, "amount": 5}, other)["id"]
        tx = repo.create_transaction(self._tx(type="income", amount=500, asset_id=self.checking), self.uid)

        with self.assertRaises(repo.BalanceUpdateError):
            repo.update_transaction(tx["id"], self._tx(type="income", amount=1, asset_id=foreign), self.uid)

        self.assertEqual(self.asset_amount(self.checking), 150000)
        self.assertEqual(self.asset_amount(foreign), 500)
        kept = repo.get_transaction(tx["id"])
        self.assertEqual(kept["amount"], Decimal("500.00"))
        self.assertEqual(kept["asset_id"], self.checking)

    def test_other_users_transaction_is_not_found(self):
        other = self.make_user("bob")
        tx = repo.create_transaction(self._tx(asset_id=self.checking), self.uid)
        with self.assertRaises(repo.TransactionNotFound):
            repo.update_transaction(tx["id"], self._tx(amount=1), other)
        with self.assertRaises(repo.TransactionNotFound):
            repo.delete_transaction(tx["id"], other)
        self.assertEqual(self.asset_amount(self.checking), 90000)

    def test_validation(self):
        for bad in (
            self._tx(amount=0),
            self._tx(amount=-5),
            self._tx(amount="abc"),
            self._tx(type="refund"),
            self._tx(date="2025-13-01"),
            {"type": "expense", "date": "2025-01-01"},
        ):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    repo.create_transaction(bad, self.uid)

    def test_no_connections_leak(self):
        tx = repo.create_transaction(self._tx(asset_id=self.checking), self.uid)
        with self.assertRaises(repo.BalanceUpdateError):
            repo.create_transaction(self._tx(asset_id=9999), self.uid)
        repo.delete_transaction(tx["id"], self.uid)
        self.assertEqual(db.pool_status()["active_connections"], 0)


class TransactionListingTests(TempDBTestCase):
    def test_month_listing_joins_names_and_orders_newest_first(self):
        uid = self.make_user()
        cat = repo.create_category("Food", "expense", user_id=uid)
        asset = asset_repo.create_asset({"name": "Wallet", "asset_type_id": 1, "amount": 0}, uid)
        repo.create_transaction({"amount": 1, "type": "expense", "date": "2025-04-02", "category_id": cat["id"]}, uid)
        repo.create_transaction({"amount": 2, "type": "income", "date": "2025-04-20", "asset_id": asset["id"]}, uid)
        repo.create_transaction({"amount": 3, "type": "income", "date": "2025-05-01"}, uid)

        rows = repo.list_transactions_by_month(2025, 4, user_id=uid)
        self.assertEqual([r["date"] for r in rows], ["2025-04-20", "2025-04-02"])
        self.assertEqual(rows[0]["asset_name"], "Wallet")
        self.assertEqual(rows[1]["category_name"], "Food")
        self.assertEqual(rows[1]["category_color"], repo.DEFAULT_CATEGORY_COLOR)
        self.assertEqual(len(repo.list_transactions(user_id=uid)), 3)
        self.assertTrue(repo.is_transaction_owner(rows[0]["id"], uid))
        self.assertFalse(repo.is_transaction_owner(rows[0]["id"], uid + 1))


class InitialBalanceTests(TempDBTestCase):
    def test_upsert_keeps_one_row(self):
        uid = self.make_user()
        self.assertEqual(repo.get_initial_balance(uid)["amount"], Decimal("0.00"))
        repo.set_initial_balance(uid, "100")
        repo.set_initial_balance(uid, "250.25")
        self.assertEqual(repo.get_initial_balance(uid)["amount"], Decimal("250.25"))

        conn = db.get_conn()
        n = conn.execute("SELECT COUNT(*) AS n FROM initial_balance WHERE user_id = ?", (uid,)).fetchone()["n"]
        conn.close()
        self.assertEqual(n, 1)

    def test_rejects_non_numeric(self):
        uid = self.make_user()
        with self.assertRaises(ValueError):
            repo.set_initial_balance(uid, "lots")


if __name__ == "__main__":
    unittest.main()
