import unittest
from datetime import date, datetime
from decimal import Decimal
from unittest import mock

from sqlalchemy import func, select

from fintrack.currency_conversion import CurrencyConverter, ServiceUnavailable
from fintrack.database import audit_logs, budget_categories, goals, transactions, users
from fintrack.ledger import (
    CategoryBudgetInput,
    GoalInput,
    NotFoundError,
    TransactionInput,
    UserBannedError,
)
from fintrack.main import build_services
from fintrack.tests.support import (
    TEST_RATES,
    FixedClock,
    add_user,
    fetch_alert_levels,
    fetch_goal,
    fetch_notifications,
    make_engine,
)

TODAY = date(2024, 6, 15)


class SwitchableProvider:
    def __init__(self) -> None:
        self.down = False
        self.calls = 0

    def fetch_rates(self):
        self.calls += 1
        if self.down:
            raise ServiceUnavailable("Provider offline")
        return dict(TEST_RATES)


class LedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.clock = FixedClock(datetime(2024, 6, 15, 9, 0))
        self.provider = SwitchableProvider()
        self.converter = CurrencyConverter(self.provider, base_currency="VND")
        self.services = build_services(self.engine, self.converter, clock=self.clock)
        self.user_id = add_user(self.engine)

    def expense(self, amount: str, **kwargs) -> dict:
        data = TransactionInput(
            type=kwargs.pop("type", "expense"),
            amount=Decimal(amount),
            category=kwargs.pop("category", "food"),
            date=kwargs.pop("on", TODAY),
            **kwargs,
        )
        return self.services.transactions.create_transaction(self.user_id, data)

    def goal(self, target: str = "1000", currency: str | None = None) -> dict:
        return self.services.goals.create_goal(
            self.user_id,
            GoalInput(name="Trip", target_amount=Decimal(target), target_date=date(2024, 12, 31), currency=currency),
        )

    def count(self, table) -> int:
        with self.engine.begin() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar_one()


class TransactionServiceTests(LedgerTestCase):
    def test_foreign_currency_transaction_stores_rate_to_base(self) -> None:
        row = self.expense("10", currency="usd")

        self.assertEqual(row["currency"], "USD")
        self.assertEqual(row["exchange_rate"], Decimal("25000"))

    def test_rate_outage_rejects_write_before_storing(self) -> None:
        self.provider.down = True

        with self.assertRaises(ServiceUnavailable):
            self.expense("10", currency="USD")

        self.assertEqual(self.count(transactions), 0)

    def test_base_currency_write_needs_no_provider(self) -> None:
        self.provider.down = True

        row = self.expense("50000")

        self.assertEqual(row["exchange_rate"], Decimal("1"))
        self.assertEqual(self.provider.calls, 0)

    def test_rejects_invalid_input(self) -> None:
        with self.assertRaises(ValueError):
            self.expense("0")
        with self.assertRaises(ValueError):
            self.expense("10", type="transfer")
        with self.assertRaises(ValueError):
            self.expense("10", category="  ")
        with self.assertRaises(ValueError):
            self.expense("10", on=None)

    def test_crossing_category_budget_through_writes(self) -> None:
        self.services.budgets.set_budget(
            self.user_id,
            6,
            2024,
            Decimal("10000000"),
            categories=[CategoryBudgetInput("food", Decimal("1000000"))],
        )
        self.expense("750000")
        self.assertEqual(fetch_notifications(self.engine, self.user_id), [])

        crossing = self.expense("100000")
        self.assertEqual(len(fetch_notifications(self.engine, self.user_id)), 1)

        self.services.transactions.delete_transaction(self.user_id, crossing["id"])
        summary = self.services.budgets.get_summary(self.user_id, 6, 2024)

        self.assertEqual(summary.categories[0].stored_level, 0)
        self.assertEqual(len(fetch_notifications(self.engine, self.user_id)), 1)

    def test_relinking_goal_recomputes_both_goals(self) -> None:
        first = self.goal()
        second = self.goal()
        row = self.expense("300", goal_id=first["id"])
        self.assertEqual(fetch_goal(self.engine, first["id"])["current_base_amount"], Decimal("300"))

        self.services.transactions.update_transaction(self.user_id, row["id"], {"goal_id": second["id"]})

        self.assertEqual(fetch_goal(self.engine, first["id"])["current_base_amount"], Decimal("0"))
        self.assertEqual(fetch_goal(self.engine, second["id"])["current_base_amount"], Decimal("300"))

    def test_amount_update_recomputes_goal_and_status(self) -> None:
        goal = self.goal("1000")
        row = self.expense("300", goal_id=goal["id"])

        self.services.transactions.update_transaction(self.user_id, row["id"], {"amount": "1200"})

        refreshed = fetch_goal(self.engine, goal["id"])
        self.assertEqual(refreshed["current_base_amount"], Decimal("1200"))
        self.assertEqual(refreshed["status"], "completed")

    def test_currency_is_renormalized_only_when_it_changes(self) -> None:
        row = self.expense("10", currency="USD")
        calls = self.provider.calls
        self.provider.down = True

        updated = self.services.transactions.update_transaction(
            self.user_id, row["id"], {"currency": "USD", "note": "lunch"}
        )
        self.assertEqual(updated["exchange_rate"], Decimal("25000"))
        self.assertEqual(self.provider.calls, calls)

        self.provider.down = False
        updated = self.services.transactions.update_transaction(self.user_id, row["id"], {"currency": "EUR"})
        self.assertEqual(updated["exchange_rate"], Decimal("50000"))

    def test_update_rejects_unknown_fields(self) -> None:
        row = self.expense("10")

        with self.assertRaises(ValueError):
            self.services.transactions.update_transaction(self.user_id, row["id"], {"user_id": 99})

    def test_update_rejects_missing_or_malformed_values(self) -> None:
        row = self.expense("10")

        for changes in ({"type": None}, {"amount": None}, {"amount": "ten"}, {"amount": "NaN"}, {"category": None}):
            with self.assertRaises(ValueError):
                self.services.transactions.update_transaction(self.user_id, row["id"], changes)

        stored = self.services.transactions.get_transaction(self.user_id, row["id"])
        self.assertEqual(stored["amount"], Decimal("10"))
        self.assertEqual(stored["type"], "expense")

    def test_list_recurring_groups_instances_by_series(self) -> None:
        template, first = self.services.transactions.create_recurring_transaction(
            self.user_id,
            TransactionInput(type="expense", amount=Decimal("100"), category="rent"),
            recurring_day=10,
        )
        self.expense("10")

        bare = self.services.transactions.list_recurring(self.user_id)
        full = self.services.transactions.list_recurring(self.user_id, include_generated=True)

        self.assertEqual([item["template"]["id"] for item in bare], [template["id"]])
        self.assertEqual(bare[0]["instances"], [])
        self.assertEqual([row["id"] for row in full[0]["instances"]], [first["id"]])

        self.services.transactions.cancel_recurring(self.user_id, template["id"])
        self.assertEqual(self.services.transactions.list_recurring(self.user_id), [])

    def test_cannot_link_someone_elses_goal(self) -> None:
        other = add_user(self.engine, email="other@example.com")
        foreign_goal = self.services.goals.create_goal(
            other, GoalInput(name="Car", target_amount=Decimal("10"), target_date=date(2024, 12, 31))
        )

        with self.assertRaises(NotFoundError):
            self.expense("10", goal_id=foreign_goal["id"])
        self.assertEqual(self.count(transactions), 0)

    def test_other_users_transaction_is_not_found(self) -> None:
        other = add_user(self.engine, email="other@example.com")
        row = self.expense("10")

        with self.assertRaises(NotFoundError):
            self.services.transactions.get_transaction(other, row["id"])
        with self.assertRaises(NotFoundError):
            self.services.transactions.delete_transaction(other, row["id"])

    def test_list_transactions_filters_and_hides_templates(self) -> None:
        self.expense("10", on=date(2024, 6, 1))
        self.expense("20", type="income", category="salary", on=date(2024, 6, 2))
        self.expense("30", on=date(2024, 5, 2))
        self.services.transactions.create_recurring_transaction(
            self.user_id,
            TransactionInput(type="expense", amount=Decimal("5"), category="rent"),
            recurring_day=28,
        )

        june = self.services.transactions.list_transactions(
            self.user_id, start_date=date(2024, 6, 1), end_date=date(2024, 6, 30)
        )
        expenses = self.services.transactions.list_transactions(self.user_id, txn_type="expense")
        everything = self.services.transactions.list_transactions(self.user_id, include_templates=True)

        self.assertEqual([row["amount"] for row in june], [Decimal("20"), Decimal("10")])
        self.assertEqual(len(expenses), 2)
        self.assertEqual(len(everything), 4)


class RecurringTransactionTests(LedgerTestCase):
    def test_due_series_gets_first_instance_on_trigger_date(self) -> None:
        template, first = self.services.transactions.create_recurring_transaction(
            self.user_id,
            TransactionInput(type="expense", amount=Decimal("100"), category="rent"),
            recurring_day=10,
        )

        self.assertIsNone(template["date"])
        self.assertTrue(template["is_recurring"])
        self.assertEqual(first["date"], date(2024, 6, 10))
        self.assertEqual(first["recurring_id"], template["recurring_id"])
        self.assertEqual(self.services.recurring.sweep(), [])

    def test_series_not_yet_due_starts_with_template_only(self) -> None:
        template, first = self.services.transactions.create_recurring_transaction(
            self.user_id,
            TransactionInput(type="expense", amount=Decimal("100"), category="rent"),
            recurring_day=20,
        )

        self.assertIsNone(first)
        self.clock.now = datetime(2024, 6, 20, 8, 0)
        created = self.services.recurring.sweep()
        self.assertEqual(len(created), 1)

    def test_invalid_recurring_day_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.services.transactions.create_recurring_transaction(
                self.user_id,
                TransactionInput(type="expense", amount=Decimal("100"), category="rent"),
                recurring_day=32,
            )

    def test_cancel_requires_recurring_transaction(self) -> None:
        row = self.expense("10")

        with self.assertRaises(ValueError):
            self.services.transactions.cancel_recurring(self.user_id, row["id"])

    def test_cancel_from_instance_stops_series(self) -> None:
        template, first = self.services.transactions.create_recurring_transaction(
            self.user_id,
            TransactionInput(type="expense", amount=Decimal("100"), category="rent"),
            recurring_day=1,
        )

        self.services.transactions.cancel_recurring(self.user_id, first["id"])

        with self.assertRaises(NotFoundError):
            self.services.transactions.get_transaction(self.user_id, template["id"])
        kept = self.services.transactions.get_transaction(self.user_id, first["id"])
        self.assertFalse(kept["is_recurring"])


class BudgetServiceTests(LedgerTestCase):
    def test_budget_in_foreign_currency_is_stored_in_base(self) -> None:
        summary = self.services.budgets.set_budget(self.user_id, 6, 2024, Decimal("100"), currency="USD")

        self.assertEqual(summary.original_amount, Decimal("100"))
        self.assertEqual(summary.original_currency, "USD")
        self.assertEqual(summary.total.budget_amount, Decimal("2500000"))

    def test_resaving_budget_keeps_alert_levels_of_kept_categories(self) -> None:
        self.services.budgets.set_budget(
            self.user_id, 6, 2024, Decimal("100000"), categories=[CategoryBudgetInput("food", Decimal("1000"))]
        )
        self.expense("850")
        self.assertEqual(len(fetch_notifications(self.engine, self.user_id)), 1)

        summary = self.services.budgets.set_budget(
            self.user_id,
            6,
            2024,
            Decimal("100000"),
            categories=[
                CategoryBudgetInput("food", Decimal("1000")),
                CategoryBudgetInput("travel", Decimal("500")),
            ],
        )

        self.assertEqual(fetch_alert_levels(self.engine, summary.budget_id), (0, {"food": 80, "travel": 0}))
        self.assertEqual(len(fetch_notifications(self.engine, self.user_id)), 1)

        self.services.budgets.set_budget(self.user_id, 6, 2024, Decimal("100000"))
        self.assertEqual(self.count(budget_categories), 0)

    def test_rejects_duplicate_categories_and_bad_periods(self) -> None:
        with self.assertRaises(ValueError):
            self.services.budgets.set_budget(
                self.user_id,
                6,
                2024,
                Decimal("1000"),
                categories=[CategoryBudgetInput("food", Decimal("1")), CategoryBudgetInput("food", Decimal("2"))],
            )
        with self.assertRaises(ValueError):
            self.services.budgets.set_budget(self.user_id, 13, 2024, Decimal("1000"))

    def test_delete_budget(self) -> None:
        self.services.budgets.set_budget(self.user_id, 6, 2024, Decimal("1000"))

        self.services.budgets.delete_budget(self.user_id, 6, 2024)

        self.assertIsNone(self.services.budgets.get_summary(self.user_id, 6, 2024))
        with self.assertRaises(NotFoundError):
            self.services.budgets.delete_budget(self.user_id, 6, 2024)


class GoalServiceTests(LedgerTestCase):
    def test_goal_in_foreign_currency_freezes_creation_rate(self) -> None:
        goal = self.goal("100", currency="USD")

        self.assertEqual(goal["target_base_amount"], Decimal("2500000"))
        self.assertEqual(goal["creation_exchange_rate"], Decimal("25000"))

        self.expense("625000", goal_id=goal["id"])
        described = self.services.goals.describe(self.services.goals.get_goal(self.user_id, goal["id"]))

        self.assertEqual(described["progress_percent"], Decimal("25"))
        self.assertEqual(described["display_current_amount"], Decimal("25"))
        self.assertEqual(described["display_remaining_amount"], Decimal("75"))
        self.assertEqual(described["savings_plan"]["days_remaining"], 199)

    def test_deleting_goal_clears_links(self) -> None:
        goal = self.goal()
        row = self.expense("300", goal_id=goal["id"])

        self.services.goals.delete_goal(self.user_id, goal["id"])

        self.assertEqual(self.count(goals), 0)
        self.assertIsNone(self.services.transactions.get_transaction(self.user_id, row["id"])["goal_id"])

    def test_update_goal_moves_target_date_and_rederives_status(self) -> None:
        goal = self.goal()

        updated = self.services.goals.update_goal(self.user_id, goal["id"], target_date=date(2024, 6, 1))

        self.assertEqual(updated["status"], "failed")
        with self.assertRaises(ValueError):
            self.services.goals.update_goal(self.user_id, goal["id"], name=" ")


class AdminServiceTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin_id = add_user(self.engine, email="admin@example.com", is_admin=True)

    def test_moderation_requires_reason(self) -> None:
        row = self.expense("10")

        with self.assertRaises(ValueError):
            self.services.admin.delete_transaction(self.admin_id, row["id"], "  ")

        self.assertEqual(self.count(transactions), 1)
        self.assertEqual(self.count(audit_logs), 0)

    def test_delete_transaction_recomputes_and_audits(self) -> None:
        goal = self.goal()
        row = self.expense("400", goal_id=goal["id"])

        self.services.admin.delete_transaction(self.admin_id, row["id"], "fraudulent entry")

        self.assertEqual(fetch_goal(self.engine, goal["id"])["current_base_amount"], Decimal("0"))
        logs = self.services.admin.list_audit_logs()
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["action"], "delete_transaction")
        self.assertEqual(logs[0]["target_id"], row["id"])
        self.assertEqual(logs[0]["reason"], "fraudulent entry")

    def test_update_transaction_for_any_user(self) -> None:
        row = self.expense("10")

        updated = self.services.admin.update_transaction(self.admin_id, row["id"], {"amount": "20"}, "typo")

        self.assertEqual(updated["amount"], Decimal("20"))
        self.assertEqual(self.services.admin.list_audit_logs()[0]["action"], "update_transaction")

    def test_ban_blocks_user(self) -> None:
        self.services.admin.ban_user(self.admin_id, self.user_id, "spam")

        with self.assertRaises(UserBannedError):
            self.services.users.require_active_user(self.user_id)

        self.services.admin.ban_user(self.admin_id, self.user_id, "appeal accepted", banned=False)
        self.assertFalse(self.services.users.require_active_user(self.user_id)["is_banned"])

    def test_delete_user_removes_everything_they_own(self) -> None:
        goal = self.goal()
        self.expense("10", goal_id=goal["id"])
        self.services.budgets.set_budget(
            self.user_id, 6, 2024, Decimal("10"), categories=[CategoryBudgetInput("food", Decimal("5"))]
        )

        self.services.admin.delete_user(self.admin_id, self.user_id, "account closure request")

        self.assertEqual(self.count(transactions), 0)
        self.assertEqual(self.count(goals), 0)
        self.assertEqual(self.count(budget_categories), 0)
        self.assertEqual(self.count(users), 1)
        self.assertEqual(self.services.admin.list_audit_logs()[0]["action"], "delete_user")

    def test_recompute_missing_goal_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.services.admin.recompute_goal(self.admin_id, 999, "check")

    def test_failed_audit_write_rolls_back_moderation(self) -> None:
        goal = self.goal()
        row = self.expense("10", goal_id=goal["id"])

        with mock.patch.object(self.services.admin, "_audit", side_effect=RuntimeError("audit store down")):
            with self.assertRaises(RuntimeError):
                self.services.admin.delete_transaction(self.admin_id, row["id"], "duplicate")
            with self.assertRaises(RuntimeError):
                self.services.admin.update_transaction(self.admin_id, row["id"], {"amount": "99"}, "typo")
            with self.assertRaises(RuntimeError):
                self.services.admin.delete_goal(self.admin_id, goal["id"], "spam")

        stored = self.services.transactions.get_transaction(self.user_id, row["id"])
        self.assertEqual(stored["amount"], Decimal("10"))
        self.assertEqual(stored["goal_id"], goal["id"])
        self.assertEqual(self.count(goals), 1)
        self.assertEqual(self.count(audit_logs), 0)


class UserServiceTests(LedgerTestCase):
    def test_create_user_normalizes_and_rejects_duplicates(self) -> None:
        user = self.services.users.create_user(" New@Example.com ")

        self.assertEqual(user["email"], "new@example.com")
        self.assertFalse(user["is_admin"])
        with self.assertRaises(ValueError):
            self.services.users.create_user("new@example.com")
        with self.assertRaises(ValueError):
            self.services.users.create_user("not-an-email")

    def test_missing_user_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.services.users.get_user(999)


if __name__ == "__main__":
    unittest.main()
