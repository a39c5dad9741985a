from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
from typing import Callable, Iterable, Mapping, Optional
import uuid

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from fintrack.budget_engine import BudgetAlertEngine, BudgetSummary
from fintrack.currency_conversion import CurrencyConverter, coerce_amount, normalize_currency
from fintrack.database import (
    audit_logs,
    budget_categories,
    budgets,
    goals,
    notifications,
    transactions,
    users,
)
from fintrack.goal_progress import (
    GoalProgressEngine,
    derive_goal_status,
    progress_percent,
    savings_plan,
)
from fintrack.recurring_scheduler import (
    RecurringTransactionScheduler,
    is_due,
    trigger_date,
    validate_recurring_day,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
TRANSACTION_TYPES = {"income", "expense"}
UPDATABLE_TRANSACTION_FIELDS = {"amount", "type", "category", "date", "currency", "note", "goal_id"}

# Runs inside the write transaction, so a failure rolls the write back.
AuditHook = Callable[[Connection], None]


class NotFoundError(LookupError):
    """Raised when a referenced record does not exist or belongs to someone else."""


class UserBannedError(PermissionError):
    """Raised when a banned user attempts a write."""


@dataclass(frozen=True)
class TransactionInput:
    type: str
    amount: Decimal
    category: str
    date: Optional[date] = None
    currency: Optional[str] = None
    note: Optional[str] = None
    goal_id: Optional[int] = None


@dataclass(frozen=True)
class CategoryBudgetInput:
    category: str
    amount: Decimal


@dataclass(frozen=True)
class GoalInput:
    name: str
    target_amount: Decimal
    target_date: date
    currency: Optional[str] = None
    description: Optional[str] = None


def validate_transaction_type(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError("Invalid transaction type.")
    return normalized


def validate_positive_amount(value: Decimal | int | float | str | None, label: str = "Amount") -> Decimal:
    if value is None:
        raise ValueError(f"{label} is required.")
    try:
        amount = coerce_amount(value)
    except InvalidOperation as exc:
        raise ValueError(f"{label} must be a number.") from exc
    if not amount.is_finite() or amount <= ZERO:
        raise ValueError(f"{label} must be greater than zero.")
    return amount


def validate_category(value: str) -> str:
    normalized = (value or "").strip()
    if not normalized:
        raise ValueError("Category required.")
    return normalized


def validate_reason(value: str | None) -> str:
    reason = (value or "").strip()
    if not reason:
        raise ValueError("An audit reason is required.")
    return reason


def _fetch_owned(conn: Connection, table, record_id: int, owner_column, user_id: int | None, label: str):
    stmt = select(table).where(table.c.id == record_id)
    if user_id is not None:
        stmt = stmt.where(owner_column == user_id)
    row = conn.execute(stmt).mappings().first()
    if row is None:
        raise NotFoundError(f"{label} not found.")
    return row


class UserService:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, email: str) -> dict:
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValueError("A valid email is required.")
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(users).values(email=normalized, is_banned=False).returning(*users.c)
                ).mappings().first()
        except IntegrityError as exc:
            raise ValueError("Email already exists.") from exc
        return dict(row)

    def get_user(self, user_id: int) -> dict:
        with self.engine.begin() as conn:
            row = _fetch_owned(conn, users, user_id, None, None, "User")
        return dict(row)

    def require_active_user(self, user_id: int) -> dict:
        user = self.get_user(user_id)
        if user["is_banned"]:
            raise UserBannedError("User is banned.")
        return user


class TransactionService:
    """Write path for transactions.

    Every write normalizes the currency first, then recomputes the goals linked
    before or after the change, then reconciles the owner's budget alerts.
    """

    def __init__(
        self,
        engine: Engine,
        converter: CurrencyConverter,
        goal_engine: GoalProgressEngine,
        budget_engine: BudgetAlertEngine,
        recurring: RecurringTransactionScheduler,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.engine = engine
        self.converter = converter
        self.goal_engine = goal_engine
        self.budget_engine = budget_engine
        self.recurring = recurring
        self.clock = clock

    def create_transaction(self, user_id: int, data: TransactionInput) -> dict:
        if data.date is None:
            raise ValueError("A dated transaction requires a date.")
        values = self._prepare(user_id, data)
        with self.engine.begin() as conn:
            self._check_goal(conn, user_id, values["goal_id"])
            row = conn.execute(
                insert(transactions).values(user_id=user_id, **values).returning(*transactions.c)
            ).mappings().first()
        logger.info("Created %s transaction %s for user %s", row["type"], row["id"], user_id)
        self._after_write(user_id, [row["goal_id"]])
        return dict(row)

    def create_recurring_transaction(
        self, user_id: int, data: TransactionInput, recurring_day: int
    ) -> tuple[dict, dict | None]:
        recurring_day = validate_recurring_day(recurring_day)
        values = self._prepare(user_id, data)
        today = self.clock().date()
        first_date = data.date
        if first_date is None and is_due(recurring_day, today):
            first_date = trigger_date(recurring_day, today)
        series = dict(values, is_recurring=True, recurring_id=uuid.uuid4().hex, recurring_day=recurring_day)

        with self.engine.begin() as conn:
            self._check_goal(conn, user_id, values["goal_id"])
            template = conn.execute(
                insert(transactions)
                .values(user_id=user_id, **dict(series, date=None))
                .returning(*transactions.c)
            ).mappings().first()
            first = None
            if first_date is not None:
                first = conn.execute(
                    insert(transactions)
                    .values(user_id=user_id, **dict(series, date=first_date))
                    .returning(*transactions.c)
                ).mappings().first()
        logger.info(
            "Created recurring series %s for user %s on day %s",
            template["recurring_id"],
            user_id,
            recurring_day,
        )
        self._after_write(user_id, [template["goal_id"]])
        return dict(template), dict(first) if first is not None else None

    def get_transaction(self, user_id: int, transaction_id: int) -> dict:
        with self.engine.begin() as conn:
            row = _fetch_owned(
                conn, transactions, transaction_id, transactions.c.user_id, user_id, "Transaction"
            )
        return dict(row)

    def list_transactions(
        self,
        user_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        txn_type: str | None = None,
        category: str | None = None,
        include_templates: bool = False,
    ) -> list[dict]:
        stmt = select(transactions).where(transactions.c.user_id == user_id)
        if not include_templates:
            stmt = stmt.where(transactions.c.date.isnot(None))
        if start_date is not None:
            stmt = stmt.where(transactions.c.date >= start_date)
        if end_date is not None:
            stmt = stmt.where(transactions.c.date <= end_date)
        if txn_type:
            stmt = stmt.where(transactions.c.type == validate_transaction_type(txn_type))
        if category:
            stmt = stmt.where(transactions.c.category == category.strip())
        stmt = stmt.order_by(transactions.c.date.desc(), transactions.c.id.desc())
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    def list_recurring(self, user_id: int, include_generated: bool = False) -> list[dict]:
        """Active recurring series of the user, one entry per template.

        Instances are attached only when ``include_generated`` is set.
        """
        with self.engine.begin() as conn:
            templates = conn.execute(
                select(transactions)
                .where(
                    transactions.c.user_id == user_id,
                    transactions.c.date.is_(None),
                    transactions.c.is_recurring.is_(True),
                    transactions.c.recurring_id.isnot(None),
                )
                .order_by(transactions.c.recurring_day.asc(), transactions.c.id.asc())
            ).mappings().all()
            instances: dict[str, list[dict]] = {}
            if include_generated and templates:
                rows = conn.execute(
                    select(transactions)
                    .where(
                        transactions.c.user_id == user_id,
                        transactions.c.date.isnot(None),
                        transactions.c.recurring_id.in_([row["recurring_id"] for row in templates]),
                    )
                    .order_by(transactions.c.date.desc(), transactions.c.id.desc())
                ).mappings().all()
                for row in rows:
                    instances.setdefault(row["recurring_id"], []).append(dict(row))

        return [
            {
                "recurring_id": template["recurring_id"],
                "recurring_day": template["recurring_day"],
                "template": dict(template),
                "instances": instances.get(template["recurring_id"], []),
            }
            for template in templates
        ]

    def update_transaction(self, user_id: int, transaction_id: int, changes: Mapping) -> dict:
        return self.apply_update(transaction_id, changes, user_id=user_id)

    def delete_transaction(self, user_id: int, transaction_id: int) -> None:
        self.remove(transaction_id, user_id=user_id)

    def cancel_recurring(self, user_id: int, transaction_id: int, delete_all: bool = False) -> int:
        txn = self.get_transaction(user_id, transaction_id)
        if not txn["is_recurring"] or not txn["recurring_id"]:
            raise ValueError("Transaction is not part of a recurring series.")
        return self.recurring.cancel_series(user_id, txn["recurring_id"], delete_all=delete_all)

    def apply_update(
        self,
        transaction_id: int,
        changes: Mapping,
        user_id: int | None = None,
        audit: AuditHook | None = None,
    ) -> dict:
        unknown = set(changes) - UPDATABLE_TRANSACTION_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with self.engine.begin() as conn:
            existing = _fetch_owned(
                conn, transactions, transaction_id, transactions.c.user_id, user_id, "Transaction"
            )

        values: dict = {}
        if "type" in changes:
            values["type"] = validate_transaction_type(changes["type"])
        if "amount" in changes:
            values["amount"] = validate_positive_amount(changes["amount"])
        if "category" in changes:
            values["category"] = validate_category(changes["category"])
        if "note" in changes:
            values["note"] = changes["note"].strip() if changes["note"] else None
        if "date" in changes:
            if existing["date"] is None and changes["date"] is not None:
                raise ValueError("Recurring templates cannot be given a date.")
            if existing["date"] is not None and changes["date"] is None:
                raise ValueError("A dated transaction requires a date.")
            values["date"] = changes["date"]
        if "currency" in changes and changes["currency"]:
            currency = normalize_currency(changes["currency"])
            if currency != existing["currency"]:
                values["currency"] = currency
                values["exchange_rate"] = self.converter.rate_to_base(currency)
        if "goal_id" in changes:
            values["goal_id"] = changes["goal_id"]

        owner_id = existing["user_id"]
        with self.engine.begin() as conn:
            if values.get("goal_id") is not None:
                self._check_goal(conn, owner_id, values["goal_id"])
            if values:
                conn.execute(
                    update(transactions).where(transactions.c.id == transaction_id).values(**values)
                )
            if audit is not None:
                audit(conn)
            row = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id)
            ).mappings().first()
        logger.info("Updated transaction %s", transaction_id)
        self._after_write(owner_id, [existing["goal_id"], row["goal_id"]])
        return dict(row)

    def remove(
        self, transaction_id: int, user_id: int | None = None, audit: AuditHook | None = None
    ) -> dict:
        with self.engine.begin() as conn:
            existing = _fetch_owned(
                conn, transactions, transaction_id, transactions.c.user_id, user_id, "Transaction"
            )
            conn.execute(delete(transactions).where(transactions.c.id == transaction_id))
            if audit is not None:
                audit(conn)
        logger.info("Deleted transaction %s", transaction_id)
        self._after_write(existing["user_id"], [existing["goal_id"]])
        return dict(existing)

    def _prepare(self, user_id: int, data: TransactionInput) -> dict:
        currency = normalize_currency(data.currency or self.converter.base_currency)
        # Raises ServiceUnavailable before anything is stored.
        exchange_rate = self.converter.rate_to_base(currency)
        return {
            "type": validate_transaction_type(data.type),
            "amount": validate_positive_amount(data.amount),
            "category": validate_category(data.category),
            "date": data.date,
            "currency": currency,
            "exchange_rate": exchange_rate,
            "note": data.note.strip() if data.note else None,
            "goal_id": data.goal_id,
        }

    def _check_goal(self, conn: Connection, user_id: int, goal_id: int | None) -> None:
        if goal_id is None:
            return
        _fetch_owned(conn, goals, goal_id, goals.c.user_id, user_id, "Goal")

    def _after_write(self, user_id: int, goal_ids: Iterable[int | None]) -> None:
        for goal_id in sorted({goal_id for goal_id in goal_ids if goal_id is not None}):
            self.goal_engine.recompute_by_id(goal_id)
        self.budget_engine.reconcile(user_id)


class BudgetService:
    def __init__(
        self,
        engine: Engine,
        converter: CurrencyConverter,
        budget_engine: BudgetAlertEngine,
    ) -> None:
        self.engine = engine
        self.converter = converter
        self.budget_engine = budget_engine

    def set_budget(
        self,
        user_id: int,
        month: int,
        year: int,
        total_amount: Decimal,
        currency: str | None = None,
        categories: Iterable[CategoryBudgetInput] = (),
    ) -> BudgetSummary:
        if not 1 <= month <= 12:
            raise ValueError("Month must be between 1 and 12.")
        if year < 1970:
            raise ValueError("Invalid year.")
        original_amount = validate_positive_amount(total_amount, "Budget amount")
        original_currency = normalize_currency(currency or self.converter.base_currency)
        category_inputs: dict[str, Decimal] = {}
        for item in categories:
            name = validate_category(item.category)
            if name in category_inputs:
                raise ValueError(f"Duplicate budget category: {name}")
            amount = coerce_amount(item.amount)
            if amount < ZERO:
                raise ValueError("Category budget cannot be negative.")
            category_inputs[name] = amount

        rate = self.converter.rate_to_base(original_currency)

        with self.engine.begin() as conn:
            budget = conn.execute(
                select(budgets).where(
                    budgets.c.user_id == user_id,
                    budgets.c.month == month,
                    budgets.c.year == year,
                )
            ).mappings().first()
            budget_values = {
                "original_amount": original_amount,
                "original_currency": original_currency,
                "total_amount": original_amount * rate,
                "exchange_rate": rate,
            }
            if budget is None:
                budget_id = conn.execute(
                    insert(budgets)
                    .values(user_id=user_id, month=month, year=year, alert_level=0, **budget_values)
                    .returning(budgets.c.id)
                ).scalar_one()
                existing_categories = {}
            else:
                budget_id = budget["id"]
                conn.execute(update(budgets).where(budgets.c.id == budget_id).values(**budget_values))
                existing_categories = {
                    row["category"]: row["id"]
                    for row in conn.execute(
                        select(budget_categories).where(budget_categories.c.budget_id == budget_id)
                    ).mappings()
                }

            removed = [row_id for name, row_id in existing_categories.items() if name not in category_inputs]
            if removed:
                conn.execute(delete(budget_categories).where(budget_categories.c.id.in_(removed)))
            for name, amount in category_inputs.items():
                values = {"original_amount": amount, "amount": amount * rate}
                if name in existing_categories:
                    conn.execute(
                        update(budget_categories)
                        .where(budget_categories.c.id == existing_categories[name])
                        .values(**values)
                    )
                else:
                    conn.execute(
                        insert(budget_categories).values(
                            budget_id=budget_id, category=name, alert_level=0, **values
                        )
                    )
        logger.info("Saved budget %s/%s for user %s", month, year, user_id)

        self.budget_engine.reconcile(user_id)
        return self.budget_engine.summarize(user_id, year, month)

    def get_summary(self, user_id: int, month: int, year: int) -> BudgetSummary | None:
        return self.budget_engine.summarize(user_id, year, month)

    def delete_budget(self, user_id: int, month: int, year: int) -> None:
        with self.engine.begin() as conn:
            budget_id = conn.execute(
                select(budgets.c.id).where(
                    budgets.c.user_id == user_id,
                    budgets.c.month == month,
                    budgets.c.year == year,
                )
            ).scalar_one_or_none()
            if budget_id is None:
                raise NotFoundError("Budget not found.")
            conn.execute(delete(budget_categories).where(budget_categories.c.budget_id == budget_id))
            conn.execute(delete(budgets).where(budgets.c.id == budget_id))
        logger.info("Deleted budget %s/%s for user %s", month, year, user_id)


class GoalService:
    def __init__(
        self,
        engine: Engine,
        converter: CurrencyConverter,
        goal_engine: GoalProgressEngine,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.engine = engine
        self.converter = converter
        self.goal_engine = goal_engine
        self.clock = clock

    def create_goal(self, user_id: int, data: GoalInput) -> dict:
        name = (data.name or "").strip()
        if not name:
            raise ValueError("Goal name required.")
        target_amount = validate_positive_amount(data.target_amount, "Target amount")
        currency = normalize_currency(data.currency or self.converter.base_currency)
        # The creation rate is frozen for display conversions later on.
        rate = self.converter.rate_to_base(currency)
        target_base_amount = target_amount * rate
        today = self.clock().date()

        with self.engine.begin() as conn:
            row = conn.execute(
                insert(goals)
                .values(
                    user_id=user_id,
                    name=name,
                    description=data.description.strip() if data.description else None,
                    target_original_amount=target_amount,
                    target_currency=currency,
                    target_base_amount=target_base_amount,
                    creation_exchange_rate=rate,
                    current_base_amount=ZERO,
                    target_date=data.target_date,
                    status=derive_goal_status(ZERO, target_base_amount, data.target_date, today),
                )
                .returning(*goals.c)
            ).mappings().first()
        logger.info("Created goal %s for user %s", row["id"], user_id)
        return dict(row)

    def get_goal(self, user_id: int, goal_id: int) -> dict:
        with self.engine.begin() as conn:
            row = _fetch_owned(conn, goals, goal_id, goals.c.user_id, user_id, "Goal")
        return dict(row)

    def list_goals(self, user_id: int) -> list[dict]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(goals).where(goals.c.user_id == user_id).order_by(goals.c.target_date.asc())
            ).mappings().all()
        return [dict(row) for row in rows]

    def update_goal(
        self,
        user_id: int,
        goal_id: int,
        name: str | None = None,
        description: str | None = None,
        target_date: date | None = None,
    ) -> dict:
        values: dict = {}
        if name is not None:
            if not name.strip():
                raise ValueError("Goal name required.")
            values["name"] = name.strip()
        if description is not None:
            values["description"] = description.strip() or None
        if target_date is not None:
            values["target_date"] = target_date

        with self.engine.begin() as conn:
            _fetch_owned(conn, goals, goal_id, goals.c.user_id, user_id, "Goal")
            if values:
                conn.execute(update(goals).where(goals.c.id == goal_id).values(**values))
        self.goal_engine.recompute_by_id(goal_id)
        return self.get_goal(user_id, goal_id)

    def delete_goal(self, user_id: int, goal_id: int) -> None:
        self.remove(goal_id, user_id=user_id)

    def remove(self, goal_id: int, user_id: int | None = None, audit: AuditHook | None = None) -> dict:
        # Clearing links and deleting the goal commit or roll back together.
        with self.engine.begin() as conn:
            goal = _fetch_owned(conn, goals, goal_id, goals.c.user_id, user_id, "Goal")
            conn.execute(
                update(transactions).where(transactions.c.goal_id == goal_id).values(goal_id=None)
            )
            conn.execute(delete(goals).where(goals.c.id == goal_id))
            if audit is not None:
                audit(conn)
        logger.info("Deleted goal %s", goal_id)
        return dict(goal)

    def describe(self, goal: Mapping) -> dict:
        today = self.clock().date()
        current = coerce_amount(goal["current_base_amount"])
        target = coerce_amount(goal["target_base_amount"])
        remaining = target - current
        rate = coerce_amount(goal["creation_exchange_rate"] or 1)
        plan = savings_plan(remaining, goal["target_date"], today)

        def to_display(value: Decimal) -> Decimal:
            return max(value / rate, ZERO)

        return dict(
            goal,
            progress_percent=progress_percent(current, target),
            display_current_amount=to_display(current),
            display_remaining_amount=to_display(remaining),
            savings_plan={
                "recommended_daily": to_display(plan.recommended_daily),
                "recommended_weekly": to_display(plan.recommended_weekly),
                "recommended_monthly": to_display(plan.recommended_monthly),
                "days_remaining": plan.days_remaining,
            },
        )


class AdminService:
    """Moderation actions. Each one requires a reason and leaves an audit row."""

    def __init__(
        self,
        engine: Engine,
        transaction_service: TransactionService,
        goal_service: GoalService,
        goal_engine: GoalProgressEngine,
    ) -> None:
        self.engine = engine
        self.transaction_service = transaction_service
        self.goal_service = goal_service
        self.goal_engine = goal_engine

    def ban_user(self, admin_id: int, user_id: int, reason: str, banned: bool = True) -> None:
        reason = validate_reason(reason)
        with self.engine.begin() as conn:
            _fetch_owned(conn, users, user_id, None, None, "User")
            conn.execute(update(users).where(users.c.id == user_id).values(is_banned=banned))
            self._audit(conn, admin_id, "ban_user" if banned else "unban_user", "user", user_id, reason)

    def delete_user(self, admin_id: int, user_id: int, reason: str) -> None:
        reason = validate_reason(reason)
        with self.engine.begin() as conn:
            _fetch_owned(conn, users, user_id, None, None, "User")
            budget_ids = select(budgets.c.id).where(budgets.c.user_id == user_id)
            conn.execute(delete(budget_categories).where(budget_categories.c.budget_id.in_(budget_ids)))
            conn.execute(delete(budgets).where(budgets.c.user_id == user_id))
            conn.execute(delete(transactions).where(transactions.c.user_id == user_id))
            conn.execute(delete(goals).where(goals.c.user_id == user_id))
            conn.execute(delete(notifications).where(notifications.c.user_id == user_id))
            conn.execute(delete(users).where(users.c.id == user_id))
            self._audit(conn, admin_id, "delete_user", "user", user_id, reason)
        logger.warning("Admin %s deleted user %s", admin_id, user_id)

    def update_transaction(self, admin_id: int, transaction_id: int, changes: Mapping, reason: str) -> dict:
        reason = validate_reason(reason)
        return self.transaction_service.apply_update(
            transaction_id,
            changes,
            audit=lambda conn: self._audit(
                conn, admin_id, "update_transaction", "transaction", transaction_id, reason
            ),
        )

    def delete_transaction(self, admin_id: int, transaction_id: int, reason: str) -> None:
        reason = validate_reason(reason)
        self.transaction_service.remove(
            transaction_id,
            audit=lambda conn: self._audit(
                conn, admin_id, "delete_transaction", "transaction", transaction_id, reason
            ),
        )

    def delete_goal(self, admin_id: int, goal_id: int, reason: str) -> None:
        reason = validate_reason(reason)
        self.goal_service.remove(
            goal_id,
            audit=lambda conn: self._audit(conn, admin_id, "delete_goal", "goal", goal_id, reason),
        )

    def recompute_goal(self, admin_id: int, goal_id: int, reason: str) -> str:
        reason = validate_reason(reason)
        status = self.goal_engine.recompute_by_id(goal_id)
        if status is None:
            raise NotFoundError("Goal not found.")
        self._record(admin_id, "recompute_goal", "goal", goal_id, reason)
        return status

    def list_audit_logs(self, limit: int = 100) -> list[dict]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(audit_logs).order_by(audit_logs.c.id.desc()).limit(limit)
            ).mappings().all()
        return [dict(row) for row in rows]

    def _record(self, admin_id: int, action: str, target_type: str, target_id: int, reason: str) -> None:
        with self.engine.begin() as conn:
            self._audit(conn, admin_id, action, target_type, target_id, reason)

    def _audit(
        self,
        conn: Connection,
        admin_id: int,
        action: str,
        target_type: str,
        target_id: int,
        reason: str,
    ) -> None:
        conn.execute(
            insert(audit_logs).values(
                admin_id=admin_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                reason=reason,
            )
        )
        logger.info("Admin %s: %s %s %s (%s)", admin_id, action, target_type, target_id, reason)
