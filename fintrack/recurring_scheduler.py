from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime
import logging
from typing import Callable, Mapping

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine

from fintrack.budget_engine import BudgetAlertEngine, month_bounds
from fintrack.database import transactions
from fintrack.goal_progress import GoalProgressEngine

logger = logging.getLogger(__name__)

MIN_RECURRING_DAY = 1
MAX_RECURRING_DAY = 31

TEMPLATE_FIELDS = (
    "user_id",
    "type",
    "amount",
    "category",
    "currency",
    "exchange_rate",
    "note",
    "goal_id",
    "is_recurring",
    "recurring_id",
    "recurring_day",
)


def validate_recurring_day(value: int) -> int:
    if not MIN_RECURRING_DAY <= value <= MAX_RECURRING_DAY:
        raise ValueError("Recurring day must be between 1 and 31.")
    return value


def trigger_day(recurring_day: int, year: int, month: int) -> int:
    last_day = monthrange(year, month)[1]
    return min(validate_recurring_day(recurring_day), last_day)


def trigger_date(recurring_day: int, today: date) -> date:
    return date(today.year, today.month, trigger_day(recurring_day, today.year, today.month))


def is_due(recurring_day: int, today: date) -> bool:
    # A late run still catches up: anything on or after the trigger day is due.
    return today >= trigger_date(recurring_day, today)


def instance_values(template: Mapping, on_date: date) -> dict:
    values = {name: template[name] for name in TEMPLATE_FIELDS}
    values["date"] = on_date
    return values


class RecurringTransactionScheduler:
    """Materializes one dated instance per recurring template per month."""

    def __init__(
        self,
        engine: Engine,
        goal_engine: GoalProgressEngine,
        budget_engine: BudgetAlertEngine,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.engine = engine
        self.goal_engine = goal_engine
        self.budget_engine = budget_engine
        self.clock = clock

    def sweep(self) -> list[int]:
        today = self.clock().date()
        with self.engine.begin() as conn:
            templates = conn.execute(
                select(transactions).where(
                    transactions.c.date.is_(None),
                    transactions.c.is_recurring.is_(True),
                    transactions.c.recurring_id.isnot(None),
                    transactions.c.recurring_day >= MIN_RECURRING_DAY,
                    transactions.c.recurring_day <= MAX_RECURRING_DAY,
                )
            ).mappings().all()

        logger.info("Recurring sweep on %s: %s active templates", today.isoformat(), len(templates))
        created: list[int] = []
        touched_users: set[int] = set()
        for template in templates:
            try:
                instance = self.materialize(template, today)
            except Exception:
                logger.exception("Recurring template %s failed", template["id"])
                continue
            if instance is None:
                continue
            created.append(instance["id"])
            touched_users.add(instance["user_id"])
            try:
                self.goal_engine.apply_contribution(instance)
            except Exception:
                logger.exception("Goal update failed for recurring instance %s", instance["id"])

        for user_id in sorted(touched_users):
            try:
                self.budget_engine.reconcile(user_id)
            except Exception:
                logger.exception("Budget reconcile failed for user %s after recurring sweep", user_id)
        return created

    def materialize(self, template: Mapping, today: date) -> Mapping | None:
        recurring_day = template["recurring_day"]
        if not is_due(recurring_day, today):
            logger.debug("Template %s not due until day %s", template["id"], recurring_day)
            return None

        start_date, end_date = month_bounds(today.year, today.month)
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(transactions.c.id).where(
                    transactions.c.recurring_id == template["recurring_id"],
                    transactions.c.date.isnot(None),
                    transactions.c.date >= start_date,
                    transactions.c.date <= end_date,
                )
            ).first()
            if exists:
                logger.debug("Template %s already has an instance this month", template["id"])
                return None
            row = conn.execute(
                insert(transactions)
                .values(**instance_values(template, trigger_date(recurring_day, today)))
                .returning(*transactions.c)
            ).mappings().first()

        logger.info(
            "Created recurring instance %s from template %s on %s",
            row["id"],
            template["id"],
            row["date"].isoformat(),
        )
        return row

    def cancel_series(self, user_id: int, recurring_id: str, delete_all: bool = False) -> int:
        series_filter = (
            transactions.c.user_id == user_id,
            transactions.c.recurring_id == recurring_id,
        )
        if not delete_all:
            with self.engine.begin() as conn:
                conn.execute(delete(transactions).where(*series_filter, transactions.c.date.is_(None)))
                result = conn.execute(
                    update(transactions)
                    .where(*series_filter)
                    .values(is_recurring=False, recurring_id=None, recurring_day=None)
                )
            logger.info("Stopped recurring series %s; %s instances kept", recurring_id, result.rowcount)
            return result.rowcount

        with self.engine.begin() as conn:
            goal_ids = conn.execute(
                select(transactions.c.goal_id)
                .where(*series_filter, transactions.c.goal_id.isnot(None))
                .distinct()
            ).scalars().all()
            result = conn.execute(delete(transactions).where(*series_filter))

        for goal_id in goal_ids:
            self.goal_engine.recompute_by_id(goal_id)
        self.budget_engine.reconcile(user_id)
        logger.info("Deleted recurring series %s (%s transactions)", recurring_id, result.rowcount)
        return result.rowcount
