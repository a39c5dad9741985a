from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Connection, Engine

from fintrack.database import budget_categories, budgets, transactions
from fintrack.notifications import (
    BUDGET_CATEGORY_WARNING,
    BUDGET_WARNING,
    NotificationSink,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
THRESHOLDS = (100, 90, 80)
BUDGET_LINK = "/budget"


@dataclass(frozen=True)
class SpendEntry:
    amount: Decimal
    type: str
    date: Optional[date]
    category: Optional[str] = None
    exchange_rate: Decimal = Decimal("1")


@dataclass(frozen=True)
class ScopeEvaluation:
    budget_amount: Decimal
    spent: Decimal
    percent: int
    level: int
    stored_level: int
    category: Optional[str] = None
    row_id: Optional[int] = None

    @property
    def remaining(self) -> Decimal:
        return self.budget_amount - self.spent


@dataclass(frozen=True)
class BudgetSummary:
    budget_id: int
    user_id: int
    month: int
    year: int
    original_amount: Decimal
    original_currency: str
    total: ScopeEvaluation
    categories: list[ScopeEvaluation]


def threshold_level(percent: int) -> int:
    for threshold in THRESHOLDS:
        if percent >= threshold:
            return threshold
    return 0


def spend_percent(spent: Decimal, budget_amount: Decimal) -> int:
    if budget_amount <= ZERO:
        return 0
    ratio = _coerce_amount(spent) / _coerce_amount(budget_amount) * HUNDRED
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def evaluate_scope(
    budget_amount: Decimal,
    spent: Decimal,
    stored_level: int,
    category: Optional[str] = None,
    row_id: Optional[int] = None,
) -> ScopeEvaluation:
    budget_amount = _coerce_amount(budget_amount)
    percent = spend_percent(spent, budget_amount)
    return ScopeEvaluation(
        budget_amount=budget_amount,
        spent=spent,
        percent=percent,
        level=threshold_level(percent),
        stored_level=stored_level or 0,
        category=category,
        row_id=row_id,
    )


def sum_expenses(
    entries: Iterable[SpendEntry],
    start_date: date,
    end_date: date,
) -> tuple[Decimal, dict[str, Decimal]]:
    """Base-currency expense totals inside the period, overall and per category.

    Entries without a date are recurring templates and never count.
    """
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")
    total = ZERO
    per_category: dict[str, Decimal] = {}
    for entry in entries:
        if entry.date is None or not start_date <= entry.date <= end_date:
            continue
        if entry.type.strip().lower() != "expense":
            continue
        base_amount = _coerce_amount(entry.amount) * _coerce_amount(entry.exchange_rate or 1)
        total += base_amount
        key = entry.category or "uncategorized"
        per_category[key] = per_category.get(key, ZERO) + base_amount
    return total, per_category


class BudgetAlertEngine:
    """Keeps budget alert levels in line with the month's spending.

    A notification is sent only when a scope crosses a threshold upward.
    Falling back below a threshold lowers the stored level without a
    notification so that a later crossing alerts again.
    """

    def __init__(
        self,
        engine: Engine,
        sink: NotificationSink,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.engine = engine
        self.sink = sink
        self.clock = clock

    def reconcile(self, user_id: int) -> None:
        today = self.clock().date()
        summary = self.summarize(user_id, today.year, today.month)
        if summary is None:
            return

        self._apply(summary, summary.total)
        for scope in summary.categories:
            self._apply(summary, scope)

    def sweep(self) -> int:
        today = self.clock().date()
        with self.engine.begin() as conn:
            user_ids = conn.execute(
                select(budgets.c.user_id)
                .where(budgets.c.month == today.month, budgets.c.year == today.year)
                .distinct()
            ).scalars().all()

        logger.info("Budget sweep for %s/%s: %s budgets", today.month, today.year, len(user_ids))
        checked = 0
        for user_id in user_ids:
            try:
                self.reconcile(user_id)
            except Exception:
                logger.exception("Budget reconcile failed for user %s", user_id)
                continue
            checked += 1
        return checked

    def summarize(self, user_id: int, year: int, month: int) -> BudgetSummary | None:
        start_date, end_date = month_bounds(year, month)
        with self.engine.begin() as conn:
            budget = conn.execute(
                select(budgets).where(
                    budgets.c.user_id == user_id,
                    budgets.c.month == month,
                    budgets.c.year == year,
                )
            ).mappings().first()
            if budget is None:
                return None
            category_rows = conn.execute(
                select(budget_categories)
                .where(budget_categories.c.budget_id == budget["id"])
                .order_by(budget_categories.c.id)
            ).mappings().all()
            entries = self._load_expenses(conn, user_id, start_date, end_date)

        total_spent, spent_by_category = sum_expenses(entries, start_date, end_date)
        return BudgetSummary(
            budget_id=budget["id"],
            user_id=user_id,
            month=month,
            year=year,
            original_amount=_coerce_amount(budget["original_amount"]),
            original_currency=budget["original_currency"],
            total=evaluate_scope(budget["total_amount"], total_spent, budget["alert_level"]),
            categories=[
                evaluate_scope(
                    row["amount"],
                    spent_by_category.get(row["category"], ZERO),
                    row["alert_level"],
                    category=row["category"],
                    row_id=row["id"],
                )
                for row in category_rows
            ],
        )

    def _load_expenses(
        self, conn: Connection, user_id: int, start_date: date, end_date: date
    ) -> list[SpendEntry]:
        rows = conn.execute(
            select(
                transactions.c.amount,
                transactions.c.type,
                transactions.c.date,
                transactions.c.category,
                transactions.c.exchange_rate,
            ).where(
                transactions.c.user_id == user_id,
                transactions.c.type == "expense",
                transactions.c.date.isnot(None),
                transactions.c.date >= start_date,
                transactions.c.date <= end_date,
            )
        ).mappings().all()
        return [
            SpendEntry(
                amount=row["amount"],
                type=row["type"],
                date=row["date"],
                category=row["category"],
                exchange_rate=row["exchange_rate"],
            )
            for row in rows
        ]

    def _apply(self, summary: BudgetSummary, scope: ScopeEvaluation) -> None:
        if scope.level == scope.stored_level:
            return

        with self.engine.begin() as conn:
            if scope.category is None:
                conn.execute(
                    update(budgets)
                    .where(budgets.c.id == summary.budget_id)
                    .values(alert_level=scope.level)
                )
            else:
                conn.execute(
                    update(budget_categories)
                    .where(budget_categories.c.id == scope.row_id)
                    .values(alert_level=scope.level)
                )

        label = scope.category or "total"
        if scope.level < scope.stored_level:
            logger.info(
                "Budget alert for user %s (%s) lowered from %s%% to %s%%",
                summary.user_id,
                label,
                scope.stored_level,
                scope.level,
            )
            return

        if scope.category is None:
            notification_type = BUDGET_WARNING
            message = (
                f"Warning: you have spent {scope.percent}% of your total budget "
                f"for {summary.month}/{summary.year}."
            )
        else:
            notification_type = BUDGET_CATEGORY_WARNING
            message = f'Category "{scope.category}" has used {scope.percent}% of its budget.'

        try:
            record = self.sink.create(summary.user_id, notification_type, message, BUDGET_LINK)
        except Exception:
            logger.exception("Failed to send budget alert to user %s (%s)", summary.user_id, label)
            return
        if record is None:
            logger.info(
                "Budget alert for user %s (%s) raised to %s%%; identical unread alert already pending",
                summary.user_id,
                label,
                scope.level,
            )
            return
        logger.info(
            "Budget alert for user %s (%s) raised to %s%%", summary.user_id, label, scope.level
        )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
