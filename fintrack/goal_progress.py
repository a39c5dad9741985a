from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from fintrack.database import goals, transactions

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DAYS_PER_WEEK = Decimal("7")
DAYS_PER_MONTH = Decimal("365.25") / Decimal("12")

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
GOAL_STATUSES = {IN_PROGRESS, COMPLETED, FAILED}

# Only money put aside as an expense counts as saved toward a goal.
GOAL_CONTRIBUTION_TYPES = {"expense"}


@dataclass(frozen=True)
class GoalContribution:
    amount: Decimal
    type: str
    date: Optional[date]
    exchange_rate: Decimal = Decimal("1")


@dataclass(frozen=True)
class SavingsPlan:
    recommended_daily: Decimal
    recommended_weekly: Decimal
    recommended_monthly: Decimal
    days_remaining: int


def counts_toward_goal(txn_type: str) -> bool:
    return txn_type.strip().lower() in GOAL_CONTRIBUTION_TYPES


def sum_contributions(contributions: Iterable[GoalContribution]) -> Decimal:
    """Base-currency total saved toward a goal, never below zero."""
    total = ZERO
    for item in contributions:
        if item.date is None or not counts_toward_goal(item.type):
            continue
        total += _coerce_amount(item.amount) * _coerce_amount(item.exchange_rate or 1)
    return max(total, ZERO)


def derive_goal_status(
    current_base_amount: Decimal,
    target_base_amount: Decimal,
    target_date: Optional[date],
    today: date,
) -> str:
    if _coerce_amount(current_base_amount) >= _coerce_amount(target_base_amount):
        return COMPLETED
    if target_date is not None and target_date < today:
        return FAILED
    return IN_PROGRESS


def progress_percent(current_base_amount: Decimal, target_base_amount: Decimal) -> Decimal:
    target = _coerce_amount(target_base_amount)
    if target <= ZERO:
        return ZERO
    return min(_coerce_amount(current_base_amount) / target * HUNDRED, HUNDRED)


def savings_plan(remaining_base_amount: Decimal, target_date: date, today: date) -> SavingsPlan:
    remaining = _coerce_amount(remaining_base_amount)
    days_remaining = (target_date - today).days
    if days_remaining <= 0 or remaining <= ZERO:
        return SavingsPlan(
            recommended_daily=ZERO,
            recommended_weekly=ZERO,
            recommended_monthly=ZERO,
            days_remaining=max(days_remaining, 0),
        )
    days = Decimal(days_remaining)
    return SavingsPlan(
        recommended_daily=remaining / days,
        recommended_weekly=remaining / (days / DAYS_PER_WEEK),
        recommended_monthly=remaining / (days / DAYS_PER_MONTH),
        days_remaining=days_remaining,
    )


class GoalProgressEngine:
    """Derives goal progress and status from linked transactions.

    ``recompute_by_id``/``recompute_goal`` rebuild the amount from every linked
    transaction and are the authority after edits and deletes.
    ``apply_contribution`` adds a single new transaction and is only used
    for append-only writes such as the recurring sweep.
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = datetime.now) -> None:
        self.engine = engine
        self.clock = clock

    def recompute_by_id(self, goal_id: int) -> str | None:
        with self.engine.begin() as conn:
            goal = conn.execute(select(goals).where(goals.c.id == goal_id)).mappings().first()
        if goal is None:
            logger.info("Goal %s not found; nothing to recompute", goal_id)
            return None
        return self.recompute_goal(goal)

    def recompute_goal(self, goal: Mapping) -> str:
        goal_id = goal["id"]
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(
                    transactions.c.amount,
                    transactions.c.type,
                    transactions.c.date,
                    transactions.c.exchange_rate,
                ).where(
                    transactions.c.goal_id == goal_id,
                    transactions.c.date.isnot(None),
                )
            ).mappings().all()
            current = sum_contributions(
                GoalContribution(
                    amount=row["amount"],
                    type=row["type"],
                    date=row["date"],
                    exchange_rate=row["exchange_rate"],
                )
                for row in rows
            )
            status = derive_goal_status(
                current,
                _goal_target(goal),
                goal["target_date"],
                self.clock().date(),
            )
            conn.execute(
                update(goals)
                .where(goals.c.id == goal_id)
                .values(current_base_amount=current, status=status)
            )
        logger.info("Recalculated goal %s: %s (%s)", goal_id, current, status)
        return status

    def apply_contribution(self, transaction: Mapping) -> None:
        goal_id = transaction.get("goal_id")
        if goal_id is None or transaction.get("date") is None:
            return
        if not counts_toward_goal(transaction["type"]):
            return
        base_amount = _coerce_amount(transaction["amount"]) * _coerce_amount(
            transaction.get("exchange_rate") or 1
        )
        if base_amount == ZERO:
            return

        with self.engine.begin() as conn:
            result = conn.execute(
                update(goals)
                .where(goals.c.id == goal_id)
                .values(current_base_amount=goals.c.current_base_amount + base_amount)
            )
            if result.rowcount == 0:
                logger.info("Goal %s not found; contribution skipped", goal_id)
                return
            goal = conn.execute(select(goals).where(goals.c.id == goal_id)).mappings().first()
            status = derive_goal_status(
                goal["current_base_amount"],
                _goal_target(goal),
                goal["target_date"],
                self.clock().date(),
            )
            if status != goal["status"]:
                conn.execute(update(goals).where(goals.c.id == goal_id).values(status=status))
        logger.info("Added %s to goal %s", base_amount, goal_id)

    def sweep_overdue(self) -> int:
        today = self.clock().date()
        with self.engine.begin() as conn:
            overdue = conn.execute(
                select(goals).where(
                    goals.c.status == IN_PROGRESS,
                    goals.c.target_date < today,
                )
            ).mappings().all()

        failed = 0
        for goal in overdue:
            try:
                status = self.recompute_goal(goal)
            except Exception:
                logger.exception("Goal expiry check failed for goal %s", goal["id"])
                continue
            if status == FAILED:
                failed += 1
        logger.info("Goal expiry scan marked %s goals as failed", failed)
        return failed


def _goal_target(goal: Mapping) -> Decimal:
    target = goal.get("target_base_amount")
    if target is None:
        target = goal["target_original_amount"]
    return _coerce_amount(target)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
