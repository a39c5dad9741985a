from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from fintrack.currency_conversion import CurrencyConverter, StaticRateProvider
from fintrack.database import (
    budget_categories,
    budgets,
    goals,
    init_db,
    notifications,
    transactions,
    users,
)

TEST_RATES = {
    "USD": Decimal("1"),
    "VND": Decimal("25000"),
    "EUR": Decimal("0.5"),
}


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def make_converter(rates: dict | None = None) -> CurrencyConverter:
    return CurrencyConverter(StaticRateProvider(rates=rates or TEST_RATES), base_currency="VND")


def add_user(engine: Engine, email: str = "user@example.com", is_admin: bool = False) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(users).values(email=email, is_banned=False, is_admin=is_admin).returning(users.c.id)
        ).scalar_one()


def add_transaction(
    engine: Engine,
    user_id: int,
    amount: str | Decimal,
    on: date | None,
    type: str = "expense",
    category: str = "food",
    exchange_rate: str | Decimal = "1",
    currency: str = "VND",
    goal_id: int | None = None,
    recurring_id: str | None = None,
    recurring_day: int | None = None,
) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                type=type,
                amount=Decimal(amount),
                category=category,
                date=on,
                currency=currency,
                exchange_rate=Decimal(exchange_rate),
                goal_id=goal_id,
                is_recurring=recurring_id is not None,
                recurring_id=recurring_id,
                recurring_day=recurring_day,
            )
            .returning(transactions.c.id)
        ).scalar_one()


def add_budget(
    engine: Engine,
    user_id: int,
    month: int,
    year: int,
    total: str | Decimal,
    categories: dict[str, str] | None = None,
) -> int:
    with engine.begin() as conn:
        budget_id = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                month=month,
                year=year,
                original_amount=Decimal(total),
                original_currency="VND",
                total_amount=Decimal(total),
                exchange_rate=Decimal("1"),
                alert_level=0,
            )
            .returning(budgets.c.id)
        ).scalar_one()
        for name, amount in (categories or {}).items():
            conn.execute(
                insert(budget_categories).values(
                    budget_id=budget_id,
                    category=name,
                    original_amount=Decimal(amount),
                    amount=Decimal(amount),
                    alert_level=0,
                )
            )
    return budget_id


def add_goal(
    engine: Engine,
    user_id: int,
    target: str | Decimal,
    target_date: date,
    status: str = "in_progress",
) -> int:
    with engine.begin() as conn:
        return conn.execute(
            insert(goals)
            .values(
                user_id=user_id,
                name="Emergency fund",
                target_original_amount=Decimal(target),
                target_currency="VND",
                target_base_amount=Decimal(target),
                creation_exchange_rate=Decimal("1"),
                current_base_amount=Decimal("0"),
                target_date=target_date,
                status=status,
            )
            .returning(goals.c.id)
        ).scalar_one()


def fetch_goal(engine: Engine, goal_id: int) -> dict:
    with engine.begin() as conn:
        return dict(conn.execute(select(goals).where(goals.c.id == goal_id)).mappings().one())


def fetch_notifications(engine: Engine, user_id: int) -> list[dict]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(notifications).where(notifications.c.user_id == user_id).order_by(notifications.c.id)
        ).mappings().all()
    return [dict(row) for row in rows]


def fetch_alert_levels(engine: Engine, budget_id: int) -> tuple[int, dict[str, int]]:
    with engine.begin() as conn:
        total = conn.execute(select(budgets.c.alert_level).where(budgets.c.id == budget_id)).scalar_one()
        rows = conn.execute(
            select(budget_categories.c.category, budget_categories.c.alert_level).where(
                budget_categories.c.budget_id == budget_id
            )
        ).all()
    return total, {row.category: row.alert_level for row in rows}
