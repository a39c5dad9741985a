from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine

from fintrack.settings import DEFAULT_BASE_CURRENCY, get_database_url

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("is_banned", Boolean, nullable=False, default=False),
    Column("is_admin", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", String(500)),
    Column("target_original_amount", Numeric(18, 2), nullable=False),
    Column("target_currency", String(3), nullable=False, default=DEFAULT_BASE_CURRENCY),
    Column("target_base_amount", Numeric(18, 2), nullable=False),
    Column("creation_exchange_rate", Numeric(18, 8), nullable=False, default=1),
    Column("current_base_amount", Numeric(18, 2), nullable=False, default=0),
    Column("target_date", Date, nullable=False),
    Column("status", String(20), nullable=False, default="in_progress"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("category", String(255), nullable=False),
    # NULL marks a recurring template
    Column("date", Date),
    Column("currency", String(3), nullable=False, default=DEFAULT_BASE_CURRENCY),
    Column("exchange_rate", Numeric(18, 8), nullable=False, default=1),
    Column("note", String(500)),
    Column("goal_id", Integer, ForeignKey("goals.id")),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("recurring_id", String(64), index=True),
    Column("recurring_day", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("month", Integer, nullable=False),
    Column("year", Integer, nullable=False),
    Column("original_amount", Numeric(18, 2), nullable=False, default=0),
    Column("original_currency", String(3), nullable=False, default=DEFAULT_BASE_CURRENCY),
    Column("total_amount", Numeric(18, 2), nullable=False),
    Column("exchange_rate", Numeric(18, 8), nullable=False, default=1),
    Column("alert_level", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "month", "year", name="uq_budgets_user_period"),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("category", String(255), nullable=False),
    Column("original_amount", Numeric(18, 2), nullable=False, default=0),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("alert_level", Integer, nullable=False, default=0),
    UniqueConstraint("budget_id", "category", name="uq_budget_categories_budget_category"),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(50), nullable=False),
    Column("message", String(500), nullable=False),
    Column("link", String(255)),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("admin_id", Integer, nullable=False),
    Column("action", String(100), nullable=False),
    Column("target_type", String(50), nullable=False),
    Column("target_id", Integer, nullable=False),
    Column("reason", String(500), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def create_db_engine(database_url: str | None = None) -> Engine:
    url = database_url or get_database_url()
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
