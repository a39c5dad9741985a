from __future__ import annotations

from dataclasses import dataclass
import datetime as dt
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Callable

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from fintrack.budget_engine import BudgetAlertEngine, BudgetSummary, ScopeEvaluation
from fintrack.currency_conversion import (
    CurrencyConverter,
    ServiceUnavailable,
    build_converter_from_env,
    normalize_currency,
)
from fintrack.database import create_db_engine, init_db
from fintrack.goal_progress import GoalProgressEngine
from fintrack.ledger import (
    AdminService,
    BudgetService,
    CategoryBudgetInput,
    GoalInput,
    GoalService,
    NotFoundError,
    TransactionInput,
    TransactionService,
    UserBannedError,
    UserService,
    validate_category,
    validate_transaction_type,
)
from fintrack.notifications import Broadcaster, NotificationSink
from fintrack.recurring_scheduler import RecurringTransactionScheduler, validate_recurring_day
from fintrack.scheduler import DailyJob, DailyScheduler
from fintrack.settings import get_frontend_origin, scheduler_enabled

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: Engine
    converter: CurrencyConverter
    sink: NotificationSink
    budget_engine: BudgetAlertEngine
    goal_engine: GoalProgressEngine
    recurring: RecurringTransactionScheduler
    users: UserService
    transactions: TransactionService
    budgets: BudgetService
    goals: GoalService
    admin: AdminService
    scheduler: DailyScheduler


def build_services(
    engine: Engine,
    converter: CurrencyConverter,
    broadcast: Broadcaster | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Services:
    sink = NotificationSink(engine, broadcast=broadcast)
    budget_engine = BudgetAlertEngine(engine, sink, clock=clock)
    goal_engine = GoalProgressEngine(engine, clock=clock)
    recurring = RecurringTransactionScheduler(engine, goal_engine, budget_engine, clock=clock)
    transaction_service = TransactionService(
        engine, converter, goal_engine, budget_engine, recurring, clock=clock
    )
    goal_service = GoalService(engine, converter, goal_engine, clock=clock)
    scheduler = DailyScheduler(
        [
            DailyJob("goal_expiry", 0, 0, goal_engine.sweep_overdue),
            DailyJob("budget_check", 0, 30, budget_engine.sweep),
            DailyJob("recurring", 8, 0, recurring.sweep),
        ],
        clock=clock,
    )
    return Services(
        engine=engine,
        converter=converter,
        sink=sink,
        budget_engine=budget_engine,
        goal_engine=goal_engine,
        recurring=recurring,
        users=UserService(engine),
        transactions=transaction_service,
        budgets=BudgetService(engine, converter, budget_engine),
        goals=goal_service,
        admin=AdminService(engine, transaction_service, goal_service, goal_engine),
        scheduler=scheduler,
    )


class UserPayload(BaseModel):
    email: str


class UserResponse(BaseModel):
    id: int
    email: str
    is_banned: bool
    is_admin: bool
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    category: str
    date: dt.date
    currency: str | None = None
    note: str | None = None
    goal_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = validate_transaction_type(payload.type)
        payload.category = validate_category(payload.category)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.note = payload.note.strip() if payload.note else None
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class RecurringTransactionPayload(BaseModel):
    type: str
    amount: Decimal
    category: str
    recurring_day: int
    date: dt.date | None = None
    currency: str | None = None
    note: str | None = None
    goal_id: int | None = None

    @classmethod
    def validate_payload(
        cls, payload: "RecurringTransactionPayload"
    ) -> "RecurringTransactionPayload":
        payload.type = validate_transaction_type(payload.type)
        payload.category = validate_category(payload.category)
        payload.recurring_day = validate_recurring_day(payload.recurring_day)
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class TransactionUpdatePayload(BaseModel):
    type: str | None = None
    amount: Decimal | None = None
    category: str | None = None
    date: dt.date | None = None
    currency: str | None = None
    note: str | None = None
    goal_id: int | None = None


class AdminTransactionUpdatePayload(TransactionUpdatePayload):
    reason: str


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    category: str
    date: dt.date | None = None
    currency: str
    exchange_rate: Decimal
    note: str | None = None
    goal_id: int | None = None
    is_recurring: bool
    recurring_id: str | None = None
    recurring_day: int | None = None


class RecurringTransactionResponse(BaseModel):
    template: TransactionResponse
    first_transaction: TransactionResponse | None = None


class RecurringSeriesResponse(BaseModel):
    recurring_id: str
    recurring_day: int
    template: TransactionResponse
    instances: list[TransactionResponse] = []


class CategoryBudgetPayload(BaseModel):
    category: str
    amount: Decimal


class BudgetPayload(BaseModel):
    month: int
    year: int
    total_amount: Decimal
    currency: str | None = None
    categories: list[CategoryBudgetPayload] = []


class BudgetScopeResponse(BaseModel):
    category: str | None = None
    budget_amount: Decimal
    spent: Decimal
    remaining: Decimal
    percent: int
    alert_level: int


class BudgetResponse(BaseModel):
    budget_id: int
    month: int
    year: int
    original_amount: Decimal
    original_currency: str
    display_currency: str
    total: BudgetScopeResponse
    categories: list[BudgetScopeResponse]


class GoalPayload(BaseModel):
    name: str
    target_amount: Decimal
    target_date: date
    currency: str | None = None
    description: str | None = None


class GoalUpdatePayload(BaseModel):
    name: str | None = None
    description: str | None = None
    target_date: date | None = None


class SavingsPlanResponse(BaseModel):
    recommended_daily: Decimal
    recommended_weekly: Decimal
    recommended_monthly: Decimal
    days_remaining: int


class GoalResponse(BaseModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    target_original_amount: Decimal
    target_currency: str
    target_base_amount: Decimal
    creation_exchange_rate: Decimal
    current_base_amount: Decimal
    target_date: date
    status: str
    progress_percent: Decimal
    display_current_amount: Decimal
    display_remaining_amount: Decimal
    savings_plan: SavingsPlanResponse


class NotificationResponse(BaseModel):
    id: int
    type: str
    message: str
    link: str | None = None
    is_read: bool
    created_at: datetime | None = None


class ReasonPayload(BaseModel):
    reason: str


class BanPayload(ReasonPayload):
    banned: bool = True


class AuditLogResponse(BaseModel):
    id: int
    admin_id: int
    action: str
    target_type: str
    target_id: int
    reason: str
    created_at: datetime | None = None


router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(services: Services, x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    services.users.require_active_user(user_id)
    return user_id


def get_admin_id(services: Services, x_user_id: str | None) -> int:
    admin_id = get_user_id(services, x_user_id)
    if not services.users.get_user(admin_id)["is_admin"]:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return admin_id


def scope_response(scope: ScopeEvaluation, rate: Decimal) -> BudgetScopeResponse:
    return BudgetScopeResponse(
        category=scope.category,
        budget_amount=scope.budget_amount * rate,
        spent=scope.spent * rate,
        remaining=scope.remaining * rate,
        percent=scope.percent,
        alert_level=scope.stored_level,
    )


def budget_response(services: Services, summary: BudgetSummary, currency: str | None) -> BudgetResponse:
    base_currency = services.converter.base_currency
    display_currency = normalize_currency(currency) if currency else base_currency
    rate = services.converter.rate_from_base_to_target(base_currency, display_currency)
    return BudgetResponse(
        budget_id=summary.budget_id,
        month=summary.month,
        year=summary.year,
        original_amount=summary.original_amount,
        original_currency=summary.original_currency,
        display_currency=display_currency,
        total=scope_response(summary.total, rate),
        categories=[scope_response(scope, rate) for scope in summary.categories],
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/users", response_model=UserResponse)
def create_user(payload: UserPayload, request: Request) -> UserResponse:
    services = get_services(request)
    return UserResponse(**services.users.create_user(payload.email))


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    request: Request,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    type: str | None = Query(None),
    category: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    rows = services.transactions.list_transactions(
        user_id,
        start_date=start_date,
        end_date=end_date,
        txn_type=type,
        category=category,
    )
    return [TransactionResponse(**row) for row in rows]


@router.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    row = services.transactions.create_transaction(
        user_id,
        TransactionInput(
            type=payload.type,
            amount=payload.amount,
            category=payload.category,
            date=payload.date,
            currency=payload.currency,
            note=payload.note,
            goal_id=payload.goal_id,
        ),
    )
    return TransactionResponse(**row)


@router.post("/transactions/recurring", response_model=RecurringTransactionResponse)
def create_recurring_transaction(
    payload: RecurringTransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringTransactionResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    try:
        payload = RecurringTransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    template, first = services.transactions.create_recurring_transaction(
        user_id,
        TransactionInput(
            type=payload.type,
            amount=payload.amount,
            category=payload.category,
            date=payload.date,
            currency=payload.currency,
            note=payload.note,
            goal_id=payload.goal_id,
        ),
        payload.recurring_day,
    )
    return RecurringTransactionResponse(
        template=TransactionResponse(**template),
        first_transaction=TransactionResponse(**first) if first else None,
    )


@router.get("/transactions/recurring", response_model=list[RecurringSeriesResponse])
def list_recurring_transactions(
    request: Request,
    include_generated: bool = Query(False),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringSeriesResponse]:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    series = services.transactions.list_recurring(user_id, include_generated=include_generated)
    return [
        RecurringSeriesResponse(
            recurring_id=item["recurring_id"],
            recurring_day=item["recurring_day"],
            template=TransactionResponse(**item["template"]),
            instances=[TransactionResponse(**row) for row in item["instances"]],
        )
        for item in series
    ]


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    return TransactionResponse(**services.transactions.get_transaction(user_id, transaction_id))


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    changes = payload.model_dump(exclude_unset=True)
    row = services.transactions.update_transaction(user_id, transaction_id, changes)
    return TransactionResponse(**row)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    services.transactions.delete_transaction(user_id, transaction_id)
    return {"status": "deleted"}


@router.post("/transactions/{transaction_id}/cancel-recurring")
def cancel_recurring_transaction(
    transaction_id: int,
    request: Request,
    delete_all: bool = Query(False),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    affected = services.transactions.cancel_recurring(user_id, transaction_id, delete_all=delete_all)
    return {"status": "cancelled", "affected": affected, "deleted_history": delete_all}


@router.put("/budgets", response_model=BudgetResponse)
def set_budget(
    payload: BudgetPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    summary = services.budgets.set_budget(
        user_id,
        month=payload.month,
        year=payload.year,
        total_amount=payload.total_amount,
        currency=payload.currency,
        categories=[
            CategoryBudgetInput(category=item.category, amount=item.amount)
            for item in payload.categories
        ],
    )
    return budget_response(services, summary, None)


@router.get("/budgets", response_model=BudgetResponse)
def get_budget(
    request: Request,
    month: int = Query(...),
    year: int = Query(...),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    summary = services.budgets.get_summary(user_id, month, year)
    if summary is None:
        raise HTTPException(status_code=404, detail="Budget not found.")
    return budget_response(services, summary, currency)


@router.delete("/budgets")
def delete_budget(
    request: Request,
    month: int = Query(...),
    year: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    services.budgets.delete_budget(user_id, month, year)
    return {"status": "deleted"}


@router.get("/goals", response_model=list[GoalResponse])
def list_goals(
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[GoalResponse]:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    return [GoalResponse(**services.goals.describe(goal)) for goal in services.goals.list_goals(user_id)]


@router.post("/goals", response_model=GoalResponse)
def create_goal(
    payload: GoalPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    goal = services.goals.create_goal(
        user_id,
        GoalInput(
            name=payload.name,
            target_amount=payload.target_amount,
            target_date=payload.target_date,
            currency=payload.currency,
            description=payload.description,
        ),
    )
    return GoalResponse(**services.goals.describe(goal))


@router.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(
    goal_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    return GoalResponse(**services.goals.describe(services.goals.get_goal(user_id, goal_id)))


@router.put("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    goal = services.goals.update_goal(
        user_id,
        goal_id,
        name=payload.name,
        description=payload.description,
        target_date=payload.target_date,
    )
    return GoalResponse(**services.goals.describe(goal))


@router.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    services.goals.delete_goal(user_id, goal_id)
    return {"status": "deleted"}


@router.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    request: Request,
    unread_only: bool = Query(False),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[NotificationResponse]:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    rows = services.sink.list_for_user(user_id, unread_only=unread_only)
    return [NotificationResponse(**row) for row in rows]


@router.post("/notifications/{notification_id}/read")
def read_notification(
    notification_id: int,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    user_id = get_user_id(services, x_user_id)
    if not services.sink.mark_read(user_id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found.")
    return {"status": "read"}


@router.post("/admin/users/{user_id}/ban")
def ban_user(
    user_id: int,
    payload: BanPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    admin_id = get_admin_id(services, x_user_id)
    services.admin.ban_user(admin_id, user_id, payload.reason, banned=payload.banned)
    return {"status": "banned" if payload.banned else "unbanned"}


@router.delete("/admin/users/{user_id}")
def admin_delete_user(
    user_id: int,
    request: Request,
    reason: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    admin_id = get_admin_id(services, x_user_id)
    services.admin.delete_user(admin_id, user_id, reason)
    return {"status": "deleted"}


@router.put("/admin/transactions/{transaction_id}", response_model=TransactionResponse)
def admin_update_transaction(
    transaction_id: int,
    payload: AdminTransactionUpdatePayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    services = get_services(request)
    admin_id = get_admin_id(services, x_user_id)
    changes = payload.model_dump(exclude_unset=True)
    reason = changes.pop("reason")
    row = services.admin.update_transaction(admin_id, transaction_id, changes, reason)
    return TransactionResponse(**row)


@router.delete("/admin/transactions/{transaction_id}")
def admin_delete_transaction(
    transaction_id: int,
    request: Request,
    reason: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    admin_id = get_admin_id(services, x_user_id)
    services.admin.delete_transaction(admin_id, transaction_id, reason)
    return {"status": "deleted"}


@router.delete("/admin/goals/{goal_id}")
def admin_delete_goal(
    goal_id: int,
    request: Request,
    reason: str = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    admin_id = get_admin_id(services, x_user_id)
    services.admin.delete_goal(admin_id, goal_id, reason)
    return {"status": "deleted"}


@router.post("/admin/goals/{goal_id}/recompute")
def admin_recompute_goal(
    goal_id: int,
    payload: ReasonPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    admin_id = get_admin_id(services, x_user_id)
    status = services.admin.recompute_goal(admin_id, goal_id, payload.reason)
    return {"status": status}


@router.post("/admin/jobs/{job_name}")
def run_job(
    job_name: str,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    services = get_services(request)
    get_admin_id(services, x_user_id)
    result = services.scheduler.run_job(job_name)
    if isinstance(result, list):
        result = len(result)
    return {"job": job_name, "result": result}


@router.get("/admin/audit-logs", response_model=list[AuditLogResponse])
def list_audit_logs(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[AuditLogResponse]:
    services = get_services(request)
    get_admin_id(services, x_user_id)
    return [AuditLogResponse(**row) for row in services.admin.list_audit_logs(limit=limit)]


def create_app(services: Services | None = None) -> FastAPI:
    if services is None:
        services = build_services(create_db_engine(), build_converter_from_env())

    app = FastAPI(title="FinTrack API")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[get_frontend_origin()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UserBannedError)
    def banned_handler(request: Request, exc: UserBannedError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(ServiceUnavailable)
    def unavailable_handler(request: Request, exc: ServiceUnavailable) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Exchange rate service unavailable. Please retry later."},
        )

    @app.exception_handler(ValueError)
    def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.on_event("startup")
    def startup() -> None:
        init_db(services.engine)
        if scheduler_enabled():
            services.scheduler.start()
        else:
            logger.info("Background scheduler disabled; jobs run via /admin/jobs")

    @app.on_event("shutdown")
    def shutdown() -> None:
        services.scheduler.stop()

    app.include_router(router)
    return app


app = create_app()
