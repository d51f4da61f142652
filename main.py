import logging
from datetime import date
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from analytics import DEFAULT_NET_WORTH_PERIODS, DEFAULT_SPENDING_DAYS, AnalyticsService
from config import get_current_user_id, get_settings
from connections import ConnectionService, ConnectionValidationError, RateLimited
from database import SessionFactory, SessionLocal, engine
from finance import FinanceService, TransactionFilters
from models import Connection, Institution
from periods import Granularity, parse_granularity
from providers import ProviderClient, ProviderUnavailable
from reconciler import Reconciler
from resolver import Capabilities, detect_capabilities
from scheduler import SchedulerManager
from schemas import CategoryUpdateIn, ConnectionIn, WebhookEventIn
from sync import Dispatch, fan_out

logger = logging.getLogger(__name__)

app = FastAPI(title="finsync")

scheduler_manager = SchedulerManager()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> SessionFactory:
    return SessionLocal


def get_provider_client() -> ProviderClient:
    return scheduler_manager.client


def get_dispatch() -> Dispatch:
    return scheduler_manager.dispatch


def get_capabilities(request: Request) -> Capabilities:
    capabilities = getattr(request.app.state, "capabilities", None)
    if capabilities is None:
        capabilities = detect_capabilities(engine)
        request.app.state.capabilities = capabilities
    return capabilities


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    if x_user_id is None or not x_user_id.strip():
        return get_current_user_id()
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header") from exc
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header")
    return user_id


@app.on_event("startup")
def startup_event():
    app.state.capabilities = detect_capabilities(engine)
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def granularity_from_request(value: Optional[str], default: Granularity) -> Granularity:
    try:
        return parse_granularity(value, default)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def read_or_empty(db: Session, fn: Callable[[], Any], empty: Any) -> Any:
    try:
        return fn()
    except SQLAlchemyError:
        db.rollback()
        logger.error("read_failed: returning empty result", exc_info=True)
        return empty


def provider_error(exc: ProviderUnavailable) -> HTTPException:
    return HTTPException(status_code=502, detail=str(exc))


def connection_out(connection: Connection) -> dict:
    institution = connection.institution
    return {
        "id": connection.id,
        "provider": connection.provider,
        "item_id": connection.external_item_id,
        "status": connection.status.value,
        "institution": institution.name if institution else None,
        "institution_logo": institution.logo_url if institution else None,
        "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "last_sync_status": (
            connection.last_sync_status.value if connection.last_sync_status else None
        ),
        "last_error": connection.last_error,
        "created_at": connection.created_at.isoformat() if connection.created_at else None,
    }


# -- connections -----------------------------------------------------------


@app.get("/api/connections")
def api_connections(
    db: Session = Depends(get_db),
    client: ProviderClient = Depends(get_provider_client),
    user_id: int = Depends(get_user_id),
):
    service = ConnectionService(db, client, user_id)
    return read_or_empty(db, lambda: [connection_out(c) for c in service.list_all()], [])


@app.post("/api/connections", status_code=201)
def api_create_connection(
    payload: ConnectionIn,
    db: Session = Depends(get_db),
    client: ProviderClient = Depends(get_provider_client),
    dispatch: Dispatch = Depends(get_dispatch),
    factory: SessionFactory = Depends(get_session_factory),
    user_id: int = Depends(get_user_id),
):
    service = ConnectionService(db, client, user_id, factory=factory)
    try:
        connection = service.create(payload.item_id, payload.provider)
    except ConnectionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderUnavailable as exc:
        raise provider_error(exc) from exc
    body = connection_out(connection)
    body["sync_dispatched"] = 0
    if connection.status.value == "connected":
        body["sync_dispatched"] = len(fan_out(connection, client, dispatch, factory))
    return body


@app.delete("/api/connections/{connection_id}")
def api_delete_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    client: ProviderClient = Depends(get_provider_client),
    user_id: int = Depends(get_user_id),
):
    try:
        ConnectionService(db, client, user_id).delete(connection_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.post("/api/connections/{connection_id}/sync")
def api_sync_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    client: ProviderClient = Depends(get_provider_client),
    user_id: int = Depends(get_user_id),
):
    try:
        connection = ConnectionService(db, client, user_id).request_sync(connection_id)
    except RateLimited as exc:
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "retry_after_secs": exc.retry_after_secs},
            headers={"Retry-After": str(exc.retry_after_secs)},
        )
    except ProviderUnavailable as exc:
        raise provider_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return connection_out(connection)


# -- institutions ----------------------------------------------------------


@app.get("/api/institutions")
def api_institutions(db: Session = Depends(get_db)):
    def load():
        stmt = select(Institution).where(Institution.enabled.is_(True)).order_by(Institution.name)
        return [
            {
                "id": inst.id,
                "provider": inst.provider,
                "external_id": inst.external_id,
                "name": inst.name,
                "logo_url": inst.logo_url,
            }
            for inst in db.scalars(stmt).all()
        ]

    return read_or_empty(db, load, [])


@app.post("/api/institutions/refresh")
def api_refresh_institutions(
    db: Session = Depends(get_db),
    client: ProviderClient = Depends(get_provider_client),
    user_id: int = Depends(get_user_id),
):
    try:
        count = Reconciler(db, client, user_id).sync_institutions()
    except ProviderUnavailable as exc:
        raise provider_error(exc) from exc
    return {"synced": count}


# -- webhook ---------------------------------------------------------------


@app.post("/api/webhooks/provider")
def api_provider_webhook(
    event: WebhookEventIn,
    db: Session = Depends(get_db),
    client: ProviderClient = Depends(get_provider_client),
    dispatch: Dispatch = Depends(get_dispatch),
    factory: SessionFactory = Depends(get_session_factory),
):
    service = ConnectionService(db, client, factory=factory)
    try:
        outcome = service.handle_webhook(event, dispatch)
    except ProviderUnavailable as exc:
        raise provider_error(exc) from exc
    return {
        "ok": True,
        "handled": outcome.handled,
        "status": outcome.status.value if outcome.status else None,
        "dispatched": outcome.dispatched,
    }


# -- ledger reads ----------------------------------------------------------


@app.get("/api/accounts")
def api_accounts(
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    return read_or_empty(
        db,
        lambda: FinanceService(db, capabilities, user_id).list_accounts(),
        {"total": 0.0, "institutions": []},
    )


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    params = request.query_params
    try:
        filters = TransactionFilters(
            start=date.fromisoformat(params["start"]) if params.get("start") else None,
            end=date.fromisoformat(params["end"]) if params.get("end") else None,
            account_id=int(params["account_id"]) if params.get("account_id") else None,
            category=params.get("category") or None,
            query=params.get("q") or None,
        )
        page = max(int(params.get("page", "1")), 1)
        limit = min(max(int(params.get("limit", "50")), 1), 200)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    offset = (page - 1) * limit
    return read_or_empty(
        db,
        lambda: FinanceService(db, capabilities, user_id).list_transactions(
            filters, limit=limit, offset=offset
        ),
        {"items": [], "total": 0, "limit": limit, "offset": offset},
    )


@app.patch("/api/transactions/{transaction_id}/category")
def api_update_transaction_category(
    transaction_id: int,
    payload: CategoryUpdateIn,
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    service = FinanceService(db, capabilities, user_id)
    try:
        return service.update_transaction_category(transaction_id, payload.category)
    except ValueError as exc:
        status = 404 if "not found" in str(exc) else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc


@app.get("/api/investments")
def api_investments(
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    return read_or_empty(
        db,
        lambda: FinanceService(db, capabilities, user_id).list_investments(),
        {"total": 0.0, "holdings": [], "breakdown": []},
    )


@app.get("/api/cards")
def api_cards(
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    return read_or_empty(db, lambda: FinanceService(db, capabilities, user_id).list_cards(), [])


@app.get("/api/cards/{card_id}/invoices")
def api_card_invoices(
    card_id: int,
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    service = FinanceService(db, capabilities, user_id)
    try:
        return read_or_empty(db, lambda: service.list_card_invoices(card_id), [])
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# -- analytics -------------------------------------------------------------


@app.get("/api/analytics/net-worth")
def api_net_worth(
    granularity: Optional[str] = None,
    periods: int = DEFAULT_NET_WORTH_PERIODS,
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    gran = granularity_from_request(granularity, Granularity.monthly)
    if periods < 1 or periods > 120:
        raise HTTPException(status_code=400, detail="periods must be between 1 and 120")
    return read_or_empty(
        db,
        lambda: AnalyticsService(db, capabilities, user_id).get_net_worth_evolution(gran, periods),
        [],
    )


@app.get("/api/analytics/spending-by-category")
def api_spending_by_category(
    days: int = DEFAULT_SPENDING_DAYS,
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    if days < 1 or days > 366:
        raise HTTPException(status_code=400, detail="days must be between 1 and 366")
    return read_or_empty(
        db,
        lambda: AnalyticsService(db, capabilities, user_id).get_spending_by_category(days),
        [],
    )


@app.get("/api/analytics/revenue-vs-expenses")
def api_revenue_vs_expenses(
    granularity: Optional[str] = None,
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    gran = granularity_from_request(granularity, Granularity.monthly)
    return read_or_empty(
        db,
        lambda: AnalyticsService(db, capabilities, user_id).get_revenue_vs_expenses(gran),
        [],
    )


@app.get("/api/analytics/weekly-activity")
def api_weekly_activity(
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    return read_or_empty(
        db,
        lambda: AnalyticsService(db, capabilities, user_id).get_weekly_activity(),
        {"total_transactions": 0, "total_spent": 0.0, "daily_avg": 0.0, "by_day": []},
    )


@app.get("/api/analytics/summary")
def api_summary(
    db: Session = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    user_id: int = Depends(get_user_id),
):
    return read_or_empty(
        db,
        lambda: AnalyticsService(db, capabilities, user_id).get_summary(),
        {"net_worth": 0.0, "cash": 0.0, "investments": 0.0, "transactions_last_30_days": 0},
    )
