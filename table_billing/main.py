from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from table_billing import calculators, operations
from table_billing.config import settings
from table_billing.db import SessionLocal
from table_billing.domain import SaleRecord, TableState, TableType
from table_billing.errors import (
    InvalidTableOperation,
    SaleNotFoundError,
    TableBillingError,
    TableNotFoundError,
)
from table_billing.ledger import SqlTableLedger
from table_billing.logging_setup import configure_logging
from table_billing.models import Sale
from table_billing.reconciler import TableReconciler

configure_logging(settings)

app = FastAPI(title="Table Billing")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _http_error(exc: TableBillingError) -> HTTPException:
    if isinstance(exc, TableNotFoundError):
        return HTTPException(status_code=404, detail="table not found")
    if isinstance(exc, SaleNotFoundError):
        return HTTPException(status_code=404, detail="sale not found")
    if isinstance(exc, InvalidTableOperation):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _table_data(state: TableState) -> dict:
    return {
        "table_id": state.id,
        "name": state.name,
        "type": state.type.value,
        "is_active": state.is_active,
        "open_time": _isoformat(state.open_time),
        "close_time": _isoformat(state.close_time),
        "hourly_rate": state.hourly_rate,
        "hourly_total": state.hourly_total,
        "sales_total": state.sales_total,
        "check_total": state.check_total,
    }


def _sale_data(sale: Sale) -> dict:
    record = SaleRecord.from_row(sale)
    return {
        "sale_id": sale.id,
        "table_id": sale.table_id,
        "sale_total": record.sale_total,
        "items": sale.items or [],
        "is_paid": sale.is_paid,
        "is_credit": sale.is_credit,
        "sold_at": sale.sold_at.isoformat() if sale.sold_at else None,
        "paid_at": sale.paid_at.isoformat() if sale.paid_at else None,
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class TableCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Pool 1", "type": "hourly", "hourly_rate": "40.00"}
        }
    }
    name: str
    type: TableType
    hourly_rate: Optional[Decimal] = Field(default=None, ge=0)
    table_id: Optional[str] = None


@app.post("/api/v1/tables", tags=["Tables"])
def create_table(payload: TableCreate, db: Session = Depends(get_db)) -> dict:
    try:
        state = operations.create_table(
            db,
            name=payload.name,
            table_type=payload.type,
            hourly_rate=payload.hourly_rate,
            table_id=payload.table_id,
        )
    except TableBillingError as exc:
        raise _http_error(exc)
    return {"data": _table_data(state), "meta": _meta()}


@app.post("/api/v1/tables/instant:ensure", tags=["Tables"])
def ensure_instant_table(db: Session = Depends(get_db)) -> dict:
    state = operations.ensure_instant_table(db)
    return {"data": _table_data(state), "meta": _meta()}


@app.get("/api/v1/tables", tags=["Tables"])
def list_tables(
    type: Optional[TableType] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    ledger = SqlTableLedger(db)
    table_ids = ledger.list_table_ids(type)
    states = TableReconciler(ledger).refresh_tables(table_ids)
    warnings = []
    if len(states) < len(table_ids):
        warnings.append(f"{len(table_ids) - len(states)} table(s) could not be refreshed")
    if is_active is not None:
        states = [state for state in states if state.is_active == is_active]
    return {"data": [_table_data(state) for state in states], "meta": _meta(warnings=warnings)}


@app.get("/api/v1/tables/{table_id}", tags=["Tables"])
def get_table(table_id: str, db: Session = Depends(get_db)) -> dict:
    state = TableReconciler(SqlTableLedger(db)).get_table_with_totals(table_id)
    if state is None:
        raise HTTPException(status_code=404, detail="table not found")
    return {"data": _table_data(state), "meta": _meta()}


@app.post("/api/v1/tables/{table_id}:sync", tags=["Tables"])
def sync_table(table_id: str, db: Session = Depends(get_db)) -> dict:
    ledger = SqlTableLedger(db)
    table = ledger.fetch_table(table_id)
    if table is None:
        raise HTTPException(status_code=404, detail="table not found")
    state = TableReconciler(ledger).sync_and_auto_close(table)
    ledger.save_table(state)
    db.commit()
    return {"data": _table_data(state), "meta": _meta()}


@app.get("/api/v1/tables/{table_id}/estimate", tags=["Tables"])
def estimate_table(table_id: str, db: Session = Depends(get_db)) -> dict:
    table = SqlTableLedger(db).fetch_table(table_id)
    if table is None:
        raise HTTPException(status_code=404, detail="table not found")
    now = _now()
    hours_used = (
        calculators.hours_elapsed(table.open_time, now)
        if table.type is TableType.HOURLY and table.close_time is None
        else calculators.hours_between(table.open_time, table.close_time)
    )
    return {
        "data": {
            "table_id": table.id,
            "hours_used": hours_used,
            "hourly_total": calculators.hourly_charge(table, now),
            "sales_total": table.sales_total,
            "check_total": calculators.check_total(table, now),
            "as_of": now.isoformat(),
        },
        "meta": _meta(warnings=["estimate uses the stored sales_total"]),
    }


@app.post("/api/v1/tables/{table_id}:open", tags=["Table Sessions"])
def open_table(table_id: str, db: Session = Depends(get_db)) -> dict:
    try:
        state = operations.open_session(db, table_id)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {"data": _table_data(state), "meta": _meta()}


@app.post("/api/v1/tables/{table_id}:close", tags=["Table Sessions"])
def close_table(table_id: str, db: Session = Depends(get_db)) -> dict:
    try:
        state = operations.close_session(db, table_id)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {"data": _table_data(state), "meta": _meta()}


class TableSettle(BaseModel):
    model_config = {"json_schema_extra": {"example": {"is_credit": False}}}
    is_credit: bool = False


@app.post("/api/v1/tables/{table_id}:settle", tags=["Table Sessions"])
def settle_table(
    table_id: str, payload: Optional[TableSettle] = None, db: Session = Depends(get_db)
) -> dict:
    is_credit = payload.is_credit if payload is not None else False
    try:
        state = operations.settle_table(db, table_id, is_credit=is_credit)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {"data": _table_data(state), "meta": _meta()}


@app.post("/api/v1/tables/{table_id}:cancel", tags=["Table Sessions"])
def cancel_table(table_id: str, db: Session = Depends(get_db)) -> dict:
    try:
        state = operations.cancel_table(db, table_id)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {"data": _table_data(state), "meta": _meta()}


@app.get("/api/v1/tables/{table_id}/sessions", tags=["Table Sessions"])
def list_table_sessions(table_id: str, db: Session = Depends(get_db)) -> dict:
    try:
        sessions = operations.list_hourly_sessions(db, table_id)
    except TableBillingError as exc:
        raise _http_error(exc)
    data = [
        {
            "session_id": session.id,
            "open_time": session.open_time.isoformat(),
            "close_time": session.close_time.isoformat(),
            "hours_used": session.hours_used,
            "hourly_total": session.hourly_total,
            "paid_at": session.paid_at.isoformat(),
            "is_credit": session.is_credit,
        }
        for session in sessions
    ]
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/tables/{table_id}/daily-total", tags=["Table Sessions"])
def get_daily_total(
    table_id: str,
    day: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    target_day = day or _now().date()
    try:
        total = operations.instant_daily_total(db, table_id, target_day)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {
        "data": {"table_id": table_id, "day": target_day.isoformat(), "total": total},
        "meta": _meta(),
    }


class SaleCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "sale_total": "15.00",
                "items": [{"name": "Tea", "price": "5.00", "amount": 3}],
            }
        }
    }
    sale_total: Decimal = Field(ge=0)
    items: Optional[list[dict]] = None


@app.post("/api/v1/tables/{table_id}/sales", tags=["Sales"])
def create_sale(table_id: str, payload: SaleCreate, db: Session = Depends(get_db)) -> dict:
    try:
        sale, state = operations.add_sale(db, table_id, payload.sale_total, items=payload.items)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {
        "data": {"sale_id": sale.id, "is_paid": sale.is_paid, "table": _table_data(state)},
        "meta": _meta(),
    }


@app.get("/api/v1/tables/{table_id}/sales", tags=["Sales"])
def list_table_sales(
    table_id: str,
    unpaid: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict:
    if SqlTableLedger(db).fetch_table(table_id) is None:
        raise HTTPException(status_code=404, detail="table not found")
    query = select(Sale).where(Sale.table_id == table_id)
    if unpaid:
        query = query.where(Sale.is_paid.is_(False))
    sales = db.scalars(query.order_by(Sale.id)).all()
    return {"data": [_sale_data(sale) for sale in sales], "meta": _meta()}


@app.post("/api/v1/sales/{sale_id}:pay", tags=["Sales"])
def pay_sale(sale_id: int, db: Session = Depends(get_db)) -> dict:
    try:
        sale, state = operations.pay_sale(db, sale_id)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {
        "data": {"sale_id": sale.id, "is_paid": sale.is_paid, "table": _table_data(state)},
        "meta": _meta(),
    }


@app.delete("/api/v1/sales/{sale_id}", tags=["Sales"])
def delete_sale(sale_id: int, db: Session = Depends(get_db)) -> dict:
    try:
        state = operations.delete_sale(db, sale_id)
    except TableBillingError as exc:
        raise _http_error(exc)
    return {"data": {"sale_id": sale_id, "deleted": True, "table": _table_data(state)}, "meta": _meta()}
