"""Explicit lifecycle actions on tables and their sales.

These are the mutations the reconciler never performs itself: opening and
closing hourly sessions, recording and settling sales, cancelling a tab.
Each action changes the stored rows, then re-runs reconciliation from
scratch and persists the result before committing.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from table_billing import calculators
from table_billing.config import settings
from table_billing.domain import ZERO, SaleRecord, TableState, TableType, parse_decimal, parse_timestamp
from table_billing.errors import InvalidTableOperation, SaleNotFoundError, TableNotFoundError
from table_billing.ledger import SqlTableLedger
from table_billing.models import HourlySession, Sale, VenueTable
from table_billing.reconciler import TableReconciler

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return _now()
    resolved = parse_timestamp(now)
    if resolved is None:
        raise InvalidTableOperation(f"unparseable timestamp {now!r}")
    return resolved.astimezone(timezone.utc)


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def _get_table_row(db: Session, table_id: str) -> VenueTable:
    row = db.get(VenueTable, table_id)
    if row is None:
        raise TableNotFoundError(table_id)
    return row


def _get_sale_row(db: Session, sale_id: int) -> Sale:
    sale = db.get(Sale, sale_id)
    if sale is None:
        raise SaleNotFoundError(sale_id)
    return sale


def _unpaid_sale_rows(db: Session, table_id: str) -> list[Sale]:
    return list(
        db.scalars(
            select(Sale).where(Sale.table_id == table_id, Sale.is_paid.is_(False)).order_by(Sale.id)
        ).all()
    )


def _is_session_open(row: VenueTable) -> bool:
    return bool(row.is_active and row.open_time is not None and row.close_time is None)


def _has_open_tab(row: VenueTable, unpaid: list[Sale]) -> bool:
    if row.table_type == TableType.HOURLY.value:
        if _is_session_open(row):
            return True
        # a closed session owes its frozen charge, even a zero one, until settled
        return bool(unpaid) or (row.close_time is not None and row.open_time is not None)
    return bool(row.is_active or unpaid)


def _freeze_amount(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal(1).scaleb(-settings.money_places), rounding=ROUND_HALF_UP)


def _resync(db: Session, table_id: str, now: datetime, auto_close: bool = False) -> TableState:
    ledger = SqlTableLedger(db)
    reconciler = TableReconciler(ledger)
    db.flush()
    table = ledger.fetch_table(table_id)
    if table is None:
        raise TableNotFoundError(table_id)
    if auto_close:
        state = reconciler.sync_and_auto_close(table, now)
    else:
        state = reconciler.sync_table_status(table, now)
    ledger.save_table(state)
    return state


def create_table(
    db: Session,
    name: str,
    table_type: TableType | str,
    hourly_rate: Any = None,
    table_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TableState:
    table_type = TableType(table_type)
    table_id = table_id or uuid4().hex
    if db.get(VenueTable, table_id) is not None:
        raise InvalidTableOperation(f"table {table_id!r} already exists")
    try:
        rate = parse_decimal(hourly_rate)
    except ValueError as exc:
        raise InvalidTableOperation(str(exc)) from exc
    if rate is not None and rate < 0:
        raise InvalidTableOperation("hourly_rate must not be negative")
    row = VenueTable(
        id=table_id,
        name=name,
        table_type=table_type.value,
        is_active=False,
        hourly_rate=rate if table_type is TableType.HOURLY else None,
        hourly_total=ZERO,
        sales_total=ZERO,
        check_total=ZERO,
        created_at=_resolve_now(now),
    )
    db.add(row)
    _commit(db)
    logger.info("Created %s table %s (%s)", table_type.value, table_id, name)
    return TableState.from_row(row)


def ensure_instant_table(db: Session) -> TableState:
    row = db.scalars(
        select(VenueTable).where(VenueTable.table_type == TableType.INSTANT.value).order_by(VenueTable.created_at)
    ).first()
    if row is not None:
        return TableState.from_row(row)
    return create_table(db, settings.instant_table_name, TableType.INSTANT)


def open_session(db: Session, table_id: str, now: Optional[datetime] = None) -> TableState:
    now = _resolve_now(now)
    row = _get_table_row(db, table_id)
    if row.table_type != TableType.HOURLY.value:
        raise InvalidTableOperation("only hourly tables have sessions to open")
    if _is_session_open(row):
        return TableState.from_row(row)

    if row.close_time is not None and row.open_time is not None:
        raise InvalidTableOperation("previous session must be settled before reopening")
    if row.close_time is not None:
        # leftovers from a cancelled session must not land on the new tab
        leftovers = _unpaid_sale_rows(db, table_id)
        if leftovers:
            logger.info(
                "Table %s was closed; deleting %d leftover unpaid sales before reopening",
                table_id,
                len(leftovers),
            )
        for sale in leftovers:
            db.delete(sale)

    row.is_active = True
    row.open_time = now
    row.close_time = None
    row.hourly_total = ZERO
    state = _resync(db, table_id, now)
    _commit(db)
    logger.info("Opened session on table %s at %s", table_id, now.isoformat())
    return state


def _close_row(row: VenueTable, now: datetime) -> None:
    table = TableState.from_row(row)
    hours_used = calculators.hours_between(table.open_time, now)
    row.hourly_total = _freeze_amount(hours_used * (table.hourly_rate or ZERO))
    row.close_time = now
    row.is_active = False


def close_session(db: Session, table_id: str, now: Optional[datetime] = None) -> TableState:
    """Stop the clock on an hourly table.

    The time charge is frozen into ``hourly_total``; unpaid sales stay on
    the tab until :func:`settle_table`.
    """
    now = _resolve_now(now)
    row = _get_table_row(db, table_id)
    if row.table_type != TableType.HOURLY.value:
        raise InvalidTableOperation("only hourly tables have sessions to close")
    if not _is_session_open(row):
        raise InvalidTableOperation("hourly table is not open")
    _close_row(row, now)
    state = _resync(db, table_id, now)
    _commit(db)
    logger.info("Closed session on table %s: hourly_total=%s", table_id, state.hourly_total)
    return state


def add_sale(
    db: Session,
    table_id: str,
    sale_total: Any,
    items: Optional[list[dict]] = None,
    now: Optional[datetime] = None,
) -> tuple[SaleRecord, TableState]:
    now = _resolve_now(now)
    row = _get_table_row(db, table_id)
    try:
        amount = parse_decimal(sale_total)
    except ValueError as exc:
        raise InvalidTableOperation(str(exc)) from exc
    if amount is None or amount < 0:
        raise InvalidTableOperation("sale_total must be a non-negative number")

    is_instant = row.table_type == TableType.INSTANT.value
    sale = Sale(
        table_id=table_id,
        sale_total=amount,
        items=items,
        is_paid=is_instant,
        is_credit=False,
        sold_at=now,
        paid_at=now if is_instant else None,
    )
    db.add(sale)
    state = _resync(db, table_id, now, auto_close=True)
    _commit(db)
    logger.info("Added sale %s of %s to table %s", sale.id, amount, table_id)
    return SaleRecord.from_row(sale), state


def pay_sale(db: Session, sale_id: int, now: Optional[datetime] = None) -> tuple[SaleRecord, TableState]:
    now = _resolve_now(now)
    sale = _get_sale_row(db, sale_id)
    if not sale.is_paid:
        sale.is_paid = True
        sale.paid_at = now
        logger.info("Marked sale %s paid", sale_id)
    state = _resync(db, sale.table_id, now, auto_close=True)
    _commit(db)
    return SaleRecord.from_row(sale), state


def delete_sale(db: Session, sale_id: int, now: Optional[datetime] = None) -> TableState:
    now = _resolve_now(now)
    sale = _get_sale_row(db, sale_id)
    table_id = sale.table_id
    db.delete(sale)
    state = _resync(db, table_id, now, auto_close=True)
    _commit(db)
    logger.info("Deleted sale %s from table %s", sale_id, table_id)
    return state


def settle_table(
    db: Session, table_id: str, now: Optional[datetime] = None, is_credit: bool = False
) -> TableState:
    """Take payment for everything a table owes and reset it."""
    now = _resolve_now(now)
    row = _get_table_row(db, table_id)
    unpaid = _unpaid_sale_rows(db, table_id)

    if not _has_open_tab(row, unpaid):
        raise InvalidTableOperation("table has nothing to settle")

    if row.table_type == TableType.HOURLY.value:
        if _is_session_open(row):
            _close_row(row, now)
        if row.open_time is not None:
            table = TableState.from_row(row)
            db.add(
                HourlySession(
                    table_id=table_id,
                    open_time=table.open_time,
                    close_time=table.close_time,
                    hours_used=calculators.hours_between(table.open_time, table.close_time),
                    hourly_total=table.hourly_total,
                    paid_at=now,
                    is_credit=is_credit,
                )
            )

    for sale in unpaid:
        sale.is_paid = True
        sale.is_credit = is_credit
        sale.paid_at = now

    row.is_active = False
    row.open_time = None
    row.hourly_total = ZERO
    state = _resync(db, table_id, now)
    _commit(db)
    logger.info(
        "Settled table %s (%d sales%s)", table_id, len(unpaid), ", on credit" if is_credit else ""
    )
    return state


def cancel_table(db: Session, table_id: str, now: Optional[datetime] = None) -> TableState:
    """Discard a tab: unpaid sales are deleted and no time is billed."""
    now = _resolve_now(now)
    row = _get_table_row(db, table_id)
    unpaid = _unpaid_sale_rows(db, table_id)
    if not _has_open_tab(row, unpaid):
        raise InvalidTableOperation("table has nothing to cancel")
    for sale in unpaid:
        db.delete(sale)
    if row.table_type == TableType.HOURLY.value:
        row.close_time = row.close_time or now
        row.open_time = None
        row.hourly_total = ZERO
    row.is_active = False
    state = _resync(db, table_id, now)
    _commit(db)
    logger.info("Cancelled table %s, discarded %d unpaid sales", table_id, len(unpaid))
    return state


def instant_daily_total(db: Session, table_id: str, day: date) -> Decimal:
    row = _get_table_row(db, table_id)
    if row.table_type != TableType.INSTANT.value:
        raise InvalidTableOperation("daily totals are kept for instant tables only")
    starts_at = datetime.combine(day, time.min, tzinfo=timezone.utc)
    ends_at = starts_at + timedelta(days=1)
    sales = db.scalars(
        select(Sale).where(
            Sale.table_id == table_id,
            Sale.is_paid.is_(True),
            Sale.paid_at >= starts_at,
            Sale.paid_at < ends_at,
        )
    ).all()
    return calculators.sum_sales(sales)


def list_hourly_sessions(db: Session, table_id: str) -> list[HourlySession]:
    _get_table_row(db, table_id)
    return list(
        db.scalars(
            select(HourlySession)
            .where(HourlySession.table_id == table_id)
            .order_by(HourlySession.close_time.desc(), HourlySession.id.desc())
        ).all()
    )
