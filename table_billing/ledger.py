"""Data-access contract between the billing core and the table store."""

from __future__ import annotations

from typing import Any, ContextManager, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from table_billing.domain import SaleRecord, TableState, TableType
from table_billing.errors import TableNotFoundError
from table_billing.models import Sale, VenueTable


class TableLedger(Protocol):
    def fetch_table(self, table_id: str) -> Optional[TableState]:
        ...

    def fetch_unpaid_sales(self, table_id: str) -> Sequence[SaleRecord]:
        ...

    def savepoint(self) -> ContextManager[Any]:
        """Scope one table's reads so a failure there leaves the rest usable."""
        ...


class SqlTableLedger:
    """:class:`TableLedger` backed by a SQLAlchemy session.

    Reads are not cached; every call hits the session so a reconciliation
    always sees the ledger as it is now. Writes are flushed but left for
    the caller to commit.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def fetch_table(self, table_id: str) -> Optional[TableState]:
        row = self.db.get(VenueTable, table_id)
        if row is None:
            return None
        return TableState.from_row(row)

    def fetch_unpaid_sales(self, table_id: str) -> list[SaleRecord]:
        rows = self.db.scalars(
            select(Sale)
            .where(Sale.table_id == table_id, Sale.is_paid.is_(False))
            .order_by(Sale.id)
        ).all()
        return [SaleRecord.from_row(row) for row in rows]

    def savepoint(self) -> ContextManager[Any]:
        # a failed statement rolls back to here instead of aborting the
        # whole transaction (PostgreSQL refuses further reads otherwise)
        return self.db.begin_nested()

    def list_table_ids(self, table_type: Optional[TableType] = None) -> list[str]:
        query = select(VenueTable.id)
        if table_type is not None:
            query = query.where(VenueTable.table_type == TableType(table_type).value)
        return list(self.db.scalars(query.order_by(VenueTable.id)).all())

    def save_table(self, state: TableState) -> None:
        row = self.db.get(VenueTable, state.id)
        if row is None:
            raise TableNotFoundError(state.id)
        row.is_active = state.is_active
        row.open_time = state.open_time
        row.close_time = state.close_time
        row.hourly_total = state.hourly_total
        row.sales_total = state.sales_total
        row.check_total = state.check_total
        self.db.flush()
