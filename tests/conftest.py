from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import table_billing.models  # noqa: F401  registers tables on Base.metadata
from table_billing.db import Base
from table_billing.domain import SaleRecord, TableState

T0 = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


class FakeLedger:
    """In-memory TableLedger; ``fail_for`` ids raise on fetch."""

    def __init__(self, tables=(), sales=(), fail_for=()) -> None:
        self.tables = {table.id: table for table in tables}
        self.sales = list(sales)
        self.fail_for = set(fail_for)
        self.sales_fetches = 0

    def fetch_table(self, table_id: str) -> Optional[TableState]:
        if table_id in self.fail_for:
            raise ConnectionError(f"ledger unavailable for {table_id}")
        return self.tables.get(table_id)

    def fetch_unpaid_sales(self, table_id: str) -> list[SaleRecord]:
        self.sales_fetches += 1
        return [sale for sale in self.sales if sale.table_id == table_id and not sale.is_paid]

    def savepoint(self):
        return nullcontext()


@pytest.fixture
def db_session() -> Session:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
