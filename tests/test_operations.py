from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import T0
from table_billing import operations
from table_billing.errors import InvalidTableOperation, SaleNotFoundError, TableNotFoundError
from table_billing.ledger import SqlTableLedger
from table_billing.models import HourlySession, Sale
from table_billing.reconciler import TableReconciler


def test_hourly_session_lifecycle(db_session) -> None:
    operations.create_table(db_session, "Pool 1", "hourly", hourly_rate="40", table_id="t1", now=T0)
    opened = operations.open_session(db_session, "t1", now=T0)
    assert opened.is_active is True
    assert opened.open_time == T0

    operations.add_sale(db_session, "t1", "15", now=T0 + timedelta(minutes=10))
    operations.add_sale(db_session, "t1", "5", now=T0 + timedelta(minutes=20))

    live = TableReconciler(SqlTableLedger(db_session)).get_table_with_totals(
        "t1", now=T0 + timedelta(hours=1.5)
    )
    assert live.hourly_total == 60
    assert live.check_total == 80

    closed = operations.close_session(db_session, "t1", now=T0 + timedelta(hours=1.5))
    assert closed.is_active is False
    assert closed.hourly_total == Decimal("60.00")
    assert closed.check_total == Decimal("80.00")

    # the frozen charge does not grow after close
    later = TableReconciler(SqlTableLedger(db_session)).get_table_with_totals(
        "t1", now=T0 + timedelta(hours=9)
    )
    assert later.hourly_total == Decimal("60.00")

    settled = operations.settle_table(db_session, "t1", now=T0 + timedelta(hours=2))
    assert settled.is_active is False
    assert settled.check_total == 0
    assert settled.sales_total == 0
    assert settled.hourly_total == 0

    unpaid = db_session.scalars(select(Sale).where(Sale.is_paid.is_(False))).all()
    assert unpaid == []
    sessions = operations.list_hourly_sessions(db_session, "t1")
    assert len(sessions) == 1
    assert sessions[0].hourly_total == Decimal("60.00")
    assert sessions[0].hours_used == Decimal("1.5")


def test_open_session_is_idempotent_while_open(db_session) -> None:
    operations.create_table(db_session, "Pool 2", "hourly", hourly_rate=30, table_id="t2")
    first = operations.open_session(db_session, "t2", now=T0)
    again = operations.open_session(db_session, "t2", now=T0 + timedelta(minutes=5))
    assert again.open_time == first.open_time


def test_only_hourly_tables_have_sessions(db_session) -> None:
    operations.create_table(db_session, "Bar", "regular", table_id="r1")
    with pytest.raises(InvalidTableOperation):
        operations.open_session(db_session, "r1")
    with pytest.raises(InvalidTableOperation):
        operations.close_session(db_session, "r1")


def test_close_requires_open_session(db_session) -> None:
    operations.create_table(db_session, "Pool 3", "hourly", hourly_rate=30, table_id="t3")
    with pytest.raises(InvalidTableOperation):
        operations.close_session(db_session, "t3")


def test_reopen_requires_settlement(db_session) -> None:
    operations.create_table(db_session, "Pool 4", "hourly", hourly_rate=30, table_id="t4")
    operations.open_session(db_session, "t4", now=T0)
    operations.close_session(db_session, "t4", now=T0 + timedelta(hours=1))
    with pytest.raises(InvalidTableOperation):
        operations.open_session(db_session, "t4", now=T0 + timedelta(hours=2))


def test_cancel_discards_tab_without_history(db_session) -> None:
    operations.create_table(db_session, "Pool 5", "hourly", hourly_rate=30, table_id="t5")
    operations.open_session(db_session, "t5", now=T0)
    operations.add_sale(db_session, "t5", 12, now=T0)

    cancelled = operations.cancel_table(db_session, "t5", now=T0 + timedelta(hours=1))

    assert cancelled.is_active is False
    assert cancelled.check_total == 0
    assert db_session.scalars(select(Sale)).all() == []
    assert db_session.scalars(select(HourlySession)).all() == []
    with pytest.raises(InvalidTableOperation):
        operations.cancel_table(db_session, "t5")


def test_reopen_after_cancel_drops_leftover_sales(db_session) -> None:
    operations.create_table(db_session, "Pool 6", "hourly", hourly_rate=30, table_id="t6")
    operations.open_session(db_session, "t6", now=T0)
    operations.cancel_table(db_session, "t6", now=T0 + timedelta(minutes=30))
    # a sale recorded against the closed table by another terminal
    operations.add_sale(db_session, "t6", 9, now=T0 + timedelta(minutes=31))

    reopened = operations.open_session(db_session, "t6", now=T0 + timedelta(hours=1))

    assert reopened.is_active is True
    assert reopened.sales_total == 0
    assert db_session.scalars(select(Sale)).all() == []


def test_regular_table_opens_and_auto_closes_with_its_ledger(db_session) -> None:
    operations.create_table(db_session, "Table 7", "regular", table_id="r7")

    sale, state = operations.add_sale(db_session, "r7", "12.50", items=[{"name": "Tea", "amount": 5}])
    assert sale.is_paid is False
    assert state.is_active is True
    assert state.check_total == Decimal("12.50")

    _, state = operations.pay_sale(db_session, sale.id)
    assert state.is_active is False
    assert state.check_total == 0


def test_delete_sale_resyncs_table(db_session) -> None:
    operations.create_table(db_session, "Table 8", "regular", table_id="r8")
    first, _ = operations.add_sale(db_session, "r8", 4)
    operations.add_sale(db_session, "r8", 6)

    state = operations.delete_sale(db_session, first.id)

    assert state.sales_total == 6
    assert state.is_active is True
    with pytest.raises(SaleNotFoundError):
        operations.delete_sale(db_session, first.id)


def test_settle_regular_table_on_credit(db_session) -> None:
    operations.create_table(db_session, "Table 9", "regular", table_id="r9")
    operations.add_sale(db_session, "r9", 20)

    state = operations.settle_table(db_session, "r9", is_credit=True)

    assert state.is_active is False
    sale = db_session.scalars(select(Sale).where(Sale.table_id == "r9")).one()
    assert sale.is_paid is True
    assert sale.is_credit is True
    with pytest.raises(InvalidTableOperation):
        operations.settle_table(db_session, "r9")


def test_instant_sales_are_paid_immediately(db_session) -> None:
    instant = operations.ensure_instant_table(db_session)
    assert operations.ensure_instant_table(db_session).id == instant.id

    sale, state = operations.add_sale(db_session, instant.id, "3.00", now=T0)
    operations.add_sale(db_session, instant.id, "4.50", now=T0 + timedelta(hours=1))
    operations.add_sale(db_session, instant.id, "10", now=T0 + timedelta(days=1))

    assert sale.is_paid is True
    assert state.is_active is False
    assert state.check_total == 0
    assert operations.instant_daily_total(db_session, instant.id, T0.date()) == Decimal("7.50")


def test_daily_total_only_for_instant_tables(db_session) -> None:
    operations.create_table(db_session, "Table 10", "regular", table_id="r10")
    with pytest.raises(InvalidTableOperation):
        operations.instant_daily_total(db_session, "r10", T0.date())


def test_invalid_inputs(db_session) -> None:
    operations.create_table(db_session, "Table 11", "regular", table_id="r11")
    with pytest.raises(InvalidTableOperation):
        operations.create_table(db_session, "Dup", "regular", table_id="r11")
    with pytest.raises(InvalidTableOperation):
        operations.add_sale(db_session, "r11", "-1")
    with pytest.raises(InvalidTableOperation):
        operations.add_sale(db_session, "r11", "lots")
    with pytest.raises(TableNotFoundError):
        operations.add_sale(db_session, "ghost", 1)
    with pytest.raises(InvalidTableOperation):
        operations.create_table(db_session, "Pool", "hourly", hourly_rate=-5)


def test_zero_charge_session_can_still_be_settled(db_session) -> None:
    operations.create_table(db_session, "Pool 9", "hourly", hourly_rate="40", table_id="t9", now=T0)
    operations.open_session(db_session, "t9", now=T0)
    closed = operations.close_session(db_session, "t9", now=T0)
    assert closed.hourly_total == 0

    with pytest.raises(InvalidTableOperation):
        operations.open_session(db_session, "t9", now=T0 + timedelta(hours=1))

    settled = operations.settle_table(db_session, "t9", now=T0 + timedelta(hours=1))
    assert settled.open_time is None
    assert settled.check_total == 0
    sessions = operations.list_hourly_sessions(db_session, "t9")
    assert len(sessions) == 1
    assert sessions[0].hourly_total == 0
    assert sessions[0].hours_used == 0

    reopened = operations.open_session(db_session, "t9", now=T0 + timedelta(hours=2))
    assert reopened.is_active is True


def test_zero_charge_session_can_be_cancelled(db_session) -> None:
    operations.create_table(db_session, "Free pool", "hourly", table_id="t10", now=T0)
    operations.open_session(db_session, "t10", now=T0)
    closed = operations.close_session(db_session, "t10", now=T0 + timedelta(hours=2))
    assert closed.hourly_total == 0

    cancelled = operations.cancel_table(db_session, "t10", now=T0 + timedelta(hours=3))
    assert cancelled.open_time is None
    assert operations.list_hourly_sessions(db_session, "t10") == []
    assert operations.open_session(db_session, "t10", now=T0 + timedelta(hours=4)).is_active is True


def test_unparseable_timestamp_is_rejected(db_session) -> None:
    operations.create_table(db_session, "Pool 12", "hourly", hourly_rate="40", table_id="t12", now=T0)
    with pytest.raises(InvalidTableOperation):
        operations.open_session(db_session, "t12", now="not-a-time")
    with pytest.raises(InvalidTableOperation):
        operations.add_sale(db_session, "t12", "5", now="yesterday-ish")
