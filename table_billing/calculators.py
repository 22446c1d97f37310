"""Billing math for venue tables.

Pure functions over :class:`TableState` values. The clock is the only
hidden input and every function accepts ``now`` so callers (and tests) can
pin it. Elapsed time never goes negative: a missing, unparseable or future
start time counts as zero hours.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from table_billing.domain import ZERO, TableState, parse_timestamp, to_money

SECONDS_PER_HOUR = Decimal(3600)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hours_between(start_time: Any, end_time: Any) -> Decimal:
    start = parse_timestamp(start_time)
    end = parse_timestamp(end_time)
    if start is None or end is None:
        return ZERO
    seconds = Decimal(str((end - start).total_seconds()))
    if seconds <= 0:
        return ZERO
    return seconds / SECONDS_PER_HOUR


def hours_elapsed(start_time: Any, now: Optional[datetime] = None) -> Decimal:
    return hours_between(start_time, now or utcnow())


def hourly_charge(table: TableState, now: Optional[datetime] = None) -> Decimal:
    """Time-based charge for ``table``.

    A closed session (``close_time`` set) returns the stored, frozen
    ``hourly_total``; an open session accrues from ``open_time`` at
    ``hourly_rate``. Anything else, including non-hourly tables, is 0.
    """
    if not table.rules.accrues_time:
        return ZERO
    if table.close_time is not None:
        return table.hourly_total
    if table.open_time is None or table.hourly_rate is None:
        return ZERO
    return hours_elapsed(table.open_time, now) * table.hourly_rate


def check_total(table: TableState, now: Optional[datetime] = None) -> Decimal:
    if table.rules.accrues_time:
        return hourly_charge(table, now) + table.sales_total
    return table.sales_total


def sum_sales(sales: Iterable[Any]) -> Decimal:
    """Sum ``sale_total`` over a ledger snapshot.

    Accepts :class:`SaleRecord` values, ORM rows or plain mappings; a
    malformed total contributes 0.
    """
    total = ZERO
    for sale in sales or ():
        if isinstance(sale, dict):
            value = sale.get("sale_total")
        else:
            value = getattr(sale, "sale_total", None)
        total += to_money(value, "sale_total")
    return total
