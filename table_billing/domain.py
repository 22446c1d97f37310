from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class TableType(str, Enum):
    HOURLY = "hourly"
    INSTANT = "instant"
    REGULAR = "regular"


@dataclass(frozen=True)
class TableTypeRules:
    # open sessions accrue hours * rate on top of the sales ledger
    accrues_time: bool
    # is_active is derived from the unpaid ledger instead of open/close actions
    ledger_driven_occupancy: bool
    auto_close_eligible: bool


TABLE_TYPE_RULES: dict[TableType, TableTypeRules] = {
    TableType.HOURLY: TableTypeRules(
        accrues_time=True, ledger_driven_occupancy=False, auto_close_eligible=False
    ),
    TableType.INSTANT: TableTypeRules(
        accrues_time=False, ledger_driven_occupancy=False, auto_close_eligible=False
    ),
    TableType.REGULAR: TableTypeRules(
        accrues_time=False, ledger_driven_occupancy=True, auto_close_eligible=True
    ),
}


def rules_for(table_type: TableType | str) -> TableTypeRules:
    return TABLE_TYPE_RULES[TableType(table_type)]


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Convert a stored or submitted amount to a finite Decimal.

    Returns None for a missing value. Raises ValueError when the value is
    present but is not a finite number.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    else:
        raise ValueError(f"not a number: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return amount


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Lenient money coercion: missing or malformed amounts count as 0."""
    try:
        amount = parse_decimal(value)
    except ValueError:
        logger.warning("Malformed %s %r treated as 0", field, value)
        return ZERO
    return ZERO if amount is None else amount


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Return an aware datetime, or None when absent or unparseable.

    Naive datetimes (SQLite hands these back) are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Unparseable timestamp %r treated as absent", value)
            return None
    else:
        logger.warning("Unparseable timestamp %r treated as absent", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SaleRecord(BaseModel):
    """One row of the sales ledger as seen by the billing core."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    table_id: str
    sale_total: Decimal = ZERO
    is_paid: bool = False

    @field_validator("sale_total", mode="before")
    @classmethod
    def _lenient_total(cls, value: Any) -> Decimal:
        return to_money(value, "sale_total")

    @classmethod
    def from_row(cls, row: Any) -> "SaleRecord":
        return cls(id=row.id, table_id=row.table_id, sale_total=row.sale_total, is_paid=row.is_paid)


class TableState(BaseModel):
    """Immutable snapshot of a table and its computed totals.

    Every reconciliation step returns a new instance; the persisted row
    stays the only owner of the current state.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: TableType
    name: Optional[str] = None
    is_active: bool = False
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None
    hourly_rate: Optional[Decimal] = None
    hourly_total: Decimal = ZERO
    sales_total: Decimal = ZERO
    check_total: Decimal = ZERO

    @field_validator("open_time", "close_time", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("hourly_rate", mode="before")
    @classmethod
    def _lenient_rate(cls, value: Any) -> Optional[Decimal]:
        try:
            return parse_decimal(value)
        except ValueError:
            logger.warning("Malformed hourly_rate %r treated as missing", value)
            return None

    @field_validator("hourly_total", "sales_total", "check_total", mode="before")
    @classmethod
    def _lenient_totals(cls, value: Any, info: ValidationInfo) -> Decimal:
        return to_money(value, info.field_name)

    @property
    def rules(self) -> TableTypeRules:
        return rules_for(self.type)

    def evolve(self, **changes: Any) -> "TableState":
        return self.model_copy(update=changes)

    @classmethod
    def from_row(cls, row: Any) -> "TableState":
        return cls(
            id=row.id,
            type=row.table_type,
            name=row.name,
            is_active=row.is_active,
            open_time=row.open_time,
            close_time=row.close_time,
            hourly_rate=row.hourly_rate,
            hourly_total=row.hourly_total,
            sales_total=row.sales_total,
            check_total=row.check_total,
        )
