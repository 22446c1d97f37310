from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from table_billing.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class VenueTable(Base):
    __tablename__ = "venue_table"
    __table_args__ = (
        CheckConstraint("table_type IN ('hourly', 'instant', 'regular')", name="ck_venue_table_type"),
        CheckConstraint("hourly_rate IS NULL OR hourly_rate >= 0", name="ck_venue_table_rate"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    table_type: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    open_time: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    close_time: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    hourly_rate: Mapped[Numeric | None] = mapped_column(Numeric(12, 2))
    hourly_total: Mapped[Numeric] = mapped_column(Numeric(14, 4), nullable=False, default=0)
    sales_total: Mapped[Numeric] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    check_total: Mapped[Numeric] = mapped_column(Numeric(14, 4), nullable=False, default=0)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Sale(Base):
    __tablename__ = "sale"
    __table_args__ = (Index("ix_sale_table_unpaid", "table_id", "is_paid"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    table_id: Mapped[str] = mapped_column(
        Text, ForeignKey("venue_table.id"), nullable=False
    )
    sale_total: Mapped[Numeric | None] = mapped_column(Numeric(14, 2))
    items: Mapped[list | None] = mapped_column(JSON_TYPE)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_credit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sold_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class HourlySession(Base):
    __tablename__ = "hourly_session"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    table_id: Mapped[str] = mapped_column(
        Text, ForeignKey("venue_table.id"), nullable=False
    )
    open_time: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    close_time: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    hours_used: Mapped[Numeric] = mapped_column(Numeric(10, 4), nullable=False)
    hourly_total: Mapped[Numeric] = mapped_column(Numeric(14, 2), nullable=False)
    paid_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_credit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
