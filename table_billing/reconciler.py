from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from table_billing import calculators
from table_billing.domain import ZERO, SaleRecord, TableState
from table_billing.ledger import TableLedger

logger = logging.getLogger(__name__)


def compute_totals(
    table: TableState, unpaid_sales: Sequence[SaleRecord], now: Optional[datetime] = None
) -> TableState:
    """Recompute ``hourly_total``, ``sales_total`` and ``check_total``.

    ``check_total`` is always derived here from the other two and the
    given ledger snapshot, never carried over from the stored row.
    """
    now = now or calculators.utcnow()
    with_sales = table.evolve(sales_total=calculators.sum_sales(unpaid_sales))
    hourly_total = calculators.hourly_charge(with_sales, now)
    return with_sales.evolve(
        hourly_total=hourly_total,
        check_total=calculators.check_total(with_sales, now),
    )


def should_auto_close(table: TableState, unpaid_sales: Sequence[SaleRecord]) -> bool:
    if not table.rules.auto_close_eligible:
        return False
    # checked together so a check_total built from a stale sales_total
    # cannot close a table that just gained a sale
    return len(unpaid_sales) == 0 and table.check_total == ZERO and table.sales_total == ZERO


class TableReconciler:
    """Brings a table's totals and occupancy in line with its unpaid sales.

    Holds no table state between calls: each method reads the ledger
    afresh and returns a new :class:`TableState`. Nothing is persisted
    here.
    """

    def __init__(self, ledger: TableLedger) -> None:
        self.ledger = ledger

    def get_table_with_totals(
        self, table_id: str, now: Optional[datetime] = None
    ) -> Optional[TableState]:
        table = self.ledger.fetch_table(table_id)
        if table is None:
            return None
        unpaid_sales = self.ledger.fetch_unpaid_sales(table_id)
        return compute_totals(table, unpaid_sales, now)

    def sync_table_status(self, table: TableState, now: Optional[datetime] = None) -> TableState:
        state, _ = self._sync(table, now)
        return state

    def sync_and_auto_close(self, table: TableState, now: Optional[datetime] = None) -> TableState:
        state, unpaid_sales = self._sync(table, now)
        return self.apply_auto_close(state, unpaid_sales)

    def _sync(
        self, table: TableState, now: Optional[datetime]
    ) -> tuple[TableState, list[SaleRecord]]:
        unpaid_sales = list(self.ledger.fetch_unpaid_sales(table.id))
        state = compute_totals(table, unpaid_sales, now)
        if state.rules.ledger_driven_occupancy:
            state = state.evolve(is_active=len(unpaid_sales) > 0 or state.check_total > ZERO)
        logger.debug(
            "Synced table %s: sales_total=%s hourly_total=%s check_total=%s is_active=%s",
            state.id,
            state.sales_total,
            state.hourly_total,
            state.check_total,
            state.is_active,
        )
        return state, unpaid_sales

    def should_auto_close(self, table: TableState, unpaid_sales: Sequence[SaleRecord]) -> bool:
        return should_auto_close(table, unpaid_sales)

    def apply_auto_close(self, table: TableState, unpaid_sales: Sequence[SaleRecord]) -> TableState:
        if not should_auto_close(table, unpaid_sales):
            return table
        logger.info("Auto-closing table %s: no unpaid sales and zero balance", table.id)
        return table.evolve(is_active=False, open_time=None)

    def refresh_tables(
        self, table_ids: Iterable[str], now: Optional[datetime] = None
    ) -> list[TableState]:
        """Sync every table in ``table_ids``, skipping any that fail.

        Each table is read inside its own ledger savepoint. One table's
        failed fetch is logged and left out of the result; it never aborts
        the rest of the batch.
        """
        refreshed: list[TableState] = []
        for table_id in table_ids:
            try:
                with self.ledger.savepoint():
                    table = self.ledger.fetch_table(table_id)
                    if table is None:
                        continue
                    refreshed.append(self.sync_table_status(table, now))
            except Exception:
                logger.warning("Refreshing table %s failed; skipped", table_id, exc_info=True)
        return refreshed
