"""Exceptions raised by table lifecycle actions.

The reconciliation core itself never raises for a missing table or a
malformed record; these are for explicit actions that cannot proceed.
"""


class TableBillingError(Exception):
    pass


class TableNotFoundError(TableBillingError):
    def __init__(self, table_id: str) -> None:
        super().__init__(f"table {table_id!r} not found")
        self.table_id = table_id


class SaleNotFoundError(TableBillingError):
    def __init__(self, sale_id: int) -> None:
        super().__init__(f"sale {sale_id!r} not found")
        self.sale_id = sale_id


class InvalidTableOperation(TableBillingError):
    pass
