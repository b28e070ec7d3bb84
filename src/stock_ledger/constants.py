"""Enumerations and column layouts shared across stock ledger modules.

Centralises the workbook vocabulary so the table store, the ledger engine,
the bootstrap script and the CLI agree on sheet titles, header names and
movement labels.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Sequence


class SheetName(str, Enum):
    """Enumerate the worksheet titles managed by the table store."""

    INVENTORY = "Inventory"
    TRANSACTIONS = "Transactions"


class InventoryColumn(str, Enum):
    """Header names of the inventory ledger sheet."""

    PRODUCT_ID = "ProductID"
    NAME = "Name"
    QUANTITY = "Quantity"
    DAILY_TRANSACTIONS = "DailyTransactions"
    LAST_TRANSACTION_DATE = "LastTransactionDate"


class LogColumn(str, Enum):
    """Header names of the transaction log sheet."""

    TYPE = "Type"
    DATE = "Date"
    TIME = "Time"
    PRODUCT = "Product"
    QUANTITY = "Quantity"


class MovementType(str, Enum):
    """Enumerate the stock movements the ledger engine understands."""

    ENTREE = "Entree"
    SORTIE = "Sortie"

    @classmethod
    def from_label(cls, label: object) -> Optional["MovementType"]:
        """Resolve a user supplied label, tolerating case and the accented form."""

        if not isinstance(label, str):
            return None
        folded = label.strip().casefold().replace("é", "e")
        for member in cls:
            if member.value.casefold() == folded:
                return member
        return None


INVENTORY_COLUMNS: Sequence[str] = tuple(column.value for column in InventoryColumn)
LOG_COLUMNS: Sequence[str] = tuple(column.value for column in LogColumn)

# French headers written by the first version of the transaction log.
HEADER_ALIASES: Mapping[str, str] = {
    "Produit": LogColumn.PRODUCT.value,
    "Nombre": LogColumn.QUANTITY.value,
}

DEFAULT_DATE_FORMAT = "%m/%d/%Y"
DEFAULT_TIME_FORMAT = "%I:%M:%S %p"


__all__ = [
    "SheetName",
    "InventoryColumn",
    "LogColumn",
    "MovementType",
    "INVENTORY_COLUMNS",
    "LOG_COLUMNS",
    "HEADER_ALIASES",
    "DEFAULT_DATE_FORMAT",
    "DEFAULT_TIME_FORMAT",
]
