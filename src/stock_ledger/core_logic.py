"""Business logic layer for the stock ledger.

This module owns the inventory rules: the daily counter reconciliation pass,
the ledger engine that applies inbound (``Entree``) and outbound
(``Sortie``) movements, and the transaction log recorder. It consumes the
data access layer for all I/O and exposes one function per request the
front-ends can make.

Every mutating request follows the same cycle against a single workbook:
lock, load, reconcile, mutate, save, unlock. Locks are per file and per
process; see :func:`file_lock`.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterable, Iterator, List, Mapping, Optional

from . import data_manager, log
from .barcode_relay import BarcodeRelay, LatestBarcodeSlot
from .constants import (
    DEFAULT_DATE_FORMAT,
    DEFAULT_TIME_FORMAT,
    INVENTORY_COLUMNS,
    LOG_COLUMNS,
    InventoryColumn,
    LogColumn,
    MovementType,
    SheetName,
)


class LedgerError(Exception):
    """Base class for errors raised by the business logic layer."""


class ValidationError(LedgerError, ValueError):
    """Raised when a request payload is missing fields or carries bad values."""


class ErrorKind(str, Enum):
    """Per-item outcomes reported by batch operations."""

    VALIDATION = "validation"
    INSUFFICIENT_STOCK = "insufficient_stock"
    PRODUCT_NOT_FOUND = "product_not_found"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, table stores and process-wide state."""

    settings: data_manager.ConfigSettings
    inventory_store: data_manager.TableStore
    log_store: data_manager.TableStore
    barcodes: BarcodeRelay = field(default_factory=LatestBarcodeSlot, repr=False, compare=False)


@dataclass(frozen=True)
class ProductRecord:
    """Read view of one inventory ledger row."""

    product_id: str
    name: str
    quantity: int
    daily_transactions: int
    last_transaction_date: Optional[date]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "dailyTransactions": self.daily_transactions,
            "lastTransactionDate": (
                self.last_transaction_date.isoformat() if self.last_transaction_date else None
            ),
        }


@dataclass(frozen=True)
class AdjustmentRequest:
    """Validated intent to move ``quantity`` units of one product."""

    movement: MovementType
    product_id: str
    quantity: int


@dataclass(frozen=True)
class AdjustmentError:
    """Why one item of a batch was not applied."""

    product: Optional[str]
    kind: ErrorKind
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"product": self.product, "kind": self.kind.value, "error": self.message}


@dataclass
class BatchResult:
    """Outcome of a batch: how many items were applied and what failed."""

    errors: List[AdjustmentError] = field(default_factory=list)
    applied: int = 0

    @property
    def all_succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allSucceeded": self.all_succeeded,
            "applied": self.applied,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(frozen=True)
class TransactionLogEntry:
    """Read view of one transaction log row with its rebuilt timestamp."""

    type: str
    product: str
    quantity: Optional[int]
    occurred_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "product": self.product,
            "quantity": self.quantity,
            "timestamp": self.occurred_at.isoformat() if self.occurred_at else None,
        }


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

_FILE_LOCKS: Dict[Path, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = Path(path).expanduser().resolve()
    with _FILE_LOCKS_GUARD:
        lock = _FILE_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _FILE_LOCKS[key] = lock
        return lock


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Serialize read-modify-write cycles against ``path`` within this process.

    Without it two concurrent requests could both load the same workbook and
    the second save would silently discard the first one's changes. Other
    processes writing the same file are not coordinated.
    """

    lock = _lock_for(path)
    with lock:
        yield


def _exclusive(context: RuntimeContext, path: Path) -> ContextManager[None]:
    if context.settings.serialize_writes:
        return file_lock(path)
    return nullcontext()


def _resolve_today(candidate: Optional[date]) -> date:
    return candidate if candidate is not None else date.today()


def _resolve_now(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now()


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def parse_quantity(value: object) -> int:
    """Validate a requested quantity and return it as a non-negative ``int``.

    Numeric strings are accepted; booleans, blanks, fractions, negatives and
    non-numeric text are not.

    Raises:
        ValidationError: If ``value`` is not a whole, non-negative number.
    """

    if value is None or isinstance(value, bool):
        raise ValidationError("Quantity is required")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Quantity must be numeric, got {value!r}") from exc
    if not amount.is_finite() or amount != amount.to_integral_value():
        raise ValidationError(f"Quantity must be a whole number, got {value!r}")
    if amount < 0:
        raise ValidationError(f"Quantity must not be negative, got {value!r}")
    return int(amount)


def _entry_product(entry: object) -> Optional[str]:
    if isinstance(entry, Mapping):
        key = data_manager.normalize_key(entry.get("product"))
        return key or None
    return None


def parse_adjustment(entry: object) -> AdjustmentRequest:
    """Turn a raw ``{type, product, quantity}`` mapping into a request.

    Raises:
        ValidationError: If the entry is not a mapping, lacks a field, names
            an unknown movement type or carries an invalid quantity.
    """

    if not isinstance(entry, Mapping):
        raise ValidationError("Each adjustment must be an object with type, product and quantity")

    product_id = data_manager.normalize_key(entry.get("product"))
    raw_type = entry.get("type")
    if not raw_type or not product_id or entry.get("quantity") is None:
        raise ValidationError("Type (Entree/Sortie), product ID and quantity are required")

    movement = MovementType.from_label(raw_type)
    if movement is None:
        raise ValidationError(f"Unknown movement type '{raw_type}', expected Entree or Sortie")

    return AdjustmentRequest(
        movement=movement,
        product_id=product_id,
        quantity=parse_quantity(entry.get("quantity")),
    )


def _require_batch(entries: object, what: str) -> List[object]:
    if not isinstance(entries, (list, tuple)) or not entries:
        raise ValidationError(f"A non-empty list of {what} is required")
    return list(entries)


# ---------------------------------------------------------------------------
# Daily counter reconciliation
# ---------------------------------------------------------------------------


def reconcile_daily_counters(
    table: data_manager.Table,
    today: date,
    *,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> int:
    """Zero the daily counter of every row last touched before ``today``.

    Rows whose ``LastTransactionDate`` cannot be parsed are treated as stale.
    Touched rows get ``DailyTransactions = 0`` and
    ``LastTransactionDate = today``, so a second pass on the same day finds
    nothing to do.

    Args:
        table (data_manager.Table): Inventory ledger table, modified in place.
        today (date): Calendar date of the request.
        date_format (str): Locale format tried first when a date is stored as
            text.

    Returns:
        int: Number of rows that were reset.
    """

    date_column = InventoryColumn.LAST_TRANSACTION_DATE.value
    daily_column = InventoryColumn.DAILY_TRANSACTIONS.value

    reset = 0
    for row_index in range(len(table)):
        stored = table.get(row_index, date_column)
        if data_manager.parse_calendar_date(stored, date_format) == today:
            continue
        table.set(row_index, daily_column, 0)
        table.set(row_index, date_column, today)
        reset += 1

    if reset:
        log.debug("Reset daily counters on %d row(s) for %s", reset, today.isoformat())
    return reset


# ---------------------------------------------------------------------------
# Ledger engine
# ---------------------------------------------------------------------------


def build_product_index(table: data_manager.Table) -> Dict[str, int]:
    """Map each product identifier to its row, keeping the first occurrence.

    Later rows repeating an identifier are unreachable through the ledger
    and reported once in the log.
    """

    index: Dict[str, int] = {}
    for row_index in range(len(table)):
        key = data_manager.normalize_key(table.get(row_index, InventoryColumn.PRODUCT_ID.value))
        if not key:
            continue
        if key in index:
            log.warning(
                "Duplicate product id '%s' on ledger row %d ignored (first seen on row %d)",
                key,
                row_index + 2,
                index[key] + 2,
            )
            continue
        index[key] = row_index
    return index


class InventoryLedger:
    """Apply stock movements to an in-memory inventory ledger table.

    The ledger indexes rows by product identifier once, at construction.
    Callers are expected to have reconciled the table for ``today`` first;
    every accepted movement stamps the row with ``today``.
    """

    def __init__(
        self,
        table: data_manager.Table,
        today: date,
        *,
        date_format: str = DEFAULT_DATE_FORMAT,
    ) -> None:
        table.require_columns(INVENTORY_COLUMNS)
        self.table = table
        self.today = today
        self._date_format = date_format
        self._index = build_product_index(table)

    def __contains__(self, product_id: object) -> bool:
        return data_manager.normalize_key(product_id) in self._index

    def __len__(self) -> int:
        return len(self._index)

    def _record_at(self, row_index: int) -> ProductRecord:
        table = self.table
        name = table.get(row_index, InventoryColumn.NAME.value)
        return ProductRecord(
            product_id=data_manager.normalize_key(table.get(row_index, InventoryColumn.PRODUCT_ID.value)),
            name=str(name) if name is not None else "",
            quantity=data_manager.coerce_int(table.get(row_index, InventoryColumn.QUANTITY.value)),
            daily_transactions=data_manager.coerce_int(
                table.get(row_index, InventoryColumn.DAILY_TRANSACTIONS.value)
            ),
            last_transaction_date=data_manager.parse_calendar_date(
                table.get(row_index, InventoryColumn.LAST_TRANSACTION_DATE.value),
                self._date_format,
            ),
        )

    def _write(self, row_index: int, *, quantity: int, daily: int) -> None:
        self.table.set(row_index, InventoryColumn.QUANTITY.value, quantity)
        self.table.set(row_index, InventoryColumn.DAILY_TRANSACTIONS.value, daily)
        self.table.set(row_index, InventoryColumn.LAST_TRANSACTION_DATE.value, self.today)

    def get(self, product_id: str) -> Optional[ProductRecord]:
        row_index = self._index.get(data_manager.normalize_key(product_id))
        return None if row_index is None else self._record_at(row_index)

    def records(self) -> List[ProductRecord]:
        """Return every indexed product in sheet order."""

        return [self._record_at(row_index) for row_index in sorted(self._index.values())]

    def upsert(self, product_id: str, name: str, quantity_delta: int) -> ProductRecord:
        """Receive stock unconditionally, creating the product when unknown.

        An existing product keeps its name; ``quantity_delta`` is added to
        both its quantity and its daily counter.
        """

        key = data_manager.normalize_key(product_id)
        row_index = self._index.get(key)
        if row_index is None:
            row_index = self.table.append(
                {
                    InventoryColumn.PRODUCT_ID.value: key,
                    InventoryColumn.NAME.value: name,
                    InventoryColumn.QUANTITY.value: quantity_delta,
                    InventoryColumn.DAILY_TRANSACTIONS.value: quantity_delta,
                    InventoryColumn.LAST_TRANSACTION_DATE.value: self.today,
                }
            )
            self._index[key] = row_index
            log.info("Created product '%s' (%s) with quantity %d", key, name, quantity_delta)
            return self._record_at(row_index)

        current = self._record_at(row_index)
        self._write(
            row_index,
            quantity=current.quantity + quantity_delta,
            daily=current.daily_transactions + quantity_delta,
        )
        log.info("Received %d unit(s) of '%s'", quantity_delta, key)
        return self._record_at(row_index)

    def apply_adjustment(self, movement: MovementType, product_id: str, amount: int) -> Optional[AdjustmentError]:
        """Apply one movement, returning ``None`` on success or the reason it failed.

        An outbound movement that would leave the product below zero is
        rejected and the row is left exactly as it was.
        """

        key = data_manager.normalize_key(product_id)
        row_index = self._index.get(key)
        if row_index is None:
            return AdjustmentError(
                product=key,
                kind=ErrorKind.PRODUCT_NOT_FOUND,
                message=f"Product with ID '{key}' not found in inventory",
            )

        current = self._record_at(row_index)
        if movement is MovementType.ENTREE:
            self._write(
                row_index,
                quantity=current.quantity + amount,
                daily=current.daily_transactions + amount,
            )
            return None

        new_quantity = current.quantity - amount
        if new_quantity < 0:
            return AdjustmentError(
                product=key,
                kind=ErrorKind.INSUFFICIENT_STOCK,
                message=f"Insufficient quantity for product {key}",
            )
        self._write(
            row_index,
            quantity=new_quantity,
            daily=current.daily_transactions - amount,
        )
        return None

    def apply_batch(self, entries: Iterable[object]) -> BatchResult:
        """Attempt every entry of a batch independently.

        Errors are collected rather than raised. A "not found" error is
        dropped when the same product already has an error in this batch,
        and identical errors are reported once.
        """

        result = BatchResult()
        failed_products: set[Optional[str]] = set()

        def _record(error: AdjustmentError) -> None:
            failed_products.add(error.product)
            if error not in result.errors:
                result.errors.append(error)
            log.warning("Adjustment rejected for '%s': %s", error.product, error.message)

        for entry in entries:
            try:
                request = parse_adjustment(entry)
            except ValidationError as exc:
                _record(AdjustmentError(product=_entry_product(entry), kind=ErrorKind.VALIDATION, message=str(exc)))
                continue

            error = self.apply_adjustment(request.movement, request.product_id, request.quantity)
            if error is None:
                result.applied += 1
            elif error.kind is ErrorKind.PRODUCT_NOT_FOUND and error.product in failed_products:
                log.debug("Suppressed repeat error for product '%s'", error.product)
            else:
                _record(error)

        return result


# ---------------------------------------------------------------------------
# Transaction log
# ---------------------------------------------------------------------------


class TransactionLogRecorder:
    """Append movements to the transaction log and read them back."""

    def __init__(
        self,
        store: data_manager.TableStore,
        *,
        date_format: str = DEFAULT_DATE_FORMAT,
        time_format: str = DEFAULT_TIME_FORMAT,
    ) -> None:
        self.store = store
        self.date_format = date_format
        self.time_format = time_format

    def append(self, entries: Iterable[object], *, now: Optional[datetime] = None) -> int:
        """Write one row per valid entry and return how many were written.

        Entries missing a type or product, or carrying an invalid quantity,
        are skipped with a warning. Every row of one call shares the same
        date and time strings.
        """

        moment = _resolve_now(now)
        date_text = moment.strftime(self.date_format)
        time_text = moment.strftime(self.time_format)

        table = self.store.load_or_create()
        appended = 0
        for entry in entries:
            if not isinstance(entry, Mapping):
                log.warning("Invalid log entry skipped: %r", entry)
                continue
            label = str(entry.get("type") or "").strip()
            product = data_manager.normalize_key(entry.get("product"))
            try:
                quantity = parse_quantity(entry.get("quantity"))
            except ValidationError as exc:
                log.warning("Invalid log entry skipped: %r (%s)", entry, exc)
                continue
            if not label or not product:
                log.warning("Invalid log entry skipped: %r", entry)
                continue

            movement = MovementType.from_label(label)
            table.append(
                {
                    LogColumn.TYPE.value: movement.value if movement else label,
                    LogColumn.DATE.value: date_text,
                    LogColumn.TIME.value: time_text,
                    LogColumn.PRODUCT.value: product,
                    LogColumn.QUANTITY.value: quantity,
                }
            )
            appended += 1

        if appended:
            self.store.save(table)
        return appended

    def read(self) -> List[TransactionLogEntry]:
        """Return every logged movement in sheet order.

        A missing workbook or sheet reads as an empty log. Rows whose date
        and time cannot be combined keep ``occurred_at=None``.
        """

        try:
            table = self.store.load()
        except data_manager.TableNotFoundError:
            log.info("Transaction log not found; returning an empty log")
            return []

        entries: List[TransactionLogEntry] = []
        for row_index in range(len(table)):
            raw_type = table.get(row_index, LogColumn.TYPE.value)
            occurred_at = data_manager.reconstruct_timestamp(
                table.get(row_index, LogColumn.DATE.value),
                table.get(row_index, LogColumn.TIME.value),
                date_format=self.date_format,
                time_format=self.time_format,
            )
            if occurred_at is None:
                log.warning("Could not rebuild timestamp for transaction log row %d", row_index + 2)
            entries.append(
                TransactionLogEntry(
                    type=str(raw_type) if raw_type is not None else "",
                    product=data_manager.normalize_key(table.get(row_index, LogColumn.PRODUCT.value)),
                    quantity=data_manager.coerce_int(table.get(row_index, LogColumn.QUANTITY.value), default=None),
                    occurred_at=occurred_at,
                )
            )
        return entries


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def build_runtime_context(settings: data_manager.ConfigSettings) -> RuntimeContext:
    """Wire the Excel-backed stores for ``settings`` into a context."""

    return RuntimeContext(
        settings=settings,
        inventory_store=data_manager.ExcelTableStore(
            path=settings.inventory_file,
            sheet_name=SheetName.INVENTORY.value,
            columns=INVENTORY_COLUMNS,
        ),
        log_store=data_manager.ExcelTableStore(
            path=settings.transaction_log_file,
            sheet_name=SheetName.TRANSACTIONS.value,
            columns=LOG_COLUMNS,
        ),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and build the context used by every request.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context with Excel-backed stores and an empty barcode
            slot. Workbooks are not opened until a request needs them.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    log.info(
        "Loaded runtime context (inventory '%s', transaction log '%s')",
        settings.inventory_file,
        settings.transaction_log_file,
    )
    return build_runtime_context(settings)


def _log_recorder(context: RuntimeContext) -> TransactionLogRecorder:
    return TransactionLogRecorder(
        context.log_store,
        date_format=context.settings.date_format,
        time_format=context.settings.time_format,
    )


# ---------------------------------------------------------------------------
# Request-facing operations
# ---------------------------------------------------------------------------


def record_batch_adjustments(
    context: RuntimeContext,
    entries: object,
    *,
    today: Optional[date] = None,
) -> BatchResult:
    """Apply a batch of ``{type, product, quantity}`` movements to the ledger.

    The ledger is reconciled for ``today`` before any movement is applied
    and saved once after the whole batch, including the successful subset
    when some items failed.

    Args:
        context (RuntimeContext): Runtime context with the inventory store.
        entries (list): Raw adjustment mappings.
        today (date | None): Calendar date of the request; defaults to the
            local date.

    Returns:
        BatchResult: Applied count and the distinct per-item errors.

    Raises:
        ValidationError: If ``entries`` is not a non-empty list.
        data_manager.StorageError: If the ledger cannot be read or saved.
    """
    items = _require_batch(entries, "inventory adjustments")
    today = _resolve_today(today)
    settings = context.settings

    with _exclusive(context, settings.inventory_file):
        table = context.inventory_store.load_or_create()
        reconcile_daily_counters(table, today, date_format=settings.date_format)
        ledger = InventoryLedger(table, today, date_format=settings.date_format)
        result = ledger.apply_batch(items)
        context.inventory_store.save(table)

    if result.all_succeeded:
        log.info("Applied %d inventory adjustment(s)", result.applied)
    else:
        log.warning(
            "Applied %d of %d inventory adjustment(s); %d error(s)",
            result.applied,
            len(items),
            len(result.errors),
        )
    return result


def upsert_product(
    context: RuntimeContext,
    product_id: object,
    name: object,
    quantity: object,
    *,
    today: Optional[date] = None,
) -> ProductRecord:
    """Receive stock for a product, creating it on first sight.

    Raises:
        ValidationError: If the id or name is blank or the quantity invalid.
        data_manager.StorageError: If the ledger cannot be read or saved.
    """
    key = data_manager.normalize_key(product_id)
    label = str(name).strip() if name is not None else ""
    if not key or not label:
        raise ValidationError("Product ID, name and quantity are required")
    amount = parse_quantity(quantity)
    today = _resolve_today(today)
    settings = context.settings

    with _exclusive(context, settings.inventory_file):
        table = context.inventory_store.load_or_create()
        reconcile_daily_counters(table, today, date_format=settings.date_format)
        record = InventoryLedger(table, today, date_format=settings.date_format).upsert(key, label, amount)
        context.inventory_store.save(table)
    return record


def get_inventory_snapshot(context: RuntimeContext, *, today: Optional[date] = None) -> List[ProductRecord]:
    """Return every product after reconciling daily counters for ``today``.

    The reconciliation is persisted when it changed anything. A missing
    ledger reads as an empty inventory.
    """
    today = _resolve_today(today)
    settings = context.settings

    with _exclusive(context, settings.inventory_file):
        try:
            table = context.inventory_store.load()
        except data_manager.TableNotFoundError:
            log.info("Inventory ledger not found; returning an empty snapshot")
            return []
        if reconcile_daily_counters(table, today, date_format=settings.date_format):
            context.inventory_store.save(table)
        return InventoryLedger(table, today, date_format=settings.date_format).records()


def append_transactions(
    context: RuntimeContext,
    entries: object,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Record movements in the transaction log and return how many were kept.

    Raises:
        ValidationError: If ``entries`` is not a non-empty list.
        data_manager.StorageError: If the log cannot be read or saved.
    """
    items = _require_batch(entries, "transaction log entries")
    with _exclusive(context, context.settings.transaction_log_file):
        appended = _log_recorder(context).append(items, now=now)
    log.info("Appended %d of %d transaction log entr(ies)", appended, len(items))
    return appended


def get_transaction_log(context: RuntimeContext) -> List[TransactionLogEntry]:
    """Return the full transaction log with ISO-normalizable timestamps."""
    return _log_recorder(context).read()
