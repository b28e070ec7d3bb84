"""Data access layer for the stock ledger.

This module provides the low-level helpers that read from and write to the
inventory and transaction log workbooks. Business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Table lifecycle: loading a worksheet into a :class:`Table` and writing it
   back atomically.
3. The :class:`TableStore` seam that ledger logic depends on, with the
   ``openpyxl`` backed :class:`ExcelTableStore` implementation.
4. Cell coercion: turning loosely typed worksheet values (numbers stored as
   text, native dates next to date strings) into predictable Python values.
"""


from __future__ import annotations

import configparser
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import IllegalCharacterError, InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import DEFAULT_DATE_FORMAT, DEFAULT_TIME_FORMAT, HEADER_ALIASES


CONFIG_FILE_NAME = "config.ini"

# Tried after the configured format, in order.
DATE_FALLBACK_FORMATS: Sequence[str] = (
    "%Y-%m-%d",
    "%a %b %d %Y",
)
TIMESTAMP_FALLBACK_FORMATS: Sequence[str] = (
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%a %b %d %Y %H:%M:%S",
)


class TableNotFoundError(FileNotFoundError):
    """Raised when a workbook file or the requested worksheet is absent."""


class StorageError(OSError):
    """Raised when a workbook cannot be read or written."""


class MissingColumnError(KeyError):
    """Raised when a worksheet lacks a column the caller relies on."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    inventory_file: Path
    transaction_log_file: Path
    date_format: str = DEFAULT_DATE_FORMAT
    time_format: str = DEFAULT_TIME_FORMAT
    serialize_writes: bool = True


def normalize_header(name: object) -> str:
    """Reduce a header title to the key used for by-name column lookups.

    Known legacy titles are mapped onto their current names, then case,
    spaces, underscores and dashes are dropped so ``"Daily Transactions"``
    and ``"DailyTransactions"`` resolve to the same column.
    """

    text = str(name).strip() if name is not None else ""
    text = HEADER_ALIASES.get(text, text)
    return "".join(ch for ch in text if ch not in " _-").casefold()


@dataclass
class Table:
    """In-memory copy of one worksheet: a header row plus data rows.

    Header order is preserved when the table is written back, but callers
    address cells by column name so a reordered sheet keeps working.
    """

    name: str
    headers: List[str]
    rows: List[List[Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def column_index(self, column: str) -> int:
        """Return the 0-based position of ``column`` in :attr:`headers`.

        Raises:
            MissingColumnError: If no header normalizes to the same key.
        """

        wanted = normalize_header(column)
        for index, header in enumerate(self.headers):
            if normalize_header(header) == wanted:
                return index
        raise MissingColumnError(f"Unknown column '{column}' in sheet '{self.name}'")

    def require_columns(self, columns: Iterable[str]) -> None:
        for column in columns:
            self.column_index(column)

    def get(self, row_index: int, column: str) -> Any:
        row = self.rows[row_index]
        position = self.column_index(column)
        return row[position] if position < len(row) else None

    def set(self, row_index: int, column: str, value: Any) -> None:
        row = self.rows[row_index]
        position = self.column_index(column)
        if position >= len(row):
            row.extend([None] * (position + 1 - len(row)))
        row[position] = value

    def append(self, values: Mapping[str, Any]) -> int:
        """Append a row built from a column-name mapping and return its index."""

        row: List[Any] = [None] * len(self.headers)
        for column, value in values.items():
            row[self.column_index(column)] = value
        self.rows.append(row)
        return len(self.rows) - 1


class TableStore(Protocol):
    """Persistence seam used by the ledger engine and the log recorder."""

    def load(self) -> Table:
        ...

    def load_or_create(self) -> Table:
        ...

    def save(self, table: Table) -> None:
        ...


@dataclass(frozen=True)
class ExcelTableStore:
    """Bind a workbook path, a sheet title and its required columns.

    ``load`` keeps the "absent means not found" contract of
    :func:`load_table`; ``load_or_create`` is the write-path variant that
    starts from an empty table carrying the expected headers.
    """

    path: Path
    sheet_name: str
    columns: Sequence[str]

    def exists(self) -> bool:
        return Path(self.path).expanduser().exists()

    def empty_table(self) -> Table:
        return Table(name=self.sheet_name, headers=list(self.columns))

    def load(self) -> Table:
        table = load_table(self.path, self.sheet_name)
        if not table.headers:
            table.headers = list(self.columns)
        table.require_columns(self.columns)
        return table

    def load_or_create(self) -> Table:
        try:
            return self.load()
        except TableNotFoundError:
            log.info("Starting new sheet '%s' for '%s'", self.sheet_name, self.path)
            return self.empty_table()

    def save(self, table: Table) -> None:
        save_table(self.path, table)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls where the workbooks live.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    # Interpolation off so strftime patterns such as %m survive parsing.
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)
    return parser


def _resolve_data_path(raw: str, base_path: Optional[Path]) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        candidate = (base_path / candidate).resolve()
    return candidate


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must name both workbooks. ``[Locale]`` and ``[Concurrency]``
    are optional and fall back to the package defaults. Relative workbook
    paths are anchored at ``base_path`` (or the working directory).

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``SerializeWrites`` is not a recognised boolean.
    """

    try:
        inventory_raw = parser.get("System", "InventoryFile")
        transaction_log_raw = parser.get("System", "TransactionLogFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    date_format = parser.get("Locale", "DateFormat", fallback=DEFAULT_DATE_FORMAT)
    time_format = parser.get("Locale", "TimeFormat", fallback=DEFAULT_TIME_FORMAT)
    serialize_writes = parser.getboolean("Concurrency", "SerializeWrites", fallback=True)

    return ConfigSettings(
        inventory_file=_resolve_data_path(inventory_raw, base_path),
        transaction_log_file=_resolve_data_path(transaction_log_raw, base_path),
        date_format=date_format,
        time_format=time_format,
        serialize_writes=serialize_writes,
    )


def new_workbook() -> Workbook:
    """Return an empty workbook without openpyxl's placeholder sheet."""

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    return workbook


def write_header(sheet: Worksheet, headers: Sequence[str]) -> None:
    """Write ``headers`` into the first row of ``sheet`` in bold."""

    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(headers, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def _open_existing(path: Path) -> Workbook:
    try:
        return openpyxl.load_workbook(path)
    except (OSError, zipfile.BadZipFile, InvalidFileException, KeyError) as exc:
        raise StorageError(f"Unable to read workbook {path}: {exc}") from exc


def load_table(path: Path, sheet_name: str) -> Table:
    """Read ``sheet_name`` from the workbook at ``path`` into a :class:`Table`.

    The first row becomes the header list (trailing blank titles dropped) and
    fully empty data rows are skipped.

    Args:
        path (Path): Workbook location. ``~`` is expanded.
        sheet_name (str): Worksheet title to read.

    Returns:
        Table: Detached copy of the worksheet contents.

    Raises:
        TableNotFoundError: If the file or the worksheet does not exist.
        StorageError: If the file exists but cannot be parsed as a workbook.
    """

    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise TableNotFoundError(f"Workbook not found: {path}")

    workbook = _open_existing(path)
    if sheet_name not in workbook.sheetnames:
        raise TableNotFoundError(f"Sheet '{sheet_name}' not found in {path}")

    sheet = workbook[sheet_name]
    header_values = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True), ())
    headers = [str(value).strip() if value is not None else "" for value in header_values]
    while headers and not headers[-1]:
        headers.pop()

    rows: List[List[Any]] = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            rows.append(list(raw))

    log.debug("Loaded %d rows from sheet '%s' in %s", len(rows), sheet_name, path)
    return Table(name=sheet_name, headers=headers, rows=rows)


def _atomic_save(workbook: Workbook, destination: Path) -> None:
    with tempfile.NamedTemporaryFile(
        delete=False,
        dir=str(destination.parent),
        prefix=f".{destination.stem}-",
        suffix=destination.suffix or ".xlsx",
    ) as tmp:
        tmp_path = Path(tmp.name)
    try:
        workbook.save(tmp_path)
        with open(tmp_path, "rb+") as handle:
            os.fsync(handle.fileno())
        # temp files are created 0600; keep the workbook's own permissions
        if destination.exists():
            shutil.copymode(destination, tmp_path)
        tmp_path.replace(destination)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def save_table(path: Path, table: Table) -> None:
    """Persist ``table`` as a worksheet of the workbook at ``path``.

    Other worksheets of an existing workbook are preserved; the target sheet
    is rewritten from scratch. The workbook is serialized to a temporary
    file in the destination directory and renamed over the original, so a
    concurrent reader sees either the previous or the new file, never a
    partial one.

    Args:
        path (Path): Workbook location; parent directories are created.
        table (Table): Table to write.

    Raises:
        StorageError: If any step of the write fails. The original file is
            left untouched in that case.
    """

    dest = Path(path).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook = _open_existing(dest) if dest.exists() else new_workbook()
        if table.name in workbook.sheetnames:
            sheet = workbook[table.name]
            if sheet.max_row:
                sheet.delete_rows(1, sheet.max_row)
        else:
            sheet = workbook.create_sheet(title=table.name)

        write_header(sheet, table.headers)
        # ws.append would continue below the deleted rows
        for row_number, row in enumerate(table.rows, start=2):
            for column_number, value in enumerate(row, start=1):
                sheet.cell(row=row_number, column=column_number, value=value)
        _atomic_save(workbook, dest)
    except StorageError:
        raise
    except (OSError, IllegalCharacterError, ValueError, TypeError) as exc:
        raise StorageError(f"Unable to save sheet '{table.name}' to {dest}: {exc}") from exc

    log.debug("Saved %d rows to sheet '%s' in %s", len(table.rows), table.name, dest)


def normalize_key(value: object) -> str:
    """Coerce a product identifier cell into its string key.

    Excel hands back numeric identifiers as ``int`` or ``float``; integral
    floats lose their ``.0`` so ``1001.0`` and ``"1001"`` match.
    """

    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def coerce_int(value: object, default: Optional[int] = 0) -> Optional[int]:
    """Read a whole-number cell, returning ``default`` for blanks or garbage."""

    if value is None or isinstance(value, bool):
        return default
    try:
        return int(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError, OverflowError):
        return default


def coerce_date_text(value: object, date_format: str = DEFAULT_DATE_FORMAT) -> Optional[str]:
    """Normalize a stored date cell into text.

    Fallback order: native ``date``/``datetime`` formatted with
    ``date_format``, then a non-blank string as-is, otherwise ``None``.
    """

    if isinstance(value, (datetime, date)):
        return value.strftime(date_format)
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return None


def coerce_time_text(value: object, time_format: str = DEFAULT_TIME_FORMAT) -> Optional[str]:
    """Normalize a stored time cell into text, mirroring :func:`coerce_date_text`."""

    if isinstance(value, (datetime, time)):
        return value.strftime(time_format)
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return None


def parse_calendar_date(value: object, date_format: str = DEFAULT_DATE_FORMAT) -> Optional[date]:
    """Interpret a stored date cell as a calendar date.

    Accepts native ``datetime``/``date`` values and strings written with
    ``date_format``, ISO-8601, or the ``"Mon Oct 19 2026"`` form. Anything
    else yields ``None``.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    for fmt in (date_format, *DATE_FALLBACK_FORMATS):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def reconstruct_timestamp(
    date_value: object,
    time_value: object,
    *,
    date_format: str = DEFAULT_DATE_FORMAT,
    time_format: str = DEFAULT_TIME_FORMAT,
) -> Optional[datetime]:
    """Rebuild a single timestamp from separately stored date and time cells.

    Each cell is normalized to text first (see :func:`coerce_date_text` and
    :func:`coerce_time_text`), the two are joined with a space and parsed
    with ``"{date_format} {time_format}"`` followed by
    :data:`TIMESTAMP_FALLBACK_FORMATS` and ISO-8601. A missing half or an
    unparseable combination yields ``None`` rather than an exception.
    """

    date_text = coerce_date_text(date_value, date_format)
    time_text = coerce_time_text(time_value, time_format)
    if not date_text or not time_text:
        return None

    combined = f"{date_text} {time_text}"
    for fmt in (f"{date_format} {time_format}", *TIMESTAMP_FALLBACK_FORMATS):
        try:
            return datetime.strptime(combined, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(combined)
    except ValueError:
        return None
