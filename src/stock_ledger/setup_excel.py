"""Utility for initializing the inventory and transaction log workbooks.

The module doubles as a script (``python -m stock_ledger.setup_excel``) and
as a library used by tests or other tooling, so the bootstrap logic stays
the same regardless of the execution path.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from openpyxl.styles import Border, PatternFill, Side

from . import data_manager
from .constants import INVENTORY_COLUMNS, LOG_COLUMNS, SheetName

CONFIG_FILE = "config.ini"

_HEADER_FILL = PatternFill(fill_type="solid", fgColor="FFD3D3D3")
_HEADER_BORDER = Border(bottom=Side(style="thin", color="FF000000"))


def _create_workbook(
    destination: Path,
    *,
    sheet_name: str,
    columns: Sequence[str],
    overwrite: bool,
) -> Path:
    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = data_manager.new_workbook()
    worksheet = workbook.create_sheet(title=sheet_name)
    data_manager.write_header(worksheet, columns)
    for cell in worksheet[1]:
        cell.fill = _HEADER_FILL
        cell.border = _HEADER_BORDER

    workbook.save(destination)
    return destination


def create_inventory_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty inventory ledger workbook at ``destination``.

    Raises ``FileExistsError`` when the target exists and ``overwrite`` is
    ``False``.
    """

    return _create_workbook(
        destination,
        sheet_name=SheetName.INVENTORY.value,
        columns=INVENTORY_COLUMNS,
        overwrite=overwrite,
    )


def create_transaction_log_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty transaction log workbook at ``destination``."""

    return _create_workbook(
        destination,
        sheet_name=SheetName.TRANSACTIONS.value,
        columns=LOG_COLUMNS,
        overwrite=overwrite,
    )


def run_from_config(config_path: Path, *, overwrite: bool = False) -> list[Path]:
    """Create both workbooks at the locations named in ``config.ini``.

    Without ``overwrite`` nothing is created when either target exists.
    """

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    if not overwrite:
        existing = [
            str(path)
            for path in (settings.inventory_file, settings.transaction_log_file)
            if Path(path).expanduser().exists()
        ]
        if existing:
            raise FileExistsError(f"Refusing to overwrite existing workbook: {', '.join(existing)}")
    return [
        create_inventory_workbook(settings.inventory_file, overwrite=overwrite),
        create_transaction_log_workbook(settings.transaction_log_file, overwrite=overwrite),
    ]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the stock ledger workbooks")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbooks if they already exist.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        created = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing files if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    for path in created:
        print(f"[SUCCESS] Created workbook at '{path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
