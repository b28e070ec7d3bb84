"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import cli, constants, core_logic, data_manager, setup_excel  # noqa: E402

TODAY = date(2026, 10, 19)
YESTERDAY = TODAY - timedelta(days=1)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "InventoryFile = {inventory_file}\n"
    "TransactionLogFile = {transaction_log_file}\n\n"
    "[Locale]\n"
    "DateFormat = %m/%d/%Y\n"
    "TimeFormat = %I:%M:%S %p\n\n"
    "[Concurrency]\n"
    "SerializeWrites = {serialize_writes}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    inventory_path: Path
    transaction_log_path: Path


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def yesterday() -> date:
    return YESTERDAY


@pytest.fixture
def inventory_path(tmp_path: Path) -> Path:
    """Return a freshly bootstrapped inventory workbook."""

    return setup_excel.create_inventory_workbook(tmp_path / f"inv_{uuid.uuid4().hex}" / "productInventory.xlsx")


@pytest.fixture
def transaction_log_path(tmp_path: Path) -> Path:
    """Return a freshly bootstrapped transaction log workbook."""

    return setup_excel.create_transaction_log_workbook(tmp_path / f"log_{uuid.uuid4().hex}" / "transactionLog.xlsx")


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        create_workbooks: bool = True,
        serialize_writes: bool = True,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        inventory = bundle_dir / "excel" / "productInventory.xlsx"
        transactions = bundle_dir / "excel" / "transactionLog.xlsx"
        if create_workbooks:
            setup_excel.create_inventory_workbook(inventory)
            setup_excel.create_transaction_log_workbook(transactions)

        def _entry(path: Path) -> str:
            return str(path.relative_to(bundle_dir)) if make_relative else str(path)

        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                inventory_file=_entry(inventory),
                transaction_log_file=_entry(transactions),
                serialize_writes="true" if serialize_writes else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            inventory_path=inventory,
            transaction_log_path=transactions,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    return core_logic.load_runtime_context(config_file)


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        inventory_file=tmp_path / "productInventory.xlsx",
        transaction_log_file=tmp_path / "transactionLog.xlsx",
    )


@pytest.fixture
def mock_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context whose stores are mocks."""

    return core_logic.RuntimeContext(
        settings=settings,
        inventory_store=Mock(name="inventory_store"),
        log_store=Mock(name="log_store"),
    )


@pytest.fixture
def ledger_table() -> Callable[..., data_manager.Table]:
    """Factory building an inventory table from ``(id, name, qty, daily, date)`` tuples."""

    def _build(*rows: Sequence[Any], headers: Sequence[str] = constants.INVENTORY_COLUMNS) -> data_manager.Table:
        return data_manager.Table(
            name=constants.SheetName.INVENTORY.value,
            headers=list(headers),
            rows=[list(row) for row in rows],
        )

    return _build


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-ledger", description="Stock ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
