"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from stock_ledger import cli, core_logic, data_manager


WRITE_COMMANDS = {"receive", "adjust", "record"}

READ_COMMANDS = {"stock", "log"}


def _registered_choices(parser: argparse.ArgumentParser) -> Mapping[str, argparse.ArgumentParser]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices
    raise AssertionError("parser has no sub-commands")


def _parse(register, argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "stock-ledger"
    assert "stock ledger" in (parser.description or "")


def test_build_parser_accepts_config_override(tmp_path):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(["--config", str(tmp_path / "custom.ini"), "stock"])
    assert args.config == tmp_path / "custom.ini"
    assert args.command == "stock"


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert set(_registered_choices(cli_parser)) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_receive_command_configures_arguments():
    namespace = _parse(
        cli.register_receive_command,
        ["receive", "--product-id", "P1001", "--name", "Chocolate Bar", "--quantity", "12"],
    )
    assert namespace.command == "receive"
    assert namespace.product_id == "P1001"
    assert namespace.name == "Chocolate Bar"
    assert namespace.quantity == "12"


def test_register_adjust_command_collects_entries():
    namespace = _parse(
        cli.register_adjust_command,
        ["adjust", "--entry", "Sortie:P1:4", "--entry", "Entree:P2:1"],
    )
    assert namespace.entries == [
        {"type": "Sortie", "product": "P1", "quantity": "4"},
        {"type": "Entree", "product": "P2", "quantity": "1"},
    ]


def test_register_adjust_command_requires_an_entry():
    with pytest.raises(SystemExit):
        _parse(cli.register_adjust_command, ["adjust"])


def test_register_record_command_collects_entries():
    namespace = _parse(cli.register_record_command, ["record", "--entry", "Entree:P1:2"])
    assert namespace.command == "record"
    assert namespace.entries == [{"type": "Entree", "product": "P1", "quantity": "2"}]


@pytest.mark.parametrize("register, name", [(cli.register_stock_command, "stock"), (cli.register_log_command, "log")])
def test_register_read_command_configures_arguments(register, name):
    namespace = _parse(register, [name])
    assert namespace.command == name


def test_parse_entry_argument_keeps_colons_inside_product():
    assert cli.parse_entry_argument("Sortie:SKU:42:3") == {
        "type": "Sortie",
        "product": "SKU:42",
        "quantity": "3",
    }


@pytest.mark.parametrize("text", ["Sortie", "Sortie:P1", ":P1:3", "Sortie::3", "Sortie:P1:"])
def test_parse_entry_argument_rejects_malformed_text(text):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_entry_argument(text)


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_discovers_config_from_working_directory(config_factory, monkeypatch):
    bundle = config_factory(make_relative=True)
    monkeypatch.chdir(bundle.directory)

    context = cli.load_runtime_context()

    assert context.settings.inventory_file == bundle.inventory_path.resolve()


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(mock_context):
    """dispatch_command should call the executor associated with the command."""

    calls = []
    spec = cli.CommandSpec(
        "alpha",
        "alpha help",
        lambda subparsers: subparsers.add_parser("alpha"),
        lambda context, args: calls.append((context, args)) or 0,
    )
    args = argparse.Namespace(command="alpha")

    assert cli.dispatch_command(mock_context, args, {"alpha": spec}) == 0
    assert calls == [(mock_context, args)]


def test_dispatch_command_handles_unknown_commands(mock_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(mock_context, argparse.Namespace(command="unknown"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(mock_context, argparse.Namespace(), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_receive_invokes_bll(mock_context, monkeypatch, capsys, today):
    called = {}
    record = core_logic.ProductRecord("P1", "Soap", 5, 5, today)

    def fake_upsert(context, product_id, name, quantity):
        called.update(context=context, args=(product_id, name, quantity))
        return record

    monkeypatch.setattr(cli.core_logic, "upsert_product", fake_upsert)
    args = argparse.Namespace(product_id="P1", name="Soap", quantity="5")

    assert cli.run_receive(mock_context, args) == 0
    assert called == {"context": mock_context, "args": ("P1", "Soap", "5")}
    assert json.loads(capsys.readouterr().out) == record.to_dict()


def test_run_adjust_reports_partial_failure(mock_context, monkeypatch, capsys):
    result = core_logic.BatchResult(
        errors=[
            core_logic.AdjustmentError("P2", core_logic.ErrorKind.INSUFFICIENT_STOCK, "Insufficient quantity for product P2")
        ],
        applied=1,
    )
    monkeypatch.setattr(cli.core_logic, "record_batch_adjustments", lambda context, entries: result)
    args = argparse.Namespace(entries=[{"type": "Entree", "product": "P1", "quantity": "1"}])

    assert cli.run_adjust(mock_context, args) == 2
    payload = json.loads(capsys.readouterr().out)
    assert payload["allSucceeded"] is False
    assert payload["errors"] == [
        {"product": "P2", "kind": "insufficient_stock", "error": "Insufficient quantity for product P2"}
    ]


def test_run_adjust_returns_zero_when_all_applied(mock_context, monkeypatch, capsys):
    monkeypatch.setattr(
        cli.core_logic,
        "record_batch_adjustments",
        lambda context, entries: core_logic.BatchResult(applied=len(entries)),
    )
    args = argparse.Namespace(entries=[{"type": "Entree", "product": "P1", "quantity": "1"}])

    assert cli.run_adjust(mock_context, args) == 0
    assert json.loads(capsys.readouterr().out)["applied"] == 1


def test_run_record_reports_counts(mock_context, monkeypatch, capsys):
    monkeypatch.setattr(cli.core_logic, "append_transactions", lambda context, entries: 1)
    args = argparse.Namespace(entries=[{"type": "Entree", "product": "P1", "quantity": "x"}, {"type": "Sortie", "product": "P1", "quantity": "1"}])

    assert cli.run_record(mock_context, args) == 0
    assert json.loads(capsys.readouterr().out) == {"appended": 1, "submitted": 2}


def test_run_stock_report_prints_records(mock_context, monkeypatch, capsys, today):
    records = [core_logic.ProductRecord("P1", "Soap", 5, 0, today)]
    monkeypatch.setattr(cli.core_logic, "get_inventory_snapshot", lambda context: records)

    assert cli.run_stock_report(mock_context, argparse.Namespace()) == 0
    assert json.loads(capsys.readouterr().out) == [
        {
            "productId": "P1",
            "name": "Soap",
            "quantity": 5,
            "dailyTransactions": 0,
            "lastTransactionDate": "2026-10-19",
        }
    ]


def test_run_log_report_prints_entries(mock_context, monkeypatch, capsys):
    entries = [core_logic.TransactionLogEntry("Entree", "P1", 3, None)]
    monkeypatch.setattr(cli.core_logic, "get_transaction_log", lambda context: entries)

    assert cli.run_log_report(mock_context, argparse.Namespace()) == 0
    assert json.loads(capsys.readouterr().out) == [
        {"type": "Entree", "product": "P1", "quantity": 3, "timestamp": None}
    ]


# ---------------------------------------------------------------------------
# Error handling and entry point
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (core_logic.ValidationError("bad"), 2),
        (core_logic.LedgerError("bad"), 2),
        (FileNotFoundError("config.ini"), 3),
        (data_manager.TableNotFoundError("missing sheet"), 3),
        (data_manager.StorageError("disk full"), 1),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


def test_main_runs_commands_end_to_end(config_file, capsys):
    base = ["--config", str(config_file)]

    assert cli.main([*base, "receive", "--product-id", "P1", "--name", "Soap", "--quantity", "5"]) == 0
    assert json.loads(capsys.readouterr().out)["quantity"] == 5

    assert cli.main([*base, "adjust", "--entry", "Sortie:P1:2", "--entry", "Sortie:P1:9"]) == 2
    adjust = json.loads(capsys.readouterr().out)
    assert adjust["applied"] == 1
    assert [error["kind"] for error in adjust["errors"]] == ["insufficient_stock"]

    assert cli.main([*base, "stock"]) == 0
    [product] = json.loads(capsys.readouterr().out)
    assert product["quantity"] == 3
    assert product["dailyTransactions"] == 3

    assert cli.main([*base, "record", "--entry", "Sortie:P1:2"]) == 0
    assert json.loads(capsys.readouterr().out) == {"appended": 1, "submitted": 1}

    assert cli.main([*base, "log"]) == 0
    [entry] = json.loads(capsys.readouterr().out)
    assert entry["type"] == "Sortie"
    assert entry["timestamp"] is not None


def test_main_rejects_invalid_receive(config_file, capsys):
    code = cli.main(["--config", str(config_file), "receive", "--product-id", "P1", "--name", "Soap", "--quantity", "-3"])
    assert code == 2
    assert capsys.readouterr().out == ""


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "stock"]) == 3
