"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from shop_ledger import backup, billing, cli, core_logic, parties, record_store
from shop_ledger.constants import PaymentMode, SettlementMethod
from shop_ledger.errors import BusinessRuleViolation, PartialFailureError, StoreUnavailableError
from shop_ledger.workflow import StepOutcome


WRITE_COMMANDS = {
    "add-party",
    "add-stock",
    "bill",
    "delete-bill",
    "purchase",
    "delete-purchase",
    "payment",
    "delete-payment",
    "receipt",
    "delete-receipt",
    "expense",
    "delete-expense",
    "settle",
    "backup",
    "restore",
    "sync",
}

READ_COMMANDS = {
    "balances",
    "stock",
    "instruments",
    "party",
    "recent",
    "performance",
}


def _run_main(config_path: Path, *argv: str) -> int:
    return cli.main(["--config", str(config_path), *argv])


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """The top-level parser carries the program name and a --config option."""

    parser = cli.build_parser()
    assert parser.prog == "shop-ledger"
    assert parser.parse_args(["--config", "x.ini"]).config == Path("x.ini")


def test_configure_subcommands_registers_every_command(cli_parser):
    """Write and read commands are all registered exactly once."""

    table = cli.configure_subcommands(cli_parser)

    assert set(table) == WRITE_COMMANDS | READ_COMMANDS
    assert {name for name, spec in table.items() if not spec.mutates} == READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands exposes a CommandSpec per write command."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_bill_command_parses_repeated_items(cli_parser):
    """The bill parser collects every --item into line items."""

    cli.configure_subcommands(cli_parser)
    args = cli_parser.parse_args(
        [
            "bill",
            "--item",
            "Widget:2:250:Red",
            "--item",
            "Gadget:1:99.50",
            "--payment-mode",
            "Credit",
            "--customer-id",
            "abc",
            "--due-date",
            "2024-04-01",
        ]
    )

    assert args.items == [
        billing.LineItem(name="Widget", quantity=2, price=Decimal("250"), color="Red"),
        billing.LineItem(name="Gadget", quantity=1, price=Decimal("99.50")),
    ]
    assert args.due_date == date(2024, 4, 1)


def test_delete_commands_take_document_id(cli_parser):
    """Delete commands store --id as document_id."""

    cli.configure_subcommands(cli_parser)
    args = cli_parser.parse_args(["delete-expense", "--id", "EXP-004"])
    assert args.document_id == "EXP-004"


def test_restore_command_defaults_to_merge(cli_parser):
    """Restores merge unless told otherwise."""

    cli.configure_subcommands(cli_parser)
    args = cli_parser.parse_args(["restore", "--file", "backup.json"])
    assert args.backup_file == Path("backup.json")
    assert args.mode == "merge"


@pytest.mark.parametrize("text", ["Widget", "Widget:two:5", "Widget:1:5:Red:extra", "Widget:1:lots"])
def test_parse_line_item_rejects_malformed_text(text):
    """Malformed line items raise argparse errors."""

    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_line_item(text)


def test_parse_cli_date_rejects_non_iso():
    """Dates must be YYYY-MM-DD."""

    assert cli.parse_cli_date("2024-03-15") == date(2024, 3, 15)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_cli_date("15/03/2024")


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


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor associated with the command."""

    called = {}

    def execute(ctx: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = ctx
        return 0

    table = {"alpha": cli.CommandSpec("alpha", "help", lambda s: s.add_parser("alpha"), execute)}
    assert cli.dispatch_command(context, argparse.Namespace(command="alpha"), table) == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

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
# Translation and execution helpers
# ---------------------------------------------------------------------------


def test_translate_bill_returns_bill_command():
    """translate_bill maps argparse fields onto a BillCommand."""

    item = billing.LineItem(name="Widget", quantity=1, price=Decimal("5"))
    args = argparse.Namespace(
        items=[item],
        payment_mode="Bank",
        customer="Counter sale",
        customer_id=None,
        date=date(2024, 3, 1),
        due_date=None,
        notes=None,
    )

    command = cli.translate_bill(args)

    assert command.items == (item,)
    assert command.payment_mode is PaymentMode.BANK
    assert command.bill_date == date(2024, 3, 1)


def test_translate_settle_returns_payment_command():
    """translate_settle builds an instrument payment command."""

    args = argparse.Namespace(
        instrument_id="REC-001",
        method="cheque",
        amount=None,
        date=None,
        reference=None,
        cheque_number="000123",
    )

    command = cli.translate_settle(args)

    assert command.method is SettlementMethod.CHEQUE
    assert command.cheque_number == "000123"


def test_run_bill_invokes_billing(context, monkeypatch, capsys):
    """run_bill passes the translated command to the billing module."""

    called = {}

    def fake_create(ctx, command):
        called["context"] = ctx
        called["command"] = command
        return {"id": "BILL-001", "amount": Decimal("10")}

    monkeypatch.setattr(cli.billing, "create_bill", fake_create)
    args = argparse.Namespace(
        items=[billing.LineItem(name="Widget", quantity=1, price=Decimal("10"))],
        payment_mode="Cash",
        customer=None,
        customer_id=None,
        date=None,
        due_date=None,
        notes=None,
    )

    assert cli.run_bill(context, args) == 0
    assert called["context"] is context
    assert called["command"].payment_mode is PaymentMode.CASH
    assert capsys.readouterr().out.strip() == "BILL-001 10"


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (BusinessRuleViolation("invalid"), 2),
        (PartialFailureError("Delete bill", [StepOutcome("remove-bill", False, "locked")]), 2),
        (FileNotFoundError("missing"), 3),
        (StoreUnavailableError("timeout"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_failed_steps(caplog: pytest.LogCaptureFixture):
    """Partial failures log every step outcome."""

    caplog.set_level("ERROR")
    error = PartialFailureError(
        "Delete bill",
        [StepOutcome("restore-stock", True), StepOutcome("remove-bill", False, "sheet locked")],
    )
    cli.handle_cli_error(error)
    messages = [record.getMessage() for record in caplog.records]
    assert any("sheet locked" in message for message in messages)


def test_persist_workbook_handles_read_only_workbooks(context, monkeypatch):
    """persist_workbook should surface permission problems as RuntimeError."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_runs_commands_against_workbook(config_file: Path, capsys):
    """Commands persist to the workbook and later commands see the changes."""

    assert _run_main(config_file, "add-stock", "--name", "Widget", "--color", "Red", "--quantity", "5", "--price", "100") == 0
    assert _run_main(config_file, "bill", "--item", "Widget:2:250:Red", "--payment-mode", "Cash") == 0
    capsys.readouterr()

    assert _run_main(config_file, "balances") == 0
    output = capsys.readouterr().out
    assert "cash: 500" in output
    assert "stock value: 300" in output


def test_main_credit_bill_and_settlement(config_file: Path, capsys):
    """A credit bill opens a receivable that settle then pays."""

    assert _run_main(config_file, "add-party", "--name", "Asha Traders") == 0
    party_id = capsys.readouterr().out.strip()
    assert _run_main(config_file, "add-stock", "--name", "Widget", "--quantity", "5", "--price", "100") == 0
    assert _run_main(
        config_file, "bill", "--item", "Widget:1:400", "--payment-mode", "Credit", "--customer-id", party_id
    ) == 0
    capsys.readouterr()

    assert _run_main(config_file, "instruments", "--book", "receivable", "--status", "current") == 0
    assert "REC-001" in capsys.readouterr().out

    assert _run_main(config_file, "settle", "--book", "receivable", "--instrument-id", "REC-001", "--method", "bank") == 0
    assert capsys.readouterr().out.strip() == "RCPT-001"
    assert _run_main(config_file, "party", "--party-id", party_id) == 0
    assert "balance: 0" in capsys.readouterr().out


def test_main_returns_business_rule_exit_code(config_file: Path):
    """Unknown documents surface as exit code 2."""

    assert _run_main(config_file, "delete-bill", "--id", "BILL-404") == 2


def test_main_missing_config_returns_not_found_code(tmp_path: Path):
    """A missing configuration file maps to exit code 3."""

    assert _run_main(tmp_path / "absent.ini", "balances") == 3


def test_main_read_commands_do_not_persist(config_file: Path, monkeypatch):
    """Read-only commands never write the workbook."""

    def fail_persist(_: core_logic.RuntimeContext) -> None:
        raise AssertionError("read command persisted")

    monkeypatch.setattr(cli, "persist_workbook", fail_persist)
    assert _run_main(config_file, "stock", "--low") == 0


def test_main_skips_persist_when_command_fails(monkeypatch, context):
    """Failed commands are reported and leave the workbook untouched."""

    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)
    persist = Mock()
    monkeypatch.setattr(cli, "persist_workbook", persist)

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    assert cli.main(["delete-expense", "--id", "EXP-001"]) == 99
    assert isinstance(handled["error"], BusinessRuleViolation)
    persist.assert_not_called()


def test_main_backup_and_restore_round_trip(config_file: Path, tmp_path: Path, capsys):
    """A backup written by one command can be restored by another."""

    _run_main(config_file, "add-party", "--name", "Asha Traders")
    backup_dir = tmp_path / "backups"
    assert _run_main(config_file, "backup", "--scope", "customers", "--directory", str(backup_dir)) == 0
    backup_path = Path(capsys.readouterr().out.strip().splitlines()[-1])
    assert backup_path.exists()

    assert _run_main(config_file, "restore", "--file", str(backup_path)) == 0
    assert capsys.readouterr().out.strip().endswith("inserted 0, skipped 1")


def test_main_persists_completed_steps_after_partial_restore(
    config_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
):
    """A restore with one failing collection still saves the collections that loaded."""

    document = {
        "metadata": {"version": "1.0", "date": "2024-03-15T09:30:00+00:00", "type": "all"},
        "data": {
            "customers": [{"_id": "party-1", "name": "Asha Traders", "totalDebit": 0, "totalCredit": 0}],
            "bills": [{"id": "BILL-001", "date": "2024-03-01", "customer": "Asha Traders", "amount": 100}],
        },
    }
    backup_path = backup.write_backup_file(document, tmp_path / "partial.json")

    original_insert = record_store.WorkbookRecordStore.insert

    def failing_insert(self, collection, record):
        if collection == "bills":
            raise StoreUnavailableError("bills sheet is locked")
        return original_insert(self, collection, record)

    monkeypatch.setattr(record_store.WorkbookRecordStore, "insert", failing_insert)
    assert _run_main(config_file, "restore", "--file", str(backup_path)) == 2
    monkeypatch.undo()

    reloaded = core_logic.load_runtime_context(config_file)
    assert [party["name"] for party in parties.list_parties(reloaded)] == ["Asha Traders"]
    assert billing.list_bills(reloaded) == []


def test_main_recent_and_performance_reports(config_file: Path, capsys):
    """The dashboard feed and monthly series are available as read commands."""

    assert _run_main(config_file, "add-stock", "--name", "Widget", "--quantity", "5", "--price", "100") == 0
    assert _run_main(config_file, "bill", "--item", "Widget:2:250", "--payment-mode", "Cash") == 0
    capsys.readouterr()

    assert _run_main(config_file, "recent", "--type", "sale") == 0
    output = capsys.readouterr().out
    assert "BILL-001" in output
    assert "page 1 of 1 (1 transactions)" in output

    assert _run_main(config_file, "performance", "--months", "2") == 0
    assert len(capsys.readouterr().out.strip().splitlines()) == 2
