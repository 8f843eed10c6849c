"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring and
translating command-line arguments into the command objects consumed by the
business layer. Keeping the CLI thin lets tests and other front-ends reuse
the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import (
    backup,
    billing,
    core_logic,
    dashboard,
    expenses,
    instruments,
    log,
    parties,
    payments,
    purchasing,
    receipts,
    stock,
)
from .constants import (
    BackupScope,
    CashFlowMode,
    InstrumentStatus,
    PaymentMode,
    PurchaseType,
    RestoreMode,
    SettlementMethod,
    TransactionType,
)
from .errors import BusinessRuleViolation, PartialFailureError, StoreUnavailableError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def parse_line_item(text: str) -> billing.LineItem:
    """Parse ``NAME:QUANTITY:PRICE[:COLOR]`` into a line item."""
    parts = text.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(f"Expected NAME:QUANTITY:PRICE[:COLOR], got '{text}'")
    try:
        quantity = int(parts[1])
        price = Decimal(parts[2])
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity or price in '{text}'") from exc
    return billing.LineItem(
        name=parts[0],
        quantity=quantity,
        price=price,
        color=parts[3] if len(parts) == 4 else "",
    )


def parse_cli_date(text: str) -> date:
    """Parse an ISO ``YYYY-MM-DD`` argument."""
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected a YYYY-MM-DD date, got '{text}'") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Command-line tools for the shop ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as bills and payments."""
    specs = {
        "add-party": register_add_party_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "bill": register_bill_command(subparsers),
        "delete-bill": register_delete_command(subparsers, "delete-bill", "bill", run_delete_bill),
        "purchase": register_purchase_command(subparsers),
        "delete-purchase": register_delete_command(subparsers, "delete-purchase", "purchase", run_delete_purchase),
        "payment": register_payment_command(subparsers),
        "delete-payment": register_delete_command(subparsers, "delete-payment", "payment", run_delete_payment),
        "receipt": register_receipt_command(subparsers),
        "delete-receipt": register_delete_command(subparsers, "delete-receipt", "receipt", run_delete_receipt),
        "expense": register_expense_command(subparsers),
        "delete-expense": register_delete_command(subparsers, "delete-expense", "expense", run_delete_expense),
        "settle": register_settle_command(subparsers),
        "backup": register_backup_command(subparsers),
        "restore": register_restore_command(subparsers),
        "sync": register_sync_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as balances and reports."""
    specs = {
        "balances": register_balances_command(subparsers),
        "stock": register_stock_command(subparsers),
        "instruments": register_instruments_command(subparsers),
        "party": register_party_command(subparsers),
        "recent": register_recent_command(subparsers),
        "performance": register_performance_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_party_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-party``."""
    name = "add-party"
    help_text = "Register a new customer or vendor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_party)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    name = "add-stock"
    help_text = "Add a stock lot by hand."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--color", default="")
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--price", type=Decimal, required=True)
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_stock)


def register_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bill``."""
    name = "bill"
    help_text = "Create a sales bill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_line_item,
            required=True,
            help="Line item as NAME:QUANTITY:PRICE[:COLOR]; repeat for more lines.",
        )
        parser.add_argument(
            "--payment-mode",
            choices=[member.value for member in PaymentMode],
            required=True,
        )
        parser.add_argument("--customer", default=None)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--due-date", type=parse_cli_date, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bill)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a stock purchase."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item", dest="items", action="append", type=parse_line_item, required=True)
        parser.add_argument(
            "--purchase-type",
            choices=[member.value for member in PurchaseType],
            required=True,
        )
        parser.add_argument("--vendor", default=None)
        parser.add_argument("--vendor-id", default=None)
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--due-date", type=parse_cli_date, default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--notes", dest="notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payment``."""
    name = "payment"
    help_text = "Record a payment to a vendor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--vendor-id", required=True)
        parser.add_argument("--title", required=True)
        parser.add_argument("--amount", type=Decimal, required=True)
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in CashFlowMode],
            default=CashFlowMode.CASH.value,
        )
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--cheque-number", default=None)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment)


def register_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receipt``."""
    name = "receipt"
    help_text = "Record money received from a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--title", required=True)
        parser.add_argument("--amount", type=Decimal, required=True)
        parser.add_argument(
            "--receipt-type",
            choices=[member.value for member in CashFlowMode],
            default=CashFlowMode.CASH.value,
        )
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receipt)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Record an expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--title", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--amount", type=Decimal, required=True)
        parser.add_argument(
            "--payment-mode",
            choices=[member.value for member in CashFlowMode],
            default=CashFlowMode.CASH.value,
        )
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--bank-reference", default=None)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expense)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    document: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a ``delete-*`` command taking a single ``--id``."""
    help_text = f"Delete a {document} and undo its effects."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--id", dest="document_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Record payment of a receivable or payable."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--book", choices=["receivable", "payable"], required=True)
        parser.add_argument("--instrument-id", required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in SettlementMethod],
            required=True,
        )
        parser.add_argument("--amount", type=Decimal, default=None)
        parser.add_argument("--date", type=parse_cli_date, default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--cheque-number", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_backup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Write a JSON backup of the selected collections."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--scope",
            choices=[member.value for member in BackupScope],
            default=BackupScope.ALL.value,
        )
        parser.add_argument("--directory", type=Path, default=Path.cwd())
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backup)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Restore a JSON backup."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file", dest="backup_file", type=Path, required=True)
        parser.add_argument(
            "--mode",
            choices=[member.value for member in RestoreMode],
            default=RestoreMode.MERGE.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Reconcile every copy of the receivables and payables."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync)


def register_balances_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Display cash, bank and outstanding balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances, mutates=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only show items below the low-stock threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_instruments_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``instruments``."""
    name = "instruments"
    help_text = "List receivables or payables."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--book", choices=["receivable", "payable"], required=True)
        parser.add_argument("--status", choices=[member.value for member in InstrumentStatus], default=None)
        parser.add_argument("--party", default=None)
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_instruments_report, mutates=False)


def register_party_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``party``."""
    name = "party"
    help_text = "Display a party's balance and transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_party_report, mutates=False)


def register_recent_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recent``."""
    name = "recent"
    help_text = "List recent sales, purchases, expenses, receipts and payments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="transaction_type", choices=[member.value for member in TransactionType])
        parser.add_argument("--page", type=int, default=1)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recent_report, mutates=False)


def register_performance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``performance``."""
    name = "performance"
    help_text = "Display monthly sales, purchases, expenses and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--months", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_performance_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_party(args: argparse.Namespace) -> parties.PartyCommand:
    """Translate CLI args into a party command object."""
    return parties.PartyCommand(name=args.name, phone=args.phone, address=args.address)


def translate_add_stock(args: argparse.Namespace) -> stock.StockLotCommand:
    """Translate CLI args into a stock lot command object."""
    return stock.StockLotCommand(
        name=args.name,
        quantity=args.quantity,
        price=args.price,
        color=args.color,
        lot_date=args.date,
        note=args.note,
    )


def translate_bill(args: argparse.Namespace) -> billing.BillCommand:
    """Translate CLI args into a bill command object."""
    return billing.BillCommand(
        items=tuple(args.items),
        payment_mode=PaymentMode(args.payment_mode),
        customer=args.customer,
        customer_id=args.customer_id,
        bill_date=args.date,
        due_date=args.due_date,
        notes=args.notes,
    )


def translate_purchase(args: argparse.Namespace) -> purchasing.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return purchasing.PurchaseCommand(
        items=tuple(args.items),
        purchase_type=PurchaseType(args.purchase_type),
        vendor=args.vendor,
        vendor_id=args.vendor_id,
        purchase_date=args.date,
        due_date=args.due_date,
        reference=args.reference,
        notes=args.notes,
    )


def translate_payment(args: argparse.Namespace) -> payments.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return payments.PaymentCommand(
        vendor_id=args.vendor_id,
        title=args.title,
        amount=args.amount,
        payment_type=CashFlowMode(args.payment_type),
        payment_date=args.date,
        reference=args.reference,
        cheque_number=args.cheque_number,
        description=args.description,
    )


def translate_receipt(args: argparse.Namespace) -> receipts.ReceiptCommand:
    """Translate CLI args into a receipt command object."""
    return receipts.ReceiptCommand(
        customer_id=args.customer_id,
        title=args.title,
        amount=args.amount,
        receipt_type=CashFlowMode(args.receipt_type),
        receipt_date=args.date,
        reference=args.reference,
        description=args.description,
    )


def translate_expense(args: argparse.Namespace) -> expenses.ExpenseCommand:
    """Translate CLI args into an expense command object."""
    return expenses.ExpenseCommand(
        title=args.title,
        category=args.category,
        amount=args.amount,
        payment_mode=CashFlowMode(args.payment_mode),
        expense_date=args.date,
        bank_reference=args.bank_reference,
        description=args.description,
    )


def translate_settle(args: argparse.Namespace) -> instruments.InstrumentPaymentCommand:
    """Translate CLI args into an instrument payment command object."""
    return instruments.InstrumentPaymentCommand(
        instrument_id=args.instrument_id,
        method=SettlementMethod(args.method),
        amount=args.amount,
        payment_date=args.date,
        reference=args.reference,
        cheque_number=args.cheque_number,
    )


def run_add_party(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-party workflow."""
    party = parties.add_party(context, translate_add_party(args))
    print(party["_id"])
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-stock workflow."""
    lot = stock.add_stock_lot(context, translate_add_stock(args))
    print(lot["_id"])
    return 0


def run_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bill workflow."""
    bill = billing.create_bill(context, translate_bill(args))
    print(f"{bill['id']} {bill['amount']}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow."""
    purchase = purchasing.create_purchase(context, translate_purchase(args))
    print(f"{purchase['id']} {purchase['amount']}")
    return 0


def run_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow."""
    payment = payments.create_payment(context, translate_payment(args))
    print(payment["id"])
    return 0


def run_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the receipt workflow."""
    receipt = receipts.create_receipt(context, translate_receipt(args))
    print(receipt["id"])
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the expense workflow."""
    expense = expenses.create_expense(context, translate_expense(args))
    print(expense["id"])
    return 0


def run_delete_bill(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-bill workflow."""
    billing.delete_bill(context, args.document_id)
    return 0


def run_delete_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-purchase workflow."""
    purchasing.delete_purchase(context, args.document_id)
    return 0


def run_delete_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-payment workflow."""
    payments.delete_payment(context, args.document_id)
    return 0


def run_delete_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-receipt workflow."""
    receipts.delete_receipt(context, args.document_id)
    return 0


def run_delete_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-expense workflow."""
    expenses.delete_expense(context, args.document_id)
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the instrument settlement workflow."""
    result = instruments.book_for(args.book).record_payment(context, translate_settle(args))
    print(result["settlement"]["id"])
    return 0


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the backup workflow."""
    path = backup.create_backup(context, BackupScope(args.scope), args.directory)
    print(path)
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restore workflow."""
    document = backup.read_backup_file(args.backup_file)
    result = backup.restore(context, document, RestoreMode(args.mode))
    for warning in result.warnings:
        print(f"warning: {warning}")
    print(f"inserted {sum(result.inserted.values())}, skipped {sum(result.skipped.values())}")
    return 0


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the instrument synchronisation workflow."""
    result = instruments.sync_instruments(context)
    for book, summary in result.items():
        print(f"{book}: {summary['total']}")
    return 0


def run_balances(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the balances report."""
    figures = dashboard.get_dashboard_balances(context)
    print(f"cash: {figures['cash']}")
    print(f"bank: {figures['bank']}")
    for book in ("receivables", "payables"):
        summary = figures[book]
        print(f"{book}: total {summary['total']}, current {summary['current']}, overdue {summary['overdue']}")
    print(f"stock value: {figures['stockValue']}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    rows = stock.list_low_stock(context) if args.low else stock.summarize_stock(context)
    for row in rows:
        print(f"{row['name']}\t{row['color'] or '-'}\t{row['totalQuantity']}\t{row['totalValue']}")
    return 0


def run_instruments_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the instrument listing."""
    book = instruments.book_for(args.book)
    records = instruments.filter_instruments(
        book.list(context),
        party=args.party,
        status=args.status,
        search=args.search,
    )
    for record in records:
        party = record.get(book.party_field) or "-"
        print(
            f"{record['id']}\t{party}\t{record.get('amount')}\t"
            f"{record.get('dueDate') or '-'}\t{instruments.effective_status(record).value}"
        )
    return 0


def run_party_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the party statement report."""
    party = parties.get_party(context, args.party_id)
    for line in party.get("transactions") or []:
        print(f"{line.get('date')}\t{line.get('type')}\t{line.get('debit')}\t{line.get('credit')}\t{line.get('description')}")
    print(f"balance: {parties.get_party_balance(context, args.party_id)}")
    return 0


def run_recent_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recent transactions listing."""
    rows = dashboard.list_recent_transactions(context, args.transaction_type)
    page = dashboard.paginate(rows, args.page)
    for row in page.items:
        print(f"{row['date']}\t{row['type']}\t{row['id']}\t{row['amount']}\t{row['description']}")
    print(f"page {page.page} of {page.total_pages} ({page.total} transactions)")
    return 0


def run_performance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the monthly performance report."""
    if args.months is None:
        series = dashboard.get_business_performance(context)
    else:
        series = dashboard.get_business_performance(context, months=args.months)
    for row in series:
        print(f"{row['label']}\t{row['sales']}\t{row['purchases']}\t{row['expenses']}\t{row['profit']}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, PartialFailureError):
        log.error("%s", error)
        for outcome in error.outcomes:
            log.error("  %s: %s", outcome.name, "ok" if outcome.ok else outcome.detail)
        return 2
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StoreUnavailableError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        spec = command_table[args.command]
        if spec.mutates:
            core_logic.ensure_schema_version(context)
        try:
            exit_code = dispatch_command(context, args, command_table)
        except PartialFailureError as error:
            # steps that completed are not rolled back, so they must reach disk
            exit_code = handle_cli_error(error)
            if spec.mutates:
                log.warning("Saving the completed steps of '%s'", args.command)
                persist_workbook(context)
            return exit_code
        if exit_code == 0 and spec.mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
