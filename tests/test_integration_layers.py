"""Integration tests describing end-to-end shop ledger workflows.

Each scenario persists the workbook and reloads it between steps so the
business layer is exercised against what actually reaches disk.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from shop_ledger import backup, billing, core_logic, instruments, ledger, parties, purchasing, stock
from shop_ledger.constants import BackupScope, PaymentMode, PurchaseType, RestoreMode, SettlementMethod
from shop_ledger.errors import BusinessRuleViolation


def _save_and_reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Write the workbook to disk and open a fresh context on it."""

    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def test_credit_trade_lifecycle_flow(workbook_context):
    """Buy on credit, sell on credit, then settle the receivable by bank."""

    context = workbook_context
    vendor = parties.add_party(context, parties.PartyCommand(name="Fabric House"))
    customer = parties.add_party(context, parties.PartyCommand(name="Asha Traders"))
    purchasing.create_purchase(
        context,
        purchasing.PurchaseCommand(
            items=[billing.LineItem(name="Widget", quantity=10, price=Decimal("40"), color="Red")],
            purchase_type=PurchaseType.CREDIT,
            vendor_id=vendor["_id"],
        ),
    )
    context = _save_and_reload(context)

    bill = billing.create_bill(
        context,
        billing.BillCommand(
            items=[billing.LineItem(name="Widget", quantity=3, price=Decimal("75"), color="Red")],
            payment_mode=PaymentMode.CREDIT,
            customer_id=customer["_id"],
        ),
    )
    assert bill["id"] == "BILL-001"
    context = _save_and_reload(context)

    instruments.RECEIVABLES.record_payment(
        context,
        instruments.InstrumentPaymentCommand(instrument_id="REC-001", method=SettlementMethod.BANK),
    )
    context = _save_and_reload(context)

    assert ledger.get_bank_balance(context) == Decimal("225")
    assert ledger.get_cash_balance(context) == Decimal("0")
    assert parties.get_party_balance(context, customer["_id"]) == Decimal("0")
    assert parties.get_party_balance(context, vendor["_id"]) == Decimal("-400")
    assert stock.on_hand(context, "Widget", "Red") == 7
    paid = instruments.filter_instruments(instruments.RECEIVABLES.list(context), status="paid")
    assert [record["id"] for record in paid] == ["REC-001"]
    assert [record["id"] for record in instruments.PAYABLES.list(context)] == ["PAYABLE-001"]


def test_paid_receivable_blocks_bill_deletion_flow(workbook_context):
    """Once its receivable is settled a credit bill can no longer be deleted."""

    context = workbook_context
    customer = parties.add_party(context, parties.PartyCommand(name="Asha Traders"))
    stock.add_stock_lot(context, stock.StockLotCommand(name="Widget", quantity=5, price=Decimal("50")))
    billing.create_bill(
        context,
        billing.BillCommand(
            items=[billing.LineItem(name="Widget", quantity=1, price=Decimal("80"))],
            payment_mode=PaymentMode.CREDIT,
            customer_id=customer["_id"],
        ),
    )
    instruments.RECEIVABLES.record_payment(
        context,
        instruments.InstrumentPaymentCommand(instrument_id="REC-001", method=SettlementMethod.CASH),
    )
    context = _save_and_reload(context)

    with pytest.raises(BusinessRuleViolation):
        billing.delete_bill(context, "BILL-001")
    assert [bill["id"] for bill in billing.list_bills(context)] == ["BILL-001"]


def test_cash_bill_delete_after_reload_flow(workbook_context):
    """Deleting a saved cash bill returns the stock and nets the cash to zero."""

    context = workbook_context
    stock.add_stock_lot(context, stock.StockLotCommand(name="Widget", quantity=10, price=Decimal("50")))
    billing.create_bill(
        context,
        billing.BillCommand(
            items=[billing.LineItem(name="Widget", quantity=4, price=Decimal("90"))],
            payment_mode=PaymentMode.CASH,
            bill_date=date(2024, 3, 1),
        ),
    )
    context = _save_and_reload(context)
    assert ledger.get_cash_balance(context) == Decimal("360")

    billing.delete_bill(context, "BILL-001")
    context = _save_and_reload(context)

    assert billing.list_bills(context) == []
    assert ledger.get_cash_balance(context) == Decimal("0")
    assert stock.on_hand(context, "Widget") == 10


def test_backup_restores_into_fresh_workbook_flow(workbook_context, config_factory, tmp_path):
    """A full backup replayed into an empty workbook reproduces the documents."""

    context = workbook_context
    customer = parties.add_party(context, parties.PartyCommand(name="Asha Traders"))
    stock.add_stock_lot(context, stock.StockLotCommand(name="Widget", quantity=5, price=Decimal("50")))
    billing.create_bill(
        context,
        billing.BillCommand(
            items=[billing.LineItem(name="Widget", quantity=2, price=Decimal("70"))],
            payment_mode=PaymentMode.CREDIT,
            customer_id=customer["_id"],
        ),
    )
    path = backup.create_backup(context, BackupScope.ALL, tmp_path / "backups")

    target = core_logic.load_runtime_context(config_factory().config_path)
    backup.restore(target, backup.read_backup_file(path), RestoreMode.REPLACE)
    target = _save_and_reload(target)

    assert [bill["id"] for bill in billing.list_bills(target)] == ["BILL-001"]
    assert [record["id"] for record in instruments.RECEIVABLES.list(target)] == ["REC-001"]
    assert parties.get_party_balance(target, customer["_id"]) == Decimal("140")
    assert stock.on_hand(target, "Widget") == 3
