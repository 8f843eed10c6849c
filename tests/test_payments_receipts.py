"""Tests for direct vendor payments and customer receipts."""

from __future__ import annotations

from decimal import Decimal

import pytest

from shop_ledger import instruments, ledger, parties, payments, receipts
from shop_ledger.constants import CashFlowMode, SettlementMethod
from shop_ledger.errors import BusinessRuleViolation, NotFoundError, ValidationError


def _payment(context, vendor, amount="400", **kwargs):
    return payments.create_payment(
        context,
        payments.PaymentCommand(vendor_id=vendor["_id"], title="March supplies", amount=Decimal(amount), **kwargs),
    )


def _receipt(context, customer, amount="150", **kwargs):
    return receipts.create_receipt(
        context,
        receipts.ReceiptCommand(customer_id=customer["_id"], title="Advance", amount=Decimal(amount), **kwargs),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def test_payment_posts_outflow_and_debits_vendor(context, vendor):
    """A direct payment lowers cash, debits the vendor and files a paid payable."""

    payment = _payment(context, vendor)

    assert payment["id"] == "PAY-001"
    assert payment["type"] == "Cash"
    assert ledger.get_cash_balance(context) == Decimal("-400")
    assert parties.get_party_balance(context, vendor["_id"]) == Decimal("400")
    payable = instruments.PAYABLES.get(context, "PAY-001")
    assert payable["status"] == "paid"
    assert payable["paymentReference"] == "PAY-001"


def test_bank_payment_with_cheque_and_reference(context, vendor):
    """Bank payments use the bank ledger and the caller's reference."""

    payment = _payment(
        context, vendor, payment_type=CashFlowMode.BANK, reference="CHQ-9", cheque_number="000009"
    )

    assert payment["type"] == "Bank"
    assert ledger.BANK_LEDGER.find_by_reference(context, "CHQ-9")[0]["withdrawal"] == Decimal("400")
    payable = instruments.PAYABLES.get(context, payment["id"])
    assert payable["paymentMethod"] == "Cheque"
    assert payable["reference"] == "CHQ-9"
    assert "purchaseId" not in payable


def test_payment_validation(context, vendor):
    """Unknown vendors, blank titles and non-positive amounts are rejected."""

    with pytest.raises(NotFoundError):
        payments.create_payment(
            context, payments.PaymentCommand(vendor_id="ghost", title="x", amount=Decimal("1"))
        )
    with pytest.raises(ValidationError):
        payments.create_payment(
            context, payments.PaymentCommand(vendor_id=vendor["_id"], title=" ", amount=Decimal("1"))
        )
    with pytest.raises(ValidationError):
        _payment(context, vendor, amount="0")
    assert payments.list_payments(context) == []


def test_delete_payment_undoes_effects(context, vendor):
    """Deleting a payment reverses the ledger, the vendor line and the payable."""

    payment = _payment(context, vendor)

    outcomes = payments.delete_payment(context, payment["id"])

    assert [outcome.name for outcome in outcomes] == [
        "credit-vendor",
        "reverse-ledger",
        "reverse-payable",
        "remove-payment",
    ]
    assert ledger.get_cash_balance(context) == Decimal("0")
    assert ledger.CASH_LEDGER.entries(context)[-1]["reference"] == "REV-PAY-001"
    assert parties.get_party_balance(context, vendor["_id"]) == Decimal("0")
    assert instruments.PAYABLES.get(context, "PAY-001")["status"] == "reversed"
    assert payments.list_payments(context) == []


def test_update_payment_in_place_for_descriptive_changes(context, vendor):
    """Title and description edits keep the id and the ledger untouched."""

    payment = _payment(context, vendor)

    updated = payments.update_payment(
        context,
        payment["id"],
        payments.PaymentCommand(
            vendor_id=vendor["_id"], title="April supplies", amount=Decimal("400"), description="late"
        ),
    )

    assert updated["id"] == payment["id"]
    assert updated["title"] == "April supplies"
    assert len(ledger.CASH_LEDGER.entries(context)) == 1


def test_update_payment_amount_replaces_payment(context, vendor):
    """Changing the amount deletes the old payment and records a new one."""

    payment = _payment(context, vendor)

    replacement = payments.update_payment(
        context,
        payment["id"],
        payments.PaymentCommand(vendor_id=vendor["_id"], title="March supplies", amount=Decimal("450")),
    )

    assert replacement["id"] == "PAY-002"
    assert [item["id"] for item in payments.list_payments(context)] == ["PAY-002"]
    assert ledger.get_cash_balance(context) == Decimal("-450")
    assert parties.get_party_balance(context, vendor["_id"]) == Decimal("450")


def test_settlement_payment_cannot_be_deleted(context, vendor):
    """Payments created by settling a payable belong to that payable."""

    instruments.PAYABLES.create(
        context,
        {"id": "PAYABLE-001", "vendorId": vendor["_id"], "vendor": vendor["name"], "amount": Decimal("90")},
    )
    result = instruments.PAYABLES.record_payment(
        context,
        instruments.InstrumentPaymentCommand(instrument_id="PAYABLE-001", method=SettlementMethod.CASH),
    )

    with pytest.raises(BusinessRuleViolation):
        payments.delete_payment(context, result["settlement"]["id"])


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


def test_receipt_posts_inflow_and_credits_customer(context, customer):
    """A receipt raises cash, credits the customer and files a paid receivable."""

    receipt = _receipt(context, customer, reference="ADV-1")

    assert receipt["id"] == "RCPT-001"
    assert receipt["receiptType"] == "cash"
    assert ledger.CASH_LEDGER.find_by_reference(context, "ADV-1")[0]["cashIn"] == Decimal("150")
    assert parties.get_party_balance(context, customer["_id"]) == Decimal("-150")
    receivable = instruments.RECEIVABLES.get(context, "RCPT-001")
    assert receivable["status"] == "paid"
    assert receivable["reference"] == "ADV-1"
    assert "billId" not in receivable


def test_bank_receipt_posts_to_bank(context, customer):
    """Bank receipts post a deposit."""

    _receipt(context, customer, receipt_type=CashFlowMode.BANK)
    assert ledger.get_bank_balance(context) == Decimal("150")


def test_delete_receipt_undoes_effects_and_remembers_id(context, customer):
    """Deleting a receipt reverses its effects and records the deleted id."""

    receipt = _receipt(context, customer)

    outcomes = receipts.delete_receipt(context, receipt["id"])

    assert [outcome.name for outcome in outcomes] == [
        "reverse-ledger",
        "debit-customer",
        "reverse-receivable",
        "remember-deleted",
        "remove-receipt",
    ]
    assert ledger.get_cash_balance(context) == Decimal("0")
    assert parties.get_party_balance(context, customer["_id"]) == Decimal("0")
    assert instruments.RECEIVABLES.get(context, "RCPT-001")["status"] == "reversed"
    assert receipts.deleted_receipt_ids(context) == ["RCPT-001"]
    assert receipts.list_receipts(context) == []


def test_settlement_receipt_cannot_be_deleted(context, customer):
    """Receipts created by settling a receivable cannot be deleted directly."""

    instruments.RECEIVABLES.create(
        context,
        {"id": "REC-001", "customerId": customer["_id"], "customer": customer["name"], "amount": Decimal("60")},
    )
    result = instruments.RECEIVABLES.record_payment(
        context,
        instruments.InstrumentPaymentCommand(instrument_id="REC-001", method=SettlementMethod.CASH),
    )

    with pytest.raises(BusinessRuleViolation):
        receipts.delete_receipt(context, result["settlement"]["id"])
    assert receipts.deleted_receipt_ids(context) == []


def test_list_receipts_hides_deleted_ids(context, customer):
    """A stored receipt whose id is in the deleted list is not listed."""

    _receipt(context, customer)
    context.side_store.set_item("deletedReceiptIds", ["RCPT-001"])

    assert context.store.count("receipts") == 1
    assert receipts.list_receipts(context) == []


def test_update_receipt_details_keeps_money_fields(context, customer):
    """Editing a receipt changes its wording but never its ledger effect."""

    _receipt(context, customer, reference="ADV-1")

    updated = receipts.update_receipt_details(
        context, "RCPT-001", title="  Deposit ", description="Half up front", reference="DEP-7"
    )

    assert updated["title"] == "Deposit"
    assert updated["description"] == "Half up front"
    assert updated["reference"] == "DEP-7"
    assert updated["ledgerReference"] == "ADV-1"
    assert updated["amount"] == Decimal("150")
    assert ledger.get_cash_balance(context) == Decimal("150")

    receipts.delete_receipt(context, "RCPT-001")
    assert ledger.get_cash_balance(context) == Decimal("0")


def test_update_receipt_details_validates(context, customer):
    """A blank title or unknown receipt is rejected."""

    _receipt(context, customer)

    with pytest.raises(ValidationError):
        receipts.update_receipt_details(context, "RCPT-001", title=" ")
    with pytest.raises(NotFoundError):
        receipts.update_receipt_details(context, "RCPT-404", title="Deposit")


def test_filter_receipts_by_type_customer_and_text(context, customer, vendor):
    """Receipt filters combine type, customer and free text."""

    _receipt(context, customer, description="for March")
    _receipt(context, customer, receipt_type=CashFlowMode.BANK)
    _receipt(context, vendor, amount="10")
    listed = receipts.list_receipts(context)

    assert [r["id"] for r in receipts.filter_receipts(listed, receipt_type="bank")] == ["RCPT-002"]
    assert [r["id"] for r in receipts.filter_receipts(listed, customer_id=vendor["_id"])] == ["RCPT-003"]
    assert [r["id"] for r in receipts.filter_receipts(listed, search="march")] == ["RCPT-001"]


def test_filter_payments_by_type_and_text(context, vendor):
    """Payment type filters ignore case and search covers vendor and title."""

    _payment(context, vendor)
    _payment(context, vendor, amount="50", payment_type=CashFlowMode.BANK)

    listed = payments.list_payments(context)
    assert [p["id"] for p in payments.filter_payments(listed, payment_type="bank")] == ["PAY-002"]
    assert len(payments.filter_payments(listed, search="fabric")) == 2
    assert payments.filter_payments(listed, search="nothing like it") == []
