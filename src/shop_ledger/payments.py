"""Payments orchestrator: money paid out to vendors.

A direct payment posts a cash or bank outflow, debits the vendor and files
an already ``paid`` payable under the payment's own id so the payable book
shows the settlement history. Payments created by settling a payable carry
``instrumentId`` and are owned by that payable.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import core_logic, instruments, ledger, log, parties
from .constants import CashFlowMode, Collection, IdPrefix, InstrumentStatus, PartyEntryType
from .core_logic import ZERO, RuntimeContext
from .errors import BusinessRuleViolation
from .record_store import Record
from .workflow import StepOutcome, Workflow


PAYMENTS = Collection.PAYMENTS.value


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for paying a vendor."""

    vendor_id: str
    title: str
    amount: Decimal
    payment_type: CashFlowMode = CashFlowMode.CASH
    payment_date: Optional[date] = None
    reference: Optional[str] = None
    cheque_number: Optional[str] = None
    description: str = ""


def list_payments(context: RuntimeContext) -> List[Record]:
    return core_logic.read_collection(context, PAYMENTS)


def get_payment(context: RuntimeContext, payment_id: str) -> Record:
    return core_logic.require_document(context, PAYMENTS, payment_id, "Payment")


def filter_payments(
    records: List[Record],
    *,
    payment_type: Optional[str] = None,
    vendor_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[Record]:
    """Filter payments by type, vendor, date range and free text.

    ``payment_type`` is compared case-insensitively, so ``bank`` matches
    the stored ``Bank``.
    """

    kind = payment_type.capitalize() if payment_type else None
    return core_logic.filter_documents(
        records,
        equals={"type": kind, "vendorId": vendor_id},
        start=start,
        end=end,
        search=search,
        search_keys=("id", "vendor", "title", "description", "reference", "date"),
    )


def create_payment(context: RuntimeContext, command: PaymentCommand) -> Record:
    """Record a payment to a vendor.

    Args:
        context (RuntimeContext): Active runtime context.
        command (PaymentCommand): Payment details.

    Returns:
        Record: The stored payment.

    Raises:
        ValidationError: If the vendor, title, amount or type is invalid.
        NotFoundError: If the vendor does not exist.
    """

    vendor_id = core_logic.require_text(command.vendor_id, "Vendor")
    title = core_logic.require_text(command.title, "Title")
    amount = core_logic.require_positive_money(command.amount)
    mode = core_logic.require_choice(command.payment_type, CashFlowMode, "Payment type")
    vendor = parties.get_party(context, vendor_id)

    payment_id = core_logic.next_document_id(
        context, IdPrefix.PAYMENT, (payment.get("id") for payment in list_payments(context))
    )
    reference = (command.reference or "").strip()
    ledger_reference = reference or payment_id
    payment: Dict[str, Any] = {
        "id": payment_id,
        "date": core_logic.resolve_date(command.payment_date),
        "vendorId": vendor_id,
        "vendor": vendor["name"],
        "title": title,
        "amount": amount,
        "type": mode.value.capitalize(),
        "reference": reference,
        "ledgerReference": ledger_reference,
        "description": command.description or "",
        "createdAt": core_logic.timestamp_iso(),
    }
    if command.cheque_number:
        payment["chequeNumber"] = command.cheque_number
    stored = context.store.insert(PAYMENTS, payment)

    ledger.ledger_for(mode).post(
        context,
        ledger.LedgerEntry(
            description=f"Payment to {vendor['name']}: {title}",
            reference=ledger_reference,
            outflow=amount,
            entry_date=command.payment_date,
            extra={"vendorId": vendor_id, "paymentId": payment_id},
        ),
    )
    parties.post_party_transaction(
        context,
        vendor_id,
        parties.PartyEntry(
            description=title,
            entry_type=PartyEntryType.PAYMENT,
            debit=amount,
            entry_date=command.payment_date,
            reference=payment_id,
        ),
    )
    instruments.PAYABLES.create(
        context,
        {
            "id": payment_id,
            "date": payment["date"],
            "vendorId": vendor_id,
            "vendor": vendor["name"],
            "reference": ledger_reference,
            "dueDate": payment["date"],
            "amount": amount,
            "status": InstrumentStatus.PAID.value,
            "paymentDate": payment["date"],
            "paymentMethod": "Cheque" if command.cheque_number else payment["type"],
            "paymentReference": payment_id,
        },
    )

    log.info("Recorded payment '%s' to '%s' (amount=%s)", payment_id, vendor["name"], amount)
    return stored


def update_payment(context: RuntimeContext, payment_id: str, command: PaymentCommand) -> Record:
    """Edit a payment.

    Changing the amount, vendor or payment type replaces the payment: the
    old one is deleted with all its effects and a new one is recorded under
    a fresh id. Any other change is written in place.

    Returns:
        Record: The updated or replacement payment.
    """

    current = get_payment(context, payment_id)
    amount = core_logic.require_positive_money(command.amount)
    mode = core_logic.require_choice(command.payment_type, CashFlowMode, "Payment type")
    if (
        amount != core_logic.to_money(current.get("amount"))
        or command.vendor_id != current.get("vendorId")
        or mode.value.capitalize() != current.get("type")
    ):
        log.info("Replacing payment '%s' after a change of amount, vendor or type", payment_id)
        delete_payment(context, payment_id)
        return create_payment(context, command)

    patch = {
        "title": core_logic.require_text(command.title, "Title"),
        "date": core_logic.resolve_date(command.payment_date) if command.payment_date else current.get("date"),
        "reference": (command.reference or "").strip(),
        "description": command.description or "",
        "updatedAt": core_logic.timestamp_iso(),
    }
    if command.cheque_number:
        patch["chequeNumber"] = command.cheque_number
    context.store.update(PAYMENTS, {"id": payment_id}, patch)
    log.info("Updated payment '%s'", payment_id)
    return get_payment(context, payment_id)


def delete_payment(context: RuntimeContext, payment_id: str) -> List[StepOutcome]:
    """Delete a direct payment after undoing its effects.

    Raises:
        NotFoundError: If the payment does not exist.
        BusinessRuleViolation: If the payment settled a payable.
        PartialFailureError: If any step failed.
    """

    payment = get_payment(context, payment_id)
    if payment.get("instrumentId"):
        log.error("Cannot delete payment '%s': it settles payable '%s'", payment_id, payment["instrumentId"])
        raise BusinessRuleViolation(
            f"Payment '{payment_id}' settles payable '{payment['instrumentId']}' and cannot be deleted"
        )

    amount = core_logic.to_money(payment.get("amount"))
    vendor_id = payment.get("vendorId")
    money_book = ledger.ledger_for(payment.get("type") or CashFlowMode.CASH)
    workflow = Workflow(f"Delete payment {payment_id}")

    if vendor_id:
        workflow.run(
            "credit-vendor",
            lambda: parties.post_party_transaction(
                context,
                vendor_id,
                parties.PartyEntry(
                    description=f"Reversal of payment {payment_id}",
                    entry_type=PartyEntryType.REVERSAL,
                    credit=amount,
                    reference=payment_id,
                ),
            ),
        )
    else:
        workflow.skip("credit-vendor", "payment has no vendor id")

    workflow.run(
        "reverse-ledger",
        lambda: money_book.reverse(
            context,
            reference=payment.get("ledgerReference") or payment_id,
            inflow=ZERO,
            outflow=amount,
            description=f"Reversal of payment {payment_id}",
        ),
    )

    def reverse_payables() -> str:
        linked = [
            payable
            for payable in instruments.PAYABLES.list(context)
            if payment_id in (payable.get("id"), payable.get("paymentReference"))
        ]
        for payable in linked:
            instruments.PAYABLES.reverse(context, payable["id"], allow_paid=True)
        return f"{len(linked)} payable(s) reversed"

    workflow.run("reverse-payable", reverse_payables)
    workflow.run("remove-payment", lambda: context.store.remove(PAYMENTS, {"id": payment_id}))
    outcomes = workflow.finish()
    log.info("Deleted payment '%s'", payment_id)
    return outcomes
