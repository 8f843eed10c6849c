"""Receipts orchestrator: money received from customers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import core_logic, instruments, ledger, log, parties
from .constants import CashFlowMode, Collection, IdPrefix, InstrumentStatus, PartyEntryType, SideKey
from .core_logic import ZERO, RuntimeContext
from .errors import BusinessRuleViolation
from .record_store import Record
from .workflow import StepOutcome, Workflow


RECEIPTS = Collection.RECEIPTS.value


@dataclass(frozen=True)
class ReceiptCommand:
    """User intent for recording money received from a customer."""

    customer_id: str
    title: str
    amount: Decimal
    receipt_type: CashFlowMode = CashFlowMode.CASH
    receipt_date: Optional[date] = None
    reference: Optional[str] = None
    description: str = ""


def list_receipts(context: RuntimeContext) -> List[Record]:
    """Return stored receipts, leaving out any whose id was deleted.

    A restored backup can bring back a receipt that was deleted after the
    backup was taken; the ``deletedReceiptIds`` list keeps it hidden.
    """

    deleted = set(deleted_receipt_ids(context))
    return [
        receipt for receipt in core_logic.read_collection(context, RECEIPTS) if receipt.get("id") not in deleted
    ]


def get_receipt(context: RuntimeContext, receipt_id: str) -> Record:
    return core_logic.require_document(context, RECEIPTS, receipt_id, "Receipt")


def deleted_receipt_ids(context: RuntimeContext) -> List[str]:
    return list(context.side_store.get_item(SideKey.DELETED_RECEIPT_IDS.value, []) or [])


def filter_receipts(
    records: List[Record],
    *,
    receipt_type: Optional[str] = None,
    customer_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[Record]:
    """Filter receipts by type, customer, date range and free text."""

    return core_logic.filter_documents(
        records,
        equals={"receiptType": receipt_type, "customerId": customer_id},
        start=start,
        end=end,
        search=search,
        search_keys=("id", "customer", "title", "reference", "description"),
    )


def update_receipt_details(
    context: RuntimeContext,
    receipt_id: str,
    *,
    title: str,
    description: str = "",
    reference: str = "",
) -> Record:
    """Edit the descriptive fields of a receipt.

    Amount, type and customer are fixed once posted; changing them means
    deleting the receipt and recording a new one. The ledger reference used
    when the receipt was posted is kept, so later deletion still finds the
    original ledger line.

    Raises:
        NotFoundError: If the receipt does not exist.
        ValidationError: If the title is blank.
    """

    get_receipt(context, receipt_id)
    changes = {
        "title": core_logic.require_text(title, "Title"),
        "description": description or "",
        "reference": (reference or "").strip(),
        "updatedAt": core_logic.timestamp_iso(),
    }
    context.store.update(RECEIPTS, {"id": receipt_id}, changes)
    log.info("Updated details of receipt '%s'", receipt_id)
    return get_receipt(context, receipt_id)


def create_receipt(context: RuntimeContext, command: ReceiptCommand) -> Record:
    """Record a receipt from a customer.

    Posts a cash or bank inflow, credits the customer and files a ``paid``
    receivable under the receipt id.

    Raises:
        ValidationError: If the customer, title, amount or type is invalid.
        NotFoundError: If the customer does not exist.
    """

    customer_id = core_logic.require_text(command.customer_id, "Customer")
    title = core_logic.require_text(command.title, "Title")
    amount = core_logic.require_positive_money(command.amount)
    mode = core_logic.require_choice(command.receipt_type, CashFlowMode, "Receipt type")
    customer = parties.get_party(context, customer_id)

    receipt_id = core_logic.next_document_id(
        context, IdPrefix.RECEIPT, (receipt.get("id") for receipt in core_logic.read_collection(context, RECEIPTS))
    )
    reference = (command.reference or "").strip()
    ledger_reference = reference or receipt_id
    receipt: Dict[str, Any] = {
        "id": receipt_id,
        "date": core_logic.resolve_date(command.receipt_date),
        "customerId": customer_id,
        "customer": customer["name"],
        "title": title,
        "amount": amount,
        "receiptType": mode.value,
        "reference": reference,
        "ledgerReference": ledger_reference,
        "description": command.description or "",
        "createdAt": core_logic.timestamp_iso(),
    }
    stored = context.store.insert(RECEIPTS, receipt)

    ledger.ledger_for(mode).post(
        context,
        ledger.LedgerEntry(
            description=f"Receipt from {customer['name']}: {title}",
            reference=ledger_reference,
            inflow=amount,
            entry_date=command.receipt_date,
            extra={"customerId": customer_id, "receiptId": receipt_id},
        ),
    )
    parties.post_party_transaction(
        context,
        customer_id,
        parties.PartyEntry(
            description=title,
            entry_type=PartyEntryType.RECEIPT,
            credit=amount,
            entry_date=command.receipt_date,
            reference=receipt_id,
        ),
    )
    instruments.RECEIVABLES.create(
        context,
        {
            "id": receipt_id,
            "date": receipt["date"],
            "customerId": customer_id,
            "customer": customer["name"],
            "reference": ledger_reference,
            "dueDate": receipt["date"],
            "amount": amount,
            "status": InstrumentStatus.PAID.value,
            "paymentDate": receipt["date"],
            "paymentMethod": mode.value,
            "paymentReference": receipt_id,
        },
    )

    log.info("Recorded receipt '%s' from '%s' (amount=%s)", receipt_id, customer["name"], amount)
    return stored


def delete_receipt(context: RuntimeContext, receipt_id: str) -> List[StepOutcome]:
    """Delete a direct receipt after undoing its effects.

    The id is remembered in the ``deletedReceiptIds`` side-store list, which
    keeps the receipt out of listings and out of later merge restores.

    Raises:
        NotFoundError: If the receipt does not exist.
        BusinessRuleViolation: If the receipt settled a receivable.
        PartialFailureError: If any step failed.
    """

    receipt = get_receipt(context, receipt_id)
    if receipt.get("instrumentId"):
        log.error("Cannot delete receipt '%s': it settles receivable '%s'", receipt_id, receipt["instrumentId"])
        raise BusinessRuleViolation(
            f"Receipt '{receipt_id}' settles receivable '{receipt['instrumentId']}' and cannot be deleted"
        )

    amount = core_logic.to_money(receipt.get("amount"))
    customer_id = receipt.get("customerId")
    money_book = ledger.ledger_for(receipt.get("receiptType") or CashFlowMode.CASH)
    workflow = Workflow(f"Delete receipt {receipt_id}")

    workflow.run(
        "reverse-ledger",
        lambda: money_book.reverse(
            context,
            reference=receipt.get("ledgerReference") or receipt_id,
            inflow=amount,
            outflow=ZERO,
            description=f"Reversal of receipt {receipt_id}",
        ),
    )

    if customer_id:
        workflow.run(
            "debit-customer",
            lambda: parties.post_party_transaction(
                context,
                customer_id,
                parties.PartyEntry(
                    description=f"Reversal of receipt {receipt_id}",
                    entry_type=PartyEntryType.REVERSAL,
                    debit=amount,
                    reference=receipt_id,
                ),
            ),
        )
    else:
        workflow.skip("debit-customer", "receipt has no customer id")

    def reverse_receivables() -> str:
        linked = [
            receivable
            for receivable in instruments.RECEIVABLES.list(context)
            if receipt_id in (receivable.get("id"), receivable.get("paymentReference"))
        ]
        for receivable in linked:
            instruments.RECEIVABLES.reverse(context, receivable["id"], allow_paid=True)
        return f"{len(linked)} receivable(s) reversed"

    workflow.run("reverse-receivable", reverse_receivables)

    def remember_deleted() -> None:
        ids = deleted_receipt_ids(context)
        if receipt_id not in ids:
            ids.append(receipt_id)
            context.side_store.set_item(SideKey.DELETED_RECEIPT_IDS.value, ids)

    workflow.run("remember-deleted", remember_deleted)
    workflow.run("remove-receipt", lambda: context.store.remove(RECEIPTS, {"id": receipt_id}))
    outcomes = workflow.finish()
    log.info("Deleted receipt '%s'", receipt_id)
    return outcomes
