"""Billing orchestrator: create and delete sales bills.

A bill consumes stock and then posts exactly one financial leg: a cash or
bank ledger line for ``Cash``/``Bank`` bills, or a customer debit plus a
``current`` receivable for ``Credit`` bills. Deleting a bill undoes those
effects step by step before removing the bill itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from . import core_logic, instruments, ledger, log, parties, stock
from .constants import Collection, IdPrefix, InstrumentStatus, PartyEntryType, PaymentMode
from .core_logic import ZERO, RuntimeContext
from .errors import BusinessRuleViolation, ValidationError
from .record_store import Record
from .workflow import StepOutcome, Workflow


BILLS = Collection.BILLS.value


@dataclass(frozen=True)
class LineItem:
    """One line of a bill or purchase."""

    name: str
    quantity: int
    price: Decimal
    color: str = ""


@dataclass(frozen=True)
class BillCommand:
    """User intent for creating a bill."""

    items: Sequence[LineItem]
    payment_mode: PaymentMode
    customer: Optional[str] = None
    customer_id: Optional[str] = None
    bill_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


def validate_line_items(items: Sequence[LineItem]) -> List[Dict[str, Any]]:
    """Validate line items and return them as stored dictionaries.

    Raises:
        ValidationError: If there are no items, or an item has a blank name,
            a non-positive quantity or a non-positive price.
    """

    if not items:
        log.warning("Validation failed: no line items supplied")
        raise ValidationError("At least one line item is required")

    rows = []
    for item in items:
        name = core_logic.require_text(item.name, "Item name")
        quantity = core_logic.require_positive_quantity(item.quantity)
        price = core_logic.require_positive_money(item.price, "Price")
        rows.append(
            {
                "name": name,
                "color": (item.color or "").strip(),
                "quantity": quantity,
                "price": price,
                "total": price * quantity,
            }
        )
    return rows


def list_bills(context: RuntimeContext) -> List[Record]:
    return core_logic.read_collection(context, BILLS)


def get_bill(context: RuntimeContext, bill_id: str) -> Record:
    return core_logic.require_document(context, BILLS, bill_id, "Bill")


def filter_bills(
    records: List[Record],
    *,
    payment_mode: Optional[str] = None,
    customer: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[Record]:
    """Filter bills by payment mode, customer name, date range and free text.

    The search text is matched against the bill id, customer and notes.
    """

    return core_logic.filter_documents(
        records,
        equals={"paymentMode": payment_mode, "customer": customer},
        start=start,
        end=end,
        search=search,
        search_keys=("id", "customer", "notes"),
    )


def create_bill(context: RuntimeContext, command: BillCommand) -> Record:
    """Create a bill and apply its stock and money effects.

    Args:
        context (RuntimeContext): Active runtime context.
        command (BillCommand): Bill contents. Credit bills require
            ``customer_id`` naming an existing party; cash and bank bills fall
            back to the configured walk-in customer name.

    Returns:
        Record: The stored bill.

    Raises:
        ValidationError: If items, amounts, mode or customer are invalid.
        NotFoundError: If a credit bill names an unknown customer.
    """

    mode = core_logic.require_choice(command.payment_mode, PaymentMode, "Payment mode")
    items = validate_line_items(command.items)
    amount = sum((row["total"] for row in items), ZERO)

    customer_name = (command.customer or "").strip()
    customer_id = command.customer_id or None
    if mode is PaymentMode.CREDIT:
        if not customer_id:
            log.warning("Credit bill rejected: no customer selected")
            raise ValidationError("A customer is required for credit bills")
        customer_name = parties.get_party(context, customer_id)["name"]
    elif customer_id:
        customer_name = parties.get_party(context, customer_id)["name"]
    if not customer_name:
        customer_name = context.settings.walk_in_customer

    bill_id = core_logic.next_document_id(
        context, IdPrefix.BILL, (bill.get("id") for bill in list_bills(context))
    )
    bill: Dict[str, Any] = {
        "id": bill_id,
        "date": core_logic.resolve_date(command.bill_date),
        "customer": customer_name,
        "customerId": customer_id,
        "items": items,
        "amount": amount,
        "paymentMode": mode.value,
        "createdAt": core_logic.timestamp_iso(),
    }
    if mode is PaymentMode.CREDIT:
        bill["dueDate"] = (
            command.due_date.isoformat()
            if command.due_date is not None
            else instruments.default_due_date(context, command.bill_date)
        )
    if command.notes:
        bill["notes"] = command.notes
    stored = context.store.insert(BILLS, bill)

    for row in items:
        stock.consume_stock_fifo(context, row["name"], row["color"], row["quantity"])

    if mode is PaymentMode.CREDIT:
        parties.post_party_transaction(
            context,
            customer_id,
            parties.PartyEntry(
                description="Credit Bill",
                entry_type=PartyEntryType.PURCHASE,
                debit=amount,
                entry_date=command.bill_date,
                reference=bill_id,
            ),
        )
        instruments.RECEIVABLES.create(
            context,
            {
                "id": instruments.RECEIVABLES.next_id(context),
                "date": bill["date"],
                "customerId": customer_id,
                "customer": customer_name,
                "billId": bill_id,
                "dueDate": bill["dueDate"],
                "amount": amount,
            },
        )
    else:
        sale_kind = "Cash" if mode is PaymentMode.CASH else "Bank"
        ledger.ledger_for(mode).post(
            context,
            ledger.LedgerEntry(
                description=f"{sale_kind} sale to {customer_name}",
                reference=bill_id,
                inflow=amount,
                entry_date=command.bill_date,
                extra={"customerId": customer_id} if customer_id else {},
            ),
        )

    log.info("Created %s bill '%s' for '%s' (amount=%s)", mode.value, bill_id, customer_name, amount)
    return stored


def delete_bill(context: RuntimeContext, bill_id: str) -> List[StepOutcome]:
    """Delete a bill after undoing its effects.

    Steps run in order and each runs even if an earlier one failed:
    return the sold quantities to stock, undo the money leg (remove or
    reverse the ledger line, or credit the customer and mark the receivable
    ``reversed``), then remove the bill.

    Returns:
        list[StepOutcome]: Outcome of every step.

    Raises:
        NotFoundError: If the bill does not exist.
        BusinessRuleViolation: If a linked receivable is already paid.
        PartialFailureError: If any step failed; applied steps stay applied.
    """

    bill = get_bill(context, bill_id)
    amount = core_logic.to_money(bill.get("amount"))
    mode = bill.get("paymentMode")
    if mode == PaymentMode.CREDIT.value:
        settled = [
            receivable["id"]
            for receivable in instruments.RECEIVABLES.find_by_document(context, bill_id)
            if receivable.get("status") == InstrumentStatus.PAID.value
        ]
        if settled:
            log.error("Cannot delete bill '%s': receivable %s already paid", bill_id, ", ".join(settled))
            raise BusinessRuleViolation(f"Bill '{bill_id}' has paid receivables: {', '.join(settled)}")
    money_book = None if mode == PaymentMode.CREDIT.value else ledger.ledger_for(mode or PaymentMode.CASH.value)
    workflow = Workflow(f"Delete bill {bill_id}")

    def restore_stock() -> str:
        for row in bill.get("items") or []:
            stock.insert_lot(
                context,
                name=row.get("name", ""),
                color=row.get("color", ""),
                quantity=core_logic.to_quantity(row.get("quantity")),
                price=row.get("price"),
                note=f"Returned from {bill_id}",
            )
        return f"{len(bill.get('items') or [])} item(s) returned"

    workflow.run("restore-stock", restore_stock)

    if mode == PaymentMode.CREDIT.value:
        customer_id = bill.get("customerId")
        if customer_id:
            workflow.run(
                "credit-customer",
                lambda: parties.post_party_transaction(
                    context,
                    customer_id,
                    parties.PartyEntry(
                        description=f"Reversal of bill {bill_id}",
                        entry_type=PartyEntryType.REVERSAL,
                        credit=amount,
                        reference=bill_id,
                    ),
                ),
            )
        else:
            workflow.skip("credit-customer", "bill has no customer id")

        def reverse_receivables() -> str:
            linked = instruments.RECEIVABLES.find_by_document(context, bill_id)
            for receivable in linked:
                instruments.RECEIVABLES.reverse(context, receivable["id"])
            return f"{len(linked)} receivable(s) reversed"

        workflow.run("reverse-receivable", reverse_receivables)
    else:
        workflow.run(
            "undo-ledger",
            lambda: money_book.remove_or_reverse(
                context,
                reference=bill_id,
                inflow=amount,
                outflow=ZERO,
                description=f"Reversal of bill {bill_id}",
            ),
        )

    workflow.run("remove-bill", lambda: context.store.remove(BILLS, {"id": bill_id}))
    outcomes = workflow.finish()
    log.info("Deleted bill '%s'", bill_id)
    return outcomes
