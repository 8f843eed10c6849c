"""Purchasing orchestrator: create and delete stock purchases.

The mirror image of billing. A purchase adds one positive stock lot per
line and then posts either a cash ledger outflow or, on credit, a vendor
credit plus a ``current`` payable.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from . import core_logic, instruments, ledger, log, parties, stock
from .billing import LineItem, validate_line_items
from .constants import Collection, IdPrefix, InstrumentStatus, PartyEntryType, PurchaseType
from .core_logic import ZERO, RuntimeContext
from .errors import BusinessRuleViolation, ValidationError
from .record_store import Record
from .workflow import StepOutcome, Workflow


PURCHASES = Collection.PURCHASES.value


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a purchase."""

    items: Sequence[LineItem]
    purchase_type: PurchaseType
    vendor: Optional[str] = None
    vendor_id: Optional[str] = None
    purchase_date: Optional[date] = None
    due_date: Optional[date] = None
    reference: Optional[str] = None
    notes: str = ""


def list_purchases(context: RuntimeContext) -> List[Record]:
    return core_logic.read_collection(context, PURCHASES)


def get_purchase(context: RuntimeContext, purchase_id: str) -> Record:
    return core_logic.require_document(context, PURCHASES, purchase_id, "Purchase")


def filter_purchases(
    records: List[Record],
    *,
    purchase_type: Optional[str] = None,
    vendor: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[Record]:
    """Filter purchases by type, vendor name, date range and id/vendor/reference text."""

    return core_logic.filter_documents(
        records,
        equals={"purchaseType": purchase_type, "vendor": vendor},
        start=start,
        end=end,
        search=search,
        search_keys=("id", "vendor", "reference"),
    )


def create_purchase(context: RuntimeContext, command: PurchaseCommand) -> Record:
    """Record a purchase, add its stock and post its money leg.

    Args:
        context (RuntimeContext): Active runtime context.
        command (PurchaseCommand): Purchase contents. Credit purchases require
            ``vendor_id`` naming an existing party.

    Returns:
        Record: The stored purchase.

    Raises:
        ValidationError: If items, type or vendor are invalid.
        NotFoundError: If the vendor id is unknown.
    """

    purchase_type = core_logic.require_choice(command.purchase_type, PurchaseType, "Purchase type")
    items = validate_line_items(command.items)
    amount = sum((row["total"] for row in items), ZERO)

    vendor_name = (command.vendor or "").strip()
    vendor_id = command.vendor_id or None
    if purchase_type is PurchaseType.CREDIT and not vendor_id:
        log.warning("Credit purchase rejected: no vendor selected")
        raise ValidationError("A vendor is required for credit purchases")
    if vendor_id:
        vendor_name = parties.get_party(context, vendor_id)["name"]
    if not vendor_name:
        vendor_name = context.settings.unknown_vendor

    purchase_id = core_logic.next_document_id(
        context, IdPrefix.PURCHASE, (purchase.get("id") for purchase in list_purchases(context))
    )
    purchase: Dict[str, Any] = {
        "id": purchase_id,
        "date": core_logic.resolve_date(command.purchase_date),
        "vendor": vendor_name,
        "vendorId": vendor_id,
        "items": items,
        "amount": amount,
        "purchaseType": purchase_type.value,
        "reference": command.reference or "",
        "notes": command.notes or "",
        "createdAt": core_logic.timestamp_iso(),
    }
    if purchase_type is PurchaseType.CREDIT:
        purchase["dueDate"] = (
            command.due_date.isoformat()
            if command.due_date is not None
            else instruments.default_due_date(context, command.purchase_date)
        )
    stored = context.store.insert(PURCHASES, purchase)

    for row in items:
        stock.insert_lot(
            context,
            name=row["name"],
            color=row["color"],
            quantity=row["quantity"],
            price=row["price"],
            lot_date=command.purchase_date,
            note=f"Purchase {purchase_id}",
        )

    if purchase_type is PurchaseType.CREDIT:
        parties.post_party_transaction(
            context,
            vendor_id,
            parties.PartyEntry(
                description="Credit Purchase",
                entry_type=PartyEntryType.PURCHASE,
                credit=amount,
                entry_date=command.purchase_date,
                reference=purchase_id,
            ),
        )
        instruments.PAYABLES.create(
            context,
            {
                "id": instruments.PAYABLES.next_id(context),
                "date": purchase["date"],
                "vendorId": vendor_id,
                "vendor": vendor_name,
                "purchaseId": purchase_id,
                "dueDate": purchase["dueDate"],
                "amount": amount,
                "reference": purchase["reference"],
            },
        )
    else:
        ledger.CASH_LEDGER.post(
            context,
            ledger.LedgerEntry(
                description=f"Purchase from {vendor_name}",
                reference=purchase_id,
                outflow=amount,
                entry_date=command.purchase_date,
                extra={"vendorId": vendor_id} if vendor_id else {},
            ),
        )

    log.info("Created %s purchase '%s' from '%s' (amount=%s)", purchase_type.value, purchase_id, vendor_name, amount)
    return stored


def delete_purchase(context: RuntimeContext, purchase_id: str) -> List[StepOutcome]:
    """Delete a purchase after undoing its effects.

    Steps: take the purchased quantities back out of stock with negative
    lots, undo the money leg (cash reversal entry, or vendor debit plus
    every linked payable marked ``reversed`` in all homes), then remove the
    purchase.

    Raises:
        NotFoundError: If the purchase does not exist.
        BusinessRuleViolation: If a linked payable is already paid.
        PartialFailureError: If any step failed.
    """

    purchase = get_purchase(context, purchase_id)
    amount = core_logic.to_money(purchase.get("amount"))
    is_credit = purchase.get("purchaseType") == PurchaseType.CREDIT.value
    linked = instruments.PAYABLES.find_by_document(context, purchase_id) if is_credit else []
    settled = [payable["id"] for payable in linked if payable.get("status") == InstrumentStatus.PAID.value]
    if settled:
        log.error("Cannot delete purchase '%s': payable %s already paid", purchase_id, ", ".join(settled))
        raise BusinessRuleViolation(f"Purchase '{purchase_id}' has paid payables: {', '.join(settled)}")

    workflow = Workflow(f"Delete purchase {purchase_id}")

    def revert_stock() -> str:
        for row in purchase.get("items") or []:
            stock.insert_lot(
                context,
                name=row.get("name", ""),
                color=row.get("color", ""),
                quantity=-core_logic.to_quantity(row.get("quantity")),
                price=row.get("price"),
                note=f"Reverted purchase {purchase_id}",
            )
        return f"{len(purchase.get('items') or [])} item(s) reverted"

    workflow.run("revert-stock", revert_stock)

    if is_credit:
        vendor_id = purchase.get("vendorId")
        if vendor_id:
            workflow.run(
                "debit-vendor",
                lambda: parties.post_party_transaction(
                    context,
                    vendor_id,
                    parties.PartyEntry(
                        description=f"Reversal of purchase {purchase_id}",
                        entry_type=PartyEntryType.REVERSAL,
                        debit=amount,
                        reference=purchase_id,
                    ),
                ),
            )
        else:
            workflow.skip("debit-vendor", "purchase has no vendor id")

        def reverse_payables() -> str:
            for payable in linked:
                instruments.PAYABLES.reverse(context, payable["id"])
            return f"{len(linked)} payable(s) reversed"

        workflow.run("reverse-payable", reverse_payables)
    else:
        workflow.run(
            "reverse-ledger",
            lambda: ledger.CASH_LEDGER.reverse(
                context,
                reference=purchase_id,
                inflow=ZERO,
                outflow=amount,
                description=f"Reversal of purchase {purchase_id}",
            ),
        )

    workflow.run("remove-purchase", lambda: context.store.remove(PURCHASES, {"id": purchase_id}))
    outcomes = workflow.finish()
    log.info("Deleted purchase '%s'", purchase_id)
    return outcomes
