"""Expenses orchestrator and expense categories.

Expenses only ever touch the cash or bank ledger. Because the ledgers are
append-only, correcting the amount or payment mode of an expense posts two
new entries, a full adjustment reversal of the original and a fresh entry
for the new values, instead of editing the original line.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import core_logic, ledger, log
from .constants import DEFAULT_EXPENSE_CATEGORIES, CashFlowMode, Collection, IdPrefix
from .core_logic import ZERO, RuntimeContext
from .errors import StoreUnavailableError, ValidationError
from .record_store import Record
from .workflow import StepOutcome, Workflow


EXPENSES = Collection.EXPENSES.value
CATEGORIES = Collection.EXPENSE_CATEGORIES.value


@dataclass(frozen=True)
class ExpenseCommand:
    """User intent for recording or editing an expense."""

    title: str
    category: str
    amount: Decimal
    payment_mode: CashFlowMode = CashFlowMode.CASH
    expense_date: Optional[date] = None
    bank_reference: Optional[str] = None
    description: str = ""


def list_expenses(context: RuntimeContext) -> List[Record]:
    return core_logic.read_collection(context, EXPENSES)


def get_expense(context: RuntimeContext, expense_id: str) -> Record:
    return core_logic.require_document(context, EXPENSES, expense_id, "Expense")


def _validated(command: ExpenseCommand) -> Dict[str, Any]:
    mode = core_logic.require_choice(command.payment_mode, CashFlowMode, "Payment mode")
    return {
        "title": core_logic.require_text(command.title, "Title"),
        "category": core_logic.require_text(command.category, "Category").lower(),
        "amount": core_logic.require_positive_money(command.amount),
        "paymentMode": mode.value,
        "date": core_logic.resolve_date(command.expense_date),
        "bankReference": (command.bank_reference or "") if mode is CashFlowMode.BANK else "",
        "description": command.description or "",
    }


def _ledger_entry(fields: Dict[str, Any], reference: str, entry_date: Optional[date]) -> ledger.LedgerEntry:
    return ledger.LedgerEntry(
        description=f"Expense: {fields['title']} ({fields['category']})",
        reference=reference,
        outflow=fields["amount"],
        entry_date=entry_date,
        extra={"bankReference": fields["bankReference"]} if fields["bankReference"] else {},
    )


def create_expense(context: RuntimeContext, command: ExpenseCommand) -> Record:
    """Record an expense and post its ledger outflow.

    Raises:
        ValidationError: If title, category, amount or payment mode is invalid.
    """

    fields = _validated(command)
    expense_id = core_logic.next_document_id(
        context, IdPrefix.EXPENSE, (expense.get("id") for expense in list_expenses(context))
    )
    expense = {"id": expense_id, **fields, "createdAt": core_logic.timestamp_iso()}
    stored = context.store.insert(EXPENSES, expense)
    ledger.ledger_for(fields["paymentMode"]).post(context, _ledger_entry(fields, expense_id, command.expense_date))
    log.info("Recorded expense '%s' (%s, amount=%s)", expense_id, fields["category"], fields["amount"])
    return stored


def update_expense(context: RuntimeContext, expense_id: str, command: ExpenseCommand) -> Record:
    """Edit an expense.

    When the amount or payment mode changes, the original ledger effect is
    reversed under ``ADJ-{id}`` in its original ledger and the new effect
    is posted under ``UPD-{id}`` in the new ledger. Other edits leave the
    ledgers untouched.

    Args:
        context (RuntimeContext): Active runtime context.
        expense_id (str): Expense to edit.
        command (ExpenseCommand): Complete new values.

    Returns:
        Record: The updated expense.

    Raises:
        NotFoundError: If the expense does not exist.
        ValidationError: If the new values are invalid.
    """

    current = get_expense(context, expense_id)
    fields = _validated(command)
    old_amount = core_logic.to_money(current.get("amount"))
    old_mode = current.get("paymentMode") or CashFlowMode.CASH.value

    if fields["amount"] != old_amount or fields["paymentMode"] != old_mode:
        ledger.ledger_for(old_mode).reverse(
            context,
            reference=expense_id,
            inflow=ZERO,
            outflow=old_amount,
            description=f"Adjustment for expense {expense_id}",
            prefix=IdPrefix.ADJUSTMENT,
        )
        ledger.ledger_for(fields["paymentMode"]).post(
            context,
            _ledger_entry(fields, f"{IdPrefix.UPDATE.value}-{expense_id}", command.expense_date),
        )

    context.store.update(EXPENSES, {"id": expense_id}, {**fields, "updatedAt": core_logic.timestamp_iso()})
    log.info("Updated expense '%s'", expense_id)
    return get_expense(context, expense_id)


def delete_expense(context: RuntimeContext, expense_id: str) -> List[StepOutcome]:
    """Reverse an expense's current ledger effect and remove it.

    Raises:
        NotFoundError: If the expense does not exist.
        PartialFailureError: If either step failed.
    """

    expense = get_expense(context, expense_id)
    money_book = ledger.ledger_for(expense.get("paymentMode") or CashFlowMode.CASH)
    workflow = Workflow(f"Delete expense {expense_id}")
    workflow.run(
        "reverse-ledger",
        lambda: money_book.reverse(
            context,
            reference=expense_id,
            inflow=ZERO,
            outflow=core_logic.to_money(expense.get("amount")),
            description=f"Reversal of expense {expense_id}",
        ),
    )
    workflow.run("remove-expense", lambda: context.store.remove(EXPENSES, {"id": expense_id}))
    outcomes = workflow.finish()
    log.info("Deleted expense '%s'", expense_id)
    return outcomes


def filter_expenses(
    records: List[Record],
    *,
    category: Optional[str] = None,
    payment_mode: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> List[Record]:
    """Filter expenses by category, payment mode, date range and free text."""

    needle = (search or "").strip().lower()
    result = []
    for record in records:
        if category and record.get("category") != category:
            continue
        if payment_mode and record.get("paymentMode") != payment_mode:
            continue
        spent = core_logic.parse_date(record.get("date"))
        if start is not None and (spent is None or spent < start):
            continue
        if end is not None and (spent is None or spent > end):
            continue
        if needle and not any(
            needle in str(record.get(key) or "").lower() for key in ("title", "category", "description")
        ):
            continue
        result.append(record)
    return result


def list_expense_categories(context: RuntimeContext) -> List[str]:
    """Return category names, falling back to the defaults.

    The defaults are used when the collection is empty or cannot be read.
    """

    try:
        stored = context.store.get(CATEGORIES)
    except StoreUnavailableError as exc:
        log.warning("Using default expense categories: %s", exc)
        return list(DEFAULT_EXPENSE_CATEGORIES)
    names = [str(record.get("name")) for record in stored if record.get("name")]
    return names or list(DEFAULT_EXPENSE_CATEGORIES)


def add_expense_category(context: RuntimeContext, name: str) -> str:
    """Add a category; names are stored lower-case.

    The first custom category also stores the defaults so they stay listed.

    Raises:
        ValidationError: If the name is blank or already present.
    """

    category = core_logic.require_text(name, "Category").lower()
    existing = list_expense_categories(context)
    if category in (item.lower() for item in existing):
        log.warning("Expense category '%s' already exists", category)
        raise ValidationError(f"Category '{category}' already exists")
    if not context.store.count(CATEGORIES):
        for default in DEFAULT_EXPENSE_CATEGORIES:
            context.store.insert(CATEGORIES, {"name": default})
    context.store.insert(CATEGORIES, {"name": category})
    log.info("Added expense category '%s'", category)
    return category
