"""Tests for expenses and expense categories."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from shop_ledger import expenses, ledger
from shop_ledger.constants import DEFAULT_EXPENSE_CATEGORIES, CashFlowMode
from shop_ledger.errors import NotFoundError, StoreUnavailableError, ValidationError


def _command(amount="120", mode=CashFlowMode.CASH, **kwargs):
    values = {"title": "Electricity", "category": "Utilities", "amount": Decimal(amount), "payment_mode": mode}
    values.update(kwargs)
    return expenses.ExpenseCommand(**values)


def test_create_expense_posts_outflow(context):
    """Expenses post one outflow and store a lower-case category."""

    expense = expenses.create_expense(context, _command())

    assert expense["id"] == "EXP-001"
    assert expense["category"] == "utilities"
    assert expense["bankReference"] == ""
    entry = ledger.CASH_LEDGER.find_by_reference(context, "EXP-001")[0]
    assert entry["cashOut"] == Decimal("120")
    assert entry["description"] == "Expense: Electricity (utilities)"


def test_bank_expense_keeps_bank_reference(context):
    """Bank expenses carry their bank reference onto the ledger line."""

    expenses.create_expense(context, _command(mode=CashFlowMode.BANK, bank_reference="NEFT-42"))

    entry = ledger.BANK_LEDGER.entries(context)[0]
    assert entry["bankReference"] == "NEFT-42"
    assert ledger.get_bank_balance(context) == Decimal("-120")


def test_create_expense_validation(context):
    """Blank titles and non-positive amounts are rejected."""

    with pytest.raises(ValidationError):
        expenses.create_expense(context, _command(title=""))
    with pytest.raises(ValidationError):
        expenses.create_expense(context, _command(amount="0"))
    assert ledger.CASH_LEDGER.entries(context) == []


def test_update_amount_posts_adjustment_and_update_entries(context):
    """Changing the amount appends ADJ and UPD lines; history stays intact."""

    expense = expenses.create_expense(context, _command(amount="120"))

    expenses.update_expense(context, expense["id"], _command(amount="150"))

    references = [entry["reference"] for entry in ledger.CASH_LEDGER.entries(context)]
    assert references == ["EXP-001", "ADJ-EXP-001", "UPD-EXP-001"]
    assert ledger.get_cash_balance(context) == Decimal("-150")
    assert expenses.get_expense(context, expense["id"])["amount"] == Decimal("150")


def test_update_mode_moves_effect_between_ledgers(context):
    """Switching from cash to bank reverses in cash and posts in bank."""

    expense = expenses.create_expense(context, _command(amount="80"))

    expenses.update_expense(context, expense["id"], _command(amount="80", mode=CashFlowMode.BANK))

    assert ledger.get_cash_balance(context) == Decimal("0")
    assert ledger.get_bank_balance(context) == Decimal("-80")
    assert ledger.BANK_LEDGER.entries(context)[0]["reference"] == "UPD-EXP-001"


def test_update_description_leaves_ledgers_alone(context):
    """Non-financial edits touch only the expense record."""

    expense = expenses.create_expense(context, _command())

    updated = expenses.update_expense(context, expense["id"], _command(title="Power bill"))

    assert updated["title"] == "Power bill"
    assert len(ledger.CASH_LEDGER.entries(context)) == 1


def test_delete_expense_reverses_current_effect(context):
    """Deleting an updated expense reverses its latest amount."""

    expense = expenses.create_expense(context, _command(amount="120"))
    expenses.update_expense(context, expense["id"], _command(amount="150"))

    expenses.delete_expense(context, expense["id"])

    assert ledger.get_cash_balance(context) == Decimal("0")
    assert expenses.list_expenses(context) == []
    with pytest.raises(NotFoundError):
        expenses.get_expense(context, expense["id"])


def test_filter_expenses(context):
    """Filters combine category, mode, dates and text search."""

    expenses.create_expense(context, _command(expense_date=date(2024, 3, 1)))
    expenses.create_expense(
        context, _command(title="Shop rent", category="rent", mode=CashFlowMode.BANK, expense_date=date(2024, 3, 5))
    )
    records = expenses.list_expenses(context)

    assert [r["id"] for r in expenses.filter_expenses(records, category="rent")] == ["EXP-002"]
    assert [r["id"] for r in expenses.filter_expenses(records, payment_mode="cash")] == ["EXP-001"]
    assert [r["id"] for r in expenses.filter_expenses(records, start=date(2024, 3, 2))] == ["EXP-002"]
    assert [r["id"] for r in expenses.filter_expenses(records, search="electric")] == ["EXP-001"]


def test_categories_default_and_extend(context):
    """Defaults are listed until a custom category is added alongside them."""

    assert expenses.list_expense_categories(context) == list(DEFAULT_EXPENSE_CATEGORIES)

    assert expenses.add_expense_category(context, " Marketing ") == "marketing"
    assert expenses.list_expense_categories(context) == [*DEFAULT_EXPENSE_CATEGORIES, "marketing"]
    with pytest.raises(ValidationError):
        expenses.add_expense_category(context, "RENT")


def test_categories_fall_back_when_store_fails(context, monkeypatch):
    """An unreadable category collection yields the defaults."""

    def failing_get(collection):
        raise StoreUnavailableError("busy")

    monkeypatch.setattr(context.store, "get", failing_get)
    assert expenses.list_expense_categories(context) == list(DEFAULT_EXPENSE_CATEGORIES)
