"""Read-only figures for the dashboard."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import billing, core_logic, expenses, instruments, ledger, log, payments, purchasing, receipts, stock
from .constants import PERFORMANCE_MONTHS, RECENT_TRANSACTIONS_PAGE_SIZE, TransactionType
from .core_logic import ZERO, RuntimeContext
from .errors import StoreUnavailableError, ValidationError
from .record_store import Record


@dataclass(frozen=True)
class TransactionPage:
    """One page of the recent transactions feed."""

    items: List[Dict[str, Any]]
    page: int
    total_pages: int
    total: int


def _balance_or_zero(context: RuntimeContext, book: ledger.AppendOnlyLedger) -> Decimal:
    try:
        return book.balance(context)
    except StoreUnavailableError as exc:
        log.warning("Showing %s balance as zero: %s", book.kind.value, exc)
        return ZERO


def get_dashboard_balances(context: RuntimeContext, *, on: Optional[date] = None) -> Dict[str, Any]:
    """Return ledger balances, outstanding instrument totals and stock value.

    Any figure whose source cannot be read is reported as zero.

    Returns:
        dict[str, Any]: ``cash``, ``bank``, ``receivables`` and ``payables``
            (each a ``total``/``current``/``overdue`` summary) and
            ``stockValue``.
    """

    return {
        "cash": _balance_or_zero(context, ledger.CASH_LEDGER),
        "bank": _balance_or_zero(context, ledger.BANK_LEDGER),
        "receivables": instruments.summarize_instruments(instruments.RECEIVABLES.list(context), on=on),
        "payables": instruments.summarize_instruments(instruments.PAYABLES.list(context), on=on),
        "stockValue": stock.stock_value(context),
    }


def _feed_rows(context: RuntimeContext) -> Iterable[Tuple[TransactionType, Record, str]]:
    for bill in billing.list_bills(context):
        yield TransactionType.SALE, bill, f"Sale to {bill.get('customer')}"
    for purchase in purchasing.list_purchases(context):
        yield TransactionType.PURCHASE, purchase, f"Purchase from {purchase.get('vendor')}"
    for expense in expenses.list_expenses(context):
        yield TransactionType.EXPENSE, expense, f"{expense.get('title')} ({expense.get('category')})"
    for receipt in receipts.list_receipts(context):
        yield TransactionType.RECEIPT, receipt, f"Receipt from {receipt.get('customer')}: {receipt.get('title')}"
    for payment in payments.list_payments(context):
        yield TransactionType.PAYMENT, payment, f"Payment to {payment.get('vendor')}: {payment.get('title')}"


def list_recent_transactions(
    context: RuntimeContext,
    transaction_type: Optional[TransactionType | str] = None,
) -> List[Dict[str, Any]]:
    """Merge sales, purchases, expenses, receipts and payments into one feed.

    Args:
        context (RuntimeContext): Active runtime context.
        transaction_type (TransactionType | str | None): Keep only one kind;
            ``None`` or ``all`` keeps every kind.

    Returns:
        list[dict[str, Any]]: Rows with ``date``, ``description``,
            ``amount``, ``type`` and ``id``, newest first. Documents of the
            same day are ordered by creation time.

    Raises:
        ValidationError: If ``transaction_type`` is not a known kind.
    """

    wanted = None
    if transaction_type not in (None, "", "all"):
        wanted = core_logic.require_choice(transaction_type, TransactionType, "Transaction type")

    keyed = []
    for kind, record, description in _feed_rows(context):
        if wanted is not None and kind is not wanted:
            continue
        row = {
            "date": record.get("date"),
            "description": description,
            "amount": core_logic.to_money(record.get("amount")),
            "type": kind.value,
            "id": record.get("id"),
        }
        keyed.append(((str(record.get("date") or ""), str(record.get("createdAt") or "")), row))
    keyed.sort(key=lambda pair: pair[0], reverse=True)
    return [row for _, row in keyed]


def paginate(
    rows: List[Dict[str, Any]],
    page: int = 1,
    page_size: int = RECENT_TRANSACTIONS_PAGE_SIZE,
) -> TransactionPage:
    """Slice ``rows`` into a 1-based page, clamping ``page`` into range.

    Raises:
        ValidationError: If ``page_size`` is not positive.
    """

    if page_size <= 0:
        raise ValidationError("Page size must be greater than zero")
    total_pages = max(1, -(-len(rows) // page_size))
    current = min(max(int(page), 1), total_pages)
    start = (current - 1) * page_size
    return TransactionPage(
        items=rows[start:start + page_size],
        page=current,
        total_pages=total_pages,
        total=len(rows),
    )


def _month_starts(on: date, months: int) -> List[date]:
    starts = []
    for back in range(months - 1, -1, -1):
        index = on.year * 12 + on.month - 1 - back
        starts.append(date(index // 12, index % 12 + 1, 1))
    return starts


def _monthly_total(records: Iterable[Record], month_key: str) -> Decimal:
    in_month = (record for record in records if str(record.get("date") or "").startswith(month_key))
    return sum((core_logic.to_money(record.get("amount")) for record in in_month), ZERO)


def get_business_performance(
    context: RuntimeContext,
    *,
    months: int = PERFORMANCE_MONTHS,
    on: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Return monthly sales, purchases, expenses and profit.

    The series covers ``months`` calendar months ending with the month of
    ``on`` (today by default), oldest first. Profit is sales minus
    purchases minus expenses.

    Returns:
        list[dict[str, Any]]: Rows with ``month`` (``YYYY-MM``), ``label``
            (``Mon YYYY``), ``sales``, ``purchases``, ``expenses`` and
            ``profit``.

    Raises:
        ValidationError: If ``months`` is not positive.
    """

    if months <= 0:
        raise ValidationError("Months must be greater than zero")
    bills = billing.list_bills(context)
    bought = purchasing.list_purchases(context)
    spent = expenses.list_expenses(context)

    series = []
    for start in _month_starts(on or core_logic.today(), months):
        month_key = start.strftime("%Y-%m")
        sales = _monthly_total(bills, month_key)
        purchases = _monthly_total(bought, month_key)
        outgoings = _monthly_total(spent, month_key)
        series.append(
            {
                "month": month_key,
                "label": start.strftime("%b %Y"),
                "sales": sales,
                "purchases": purchases,
                "expenses": outgoings,
                "profit": sales - purchases - outgoings,
            }
        )
    return series
