"""Enumerations shared across the shop ledger modules.

Centralises collection names, payment modes, instrument statuses and id
prefixes so the store, the engines and the command-line layer agree on a
single spelling for every identifier that ends up persisted.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

BACKUP_FORMAT_VERSION = "1.0"
BACKUP_HISTORY_LIMIT = 10
RESTORE_BATCH_SIZE = 10
RECENT_TRANSACTIONS_PAGE_SIZE = 10
PERFORMANCE_MONTHS = 6


class Collection(str, Enum):
    """Enumerate the named record collections held by the Record Store."""

    STOCK = "stock"
    CUSTOMERS = "customers"
    BILLS = "bills"
    PURCHASES = "purchases"
    PAYMENTS = "payments"
    RECEIPTS = "receipts"
    EXPENSES = "expenses"
    EXPENSE_CATEGORIES = "expenseCategories"
    CASH_LEDGER = "cashLedger"
    BANK_LEDGER = "bankLedger"
    RECEIVABLES = "receivables"
    TRADE_RECEIVABLE = "tradeReceivable"
    PAYABLES = "payables"
    TRADE_PAYABLE = "tradePayable"


class SideKey(str, Enum):
    """Enumerate keys used in the key-value side store."""

    LAST_BACKUP = "lastBackupDate"
    BACKUP_HISTORY = "backupHistory"
    COUNTERS = "sequenceCounters"
    DELETED_RECEIPT_IDS = "deletedReceiptIds"
    LOCAL_RECEIVABLES = "receivables"
    LOCAL_TRADE_RECEIVABLE = "tradeReceivable"
    LOCAL_PAYABLES = "payables"
    LOCAL_TRADE_PAYABLE = "tradePayable"


class PaymentMode(str, Enum):
    """Enumerate how a bill was settled."""

    CASH = "Cash"
    BANK = "Bank"
    CREDIT = "Credit"


class PurchaseType(str, Enum):
    """Enumerate how a purchase was settled."""

    CASH = "cash"
    CREDIT = "credit"


class CashFlowMode(str, Enum):
    """Enumerate the ledgers a receipt or expense can be posted to."""

    CASH = "cash"
    BANK = "bank"


class SettlementMethod(str, Enum):
    """Enumerate the methods accepted when settling a trade instrument."""

    CASH = "cash"
    BANK = "bank"
    CHEQUE = "cheque"


class InstrumentStatus(str, Enum):
    """Enumerate receivable and payable statuses.

    ``OVERDUE`` is never stored; it is derived at read time.
    """

    CURRENT = "current"
    PAID = "paid"
    REVERSED = "reversed"
    OVERDUE = "overdue"


class LedgerKind(str, Enum):
    """Enumerate the append-only money ledgers."""

    CASH = "cash"
    BANK = "bank"


class PartyEntryType(str, Enum):
    """Enumerate the transaction types recorded on party accounts."""

    INITIAL = "Initial"
    PURCHASE = "Purchase"
    PAYMENT = "Payment"
    RECEIPT = "Receipt"
    REVERSAL = "Reversal"


class BackupScope(str, Enum):
    """Enumerate the supported snapshot scopes."""

    ALL = "all"
    STOCK = "stock"
    CUSTOMERS = "customers"
    TRANSACTIONS = "transactions"


class RestoreMode(str, Enum):
    """Enumerate the supported restore strategies."""

    REPLACE = "replace"
    MERGE = "merge"


class IdPrefix(str, Enum):
    """Enumerate the prefixes of human-readable document identifiers."""

    BILL = "BILL"
    PURCHASE = "PURCH"
    PAYMENT = "PAY"
    RECEIPT = "RCPT"
    EXPENSE = "EXP"
    RECEIVABLE = "REC"
    PAYABLE = "PAYABLE"
    REVERSAL = "REV"
    ADJUSTMENT = "ADJ"
    UPDATE = "UPD"


class TransactionType(str, Enum):
    """Enumerate the document kinds shown in the recent transactions feed."""

    SALE = "sale"
    PURCHASE = "purchase"
    EXPENSE = "expense"
    RECEIPT = "receipt"
    PAYMENT = "payment"


DEFAULT_EXPENSE_CATEGORIES: tuple[str, ...] = (
    "shop",
    "home",
    "salary",
    "rent",
    "utilities",
    "travel",
    "office",
    "other",
)

# Collections that have no delete primitive in the legacy data set; restore
# in replace mode must warn instead of clearing them.
NON_CLEARABLE_COLLECTIONS: frozenset[str] = frozenset({Collection.PURCHASES.value})


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "BACKUP_FORMAT_VERSION",
    "BACKUP_HISTORY_LIMIT",
    "RESTORE_BATCH_SIZE",
    "RECENT_TRANSACTIONS_PAGE_SIZE",
    "PERFORMANCE_MONTHS",
    "Collection",
    "SideKey",
    "PaymentMode",
    "PurchaseType",
    "CashFlowMode",
    "SettlementMethod",
    "InstrumentStatus",
    "LedgerKind",
    "PartyEntryType",
    "BackupScope",
    "RestoreMode",
    "IdPrefix",
    "TransactionType",
    "DEFAULT_EXPENSE_CATEGORIES",
    "NON_CLEARABLE_COLLECTIONS",
]
