"""Ledger Engine: cash and bank transaction logs.

Both ledgers are append-only logs. Each entry stores a ``balance`` computed
at insert time from the whole log, but that value is a cache only; the
authoritative balance is always re-derived by summing every inflow and
outflow. Undoing an effect appends a reversal entry with inflow and outflow
swapped and ``reference = "REV-" + original``. A few callers may instead
remove the original entry directly, falling back to the reversal append
when the removal cannot be performed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from . import core_logic, log
from .constants import Collection, IdPrefix, LedgerKind
from .core_logic import ZERO, RuntimeContext
from .errors import StoreUnavailableError, ValidationError
from .record_store import Record


OPENING_REFERENCE = "INIT-001"
OPENING_DESCRIPTION = "Initial Balance"


@dataclass(frozen=True)
class LedgerEntry:
    """User intent for posting one ledger line."""

    description: str
    reference: str
    inflow: Decimal = ZERO
    outflow: Decimal = ZERO
    entry_date: Optional[date] = None
    extra: Mapping[str, Any] = field(default_factory=dict)


class AppendOnlyLedger:
    """One money ledger whose history is never rewritten in place.

    Args:
        kind (LedgerKind): Which ledger this is.
        collection (Collection): Record Store collection holding the log.
        inflow_field (str): Record field for money coming in.
        outflow_field (str): Record field for money going out.
    """

    def __init__(self, kind: LedgerKind, collection: Collection, inflow_field: str, outflow_field: str):
        self.kind = kind
        self.collection = collection.value
        self.inflow_field = inflow_field
        self.outflow_field = outflow_field

    @property
    def lock_key(self) -> str:
        return f"ledger:{self.kind.value}"

    def net_of(self, record: Mapping[str, Any]) -> Decimal:
        return core_logic.to_money(record.get(self.inflow_field)) - core_logic.to_money(record.get(self.outflow_field))

    def entries(self, context: RuntimeContext) -> List[Record]:
        """Return the log in insertion order, empty when the store fails."""

        return core_logic.read_collection(context, self.collection)

    def balance(self, context: RuntimeContext) -> Decimal:
        """Re-derive the balance by summing the whole log.

        The cached ``balance`` field of each entry is ignored.

        Raises:
            StoreUnavailableError: If the log cannot be read.
        """

        return sum((self.net_of(record) for record in context.store.get(self.collection)), ZERO)

    def post(self, context: RuntimeContext, entry: LedgerEntry) -> Record:
        """Append ``entry`` with its cached running balance.

        The prior balance is the sum of all existing inflows minus outflows;
        the stored ``balance`` is that value plus this entry's net. The read
        and the append happen under the ledger's write lock so concurrent
        posts cannot compute a stale prior balance.

        Args:
            context (RuntimeContext): Active runtime context.
            entry (LedgerEntry): Line to post.

        Returns:
            Record: The stored entry.

        Raises:
            ValidationError: If an amount is negative or the reference is blank.
            StoreUnavailableError: If the log cannot be read or written.
        """

        inflow = core_logic.to_money(entry.inflow)
        outflow = core_logic.to_money(entry.outflow)
        if inflow < ZERO or outflow < ZERO:
            log.warning("Rejected %s ledger entry with negative amount (%s/%s)", self.kind.value, inflow, outflow)
            raise ValidationError("Ledger amounts must be zero or positive")
        reference = core_logic.require_text(entry.reference, "Ledger reference")

        with context.locks.hold(self.lock_key):
            prior = self.balance(context)
            record: Dict[str, Any] = dict(entry.extra)
            record.update(
                {
                    "date": core_logic.resolve_date(entry.entry_date),
                    "description": entry.description,
                    "reference": reference,
                    self.inflow_field: inflow,
                    self.outflow_field: outflow,
                    "balance": prior + inflow - outflow,
                    "createdAt": core_logic.timestamp_iso(),
                }
            )
            stored = context.store.insert(self.collection, record)

        log.info(
            "Posted %s ledger entry '%s' (in=%s, out=%s, balance=%s)",
            self.kind.value,
            reference,
            inflow,
            outflow,
            record["balance"],
        )
        return stored

    def find_by_reference(self, context: RuntimeContext, reference: str) -> List[Record]:
        return [record for record in self.entries(context) if record.get("reference") == reference]

    def reverse(
        self,
        context: RuntimeContext,
        *,
        reference: str,
        inflow: Decimal,
        outflow: Decimal,
        description: str,
        entry_date: Optional[date] = None,
        prefix: IdPrefix = IdPrefix.REVERSAL,
    ) -> Record:
        """Append the compensating entry for an earlier effect.

        ``inflow`` and ``outflow`` describe the original entry; the reversal
        posts them swapped under ``{prefix}-{reference}``.
        """

        return self.post(
            context,
            LedgerEntry(
                description=description,
                reference=f"{prefix.value}-{reference}",
                inflow=outflow,
                outflow=inflow,
                entry_date=entry_date,
            ),
        )

    def remove_or_reverse(
        self,
        context: RuntimeContext,
        *,
        reference: str,
        inflow: Decimal,
        outflow: Decimal,
        description: str,
        entry_date: Optional[date] = None,
    ) -> str:
        """Undo an effect, preferring removal of the original entry.

        The first entry whose reference and net amount match is removed by
        its record key. When no such entry exists or the removal fails, a
        reversal entry is appended instead.

        Returns:
            str: ``"removed"`` or ``"reversed"`` describing what happened.
        """

        expected_net = core_logic.to_money(inflow) - core_logic.to_money(outflow)
        with context.locks.hold(self.lock_key):
            for record in self.find_by_reference(context, reference):
                if self.net_of(record) != expected_net or "_id" not in record:
                    continue
                try:
                    context.store.remove(self.collection, {"_id": record["_id"]})
                except StoreUnavailableError as exc:
                    log.warning(
                        "Direct removal of %s entry '%s' failed, appending reversal: %s",
                        self.kind.value,
                        reference,
                        exc,
                    )
                    break
                log.info("Removed %s ledger entry '%s'", self.kind.value, reference)
                return "removed"

            self.reverse(
                context,
                reference=reference,
                inflow=inflow,
                outflow=outflow,
                description=description,
                entry_date=entry_date,
            )
        return "reversed"

    def initialize(self, context: RuntimeContext) -> Optional[Record]:
        """Seed an empty ledger with a zero ``Initial Balance`` entry."""

        with context.locks.hold(self.lock_key):
            if context.store.count(self.collection):
                return None
            return self.post(
                context,
                LedgerEntry(description=OPENING_DESCRIPTION, reference=OPENING_REFERENCE),
            )


CASH_LEDGER = AppendOnlyLedger(LedgerKind.CASH, Collection.CASH_LEDGER, "cashIn", "cashOut")
BANK_LEDGER = AppendOnlyLedger(LedgerKind.BANK, Collection.BANK_LEDGER, "deposit", "withdrawal")


def ledger_for(kind: Any) -> AppendOnlyLedger:
    """Resolve a ledger from a kind, payment mode or method name.

    ``"Cash"``/``"cash"`` select the cash ledger; ``"Bank"``, ``"bank"`` and
    ``"cheque"`` select the bank ledger.

    Raises:
        ValidationError: If ``kind`` names neither ledger.
    """

    value = kind.value if hasattr(kind, "value") else kind
    normalized = str(value).strip().lower()
    if normalized == "cheque":
        normalized = LedgerKind.BANK.value
    ledger_kind = core_logic.require_choice(normalized, LedgerKind, "Ledger")
    return CASH_LEDGER if ledger_kind is LedgerKind.CASH else BANK_LEDGER


def post_cash_transaction(context: RuntimeContext, entry: LedgerEntry) -> Record:
    return CASH_LEDGER.post(context, entry)


def post_bank_transaction(context: RuntimeContext, entry: LedgerEntry) -> Record:
    return BANK_LEDGER.post(context, entry)


def get_cash_balance(context: RuntimeContext) -> Decimal:
    return CASH_LEDGER.balance(context)


def get_bank_balance(context: RuntimeContext) -> Decimal:
    return BANK_LEDGER.balance(context)


def initialize_ledgers(context: RuntimeContext) -> int:
    """Seed every empty ledger with its opening entry.

    Returns:
        int: Number of ledgers that received an opening entry.
    """

    seeded = 0
    for ledger in (CASH_LEDGER, BANK_LEDGER):
        if ledger.initialize(context) is not None:
            seeded += 1
    return seeded
