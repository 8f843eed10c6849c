"""Trade Instrument Engine: receivables and payables.

Instruments are mutable state-machine records::

    current --(record payment)--> paid            terminal
    current --(owning document deleted)--> reversed  terminal
    current --(dueDate < today, read time only)--> overdue  derived

Every instrument lives in several physical homes at once: two Record Store
collections (``receivables``/``tradeReceivable`` or
``payables``/``tradePayable``) and the matching side-store keys. Writes go
to every home; reads merge the homes in a fixed order and keep the first
copy of each id. :class:`ReplicatedCollection` owns that policy so callers
never see the individual homes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from . import core_logic, ledger, log, parties
from .constants import (
    Collection,
    IdPrefix,
    InstrumentStatus,
    PartyEntryType,
    SettlementMethod,
    SideKey,
)
from .core_logic import ZERO, RuntimeContext
from .errors import BusinessRuleViolation, NotFoundError, StoreUnavailableError, ValidationError
from .record_store import Record


SETTLED_STATUSES = frozenset({InstrumentStatus.PAID.value, InstrumentStatus.REVERSED.value})


class CollectionHome:
    """A Record Store collection acting as one home of a replicated set."""

    def __init__(self, collection: Collection):
        self.name = collection.value
        self.label = self.name

    def read(self, context: RuntimeContext) -> List[Record]:
        return context.store.get(self.name)

    def upsert(self, context: RuntimeContext, record: Mapping[str, Any]) -> None:
        if not context.store.update(self.name, {"id": record["id"]}, record):
            context.store.insert(self.name, record)

    def delete(self, context: RuntimeContext, record_id: str) -> int:
        return context.store.remove(self.name, {"id": record_id})

    def replace(self, context: RuntimeContext, records: Sequence[Mapping[str, Any]]) -> None:
        context.store.set(self.name, records)


class SideStoreHome:
    """A side-store key holding a JSON list, acting as one home."""

    def __init__(self, key: SideKey):
        self.key = key.value
        self.label = f"localStorage:{self.key}"

    def read(self, context: RuntimeContext) -> List[Record]:
        value = context.side_store.get_item(self.key, [])
        if not isinstance(value, list):
            log.warning("Ignoring malformed side-store value under '%s'", self.key)
            return []
        return [item for item in value if isinstance(item, dict)]

    def upsert(self, context: RuntimeContext, record: Mapping[str, Any]) -> None:
        items = self.read(context)
        for index, item in enumerate(items):
            if item.get("id") == record["id"]:
                items[index] = {**item, **record}
                break
        else:
            items.append(dict(record))
        context.side_store.set_item(self.key, items)

    def delete(self, context: RuntimeContext, record_id: str) -> int:
        items = self.read(context)
        kept = [item for item in items if item.get("id") != record_id]
        if len(kept) != len(items):
            context.side_store.set_item(self.key, kept)
        return len(items) - len(kept)

    def replace(self, context: RuntimeContext, records: Sequence[Mapping[str, Any]]) -> None:
        context.side_store.set_item(self.key, [dict(record) for record in records])


class ReplicatedCollection:
    """Multi-home write, merge-on-read collection keyed by ``id``.

    Args:
        homes (Sequence): Homes in read priority order. On conflicting copies
            of the same id the copy from the earliest home wins.
    """

    def __init__(self, homes: Sequence[Any]):
        self.homes = tuple(homes)

    def read_all(self, context: RuntimeContext) -> List[Record]:
        """Merge every readable home, de-duplicating by id (first seen wins)."""

        merged: List[Record] = []
        seen: set[str] = set()
        for home in self.homes:
            try:
                rows = home.read(context)
            except StoreUnavailableError as exc:
                log.warning("Skipping unreadable home '%s': %s", home.label, exc)
                continue
            for row in rows:
                key = row.get("id")
                if key is None or key in seen:
                    continue
                seen.add(key)
                merged.append(row)
        return merged

    def get(self, context: RuntimeContext, record_id: str) -> Optional[Record]:
        for record in self.read_all(context):
            if record.get("id") == record_id:
                return record
        return None

    def write(self, context: RuntimeContext, record: Mapping[str, Any]) -> int:
        """Upsert ``record`` into every home.

        Returns:
            int: Number of homes written.

        Raises:
            StoreUnavailableError: If no home accepted the write.
        """

        written = 0
        for home in self.homes:
            try:
                home.upsert(context, record)
                written += 1
            except StoreUnavailableError as exc:
                log.warning("Write of '%s' to home '%s' failed: %s", record.get("id"), home.label, exc)
        if not written:
            raise StoreUnavailableError(f"No home accepted instrument '{record.get('id')}'")
        return written

    def create(self, context: RuntimeContext, record: Mapping[str, Any]) -> Record:
        """Write a new record to all homes, refusing to overwrite an id."""

        record_id = record.get("id")
        if not record_id:
            raise ValidationError("Instrument id is required")
        if self.get(context, record_id) is not None:
            log.warning("Refusing to overwrite existing instrument '%s'", record_id)
            raise ValidationError(f"Instrument '{record_id}' already exists")
        stored = dict(record)
        self.write(context, stored)
        return stored

    def update(self, context: RuntimeContext, record_id: str, patch: Mapping[str, Any]) -> Record:
        """Apply ``patch`` to the merged copy and write the result everywhere.

        Writing the full merged record to every home, including homes that did
        not hold the id before, keeps all homes in agreement so a stale copy
        cannot resurface on a later read.

        Raises:
            NotFoundError: If no home holds ``record_id``.
        """

        current = self.get(context, record_id)
        if current is None:
            raise NotFoundError(f"Unknown instrument id: {record_id}")
        merged = {**current, **patch}
        self.write(context, merged)
        return merged

    def remove(self, context: RuntimeContext, record_id: str) -> int:
        removed = 0
        for home in self.homes:
            try:
                removed += home.delete(context, record_id)
            except StoreUnavailableError as exc:
                log.warning("Removal of '%s' from home '%s' failed: %s", record_id, home.label, exc)
        return removed

    def sync(self, context: RuntimeContext) -> Dict[str, Any]:
        """Write the merged view back to every home.

        Returns:
            dict[str, Any]: ``total`` merged records and, under ``homes``, the
                number of records each home held before the sync.
        """

        before: Dict[str, int] = {}
        for home in self.homes:
            try:
                before[home.label] = len(home.read(context))
            except StoreUnavailableError:
                before[home.label] = 0
        merged = self.read_all(context)
        for home in self.homes:
            try:
                home.replace(context, merged)
            except StoreUnavailableError as exc:
                log.warning("Sync of home '%s' failed: %s", home.label, exc)
        return {"total": len(merged), "homes": before}


@dataclass(frozen=True)
class InstrumentPaymentCommand:
    """User intent for settling a receivable or payable."""

    instrument_id: str
    method: SettlementMethod
    amount: Optional[Decimal] = None
    payment_date: Optional[date] = None
    reference: Optional[str] = None
    cheque_number: Optional[str] = None


class StatefulInstrument:
    """Receivable or payable book built on a :class:`ReplicatedCollection`.

    Compensation flips the ``status`` field rather than appending history,
    which is the opposite of the ledgers' strategy.
    """

    def __init__(
        self,
        *,
        name: str,
        homes: ReplicatedCollection,
        id_prefix: IdPrefix,
        party_field: str,
        party_id_field: str,
        document_field: str,
        money_in: bool,
        settlement_collection: Collection,
        settlement_prefix: IdPrefix,
        settlement_entry_type: PartyEntryType,
    ):
        self.name = name
        self.homes = homes
        self.id_prefix = id_prefix
        self.party_field = party_field
        self.party_id_field = party_id_field
        self.document_field = document_field
        self.money_in = money_in
        self.settlement_collection = settlement_collection.value
        self.settlement_prefix = settlement_prefix
        self.settlement_entry_type = settlement_entry_type

    @property
    def lock_key(self) -> str:
        return f"instrument:{self.name}"

    def list(self, context: RuntimeContext) -> List[Record]:
        return self.homes.read_all(context)

    def get(self, context: RuntimeContext, instrument_id: str) -> Record:
        """Resolve an instrument across all homes.

        Raises:
            NotFoundError: If no home holds the id.
        """

        record = self.homes.get(context, instrument_id)
        if record is None:
            log.warning("%s lookup failed for id '%s'", self.name.capitalize(), instrument_id)
            raise NotFoundError(f"Unknown {self.name} id: {instrument_id}")
        return record

    def find_by_document(self, context: RuntimeContext, document_id: str) -> List[Record]:
        return [record for record in self.list(context) if record.get(self.document_field) == document_id]

    def next_id(self, context: RuntimeContext) -> str:
        return core_logic.next_document_id(
            context, self.id_prefix, (record.get("id") for record in self.list(context))
        )

    def create(self, context: RuntimeContext, record: Mapping[str, Any]) -> Record:
        """Store a new instrument in every home.

        ``status`` defaults to ``current``. ``amount`` must be positive.

        Raises:
            ValidationError: If the id already exists or the amount is invalid.
        """

        data = dict(record)
        data["amount"] = core_logic.require_positive_money(data.get("amount"))
        data.setdefault("status", InstrumentStatus.CURRENT.value)
        data.setdefault("createdAt", core_logic.timestamp_iso())
        with context.locks.hold(self.lock_key):
            stored = self.homes.create(context, data)
        log.info("Created %s '%s' (amount=%s, status=%s)", self.name, stored["id"], stored["amount"], stored["status"])
        return stored

    def reverse(self, context: RuntimeContext, instrument_id: str, *, allow_paid: bool = False) -> Record:
        """Mark an instrument ``reversed`` and stamp ``reversalDate``.

        Reversing an already reversed instrument is a no-op. Paid instruments
        are terminal unless ``allow_paid`` is set, which the payment and
        receipt deletions use for the paid instruments they created.

        Raises:
            NotFoundError: If the instrument does not exist.
            BusinessRuleViolation: If the instrument is paid and
                ``allow_paid`` is false.
        """

        with context.locks.hold(self.lock_key):
            record = self.get(context, instrument_id)
            status = record.get("status")
            if status == InstrumentStatus.REVERSED.value:
                return record
            if status == InstrumentStatus.PAID.value and not allow_paid:
                log.error("Cannot reverse paid %s '%s'", self.name, instrument_id)
                raise BusinessRuleViolation(f"{self.name.capitalize()} '{instrument_id}' is already paid")
            updated = self.homes.update(
                context,
                instrument_id,
                {
                    "status": InstrumentStatus.REVERSED.value,
                    "reversalDate": core_logic.timestamp_iso(),
                },
            )
        log.info("Reversed %s '%s'", self.name, instrument_id)
        return updated

    def record_payment(self, context: RuntimeContext, command: InstrumentPaymentCommand) -> Dict[str, Record]:
        """Settle an instrument: ``current -> paid``.

        Posts the matching ledger line (cash, or bank for bank and cheque),
        flips the instrument to ``paid`` with its payment details, posts the
        party line when the instrument names a party, and stores a receipt or
        payment record that points back at the instrument.

        Args:
            context (RuntimeContext): Active runtime context.
            command (InstrumentPaymentCommand): Settlement details. ``amount``
                defaults to the instrument amount.

        Returns:
            dict[str, Record]: ``instrument``, ``ledger_entry`` and
                ``settlement`` records.

        Raises:
            NotFoundError: If the instrument does not exist.
            ValidationError: If the amount is invalid or a cheque has no number.
            BusinessRuleViolation: If the instrument is not current.
        """

        method = core_logic.require_choice(command.method, SettlementMethod, "Payment method")
        if method is SettlementMethod.CHEQUE and not (command.cheque_number or "").strip():
            log.warning("Cheque settlement of '%s' without a cheque number", command.instrument_id)
            raise ValidationError("Cheque number is required for cheque payments")

        with context.locks.hold(self.lock_key):
            record = self.get(context, command.instrument_id)
            if record.get("status") in SETTLED_STATUSES:
                log.error("Cannot settle %s '%s' with status '%s'", self.name, record["id"], record.get("status"))
                raise BusinessRuleViolation(
                    f"{self.name.capitalize()} '{record['id']}' is already {record.get('status')}"
                )
            amount = core_logic.require_positive_money(
                command.amount if command.amount is not None else record.get("amount")
            )
            settlement_id = core_logic.next_document_id(
                context,
                self.settlement_prefix,
                (item.get("id") for item in core_logic.read_collection(context, self.settlement_collection)),
            )
            paid_on = core_logic.resolve_date(command.payment_date)
            reference = (command.reference or "").strip() or settlement_id
            party_name = record.get(self.party_field) or ""
            party_id = record.get(self.party_id_field)

            book = ledger.ledger_for(method)
            verb = "Receipt from" if self.money_in else "Payment to"
            extra: Dict[str, Any] = {self.party_id_field: party_id} if party_id else {}
            if command.cheque_number:
                extra["chequeNumber"] = command.cheque_number
            ledger_entry = book.post(
                context,
                ledger.LedgerEntry(
                    description=f"{verb} {party_name}".strip(),
                    reference=reference,
                    inflow=amount if self.money_in else ZERO,
                    outflow=ZERO if self.money_in else amount,
                    entry_date=command.payment_date,
                    extra=extra,
                ),
            )

            patch: Dict[str, Any] = {
                "status": InstrumentStatus.PAID.value,
                "paymentDate": paid_on,
                "paymentMethod": method.value,
                "paymentReference": reference,
                "paidAmount": amount,
            }
            if command.cheque_number:
                patch["chequeNumber"] = command.cheque_number
            instrument = self.homes.update(context, record["id"], patch)

        if party_id:
            action = "received" if self.money_in else "made"
            parties.post_party_transaction(
                context,
                party_id,
                parties.PartyEntry(
                    description=f"Payment {action} for {record['id']}",
                    entry_type=self.settlement_entry_type,
                    credit=amount if self.money_in else ZERO,
                    debit=ZERO if self.money_in else amount,
                    entry_date=command.payment_date,
                    reference=settlement_id,
                ),
            )

        settlement = self._settlement_record(
            record,
            settlement_id=settlement_id,
            amount=amount,
            method=method,
            paid_on=paid_on,
            reference=(command.reference or "").strip() or f"INV-{record['id']}",
            cheque_number=command.cheque_number,
        )
        stored_settlement = context.store.insert(self.settlement_collection, settlement)
        log.info(
            "Recorded %s payment for '%s' via %s (amount=%s, settlement='%s')",
            self.name,
            record["id"],
            method.value,
            amount,
            settlement_id,
        )
        return {"instrument": instrument, "ledger_entry": ledger_entry, "settlement": stored_settlement}

    def _settlement_record(
        self,
        record: Mapping[str, Any],
        *,
        settlement_id: str,
        amount: Decimal,
        method: SettlementMethod,
        paid_on: str,
        reference: str,
        cheque_number: Optional[str],
    ) -> Dict[str, Any]:
        settlement: Dict[str, Any] = {
            "id": settlement_id,
            "date": paid_on,
            self.party_field: record.get(self.party_field),
            self.party_id_field: record.get(self.party_id_field),
            "title": f"Payment for {record['id']}",
            "amount": amount,
            "reference": reference,
            "instrumentId": record["id"],
            "createdAt": core_logic.timestamp_iso(),
        }
        if self.money_in:
            settlement["description"] = f"Received payment for invoice {record['id']}"
            settlement["receiptType"] = "cash" if method is SettlementMethod.CASH else "bank"
        else:
            settlement["description"] = f"Made payment for invoice {record['id']}"
            settlement["type"] = "Cash" if method is SettlementMethod.CASH else "Bank"
        if cheque_number:
            settlement["chequeNumber"] = cheque_number
        return settlement

    def sync(self, context: RuntimeContext) -> Dict[str, Any]:
        with context.locks.hold(self.lock_key):
            result = self.homes.sync(context)
        log.info("Synchronized %s homes (%d records)", self.name, result["total"])
        return result


RECEIVABLES = StatefulInstrument(
    name="receivable",
    homes=ReplicatedCollection(
        [
            CollectionHome(Collection.RECEIVABLES),
            CollectionHome(Collection.TRADE_RECEIVABLE),
            SideStoreHome(SideKey.LOCAL_RECEIVABLES),
            SideStoreHome(SideKey.LOCAL_TRADE_RECEIVABLE),
        ]
    ),
    id_prefix=IdPrefix.RECEIVABLE,
    party_field="customer",
    party_id_field="customerId",
    document_field="billId",
    money_in=True,
    settlement_collection=Collection.RECEIPTS,
    settlement_prefix=IdPrefix.RECEIPT,
    settlement_entry_type=PartyEntryType.RECEIPT,
)

PAYABLES = StatefulInstrument(
    name="payable",
    homes=ReplicatedCollection(
        [
            CollectionHome(Collection.PAYABLES),
            CollectionHome(Collection.TRADE_PAYABLE),
            SideStoreHome(SideKey.LOCAL_PAYABLES),
            SideStoreHome(SideKey.LOCAL_TRADE_PAYABLE),
        ]
    ),
    id_prefix=IdPrefix.PAYABLE,
    party_field="vendor",
    party_id_field="vendorId",
    document_field="purchaseId",
    money_in=False,
    settlement_collection=Collection.PAYMENTS,
    settlement_prefix=IdPrefix.PAYMENT,
    settlement_entry_type=PartyEntryType.PAYMENT,
)


def book_for(name: str) -> StatefulInstrument:
    """Return the receivable or payable book by name."""

    normalized = str(name).strip().lower().rstrip("s")
    if normalized == RECEIVABLES.name:
        return RECEIVABLES
    if normalized == PAYABLES.name:
        return PAYABLES
    raise ValidationError(f"Unknown instrument book: {name}")


def default_due_date(context: RuntimeContext, issued: Optional[date] = None) -> str:
    """Return the configured number of days after ``issued`` (or today)."""

    base = issued if issued is not None else core_logic.today()
    return (base + timedelta(days=context.settings.due_days)).isoformat()


def effective_status(record: Mapping[str, Any], *, on: Optional[date] = None) -> InstrumentStatus:
    """Classify an instrument, deriving ``overdue`` at read time.

    This is the single classification used by both the summary and the
    detail view. A stored ``overdue`` value from older data is treated like
    ``current`` and re-derived.
    """

    on = on if on is not None else core_logic.today()
    status = record.get("status") or InstrumentStatus.CURRENT.value
    if status == InstrumentStatus.PAID.value:
        return InstrumentStatus.PAID
    if status == InstrumentStatus.REVERSED.value:
        return InstrumentStatus.REVERSED
    due = core_logic.parse_date(record.get("dueDate"))
    if due is not None and due < on:
        return InstrumentStatus.OVERDUE
    return InstrumentStatus.CURRENT


def summarize_instruments(records: Iterable[Mapping[str, Any]], *, on: Optional[date] = None) -> Dict[str, Decimal]:
    """Aggregate outstanding amounts.

    ``total`` sums instruments that are neither paid nor reversed;
    ``current`` sums the part whose due date is absent or not yet passed;
    ``overdue`` is the difference.
    """

    total = ZERO
    current = ZERO
    for record in records:
        status = effective_status(record, on=on)
        if status in (InstrumentStatus.PAID, InstrumentStatus.REVERSED):
            continue
        amount = core_logic.to_money(record.get("amount"))
        total += amount
        if status is InstrumentStatus.CURRENT:
            current += amount
    return {"total": total, "current": current, "overdue": total - current}


def filter_instruments(
    records: Iterable[Mapping[str, Any]],
    *,
    party: Optional[str] = None,
    status: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
    on: Optional[date] = None,
) -> List[Mapping[str, Any]]:
    """Filter instruments the way the ledger screens do.

    Args:
        records (Iterable[Mapping[str, Any]]): Merged instrument records.
        party (str | None): Party id or party name to match exactly.
        status (str | None): ``current``, ``overdue``, ``paid`` or
            ``reversed``; compared against :func:`effective_status`.
        start (date | None): Earliest instrument date, inclusive.
        end (date | None): Latest instrument date, inclusive.
        search (str | None): Case-insensitive text matched against the id,
            document id, party name and references.
        on (date | None): Reference day for overdue derivation.

    Returns:
        list[Mapping[str, Any]]: Matching records in input order.
    """

    wanted = core_logic.require_choice(status, InstrumentStatus, "Status") if status else None
    needle = (search or "").strip().lower()
    result = []
    for record in records:
        if party and party not in (
            record.get("customerId"),
            record.get("vendorId"),
            record.get("customer"),
            record.get("vendor"),
        ):
            continue
        if wanted is not None and effective_status(record, on=on) is not wanted:
            continue
        issued = core_logic.parse_date(record.get("date"))
        if start is not None and (issued is None or issued < start):
            continue
        if end is not None and (issued is None or issued > end):
            continue
        if needle:
            haystack = " ".join(
                str(record.get(key) or "")
                for key in ("id", "billId", "purchaseId", "customer", "vendor", "reference", "paymentReference")
            ).lower()
            if needle not in haystack:
                continue
        result.append(record)
    return result


def get_instrument_detail(context: RuntimeContext, book: StatefulInstrument, instrument_id: str) -> Dict[str, Any]:
    """Return an instrument with its derived ``effectiveStatus``."""

    record = dict(book.get(context, instrument_id))
    record["effectiveStatus"] = effective_status(record).value
    return record


def sync_instruments(context: RuntimeContext) -> Dict[str, Dict[str, Any]]:
    """Merge and rewrite the homes of both books."""

    return {"receivables": RECEIVABLES.sync(context), "payables": PAYABLES.sync(context)}
