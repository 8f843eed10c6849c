"""Party Account Engine: customer and vendor running balances.

Customers and vendors share one record type stored in the ``customers``
collection under the ``_id`` key. Each party embeds an append-only
``transactions`` list and keeps ``totalDebit``/``totalCredit`` as running
sums; the current balance is ``totalDebit - totalCredit``.

Posting is a read-modify-write of the whole party record, so every post for
a given party runs under that party's write lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import core_logic, log
from .constants import Collection, PartyEntryType
from .core_logic import ZERO, RuntimeContext
from .errors import NotFoundError, ValidationError
from .record_store import Record


PARTIES = Collection.CUSTOMERS.value


@dataclass(frozen=True)
class PartyCommand:
    """User intent for creating or editing a customer/vendor profile."""

    name: str
    phone: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class PartyEntry:
    """One debit/credit line for a party account."""

    description: str
    entry_type: PartyEntryType
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    entry_date: Optional[date] = None
    reference: Optional[str] = None


def _lock_key(party_id: str) -> str:
    return f"party:{party_id}"


def add_party(context: RuntimeContext, command: PartyCommand) -> Record:
    """Create a party with zero totals and an ``Opening Balance`` line.

    Args:
        context (RuntimeContext): Active runtime context.
        command (PartyCommand): Profile details; ``name`` is required.

    Returns:
        Record: Stored party including its generated ``_id``.

    Raises:
        ValidationError: If the name is blank.
    """

    name = core_logic.require_text(command.name, "Party name")
    record: Dict[str, Any] = {
        "name": name,
        "phone": command.phone or "",
        "address": command.address or "",
        "totalDebit": ZERO,
        "totalCredit": ZERO,
        "transactions": [
            {
                "date": core_logic.resolve_date(None),
                "description": "Opening Balance",
                "type": PartyEntryType.INITIAL.value,
                "debit": ZERO,
                "credit": ZERO,
                "balance": ZERO,
            }
        ],
        "createdAt": core_logic.timestamp_iso(),
    }
    stored = context.store.insert(PARTIES, record)
    log.info("Added party '%s' (%s)", stored["_id"], name)
    return stored


def find_party(context: RuntimeContext, party_id: Optional[str]) -> Optional[Record]:
    if not party_id:
        return None
    return context.store.get_one(PARTIES, {"_id": party_id})


def get_party(context: RuntimeContext, party_id: str) -> Record:
    """Resolve a party by ``_id``.

    Raises:
        NotFoundError: If no party has that id.
    """

    party = find_party(context, party_id)
    if party is None:
        log.warning("Party lookup failed for id '%s'", party_id)
        raise NotFoundError(f"Unknown party id: {party_id}")
    return party


def list_parties(context: RuntimeContext) -> List[Record]:
    return core_logic.read_collection(context, PARTIES)


def filter_parties(records: List[Record], search: Optional[str] = None) -> List[Record]:
    """Keep parties whose name, phone or address contains ``search``."""

    return core_logic.filter_documents(records, search=search, search_keys=("name", "phone", "address"))


def update_party(context: RuntimeContext, party_id: str, command: PartyCommand) -> Record:
    """Replace the profile fields of a party; totals and history are untouched."""

    name = core_logic.require_text(command.name, "Party name")
    with context.locks.hold(_lock_key(party_id)):
        get_party(context, party_id)
        context.store.update(
            PARTIES,
            {"_id": party_id},
            {
                "name": name,
                "phone": command.phone or "",
                "address": command.address or "",
                "updatedAt": core_logic.timestamp_iso(),
            },
        )
        updated = get_party(context, party_id)
    log.info("Updated party '%s'", party_id)
    return updated


def remove_party(context: RuntimeContext, party_id: str) -> None:
    with context.locks.hold(_lock_key(party_id)):
        if not context.store.remove(PARTIES, {"_id": party_id}):
            log.warning("Cannot remove unknown party '%s'", party_id)
            raise NotFoundError(f"Unknown party id: {party_id}")
    log.info("Removed party '%s'", party_id)


def post_party_transaction(context: RuntimeContext, party_id: str, entry: PartyEntry) -> Record:
    """Append a debit/credit line and roll the party totals forward.

    The appended line's ``balance`` is the party balance right after the
    line. Like the ledger's cached balance it is informational; readers use
    :func:`get_party_balance`.

    Args:
        context (RuntimeContext): Active runtime context.
        party_id (str): ``_id`` of the customer or vendor.
        entry (PartyEntry): Line to append.

    Returns:
        Record: The updated party record.

    Raises:
        NotFoundError: If the party does not exist.
        ValidationError: If a debit or credit is negative.
    """

    debit = core_logic.to_money(entry.debit)
    credit = core_logic.to_money(entry.credit)
    if debit < ZERO or credit < ZERO:
        log.warning("Rejected party entry with negative amount for '%s'", party_id)
        raise ValidationError("Debit and credit must be zero or positive")

    with context.locks.hold(_lock_key(party_id)):
        party = get_party(context, party_id)
        total_debit = core_logic.to_money(party.get("totalDebit")) + debit
        total_credit = core_logic.to_money(party.get("totalCredit")) + credit
        line: Dict[str, Any] = {
            "date": core_logic.resolve_date(entry.entry_date),
            "description": entry.description,
            "type": entry.entry_type.value,
            "debit": debit,
            "credit": credit,
            "balance": total_debit - total_credit,
        }
        if entry.reference:
            line["reference"] = entry.reference
        transactions = list(party.get("transactions") or [])
        transactions.append(line)
        context.store.update(
            PARTIES,
            {"_id": party_id},
            {
                "transactions": transactions,
                "totalDebit": total_debit,
                "totalCredit": total_credit,
                "updatedAt": core_logic.timestamp_iso(),
            },
        )
        party.update(transactions=transactions, totalDebit=total_debit, totalCredit=total_credit)

    log.info(
        "Posted %s entry to party '%s' (debit=%s, credit=%s)",
        entry.entry_type.value,
        party_id,
        debit,
        credit,
    )
    return party


def get_party_balance(context: RuntimeContext, party_id: str) -> Decimal:
    party = get_party(context, party_id)
    return core_logic.to_money(party.get("totalDebit")) - core_logic.to_money(party.get("totalCredit"))
