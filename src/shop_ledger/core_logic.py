"""Runtime context and shared rules for the shop ledger.

Every engine and orchestrator receives a :class:`RuntimeContext` as its first
argument. The context bundles the parsed settings, the Record Store, the
side store and the keyed write locks, so no module needs process-wide
mutable state. This module also hosts the validation guards, value
coercions and the monotonic document id sequence shared by all of them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, IdPrefix, SideKey
from .errors import NotFoundError, StoreUnavailableError, ValidationError
from .record_store import (
    KeyedLocks,
    KeyValueStore,
    MemoryKeyValueStore,
    MemoryRecordStore,
    Record,
    RecordStore,
    WorkbookKeyValueStore,
    WorkbookRecordStore,
)


ZERO = Decimal("0")
EnumT = TypeVar("EnumT", bound=Enum)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and storage references used by the core."""

    settings: data_manager.ConfigSettings
    store: RecordStore
    side_store: KeyValueStore
    locks: KeyedLocks = field(default_factory=KeyedLocks, repr=False, compare=False)
    workbook: Optional[Workbook] = field(default=None, repr=False, compare=False)


def build_workbook_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Wrap a live workbook into a context with workbook-backed stores."""

    timeout = settings.store_timeout
    return RuntimeContext(
        settings=settings,
        store=WorkbookRecordStore(workbook, timeout=timeout),
        side_store=WorkbookKeyValueStore(workbook, timeout=timeout),
        locks=KeyedLocks(timeout=timeout),
        workbook=workbook,
    )


def build_memory_context(settings: Optional[data_manager.ConfigSettings] = None) -> RuntimeContext:
    """Create a context whose stores live only in memory.

    Args:
        settings (data_manager.ConfigSettings | None): Settings to attach. When
            omitted a placeholder pointing at ``ledger.xlsx`` in the current
            directory is used; nothing is ever written there.

    Returns:
        RuntimeContext: Context with empty memory stores.
    """

    if settings is None:
        settings = data_manager.ConfigSettings(
            data_file=Path.cwd() / "ledger.xlsx",
            business_name="Scratch",
            schema_version=EXPECTED_SCHEMA_VERSION,
        )
    timeout = settings.store_timeout
    return RuntimeContext(
        settings=settings,
        store=MemoryRecordStore(timeout=timeout),
        side_store=MemoryKeyValueStore(timeout=timeout),
        locks=KeyedLocks(timeout=timeout),
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context whose stores read and write the workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_workbook_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Memory-only contexts have nothing to persist and return immediately.
    """
    if context.workbook is None:
        log.debug("Context has no workbook; nothing to persist")
        return
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context built on a newly opened workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_workbook_context(context.settings, workbook)


def current_time() -> datetime:
    """Return the current UTC time; patched by tests that need a fixed clock."""

    return datetime.now(UTC)


def today() -> date:
    return current_time().date()


def timestamp_iso() -> str:
    return current_time().isoformat()


def resolve_date(candidate: Optional[date]) -> str:
    """Return ``candidate`` (or today) formatted as ``YYYY-MM-DD``."""

    return (candidate if candidate is not None else today()).isoformat()


def parse_date(value: Any) -> Optional[date]:
    """Interpret a stored date value.

    Accepts :class:`date`, :class:`datetime` and ISO strings (only the first
    ten characters are considered so full timestamps work too). Anything
    empty or unparseable yields ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        log.debug("Ignoring unparseable date value %r", value)
        return None


def to_money(value: Any) -> Decimal:
    """Coerce a stored or user supplied amount into a :class:`Decimal`.

    ``None`` and blank values become zero, mirroring how the records treat a
    missing amount field.

    Raises:
        ValidationError: If ``value`` is not numeric.
    """

    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc


def to_quantity(value: Any) -> int:
    """Coerce a stored quantity into an ``int``; blanks become zero."""

    if value is None or value == "":
        return 0
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid quantity: {value!r}") from exc


def require_text(value: Optional[str], label: str) -> str:
    """Validate that a text field is present and return it stripped.

    Raises:
        ValidationError: If ``value`` is ``None`` or blank.
    """
    if value is None or not str(value).strip():
        log.warning("Validation failed: %s is required", label)
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def require_positive_money(amount: Any, label: str = "Amount") -> Decimal:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValidationError: If ``amount`` is not numeric, zero or negative.
    """
    value = to_money(amount)
    if value <= ZERO:
        log.warning("Monetary value validation failed for %s: %s", label, amount)
        raise ValidationError(f"{label} must be greater than zero")
    return value


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    value = to_quantity(quantity)
    if value <= 0:
        log.warning("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")
    return value


def require_choice(value: Any, choices: Type[EnumT], label: str) -> EnumT:
    """Coerce ``value`` into a member of ``choices``.

    Raises:
        ValidationError: If ``value`` matches no member value.
    """
    if isinstance(value, choices):
        return value
    try:
        return choices(value)
    except ValueError as exc:
        allowed = ", ".join(str(member.value) for member in choices)
        log.warning("Validation failed: %s %r not in (%s)", label, value, allowed)
        raise ValidationError(f"{label} must be one of: {allowed}") from exc


def read_collection(context: RuntimeContext, collection: str) -> List[Record]:
    """Read a collection, degrading to an empty list when the store fails."""

    try:
        return context.store.get(collection)
    except StoreUnavailableError as exc:
        log.warning("Treating collection '%s' as empty: %s", collection, exc)
        return []


def next_document_id(context: RuntimeContext, prefix: IdPrefix | str, existing_ids: Iterable[Any] = ()) -> str:
    """Allocate the next human-readable id for ``prefix``.

    The sequence is a monotonic counter persisted in the side store. It is
    raised to the highest numeric suffix found in ``existing_ids`` first, so
    ids never repeat after deletions or after a restore brings older records
    back.

    Args:
        context (RuntimeContext): Active runtime context.
        prefix (IdPrefix | str): Identifier prefix such as ``BILL``.
        existing_ids (Iterable[Any]): Ids already present in the collection.

    Returns:
        str: Identifier formatted as ``{prefix}-{n:03d}``.
    """

    key = prefix.value if isinstance(prefix, IdPrefix) else str(prefix)
    pattern = re.compile(rf"^{re.escape(key)}-(\d+)$")
    with context.locks.hold(f"counter:{key}"):
        counters = dict(context.side_store.get_item(SideKey.COUNTERS.value, {}) or {})
        highest = int(counters.get(key, 0))
        for existing in existing_ids:
            found = pattern.match(str(existing)) if existing is not None else None
            if found:
                highest = max(highest, int(found.group(1)))
        sequence = highest + 1
        counters[key] = sequence
        context.side_store.set_item(SideKey.COUNTERS.value, counters)
    return f"{key}-{sequence:03d}"


def require_document(context: RuntimeContext, collection: str, document_id: str, label: str) -> Record:
    """Fetch a business document by ``id``.

    Raises:
        NotFoundError: If the collection has no document with that id.
    """
    document = context.store.get_one(collection, {"id": document_id})
    if document is None:
        log.warning("%s lookup failed for id '%s'", label, document_id)
        raise NotFoundError(f"Unknown {label.lower()} id: {document_id}")
    return document


def filter_documents(
    records: Iterable[Record],
    *,
    equals: Optional[Dict[str, Any]] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
    search_keys: Iterable[str] = (),
) -> List[Record]:
    """Keep the records matching every given criterion.

    Args:
        records (Iterable[Record]): Documents to filter.
        equals (dict[str, Any] | None): Field values that must match exactly.
            ``None`` values are ignored so callers can pass optional filters
            straight through.
        start (date | None): Earliest ``date`` kept, inclusive.
        end (date | None): Latest ``date`` kept, inclusive.
        search (str | None): Case-insensitive text looked up in
            ``search_keys``.
        search_keys (Iterable[str]): Fields the search text is matched
            against.

    Returns:
        list[Record]: Matching records in their original order.
    """

    wanted = {key: value for key, value in (equals or {}).items() if value not in (None, "")}
    needle = (search or "").strip().lower()
    keys = tuple(search_keys)
    result = []
    for record in records:
        if any(record.get(key) != value for key, value in wanted.items()):
            continue
        if start is not None or end is not None:
            when = parse_date(record.get("date"))
            if when is None or (start is not None and when < start) or (end is not None and when > end):
                continue
        if needle and not any(needle in str(record.get(key) or "").lower() for key in keys):
            continue
        result.append(record)
    return result
