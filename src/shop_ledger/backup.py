"""Backup/Restore Engine.

A backup document is plain JSON::

    {"metadata": {"version": "1.0", "date": "<ISO 8601>", "type": "<scope>"},
     "data": {"<collection>": [<record>, ...], ...}}

Snapshots tolerate unreadable collections by writing them as empty lists.
Restores run one workflow step per collection so a failing collection is
logged and reported without stopping the others. Long operations report
progress through an optional ``on_progress(fraction, message)`` callback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from . import core_logic, data_manager, instruments, log, receipts
from .constants import (
    BACKUP_FORMAT_VERSION,
    BACKUP_HISTORY_LIMIT,
    NON_CLEARABLE_COLLECTIONS,
    RESTORE_BATCH_SIZE,
    BackupScope,
    Collection,
    RestoreMode,
    SideKey,
)
from .core_logic import RuntimeContext
from .errors import PartialFailureError, StoreUnavailableError, ValidationError
from .record_store import Record, generate_record_key
from .workflow import StepOutcome, Workflow


ProgressCallback = Callable[[float, Optional[str]], None]

SCOPE_COLLECTIONS: Dict[BackupScope, tuple[str, ...]] = {
    BackupScope.ALL: tuple(collection.value for collection in Collection),
    BackupScope.STOCK: (Collection.STOCK.value,),
    BackupScope.CUSTOMERS: (Collection.CUSTOMERS.value,),
    BackupScope.TRANSACTIONS: (Collection.BILLS.value, Collection.PURCHASES.value),
}

# The first collection of each book is snapshotted from the merged view so
# instruments that only survive in the side store are not lost.
MERGED_VIEWS = {
    Collection.RECEIVABLES.value: instruments.RECEIVABLES,
    Collection.PAYABLES.value: instruments.PAYABLES,
}

LOCAL_INSTRUMENT_KEYS = (
    SideKey.LOCAL_RECEIVABLES,
    SideKey.LOCAL_TRADE_RECEIVABLE,
    SideKey.LOCAL_PAYABLES,
    SideKey.LOCAL_TRADE_PAYABLE,
)


@dataclass(frozen=True)
class Snapshot:
    """A backup document plus its encoded size in bytes."""

    document: Dict[str, Any]
    size: int


@dataclass
class RestoreResult:
    """Per-collection outcome of a restore."""

    mode: RestoreMode
    inserted: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    outcomes: List[StepOutcome] = field(default_factory=list)


def _report(on_progress: Optional[ProgressCallback], fraction: float, message: Optional[str] = None) -> None:
    if on_progress is not None:
        on_progress(min(max(fraction, 0.0), 1.0), message)


def _read_for_backup(context: RuntimeContext, collection: str) -> List[Record]:
    book = MERGED_VIEWS.get(collection)
    try:
        if book is not None:
            return book.list(context)
        return context.store.get(collection)
    except StoreUnavailableError as exc:
        log.warning("Backing up collection '%s' as empty: %s", collection, exc)
        return []


def snapshot(
    context: RuntimeContext,
    scope: BackupScope | str = BackupScope.ALL,
    on_progress: Optional[ProgressCallback] = None,
) -> Snapshot:
    """Capture the collections of ``scope`` into a backup document.

    Args:
        context (RuntimeContext): Active runtime context.
        scope (BackupScope | str): ``all``, ``stock``, ``customers`` or
            ``transactions`` (bills and purchases).
        on_progress (ProgressCallback | None): Called after each collection.

    Returns:
        Snapshot: The JSON-serialisable document and its size in bytes.

    Raises:
        ValidationError: If ``scope`` is unknown.
    """

    backup_scope = core_logic.require_choice(scope, BackupScope, "Backup type")
    names = SCOPE_COLLECTIONS[backup_scope]
    data: Dict[str, List[Record]] = {}
    for index, name in enumerate(names, start=1):
        data[name] = _read_for_backup(context, name)
        _report(on_progress, index / len(names), f"Read {name} ({len(data[name])} records)")

    document = {
        "metadata": {
            "version": BACKUP_FORMAT_VERSION,
            "date": core_logic.timestamp_iso(),
            "type": backup_scope.value,
        },
        "data": data,
    }
    size = len(data_manager.encode_value(document).encode("utf-8"))
    log.info("Captured %s snapshot (%d collections, %d bytes)", backup_scope.value, len(names), size)
    return Snapshot(document=document, size=size)


def backup_filename(scope: BackupScope | str, when: Optional[datetime] = None) -> str:
    """Build ``inventory_backup_{type}_{timestamp}.json``.

    The timestamp is ISO 8601 with ``:`` and ``.`` replaced by ``-``.
    """

    value = scope.value if isinstance(scope, BackupScope) else str(scope)
    stamp = (when or core_logic.current_time()).isoformat().replace(":", "-").replace(".", "-")
    return f"inventory_backup_{value}_{stamp}.json"


def write_backup_file(document: Mapping[str, Any], destination: Path) -> Path:
    """Write a backup document as UTF-8 JSON and return the path."""

    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data_manager.encode_value(document), encoding="utf-8")
    log.info("Wrote backup file '%s'", path)
    return path


def read_backup_file(source: Path) -> Dict[str, Any]:
    """Load a backup document.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
        ValidationError: If the file is not a JSON object.
    """

    path = Path(source)
    if not path.exists():
        log.error("Backup file not found at '%s'", path)
        raise FileNotFoundError(f"Backup file not found at '{path}'")
    try:
        document = data_manager.decode_value(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        log.error("Backup file '%s' is not valid JSON: %s", path, exc)
        raise ValidationError(f"Backup file '{path.name}' is not valid JSON") from exc
    if not isinstance(document, dict):
        raise ValidationError(f"Backup file '{path.name}' does not hold a backup document")
    return document


def record_backup_history(context: RuntimeContext, filename: str, size: int) -> List[Dict[str, Any]]:
    """Remember a backup in the side store, newest first, capped in length."""

    stamp = core_logic.timestamp_iso()
    history = list(context.side_store.get_item(SideKey.BACKUP_HISTORY.value, []) or [])
    history.insert(0, {"date": stamp, "filename": filename, "size": size})
    history = history[:BACKUP_HISTORY_LIMIT]
    context.side_store.set_item(SideKey.BACKUP_HISTORY.value, history)
    context.side_store.set_item(SideKey.LAST_BACKUP.value, stamp)
    return history


def create_backup(
    context: RuntimeContext,
    scope: BackupScope | str,
    directory: Path,
    on_progress: Optional[ProgressCallback] = None,
) -> Path:
    """Snapshot ``scope``, write it under ``directory`` and record the history."""

    captured = snapshot(context, scope, on_progress)
    filename = backup_filename(captured.document["metadata"]["type"])
    path = write_backup_file(captured.document, Path(directory) / filename)
    record_backup_history(context, filename, captured.size)
    return path


def validate_backup_document(document: Any) -> Dict[str, Any]:
    """Check the top-level shape of a backup document.

    Raises:
        ValidationError: If ``metadata`` or ``data`` is missing or malformed.
    """

    if not isinstance(document, dict):
        raise ValidationError("Backup document must be an object")
    if not isinstance(document.get("metadata"), dict):
        log.warning("Rejected backup document without metadata")
        raise ValidationError("Invalid backup file: missing metadata")
    if not isinstance(document.get("data"), dict):
        log.warning("Rejected backup document without data")
        raise ValidationError("Invalid backup file: missing data")
    return document


def _clear_for_replace(context: RuntimeContext, result: RestoreResult) -> None:
    for collection in Collection:
        name = collection.value
        if name in NON_CLEARABLE_COLLECTIONS:
            message = f"Collection '{name}' cannot be cleared; restored records are added to existing ones"
            log.warning(message)
            result.warnings.append(message)
            continue
        try:
            context.store.clear(name)
        except StoreUnavailableError as exc:
            message = f"Could not clear '{name}': {exc}"
            log.warning(message)
            result.warnings.append(message)
    for key in LOCAL_INSTRUMENT_KEYS:
        context.side_store.remove_item(key.value)
    context.side_store.remove_item(SideKey.DELETED_RECEIPT_IDS.value)


def _restore_collection(
    context: RuntimeContext,
    name: str,
    records: Sequence[Mapping[str, Any]],
    *,
    only_new: bool,
    exclude: frozenset[str] = frozenset(),
) -> tuple[int, int]:
    incoming = [
        dict(record)
        for record in records
        if isinstance(record, Mapping) and data_manager.document_key(record) not in exclude
    ]
    skipped = len(records) - len(incoming)
    if only_new:
        existing = {data_manager.document_key(record) for record in context.store.get(name)}
        fresh = []
        for record in incoming:
            key = data_manager.document_key(record)
            if key is None:
                record["_id"] = generate_record_key()
            elif key in existing:
                skipped += 1
                continue
            else:
                existing.add(key)
            fresh.append(record)
        incoming = fresh

    for start in range(0, len(incoming), RESTORE_BATCH_SIZE):
        batch = incoming[start:start + RESTORE_BATCH_SIZE]
        for record in batch:
            context.store.insert(name, record)
        log.debug("Restored batch of %d record(s) into '%s'", len(batch), name)
    return len(incoming), skipped


def restore(
    context: RuntimeContext,
    document: Mapping[str, Any],
    mode: RestoreMode | str = RestoreMode.MERGE,
    on_progress: Optional[ProgressCallback] = None,
) -> RestoreResult:
    """Load a backup document into the store.

    ``replace`` first clears every known collection and the side-store
    instrument copies, then inserts the backup contents. Collections
    without a delete primitive are not cleared; a warning is recorded and
    only records with unseen ids are added to them. ``merge`` inserts only
    records whose id is not already present, giving id-less records a
    generated ``_id``, and counts the rest as skipped; receipts listed in
    ``deletedReceiptIds`` are skipped too so deletions survive a merge.
    ``replace`` drops that list along with the data. Either way the
    instrument homes are re-synchronised afterwards and progress ends at
    ``1.0`` even when a collection failed.

    Args:
        context (RuntimeContext): Active runtime context.
        document (Mapping[str, Any]): Backup document.
        mode (RestoreMode | str): ``replace`` or ``merge``.
        on_progress (ProgressCallback | None): Receives fractions in
            ``[0, 1]`` with a message as collections complete.

    Returns:
        RestoreResult: Inserted and skipped counts per collection plus
            warnings.

    Raises:
        ValidationError: If the document or mode is invalid.
        PartialFailureError: If a collection failed; the others are restored
            and the partial :class:`RestoreResult` is attached as ``result``.
    """

    restore_mode = core_logic.require_choice(mode, RestoreMode, "Restore mode")
    validate_backup_document(document)
    result = RestoreResult(mode=restore_mode)
    workflow = Workflow(f"Restore ({restore_mode.value})")
    _report(on_progress, 0.0, f"Starting {restore_mode.value} restore")

    try:
        hidden: frozenset[str] = frozenset()
        if restore_mode is RestoreMode.REPLACE:
            workflow.run("clear-existing", lambda: _clear_for_replace(context, result))
            _report(on_progress, 0.1, "Existing data cleared")
        else:
            hidden = frozenset(receipts.deleted_receipt_ids(context))

        data = document["data"]
        names = list(data)
        for done, name in enumerate(names, start=1):
            records = data[name]
            if not isinstance(records, list):
                message = f"Skipping {name}: invalid data format"
                log.warning(message)
                result.warnings.append(message)
            else:
                only_new = restore_mode is RestoreMode.MERGE or name in NON_CLEARABLE_COLLECTIONS
                exclude = hidden if name == Collection.RECEIPTS.value else frozenset()
                counts = workflow.run(
                    f"restore-{name}",
                    lambda name=name, records=records, exclude=exclude: _restore_collection(
                        context, name, records, only_new=only_new, exclude=exclude
                    ),
                )
                if counts is not None:
                    result.inserted[name], result.skipped[name] = counts
            _report(on_progress, 0.1 + done / len(names) * 0.9, f"Completed {name}")

        workflow.run("sync-instruments", lambda: instruments.sync_instruments(context))
        result.outcomes = list(workflow.outcomes)
        workflow.finish()
    except PartialFailureError as exc:
        exc.result = result
        raise
    finally:
        _report(on_progress, 1.0, "Restore finished with errors" if workflow.failed else "Restore complete")

    log.info(
        "Restored backup in %s mode (%d inserted, %d skipped)",
        restore_mode.value,
        sum(result.inserted.values()),
        sum(result.skipped.values()),
    )
    return result


def get_database_stats(context: RuntimeContext) -> Dict[str, Any]:
    """Count records per collection and estimate the stored size."""

    counts: Dict[str, int] = {}
    data: Dict[str, List[Record]] = {}
    for collection in Collection:
        data[collection.value] = core_logic.read_collection(context, collection.value)
        counts[collection.value] = len(data[collection.value])
    return {
        "collections": counts,
        "totalRecords": sum(counts.values()),
        "storageUsed": len(data_manager.encode_value(data).encode("utf-8")),
    }


def format_bytes(size: int, decimals: int = 2) -> str:
    """Render a byte count such as ``1536`` as ``1.5 KB``."""

    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    index = 0
    value = float(size)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    text = f"{value:.{decimals}f}".rstrip("0").rstrip(".")
    return f"{text} {units[index]}"


def clean_database(context: RuntimeContext) -> int:
    """Clear every collection and every side-store key.

    Returns:
        int: Number of records removed from the Record Store.
    """

    names = set(context.store.collections()) | {collection.value for collection in Collection}
    removed = 0
    for name in sorted(names):
        removed += context.store.clear(name)
    context.side_store.clear()
    log.warning("Cleaned database: %d record(s) removed", removed)
    return removed
