"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the
workbook holding every record collection. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, creating, and persisting the Excel file.
3. Sheet operations: loading JSON documents stored one per row and
   rewriting a sheet from a list of documents.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log


CONFIG_FILE_NAME = "config.ini"
DOCUMENT_COLUMNS: tuple[str, str] = ("DocumentID", "Document")
SIDE_STORE_SHEET = "SideStore"
SIDE_STORE_COLUMNS: tuple[str, str] = ("Key", "Value")

DEFAULT_STORE_TIMEOUT = 5.0
DEFAULT_WALK_IN_CUSTOMER = "Walk-in Customer"
DEFAULT_UNKNOWN_VENDOR = "Unknown Vendor"
DEFAULT_DUE_DAYS = 30
DEFAULT_LOW_STOCK_THRESHOLD = 10


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    store_timeout: float = DEFAULT_STORE_TIMEOUT
    walk_in_customer: str = DEFAULT_WALK_IN_CUSTOMER
    unknown_vendor: str = DEFAULT_UNKNOWN_VENDOR
    due_days: int = DEFAULT_DUE_DAYS
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded before resolution.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Validation of required entries happens in
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` entries are mandatory. ``[Store]`` and ``[Defaults]``
    entries are optional and fall back to the module defaults. Relative
    ``DataFile`` paths are expanded against ``base_path`` when provided, or
    against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing, or an
            optional numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        store_timeout = parser.getfloat("Store", "TimeoutSeconds", fallback=DEFAULT_STORE_TIMEOUT)
        due_days = parser.getint("Defaults", "DueDays", fallback=DEFAULT_DUE_DAYS)
        low_stock_threshold = parser.getint(
            "Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    except ValueError as exc:
        raise KeyError(f"Invalid numeric configuration entry: {exc}") from exc

    walk_in_customer = parser.get("Defaults", "WalkInCustomer", fallback=DEFAULT_WALK_IN_CUSTOMER)
    unknown_vendor = parser.get("Defaults", "UnknownVendor", fallback=DEFAULT_UNKNOWN_VENDOR)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        store_timeout=store_timeout,
        walk_in_customer=walk_in_customer,
        unknown_vendor=unknown_vendor,
        due_days=due_days,
        low_stock_threshold=low_stock_threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the data workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def new_workbook(collection_names: Iterable[str]) -> Workbook:
    """Create an in-memory workbook with one document sheet per collection.

    The default sheet generated by ``openpyxl`` is removed, every collection
    sheet receives the bold ``DocumentID``/``Document`` header and the side
    store sheet is added last.

    Args:
        collection_names (Iterable[str]): Collection names to create sheets for.

    Returns:
        Workbook: Fresh workbook ready to be saved.
    """

    workbook = openpyxl.Workbook()
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for name in collection_names:
        ensure_sheet(workbook, name, DOCUMENT_COLUMNS)
    ensure_sheet(workbook, SIDE_STORE_SHEET, SIDE_STORE_COLUMNS)
    return workbook


def ensure_sheet(workbook: Workbook, sheet_name: str, columns: Sequence[str]) -> None:
    """Create ``sheet_name`` with a bold header row when it does not exist yet."""

    if sheet_name in workbook.sheetnames:
        return

    worksheet = workbook.create_sheet(title=sheet_name)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    log.debug("Created worksheet '%s'", sheet_name)


def iter_documents(workbook: Workbook, sheet_name: str) -> Iterator[dict[str, Any]]:
    """Stream the JSON documents stored on a collection worksheet.

    Sheets that do not exist yet yield nothing, matching the contract that an
    unknown collection reads as empty. Header and blank rows are skipped.

    Args:
        workbook (Workbook): Workbook holding the collection sheets.
        sheet_name (str): Collection name doubling as the worksheet title.

    Yields:
        dict[str, Any]: Decoded document for each populated row.
    """

    if sheet_name not in workbook.sheetnames:
        return

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if len(raw) < 2 or raw[1] is None:
            continue
        yield decode_document(str(raw[1]))


def write_documents(workbook: Workbook, sheet_name: str, documents: Iterable[Mapping[str, Any]]) -> None:
    """Rewrite a collection worksheet so it contains exactly ``documents``.

    Args:
        workbook (Workbook): Workbook holding the collection sheets.
        sheet_name (str): Collection name doubling as the worksheet title.
        documents (Iterable[Mapping[str, Any]]): Documents in storage order.
    """

    ensure_sheet(workbook, sheet_name, DOCUMENT_COLUMNS)
    _rewrite_rows(workbook[sheet_name], (serialize_document(document) for document in documents))


def iter_side_items(workbook: Workbook) -> Iterator[tuple[str, Any]]:
    """Yield ``(key, value)`` pairs stored on the side store worksheet."""

    if SIDE_STORE_SHEET not in workbook.sheetnames:
        return

    for raw in workbook[SIDE_STORE_SHEET].iter_rows(min_row=2, values_only=True):
        if not raw or raw[0] is None:
            continue
        value = raw[1] if len(raw) > 1 else None
        yield str(raw[0]), (decode_value(str(value)) if value is not None else None)


def write_side_items(workbook: Workbook, items: Mapping[str, Any]) -> None:
    """Rewrite the side store worksheet from a key/value mapping."""

    ensure_sheet(workbook, SIDE_STORE_SHEET, SIDE_STORE_COLUMNS)
    _rewrite_rows(workbook[SIDE_STORE_SHEET], ([key, encode_value(value)] for key, value in items.items()))


def _rewrite_rows(sheet: Any, rows: Iterable[Sequence[object]]) -> None:
    # rows are addressed explicitly; the header on row 1 is kept
    previous_last_row = sheet.max_row
    last_row = 1
    for last_row, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=last_row, column=column_index, value=value)
    if previous_last_row > last_row:
        sheet.delete_rows(last_row + 1, previous_last_row - last_row)


def document_key(document: Mapping[str, Any]) -> Optional[str]:
    """Return the identity of a document.

    Business documents carry ``id`` while store-assigned records (parties,
    stock lots, ledger rows) carry ``_id``. ``id`` wins when both exist.
    """

    key = document.get("id")
    if key is None:
        key = document.get("_id")
    return None if key is None else str(key)


def serialize_document(document: Mapping[str, Any]) -> list[object]:
    """Convert a document into the ``[DocumentID, Document]`` column order."""

    return [document_key(document), encode_value(document)]


def encode_value(value: Any) -> str:
    """Encode a JSON-compatible value, including decimals and dates, as text."""

    return json.dumps(value, default=_json_default, ensure_ascii=False)


def decode_value(text: str) -> Any:
    """Decode text produced by :func:`encode_value`.

    Fractional numbers come back as :class:`~decimal.Decimal` so money keeps
    its exact value across a save and reload.
    """

    return json.loads(text, parse_float=Decimal)


def decode_document(text: str) -> dict[str, Any]:
    """Decode a stored document, rejecting anything that is not an object."""

    value = decode_value(text)
    if not isinstance(value, dict):
        raise ValueError(f"Stored document is not an object: {text[:40]!r}")
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
