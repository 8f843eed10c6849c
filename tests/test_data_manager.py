"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shop_ledger import constants, data_manager  # noqa: E402


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk upward from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Shop"
    assert parser.get("Store", "TimeoutSeconds") == "2"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True, due_days=14)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.store_timeout == 2.0
    assert settings.due_days == 14


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    """Only [System] is mandatory; the rest falls back to module defaults."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = /tmp/ledger.xlsx\nBusinessName = Shop\nSchemaVersion = 1.0.0\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.store_timeout == data_manager.DEFAULT_STORE_TIMEOUT
    assert settings.walk_in_customer == "Walk-in Customer"
    assert settings.unknown_vendor == "Unknown Vendor"
    assert settings.due_days == 30
    assert settings.low_stock_threshold == 10


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_non_numeric_options(tmp_path):
    """A malformed number in an optional section is reported as a KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = ledger.xlsx\nBusinessName = Shop\nSchemaVersion = 1.0.0\n"
        "[Defaults]\nDueDays = soon\n"
    )
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(workbook_factory):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(workbook_factory())
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    """A missing workbook should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_new_workbook_creates_collection_and_side_sheets():
    """Every collection gets a sheet with the document header, side store last."""

    names = [collection.value for collection in constants.Collection]
    workbook = data_manager.new_workbook(names)

    assert workbook.sheetnames == [*names, data_manager.SIDE_STORE_SHEET]
    header = [cell.value for cell in workbook["bills"][1]]
    assert header == list(data_manager.DOCUMENT_COLUMNS)
    assert workbook["bills"]["A1"].font.bold


def test_write_documents_replaces_sheet_contents():
    """write_documents rewrites a sheet; iter_documents reads it back in order."""

    workbook = data_manager.new_workbook(["bills"])
    data_manager.write_documents(workbook, "bills", [{"id": "BILL-001"}, {"id": "BILL-002"}])
    data_manager.write_documents(workbook, "bills", [{"id": "BILL-003", "amount": Decimal("12.50")}])

    documents = list(data_manager.iter_documents(workbook, "bills"))
    assert documents == [{"id": "BILL-003", "amount": Decimal("12.5")}]
    assert workbook["bills"]["A2"].value == "BILL-003"


def test_iter_documents_unknown_sheet_yields_nothing():
    """Collections without a sheet read as empty."""

    workbook = data_manager.new_workbook([])
    assert list(data_manager.iter_documents(workbook, "stock")) == []


def test_side_items_round_trip_through_workbook(tmp_path):
    """Side store items survive a save and reload of the workbook."""

    workbook = data_manager.new_workbook([])
    data_manager.write_side_items(workbook, {"lastBackupDate": "2024-03-15", "sequenceCounters": {"BILL": 4}})
    path = tmp_path / "side.xlsx"
    data_manager.save_workbook(workbook, path)

    reloaded = openpyxl.load_workbook(path)
    assert dict(data_manager.iter_side_items(reloaded)) == {
        "lastBackupDate": "2024-03-15",
        "sequenceCounters": {"BILL": 4},
    }


def test_document_key_prefers_business_id():
    """``id`` wins over ``_id``; neither yields None."""

    assert data_manager.document_key({"id": "BILL-001", "_id": "abc"}) == "BILL-001"
    assert data_manager.document_key({"_id": "abc"}) == "abc"
    assert data_manager.document_key({"name": "x"}) is None


def test_decode_value_keeps_money_exact():
    """Fractional numbers decode as Decimal; whole decimals encode as ints."""

    encoded = data_manager.encode_value({"price": Decimal("0.1"), "quantity": Decimal("3")})
    assert encoded == '{"price": 0.1, "quantity": 3}'
    decoded = data_manager.decode_value(encoded)
    assert decoded["price"] == Decimal("0.1")
    assert isinstance(decoded["price"], Decimal)
    assert decoded["quantity"] == 3


def test_decode_document_rejects_non_objects():
    """Stored rows must hold JSON objects."""

    with pytest.raises(ValueError):
        data_manager.decode_document("[1, 2]")
