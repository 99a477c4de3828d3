"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from loyalty_ledger import constants, data_manager


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk upward until it meets config.ini."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Ledger", "MaxConflictRetries") == "2"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.store_name == "Test Store"
    assert settings.lock_timeout_seconds == pytest.approx(0.2)
    assert settings.max_conflict_retries == 2


def test_parse_settings_defaults_ledger_section(tmp_path):
    """The [Ledger] section is optional and falls back to module defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=ledger.xlsx\nStoreName=Shop\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.lock_timeout_seconds == data_manager.DEFAULT_LOCK_TIMEOUT_SECONDS
    assert settings.unit_timeout_seconds == data_manager.DEFAULT_UNIT_TIMEOUT_SECONDS
    assert settings.max_conflict_retries == data_manager.DEFAULT_MAX_CONFLICT_RETRIES


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "ledger_section",
    ["LockTimeoutSeconds = 0", "UnitTimeoutSeconds = -5", "MaxConflictRetries = -1", "LockTimeoutSeconds = soon"],
)
def test_parse_settings_rejects_bad_tuning_values(tmp_path, ledger_section):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=ledger.xlsx\nStoreName=Shop\nSchemaVersion=1.0.0\n"
        f"[Ledger]\n{ledger_section}\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(constants.SHEET_COLUMNS).issubset(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_rejects_missing_sheets(tmp_path):
    """A workbook without the ledger sheets is not a ledger."""

    path = tmp_path / "foreign.xlsx"
    openpyxl.Workbook().save(path)

    with pytest.raises(KeyError, match="missing sheets"):
        data_manager.open_workbook(path)


def test_save_workbook_replaces_target_without_leaving_partials(master_workbook_path, make_product):
    """A successful save should leave exactly the target file behind."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product(1))
    data_manager.save_workbook(workbook, master_workbook_path)

    assert [p.name for p in master_workbook_path.parent.iterdir()] == [master_workbook_path.name]
    reloaded = data_manager.open_workbook(master_workbook_path)
    assert [row.product_id for row in data_manager.iter_products(reloaded)] == [1]


def test_save_workbook_failure_keeps_previous_file(master_workbook_path, make_product, monkeypatch):
    """A crash mid-save must leave the previous workbook intact."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product(1))

    def _explode(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(data_manager.os, "replace", _explode)
    with pytest.raises(OSError, match="disk full"):
        data_manager.save_workbook(workbook, master_workbook_path)

    assert not any(p.name.startswith(".") for p in master_workbook_path.parent.iterdir())
    reloaded = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_products(reloaded)) == []


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path, make_customer):
    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(original, make_customer(1))

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not original
    assert list(data_manager.iter_customers(refreshed)) == []


# ---------------------------------------------------------------------------
# Row serialization
# ---------------------------------------------------------------------------


def test_append_and_iter_products_round_trip(master_workbook_path, make_product):
    """Products written by the DAL come back as equal dataclasses."""

    product = make_product(7, description="Wireless", price="15000.00", stock=10)
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, product)
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_products(reloaded)) == [product]


def test_money_and_timestamps_are_written_as_text(master_workbook_path, make_customer):
    """Money is stored as fixed two-decimal strings and timestamps as ISO text."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(workbook, make_customer(1, points=500, cashback="50"))
    data_manager.save_workbook(workbook, master_workbook_path)

    raw = openpyxl.load_workbook(master_workbook_path)[data_manager.CUSTOMERS_SHEET]
    row = next(raw.iter_rows(min_row=2, values_only=True))
    assert row[4] == 500
    assert row[5] == "50.00"
    assert row[6] == "2024-03-01T09:30:00+00:00"


def test_deserialize_tolerates_hand_entered_cells():
    """Numeric money cells, blanks and naive datetimes are normalised."""

    row = data_manager.deserialize_customer(
        (3, "Ana", "ana@example.com", None, None, 12.5, datetime(2024, 1, 1, 8, 0))
    )

    assert row.points_balance == 0
    assert row.cashback_balance == Decimal("12.50")
    assert row.phone is None
    assert row.created_at.tzinfo is UTC


def test_transaction_rows_round_trip(master_workbook_path):
    transaction = data_manager.TransactionRow(
        transaction_id=1,
        customer_id=2,
        total_amount=Decimal("30000.00"),
        points_earned=29,
        cashback_used=Decimal("50.00"),
        created_at=datetime(2024, 3, 1, 10, 0, tzinfo=UTC),
    )
    item = data_manager.TransactionItemRow(
        item_id=1,
        transaction_id=1,
        product_id=9,
        quantity=2,
        unit_price=Decimal("15000.00"),
        total_price=Decimal("30000.00"),
    )
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_transaction(workbook, transaction)
    data_manager.append_transaction_item(workbook, item)
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_transactions(reloaded)) == [transaction]
    assert list(data_manager.iter_transaction_items(reloaded)) == [item]


def test_update_customer_rewrites_matching_row(master_workbook_path, make_customer):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(workbook, make_customer(1))
    data_manager.append_customer(workbook, make_customer(2))

    updated = make_customer(2, points=40, cashback="4.00")
    data_manager.update_customer(workbook, updated)

    assert list(data_manager.iter_customers(workbook)) == [make_customer(1), updated]


def test_rewrite_clears_cells_set_to_none(master_workbook_path, make_product, make_customer):
    """Optional columns rewritten as ``None`` become empty cells on disk."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product(1, description="Old text"))
    data_manager.append_customer(workbook, make_customer(1, phone="555-0100"))
    data_manager.save_workbook(workbook, master_workbook_path)

    data_manager.update_product(workbook, make_product(1, description=None))
    data_manager.update_customer(workbook, make_customer(1, phone=None))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert next(data_manager.iter_products(reloaded)).description is None
    assert next(data_manager.iter_customers(reloaded)).phone is None


def test_update_product_raises_for_unknown_row(master_workbook_path, make_product):
    workbook = data_manager.open_workbook(master_workbook_path)

    with pytest.raises(KeyError):
        data_manager.update_product(workbook, make_product(99))


def test_locate_row_returns_excel_index(master_workbook_path, make_product):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, make_product(4))
    data_manager.append_product(workbook, make_product(5))

    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", 5) == 3
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", 6) is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "Nope", 5)
