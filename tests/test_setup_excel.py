"""Tests for the workbook bootstrap helper and its script entry point."""

from __future__ import annotations

import openpyxl
import pytest

from loyalty_ledger import constants, setup_excel


def test_create_master_workbook_writes_bold_headers(tmp_path):
    """Every ledger sheet is created with its header row and nothing else."""

    path = setup_excel.create_master_workbook(tmp_path / "nested" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == list(constants.SHEET_COLUMNS)
    for sheet_name, columns in constants.SHEET_COLUMNS.items():
        sheet = workbook[sheet_name]
        header = [cell.value for cell in sheet[1]]
        assert header == list(columns)
        assert all(cell.font.bold for cell in sheet[1])
        assert sheet.max_row == 1


def test_create_master_workbook_refuses_to_overwrite(master_workbook_path):
    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(master_workbook_path)


def test_create_master_workbook_overwrite_resets_contents(master_workbook_path):
    workbook = openpyxl.load_workbook(master_workbook_path)
    workbook[constants.SheetName.PRODUCTS.value].append([1, "Stale"])
    workbook.save(master_workbook_path)

    setup_excel.create_master_workbook(master_workbook_path, overwrite=True)

    assert openpyxl.load_workbook(master_workbook_path)[constants.SheetName.PRODUCTS.value].max_row == 1


def test_main_creates_workbook_from_config(tmp_path, capsys):
    """The script resolves DataFile relative to the config file."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = data/ledger.xlsx\nStoreName = Shop\nSchemaVersion = 1.0.0\n")

    exit_code = setup_excel.main(["--config", str(config_path)])

    assert exit_code == 0
    assert (tmp_path / "data" / "ledger.xlsx").exists()
    assert "[SUCCESS]" in capsys.readouterr().out


def test_main_reports_existing_workbook(config_file, capsys):
    exit_code = setup_excel.main(["--config", str(config_file)])

    assert exit_code == 1
    assert "--force" in capsys.readouterr().out


def test_main_reports_missing_config(tmp_path, capsys):
    exit_code = setup_excel.main(["--config", str(tmp_path / "absent.ini")])

    assert exit_code == 1
    assert "[ERROR]" in capsys.readouterr().out
