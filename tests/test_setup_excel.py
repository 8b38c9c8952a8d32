"""Tests for the ledger workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from coldstore_erp import data_manager, setup_excel


def test_create_master_workbook_writes_headers(tmp_path):
    """Every managed sheet should carry its header row and no data."""

    path = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert workbook.sheetnames == list(data_manager.SHEET_COLUMNS)
    for name, columns in data_manager.SHEET_COLUMNS.items():
        sheet = workbook[name]
        header = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True))
        assert header == tuple(columns)
        assert sheet.max_row == 1
        assert sheet.freeze_panes == "A2"


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    """An existing ledger is only replaced when asked to."""

    target = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(target)
    assert setup_excel.create_master_workbook(target, overwrite=True) == target


def test_main_creates_workbook_from_config(tmp_path, capsys):
    """The script resolves DataFile relative to the config file."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = data/ledger.xlsx\nStorageName = Test Storage\n")

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert (tmp_path / "data" / "ledger.xlsx").exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    # A second run without --force refuses to clobber the ledger.
    assert setup_excel.main(["--config", str(config_path)]) == 1


def test_main_reports_missing_config(tmp_path, capsys):
    """A missing config file is reported, not raised."""

    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
