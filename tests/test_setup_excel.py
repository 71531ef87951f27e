"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

import pytest

from shopsync import data_manager
from shopsync.models import AppState
from shopsync.setup_excel import create_master_workbook, load_settings, main


def test_create_master_workbook_writes_every_sheet(tmp_path):
    path = create_master_workbook(tmp_path / "nested" / "shop.xlsx")

    workbook = data_manager.open_workbook(path)
    assert workbook.sheetnames == list(data_manager.SHEET_COLUMNS)
    state = data_manager.read_state(workbook)
    assert state.products == ()
    assert state.tiers == AppState().tiers
    assert state.redemption_rule == AppState().redemption_rule


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    path = create_master_workbook(tmp_path / "shop.xlsx")

    with pytest.raises(FileExistsError):
        create_master_workbook(path)
    assert create_master_workbook(path, overwrite=True) == path


def test_load_settings_resolves_relative_data_file(tmp_path):
    config = tmp_path / "config.ini"
    config.write_text("[System]\nDataFile = data/shop.xlsx\nShopName = Garage\n")

    settings = load_settings(config)

    assert settings.data_file == (tmp_path / "data" / "shop.xlsx").resolve()
    assert settings.shop_name == "Garage"


def test_main_creates_workbook_once(tmp_path, capsys):
    config = tmp_path / "config.ini"
    config.write_text("[System]\nDataFile = shop.xlsx\nShopName = Garage\n")

    assert main(["--config", str(config)]) == 0
    assert (tmp_path / "shop.xlsx").exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert main(["--config", str(config)]) == 1
    assert "--force" in capsys.readouterr().out
    assert main(["--config", str(config), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
