from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")


def test_materials_empty(lib):
    result = runner.invoke(app, ["--db-file", lib.db_file, "materials"])
    assert result.exit_code == 0
    assert "No materials in circulation." in result.stdout


def test_materials_filtered(lib, catalog):
    result = runner.invoke(app, ["--db-file", lib.db_file, "materials", "--genre-id", str(catalog["maths"])])
    assert result.exit_code == 0
    assert "Mathematics Textbook [Book / Mathematics]" in result.stdout
    assert "Book on Sports" not in result.stdout


def test_overdue_empty(lib, catalog):
    result = runner.invoke(app, ["--db-file", lib.db_file, "overdue"])
    assert result.exit_code == 0
    assert "No overdue checkouts." in result.stdout


def test_overdue_lists_patron(lib, catalog, make_checkout):
    make_checkout(catalog["sports_book"], catalog["clark"], datetime.now() - timedelta(days=40))
    result = runner.invoke(app, ["--db-file", lib.db_file, "overdue"])
    assert result.exit_code == 0
    assert "Book on Sports - Clark Howard" in result.stdout


def test_overdue_json_output(lib, catalog, make_checkout):
    make_checkout(catalog["sports_book"], catalog["clark"], datetime.now() - timedelta(days=40))
    result = runner.invoke(app, ["--output", "json", "--db-file", lib.db_file, "overdue"])
    assert result.exit_code == 0
    assert '"first_name": "Clark"' in result.stdout


def test_patron_balance(lib, catalog, make_checkout):
    make_checkout(catalog["sports_book"], catalog["clark"], datetime(2023, 7, 25), datetime(2023, 9, 5))
    result = runner.invoke(app, ["--db-file", lib.db_file, "patron", str(catalog["clark"])])
    assert result.exit_code == 0
    assert "Patron: Clark Howard (active)" in result.stdout
    assert "Balance: 6.00" in result.stdout


def test_patron_not_found(lib):
    result = runner.invoke(app, ["--db-file", lib.db_file, "patron", "999"])
    assert result.exit_code == 1
    assert "Patron 999 not found." in result.stdout


def test_init_db_reports_ready(lib):
    result = runner.invoke(app, ["--db-file", lib.db_file, "init-db"])
    assert result.exit_code == 0
    assert "Database ready" in result.stdout


def test_seed_loads_demo_data(lib):
    result = runner.invoke(app, ["--db-file", lib.db_file, "seed"])
    assert result.exit_code == 0
    assert len(lib.list_patrons()) == 4
    assert [t.name for t in lib.list_material_types()] == ["Book", "Periodical", "CD"]
    names = [m["name"] for m in lib.list_materials()]
    assert "History Magazine" not in names
    assert "Book on Sports" in names
    # Seeding twice leaves the data as it was
    runner.invoke(app, ["--db-file", lib.db_file, "seed"])
    assert len(lib.list_checkouts()) == 4


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run, lib):
    result = runner.invoke(app, ["--db-file", lib.db_file, "serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "8123" in args
    assert mock_subprocess_run.call_args[1]["env"]["LIBRARY_DB_FILE"] == lib.db_file
