"""Tests for CLI commands via Typer test runner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from xlmirror.cli import app
from xlmirror.engine import store

runner = CliRunner()

CONFIG = """\
default_file: data.xlsx
default_sheet: Data1
auto_backup: {auto_backup}
fields:
  - {{name: Date, kind: date}}
  - {{name: Item}}
  - {{name: Qty, kind: integer}}
mirror:
  url: "{url}"
  retry_attempts: 1
  retry_delay: 0
"""


@pytest.fixture()
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Working directory with an xlmirror.yaml pointing at a SQLite mirror."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "xlmirror.yaml").write_text(
        CONFIG.format(auto_backup="false", url=f"sqlite:///{tmp_path / 'mirror.db'}")
    )
    return tmp_path


def invoke(*args: str) -> tuple[int, dict]:
    result = runner.invoke(app, list(args))
    return result.exit_code, json.loads(result.stdout)


def test_version():
    code, data = invoke("version")
    assert code == 0
    assert data["ok"] is True
    assert "version" in data["result"]


def test_init(workdir: Path):
    code, data = invoke("init")
    assert code == 0
    assert data["command"] == "init"
    assert data["result"]["created"] is True
    assert data["result"]["header"] == ["Id", "Date", "Item", "Qty"]
    assert data["target"]["table"] == "Data1"
    assert (workdir / "data.xlsx").exists()

    code, data = invoke("init")
    assert data["result"]["created"] is False


def test_row_lifecycle(workdir: Path):
    code, data = invoke("rows", "add", "--value", "Date=2024-03-01", "--value", "item=bolt", "--value", "Qty=3")
    assert code == 0, data
    assert data["result"]["row_index"] == 2
    assert data["result"]["record_id"] == 1
    assert data["result"]["mirrored"] is True
    assert data["changes"][-1]["type"] == "row.added"

    code, data = invoke("rows", "add", "--json", '{"Item": "nut", "Qty": 5}')
    assert data["result"]["row_index"] == 3

    code, data = invoke("rows", "update", "--row", "2", "--value", "Qty=9")
    assert code == 0
    assert data["changes"][-1]["before"]["Qty"] == 3
    assert data["changes"][-1]["after"] == {"Date": "2024-03-01", "Item": "bolt", "Qty": 9}

    code, data = invoke("rows", "delete", "--row", "3")
    assert code == 0

    code, data = invoke("rows", "ls")
    assert data["result"]["total"] == 1
    assert data["result"]["rows"] == [
        {"row": 2, "id": "1", "fields": {"Date": "2024-03-01", "Item": "bolt", "Qty": "9"}}
    ]

    code, data = invoke("rows", "search", "-k", "BOLT")
    assert data["result"]["matches"] == 1


def test_delete_missing_row(workdir: Path):
    invoke("init")
    code, data = invoke("rows", "delete", "--row", "7")
    assert code == 50
    assert data["errors"][0]["code"] == "ERR_ROW_NOT_FOUND"


def test_unknown_field_is_validation_error(workdir: Path):
    code, data = invoke("rows", "add", "--value", "Colour=red")
    assert code == 10
    assert data["errors"][0]["details"]["unknown"] == ["Colour"]
    assert not (workdir / "data.xlsx").exists()


def test_bad_value_syntax(workdir: Path):
    code, data = invoke("rows", "add", "--value", "no-equals-sign")
    assert code == 10


def test_unparsed_date_warns(workdir: Path):
    code, data = invoke("rows", "add", "--value", "Date=someday")
    assert code == 0
    assert [w["code"] for w in data["warnings"]] == ["WARN_DATE_UNPARSED"]


def test_clear_requires_yes(workdir: Path):
    invoke("rows", "add", "--value", "Item=a")
    code, data = invoke("rows", "clear")
    assert code == 10
    code, data = invoke("rows", "clear", "--yes")
    assert code == 0
    assert data["result"]["succeeded"] == 1
    assert store.read_data_rows(workdir / "data.xlsx", "Data1") == []


def test_import_and_export(workdir: Path):
    (workdir / "in.csv").write_text("Date,Item,Qty\n2024-01-01,a,1\nbroken\n2024-01-02,\"b, c\",2\n")
    code, data = invoke("import", "--csv", "in.csv")
    assert code == 0
    assert data["result"]["succeeded"] == 2
    assert data["result"]["failed"] == 1
    assert [w["code"] for w in data["warnings"]] == ["WARN_ROWS_FAILED"]

    code, data = invoke("export", "--out", "out.csv")
    assert code == 0
    assert data["result"]["rows"] == 2
    assert (workdir / "out.csv").read_text() == 'Id,Date,Item,Qty\n1,2024-01-01,a,1\n2,2024-01-02,"b, c",2\n'


def test_import_missing_file(workdir: Path):
    code, data = invoke("import", "--csv", "nope.csv")
    assert code == 50
    assert data["errors"][0]["code"] == "ERR_FILE_NOT_FOUND"


def test_sync_push_and_pull(workdir: Path):
    invoke("init")
    store.append_rows(workdir / "data.xlsx", "Data1", [["", "2024-01-01", "a", "1"], ["", "", "b", "2"]])
    code, data = invoke("sync", "push")
    assert code == 0
    assert data["result"]["succeeded"] == 2

    store.add_row(workdir / "data.xlsx", "Data1", ["", "", "local only", "0"])
    code, data = invoke("sync", "pull")
    assert code == 0
    assert data["result"]["succeeded"] == 2
    items = [r.values[2] for r in store.read_data_rows(workdir / "data.xlsx", "Data1")]
    assert items == ["a", "b"]


def test_db_check_backup_restore(workdir: Path):
    invoke("rows", "add", "--value", "Item=kept")
    code, data = invoke("db", "check")
    assert code == 0
    assert data["result"]["rows"] == 1

    code, data = invoke("db", "backup", "--out", "mirror.json")
    assert code == 0
    assert json.loads((workdir / "mirror.json").read_text())[0]["record"]["Item"] == "kept"

    invoke("rows", "add", "--value", "Item=extra")
    code, data = invoke("db", "restore", "--input", "mirror.json")
    assert code == 10
    code, data = invoke("db", "restore", "--input", "mirror.json", "--yes")
    assert code == 0
    assert data["result"]["rows"] == 1


def test_db_check_missing_table(workdir: Path):
    code, data = invoke("db", "check")
    assert code == 0
    assert data["result"]["rows"] is None
    assert data["warnings"][0]["code"] == "WARN_TABLE_MISSING"


def test_discovery_disabled(workdir: Path):
    code, data = invoke("db", "discover")
    assert code == 10
    assert data["errors"][0]["code"] == "ERR_DISCOVERY_DISABLED"


def test_no_mirror_configured(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    code, data = invoke("sync", "push")
    assert code == 10
    assert data["errors"][0]["code"] == "ERR_MIRROR_NOT_CONFIGURED"


def test_dead_mirror_is_a_warning(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    url = f"sqlite:///{tmp_path / 'no' / 'dir' / 'mirror.db'}"
    (tmp_path / "xlmirror.yaml").write_text(CONFIG.format(auto_backup="false", url=url))
    code, data = invoke("rows", "add", "--value", "Item=a")
    assert code == 0
    assert [w["code"] for w in data["warnings"]] == ["WARN_MIRROR_UNAVAILABLE", "WARN_MIRROR_FAILED"]
    assert data["result"]["record_id"] is None


def test_auto_backup(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "xlmirror.yaml").write_text(
        CONFIG.format(auto_backup="true", url=f"sqlite:///{tmp_path / 'mirror.db'}")
    )
    code, data = invoke("rows", "add", "--value", "Item=a")
    assert [c["type"] for c in data["changes"]] == ["row.added"]
    code, data = invoke("rows", "add", "--value", "Item=b")
    assert data["changes"][0]["type"] == "backup.created"
    assert Path(data["changes"][0]["target"]).exists()


def test_backup_command(workdir: Path):
    invoke("init")
    code, data = invoke("backup")
    assert code == 0
    assert Path(data["result"]["backup"]).exists()
    assert data["result"]["pruned"] == []


def test_missing_workbook(workdir: Path):
    code, data = invoke("rows", "ls", "-f", "nope.xlsx")
    assert code == 50
    assert data["errors"][0]["code"] == "ERR_WORKBOOK_NOT_FOUND"


def test_missing_sheet(workdir: Path):
    invoke("init")
    code, data = invoke("rows", "ls", "-s", "Nope")
    assert code == 50
    assert data["errors"][0]["code"] == "ERR_SHEET_NOT_FOUND"


def test_invalid_config(tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("unknown: 1\n")
    code, data = invoke("--config", str(bad), "rows", "ls")
    assert code == 10
    assert data["command"] == "config"


def test_sheets_and_lock_status(workdir: Path):
    invoke("init", "-s", "Line1")
    code, data = invoke("sheets")
    assert data["result"]["sheets"] == ["Line1"]
    code, data = invoke("lock-status")
    assert code == 0
    assert data["result"]["locked"] is False


def test_monitor_streams_rows(workdir: Path):
    invoke("rows", "add", "--value", "Item=a")
    result = runner.invoke(app, ["monitor", "--max-refreshes", "1", "--interval", "0.01"])
    assert result.exit_code == 0
    first, _, rest = result.stdout.partition("\n")
    event = json.loads(first)
    assert event["event"] == "refresh"
    assert [r["row"] for r in event["rows"]] == [1, 2]
    assert json.loads(rest)["result"]["refreshes"] == 1


def test_control_character_value_is_rejected(workdir: Path):
    code, data = invoke("rows", "add", "--value", "Item=bad\x01text")
    assert code == 10
    assert data["errors"][0]["code"] == "ERR_VALIDATION"
    code, data = invoke("rows", "ls")
    assert code == 0
    assert data["result"]["total"] == 0
