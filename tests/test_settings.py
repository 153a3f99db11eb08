"""Tests for xlmirror.yaml loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from xlmirror.config.settings import CONFIG_FILE, Settings
from xlmirror.contracts.errors import InputValidationError, NotFoundError
from xlmirror.contracts.records import ENTRY_SCHEMA


def _write(directory: Path, text: str) -> Path:
    path = directory / CONFIG_FILE
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults():
    settings = Settings()
    assert settings.default_sheet == "Data1"
    assert settings.mirror_config() is None
    assert settings.record_schema() is ENTRY_SCHEMA
    assert settings.discovery.enabled is False


def test_load_full_file(tmp_path: Path):
    path = _write(
        tmp_path,
        """
default_file: line.xlsx
default_sheet: Line 2
backup_retention_days: 7
fields:
  - {name: Date, kind: date}
  - {name: Item}
  - {name: Qty, kind: integer}
mirror:
  url: sqlite:///mirror.db
  retry_attempts: 5
discovery:
  enabled: true
  database: production
  candidates:
    - {host: db.local, user: app, password: secret}
""",
    )
    settings = Settings.load(path)
    assert settings.record_schema().names == ["Date", "Item", "Qty"]

    mirror = settings.mirror_config()
    assert mirror.table == "Line2"
    assert mirror.retry_attempts == 5
    assert settings.mirror_config("Other Sheet").table == "OtherSheet"

    candidate = settings.discovery.candidates[0]
    assert candidate.host == "db.local"
    assert "secret" not in repr(candidate)


def test_explicit_table_wins(tmp_path: Path):
    settings = Settings.load(_write(tmp_path, "mirror: {url: 'sqlite://', table: entries}\n"))
    assert settings.mirror_config("Data1").table == "entries"


def test_load_from_dir(tmp_path: Path):
    assert Settings.load_from_dir(tmp_path) is None
    _write(tmp_path, "default_sheet: S\n")
    assert Settings.load_from_dir(tmp_path).default_sheet == "S"


def test_resolve_uses_working_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    assert Settings.resolve().default_sheet == "Data1"
    _write(tmp_path, "default_sheet: FromCwd\n")
    assert Settings.resolve().default_sheet == "FromCwd"


def test_empty_file_means_defaults(tmp_path: Path):
    assert Settings.load(_write(tmp_path, "")).default_file == "data.xlsx"


def test_missing_file(tmp_path: Path):
    with pytest.raises(NotFoundError) as exc_info:
        Settings.load(tmp_path / "nope.yaml")
    assert exc_info.value.code == "ERR_CONFIG_NOT_FOUND"


@pytest.mark.parametrize(
    "text",
    [
        "unknown_key: 1\n",
        "mirror: {url: ''}\n",
        "mirror: {url: 'sqlite://', retry_attempts: 0}\n",
        "- a\n- b\n",
        "key: [unclosed\n",
    ],
)
def test_invalid_files(tmp_path: Path, text: str):
    with pytest.raises(InputValidationError):
        Settings.load(_write(tmp_path, text))


def test_invalid_field_list(tmp_path: Path):
    settings = Settings.load(_write(tmp_path, "fields: [{name: Id}]\n"))
    with pytest.raises(InputValidationError):
        settings.record_schema()
