"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from xlmirror.contracts.mirror import MirrorConfig
from xlmirror.contracts.records import RecordSchema
from xlmirror.engine import store
from xlmirror.observe.logging import configure_logging

SHEET = "Data1"


@pytest.fixture(autouse=True)
def _quiet_logs():
    configure_logging("WARNING", json_format=True)


@pytest.fixture()
def workbook_path(tmp_path: Path) -> Path:
    """Path of a workbook that does not exist yet."""
    return tmp_path / "data.xlsx"


@pytest.fixture()
def schema() -> RecordSchema:
    """Small three-field schema: a date, a text and an integer."""
    return RecordSchema.of(["Date", "Item", "Qty"], Date="date", Qty="integer")


@pytest.fixture()
def prepared(workbook_path: Path, schema: RecordSchema) -> Path:
    """Workbook with sheet ``Data1`` and its header row."""
    store.ensure_sheet(workbook_path, SHEET)
    store.ensure_header_row(workbook_path, SHEET, schema)
    return workbook_path


@pytest.fixture()
def mirror(tmp_path: Path) -> MirrorConfig:
    """File-based SQLite mirror."""
    return MirrorConfig(url=f"sqlite:///{tmp_path / 'mirror.db'}", table="Data1", timeout_seconds=10.0)


@pytest.fixture()
def dead_mirror(tmp_path: Path) -> MirrorConfig:
    """Mirror whose database cannot be opened."""
    return MirrorConfig(
        url=f"sqlite:///{tmp_path / 'no' / 'such' / 'dir' / 'mirror.db'}",
        table="Data1",
        retry_attempts=2,
        retry_delay=0.0,
        timeout_seconds=10.0,
    )


@pytest.fixture()
def csv_file(tmp_path: Path):
    """Factory writing an import file and returning its path."""

    def write(text: str, name: str = "import.csv") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return write
