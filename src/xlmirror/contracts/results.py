"""Result models returned by store and sync operations."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SheetRow(BaseModel):
    """A stored row with its (stable, possibly gapped) row index."""

    index: int
    values: list[str] = Field(default_factory=list)

    @property
    def identifier(self) -> str:
        return self.values[0] if self.values else ""


class MutationResult(BaseModel):
    """Outcome of a single add/update/delete with mirror propagation."""

    ok: bool = True
    row_index: int | None = None
    record_id: int | None = None
    mirrored: bool = False
    mirror_error: str | None = None


class RowFailure(BaseModel):
    """A row skipped during a bulk operation."""

    row: int
    code: str
    message: str


class SyncSummary(BaseModel):
    """Counts reported by bulk operations; per-row failures never abort the batch."""

    operation: str
    succeeded: int = 0
    failed: int = 0
    failures: list[RowFailure] = Field(default_factory=list)
    # Rows written to the workbook whose mirror call failed
    unmirrored: list[RowFailure] = Field(default_factory=list)

    def record_failure(self, row: int, code: str, message: str) -> None:
        self.failed += 1
        self.failures.append(RowFailure(row=row, code=code, message=message))

    def record_unmirrored(self, row: int, code: str, message: str) -> None:
        self.unmirrored.append(RowFailure(row=row, code=code, message=message))
