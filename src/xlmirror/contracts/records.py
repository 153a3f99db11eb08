"""Record schema and record models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

FieldKind = Literal["string", "integer", "date"]

ID_HEADER = "Id"


class FieldSpec(BaseModel):
    """One typed column of a record schema."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    kind: FieldKind = "string"
    length: int = Field(default=128, ge=1, le=4096)

    @property
    def default(self) -> str | int:
        return 0 if self.kind == "integer" else ""


class RecordSchema(BaseModel):
    """Ordered field list shared by the sheet header, the codec and the mirror table."""

    model_config = ConfigDict(frozen=True)

    fields: tuple[FieldSpec, ...]

    @field_validator("fields")
    @classmethod
    def validate_fields(cls, v: tuple[FieldSpec, ...]) -> tuple[FieldSpec, ...]:
        if not v:
            raise ValueError("schema needs at least one field")
        seen: set[str] = set()
        for spec in v:
            key = spec.name.casefold()
            if key == ID_HEADER.casefold():
                raise ValueError(f"'{spec.name}' is reserved for the identifier column")
            if key in seen:
                raise ValueError(f"duplicate field name: {spec.name}")
            seen.add(key)
        return v

    @classmethod
    def of(cls, names: list[str], **kinds: FieldKind) -> "RecordSchema":
        """Build a schema from names; ``kinds`` overrides the default string kind per name."""
        return cls(fields=tuple(FieldSpec(name=n, kind=kinds.get(n, "string")) for n in names))

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def headers(self) -> list[str]:
        """Header row as written to the sheet: identifier column first."""
        return [ID_HEADER, *self.names]

    def __len__(self) -> int:
        return len(self.fields)

    def new_record(self, **values: Any) -> "Record":
        """Build a record, filling omitted fields with their defaults."""
        unknown = set(values) - set(self.names)
        if unknown:
            raise ValueError(f"Unknown fields for schema: {sorted(unknown)}")
        data: dict[str, str | int] = {}
        for spec in self.fields:
            value = values.get(spec.name, spec.default)
            if spec.kind == "integer":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValueError(f"Field '{spec.name}' expects an integer, got {value!r}")
            elif not isinstance(value, str):
                raise ValueError(f"Field '{spec.name}' expects text, got {value!r}")
            data[spec.name] = value
        return Record(values=data)


class Record(BaseModel):
    """A domain record: field name to text or integer, in schema order."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, str | int]

    def __getitem__(self, name: str) -> str | int:
        return self.values[name]

    def to_dict(self) -> dict[str, str | int]:
        return dict(self.values)


# Production-entry schema of the original shop-floor tracker.
ENTRY_SCHEMA = RecordSchema(
    fields=(
        FieldSpec(name="Date", kind="date"),
        FieldSpec(name="Shift", length=32),
        FieldSpec(name="CodeReference"),
        FieldSpec(name="MachineNumber", length=64),
        FieldSpec(name="Area", length=64),
        FieldSpec(name="AutoAdjustment"),
        FieldSpec(name="TopTec"),
        FieldSpec(name="FinalTester"),
        FieldSpec(name="Packaging"),
        FieldSpec(name="QuantityInput", kind="integer"),
        FieldSpec(name="QuantityGood", kind="integer"),
        FieldSpec(name="QuantityBad", kind="integer"),
        FieldSpec(name="Reject", kind="integer"),
    )
)
