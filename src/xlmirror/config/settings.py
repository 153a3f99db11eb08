"""Settings loaded from ``xlmirror.yaml``."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from xlmirror.adapters.discovery import DEFAULT_SERVICE_COMMANDS
from xlmirror.adapters.sql_mirror import sanitize_table_name
from xlmirror.contracts.errors import InputValidationError, NotFoundError
from xlmirror.contracts.mirror import ConnectionProfile, MirrorConfig
from xlmirror.contracts.records import ENTRY_SCHEMA, FieldSpec, RecordSchema
from xlmirror.io.fileops import read_text_safe

CONFIG_FILE = "xlmirror.yaml"


class MirrorSettings(BaseModel):
    """``mirror:`` section. Its absence means the sheet is not mirrored."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    table: str | None = None
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    timeout_seconds: float | None = Field(default=30.0, gt=0)


class DiscoverySettings(BaseModel):
    """``discovery:`` section: opt-in probing of configured server logins."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    database: str | None = None
    candidates: list[ConnectionProfile] = Field(default_factory=list)
    start_service: bool = False
    service_commands: list[str] = Field(default_factory=lambda: list(DEFAULT_SERVICE_COMMANDS))
    settle_seconds: float = Field(default=3.0, ge=0)


class Settings(BaseModel):
    """Top-level configuration; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    default_file: str = "data.xlsx"
    default_sheet: str = "Data1"
    auto_backup: bool = True
    backup_retention_days: int = Field(default=30, ge=0)
    fields: list[FieldSpec] | None = None
    log_level: str = "WARNING"
    log_json: bool | None = None
    mirror: MirrorSettings | None = None
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)

    @classmethod
    def load(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        p = Path(path)
        if not p.is_file():
            raise NotFoundError(f"Config file not found: {p}", code="ERR_CONFIG_NOT_FOUND", details={"file": str(p)})
        try:
            data = yaml.safe_load(read_text_safe(p)) or {}
        except yaml.YAMLError as exc:
            raise InputValidationError(f"Invalid YAML in {p}: {exc}", details={"file": str(p)}) from exc
        if not isinstance(data, dict):
            raise InputValidationError(f"Config {p} must be a mapping", details={"file": str(p)})
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise InputValidationError(
                f"Invalid config {p}: {exc.error_count()} error(s)",
                details={"file": str(p), "errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    @classmethod
    def load_from_dir(cls, directory: str | Path) -> "Settings | None":
        """Load ``xlmirror.yaml`` from a directory. Returns None if not found."""
        path = Path(directory) / CONFIG_FILE
        if path.exists():
            return cls.load(path)
        return None

    @classmethod
    def resolve(cls, path: str | Path | None = None) -> "Settings":
        """Explicit file, else ``xlmirror.yaml`` in the working directory, else defaults."""
        if path is not None:
            return cls.load(path)
        return cls.load_from_dir(Path.cwd()) or cls()

    def record_schema(self) -> RecordSchema:
        if not self.fields:
            return ENTRY_SCHEMA
        try:
            return RecordSchema(fields=tuple(self.fields))
        except ValidationError as exc:
            raise InputValidationError(f"Invalid field list: {exc}") from exc

    def mirror_config(self, sheet: str | None = None) -> MirrorConfig | None:
        """Immutable mirror config for ``sheet``; the table defaults to the sanitized sheet name."""
        if self.mirror is None:
            return None
        return MirrorConfig(
            url=self.mirror.url,
            table=self.mirror.table or sanitize_table_name(sheet or self.default_sheet),
            retry_attempts=self.mirror.retry_attempts,
            retry_delay=self.mirror.retry_delay,
            timeout_seconds=self.mirror.timeout_seconds,
        )
