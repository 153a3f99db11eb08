"""Mirror configuration and connection profile models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class MirrorConfig(BaseModel):
    """Where and how to mirror a sheet.  Passing ``None`` instead means no mirroring."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(min_length=1)  # SQLAlchemy URL, e.g. mysql+pymysql://user:pw@host/db
    table: str = Field(min_length=1)
    retry_attempts: int = Field(default=1, ge=1)
    retry_delay: float = Field(default=0.5, ge=0)
    timeout_seconds: float | None = Field(default=30.0, gt=0)


class ConnectionProfile(BaseModel):
    """One candidate server login tried by credential discovery."""

    model_config = ConfigDict(frozen=True)

    driver: str = "mysql+pymysql"
    host: str = "localhost"
    port: int | None = 3306
    user: str = "root"
    password: SecretStr = SecretStr("")
    database: str | None = None

    def label(self) -> str:
        port = f":{self.port}" if self.port else ""
        return f"{self.user}@{self.host}{port}"
