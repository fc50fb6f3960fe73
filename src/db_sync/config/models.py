"""Pydantic models for database configuration."""

from pydantic import BaseModel, Field, model_validator

from db_sync.data.models import ConflictStrategy
from db_sync.schema.models import Dialect


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    dialect: Dialect | None = None  # Inferred from the URL when absent
    default_schema: str | None = None

    @model_validator(mode="after")
    def _infer_dialect(self) -> "DatabaseProfile":
        if self.dialect is None:
            self.dialect = Dialect.from_url(self.url)
        return self


class SyncSettings(BaseModel):
    """Defaults for sync and dump/restore operations."""

    worker_limit: int = Field(default=4, ge=1)
    batch_size: int = Field(default=500, ge=1)
    conflict_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS
    insert_missing: bool = True
    update_different: bool = True
    delete_extra: bool = False
    truncate_target: bool = True


class GroupConfig(BaseModel):
    """A source profile and the target profiles kept in sync with it."""

    name: str = ""
    source: str
    targets: list[str] = Field(default_factory=list)
    sync_schema: bool = True
    sync_data: bool = False
    target_schema: str | None = None


class DatabaseConfig(BaseModel):
    """Complete database configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    sync: SyncSettings = Field(default_factory=SyncSettings)
    groups: dict[str, GroupConfig] = Field(default_factory=dict)
