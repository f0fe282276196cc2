# models/feature_models.py
from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field, computed_field

from .generation_models import ContractModel


@dataclass(frozen=True)
class FeatureFlag:
    """A named optional capability."""

    name: str
    enabled: bool
    description: str
    requires_schema_version: str | None = None
    depends_on: tuple[str, ...] = ()
    experimental: bool = False


@dataclass(frozen=True)
class FeatureStatus:
    flag: FeatureFlag
    actually_enabled: bool
    override: bool | None = None
    schema_available: bool = True


class MissingColumn(ContractModel):
    table: str
    column: str

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


class SchemaCompatibilityReport(ContractModel):
    """Diff between required and available durable-store structures."""

    current_version: str | None
    required_version: str
    missing_tables: list[str] = Field(default_factory=list)
    missing_columns: list[MissingColumn] = Field(default_factory=list)
    upgrade_instructions: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def upgrade_required(self) -> bool:
        if self.missing_tables or self.missing_columns:
            return True
        return self.current_version is None or self.current_version < self.required_version

    @property
    def is_compatible(self) -> bool:
        return not self.upgrade_required
