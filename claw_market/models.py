"""Catalog entries, install records and extension kinds."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ExtensionKind(str, Enum):
    CHANNEL = "channel"
    TOOL = "tool"
    MEMORY = "memory"
    PROVIDER = "provider"


# Kinds for which at most one extension may be enabled, mapped to their slot key.
EXCLUSIVE_SLOTS: dict[ExtensionKind, str] = {
    ExtensionKind.MEMORY: "memory",
}


def is_exclusive_kind(kind: ExtensionKind | str | None) -> bool:
    return slot_for_kind(kind) is not None


def slot_for_kind(kind: ExtensionKind | str | None) -> str | None:
    if kind is None:
        return None
    try:
        resolved = ExtensionKind(kind)
    except ValueError:
        return None
    return EXCLUSIVE_SLOTS.get(resolved)


class _CatalogModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExtensionEntry(_CatalogModel):
    """Installable extension listed in the catalog."""

    id: str
    name: str
    description: str = ""
    package_spec: str = Field(default="", alias="packageSpec")
    version: str
    kind: ExtensionKind
    tags: list[str] = Field(default_factory=list)


class SkillEntry(_CatalogModel):
    """Skill archive listed in the catalog."""

    name: str
    description: str = ""
    archive_url: str = Field(default="", alias="archiveUrl")
    version: str
    tags: list[str] = Field(default_factory=list)


class Catalog(_CatalogModel):
    version: int
    updated_at: str = Field(default="", alias="updatedAt")
    registry: str = ""
    extensions: list[ExtensionEntry]
    skills: list[SkillEntry]


class CatalogSearchResult(BaseModel):
    extensions: list[ExtensionEntry] = Field(default_factory=list)
    skills: list[SkillEntry] = Field(default_factory=list)


class ExtensionInstallRecord(BaseModel):
    """Persisted metadata for an installed extension."""

    model_config = ConfigDict(extra="allow")

    source: Literal["marketplace", "registry", "path"] = "marketplace"
    spec: str = ""
    install_path: str = ""
    version: str = ""
    resolved_name: str | None = None
    resolved_version: str | None = None
    resolved_spec: str | None = None
    integrity: str | None = None
    shasum: str | None = None
    resolved_at: str | None = None
    installed_at: str | None = None

    @property
    def effective_version(self) -> str:
        return self.resolved_version or self.version


class SkillInstallRecord(BaseModel):
    """Persisted metadata for an installed skill."""

    model_config = ConfigDict(extra="allow")

    source: Literal["marketplace", "archive"] = "marketplace"
    version: str = ""
    archive_url: str | None = None
    installed_at: str | None = None


class ExtensionStatus(BaseModel):
    """Installed extension as seen by the exclusive slot resolver."""

    id: str
    kind: ExtensionKind | None = None
    enabled: bool = False
