"""Bring marketplace-installed units up to the catalog's versions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from claw_market.catalog import find_installed_extension, find_skill
from claw_market.extension_install import (
    ExtensionInstallResult,
    build_install_record_fields,
    install_extension_from_package_spec,
)
from claw_market.ledger import (
    Document,
    extension_installs,
    record_extension_install,
    record_skill_install,
    skill_installs,
)
from claw_market.logging import get_logger
from claw_market.models import Catalog, SkillInstallRecord
from claw_market.skill_install import SkillInstallResult, install_skill_from_archive

log = get_logger(__name__)

SyncStatus = Literal["unchanged", "updated", "skipped", "error"]
UnitType = Literal["extension", "skill", "catalog"]

SkillInstaller = Callable[..., Awaitable[SkillInstallResult]]
ExtensionInstaller = Callable[..., Awaitable[ExtensionInstallResult]]

NOT_IN_CATALOG = "No longer in catalog"
NO_ARCHIVE_URL = "No archive URL"
NO_PACKAGE_SPEC = "No package spec"


@dataclass
class SyncOutcome:
    id: str
    type: UnitType
    status: SyncStatus
    version: str | None = None
    from_version: str | None = None
    to_version: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, "")}


@dataclass
class SyncResult:
    config: Document
    outcomes: list[SyncOutcome] = field(default_factory=list)
    changed: bool = False


async def _sync_extensions(
    doc: Document,
    catalog: Catalog,
    outcomes: list[SyncOutcome],
    *,
    installer: ExtensionInstaller,
    registry_url: str | None,
    registry_env: Mapping[str, str] | None,
    extensions_dir: Path | str | None,
    dry_run: bool,
) -> Document:
    for extension_id, record in extension_installs(doc).items():
        if record.source != "marketplace":
            continue
        current = record.effective_version
        entry = find_installed_extension(catalog, extension_id, record)
        if entry is None:
            outcomes.append(SyncOutcome(extension_id, "extension", "skipped", version=current, message=NOT_IN_CATALOG))
            continue
        if current == entry.version:
            outcomes.append(SyncOutcome(extension_id, "extension", "unchanged", version=current))
            continue
        if not entry.package_spec:
            outcomes.append(SyncOutcome(extension_id, "extension", "skipped", version=current, message=NO_PACKAGE_SPEC))
            continue
        if dry_run:
            outcomes.append(
                SyncOutcome(
                    extension_id,
                    "extension",
                    "updated",
                    from_version=current,
                    to_version=entry.version,
                    message=f"Would update {extension_id} from {current or 'unknown'} to {entry.version}",
                )
            )
            continue

        result = await installer(
            entry.package_spec,
            extensions_dir=extensions_dir,
            registry_url=registry_url,
            registry_env=registry_env,
        )
        if not result.ok:
            log.warning("Extension sync failed", extension=extension_id, error=result.error)
            outcomes.append(SyncOutcome(extension_id, "extension", "error", version=current, message=result.error))
            continue

        next_version = result.version or entry.version
        install_record, _ = build_install_record_fields(
            entry.package_spec,
            result.target_dir,
            next_version,
            result.resolution,
        )
        doc = record_extension_install(doc, extension_id, install_record)
        outcomes.append(
            SyncOutcome(
                extension_id,
                "extension",
                "updated",
                from_version=current,
                to_version=next_version,
                message=f"Updated {extension_id} from {current or 'unknown'} to {next_version}",
            )
        )
    return doc


async def _sync_skills(
    doc: Document,
    catalog: Catalog,
    outcomes: list[SyncOutcome],
    *,
    installer: SkillInstaller,
    auth_token: str | None,
    managed_dir: Path | str | None,
    dry_run: bool,
) -> Document:
    for skill_name, record in skill_installs(doc).items():
        if record.source != "marketplace":
            continue
        entry = find_skill(catalog, skill_name)
        if entry is None:
            outcomes.append(SyncOutcome(skill_name, "skill", "skipped", version=record.version, message=NOT_IN_CATALOG))
            continue
        if record.version == entry.version:
            outcomes.append(SyncOutcome(skill_name, "skill", "unchanged", version=record.version))
            continue
        if not entry.archive_url:
            outcomes.append(SyncOutcome(skill_name, "skill", "skipped", version=record.version, message=NO_ARCHIVE_URL))
            continue
        if dry_run:
            outcomes.append(
                SyncOutcome(
                    skill_name,
                    "skill",
                    "updated",
                    from_version=record.version,
                    to_version=entry.version,
                    message=f"Would update {skill_name} from {record.version or 'unknown'} to {entry.version}",
                )
            )
            continue

        result = await installer(skill_name, entry.archive_url, managed_dir, auth_token)
        if not result.ok:
            log.warning("Skill sync failed", skill=skill_name, error=result.error)
            outcomes.append(SyncOutcome(skill_name, "skill", "error", version=record.version, message=result.error))
            continue

        doc = record_skill_install(
            doc,
            skill_name,
            SkillInstallRecord(source="marketplace", version=entry.version, archive_url=entry.archive_url),
        )
        outcomes.append(
            SyncOutcome(
                skill_name,
                "skill",
                "updated",
                from_version=record.version,
                to_version=entry.version,
                message=f"Updated {skill_name} from {record.version or 'unknown'} to {entry.version}",
            )
        )
    return doc


async def sync_installed(
    doc: Document,
    catalog: Catalog,
    *,
    skill_installer: SkillInstaller = install_skill_from_archive,
    extension_installer: ExtensionInstaller = install_extension_from_package_spec,
    auth_token: str | None = None,
    registry_url: str | None = None,
    registry_env: Mapping[str, str] | None = None,
    managed_dir: Path | str | None = None,
    extensions_dir: Path | str | None = None,
    dry_run: bool = False,
) -> SyncResult:
    """Reinstall marketplace units whose catalog version moved.

    Units installed from other sources are left alone. A failed reinstall is
    reported as an ``error`` outcome and keeps the unit's previous record.
    """
    outcomes: list[SyncOutcome] = []
    next_doc = await _sync_extensions(
        doc,
        catalog,
        outcomes,
        installer=extension_installer,
        registry_url=registry_url or catalog.registry or None,
        registry_env=registry_env,
        extensions_dir=extensions_dir,
        dry_run=dry_run,
    )
    next_doc = await _sync_skills(
        next_doc,
        catalog,
        outcomes,
        installer=skill_installer,
        auth_token=auth_token,
        managed_dir=managed_dir,
        dry_run=dry_run,
    )
    changed = next_doc is not doc
    log.info(
        "Sync finished",
        updated=sum(1 for outcome in outcomes if outcome.status == "updated"),
        errors=sum(1 for outcome in outcomes if outcome.status == "error"),
        dry_run=dry_run,
    )
    return SyncResult(config=next_doc, outcomes=outcomes, changed=changed)
