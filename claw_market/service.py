"""Marketplace operations shared by the CLI and the HTTP gateway.

Each operation takes the current configuration document and returns a
``ServiceResult``. When an operation changes the document, the next version
is carried in ``result.config``; persisting it is left to the caller.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from claw_market.catalog import fetch_catalog_with_auth, find_extension, find_skill
from claw_market.config import Config
from claw_market.credentials import (
    resolve_marketplace_token,
    resolve_registry_auth,
    resolve_token,
)
from claw_market.exceptions import (
    ClawMarketError,
    ConfigurationError,
    ErrorKind,
    NotFoundError,
    ValidationError,
    classify_error,
    http_status_for,
)
from claw_market.extension_install import (
    build_install_record_fields,
    install_extension_from_package_spec,
    remove_installed_extension,
)
from claw_market.fetch_guard import SsrfPolicy
from claw_market.ledger import (
    Document,
    extension_installs,
    is_extension_enabled,
    record_extension_install,
    record_skill_install,
    remove_extension_entry,
    remove_extension_install,
    remove_skill_install,
    set_extension_enabled,
    skill_installs,
)
from claw_market.logging import get_logger
from claw_market.models import Catalog, ExtensionEntry, SkillEntry, SkillInstallRecord
from claw_market.skill_install import install_skill_from_archive, remove_installed_skill
from claw_market.slots import (
    apply_exclusive_slot_selection,
    build_extension_report,
    release_exclusive_slot,
)
from claw_market.sync import ExtensionInstaller, SkillInstaller, SyncOutcome, sync_installed

log = get_logger(__name__)

UNIT_TYPES = ("extension", "skill")

TokenResolver = Callable[[], Awaitable[str | None]]


@dataclass
class ServiceResult:
    ok: bool
    status: int = 200
    payload: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    config: Document | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.config is not None

    @classmethod
    def failure(cls, exc: BaseException, **payload: Any) -> "ServiceResult":
        kind = classify_error(exc)
        return cls(
            ok=False,
            status=http_status_for(kind),
            payload={"ok": False, "error": str(exc), **payload},
            error=str(exc),
        )

    @classmethod
    def install_failure(cls, message: str, kind: ErrorKind | None) -> "ServiceResult":
        status = http_status_for(kind or ErrorKind.INTERNAL)
        return cls(ok=False, status=status, payload={"ok": False, "error": message}, error=message)


class MarketplaceService:
    """Catalog-driven install, uninstall and sync over a config document."""

    def __init__(
        self,
        config: Config,
        *,
        token_resolver: TokenResolver | None = None,
        skill_installer: SkillInstaller | None = None,
        extension_installer: ExtensionInstaller | None = None,
        fetch_options: dict[str, Any] | None = None,
    ):
        self.config = config
        self.marketplace = config.marketplace
        self.token_resolver = token_resolver or resolve_token
        self.fetch_options: dict[str, Any] = {
            "policy": SsrfPolicy.from_config(config.network),
            "max_redirects": config.network.max_redirects,
            **(fetch_options or {}),
        }
        self.skill_installer = skill_installer or partial(
            install_skill_from_archive,
            download_timeout=self.marketplace.download_timeout,
            extract_timeout=self.marketplace.extract_timeout,
            max_archive_bytes=self.marketplace.max_archive_bytes,
            **self.fetch_options,
        )
        self.extension_installer = extension_installer or partial(
            install_extension_from_package_spec,
            timeout_seconds=self.marketplace.install_timeout,
            extract_timeout=self.marketplace.extract_timeout,
        )

    async def load_marketplace_catalog(self) -> Catalog:
        """Fetch the configured catalog; raises on any failure."""
        catalog_url = self.marketplace.catalog_url.strip()
        if not catalog_url:
            raise ConfigurationError("No marketplace catalog configured")
        return await fetch_catalog_with_auth(
            catalog_url,
            self.marketplace.auth_method,
            self.marketplace.static_token(),
            token_resolver=self.token_resolver,
            timeout_seconds=self.marketplace.catalog_timeout,
            **self.fetch_options,
        )

    def list_installed(self, doc: Document) -> dict[str, list[dict[str, Any]]]:
        extensions = [
            {
                "id": extension_id,
                "type": "extension",
                "source": record.source,
                "version": record.effective_version,
                "spec": record.spec,
                "installedAt": record.installed_at,
                "enabled": is_extension_enabled(doc, extension_id),
            }
            for extension_id, record in extension_installs(doc).items()
        ]
        skills = [
            {
                "name": name,
                "type": "skill",
                "source": record.source,
                "version": record.version,
                "installedAt": record.installed_at,
            }
            for name, record in skill_installs(doc).items()
        ]
        return {"extensions": extensions, "skills": skills}

    async def install_from_catalog(
        self,
        doc: Document,
        unit_id: str,
        unit_type: str | None = None,
        pin: bool = False,
    ) -> ServiceResult:
        """Install a catalog unit by id, preferring ``unit_type`` when given."""
        unit_id = (unit_id or "").strip()
        if not unit_id:
            return ServiceResult.failure(ValidationError("Missing 'id' in request body"))

        try:
            catalog = await self.load_marketplace_catalog()
        except ClawMarketError as exc:
            log.warning("Catalog unavailable for install", unit=unit_id, error=str(exc))
            return ServiceResult.failure(exc)

        skill_entry = find_skill(catalog, unit_id)
        extension_entry = find_extension(catalog, unit_id)

        if unit_type == "skill" and skill_entry:
            return await self._install_skill(doc, skill_entry)
        if unit_type == "extension" and extension_entry:
            return await self._install_extension(doc, catalog, extension_entry, pin)
        if extension_entry:
            return await self._install_extension(doc, catalog, extension_entry, pin)
        if skill_entry:
            return await self._install_skill(doc, skill_entry)
        return ServiceResult.failure(NotFoundError(unit_id, f'"{unit_id}" not found in catalog'))

    async def _install_skill(self, doc: Document, entry: SkillEntry) -> ServiceResult:
        if not entry.archive_url:
            return ServiceResult.failure(ValidationError(f'Skill "{entry.name}" has no archive URL'))

        auth_token = await resolve_marketplace_token(self.marketplace, self.token_resolver)
        result = await self.skill_installer(
            entry.name,
            entry.archive_url,
            self.marketplace.resolved_managed_skills_dir(),
            auth_token,
        )
        if not result.ok:
            return ServiceResult.install_failure(result.error, result.error_kind)

        next_doc = record_skill_install(
            doc,
            entry.name,
            SkillInstallRecord(source="marketplace", version=entry.version, archive_url=entry.archive_url),
        )
        return ServiceResult(
            ok=True,
            payload={"ok": True, "id": entry.name, "type": "skill", "version": entry.version},
            config=next_doc,
        )

    async def _install_extension(
        self,
        doc: Document,
        catalog: Catalog,
        entry: ExtensionEntry,
        pin: bool,
    ) -> ServiceResult:
        if not entry.package_spec:
            return ServiceResult.failure(ValidationError(f'Extension "{entry.id}" has no package spec'))

        registry_auth = await resolve_registry_auth(self.marketplace, self.token_resolver)
        registry_url = registry_auth.registry_url if registry_auth else (catalog.registry or None)
        result = await self.extension_installer(
            entry.package_spec,
            extensions_dir=self.marketplace.resolved_extensions_dir(),
            registry_url=registry_url,
            registry_env=registry_auth.registry_env if registry_auth else None,
        )
        if not result.ok:
            return ServiceResult.install_failure(result.error, result.error_kind)

        warnings: list[str] = []
        record, notice = build_install_record_fields(
            entry.package_spec,
            result.target_dir,
            result.version or entry.version,
            result.resolution,
            pin=pin,
        )
        if notice:
            warnings.append(notice)

        next_doc = set_extension_enabled(doc, result.extension_id, True)
        next_doc = record_extension_install(next_doc, result.extension_id, record)
        kind = result.kind or entry.kind
        selection = apply_exclusive_slot_selection(
            next_doc,
            result.extension_id,
            kind,
            build_extension_report(next_doc, catalog),
        )
        warnings.extend(selection.warnings)

        payload: dict[str, Any] = {
            "ok": True,
            "id": result.extension_id,
            "type": "extension",
            "version": record.effective_version,
            "restartRequired": True,
        }
        if warnings:
            payload["warnings"] = warnings
        return ServiceResult(ok=True, payload=payload, config=selection.config, warnings=warnings)

    async def uninstall(self, doc: Document, unit_id: str, unit_type: str | None) -> ServiceResult:
        """Remove an installed unit's files and its ledger entries."""
        unit_id = (unit_id or "").strip()
        if not unit_id:
            return ServiceResult.failure(ValidationError("Missing 'id' in request body"))
        if unit_type not in UNIT_TYPES:
            return ServiceResult.failure(
                ValidationError("Missing or invalid 'type' (must be 'extension' or 'skill')")
            )

        try:
            if unit_type == "skill":
                return self._uninstall_skill(doc, unit_id)
            return self._uninstall_extension(doc, unit_id)
        except (ClawMarketError, OSError) as exc:
            log.warning("Uninstall failed", unit=unit_id, type=unit_type, error=str(exc))
            return ServiceResult.failure(exc)

    def _uninstall_skill(self, doc: Document, name: str) -> ServiceResult:
        if name not in skill_installs(doc):
            raise NotFoundError(name, f'Skill "{name}" is not installed')
        remove_installed_skill(name, self.marketplace.resolved_managed_skills_dir())
        return ServiceResult(
            ok=True,
            payload={"ok": True, "id": name, "type": "skill"},
            config=remove_skill_install(doc, name),
        )

    def _uninstall_extension(self, doc: Document, extension_id: str) -> ServiceResult:
        record = extension_installs(doc).get(extension_id)
        if record is None:
            raise NotFoundError(extension_id, f'Extension "{extension_id}" is not installed')

        warnings: list[str] = []
        removed = remove_installed_extension(
            extension_id,
            record.install_path or None,
            self.marketplace.resolved_extensions_dir(),
        )
        if not removed:
            warnings.append(
                f'No files removed for "{extension_id}": install path missing or outside the extensions directory.'
            )

        next_doc = remove_extension_install(doc, extension_id)
        next_doc = remove_extension_entry(next_doc, extension_id)
        next_doc = release_exclusive_slot(next_doc, extension_id)

        payload: dict[str, Any] = {"ok": True, "id": extension_id, "type": "extension", "restartRequired": True}
        if warnings:
            payload["warnings"] = warnings
        return ServiceResult(ok=True, payload=payload, config=next_doc, warnings=warnings)

    def _has_marketplace_installs(self, doc: Document) -> bool:
        return any(r.source == "marketplace" for r in extension_installs(doc).values()) or any(
            r.source == "marketplace" for r in skill_installs(doc).values()
        )

    async def sync(self, doc: Document, dry_run: bool = False) -> ServiceResult:
        """Update marketplace installs to the catalog's current versions."""
        if not self._has_marketplace_installs(doc):
            return ServiceResult(ok=True, payload={"ok": True, "results": [], "dryRun": dry_run})

        try:
            catalog = await self.load_marketplace_catalog()
        except ClawMarketError as exc:
            log.warning("Catalog unavailable for sync", error=str(exc))
            outcome = SyncOutcome("*", "catalog", "error", message=f"Failed to fetch catalog: {exc}")
            return ServiceResult.failure(exc, results=[outcome.to_dict()], dryRun=dry_run)

        registry_auth = None
        auth_token = None
        if not dry_run:
            registry_auth = await resolve_registry_auth(self.marketplace, self.token_resolver)
            auth_token = await resolve_marketplace_token(self.marketplace, self.token_resolver)

        outcome = await sync_installed(
            doc,
            catalog,
            skill_installer=self.skill_installer,
            extension_installer=self.extension_installer,
            auth_token=auth_token,
            registry_url=registry_auth.registry_url if registry_auth else None,
            registry_env=registry_auth.registry_env if registry_auth else None,
            managed_dir=self.marketplace.resolved_managed_skills_dir(),
            extensions_dir=self.marketplace.resolved_extensions_dir(),
            dry_run=dry_run,
        )
        return ServiceResult(
            ok=True,
            payload={
                "ok": True,
                "results": [item.to_dict() for item in outcome.outcomes],
                "changed": outcome.changed,
                "dryRun": dry_run,
            },
            config=outcome.config if outcome.changed else None,
        )
