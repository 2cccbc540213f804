"""Exclusive slot handling for extension kinds that allow one active unit."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from claw_market.catalog import find_installed_extension
from claw_market.extension_install import EXTENSION_MANIFEST_FILE
from claw_market.ledger import (
    Document,
    extension_installs,
    extension_slots,
    is_extension_enabled,
    set_extension_enabled,
    set_slot_owner,
)
from claw_market.logging import get_logger
from claw_market.models import Catalog, ExtensionKind, ExtensionStatus, slot_for_kind

log = get_logger(__name__)


@dataclass
class SlotSelectionResult:
    config: Document
    warnings: list[str] = field(default_factory=list)


def _manifest_kind(install_path: str) -> ExtensionKind | None:
    if not install_path:
        return None
    manifest = Path(install_path).expanduser() / EXTENSION_MANIFEST_FILE
    if not manifest.is_file():
        return None
    try:
        raw = json.loads(manifest.read_text(encoding="utf-8")).get("kind")
        return ExtensionKind(raw) if raw else None
    except (OSError, ValueError, AttributeError):
        return None


def build_extension_report(doc: Document, catalog: Catalog | None = None) -> list[ExtensionStatus]:
    """Installed extensions with their kind and enabled state.

    Kinds come from the catalog when it lists the extension, otherwise from
    the installed package's manifest.
    """
    report: list[ExtensionStatus] = []
    for extension_id, record in extension_installs(doc).items():
        entry = find_installed_extension(catalog, extension_id, record) if catalog else None
        kind = (entry.kind if entry else None) or _manifest_kind(record.install_path)
        report.append(
            ExtensionStatus(
                id=extension_id,
                kind=kind,
                enabled=is_extension_enabled(doc, extension_id),
            )
        )
    return report


def apply_exclusive_slot_selection(
    doc: Document,
    selected_id: str,
    selected_kind: ExtensionKind | str | None,
    registry: Iterable[ExtensionStatus],
) -> SlotSelectionResult:
    """Make ``selected_id`` the only enabled extension of an exclusive kind.

    Other enabled extensions of the same kind are disabled, one warning each.
    Non-exclusive kinds pass through unchanged.
    """
    slot = slot_for_kind(selected_kind)
    if slot is None:
        return SlotSelectionResult(config=doc)

    kind = ExtensionKind(selected_kind)
    warnings: list[str] = []
    next_doc = set_slot_owner(doc, slot, selected_id)
    next_doc = set_extension_enabled(next_doc, selected_id, True)

    for status in registry:
        if status.id == selected_id or status.kind != kind or not status.enabled:
            continue
        next_doc = set_extension_enabled(next_doc, status.id, False)
        message = (
            f'Disabled {kind.value} extension "{status.id}": '
            f'the "{slot}" slot is now owned by "{selected_id}".'
        )
        warnings.append(message)
        log.info("Exclusive slot demotion", slot=slot, demoted=status.id, selected=selected_id)

    return SlotSelectionResult(config=next_doc, warnings=warnings)


def release_exclusive_slot(doc: Document, extension_id: str) -> Document:
    """Clear every slot owned by ``extension_id``."""
    next_doc = doc
    for slot, owner in extension_slots(doc).items():
        if owner == extension_id:
            next_doc = set_slot_owner(next_doc, slot, None)
    return next_doc
