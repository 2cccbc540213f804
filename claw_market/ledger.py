"""Install records kept in the configuration document.

All functions are pure: they never mutate the document they are given and
return a new mapping that shares every untouched sub-tree with the input.
The caller decides whether and when to persist the result.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from claw_market.logging import get_logger
from claw_market.models import ExtensionInstallRecord, SkillInstallRecord

log = get_logger(__name__)

EXTENSIONS_SECTION = "extensions"
SKILLS_SECTION = "skills"
INSTALLS_KEY = "installs"
ENTRIES_KEY = "entries"
SLOTS_KEY = "slots"

Document = dict[str, Any]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _section_map(doc: Mapping[str, Any], section: str, map_key: str) -> dict[str, Any]:
    return _mapping(_mapping(doc.get(section)).get(map_key))


def _set_map_entry(doc: Document, section: str, map_key: str, key: str, value: Any) -> Document:
    section_value = _mapping(doc.get(section))
    current = _mapping(section_value.get(map_key))
    return {
        **doc,
        section: {
            **section_value,
            map_key: {**current, key: value},
        },
    }


def _drop_map_entry(doc: Document, section: str, map_key: str, key: str) -> Document:
    """Remove ``doc[section][map_key][key]``, pruning containers left empty."""
    section_value = doc.get(section)
    if not isinstance(section_value, dict):
        return doc
    current = section_value.get(map_key)
    if not isinstance(current, dict) or key not in current:
        return doc

    remaining = {k: v for k, v in current.items() if k != key}
    next_section: dict[str, Any] = {}
    for name, value in section_value.items():
        if name != map_key:
            next_section[name] = value
        elif remaining:
            next_section[name] = remaining

    next_doc: Document = {}
    for name, value in doc.items():
        if name != section:
            next_doc[name] = value
        elif next_section:
            next_doc[name] = next_section
    return next_doc


def _record_payload(record: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump(exclude_none=True)
    return {k: v for k, v in record.items() if v is not None}


def record_install(
    doc: Document,
    section: str,
    key: str,
    record: BaseModel | Mapping[str, Any],
) -> Document:
    """Upsert ``record`` under ``doc[section]["installs"][key]``.

    ``installed_at`` keeps its first value unless the record supplies one.
    """
    if not key:
        raise ValueError("Install record key is required")
    payload = _record_payload(record)
    if not payload.get("installed_at"):
        previous = _mapping(_section_map(doc, section, INSTALLS_KEY).get(key))
        payload["installed_at"] = previous.get("installed_at") or _now_iso()
    return _set_map_entry(doc, section, INSTALLS_KEY, key, payload)


def remove_install(doc: Document, section: str, key: str) -> Document:
    """Delete an install record; an emptied ``installs`` map is omitted."""
    return _drop_map_entry(doc, section, INSTALLS_KEY, key)


def record_extension_install(
    doc: Document,
    extension_id: str,
    record: ExtensionInstallRecord | Mapping[str, Any],
) -> Document:
    return record_install(doc, EXTENSIONS_SECTION, extension_id, record)


def remove_extension_install(doc: Document, extension_id: str) -> Document:
    return remove_install(doc, EXTENSIONS_SECTION, extension_id)


def record_skill_install(
    doc: Document,
    skill_name: str,
    record: SkillInstallRecord | Mapping[str, Any],
) -> Document:
    return record_install(doc, SKILLS_SECTION, skill_name, record)


def remove_skill_install(doc: Document, skill_name: str) -> Document:
    return remove_install(doc, SKILLS_SECTION, skill_name)


def extension_installs(doc: Mapping[str, Any]) -> dict[str, ExtensionInstallRecord]:
    records: dict[str, ExtensionInstallRecord] = {}
    for key, value in _section_map(doc, EXTENSIONS_SECTION, INSTALLS_KEY).items():
        if not isinstance(value, dict):
            log.warning("Ignoring malformed extension install record", extension=key)
            continue
        try:
            records[key] = ExtensionInstallRecord.model_validate(value)
        except PydanticValidationError as exc:
            log.warning("Ignoring invalid extension install record", extension=key, error=str(exc))
    return records


def skill_installs(doc: Mapping[str, Any]) -> dict[str, SkillInstallRecord]:
    records: dict[str, SkillInstallRecord] = {}
    for key, value in _section_map(doc, SKILLS_SECTION, INSTALLS_KEY).items():
        if not isinstance(value, dict):
            log.warning("Ignoring malformed skill install record", skill=key)
            continue
        try:
            records[key] = SkillInstallRecord.model_validate(value)
        except PydanticValidationError as exc:
            log.warning("Ignoring invalid skill install record", skill=key, error=str(exc))
    return records


def extension_entries(doc: Mapping[str, Any]) -> dict[str, Any]:
    return _section_map(doc, EXTENSIONS_SECTION, ENTRIES_KEY)


def is_extension_enabled(doc: Mapping[str, Any], extension_id: str) -> bool:
    entry = extension_entries(doc).get(extension_id)
    return isinstance(entry, dict) and bool(entry.get("enabled"))


def set_extension_enabled(doc: Document, extension_id: str, enabled: bool) -> Document:
    """Set ``extensions.entries[id].enabled``, keeping other entry fields."""
    existing = _mapping(extension_entries(doc).get(extension_id))
    if existing.get("enabled") is enabled:
        return doc
    return _set_map_entry(doc, EXTENSIONS_SECTION, ENTRIES_KEY, extension_id, {**existing, "enabled": enabled})


def remove_extension_entry(doc: Document, extension_id: str) -> Document:
    return _drop_map_entry(doc, EXTENSIONS_SECTION, ENTRIES_KEY, extension_id)


def extension_slots(doc: Mapping[str, Any]) -> dict[str, Any]:
    return _section_map(doc, EXTENSIONS_SECTION, SLOTS_KEY)


def set_slot_owner(doc: Document, slot: str, extension_id: str | None) -> Document:
    if extension_id is None:
        return _drop_map_entry(doc, EXTENSIONS_SECTION, SLOTS_KEY, slot)
    if extension_slots(doc).get(slot) == extension_id:
        return doc
    return _set_map_entry(doc, EXTENSIONS_SECTION, SLOTS_KEY, slot, extension_id)
