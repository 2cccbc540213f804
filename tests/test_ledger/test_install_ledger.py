import copy

from claw_market.ledger import (
    extension_installs,
    extension_slots,
    is_extension_enabled,
    record_extension_install,
    record_skill_install,
    remove_extension_entry,
    remove_extension_install,
    remove_skill_install,
    set_extension_enabled,
    set_slot_owner,
    skill_installs,
)
from claw_market.models import ExtensionInstallRecord, SkillInstallRecord


def _skill_record(version: str = "1.0.0", **extra) -> SkillInstallRecord:
    return SkillInstallRecord(
        source="marketplace",
        version=version,
        archive_url="gs://claw-skills/good-skill.tar.gz",
        **extra,
    )


def test_record_then_remove_restores_document():
    doc = {"gateway": {"port": 18790}, "agents": {"default": {"model": "m"}}}

    recorded = record_skill_install(doc, "good-skill", _skill_record())
    removed = remove_skill_install(recorded, "good-skill")

    assert removed == doc
    assert "skills" in recorded


def test_record_then_remove_from_empty_document():
    recorded = record_extension_install({}, "slack", ExtensionInstallRecord(spec="@claw/slack", version="2.0.0"))

    assert remove_extension_install(recorded, "slack") == {}


def test_record_does_not_mutate_input():
    doc = {"skills": {"installs": {"other": {"source": "archive", "version": "0.1.0"}}, "paths": ["/x"]}}
    snapshot = copy.deepcopy(doc)

    recorded = record_skill_install(doc, "good-skill", _skill_record())

    assert doc == snapshot
    assert recorded["skills"]["paths"] == ["/x"]
    assert set(recorded["skills"]["installs"]) == {"other", "good-skill"}
    assert recorded["skills"]["paths"] is doc["skills"]["paths"]


def test_rerecording_preserves_installed_at():
    first = record_skill_install({}, "good-skill", _skill_record("1.0.0"))
    installed_at = first["skills"]["installs"]["good-skill"]["installed_at"]

    second = record_skill_install(first, "good-skill", _skill_record("1.1.0"))

    assert second["skills"]["installs"]["good-skill"]["installed_at"] == installed_at
    assert second["skills"]["installs"]["good-skill"]["version"] == "1.1.0"


def test_explicit_installed_at_overrides_previous():
    first = record_skill_install({}, "good-skill", _skill_record())

    second = record_skill_install(
        first, "good-skill", _skill_record(installed_at="2020-01-01T00:00:00+00:00")
    )

    assert second["skills"]["installs"]["good-skill"]["installed_at"] == "2020-01-01T00:00:00+00:00"


def test_remove_missing_key_returns_same_document():
    doc = {"skills": {"installs": {"a": {"version": "1"}}}}

    assert remove_skill_install(doc, "b") is doc
    assert remove_extension_install(doc, "a") is doc


def test_typed_views_skip_invalid_records():
    doc = {
        "extensions": {
            "installs": {
                "good": {"source": "marketplace", "spec": "@claw/good", "version": "1.0.0"},
                "bad-source": {"source": "carrier-pigeon"},
                "not-a-dict": "oops",
            }
        },
        "skills": {"installs": {"s": {"source": "archive", "version": "0.2.0"}}},
    }

    assert list(extension_installs(doc)) == ["good"]
    assert skill_installs(doc)["s"].source == "archive"
    assert extension_installs({}) == {}


def test_enable_and_slot_helpers():
    doc = set_extension_enabled({}, "mem-a", True)
    assert is_extension_enabled(doc, "mem-a")
    assert set_extension_enabled(doc, "mem-a", True) is doc

    doc = set_slot_owner(doc, "memory", "mem-a")
    assert extension_slots(doc) == {"memory": "mem-a"}

    doc = set_slot_owner(doc, "memory", None)
    doc = remove_extension_entry(doc, "mem-a")
    assert doc == {}


def test_enable_keeps_other_entry_fields():
    doc = {"extensions": {"entries": {"slack": {"enabled": False, "config": {"team": "T1"}}}}}

    enabled = set_extension_enabled(doc, "slack", True)

    assert enabled["extensions"]["entries"]["slack"] == {"enabled": True, "config": {"team": "T1"}}
    assert doc["extensions"]["entries"]["slack"]["enabled"] is False
