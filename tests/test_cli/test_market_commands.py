import importlib
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from claw_market.config import load_document
from claw_market.main import cli
from claw_market.models import Catalog
from claw_market.service import MarketplaceService, ServiceResult

main_module = importlib.import_module("claw_market.main")
runner = CliRunner()

CATALOG = Catalog.model_validate(
    {
        "version": 1,
        "extensions": [
            {"id": "mem-a", "name": "Memory A", "description": "Vector memory", "packageSpec": "@claw/mem-a", "version": "1.0.0", "kind": "memory"}
        ],
        "skills": [
            {"name": "good-skill", "description": "Does good things", "archiveUrl": "https://cdn.example/g.tgz", "version": "1.0.0"}
        ],
    }
)


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(main_module, "configure_logging", lambda cfg=None: None)


def _write_config(tmp_path: Path, document: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(document), encoding="utf-8")
    return path


def test_version_command():
    result = runner.invoke(cli, ["version"])

    assert result.exit_code == 0
    assert "Claw Market v0.1.0" in result.output


def test_installed_lists_extensions_and_skills(tmp_path: Path):
    path = _write_config(
        tmp_path,
        {
            "extensions": {
                "installs": {"mem-a": {"source": "marketplace", "spec": "@claw/mem-a", "version": "1.0.0"}},
                "entries": {"mem-a": {"enabled": True}},
            },
            "skills": {"installs": {"good-skill": {"source": "marketplace", "version": "2.0.0"}}},
        },
    )

    result = runner.invoke(cli, ["--config", str(path), "installed"])

    assert result.exit_code == 0, result.output
    assert "mem-a" in result.output
    assert "good-skill" in result.output
    assert "2.0.0" in result.output


def test_search_prints_matches(tmp_path: Path, monkeypatch):
    async def fake_catalog(self):
        return CATALOG

    monkeypatch.setattr(MarketplaceService, "load_marketplace_catalog", fake_catalog)
    path = _write_config(tmp_path, {})

    found = runner.invoke(cli, ["--config", str(path), "search", "good"])
    missing = runner.invoke(cli, ["--config", str(path), "search", "NONEXISTENT-XYZ"])

    assert found.exit_code == 0, found.output
    assert "good-skill" in found.output
    assert "No results" in missing.output


def test_install_writes_config_on_success(tmp_path: Path, monkeypatch):
    async def fake_install(self, doc, unit_id, unit_type=None, pin=False):
        next_doc = {**doc, "skills": {"installs": {unit_id: {"source": "marketplace", "version": "1.0.0"}}}}
        return ServiceResult(ok=True, payload={"ok": True, "id": unit_id, "type": "skill", "version": "1.0.0"}, config=next_doc)

    monkeypatch.setattr(MarketplaceService, "install_from_catalog", fake_install)
    path = _write_config(tmp_path, {"gateway": {"port": 18791}})

    result = runner.invoke(cli, ["--config", str(path), "install", "good-skill"])

    assert result.exit_code == 0, result.output
    assert "Installed" in result.output
    saved = load_document(path)
    assert saved["gateway"] == {"port": 18791}
    assert saved["skills"]["installs"]["good-skill"]["version"] == "1.0.0"


def test_install_failure_exits_non_zero(tmp_path: Path, monkeypatch):
    async def fake_install(self, doc, unit_id, unit_type=None, pin=False):
        return ServiceResult(ok=False, status=404, payload={"ok": False}, error=f'"{unit_id}" not found in catalog')

    monkeypatch.setattr(MarketplaceService, "install_from_catalog", fake_install)
    path = _write_config(tmp_path, {})

    result = runner.invoke(cli, ["--config", str(path), "install", "ghost"])

    assert result.exit_code == 1
    assert "not found in catalog" in result.output
    assert load_document(path) == {}


def test_uninstall_rejects_unknown_type(tmp_path: Path):
    path = _write_config(tmp_path, {})

    result = runner.invoke(cli, ["--config", str(path), "uninstall", "x", "--type", "plugin"])

    assert result.exit_code == 1
    assert "invalid 'type'" in result.output


def test_command_module_is_importable_by_name():
    assert main_module.__name__ == "claw_market.main"
    assert main_module.cli is cli
    assert main_module.configure_logging(None) is None
