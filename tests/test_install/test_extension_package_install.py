import io
import json
import tarfile
from pathlib import Path

import pytest

from claw_market.exceptions import ErrorKind, UnsafeNameError
from claw_market.extension_install import (
    CommandResult,
    PackageResolution,
    build_install_record_fields,
    install_extension_from_package_spec,
    parse_npm_pack_output,
    remove_installed_extension,
    resolve_pinned_spec,
    unscoped_package_name,
    validate_extension_id,
)
from claw_market.models import ExtensionKind


def _write_tgz(path: Path, files: dict[str, bytes]) -> None:
    with tarfile.open(path, "w:gz") as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))


class _FakeNpm:
    def __init__(
        self,
        files: dict[str, bytes] | None = None,
        code: int = 0,
        stderr: str = "",
        install_code: int = 0,
    ):
        self.files = files
        self.code = code
        self.stderr = stderr
        self.install_code = install_code
        self.calls: list[dict] = []

    async def __call__(self, argv, cwd, env, timeout_seconds):
        self.calls.append({"argv": list(argv), "cwd": cwd, "env": dict(env), "timeout": timeout_seconds})
        if argv[1] == "install":
            if self.install_code != 0:
                return CommandResult(code=self.install_code, stdout="", stderr="npm ERR! ETARGET lancedb@9")
            (Path(cwd) / "node_modules" / "lancedb").mkdir(parents=True)
            (Path(cwd) / "node_modules" / "lancedb" / "index.js").write_text("// dep\n")
            return CommandResult(code=0, stdout="", stderr="")
        if self.code != 0:
            return CommandResult(code=self.code, stdout="", stderr=self.stderr)
        filename = "claw-mem-lancedb-1.2.0.tgz"
        _write_tgz(Path(cwd) / filename, self.files or {})
        stdout = json.dumps(
            [
                {
                    "filename": filename,
                    "name": "@claw/mem-lancedb",
                    "version": "1.2.0",
                    "integrity": "sha512-abc",
                    "shasum": "deadbeef",
                }
            ]
        )
        return CommandResult(code=0, stdout=stdout, stderr="")


MEMORY_PACKAGE = {
    "package/package.json": json.dumps({"name": "@claw/mem-lancedb", "version": "1.2.0"}).encode(),
    "package/claw.extension.json": json.dumps({"id": "mem-lancedb", "kind": "memory"}).encode(),
    "package/index.js": b"module.exports = {};\n",
}


@pytest.mark.asyncio
async def test_install_unpacks_into_extensions_dir(tmp_path: Path):
    npm = _FakeNpm(MEMORY_PACKAGE)
    extensions_dir = tmp_path / "extensions"

    result = await install_extension_from_package_spec(
        "@claw/mem-lancedb",
        extensions_dir=extensions_dir,
        registry_url="https://registry.example/npm/",
        registry_env={"NPM_CONFIG__AUTH": "secret"},
        runner=npm,
    )

    assert result.ok, result.error
    assert result.extension_id == "mem-lancedb"
    assert result.kind is ExtensionKind.MEMORY
    assert result.version == "1.2.0"
    assert Path(result.target_dir) == (extensions_dir / "mem-lancedb").resolve()
    assert (Path(result.target_dir) / "index.js").is_file()
    assert result.resolution.resolved_spec == "@claw/mem-lancedb@1.2.0"
    assert result.resolution.integrity == "sha512-abc"

    argv = npm.calls[0]["argv"]
    assert argv[:3] == ["npm", "pack", "@claw/mem-lancedb"]
    assert "--ignore-scripts" in argv
    assert argv[-2:] == ["--registry", "https://registry.example/npm/"]
    assert npm.calls[0]["env"]["NPM_CONFIG__AUTH"] == "secret"


@pytest.mark.asyncio
async def test_install_falls_back_to_unscoped_package_name(tmp_path: Path):
    npm = _FakeNpm(
        {"package/package.json": json.dumps({"name": "@claw/slack", "version": "2.0.0"}).encode()}
    )

    result = await install_extension_from_package_spec("@claw/slack", extensions_dir=tmp_path, runner=npm)

    assert result.ok, result.error
    assert result.extension_id == "slack"
    assert result.kind is None
    assert "--registry" not in npm.calls[0]["argv"]


@pytest.mark.asyncio
async def test_npm_failure_is_reported(tmp_path: Path):
    npm = _FakeNpm(code=1, stderr="npm ERR! 404 Not Found - @claw/missing")

    result = await install_extension_from_package_spec(
        "@claw/missing", extensions_dir=tmp_path / "extensions", runner=npm
    )

    assert not result.ok
    assert "npm pack failed" in result.error
    assert "404" in result.error
    assert not (tmp_path / "extensions").exists()


@pytest.mark.asyncio
async def test_manifest_with_unsafe_id_is_refused(tmp_path: Path):
    npm = _FakeNpm(
        {
            "package/package.json": json.dumps({"name": "evil", "version": "1.0.0"}).encode(),
            "package/claw.extension.json": json.dumps({"id": "../../escape"}).encode(),
        }
    )

    result = await install_extension_from_package_spec("evil", extensions_dir=tmp_path / "ext", runner=npm)

    assert not result.ok
    assert result.error_kind is ErrorKind.SECURITY
    assert not (tmp_path / "escape").exists()


@pytest.mark.asyncio
async def test_option_like_spec_is_rejected_without_running_npm(tmp_path: Path):
    npm = _FakeNpm(MEMORY_PACKAGE)

    result = await install_extension_from_package_spec("--foo", extensions_dir=tmp_path, runner=npm)

    assert not result.ok
    assert result.error_kind is ErrorKind.VALIDATION
    assert npm.calls == []


def test_helpers():
    assert unscoped_package_name("@scope/pkg") == "pkg"
    assert unscoped_package_name("pkg") == "pkg"
    assert parse_npm_pack_output('[{"filename": "a.tgz"}]') == {"filename": "a.tgz"}
    validate_extension_id("mem-lancedb")
    with pytest.raises(UnsafeNameError):
        validate_extension_id("..")
    with pytest.raises(UnsafeNameError):
        validate_extension_id("a/b")


def test_pinned_spec_resolution():
    assert resolve_pinned_spec("@claw/x", False, "@claw/x@1.0.0") == ("@claw/x", None)
    spec, notice = resolve_pinned_spec("@claw/x", True, "@claw/x@1.0.0")
    assert spec == "@claw/x@1.0.0"
    assert "Pinned" in notice
    spec, notice = resolve_pinned_spec("@claw/x", True, None)
    assert spec == "@claw/x"
    assert "Could not resolve" in notice


def test_build_install_record_fields():
    resolution = PackageResolution(
        name="@claw/x", version="1.0.1", resolved_spec="@claw/x@1.0.1", integrity="sha512-z"
    )

    record, notice = build_install_record_fields("@claw/x", "/opt/ext/x", "1.0.1", resolution, pin=True)

    assert record.source == "marketplace"
    assert record.spec == "@claw/x@1.0.1"
    assert record.install_path == "/opt/ext/x"
    assert record.resolved_version == "1.0.1"
    assert record.effective_version == "1.0.1"
    assert notice == "Pinned install record to @claw/x@1.0.1."


def test_remove_installed_extension_stays_inside_root(tmp_path: Path):
    root = tmp_path / "extensions"
    (root / "x").mkdir(parents=True)
    outside = tmp_path / "elsewhere"
    outside.mkdir()

    assert remove_installed_extension("x", str(outside), root) is False
    assert outside.exists()
    assert remove_installed_extension("x", str(root / "x"), root) is True
    assert not (root / "x").exists()


PACKAGE_WITH_DEPENDENCIES = {
    "package/package.json": json.dumps(
        {
            "name": "@claw/mem-lancedb",
            "version": "1.2.0",
            "dependencies": {"lancedb": "^0.4.0"},
            "devDependencies": {"vitest": "^1.0.0"},
        }
    ).encode(),
    "package/claw.extension.json": json.dumps({"id": "mem-lancedb", "kind": "memory"}).encode(),
    "package/index.js": b"module.exports = require('lancedb');\n",
}


@pytest.mark.asyncio
async def test_runtime_dependencies_are_installed_before_placement(tmp_path: Path):
    npm = _FakeNpm(PACKAGE_WITH_DEPENDENCIES)

    result = await install_extension_from_package_spec(
        "@claw/mem-lancedb",
        extensions_dir=tmp_path / "extensions",
        registry_url="https://registry.example/npm/",
        registry_env={"NPM_CONFIG__AUTH": "secret"},
        runner=npm,
    )

    assert result.ok, result.error
    assert len(npm.calls) == 2
    install = npm.calls[1]
    assert install["argv"][:4] == ["npm", "install", "--omit=dev", "--ignore-scripts"]
    assert install["argv"][-2:] == ["--registry", "https://registry.example/npm/"]
    assert install["cwd"].name == "package"
    assert install["env"]["NPM_CONFIG__AUTH"] == "secret"
    assert (Path(result.target_dir) / "node_modules" / "lancedb" / "index.js").is_file()


@pytest.mark.asyncio
async def test_dependency_install_failure_leaves_nothing_installed(tmp_path: Path):
    npm = _FakeNpm(PACKAGE_WITH_DEPENDENCIES, install_code=1)

    result = await install_extension_from_package_spec(
        "@claw/mem-lancedb", extensions_dir=tmp_path / "extensions", runner=npm
    )

    assert not result.ok
    assert result.error.startswith("npm install failed: ")
    assert result.error_kind is ErrorKind.NETWORK
    assert not (tmp_path / "extensions" / "mem-lancedb").exists()


@pytest.mark.asyncio
async def test_package_without_dependencies_skips_npm_install(tmp_path: Path):
    npm = _FakeNpm(MEMORY_PACKAGE)

    result = await install_extension_from_package_spec("@claw/mem-lancedb", extensions_dir=tmp_path, runner=npm)

    assert result.ok, result.error
    assert [call["argv"][1] for call in npm.calls] == ["pack"]
