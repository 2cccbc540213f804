"""Install extensions from the package registry through the npm CLI."""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import tempfile
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from claw_market.archive import extract_archive_with_timeout, replace_directory
from claw_market.config import CONFIG_DIR
from claw_market.exceptions import (
    ContentError,
    ErrorKind,
    InstallerError,
    UnsafeNameError,
    ValidationError,
    classify_error,
)
from claw_market.logging import get_logger, log_security_event
from claw_market.models import ExtensionInstallRecord, ExtensionKind

log = get_logger(__name__)

DEFAULT_EXTENSIONS_DIR = CONFIG_DIR / "extensions"
INSTALL_TIMEOUT_SECONDS = 120
EXTRACT_TIMEOUT_SECONDS = 30
EXTENSION_MANIFEST_FILE = "claw.extension.json"
PACKAGE_MANIFEST_FILE = "package.json"

_EXTENSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@dataclass
class CommandResult:
    code: int | None
    stdout: str
    stderr: str


CommandRunner = Callable[[list[str], Path, Mapping[str, str], float], Awaitable[CommandResult]]


@dataclass
class PackageResolution:
    name: str | None = None
    version: str | None = None
    resolved_spec: str | None = None
    integrity: str | None = None
    shasum: str | None = None
    resolved_at: str | None = None


@dataclass
class ExtensionInstallResult:
    ok: bool
    extension_id: str = ""
    target_dir: str = ""
    version: str = ""
    kind: ExtensionKind | None = None
    resolution: PackageResolution | None = None
    error: str = ""
    error_kind: ErrorKind | None = None

    @classmethod
    def failure(cls, exc: BaseException) -> "ExtensionInstallResult":
        return cls(ok=False, error=str(exc), error_kind=classify_error(exc))


async def run_command(
    argv: list[str],
    cwd: Path,
    env: Mapping[str, str],
    timeout_seconds: float,
) -> CommandResult:
    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=dict(env),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise InstallerError(f"{argv[0]} timed out after {timeout_seconds:g}s") from exc
    return CommandResult(
        code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def validate_extension_id(extension_id: str) -> None:
    if not _EXTENSION_ID_PATTERN.match(extension_id or "") or extension_id in {".", ".."}:
        raise UnsafeNameError(extension_id, f'Invalid extension id: "{extension_id}"')


def unscoped_package_name(name: str) -> str:
    """``@scope/pkg`` -> ``pkg``."""
    return name.rsplit("/", 1)[-1] if name.startswith("@") else name


def parse_npm_pack_output(stdout: str) -> dict[str, Any]:
    try:
        payload = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise InstallerError(f"Unexpected npm pack output: {stdout.strip()[:200]}") from exc
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        return payload[0]
    if isinstance(payload, dict):
        return payload
    raise InstallerError("npm pack returned no package metadata.")


def _read_json(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ContentError(f"Invalid {path.name}: {exc}") from exc
    return payload if isinstance(payload, dict) else {}


def read_extension_manifest(package_dir: Path) -> tuple[str, ExtensionKind | None]:
    """Extension id and kind declared by an unpacked package."""
    package = _read_json(package_dir / PACKAGE_MANIFEST_FILE)
    manifest = _read_json(package_dir / EXTENSION_MANIFEST_FILE)
    if not package and not manifest:
        raise ContentError(
            f"Package does not contain {PACKAGE_MANIFEST_FILE}. Not a valid extension package."
        )
    extension_id = str(manifest.get("id") or "").strip()
    if not extension_id:
        extension_id = unscoped_package_name(str(package.get("name") or "").strip())
    kind: ExtensionKind | None = None
    raw_kind = manifest.get("kind")
    if raw_kind:
        try:
            kind = ExtensionKind(str(raw_kind))
        except ValueError:
            log.warning("Unknown extension kind in manifest", kind=raw_kind, extension=extension_id)
    return extension_id, kind


def has_runtime_dependencies(package_dir: Path) -> bool:
    dependencies = _read_json(package_dir / PACKAGE_MANIFEST_FILE).get("dependencies")
    return isinstance(dependencies, dict) and bool(dependencies)


def _raise_for_command(label: str, completed: CommandResult) -> None:
    if completed.code == 0:
        return
    details = (completed.stderr or completed.stdout or "").strip()
    raise InstallerError(f"{label} failed: {details[:500]}" if details else f"{label} failed.")


async def install_extension_from_package_spec(
    spec: str,
    *,
    extensions_dir: Path | str | None = None,
    registry_url: str | None = None,
    registry_env: Mapping[str, str] | None = None,
    timeout_seconds: float = INSTALL_TIMEOUT_SECONDS,
    extract_timeout: float = EXTRACT_TIMEOUT_SECONDS,
    runner: CommandRunner = run_command,
) -> ExtensionInstallResult:
    """Fetch ``spec`` with ``npm pack`` and unpack it into the extensions dir.

    Runtime dependencies are installed into the staged package before it is
    moved into place.
    """
    spec = (spec or "").strip()
    if not spec or spec.startswith("-"):
        return ExtensionInstallResult.failure(ValidationError(f'Invalid package spec: "{spec}"'))

    root = Path(extensions_dir).expanduser().resolve() if extensions_dir else DEFAULT_EXTENSIONS_DIR.resolve()
    argv = ["npm", "pack", spec, "--json", "--ignore-scripts"]
    if registry_url:
        argv.extend(["--registry", registry_url])
    env = {**os.environ, **dict(registry_env or {})}

    try:
        with tempfile.TemporaryDirectory(prefix="claw-market-ext-") as temp_dir:
            work_dir = Path(temp_dir)
            log.info("Packing extension", spec=spec, registry=registry_url or "")
            completed = await runner(argv, work_dir, env, timeout_seconds)
            _raise_for_command("npm pack", completed)

            info = parse_npm_pack_output(completed.stdout)
            filename = str(info.get("filename") or "").strip()
            if not filename or "/" in filename or "\\" in filename:
                raise InstallerError(f"npm pack reported an invalid tarball name: {filename!r}")
            tarball = work_dir / filename
            if not tarball.is_file():
                raise InstallerError(f"npm pack did not produce {filename}")

            package_dir = work_dir / "package"
            await extract_archive_with_timeout(
                tarball,
                package_dir,
                timeout_seconds=extract_timeout,
                strip_components=1,
            )
            extension_id, kind = read_extension_manifest(package_dir)
            validate_extension_id(extension_id)

            if has_runtime_dependencies(package_dir):
                install_argv = ["npm", "install", "--omit=dev", "--ignore-scripts", "--no-audit", "--no-fund"]
                if registry_url:
                    install_argv.extend(["--registry", registry_url])
                log.info("Installing extension dependencies", extension=extension_id)
                installed = await runner(install_argv, package_dir, env, timeout_seconds)
                _raise_for_command("npm install", installed)

            target_dir = replace_directory(package_dir, root / extension_id)
    except UnsafeNameError as exc:
        log_security_event(log, "Rejected extension id", spec=spec, error=str(exc))
        return ExtensionInstallResult.failure(exc)
    except Exception as exc:
        log.warning("Extension install failed", spec=spec, error=str(exc))
        return ExtensionInstallResult.failure(exc)

    name = str(info.get("name") or "") or None
    version = str(info.get("version") or "")
    resolution = PackageResolution(
        name=name,
        version=version or None,
        resolved_spec=f"{name}@{version}" if name and version else None,
        integrity=info.get("integrity") or None,
        shasum=info.get("shasum") or None,
        resolved_at=datetime.now(UTC).isoformat(),
    )
    log.info("Installed extension", extension=extension_id, version=version, target=str(target_dir))
    return ExtensionInstallResult(
        ok=True,
        extension_id=extension_id,
        target_dir=str(target_dir),
        version=version,
        kind=kind,
        resolution=resolution,
    )


def resolve_pinned_spec(raw_spec: str, pin: bool, resolved_spec: str | None) -> tuple[str, str | None]:
    """Spec to record and an optional notice for the user."""
    if not pin:
        return raw_spec, None
    if not resolved_spec:
        return raw_spec, "Could not resolve exact package version for --pin; storing original spec."
    return resolved_spec, f"Pinned install record to {resolved_spec}."


def build_install_record_fields(
    spec: str,
    install_path: str,
    version: str,
    resolution: PackageResolution | None,
    pin: bool = False,
    source: str = "marketplace",
) -> tuple[ExtensionInstallRecord, str | None]:
    resolution = resolution or PackageResolution()
    record_spec, notice = resolve_pinned_spec(spec, pin, resolution.resolved_spec)
    record = ExtensionInstallRecord(
        source=source,
        spec=record_spec,
        install_path=install_path,
        version=version,
        resolved_name=resolution.name,
        resolved_version=resolution.version,
        resolved_spec=resolution.resolved_spec,
        integrity=resolution.integrity,
        shasum=resolution.shasum,
        resolved_at=resolution.resolved_at,
    )
    return record, notice


def remove_installed_extension(
    extension_id: str,
    install_path: str | None,
    extensions_dir: Path | str | None = None,
) -> bool:
    """Delete an extension's files if they live inside the extensions dir."""
    validate_extension_id(extension_id)
    root = Path(extensions_dir).expanduser().resolve() if extensions_dir else DEFAULT_EXTENSIONS_DIR.resolve()
    candidate = Path(install_path).expanduser().resolve() if install_path else root / extension_id
    try:
        candidate.relative_to(root)
    except ValueError:
        log_security_event(
            log,
            "Refusing to remove extension outside extensions dir",
            extension=extension_id,
            path=str(candidate),
        )
        return False
    if candidate == root or not candidate.exists():
        return False
    shutil.rmtree(candidate)
    log.info("Removed extension directory", extension=extension_id, target=str(candidate))
    return True
