"""Install skills from archive URLs into the managed skills directory."""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from claw_market.archive import extract_archive_with_timeout, replace_directory
from claw_market.catalog import resolve_object_storage_url
from claw_market.config import CONFIG_DIR
from claw_market.exceptions import (
    ContentError,
    ErrorKind,
    NetworkError,
    UnsafeNameError,
    classify_error,
)
from claw_market.fetch_guard import download_to_file, fetch_with_ssrf_guard
from claw_market.logging import get_logger, log_security_event

log = get_logger(__name__)

SKILL_MARKER_FILE = "SKILL.md"
DEFAULT_MANAGED_SKILLS_DIR = CONFIG_DIR / "skills"
DOWNLOAD_TIMEOUT_SECONDS = 60
EXTRACT_TIMEOUT_SECONDS = 30
MAX_ARCHIVE_BYTES = 50 * 1024 * 1024

Fetcher = Callable[..., Awaitable[Any]]


@dataclass
class SkillInstallResult:
    ok: bool
    skill_name: str
    target_dir: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None

    @classmethod
    def success(cls, skill_name: str, target_dir: Path) -> "SkillInstallResult":
        return cls(ok=True, skill_name=skill_name, target_dir=str(target_dir))

    @classmethod
    def failure(cls, skill_name: str, exc: BaseException) -> "SkillInstallResult":
        return cls(ok=False, skill_name=skill_name, error=str(exc), error_kind=classify_error(exc))


def validate_skill_name(name: str) -> None:
    """Refuse names that cannot safely be used as a single path component."""
    if (
        not name
        or "/" in name
        or "\\" in name
        or "\x00" in name
        or name in {".", ".."}
    ):
        raise UnsafeNameError(name, f'Invalid skill name: "{name}"')
    if name.startswith("."):
        raise UnsafeNameError(name, f'Skill name cannot start with a dot: "{name}"')


def resolve_managed_dir(managed_dir: Path | str | None) -> Path:
    if managed_dir is None:
        return DEFAULT_MANAGED_SKILLS_DIR.resolve()
    return Path(managed_dir).expanduser().resolve()


async def install_skill_from_archive(
    name: str,
    archive_url: str,
    managed_dir: Path | str | None = None,
    auth_token: str | None = None,
    *,
    download_timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
    extract_timeout: float = EXTRACT_TIMEOUT_SECONDS,
    max_archive_bytes: int = MAX_ARCHIVE_BYTES,
    fetcher: Fetcher = fetch_with_ssrf_guard,
    **fetch_options: Any,
) -> SkillInstallResult:
    """Download a skill archive and place it at ``<managed_dir>/<name>``.

    The archive is expected to hold a single top-level directory containing
    ``SKILL.md``. An existing install of the same name is replaced wholesale.
    """
    try:
        validate_skill_name(name)
    except UnsafeNameError as exc:
        log_security_event(log, "Rejected skill name", skill=name, error=str(exc))
        return SkillInstallResult.failure(name, exc)

    root = resolve_managed_dir(managed_dir)
    target_dir = root / name
    url = resolve_object_storage_url(archive_url)

    try:
        with tempfile.TemporaryDirectory(prefix=f"claw-market-skill-{name}-") as temp_dir:
            work_dir = Path(temp_dir)
            archive_path = work_dir / f"{name}.tar.gz"
            headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}

            log.info("Downloading skill archive", skill=name, url=url)
            async with await fetcher(
                url,
                headers=headers,
                timeout_seconds=download_timeout,
                **fetch_options,
            ) as fetched:
                response = fetched.response
                if not response.is_success:
                    raise NetworkError(
                        f"Download failed: {response.status_code} {response.reason_phrase}".rstrip(),
                        status_code=response.status_code,
                        reason=response.reason_phrase,
                    )
                await download_to_file(fetched, archive_path, max_archive_bytes)

            extract_dir = work_dir / "extracted"
            log.info("Extracting skill archive", skill=name)
            await extract_archive_with_timeout(
                archive_path,
                extract_dir,
                timeout_seconds=extract_timeout,
                strip_components=1,
            )

            if not (extract_dir / SKILL_MARKER_FILE).is_file():
                raise ContentError(
                    f"Archive does not contain a {SKILL_MARKER_FILE} file. Not a valid skill package."
                )

            replace_directory(extract_dir, target_dir)
    except Exception as exc:
        log.warning("Skill install failed", skill=name, url=url, error=str(exc))
        return SkillInstallResult.failure(name, exc)

    log.info("Installed skill", skill=name, target=str(target_dir))
    return SkillInstallResult.success(name, target_dir)


def remove_installed_skill(name: str, managed_dir: Path | str | None = None) -> bool:
    """Delete a managed skill directory; returns False when it was absent."""
    validate_skill_name(name)
    target_dir = resolve_managed_dir(managed_dir) / name
    if not target_dir.exists():
        return False
    shutil.rmtree(target_dir)
    log.info("Removed skill directory", skill=name, target=str(target_dir))
    return True
