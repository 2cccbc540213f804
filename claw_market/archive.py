"""Safe archive extraction and directory placement."""

from __future__ import annotations

import asyncio
import os
import posixpath
import shutil
import tarfile
import tempfile
import threading
import zipfile
from pathlib import Path

from claw_market.exceptions import ArchiveError, ExtractionTimeoutError
from claw_market.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_EXTRACTED_BYTES = 200 * 1024 * 1024
DEFAULT_MAX_MEMBERS = 10_000


def detect_archive_type(archive_path: Path) -> str:
    if zipfile.is_zipfile(archive_path):
        return "zip"
    if tarfile.is_tarfile(archive_path):
        return "tar"
    raise ArchiveError(f"Unsupported or corrupt archive: {archive_path.name}")


def normalize_archive_member_path(raw: str, strip_components: int = 0) -> str | None:
    """Relative destination for an archive member, or None to skip it.

    Raises ArchiveError for members that would land outside the target.
    """
    cleaned = str(raw or "").replace("\\", "/")
    if not cleaned:
        return None
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        raise ArchiveError(f"Archive member has an absolute path: {raw}")
    parts = [part for part in cleaned.split("/") if part and part != "."]
    if strip_components > 0:
        parts = parts[strip_components:]
    if not parts:
        return None
    if ".." in parts:
        raise ArchiveError(f"Archive member escapes target directory: {raw}")
    normalized = posixpath.normpath("/".join(parts))
    if not normalized or normalized in {".", ".."}:
        return None
    return normalized


def _resolve_inside(target_dir: Path, rel_path: str) -> Path:
    destination = (target_dir / rel_path).resolve()
    try:
        destination.relative_to(target_dir)
    except ValueError as exc:
        raise ArchiveError(f"Archive member escapes target directory: {rel_path}") from exc
    return destination


class _Budget:
    def __init__(self, max_bytes: int, max_members: int, cancel_event: threading.Event | None = None):
        self.max_bytes = max_bytes
        self.max_members = max_members
        self.cancel_event = cancel_event
        self.bytes = 0
        self.members = 0

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ArchiveError("Archive extraction cancelled")

    def add_member(self) -> None:
        self.check_cancelled()
        self.members += 1
        if self.members > self.max_members:
            raise ArchiveError(f"Archive has more than {self.max_members} entries")

    def add_bytes(self, size: int) -> None:
        self.check_cancelled()
        self.bytes += size
        if self.bytes > self.max_bytes:
            raise ArchiveError(f"Archive expands beyond {self.max_bytes} bytes")


def _copy_limited(source, out_file, budget: _Budget) -> None:
    while True:
        chunk = source.read(64 * 1024)
        if not chunk:
            return
        budget.add_bytes(len(chunk))
        out_file.write(chunk)


def _extract_zip_archive(archive_path: Path, target_dir: Path, strip_components: int, budget: _Budget) -> None:
    with zipfile.ZipFile(archive_path, "r") as archive:
        for member in archive.infolist():
            budget.add_member()
            rel_path = normalize_archive_member_path(member.filename, strip_components)
            if not rel_path:
                continue
            destination = _resolve_inside(target_dir, rel_path)
            if member.is_dir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(member, "r") as source_file:
                with destination.open("wb") as out_file:
                    _copy_limited(source_file, out_file, budget)


def _extract_tar_archive(archive_path: Path, target_dir: Path, strip_components: int, budget: _Budget) -> None:
    with tarfile.open(archive_path, "r:*") as archive:
        for member in archive:
            budget.add_member()
            if member.issym() or member.islnk():
                raise ArchiveError("Archive contains symbolic or hard links; refusing extraction.")
            rel_path = normalize_archive_member_path(member.name, strip_components)
            if not rel_path:
                continue
            destination = _resolve_inside(target_dir, rel_path)
            if member.isdir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            source_file = archive.extractfile(member)
            if source_file is None:
                continue
            with source_file:
                with destination.open("wb") as out_file:
                    _copy_limited(source_file, out_file, budget)


def extract_archive(
    archive_path: Path,
    target_dir: Path,
    strip_components: int = 0,
    max_bytes: int = DEFAULT_MAX_EXTRACTED_BYTES,
    max_members: int = DEFAULT_MAX_MEMBERS,
    cancel_event: threading.Event | None = None,
) -> None:
    """Extract a tar(.gz/.bz2/.xz) or zip archive into ``target_dir``.

    Setting ``cancel_event`` stops the extraction at the next member or chunk.
    """
    target_dir = target_dir.resolve()
    target_dir.mkdir(parents=True, exist_ok=True)
    budget = _Budget(max_bytes, max_members, cancel_event)
    archive_type = detect_archive_type(archive_path)
    try:
        if archive_type == "zip":
            _extract_zip_archive(archive_path, target_dir, strip_components, budget)
        else:
            _extract_tar_archive(archive_path, target_dir, strip_components, budget)
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as exc:
        raise ArchiveError(f"Failed to extract archive: {exc}") from exc


async def extract_archive_with_timeout(
    archive_path: Path,
    target_dir: Path,
    timeout_seconds: float,
    strip_components: int = 0,
) -> None:
    """Run ``extract_archive`` in a worker thread under a deadline.

    At the deadline the worker is told to stop and is waited for, so nothing
    is still writing under ``target_dir`` once this raises.
    """
    cancel_event = threading.Event()
    worker = asyncio.ensure_future(
        asyncio.to_thread(
            extract_archive,
            archive_path,
            target_dir,
            strip_components,
            cancel_event=cancel_event,
        )
    )
    try:
        await asyncio.wait_for(asyncio.shield(worker), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        cancel_event.set()
        await asyncio.gather(worker, return_exceptions=True)
        log.warning("Archive extraction timed out", archive=archive_path.name, timeout=timeout_seconds)
        raise ExtractionTimeoutError(timeout_seconds) from exc
    except asyncio.CancelledError:
        cancel_event.set()
        await asyncio.gather(worker, return_exceptions=True)
        raise


def replace_directory(source_dir: Path, target_dir: Path) -> Path:
    """Place ``source_dir``'s contents at ``target_dir``, replacing it wholesale.

    The copy is staged in a hidden sibling of the target, so the final rename
    is the only operation that touches ``target_dir`` itself.
    """
    parent = target_dir.parent
    parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".staging-{target_dir.name}-", dir=str(parent)))
    try:
        staged = staging / "payload"
        shutil.copytree(source_dir, staged, symlinks=False)
        if target_dir.exists() or target_dir.is_symlink():
            if target_dir.is_dir() and not target_dir.is_symlink():
                shutil.rmtree(target_dir)
            else:
                target_dir.unlink()
        os.replace(staged, target_dir)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    return target_dir
