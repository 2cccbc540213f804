import asyncio
import io
import tarfile
import threading
import zipfile
from pathlib import Path

import pytest

from claw_market.archive import (
    detect_archive_type,
    extract_archive,
    extract_archive_with_timeout,
    normalize_archive_member_path,
    replace_directory,
)
from claw_market.exceptions import ArchiveError, ExtractionTimeoutError


def _add_file(archive: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    archive.addfile(info, io.BytesIO(data))


def _write_tar(path: Path, files: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as archive:
        for name, data in files.items():
            _add_file(archive, name, data)
    return path


def test_normalize_archive_member_path():
    assert normalize_archive_member_path("pkg/SKILL.md", 1) == "SKILL.md"
    assert normalize_archive_member_path("./pkg/docs/a.md", 1) == "docs/a.md"
    assert normalize_archive_member_path("pkg/", 1) is None
    assert normalize_archive_member_path("pkg\\win\\file.txt", 1) == "win/file.txt"
    with pytest.raises(ArchiveError):
        normalize_archive_member_path("pkg/../../etc/passwd", 1)
    with pytest.raises(ArchiveError):
        normalize_archive_member_path("/etc/passwd")
    with pytest.raises(ArchiveError):
        normalize_archive_member_path("C:/Windows/evil.dll")


def test_extract_tar_strips_top_level_directory(tmp_path: Path):
    archive = _write_tar(
        tmp_path / "skill.tar.gz",
        {"good-skill/SKILL.md": b"# Good\n", "good-skill/scripts/run.sh": b"echo hi\n"},
    )

    extract_archive(archive, tmp_path / "out", strip_components=1)

    assert (tmp_path / "out" / "SKILL.md").read_text() == "# Good\n"
    assert (tmp_path / "out" / "scripts" / "run.sh").is_file()
    assert detect_archive_type(archive) == "tar"


def test_extract_tar_refuses_traversal(tmp_path: Path):
    archive = _write_tar(tmp_path / "evil.tar.gz", {"../evil.txt": b"pwned"})

    with pytest.raises(ArchiveError):
        extract_archive(archive, tmp_path / "out")

    assert not (tmp_path / "evil.txt").exists()


def test_extract_tar_refuses_links(tmp_path: Path):
    path = tmp_path / "links.tar.gz"
    with tarfile.open(path, "w:gz") as archive:
        _add_file(archive, "pkg/SKILL.md", b"# ok\n")
        link = tarfile.TarInfo("pkg/passwd")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        archive.addfile(link)

    with pytest.raises(ArchiveError, match="links"):
        extract_archive(path, tmp_path / "out", strip_components=1)


def test_extract_zip_refuses_traversal(tmp_path: Path):
    path = tmp_path / "evil.zip"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("pkg/SKILL.md", "# ok\n")
        archive.writestr("../../escape.txt", "pwned")

    assert detect_archive_type(path) == "zip"
    with pytest.raises(ArchiveError):
        extract_archive(path, tmp_path / "out")


def test_extract_enforces_size_budget(tmp_path: Path):
    archive = _write_tar(tmp_path / "big.tar.gz", {"pkg/blob.bin": b"\0" * 4096})

    with pytest.raises(ArchiveError, match="expands beyond"):
        extract_archive(archive, tmp_path / "out", strip_components=1, max_bytes=1024)


def test_unsupported_archive(tmp_path: Path):
    path = tmp_path / "notes.txt"
    path.write_text("plain text", encoding="utf-8")

    with pytest.raises(ArchiveError, match="Unsupported"):
        detect_archive_type(path)


@pytest.mark.asyncio
async def test_extract_with_timeout_runs_in_worker(tmp_path: Path):
    archive = _write_tar(tmp_path / "skill.tar.gz", {"pkg/SKILL.md": b"# ok\n"})

    await extract_archive_with_timeout(archive, tmp_path / "out", timeout_seconds=10, strip_components=1)

    assert (tmp_path / "out" / "SKILL.md").is_file()


def test_replace_directory_swaps_contents(tmp_path: Path):
    source = tmp_path / "staged"
    source.mkdir()
    (source / "SKILL.md").write_text("# new\n", encoding="utf-8")
    target = tmp_path / "managed" / "good-skill"
    target.mkdir(parents=True)
    (target / "stale.txt").write_text("old", encoding="utf-8")

    result = replace_directory(source, target)

    assert result == target
    assert (target / "SKILL.md").read_text() == "# new\n"
    assert not (target / "stale.txt").exists()
    assert sorted(p.name for p in target.parent.iterdir()) == ["good-skill"]


def _many_members(path: Path, count: int) -> Path:
    return _write_tar(path, {f"pkg/file-{index}.txt": b"x" * 64 for index in range(count)})


def test_cancelled_extraction_writes_nothing(tmp_path: Path):
    archive = _many_members(tmp_path / "many.tar.gz", 50)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(ArchiveError, match="cancelled"):
        extract_archive(archive, tmp_path / "out", strip_components=1, cancel_event=cancel_event)

    assert not any(path.is_file() for path in (tmp_path / "out").rglob("*"))


@pytest.mark.asyncio
async def test_timed_out_extraction_stops_the_worker(tmp_path: Path):
    archive = _many_members(tmp_path / "many.tar.gz", 3000)
    target = tmp_path / "out"

    with pytest.raises(ExtractionTimeoutError):
        await extract_archive_with_timeout(archive, target, timeout_seconds=0, strip_components=1)

    written = sorted(target.rglob("*")) if target.exists() else []
    await asyncio.sleep(0.05)
    assert (sorted(target.rglob("*")) if target.exists() else []) == written
    assert len(written) < 3000
