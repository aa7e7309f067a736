"""Tests for the local staging store."""

import io
import os
import time
from pathlib import Path

import pytest
from PyPDF2 import PdfWriter

from print_lifecycle.errors import (
    FileTooLarge,
    StagedFileNotFound,
    StagingAccessDenied,
    UnsupportedFormat,
)
from print_lifecycle.services.staging import StagingStore


@pytest.fixture
def staging(tmp_path: Path) -> StagingStore:
    """Return a StagingStore rooted at a temp directory with a 1 KB ceiling."""
    return StagingStore(
        base_dir=str(tmp_path / "uploads"),
        max_bytes=1024,
        allowed_extensions=["pdf", "docx"],
    )


def _pdf_bytes(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


def test_stage_writes_owner_prefixed_file(staging: StagingStore):
    """stage() names the file {owner}_{stamp}-{rand}_{name}."""
    path = staging.stage(7, b"hello", "report.pdf")
    assert path.exists()
    assert path.read_bytes() == b"hello"
    assert path.name.startswith("7_")
    assert path.name.endswith("_report.pdf")
    assert StagingStore.original_name(path) == "report.pdf"


def test_stage_strips_client_directories(staging: StagingStore):
    path = staging.stage(7, b"x", "C:\\Users\\me\\thesis.docx")
    assert StagingStore.original_name(path) == "thesis.docx"
    assert path.parent == staging.base_dir


def test_unsupported_extension_rejected(staging: StagingStore):
    with pytest.raises(UnsupportedFormat):
        staging.stage(7, b"x", "photo.png")
    assert not staging.base_dir.exists() or not any(staging.base_dir.iterdir())


def test_oversized_bytes_rejected_before_writing(staging: StagingStore):
    """A bytes payload over the ceiling never touches the disk."""
    with pytest.raises(FileTooLarge) as exc_info:
        staging.stage(7, b"x" * 2048, "big.pdf")
    assert exc_info.value.limit_bytes == 1024
    assert not staging.base_dir.exists() or not any(staging.base_dir.iterdir())


def test_oversized_stream_removes_partial_file(staging: StagingStore):
    """A stream that crosses the ceiling mid-copy leaves nothing behind."""
    with pytest.raises(FileTooLarge):
        staging.stage(7, io.BytesIO(b"x" * 4096), "big.pdf")
    assert list(staging.base_dir.iterdir()) == []


def test_stream_within_limit_is_staged(staging: StagingStore):
    path = staging.stage(7, io.BytesIO(b"y" * 1000), "ok.pdf")
    assert path.stat().st_size == 1000


@pytest.mark.parametrize("owner", ["", "a_b", "../x", ".."])
def test_invalid_owner_ids_are_denied(staging: StagingStore, owner):
    with pytest.raises(StagingAccessDenied):
        staging.stage(owner, b"x", "a.pdf")


# ---------------------------------------------------------------------------
# Resolve
# ---------------------------------------------------------------------------


def test_resolve_by_exact_name(staging: StagingStore):
    path = staging.stage(7, b"x", "a.pdf")
    assert staging.resolve(7, path.name) == path


def test_resolve_by_original_name(staging: StagingStore):
    path = staging.stage(7, b"x", "notes.pdf")
    assert staging.resolve(7, "notes.pdf") == path


def test_resolve_other_owners_file_is_denied(staging: StagingStore):
    """A staged name belonging to user 7 cannot be claimed by user 8."""
    path = staging.stage(7, b"x", "a.pdf")
    with pytest.raises(StagingAccessDenied):
        staging.resolve(8, path.name)


def test_resolve_by_original_name_does_not_cross_owners(staging: StagingStore):
    """User 71's files never match user 7's prefix."""
    staging.stage(71, b"x", "shared.pdf")
    with pytest.raises(StagedFileNotFound):
        staging.resolve(7, "shared.pdf")


def test_resolve_by_original_name_needs_the_whole_name(staging: StagingStore):
    """"report.pdf" does not match a staged "my_report.pdf"."""
    mine = staging.stage(7, b"x", "my_report.pdf")
    with pytest.raises(StagedFileNotFound):
        staging.resolve(7, "report.pdf")

    report = staging.stage(7, b"y", "report.pdf")
    assert staging.resolve(7, "report.pdf") == report
    assert staging.resolve(7, "my_report.pdf") == mine


def test_resolve_missing_file(staging: StagingStore):
    with pytest.raises(StagedFileNotFound):
        staging.resolve(7, "nothing.pdf")


# ---------------------------------------------------------------------------
# Delete / sweep / page count
# ---------------------------------------------------------------------------


def test_delete_is_idempotent(staging: StagingStore):
    path = staging.stage(7, b"x", "a.pdf")
    assert staging.delete(path) is True
    assert staging.delete(path) is False
    assert staging.delete(None) is False


def test_sweep_removes_only_expired_files(staging: StagingStore):
    old = staging.stage(7, b"x", "old.pdf")
    fresh = staging.stage(7, b"x", "fresh.pdf")
    past = time.time() - 7200
    os.utime(old, (past, past))

    removed = staging.sweep(max_age_seconds=3600)

    assert removed == [old]
    assert not old.exists()
    assert fresh.exists()


def test_sweep_on_missing_dir_is_noop(tmp_path: Path):
    store = StagingStore(base_dir=str(tmp_path / "never-created"), max_bytes=10)
    assert store.sweep(0) == []


def test_count_pages_reads_pdf(tmp_path: Path):
    store = StagingStore(base_dir=str(tmp_path), max_bytes=10 * 1024 * 1024)
    path = store.stage(1, _pdf_bytes(4), "four.pdf")
    assert store.count_pages(path) == 4


def test_count_pages_falls_back_to_one(staging: StagingStore):
    """Non-PDF and unreadable PDF files count as a single page."""
    docx = staging.stage(7, b"not really a docx", "a.docx")
    broken = staging.stage(7, b"%PDF-garbage", "b.pdf")
    assert staging.count_pages(docx) == 1
    assert staging.count_pages(broken) == 1
