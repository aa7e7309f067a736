"""Local staging store for uploaded documents.

Files wait here between upload and durable migration (or discard):

    {staging_dir}/{owner_id}_{timestamp_ms}-{random}_{original_name}

The owner id prefix lets ``resolve()`` enforce ownership without a database
lookup. ``sweep()`` is the safety net for files nobody claimed; the normal
path deletes the staged copy right after migration.
"""

import glob
import logging
import random
import re
import time
from pathlib import Path
from typing import BinaryIO, Iterable

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from print_lifecycle.errors import (
    FileTooLarge,
    StagedFileNotFound,
    StagingAccessDenied,
    UnsupportedFormat,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


class StagingStore:
    """Owner-scoped local file store with a size ceiling and extension allow-list."""

    def __init__(
        self,
        base_dir: str | None = None,
        max_bytes: int | None = None,
        allowed_extensions: Iterable[str] | None = None,
    ) -> None:
        from print_lifecycle.config import settings

        self._base = Path(base_dir or settings.staging_dir)
        self._max_bytes = (
            max_bytes if max_bytes is not None else settings.max_upload_mb * 1024 * 1024
        )
        self._allowed = {
            ext.lower().lstrip(".")
            for ext in (allowed_extensions or settings.allowed_extensions)
        }

    @property
    def base_dir(self) -> Path:
        return self._base

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _owner_prefix(owner_id: int | str) -> str:
        owner = str(owner_id)
        if not owner or "_" in owner or "/" in owner or "\\" in owner or owner in (".", ".."):
            raise StagingAccessDenied(f"Invalid owner id {owner!r}")
        return f"{owner}_"

    def _check_extension(self, original_name: str) -> str:
        name = Path(original_name.replace("\\", "/")).name
        ext = Path(name).suffix.lower().lstrip(".")
        if not name or ext not in self._allowed:
            allowed = ", ".join(sorted(self._allowed))
            raise UnsupportedFormat(f"Unsupported file type {ext or name!r}; allowed: {allowed}")
        return name

    def _staged_name(self, owner_id: int | str, original_name: str) -> str:
        stamp = int(time.time() * 1000)
        suffix = random.randint(0, 10**9 - 1)
        return f"{self._owner_prefix(owner_id)}{stamp}-{suffix}_{original_name}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stage(
        self,
        owner_id: int | str,
        data: bytes | BinaryIO,
        original_name: str,
    ) -> Path:
        """Write an upload to the staging dir and return its path.

        ``data`` may be raw bytes or a readable binary stream; streams are
        copied in chunks and abandoned as soon as the ceiling is crossed, in
        which case the partial file is removed before ``FileTooLarge`` is
        raised.
        """
        name = self._check_extension(original_name)
        if isinstance(data, (bytes, bytearray)) and len(data) > self._max_bytes:
            raise FileTooLarge(
                f"File exceeds the {self._max_bytes // (1024 * 1024)} MB limit",
                limit_bytes=self._max_bytes,
            )

        self._base.mkdir(parents=True, exist_ok=True)
        dest = self._base / self._staged_name(owner_id, name)

        written = 0
        try:
            with dest.open("wb") as fh:
                if isinstance(data, (bytes, bytearray)):
                    fh.write(data)
                    written = len(data)
                else:
                    while True:
                        chunk = data.read(_CHUNK_SIZE)
                        if not chunk:
                            break
                        written += len(chunk)
                        if written > self._max_bytes:
                            raise FileTooLarge(
                                f"File exceeds the {self._max_bytes // (1024 * 1024)} MB limit",
                                limit_bytes=self._max_bytes,
                            )
                        fh.write(chunk)
        except BaseException:
            dest.unlink(missing_ok=True)
            raise

        logger.info("Staged %d bytes for user %s → %s", written, owner_id, dest.name)
        return dest

    def resolve(self, owner_id: int | str, name: str) -> Path:
        """Return the staged file ``name`` if it belongs to ``owner_id``.

        Tries the exact name first, then any staged file following the
        ``{owner}_{stamp}-{rand}_{name}`` scheme.
        """
        prefix = self._owner_prefix(owner_id)
        name = Path(name.replace("\\", "/")).name
        if not name:
            raise StagedFileNotFound("Empty file name")

        exact = self._base / name
        if exact.is_file():
            if not name.startswith(prefix):
                raise StagingAccessDenied("Staged file belongs to another user")
            return exact

        if self._base.is_dir():
            # the glob also matches "my_report.pdf" for "report.pdf"
            staged = re.compile(rf"{re.escape(prefix)}\d+-\d+_{re.escape(name)}")
            for candidate in sorted(self._base.glob(f"{prefix}*_{glob.escape(name)}")):
                if candidate.is_file() and staged.fullmatch(candidate.name):
                    return candidate

        raise StagedFileNotFound(f"No staged file named {name!r}")

    @staticmethod
    def original_name(path: str | Path) -> str:
        """Strip the ``{owner}_{stamp}-{rand}_`` prefix from a staged file name."""
        name = Path(path).name
        parts = name.split("_", 2)
        if len(parts) == 3 and "-" in parts[1]:
            return parts[2]
        return name

    def delete(self, path: str | Path | None) -> bool:
        """Delete a staged file. Returns False when it was already gone."""
        if not path:
            return False
        p = Path(path)
        try:
            p.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted staged file %s", p.name)
        return True

    def exists(self, path: str | Path | None) -> bool:
        return bool(path) and Path(path).is_file()

    def sweep(self, max_age_seconds: float | None = None) -> list[Path]:
        """Remove staged files older than the retention window.

        Returns the paths that were removed.
        """
        if max_age_seconds is None:
            from print_lifecycle.config import settings

            max_age_seconds = settings.staging_retention_hours * 3600
        if not self._base.is_dir():
            return []

        cutoff = time.time() - max_age_seconds
        removed: list[Path] = []
        for f in self._base.iterdir():
            if not f.is_file():
                continue
            try:
                if f.stat().st_mtime < cutoff:
                    f.unlink()
                    removed.append(f)
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Staging sweep removed %d expired files", len(removed))
        return removed

    def count_pages(self, path: str | Path) -> int:
        """Page count of a staged document; non-PDF or unreadable files count as 1."""
        p = Path(path)
        if p.suffix.lower() != ".pdf":
            return 1
        try:
            return max(1, len(PdfReader(str(p)).pages))
        except (PdfReadError, OSError, ValueError) as exc:
            logger.warning("Could not read page count from %s: %s", p.name, exc)
            return 1


# Module-level singleton, instantiated lazily so tests can override settings.
_staging: StagingStore | None = None


def get_staging() -> StagingStore:
    """Return the module-level StagingStore singleton."""
    global _staging
    if _staging is None:
        _staging = StagingStore()
    return _staging
