from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from labingest.errors import StorageError

logger = logging.getLogger(__name__)

OVERWRITE_CHUNK_BYTES = 1024 * 1024
_STORED_NAME_PATTERN = re.compile(r"^\d{8}T\d{12}Z_[0-9a-f]{16}(\.[a-z0-9]{1,8})?$")


@dataclass(frozen=True)
class StagedFile:
    stored_filename: str
    path: Path
    size_bytes: int


def _safe_extension(filename: str) -> str:
    suffix = Path(filename.replace("\\", "/")).suffix.lower()
    if re.fullmatch(r"\.[a-z0-9]{1,8}", suffix):
        return suffix
    return ""


def generate_stored_filename(original_filename: str) -> str:
    """Build an on-disk name that shares nothing with the uploaded name but its extension."""

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{timestamp}_{secrets.token_hex(8)}{_safe_extension(original_filename)}"


class StagingArea:
    """Confined directory holding uploads between acceptance and pipeline cleanup."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root.resolve()

    def resolve(self, stored_filename: str) -> Path:
        if not _STORED_NAME_PATTERN.fullmatch(stored_filename or ""):
            raise StorageError("Stored filename is not a generated staging name.")
        root = self._ensure_root()
        candidate = (root / stored_filename).resolve()
        if candidate.parent != root:
            raise StorageError("Staged file path escapes the staging directory.")
        return candidate

    def stage(self, content: bytes, original_filename: str) -> StagedFile:
        stored_filename = generate_stored_filename(original_filename)
        path = self.resolve(stored_filename)
        try:
            descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(descriptor, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise StorageError(f"Could not stage upload: {exc.strerror or exc}") from exc

        logger.debug("Staged upload as %s (%d bytes)", stored_filename, len(content))
        return StagedFile(stored_filename=stored_filename, path=path, size_bytes=len(content))

    def read(self, stored_filename: str) -> bytes:
        path = self.resolve(stored_filename)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError("Staged file is missing.") from exc
        except OSError as exc:
            raise StorageError(f"Could not read staged file: {exc.strerror or exc}") from exc

    def exists(self, stored_filename: str) -> bool:
        return self.resolve(stored_filename).exists()

    def secure_delete(self, stored_filename: str) -> bool:
        """Overwrite a staged file with random bytes, then unlink it.

        Returns False when the file is already gone, so calling it twice is harmless.
        """

        path = self.resolve(stored_filename)
        if not path.exists():
            return False

        try:
            size = path.stat().st_size
            with path.open("r+b") as handle:
                remaining = size
                while remaining > 0:
                    chunk = min(remaining, OVERWRITE_CHUNK_BYTES)
                    handle.write(secrets.token_bytes(chunk))
                    remaining -= chunk
                handle.flush()
                os.fsync(handle.fileno())
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Secure deletion failed: {exc.strerror or exc}") from exc

        logger.info("Securely deleted staged file %s", stored_filename)
        return True

    def list_staged(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            path.name
            for path in self.root.iterdir()
            if path.is_file() and _STORED_NAME_PATTERN.fullmatch(path.name)
        )
