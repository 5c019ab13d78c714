"""File-backed key-value storage with a size quota."""

from __future__ import annotations

import errno
import logging
import os
import re
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class StorageQuotaExceeded(OSError):
    """Raised when a write would exceed the storage quota."""


class LocalStorage:
    """Store string values under keys, one UTF-8 file per key."""

    def __init__(self, root: Path | str, *, max_bytes: int | None = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes

    def get(self, key: str) -> str | None:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        """Write ``value`` atomically, raising :class:`StorageQuotaExceeded` when over quota."""

        encoded = value.encode("utf-8")
        if self.max_bytes is not None and len(encoded) > self.max_bytes:
            raise StorageQuotaExceeded(
                errno.ENOSPC,
                f"Value for '{key}' is {len(encoded)} bytes; quota is {self.max_bytes} bytes",
            )
        path = self._path_for(key)
        handle = tempfile.NamedTemporaryFile(dir=self.root, prefix=".tmp-", delete=False)
        try:
            with handle:
                handle.write(encoded)
            os.replace(handle.name, path)
        except OSError as exc:
            Path(handle.name).unlink(missing_ok=True)
            if exc.errno in {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}:
                raise StorageQuotaExceeded(exc.errno, str(exc)) from exc
            raise
        logger.debug("storage.set key=%s bytes=%s", key, len(encoded))

    def remove(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def _path_for(self, key: str) -> Path:
        safe = _SAFE_KEY_RE.sub("_", key.strip()) or "default"
        return self.root / f"{safe}.json"


__all__ = ["LocalStorage", "StorageQuotaExceeded"]
