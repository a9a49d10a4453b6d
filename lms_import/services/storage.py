"""Path-addressed object storage for imported lesson content."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import IO

from lms_import.core.config import get_settings

LOGGER = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
COPY_BUFFER_SIZE = 1024 * 1024


def safe_name(name: str) -> str:
    """Filesystem-safe object name component."""
    cleaned = _UNSAFE.sub("_", name).strip("._")
    return cleaned or "file"


def lesson_object_path(course_id: str, module_id: str, source_id: str, filename: str) -> str:
    return f"courses/{course_id}/{module_id}/{source_id}/{safe_name(filename)}"


class LocalBucket:
    """Object store rooted at a directory; object keys are POSIX paths."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls) -> "LocalBucket":
        return cls(get_settings().storage_dir)

    def _resolve(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Invalid object key: {key}")
        return self.root.joinpath(*relative.parts)

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def upload(self, key: str, source: IO[bytes]) -> int:
        """Stream ``source`` into the object at ``key``, replacing it atomically."""

        destination = self._resolve(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as buffer:
                shutil.copyfileobj(source, buffer, COPY_BUFFER_SIZE)
            os.replace(tmp_name, destination)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        size = destination.stat().st_size
        LOGGER.debug("Stored %s (%d bytes)", key, size)
        return size

    def open(self, key: str) -> IO[bytes]:
        return self._resolve(key).open("rb")

    def delete(self, key: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._resolve(key).unlink()
