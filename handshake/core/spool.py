"""On-disk spooling of partially uploaded files."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from uuid import UUID

_READ_CHUNK = 1024 * 1024


class UploadSpool:
    """Append-only `.part` files, one per upload session."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def path_for(self, session_id: UUID) -> Path:
        """Return the spool path of the session."""
        return self._root / f"{session_id}.part"

    def write_at(self, session_id: UUID, offset: int, data: bytes) -> None:
        """Write `data` at `offset`, discarding anything already past it."""
        self._root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session_id)
        mode = "r+b" if path.exists() else "wb"
        with path.open(mode) as handle:
            handle.truncate(offset)
            handle.seek(offset)
            handle.write(data)

    def sha256(self, session_id: UUID) -> str:
        """Hash the whole spooled file."""
        digest = hashlib.sha256()
        path = self.path_for(session_id)
        if not path.exists():
            return digest.hexdigest()
        with path.open("rb") as handle:
            for block in iter(lambda: handle.read(_READ_CHUNK), b""):
                digest.update(block)
        return digest.hexdigest()

    def size(self, session_id: UUID) -> int:
        """Return the number of spooled bytes."""
        path = self.path_for(session_id)
        return path.stat().st_size if path.exists() else 0

    def discard(self, session_id: UUID) -> None:
        """Delete the session spool if present."""
        self.path_for(session_id).unlink(missing_ok=True)

    def is_writable(self) -> bool:
        """Return True when new session files can be created under the root."""
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self._root, os.W_OK)
