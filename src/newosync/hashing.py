"""
Content fingerprints and the per-tenant Hash Store.

After every successful pull or push the stored fingerprint of each
synchronized file equals the fingerprint of its bytes on disk. That is
what lets ``status`` be computed from the disk alone.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

from .errors import LocalStateError
from .layout import write_atomic

logger = logging.getLogger("newosync.hashing")


def fingerprint(data: str | bytes) -> str:
    """SHA-256 hex digest of text (UTF-8) or bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Path) -> Optional[str]:
    """SHA-256 hex digest of a file's bytes, or None if it does not exist."""
    if not path.is_file():
        return None
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


class HashStore:
    """Persisted ``relative path -> fingerprint`` map for one tenant."""

    def __init__(self, path: Path):
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, str]:
        """Read the store. A missing file is an empty store.

        Raises:
            LocalStateError: The file is unreadable or not a flat string map.
        """
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise LocalStateError(f"Hash store {self.path} is unreadable: {exc}") from exc
        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            raise LocalStateError(f"Hash store {self.path} is not a path->hash mapping")
        return data

    def save(self, hashes: dict[str, str]) -> None:
        """Persist the store atomically, keys sorted for stable diffs."""
        write_atomic(self.path, json.dumps(dict(sorted(hashes.items())), indent=2) + "\n")
        logger.debug("Saved %d fingerprints to %s", len(hashes), self.path)
