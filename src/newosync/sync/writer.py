"""
Mirror writer -- the only way pull touches the local tree.

Files are rewritten only when their bytes change, which keeps a repeat
pull byte-identical. A file edited locally since the last sync is left
alone (and reported) unless ``force`` is set.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ..hashing import fingerprint, fingerprint_file
from ..layout import TenantLayout, write_atomic
from .models import SyncReport

logger = logging.getLogger("newosync.sync.writer")


class MirrorWriter:
    """Writes and removes mirror files while keeping the Hash Store in step."""

    def __init__(
        self,
        layout: TenantLayout,
        hashes: dict[str, str],
        report: SyncReport,
        force: bool = False,
    ):
        self.layout = layout
        self.hashes = hashes
        self.report = report
        self.force = force

    def _locally_edited(self, path: Path) -> bool:
        current = fingerprint_file(path)
        return current is not None and current != self.hashes.get(self.layout.rel(path))

    def write(self, path: Path, content: str) -> bool:
        """Write ``content`` to a mirror file and record its fingerprint.

        Returns:
            False when the file was kept because of local edits.
        """
        rel = self.layout.rel(path)
        new = fingerprint(content)
        current = fingerprint_file(path)
        if current == new:
            self.hashes[rel] = new
            return True
        if self._locally_edited(path) and not self.force:
            logger.warning("Keeping local edits to %s", rel)
            self.report.warnings.append(
                f"Kept local edits to {rel}; pull --force to overwrite"
            )
            return False
        write_atomic(path, content)
        self.hashes[rel] = new
        self.report.written.append(rel)
        logger.debug("Wrote %s", rel)
        return True

    def remove(self, path: Path) -> bool:
        """Delete a mirror file that no longer exists remotely."""
        rel = self.layout.rel(path)
        if path.is_file():
            if self._locally_edited(path) and not self.force:
                self.report.warnings.append(
                    f"Kept {rel}: deleted remotely but edited locally"
                )
                return False
            path.unlink()
            self.report.removed.append(rel)
            logger.info("Removed %s (deleted remotely)", rel)
        self.hashes.pop(rel, None)
        return True

    def remove_tree(self, directory: Path) -> bool:
        """Delete a mirror directory whose entity no longer exists remotely."""
        if not directory.is_dir():
            self._forget(directory)
            return True
        rel = self.layout.rel(directory)
        if not self.force:
            dirty = [p for p in directory.rglob("*") if p.is_file() and self._locally_edited(p)]
            if dirty:
                self.report.warnings.append(
                    f"Kept {rel}/: deleted remotely but {len(dirty)} file(s) edited locally"
                )
                return False
        shutil.rmtree(directory)
        self._forget(directory)
        self.report.removed.append(f"{rel}/")
        logger.info("Removed %s/ (deleted remotely)", rel)
        return True

    def _forget(self, directory: Path) -> None:
        prefix = self.layout.rel(directory) + "/"
        for key in [k for k in self.hashes if k.startswith(prefix)]:
            del self.hashes[key]
