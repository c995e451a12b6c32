"""
Snapshots of what the server held at the last sync, for the documents
that have no Identity Map node of their own (attributes, personas,
knowledge-base files).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..errors import LocalStateError
from ..layout import write_atomic


def load_snapshot(path: Path) -> dict[str, Any]:
    """Read a snapshot; a missing file is an empty one.

    Raises:
        LocalStateError: The file is unreadable or not a JSON object.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise LocalStateError(f"Corrupt snapshot {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise LocalStateError(f"Corrupt snapshot {path}: not an object")
    return data


def save_snapshot(path: Path, snapshot: dict[str, Any]) -> None:
    write_atomic(path, json.dumps(snapshot, indent=2, sort_keys=True, ensure_ascii=False) + "\n")
