"""Durable JSON file helpers shared by the on-disk stores."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write JSON so readers see either the old file or the new one.

    The temp file is fsynced before the rename, so the data is durable
    once this returns.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json(path: Path) -> Any:
    """Load a JSON file."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def sharded_path(base_dir: Path, hex_id: str, suffix: str = ".json") -> Path:
    """``base_dir/ab/abcdef....json`` layout keeping directories small."""
    return base_dir / hex_id[:2] / f"{hex_id}{suffix}"
