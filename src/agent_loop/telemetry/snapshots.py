"""Atomic JSON snapshot files for external monitors."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload: object) -> Path:
    """Write JSON next to ``path`` and rename it into place.

    Readers either see the previous file or the complete new one.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, default=str)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Wrote snapshot %s", path)
    return path


def read_json(path: Path) -> object:
    return json.loads(path.read_text("utf-8"))
