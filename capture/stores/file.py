"""
File Offset Store
=================

Keeps offsets in a local JSON file:

    {"my-app-connector": {"file": "mysql-bin.000003", "pos": 154, "row": 0}}

set() only updates memory; flush() rewrites the whole file through a
temporary file and os.replace so a crash never leaves a half-written
checkpoint. Durable across restarts on the same host only.
"""

import json
import logging
import os
from typing import Any, Dict

from ..errors import OffsetStoreError
from .base import OffsetStore, dump_position

logger = logging.getLogger(__name__)


class FileOffsetStore(OffsetStore):
    """
    Offset store backed by a local file.

    Args:
        path: Checkpoint file path (parent directories are created)
    """

    name = "file"

    def __init__(self, path: str):
        super().__init__()
        if not path:
            raise ValueError("FileOffsetStore requires a path")
        self.path = str(path)
        self._dirty = False

    def start(self):
        """Load checkpoint from file."""
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            logger.info(f"No offset file at {self.path}, starting empty")
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise OffsetStoreError(f"Failed to read offset file: {e}", {"path": self.path}) from e
        if not isinstance(data, dict):
            raise OffsetStoreError("Offset file must contain a JSON object", {"path": self.path})
        with self._lock:
            self._data = data
        logger.info(f"Loaded {len(data)} offset(s) from {self.path}")

    def set(self, partition: str, position: Any):
        dump_position(position)
        with self._lock:
            self._data[partition] = position
            self._dirty = True

    def flush(self):
        """Save checkpoint to file."""
        with self._lock:
            if not self._dirty:
                return
            data: Dict[str, Any] = dict(self._data)
            tmp_path = f"{self.path}.tmp"
            try:
                with open(tmp_path, "w") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise OffsetStoreError(f"Failed to write offset file: {e}", {"path": self.path}) from e
            self._dirty = False

    def __repr__(self) -> str:
        return f"FileOffsetStore(path={self.path!r})"
