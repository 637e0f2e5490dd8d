"""Persistent record of playbooks that are waiting to be executed."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MAPPING_FILE_NAME = "playbook-mapping.json"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_nanos(mod_time: datetime | int) -> int:
    """Convert a modification time to nanoseconds since the Unix epoch."""
    if isinstance(mod_time, datetime):
        if mod_time.tzinfo is None:
            mod_time = mod_time.astimezone()
        return (mod_time - _EPOCH) // timedelta(microseconds=1) * 1000
    if isinstance(mod_time, int):
        return mod_time
    raise TypeError(f"unsupported modification time: {mod_time!r}")


def _as_bytes(content: bytes | str) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else bytes(content)


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


class MappingRepository:
    """Maps playbook modification times to stored playbook files."""

    def __init__(self, config_dir: str | os.PathLike) -> None:
        self._config_dir = str(config_dir)
        self._mapping_file_path = os.path.join(self._config_dir, MAPPING_FILE_NAME)
        self._lock = threading.RLock()
        self._mod_time_to_path: dict[int, str] = {}
        self._path_to_mod_time: dict[str, int] = {}

        try:
            raw = Path(self._mapping_file_path).read_bytes()
        except OSError:
            return
        mappings = json.loads(raw)
        if mappings is None:
            return
        if not isinstance(mappings, list):
            raise ValueError(f"invalid playbook mapping file {self._mapping_file_path}")
        for entry in mappings:
            mod_time = int(entry.get("mod_time", 0))
            file_path = entry.get("file_path", "")
            self._mod_time_to_path[mod_time] = file_path
            self._path_to_mod_time[file_path] = mod_time

    @property
    def mapping_file_path(self) -> str:
        return self._mapping_file_path

    def get_all(self) -> dict[int, str]:
        """Return stored playbook paths keyed by position in modification-time order."""
        with self._lock:
            return {
                index: self._mod_time_to_path[mod_time]
                for index, mod_time in enumerate(sorted(self._mod_time_to_path))
            }

    def get_sha256(self, file_content: bytes | str) -> str:
        return hashlib.sha256(_as_bytes(file_content)).hexdigest()

    def add(self, file_content: bytes | str, mod_time: datetime | int) -> None:
        """Store the playbook content and record it under its modification time."""
        content = _as_bytes(file_content)
        nanos = _to_nanos(mod_time)
        with self._lock:
            file_path = os.path.join(self._config_dir, self.get_sha256(content))
            _write_file(file_path, content, 0o600)
            self._mod_time_to_path[nanos] = file_path
            self._path_to_mod_time[file_path] = nanos
            self._persist()

    def remove(self, file_content: bytes | str) -> None:
        with self._lock:
            file_path = os.path.join(self._config_dir, self.get_sha256(file_content))
            mod_time = self._path_to_mod_time.pop(file_path, 0)
            self._mod_time_to_path.pop(mod_time, None)
            self._persist()

    def remove_mapping_file(self) -> None:
        with self._lock:
            logger.info("deleting %s file", self._mapping_file_path)
            try:
                if os.path.isdir(self._mapping_file_path):
                    shutil.rmtree(self._mapping_file_path)
                else:
                    Path(self._mapping_file_path).unlink(missing_ok=True)
            except OSError as err:
                logger.error("failed to delete %s: %s", self._mapping_file_path, err)
                raise

    def get_mod_time(self, file_path: str) -> int:
        """Return the recorded modification time in nanoseconds, or 0 if unknown."""
        with self._lock:
            return self._path_to_mod_time.get(file_path, 0)

    def get_file_path(self, mod_time: datetime | int) -> str:
        """Return the stored path for a modification time, or an empty string."""
        with self._lock:
            return self._mod_time_to_path.get(_to_nanos(mod_time), "")

    def exists(self, mod_time: datetime | int) -> bool:
        with self._lock:
            return _to_nanos(mod_time) in self._mod_time_to_path

    def persist(self) -> None:
        with self._lock:
            self._persist()

    def size(self) -> int:
        with self._lock:
            return len(self._path_to_mod_time)

    def _persist(self) -> None:
        mappings = [
            {"mod_time": mod_time, "file_path": self._mod_time_to_path[mod_time]}
            for mod_time in sorted(self._mod_time_to_path)
        ]
        payload = json.dumps(mappings or None, separators=(",", ":"))
        _write_file(self._mapping_file_path, payload.encode("utf-8"), 0o640)