"""
In-memory backend that persists a full JSON snapshot after every write.

The snapshot is replaced atomically (temp file in the same directory, then
``os.replace``) before the triggering call returns. One writer process per
file is assumed; concurrent processes sharing a snapshot will lose updates.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from helpexchange.errors import BackendUnavailable
from helpexchange.memory import ID_COUNTERS, TABLE_RECORDS, InMemoryDbClient

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotDbClient(InMemoryDbClient):
    """In-memory client whose state survives restarts via a snapshot file."""

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        super().__init__(clock=clock)
        self.path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        if os.path.exists(self.path):
            self.load()

    @contextmanager
    def _writing(self) -> Iterator[None]:
        with self._lock:
            before = self.dump_state()
            try:
                yield
                self.save()
            except BaseException:
                # A write the caller sees fail must not stay visible in memory.
                self.load_state(before)
                raise

    def dump_state(self) -> dict:
        state: dict = {"version": SNAPSHOT_VERSION, "next_ids": dict(self.next_ids)}
        for name, table in self.tables.items():
            state[name] = [row.as_dict() for row in table]
        return state

    def load_state(self, state: dict) -> None:
        if state.get("version") != SNAPSHOT_VERSION:
            raise BackendUnavailable(
                f"Unsupported snapshot version {state.get('version')!r}"
            )
        with self._lock:
            for name, (record_type, _) in TABLE_RECORDS.items():
                table = self.tables[name]
                table.clear()
                for data in state.get(name, []):
                    table.put(record_type.from_dict(data))
            stored_ids = state.get("next_ids", {})
            self.next_ids = {
                name: int(stored_ids.get(name, 1)) for name in ID_COUNTERS
            }

    def load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, ValueError) as exc:
            raise BackendUnavailable(
                f"Could not read snapshot {self.path}: {exc}"
            ) from exc
        try:
            self.load_state(state)
        except (TypeError, KeyError, ValueError) as exc:
            raise BackendUnavailable(
                f"Malformed snapshot {self.path}: {exc}"
            ) from exc
        logger.info(
            "Loaded snapshot %s (%d users, %d requests)",
            self.path,
            len(self.users),
            len(self.requests),
        )

    def save(self) -> None:
        payload = json.dumps(self.dump_state(), separators=(",", ":"))
        directory = os.path.dirname(self.path)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".snapshot-", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
