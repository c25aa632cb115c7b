"""In-memory log and stable store, meant for tests."""

from __future__ import annotations

import dataclasses
import threading
from typing import Iterable

from raftkit.log import Log, LogNotFoundError


class InmemStore:
    """Keeps logs and key/value pairs in memory. Not for production use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._low_index = 0
        self._high_index = 0
        self._logs: dict[int, Log] = {}
        self._kv: dict[bytes, bytes] = {}
        self._kv_int: dict[bytes, int] = {}

    def first_index(self) -> int:
        with self._lock:
            return self._low_index

    def last_index(self) -> int:
        with self._lock:
            return self._high_index

    def get_log(self, index: int) -> Log:
        with self._lock:
            entry = self._logs.get(index)
        if entry is None:
            raise LogNotFoundError()
        return dataclasses.replace(entry)

    def store_log(self, log: Log) -> None:
        self.store_logs([log])

    def store_logs(self, logs: Iterable[Log]) -> None:
        with self._lock:
            for entry in logs:
                self._logs[entry.index] = entry
                if self._low_index == 0:
                    self._low_index = entry.index
                if entry.index > self._high_index:
                    self._high_index = entry.index

    def delete_range(self, min_index: int, max_index: int) -> None:
        """Delete entries from ``min_index`` to ``max_index`` inclusive."""
        with self._lock:
            for index in range(min_index, max_index + 1):
                self._logs.pop(index, None)
            if min_index <= self._low_index:
                self._low_index = max_index + 1
            if max_index >= self._high_index:
                self._high_index = min_index - 1
            if self._low_index > self._high_index:
                self._low_index = 0
                self._high_index = 0

    def set(self, key: bytes, val: bytes) -> None:
        with self._lock:
            self._kv[bytes(key)] = val

    def get(self, key: bytes) -> bytes:
        with self._lock:
            val = self._kv.get(bytes(key))
        if val is None:
            raise KeyError("not found")
        return val

    def set_uint64(self, key: bytes, val: int) -> None:
        with self._lock:
            self._kv_int[bytes(key)] = val

    def get_uint64(self, key: bytes) -> int:
        with self._lock:
            return self._kv_int.get(bytes(key), 0)