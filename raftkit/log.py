"""Replicated log entries, the log store contract and log store metrics."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Callable, Protocol, Sequence


class LogType(IntEnum):
    """The kind of a log entry."""

    COMMAND = 0
    NOOP = 1
    ADD_PEER_DEPRECATED = 2
    REMOVE_PEER_DEPRECATED = 3
    BARRIER = 4
    CONFIGURATION = 5

    def __str__(self) -> str:
        return _LOG_TYPE_NAMES.get(self, str(int(self)))


_LOG_TYPE_NAMES = {
    LogType.COMMAND: "LogCommand",
    LogType.NOOP: "LogNoop",
    LogType.ADD_PEER_DEPRECATED: "LogAddPeerDeprecated",
    LogType.REMOVE_PEER_DEPRECATED: "LogRemovePeerDeprecated",
    LogType.BARRIER: "LogBarrier",
    LogType.CONFIGURATION: "LogConfiguration",
}


class LogNotFoundError(LookupError):
    """Raised when a requested log entry does not exist."""

    def __init__(self, message: str = "log not found") -> None:
        super().__init__(message)


@dataclass
class Log:
    """A single entry of the replicated log."""

    index: int = 0
    term: int = 0
    type: LogType = LogType.COMMAND
    data: bytes = b""
    extensions: bytes = b""
    appended_at: datetime | None = None


class LogStore(Protocol):
    """Durable storage for log entries."""

    def first_index(self) -> int: ...

    def last_index(self) -> int: ...

    def get_log(self, index: int) -> Log: ...

    def store_log(self, log: Log) -> None: ...

    def store_logs(self, logs: Sequence[Log]) -> None: ...

    def delete_range(self, min_index: int, max_index: int) -> None: ...


def oldest_log(store: LogStore) -> Log:
    """Return the oldest entry in the store, retrying across concurrent truncation."""
    last_fail_index: int | None = None
    last_error: Exception | None = None
    while True:
        first = store.first_index()
        if first == 0:
            raise LogNotFoundError()
        if first == last_fail_index and last_error is not None:
            # Same index failed last time round; don't bother fetching again.
            raise last_error
        try:
            return store.get_log(first)
        except Exception as err:  # keep trying in case the first index moved
            last_fail_index = first
            last_error = err


GaugeSink = Callable[[list, float], None]


def emit_log_store_metrics(
    store: LogStore,
    prefix: Sequence[str],
    interval: float,
    stop: threading.Event,
    sink: GaugeSink,
) -> None:
    """Report the age in milliseconds of the oldest log every ``interval`` seconds until ``stop`` is set."""
    key = [*prefix, "oldestLogAge"]
    while not stop.wait(interval):
        age_ms = 0.0
        try:
            entry = oldest_log(store)
        except Exception:
            entry = None
        if entry is not None and entry.appended_at is not None:
            elapsed = datetime.now(timezone.utc) - entry.appended_at
            age_ms = float(elapsed // timedelta(milliseconds=1))
        sink(list(key), age_ms)