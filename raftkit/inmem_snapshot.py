"""Cluster configuration types and an in-memory snapshot store."""

from __future__ import annotations

import io
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, BinaryIO, Optional, Tuple

import msgpack

SUPPORTED_SNAPSHOT_VERSION = 1


class ServerSuffrage(IntEnum):
    """Whether a server takes part in elections and commitment."""

    VOTER = 0
    NONVOTER = 1
    STAGING = 2

    def __str__(self) -> str:
        return {
            ServerSuffrage.VOTER: "Voter",
            ServerSuffrage.NONVOTER: "Nonvoter",
            ServerSuffrage.STAGING: "Staging",
        }[self]


@dataclass
class Server:
    """A member of the cluster."""

    suffrage: ServerSuffrage = ServerSuffrage.VOTER
    id: str = ""
    address: str = ""


@dataclass
class Configuration:
    """The set of servers in the cluster."""

    servers: list[Server] = field(default_factory=list)


@dataclass
class SnapshotMeta:
    """Metadata describing a snapshot."""

    version: int = 0
    id: str = ""
    index: int = 0
    term: int = 0
    peers: bytes = b""
    configuration: Configuration = field(default_factory=Configuration)
    configuration_index: int = 0
    size: int = 0


def _snapshot_name(term: int, index: int) -> str:
    return f"{term}-{index}-{time.time_ns() // 1_000_000}"


def _encode_peers(configuration: Configuration, trans: Any) -> bytes:
    if trans is None:
        return b""
    peers = [
        bytes(trans.encode_peer(server.id, server.address))
        for server in configuration.servers
        if server.suffrage == ServerSuffrage.VOTER
    ]
    return msgpack.packb(peers, use_bin_type=True)


class InmemSnapshotSink:
    """Collects the contents of a snapshot in memory."""

    def __init__(self, meta: Optional[SnapshotMeta] = None) -> None:
        self.meta = meta if meta is not None else SnapshotMeta()
        self._contents = bytearray()
        self.closed = False
        self.cancelled = False

    @property
    def contents(self) -> bytes:
        return bytes(self._contents)

    def write(self, data: bytes) -> int:
        """Append ``data`` and return the number of bytes written."""
        self._contents.extend(data)
        self.meta.size += len(data)
        return len(data)

    def close(self) -> None:
        """Mark the sink finished; the contents are already in memory."""
        self.closed = True

    def id(self) -> str:
        return self.meta.id

    def cancel(self) -> None:
        """Mark the sink cancelled; it stays as the latest snapshot."""
        self.cancelled = True


class InmemSnapshotStore:
    """Keeps only the most recent snapshot, in memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._latest = InmemSnapshotSink()
        self._has_snapshot = False

    def create(
        self,
        version: int,
        index: int,
        term: int,
        configuration: Configuration,
        configuration_index: int,
        trans: Any = None,
    ) -> InmemSnapshotSink:
        """Replace the stored snapshot with a new, empty one and return its sink."""
        if version != SUPPORTED_SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version {version}")
        meta = SnapshotMeta(
            version=version,
            id=_snapshot_name(term, index),
            index=index,
            term=term,
            peers=_encode_peers(configuration, trans),
            configuration=configuration,
            configuration_index=configuration_index,
        )
        sink = InmemSnapshotSink(meta)
        with self._lock:
            self._has_snapshot = True
            self._latest = sink
        return sink

    def list(self) -> list[SnapshotMeta]:
        """Return the latest snapshot's metadata, if there is one."""
        with self._lock:
            if not self._has_snapshot:
                return []
            return [self._latest.meta]

    def open(self, snapshot_id: str) -> Tuple[SnapshotMeta, BinaryIO]:
        """Return the metadata and a fresh reader over the snapshot contents."""
        with self._lock:
            latest = self._latest
            if latest.meta.id != snapshot_id:
                raise LookupError(
                    f"[ERR] snapshot: failed to open snapshot id: {snapshot_id}"
                )
            return latest.meta, io.BytesIO(latest.contents)