"""RPC messages exchanged between Raft nodes, and the RPC envelope."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional

from raftkit.log import Log


class TransportShutdownError(RuntimeError):
    """Raised when a transport is used after it has been shut down."""

    def __init__(self, message: str = "transport shutdown") -> None:
        super().__init__(message)


class PipelineShutdownError(RuntimeError):
    """Raised when an append pipeline is used after it was closed."""

    def __init__(self, message: str = "append pipeline closed") -> None:
        super().__init__(message)


@dataclass
class RPCHeader:
    """Header common to every request and response."""

    protocol_version: int = 0
    addr: bytes = b""


@dataclass
class AppendEntriesRequest:
    """Asks a follower to append entries to its log; also used as heartbeat."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    leader: bytes = b""
    prev_log_entry: int = 0
    prev_log_term: int = 0
    entries: list[Log] = field(default_factory=list)
    leader_commit_index: int = 0


@dataclass
class AppendEntriesResponse:
    """A follower's answer to an AppendEntries request."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    last_log: int = 0
    success: bool = False


@dataclass
class RequestVoteRequest:
    """A candidate's request for a vote."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteResponse:
    """The answer to a vote request."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    granted: bool = False


@dataclass
class InstallSnapshotRequest:
    """Pushes a snapshot to a follower; the snapshot bytes follow the request."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    last_log_index: int = 0
    last_log_term: int = 0
    peers: bytes = b""
    size: int = 0


@dataclass
class InstallSnapshotResponse:
    """The answer to an InstallSnapshot request."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    success: bool = False


@dataclass
class TimeoutNowRequest:
    """Tells a follower to start an election immediately."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)


@dataclass
class TimeoutNowResponse:
    """The answer to a TimeoutNow request."""

    rpc_header: RPCHeader = field(default_factory=RPCHeader)


@dataclass
class RPCResponse:
    """The outcome of an RPC: a response object or an error."""

    response: Any = None
    error: Optional[BaseException] = None


def _response_queue() -> queue.Queue:
    return queue.Queue(maxsize=1)


@dataclass
class RPC:
    """An incoming request together with the queue its answer goes to."""

    command: Any = None
    reader: Optional[BinaryIO] = None
    resp_chan: queue.Queue = field(default_factory=_response_queue)

    def respond(self, response: Any, error: Optional[BaseException] = None) -> None:
        """Send the answer back to the caller."""
        self.resp_chan.put(RPCResponse(response=response, error=error))