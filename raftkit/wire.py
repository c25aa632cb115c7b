"""Wire framing for the network transport: message codec, connections and pipelines.

Each request is sent as one byte naming the RPC type followed by the
MsgPack-encoded request. Each answer is a MsgPack error string (empty on
success) followed by the MsgPack-encoded response.
"""

from __future__ import annotations

import dataclasses
import io
import queue
import shutil
import socket
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, BinaryIO, Callable, Optional

import msgpack

from raftkit.future import AppendFuture
from raftkit.log import Log, LogType
from raftkit.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    PipelineShutdownError,
    RequestVoteRequest,
    RPCHeader,
    TimeoutNowRequest,
)

DEFAULT_TIMEOUT_SCALE = 256 * 1024
RPC_MAX_PIPELINE = 128
CONN_RECEIVE_BUFFER_SIZE = 256 * 1024
CONN_SEND_BUFFER_SIZE = 256 * 1024

_POLL = 0.01
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class RpcType(IntEnum):
    """The byte that precedes every request on the wire."""

    APPEND_ENTRIES = 0
    REQUEST_VOTE = 1
    INSTALL_SNAPSHOT = 2
    TIMEOUT_NOW = 3

    @property
    def request_type(self) -> type:
        """The request class carried by this RPC type."""
        return _REQUEST_TYPES[self]


_REQUEST_TYPES = {
    RpcType.APPEND_ENTRIES: AppendEntriesRequest,
    RpcType.REQUEST_VOTE: RequestVoteRequest,
    RpcType.INSTALL_SNAPSHOT: InstallSnapshotRequest,
    RpcType.TIMEOUT_NOW: TimeoutNowRequest,
}


class RPCError(RuntimeError):
    """An error reported by the remote end of an RPC.

    The connection is still usable after such an error.
    """

    def __init__(self, message: str, response: Any = None) -> None:
        super().__init__(message)
        self.response = response


def _datetime_to_timestamp(value: datetime) -> msgpack.Timestamp:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    return msgpack.Timestamp(seconds, delta.microseconds * 1000)


def _timestamp_to_datetime(value: msgpack.Timestamp) -> datetime:
    return _EPOCH + timedelta(
        seconds=value.seconds, microseconds=value.nanoseconds // 1000
    )


def _decode_time(value: Any) -> Any:
    if isinstance(value, msgpack.Timestamp):
        return _timestamp_to_datetime(value)
    return value


def _to_plain(value: Any) -> Any:
    """Turn messages into structures MsgPack can encode."""
    if value is None:
        return None
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: _to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _datetime_to_timestamp(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_plain(item) for key, item in value.items()}
    return value


# Fields whose decoded MsgPack form needs rebuilding, valid in any message.
_COMMON_DECODERS: dict[str, Callable[[Any], Any]] = {
    "rpc_header": lambda value: _from_plain(RPCHeader, value),
    "entries": lambda value: [_from_plain(Log, item) for item in value],
}

# Fields that need rebuilding only in a particular class.
_CLASS_DECODERS: dict[type, dict[str, Callable[[Any], Any]]] = {
    Log: {"type": LogType, "appended_at": _decode_time},
}


def _from_plain(cls: Any, value: Any) -> Any:
    """Rebuild an instance of ``cls`` from its decoded MsgPack form."""
    if value is None:
        return None
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        return value
    if not isinstance(value, dict):
        raise TypeError(f"cannot decode {cls.__name__} from {type(value).__name__}")
    decoders = {**_COMMON_DECODERS, **_CLASS_DECODERS.get(cls, {})}
    kwargs = {}
    for field in dataclasses.fields(cls):
        if not field.init or field.name not in value:
            continue
        raw = value[field.name]
        decoder = decoders.get(field.name)
        kwargs[field.name] = decoder(raw) if decoder and raw is not None else raw
    return cls(**kwargs)


def encode_message(message: Any) -> bytes:
    """Encode a message as MsgPack bytes."""
    return msgpack.packb(_to_plain(message), use_bin_type=True)


def decode_message(rpc_type: int, payload: bytes) -> Any:
    """Decode the request of the given RPC type from MsgPack bytes."""
    try:
        kind = RpcType(rpc_type)
    except ValueError:
        raise ValueError(f"unknown rpc type {rpc_type}") from None
    plain = msgpack.unpackb(payload, raw=False)
    return _from_plain(kind.request_type, plain)


class _LimitedReader(io.RawIOBase):
    """Reads at most ``size`` raw bytes from a connection."""

    def __init__(self, conn: NetConn, size: int) -> None:
        super().__init__()
        self._conn = conn
        self._remaining = max(size, 0)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        wanted = min(len(buffer), self._remaining)
        if wanted == 0:
            return 0
        data = self._conn._read_some(wanted)
        buffer[: len(data)] = data
        self._remaining -= len(data)
        return len(data)


class NetConn:
    """A socket with buffered writes and a MsgPack stream decoder."""

    def __init__(self, target: str, sock: socket.socket) -> None:
        self.target = target
        self.sock = sock
        self._reader = sock.makefile("rb", buffering=0)
        self._writer = sock.makefile("wb", buffering=CONN_SEND_BUFFER_SIZE)
        self._unpacker = msgpack.Unpacker(
            self._reader, raw=False, read_size=CONN_RECEIVE_BUFFER_SIZE
        )
        self._packer = msgpack.Packer(use_bin_type=True)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def set_timeout(self, seconds: Optional[float]) -> None:
        """Apply an I/O timeout to every following socket operation."""
        self.sock.settimeout(seconds)

    def write_byte(self, value: int) -> None:
        self._writer.write(bytes((value,)))

    def write(self, data: bytes) -> None:
        self._writer.write(data)

    def write_object(self, value: Any) -> None:
        """Buffer ``value`` encoded as MsgPack."""
        self._writer.write(self._packer.pack(_to_plain(value)))

    def copy_from(self, reader: BinaryIO) -> None:
        """Buffer everything ``reader`` yields."""
        shutil.copyfileobj(reader, self._writer)

    def flush(self) -> None:
        self._writer.flush()

    def _read_some(self, size: int) -> bytes:
        return self._unpacker.read_bytes(size)

    def read_exact(self, size: int) -> bytes:
        """Read exactly ``size`` raw bytes."""
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self._read_some(remaining)
            if not chunk:
                raise EOFError("connection closed")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def read_byte(self) -> int:
        return self.read_exact(1)[0]

    def read_object(self, cls: Optional[type] = None) -> Any:
        """Read one MsgPack value, rebuilt as ``cls`` when given."""
        try:
            plain = self._unpacker.unpack()
        except msgpack.OutOfData:
            raise EOFError("connection closed") from None
        if cls is None:
            return plain
        if plain is None:
            return cls()
        return _from_plain(cls, plain)

    def limited_reader(self, size: int) -> BinaryIO:
        """A reader over the next ``size`` raw bytes of the stream."""
        return _LimitedReader(self, size)

    def release(self) -> None:
        """Close the connection; further calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        for stream in (self._writer, self._reader):
            try:
                stream.close()
            except (OSError, ValueError):
                pass
        self.sock.close()


def send_rpc(conn: NetConn, rpc_type: int, args: Any) -> None:
    """Send one request; the connection is released if sending fails."""
    try:
        conn.write_byte(int(rpc_type))
        conn.write_object(args)
        conn.flush()
    except Exception:
        conn.release()
        raise


def decode_response(conn: NetConn, response_type: type) -> Any:
    """Read one answer; raise :class:`RPCError` if the remote end reported one.

    If the answer cannot be read the connection is released.
    """
    try:
        rpc_error = conn.read_object()
        response = conn.read_object(response_type)
    except Exception:
        conn.release()
        raise
    if rpc_error:
        raise RPCError(str(rpc_error), response)
    return response


class NetPipeline:
    """Pipelines AppendEntries requests over one connection."""

    def __init__(self, conn: NetConn, timeout: float = 0.0) -> None:
        self.conn = conn
        self.timeout = timeout
        self._done: queue.Queue = queue.Queue(maxsize=RPC_MAX_PIPELINE)
        self._inprogress: queue.Queue = queue.Queue(maxsize=RPC_MAX_PIPELINE)
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        conn.set_timeout(timeout if timeout > 0 else None)
        self._thread = threading.Thread(target=self._decode_responses, daemon=True)
        self._thread.start()

    def _put(self, q: queue.Queue, item: Any) -> bool:
        while not self._shutdown.is_set():
            try:
                q.put(item, timeout=_POLL)
                return True
            except queue.Full:
                continue
        return False

    def _get(self, q: queue.Queue) -> Any:
        while not self._shutdown.is_set():
            try:
                return q.get(timeout=_POLL)
            except queue.Empty:
                continue
        return None

    def _decode_responses(self) -> None:
        while True:
            future = self._get(self._inprogress)
            if future is None:
                return
            err: Optional[BaseException] = None
            try:
                future.resp = decode_response(self.conn, AppendEntriesResponse)
            except RPCError as exc:
                future.resp = exc.response
                err = exc
            except Exception as exc:
                err = exc
            future.respond(err)
            if not self._put(self._done, future):
                return

    def append_entries(self, args: AppendEntriesRequest) -> AppendFuture:
        """Send a request without waiting; the returned future reports the answer."""
        if self._shutdown.is_set():
            raise PipelineShutdownError()
        future = AppendFuture(args=args, resp=None)
        send_rpc(self.conn, RpcType.APPEND_ENTRIES, args)
        # Hand-off for decoding; a full queue applies back-pressure.
        if not self._put(self._inprogress, future):
            raise PipelineShutdownError()
        return future

    def consumer(self) -> queue.Queue:
        """The queue on which completed futures arrive, in order."""
        return self._done

    def close(self) -> None:
        """Release the connection and stop decoding."""
        with self._shutdown_lock:
            if self._shutdown.is_set():
                return
            self.conn.release()
            self._shutdown.set()