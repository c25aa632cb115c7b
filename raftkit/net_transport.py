"""A transport that carries Raft RPCs over a stream layer such as TCP.

Every request is framed by one byte naming its type followed by the
MsgPack-encoded request. Every answer is a MsgPack error string followed
by the MsgPack-encoded response. InstallSnapshot streams the snapshot
bytes right after the request, and its connection is never reused.
"""

from __future__ import annotations

import io
import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Optional, Protocol

from raftkit.messages import (
    RPC,
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    RequestVoteRequest,
    RequestVoteResponse,
    TimeoutNowRequest,
    TimeoutNowResponse,
    TransportShutdownError,
)
from raftkit.wire import (
    DEFAULT_TIMEOUT_SCALE,
    NetConn,
    NetPipeline,
    RPCError,
    RpcType,
    decode_response,
    send_rpc,
)

_POLL = 0.01
_BASE_ACCEPT_DELAY = 0.005
_MAX_ACCEPT_DELAY = 1.0


class StreamLayer(Protocol):
    """The low-level stream abstraction the transport listens and dials on."""

    def accept(self) -> socket.socket: ...

    def close(self) -> None: ...

    def addr(self) -> str: ...

    def dial(self, address: str, timeout: float) -> socket.socket: ...


class ServerAddressProvider(Protocol):
    """Supplies the address to dial for a given server ID."""

    def server_addr(self, server_id: str) -> str: ...


@dataclass
class NetworkTransportConfig:
    """Settings for a :class:`NetworkTransport`.

    ``timeout`` is the I/O timeout in seconds; for InstallSnapshot it is
    multiplied by the snapshot size divided by the transport's timeout scale.
    """

    stream: Any = None
    max_pool: int = 0
    timeout: float = 0.0
    logger: Optional[logging.Logger] = None
    server_address_provider: Optional[ServerAddressProvider] = None


class NetworkTransport:
    """Sends and receives Raft RPCs over a stream layer, pooling connections."""

    def __init__(self, config: NetworkTransportConfig) -> None:
        if config.logger is None:
            config.logger = logging.getLogger("raft-net")
        self._logger = config.logger
        self._stream = config.stream
        self._max_pool = config.max_pool
        self.timeout = config.timeout
        self.timeout_scale = DEFAULT_TIMEOUT_SCALE
        self._server_address_provider = config.server_address_provider

        self._conn_pool: dict[str, list[NetConn]] = {}
        self._conn_pool_lock = threading.Lock()
        self._consume: queue.Queue = queue.Queue(maxsize=1)

        self._heartbeat_fn: Optional[Callable[[RPC], None]] = None
        self._heartbeat_lock = threading.Lock()

        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()

        self._stream_ctx_lock = threading.Lock()
        self._stream_ctx = threading.Event()

        self._active_lock = threading.Lock()
        self._active: set[NetConn] = set()

        self._listen_thread = threading.Thread(target=self._listen, daemon=True)
        self._listen_thread.start()

    # -- configuration and lifecycle -------------------------------------

    def set_heartbeat_handler(self, callback: Optional[Callable[[RPC], None]]) -> None:
        """Handle heartbeats with ``callback`` instead of the consumer queue."""
        with self._heartbeat_lock:
            self._heartbeat_fn = callback

    def close_streams(self) -> None:
        """Close pooled connections and stop current inbound handlers."""
        with self._conn_pool_lock:
            for conns in self._conn_pool.values():
                for conn in conns:
                    conn.release()
            self._conn_pool.clear()
            with self._stream_ctx_lock:
                self._stream_ctx.set()
                self._stream_ctx = threading.Event()

    def close(self) -> None:
        """Stop the transport; further calls do nothing."""
        with self._shutdown_lock:
            if self._shutdown.is_set():
                return
            self._shutdown.set()
            self._stream.close()
        with self._active_lock:
            active = list(self._active)
        for conn in active:
            conn.release()

    def consumer(self) -> queue.Queue:
        """The queue on which incoming RPCs arrive."""
        return self._consume

    def local_addr(self) -> str:
        return str(self._stream.addr())

    def is_shutdown(self) -> bool:
        return self._shutdown.is_set()

    # -- outbound connections --------------------------------------------

    def _get_pooled_conn(self, target: str) -> Optional[NetConn]:
        with self._conn_pool_lock:
            conns = self._conn_pool.get(target)
            if not conns:
                return None
            return conns.pop()

    def _provider_address_or_fallback(self, server_id: str, target: str) -> str:
        provider = self._server_address_provider
        if provider is not None:
            try:
                return provider.server_addr(server_id)
            except Exception as err:
                self._logger.warning(
                    "unable to get address for server, using fallback address: "
                    "id=%s fallback=%s error=%s",
                    server_id,
                    target,
                    err,
                )
        return target

    def _get_conn(self, target: str) -> NetConn:
        conn = self._get_pooled_conn(target)
        if conn is not None:
            return conn
        sock = self._stream.dial(target, self.timeout)
        return NetConn(target, sock)

    def _get_conn_from_address_provider(self, server_id: str, target: str) -> NetConn:
        return self._get_conn(self._provider_address_or_fallback(server_id, target))

    def _return_conn(self, conn: NetConn) -> None:
        with self._conn_pool_lock:
            conns = self._conn_pool.setdefault(conn.target, [])
            if not self.is_shutdown() and len(conns) < self._max_pool:
                conns.append(conn)
            else:
                conn.release()

    def _apply_timeout(self, conn: NetConn, timeout: float) -> None:
        conn.set_timeout(timeout if timeout > 0 else None)

    # -- outbound RPCs -----------------------------------------------------

    def append_entries_pipeline(self, server_id: str, target: str) -> NetPipeline:
        """Open a pipeline for AppendEntries requests on a dedicated connection."""
        conn = self._get_conn_from_address_provider(server_id, target)
        return NetPipeline(conn, self.timeout)

    def _generic_rpc(
        self, server_id: str, target: str, rpc_type: RpcType, args: Any, response_type: type
    ) -> Any:
        conn = self._get_conn_from_address_provider(server_id, target)
        self._apply_timeout(conn, self.timeout)
        send_rpc(conn, rpc_type, args)
        try:
            response = decode_response(conn, response_type)
        except RPCError:
            self._return_conn(conn)
            raise
        self._return_conn(conn)
        return response

    def append_entries(
        self, server_id: str, target: str, args: AppendEntriesRequest
    ) -> AppendEntriesResponse:
        return self._generic_rpc(
            server_id, target, RpcType.APPEND_ENTRIES, args, AppendEntriesResponse
        )

    def request_vote(
        self, server_id: str, target: str, args: RequestVoteRequest
    ) -> RequestVoteResponse:
        return self._generic_rpc(
            server_id, target, RpcType.REQUEST_VOTE, args, RequestVoteResponse
        )

    def install_snapshot(
        self,
        server_id: str,
        target: str,
        args: InstallSnapshotRequest,
        data: BinaryIO,
    ) -> InstallSnapshotResponse:
        """Send the request followed by the snapshot bytes read from ``data``."""
        conn = self._get_conn_from_address_provider(server_id, target)
        try:
            if self.timeout > 0:
                scaled = self.timeout * (args.size // self.timeout_scale)
                self._apply_timeout(conn, max(scaled, self.timeout))
            else:
                self._apply_timeout(conn, 0)
            send_rpc(conn, RpcType.INSTALL_SNAPSHOT, args)
            conn.copy_from(data)
            conn.flush()
            return decode_response(conn, InstallSnapshotResponse)
        finally:
            conn.release()

    def timeout_now(
        self, server_id: str, target: str, args: TimeoutNowRequest
    ) -> TimeoutNowResponse:
        return self._generic_rpc(
            server_id, target, RpcType.TIMEOUT_NOW, args, TimeoutNowResponse
        )

    def encode_peer(self, server_id: str, addr: str) -> bytes:
        return self._provider_address_or_fallback(server_id, addr).encode()

    def decode_peer(self, buf: bytes) -> str:
        return bytes(buf).decode()

    # -- inbound connections -----------------------------------------------

    def _current_stream_ctx(self) -> threading.Event:
        with self._stream_ctx_lock:
            return self._stream_ctx

    def _listen(self) -> None:
        delay = 0.0
        while True:
            try:
                sock = self._stream.accept()
            except Exception as err:
                delay = _BASE_ACCEPT_DELAY if delay == 0 else delay * 2
                delay = min(delay, _MAX_ACCEPT_DELAY)
                if not self.is_shutdown():
                    self._logger.error("failed to accept connection: %s", err)
                if self._shutdown.wait(delay):
                    return
                continue
            delay = 0.0
            try:
                remote = "%s:%s" % sock.getpeername()[:2]
            except (OSError, TypeError):
                remote = ""
            self._logger.debug(
                "accepted connection: local-address=%s remote-address=%s",
                self.local_addr(),
                remote,
            )
            ctx = self._current_stream_ctx()
            threading.Thread(
                target=self._handle_conn, args=(ctx, remote, sock), daemon=True
            ).start()

    def _handle_conn(self, cancelled: threading.Event, remote: str, sock: socket.socket) -> None:
        conn = NetConn(remote, sock)
        conn.set_timeout(None)
        with self._active_lock:
            self._active.add(conn)
        try:
            while True:
                if cancelled.is_set():
                    self._logger.debug("stream layer is closed")
                    return
                try:
                    self._handle_command(conn)
                except EOFError:
                    return
                except Exception as err:
                    if not self.is_shutdown() and not conn.closed:
                        self._logger.error("failed to decode incoming command: %s", err)
                    return
                try:
                    conn.flush()
                except Exception as err:
                    if not self.is_shutdown():
                        self._logger.error("failed to flush response: %s", err)
                    return
        finally:
            with self._active_lock:
                self._active.discard(conn)
            conn.release()

    def _handle_command(self, conn: NetConn) -> None:
        rpc_type = conn.read_byte()
        try:
            kind = RpcType(rpc_type)
        except ValueError:
            raise ValueError(f"unknown rpc type {rpc_type}") from None

        request = conn.read_object(kind.request_type)
        rpc = RPC(command=request)
        is_heartbeat = False
        if kind is RpcType.APPEND_ENTRIES:
            leader_addr = request.rpc_header.addr or request.leader
            is_heartbeat = (
                request.term != 0
                and bool(leader_addr)
                and request.prev_log_entry == 0
                and request.prev_log_term == 0
                and not request.entries
                and request.leader_commit_index == 0
            )
        elif kind is RpcType.INSTALL_SNAPSHOT:
            rpc.reader = io.BufferedReader(conn.limited_reader(request.size))

        dispatched = False
        if is_heartbeat:
            with self._heartbeat_lock:
                handler = self._heartbeat_fn
            if handler is not None:
                handler(rpc)
                dispatched = True

        if not dispatched:
            while True:
                if self._shutdown.is_set():
                    raise TransportShutdownError()
                try:
                    self._consume.put(rpc, timeout=_POLL)
                    break
                except queue.Full:
                    continue

        while True:
            if self._shutdown.is_set():
                raise TransportShutdownError()
            try:
                resp = rpc.resp_chan.get(timeout=_POLL)
                break
            except queue.Empty:
                continue

        conn.write_object(str(resp.error) if resp.error is not None else "")
        conn.write_object(resp.response)