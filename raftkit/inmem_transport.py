"""A transport that routes RPCs between nodes in the same process."""

from __future__ import annotations

import queue
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Optional

from raftkit.future import AppendFuture
from raftkit.messages import (
    RPC,
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    PipelineShutdownError,
    RequestVoteRequest,
    RequestVoteResponse,
    RPCResponse,
    TimeoutNowRequest,
    TimeoutNowResponse,
)

_POLL = 0.01
_CONSUMER_CAPACITY = 16
_PIPELINE_CAPACITY = 16
DEFAULT_TIMEOUT = 0.5


def new_inmem_addr() -> str:
    """Return a fresh random address."""
    return str(uuid.uuid4())


def _put_until(
    q: queue.Queue,
    item: Any,
    shutdown: threading.Event,
    timeout: Optional[float],
) -> str:
    """Put ``item`` on ``q``; return "ok", "timeout" or "shutdown"."""
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if shutdown.is_set():
            return "shutdown"
        wait = _POLL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                try:
                    q.put_nowait(item)
                    return "ok"
                except queue.Full:
                    return "timeout"
            wait = min(wait, remaining)
        try:
            q.put(item, timeout=wait)
            return "ok"
        except queue.Full:
            continue


def _get_until(
    q: queue.Queue,
    shutdown: threading.Event,
    timeout: Optional[float],
) -> tuple[str, Any]:
    """Get from ``q``; return ("ok", item), ("timeout", None) or ("shutdown", None)."""
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if shutdown.is_set():
            return "shutdown", None
        wait = _POLL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                try:
                    return "ok", q.get_nowait()
                except queue.Empty:
                    return "timeout", None
            wait = min(wait, remaining)
        try:
            return "ok", q.get(timeout=wait)
        except queue.Empty:
            continue


@dataclass
class _Inflight:
    future: AppendFuture
    resp_chan: queue.Queue


class InmemTransport:
    """Routes RPCs to connected in-process transports without a network."""

    def __init__(self, addr: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._lock = threading.Lock()
        self._consumer: queue.Queue = queue.Queue(maxsize=_CONSUMER_CAPACITY)
        self._local_addr = addr if addr else new_inmem_addr()
        self._peers: dict[str, InmemTransport] = {}
        self._pipelines: list[InmemPipeline] = []
        self._heartbeat_handler: Optional[Callable[[RPC], None]] = None
        self.timeout = timeout

    def set_heartbeat_handler(self, callback: Callable[[RPC], None]) -> None:
        """Record the handler; this transport still delivers heartbeats on the consumer queue."""
        with self._lock:
            self._heartbeat_handler = callback

    def consumer(self) -> queue.Queue:
        """The queue on which incoming RPCs arrive."""
        return self._consumer

    def local_addr(self) -> str:
        return self._local_addr

    def _peer(self, target: str) -> InmemTransport:
        with self._lock:
            peer = self._peers.get(target)
        if peer is None:
            raise ConnectionError(f"failed to connect to peer: {target}")
        return peer

    def append_entries_pipeline(self, server_id: str, target: str) -> InmemPipeline:
        """Open a pipeline for AppendEntries requests to ``target``."""
        with self._lock:
            peer = self._peers.get(target)
            if peer is None:
                raise ConnectionError(f"failed to connect to peer: {target}")
            pipeline = InmemPipeline(self, peer, target)
            self._pipelines.append(pipeline)
        return pipeline

    def append_entries(
        self, server_id: str, target: str, args: AppendEntriesRequest
    ) -> AppendEntriesResponse:
        return self._make_rpc(target, args, None, self.timeout).response

    def request_vote(
        self, server_id: str, target: str, args: RequestVoteRequest
    ) -> RequestVoteResponse:
        return self._make_rpc(target, args, None, self.timeout).response

    def install_snapshot(
        self,
        server_id: str,
        target: str,
        args: InstallSnapshotRequest,
        data: BinaryIO,
    ) -> InstallSnapshotResponse:
        return self._make_rpc(target, args, data, 10 * self.timeout).response

    def timeout_now(
        self, server_id: str, target: str, args: TimeoutNowRequest
    ) -> TimeoutNowResponse:
        return self._make_rpc(target, args, None, 10 * self.timeout).response

    def _make_rpc(
        self,
        target: str,
        args: Any,
        reader: Optional[BinaryIO],
        timeout: float,
    ) -> RPCResponse:
        peer = self._peer(target)
        timeout = max(timeout, 0.0)
        resp_chan: queue.Queue = queue.Queue(maxsize=1)
        rpc = RPC(command=args, reader=reader, resp_chan=resp_chan)
        try:
            peer._consumer.put(rpc, timeout=timeout)
        except queue.Full:
            raise TimeoutError("send timed out") from None
        try:
            result: RPCResponse = resp_chan.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("command timed out") from None
        if result.error is not None:
            raise result.error
        return result

    def encode_peer(self, server_id: str, addr: str) -> bytes:
        return addr.encode()

    def decode_peer(self, buf: bytes) -> str:
        return bytes(buf).decode()

    def connect(self, peer: str, transport: InmemTransport) -> None:
        """Route RPCs addressed to ``peer`` to ``transport``."""
        if not isinstance(transport, InmemTransport):
            raise TypeError("can only connect to another InmemTransport")
        with self._lock:
            self._peers[peer] = transport

    def disconnect(self, peer: str) -> None:
        """Remove the route to ``peer`` and close its pipelines."""
        with self._lock:
            self._peers.pop(peer, None)
            kept = []
            for pipeline in self._pipelines:
                if pipeline.peer_addr == peer:
                    pipeline.close()
                else:
                    kept.append(pipeline)
            self._pipelines = kept

    def disconnect_all(self) -> None:
        """Remove every route and close every pipeline."""
        with self._lock:
            self._peers = {}
            for pipeline in self._pipelines:
                pipeline.close()
            self._pipelines = []

    def close(self) -> None:
        """Permanently disable the transport."""
        self.disconnect_all()


class InmemPipeline:
    """Pipelines AppendEntries requests to one peer of an in-memory transport."""

    def __init__(self, trans: InmemTransport, peer: InmemTransport, peer_addr: str) -> None:
        self.trans = trans
        self.peer = peer
        self.peer_addr = peer_addr
        self._done: queue.Queue = queue.Queue(maxsize=_PIPELINE_CAPACITY)
        self._inprogress: queue.Queue = queue.Queue(maxsize=_PIPELINE_CAPACITY)
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._thread = threading.Thread(target=self._decode_responses, daemon=True)
        self._thread.start()

    def _decode_responses(self) -> None:
        timeout = self.trans.timeout if self.trans.timeout > 0 else None
        while True:
            status, inflight = _get_until(self._inprogress, self._shutdown, None)
            if status != "ok":
                return
            status, result = _get_until(inflight.resp_chan, self._shutdown, timeout)
            if status == "shutdown":
                return
            if status == "ok":
                inflight.future.resp = result.response
                inflight.future.respond(result.error)
            else:
                inflight.future.respond(TimeoutError("command timed out"))
            if _put_until(self._done, inflight.future, self._shutdown, None) != "ok":
                return

    def append_entries(self, args: AppendEntriesRequest) -> AppendFuture:
        """Send a request without waiting for its answer; the future reports it."""
        future = AppendFuture(args=args, resp=None)
        timeout = self.trans.timeout if self.trans.timeout > 0 else None
        resp_chan: queue.Queue = queue.Queue(maxsize=1)
        rpc = RPC(command=args, resp_chan=resp_chan)

        if self._shutdown.is_set():
            raise PipelineShutdownError()

        status = _put_until(self.peer._consumer, rpc, self._shutdown, timeout)
        if status == "timeout":
            raise TimeoutError("command enqueue timeout")
        if status == "shutdown":
            raise PipelineShutdownError()

        status = _put_until(
            self._inprogress, _Inflight(future, resp_chan), self._shutdown, None
        )
        if status != "ok":
            raise PipelineShutdownError()
        return future

    def consumer(self) -> queue.Queue:
        """The queue on which completed futures arrive."""
        return self._done

    def close(self) -> None:
        with self._shutdown_lock:
            self._shutdown.set()