# raftkit

Building blocks for a Raft consensus implementation:

- `raftkit.log` – log entries (`Log`, `LogType`), the `LogStore` protocol,
  `oldest_log`, and `emit_log_store_metrics`, which reports the age in
  milliseconds of the oldest stored entry to a sink callable until a
  `threading.Event` is set.
- `raftkit.store` – `InmemStore`, an in-memory log store and key/value
  store, intended for tests.
- `raftkit.log_cache` – `LogCache`, a ring buffer in front of any log store
  that serves recently written entries from memory.
- `raftkit.observer` – `Observer` and `ObserverRegistry` for delivering
  observations (`LeaderObservation`, `PeerObservation`,
  `FailedHeartbeatObservation`, `ResumedHeartbeatObservation` or any other
  data) to queues, either blocking or dropping when a queue is full.
- `raftkit.future` – futures used to wait on log application
  (`LogFuture`), snapshots (`UserSnapshotFuture`), leadership verification
  (`VerifyFuture`), configurations (`ConfigurationsFuture`) and pipelined
  appends (`AppendFuture`), all built on `DeferredFuture`.
- `raftkit.inmem_snapshot` – `InmemSnapshotStore`, which keeps only the
  latest snapshot in memory, along with `Configuration`, `Server`,
  `ServerSuffrage` and `SnapshotMeta`.
- `raftkit.messages` – RPC request and response dataclasses and the `RPC`
  envelope handed to a consumer.
- `raftkit.inmem_transport` – `InmemTransport` and `InmemPipeline`, which
  route RPCs between transports in the same process.
- `raftkit.wire` – the msgpack framing (`encode_message`, `decode_message`,
  `send_rpc`, `decode_response`), `NetConn` and `NetPipeline`.
- `raftkit.net_transport` – `NetworkTransport`, which carries RPCs over a
  stream layer you supply, with connection pooling, a heartbeat fast path
  and pipelined AppendEntries.

## Installation

```
pip install raftkit
```

## Log storage

```python
from raftkit.log import Log, LogType
from raftkit.store import InmemStore
from raftkit.log_cache import LogCache

store = InmemStore()
cache = LogCache(16, store)
cache.store_logs([Log(index=1, term=1, type=LogType.COMMAND, data=b"hello")])

entry = cache.get_log(1)
assert entry.data == b"hello"
assert cache.last_index() == 1
```

`LogCache` raises `ValueError` for a capacity that is not positive, and
wraps a failure of the underlying store in a `RuntimeError`; entries are
only cached once the store has accepted them. `delete_range` empties the
cache before deleting from the store.

## Snapshots

```python
from raftkit.inmem_snapshot import Configuration, InmemSnapshotStore, Server

snapshots = InmemSnapshotStore()
config = Configuration(servers=[Server(id="node1", address="node1")])
sink = snapshots.create(1, 10, 3, config, 2)
sink.write(b"state")
sink.close()

meta, reader = snapshots.open(sink.id())
assert meta.size == 5 and reader.read() == b"state"
```

Only snapshot version 1 is accepted; any other raises `ValueError`. Opening
an id other than the latest raises `LookupError`.

## In-memory transport

```python
import threading

from raftkit.inmem_transport import InmemTransport
from raftkit.messages import AppendEntriesRequest, AppendEntriesResponse

addr1, addr2 = "node1", "node2"
t1 = InmemTransport(addr1, 0.5)
t2 = InmemTransport(addr2, 0.5)
t1.connect(addr2, t2)

def serve():
    rpc = t2.consumer().get()
    rpc.respond(AppendEntriesResponse(term=1, last_log=1, success=True), None)

threading.Thread(target=serve).start()
resp = t1.append_entries("node2", addr2, AppendEntriesRequest(term=1))
assert resp.success
```

An unknown peer raises `ConnectionError`; a peer that does not take the
request or answer in time raises `TimeoutError` ("send timed out" or
"command timed out"). An error passed to `rpc.respond` is raised to the
caller.

## Network transport

`NetworkTransport` is configured with a `NetworkTransportConfig` whose
`stream` provides `accept()`, `close()`, `addr()` and
`dial(address, timeout)`, returning sockets. A minimal TCP stream layer:

```python
import socket

from raftkit.net_transport import NetworkTransport, NetworkTransportConfig


class TCPStreamLayer:
    def __init__(self, host="127.0.0.1", port=0):
        self._listener = socket.create_server((host, port))

    def accept(self):
        return self._listener.accept()[0]

    def close(self):
        self._listener.close()

    def addr(self):
        host, port = self._listener.getsockname()[:2]
        return f"{host}:{port}"

    def dial(self, address, timeout):
        host, port = address.rsplit(":", 1)
        return socket.create_connection((host, int(port)), timeout=timeout or None)


transport = NetworkTransport(
    NetworkTransportConfig(stream=TCPStreamLayer(), max_pool=3, timeout=1.0)
)
```

Incoming RPCs arrive on `transport.consumer()`. Errors reported by the
remote end are raised as `raftkit.wire.RPCError`. A closed pipeline raises
`PipelineShutdownError`; inbound handling stops with
`TransportShutdownError` once the transport is closed.

## What this package does not do

raftkit has no Raft node itself: there is no leader election, replication
loop or state machine runner. It has no durable log store and no
file-based snapshot store; `InmemStore` and `InmemSnapshotStore` keep
everything in memory. It ships no stream layer for `NetworkTransport`
and no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```