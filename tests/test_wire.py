import socket
import threading
from datetime import datetime, timezone

import msgpack
import pytest

from raftkit.log import Log, LogType
from raftkit.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    PipelineShutdownError,
    RequestVoteRequest,
    RequestVoteResponse,
    RPCHeader,
    TimeoutNowRequest,
)
from raftkit.wire import (
    NetConn,
    NetPipeline,
    RPCError,
    RpcType,
    decode_message,
    decode_response,
    encode_message,
    send_rpc,
)


def _append_args():
    return AppendEntriesRequest(
        term=10,
        prev_log_entry=100,
        prev_log_term=4,
        entries=[Log(index=101, term=4, type=LogType.NOOP)],
        leader_commit_index=90,
        rpc_header=RPCHeader(addr=b"cartman"),
    )


def _append_resp():
    return AppendEntriesResponse(term=4, last_log=90, success=True)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    client = NetConn("server", a)
    server = NetConn("client", b)
    client.set_timeout(5)
    server.set_timeout(5)
    yield client, server
    client.release()
    server.release()


def _serve(conn, response, count, error=""):
    received = []

    def run():
        try:
            for _ in range(count):
                kind = RpcType(conn.read_byte())
                received.append(conn.read_object(kind.request_type))
                conn.write_object(error)
                conn.write_object(response)
                conn.flush()
        except (EOFError, OSError, ValueError):
            pass

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, received


@pytest.mark.parametrize(
    "wire_byte, request_type",
    [
        (0, AppendEntriesRequest),
        (1, RequestVoteRequest),
        (2, InstallSnapshotRequest),
        (3, TimeoutNowRequest),
    ],
)
def test_wire_byte_selects_request_type(wire_byte, request_type):
    decoded = decode_message(wire_byte, encode_message(request_type()))
    assert decoded == request_type()
    assert type(decoded) is request_type


@pytest.mark.parametrize(
    "rpc_type, message",
    [
        (RpcType.APPEND_ENTRIES, _append_args()),
        (
            RpcType.REQUEST_VOTE,
            RequestVoteRequest(
                term=20,
                last_log_index=100,
                last_log_term=19,
                rpc_header=RPCHeader(addr=b"butters"),
            ),
        ),
        (
            RpcType.INSTALL_SNAPSHOT,
            InstallSnapshotRequest(
                term=10,
                last_log_index=100,
                last_log_term=9,
                peers=b"blah blah",
                size=10,
                rpc_header=RPCHeader(addr=b"kyle"),
            ),
        ),
        (RpcType.TIMEOUT_NOW, TimeoutNowRequest(rpc_header=RPCHeader(protocol_version=3))),
    ],
)
def test_message_round_trip(rpc_type, message):
    assert decode_message(rpc_type, encode_message(message)) == message


def test_log_entries_keep_type_and_time():
    stamp = datetime(2024, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
    args = AppendEntriesRequest(
        term=3,
        entries=[
            Log(index=7, term=3, type=LogType.CONFIGURATION, data=b"x", appended_at=stamp),
            Log(index=8, term=3, data=b"y"),
        ],
    )
    decoded = decode_message(RpcType.APPEND_ENTRIES, encode_message(args))
    assert decoded == args
    assert decoded.entries[0].type is LogType.CONFIGURATION
    assert decoded.entries[0].appended_at == stamp


def test_encoded_message_is_a_map_of_fields():
    plain = msgpack.unpackb(encode_message(TimeoutNowRequest()), raw=False)
    assert plain == {"rpc_header": {"protocol_version": 0, "addr": b""}}


def test_decode_message_ignores_unknown_and_fills_missing_fields():
    payload = msgpack.packb({"term": 5, "bogus": 1})
    assert decode_message(1, payload) == RequestVoteRequest(term=5)


def test_decode_message_rejects_unknown_type():
    with pytest.raises(ValueError, match="unknown rpc type 9"):
        decode_message(9, encode_message(TimeoutNowRequest()))


def test_send_rpc_frames_type_byte_then_request(pair):
    client, server = pair
    args = _append_args()
    send_rpc(client, RpcType.APPEND_ENTRIES, args)
    assert server.read_byte() == RpcType.APPEND_ENTRIES
    assert server.read_object(AppendEntriesRequest) == args


def test_request_response_round_trip(pair):
    client, server = pair
    args = RequestVoteRequest(term=20, last_log_index=100, last_log_term=19)
    resp = RequestVoteResponse(term=100, granted=False)
    thread, received = _serve(server, resp, 1)
    send_rpc(client, RpcType.REQUEST_VOTE, args)
    assert decode_response(client, RequestVoteResponse) == resp
    thread.join(5)
    assert received == [args]


def test_missing_response_decodes_as_default(pair):
    client, server = pair
    thread, _ = _serve(server, None, 1)
    send_rpc(client, RpcType.APPEND_ENTRIES, _append_args())
    assert decode_response(client, AppendEntriesResponse) == AppendEntriesResponse()
    thread.join(5)


def test_remote_error_keeps_connection_usable(pair):
    client, server = pair
    thread, received = _serve(server, _append_resp(), 2, error="boom")
    send_rpc(client, RpcType.APPEND_ENTRIES, _append_args())
    with pytest.raises(RPCError, match="boom") as info:
        decode_response(client, AppendEntriesResponse)
    assert info.value.response == _append_resp()
    assert not client.closed
    send_rpc(client, RpcType.APPEND_ENTRIES, _append_args())
    with pytest.raises(RPCError):
        decode_response(client, AppendEntriesResponse)
    thread.join(5)
    assert len(received) == 2


def test_decode_response_on_closed_peer_releases_connection(pair):
    client, server = pair
    server.release()
    with pytest.raises((EOFError, OSError)):
        decode_response(client, AppendEntriesResponse)
    assert client.closed


def test_install_snapshot_streams_raw_data(pair):
    client, server = pair
    args = InstallSnapshotRequest(term=10, last_log_index=100, size=10, peers=b"blah blah")
    send_rpc(client, RpcType.INSTALL_SNAPSHOT, args)
    client.write(b"0123456789")
    client.write_object("")
    client.flush()

    assert server.read_byte() == RpcType.INSTALL_SNAPSHOT
    req = server.read_object(InstallSnapshotRequest)
    assert req == args
    assert server.limited_reader(req.size).read() == b"0123456789"
    assert server.read_object() == ""


def test_limited_reader_stops_at_limit(pair):
    client, server = pair
    client.write(b"abcdef")
    client.flush()
    reader = server.limited_reader(4)
    assert reader.read() == b"abcd"
    assert reader.read() == b""
    assert server.read_exact(2) == b"ef"


def test_release_is_idempotent(pair):
    client, _ = pair
    client.release()
    client.release()
    assert client.closed


def test_pipeline_delivers_responses_in_order(pair):
    client, server = pair
    thread, received = _serve(server, _append_resp(), 10)
    pipeline = NetPipeline(client, timeout=5)
    try:
        sent = [pipeline.append_entries(_append_args()) for _ in range(10)]
        done = [pipeline.consumer().get(timeout=5) for _ in range(10)]
        assert done == sent
        for future in done:
            assert future.error() is None
            assert future.response() == _append_resp()
            assert future.request() == _append_args()
    finally:
        pipeline.close()
    thread.join(5)
    assert len(received) == 10


def test_pipeline_reports_remote_error(pair):
    client, server = pair
    thread, _ = _serve(server, _append_resp(), 1, error="rejected")
    pipeline = NetPipeline(client, timeout=5)
    try:
        future = pipeline.append_entries(_append_args())
        ready = pipeline.consumer().get(timeout=5)
        assert ready is future
        assert isinstance(ready.error(), RPCError)
        assert str(ready.error()) == "rejected"
        assert ready.response() == _append_resp()
    finally:
        pipeline.close()
    thread.join(5)


def test_pipeline_future_fails_when_peer_closes(pair):
    client, server = pair
    pipeline = NetPipeline(client, timeout=5)
    try:
        future = pipeline.append_entries(_append_args())
        assert server.read_byte() == RpcType.APPEND_ENTRIES
        server.release()
        ready = pipeline.consumer().get(timeout=5)
        assert ready is future
        assert isinstance(ready.error(), (EOFError, OSError))
    finally:
        pipeline.close()


def test_closed_pipeline_rejects_requests(pair):
    client, _ = pair
    pipeline = NetPipeline(client)
    pipeline.close()
    pipeline.close()
    assert client.closed
    with pytest.raises(PipelineShutdownError):
        pipeline.append_entries(_append_args())


def test_install_snapshot_response_round_trip(pair):
    client, server = pair
    resp = InstallSnapshotResponse(term=10, success=True)
    server.write_object("")
    server.write_object(resp)
    server.flush()
    assert decode_response(client, InstallSnapshotResponse) == resp