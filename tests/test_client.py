import os
import socket
import threading

import pytest

from echocorn.client import ClientState, InteractiveClient, connect_to, run_client
from echocorn.errors import ConnectError, FatalIOError


def read_all(fd: int) -> bytes:
    chunks = []
    while True:
        data = os.read(fd, 4096)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def local_input(data: bytes, close: bool = True):
    """A pipe pre-loaded with *data*; returns (read_fd, write_fd or None)."""
    r, w = os.pipe()
    os.write(w, data)
    if close:
        os.close(w)
        return r, None
    return r, w


def one_shot_peer(behaviour):
    """Listen on a free port and run *behaviour(conn)* for the first client."""
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]

    def serve():
        conn, _addr = listener.accept()
        with conn:
            behaviour(conn)
        listener.close()

    worker = threading.Thread(target=serve, daemon=True)
    worker.start()
    return port, worker


def test_keeps_reading_after_local_eof():
    seen = {}

    def reply_after_half_close(conn):
        data = b""
        while True:
            chunk = conn.recv(4096)
            if not chunk:
                break
            data += chunk
        seen["request"] = data
        # only sent once the client's write side is shut down
        conn.sendall(b"got " + data + b"bye\n")

    port, worker = one_shot_peer(reply_after_half_close)
    in_r, _ = local_input(b"hello\n")
    out_r, out_w = os.pipe()

    client = InteractiveClient(connect_to("127.0.0.1", port), in_r, out_w)
    reason = client.run()
    os.close(out_w)

    assert reason == "server closed connection"
    assert client.state is ClientState.TERMINATED
    assert seen["request"] == b"hello\n"
    assert read_all(out_r) == b"got hello\nbye\n"
    assert client.sock.fileno() == -1
    worker.join(5)
    os.close(in_r)
    os.close(out_r)


def test_remote_close_ends_loop_while_local_input_is_open():
    port, worker = one_shot_peer(lambda conn: conn.sendall(b"banner\n"))
    in_r, in_w = local_input(b"", close=False)
    out_r, out_w = os.pipe()

    client = InteractiveClient(connect_to("127.0.0.1", port), in_r, out_w)
    client.run()
    os.close(out_w)

    assert client.state is ClientState.TERMINATED
    assert read_all(out_r) == b"banner\n"
    worker.join(5)
    for fd in (in_r, in_w, out_r):
        os.close(fd)


def test_against_line_server(echo_server):
    server = echo_server("line")
    in_r, _ = local_input(b"hello\nsecond line\n")
    out_r, out_w = os.pipe()

    reason = run_client("127.0.0.1", server.endpoint.port, in_r, out_w)
    os.close(out_w)

    assert reason == "server closed connection"
    assert read_all(out_r) == b"HELLO\nSECOND LINE\n"
    os.close(in_r)
    os.close(out_r)


def test_large_input_is_relayed_in_full(echo_server):
    server = echo_server("raw")
    payload = os.urandom(40000)
    in_r, in_w = os.pipe()
    received = bytearray()
    sink_r, sink_w = os.pipe()

    def collect():
        while True:
            data = os.read(sink_r, 65536)
            if not data:
                break
            received.extend(data)

    collector = threading.Thread(target=collect)
    collector.start()
    feeder = threading.Thread(target=lambda: (os.write(in_w, payload), os.close(in_w)))
    feeder.start()
    run_client("127.0.0.1", server.endpoint.port, in_r, sink_w)
    os.close(sink_w)
    collector.join(10)
    feeder.join(10)

    assert bytes(received) == payload
    for fd in (in_r, sink_r):
        os.close(fd)


def test_local_output_failure_is_fatal_and_closes_socket():
    port, worker = one_shot_peer(lambda conn: conn.sendall(b"data"))
    in_r, in_w = local_input(b"", close=False)
    bad_r, bad_w = os.pipe()
    os.close(bad_r)

    client = InteractiveClient(connect_to("127.0.0.1", port), in_r, bad_w)
    with pytest.raises(FatalIOError) as info:
        client.run()
    assert info.value.op == "write"
    assert client.state is ClientState.TERMINATED
    assert client.sock.fileno() == -1
    worker.join(5)
    for fd in (in_r, in_w, bad_w):
        os.close(fd)


def test_connect_failure_raises_connect_error(unused_port):
    with pytest.raises(ConnectError) as info:
        connect_to("127.0.0.1", unused_port)
    assert info.value.port == unused_port


def test_regular_file_as_local_input(echo_server, tmp_path):
    # what the client sees for `echocorn-client HOST PORT < file`
    server = echo_server("line")
    source = tmp_path / "input.txt"
    source.write_bytes(b"from a file\nsecond\n")
    out_r, out_w = os.pipe()

    with open(source, "rb") as local_in:
        reason = run_client("127.0.0.1", server.endpoint.port, local_in.fileno(), out_w)
    os.close(out_w)

    assert reason == "server closed connection"
    assert read_all(out_r) == b"FROM A FILE\nSECOND\n"
    os.close(out_r)
