import os
import sys
import signal
import socket
import logging
import threading
import subprocess
import time
from pathlib import Path

import pytest

from echocorn.server import EchoServer, run

ROOT = Path(__file__).resolve().parent.parent


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


def wait_for_port(port: int, proc: subprocess.Popen = None, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if proc is not None and proc.poll() is not None:
            raise RuntimeError(f"server exited early with {proc.returncode}")
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                return
        except OSError:
            time.sleep(0.05)
    raise RuntimeError(f"nothing listening on port {port}")


def subprocess_env() -> dict:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), env.get("PYTHONPATH")]))
    return env


@pytest.fixture(autouse=True)
def _restore_process_state():
    """CLI entry points reconfigure the echocorn logger and signal handlers."""
    logger = logging.getLogger("echocorn")
    handlers, level, propagate = logger.handlers[:], logger.level, logger.propagate
    sigint = signal.getsignal(signal.SIGINT)
    sigterm = signal.getsignal(signal.SIGTERM)
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
    signal.signal(signal.SIGINT, sigint)
    signal.signal(signal.SIGTERM, sigterm)


@pytest.fixture
def echo_server():
    """Start in-process, thread-per-session servers on free ports."""
    started = []

    def _start(protocol: str = "raw") -> EchoServer:
        server = EchoServer(port=0, host="127.0.0.1", protocol=protocol)
        worker = run(server)
        started.append((server, worker))
        return server

    yield _start

    for server, worker in started:
        server.signal_exit()
        worker.join(10)


@pytest.fixture
def exchange():
    """Send a payload, half-close, and collect everything echoed back."""

    def _exchange(port: int, payload: bytes, host: str = "127.0.0.1") -> bytes:
        with socket.create_connection((host, port), timeout=30) as sock:
            sender = threading.Thread(target=_send_then_shutdown, args=(sock, payload))
            sender.start()
            chunks = []
            while True:
                data = sock.recv(65536)
                if not data:
                    break
                chunks.append(data)
            sender.join()
        return b"".join(chunks)

    return _exchange


def _send_then_shutdown(sock: socket.socket, payload: bytes) -> None:
    sock.sendall(payload)
    sock.shutdown(socket.SHUT_WR)


@pytest.fixture
def spawn_server(tmp_path):
    """
    Run ``python -m echocorn`` (or a ``-c`` *script* that calls the CLI) in a
    subprocess; stderr goes to a log file.
    """
    procs = []

    def _spawn(*args, script=None, cwd=None):
        port = free_port()
        log_path = tmp_path / f"server-{port}.log"
        log_file = open(log_path, "wb")
        entry = ["-c", script] if script else ["-m", "echocorn"]
        proc = subprocess.Popen(
            [sys.executable, *entry, str(port),
             "--host", "127.0.0.1", "--no-color", *args],
            stdout=subprocess.PIPE,
            stderr=log_file,
            env=subprocess_env(),
            cwd=cwd,
        )
        log_file.close()
        procs.append(proc)
        wait_for_port(port, proc)
        proc.log_path = log_path
        return proc, port

    yield _spawn

    for proc in procs:
        if proc.poll() is None:
            proc.send_signal(signal.SIGTERM)
            try:
                proc.wait(10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if proc.stdout:
            proc.stdout.close()


@pytest.fixture
def unused_port() -> int:
    return free_port()


@pytest.fixture
def child_env() -> dict:
    return subprocess_env()
