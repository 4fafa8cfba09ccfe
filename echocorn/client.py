"""
echocorn/client.py - Interactive echo client.

One thread, one selector, two sources: local input (usually stdin) and the
server socket. Local EOF half-closes the connection; the loop keeps printing
replies until the server closes its side.
"""

import os
import enum
import socket
import selectors
import logging
from typing import Optional

from echocorn.errors import ConnectError, FatalIOError
from echocorn.session import RECV_CHUNK, recv_some, send_all

# Module-level logger (configured by CLI or calling code)
log = logging.getLogger("echocorn")


# epoll cannot watch regular files, which is what a redirected stdin is.
_LocalSelector = getattr(selectors, "PollSelector", selectors.SelectSelector)


class ClientState(enum.Enum):
    BOTH_OPEN = "both-open"
    LOCAL_CLOSED_REMOTE_OPEN = "local-closed"
    TERMINATED = "terminated"


def connect_to(host: str, port: int, timeout: Optional[float] = None) -> socket.socket:
    """
    Connect to the first reachable address of *host*:*port* (IPv4 or IPv6).
    Raises ConnectError when resolution or every attempt fails.
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise ConnectError(host, port, str(exc)) from exc
    sock.settimeout(None)
    return sock


def _read_fd(fd: int, bufsize: int) -> bytes:
    while True:
        try:
            return os.read(fd, bufsize)
        except InterruptedError:
            continue
        except OSError as exc:
            raise FatalIOError("read", exc) from exc


def _write_fd(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except InterruptedError:
            continue
        except OSError as exc:
            raise FatalIOError("write", exc) from exc
        view = view[written:]


class InteractiveClient:
    """
    Relay bytes between local input/output descriptors and a connected socket.

    ``run()`` owns the socket from then on and always closes it. It returns
    the reason the loop ended, or raises FatalIOError on an I/O failure.
    """

    def __init__(
        self,
        sock: socket.socket,
        local_in: int = 0,
        local_out: int = 1,
        bufsize: int = RECV_CHUNK,
    ):
        self.sock = sock
        self.local_in = local_in
        self.local_out = local_out
        self.bufsize = bufsize
        self.state = ClientState.BOTH_OPEN
        self._selector: Optional[selectors.BaseSelector] = None

    def run(self) -> str:
        self._selector = _LocalSelector()
        self._selector.register(self.sock, selectors.EVENT_READ, data="remote")
        self._selector.register(self.local_in, selectors.EVENT_READ, data="local")
        try:
            while self.state is not ClientState.TERMINATED:
                try:
                    events = self._selector.select()
                except InterruptedError:
                    continue
                except OSError as exc:
                    raise FatalIOError("select", exc) from exc

                ready = {key.data for key, _mask in events}
                # Remote first so replies are never starved by a busy local input.
                if "remote" in ready:
                    self._on_remote_readable()
                if "local" in ready and self.state is ClientState.BOTH_OPEN:
                    self._on_local_readable()
            return "server closed connection"
        finally:
            self.state = ClientState.TERMINATED
            self._selector.close()
            try:
                self.sock.close()
            except OSError:
                pass

    def _on_remote_readable(self) -> None:
        data = recv_some(self.sock, self.bufsize)
        if not data:
            log.info("[-] server closed connection")
            self.state = ClientState.TERMINATED
            return
        _write_fd(self.local_out, data)

    def _on_local_readable(self) -> None:
        data = _read_fd(self.local_in, self.bufsize)
        if data:
            send_all(self.sock, data)
            return
        # Local EOF: tell the server we are done sending, keep reading replies.
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError as exc:
            raise FatalIOError("shutdown", exc) from exc
        self._selector.unregister(self.local_in)
        self.state = ClientState.LOCAL_CLOSED_REMOTE_OPEN
        log.debug("local input closed, half-closed connection")


def run_client(
    host: str,
    port: int,
    local_in: int = 0,
    local_out: int = 1,
) -> str:
    """
    Connect to an echo server and relay local input until the server closes.
    Returns the termination reason.
    """
    sock = connect_to(host, port)
    log.info("[*] connected to %s:%s", host, port)
    return InteractiveClient(sock, local_in, local_out).run()
