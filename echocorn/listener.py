"""
echocorn/listener.py - Passive socket setup, accept loop and shutdown token.
"""

import socket
import selectors
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from echocorn.errors import BindError, FatalIOError

BACKLOG = socket.SOMAXCONN          # pending-connection queue depth

# Module-level logger (configured by CLI or calling code)
log = logging.getLogger("echocorn")


class ShutdownToken:
    """
    Cancellation token handed to the accept loop.

    ``request()`` only flips a flag and writes one byte to an internal
    socketpair, so it may be called from a signal handler or from another
    thread. The listener watches the read end next to the listening socket.
    """

    def __init__(self):
        self._requested = False
        self._rsock, self._wsock = socket.socketpair()
        self._rsock.setblocking(False)
        self._wsock.setblocking(False)

    @property
    def requested(self) -> bool:
        return self._requested

    def request(self) -> None:
        """Ask the accept loop to stop."""
        self._requested = True
        self.wake()

    def wake(self) -> None:
        """Interrupt a pending wait without requesting shutdown."""
        try:
            self._wsock.send(b"\0")
        except OSError:
            # Full buffer or already closed: a wake-up is pending anyway.
            pass

    def fileno(self) -> int:
        return self._rsock.fileno()

    def clear_wakeups(self) -> None:
        while True:
            try:
                if not self._rsock.recv(512):
                    return
            except OSError:
                return

    def close(self) -> None:
        self._rsock.close()
        self._wsock.close()


@dataclass(frozen=True)
class ListenEndpoint:
    family: socket.AddressFamily
    host: str
    port: int
    backlog: int
    sock: socket.socket


def open_listener(
    port: int,
    host: Optional[str] = None,
    backlog: int = BACKLOG,
) -> ListenEndpoint:
    """
    Bind a passive TCP socket on *port*.

    Every address ``getaddrinfo`` offers for the wildcard (or *host*) is
    tried in order; the first one that binds wins. IPv6 sockets accept
    IPv4-mapped peers too. Raises BindError if nothing can be bound or if
    ``listen()`` fails.
    """
    try:
        candidates = socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
        )
    except socket.gaierror as exc:
        raise BindError(f"cannot resolve {host or '*'}:{port}: {exc}") from exc

    sock = None
    last_error: Optional[OSError] = None
    for family, socktype, proto, _canonname, sockaddr in candidates:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as exc:
            last_error = exc
            continue
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
                try:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                except OSError:
                    log.debug("IPV6_V6ONLY not adjustable on %s", sockaddr[0])
            sock.bind(sockaddr)
            break
        except OSError as exc:
            last_error = exc
            sock.close()
            sock = None

    if sock is None:
        raise BindError(f"cannot bind port {port}: {last_error}")

    try:
        sock.listen(backlog)
    except OSError as exc:
        sock.close()
        raise BindError(f"cannot listen on port {port}: {exc}") from exc

    sock.setblocking(False)
    bound = sock.getsockname()
    return ListenEndpoint(
        family=sock.family,
        host=bound[0],
        port=bound[1],
        backlog=backlog,
        sock=sock,
    )


class Listener:
    """
    Accepts connections from a ListenEndpoint until shutdown is requested.

    ``accept()`` blocks in a selector on the listening socket and the token's
    wake-up channel. It returns ``None`` once the token fires or ``stop()``
    has run, which lets callers tell a shutdown apart from a real failure.
    """

    def __init__(self, endpoint: ListenEndpoint, token: ShutdownToken):
        self.endpoint = endpoint
        self.token = token
        self._closed = False
        self._lock = threading.Lock()
        self._selector = selectors.DefaultSelector()
        self._selector.register(endpoint.sock, selectors.EVENT_READ, data="listen")
        self._selector.register(token, selectors.EVENT_READ, data="wakeup")

    @property
    def closed(self) -> bool:
        return self._closed

    def _stopping(self) -> bool:
        return self._closed or self.token.requested

    def accept(self):
        """Return ``(conn, addr)`` for the next peer, or ``None`` when stopping."""
        while True:
            if self._stopping():
                return None
            try:
                events = self._selector.select()
            except InterruptedError:
                continue
            except ValueError:
                # selector closed by stop() from another thread
                return None
            except OSError as exc:
                if self._stopping():
                    return None
                raise FatalIOError("select", exc) from exc
            if self._stopping():
                return None

            listen_ready = False
            for key, _mask in events:
                if key.data == "wakeup":
                    self.token.clear_wakeups()
                elif key.data == "listen":
                    listen_ready = True
            if not listen_ready:
                continue

            try:
                conn, addr = self.endpoint.sock.accept()
            except (BlockingIOError, InterruptedError, ConnectionAbortedError):
                continue
            except OSError as exc:
                if self._stopping():
                    return None
                raise FatalIOError("accept", exc) from exc
            conn.setblocking(True)
            return conn, addr

    def stop(self) -> None:
        """Close the listening socket. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.token.wake()
        self._close()

    def close_inherited(self) -> None:
        """
        Drop this process's copies of the listener descriptors without
        waking the accept loop. Used in a forked session process.
        """
        self._closed = True
        self._close()
        self.token.close()

    def _close(self) -> None:
        try:
            self.endpoint.sock.close()
        except OSError:
            pass
        self._selector.close()
