"""
echocorn/session.py - Per-connection echo loops.

A session owns one connected socket for its whole lifetime: it reads what the
peer sends, optionally transforms it, writes every byte back, and closes the
socket on the way out no matter how the loop ended.
"""

import socket
import logging

from echocorn.colors import format_peer_event
from echocorn.errors import FatalIOError

RECV_CHUNK = 4096                   # bytes per recv call
LINE_MAX = 4096                     # longest line buffered before a forced flush

# Module-level logger (configured by CLI or calling code)
log = logging.getLogger("echocorn")


def recv_some(sock: socket.socket, bufsize: int = RECV_CHUNK) -> bytes:
    """
    Read up to *bufsize* bytes. ``b""`` means the peer shut down its write side.
    Raises FatalIOError on anything but an interrupted call.
    """
    while True:
        try:
            return sock.recv(bufsize)
        except InterruptedError:
            continue
        except OSError as exc:
            raise FatalIOError("recv", exc) from exc


def send_all(sock: socket.socket, data: bytes) -> int:
    """
    Write every byte of *data*, resuming after short writes.
    Returns the number of bytes sent.
    """
    view = memoryview(data)
    sent = 0
    while sent < len(view):
        try:
            sent += sock.send(view[sent:])
        except InterruptedError:
            continue
        except OSError as exc:
            raise FatalIOError("send", exc) from exc
    return sent


class SessionHandler:
    """
    Base echo session. Subclasses implement ``echo(sock)`` and return the
    number of bytes written back; ``run`` wraps it with logging and cleanup.
    """
    protocol = "raw"

    def __init__(self, bufsize: int = RECV_CHUNK):
        self.bufsize = bufsize

    def transform(self, data: bytes) -> bytes:
        return data

    def echo(self, sock: socket.socket) -> int:
        raise NotImplementedError

    def run(self, sock: socket.socket, addr) -> None:
        """Serve one connection until peer EOF or a fatal I/O error."""
        log.info(format_peer_event(addr, "connected"))
        echoed = 0
        try:
            echoed = self.echo(sock)
        except FatalIOError as exc:
            log.warning(format_peer_event(addr, "error", str(exc)))
        except Exception:
            log.error("Fatal error in session handler", exc_info=True)
        finally:
            try:
                sock.close()
            except OSError:
                pass
            log.info(format_peer_event(addr, "disconnected", f"{echoed} bytes echoed"))


class RawEchoHandler(SessionHandler):
    """Send back exactly the bytes received, chunk by chunk."""
    protocol = "raw"

    def echo(self, sock: socket.socket) -> int:
        echoed = 0
        while True:
            data = recv_some(sock, self.bufsize)
            if not data:
                return echoed
            echoed += send_all(sock, self.transform(data))


class LineEchoHandler(SessionHandler):
    """
    Buffer input into lines and send each one back upper-cased.

    A line ends at ``\\n`` or when ``line_max`` bytes are pending without one.
    Bytes left over when the peer closes are echoed once, as-is (no newline
    is added).
    """
    protocol = "line"

    def __init__(self, bufsize: int = RECV_CHUNK, line_max: int = LINE_MAX):
        super().__init__(bufsize)
        self.line_max = line_max

    def transform(self, data: bytes) -> bytes:
        # bytes.upper() only touches ASCII letters
        return data.upper()

    def echo(self, sock: socket.socket) -> int:
        pending = bytearray()
        echoed = 0
        while True:
            data = recv_some(sock, self.bufsize)
            if not data:
                break
            pending += data
            for line in self._split_lines(pending):
                echoed += send_all(sock, self.transform(line))

        if pending:
            echoed += send_all(sock, self.transform(bytes(pending)))
        return echoed

    def _split_lines(self, pending: bytearray):
        """Yield every complete (or over-long) line, consuming it from *pending*."""
        while True:
            newline = pending.find(b"\n", 0, self.line_max)
            if newline != -1:
                end = newline + 1
            elif len(pending) >= self.line_max:
                end = self.line_max
            else:
                return
            line = bytes(pending[:end])
            del pending[:end]
            yield line


_HANDLERS = {
    "raw": RawEchoHandler,
    "line": LineEchoHandler,
}

PROTOCOLS = tuple(_HANDLERS)


def make_handler(protocol: str = "raw") -> SessionHandler:
    """Build the session handler for a wire protocol name (``raw`` or ``line``)."""
    try:
        return _HANDLERS[protocol]()
    except KeyError:
        raise ValueError(
            f"Unknown protocol: {protocol!r}. Expected one of {', '.join(PROTOCOLS)}"
        ) from None
