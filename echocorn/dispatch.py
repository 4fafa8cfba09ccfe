"""
echocorn/dispatch.py - Execution-context strategies for accepted connections.

A dispatcher takes ownership of each accepted socket and starts a session for
it without waiting for earlier sessions. It keeps a set of in-flight handles
only so they can be joined or reaped later.
"""

import os
import time
import signal
import socket
import logging
import threading
from typing import Optional

from echocorn.colors import format_peer, format_peer_event
from echocorn.listener import Listener
from echocorn.session import SessionHandler

CONCURRENCY_MODES = ("thread", "process")

# Module-level logger (configured by CLI or calling code)
log = logging.getLogger("echocorn")


def _close_quietly(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError:
        pass


class Dispatcher:
    """Base supervisor. Subclasses decide what runs a session."""
    strategy = ""

    def __init__(self, handler: SessionHandler, listener: Listener):
        self.handler = handler
        self.listener = listener

    def start(self) -> None:
        """Prepare the strategy before the first connection."""

    def dispatch(self, conn: socket.socket, addr) -> bool:
        """
        Hand *conn* to a new execution context. The caller must not touch
        *conn* afterwards. Returns False if the context could not be started,
        in which case the connection has already been closed.
        """
        raise NotImplementedError

    def reap(self) -> int:
        """Forget finished sessions. Returns how many were collected."""
        return 0

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight sessions to finish on their own."""

    @property
    def active(self) -> int:
        raise NotImplementedError


class ThreadDispatcher(Dispatcher):
    """One daemon thread per connection, all sharing this process."""
    strategy = "thread"

    def __init__(self, handler: SessionHandler, listener: Listener):
        super().__init__(handler, listener)
        self._threads: set[threading.Thread] = set()

    def dispatch(self, conn: socket.socket, addr) -> bool:
        self.reap()
        worker = threading.Thread(
            target=self.handler.run,
            args=(conn, addr),
            name=f"session-{format_peer(addr)}",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError as exc:
            log.error(format_peer_event(addr, "dropped", f"cannot start thread: {exc}"))
            _close_quietly(conn)
            return False
        self._threads.add(worker)
        return True

    def reap(self) -> int:
        finished = {t for t in self._threads if not t.is_alive()}
        self._threads -= finished
        return len(finished)

    def drain(self, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for worker in list(self._threads):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            worker.join(remaining)
        self.reap()

    @property
    def active(self) -> int:
        self.reap()
        return len(self._threads)


class ForkDispatcher(Dispatcher):
    """
    One forked process per connection (POSIX only).

    The child closes the inherited listener before serving and leaves with
    ``os._exit``. The parent closes its copy of the connection right away and
    reaps children from a SIGCHLD handler, collecting every exited child per
    notification. SIGCHLD is blocked while a fork is being registered so the
    handler never sees a pid before it is tracked.
    """
    strategy = "process"

    def __init__(self, handler: SessionHandler, listener: Listener):
        super().__init__(handler, listener)
        self._children: set[int] = set()
        self._previous_sigchld = None

    def start(self) -> None:
        if not hasattr(os, "fork"):
            raise RuntimeError("process concurrency requires os.fork()")
        self._previous_sigchld = signal.signal(signal.SIGCHLD, self._on_sigchld)

    def _on_sigchld(self, signum, frame):
        self.reap()

    def dispatch(self, conn: socket.socket, addr) -> bool:
        signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGCHLD})
        try:
            try:
                pid = os.fork()
            except OSError as exc:
                log.error(format_peer_event(addr, "dropped", f"cannot fork: {exc}"))
                _close_quietly(conn)
                return False
            if pid == 0:
                self._run_child(conn, addr)
            self._children.add(pid)
        finally:
            signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGCHLD})
        # The session process has its own copy; ours would keep the peer open.
        _close_quietly(conn)
        log.debug("session process %d started for %s", pid, format_peer(addr))
        return True

    def _run_child(self, conn: socket.socket, addr) -> None:
        status = 0
        try:
            self.listener.close_inherited()
            # Ctrl+C reaches the whole process group; sessions finish on their own.
            signal.signal(signal.SIGINT, signal.SIG_IGN)
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            signal.signal(signal.SIGCHLD, signal.SIG_DFL)
            signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGCHLD})
            self.handler.run(conn, addr)
        except Exception:
            status = 1
            log.error("Fatal error in session process", exc_info=True)
        finally:
            os._exit(status)

    def reap(self) -> int:
        reaped = 0
        while True:
            try:
                pid, _status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            self._children.discard(pid)
            reaped += 1
        return reaped

    def drain(self, timeout: Optional[float] = None) -> None:
        signal.signal(signal.SIGCHLD, self._previous_sigchld or signal.SIG_DFL)
        if timeout is None:
            for pid in list(self._children):
                try:
                    os.waitpid(pid, 0)
                except ChildProcessError:
                    pass
                self._children.discard(pid)
            return

        deadline = time.monotonic() + timeout
        while self._children and time.monotonic() < deadline:
            if not self.reap():
                time.sleep(0.05)

    @property
    def active(self) -> int:
        return len(self._children)


def make_dispatcher(
    concurrency: str,
    handler: SessionHandler,
    listener: Listener,
) -> Dispatcher:
    """Build the dispatcher for ``thread`` or ``process`` concurrency."""
    if concurrency == "thread":
        return ThreadDispatcher(handler, listener)
    if concurrency == "process":
        return ForkDispatcher(handler, listener)
    raise ValueError(
        f"Unknown concurrency mode: {concurrency!r}. "
        f"Expected one of {', '.join(CONCURRENCY_MODES)}"
    )
