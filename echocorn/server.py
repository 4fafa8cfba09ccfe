"""
echocorn/server.py - Echo server core.
Binds a listener, accepts connections and hands each one to a session running
in its own thread or forked process. Shutdown only stops new accepts; sessions
already running are allowed to finish.
"""

import os
import logging
import threading
from typing import Optional

from echocorn.colors import format_peer
from echocorn.dispatch import Dispatcher, make_dispatcher
from echocorn.errors import BindError
from echocorn.listener import (
    BACKLOG,
    ListenEndpoint,
    Listener,
    ShutdownToken,
    open_listener,
)
from echocorn.session import make_handler

# Default Configuration
DEFAULT_PORT = 5000
DEFAULT_PROTOCOL = "raw"
DEFAULT_CONCURRENCY = "thread"

# Module-level logger (configured by CLI or calling code)
log = logging.getLogger("echocorn")


class EchoServer:
    """
    A configurable echo server instance.
    Attributes:
        port: Bind port (0 picks a free one)
        host: Bind address, or None for every local address
        protocol: ``raw`` or ``line``
        concurrency: ``thread`` or ``process``
        endpoint: The bound ListenEndpoint once started
        started: Event set once the server is listening
    """
    def __init__(
        self,
        port: int = DEFAULT_PORT,
        host: Optional[str] = None,
        protocol: str = DEFAULT_PROTOCOL,
        concurrency: str = DEFAULT_CONCURRENCY,
        backlog: int = BACKLOG,
    ):
        self.port = port
        self.host = host
        self.protocol = protocol
        self.concurrency = concurrency
        self.backlog = backlog
        self.handler = make_handler(protocol)
        self.token = ShutdownToken()
        self.started = threading.Event()
        self.endpoint: Optional[ListenEndpoint] = None
        self.listener: Optional[Listener] = None
        self.dispatcher: Optional[Dispatcher] = None

    def signal_exit(self):
        """Signal the server to stop accepting new connections."""
        self.token.request()

    def start(self) -> ListenEndpoint:
        """Bind and listen. Raises BindError on failure."""
        try:
            self.endpoint = open_listener(self.port, self.host, self.backlog)
        except BindError as e:
            log.error("Failed to bind to port %s - %s", self.port, e)
            raise
        self.listener = Listener(self.endpoint, self.token)
        try:
            self.dispatcher = make_dispatcher(self.concurrency, self.handler, self.listener)
            self.dispatcher.start()
        except Exception:
            self.listener.stop()
            self.token.close()
            raise

        log.info("Started server process [%d]", os.getpid())
        log.info(
            "[*] listening on %s (%s echo, %s per connection) ... (Ctrl+C to stop)",
            format_peer((self.endpoint.host, self.endpoint.port)),
            self.protocol, self.concurrency,
        )
        self.started.set()
        return self.endpoint

    def serve(self):
        """Accept connections in a blocking loop until shutdown is requested."""
        if self.listener is None:
            self.start()

        try:
            while True:
                accepted = self.listener.accept()
                if accepted is None:
                    break
                conn, addr = accepted
                self.dispatcher.dispatch(conn, addr)
                # The session owns the socket now.
                del conn
        finally:
            self.shutdown()

    def shutdown(self, timeout: Optional[float] = None):
        """Stop accepting and wait for in-flight sessions to complete."""
        self.token.request()
        if self.listener is None:
            # never listened; only the token's socketpair is open
            self.token.close()
            return
        if self.listener.closed:
            return
        log.info("[*] shutting down listener")
        self.listener.stop()
        if self.dispatcher.active:
            log.info("Waiting for %d session(s) to finish", self.dispatcher.active)
        self.dispatcher.drain(timeout)
        self.token.close()
        log.info("Server stopped")


def serve(
    port: int = DEFAULT_PORT,
    protocol: str = DEFAULT_PROTOCOL,
    concurrency: str = DEFAULT_CONCURRENCY,
    host: Optional[str] = None,
):
    """
    Run an echo server in the foreground.
    Args:
        port: Port number to bind to
        protocol: ``raw`` for byte echo, ``line`` for upper-cased line echo
        concurrency: ``thread`` or ``process`` per connection
        host: Address to bind to (all local addresses by default)
    """
    server = EchoServer(port, host, protocol, concurrency)
    server.serve()


def run(server: EchoServer) -> threading.Thread:
    """
    Serve an already configured EchoServer from a background thread.
    Only ``thread`` concurrency works this way, since SIGCHLD handlers belong
    to the main thread. Binds in the calling thread, so BindError surfaces
    here, and returns once the server is listening.
    """
    server.start()
    worker = threading.Thread(target=server.serve, name="echocorn-server", daemon=True)
    worker.start()
    return worker
