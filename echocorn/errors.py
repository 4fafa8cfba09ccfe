"""
echocorn/errors.py - Exception types shared by the server and the client.
"""


class EchoError(Exception):
    """Base class for every error raised by echocorn."""


class ArgumentError(EchoError):
    """Raised when the command line cannot be parsed."""


class BindError(EchoError):
    """Raised when no local address could be bound or listened on."""


class ConnectError(EchoError):
    """Raised when the client cannot reach any resolved peer address."""
    def __init__(self, host: str, port: int, detail: str = ""):
        self.host = host
        self.port = port
        self.detail = detail
        super().__init__(f"could not connect to {host}:{port}: {detail}")


class FatalIOError(EchoError):
    """
    A read, write or accept failed for a reason other than an interrupted
    system call. Ends the current session (or client loop) only.
    """
    def __init__(self, op: str, cause: OSError):
        self.op = op
        self.cause = cause
        super().__init__(f"{op} failed: {cause}")
