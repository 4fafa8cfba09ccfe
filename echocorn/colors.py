"""
echocorn/colors.py - Colorized logging and formatting utilities.
Provides:
    - Per-level colored log prefixes (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - Per-peer session event lines (connected, disconnected, error, ...)
    - Startup banner helpers
Colors are only emitted when the diagnostic stream is a terminal.
"""

import logging
import sys
import datetime

# ── ANSI escape codes ───────────────────────────────────────────────────────

def _supports_color(stream=None) -> bool:
    """Return True if *stream* (stderr by default) is an interactive terminal."""
    stream = stream if stream is not None else sys.stderr
    return hasattr(stream, "isatty") and stream.isatty()


USE_COLOR = _supports_color()


def set_color(enabled: bool) -> None:
    """Force color output on or off (used by ``--no-color``)."""
    global USE_COLOR
    USE_COLOR = enabled


class _ANSI:
    """ANSI escape code constants."""
    RESET      = "\033[0m"
    BOLD       = "\033[1m"
    DIM        = "\033[2m"

    RED        = "\033[31m"
    GREEN      = "\033[32m"
    YELLOW     = "\033[33m"
    BLUE       = "\033[34m"
    MAGENTA    = "\033[35m"
    CYAN       = "\033[36m"
    WHITE      = "\033[37m"

    BRIGHT_GREEN   = "\033[92m"
    BRIGHT_CYAN    = "\033[96m"

    BG_RED     = "\033[41m"


def _c(code: str, text: str) -> str:
    """Wrap *text* with ANSI *code* only when color is supported."""
    if not USE_COLOR:
        return text
    return f"{code}{text}{_ANSI.RESET}"


# ── Log level styling ───────────────────────────────────────────────────────

_LEVEL_COLORS = {
    "DEBUG":    _ANSI.DIM + _ANSI.CYAN,
    "INFO":     _ANSI.GREEN,
    "WARNING":  _ANSI.YELLOW,
    "ERROR":    _ANSI.BOLD + _ANSI.RED,
    "CRITICAL": _ANSI.BOLD + _ANSI.WHITE + _ANSI.BG_RED,
}

class ColorFormatter(logging.Formatter):
    """
    A logging formatter that applies uvicorn-style colors to log output.

    Format:  ``LEVEL    [pid] message``
    - LEVEL is colored per severity
    - the pid is shown so forked sessions can be told apart
    - Timestamps are shown in DEBUG mode
    """

    def __init__(self, show_timestamp: bool = False):
        super().__init__()
        self.show_timestamp = show_timestamp

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if USE_COLOR:
            color = _LEVEL_COLORS.get(levelname, "")
            colored_level = f"{color}{levelname:<8}{_ANSI.RESET}"
        else:
            colored_level = f"{levelname:<8}"

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        pid = _c(_ANSI.DIM, f"[{record.process}]")

        if self.show_timestamp:
            ts = datetime.datetime.fromtimestamp(record.created).strftime(
                "%Y-%m-%d %H:%M:%S"
            )
            dim_ts = _c(_ANSI.DIM, ts)
            return f"{colored_level} {dim_ts} {pid} {message}"

        return f"{colored_level} {pid} {message}"


# ── Peer event formatting ──────────────────────────────────────────────────

_PEER_EVENT_COLORS = {
    "connected":    _ANSI.BRIGHT_GREEN,
    "disconnected": _ANSI.YELLOW,
    "error":        _ANSI.BOLD + _ANSI.RED,
    "dropped":      _ANSI.BOLD + _ANSI.RED,
}

_PEER_EVENT_BADGES = {
    "connected":    "[+]",
    "disconnected": "[-]",
    "error":        "[!]",
    "dropped":      "[!]",
}


def format_peer(addr) -> str:
    """
    Render a socket address as numeric ``host:port``.
    IPv6 hosts are bracketed and IPv4-mapped addresses are unwrapped.
    """
    if not addr:
        return "unknown"
    if isinstance(addr, str):
        return addr
    host, port = addr[0], addr[1]
    if host.startswith("::ffff:") and "." in host:
        host = host[len("::ffff:"):]
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}"


def format_peer_event(addr, event: str, detail: str = "") -> str:
    """
    Format a per-peer session event line.

    Example output:
        [+] client connected: 127.0.0.1:51234
        [-] client disconnected: 127.0.0.1:51234 (12 bytes echoed)
    """
    badge = _c(_PEER_EVENT_COLORS.get(event, ""), _PEER_EVENT_BADGES.get(event, "[*]"))
    peer = _c(_ANSI.BOLD, format_peer(addr))
    line = f"{badge} client {event}: {peer}"
    if detail:
        line += " " + _c(_ANSI.DIM, f"({detail})")
    return line


# ── Startup banner helpers ──────────────────────────────────────────────────

def format_banner_line(label: str, value: str) -> str:
    """Format a key-value line for the startup banner."""
    colored_label = _c(_ANSI.DIM, f"  {label:<12}")
    return f"{colored_label} {value}"


def format_banner_title(name: str, version: str) -> str:
    """Format the main title line of the startup banner."""
    return _c(_ANSI.BOLD + _ANSI.BRIGHT_CYAN, f"  {name}") + " " + _c(_ANSI.DIM, f"v{version}")


def format_banner_separator() -> str:
    """Return a dim horizontal separator for the banner."""
    return _c(_ANSI.DIM, "  " + "─" * 40)


def format_banner_tag(text: str, color: str = _ANSI.CYAN) -> str:
    """Format a tag/badge in the banner (e.g., thread, process, reload)."""
    return _c(_ANSI.BOLD + color, text)
