"""
echocorn/cli.py - Command-line interface for the echo server and client.
Provides the ``echocorn`` server command (with optional auto-reload) and the
``echocorn-client`` interactive client.
"""
import argparse
import sys
import os
import signal
import time
import logging
import threading
import subprocess
from pathlib import Path
from typing import Optional

from echocorn import __version__
from echocorn.client import run_client
from echocorn.colors import (
    ColorFormatter,
    set_color,
    format_banner_line,
    format_banner_separator,
    format_banner_tag,
    format_banner_title,
    _ANSI,
)
from echocorn.dispatch import CONCURRENCY_MODES
from echocorn.errors import ArgumentError, BindError, ConnectError, FatalIOError
from echocorn.listener import BACKLOG
from echocorn.server import EchoServer, DEFAULT_CONCURRENCY, DEFAULT_PROTOCOL
from echocorn.session import PROTOCOLS

# Valid log level names (for CLI validation)
LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Configure logging with nice formatting
def setup_logging(level: int = logging.INFO, color: Optional[bool] = None):
    """Send echocorn diagnostics to stderr through the colored formatter."""
    if color is not None:
        set_color(color)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter(show_timestamp=level <= logging.DEBUG))
    logger = logging.getLogger("echocorn")
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False
    return logger


log = logging.getLogger("echocorn")


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that raises ArgumentError instead of exiting with 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        raise ArgumentError(f"{self.prog}: error: {message}")


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {number}")
    return number


# Reload supervisor using watchdog

class ReloadManager:
    """
    Runs the server in a child process and replaces it when Python files
    under the working directory change.

    The child gets its own session so a terminal Ctrl+C reaches only this
    supervisor, which forwards it as SIGTERM. Shutdown and restart both let
    the child drain its sessions; nothing is ever killed. A second shutdown
    signal is forwarded as well, which makes the child stop waiting.

    If the child exits without being asked to (a bind failure, a fatal
    accept error), its exit code becomes ours.
    """

    EXCLUDE_PATTERNS = {
        "__pycache__",
        ".git",
        "venv",
        ".venv",
        ".tox",
        "*.egg-info",
        "build",
        ".pytest_cache",
    }

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.process: Optional[subprocess.Popen] = None
        self.should_exit = False
        self._lock = threading.Lock()

    def _should_watch_path(self, path: str) -> bool:
        """Check if a path should be watched (not in excluded directories)."""
        for part in Path(path).parts:
            if part in self.EXCLUDE_PATTERNS:
                return False
            for pattern in self.EXCLUDE_PATTERNS:
                if "*" in pattern and part.endswith(pattern.replace("*", "")):
                    return False
        return True

    def _build_subprocess_args(self) -> list[str]:
        """Build the command line that runs the server without --reload."""
        args = [
            sys.executable, "-m", "echocorn",
            str(self.args.port),
            "--protocol", self.args.protocol,
            "--concurrency", self.args.concurrency,
            "--backlog", str(self.args.backlog),
            "--log-level", self.args.log_level,
        ]
        if self.args.host is not None:
            args += ["--host", self.args.host]
        if self.args.no_color:
            args.append("--no-color")
        return args

    def _signal_child(self, signum: int) -> None:
        process = self.process
        if process is not None and process.poll() is None:
            process.send_signal(signum)

    def start_server(self) -> None:
        log.info("Starting server subprocess...")
        self.process = subprocess.Popen(
            self._build_subprocess_args(),
            stdout=sys.stdout,
            stderr=sys.stderr,
            start_new_session=True,
        )

    def stop_server(self) -> int:
        """Ask the child to shut down and wait for its sessions to drain."""
        process = self.process
        if process is None:
            return 0
        if process.poll() is None:
            log.info("Stopping server subprocess [%d], waiting for its sessions", process.pid)
            process.send_signal(signal.SIGTERM)
        return process.wait()

    def restart_server(self, reason: str) -> None:
        with self._lock:
            if self.should_exit:
                return
            log.info("Detected %s, restarting server...", reason)
            self.stop_server()
            self.start_server()

    def _exited_on_its_own(self) -> Optional[int]:
        with self._lock:
            if self.process is None:
                return None
            return self.process.poll()

    def run_with_reload(self) -> int:
        """Supervise the server; returns the exit status for ``main``."""
        from watchdog.observers import Observer
        from watchdog.events import FileSystemEventHandler

        manager = self

        class PythonFileHandler(FileSystemEventHandler):
            debounce_seconds = 0.5

            def __init__(self):
                self.last_reload = 0.0

            def on_any_event(self, event):
                if event.is_directory:
                    return
                src_path = os.fsdecode(getattr(event, "src_path", ""))
                if not src_path.endswith(".py") or not manager._should_watch_path(src_path):
                    return
                now = time.monotonic()
                if now - self.last_reload < self.debounce_seconds:
                    return
                self.last_reload = now
                event_type = type(event).__name__.replace("Event", "").lower()
                manager.restart_server(f"{event_type}: {src_path}")

        def signal_handler(signum, frame):
            if self.should_exit:
                log.warning("Second shutdown signal, server will not wait for sessions")
                self._signal_child(signal.SIGTERM)
                return
            log.info("Received shutdown signal")
            self.should_exit = True

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        watch_path = os.getcwd()
        observer = Observer()
        observer.schedule(PythonFileHandler(), watch_path, recursive=True)

        with self._lock:
            self.start_server()
        observer.start()
        log.info("Watching for file changes in: %s", watch_path)

        try:
            while not self.should_exit:
                code = self._exited_on_its_own()
                if code is not None:
                    log.log(logging.ERROR if code else logging.INFO, "Server exited with code %d", code)
                    return code
                time.sleep(0.1)
            with self._lock:
                return self.stop_server()
        finally:
            observer.stop()
            observer.join()
            log.info("Shutdown complete")


# Direct server runner (no reload)

def run_server_direct(args: argparse.Namespace) -> int:
    """Run the server in the current process (no reload)."""
    server = EchoServer(
        port=args.port,
        host=args.host,
        protocol=args.protocol,
        concurrency=args.concurrency,
        backlog=args.backlog,
    )

    def signal_handler(signum, frame):
        if server.token.requested:
            log.warning("Second shutdown signal, not waiting for sessions")
            raise KeyboardInterrupt
        log.info("Received shutdown signal")
        server.signal_exit()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        server.start()
        server.serve()
    except BindError:
        return 1
    except (FatalIOError, OSError) as e:
        log.error("Server error: %s", e)
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted")
    finally:
        server.shutdown()
    return 0


def print_banner(args: argparse.Namespace) -> None:
    """Startup banner, written to stderr so stdout stays clean."""
    lines = [
        format_banner_title("echocorn", __version__),
        format_banner_separator(),
        format_banner_line("Port", str(args.port)),
        format_banner_line("Host", args.host or "* (all addresses)"),
        format_banner_line("Protocol", format_banner_tag(args.protocol)),
        format_banner_line("Sessions", format_banner_tag(f"one {args.concurrency} each", _ANSI.MAGENTA)),
    ]
    if args.reload:
        lines.append(format_banner_line("Reload", format_banner_tag("enabled", _ANSI.YELLOW)))
    print("\n".join(lines) + "\n", file=sys.stderr)


# CLI Entry Points

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the server CLI."""
    parser = _Parser(
        prog="echocorn",
        description="echocorn - a TCP echo server with thread or process sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  echocorn 5000                             Echo raw bytes on port 5000
  echocorn 5000 --protocol line             Echo each line in upper case
  echocorn 5000 --concurrency process       Fork one process per client
  echocorn 5000 --reload                    Restart on code changes
        """,
    )

    parser.add_argument(
        "port",
        metavar="PORT",
        type=_port,
        help="TCP port to listen on (0 picks a free port)",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Bind only this address (default: every local address)",
    )

    parser.add_argument(
        "--protocol",
        choices=PROTOCOLS,
        default=DEFAULT_PROTOCOL,
        help=f"raw byte echo or upper-cased line echo (default: {DEFAULT_PROTOCOL})",
    )

    parser.add_argument(
        "--concurrency",
        choices=CONCURRENCY_MODES,
        default=DEFAULT_CONCURRENCY,
        help=f"run each session in a thread or a forked process (default: {DEFAULT_CONCURRENCY})",
    )

    parser.add_argument(
        "--backlog",
        type=_positive_int,
        default=BACKLOG,
        help=f"pending-connection queue depth (default: {BACKLOG})",
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        default=False,
        help="Enable auto-reload on code changes (development mode)",
    )

    _add_common_arguments(parser)
    return parser


def create_client_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the interactive client."""
    parser = _Parser(
        prog="echocorn-client",
        description="Send standard input to an echo server and print the replies",
    )
    parser.add_argument("host", metavar="HOST", help="server host name or address")
    parser.add_argument("port", metavar="PORT", type=_port, help="server port")
    _add_common_arguments(parser)
    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=LOG_LEVELS.keys(),
        help="Set the log level (default: info)",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored log output",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )


def _parse(parser: argparse.ArgumentParser, args: Optional[list[str]]):
    try:
        return parser.parse_args(args)
    except ArgumentError as e:
        print(e, file=sys.stderr)
        return None


def main(args: Optional[list[str]] = None) -> int:
    """Server entry point."""
    parsed_args = _parse(create_parser(), args)
    if parsed_args is None:
        return 1

    setup_logging(LOG_LEVELS[parsed_args.log_level], False if parsed_args.no_color else None)
    print_banner(parsed_args)

    if parsed_args.reload:
        return ReloadManager(parsed_args).run_with_reload()
    return run_server_direct(parsed_args)


def client_main(args: Optional[list[str]] = None) -> int:
    """Client entry point."""
    parsed_args = _parse(create_client_parser(), args)
    if parsed_args is None:
        return 1
    if parsed_args.port == 0:
        print("echocorn-client: error: port must be between 1 and 65535", file=sys.stderr)
        return 1

    setup_logging(LOG_LEVELS[parsed_args.log_level], False if parsed_args.no_color else None)

    try:
        reason = run_client(parsed_args.host, parsed_args.port)
    except ConnectError as e:
        log.error("connect: %s", e)
        return 1
    except FatalIOError as e:
        log.error("connection lost: %s", e)
        return 0
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 0
    log.info("Exiting: %s", reason)
    return 0


if __name__ == "__main__":
    sys.exit(main())
