"""
echocorn - A small TCP echo server and interactive client.

The server echoes raw bytes or upper-cased lines back to each client, running
every session in its own thread or forked process. The client relays standard
input to the server and prints the replies, half-closing the connection when
input ends.
"""

__version__ = "0.1.0"
__all__ = ["EchoServer", "serve", "run", "run_client", "InteractiveClient"]

from echocorn.server import EchoServer, serve, run
from echocorn.client import InteractiveClient, run_client
