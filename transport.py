"""
TCP transport for telemetry records.

Owns exactly one socket per Connection. Every socket-level failure is
converted into one of the types in errors.py before it leaves this module.
There is no read path: the collector's replies, if any, are never consumed.
"""
import logging
import socket
import threading

from errors import (
    CloseError,
    ConnectError,
    ConnectionRefused,
    ConnectTimeout,
    UnresolvableHost,
    WriteError,
)

logger = logging.getLogger(__name__)

LINE_TERMINATOR = '\n'
ENCODING = 'utf-8'


class Connection:
    """One live TCP stream to the collector."""

    def __init__(self, sock, host, port):
        self.sock = sock
        self.host = host
        self.port = port
        self.closed = False
        self.bytes_sent = 0
        self._write_lock = threading.Lock()

    @property
    def local_address(self):
        return self.sock.getsockname()[0]

    @property
    def remote_address(self):
        return self.sock.getpeername()[0]

    def __repr__(self):
        state = 'closed' if self.closed else 'open'
        return f"<Connection {self.host}:{self.port} {state}>"


class TcpTransport:
    def __init__(self, timeout=None):
        # None blocks until the OS gives up, which can be a long time.
        self.timeout = timeout

    def resolve(self, host, port):
        try:
            return socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            logger.error(f"Unknown host {host!r}: {e}")
            raise UnresolvableHost(f"Could not resolve {host!r}: {e}") from e

    def connect(self, host, port):
        """Resolve host and open a TCP stream. Returns a Connection."""
        addresses = self.resolve(host, port)
        error = ConnectError(f"No addresses for {host}:{port}")
        for family, socktype, proto, _, sockaddr in addresses:
            sock = socket.socket(family, socktype, proto)
            sock.settimeout(self.timeout)
            try:
                sock.connect(sockaddr)
            except socket.timeout as e:
                error = ConnectTimeout(f"Timed out connecting to {host}:{port} after {self.timeout}s")
                error.__cause__ = e
            except ConnectionRefusedError as e:
                error = ConnectionRefused(f"Connection refused by {host}:{port}")
                error.__cause__ = e
            except OSError as e:
                error = ConnectError(f"Could not connect to {host}:{port}: {e}")
                error.__cause__ = e
            else:
                sock.settimeout(None)
                logger.info(f"Connected to {host}:{port} ({sockaddr[0]})")
                return Connection(sock, host, port)
            sock.close()
            logger.debug(f"Connect attempt to {sockaddr} failed: {error}")

        logger.error(f"Socket error connecting to {host}:{port}: {error}")
        raise error

    def send(self, conn, record):
        """Write one record followed by a newline, immediately."""
        data = (record + LINE_TERMINATOR).encode(ENCODING)
        with conn._write_lock:
            if conn.closed:
                raise WriteError(f"{conn!r} is closed")
            try:
                conn.sock.sendall(data)
            except OSError as e:
                raise WriteError(f"Failed to write to {conn.host}:{conn.port}: {e}") from e
            conn.bytes_sent += len(data)

    def close(self, conn):
        with conn._write_lock:
            if conn.closed:
                raise CloseError(f"{conn!r} is already closed")
            conn.closed = True
            try:
                conn.sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                # The peer may already be gone; the close below still releases the fd.
                logger.debug(f"shutdown() on {conn!r} failed: {e}")
            try:
                conn.sock.close()
            except OSError as e:
                raise CloseError(f"Socket didn't close: {e}") from e
        logger.info(f"Closed connection to {conn.host}:{conn.port}")
