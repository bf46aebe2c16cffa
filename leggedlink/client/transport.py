"""
TCP message transport for the control link.

TCP is a byte stream, so each message is delimited by a 4-byte big-endian
length header (the job ZMTP framing does for a DEALER socket). The socket is
non-blocking: poll() returns whatever complete messages have arrived and
send() never waits for buffer space.

Frame format:
  +------------------+------------------------+
  | Length (4B BE)   | Envelope (N bytes)     |
  +------------------+------------------------+
"""

from __future__ import annotations

import logging
import socket
import struct
import threading

from ..config import CONNECT_TIMEOUT_S, MAX_FRAME_SIZE, RECV_CHUNK_SIZE
from ..errors import TransportError

logger = logging.getLogger(__name__)

_HEADER = struct.Struct(">I")
HEADER_SIZE = _HEADER.size


def frame_message(payload: bytes, max_size: int = MAX_FRAME_SIZE) -> bytes:
    """Prefix payload with its length header."""
    if len(payload) > max_size:
        raise TransportError(f"Message {len(payload)} bytes exceeds max {max_size}")
    return _HEADER.pack(len(payload)) + payload


class MessageReassembler:
    """Accumulates stream bytes and yields complete length-delimited messages."""

    def __init__(self, max_size: int = MAX_FRAME_SIZE) -> None:
        self.max_size = max_size
        self._buf = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        """
        Append data and extract every complete message, in arrival order.

        Raises:
            TransportError: If a header announces a message larger than max_size
                (the stream can no longer be trusted).
        """
        self._buf += data
        out: list[bytes] = []
        while len(self._buf) >= HEADER_SIZE:
            (length,) = _HEADER.unpack_from(self._buf, 0)
            if length > self.max_size:
                raise TransportError(
                    f"Frame length {length} exceeds max {self.max_size}"
                )
            end = HEADER_SIZE + length
            if len(self._buf) < end:
                break
            out.append(bytes(self._buf[HEADER_SIZE:end]))
            del self._buf[:end]
        return out

    def clear(self) -> None:
        self._buf.clear()

    @property
    def pending(self) -> int:
        return len(self._buf)


class TcpTransport:
    """
    Manages one TCP connection carrying length-delimited messages.

    This class handles:
    - Connecting with a bounded timeout
    - Non-blocking receive with message reassembly
    - Non-blocking send with completion of partially written messages

    poll() is meant for a single reader thread and send()/flush() for a single
    writer thread; close() may be called from any thread.
    """

    def __init__(
        self,
        host: str,
        port: int,
        connect_timeout: float = CONNECT_TIMEOUT_S,
        max_frame_size: int = MAX_FRAME_SIZE,
    ) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.max_frame_size = max_frame_size
        self.socket: socket.socket | None = None
        self._rx = MessageReassembler(max_frame_size)
        self._tx_pending = b""
        self._close_lock = threading.Lock()
        self.bytes_sent = 0
        self.bytes_received = 0

    @classmethod
    def from_socket(
        cls, sock: socket.socket, max_frame_size: int = MAX_FRAME_SIZE
    ) -> "TcpTransport":
        """Wrap an already connected socket (e.g. one returned by accept())."""
        host, port = sock.getpeername()[:2]
        transport = cls(host, port, max_frame_size=max_frame_size)
        sock.setblocking(False)
        transport.socket = sock
        return transport

    def open(self) -> None:
        """
        Connect to host:port.

        Raises:
            TransportError: If the endpoint is unreachable or refuses the connection.
        """
        try:
            sock = socket.create_connection(
                (self.host, self.port), timeout=self.connect_timeout
            )
        except OSError as e:
            raise TransportError(
                f"Cannot connect to {self.host}:{self.port}: {e}"
            ) from e
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass  # Not supported on every platform
        sock.setblocking(False)
        self.socket = sock
        logger.info(f"TCP transport connected to {self.host}:{self.port}")

    def close(self) -> None:
        """Close the socket. Idempotent."""
        with self._close_lock:
            sock, self.socket = self.socket, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Peer already gone
        try:
            sock.close()
            logger.info(f"TCP transport to {self.host}:{self.port} closed")
        except OSError as e:
            logger.error(f"Error closing TCP socket: {e}")
        self._tx_pending = b""
        self._rx.clear()

    @property
    def is_open(self) -> bool:
        return self.socket is not None

    def _require_socket(self) -> socket.socket:
        sock = self.socket
        if sock is None:
            raise TransportError("Transport is closed")
        return sock

    def poll(self, max_reads: int = 16) -> list[bytes]:
        """
        Non-blocking receive.

        Returns:
            Complete messages received so far, oldest first (possibly empty).

        Raises:
            TransportError: On socket error or orderly shutdown by the peer.
        """
        sock = self._require_socket()
        messages: list[bytes] = []
        for _ in range(max_reads):
            try:
                chunk = sock.recv(RECV_CHUNK_SIZE)
            except (BlockingIOError, InterruptedError):
                break
            except OSError as e:
                raise TransportError(f"Receive failed: {e}") from e
            if not chunk:
                if messages:
                    # Deliver what arrived; the next poll reports the close
                    break
                raise TransportError("Connection closed by peer")
            self.bytes_received += len(chunk)
            messages.extend(self._rx.feed(chunk))
        return messages

    def flush(self) -> bool:
        """
        Try to write the unsent tail of a previous message.

        Returns:
            True if nothing is pending afterwards.
        """
        if not self._tx_pending:
            return True
        sock = self._require_socket()
        try:
            n = sock.send(self._tx_pending)
        except (BlockingIOError, InterruptedError):
            return False
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e
        self.bytes_sent += n
        self._tx_pending = self._tx_pending[n:]
        return not self._tx_pending

    def send(self, message: bytes) -> bool:
        """
        Non-blocking send of one message.

        Returns:
            True if the message was handed to the socket (a tail may still be
            pending and is completed by later send()/flush() calls); False if
            the socket buffer is full and nothing was written.

        Raises:
            TransportError: On socket error or oversized message.
        """
        if not self.flush():
            return False
        data = frame_message(message, self.max_frame_size)
        sock = self._require_socket()
        try:
            n = sock.send(data)
        except (BlockingIOError, InterruptedError):
            return False
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e
        self.bytes_sent += n
        if n < len(data):
            self._tx_pending = data[n:]
        return True

    def get_info(self) -> dict:
        """
        Get information about the current connection.

        Returns:
            Dictionary with connection information
        """
        info = {
            "host": self.host,
            "port": self.port,
            "open": self.is_open,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "tx_pending": len(self._tx_pending),
            "rx_pending": self._rx.pending,
        }
        sock = self.socket
        if sock is not None:
            try:
                info["local_address"] = sock.getsockname()
            except OSError as e:
                logger.debug("Failed to get TCP sockname: %s", e)
        return info
