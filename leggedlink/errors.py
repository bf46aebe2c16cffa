"""
Error taxonomy for the control link.

Per-frame errors (CodecError, IntegrityError) are recovered inside the
receive task. Connection-level errors (TransportError exhaustion,
LivenessTimeout) end in a ConnectionState transition and never propagate to
the pilot thread. ProtocolViolation is reported to the caller as a False
return value.
"""


class LinkError(Exception):
    """Base exception for leggedlink errors"""


class TransportError(LinkError):
    """Socket connect/send/recv failure"""


class CodecError(LinkError):
    """Bytes could not be turned into an Envelope (or vice versa)"""


class DecodeError(CodecError):
    """Malformed or truncated frame"""


class IntegrityError(LinkError):
    """CRC32 mismatch on an otherwise well-formed frame"""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"CRC32 mismatch: stored=0x{actual:08X} computed=0x{expected:08X}"
        )


class ProtocolViolation(LinkError):
    """Operation not permitted for this device identity"""


class LivenessTimeout(LinkError):
    """No inbound heartbeat within the response window"""

    def __init__(self, elapsed_s: float, timeout_s: float):
        self.elapsed_s = elapsed_s
        self.timeout_s = timeout_s
        super().__init__(
            f"No server heartbeat for {elapsed_s:.3f}s (limit {timeout_s:.3f}s)"
        )
