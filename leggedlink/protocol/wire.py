"""
Wire protocol for legged-driver control messages.

Every socket message carries exactly one Envelope, encoded as a msgpack array:

    [WIRE_VERSION, timestamp, device_type, device_id, message_type, payload, crc32]

- payload is a tagged array [MessageType.XXX, ...fields] (or nil)
- crc32 is CRC-32/IEEE over the same envelope encoded with crc32 = 0

Schema evolution: trailing envelope elements and payload fields added by newer
peers are dropped on decode but still covered by the inbound CRC check, which
runs over the frame as received. Payloads with an unknown tag are kept as
opaque msgspec.Raw so the receiver can skip them.
"""

import logging
import secrets
import time
from typing import Any, TypeAlias, Union

import msgspec

from .checksum import checksum
from .types import ControlMode, DeviceIdentity, DeviceType, MessageType, Mode
from ..errors import DecodeError, IntegrityError

logger = logging.getLogger(__name__)

WIRE_VERSION = 1

# Module-level encoder/decoder (thread-safe, reusable)
_encoder = msgspec.msgpack.Encoder()
_decoder = msgspec.msgpack.Decoder()

_NIL = b"\xc0"


# =============================================================================
# Geometry
# =============================================================================


class Vec3(msgspec.Struct, array_like=True, frozen=True):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class Quaternion(msgspec.Struct, array_like=True, frozen=True):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0


# =============================================================================
# Payload Structs - Tagged Union for single-pass decode
# Wire format: [MessageType.XXX, ...fields]
# =============================================================================


class Heartbeat(
    msgspec.Struct, tag=int(MessageType.HEARTBEAT), array_like=True, frozen=True
):
    """HEARTBEAT: [MessageType.HEARTBEAT, is_connected]"""

    is_connected: bool


class BatteryInfo(
    msgspec.Struct, tag=int(MessageType.BATTERY_INFO), array_like=True, frozen=True
):
    """BATTERY_INFO: [MessageType.BATTERY_INFO, level, voltage, current, temperature]"""

    level: int
    voltage: float = 0.0
    current: float = 0.0
    temperature: float = 0.0


class ModeSet(
    msgspec.Struct, tag=int(MessageType.MODE_SET), array_like=True, frozen=True
):
    """MODE_SET: [MessageType.MODE_SET, mode]"""

    mode: Mode


class ControlModeSet(
    msgspec.Struct, tag=int(MessageType.CONTROL_MODE_SET), array_like=True, frozen=True
):
    """CONTROL_MODE_SET: [MessageType.CONTROL_MODE_SET, mode]"""

    mode: ControlMode


class VelocityCommand(
    msgspec.Struct, tag=int(MessageType.VELOCITY_COMMAND), array_like=True, frozen=True
):
    """VELOCITY_COMMAND: [MessageType.VELOCITY_COMMAND, vx, vy, yaw_rate]"""

    vx: float
    vy: float
    yaw_rate: float


class CurrentMode(
    msgspec.Struct, tag=int(MessageType.CURRENT_MODE), array_like=True, frozen=True
):
    """CURRENT_MODE: [MessageType.CURRENT_MODE, mode]"""

    mode: Mode


class CurrentControlMode(
    msgspec.Struct,
    tag=int(MessageType.CURRENT_CONTROL_MODE),
    array_like=True,
    frozen=True,
):
    """CURRENT_CONTROL_MODE: [MessageType.CURRENT_CONTROL_MODE, mode]"""

    mode: ControlMode


class Odometry(
    msgspec.Struct, tag=int(MessageType.ODOMETRY), array_like=True, frozen=True
):
    """ODOMETRY: [MessageType.ODOMETRY, position, orientation, linear_vel, angular_vel]"""

    position: Vec3 = msgspec.field(default_factory=Vec3)
    orientation: Quaternion = msgspec.field(default_factory=Quaternion)
    linear_vel: Vec3 = msgspec.field(default_factory=Vec3)
    angular_vel: Vec3 = msgspec.field(default_factory=Vec3)


Payload: TypeAlias = Union[
    Heartbeat,
    BatteryInfo,
    ModeSet,
    ControlModeSet,
    VelocityCommand,
    CurrentMode,
    CurrentControlMode,
    Odometry,
]

PAYLOAD_TYPES: tuple[type, ...] = Payload.__args__  # type: ignore[attr-defined]

PAYLOAD_TO_MSGTYPE: dict[type, MessageType] = {
    cls: MessageType(cls.__struct_config__.tag) for cls in PAYLOAD_TYPES
}

_payload_decoder = msgspec.msgpack.Decoder(Payload)


# =============================================================================
# Envelope
# =============================================================================


class Envelope(msgspec.Struct, frozen=True):
    """
    One on-wire message.

    payload is a Payload struct, msgspec.Raw for a payload this client does not
    understand, or None. message_type is a MessageType, or a plain int when the
    sender uses a newer tag.
    """

    timestamp: int
    device_type: DeviceType
    device_id: str
    message_type: int
    payload: Any = None
    crc32: int = 0
    version: int = WIRE_VERSION

    @property
    def is_known(self) -> bool:
        """True when the payload decoded into one of this client's payload types."""
        return isinstance(self.payload, PAYLOAD_TYPES)


class _WireEnvelope(msgspec.Struct, array_like=True):
    """Decode-side view; payload stays raw until its tag has been checked."""

    version: int
    timestamp: int
    device_type: int
    device_id: str
    message_type: int
    payload: msgspec.Raw
    crc32: int


_wire_decoder = msgspec.msgpack.Decoder(_WireEnvelope)

# Verification view: every element kept verbatim
_frame_decoder = msgspec.msgpack.Decoder(list[msgspec.Raw])
_CRC_SLOT = 6
_ZERO_CRC = msgspec.Raw(_encoder.encode(0))


def monotonic_ms() -> int:
    """Monotonic clock in integer milliseconds (envelope timestamp)."""
    return time.monotonic_ns() // 1_000_000


def generate_device_id(device_type: DeviceType, prefix: str | None = None) -> str:
    """Return '<prefix>_<8 random hex>', prefix defaulting to the device type name."""
    if prefix is None:
        prefix = DeviceType(device_type).name.lower()
    return f"{prefix}_{secrets.token_hex(4)}"


def make_envelope(
    identity: DeviceIdentity, payload: Payload | None, timestamp: int | None = None
) -> Envelope:
    """Build an unsigned envelope; message_type is derived from the payload type."""
    if payload is None:
        message_type = MessageType.UNSPECIFIED
    else:
        try:
            message_type = PAYLOAD_TO_MSGTYPE[type(payload)]
        except KeyError:
            raise TypeError(f"Not a payload struct: {type(payload).__name__}") from None
    return Envelope(
        timestamp=monotonic_ms() if timestamp is None else timestamp,
        device_type=identity.device_type,
        device_id=identity.device_id,
        message_type=message_type,
        payload=payload,
    )


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to msgpack bytes."""
    return _encoder.encode(
        (
            envelope.version,
            envelope.timestamp,
            int(envelope.device_type),
            envelope.device_id,
            int(envelope.message_type),
            envelope.payload,
            envelope.crc32 & 0xFFFFFFFF,
        )
    )


def _decode_payload(raw: msgspec.Raw, message_type: int) -> Any:
    data = bytes(raw)
    if data == _NIL:
        return None
    try:
        payload = _payload_decoder.decode(data)
    except msgspec.ValidationError as e:
        head = _decoder.decode(data)
        tag = head[0] if isinstance(head, list) and head else None
        if isinstance(tag, int) and not isinstance(tag, bool) and tag not in _KNOWN_TAGS:
            # Newer payload variant: keep verbatim so the CRC still matches
            return raw
        raise DecodeError(f"Invalid payload: {e}") from e
    expected = PAYLOAD_TO_MSGTYPE[type(payload)]
    if expected != message_type:
        raise DecodeError(
            f"Payload {type(payload).__name__} does not match message_type {message_type}"
        )
    return payload


_KNOWN_TAGS = frozenset(int(t) for t in PAYLOAD_TO_MSGTYPE.values())


def decode(data: bytes | bytearray | memoryview) -> Envelope:
    """
    Decode msgpack bytes into an Envelope.

    Raises:
        DecodeError: On malformed/truncated input, unknown device type, or a
            known payload that contradicts message_type.
    """
    try:
        wire = _wire_decoder.decode(data)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        raise DecodeError(f"Malformed envelope: {e}") from e

    try:
        device_type = DeviceType(wire.device_type)
    except ValueError:
        raise DecodeError(f"Unknown device_type {wire.device_type}") from None

    try:
        message_type: int = MessageType(wire.message_type)
    except ValueError:
        message_type = wire.message_type

    try:
        payload = _decode_payload(wire.payload, message_type)
    except msgspec.DecodeError as e:
        raise DecodeError(f"Malformed payload: {e}") from e

    return Envelope(
        timestamp=wire.timestamp,
        device_type=device_type,
        device_id=wire.device_id,
        message_type=message_type,
        payload=payload,
        crc32=wire.crc32,
        version=wire.version,
    )


def compute_crc(envelope: Envelope) -> int:
    """CRC-32 of the envelope serialized with crc32 = 0."""
    return checksum(encode(msgspec.structs.replace(envelope, crc32=0)))


def frame_crc(data: bytes | bytearray | memoryview) -> int:
    """
    CRC-32 of a received frame with its trailer slot zeroed.

    Works on the elements as they arrived (unknown trailing elements and payload
    fields included), so frames from newer peers verify even though decode()
    drops what it does not understand.

    Raises:
        DecodeError: If data is not a msgpack array with a trailer slot.
    """
    try:
        items = _frame_decoder.decode(data)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        raise DecodeError(f"Malformed envelope: {e}") from e
    if len(items) <= _CRC_SLOT:
        raise DecodeError(f"Envelope has {len(items)} elements, expected at least 7")
    items[_CRC_SLOT] = _ZERO_CRC
    return checksum(_encoder.encode(items))


def sign(envelope: Envelope) -> Envelope:
    """Return a copy of envelope with its crc32 trailer filled in."""
    return msgspec.structs.replace(envelope, crc32=compute_crc(envelope))


def verify(envelope: Envelope) -> bool:
    """Recompute the checksum and compare with the stored trailer. Never raises."""
    expected = compute_crc(envelope)
    if expected != envelope.crc32:
        logger.warning(
            "CRC32 mismatch from %s: stored=0x%08X computed=0x%08X",
            envelope.device_id,
            envelope.crc32 & 0xFFFFFFFF,
            expected,
        )
        return False
    return True


def open_frame(data: bytes | bytearray | memoryview) -> Envelope:
    """
    Decode and verify one inbound frame.

    The checksum is taken over the bytes as received (see frame_crc), not over
    the decoded Envelope, which may have dropped fields this build does not know.

    Raises:
        DecodeError: Frame is malformed.
        IntegrityError: Frame decoded but its CRC does not match.
    """
    envelope = decode(data)
    expected = frame_crc(data)
    if expected != envelope.crc32 & 0xFFFFFFFF:
        logger.warning(
            "CRC32 mismatch from %s: stored=0x%08X computed=0x%08X",
            envelope.device_id,
            envelope.crc32 & 0xFFFFFFFF,
            expected,
        )
        raise IntegrityError(expected=expected, actual=envelope.crc32)
    return envelope


def pack_frame(identity: DeviceIdentity, payload: Payload | None) -> bytes:
    """Build, sign and encode an outbound frame."""
    return encode(sign(make_envelope(identity, payload)))


def describe(envelope: Envelope) -> str:
    """Short human-readable form for logs."""
    if isinstance(envelope.message_type, MessageType):
        kind = envelope.message_type.name
    else:
        kind = f"UNKNOWN({envelope.message_type})"
    return f"{kind} from {envelope.device_type.name}:{envelope.device_id}"


__all__ = [
    "WIRE_VERSION",
    "Vec3",
    "Quaternion",
    "Heartbeat",
    "BatteryInfo",
    "ModeSet",
    "ControlModeSet",
    "VelocityCommand",
    "CurrentMode",
    "CurrentControlMode",
    "Odometry",
    "Payload",
    "PAYLOAD_TYPES",
    "PAYLOAD_TO_MSGTYPE",
    "Envelope",
    "monotonic_ms",
    "generate_device_id",
    "make_envelope",
    "encode",
    "decode",
    "compute_crc",
    "frame_crc",
    "sign",
    "verify",
    "open_frame",
    "pack_frame",
    "describe",
]
