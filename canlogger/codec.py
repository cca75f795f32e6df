"""
Wire codec for CAN frames carried in 64-byte HID reports.

Report layout (little-endian):
    [0..3] : raw identifier; bit 31 set for extended (29-bit) frames
    [4]    : DLC
    [5..]  : data bytes, DLC of them; remainder of the report is reserved/zero

Decoding never reads past the populated prefix; truncated transfers yield fewer data bytes
than the declared DLC. Malformed identifiers degrade to zero instead of failing.
"""

from __future__ import annotations

import logging
import re
import struct
import unittest
from dataclasses import dataclass
from enum import Enum, auto

from canlogger.model import CAN_EFF_FLAG, CAN_EFF_MASK, CAN_SFF_MASK, CanFrame, Direction, FrameKind, id_mask

REPORT_BYTES = 64
HEADER_BYTES = 5

_ID_WIDTH = {FrameKind.STANDARD: 3, FrameKind.EXTENDED: 8}
_BYTE_TOKEN = re.compile(r"[0-9A-Fa-f]{1,2}")

__all__ = [
    "CodecError",
    "CodecErrorKind",
    "REPORT_BYTES",
    "decode",
    "encode",
    "format_data",
    "format_id",
    "pad_report",
    "parse_byte_string",
    "render_id",
]

LOGGER = logging.getLogger(__name__)


class CodecErrorKind(Enum):
    TOO_SHORT = auto()
    INVALID_BYTE = auto()
    INVALID_KIND = auto()


@dataclass(frozen=True)
class CodecError:
    kind: CodecErrorKind
    token: str | None = None
    """The offending input token for ``INVALID_BYTE``."""

    def __str__(self) -> str:
        if self.kind is CodecErrorKind.INVALID_BYTE:
            return f'Invalid hex byte "{self.token}"'
        if self.kind is CodecErrorKind.TOO_SHORT:
            return f"Report shorter than {HEADER_BYTES} bytes"
        return "System frames cannot be encoded"


def decode(report: bytes | bytearray | memoryview) -> CanFrame | CodecError:
    mv = memoryview(report)
    if len(mv) < HEADER_BYTES:
        return CodecError(CodecErrorKind.TOO_SHORT)

    (raw_id,) = struct.unpack_from("<I", mv, 0)
    dlc = int(mv[4])
    count = min(dlc, len(mv) - HEADER_BYTES)
    if count < dlc:
        LOGGER.debug("Report truncated: dlc=%d available=%d", dlc, count)

    kind = FrameKind.EXTENDED if raw_id & CAN_EFF_FLAG else FrameKind.STANDARD
    return CanFrame(
        can_id=raw_id & id_mask(kind),
        kind=kind,
        data=bytes(mv[HEADER_BYTES : HEADER_BYTES + count]),
        dlc=dlc,
        direction=Direction.RX,
    )


def encode(frame: CanFrame) -> bytes | CodecError:
    if frame.kind is FrameKind.SYSTEM:
        return CodecError(CodecErrorKind.INVALID_KIND)
    raw_id = frame.masked_id
    if frame.kind is FrameKind.EXTENDED:
        raw_id |= CAN_EFF_FLAG
    data = bytes(frame.data)
    return struct.pack("<IB", raw_id, len(data)) + data


def pad_report(payload: bytes) -> bytes:
    if len(payload) > REPORT_BYTES:
        raise ValueError(f"payload too long for one report: {len(payload)} > {REPORT_BYTES}")
    return payload + b"\x00" * (REPORT_BYTES - len(payload))


def render_id(can_id: int, kind: FrameKind) -> str:
    return f"{can_id & id_mask(kind):0{_ID_WIDTH[kind]}X}"


def format_id(text: str, kind: FrameKind) -> str:
    """
    Canonical display form of an identifier given as hex text.
    SYSTEM labels are only uppercased; numeric ids that fail to parse are shown as zero.
    """
    if kind is FrameKind.SYSTEM:
        return text.upper()
    try:
        raw = int(text.strip(), 16)
    except ValueError:
        LOGGER.warning("Invalid CAN ID %r, defaulting to 0", text)
        raw = 0
    return render_id(raw, kind)


def parse_byte_string(text: str) -> list[int] | CodecError:
    tokens = text.split()
    if not tokens:
        return CodecError(CodecErrorKind.INVALID_BYTE, "")
    out: list[int] = []
    for token in tokens:
        if _BYTE_TOKEN.fullmatch(token) is None:
            return CodecError(CodecErrorKind.INVALID_BYTE, token)
        out.append(int(token, 16))
    return out


def format_data(data: bytes | bytearray) -> str:
    return " ".join(f"{b:02X}" for b in data)


class _CodecTests(unittest.TestCase):
    def test_encode_decode_roundtrip_masks_per_kind(self) -> None:
        cases = [
            (0x123, FrameKind.STANDARD, 0x123),
            (0xFFFF, FrameKind.STANDARD, CAN_SFF_MASK),
            (0x1ABCDEF0, FrameKind.EXTENDED, 0x1ABCDEF0),
            (0xFFFFFFFF, FrameKind.EXTENDED, CAN_EFF_MASK),
            (0, FrameKind.EXTENDED, 0),
        ]
        for can_id, kind, expected_id in cases:
            for data in (b"", b"\x11", bytes(range(8))):
                encoded = encode(CanFrame(can_id=can_id, kind=kind, data=data))
                assert isinstance(encoded, bytes)
                decoded = decode(encoded)
                assert isinstance(decoded, CanFrame)
                self.assertEqual(expected_id, decoded.can_id)
                self.assertEqual(kind, decoded.kind)
                self.assertEqual(len(data), decoded.declared_length)
                self.assertEqual(data, decoded.data)
                self.assertEqual(Direction.RX, decoded.direction)

    def test_encode_layout(self) -> None:
        encoded = encode(CanFrame(can_id=0x18DAF110, kind=FrameKind.EXTENDED, data=b"\xaa\xbb"))
        self.assertEqual(bytes([0x10, 0xF1, 0xDA, 0x98, 0x02, 0xAA, 0xBB]), encoded)
        encoded = encode(CanFrame(can_id=0x7FF, kind=FrameKind.STANDARD))
        self.assertEqual(bytes([0xFF, 0x07, 0x00, 0x00, 0x00]), encoded)

    def test_encode_dlc_follows_data_not_declared_value(self) -> None:
        encoded = encode(CanFrame(can_id=1, kind=FrameKind.STANDARD, data=b"\x01", dlc=8))
        assert isinstance(encoded, bytes)
        self.assertEqual(1, encoded[4])

    def test_encode_system_frame_is_rejected(self) -> None:
        result = encode(CanFrame.system("hello"))
        self.assertEqual(CodecError(CodecErrorKind.INVALID_KIND), result)

    def test_decode_too_short(self) -> None:
        self.assertEqual(CodecError(CodecErrorKind.TOO_SHORT), decode(b"\x00\x01\x02\x03"))

    def test_decode_clamps_to_available_bytes(self) -> None:
        frame = decode(bytes([0x23, 0x01, 0x00, 0x00, 0x08]))
        assert isinstance(frame, CanFrame)
        self.assertEqual(0, len(frame.data))
        self.assertEqual(8, frame.declared_length)

        frame = decode(bytes([0x23, 0x01, 0x00, 0x00, 0x08, 0xDE, 0xAD]))
        assert isinstance(frame, CanFrame)
        self.assertEqual(b"\xde\xad", frame.data)

    def test_decode_ignores_reserved_tail(self) -> None:
        report = pad_report(bytes([0x23, 0x01, 0x00, 0x00, 0x02, 0x01, 0x02]) + b"\xff\xff")
        frame = decode(report)
        assert isinstance(frame, CanFrame)
        self.assertEqual(b"\x01\x02", frame.data)
        self.assertEqual(0x123, frame.can_id)

    def test_decode_standard_masks_garbage_high_bits(self) -> None:
        frame = decode(struct.pack("<IB", 0x7FFFF800 | 0x456, 0))
        assert isinstance(frame, CanFrame)
        self.assertEqual(FrameKind.STANDARD, frame.kind)
        self.assertEqual(0x456, frame.can_id)

    def test_pad_report(self) -> None:
        self.assertEqual(REPORT_BYTES, len(pad_report(b"\x01")))
        with self.assertRaises(ValueError):
            _ = pad_report(b"\x00" * (REPORT_BYTES + 1))

    def test_format_id(self) -> None:
        self.assertEqual("7FF", format_id("7ff", FrameKind.STANDARD))
        self.assertEqual("1FFFFFFF", format_id("1fffffff", FrameKind.EXTENDED))
        self.assertEqual("7FF", format_id("ffff", FrameKind.STANDARD))
        self.assertEqual("00000123", format_id("123", FrameKind.EXTENDED))
        self.assertEqual("ERROR", format_id("error", FrameKind.SYSTEM))
        with self.assertLogs(__name__, level="WARNING"):
            self.assertEqual("000", format_id("zz", FrameKind.STANDARD))
        with self.assertLogs(__name__, level="WARNING"):
            self.assertEqual("00000000", format_id("", FrameKind.EXTENDED))

    def test_parse_byte_string(self) -> None:
        self.assertEqual([0x11, 0x22, 0x33], parse_byte_string("11 22 33"))
        self.assertEqual([0x0A, 0xFF], parse_byte_string("  a \t ff\n"))
        self.assertEqual(CodecError(CodecErrorKind.INVALID_BYTE, ""), parse_byte_string("   "))
        self.assertEqual(CodecError(CodecErrorKind.INVALID_BYTE, ""), parse_byte_string(""))
        self.assertEqual('Invalid hex byte ""', str(parse_byte_string("")))

    def test_parse_byte_string_rejects_whole_input(self) -> None:
        self.assertEqual(CodecError(CodecErrorKind.INVALID_BYTE, "zz"), parse_byte_string("11 zz"))
        self.assertEqual(CodecError(CodecErrorKind.INVALID_BYTE, "123"), parse_byte_string("123 11"))
        self.assertEqual('Invalid hex byte "zz"', str(parse_byte_string("zz")))

    def test_format_data(self) -> None:
        self.assertEqual("", format_data(b""))
        self.assertEqual("0A FF 00", format_data(b"\x0a\xff\x00"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
