from __future__ import annotations

import unittest
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

CAN_EFF_FLAG = 0x80000000
"""
Bit 31 of the wire identifier marks an extended (29-bit) frame.
"""

CAN_SFF_MASK = 0x7FF
CAN_EFF_MASK = 0x1FFFFFFF

SYSTEM_LABEL = "----"


class FrameKind(Enum):
    STANDARD = "STD"
    EXTENDED = "EXT"
    SYSTEM = "SYS"


class Direction(Enum):
    RX = "Rx"
    TX = "Tx"


class EntryType(Enum):
    SYS = "SYS"
    STD = "STD"
    EXT = "EXT"
    TX = "TX"


def id_mask(kind: FrameKind) -> int:
    if kind is FrameKind.STANDARD:
        return CAN_SFF_MASK
    if kind is FrameKind.EXTENDED:
        return CAN_EFF_MASK
    raise ValueError(f"{kind.name} frames have no numeric identifier")


@dataclass(frozen=True)
class CanFrame:
    can_id: int
    kind: FrameKind
    data: bytes = b""
    dlc: int | None = None
    """Declared length; defaults to ``len(data)``. May exceed ``len(data)`` for truncated transfers."""
    direction: Direction = Direction.RX
    label: str = SYSTEM_LABEL
    """Free-text identifier of SYSTEM pseudo-frames; unused otherwise."""

    def __post_init__(self) -> None:
        if self.dlc is None:
            object.__setattr__(self, "dlc", 0 if self.kind is FrameKind.SYSTEM else len(self.data))

    @property
    def declared_length(self) -> int:
        assert self.dlc is not None
        return self.dlc

    @property
    def masked_id(self) -> int:
        return self.can_id & id_mask(self.kind)

    @classmethod
    def system(cls, message: str, label: str = SYSTEM_LABEL) -> CanFrame:
        return cls(can_id=0, kind=FrameKind.SYSTEM, data=message.encode("utf8"), dlc=0, label=label)


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    offset: float
    """Seconds elapsed since the session anchor."""
    id_display: str
    type: EntryType
    kind: FrameKind
    dlc: int
    data_display: str

    @property
    def direction(self) -> Direction:
        return Direction.TX if self.type is EntryType.TX else Direction.RX

    @property
    def timestamp_display(self) -> str:
        return format_timestamp(self.timestamp)


@dataclass
class UniqueEntry:
    """
    Latest state of one ``(id_display, type)`` key; mutated in place by the log store.
    """

    id_display: str
    type: EntryType
    timestamp: datetime
    dlc: int
    data_display: str
    count: int = 1

    @property
    def key(self) -> tuple[str, EntryType]:
        return self.id_display, self.type

    @property
    def timestamp_display(self) -> str:
        return format_timestamp(self.timestamp)


def format_timestamp(value: datetime) -> str:
    return f"{value:%H:%M:%S}.{value.microsecond // 1000:03d}"


class _ModelTests(unittest.TestCase):
    def test_dlc_defaults_to_data_length(self) -> None:
        frame = CanFrame(can_id=0x123, kind=FrameKind.STANDARD, data=b"\x01\x02\x03")
        self.assertEqual(3, frame.declared_length)
        self.assertEqual(Direction.RX, frame.direction)

    def test_declared_dlc_is_kept(self) -> None:
        frame = CanFrame(can_id=0x123, kind=FrameKind.STANDARD, data=b"", dlc=8)
        self.assertEqual(8, frame.declared_length)

    def test_masked_id_per_kind(self) -> None:
        self.assertEqual(0x7FF, CanFrame(can_id=0xFFFF, kind=FrameKind.STANDARD).masked_id)
        self.assertEqual(0x1FFFFFFF, CanFrame(can_id=0xFFFFFFFF, kind=FrameKind.EXTENDED).masked_id)
        with self.assertRaises(ValueError):
            _ = CanFrame.system("boom").masked_id

    def test_system_frame_carries_message_bytes(self) -> None:
        frame = CanFrame.system("Read Error")
        self.assertEqual(FrameKind.SYSTEM, frame.kind)
        self.assertEqual(b"Read Error", frame.data)
        self.assertEqual(0, frame.declared_length)
        self.assertEqual(SYSTEM_LABEL, frame.label)

    def test_entry_direction_follows_type(self) -> None:
        ts = datetime(2024, 1, 2, 3, 4, 5, 6000, tzinfo=timezone.utc)
        tx = LogEntry(ts, 0.0, "123", EntryType.TX, FrameKind.STANDARD, 0, "")
        rx = LogEntry(ts, 0.0, "123", EntryType.STD, FrameKind.STANDARD, 0, "")
        self.assertEqual(Direction.TX, tx.direction)
        self.assertEqual(Direction.RX, rx.direction)

    def test_timestamp_display_is_zero_padded(self) -> None:
        ts = datetime(2024, 1, 2, 3, 4, 5, 7999, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual("03:04:05.007", format_timestamp(ts))


if __name__ == "__main__":
    unittest.main(verbosity=2)
