from __future__ import annotations

import logging
import threading
import unittest
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from canlogger.codec import format_data, format_id, render_id
from canlogger.model import CanFrame, Direction, EntryType, FrameKind, LogEntry, UniqueEntry

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class LogView:
    entries: tuple[LogEntry, ...]
    total: int
    session_start: datetime | None


def local_now() -> datetime:
    return datetime.now().astimezone()


def entry_type_for(frame: CanFrame, direction: Direction) -> EntryType:
    if frame.kind is FrameKind.SYSTEM:
        return EntryType.SYS
    if direction is Direction.TX:
        return EntryType.TX
    if frame.kind is FrameKind.EXTENDED:
        return EntryType.EXT
    return EntryType.STD


class LogStore:
    """
    Append-only log of one session plus the per-key "unique" view.

    Appends must be serialized by the caller; the internal lock only guarantees that
    ``snapshot()``, ``view()`` and ``unique()`` observe a consistent state while appends continue.
    The session anchor is the timestamp of the first entry since creation or the last ``clear()``.
    """

    def __init__(self, clock: Clock = local_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = []
        self._unique: dict[tuple[str, EntryType], UniqueEntry] = {}
        self._session_start: datetime | None = None

    @property
    def session_start(self) -> datetime | None:
        return self._session_start

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, frame: CanFrame, direction: Direction | None = None) -> LogEntry:
        resolved_direction = frame.direction if direction is None else direction
        entry_type = entry_type_for(frame, resolved_direction)
        if frame.kind is FrameKind.SYSTEM:
            id_display = format_id(frame.label, FrameKind.SYSTEM)
            data_display = bytes(frame.data).decode("utf8", errors="replace")
        else:
            id_display = render_id(frame.can_id, frame.kind)
            data_display = format_data(frame.data)

        now = self._clock()
        with self._lock:
            if self._session_start is None:
                self._session_start = now
                LOGGER.info("Log session started at %s", now.isoformat())
            entry = LogEntry(
                timestamp=now,
                offset=(now - self._session_start) / timedelta(seconds=1),
                id_display=id_display,
                type=entry_type,
                kind=frame.kind,
                dlc=frame.declared_length,
                data_display=data_display,
            )
            self._entries.append(entry)

            key = (id_display, entry_type)
            existing = self._unique.get(key)
            if existing is None:
                self._unique[key] = UniqueEntry(
                    id_display=id_display,
                    type=entry_type,
                    timestamp=now,
                    dlc=entry.dlc,
                    data_display=data_display,
                )
            else:
                existing.timestamp = now
                existing.dlc = entry.dlc
                existing.data_display = data_display
                existing.count += 1

        LOGGER.debug(
            "Logged entry: index=%d type=%s id=%s dlc=%d data=%r",
            len(self._entries) - 1,
            entry_type.value,
            id_display,
            entry.dlc,
            data_display,
        )
        return entry

    def snapshot(self) -> tuple[LogEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def view(self, limit: int | None = None) -> LogView:
        """
        Entries, total count and session anchor taken under one lock acquisition.
        With ``limit`` only the newest ``limit`` entries are returned.
        """
        with self._lock:
            if limit is None:
                entries = tuple(self._entries)
            else:
                entries = tuple(self._entries[-limit:]) if limit > 0 else ()
            return LogView(entries=entries, total=len(self._entries), session_start=self._session_start)

    def unique(self) -> list[UniqueEntry]:
        with self._lock:
            return [replace(item) for item in self._unique.values()]

    def clear_unique(self) -> None:
        with self._lock:
            dropped = len(self._unique)
            self._unique.clear()
        LOGGER.info("Unique view cleared: dropped_keys=%d", dropped)

    def clear(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self._unique.clear()
            self._session_start = None
        LOGGER.info("Log session cleared: dropped_entries=%d", dropped)


class _SteppingClock:
    def __init__(self, start: datetime, step: timedelta) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        out = self.now
        self.now += self.step
        return out


_T0 = datetime(2024, 5, 6, 7, 8, 9, 10000, tzinfo=timezone.utc)


class _LogStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _SteppingClock(_T0, timedelta(milliseconds=250))
        self.store = LogStore(clock=self.clock)

    def test_first_entry_anchors_session(self) -> None:
        self.assertIsNone(self.store.session_start)
        first = self.store.append(CanFrame(can_id=0x123, kind=FrameKind.STANDARD, data=b"\x01"))
        second = self.store.append(CanFrame(can_id=0x123, kind=FrameKind.STANDARD, data=b"\x02"))
        self.assertEqual(_T0, self.store.session_start)
        self.assertEqual(0.0, first.offset)
        self.assertAlmostEqual(0.25, second.offset)
        self.assertEqual("07:08:09.010", first.timestamp_display)

    def test_entry_fields(self) -> None:
        entry = self.store.append(CanFrame(can_id=0x1ABCDEF, kind=FrameKind.EXTENDED, data=b"\x0a\xff", dlc=8))
        self.assertEqual("01ABCDEF", entry.id_display)
        self.assertEqual(EntryType.EXT, entry.type)
        self.assertEqual(8, entry.dlc)
        self.assertEqual("0A FF", entry.data_display)

    def test_tx_direction_overrides_type(self) -> None:
        frame = CanFrame(can_id=0x7FF, kind=FrameKind.STANDARD, data=b"")
        entry = self.store.append(frame, Direction.TX)
        self.assertEqual(EntryType.TX, entry.type)
        self.assertEqual("7FF", entry.id_display)
        self.assertEqual("", entry.data_display)
        self.assertEqual(Direction.TX, entry.direction)

    def test_system_entry(self) -> None:
        entry = self.store.append(CanFrame.system("Read Error", label="err"), Direction.TX)
        self.assertEqual(EntryType.SYS, entry.type)
        self.assertEqual("ERR", entry.id_display)
        self.assertEqual("Read Error", entry.data_display)
        self.assertEqual(0, entry.dlc)

    def test_unique_aggregate_keeps_first_seen_order(self) -> None:
        self.store.append(CanFrame(can_id=0xA, kind=FrameKind.STANDARD, data=b"\x01"))
        self.store.append(CanFrame(can_id=0xB, kind=FrameKind.STANDARD, data=b"\x02"))
        self.store.append(CanFrame(can_id=0xA, kind=FrameKind.STANDARD, data=b"\x03\x04"))
        unique = self.store.unique()
        self.assertEqual(["00A", "00B"], [item.id_display for item in unique])
        self.assertEqual(2, unique[0].count)
        self.assertEqual("03 04", unique[0].data_display)
        self.assertEqual(2, unique[0].dlc)
        self.assertEqual(_T0 + timedelta(milliseconds=500), unique[0].timestamp)
        self.assertEqual(1, unique[1].count)
        self.assertEqual(3, len(self.store))

    def test_unique_is_keyed_by_type_too(self) -> None:
        frame = CanFrame(can_id=0x10, kind=FrameKind.STANDARD)
        self.store.append(frame)
        self.store.append(frame, Direction.TX)
        self.assertEqual([EntryType.STD, EntryType.TX], [item.type for item in self.store.unique()])

    def test_unique_returns_copies(self) -> None:
        self.store.append(CanFrame(can_id=0x10, kind=FrameKind.STANDARD))
        view = self.store.unique()
        view[0].count = 99
        self.assertEqual(1, self.store.unique()[0].count)

    def test_clear_unique_keeps_log(self) -> None:
        self.store.append(CanFrame(can_id=0x10, kind=FrameKind.STANDARD))
        self.store.clear_unique()
        self.assertEqual([], self.store.unique())
        self.assertEqual(1, len(self.store.snapshot()))

    def test_clear_resets_anchor(self) -> None:
        self.store.append(CanFrame(can_id=0x10, kind=FrameKind.STANDARD))
        self.store.clear()
        self.assertIsNone(self.store.session_start)
        entry = self.store.append(CanFrame(can_id=0x10, kind=FrameKind.STANDARD))
        self.assertEqual(0.0, entry.offset)
        self.assertEqual(entry.timestamp, self.store.session_start)

    def test_snapshot_is_point_in_time(self) -> None:
        self.store.append(CanFrame(can_id=0x10, kind=FrameKind.STANDARD))
        snapshot = self.store.snapshot()
        self.store.append(CanFrame(can_id=0x11, kind=FrameKind.STANDARD))
        self.assertEqual(1, len(snapshot))
        self.assertEqual(2, len(self.store.snapshot()))

    def test_view_limits_newest_entries(self) -> None:
        for can_id in range(5):
            self.store.append(CanFrame(can_id=can_id, kind=FrameKind.STANDARD))
        view = self.store.view(2)
        self.assertEqual(["003", "004"], [entry.id_display for entry in view.entries])
        self.assertEqual(5, view.total)
        self.assertEqual(_T0, view.session_start)
        self.assertEqual((), self.store.view(0).entries)
        self.assertEqual(5, len(self.store.view(100).entries))
        self.assertEqual(self.store.snapshot(), self.store.view().entries)

    def test_view_anchor_matches_entries_after_clear(self) -> None:
        self.store.append(CanFrame(can_id=0x1, kind=FrameKind.STANDARD))
        self.store.append(CanFrame(can_id=0x2, kind=FrameKind.STANDARD))
        self.store.clear()
        self.assertEqual(LogView(entries=(), total=0, session_start=None), self.store.view())

        entry = self.store.append(CanFrame(can_id=0x3, kind=FrameKind.STANDARD))
        view = self.store.view()
        self.assertEqual((entry,), view.entries)
        assert view.session_start is not None
        self.assertEqual(entry.timestamp, view.session_start)
        self.assertTrue(all(item.timestamp >= view.session_start for item in view.entries))

    def test_readers_see_consistent_state_while_appending(self) -> None:
        store = LogStore(clock=_SteppingClock(_T0, timedelta(microseconds=1)))
        frames = [CanFrame(can_id=can_id % 7, kind=FrameKind.STANDARD) for can_id in range(2000)]
        done = threading.Event()

        def writer() -> None:
            try:
                for frame in frames:
                    store.append(frame)
            finally:
                done.set()

        thread = threading.Thread(target=writer, name="log-store-writer")
        thread.start()
        last_total = 0
        try:
            while not done.is_set():
                view = store.view()
                self.assertEqual(view.total, len(view.entries))
                self.assertGreaterEqual(view.total, last_total)
                last_total = view.total
                offsets = [entry.offset for entry in view.entries]
                self.assertEqual(sorted(offsets), offsets)
                self.assertLessEqual(sum(item.count for item in store.unique()), len(frames))
        finally:
            thread.join(timeout=10.0)
        self.assertFalse(thread.is_alive())
        self.assertEqual(len(frames), len(store.snapshot()))
        self.assertEqual(len(frames), sum(item.count for item in store.unique()))
        self.assertEqual(7, len(store.unique()))


if __name__ == "__main__":
    unittest.main(verbosity=2)
