"""
Trace exporters: CSV, PEAK TRC 1.1 and Vector CANalyzer ASC text.

Every renderer is a pure function of its inputs. Entry content is passed through as-is,
so a corrupt ``data_display`` can never make an export fail. TRC and ASC offsets are
derived from ``session_start`` and each entry's timestamp; CSV reports the stored offset.
"""

from __future__ import annotations

import csv
import io
import unittest
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from canlogger import __version__
from canlogger.codec import parse_byte_string
from canlogger.model import EntryType, FrameKind, LogEntry

CSV_HEADER = "Timestamp,Offset,ID,Type,DLC,Data"

TRC_FILE_VERSION = "1.1"
# PEAK $STARTTIME counts days since the OLE automation epoch, in local wall-clock time.
_OLE_EPOCH = datetime(1899, 12, 30)
_TRC_COLUMN_LEGEND = (
    ";   Message Number",
    ";   |       Time Offset (ms)",
    ";   |       |       Direction",
    ";   |       |       |       ID (hex)",
    ";   |       |       |       |     Type",
    ";   |       |       |       |     |    Data Length",
    ";   |       |       |       |     |    |  Data Bytes (hex) ...",
    ";   |       |       |       |     |    |  |",
    ";---+-- ----+-----  +-  ----+---  +--  +  -- -- -- -- -- -- -- --",
)

ASC_DEFAULT_CHANNEL = 1
_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

__all__ = ["CSV_HEADER", "render_asc", "render_csv", "render_trc"]


def render_csv(entries: Iterable[LogEntry]) -> str:
    buffer = io.StringIO()
    buffer.write(CSV_HEADER + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for entry in entries:
        writer.writerow(
            [
                entry.timestamp_display,
                f"{entry.offset:.6f}",
                entry.id_display,
                entry.type.value,
                str(entry.dlc),
                entry.data_display,
            ]
        )
    return buffer.getvalue()


def render_trc(entries: Iterable[LogEntry], session_start: datetime) -> str:
    wall_clock = session_start.replace(tzinfo=None)
    lines = [
        f";$FILEVERSION={TRC_FILE_VERSION}",
        f";$STARTTIME={(wall_clock - _OLE_EPOCH) / timedelta(days=1):.10f}",
        ";",
        f";   Start time: {wall_clock:%d.%m.%Y %H:%M:%S}.{wall_clock.microsecond // 1000:03d}.0",
        f";   Generated by canlogger {__version__}",
        ";",
        *_TRC_COLUMN_LEGEND,
    ]

    number = 0
    for entry in entries:
        if entry.type is EntryType.SYS:
            lines.append(f";   [{entry.id_display}] {entry.data_display}".rstrip())
            continue
        number += 1
        offset_ms = (entry.timestamp - session_start) // timedelta(milliseconds=1)
        tag = "EXT" if entry.kind is FrameKind.EXTENDED else "STD"
        line = (
            f"{number:>6}){offset_ms:>11}  {entry.direction.value:<2}  "
            f"{entry.id_display:>8}  {tag}  {entry.dlc}  {entry.data_display}"
        )
        lines.append(line.rstrip())
    return "\n".join(lines) + "\n"


def render_asc(entries: Iterable[LogEntry], session_start: datetime, channel: int = ASC_DEFAULT_CHANNEL) -> str:
    lines = [
        f"date {_WEEKDAYS[session_start.weekday()]} {_MONTHS[session_start.month - 1]} {session_start.day:02d} "
        f"{session_start:%H:%M:%S}.{session_start.microsecond // 1000:03d} {session_start.year}"
    ]
    for entry in entries:
        if entry.type is EntryType.SYS:
            lines.append(f"// {entry.data_display or entry.id_display}")
            continue
        seconds = (entry.timestamp - session_start) / timedelta(seconds=1)
        can_id = entry.id_display + ("x" if entry.kind is FrameKind.EXTENDED else "")
        parts = [f"{seconds:.4f}", str(channel), can_id, entry.direction.value, "d", str(entry.dlc)]
        if entry.data_display:
            parts.append(entry.data_display)
        lines.append(" ".join(parts))
    return "\n".join(lines) + "\n"


_T0 = datetime(2024, 5, 6, 7, 8, 9, 10000, tzinfo=timezone.utc)


def _entry(
    offset_ms: int,
    id_display: str,
    entry_type: EntryType,
    data_display: str = "",
    *,
    kind: FrameKind = FrameKind.STANDARD,
    dlc: int | None = None,
) -> LogEntry:
    return LogEntry(
        timestamp=_T0 + timedelta(milliseconds=offset_ms),
        offset=offset_ms / 1000,
        id_display=id_display,
        type=entry_type,
        kind=kind,
        dlc=len(data_display.split()) if dlc is None else dlc,
        data_display=data_display,
    )


class _TraceExportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.entries = [
            _entry(0, "123", EntryType.STD, "11 22 33"),
            _entry(1500, "18DAF110", EntryType.EXT, "02 10 03", kind=FrameKind.EXTENDED),
            _entry(2000, "----", EntryType.SYS, "Read Error", kind=FrameKind.SYSTEM, dlc=0),
            _entry(2250, "7FF", EntryType.TX, ""),
            _entry(3001, "00000001", EntryType.TX, "AA", kind=FrameKind.EXTENDED),
        ]

    def test_csv_empty_is_header_only(self) -> None:
        self.assertEqual(CSV_HEADER + "\n", render_csv([]))

    def test_csv_single_row(self) -> None:
        out = render_csv([_entry(1234, "123", EntryType.STD, "01 02")])
        self.assertEqual(
            'Timestamp,Offset,ID,Type,DLC,Data\n"07:08:10.244","1.234000","123","STD","2","01 02"\n',
            out,
        )

    def test_csv_doubles_embedded_quotes(self) -> None:
        out = render_csv([_entry(0, "----", EntryType.SYS, 'bad "token"', kind=FrameKind.SYSTEM, dlc=0)])
        self.assertIn('"bad ""token"""', out)

    def test_csv_preserves_order(self) -> None:
        rows = list(csv.reader(io.StringIO(render_csv(self.entries))))
        self.assertEqual(["Timestamp", "Offset", "ID", "Type", "DLC", "Data"], rows[0])
        self.assertEqual(["123", "18DAF110", "----", "7FF", "00000001"], [row[2] for row in rows[1:]])

    def test_csv_data_column_parses_back_to_bytes(self) -> None:
        rows = list(csv.DictReader(io.StringIO(render_csv(self.entries))))
        for entry, row in zip(self.entries, rows):
            if entry.type is EntryType.SYS or not entry.data_display:
                continue
            expected = [int(token, 16) for token in entry.data_display.split()]
            self.assertEqual(expected, parse_byte_string(row["Data"]))

    def test_trc_empty_is_header_only(self) -> None:
        out = render_trc([], _T0)
        lines = out.splitlines()
        self.assertEqual(";$FILEVERSION=1.1", lines[0])
        self.assertTrue(lines[1].startswith(";$STARTTIME=45418.29732"))
        self.assertTrue(all(line.startswith(";") for line in lines))
        self.assertIn(";   Start time: 06.05.2024 07:08:09.010.0", lines)

    def test_trc_data_lines(self) -> None:
        body = [line for line in render_trc(self.entries, _T0).splitlines() if not line.startswith(";")]
        self.assertEqual(
            [
                "     1)          0  Rx       123  STD  3  11 22 33",
                "     2)       1500  Rx  18DAF110  EXT  3  02 10 03",
                "     3)       2250  Tx       7FF  STD  0",
                "     4)       3001  Tx  00000001  EXT  1  AA",
            ],
            body,
        )

    def test_trc_system_entries_are_comments(self) -> None:
        out = render_trc(self.entries, _T0)
        self.assertIn(";   [----] Read Error\n", out)

    def test_trc_offsets_use_session_start_not_stored_offset(self) -> None:
        entry = _entry(500, "123", EntryType.STD, "")
        shifted = LogEntry(entry.timestamp, 99.0, entry.id_display, entry.type, entry.kind, entry.dlc, "")
        body = [line for line in render_trc([shifted], _T0 - timedelta(seconds=1)).splitlines() if line[0] != ";"]
        self.assertEqual(["     1)       1500  Rx       123  STD  0"], body)

    def test_asc_header_and_lines(self) -> None:
        lines = render_asc(self.entries, _T0).splitlines()
        self.assertEqual(
            [
                "date Mon May 06 07:08:09.010 2024",
                "0.0000 1 123 Rx d 3 11 22 33",
                "1.5000 1 18DAF110x Rx d 3 02 10 03",
                "// Read Error",
                "2.2500 1 7FF Tx d 0",
                "3.0010 1 00000001x Tx d 1 AA",
            ],
            lines,
        )

    def test_asc_empty_and_channel(self) -> None:
        self.assertEqual("date Mon May 06 07:08:09.010 2024\n", render_asc([], _T0))
        out = render_asc([_entry(0, "123", EntryType.STD, "")], _T0, channel=2)
        self.assertTrue(out.endswith("0.0000 2 123 Rx d 0\n"))

    def test_malformed_entry_content_passes_through(self) -> None:
        bogus = _entry(0, "123", EntryType.STD, "not hex at all", dlc=8)
        self.assertIn('"not hex at all"', render_csv([bogus]))
        self.assertIn("not hex at all", render_trc([bogus], _T0))
        self.assertIn("not hex at all", render_asc([bogus], _T0))


if __name__ == "__main__":
    unittest.main(verbosity=2)
