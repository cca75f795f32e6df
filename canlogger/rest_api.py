from __future__ import annotations

import csv
import io
import logging
import time
import unittest
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, ClassVar
from unittest.mock import patch

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from canlogger.bridge import Bridge, LoopbackTransport, SendRequest
from canlogger.codec import REPORT_BYTES, pad_report
from canlogger.log_store import LogStore, local_now
from canlogger.model import CanFrame, EntryType, FrameKind, LogEntry, UniqueEntry
from canlogger.trace_export import ASC_DEFAULT_CHANNEL, CSV_HEADER, render_asc, render_csv, render_trc

if TYPE_CHECKING:
    from fastapi.testclient import TestClient

API_PREFIX = "/canlogger/api/v1"
LOG_DEFAULT_LIMIT = 500
LOG_MAX_LIMIT = 100_000

LOGGER = logging.getLogger(__name__)
router = APIRouter(prefix=API_PREFIX)


class TraceFormat(str, Enum):
    CSV = "csv"
    TRC = "trc"
    ASC = "asc"


class SendKind(str, Enum):
    STD = "STD"
    EXT = "EXT"


_MEDIA_TYPES = {
    TraceFormat.CSV: "text/csv",
    TraceFormat.TRC: "text/plain",
    TraceFormat.ASC: "text/plain",
}


class ErrorResponse(BaseModel):
    detail: str | list[dict[str, Any]] = Field(description="Error details")


class LogEntryDTO(BaseModel):
    timestamp: str = Field(description="Local wall-clock time as HH:MM:SS.mmm")
    offset: float = Field(description="Seconds since the first entry of the session")
    id: str = Field(description="Uppercase hex identifier; free text for SYS entries")
    type: EntryType
    dlc: int
    data: str = Field(description="Space-separated uppercase hex bytes; message text for SYS entries")


class UniqueEntryDTO(BaseModel):
    timestamp: str
    id: str
    type: EntryType
    dlc: int
    data: str
    count: int = Field(description="Occurrences of this (id, type) key since the view was last cleared")


class LogResponse(BaseModel):
    total: int = Field(description="Entries in the session log")
    session_start: datetime | None
    entries: list[LogEntryDTO]


class UniqueResponse(BaseModel):
    entries: list[UniqueEntryDTO]


class ReportsResponse(BaseModel):
    accepted: int
    ignored: int
    trailing_bytes: int


class SendRequestDTO(BaseModel):
    id: str = Field(description="Hex identifier; unparseable input is sent as 0")
    kind: SendKind = SendKind.STD
    data: str = Field(default="", description="Space-separated hex bytes; blank input is rejected and logged as SYS")


class PeriodicRequestDTO(SendRequestDTO):
    id: str = ""
    interval_ms: int = Field(ge=0, le=3_600_000, description="Send period; 0 stops periodic sending")


class PeriodicStateDTO(BaseModel):
    running: bool
    interval_ms: int | None = None
    request: SendRequestDTO | None = None


def _serialize_entry(entry: LogEntry) -> LogEntryDTO:
    return LogEntryDTO(
        timestamp=entry.timestamp_display,
        offset=entry.offset,
        id=entry.id_display,
        type=entry.type,
        dlc=entry.dlc,
        data=entry.data_display,
    )


def _serialize_unique(item: UniqueEntry) -> UniqueEntryDTO:
    return UniqueEntryDTO(
        timestamp=item.timestamp_display,
        id=item.id_display,
        type=item.type,
        dlc=item.dlc,
        data=item.data_display,
        count=item.count,
    )


def _periodic_state(bridge: Bridge) -> PeriodicStateDTO:
    periodic = bridge.periodic
    request = periodic.request
    if not periodic.running or request is None or periodic.interval_s is None:
        return PeriodicStateDTO(running=False)
    return PeriodicStateDTO(
        running=True,
        interval_ms=round(periodic.interval_s * 1000),
        request=SendRequestDTO(id=request.id_text, kind=SendKind(request.kind.value), data=request.data_text),
    )


def get_bridge(request: Request) -> Bridge:
    bridge = getattr(request.app.state, "bridge", None)
    if not isinstance(bridge, Bridge):
        LOGGER.critical(
            "Application bridge dependency is invalid: type=%s",
            None if bridge is None else type(bridge).__name__,
        )
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal server error")
    return bridge


def get_asc_channel(request: Request) -> int:
    return int(getattr(request.app.state, "asc_channel", ASC_DEFAULT_CHANNEL))


@router.post(
    "/reports",
    response_model=ReportsResponse,
    tags=["ingest"],
    summary="Log inbound wire reports",
    description=(
        f"Body is a concatenation of {REPORT_BYTES}-byte reports as read from the CAN interface. "
        "Each report is decoded and logged; trailing bytes that do not form a full report are ignored."
    ),
    responses={500: {"model": ErrorResponse, "description": "Internal server error"}},
)
async def post_reports(
    request: Request,
    bridge: Annotated[Bridge, Depends(get_bridge)],
) -> ReportsResponse:
    payload = await request.body()
    full_reports, trailing_bytes = divmod(len(payload), REPORT_BYTES)
    if trailing_bytes:
        LOGGER.warning(
            "Report payload has trailing bytes that will be ignored: payload_bytes=%d trailing_bytes=%d",
            len(payload),
            trailing_bytes,
        )

    accepted = 0
    try:
        for index in range(full_reports):
            offset = index * REPORT_BYTES
            if bridge.receive(payload[offset : offset + REPORT_BYTES]) is not None:
                accepted += 1
    except Exception:
        LOGGER.critical("Unexpected exception while logging reports: index=%d", accepted, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal server error")

    LOGGER.info(
        "Reports processed: full_reports=%d accepted=%d ignored=%d trailing_bytes=%d",
        full_reports,
        accepted,
        full_reports - accepted,
        trailing_bytes,
    )
    return ReportsResponse(accepted=accepted, ignored=full_reports - accepted, trailing_bytes=trailing_bytes)


@router.post(
    "/send",
    response_model=LogEntryDTO,
    tags=["send"],
    summary="Send one CAN frame",
    description=(
        "Sends a frame through the transport and returns the logged entry: "
        "a TX entry on success, a SYS entry describing the failure otherwise."
    ),
    responses={422: {"model": ErrorResponse, "description": "Validation error"}},
)
def post_send(
    body: SendRequestDTO,
    bridge: Annotated[Bridge, Depends(get_bridge)],
) -> LogEntryDTO:
    entry = bridge.send(body.id, FrameKind(body.kind.value), body.data)
    return _serialize_entry(entry)


@router.get(
    "/log",
    response_model=LogResponse,
    tags=["query"],
    summary="Latest log entries",
    description="Returns the newest entries of the session log in chronological order.",
)
def get_log(
    bridge: Annotated[Bridge, Depends(get_bridge)],
    limit: Annotated[int, Query(ge=1, le=LOG_MAX_LIMIT)] = LOG_DEFAULT_LIMIT,
) -> LogResponse:
    view = bridge.store.view(limit)
    return LogResponse(
        total=view.total,
        session_start=view.session_start,
        entries=[_serialize_entry(entry) for entry in view.entries],
    )


@router.delete("/log", status_code=status.HTTP_204_NO_CONTENT, tags=["query"], summary="Clear the session log")
def delete_log(bridge: Annotated[Bridge, Depends(get_bridge)]) -> None:
    bridge.store.clear()


@router.get(
    "/unique",
    response_model=UniqueResponse,
    tags=["query"],
    summary="Latest state per (id, type)",
    description="One row per identifier and entry type, in first-seen order, with an occurrence count.",
)
def get_unique(bridge: Annotated[Bridge, Depends(get_bridge)]) -> UniqueResponse:
    return UniqueResponse(entries=[_serialize_unique(item) for item in bridge.store.unique()])


@router.delete("/unique", status_code=status.HTTP_204_NO_CONTENT, tags=["query"], summary="Clear the unique view")
def delete_unique(bridge: Annotated[Bridge, Depends(get_bridge)]) -> None:
    bridge.store.clear_unique()


@router.get(
    "/export/{trace_format}",
    response_class=PlainTextResponse,
    tags=["export"],
    summary="Download the session log as a trace file",
    responses={
        200: {"content": {"text/csv": {}, "text/plain": {}}},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
def get_export(
    trace_format: TraceFormat,
    bridge: Annotated[Bridge, Depends(get_bridge)],
    asc_channel: Annotated[int, Depends(get_asc_channel)],
) -> PlainTextResponse:
    view = bridge.store.view()
    entries = view.entries
    session_start = local_now() if view.session_start is None else view.session_start
    try:
        if trace_format is TraceFormat.CSV:
            content = render_csv(entries)
        elif trace_format is TraceFormat.TRC:
            content = render_trc(entries, session_start)
        else:
            content = render_asc(entries, session_start, channel=asc_channel)
    except Exception:
        LOGGER.critical(
            "Unexpected export exception: format=%s entries=%d", trace_format.value, len(entries), exc_info=True
        )
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal server error")

    filename = f"canlogger-{session_start:%Y%m%d-%H%M%S}.{trace_format.value}"
    LOGGER.info("Export rendered: format=%s entries=%d bytes=%d", trace_format.value, len(entries), len(content))
    return PlainTextResponse(
        content=content,
        media_type=_MEDIA_TYPES[trace_format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/periodic", response_model=PeriodicStateDTO, tags=["send"], summary="Periodic sender state")
def get_periodic(bridge: Annotated[Bridge, Depends(get_bridge)]) -> PeriodicStateDTO:
    return _periodic_state(bridge)


@router.put(
    "/periodic",
    response_model=PeriodicStateDTO,
    tags=["send"],
    summary="Start or stop periodic sending",
    description="Replaces any running periodic send; interval_ms=0 stops it.",
    responses={422: {"model": ErrorResponse, "description": "Validation error"}},
)
def put_periodic(
    body: PeriodicRequestDTO,
    bridge: Annotated[Bridge, Depends(get_bridge)],
) -> PeriodicStateDTO:
    if body.interval_ms == 0:
        bridge.periodic.stop()
    else:
        request = SendRequest(id_text=body.id, kind=FrameKind(body.kind.value), data_text=body.data)
        bridge.periodic.start(body.interval_ms / 1000, request)
    return _periodic_state(bridge)


def create_app(bridge: Bridge, asc_channel: int = ASC_DEFAULT_CHANNEL) -> FastAPI:
    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        bridge.start()
        try:
            yield
        finally:
            LOGGER.info("REST API app shutdown event received")
            bridge.close()

    created_app = FastAPI(lifespan=_lifespan)
    created_app.state.bridge = bridge
    created_app.state.asc_channel = asc_channel
    created_app.include_router(router)

    LOGGER.info("REST API app created with transport=%s asc_channel=%d", type(bridge.transport).__name__, asc_channel)
    return created_app


def _import_test_client_class() -> type["TestClient"]:
    LOGGER.debug("Importing FastAPI TestClient for REST API unit tests")
    try:
        from fastapi.testclient import TestClient as imported_test_client
    except Exception as ex:
        LOGGER.critical("Failed to import FastAPI TestClient", exc_info=True)
        raise RuntimeError("Running REST API tests requires optional dependency 'httpx'.") from ex
    return imported_test_client


class _SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 6, 7, 8, 9, 10000, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        out = self.now
        self.now += timedelta(milliseconds=100)
        return out


class _InterleavingLogStore(LogStore):
    """
    Starts a new session whenever the anchor is read on its own, like a concurrent clear followed by a new frame.
    """

    interleave = False

    @property
    def session_start(self) -> datetime | None:
        if self.interleave:
            self.interleave = False
            self.clear()
            self.append(CanFrame(can_id=0x7FF, kind=FrameKind.STANDARD))
        return super().session_start


def _report(raw_id: int, data: bytes) -> bytes:
    return pad_report(raw_id.to_bytes(4, "little") + bytes([len(data)]) + data)


class _RestAPITests(unittest.TestCase):
    app: ClassVar[FastAPI]
    client: ClassVar["TestClient"]

    @classmethod
    def setUpClass(cls) -> None:
        cls.app = create_app(Bridge(LogStore(), LoopbackTransport(echo=False)))
        cls.client = _import_test_client_class()(cls.app)

    @classmethod
    def tearDownClass(cls) -> None:
        cls.client.close()

    def setUp(self) -> None:
        self.transport = LoopbackTransport(echo=False)
        self.bridge = Bridge(LogStore(clock=_SteppingClock()), self.transport)
        self.app.dependency_overrides[get_bridge] = lambda: self.bridge

    def tearDown(self) -> None:
        self.bridge.close()
        self.app.dependency_overrides.clear()

    def _post_reports(self, payload: bytes) -> dict[str, Any]:
        response = self.client.post(
            f"{API_PREFIX}/reports",
            content=payload,
            headers={"Content-Type": "application/octet-stream"},
        )
        self.assertEqual(200, response.status_code)
        return dict(response.json())

    def test_post_reports_logs_frames(self) -> None:
        body = self._post_reports(_report(0x123, b"\x01\x02") + _report(0x80000000 | 0x18DAF110, b"\xaa"))
        self.assertEqual({"accepted": 2, "ignored": 0, "trailing_bytes": 0}, body)
        entries = self.bridge.store.snapshot()
        self.assertEqual(["123", "18DAF110"], [entry.id_display for entry in entries])

    def test_post_reports_ignores_trailing_bytes(self) -> None:
        with self.assertLogs(__name__, level="WARNING"):
            body = self._post_reports(_report(0x1, b"") + b"\x01\x02\x03")
        self.assertEqual({"accepted": 1, "ignored": 0, "trailing_bytes": 3}, body)

    def test_post_reports_empty_payload(self) -> None:
        self.assertEqual({"accepted": 0, "ignored": 0, "trailing_bytes": 0}, self._post_reports(b""))

    def test_send_returns_tx_entry(self) -> None:
        response = self.client.post(f"{API_PREFIX}/send", json={"id": "7ff", "kind": "STD", "data": "11 22"})
        self.assertEqual(200, response.status_code)
        body = response.json()
        self.assertEqual("TX", body["type"])
        self.assertEqual("7FF", body["id"])
        self.assertEqual("11 22", body["data"])
        self.assertEqual(2, body["dlc"])
        self.assertEqual(1, len(self.transport.written))

    def test_send_invalid_data_returns_sys_entry(self) -> None:
        response = self.client.post(f"{API_PREFIX}/send", json={"id": "1", "kind": "EXT", "data": "zz"})
        self.assertEqual(200, response.status_code)
        self.assertEqual("SYS", response.json()["type"])
        self.assertEqual('Invalid hex byte "zz"', response.json()["data"])
        self.assertEqual(0, len(self.transport.written))

    def test_send_blank_data_returns_sys_entry(self) -> None:
        response = self.client.post(f"{API_PREFIX}/send", json={"id": "123", "kind": "STD"})
        self.assertEqual(200, response.status_code)
        self.assertEqual("SYS", response.json()["type"])
        self.assertEqual('Invalid hex byte ""', response.json()["data"])
        self.assertEqual(0, len(self.transport.written))

    def test_send_rejects_system_kind(self) -> None:
        response = self.client.post(f"{API_PREFIX}/send", json={"id": "1", "kind": "SYS"})
        self.assertEqual(422, response.status_code)

    def test_get_log_returns_newest_entries_in_order(self) -> None:
        for can_id in range(5):
            self.bridge.send(f"{can_id:x}", FrameKind.STANDARD, "00")
        response = self.client.get(f"{API_PREFIX}/log", params={"limit": 2})
        self.assertEqual(200, response.status_code)
        body = response.json()
        self.assertEqual(5, body["total"])
        self.assertEqual(["003", "004"], [entry["id"] for entry in body["entries"]])
        self.assertEqual("07:08:09.310", body["entries"][0]["timestamp"])
        self.assertAlmostEqual(0.3, body["entries"][0]["offset"])

    def test_get_log_limit_validation(self) -> None:
        self.assertEqual(422, self.client.get(f"{API_PREFIX}/log", params={"limit": 0}).status_code)

    def test_delete_log_resets_session(self) -> None:
        self.bridge.send("1", FrameKind.STANDARD, "00")
        self.assertEqual(204, self.client.delete(f"{API_PREFIX}/log").status_code)
        body = self.client.get(f"{API_PREFIX}/log").json()
        self.assertEqual(0, body["total"])
        self.assertIsNone(body["session_start"])

    def test_unique_view_and_clear(self) -> None:
        self._post_reports(_report(0xA, b"\x01") + _report(0xB, b"\x02") + _report(0xA, b"\x03"))
        body = self.client.get(f"{API_PREFIX}/unique").json()
        self.assertEqual(["00A", "00B"], [item["id"] for item in body["entries"]])
        self.assertEqual(2, body["entries"][0]["count"])
        self.assertEqual("03", body["entries"][0]["data"])

        self.assertEqual(204, self.client.delete(f"{API_PREFIX}/unique").status_code)
        self.assertEqual([], self.client.get(f"{API_PREFIX}/unique").json()["entries"])
        self.assertEqual(3, self.client.get(f"{API_PREFIX}/log").json()["total"])

    def test_export_csv(self) -> None:
        self._post_reports(_report(0x123, b"\x01\x02"))
        response = self.client.get(f"{API_PREFIX}/export/csv")
        self.assertEqual(200, response.status_code)
        self.assertTrue(response.headers["content-type"].startswith("text/csv"))
        self.assertIn('filename="canlogger-20240506-070809.csv"', response.headers["content-disposition"])
        rows = list(csv.reader(io.StringIO(response.text)))
        self.assertEqual(CSV_HEADER.split(","), rows[0])
        self.assertEqual(["07:08:09.010", "0.000000", "123", "STD", "2", "01 02"], rows[1])

    def test_export_trc_and_asc(self) -> None:
        self._post_reports(_report(0x123, b"\x01"))
        self.bridge.log_system("Read Error")
        trc = self.client.get(f"{API_PREFIX}/export/trc").text
        self.assertTrue(trc.startswith(";$FILEVERSION=1.1\n"))
        self.assertIn("     1)          0  Rx       123  STD  1  01\n", trc)
        self.assertIn(";   [----] Read Error\n", trc)

        asc = self.client.get(f"{API_PREFIX}/export/asc").text
        self.assertEqual("date Mon May 06 07:08:09.010 2024\n0.0000 1 123 Rx d 1 01\n// Read Error\n", asc)

    def test_export_uses_one_consistent_view_of_the_log(self) -> None:
        store = _InterleavingLogStore(clock=_SteppingClock())
        self.bridge = Bridge(store, self.transport)
        self._post_reports(_report(0x1, b"") + _report(0x2, b""))
        store.interleave = True
        trc = self.client.get(f"{API_PREFIX}/export/trc").text
        body = [line for line in trc.splitlines() if not line.startswith(";")]
        self.assertEqual(
            [
                "     1)          0  Rx       001  STD  0",
                "     2)        100  Rx       002  STD  0",
            ],
            body,
        )

    def test_export_empty_log_renders_headers(self) -> None:
        response = self.client.get(f"{API_PREFIX}/export/csv")
        self.assertEqual(200, response.status_code)
        self.assertEqual(CSV_HEADER + "\n", response.text)

    def test_export_unknown_format_rejected(self) -> None:
        self.assertEqual(422, self.client.get(f"{API_PREFIX}/export/blf").status_code)

    def test_export_internal_error_returns_500(self) -> None:
        self._post_reports(_report(0x123, b""))
        with patch(f"{__name__}.render_csv", side_effect=RuntimeError("boom")):
            response = self.client.get(f"{API_PREFIX}/export/csv")
        self.assertEqual(500, response.status_code)

    def test_periodic_start_and_stop(self) -> None:
        response = self.client.put(
            f"{API_PREFIX}/periodic",
            json={"interval_ms": 50, "id": "123", "kind": "EXT", "data": "01"},
        )
        self.assertEqual(200, response.status_code)
        body = response.json()
        self.assertTrue(body["running"])
        self.assertEqual(50, body["interval_ms"])
        self.assertEqual({"id": "123", "kind": "EXT", "data": "01"}, body["request"])
        self.assertTrue(self.client.get(f"{API_PREFIX}/periodic").json()["running"])

        response = self.client.put(f"{API_PREFIX}/periodic", json={"interval_ms": 0})
        self.assertEqual({"running": False, "interval_ms": None, "request": None}, response.json())

    def test_periodic_rejects_negative_interval(self) -> None:
        response = self.client.put(f"{API_PREFIX}/periodic", json={"interval_ms": -1})
        self.assertEqual(422, response.status_code)

    def test_invalid_bridge_state_returns_500(self) -> None:
        self.app.dependency_overrides.clear()
        saved = self.app.state.bridge
        self.app.state.bridge = object()
        try:
            response = self.client.get(f"{API_PREFIX}/log")
        finally:
            self.app.state.bridge = saved
        self.assertEqual(500, response.status_code)

    def test_lifespan_starts_reader_and_closes_bridge(self) -> None:
        transport = LoopbackTransport(echo=True)
        bridge = Bridge(LogStore(), transport)
        app = create_app(bridge)
        with _import_test_client_class()(app) as client:
            response = client.post(f"{API_PREFIX}/send", json={"id": "10", "kind": "STD", "data": "AA"})
            self.assertEqual("TX", response.json()["type"])
            deadline = time.monotonic() + 5.0
            while len(bridge.store) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            self.assertEqual(["TX", "STD"], [entry.type.value for entry in bridge.store.snapshot()])
        self.assertFalse(transport.is_open)


if __name__ == "__main__":
    unittest.main(verbosity=2)
