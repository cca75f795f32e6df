from __future__ import annotations

import logging
import queue
import threading
import time
import unittest
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from canlogger.codec import REPORT_BYTES, CodecError, decode, encode, pad_report, parse_byte_string
from canlogger.log_store import LogStore
from canlogger.model import CanFrame, Direction, EntryType, FrameKind, LogEntry

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 0.25
LOOPBACK_HISTORY = 256


class TransportError(Exception):
    pass


class Transport(ABC):
    """
    Moves 64-byte reports to and from the CAN interface.
    Connection management belongs to the implementation; the bridge only reads and writes.
    """

    @abstractmethod
    def write(self, report: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    def read(self, timeout: float | None = None) -> bytes | None:
        """
        Blocks for at most ``timeout`` seconds; returns None on timeout.
        Raises ``TransportError`` when the device is gone.
        """
        raise NotImplementedError

    @property
    @abstractmethod
    def is_open(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LoopbackTransport(Transport):
    """
    In-memory stand-in for the device. With ``echo`` enabled every written report is
    delivered back as an inbound report, like an interface in loopback mode. ``written`` keeps
    only the newest ``history`` outbound reports.
    """

    def __init__(self, echo: bool = True, history: int = LOOPBACK_HISTORY) -> None:
        self._echo = echo
        self._inbound: queue.Queue[bytes] = queue.Queue()
        self._closed = threading.Event()
        self.written: deque[bytes] = deque(maxlen=history)

    @property
    def is_open(self) -> bool:
        return not self._closed.is_set()

    def write(self, report: bytes) -> None:
        if self._closed.is_set():
            raise TransportError("transport closed")
        if len(report) != REPORT_BYTES:
            raise TransportError(f"report must be {REPORT_BYTES} bytes, got {len(report)}")
        self.written.append(bytes(report))
        if self._echo:
            self._inbound.put(bytes(report))

    def inject(self, report: bytes) -> None:
        self._inbound.put(bytes(report))

    def read(self, timeout: float | None = None) -> bytes | None:
        if self._closed.is_set():
            raise TransportError("transport closed")
        try:
            return self._inbound.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()


@dataclass(frozen=True)
class SendRequest:
    id_text: str
    kind: FrameKind
    data_text: str


class Bridge:
    """
    Connects a transport to a log store. All appends go through ``_append_lock`` so the read
    loop, explicit sends and the periodic sender never append concurrently. A send holds the
    lock across the transport write, so its TX entry always precedes any echo of the same report.
    """

    def __init__(self, store: LogStore, transport: Transport) -> None:
        self.store = store
        self.transport = transport
        self.periodic = PeriodicSender(self)
        self._append_lock = threading.RLock()
        self._stop = threading.Event()
        self._reader: threading.Thread | None = None

    def _append(self, frame: CanFrame, direction: Direction | None = None) -> LogEntry:
        with self._append_lock:
            return self.store.append(frame, direction)

    def log_system(self, message: str) -> LogEntry:
        return self._append(CanFrame.system(message))

    def receive(self, report: bytes) -> LogEntry | None:
        frame = decode(report)
        if isinstance(frame, CodecError):
            LOGGER.debug("Inbound report ignored: len=%d error=%s", len(report), frame.kind.name)
            return None
        return self._append(frame)

    def send(self, id_text: str, kind: FrameKind, data_text: str) -> LogEntry:
        """
        Sends one frame built from textual input. Parse and transport failures are logged as
        SYS entries and returned instead of raised; a TX entry is logged only after the write succeeds.
        """
        if kind is FrameKind.SYSTEM:
            raise ValueError("only standard or extended frames can be sent")

        try:
            can_id = int(id_text.strip(), 16)
        except ValueError:
            LOGGER.warning("Invalid ID %r, defaulting to 0", id_text)
            can_id = 0

        data = parse_byte_string(data_text)
        if isinstance(data, CodecError):
            LOGGER.error("Send rejected: %s", data)
            return self.log_system(str(data))

        frame = CanFrame(can_id=can_id, kind=kind, data=bytes(data), direction=Direction.TX)
        encoded = encode(frame)
        assert isinstance(encoded, bytes)
        try:
            report = pad_report(encoded)
        except ValueError as ex:
            LOGGER.error("Send rejected: %s", ex)
            return self.log_system(str(ex))

        with self._append_lock:
            try:
                self.transport.write(report)
            except TransportError as ex:
                LOGGER.error("Transport write failed: id=%s kind=%s error=%s", id_text, kind.name, ex)
                return self.log_system(str(ex) or "Send Error")
            return self._append(frame, Direction.TX)

    def listen(self, stop: threading.Event, poll_interval_s: float = DEFAULT_POLL_INTERVAL_S) -> int:
        """
        Read loop; returns the number of frames logged. A transport failure is logged as a SYS
        entry and ends the loop.
        """
        received = 0
        LOGGER.info("Read loop started")
        while not stop.is_set() and self.transport.is_open:
            try:
                report = self.transport.read(timeout=poll_interval_s)
            except TransportError as ex:
                if stop.is_set():
                    break
                LOGGER.error("Transport read failed; stopping read loop: %s", ex)
                self.log_system(str(ex) or "Read Error")
                break
            if report is None:
                continue
            if self.receive(report) is not None:
                received += 1
        LOGGER.info("Read loop finished: frames=%d", received)
        return received

    def start(self) -> None:
        if self._reader is not None and self._reader.is_alive():
            return
        self._stop.clear()
        self._reader = threading.Thread(target=self.listen, args=(self._stop,), name="canlogger-reader", daemon=True)
        self._reader.start()

    def close(self) -> None:
        self.periodic.stop()
        self._stop.set()
        self.transport.close()
        if self._reader is not None:
            self._reader.join(timeout=5.0)
            if self._reader.is_alive():
                LOGGER.warning("Read loop did not stop within timeout")
            self._reader = None
        LOGGER.info("Bridge closed")


class PeriodicSender:
    def __init__(self, bridge: Bridge) -> None:
        self._bridge = bridge
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.interval_s: float | None = None
        self.request: SendRequest | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_s: float, request: SendRequest) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval must be > 0: {interval_s}")
        with self._lock:
            self._stop_locked()
            self._stop = threading.Event()
            self.interval_s = interval_s
            self.request = request
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop, interval_s, request),
                name="canlogger-periodic",
                daemon=True,
            )
            self._thread.start()
        LOGGER.info(
            "Periodic send started: interval_s=%.3f id=%r kind=%s data=%r",
            interval_s,
            request.id_text,
            request.kind.name,
            request.data_text,
        )

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        self._thread = None
        self.interval_s = None
        self.request = None
        LOGGER.info("Periodic send stopped")

    def _run(self, stop: threading.Event, interval_s: float, request: SendRequest) -> None:
        while not stop.wait(interval_s):
            self._bridge.send(request.id_text, request.kind, request.data_text)


class _ScriptedTransport(Transport):
    def __init__(self, reads: Iterable[bytes | None | Exception]) -> None:
        self._reads = list(reads)
        self.written: list[bytes] = []
        self.fail_writes = False

    @property
    def is_open(self) -> bool:
        return True

    def write(self, report: bytes) -> None:
        if self.fail_writes:
            raise TransportError("")
        self.written.append(report)

    def read(self, timeout: float | None = None) -> bytes | None:
        if not self._reads:
            raise TransportError("device lost")
        item = self._reads.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class _BridgeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = LogStore()

    def test_send_writes_padded_report_and_logs_tx(self) -> None:
        transport = LoopbackTransport(echo=False)
        bridge = Bridge(self.store, transport)
        entry = bridge.send("18daf110", FrameKind.EXTENDED, "02 10 03")
        self.assertEqual(EntryType.TX, entry.type)
        self.assertEqual("18DAF110", entry.id_display)
        self.assertEqual("02 10 03", entry.data_display)
        self.assertEqual(1, len(transport.written))
        report = transport.written[0]
        self.assertEqual(REPORT_BYTES, len(report))
        self.assertEqual(bytes([0x10, 0xF1, 0xDA, 0x98, 0x03, 0x02, 0x10, 0x03]), report[:8])

    def test_send_masks_standard_id_and_defaults_bad_id_to_zero(self) -> None:
        bridge = Bridge(self.store, LoopbackTransport(echo=False))
        self.assertEqual("7FF", bridge.send("fff", FrameKind.STANDARD, "00").id_display)
        with self.assertLogs(__name__, level="WARNING"):
            entry = bridge.send("xyz", FrameKind.STANDARD, "01")
        self.assertEqual("000", entry.id_display)

    def test_send_with_bad_data_logs_system_entry_and_writes_nothing(self) -> None:
        transport = LoopbackTransport(echo=False)
        bridge = Bridge(self.store, transport)
        entry = bridge.send("123", FrameKind.STANDARD, "11 zz")
        self.assertEqual(EntryType.SYS, entry.type)
        self.assertEqual('Invalid hex byte "zz"', entry.data_display)
        self.assertEqual(0, len(transport.written))

    def test_send_with_blank_data_logs_system_entry_and_writes_nothing(self) -> None:
        transport = LoopbackTransport(echo=False)
        bridge = Bridge(self.store, transport)
        for blank in ("", "  \t "):
            entry = bridge.send("123", FrameKind.STANDARD, blank)
            self.assertEqual(EntryType.SYS, entry.type)
            self.assertEqual('Invalid hex byte ""', entry.data_display)
        self.assertEqual(0, len(transport.written))
        self.assertEqual([EntryType.SYS, EntryType.SYS], [item.type for item in self.store.snapshot()])

    def test_send_transport_failure_logs_send_error(self) -> None:
        transport = _ScriptedTransport([])
        transport.fail_writes = True
        bridge = Bridge(self.store, transport)
        entry = bridge.send("123", FrameKind.STANDARD, "01")
        self.assertEqual(EntryType.SYS, entry.type)
        self.assertEqual("Send Error", entry.data_display)
        self.assertEqual([EntryType.SYS], [item.type for item in self.store.snapshot()])

    def test_send_oversized_payload_is_rejected(self) -> None:
        transport = LoopbackTransport(echo=False)
        bridge = Bridge(self.store, transport)
        entry = bridge.send("123", FrameKind.STANDARD, " ".join(["00"] * 60))
        self.assertEqual(EntryType.SYS, entry.type)
        self.assertEqual(0, len(transport.written))

    def test_send_system_kind_is_caller_error(self) -> None:
        bridge = Bridge(self.store, LoopbackTransport())
        with self.assertRaises(ValueError):
            bridge.send("----", FrameKind.SYSTEM, "")

    def test_receive_ignores_short_reports(self) -> None:
        bridge = Bridge(self.store, LoopbackTransport())
        self.assertIsNone(bridge.receive(b"\x01\x02"))
        self.assertEqual(0, len(self.store))

    def test_listen_logs_frames_then_read_error(self) -> None:
        reads: list[bytes | None | Exception] = [
            pad_report(bytes([0x23, 0x01, 0x00, 0x00, 0x01, 0xAB])),
            None,
            b"\x00",
            pad_report(bytes([0x01, 0x00, 0x00, 0x80, 0x00])),
        ]
        bridge = Bridge(self.store, _ScriptedTransport(reads))
        received = bridge.listen(threading.Event(), poll_interval_s=0.0)
        self.assertEqual(2, received)
        entries = self.store.snapshot()
        self.assertEqual([EntryType.STD, EntryType.EXT, EntryType.SYS], [entry.type for entry in entries])
        self.assertEqual("00000001", entries[1].id_display)
        self.assertEqual("device lost", entries[2].data_display)

    def test_listen_read_error_without_message_uses_fallback(self) -> None:
        bridge = Bridge(self.store, _ScriptedTransport([TransportError()]))
        bridge.listen(threading.Event(), poll_interval_s=0.0)
        self.assertEqual("Read Error", self.store.snapshot()[0].data_display)

    def test_loopback_echo_through_background_reader(self) -> None:
        bridge = Bridge(self.store, LoopbackTransport(echo=True))
        bridge.start()
        try:
            bridge.send("123", FrameKind.STANDARD, "01 02")
            self.assertTrue(_wait_until(lambda: len(self.store) >= 2))
        finally:
            bridge.close()
        types = [entry.type for entry in self.store.snapshot()]
        self.assertEqual([EntryType.TX, EntryType.STD], types)
        self.assertFalse(bridge.transport.is_open)

    def test_loopback_keeps_bounded_write_history(self) -> None:
        transport = LoopbackTransport(echo=False, history=2)
        bridge = Bridge(self.store, transport)
        for data in ("01", "02", "03"):
            bridge.send("123", FrameKind.STANDARD, data)
        self.assertEqual([b"\x02", b"\x03"], [report[5:6] for report in transport.written])
        self.assertEqual(3, len(self.store))

    def test_periodic_sender_repeats_until_stopped(self) -> None:
        transport = LoopbackTransport(echo=False)
        bridge = Bridge(self.store, transport)
        bridge.periodic.start(0.01, SendRequest("7FF", FrameKind.STANDARD, "AA"))
        try:
            self.assertTrue(bridge.periodic.running)
            self.assertTrue(_wait_until(lambda: len(transport.written) >= 3))
        finally:
            bridge.periodic.stop()
        self.assertFalse(bridge.periodic.running)
        self.assertIsNone(bridge.periodic.request)
        count = len(transport.written)
        time.sleep(0.05)
        self.assertEqual(count, len(transport.written))
        self.assertTrue(all(entry.type is EntryType.TX for entry in self.store.snapshot()))

    def test_periodic_sender_rejects_non_positive_interval(self) -> None:
        bridge = Bridge(self.store, LoopbackTransport())
        with self.assertRaises(ValueError):
            bridge.periodic.start(0, SendRequest("1", FrameKind.STANDARD, ""))

    def test_transport_abstract_methods_raise_not_implemented(self) -> None:
        class _NoopTransport(Transport):
            def write(self, report: bytes) -> None:
                pass

            def read(self, timeout: float | None = None) -> bytes | None:
                return None

            @property
            def is_open(self) -> bool:
                return True

        transport = _NoopTransport()
        with self.assertRaises(NotImplementedError):
            Transport.write(transport, b"")
        with self.assertRaises(NotImplementedError):
            Transport.read(transport)
        with self.assertRaises(NotImplementedError):
            _ = Transport.is_open.fget(transport)  # type: ignore[attr-defined]

        transport.write(b"")
        self.assertIsNone(transport.read())
        self.assertTrue(transport.is_open)
        transport.close()


if __name__ == "__main__":
    unittest.main(verbosity=2)
