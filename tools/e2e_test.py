#!/usr/bin/env python3
"""
Standalone end-to-end check for canlogger.

Runs the real `canlogger serve` process, replays a generated capture through
`tools/canlogger_feed.py`, sends one frame over the REST API and then verifies the log,
the unique view and all three trace exports.
"""

from __future__ import annotations

import argparse
import csv
import io
import json
import logging
import socket
import subprocess
import sys
import tempfile
import time
import urllib.request
from pathlib import Path

from canlogger.codec import encode, pad_report
from canlogger.model import CanFrame, FrameKind

LOGGER = logging.getLogger("canlogger_e2e")
API = "/canlogger/api/v1"
DEFAULT_FEED_SCRIPT_PATH = Path("tools") / "canlogger_feed.py"
DEFAULT_READINESS_TIMEOUT_S = 30.0
CAPTURE_FRAMES = (
    CanFrame(can_id=0x123, kind=FrameKind.STANDARD, data=bytes([0x11, 0x22, 0x33])),
    CanFrame(can_id=0x18DAF110, kind=FrameKind.EXTENDED, data=bytes([0x02, 0x10, 0x03])),
    CanFrame(can_id=0x123, kind=FrameKind.STANDARD, data=bytes([0x44])),
    CanFrame(can_id=0x7FF, kind=FrameKind.STANDARD),
)


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="End-to-end canlogger test: serve + feed + send + export")
    parser.add_argument("--feed-script", default=str(DEFAULT_FEED_SCRIPT_PATH), help="Path to the replay tool")
    parser.add_argument(
        "--readiness-timeout-s",
        type=float,
        default=DEFAULT_READINESS_TIMEOUT_S,
        help="Server readiness timeout in seconds",
    )
    return parser.parse_args(argv)


def _pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def _write_capture(path: Path) -> None:
    with path.open("wb") as file_obj:
        for frame in CAPTURE_FRAMES:
            encoded = encode(frame)
            assert isinstance(encoded, bytes)
            file_obj.write(pad_report(encoded))
    LOGGER.debug("Capture written: path=%s reports=%d", path, len(CAPTURE_FRAMES))


def _request(method: str, url: str, body: object | None = None) -> bytes:
    data = None if body is None else json.dumps(body).encode("utf-8")
    request = urllib.request.Request(url=url, data=data, method=method)
    if data is not None:
        request.add_header("Content-Type", "application/json")
    LOGGER.debug("HTTP %s %s", method, url)
    with urllib.request.urlopen(request, timeout=10.0) as response:
        return response.read()


def _get_json(url: str) -> dict[str, object]:
    return json.loads(_request("GET", url))


def _wait_for_server_ready(base_url: str, process: subprocess.Popen[bytes], timeout_s: float) -> None:
    deadline = time.monotonic() + timeout_s
    last_error: Exception | None = None
    while time.monotonic() < deadline:
        if process.poll() is not None:
            raise RuntimeError(f"server process exited before becoming ready: return_code={process.returncode}")
        try:
            _get_json(f"{base_url}{API}/log?limit=1")
            LOGGER.info("Server is ready: base_url=%s", base_url)
            return
        except Exception as ex:
            last_error = ex
            time.sleep(0.2)
    raise RuntimeError(f"server did not become ready within {timeout_s:.1f}s: last_error={last_error!r}")


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    LOGGER.info("Terminating server process pid=%d", process.pid)
    process.terminate()
    try:
        process.wait(timeout=5.0)
    except subprocess.TimeoutExpired:
        LOGGER.warning("Server did not terminate in time; killing pid=%d", process.pid)
        process.kill()
        process.wait(timeout=5.0)


def _tail(path: Path, max_lines: int = 120) -> str:
    if not path.exists():
        return f"<missing: {path}>"
    return "\n".join(path.read_text(encoding="utf-8", errors="replace").splitlines()[-max_lines:])


def _verify(base_url: str) -> None:
    log = _get_json(f"{base_url}{API}/log")
    entries = log["entries"]
    assert isinstance(entries, list)
    ids_and_types = [(entry["id"], entry["type"]) for entry in entries]
    expected = [("123", "STD"), ("18DAF110", "EXT"), ("123", "STD"), ("7FF", "STD"), ("456", "TX")]
    if ids_and_types != expected:
        raise AssertionError(f"unexpected log contents: {ids_and_types!r}")
    if entries[4]["data"] != "DE AD" or entries[1]["data"] != "02 10 03":
        raise AssertionError(f"unexpected data columns: {entries!r}")

    unique = _get_json(f"{base_url}{API}/unique")["entries"]
    assert isinstance(unique, list)
    counts = {(item["id"], item["type"]): item["count"] for item in unique}
    if counts.get(("123", "STD")) != 2 or len(counts) != 4:
        raise AssertionError(f"unexpected unique view: {unique!r}")

    csv_rows = list(csv.reader(io.StringIO(_request("GET", f"{base_url}{API}/export/csv").decode("utf-8"))))
    if csv_rows[0] != ["Timestamp", "Offset", "ID", "Type", "DLC", "Data"] or len(csv_rows) != 6:
        raise AssertionError(f"unexpected CSV export: {csv_rows!r}")

    trc = _request("GET", f"{base_url}{API}/export/trc").decode("utf-8")
    trc_body = [line for line in trc.splitlines() if not line.startswith(";")]
    if not trc.startswith(";$FILEVERSION=1.1\n") or len(trc_body) != 5 or "18DAF110  EXT" not in trc_body[1]:
        raise AssertionError(f"unexpected TRC export:\n{trc}")

    asc = _request("GET", f"{base_url}{API}/export/asc").decode("utf-8").splitlines()
    if not asc[0].startswith("date ") or len(asc) != 6 or " 18DAF110x Rx d 3 02 10 03" not in asc[2]:
        raise AssertionError(f"unexpected ASC export: {asc!r}")
    LOGGER.info("Verification succeeded: entries=%d unique=%d", len(entries), len(unique))


def run(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    feed_script_path = Path(args.feed_script)
    if not feed_script_path.exists():
        LOGGER.error("Feed script is missing: %s", feed_script_path)
        return 1

    with tempfile.TemporaryDirectory(prefix="canlogger-e2e-") as temp_dir:
        temp_root = Path(temp_dir)
        capture_path = temp_root / "capture.bin"
        log_path = temp_root / "canlogger-e2e.log"
        stdout_path = temp_root / "canlogger-e2e.stdout.log"
        stderr_path = temp_root / "canlogger-e2e.stderr.log"
        port = _pick_free_port()
        base_url = f"http://127.0.0.1:{port}"
        _write_capture(capture_path)

        with stdout_path.open("wb") as stdout_file, stderr_path.open("wb") as stderr_file:
            server_process = subprocess.Popen(
                [
                    sys.executable,
                    "-m",
                    "canlogger",
                    "serve",
                    "--host",
                    "127.0.0.1",
                    "--port",
                    str(port),
                    "--log-file",
                    str(log_path),
                    "--no-loopback-echo",
                ],
                stdout=stdout_file,
                stderr=stderr_file,
            )
            try:
                _wait_for_server_ready(base_url, server_process, float(args.readiness_timeout_s))
                command = [sys.executable, str(feed_script_path), "--server", base_url, str(capture_path)]
                LOGGER.info("Running feed tool: %s", command)
                if subprocess.run(command, check=False).returncode != 0:
                    raise RuntimeError("feed tool failed")
                _request("POST", f"{base_url}{API}/send", {"id": "456", "kind": "STD", "data": "de ad"})
                _verify(base_url)
                return 0
            except Exception:
                LOGGER.critical(
                    "E2E test failed.\nServer log tail:\n%s\nServer stdout tail:\n%s\nServer stderr tail:\n%s",
                    _tail(log_path),
                    _tail(stdout_path),
                    _tail(stderr_path),
                    exc_info=True,
                )
                return 1
            finally:
                _terminate_process(server_process)


def main() -> int:
    _configure_logging()
    return run()


if __name__ == "__main__":
    raise SystemExit(main())
