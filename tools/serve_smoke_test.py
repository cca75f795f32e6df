#!/usr/bin/env python3
"""
Smoke test for an installed `canlogger` console script.

Checks that `canlogger --version` works, that `canlogger serve` comes up on a free port and
answers the log endpoint with an empty session, and that it writes its rotating log file.
On failure the server's exit code and captured output are logged.
"""

from __future__ import annotations

import http.client
import json
import logging
import socket
import subprocess
import tempfile
import time
from pathlib import Path

LOGGER = logging.getLogger("canlogger_serve_smoke")
READY_PATH = "/canlogger/api/v1/log?limit=1"
READINESS_TIMEOUT_S = 15.0


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def _fetch_log(port: int) -> dict[str, object] | None:
    connection = http.client.HTTPConnection("127.0.0.1", port, timeout=0.5)
    try:
        connection.request("GET", READY_PATH)
        response = connection.getresponse()
        body = response.read()
    except OSError:
        return None
    finally:
        connection.close()
    if response.status != 200:
        LOGGER.warning("Readiness check returned status=%d; retrying", response.status)
        return None
    return json.loads(body)


def _await_empty_session(port: int, process: subprocess.Popen[str]) -> None:
    deadline = time.monotonic() + READINESS_TIMEOUT_S
    while time.monotonic() < deadline:
        if process.poll() is not None:
            raise RuntimeError(f"server exited during startup: return_code={process.returncode}")
        body = _fetch_log(port)
        if body is not None:
            if body.get("total") != 0 or body.get("entries") != []:
                raise RuntimeError(f"fresh server reported a non-empty session: {body!r}")
            LOGGER.info("Server answered on port=%d with an empty session", port)
            return
        time.sleep(0.1)
    raise RuntimeError(f"server not ready after {READINESS_TIMEOUT_S:.1f}s")


def _shutdown(process: subprocess.Popen[str]) -> tuple[str, str]:
    if process.poll() is None:
        process.terminate()
        try:
            return process.communicate(timeout=5.0)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Server ignored SIGTERM; killing pid=%d", process.pid)
            process.kill()
    return process.communicate(timeout=5.0)


def run() -> int:
    version = subprocess.run(["canlogger", "--version"], capture_output=True, text=True, check=False)
    if version.returncode != 0 or not version.stdout.startswith("canlogger "):
        LOGGER.critical("`canlogger --version` failed: rc=%d output=%r", version.returncode, version.stdout)
        return 1
    LOGGER.info("Installed %s", version.stdout.strip())

    port = _free_port()
    with tempfile.TemporaryDirectory(prefix="canlogger-serve-smoke-") as temp_dir:
        log_file = Path(temp_dir) / "canlogger.log"
        command = ["canlogger", "serve", "--host", "127.0.0.1", "--port", str(port), "--log-file", str(log_file)]
        LOGGER.info("Launching: %s", " ".join(command))
        process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        try:
            _await_empty_session(port, process)
            if not log_file.is_file() or "Starting server" not in log_file.read_text(encoding="utf-8"):
                raise RuntimeError(f"server log file missing or incomplete: {log_file}")
        except Exception:
            stdout_data, stderr_data = _shutdown(process)
            LOGGER.critical(
                "Serve smoke test failed: return_code=%s stdout=%r stderr=%r",
                process.returncode,
                stdout_data,
                stderr_data,
                exc_info=True,
            )
            return 1
        _shutdown(process)
    LOGGER.info("Serve smoke test passed")
    return 0


def main() -> int:
    logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    return run()


if __name__ == "__main__":
    raise SystemExit(main())
