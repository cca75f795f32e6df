#!/usr/bin/env python3
"""
canlogger_feed: replay captured CAN interface reports into a running canlogger server.

A capture is a raw binary file made of back-to-back 64-byte reports exactly as read from the
USB interface. Each file is sent in chunks to:
  /canlogger/api/v1/reports

Behavior summary:
  - Files are replayed in the order given on the command line.
  - Chunks are a whole number of reports, so a report never straddles two requests.
  - Network errors and 5xx replies are retried with exponential backoff.
  - A summary with accepted/ignored report counts is logged at the end.
"""
from __future__ import annotations

import argparse
import json
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

REPORTS_PATH = "/canlogger/api/v1/reports"
REPORT_BYTES = 64
CHUNK_REPORTS = 4096
REQUEST_TIMEOUT_S = 30.0
MAX_ATTEMPTS = 5
BASE_BACKOFF_S = 0.5
HELP_HEADER = (__doc__ or "").strip()

LOGGER = logging.getLogger("canlogger_feed")


@dataclass
class FeedStats:
    files: int
    chunks: int = 0
    attempts: int = 0
    retries: int = 0
    accepted: int = 0
    ignored: int = 0
    trailing_bytes: int = 0
    started_monotonic: float = field(default_factory=time.monotonic)


@dataclass
class FeedError(Exception):
    message: str
    retryable: bool
    status_code: int | None = None

    def __str__(self) -> str:
        return self.message


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_positive_int(value: str) -> int:
    try:
        out = int(value, 0)
    except ValueError as ex:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from ex
    if out <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0: {out}")
    return out


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=HELP_HEADER, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--server", required=True, help="Base server URL, e.g., http://127.0.0.1:8000")
    parser.add_argument(
        "--chunk-reports",
        type=_parse_positive_int,
        default=CHUNK_REPORTS,
        help=f"Reports per request (default: {CHUNK_REPORTS})",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every request")
    parser.add_argument("files", nargs="+", help="One or more binary report captures")
    return parser.parse_args(argv)


def _reports_url(server: str) -> str:
    base = server.strip()
    parsed = urllib.parse.urlsplit(base)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"server must be an absolute http(s) URL: {server!r}")
    return base.rstrip("/") + REPORTS_PATH


def _post_chunk(url: str, payload: bytes) -> dict[str, int]:
    request = urllib.request.Request(url=url, data=payload, method="POST")
    request.add_header("Content-Type", "application/octet-stream")
    request.add_header("Accept", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_S) as response:
            body = response.read()
    except urllib.error.HTTPError as ex:
        preview = ex.read().decode("utf-8", errors="replace")[:300]
        raise FeedError(f"http status={ex.code} body={preview!r}", retryable=ex.code >= 500, status_code=ex.code)
    except (urllib.error.URLError, socket.timeout, OSError) as ex:
        raise FeedError(f"network error: {ex}", retryable=True) from ex

    try:
        decoded = json.loads(body)
        return {key: int(decoded[key]) for key in ("accepted", "ignored", "trailing_bytes")}
    except (ValueError, KeyError, TypeError) as ex:
        raise FeedError(f"malformed reply: {body[:300]!r}", retryable=False) from ex


def _post_with_retries(url: str, payload: bytes, stats: FeedStats) -> dict[str, int]:
    for attempt in range(1, MAX_ATTEMPTS + 1):
        stats.attempts += 1
        try:
            return _post_chunk(url, payload)
        except FeedError as ex:
            if not ex.retryable or attempt >= MAX_ATTEMPTS:
                raise
            backoff_s = BASE_BACKOFF_S * (2 ** (attempt - 1))
            stats.retries += 1
            LOGGER.warning(
                "Request failed, retrying: attempt=%d/%d sleep_s=%.1f error=%s", attempt, MAX_ATTEMPTS, backoff_s, ex
            )
            time.sleep(backoff_s)
    raise AssertionError("unreachable")


def feed_file(url: str, path: Path, chunk_reports: int, stats: FeedStats) -> None:
    chunk_bytes = chunk_reports * REPORT_BYTES
    size = path.stat().st_size
    if size % REPORT_BYTES:
        LOGGER.warning("Capture is not a whole number of reports: path=%s trailing_bytes=%d", path, size % REPORT_BYTES)
    with path.open("rb") as file_obj:
        while payload := file_obj.read(chunk_bytes):
            reply = _post_with_retries(url, payload, stats)
            stats.chunks += 1
            stats.accepted += reply["accepted"]
            stats.ignored += reply["ignored"]
            stats.trailing_bytes += reply["trailing_bytes"]
            LOGGER.debug("Chunk sent: path=%s chunk_bytes=%d reply=%s", path, len(payload), reply)
    LOGGER.info("Replayed capture: path=%s bytes=%d", path, size)


def _log_summary(stats: FeedStats, ok: bool) -> None:
    LOGGER.info(
        "Feed %s: files=%d chunks=%d attempts=%d retries=%d accepted=%d ignored=%d trailing_bytes=%d elapsed_s=%.3f",
        "finished" if ok else "FAILED",
        stats.files,
        stats.chunks,
        stats.attempts,
        stats.retries,
        stats.accepted,
        stats.ignored,
        stats.trailing_bytes,
        time.monotonic() - stats.started_monotonic,
    )


def run(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    try:
        url = _reports_url(args.server)
    except ValueError as ex:
        LOGGER.error("%s", ex)
        return 1
    paths = [Path(item) for item in args.files]
    missing = [str(path) for path in paths if not path.is_file()]
    if missing:
        LOGGER.error("Capture files not found: %s", missing)
        return 1

    stats = FeedStats(files=len(paths))
    ok = False
    try:
        for path in paths:
            feed_file(url, path, args.chunk_reports, stats)
        ok = True
    except FeedError as ex:
        LOGGER.error("Feed aborted: status_code=%r error=%s", ex.status_code, ex)
    finally:
        _log_summary(stats, ok)
    return 0 if ok else 1


def main() -> int:
    try:
        return run()
    except Exception:
        LOGGER.critical("Unhandled exception in main", exc_info=True)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
