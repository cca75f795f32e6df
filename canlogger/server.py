from __future__ import annotations

import argparse
import logging
import os
import sys
import tempfile
import time
import types
import unittest
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import Mock, patch

from fastapi import FastAPI

from canlogger.bridge import Bridge, LoopbackTransport
from canlogger.log_store import LogStore
from canlogger.rest_api import create_app
from canlogger.trace_export import ASC_DEFAULT_CHANNEL

LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "./canlogger.log"
DEFAULT_LOG_MAX_BYTES = 16 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

ENV_HOST = "CANLOGGER_HOST"
ENV_PORT = "CANLOGGER_PORT"
ENV_ROOT_PATH = "CANLOGGER_ROOT_PATH"
ENV_LOG_LEVEL = "CANLOGGER_LOG_LEVEL"
ENV_LOG_FILE = "CANLOGGER_LOG_FILE"
ENV_LOG_MAX_BYTES = "CANLOGGER_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "CANLOGGER_LOG_BACKUP_COUNT"
ENV_ASC_CHANNEL = "CANLOGGER_ASC_CHANNEL"
ENV_LOOPBACK_ECHO = "CANLOGGER_LOOPBACK_ECHO"

LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(process)7d | %(name)-24s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}
_ANSI_RESET = "\x1b[0m"
_ANSI_DIM_BLUE = "\x1b[2;34m"
_ANSI_BY_LEVEL = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}


@dataclass(frozen=True)
class ServeConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    root_path: str = ""
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: str = DEFAULT_LOG_FILE
    log_max_bytes: int = DEFAULT_LOG_MAX_BYTES
    log_backup_count: int = DEFAULT_LOG_BACKUP_COUNT
    asc_channel: int = ASC_DEFAULT_CHANNEL
    loopback_echo: bool = True
    """Echo sent reports back as received frames, emulating an interface in loopback mode."""


class _UTCFormatter(logging.Formatter):
    converter = time.gmtime


class _ColorFormatter(_UTCFormatter):
    """
    Colors the level and logger-name columns of the pipe-delimited first line.
    """

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        head, newline, rest = rendered.partition("\n")
        columns = head.split(" | ")
        if len(columns) < 5:
            return rendered
        columns[1] = _ANSI_BY_LEVEL.get(record.levelname, _ANSI_BY_LEVEL["INFO"]) + columns[1] + _ANSI_RESET
        columns[3] = _ANSI_DIM_BLUE + columns[3] + _ANSI_RESET
        return " | ".join(columns) + newline + rest


def _parse_port(value: str) -> int:
    try:
        out = int(value)
    except ValueError as ex:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from ex
    if not (1 <= out <= 65535):
        raise argparse.ArgumentTypeError(f"port out of range [1, 65535]: {out}")
    return out


def _parse_positive_int(value: str, *, field_name: str) -> int:
    try:
        out = int(value)
    except ValueError as ex:
        raise argparse.ArgumentTypeError(f"invalid {field_name}: {value!r}") from ex
    if out <= 0:
        raise argparse.ArgumentTypeError(f"{field_name} must be > 0: {out}")
    return out


def _parse_log_level(value: str) -> str:
    out = value.upper()
    if out not in _VALID_LOG_LEVELS:
        raise argparse.ArgumentTypeError(
            f"invalid log level {value!r}; expected one of: {', '.join(_VALID_LOG_LEVELS)}"
        )
    return out


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_WORDS:
        return True
    if normalized in _FALSE_WORDS:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean: {value!r}")


def parse_serve_config(argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None) -> ServeConfig:
    env_map = os.environ if env is None else env
    defaults = ServeConfig()

    def from_env(key: str, fallback: object) -> str:
        return env_map.get(key, str(fallback))

    parser = argparse.ArgumentParser(prog="canlogger serve", description="Run the CAN logger REST API server")
    parser.add_argument("--host", default=from_env(ENV_HOST, defaults.host), help=f"TCP bind host (env: {ENV_HOST})")
    parser.add_argument(
        "--port",
        default=_parse_port(from_env(ENV_PORT, defaults.port)),
        type=_parse_port,
        help=f"TCP bind port in range [1, 65535] (env: {ENV_PORT})",
    )
    parser.add_argument(
        "--root-path",
        default=from_env(ENV_ROOT_PATH, defaults.root_path),
        help=f"ASGI root path (env: {ENV_ROOT_PATH})",
    )
    parser.add_argument(
        "--log-level",
        default=_parse_log_level(from_env(ENV_LOG_LEVEL, defaults.log_level)),
        type=_parse_log_level,
        help=f"Log threshold (env: {ENV_LOG_LEVEL})",
    )
    parser.add_argument(
        "--log-file",
        default=from_env(ENV_LOG_FILE, defaults.log_file),
        help=f"Rotating log file path (env: {ENV_LOG_FILE})",
    )
    parser.add_argument(
        "--log-max-bytes",
        default=_parse_positive_int(from_env(ENV_LOG_MAX_BYTES, defaults.log_max_bytes), field_name="log max bytes"),
        type=lambda raw: _parse_positive_int(raw, field_name="log max bytes"),
        help=f"Rotate the log file when it exceeds this size (env: {ENV_LOG_MAX_BYTES})",
    )
    parser.add_argument(
        "--log-backup-count",
        default=_parse_positive_int(
            from_env(ENV_LOG_BACKUP_COUNT, defaults.log_backup_count), field_name="log backup count"
        ),
        type=lambda raw: _parse_positive_int(raw, field_name="log backup count"),
        help=f"Rotated log files to keep (env: {ENV_LOG_BACKUP_COUNT})",
    )
    parser.add_argument(
        "--asc-channel",
        default=_parse_positive_int(from_env(ENV_ASC_CHANNEL, defaults.asc_channel), field_name="ASC channel"),
        type=lambda raw: _parse_positive_int(raw, field_name="ASC channel"),
        help=f"Channel number written to ASC exports (env: {ENV_ASC_CHANNEL})",
    )
    parser.add_argument(
        "--loopback-echo",
        default=_parse_bool(from_env(ENV_LOOPBACK_ECHO, "true")),
        action=argparse.BooleanOptionalAction,
        help=f"Deliver sent reports back as received frames (env: {ENV_LOOPBACK_ECHO})",
    )

    parsed = parser.parse_args(list(argv) if argv is not None else None)
    return ServeConfig(
        host=str(parsed.host),
        port=int(parsed.port),
        root_path=str(parsed.root_path),
        log_level=str(parsed.log_level),
        log_file=str(parsed.log_file),
        log_max_bytes=int(parsed.log_max_bytes),
        log_backup_count=int(parsed.log_backup_count),
        asc_channel=int(parsed.asc_channel),
        loopback_echo=bool(parsed.loopback_echo),
    )


def _should_color_stderr(stream: object) -> bool:
    isatty_method = getattr(stream, "isatty", None)
    if not callable(isatty_method):
        return False
    try:
        return bool(isatty_method())
    except Exception:
        return False


def configure_logging(config: ServeConfig) -> None:
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"invalid log level {config.log_level!r}")

    log_path = Path(config.log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except Exception:
            LOGGER.error("Failed to close pre-existing logging handler", exc_info=True)

    stderr_handler = logging.StreamHandler()
    stderr_formatter_class = _ColorFormatter if _should_color_stderr(stderr_handler.stream) else _UTCFormatter
    stderr_handler.setFormatter(stderr_formatter_class(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

    file_handler = RotatingFileHandler(
        filename=str(log_path),
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_UTCFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

    for handler in (stderr_handler, file_handler):
        handler.setLevel(level)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(logger_name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
        uv_logger.setLevel(level)

    LOGGER.info(
        "Logging configured: level=%s file=%s rotate_max_bytes=%d rotate_backups=%d",
        config.log_level,
        log_path,
        config.log_max_bytes,
        config.log_backup_count,
    )


def build_bridge(config: ServeConfig) -> Bridge:
    LOGGER.info("Using loopback transport: echo=%s", config.loopback_echo)
    return Bridge(LogStore(), LoopbackTransport(echo=config.loopback_echo))


def serve(config: ServeConfig) -> None:
    configure_logging(config)
    application = create_app(build_bridge(config), asc_channel=config.asc_channel)

    try:
        import uvicorn
    except Exception as ex:
        LOGGER.critical("Failed to import uvicorn", exc_info=True)
        raise RuntimeError("uvicorn is required to run the server") from ex

    LOGGER.info("Starting server on host=%s port=%d root_path=%r", config.host, config.port, config.root_path)
    uvicorn.run(
        app=application,
        host=config.host,
        port=config.port,
        proxy_headers=True,
        forwarded_allow_ips="*",
        root_path=config.root_path,
        log_config=None,
    )


def create_app_from_env() -> FastAPI:
    config = parse_serve_config([], os.environ)
    configure_logging(config)
    LOGGER.info("Creating ASGI app from environment configuration")
    return create_app(build_bridge(config), asc_channel=config.asc_channel)


class _ServerTests(unittest.TestCase):
    def setUp(self) -> None:
        root_logger = logging.getLogger()
        self._saved_handlers = list(root_logger.handlers)
        self._saved_level = root_logger.level

    def tearDown(self) -> None:
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if handler not in self._saved_handlers:
                root_logger.removeHandler(handler)
                handler.close()
        for handler in self._saved_handlers:
            if handler not in root_logger.handlers:
                root_logger.addHandler(handler)
        root_logger.setLevel(self._saved_level)

    def test_parse_serve_config_defaults(self) -> None:
        config = parse_serve_config([], env={})
        self.assertEqual(ServeConfig(), config)

    def test_parse_serve_config_reads_environment(self) -> None:
        env = {
            ENV_HOST: "127.0.0.1",
            ENV_PORT: "9001",
            ENV_ROOT_PATH: "/can",
            ENV_LOG_LEVEL: "warning",
            ENV_LOG_FILE: "/tmp/canlogger.log",
            ENV_LOG_MAX_BYTES: "4096",
            ENV_LOG_BACKUP_COUNT: "7",
            ENV_ASC_CHANNEL: "3",
            ENV_LOOPBACK_ECHO: "no",
        }
        config = parse_serve_config([], env=env)
        self.assertEqual(
            ServeConfig(
                host="127.0.0.1",
                port=9001,
                root_path="/can",
                log_level="WARNING",
                log_file="/tmp/canlogger.log",
                log_max_bytes=4096,
                log_backup_count=7,
                asc_channel=3,
                loopback_echo=False,
            ),
            config,
        )

    def test_parse_serve_config_cli_overrides_environment(self) -> None:
        env = {ENV_PORT: "9001", ENV_LOG_LEVEL: "warning", ENV_LOOPBACK_ECHO: "0"}
        config = parse_serve_config(
            ["--port", "8123", "--log-level", "debug", "--loopback-echo", "--asc-channel", "2"],
            env=env,
        )
        self.assertEqual(8123, config.port)
        self.assertEqual("DEBUG", config.log_level)
        self.assertTrue(config.loopback_echo)
        self.assertEqual(2, config.asc_channel)

    def test_parse_serve_config_rejects_invalid_values(self) -> None:
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_serve_config([], env={ENV_PORT: "70000"})
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_serve_config([], env={ENV_LOOPBACK_ECHO: "maybe"})
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_serve_config([], env={ENV_LOG_LEVEL: "chatty"})
        with patch("sys.stderr"), self.assertRaises(SystemExit):
            parse_serve_config(["--asc-channel", "0"], env={})

    def test_build_bridge_uses_loopback_echo_setting(self) -> None:
        bridge = build_bridge(ServeConfig(loopback_echo=False))
        try:
            self.assertIsInstance(bridge.transport, LoopbackTransport)
            self.assertEqual(0, len(bridge.store))
        finally:
            bridge.close()

    def test_configure_logging_installs_stream_and_rotating_handlers(self) -> None:
        root_logger = logging.getLogger()
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "logs" / "canlogger.log"
            with patch("canlogger.server._should_color_stderr", return_value=False):
                configure_logging(ServeConfig(log_file=str(log_file), log_level="INFO"))

            self.assertEqual(2, len(root_logger.handlers))
            self.assertTrue(any(isinstance(handler, RotatingFileHandler) for handler in root_logger.handlers))
            stream_handlers = [
                handler
                for handler in root_logger.handlers
                if isinstance(handler, logging.StreamHandler) and not isinstance(handler, RotatingFileHandler)
            ]
            self.assertEqual(1, len(stream_handlers))
            self.assertNotIsInstance(stream_handlers[0].formatter, _ColorFormatter)

            LOGGER.info("server logging smoke test")
            for handler in root_logger.handlers:
                handler.flush()
            contents = log_file.read_text(encoding="utf-8")
            self.assertIn("server logging smoke test", contents)
            self.assertIn("| INFO", contents)
            self.assertNotIn("\x1b[", contents)
            for handler in list(root_logger.handlers):
                root_logger.removeHandler(handler)
                handler.close()

    def test_configure_logging_uses_color_formatter_for_tty_stderr(self) -> None:
        root_logger = logging.getLogger()
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "canlogger.log"
            with patch("canlogger.server._should_color_stderr", return_value=True):
                configure_logging(ServeConfig(log_file=str(log_file)))
            formatters = [
                handler.formatter for handler in root_logger.handlers if not isinstance(handler, RotatingFileHandler)
            ]
            self.assertEqual(1, len(formatters))
            formatter = formatters[0]
            assert formatter is not None
            self.assertIsInstance(formatter, _ColorFormatter)
            record = logging.LogRecord("canlogger.server", logging.WARNING, __file__, 0, "sample", (), None)
            rendered = formatter.format(record)
            self.assertIn("\x1b[33m", rendered)
            self.assertIn("canlogger.server", rendered)
            for handler in list(root_logger.handlers):
                root_logger.removeHandler(handler)
                handler.close()

    def test_should_color_stderr_uses_isatty_when_available(self) -> None:
        class _FakeStream:
            def __init__(self, out: bool) -> None:
                self._out = out

            def isatty(self) -> bool:
                return self._out

        class _BrokenStream:
            def isatty(self) -> bool:
                raise OSError("closed")

        self.assertTrue(_should_color_stderr(_FakeStream(True)))
        self.assertFalse(_should_color_stderr(_FakeStream(False)))
        self.assertFalse(_should_color_stderr(_BrokenStream()))
        self.assertFalse(_should_color_stderr(object()))

    def test_serve_invokes_uvicorn(self) -> None:
        config = ServeConfig(host="127.0.0.1", port=8123, root_path="/can", asc_channel=4)
        fake_uvicorn = types.SimpleNamespace(run=Mock())
        fake_bridge = Mock()
        fake_app = object()

        with (
            patch("canlogger.server.configure_logging") as mocked_configure,
            patch("canlogger.server.build_bridge", return_value=fake_bridge) as mocked_build,
            patch("canlogger.server.create_app", return_value=fake_app) as mocked_create_app,
            patch.dict(sys.modules, {"uvicorn": fake_uvicorn}),
        ):
            serve(config)

        mocked_configure.assert_called_once_with(config)
        mocked_build.assert_called_once_with(config)
        mocked_create_app.assert_called_once_with(fake_bridge, asc_channel=4)
        kwargs = fake_uvicorn.run.call_args.kwargs
        self.assertIs(fake_app, kwargs["app"])
        self.assertEqual("127.0.0.1", kwargs["host"])
        self.assertEqual(8123, kwargs["port"])
        self.assertEqual("/can", kwargs["root_path"])
        self.assertIsNone(kwargs["log_config"])

    def test_create_app_from_env_builds_application(self) -> None:
        config = ServeConfig()
        fake_bridge = Mock()
        fake_app = Mock(spec=FastAPI)

        with (
            patch("canlogger.server.parse_serve_config", return_value=config) as mocked_parse,
            patch("canlogger.server.configure_logging") as mocked_logging,
            patch("canlogger.server.build_bridge", return_value=fake_bridge) as mocked_build,
            patch("canlogger.server.create_app", return_value=fake_app) as mocked_create_app,
        ):
            out = create_app_from_env()

        mocked_parse.assert_called_once()
        mocked_logging.assert_called_once_with(config)
        mocked_build.assert_called_once_with(config)
        mocked_create_app.assert_called_once_with(fake_bridge, asc_channel=config.asc_channel)
        self.assertIs(fake_app, out)


if __name__ == "__main__":
    unittest.main(verbosity=2)
