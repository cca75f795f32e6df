from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from canlogger import __version__
from canlogger.server import parse_serve_config, serve


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="canlogger", description="CAN bus USB logger host service")
    parser.add_argument("--version", action="version", version=f"canlogger {__version__}")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser(
        "serve",
        add_help=False,
        help="Run the logger REST API server",
        description="Run the logger REST API server; see 'canlogger serve --help' for options",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _make_parser()
    namespace, rest = parser.parse_known_args(list(sys.argv[1:] if argv is None else argv))
    if namespace.command != "serve":
        parser.print_help()
        return 2
    serve(parse_serve_config(rest))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
