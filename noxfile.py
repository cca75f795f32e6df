from __future__ import annotations

from pathlib import Path

import nox

PACKAGE_DIR = Path("canlogger")
TOOLS_DIR = Path("tools")
COVERAGE_OMIT = f"*/{PACKAGE_DIR.name}/__main__.py"

nox.options.sessions = ("tests", "serve_smoke", "e2e", "black", "mypy")


def _test_modules() -> list[str]:
    return sorted(f"{PACKAGE_DIR.name}.{path.stem}" for path in PACKAGE_DIR.glob("*.py") if path.stem != "__main__")


@nox.session
def tests(session: nox.Session) -> None:
    session.install(".[test]")
    session.run(
        "coverage",
        "run",
        "--branch",
        "--source",
        PACKAGE_DIR.name,
        "--omit",
        COVERAGE_OMIT,
        "-m",
        "unittest",
        *_test_modules(),
    )
    session.run("coverage", "report", "-m", "--omit", COVERAGE_OMIT, "--fail-under=80")


@nox.session
def serve_smoke(session: nox.Session) -> None:
    session.install(".")
    session.run("python", str(TOOLS_DIR / "serve_smoke_test.py"))


@nox.session
def e2e(session: nox.Session) -> None:
    session.install(".")
    session.run("python", str(TOOLS_DIR / "e2e_test.py"))


@nox.session
def black(session: nox.Session) -> None:
    session.install("black")
    session.run("black", "--check", PACKAGE_DIR.name, str(TOOLS_DIR), "noxfile.py")


@nox.session
def mypy(session: nox.Session) -> None:
    session.install("mypy", ".[test]")
    session.run("mypy", PACKAGE_DIR.name)
