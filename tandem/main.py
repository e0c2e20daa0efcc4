from __future__ import annotations

"""Entry point: runs one shared-timer peer in the terminal.

``tandem host [SESSION]`` advertises a session, ``tandem join SESSION`` mirrors
an existing one, ``tandem solo`` runs a detached local timer.
"""

import argparse
import logging
import signal
import sys

from pydantic import ValidationError
from PyQt6.QtCore import QCoreApplication, QTimer

from tandem.core.config import TandemSettings, get_settings
from tandem.core.replication import ReplicationLayer
from tandem.ui.console import HELP_TEXT, ConsoleView


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tandem", description="Shared Pomodoro timer between peers.")
    sub = parser.add_subparsers(dest="mode", required=True)

    host = sub.add_parser("host", help="host a session")
    host.add_argument("session", nargs="?", default=None, help="session name (random if omitted)")
    join = sub.add_parser("join", help="join a running session")
    join.add_argument("session", help="session name to join")
    sub.add_parser("solo", help="run a local timer without peers")

    for mode_parser in (host, sub.choices["solo"]):
        mode_parser.add_argument("--work", type=int, metavar="MIN", help="work phase length in minutes")
        mode_parser.add_argument("--short-break", type=int, metavar="MIN", help="short break length in minutes")
        mode_parser.add_argument("--long-break", type=int, metavar="MIN", help="long break length in minutes")
        mode_parser.add_argument("--interval", type=int, metavar="N", help="work cycles before a long break")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    return parser


def settings_from_args(args: argparse.Namespace) -> TandemSettings:
    overrides: dict[str, object] = {}
    for option, field in (
        ("work", "work_duration"),
        ("short_break", "short_break_duration"),
        ("long_break", "long_break_duration"),
    ):
        minutes = getattr(args, option, None)
        if minutes is not None:
            overrides[field] = minutes * 60
    if getattr(args, "interval", None) is not None:
        overrides["long_break_interval"] = args.interval
    if args.log_level:
        overrides["log_level"] = args.log_level
    return get_settings(**overrides)


def describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "settings"
        problems.append(f"{field}: {error['msg']}")
    return "invalid settings: " + "; ".join(problems)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    """Builds the replication layer and the console view, then runs the Qt loop."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        parser.error(describe_validation_error(exc))
    configure_logging(settings.log_level)

    app = QCoreApplication(sys.argv[:1])
    layer = ReplicationLayer(settings)
    view = ConsoleView(layer)
    view.quit_requested.connect(app.quit)
    view.attach_stdin()

    # Python signal handlers only run while the interpreter has control
    signal.signal(signal.SIGINT, lambda *_args: app.quit())
    wakeup = QTimer()
    wakeup.timeout.connect(lambda: None)
    wakeup.start(200)

    print(HELP_TEXT)
    if args.mode == "host":
        layer.host_session(args.session)
    elif args.mode == "join":
        layer.join_session(args.session)
    view.refresh()

    code = app.exec()
    layer.leave_session()
    return code


if __name__ == "__main__":
    raise SystemExit(main())
