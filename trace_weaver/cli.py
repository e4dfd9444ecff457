from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from .config import Settings, get_settings
from .emitter import SourceParseError, build, instrument_source, read_source
from .models import LogEvent, SubjectKind

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _resolve_settings(args: argparse.Namespace) -> Settings:
    updates: dict[str, Any] = {}
    if getattr(args, "source", None):
        updates["source_dir"] = Path(args.source)
    if getattr(args, "output", None):
        updates["output_dir"] = Path(args.output)
    if getattr(args, "package", None):
        updates["source_package"] = args.package
    if getattr(args, "disable", False):
        updates["enabled"] = False
    settings = get_settings()
    return settings.model_copy(update=updates) if updates else settings


def _command_build(args: argparse.Namespace) -> int:
    settings = _resolve_settings(args)
    try:
        report = build(settings)
    except ValueError as exc:
        print(f"Build refused: {exc}", file=sys.stderr)
        return 2

    if args.json:
        _print_json({**report.model_dump(mode="json"), "summary": report.summary()})
        return report.exit_code

    summary = report.summary()
    mode = "instrumented" if report.enabled else "mirrored (instrumentation disabled)"
    print(f"Output: {report.output_dir} [{mode}]")
    counts = summary["files"]
    print(
        f"Files: {counts['instrumented']} instrumented, {counts['unchanged']} unchanged, "
        f"{counts['copied']} copied, {counts['failed']} failed"
    )
    print(f"Wrapped: {summary['wrapped']} functions, {summary['endpoints']} endpoint handlers")
    for failure in report.failures:
        print(f"- {failure.path}: {failure.error}")
    return report.exit_code


def _command_instrument(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.is_file():
        print(f"No such file: {path}", file=sys.stderr)
        return 1
    try:
        output = instrument_source(read_source(path), file_name=path.name, settings=_resolve_settings(args))
    except SourceParseError as exc:
        print(f"Failed to parse {exc.path}: {exc.message}", file=sys.stderr)
        return 1
    sys.stdout.write(output)
    return 0


def _read_lines(source: Optional[str]) -> list[str]:
    if source and source != "-":
        return Path(source).read_text(encoding="utf-8").splitlines()
    return sys.stdin.read().splitlines()


def _command_events(args: argparse.Namespace) -> int:
    events = [event for event in map(LogEvent.parse, _read_lines(args.file)) if event is not None]

    if args.json:
        _print_json([event.model_dump(mode="json") for event in events])
        return 0

    if not events:
        print("No trace events found.")
        return 0

    for event in events:
        if event.subject == SubjectKind.FUNCTION:
            subject = f"{event.file} {event.scope + '.' if event.scope else ''}{event.name}"
        else:
            subject = f"{event.verb} {event.path} ({event.file})"
        print(f"- {event.phase.value:<5} | {subject} | {event.payload}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trace-weaver", description="Build-time trace instrumentation")
    subparsers = parser.add_subparsers(dest="command")

    build_parser_ = subparsers.add_parser("build", help="Instrument a source tree into the output directory")
    build_parser_.add_argument("--source", help="Source directory (default: TRACE_WEAVER_SOURCE_DIR or .)")
    build_parser_.add_argument("--output", help="Output directory (cleared before every build)")
    build_parser_.add_argument("--package", help="Import name of the source package")
    build_parser_.add_argument("--disable", action="store_true", help="Mirror sources without instrumentation")
    build_parser_.add_argument("--json", action="store_true", help="Output JSON")
    build_parser_.set_defaults(func=_command_build)

    instrument_parser = subparsers.add_parser("instrument", help="Print the instrumented text of one file")
    instrument_parser.add_argument("file", help="Python source file")
    instrument_parser.set_defaults(func=_command_instrument)

    events_parser = subparsers.add_parser("events", help="Parse captured trace lines")
    events_parser.add_argument("file", nargs="?", help="Log file (default: stdin)")
    events_parser.add_argument("--json", action="store_true", help="Output JSON")
    events_parser.set_defaults(func=_command_events)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=get_settings().log_level.upper(), format=LOG_FORMAT)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
