"""
Build orchestration: discover sources, instrument them and write the output tree.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

import libcst as cst

from .classifier import ConstructClassifier
from .config import Settings, get_settings
from .imports import ImportRewriter
from .models import (
    DEFAULT_RECEIVERS,
    BuildReport,
    FileReport,
    FileStatus,
    InstrumentationContext,
    SourceUnit,
)
from .prelude import insert_prelude
from .routes import RouteInstrumenter
from .synthesizer import WrapperSynthesizer

logger = logging.getLogger("trace_weaver.emitter")

SOURCE_SUFFIXES = frozenset({".py"})
EXCLUDED_DIRS = frozenset({"__pycache__", "node_modules", "site-packages", "venv", "env", "build", "dist"})
MARKER_FILE = "trace-weaver.json"
GENERATOR = "trace-weaver"

_TOOL_DIR = Path(__file__).resolve().parent


class SourceParseError(Exception):
    """A source file could not be read or parsed."""

    def __init__(self, path: Union[str, Path], message: str):
        super().__init__(f"{path}: {message}")
        self.path = str(path)
        self.message = message


# ---------------------------------------------------------------------------
# Single file
# ---------------------------------------------------------------------------

def parse_source(source: Union[str, bytes], path: Union[str, Path] = "<string>") -> cst.Module:
    try:
        return cst.parse_module(source)
    except cst.ParserSyntaxError as exc:
        raise SourceParseError(path, str(exc)) from exc
    except (SyntaxError, UnicodeDecodeError) as exc:
        # Undecodable bytes or a bad encoding declaration
        raise SourceParseError(path, f"{type(exc).__name__}: {exc}") from exc


def read_source(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise SourceParseError(path, f"cannot read file: {exc.strerror or exc}") from exc


def load_unit(path: Path, root: Path) -> SourceUnit:
    source = read_source(path)
    return SourceUnit(
        path=path,
        relative_path=path.relative_to(root),
        source=source,
        module=parse_source(source, path),
    )


def instrument_module(module: cst.Module, context: InstrumentationContext) -> cst.Module:
    """Route handlers first, then the remaining constructs, then the prelude."""
    module = module.visit(RouteInstrumenter(context))
    constructs = ConstructClassifier(context).classify(module)
    synthesizer = WrapperSynthesizer(context)
    module = synthesizer.apply(module, [synthesizer.synthesize(construct) for construct in constructs])
    if context.changed:
        module = insert_prelude(module)
    return module


def instrument_source(
    source: Union[str, bytes],
    file_name: str = "module.py",
    settings: Optional[Settings] = None,
    rewriter: Optional[ImportRewriter] = None,
) -> str:
    """
    Instrument one source text and return the new text.

    With ``settings.enabled`` off only the import rewrite (if any) is applied,
    so the text otherwise comes back byte-for-byte.
    """
    module = parse_source(source, file_name)
    enabled = settings.enabled if settings is not None else True
    receivers = settings.route_receiver_set if settings is not None else DEFAULT_RECEIVERS
    if enabled:
        module = instrument_module(module, InstrumentationContext(file_name=Path(file_name).name, receivers=receivers))
    if rewriter is not None:
        module = module.visit(rewriter)
    return module.code


# ---------------------------------------------------------------------------
# Whole tree
# ---------------------------------------------------------------------------

def check_output_location(source_root: Path, output_root: Path) -> None:
    """Refuse output directories whose clearing would delete the sources."""
    if output_root == source_root or output_root in source_root.parents:
        raise ValueError(f"Output directory {output_root} would contain or replace source directory {source_root}")


def detect_source_package(source_root: Path) -> str:
    if (source_root / "__init__.py").is_file() and source_root.name.isidentifier():
        return source_root.name
    return ""


def discover_files(root: Path, excluded: Iterable[Path] = ()) -> Iterator[Path]:
    """Files under ``root`` in a stable order, pruning caches, build outputs and dot dirs."""
    skipped = {path.resolve() for path in excluded}
    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        dirnames[:] = sorted(
            name
            for name in dirnames
            if not name.startswith(".")
            and name not in EXCLUDED_DIRS
            and (current_path / name).resolve() not in skipped
        )
        for filename in sorted(filenames):
            yield current_path / filename


def _import_rewriter(source_package: str, output_root: Path) -> Optional[ImportRewriter]:
    if not source_package:
        return None
    target = output_root.name
    if not target.isidentifier():
        logger.warning(
            "Output directory %s is not an importable package name; imports of %s are left as-is",
            output_root,
            source_package,
        )
        return None
    return ImportRewriter(source_package, target)


def _emit_source(
    path: Path,
    source_root: Path,
    target: Path,
    settings: Settings,
    rewriter: Optional[ImportRewriter],
) -> FileReport:
    relative = str(path.relative_to(source_root))
    try:
        unit = load_unit(path, source_root)
    except SourceParseError as exc:
        logger.error("Failed to parse %s: %s", path, exc.message)
        return FileReport(path=relative, status=FileStatus.FAILED, error=exc.message)

    context = InstrumentationContext(file_name=unit.file_name, receivers=settings.route_receiver_set)
    module = unit.module
    if settings.enabled:
        module = instrument_module(module, context)
    if rewriter is not None:
        module = module.visit(rewriter)
    target.write_bytes(module.bytes)

    status = FileStatus.INSTRUMENTED if context.changed else FileStatus.UNCHANGED
    return FileReport(path=relative, status=status, wrapped=context.wrapped, endpoints=context.endpoints)


def _copy_asset(path: Path, source_root: Path, target: Path) -> FileReport:
    relative = str(path.relative_to(source_root))
    try:
        shutil.copy2(path, target)
    except OSError as exc:
        logger.error("Failed to copy %s: %s", path, exc)
        return FileReport(path=relative, status=FileStatus.FAILED, error=f"cannot copy file: {exc.strerror or exc}")
    return FileReport(path=relative, status=FileStatus.COPIED)


def _write_marker(output_root: Path, settings: Settings, source_package: str, rewriter: Optional[ImportRewriter]) -> None:
    from . import __version__

    payload = {
        "generator": GENERATOR,
        "version": __version__,
        "instrumented": settings.enabled,
        "layout": "package" if rewriter is not None else "modules",
        "package": rewriter.target_package if rewriter is not None else None,
        "source_package": source_package or None,
        # Directory to put on sys.path to import the output
        "path_root": ".." if rewriter is not None else ".",
    }
    (output_root / MARKER_FILE).write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def build(settings: Optional[Settings] = None) -> BuildReport:
    """Clear the output directory and mirror the source tree into it, instrumented."""
    settings = settings or get_settings()
    source_root = settings.source_dir.resolve()
    output_root = settings.output_dir.resolve()
    if not source_root.is_dir():
        raise ValueError(f"Source directory {source_root} does not exist")
    check_output_location(source_root, output_root)

    if output_root.exists():
        shutil.rmtree(output_root)
    output_root.mkdir(parents=True)

    source_package = settings.source_package or detect_source_package(source_root)
    rewriter = _import_rewriter(source_package, output_root)
    report = BuildReport(source_dir=str(source_root), output_dir=str(output_root), enabled=settings.enabled)

    for path in discover_files(source_root, excluded=(output_root, _TOOL_DIR)):
        target = output_root / path.relative_to(source_root)
        if path.suffix in SOURCE_SUFFIXES:
            target.parent.mkdir(parents=True, exist_ok=True)
            report.files.append(_emit_source(path, source_root, target, settings, rewriter))
        elif settings.copy_assets:
            target.parent.mkdir(parents=True, exist_ok=True)
            report.files.append(_copy_asset(path, source_root, target))

    _write_marker(output_root, settings, source_package, rewriter)
    summary = report.summary()
    logger.info(
        "Built %s -> %s: %d instrumented, %d unchanged, %d copied, %d failed",
        source_root,
        output_root,
        summary["files"]["instrumented"],
        summary["files"]["unchanged"],
        summary["files"]["copied"],
        summary["files"]["failed"],
    )
    return report
