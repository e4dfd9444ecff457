"""
Data model for the instrumentation engine and its build reports.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import libcst as cst
from pydantic import BaseModel, Field

DEFAULT_RECEIVERS = frozenset({"app", "router", "bp", "blueprint"})


class ConstructKind(str, Enum):
    """Shape of a function-like construct"""
    DECLARATION = "declaration"
    EXPRESSION = "expression"
    LAMBDA = "lambda"
    METHOD = "method"
    ACCESSOR = "accessor"
    GENERATOR = "generator"


class RegistrationForm(str, Enum):
    """How a route handler is attached to its receiver"""
    DECORATOR = "decorator"
    CALL = "call"
    CHAINED = "chained"


class Phase(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"
    ERROR = "ERROR"


class SubjectKind(str, Enum):
    FUNCTION = "FUNCTION"
    ENDPOINT = "ENDPOINT"


class FileStatus(str, Enum):
    INSTRUMENTED = "instrumented"
    UNCHANGED = "unchanged"
    COPIED = "copied"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Engine types (live for one build pass only)
# ---------------------------------------------------------------------------

@dataclass
class SourceUnit:
    path: Path
    relative_path: Path
    source: bytes
    module: cst.Module

    @property
    def file_name(self) -> str:
        return self.path.name


@dataclass
class FunctionConstruct:
    """A wrap unit found by the classifier."""
    kind: ConstructKind
    name: str
    scope: tuple[str, ...]
    node: Union[cst.FunctionDef, cst.Lambda]
    is_async: bool = False
    is_generator: bool = False
    bound: bool = False
    parameters: tuple[str, ...] = ()

    @property
    def scope_path(self) -> str:
        return ".".join(self.scope)

    @property
    def qualified_name(self) -> str:
        return ".".join((*self.scope, self.name))


@dataclass
class RouteRegistration:
    receiver: str
    verb: str
    path: str
    form: RegistrationForm
    handlers: list[cst.BaseExpression] = field(default_factory=list)


@dataclass
class WrapperSpec:
    """
    Replacement for one construct.

    ``factory`` is the ``_tw_function(...)`` / ``_tw_generator(...)`` call that
    is applied at the declaration site; ``original_ref`` names where the
    undecorated callable stays reachable afterwards.
    """
    construct: FunctionConstruct
    original_ref: str
    factory: cst.BaseExpression
    code: str


@dataclass
class InstrumentationContext:
    """Per-file state threaded through route instrumentation and wrapping."""
    file_name: str
    receivers: frozenset[str] = DEFAULT_RECEIVERS
    anonymous_count: int = 0
    wrapped: int = 0
    endpoints: int = 0

    def next_anonymous_name(self) -> str:
        self.anonymous_count += 1
        return f"anonymous_{self.anonymous_count}"

    @property
    def changed(self) -> bool:
        return bool(self.wrapped or self.endpoints)


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

_EVENT_START = re.compile(r"(ENTER|EXIT|ERROR)\|(FUNCTION|ENDPOINT)\|")


class LogEvent(BaseModel):
    """
    One trace line.

    FUNCTION lines: ``PHASE|FUNCTION|file|scope|name|payload``
    ENDPOINT lines: ``PHASE|ENDPOINT|VERB|path|file|payload``
    """
    phase: Phase
    subject: SubjectKind
    file: str
    scope: str = ""
    name: str = ""
    verb: str = ""
    path: str = ""
    payload: str = ""

    def render(self) -> str:
        if self.subject == SubjectKind.FUNCTION:
            fields = (self.file, self.scope, self.name, self.payload)
        else:
            fields = (self.verb, self.path, self.file, self.payload)
        return "|".join((self.phase.value, self.subject.value, *fields))

    @classmethod
    def parse(cls, line: str) -> Optional[LogEvent]:
        """Parse a trace line, tolerating a logging prefix. Returns None for other lines."""
        match = _EVENT_START.search(line)
        if match is None:
            return None
        parts = line[match.start():].rstrip("\r\n").split("|", 5)
        if len(parts) != 6:
            return None
        phase, subject, first, second, third, payload = parts
        if subject == SubjectKind.FUNCTION.value:
            return cls(
                phase=phase, subject=subject, file=first, scope=second, name=third, payload=payload
            )
        return cls(phase=phase, subject=subject, verb=first, path=second, file=third, payload=payload)


# ---------------------------------------------------------------------------
# Build reports
# ---------------------------------------------------------------------------

class FileReport(BaseModel):
    path: str
    status: FileStatus
    wrapped: int = 0
    endpoints: int = 0
    error: Optional[str] = None


class BuildReport(BaseModel):
    source_dir: str
    output_dir: str
    enabled: bool = True
    files: list[FileReport] = Field(default_factory=list)

    @property
    def failures(self) -> list[FileReport]:
        return [report for report in self.files if report.status == FileStatus.FAILED]

    @property
    def exit_code(self) -> int:
        return 1 if self.failures else 0

    def summary(self) -> dict:
        counts = {status.value: 0 for status in FileStatus}
        for report in self.files:
            counts[report.status.value] += 1
        return {
            "files": counts,
            "wrapped": sum(report.wrapped for report in self.files),
            "endpoints": sum(report.endpoints for report in self.files),
            "exit_code": self.exit_code,
        }
