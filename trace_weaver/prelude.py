"""
Helper prelude inlined into instrumented files.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from importlib import resources

import libcst as cst

logger = logging.getLogger("trace_weaver.prelude")

BEGIN_MARKER = "# --- begin inline runtime ---"
END_MARKER = "# --- end inline runtime ---"
HEADER_COMMENT = "# trace-weaver runtime helpers (generated)"
# Defined by the prelude and nowhere else; its presence means "already inlined"
SENTINEL = "_tw_safe_to_string"

_SECTIONS = ("serialization.py", "runtime.py")


def _inline_section(resource: str) -> str:
    text = resources.files("trace_weaver").joinpath(resource).read_text(encoding="utf-8")
    start = text.index(BEGIN_MARKER) + len(BEGIN_MARKER)
    end = text.index(END_MARKER, start)
    return text[start:end].strip("\n")


@lru_cache(maxsize=1)
def prelude_source() -> str:
    """Source text of the helper block, serializer first."""
    return "\n\n\n".join(_inline_section(resource) for resource in _SECTIONS) + "\n"


def prelude_statements() -> list[cst.BaseStatement]:
    statements = list(cst.parse_module(prelude_source()).body)
    header = cst.EmptyLine(comment=cst.Comment(HEADER_COMMENT))
    statements[0] = statements[0].with_changes(leading_lines=[header])
    return statements


def has_prelude(module: cst.Module) -> bool:
    return any(
        isinstance(statement, cst.FunctionDef) and statement.name.value == SENTINEL
        for statement in module.body
    )


def _is_docstring(statement: cst.BaseStatement) -> bool:
    if not isinstance(statement, cst.SimpleStatementLine) or len(statement.body) != 1:
        return False
    expression = statement.body[0]
    return isinstance(expression, cst.Expr) and isinstance(
        expression.value, (cst.SimpleString, cst.ConcatenatedString)
    )


def _is_future_import(statement: cst.BaseStatement) -> bool:
    if not isinstance(statement, cst.SimpleStatementLine):
        return False
    return all(
        isinstance(small, cst.ImportFrom)
        and isinstance(small.module, cst.Name)
        and small.module.value == "__future__"
        for small in statement.body
    )


def insertion_index(module: cst.Module) -> int:
    """First position after the module docstring and ``from __future__`` imports."""
    body = module.body
    index = 1 if body and _is_docstring(body[0]) else 0
    while index < len(body) and _is_future_import(body[index]):
        index += 1
    return index


def insert_prelude(module: cst.Module) -> cst.Module:
    """Inline the helpers once; a module that already carries them is returned as-is."""
    if has_prelude(module):
        return module
    index = insertion_index(module)
    body = list(module.body)
    body[index:index] = prelude_statements()
    logger.debug("Inserted runtime prelude at statement %d", index)
    return module.with_changes(body=body)
