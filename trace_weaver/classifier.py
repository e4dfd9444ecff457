"""
Find the function-like constructs of a module that should be traced.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

import libcst as cst

from .models import ConstructKind, FunctionConstruct, InstrumentationContext

logger = logging.getLogger("trace_weaver.classifier")

# Dunder methods the interpreter (and the serializer) call implicitly stay untraced
KEPT_DUNDERS = frozenset({"__init__", "__call__"})
HELPER_PREFIX = "_tw_"

_ACCESSOR_DECORATORS = {
    "property": "get",
    "cached_property": "get",
    "getter": "get",
    "setter": "set",
    "deleter": "del",
}

_Suite = Union[cst.IndentedBlock, cst.SimpleStatementSuite]


def is_helper_name(name: str) -> bool:
    return name.lower().startswith(HELPER_PREFIX)


def decorator_name(decorator: cst.Decorator) -> Optional[str]:
    """Last dotted segment of a decorator, ignoring a trailing call."""
    expression = decorator.decorator
    if isinstance(expression, cst.Call):
        expression = expression.func
    if isinstance(expression, cst.Name):
        return expression.value
    if isinstance(expression, cst.Attribute):
        return expression.attr.value
    return None


def is_traced(node: cst.FunctionDef) -> bool:
    """True when a ``_tw_*`` wrapper is already among the decorators."""
    for decorator in node.decorators:
        expression = decorator.decorator
        if isinstance(expression, cst.Call) and isinstance(expression.func, cst.Name):
            if is_helper_name(expression.func.value):
                return True
    return False


def is_wrapped_expression(node: cst.BaseExpression) -> bool:
    """True for ``_tw_*(...)(...)`` calls produced by an earlier pass."""
    if not isinstance(node, cst.Call) or not isinstance(node.func, cst.Call):
        return False
    factory = node.func.func
    return isinstance(factory, cst.Name) and is_helper_name(factory.value)


def _is_mangled(name: str) -> bool:
    return name.startswith("__") and not name.endswith("__")


def _is_dunder(name: str) -> bool:
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


class _YieldFinder(cst.CSTVisitor):
    """Looks for ``yield`` in a body without entering nested scopes."""

    def __init__(self) -> None:
        self.found = False

    def visit_Yield(self, node: cst.Yield) -> bool:
        self.found = True
        return False

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return False

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return False

    def visit_Lambda(self, node: cst.Lambda) -> bool:
        return False


def contains_yield(node: cst.CSTNode) -> bool:
    finder = _YieldFinder()
    node.visit(finder)
    return finder.found


def parameter_names(parameters: cst.Parameters) -> tuple[str, ...]:
    names = [param.name.value for param in (*parameters.posonly_params, *parameters.params)]
    if isinstance(parameters.star_arg, cst.Param):
        names.append(parameters.star_arg.name.value)
    names.extend(param.name.value for param in parameters.kwonly_params)
    if parameters.star_kwarg is not None:
        names.append(parameters.star_kwarg.name.value)
    return tuple(names)


def _literal_key(node: Optional[cst.BaseExpression]) -> Optional[str]:
    if isinstance(node, (cst.SimpleString, cst.ConcatenatedString)):
        value = node.evaluated_value
        if isinstance(value, str) and value:
            return value
    return None


class ConstructClassifier:
    """
    Collects wrap units in source order.

    The walk covers the module body, compound statements at module level
    (``if`` / ``try`` / ``with`` / loops) and class bodies. Function bodies
    are never entered, so nested helpers and closures run untraced inside
    their traced parent.
    """

    def __init__(self, context: InstrumentationContext):
        self.context = context
        self._constructs: list[FunctionConstruct] = []

    def classify(self, module: cst.Module) -> list[FunctionConstruct]:
        self._constructs = []
        self._walk(module.body, scope=(), in_class=False)
        logger.debug("%s: %d constructs eligible", self.context.file_name, len(self._constructs))
        return self._constructs

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _walk(self, statements: Sequence[cst.BaseStatement], scope: tuple[str, ...], in_class: bool) -> None:
        for statement in statements:
            if isinstance(statement, cst.FunctionDef):
                self._function(statement, scope, in_class)
            elif isinstance(statement, cst.ClassDef):
                self._walk_suite(statement.body, scope + (statement.name.value,), in_class=True)
            elif isinstance(statement, cst.SimpleStatementLine):
                for small in statement.body:
                    self._binding(small, scope, in_class)
            else:
                for suite in self._nested_suites(statement):
                    self._walk_suite(suite, scope, in_class)

    def _walk_suite(self, suite: _Suite, scope: tuple[str, ...], in_class: bool) -> None:
        if isinstance(suite, cst.SimpleStatementSuite):
            for small in suite.body:
                self._binding(small, scope, in_class)
        else:
            self._walk(suite.body, scope, in_class)

    def _nested_suites(self, statement: cst.BaseStatement) -> list[_Suite]:
        if isinstance(statement, cst.If):
            suites = [statement.body]
            branch = statement.orelse
            while isinstance(branch, cst.If):
                suites.append(branch.body)
                branch = branch.orelse
            if branch is not None:
                suites.append(branch.body)
            return suites
        if isinstance(statement, (cst.Try, cst.TryStar)):
            suites = [statement.body, *(handler.body for handler in statement.handlers)]
            if statement.orelse is not None:
                suites.append(statement.orelse.body)
            if statement.finalbody is not None:
                suites.append(statement.finalbody.body)
            return suites
        if isinstance(statement, cst.With):
            return [statement.body]
        if isinstance(statement, (cst.For, cst.While)):
            suites = [statement.body]
            if statement.orelse is not None:
                suites.append(statement.orelse.body)
            return suites
        return []

    # ------------------------------------------------------------------
    # Constructs
    # ------------------------------------------------------------------

    def _skipped(self, name: str, in_class: bool) -> bool:
        if is_helper_name(name):
            return True
        return in_class and (_is_mangled(name) or (_is_dunder(name) and name not in KEPT_DUNDERS))

    def _function(self, node: cst.FunctionDef, scope: tuple[str, ...], in_class: bool) -> None:
        name = node.name.value
        if self._skipped(name, in_class) or is_traced(node):
            return
        decorators = [decorator_name(decorator) for decorator in node.decorators]
        if "overload" in decorators:
            return

        is_generator = contains_yield(node.body)
        accessor = next(
            (_ACCESSOR_DECORATORS[item] for item in decorators if item in _ACCESSOR_DECORATORS),
            None,
        )
        if is_generator:
            kind = ConstructKind.GENERATOR
        elif not in_class:
            kind = ConstructKind.DECLARATION
        elif accessor:
            kind = ConstructKind.ACCESSOR
        else:
            kind = ConstructKind.METHOD

        self._constructs.append(
            FunctionConstruct(
                kind=kind,
                name=f"{accessor}_{name}" if in_class and accessor else name,
                scope=scope,
                node=node,
                is_async=node.asynchronous is not None,
                is_generator=is_generator,
                bound=in_class and "staticmethod" not in decorators,
                parameters=parameter_names(node.params),
            )
        )

    def _binding(self, small: cst.BaseSmallStatement, scope: tuple[str, ...], in_class: bool) -> None:
        if isinstance(small, cst.Assign):
            targets = [target.target for target in small.targets]
        elif isinstance(small, cst.AnnAssign) and small.value is not None:
            targets = [small.target]
        else:
            return
        names = [target.value for target in targets if isinstance(target, cst.Name)]
        if not names or self._skipped(names[0], in_class):
            return
        name = names[0]
        value = small.value

        if isinstance(value, cst.Lambda):
            kind = ConstructKind.METHOD if in_class else ConstructKind.LAMBDA
            self._lambda(value, name, scope, kind, bound=in_class)
        elif isinstance(value, (cst.Dict, cst.List, cst.Tuple)):
            self._literal(value, scope + (name,))

    def _literal(self, node: Union[cst.Dict, cst.List, cst.Tuple], scope: tuple[str, ...]) -> None:
        if isinstance(node, cst.Dict):
            entries = [
                (_literal_key(element.key), element.value)
                for element in node.elements
                if isinstance(element, cst.DictElement)
            ]
        else:
            entries = [
                (None, element.value) for element in node.elements if isinstance(element, cst.Element)
            ]

        for key, value in entries:
            if isinstance(value, cst.Lambda):
                name = key or self.context.next_anonymous_name()
                self._lambda(value, name, scope, ConstructKind.EXPRESSION, bound=False)
            elif isinstance(value, (cst.Dict, cst.List, cst.Tuple)):
                self._literal(value, scope + (key or self.context.next_anonymous_name(),))

    def _lambda(
        self,
        node: cst.Lambda,
        name: str,
        scope: tuple[str, ...],
        kind: ConstructKind,
        bound: bool,
    ) -> None:
        is_generator = contains_yield(node.body)
        self._constructs.append(
            FunctionConstruct(
                kind=ConstructKind.GENERATOR if is_generator else kind,
                name=name,
                scope=scope,
                node=node,
                is_generator=is_generator,
                bound=bound,
                parameters=parameter_names(node.params),
            )
        )
