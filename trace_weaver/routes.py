"""
Instrument HTTP route registrations.

Recognized forms, for any receiver in the configured set:

    @app.post("/users")                 # decorator
    def create_user(...): ...

    web.get("/health", handler)         # call
    app.get("/items")(list_items)       # chained call

Inline handlers (decorated defs and lambdas) get ``_tw_endpoint`` with a
request snapshot and response status; handlers passed by reference get the
ENTER-only ``_tw_endpoint_ref`` forwarder.
"""
from __future__ import annotations

import logging
from typing import NamedTuple, Optional, Sequence

import libcst as cst
from libcst.helpers import get_full_name_for_node

from .classifier import is_helper_name, is_traced, is_wrapped_expression
from .models import InstrumentationContext, RegistrationForm, RouteRegistration

logger = logging.getLogger("trace_weaver.routes")

VERBS = frozenset({"get", "post", "put", "delete", "patch", "head", "options", "all"})
# Registrations whose verb comes from a ``methods=[...]`` keyword
ROUTE_METHODS = frozenset({"route", "api_route"})
WILDCARD_PATH = "/*"

_PATH_KEYWORDS = ("path", "rule")
_CONSTANTS = frozenset({"None", "True", "False"})


class _Match(NamedTuple):
    receiver: str
    verb: str
    path: str
    handler_start: int


def _positional(args: Sequence[cst.Arg]) -> list[cst.Arg]:
    return [arg for arg in args if arg.keyword is None and not arg.star]


def _string_value(node: cst.BaseExpression) -> Optional[str]:
    if isinstance(node, (cst.SimpleString, cst.ConcatenatedString)):
        value = node.evaluated_value
        if isinstance(value, str):
            return value
    return None


def _keyword(call: cst.Call, name: str) -> Optional[cst.Arg]:
    for arg in call.args:
        if arg.keyword is not None and arg.keyword.value == name:
            return arg
    return None


def _methods_label(call: cst.Call) -> str:
    arg = _keyword(call, "methods")
    if arg is None or not isinstance(arg.value, (cst.List, cst.Tuple, cst.Set)):
        return "GET"
    methods = [_string_value(element.value) for element in arg.value.elements]
    methods = [method.upper() for method in methods if method]
    return ",".join(methods) or "GET"


class RouteInstrumenter(cst.CSTTransformer):
    def __init__(self, context: InstrumentationContext):
        self.context = context
        self.registrations: list[RouteRegistration] = []
        # Calls that are decorators or the inner half of a chained call
        self._claimed: set[int] = set()

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _match(self, call: cst.Call, allow_route: bool) -> Optional[_Match]:
        func = call.func
        if not isinstance(func, cst.Attribute) or not isinstance(func.value, cst.Name):
            return None
        receiver = func.value.value
        method = func.attr.value
        if receiver not in self.context.receivers:
            return None
        if method in VERBS:
            verb = method.upper()
        elif allow_route and method in ROUTE_METHODS:
            verb = _methods_label(call)
        else:
            return None

        positional = _positional(call.args)
        if positional:
            path = _string_value(positional[0].value)
            if path is not None:
                return _Match(receiver, verb, path, handler_start=1)
        for keyword in _PATH_KEYWORDS:
            arg = _keyword(call, keyword)
            if arg is not None and _string_value(arg.value) is not None:
                return _Match(receiver, verb, _string_value(arg.value), handler_start=0)
        return _Match(receiver, verb, WILDCARD_PATH, handler_start=0)

    def _record(self, match: _Match, form: RegistrationForm, handlers: list[cst.BaseExpression]) -> None:
        self.registrations.append(
            RouteRegistration(
                receiver=match.receiver,
                verb=match.verb,
                path=match.path,
                form=form,
                handlers=handlers,
            )
        )
        self.context.endpoints += len(handlers)
        logger.debug(
            "%s: %s %s %s (%d handlers)", self.context.file_name, form.value, match.verb, match.path, len(handlers)
        )

    # ------------------------------------------------------------------
    # Wrapper expressions
    # ------------------------------------------------------------------

    def _endpoint_factory(self, match: _Match) -> cst.BaseExpression:
        return cst.parse_expression(
            f"_tw_endpoint({match.verb!r}, {match.path!r}, {self.context.file_name!r})"
        )

    def _instrument_handler(self, node: cst.BaseExpression, match: _Match) -> Optional[cst.BaseExpression]:
        """Wrapped handler expression, or None when ``node`` is not a handler we wrap."""
        if isinstance(node, cst.Lambda):
            return cst.Call(func=self._endpoint_factory(match), args=[cst.Arg(value=node)])
        if isinstance(node, (cst.Name, cst.Attribute)):
            name = get_full_name_for_node(node)
            if name is None or name in _CONSTANTS or is_helper_name(name):
                return None
            factory = cst.parse_expression(
                f"_tw_endpoint_ref({match.verb!r}, {match.path!r}, {self.context.file_name!r}, {name!r})"
            )
            return cst.Call(func=factory, args=[cst.Arg(value=node)])
        if isinstance(node, cst.Call) and get_full_name_for_node(node.func) in ("cast", "typing.cast"):
            positional = _positional(node.args)
            if len(positional) == 2 and isinstance(positional[1].value, cst.Lambda):
                target = positional[1]
                wrapped = self._instrument_handler(target.value, match)
                args = [arg.with_changes(value=wrapped) if arg is target else arg for arg in node.args]
                return node.with_changes(args=args)
        return None

    def _instrument_args(
        self, call: cst.Call, match: _Match, form: RegistrationForm, start: int
    ) -> cst.Call:
        handlers: list[cst.BaseExpression] = []
        args = []
        position = 0
        for arg in call.args:
            if arg.keyword is None and not arg.star:
                if position >= start and not is_wrapped_expression(arg.value):
                    wrapped = self._instrument_handler(arg.value, match)
                    if wrapped is not None:
                        handlers.append(arg.value)
                        arg = arg.with_changes(value=wrapped)
                position += 1
            args.append(arg)
        if not handlers:
            return call
        self._record(match, form, handlers)
        return call.with_changes(args=args)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def visit_Decorator(self, node: cst.Decorator) -> None:
        self._claimed.add(id(node.decorator))

    def visit_Call(self, node: cst.Call) -> None:
        if isinstance(node.func, cst.Call):
            self._claimed.add(id(node.func))

    def leave_FunctionDef(self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef) -> cst.FunctionDef:
        if is_traced(updated_node):
            return updated_node
        for decorator in updated_node.decorators:
            if isinstance(decorator.decorator, cst.Call):
                match = self._match(decorator.decorator, allow_route=True)
                if match is not None:
                    break
        else:
            return updated_node

        self._record(match, RegistrationForm.DECORATOR, [original_node.name])
        wrapper = cst.Decorator(decorator=self._endpoint_factory(match))
        return updated_node.with_changes(decorators=[*updated_node.decorators, wrapper])

    def leave_Call(self, original_node: cst.Call, updated_node: cst.Call) -> cst.BaseExpression:
        if id(original_node) in self._claimed:
            return updated_node
        if isinstance(updated_node.func, cst.Call):
            match = self._match(updated_node.func, allow_route=True)
            if match is None:
                return updated_node
            return self._instrument_args(updated_node, match, RegistrationForm.CHAINED, start=0)
        match = self._match(updated_node, allow_route=False)
        if match is None:
            return updated_node
        return self._instrument_args(updated_node, match, RegistrationForm.CALL, start=match.handler_start)
