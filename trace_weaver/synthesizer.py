"""
Turn classified constructs into traced definitions.

Definitions are wrapped where they are declared: a ``def`` gets an innermost
``@_tw_function(...)`` decorator and a lambda becomes
``_tw_function(...)(lambda ...)``. Outer decorators (``property``,
``staticmethod``, caches, route decorators) therefore wrap the traced callable,
and the undecorated original stays reachable through ``__wrapped__``.
"""
from __future__ import annotations

import logging
from typing import Union

import libcst as cst

from .models import FunctionConstruct, InstrumentationContext, WrapperSpec

logger = logging.getLogger("trace_weaver.synthesizer")

_RENDERER = cst.Module(body=[])


def factory_expression(construct: FunctionConstruct, file_name: str) -> cst.BaseExpression:
    factory = "_tw_generator" if construct.is_generator else "_tw_function"
    arguments = [repr(file_name), repr(construct.scope_path), repr(construct.name)]
    if construct.bound:
        arguments.append("bound=True")
    return cst.parse_expression(f"{factory}({', '.join(arguments)})")


def wrap_node(
    spec: WrapperSpec, node: Union[cst.FunctionDef, cst.Lambda]
) -> Union[cst.FunctionDef, cst.Call]:
    if isinstance(node, cst.Lambda):
        return cst.Call(func=spec.factory, args=[cst.Arg(value=node)])
    decorators = [*node.decorators, cst.Decorator(decorator=spec.factory)]
    return node.with_changes(decorators=decorators)


class WrapperSynthesizer:
    def __init__(self, context: InstrumentationContext):
        self.context = context

    def synthesize(self, construct: FunctionConstruct) -> WrapperSpec:
        factory = factory_expression(construct, self.context.file_name)
        if isinstance(construct.node, cst.Lambda):
            code = _RENDERER.code_for_node(cst.Call(func=factory, args=[cst.Arg(value=construct.node)]))
        else:
            code = "@" + _RENDERER.code_for_node(factory)
        return WrapperSpec(
            construct=construct,
            original_ref=f"{construct.qualified_name}.__wrapped__",
            factory=factory,
            code=code,
        )

    def apply(self, module: cst.Module, specs: list[WrapperSpec]) -> cst.Module:
        if not specs:
            return module
        applier = _WrapperApplier({id(spec.construct.node): spec for spec in specs})
        module = module.visit(applier)
        self.context.wrapped += applier.applied
        logger.debug("%s: wrapped %d constructs", self.context.file_name, applier.applied)
        return module


class _WrapperApplier(cst.CSTTransformer):
    """Replaces the exact nodes the classifier picked, matched by identity."""

    def __init__(self, specs: dict[int, WrapperSpec]):
        self.specs = specs
        self.applied = 0

    def _replace(self, original_node, updated_node):
        spec = self.specs.get(id(original_node))
        if spec is None:
            return updated_node
        self.applied += 1
        return wrap_node(spec, updated_node)

    def leave_FunctionDef(self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef) -> cst.FunctionDef:
        return self._replace(original_node, updated_node)

    def leave_Lambda(self, original_node: cst.Lambda, updated_node: cst.Lambda) -> cst.BaseExpression:
        return self._replace(original_node, updated_node)
