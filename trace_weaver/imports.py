"""
Rewrite absolute imports of the source package to the output package.
"""
from __future__ import annotations

import logging
from typing import Optional

import libcst as cst
from libcst.helpers import get_full_name_for_node

logger = logging.getLogger("trace_weaver.imports")


class ImportRewriter(cst.CSTTransformer):
    """
    ``from pkg.x import y`` -> ``from out.x import y``
    ``import pkg.x``        -> ``import out.x, out as pkg`` (bound name unchanged)
    ``import pkg.x as z``   -> ``import out.x as z``

    Relative imports already resolve inside the output tree and are left alone.
    """

    def __init__(self, source_package: str, target_package: str):
        self.source_package = source_package
        self.target_package = target_package
        self.rewritten = 0

    def rename(self, dotted: Optional[str]) -> Optional[str]:
        if dotted is None or self.source_package == self.target_package:
            return None
        if dotted == self.source_package or dotted.startswith(self.source_package + "."):
            return self.target_package + dotted[len(self.source_package):]
        return None

    def leave_ImportFrom(self, original_node: cst.ImportFrom, updated_node: cst.ImportFrom) -> cst.ImportFrom:
        if updated_node.relative or updated_node.module is None:
            return updated_node
        renamed = self.rename(get_full_name_for_node(updated_node.module))
        if renamed is None:
            return updated_node
        self.rewritten += 1
        return updated_node.with_changes(module=cst.parse_expression(renamed))

    def leave_Import(self, original_node: cst.Import, updated_node: cst.Import) -> cst.Import:
        aliases: list[cst.ImportAlias] = []
        changed = False
        for alias in updated_node.names:
            dotted = get_full_name_for_node(alias.name)
            renamed = self.rename(dotted)
            if renamed is None:
                aliases.append(alias)
                continue
            changed = True
            if alias.asname is not None:
                aliases.append(alias.with_changes(name=cst.parse_expression(renamed)))
            elif "." in dotted:
                # `import pkg.sub` binds `pkg`; keep that name bound to the output package
                aliases.append(alias.with_changes(name=cst.parse_expression(renamed)))
                aliases.append(
                    cst.ImportAlias(
                        name=cst.Name(self.target_package),
                        asname=cst.AsName(name=cst.Name(self.source_package)),
                    )
                )
            else:
                aliases.append(
                    alias.with_changes(
                        name=cst.Name(self.target_package),
                        asname=cst.AsName(name=cst.Name(self.source_package)),
                    )
                )
        if not changed:
            return updated_node
        self.rewritten += 1
        # Let the renderer place commas between the new alias list
        aliases = [alias.with_changes(comma=cst.MaybeSentinel.DEFAULT) for alias in aliases]
        return updated_node.with_changes(names=aliases)
