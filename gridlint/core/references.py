"""
gridlint/core/references.py

Side outputs of a parsed formula, consumed by the dependency graph and the
formula rules:
  - every reference node (cells, ranges, names, external refs)
  - function names in invocation order
  - max function nesting depth and max IF nesting depth
  - numeric/text literals with the function they are an argument of
  - error literals (#REF! and friends)

The walk uses an explicit stack so arbitrarily deep formulas never hit the
interpreter recursion limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from gridlint.core.formula import (
    BinaryOp,
    CellRef,
    ExternalRef,
    FunctionCall,
    Literal,
    NamedRangeRef,
    Node,
    RangeRef,
    UnaryOp,
    render,
)

Reference = Union[CellRef, RangeRef, NamedRangeRef, ExternalRef]

VOLATILE_FUNCTIONS = ("NOW", "TODAY", "RAND", "RANDBETWEEN", "OFFSET", "INDIRECT", "INFO", "CELL")


@dataclass(frozen=True)
class LiteralUse:
    value: Union[float, str]
    kind: str  # "number" | "text"
    function: Optional[str]  # innermost enclosing function, None at top level


@dataclass(frozen=True)
class FormulaAnalysis:
    references: Tuple[Reference, ...]
    function_names: Tuple[str, ...]
    max_function_depth: int
    max_if_depth: int
    literals: Tuple[LiteralUse, ...]
    error_literals: Tuple[str, ...]

    @property
    def whole_column_refs(self) -> List[RangeRef]:
        return [r for r in self._ranges() if r.kind == "column"]

    @property
    def whole_row_refs(self) -> List[RangeRef]:
        return [r for r in self._ranges() if r.kind == "row"]

    @property
    def external_refs(self) -> List[ExternalRef]:
        return [r for r in self.references if isinstance(r, ExternalRef)]

    def _ranges(self) -> List[RangeRef]:
        return [r for r in self.references if isinstance(r, RangeRef)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "references": [render(r) for r in self.references],
            "functions": list(self.function_names),
            "max_function_depth": self.max_function_depth,
            "max_if_depth": self.max_if_depth,
            "literals": [{"value": l.value, "kind": l.kind, "function": l.function} for l in self.literals],
            "errors": list(self.error_literals),
        }


def analyze(ast: Node) -> FormulaAnalysis:
    refs: List[Reference] = []
    functions: List[str] = []
    literals: List[LiteralUse] = []
    errors: List[str] = []
    max_depth = 0
    max_if = 0

    # (node, function depth, IF depth, enclosing function)
    stack: List[Tuple[Node, int, int, Optional[str]]] = [(ast, 0, 0, None)]
    while stack:
        node, depth, if_depth, enclosing = stack.pop()

        if isinstance(node, FunctionCall):
            depth += 1
            if node.name == "IF":
                if_depth += 1
            max_depth = max(max_depth, depth)
            max_if = max(max_if, if_depth)
            functions.append(node.name)
            for arg in reversed(node.args):
                stack.append((arg, depth, if_depth, node.name))

        elif isinstance(node, (CellRef, RangeRef, NamedRangeRef, ExternalRef)):
            refs.append(node)

        elif isinstance(node, Literal):
            if node.kind in ("number", "text"):
                literals.append(LiteralUse(node.value, node.kind, enclosing))
            elif node.kind == "error":
                errors.append(str(node.value))

        elif isinstance(node, UnaryOp):
            operand = node.operand
            if node.op == "-" and isinstance(operand, Literal) and operand.kind == "number":
                literals.append(LiteralUse(-operand.value, "number", enclosing))
                continue
            stack.append((operand, depth, if_depth, enclosing))

        elif isinstance(node, BinaryOp):
            stack.append((node.right, depth, if_depth, enclosing))
            stack.append((node.left, depth, if_depth, enclosing))

    return FormulaAnalysis(
        references=tuple(refs),
        function_names=tuple(functions),
        max_function_depth=max_depth,
        max_if_depth=max_if,
        literals=tuple(literals),
        error_literals=tuple(errors),
    )


def detect_volatile_functions(analysis: FormulaAnalysis, volatile=VOLATILE_FUNCTIONS) -> List[str]:
    """Sorted, de-duplicated volatile function names used by a formula."""
    wanted = {f.upper() for f in volatile}
    return sorted({f for f in analysis.function_names if f in wanted})


def formula_shape(ast: Node, row: int, col: int) -> str:
    """
    Copy-invariant shape of a formula: relative references become R1C1 offsets
    from the formula's own cell, so `=A1*2` in B1 and `=A2*2` in B2 share a shape.
    """
    return "=" + render(ast, origin=(row, col))
