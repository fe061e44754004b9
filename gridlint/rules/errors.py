"""
gridlint/rules/errors.py

Unresolved errors:
  ERR001  error values in cells and error literals inside formulas
  ERR002  named ranges whose target cannot be resolved
  ERR003  circular references, one violation per distinct cycle
"""

from __future__ import annotations

from typing import List

from gridlint.core.graph import DEFAULT_MAX_EXPANDED_CELLS, CellNode, RangeNode
from gridlint.core.model import CellRange, ErrorCode
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.rules.base import SHEET, WORKBOOK, ParamSpec, RuleContext, RuleSpec


def check_error_cells(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    out: List[Violation] = []
    for cell in sheet.iter_cells():
        if isinstance(cell.raw_value, ErrorCode):
            out.append(ctx.violation(
                Location.of_cell(sheet, cell),
                f"Cell {cell.coordinate} holds the error value {cell.raw_value.code}",
                error=cell.raw_value.code,
            ))
            continue
        formula = cell.formula
        if formula is not None and formula.parsed and formula.analysis.error_literals:
            codes = sorted(set(formula.analysis.error_literals))
            out.append(ctx.violation(
                Location.of_cell(sheet, cell),
                f"Formula in {cell.coordinate} contains the error literal {', '.join(codes)}",
                error=codes[0],
                formula=formula.text,
            ))
    return out


def check_broken_named_ranges(ctx: RuleContext) -> List[Violation]:
    wb = ctx.workbook
    out: List[Violation] = []
    for nr in wb.named_ranges:
        if not nr.broken:
            continue
        owner = wb.sheet(nr.scope) if nr.scope is not None else None
        location = Location.of_sheet(owner) if owner is not None else Location.workbook()
        out.append(ctx.violation(
            location,
            f"Named range '{nr.name}' refers to an invalid target: {nr.raw or '(empty)'}",
            name=nr.name,
            scope=nr.scope,
            target=nr.raw,
        ))
    return out


def check_circular_references(ctx: RuleContext) -> List[Violation]:
    graph = ctx.graph
    wb = ctx.workbook
    out: List[Violation] = []
    for cycle in graph.find_cycles():
        anchored = [n for n in cycle if isinstance(n, (CellNode, RangeNode))]
        first = min(anchored or cycle, key=graph.sort_key)
        start = cycle.index(first)
        ordered = cycle[start:] + cycle[:start]
        path = " -> ".join(str(n) for n in ordered + [first])

        location = Location.workbook()
        sheet = wb.sheet(first.sheet) if isinstance(first, (CellNode, RangeNode)) else None
        if isinstance(first, CellNode) and sheet is not None:
            location = Location.of_range(sheet, CellRange(first.row, first.col, first.row, first.col))
        elif isinstance(first, RangeNode) and sheet is not None:
            location = Location.of_range(sheet, first.cells)

        kind = "self_reference" if len(cycle) == 1 else "multi_cell_cycle"
        out.append(ctx.violation(
            location,
            f"Circular reference: {path}",
            cycle=[str(n) for n in ordered],
            cycle_type=kind,
            mode="expanded" if graph.expand_ranges else "coarse",
        ))
    return out


RULES = (
    RuleSpec(
        rule_id="ERR001",
        name="Error values",
        category=Category.ERROR,
        severity=Severity.ERROR,
        scope=SHEET,
        check=check_error_cells,
        description="Cells holding an error value (#DIV/0!, #N/A, ...) or formulas with an error literal.",
    ),
    RuleSpec(
        rule_id="ERR002",
        name="Broken named ranges",
        category=Category.ERROR,
        severity=Severity.ERROR,
        scope=WORKBOOK,
        check=check_broken_named_ranges,
        description="Defined names pointing at #REF!, a deleted sheet or unparseable text.",
    ),
    RuleSpec(
        rule_id="ERR003",
        name="Circular references",
        category=Category.ERROR,
        severity=Severity.ERROR,
        scope=WORKBOOK,
        check=check_circular_references,
        needs_graph=True,
        params=(
            ParamSpec(
                "expand_ranges",
                "bool",
                False,
                doc="Expand range references into cells for exact cycle detection.",
            ),
            ParamSpec(
                "max_expanded_cells",
                "int",
                DEFAULT_MAX_EXPANDED_CELLS,
                minimum=1,
                doc="Ranges larger than this stay a single node even when expanding.",
            ),
        ),
        description="Formula dependency loops found on the dependency graph.",
    ),
)
