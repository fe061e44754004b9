"""
gridlint/rules/formulas.py

Formula hygiene:
  FORM001  long formulas
  FORM002  volatile functions
  FORM003  the same formula shape repeated close together (opt-in)
  FORM004  whole-column / whole-row references
  FORM005  comparisons against "" instead of ISBLANK / LEN
  FORM006  deep function nesting
  FORM007  deep IF nesting
  FORM008  hardcoded numbers inside formulas
  FORM009  VLOOKUP / HLOOKUP

Every check here reads the parsed formula; cells whose formula could not be
parsed are skipped (SEC005 reports them). Nesting and reference checks report
each offending formula cell exactly once.
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import Dict, List, Tuple

from gridlint.core.formula import BinaryOp, FunctionCall, Literal, Node, UnaryOp
from gridlint.core.model import Cell, CellRange
from gridlint.core.references import VOLATILE_FUNCTIONS, detect_volatile_functions, formula_shape
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.rules.base import SHEET, WORKBOOK, ParamSpec, RuleContext, RuleSpec, group_contiguous, truncate

_LOOKUPS = ("VLOOKUP", "HLOOKUP")


def check_long_formulas(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    limit = ctx.params["max_formula_length"]
    cells = [(c.row, c.col) for c in sheet.parsed_formula_cells() if len(c.formula.text) > limit]
    return [
        ctx.violation(
            Location.of_range(sheet, rng),
            f"Formula longer than {limit} characters in {rng.coord}",
            cells=count,
        )
        for rng, count in group_contiguous(cells)
    ]


def check_volatile_functions(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    by_function: Dict[str, List[Tuple[int, int]]] = defaultdict(list)
    for cell in sheet.parsed_formula_cells():
        for name in detect_volatile_functions(cell.formula.analysis, ctx.params["functions"]):
            by_function[name].append((cell.row, cell.col))
    out: List[Violation] = []
    for name in sorted(by_function):
        for rng, count in group_contiguous(by_function[name]):
            out.append(ctx.violation(
                Location.of_range(sheet, rng),
                f"Volatile function {name} used in {rng.coord}",
                function=name,
                cells=count,
            ))
    return out


def _proximity_clusters(cells: List[Tuple[int, int]], window: int) -> List[List[Tuple[int, int]]]:
    """Chain cells whose row and column distance are both within `window`."""
    pending = sorted(cells)
    clusters: List[List[Tuple[int, int]]] = []
    seen = set()
    for start in pending:
        if start in seen:
            continue
        seen.add(start)
        cluster = [start]
        stack = [start]
        while stack:
            r, c = stack.pop()
            for other in pending:
                if other in seen:
                    continue
                if abs(other[0] - r) <= window and abs(other[1] - c) <= window:
                    seen.add(other)
                    cluster.append(other)
                    stack.append(other)
        clusters.append(sorted(cluster))
    return clusters


def check_duplicate_formulas(ctx: RuleContext) -> List[Violation]:
    out: List[Violation] = []
    for sheet in ctx.workbook.sheets:
        params = ctx.params_for(sheet)
        shapes: Dict[str, List[Cell]] = defaultdict(list)
        for cell in sheet.parsed_formula_cells():
            shapes[formula_shape(cell.formula.ast, cell.row, cell.col)].append(cell)
        for shape in sorted(shapes):
            members = shapes[shape]
            if len(members) < params["min_occurrences"]:
                continue
            by_pos = {(c.row, c.col): c for c in members}
            for cluster in _proximity_clusters(list(by_pos), params["window"]):
                if len(cluster) < params["min_occurrences"]:
                    continue
                first = by_pos[cluster[0]]
                ranges = [rng.coord for rng, _ in group_contiguous(cluster)]
                bbox = CellRange(
                    min(r for r, _ in cluster),
                    min(c for _, c in cluster),
                    max(r for r, _ in cluster),
                    max(c for _, c in cluster),
                )
                out.append(ctx.violation(
                    Location.of_range(sheet, bbox),
                    f"Formula '{truncate(first.formula.text)}' is duplicated {len(cluster)} times "
                    f"in ranges: {', '.join(ranges)}. Consider using named ranges or helper cells.",
                    shape=shape,
                    count=len(cluster),
                    ranges=ranges,
                ))
    return out


def check_whole_column_row_refs(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    out: List[Violation] = []
    for cell in sheet.parsed_formula_cells():
        analysis = cell.formula.analysis
        columns = analysis.whole_column_refs
        rows = analysis.whole_row_refs
        if not columns and not rows:
            continue
        kinds = []
        if columns:
            kinds.append("whole-column")
        if rows:
            kinds.append("whole-row")
        out.append(ctx.violation(
            Location.of_cell(sheet, cell),
            f"{' and '.join(kinds).capitalize()} reference in {cell.coordinate}: {truncate(cell.formula.text)}",
            columns=len(columns),
            rows=len(rows),
        ))
    return out


def _is_empty_text(node: Node) -> bool:
    return isinstance(node, Literal) and node.kind == "text" and node.value == ""


def count_empty_string_tests(ast: Node) -> int:
    count = 0
    stack = [ast]
    while stack:
        node = stack.pop()
        if isinstance(node, BinaryOp):
            if node.op in ("=", "<>") and (_is_empty_text(node.left) or _is_empty_text(node.right)):
                count += 1
            stack.append(node.left)
            stack.append(node.right)
        elif isinstance(node, UnaryOp):
            stack.append(node.operand)
        elif isinstance(node, FunctionCall):
            stack.extend(node.args)
    return count


def check_empty_string_tests(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    out: List[Violation] = []
    for cell in sheet.parsed_formula_cells():
        count = count_empty_string_tests(cell.formula.ast)
        if count:
            out.append(ctx.violation(
                Location.of_cell(sheet, cell),
                f'Comparison with "" in {cell.coordinate}; use ISBLANK() or LEN()=0 instead',
                comparisons=count,
            ))
    return out


def _check_depth(ctx: RuleContext, attr: str, what: str) -> List[Violation]:
    sheet = ctx.sheet
    limit = ctx.params["max_depth"]
    out: List[Violation] = []
    for cell in sheet.parsed_formula_cells():
        depth = getattr(cell.formula.analysis, attr)
        if depth > limit:
            out.append(ctx.violation(
                Location.of_cell(sheet, cell),
                f"{what} nested {depth} levels deep in {cell.coordinate} (max {limit}). Consider simplifying.",
                depth=depth,
                max_depth=limit,
            ))
    return out


def check_function_nesting(ctx: RuleContext) -> List[Violation]:
    return _check_depth(ctx, "max_function_depth", "Functions")


def check_if_nesting(ctx: RuleContext) -> List[Violation]:
    return _check_depth(ctx, "max_if_depth", "IF")


def is_ignored_value(value: float, ignore_values, ignore_integers: bool, ignore_powers_of_ten: bool) -> bool:
    if any(math.isclose(value, v, rel_tol=1e-12, abs_tol=1e-12) for v in ignore_values):
        return True
    if ignore_integers and float(value).is_integer():
        return True
    if ignore_powers_of_ten and value > 0:
        exp = math.log10(value)
        if math.isclose(exp, round(exp), abs_tol=1e-9):
            return True
    return False


def _shown(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def check_hardcoded_values(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    p = ctx.params
    out: List[Violation] = []
    for cell in sheet.parsed_formula_cells():
        values: List[float] = []
        for lit in cell.formula.analysis.literals:
            if lit.kind != "number":
                continue
            if is_ignored_value(lit.value, p["ignore_values"], p["ignore_integers"], p["ignore_powers_of_ten"]):
                continue
            values.append(lit.value)
        if not values:
            continue
        shown = ", ".join(_shown(v) for v in values)
        out.append(ctx.violation(
            Location.of_cell(sheet, cell),
            f"Hardcoded value(s) in formula at {cell.coordinate}: {shown}",
            values=values,
            formula=cell.formula.text,
        ))
    return out


def check_lookup_functions(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    cells = [
        (c.row, c.col)
        for c in sheet.parsed_formula_cells()
        if any(name in _LOOKUPS for name in c.formula.analysis.function_names)
    ]
    return [
        ctx.violation(
            Location.of_range(sheet, rng),
            f"VLOOKUP/HLOOKUP used in {rng.coord}; consider INDEX/MATCH or XLOOKUP",
            cells=count,
        )
        for rng, count in group_contiguous(cells)
    ]


_DEPTH = ParamSpec("max_depth", "int", 5, minimum=1)

RULES = (
    RuleSpec(
        rule_id="FORM001",
        name="Long formulas",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_long_formulas,
        params=(ParamSpec("max_formula_length", "int", 255, minimum=1),),
    ),
    RuleSpec(
        rule_id="FORM002",
        name="Volatile functions",
        category=Category.FORMULA,
        severity=Severity.INFO,
        scope=SHEET,
        check=check_volatile_functions,
        params=(ParamSpec("functions", "str_list", VOLATILE_FUNCTIONS),),
    ),
    RuleSpec(
        rule_id="FORM003",
        name="Duplicate formulas",
        category=Category.FORMULA,
        severity=Severity.INFO,
        scope=WORKBOOK,
        check=check_duplicate_formulas,
        default_enabled=False,
        params=(
            ParamSpec("window", "int", 10, minimum=0, doc="Max row/column distance between repeats."),
            ParamSpec("min_occurrences", "int", 2, minimum=2),
        ),
    ),
    RuleSpec(
        rule_id="FORM004",
        name="Whole column or row references",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_whole_column_row_refs,
    ),
    RuleSpec(
        rule_id="FORM005",
        name="Empty string tests",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_empty_string_tests,
    ),
    RuleSpec(
        rule_id="FORM006",
        name="Deep formula nesting",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_function_nesting,
        params=(_DEPTH,),
    ),
    RuleSpec(
        rule_id="FORM007",
        name="Deep IF nesting",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_if_nesting,
        params=(_DEPTH,),
    ),
    RuleSpec(
        rule_id="FORM008",
        name="Hardcoded values in formulas",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_hardcoded_values,
        params=(
            ParamSpec("ignore_values", "number_list", ()),
            ParamSpec("ignore_integers", "bool", False),
            ParamSpec("ignore_powers_of_ten", "bool", False),
        ),
    ),
    RuleSpec(
        rule_id="FORM009",
        name="VLOOKUP / HLOOKUP",
        category=Category.FORMULA,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_lookup_functions,
    ),
)
