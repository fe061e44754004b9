"""
gridlint/rules/performance.py

Performance:
  PERF001  named ranges nothing refers to
  PERF002  sheets with content that nothing refers to
  PERF003  declared extent well beyond the last data cell
  PERF004  too many conditional formatting rules on one sheet
  PERF005  empty sheets that nothing refers to

PERF001/002/005 read the dependency graph; a sheet counts as used as soon as
any node outside it (a formula elsewhere, a defined name, a print area)
points at it.
"""

from __future__ import annotations

from typing import List

from gridlint.core.graph import SheetUsage
from gridlint.core.model import CellRange, Sheet
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.rules.base import SHEET, WORKBOOK, ParamSpec, RuleContext, RuleSpec


def check_unused_named_ranges(ctx: RuleContext) -> List[Violation]:
    wb = ctx.workbook
    out: List[Violation] = []
    for nr in wb.named_ranges:
        if nr.reserved or ctx.graph.is_named_range_used(nr):
            continue
        owner = wb.sheet(nr.scope) if nr.scope is not None else None
        location = Location.of_sheet(owner) if owner is not None else Location.workbook()
        out.append(ctx.violation(
            location,
            f"Named range '{nr.name}' is defined but never used",
            name=nr.name,
            scope=nr.scope,
            target=nr.raw,
        ))
    return out


def _reserved(sheet: Sheet, names) -> bool:
    low = sheet.name.lower()
    return any(low == n.lower() for n in names)


def _unused_sheets(ctx: RuleContext, wanted: SheetUsage) -> List[Violation]:
    wb = ctx.workbook
    if len(wb.sheets) < 2:
        return []
    out: List[Violation] = []
    for sheet in wb.sheets:
        params = ctx.params_for(sheet)
        if _reserved(sheet, params["reserved_sheet_names"]):
            continue
        formulas = list(sheet.formula_cells())
        if any(not c.formula.parsed for c in formulas):
            # references we could not read may point anywhere
            continue
        if formulas and params.get("ignore_formula_sheets", False):
            continue
        if ctx.graph.sheet_usage(sheet) is not wanted:
            continue
        if wanted is SheetUsage.EMPTY_UNUSED:
            message = f"Sheet '{sheet.name}' is empty and not referenced anywhere"
        else:
            message = f"Sheet '{sheet.name}' has content but is not referenced by any other sheet or name"
        out.append(ctx.violation(Location.of_sheet(sheet), message, usage=wanted.value, cells=len(sheet.cells)))
    return out


def check_unused_sheets(ctx: RuleContext) -> List[Violation]:
    return _unused_sheets(ctx, SheetUsage.FILLED_UNUSED)


def check_empty_sheets(ctx: RuleContext) -> List[Violation]:
    return _unused_sheets(ctx, SheetUsage.EMPTY_UNUSED)


def check_large_used_range(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    extent = sheet.extent
    if extent is None:
        return []
    used = sheet.used_range
    last_row = used.max_row if used is not None else 0
    last_col = used.max_col if used is not None else 0
    extra_rows = max(0, extent.max_row - last_row)
    extra_cols = max(0, extent.max_col - last_col)
    max_rows = ctx.params["max_extra_rows"]
    max_cols = ctx.params["max_extra_columns"]
    if extra_rows <= max_rows and extra_cols <= max_cols:
        return []
    last_data = CellRange(last_row, last_col, last_row, last_col).coord if used is not None else "none"
    return [ctx.violation(
        Location.of_sheet(sheet),
        f"Used range {extent.coord} extends beyond the data (last data cell {last_data}): "
        f"{extra_rows} extra rows, {extra_cols} extra columns",
        extent=extent.coord,
        extra_rows=extra_rows,
        extra_columns=extra_cols,
    )]


def check_conditional_formatting(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    total = sum(cf.rule_count for cf in sheet.conditional_formats)
    limit = ctx.params["max_rules"]
    if total <= limit:
        return []
    ranges = sorted({cf.range for cf in sheet.conditional_formats})
    return [ctx.violation(
        Location.of_sheet(sheet),
        f"Sheet has {total} conditional formatting rules (threshold: {limit}). Ranges: {', '.join(ranges)}",
        rules=total,
        ranges=ranges,
    )]


_RESERVED_SHEETS = ParamSpec(
    "reserved_sheet_names",
    "str_list",
    (),
    doc="Sheet names never reported as unused (compared case-insensitively).",
)

RULES = (
    RuleSpec(
        rule_id="PERF001",
        name="Unused named ranges",
        category=Category.PERFORMANCE,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_unused_named_ranges,
        needs_graph=True,
    ),
    RuleSpec(
        rule_id="PERF002",
        name="Unused sheets",
        category=Category.PERFORMANCE,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_unused_sheets,
        needs_graph=True,
        params=(
            _RESERVED_SHEETS,
            ParamSpec(
                "ignore_formula_sheets",
                "bool",
                False,
                doc="Never report sheets that contain formulas (report and summary sheets).",
            ),
        ),
    ),
    RuleSpec(
        rule_id="PERF003",
        name="Large used range",
        category=Category.PERFORMANCE,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_large_used_range,
        params=(
            ParamSpec("max_extra_rows", "int", 2, minimum=0),
            ParamSpec("max_extra_columns", "int", 2, minimum=0),
        ),
    ),
    RuleSpec(
        rule_id="PERF004",
        name="Excessive conditional formatting",
        category=Category.PERFORMANCE,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_conditional_formatting,
        params=(ParamSpec("max_rules", "int", 5, minimum=0),),
    ),
    RuleSpec(
        rule_id="PERF005",
        name="Empty unused sheets",
        category=Category.PERFORMANCE,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_empty_sheets,
        needs_graph=True,
        params=(_RESERVED_SHEETS,),
    ),
)
