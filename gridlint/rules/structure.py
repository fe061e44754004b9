"""
gridlint/rules/structure.py

Structure and maintainability:
  SM001  too many sheets
  SM002  sheet names that only differ by case, spacing or punctuation
  SM003  long text cells
  SM004  merged cells
  SM005  non-descriptive sheet names ("Sheet3", "Copy of Data")
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

from gridlint.core.model import Text
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.rules.base import SHEET, WORKBOOK, ParamSpec, RuleContext, RuleSpec, group_contiguous


def normalize_name(name: str) -> str:
    return "".join(ch for ch in name.lower() if ch.isalnum())


def check_sheet_count(ctx: RuleContext) -> List[Violation]:
    count = len(ctx.workbook.sheets)
    limit = ctx.params["max_sheets"]
    if count <= limit:
        return []
    return [ctx.violation(Location.workbook(), f"Workbook has {count} sheets (threshold: {limit})", sheets=count)]


def check_duplicate_sheet_names(ctx: RuleContext) -> List[Violation]:
    groups: Dict[str, List[str]] = defaultdict(list)
    for sheet in ctx.workbook.sheets:
        groups[normalize_name(sheet.name)].append(sheet.name)
    out: List[Violation] = []
    for key in sorted(groups):
        names = groups[key]
        if len(names) < 2:
            continue
        out.append(ctx.violation(
            Location.workbook(),
            f"Confusingly similar sheet names: {', '.join(names)}",
            names=names,
        ))
    return out


def check_long_text(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    limit = ctx.params["max_text_length"]
    cells = [
        (c.row, c.col)
        for c in sheet.iter_cells()
        if isinstance(c.raw_value, Text) and len(c.raw_value.value) > limit
    ]
    return [
        ctx.violation(
            Location.of_range(sheet, rng),
            f"Long text cells (>{limit} characters) in {rng.coord}",
            cells=count,
        )
        for rng, count in group_contiguous(cells)
    ]


def check_merged_cells(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    return [
        ctx.violation(Location.of_range(sheet, rng), f"Merged cells: {rng.coord}")
        for rng in sheet.merged_ranges
    ]


def check_sheet_names(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    name = normalize_name(sheet.name)
    for pattern in ctx.params["avoid_names"]:
        key = normalize_name(pattern)
        if key and key in name:
            return [ctx.violation(
                Location.of_sheet(sheet),
                f"Non-descriptive sheet name '{sheet.name}' contains pattern '{pattern}'",
                pattern=pattern,
            )]
    return []


RULES = (
    RuleSpec(
        rule_id="SM001",
        name="Excessive sheet count",
        category=Category.STRUCTURE,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_sheet_count,
        params=(ParamSpec("max_sheets", "int", 50, minimum=1),),
    ),
    RuleSpec(
        rule_id="SM002",
        name="Duplicate sheet names",
        category=Category.STRUCTURE,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_duplicate_sheet_names,
    ),
    RuleSpec(
        rule_id="SM003",
        name="Long text cells",
        category=Category.STRUCTURE,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_long_text,
        params=(ParamSpec("max_text_length", "int", 255, minimum=1),),
    ),
    RuleSpec(
        rule_id="SM004",
        name="Merged cells",
        category=Category.STRUCTURE,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_merged_cells,
    ),
    RuleSpec(
        rule_id="SM005",
        name="Non-descriptive sheet names",
        category=Category.STRUCTURE,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_sheet_names,
        params=(ParamSpec("avoid_names", "str_list", ("sheet", "copy")),),
    ),
)
