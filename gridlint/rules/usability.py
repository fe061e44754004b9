"""
gridlint/rules/usability.py

Formatting and usability:
  UX001  numbers stored as text, and numbers formatted as text
  UX002  date formats that differ from the house format, dates typed as text
  UX003  runs of blank rows / columns inside the used range
"""

from __future__ import annotations

import re
from typing import List, Set, Tuple

from gridlint.core.model import Number, Text, looks_numeric
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.rules.base import SHEET, ParamSpec, RuleContext, RuleSpec, group_contiguous, spans_text

_FORMAT_NOISE = re.compile(r'\[[^\]]*\]|"[^"]*"|\\.')
_DATE_TEXT = re.compile(
    r"^\s*(?:\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}|\d{4}/\d{1,2}/\d{1,2})\s*$"
)


def check_numbers_as_text(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    as_text: List[Tuple[int, int]] = []
    text_formatted: List[Tuple[int, int]] = []
    for cell in sheet.iter_cells():
        if cell.formula is not None:
            continue
        value = cell.raw_value
        if isinstance(value, Text) and looks_numeric(value.value):
            as_text.append((cell.row, cell.col))
        elif isinstance(value, Number) and cell.number_format == "@":
            text_formatted.append((cell.row, cell.col))
    out: List[Violation] = []
    for rng, count in group_contiguous(as_text):
        out.append(ctx.violation(
            Location.of_range(sheet, rng),
            f"Numeric data stored as text in {rng.coord}",
            cells=count,
            kind="stored_as_text",
        ))
    for rng, count in group_contiguous(text_formatted):
        out.append(ctx.violation(
            Location.of_range(sheet, rng),
            f"Numbers formatted as text in {rng.coord}",
            cells=count,
            kind="text_format",
        ))
    return out


def _clean_format(code: str) -> str:
    return _FORMAT_NOISE.sub("", code).lower()


def is_date_format(code: str) -> bool:
    if not code or code.lower() == "general" or code == "@":
        return False
    low = _clean_format(code.split(";")[0])
    if "d" in low or "y" in low:
        return True
    return "m" in low and not any(ch in low for ch in "0#?hs")


def _canonical(code: str) -> str:
    return code.replace("\\", "").strip().lower()


def check_date_formats(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    required = ctx.params["date_format"]
    out: List[Violation] = []
    for cell in sheet.iter_cells():
        value = cell.raw_value
        if cell.formula is None and isinstance(value, Text) and _DATE_TEXT.match(value.value):
            out.append(ctx.violation(
                Location.of_cell(sheet, cell),
                f"Date '{value.value.strip()}' in {cell.coordinate} is stored as text",
                kind="date_as_text",
            ))
            continue
        if not isinstance(value, Number) and cell.formula is None:
            continue
        fmt = cell.number_format
        if is_date_format(fmt) and _canonical(fmt) != _canonical(required):
            shown = fmt.replace("\\", "")
            out.append(ctx.violation(
                Location.of_cell(sheet, cell),
                f"Date format '{shown}' in {cell.coordinate} does not match required format '{required}'",
                kind="format",
                number_format=fmt,
            ))
    return out


def _blank_runs(occupied: Set[int], first: int, last: int, limit: int) -> List[Tuple[int, int]]:
    runs: List[Tuple[int, int]] = []
    start = None
    for i in range(first, last + 2):
        blank = i <= last and i not in occupied
        if blank and start is None:
            start = i
        elif not blank and start is not None:
            if i - start > limit:
                runs.append((start, i - 1))
            start = None
    return runs


def check_blank_rows_columns(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    used = sheet.used_range
    if used is None:
        return []
    rows = {r for r, _ in sheet.cells}
    cols = {c for _, c in sheet.cells}
    max_rows = ctx.params["max_blank_rows"]
    max_cols = ctx.params["max_blank_columns"]

    out: List[Violation] = []
    row_runs = _blank_runs(rows, 1, used.max_row, max_rows)
    if row_runs:
        text = ", ".join(spans_text(a, b) for a, b in row_runs)
        out.append(ctx.violation(
            Location.of_sheet(sheet),
            f"Blank rows within used range: {text}. Consider removing or filling these rows.",
            axis="row",
            spans=[list(r) for r in row_runs],
        ))
    col_runs = _blank_runs(cols, 1, used.max_col, max_cols)
    if col_runs:
        text = ", ".join(spans_text(a, b, letters=True) for a, b in col_runs)
        out.append(ctx.violation(
            Location.of_sheet(sheet),
            f"Blank columns within used range: {text}. Consider removing or filling these columns.",
            axis="column",
            spans=[list(r) for r in col_runs],
        ))
    return out


RULES = (
    RuleSpec(
        rule_id="UX001",
        name="Numbers stored as text",
        category=Category.USABILITY,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_numbers_as_text,
    ),
    RuleSpec(
        rule_id="UX002",
        name="Inconsistent date format",
        category=Category.USABILITY,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_date_formats,
        params=(ParamSpec("date_format", "str", "mm/dd/yyyy", doc="Required number format for dates."),),
    ),
    RuleSpec(
        rule_id="UX003",
        name="Blank rows and columns",
        category=Category.USABILITY,
        severity=Severity.INFO,
        scope=SHEET,
        check=check_blank_rows_columns,
        params=(
            ParamSpec("max_blank_rows", "int", 2, minimum=0),
            ParamSpec("max_blank_columns", "int", 2, minimum=0),
        ),
    ),
)
