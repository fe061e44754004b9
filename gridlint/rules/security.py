"""
gridlint/rules/security.py

Security and privacy:
  SEC001  external workbook links and URLs (optionally only the unreachable ones)
  SEC002  hidden sheets
  SEC003  hidden rows / columns, one violation per span
  SEC004  macros / scripts
  SEC005  possible corruption (damaged parts, unparseable formulas)
"""

from __future__ import annotations

import os
from collections import defaultdict
from typing import Dict, List, Set, Tuple

from gridlint.core.model import Text, Workbook
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.rules.base import SHEET, WORKBOOK, ParamSpec, RuleContext, RuleSpec, group_contiguous, spans_text
from gridlint.rules.links import BROKEN, file_probe, http_probe, is_url, probe_all

_WORKBOOK_LINKS = ("workbook", "all")
_URL_LINKS = ("url", "all")


def _book_target(wb: Workbook, book: str) -> str:
    link = wb.external_link(book)
    return link.target if link is not None else book


def _collect_links(ctx: RuleContext) -> Dict[str, Dict[Tuple[str, str], Set[Tuple[int, int]]]]:
    """sheet name -> (kind, target) -> cells"""
    wb = ctx.workbook
    found: Dict[str, Dict[Tuple[str, str], Set[Tuple[int, int]]]] = {}
    for sheet in wb.sheets:
        link_type = ctx.params_for(sheet)["link_type"]
        per_sheet: Dict[Tuple[str, str], Set[Tuple[int, int]]] = defaultdict(set)
        for cell in sheet.iter_cells():
            formula = cell.formula
            if formula is not None and formula.parsed:
                if link_type in _WORKBOOK_LINKS:
                    for ext in formula.analysis.external_refs:
                        per_sheet[("workbook", _book_target(wb, ext.book))].add((cell.row, cell.col))
                if link_type in _URL_LINKS:
                    for lit in formula.analysis.literals:
                        if lit.function == "HYPERLINK" and lit.kind == "text" and is_url(str(lit.value)):
                            per_sheet[("url", str(lit.value).strip())].add((cell.row, cell.col))
            elif link_type in _URL_LINKS and isinstance(cell.raw_value, Text) and is_url(cell.raw_value.value):
                per_sheet[("url", cell.raw_value.value.strip())].add((cell.row, cell.col))
        found[sheet.name] = dict(per_sheet)
    return found


def _statuses(ctx: RuleContext, targets: Set[Tuple[str, str]]) -> Dict[str, str]:
    timeout = float(ctx.params["timeout_seconds"])
    base_dir = os.path.dirname(ctx.workbook.source_path) if ctx.workbook.source_path else None
    http = ctx.link_probe or http_probe

    def probe(target: str, seconds: float) -> str:
        if is_url(target):
            return http(target, seconds)
        return file_probe(target, base_dir)

    return probe_all((t for _, t in targets), probe, timeout)


def check_external_links(ctx: RuleContext) -> List[Violation]:
    wb = ctx.workbook
    found = _collect_links(ctx)
    wants_invalid = any(ctx.params_for(s)["link_status"] == "invalid" for s in wb.sheets)

    referenced: Set[str] = set()
    all_targets: Set[Tuple[str, str]] = set()
    for per_sheet in found.values():
        for kind, target in per_sheet:
            all_targets.add((kind, target))
            referenced.add(target)
    metadata: List[str] = []
    if ctx.params["link_type"] in _WORKBOOK_LINKS:
        metadata = [link.target for link in wb.external_links if link.target not in referenced]
        all_targets.update(("workbook", t) for t in metadata)
    status = _statuses(ctx, all_targets) if wants_invalid else {}

    out: List[Violation] = []
    for sheet in wb.sheets:
        only_invalid = ctx.params_for(sheet)["link_status"] == "invalid"
        for (kind, target), cells in sorted(found[sheet.name].items()):
            if only_invalid and status.get(target) != BROKEN:
                continue
            label = "external workbook reference" if kind == "workbook" else "external URL"
            for rng, count in group_contiguous(cells):
                if only_invalid:
                    message = f"Unreachable {label} '{target}' in {rng.coord}"
                else:
                    message = f"{label[0].upper()}{label[1:]} '{target}' in {rng.coord}"
                out.append(ctx.violation(
                    Location.of_range(sheet, rng),
                    message,
                    link_kind=kind,
                    target=target,
                    cells=count,
                    status=status.get(target, "unchecked"),
                ))
    only_invalid = ctx.params["link_status"] == "invalid"
    for target in metadata:
        if only_invalid and status.get(target) != BROKEN:
            continue
        out.append(ctx.violation(
            Location.workbook(),
            f"External link '{target}' found in workbook metadata",
            link_kind="workbook",
            target=target,
            status=status.get(target, "unchecked"),
        ))
    return out


def check_hidden_sheets(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    if not sheet.hidden:
        return []
    how = "very hidden" if sheet.visibility == "very_hidden" else "hidden"
    return [ctx.violation(Location.of_sheet(sheet), f"Sheet '{sheet.name}' is {how}", visibility=sheet.visibility)]


def check_hidden_rows_columns(ctx: RuleContext) -> List[Violation]:
    sheet = ctx.sheet
    out: List[Violation] = []
    for first, last in sheet.hidden_columns:
        out.append(ctx.violation(
            Location.of_sheet(sheet),
            f"Hidden columns: {spans_text(first, last, letters=True)}",
            axis="column",
            first=first,
            last=last,
        ))
    for first, last in sheet.hidden_rows:
        out.append(ctx.violation(
            Location.of_sheet(sheet),
            f"Hidden rows: {spans_text(first, last)}",
            axis="row",
            first=first,
            last=last,
        ))
    return out


def check_macros(ctx: RuleContext) -> List[Violation]:
    wb = ctx.workbook
    if not wb.has_macros:
        return []
    what = "VBA project" if wb.format == "xlsx" else "Basic/script modules"
    return [ctx.violation(Location.workbook(), f"Workbook contains macros ({what})")]


def check_possible_corruption(ctx: RuleContext) -> List[Violation]:
    wb = ctx.workbook
    out: List[Violation] = [
        ctx.violation(Location.workbook(), f"Possible corruption: {note}", note=note) for note in wb.corruption
    ]
    for sheet in wb.sheets:
        failed = [c for c in sheet.formula_cells() if not c.formula.parsed]
        if not failed:
            continue
        first = failed[0]
        out.append(ctx.violation(
            Location.of_sheet(sheet),
            f"{len(failed)} formula(s) could not be parsed; first at {first.coordinate}: {first.formula.error}",
            count=len(failed),
            first=first.coordinate,
        ))
    return out


RULES = (
    RuleSpec(
        rule_id="SEC001",
        name="External links",
        category=Category.SECURITY,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_external_links,
        params=(
            ParamSpec("link_type", "str", "workbook", choices=("workbook", "url", "all")),
            ParamSpec("link_status", "str", "all", choices=("all", "invalid")),
            ParamSpec("timeout_seconds", "float", 5.0, minimum=0),
        ),
        description="References to other workbooks and web URLs.",
    ),
    RuleSpec(
        rule_id="SEC002",
        name="Hidden sheets",
        category=Category.SECURITY,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_hidden_sheets,
    ),
    RuleSpec(
        rule_id="SEC003",
        name="Hidden rows and columns",
        category=Category.SECURITY,
        severity=Severity.WARNING,
        scope=SHEET,
        check=check_hidden_rows_columns,
    ),
    RuleSpec(
        rule_id="SEC004",
        name="Macros",
        category=Category.SECURITY,
        severity=Severity.WARNING,
        scope=WORKBOOK,
        check=check_macros,
    ),
    RuleSpec(
        rule_id="SEC005",
        name="Possible corruption",
        category=Category.SECURITY,
        severity=Severity.ERROR,
        scope=WORKBOOK,
        check=check_possible_corruption,
    ),
)
