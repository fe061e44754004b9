"""
gridlint/readers/base.py

Infrastructure shared by the OOXML and OpenDocument backends:
  - SheetBuilder / WorkbookBuilder: mutable while a backend decodes, frozen into
    the immutable model by build()
  - make_formula(): parse + canonicalise one formula, never raises
  - archive helpers: open the zip container, CRC-probe members, parse XML parts
  - small normalisers (number formats, hidden spans) that keep both dialects'
    output identical

Corruption policy: a backend skips unreadable sheet bodies and records a note;
build() refuses to produce a workbook with no readable sheet at all.
"""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
import xml.etree.ElementTree as ET
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Set, Tuple

from gridlint.core.errors import CorruptWorkbookError, FormulaError, MalformedWorkbookError
from gridlint.core.formula import CellRef, ExternalRef, NamedRangeRef, RangeRef, parse_formula, render
from gridlint.core.model import (
    EMPTY,
    Cell,
    CellRange,
    CellValue,
    ConditionalFormat,
    Empty,
    ExternalLink,
    Formula,
    NamedRange,
    Sheet,
    Workbook,
)
from gridlint.core.references import analyze

logger = logging.getLogger(__name__)

RESERVED_NAMES = ("print_area", "print_titles", "_filterdatabase", "criteria", "extract", "consolidate_area")


def is_reserved_name(name: str) -> bool:
    n = name.lower()
    if n.startswith("_xlnm."):
        return True
    return n in RESERVED_NAMES


def make_formula(text: str, raw: Optional[str] = None) -> Formula:
    """Parse `text` (grammar dialect, with or without '='). Failures are kept on the Formula."""
    raw = text if raw is None else raw
    try:
        ast = parse_formula(text)
    except FormulaError as e:
        shown = text if text.startswith("=") else "=" + text
        return Formula(text=shown, raw=raw, error=e)
    return Formula(text="=" + render(ast), raw=raw, ast=ast, analysis=analyze(ast))


def split_union(expression: str) -> List[str]:
    """Split "Sheet1!A1:B2,Sheet1!D1" on commas outside quotes and parentheses."""
    pieces: List[str] = []
    depth = 0
    quote = ""
    start = 0
    for i, ch in enumerate(expression):
        if quote:
            if ch == quote:
                quote = ""
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            pieces.append(expression[start:i])
            start = i + 1
    pieces.append(expression[start:])
    return [p.strip() for p in pieces if p.strip()] or [expression]


def normalize_number_format(code: Optional[str]) -> str:
    if not code:
        return "General"
    if code.lower() == "general":
        return "General"
    return code


def merge_spans(indices: Iterable[int]) -> Tuple[Tuple[int, int], ...]:
    """[1, 2, 3, 7] -> ((1, 3), (7, 7))"""
    spans: List[List[int]] = []
    for i in sorted(set(indices)):
        if spans and i == spans[-1][1] + 1:
            spans[-1][1] = i
        else:
            spans.append([i, i])
    return tuple((a, b) for a, b in spans)


def merge_span_list(spans: Iterable[Tuple[int, int]]) -> Tuple[Tuple[int, int], ...]:
    out: List[List[int]] = []
    for a, b in sorted(spans):
        if out and a <= out[-1][1] + 1:
            out[-1][1] = max(out[-1][1], b)
        else:
            out.append([a, b])
    return tuple((a, b) for a, b in out)


# ---------------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------------

def open_archive(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zlib.error, ValueError) as e:
        raise CorruptWorkbookError(f"not a valid zip container: {e}") from e


def probe_members(zf: zipfile.ZipFile) -> Set[str]:
    """Names of archive members that cannot be read back (CRC or deflate failures)."""
    bad: Set[str] = set()
    for info in zf.infolist():
        if info.is_dir():
            continue
        try:
            zf.read(info.filename)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
            logger.warning("unreadable archive member part=%s error=%s", info.filename, e)
            bad.add(info.filename)
    return bad


def read_part(zf: zipfile.ZipFile, name: str, bad: Set[str]) -> Optional[bytes]:
    if name in bad:
        return None
    try:
        return zf.read(name)
    except KeyError:
        return None


def parse_xml(data: bytes, part: str) -> ET.Element:
    try:
        return ET.fromstring(data)
    except ET.ParseError as e:
        raise MalformedWorkbookError(f"{part} is not well-formed XML: {e}") from e


def is_well_formed(data: bytes) -> bool:
    try:
        ET.fromstring(data)
    except ET.ParseError:
        return False
    return True


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

class SheetBuilder:
    def __init__(self, name: str, index: int) -> None:
        self.name = name
        self.index = index
        self.visibility = "visible"
        self._cells: Dict[Tuple[int, int], Cell] = {}
        self._merged: List[CellRange] = []
        self._conditional: List[ConditionalFormat] = []
        self._hidden_rows: List[Tuple[int, int]] = []
        self._hidden_cols: List[Tuple[int, int]] = []
        self._max_row = 0
        self._max_col = 0
        self.unparseable = 0

    def add_cell(
        self,
        row: int,
        col: int,
        value: CellValue = EMPTY,
        formula: Optional[Formula] = None,
        number_format: Optional[str] = None,
    ) -> None:
        self.touch(row, col)
        if formula is None and isinstance(value, Empty):
            return
        if formula is not None and not formula.parsed:
            self.unparseable += 1
        self._cells[(row, col)] = Cell(
            row=row,
            col=col,
            raw_value=value,
            formula=formula,
            number_format=normalize_number_format(number_format),
        )

    def touch(self, row: int, col: int) -> None:
        """Record a formatted (possibly empty) cell for the declared extent."""
        self._max_row = max(self._max_row, row)
        self._max_col = max(self._max_col, col)

    def add_merged(self, cells: CellRange) -> None:
        self._merged.append(cells)

    def add_conditional_format(self, ref: str, rule_count: int) -> None:
        self._conditional.append(ConditionalFormat(ref, rule_count))

    def hide_rows(self, first: int, last: int) -> None:
        self._hidden_rows.append((first, last))

    def hide_columns(self, first: int, last: int) -> None:
        self._hidden_cols.append((first, last))

    def build(self) -> Sheet:
        keys = sorted(self._cells)
        cells = {k: self._cells[k] for k in keys}
        used = None
        if keys:
            rows = [k[0] for k in keys]
            cols = [k[1] for k in keys]
            used = CellRange(min(rows), min(cols), max(rows), max(cols))
        extent = None
        if self._max_row and self._max_col:
            extent = CellRange(1, 1, self._max_row, self._max_col)
        if self.unparseable:
            logger.warning("unparseable formulas sheet=%s count=%d", self.name, self.unparseable)
        return Sheet(
            name=self.name,
            index=self.index,
            cells=MappingProxyType(cells),
            visibility=self.visibility,
            merged_ranges=tuple(sorted(set(self._merged))),
            conditional_formats=tuple(self._conditional),
            hidden_rows=merge_span_list(self._hidden_rows),
            hidden_columns=merge_span_list(self._hidden_cols),
            used_range=used,
            extent=extent,
        )


class WorkbookBuilder:
    def __init__(self, fmt: str) -> None:
        self.format = fmt
        self.sheets: List[SheetBuilder] = []
        self.has_macros = False
        self._names: List[Tuple[str, str, Optional[str], bool]] = []
        self._links: List[ExternalLink] = []
        self.corruption: List[str] = []
        self.source_path: Optional[str] = None

    def add_sheet(self, name: str) -> SheetBuilder:
        sb = SheetBuilder(name, len(self.sheets))
        self.sheets.append(sb)
        return sb

    def add_named_range(self, name: str, expression: str, scope: Optional[str] = None, reserved: bool = False) -> None:
        self._names.append((name, expression, scope, reserved or is_reserved_name(name)))

    def add_external_link(self, index: int, target: str) -> None:
        self._links.append(ExternalLink(index, target))

    def note_corruption(self, note: str) -> None:
        logger.warning("possible corruption format=%s note=%s", self.format, note)
        self.corruption.append(note)

    def _named_range(self, name: str, expression: str, scope: Optional[str], reserved: bool, known: Set[str]) -> NamedRange:
        refs = []
        broken = not expression.strip()
        for piece in split_union(expression):
            formula = make_formula(piece)
            if not formula.parsed:
                return NamedRange(name=name, raw=expression, scope=scope, broken=True, reserved=reserved)
            refs.extend(formula.analysis.references)
            broken = broken or bool(formula.analysis.error_literals)
        for ref in refs:
            if isinstance(ref, ExternalRef):
                continue
            sheet = ref.sheet if isinstance(ref, (CellRef, RangeRef, NamedRangeRef)) else None
            if sheet is not None and sheet.lower() not in known:
                broken = True
        return NamedRange(name=name, raw=expression, scope=scope, references=tuple(refs), broken=broken, reserved=reserved)

    def build(self) -> Workbook:
        if not self.sheets:
            raise CorruptWorkbookError("no readable sheet in workbook")
        sheets = tuple(sb.build() for sb in self.sheets)
        known = {s.name.lower() for s in sheets}
        seen: Set[Tuple[str, str]] = set()
        names: List[NamedRange] = []
        for name, expression, scope, reserved in self._names:
            nr = self._named_range(name, expression, scope, reserved, known)
            if nr.key in seen:
                logger.debug("duplicate defined name ignored name=%s scope=%s", name, scope)
                continue
            seen.add(nr.key)
            names.append(nr)
        return Workbook(
            sheets=sheets,
            named_ranges=tuple(names),
            has_macros=self.has_macros,
            external_links=tuple(sorted(self._links, key=lambda l: l.index)),
            corruption=tuple(self.corruption),
            format=self.format,
            source_path=self.source_path,
        )
