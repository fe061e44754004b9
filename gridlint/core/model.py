"""
gridlint/core/model.py

Format-agnostic workbook model.

Both readers produce these objects; nothing downstream ever branches on the
source dialect. Every class is frozen and the per-sheet cell mapping is a
read-only proxy, so a parsed Workbook can be shared across worker threads
without locking.

Coordinates are 1-based (row, col), the same convention openpyxl uses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

from openpyxl.utils.cell import get_column_letter, range_boundaries

from gridlint.core.errors import FormulaError
from gridlint.core.formula import CellRef, Node, RangeRef
from gridlint.core.references import FormulaAnalysis, Reference

_NUMERIC_TEXT = re.compile(r"^\s*[+-]?(?:\d{1,3}(?:,\d{3})+|\d+)?(?:\.\d+)?(?:[eE][+-]?\d+)?%?\s*$")


def looks_numeric(text: str) -> bool:
    """True for strings a spreadsheet would happily read as a number ("12", "1,234.5", "7%")."""
    if not text or not any(ch.isdigit() for ch in text):
        return False
    return bool(_NUMERIC_TEXT.match(text))


# ---------------------------------------------------------------------------
# Cell values (tagged variant)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Boolean:
    value: bool


@dataclass(frozen=True)
class ErrorCode:
    code: str


@dataclass(frozen=True)
class Empty:
    pass


EMPTY = Empty()
CellValue = Union[Number, Text, Boolean, ErrorCode, Empty]


# ---------------------------------------------------------------------------
# Formulas and cells
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Formula:
    """
    text:  canonical text ("=SUM(A1:B2)"); for unparseable formulas the
           dialect-normalised source text
    raw:   text exactly as stored in the file
    """

    text: str
    raw: str
    ast: Optional[Node] = None
    analysis: Optional[FormulaAnalysis] = field(default=None, compare=False, repr=False)
    error: Optional[FormulaError] = field(default=None, compare=False)

    @property
    def parsed(self) -> bool:
        return self.ast is not None


@dataclass(frozen=True)
class Cell:
    row: int
    col: int
    raw_value: CellValue = EMPTY
    formula: Optional[Formula] = None
    number_format: str = "General"

    @property
    def coordinate(self) -> str:
        return f"{get_column_letter(self.col)}{self.row}"

    @property
    def is_empty(self) -> bool:
        return self.formula is None and isinstance(self.raw_value, Empty)

    @property
    def is_text_formatted(self) -> bool:
        return (
            self.number_format == "@"
            and isinstance(self.raw_value, Text)
            and looks_numeric(self.raw_value.value)
        )


@dataclass(frozen=True, order=True)
class CellRange:
    min_row: int
    min_col: int
    max_row: int
    max_col: int

    @classmethod
    def from_string(cls, ref: str) -> "CellRange":
        min_col, min_row, max_col, max_row = range_boundaries(ref.replace("$", ""))
        return cls(min_row, min_col, max_row, max_col)

    @property
    def coord(self) -> str:
        first = f"{get_column_letter(self.min_col)}{self.min_row}"
        if (self.min_row, self.min_col) == (self.max_row, self.max_col):
            return first
        return f"{first}:{get_column_letter(self.max_col)}{self.max_row}"

    @property
    def size(self) -> int:
        return (self.max_row - self.min_row + 1) * (self.max_col - self.min_col + 1)

    def contains(self, row: int, col: int) -> bool:
        return self.min_row <= row <= self.max_row and self.min_col <= col <= self.max_col

    def overlaps(self, other: "CellRange") -> bool:
        return not (
            other.max_row < self.min_row
            or other.min_row > self.max_row
            or other.max_col < self.min_col
            or other.min_col > self.max_col
        )


@dataclass(frozen=True)
class ConditionalFormat:
    range: str
    rule_count: int


# ---------------------------------------------------------------------------
# Sheets, names, workbook
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Sheet:
    name: str
    index: int
    cells: Mapping[Tuple[int, int], Cell] = field(default_factory=lambda: MappingProxyType({}))
    visibility: str = "visible"  # "visible" | "hidden" | "very_hidden"
    merged_ranges: Tuple[CellRange, ...] = ()
    conditional_formats: Tuple[ConditionalFormat, ...] = ()
    hidden_rows: Tuple[Tuple[int, int], ...] = ()
    hidden_columns: Tuple[Tuple[int, int], ...] = ()
    used_range: Optional[CellRange] = None
    extent: Optional[CellRange] = None

    @property
    def hidden(self) -> bool:
        return self.visibility != "visible"

    @property
    def is_empty(self) -> bool:
        return not self.cells

    def cell(self, row: int, col: int) -> Optional[Cell]:
        return self.cells.get((row, col))

    def iter_cells(self) -> Iterator[Cell]:
        """Cells in row-major order."""
        return iter(self.cells.values())

    def formula_cells(self) -> Iterator[Cell]:
        return (c for c in self.cells.values() if c.formula is not None)

    def parsed_formula_cells(self) -> Iterator[Cell]:
        return (c for c in self.cells.values() if c.formula is not None and c.formula.parsed)


@dataclass(frozen=True)
class NamedRange:
    """
    A defined name. `references` holds every reference of the defining
    expression; `broken` marks a target that cannot be resolved (#REF!, a
    deleted sheet, unparseable text).
    """

    name: str
    raw: str
    scope: Optional[str] = None  # None = workbook-wide, else the owning sheet name
    references: Tuple[Reference, ...] = ()
    broken: bool = False
    reserved: bool = False  # print areas, print titles

    @property
    def target(self) -> Optional[Union[CellRef, RangeRef]]:
        if self.broken or len(self.references) != 1:
            return None
        ref = self.references[0]
        return ref if isinstance(ref, (CellRef, RangeRef)) else None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name.lower(), (self.scope or "").lower())


@dataclass(frozen=True)
class ExternalLink:
    index: int
    target: str


@dataclass(frozen=True)
class Workbook:
    sheets: Tuple[Sheet, ...]
    named_ranges: Tuple[NamedRange, ...] = ()
    has_macros: bool = False
    external_links: Tuple[ExternalLink, ...] = ()
    corruption: Tuple[str, ...] = ()
    format: str = ""
    source_path: Optional[str] = None

    @property
    def corrupted(self) -> bool:
        return bool(self.corruption)

    def sheet(self, name: str) -> Optional[Sheet]:
        low = name.lower()
        for sh in self.sheets:
            if sh.name.lower() == low:
                return sh
        return None

    def sheet_index(self, name: str) -> Optional[int]:
        sh = self.sheet(name)
        return sh.index if sh is not None else None

    def resolve_name(self, name: str, from_sheet: Optional[str]) -> Optional[NamedRange]:
        """Sheet-local definitions shadow workbook-wide ones."""
        low = name.lower()
        fallback = None
        for nr in self.named_ranges:
            if nr.name.lower() != low:
                continue
            if nr.scope is None:
                fallback = nr
            elif from_sheet is not None and nr.scope.lower() == from_sheet.lower():
                return nr
        return fallback

    def external_link(self, book: str) -> Optional[ExternalLink]:
        for link in self.external_links:
            if str(link.index) == book:
                return link
        return None

    def stats(self) -> Dict[str, Any]:
        return {
            "sheets": len(self.sheets),
            "cells": sum(len(s.cells) for s in self.sheets),
            "formulas": sum(1 for s in self.sheets for _ in s.formula_cells()),
            "named_ranges": len(self.named_ranges),
        }
