"""
gridlint/core/violation.py

Violation records handed to the (external) reporter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from gridlint.core.model import Cell, CellRange, Sheet


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Category(str, Enum):
    ERROR = "ERR"
    SECURITY = "SEC"
    PERFORMANCE = "PERF"
    USABILITY = "UX"
    STRUCTURE = "SM"
    FORMULA = "FORM"

    @property
    def label(self) -> str:
        return {
            "ERR": "Unresolved errors",
            "SEC": "Security and privacy",
            "PERF": "Performance",
            "UX": "Formatting and usability",
            "SM": "Structure and maintainability",
            "FORM": "Formula",
        }[self.value]


@dataclass(frozen=True)
class Location:
    """Workbook-level when `sheet` is None, sheet-level when `cells` is None."""

    sheet: Optional[str] = None
    sheet_index: Optional[int] = None
    cells: Optional[CellRange] = None

    @classmethod
    def workbook(cls) -> "Location":
        return cls()

    @classmethod
    def of_sheet(cls, sheet: Sheet) -> "Location":
        return cls(sheet.name, sheet.index)

    @classmethod
    def of_cell(cls, sheet: Sheet, cell: Cell) -> "Location":
        return cls(sheet.name, sheet.index, CellRange(cell.row, cell.col, cell.row, cell.col))

    @classmethod
    def of_range(cls, sheet: Sheet, cells: CellRange) -> "Location":
        return cls(sheet.name, sheet.index, cells)

    @property
    def kind(self) -> str:
        if self.sheet is None:
            return "workbook"
        if self.cells is None:
            return "sheet"
        return "cell" if self.cells.size == 1 else "range"

    def describe(self) -> str:
        if self.sheet is None:
            return "workbook"
        if self.cells is None:
            return self.sheet
        return f"{self.sheet}!{self.cells.coord}"

    def sort_key(self) -> Tuple[int, int, int, int]:
        if self.sheet is None:
            return (0, 0, 0, 0)
        if self.cells is None:
            return (1, self.sheet_index or 0, 0, 0)
        return (1, self.sheet_index or 0, self.cells.min_row, self.cells.min_col)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind}
        if self.sheet is not None:
            out["sheet"] = self.sheet
        if self.cells is not None:
            out["range" if self.kind == "range" else "cell"] = self.cells.coord
        return out


@dataclass(frozen=True)
class Violation:
    rule_id: str
    category: Category
    severity: Severity
    location: Location
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def sort_key(self) -> Tuple[Any, ...]:
        return self.location.sort_key() + (self.rule_id, self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "location": self.location.to_dict(),
            "message": self.message,
            "detail": dict(self.detail),
        }
