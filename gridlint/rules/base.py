"""
gridlint/rules/base.py

Rule descriptors shared by every rule module.

A rule is plain data (RuleSpec) plus a check function. The engine hands the
check a RuleContext holding the workbook, the resolved parameters and, for
sheet rules, the sheet under inspection. Checks are pure: they only read the
model (and the dependency graph) and return Violations.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from openpyxl.utils.cell import get_column_letter

from gridlint.core.errors import ConfigError
from gridlint.core.graph import DependencyGraph
from gridlint.core.model import CellRange, Sheet, Workbook
from gridlint.core.violation import Category, Location, Severity, Violation

SHEET = "sheet"
WORKBOOK = "workbook"

# Probe callable: (url_or_path, timeout_seconds) -> "ok" | "broken" | "unknown"
LinkProbe = Callable[[str, float], str]


@dataclass(frozen=True)
class ParamSpec:
    """
    kind:
      int / float / bool / str   scalar of that type (bool is never an int)
      str_list / number_list     list of strings / numbers
    """

    name: str
    kind: str
    default: Any
    choices: Tuple[str, ...] = ()
    minimum: Optional[float] = None
    doc: str = ""

    def validate(self, value: Any, key: str) -> Any:
        if self.kind == "bool":
            if not isinstance(value, bool):
                raise ConfigError(f"{key} must be a boolean, got {value!r}", key)
            return value
        if self.kind == "int":
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{key} must be an integer, got {value!r}", key)
            return self._bounded(value, key)
        if self.kind == "float":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{key} must be a number, got {value!r}", key)
            return self._bounded(float(value), key)
        if self.kind == "str":
            if not isinstance(value, str):
                raise ConfigError(f"{key} must be a string, got {value!r}", key)
            if self.choices:
                low = value.strip().lower()
                if low not in self.choices:
                    raise ConfigError(f"{key} must be one of {', '.join(self.choices)}, got {value!r}", key)
                return low
            return value
        if self.kind == "str_list":
            if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"{key} must be a list of strings, got {value!r}", key)
            return tuple(value)
        if self.kind == "number_list":
            if not isinstance(value, (list, tuple)) or any(
                isinstance(v, bool) or not isinstance(v, (int, float)) for v in value
            ):
                raise ConfigError(f"{key} must be a list of numbers, got {value!r}", key)
            return tuple(float(v) for v in value)
        raise ConfigError(f"{key} has an unsupported parameter kind {self.kind}", key)

    def _bounded(self, value, key: str):
        if self.minimum is not None and value < self.minimum:
            raise ConfigError(f"{key} must be >= {self.minimum:g}, got {value!r}", key)
        return value


@dataclass(frozen=True)
class RuleSpec:
    rule_id: str
    name: str
    category: Category
    severity: Severity
    scope: str
    check: Callable[["RuleContext"], List[Violation]] = field(compare=False, repr=False)
    params: Tuple[ParamSpec, ...] = ()
    needs_graph: bool = False
    default_enabled: bool = True
    description: str = ""

    def param(self, name: str) -> Optional[ParamSpec]:
        for p in self.params:
            if p.name == name:
                return p
        return None

    def defaults(self) -> Dict[str, Any]:
        return {p.name: p.default for p in self.params}


@dataclass(frozen=True)
class RuleContext:
    workbook: Workbook
    rule: RuleSpec
    params: Mapping[str, Any]
    sheet: Optional[Sheet] = None
    graph: Optional[DependencyGraph] = None
    sheet_params: Optional[Callable[[Sheet], Mapping[str, Any]]] = field(default=None, repr=False)
    link_probe: Optional[LinkProbe] = field(default=None, repr=False)

    def params_for(self, sheet: Sheet) -> Mapping[str, Any]:
        """Parameters as resolved for one sheet (workbook rules that honour sheet overrides)."""
        if self.sheet_params is None:
            return self.params
        return self.sheet_params(sheet)

    def violation(self, location: Location, message: str, **detail: Any) -> Violation:
        return Violation(
            rule_id=self.rule.rule_id,
            category=self.rule.category,
            severity=self.rule.severity,
            location=location,
            message=message,
            detail=detail,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def group_contiguous(cells: Iterable[Tuple[int, int]]) -> List[Tuple[CellRange, int]]:
    """
    Edge-connected groups of (row, col) cells, as (bounding box, cell count),
    in row-major order of each group's first cell.
    """
    pending = set(cells)
    groups: List[Tuple[CellRange, int]] = []
    for start in sorted(pending):
        if start not in pending:
            continue
        pending.discard(start)
        queue = deque([start])
        rows: List[int] = []
        cols: List[int] = []
        while queue:
            r, c = queue.popleft()
            rows.append(r)
            cols.append(c)
            for nb in ((r - 1, c), (r + 1, c), (r, c - 1), (r, c + 1)):
                if nb in pending:
                    pending.discard(nb)
                    queue.append(nb)
        groups.append((CellRange(min(rows), min(cols), max(rows), max(cols)), len(rows)))
    return groups


def spans_text(first: int, last: int, letters: bool = False) -> str:
    if letters:
        a, b = get_column_letter(first), get_column_letter(last)
    else:
        a, b = str(first), str(last)
    return a if first == last else f"{a}:{b}"


def truncate(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
