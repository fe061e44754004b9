"""
gridlint/core/graph.py

Builds a dependency graph from a parsed Workbook.
We do NOT evaluate formulas. We only model relationships between formula cells,
the ranges and cells they mention, and defined names.

Edges point from the dependent to what it reads (source -> target):
  formula cell -> referenced cell / range / name
  name         -> its target cells / ranges
  range        -> formula cells inside it (containment)

Range precision is a build option:
  - coarse (default): overlapping referenced ranges on a sheet collapse into
    one block node. Cheap, but two disjoint sub-ranges of the same block can
    show up as a cycle that does not exist cell by cell.
  - expanded: every range becomes edges to its cells (whole rows/columns are
    bounded by the target sheet's used range). Ranges above
    `max_expanded_cells` fall back to a range node.

Public API:
  - build_dependency_graph(workbook, expand_ranges=False, max_expanded_cells=100_000) -> DependencyGraph
  - DependencyGraph.find_cycles() -> list of node lists
  - DependencyGraph.is_named_range_used(nr) / sheet_usage(sheet) / incoming_from_outside(sheet)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import networkx as nx

from gridlint.core.formula import MAX_COLUMN, MAX_ROW, CellRef, ExternalRef, NamedRangeRef, RangeRef, quote_sheet
from gridlint.core.model import CellRange, NamedRange, Sheet, Workbook
from gridlint.core.references import Reference

logger = logging.getLogger(__name__)

DEFAULT_MAX_EXPANDED_CELLS = 100_000


@dataclass(frozen=True)
class CellNode:
    sheet: str
    row: int
    col: int

    def __str__(self) -> str:
        return f"{quote_sheet(self.sheet)}!{CellRange(self.row, self.col, self.row, self.col).coord}"


@dataclass(frozen=True)
class RangeNode:
    sheet: str
    cells: CellRange

    def __str__(self) -> str:
        return f"{quote_sheet(self.sheet)}!{self.cells.coord}"


@dataclass(frozen=True)
class NamedRangeNode:
    name: str
    scope: Optional[str] = None

    def __str__(self) -> str:
        return self.name if self.scope is None else f"{quote_sheet(self.scope)}!{self.name}"


GraphNode = Union[CellNode, RangeNode, NamedRangeNode]


class SheetUsage(str, Enum):
    USED = "used"
    EMPTY_UNUSED = "empty_unused"
    FILLED_UNUSED = "filled_unused"


WHITE, GRAY, BLACK = 0, 1, 2


class DependencyGraph:
    """Read-only view over the networkx graph built for one lint run."""

    def __init__(
        self,
        workbook: Workbook,
        graph: nx.DiGraph,
        expand_ranges: bool,
        unresolved_names: Set[Tuple[str, Optional[str]]],
    ) -> None:
        self.workbook = workbook
        self.graph = graph
        self.expand_ranges = expand_ranges
        self.unresolved_names = frozenset(unresolved_names)
        self._sheet_index = {s.name: s.index for s in workbook.sheets}

    # ordering ---------------------------------------------------------------

    def sort_key(self, node: GraphNode) -> Tuple[int, int, int, int, str]:
        if isinstance(node, CellNode):
            return (self._sheet_index.get(node.sheet, -1), node.row, node.col, 0, "")
        if isinstance(node, RangeNode):
            return (self._sheet_index.get(node.sheet, -1), node.cells.min_row, node.cells.min_col, 1, node.cells.coord)
        scope = self._sheet_index.get(node.scope, -1) if node.scope is not None else -1
        return (scope, 0, 0, 2, node.name.lower())

    def _successors(self, node: GraphNode) -> List[GraphNode]:
        return sorted(self.graph.successors(node), key=self.sort_key)

    # cycles -----------------------------------------------------------------

    def find_cycles(self) -> List[List[GraphNode]]:
        """
        Every cycle closed by a back-edge of a three-colour DFS, as the node
        sequence from the revisited node round to the node that closes it.
        Walks with an explicit stack; node order is deterministic.
        """
        color: Dict[GraphNode, int] = {}
        cycles: List[List[GraphNode]] = []
        seen: Set[frozenset] = set()

        for root in sorted(self.graph.nodes, key=self.sort_key):
            if color.get(root, WHITE) != WHITE:
                continue
            color[root] = GRAY
            path: List[GraphNode] = [root]
            pos: Dict[GraphNode, int] = {root: 0}
            stack = [iter(self._successors(root))]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    done = path.pop()
                    del pos[done]
                    color[done] = BLACK
                    continue
                state = color.get(nxt, WHITE)
                if state == GRAY:
                    cycle = path[pos[nxt]:]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                elif state == WHITE:
                    color[nxt] = GRAY
                    pos[nxt] = len(path)
                    path.append(nxt)
                    stack.append(iter(self._successors(nxt)))
        return cycles

    # usage ------------------------------------------------------------------

    def is_named_range_used(self, named_range: NamedRange) -> bool:
        node = NamedRangeNode(named_range.name, named_range.scope)
        if not self.graph.has_node(node):
            return False
        return any(src != node for src in self.graph.predecessors(node))

    def incoming_from_outside(self, sheet: Sheet) -> List[GraphNode]:
        """
        Nodes that are not on `sheet` but point at something on it. A name
        scoped to a sheet belongs to that sheet.
        """
        out: Set[GraphNode] = set()
        for node in self.graph.nodes:
            if _node_sheet(node) != sheet.name:
                continue
            for src in self.graph.predecessors(node):
                if _node_sheet(src) != sheet.name:
                    out.add(src)
        return sorted(out, key=self.sort_key)

    def sheet_usage(self, sheet: Sheet) -> SheetUsage:
        if self.incoming_from_outside(sheet):
            return SheetUsage.USED
        return SheetUsage.EMPTY_UNUSED if sheet.is_empty else SheetUsage.FILLED_UNUSED

    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": self.graph.number_of_nodes(),
            "edges": self.graph.number_of_edges(),
            "expanded": self.expand_ranges,
            "unresolved_names": len(self.unresolved_names),
        }


def _node_sheet(node: GraphNode) -> Optional[str]:
    if isinstance(node, (CellNode, RangeNode)):
        return node.sheet
    return node.scope


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------

def _bounds(ref: RangeRef, target: Sheet, clamp: bool) -> Optional[CellRange]:
    min_row, min_col, max_row, max_col = ref.bounds()
    if ref.kind == "column":
        if clamp:
            if target.used_range is None:
                return None
            min_row, max_row = target.used_range.min_row, target.used_range.max_row
        else:
            min_row, max_row = 1, MAX_ROW
    elif ref.kind == "row":
        if clamp:
            if target.used_range is None:
                return None
            min_col, max_col = target.used_range.min_col, target.used_range.max_col
        else:
            min_col, max_col = 1, MAX_COLUMN
    return CellRange(min_row, min_col, max_row, max_col)


def _bbox(a: CellRange, b: CellRange) -> CellRange:
    return CellRange(
        min(a.min_row, b.min_row),
        min(a.min_col, b.min_col),
        max(a.max_row, b.max_row),
        max(a.max_col, b.max_col),
    )


def coarse_blocks(rects: Iterable[CellRange]) -> List[CellRange]:
    """Collapse overlapping rectangles into their bounding boxes until none overlap."""
    blocks = sorted(set(rects))
    merged = True
    while merged:
        merged = False
        out: List[CellRange] = []
        for rect in blocks:
            for i, block in enumerate(out):
                if block.overlaps(rect):
                    out[i] = _bbox(block, rect)
                    merged = True
                    break
            else:
                out.append(rect)
        blocks = sorted(set(out))
    return blocks


class _Builder:
    def __init__(self, workbook: Workbook, expand_ranges: bool, max_expanded_cells: int) -> None:
        self.workbook = workbook
        self.expand = expand_ranges
        self.max_cells = max_expanded_cells
        self.g = nx.DiGraph()
        self.unresolved: Set[Tuple[str, Optional[str]]] = set()
        self.blocks: Dict[str, List[CellRange]] = {}
        self.formula_cells: Dict[str, List[Tuple[int, int]]] = {
            s.name: [(c.row, c.col) for c in s.parsed_formula_cells()] for s in workbook.sheets
        }
        self.range_nodes: Set[RangeNode] = set()

    def sheet(self, name: Optional[str], default: Optional[str]) -> Optional[Sheet]:
        if name is None:
            return self.workbook.sheet(default) if default is not None else None
        return self.workbook.sheet(name)

    # coarse pre-pass --------------------------------------------------------

    def collect_blocks(self) -> None:
        rects: Dict[str, List[CellRange]] = {}
        for sheet, refs in self._all_references():
            for ref in refs:
                if not isinstance(ref, RangeRef):
                    continue
                target = self.sheet(ref.sheet, sheet)
                if target is None:
                    continue
                rects.setdefault(target.name, []).append(_bounds(ref, target, clamp=False))
        self.blocks = {name: coarse_blocks(r) for name, r in rects.items()}

    def _all_references(self):
        for sheet in self.workbook.sheets:
            for cell in sheet.parsed_formula_cells():
                yield sheet.name, cell.formula.analysis.references
        for nr in self.workbook.named_ranges:
            if not nr.broken:
                yield nr.scope, nr.references

    # targets ----------------------------------------------------------------

    def range_node(self, sheet: str, cells: CellRange) -> RangeNode:
        node = RangeNode(sheet, cells)
        if node not in self.range_nodes:
            self.range_nodes.add(node)
            self.g.add_node(node)
            for row, col in self.formula_cells.get(sheet, ()):
                if cells.contains(row, col):
                    self.g.add_edge(node, CellNode(sheet, row, col))
        return node

    def targets(self, ref: Reference, home: Optional[str]) -> List[GraphNode]:
        if isinstance(ref, ExternalRef):
            return []
        if isinstance(ref, NamedRangeRef):
            from_sheet = ref.sheet or home
            nr = self.workbook.resolve_name(ref.name, from_sheet)
            if nr is None:
                self.unresolved.add((ref.name, from_sheet))
                return []
            return [NamedRangeNode(nr.name, nr.scope)]
        target = self.sheet(ref.sheet, home)
        if target is None:
            return []
        if isinstance(ref, CellRef):
            return [CellNode(target.name, ref.row, ref.col)]
        if not self.expand:
            bounds = _bounds(ref, target, clamp=False)
            for block in self.blocks.get(target.name, ()):
                if block.contains(bounds.min_row, bounds.min_col):
                    return [self.range_node(target.name, block)]
            return [self.range_node(target.name, bounds)]
        bounds = _bounds(ref, target, clamp=True)
        if bounds is None or bounds.size > self.max_cells:
            return [self.range_node(target.name, _bounds(ref, target, clamp=False))]
        return [
            CellNode(target.name, r, c)
            for r in range(bounds.min_row, bounds.max_row + 1)
            for c in range(bounds.min_col, bounds.max_col + 1)
        ]

    # edges ------------------------------------------------------------------

    def build(self) -> None:
        if not self.expand:
            self.collect_blocks()
        for sheet in self.workbook.sheets:
            for cell in sheet.parsed_formula_cells():
                src = CellNode(sheet.name, cell.row, cell.col)
                self.g.add_node(src)
                for ref in cell.formula.analysis.references:
                    for dst in self.targets(ref, sheet.name):
                        self.g.add_edge(src, dst)
        for nr in self.workbook.named_ranges:
            src = NamedRangeNode(nr.name, nr.scope)
            self.g.add_node(src)
            if nr.broken:
                continue
            for ref in nr.references:
                for dst in self.targets(ref, nr.scope):
                    self.g.add_edge(src, dst)


def build_dependency_graph(
    workbook: Workbook,
    expand_ranges: bool = False,
    max_expanded_cells: int = DEFAULT_MAX_EXPANDED_CELLS,
) -> DependencyGraph:
    t0 = time.perf_counter()
    builder = _Builder(workbook, expand_ranges, max_expanded_cells)
    builder.build()
    dg = DependencyGraph(workbook, builder.g, expand_ranges, builder.unresolved)
    logger.debug("dependency graph built elapsed=%.3fs %s", time.perf_counter() - t0, dg.stats())
    return dg
