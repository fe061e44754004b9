"""Dependency graph: cycles, range precision, named ranges, sheet usage."""

from __future__ import annotations

from gridlint.core.graph import CellNode, RangeNode, SheetUsage, build_dependency_graph, coarse_blocks
from gridlint.core.model import CellRange


class TestCycles:
    def test_three_cell_cycle(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=B1", "B1": "=C1", "C1": "=A1+1"})
        cycles = build_dependency_graph(mb.build()).find_cycles()
        assert cycles == [[CellNode("Sheet1", 1, 1), CellNode("Sheet1", 1, 2), CellNode("Sheet1", 1, 3)]]

    def test_independent_cycles(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=B1", "B1": "=A1", "D1": "=E1", "E1": "=D1"})
        assert len(build_dependency_graph(mb.build()).find_cycles()) == 2

    def test_self_reference(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=A1+1"})
        assert build_dependency_graph(mb.build()).find_cycles() == [[CellNode("Sheet1", 1, 1)]]

    def test_cross_sheet_cycle(self, make_model) -> None:
        mb = make_model()
        mb.sheet("One", {"A1": "=Two!A1"})
        mb.sheet("Two", {"A1": "=One!A1"})
        assert len(build_dependency_graph(mb.build()).find_cycles()) == 1

    def test_acyclic(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": 1, "A2": "=A1*2", "A3": "=SUM(A1:A2)"})
        assert build_dependency_graph(mb.build()).find_cycles() == []

    def test_cycle_through_a_range(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": 1, "A2": "=A3", "A3": "=SUM(A1:A2)"})
        for expand in (False, True):
            assert len(build_dependency_graph(mb.build(), expand_ranges=expand).find_cycles()) == 1

    def test_cycle_through_a_name(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=Total"})
        mb.name("Total", "Sheet1!$A$1")
        assert len(build_dependency_graph(mb.build()).find_cycles()) == 1


class TestRangePrecision:
    def workbook(self, make_model):
        mb = make_model()
        mb.sheet("Sheet1", {"A1": 1, "A2": 2, "A3": 3, "A7": "=SUM(A1:A3)", "B1": "=SUM(A2:A8)"})
        return mb.build()

    def test_coarse_blocks_merge_overlaps(self) -> None:
        blocks = coarse_blocks([CellRange(1, 1, 3, 1), CellRange(2, 1, 8, 1), CellRange(1, 5, 1, 5)])
        assert blocks == [CellRange(1, 1, 8, 1), CellRange(1, 5, 1, 5)]

    def test_coarse_mode_reports_a_spurious_cycle(self, make_model) -> None:
        graph = build_dependency_graph(self.workbook(make_model))
        assert graph.find_cycles()
        assert RangeNode("Sheet1", CellRange(1, 1, 8, 1)) in graph.graph

    def test_expanded_mode_is_exact(self, make_model) -> None:
        graph = build_dependency_graph(self.workbook(make_model), expand_ranges=True)
        assert graph.find_cycles() == []

    def test_large_ranges_fall_back_to_a_range_node(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": 1, "A10": 2, "B1": "=SUM(A1:A10)"})
        graph = build_dependency_graph(mb.build(), expand_ranges=True, max_expanded_cells=5)
        assert list(graph.graph.successors(CellNode("Sheet1", 1, 2))) == [RangeNode("Sheet1", CellRange(1, 1, 10, 1))]

    def test_whole_column_is_clamped_to_used_range(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Data", {"A1": 1, "A2": 2})
        mb.sheet("Calc", {"A1": "=SUM(Data!A:A)"})
        graph = build_dependency_graph(mb.build(), expand_ranges=True)
        targets = set(graph.graph.successors(CellNode("Calc", 1, 1)))
        assert targets == {CellNode("Data", 1, 1), CellNode("Data", 2, 1)}

    def test_stats(self, make_model) -> None:
        stats = build_dependency_graph(self.workbook(make_model), expand_ranges=True).stats()
        assert stats["expanded"] is True
        assert stats["nodes"] > 0


class TestNamedRanges:
    def test_used_and_unused(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=Rate*2", "B1": 0.2})
        mb.name("Rate", "Sheet1!$B$1").name("Spare", "Sheet1!$C$1")
        wb = mb.build()
        graph = build_dependency_graph(wb)
        rate, spare = wb.named_ranges
        assert graph.is_named_range_used(rate)
        assert not graph.is_named_range_used(spare)

    def test_sheet_scoped_name_shadows_global(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=Rate", "B1": 1})
        mb.sheet("Sheet2", {"B1": 2})
        mb.name("Rate", "Sheet2!$B$1").name("Rate", "Sheet1!$B$1", scope="Sheet1")
        wb = mb.build()
        graph = build_dependency_graph(wb)
        global_rate, local_rate = wb.named_ranges
        assert graph.is_named_range_used(local_rate)
        assert not graph.is_named_range_used(global_rate)

    def test_unresolved_name(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Sheet1", {"A1": "=Missing+1"})
        graph = build_dependency_graph(mb.build())
        assert ("Missing", "Sheet1") in graph.unresolved_names


class TestSheetUsage:
    def test_classification(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Data", {"A1": 1, "A2": 2})
        mb.sheet("Calc", {"A1": "=SUM(Data!A1:A2)"})
        mb.sheet("Empty")
        mb.sheet("Notes", {"A1": "read me"})
        wb = mb.build()
        graph = build_dependency_graph(wb)
        usage = {s.name: graph.sheet_usage(s) for s in wb.sheets}
        assert usage == {
            "Data": SheetUsage.USED,
            "Calc": SheetUsage.FILLED_UNUSED,
            "Empty": SheetUsage.EMPTY_UNUSED,
            "Notes": SheetUsage.FILLED_UNUSED,
        }

    def test_a_defined_name_counts_as_usage(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Main", {"A1": 1})
        mb.sheet("Lists", {"A1": "x"})
        mb.name("Choices", "Lists!$A$1:$A$5")
        wb = mb.build()
        assert build_dependency_graph(wb).sheet_usage(wb.sheet("Lists")) == SheetUsage.USED

    def test_references_within_a_sheet_do_not_count(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Solo", {"A1": 1, "A2": "=A1"})
        wb = mb.build()
        assert build_dependency_graph(wb).sheet_usage(wb.sheet("Solo")) == SheetUsage.FILLED_UNUSED

    def test_a_sheet_scoped_name_on_its_own_sheet_does_not_count(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Main", {"A1": 1})
        mb.sheet("Lists", {"A1": "x"})
        mb.name("Choices", "Lists!$A$1:$A$5", scope="Lists")
        wb = mb.build()
        assert build_dependency_graph(wb).sheet_usage(wb.sheet("Lists")) == SheetUsage.FILLED_UNUSED

    def test_a_sheet_scoped_name_used_from_another_sheet(self, make_model) -> None:
        mb = make_model()
        mb.sheet("Main", {"A1": "=COUNTA(Lists!Choices)"})
        mb.sheet("Lists", {"A1": "x"})
        mb.name("Choices", "Lists!$A$1:$A$5", scope="Lists")
        wb = mb.build()
        graph = build_dependency_graph(wb)
        assert graph.sheet_usage(wb.sheet("Lists")) == SheetUsage.USED
        assert [str(n) for n in graph.incoming_from_outside(wb.sheet("Lists"))] == ["Main!A1"]
