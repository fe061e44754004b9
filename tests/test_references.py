"""Formula analysis: references, function order, nesting depth, literals."""

from __future__ import annotations

from gridlint.core.formula import CellRef, ExternalRef, NamedRangeRef, RangeRef, parse_formula
from gridlint.core.references import LiteralUse, analyze, detect_volatile_functions


def analysis(text: str):
    return analyze(parse_formula(text))


class TestFunctions:
    def test_invocation_order_and_depth(self) -> None:
        a = analysis("=IF(A1>0,SUM(B1:B3),IF(C1,1,2))")
        assert a.function_names == ("IF", "SUM", "IF")
        assert a.max_function_depth == 2
        assert a.max_if_depth == 2

    def test_if_depth_counts_only_if(self) -> None:
        a = analysis("=SUM(ROUND(ABS(IF(A1,1,2)),0))")
        assert a.max_function_depth == 4
        assert a.max_if_depth == 1

    def test_no_functions(self) -> None:
        a = analysis("=A1+1")
        assert a.function_names == ()
        assert a.max_function_depth == 0

    def test_deep_nesting(self) -> None:
        text = "=" + "SUM(" * 30 + "1" + ")" * 30
        assert analysis(text).max_function_depth == 30

    def test_volatile(self) -> None:
        a = analysis("=NOW()+TODAY()+NOW()")
        assert detect_volatile_functions(a) == ["NOW", "TODAY"]
        assert detect_volatile_functions(analysis("=RAND()"), ["rand"]) == ["RAND"]
        assert detect_volatile_functions(analysis("=SUM(A1)")) == []


class TestLiterals:
    def test_left_to_right(self) -> None:
        a = analysis("=A1*1.05+100")
        assert [l.value for l in a.literals] == [1.05, 100.0]
        assert all(l.function is None for l in a.literals)

    def test_enclosing_function(self) -> None:
        a = analysis("=ROUND(A1*-2,2)")
        assert a.literals == (LiteralUse(-2.0, "number", "ROUND"), LiteralUse(2.0, "number", "ROUND"))

    def test_innermost_function_wins(self) -> None:
        a = analysis("=SUM(ROUND(A1,3))")
        assert a.literals == (LiteralUse(3.0, "number", "ROUND"),)

    def test_text_literals(self) -> None:
        a = analysis('=IF(A1="x",1,0)')
        assert [(l.value, l.kind) for l in a.literals] == [("x", "text"), (1.0, "number"), (0.0, "number")]

    def test_booleans_and_errors_are_not_literals(self) -> None:
        a = analysis("=IF(TRUE,#REF!,1)")
        assert [l.value for l in a.literals] == [1.0]
        assert a.error_literals == ("#REF!",)


class TestReferences:
    def test_kinds(self) -> None:
        a = analysis("=A1+Sheet2!B2:C3+[1]Other!C3+Rate")
        kinds = [type(r) for r in a.references]
        assert kinds == [CellRef, RangeRef, ExternalRef, NamedRangeRef]
        assert len(a.external_refs) == 1

    def test_whole_column_and_row(self) -> None:
        a = analysis("=SUM(A:A)+SUM(1:2)+SUM(A1:B2)")
        assert len(a.whole_column_refs) == 1
        assert len(a.whole_row_refs) == 1

    def test_to_dict(self) -> None:
        d = analysis("=SUM('My Sheet'!A1:A3)*2").to_dict()
        assert d["references"] == ["'My Sheet'!A1:A3"]
        assert d["functions"] == ["SUM"]
        assert d["literals"] == [{"value": 2.0, "kind": "number", "function": None}]
