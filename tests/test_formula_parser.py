"""Formula grammar: tokenizer, precedence, references, errors, canonical rendering."""

from __future__ import annotations

import pytest

from gridlint.core.errors import FormulaError
from gridlint.core.formula import (
    BinaryOp,
    CellRef,
    ExternalRef,
    FunctionCall,
    Literal,
    NamedRangeRef,
    RangeRef,
    UnaryOp,
    canonical_function_name,
    parse_formula,
    quote_sheet,
    render,
)
from gridlint.core.references import formula_shape


def num(v: float) -> Literal:
    return Literal(float(v), "number")


class TestPrecedence:
    def test_multiplication_binds_tighter_than_addition(self) -> None:
        ast = parse_formula("=A1+B2*3")
        assert ast == BinaryOp("+", CellRef(1, 1), BinaryOp("*", CellRef(2, 2), num(3)))

    def test_leading_equals_is_optional(self) -> None:
        assert parse_formula("A1+1") == parse_formula("=A1+1")

    def test_exponent_binds_tighter_than_negation(self) -> None:
        assert parse_formula("=-2^2") == UnaryOp("-", BinaryOp("^", num(2), num(2)))

    def test_sign_after_exponent_takes_only_the_next_operand(self) -> None:
        inner = BinaryOp("^", num(2), UnaryOp("-", num(3)))
        assert parse_formula("=2^-3^2") == BinaryOp("^", inner, num(2))

    def test_percent_binds_tightest(self) -> None:
        assert parse_formula("=50%^2") == BinaryOp("^", UnaryOp("%", num(50)), num(2))

    def test_concatenation_is_lowest(self) -> None:
        assert parse_formula("=1&2+3") == BinaryOp("&", num(1), BinaryOp("+", num(2), num(3)))

    def test_comparison_below_arithmetic(self) -> None:
        assert parse_formula("=A1+1>B1") == BinaryOp(">", BinaryOp("+", CellRef(1, 1), num(1)), CellRef(2, 1))

    def test_left_associative(self) -> None:
        assert parse_formula("=1-2-3") == BinaryOp("-", BinaryOp("-", num(1), num(2)), num(3))

    def test_parentheses_group(self) -> None:
        assert parse_formula("=(1+2)*3") == BinaryOp("*", BinaryOp("+", num(1), num(2)), num(3))


class TestLiterals:
    def test_escaped_quotes(self) -> None:
        assert parse_formula('="say ""hi"""') == Literal('say "hi"', "text")

    def test_exponent_notation(self) -> None:
        assert parse_formula("=1.5E3") == num(1500)

    def test_booleans(self) -> None:
        assert parse_formula("=TRUE") == Literal(True, "boolean")
        assert parse_formula("=false") == Literal(False, "boolean")

    def test_boolean_function_form(self) -> None:
        assert parse_formula("=FALSE()") == Literal(False, "boolean")

    def test_error_literals(self) -> None:
        assert parse_formula("=#REF!") == Literal("#REF!", "error")
        assert parse_formula("=#N/A") == Literal("#N/A", "error")

    def test_sheet_qualified_error(self) -> None:
        assert parse_formula("=Sheet1!#REF!") == Literal("#REF!", "error")

    def test_omitted_argument(self) -> None:
        ast = parse_formula("=IF(A1,,1)")
        assert ast == FunctionCall("IF", (CellRef(1, 1), Literal(None, "empty"), num(1)))


class TestReferences:
    def test_absolute_cell(self) -> None:
        assert parse_formula("=$A$1") == CellRef(1, 1, None, True, True)

    def test_mixed_cell(self) -> None:
        assert parse_formula("=A$1") == CellRef(1, 1, None, False, True)

    def test_area(self) -> None:
        assert parse_formula("=A1:B2") == RangeRef(CellRef(1, 1), CellRef(2, 2), "area")

    def test_sheet_area_applies_to_both_ends(self) -> None:
        ref = parse_formula("=Sheet1!A1:B2")
        assert ref.start.sheet == "Sheet1"
        assert ref.end.sheet == "Sheet1"

    def test_whole_column(self) -> None:
        ref = parse_formula("=A:A")
        assert ref == RangeRef(CellRef(1, 0), CellRef(1, 0), "column")

    def test_whole_row(self) -> None:
        ref = parse_formula("=SUM(1:1)").args[0]
        assert ref.kind == "row"
        assert ref.bounds() == (1, 0, 1, 0)

    def test_quoted_sheet(self) -> None:
        assert parse_formula("='My Sheet'!B2") == CellRef(2, 2, "My Sheet")

    def test_quoted_sheet_with_apostrophe(self) -> None:
        assert parse_formula("='Bob''s'!A1") == CellRef(1, 1, "Bob's")

    def test_external_reference(self) -> None:
        assert parse_formula("=[1]Sheet1!A1") == ExternalRef("1", CellRef(1, 1, "Sheet1"))

    def test_named_range(self) -> None:
        ast = parse_formula("=Rate*2")
        assert ast == BinaryOp("*", NamedRangeRef("Rate"), num(2))

    def test_lowercase_cell(self) -> None:
        assert parse_formula("=a1") == CellRef(1, 1)


class TestFunctions:
    def test_name_is_upper_cased(self) -> None:
        assert parse_formula("=sum(A1)") == FunctionCall("SUM", (CellRef(1, 1),))

    def test_future_prefix_is_stripped(self) -> None:
        assert parse_formula("=_xlfn.XLOOKUP(1,A:A,B:B)").name == "XLOOKUP"

    def test_canonical_function_name(self) -> None:
        assert canonical_function_name("_xlfn._xlws.sort") == "SORT"
        assert canonical_function_name("com.microsoft.concat") == "CONCAT"

    def test_no_arguments(self) -> None:
        assert parse_formula("=NOW()") == FunctionCall("NOW", ())


class TestErrors:
    def test_unclosed_call_points_at_end(self) -> None:
        with pytest.raises(FormulaError) as exc:
            parse_formula("=SUM(A1")
        assert exc.value.position == 7
        assert exc.value.formula == "=SUM(A1"

    def test_dangling_operator(self) -> None:
        with pytest.raises(FormulaError):
            parse_formula("=1+")

    def test_unclosed_paren(self) -> None:
        with pytest.raises(FormulaError):
            parse_formula("=(1")

    def test_empty(self) -> None:
        with pytest.raises(FormulaError):
            parse_formula("=")

    def test_array_constant_rejected(self) -> None:
        with pytest.raises(FormulaError, match="array"):
            parse_formula("={1,2}")

    def test_unterminated_string(self) -> None:
        with pytest.raises(FormulaError):
            parse_formula('="abc')

    def test_to_dict(self) -> None:
        with pytest.raises(FormulaError) as exc:
            parse_formula("=1+")
        d = exc.value.to_dict()
        assert set(d) == {"message", "position", "formula"}


class TestDeepNesting:
    def test_deep_parentheses(self) -> None:
        text = "=" + "(" * 5000 + "1" + ")" * 5000
        assert parse_formula(text) == num(1)

    def test_deep_if_parses_and_renders(self) -> None:
        body = "IF(A1," * 200 + "1" + ",0)" * 200
        node = parse_formula("=" + body)
        depth = 0
        while isinstance(node, FunctionCall):
            assert node.name == "IF" and len(node.args) == 3
            depth += 1
            node = node.args[1]
        assert depth == 200
        assert node == num(1)
        assert render(parse_formula("=" + body)) == body

    def test_long_prefix_and_operator_chains(self) -> None:
        assert render(parse_formula("=" + "-" * 3000 + "1")) == "-" * 3000 + "1"
        chain = "+".join(["A1"] * 3000)
        assert render(parse_formula("=" + chain)) == chain

    def test_unclosed_deep_call_still_points_at_end(self) -> None:
        text = "=" + "SUM(" * 300 + "1"
        with pytest.raises(FormulaError, match="unclosed call to SUM") as exc:
            parse_formula(text)
        assert exc.value.position == len(text)


class TestRender:
    @pytest.mark.parametrize(
        "source, expected",
        [
            ("=sum( a1 , 2 )", "SUM(A1,2)"),
            ("=(1+2)*3", "(1+2)*3"),
            ("=1+(2*3)", "1+2*3"),
            ("=1-(2-3)", "1-(2-3)"),
            ("=-(1+2)", "-(1+2)"),
            ("='My Sheet'!A1", "'My Sheet'!A1"),
            ("=[1]Sheet1!A1", "[1]Sheet1!A1"),
            ("=1.050", "1.05"),
            ("=2.0", "2"),
            ('="a""b"', '"a""b"'),
            ("=$A$1:B$2", "$A$1:B$2"),
            ("=SUM(A:A)", "SUM(A:A)"),
            ("=_xlfn.XLOOKUP(1,A:A,B:B)", "XLOOKUP(1,A:A,B:B)"),
        ],
    )
    def test_canonical_text(self, source: str, expected: str) -> None:
        assert render(parse_formula(source)) == expected

    def test_rendered_text_parses_back_to_the_same_tree(self) -> None:
        ast = parse_formula("=IF(AND(A1>0,'x y'!B2<>\"\"),-A1^2%,#N/A)")
        assert parse_formula(render(ast)) == ast

    def test_cell_like_sheet_names_are_quoted(self) -> None:
        assert quote_sheet("Data") == "Data"
        assert quote_sheet("A1") == "'A1'"
        assert quote_sheet("Q1 2024") == "'Q1 2024'"


class TestShape:
    def test_copied_formulas_share_a_shape(self) -> None:
        assert formula_shape(parse_formula("=A1*2"), 1, 2) == formula_shape(parse_formula("=A2*2"), 2, 2)

    def test_absolute_references_stay_fixed(self) -> None:
        ast = parse_formula("=$A$1*2")
        assert formula_shape(ast, 1, 2) == formula_shape(ast, 5, 2)

    def test_same_text_in_different_cells_differs(self) -> None:
        ast = parse_formula("=A1*2")
        assert formula_shape(ast, 1, 2) != formula_shape(ast, 2, 2)

    def test_shape_uses_offsets(self) -> None:
        assert formula_shape(parse_formula("=A1"), 2, 2) == "=R[-1]C[-1]"
