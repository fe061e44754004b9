"""
gridlint/core/formula.py

Formula tokenizer, operator-precedence parser and canonical renderer.

We do NOT evaluate formulas. A formula string becomes a small immutable tree
that the reference extraction, the dependency graph and the formula rules walk.

Precedence, tightest first:
  postfix %  >  ^  >  unary - +  >  * /  >  + -  >  comparison  >  &
Every binary level is left-associative.

Public API:
  - parse_formula(text) -> Node            (raises FormulaError with an offset)
  - render(node, origin=None) -> str       (canonical text, or R1C1 "shape")
  - canonical_function_name(name) -> str
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from openpyxl.utils.cell import column_index_from_string, get_column_letter

from gridlint.core.errors import FormulaError

MAX_ROW = 1048576
MAX_COLUMN = 16384

ERROR_CODES = (
    "#GETTING_DATA", "#DIV/0!", "#VALUE!", "#SPILL!", "#CALC!", "#NULL!",
    "#NAME?", "#NUM!", "#REF!", "#N/A",
)

_FUNCTION_PREFIXES = ("_XLFN.", "_XLWS.", "COM.MICROSOFT.")


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Union[float, str, bool, None]
    kind: str  # "number" | "text" | "boolean" | "error" | "empty"


@dataclass(frozen=True)
class CellRef:
    col: int  # 0 for whole-row endpoints
    row: int  # 0 for whole-column endpoints
    sheet: Optional[str] = None
    col_absolute: bool = False
    row_absolute: bool = False

    @property
    def coordinate(self) -> str:
        return f"{get_column_letter(self.col)}{self.row}"


@dataclass(frozen=True)
class RangeRef:
    start: CellRef
    end: CellRef
    kind: str = "area"  # "area" | "column" | "row"

    @property
    def sheet(self) -> Optional[str]:
        return self.start.sheet

    def bounds(self) -> Tuple[int, int, int, int]:
        """(min_row, min_col, max_row, max_col); 0 marks an unbounded side."""
        return (
            min(self.start.row, self.end.row),
            min(self.start.col, self.end.col),
            max(self.start.row, self.end.row),
            max(self.start.col, self.end.col),
        )


@dataclass(frozen=True)
class NamedRangeRef:
    name: str
    sheet: Optional[str] = None
    selector: Optional[str] = None  # structured-reference suffix, e.g. "[Amount]"


@dataclass(frozen=True)
class ExternalRef:
    book: str
    inner: Union[CellRef, RangeRef, NamedRangeRef]


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple["Node", ...] = ()


@dataclass(frozen=True)
class UnaryOp:
    op: str  # "-" | "+" | "%"
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Literal, CellRef, RangeRef, NamedRangeRef, ExternalRef, FunctionCall, UnaryOp, BinaryOp]
REFERENCE_TYPES = (CellRef, RangeRef, NamedRangeRef, ExternalRef)


def canonical_function_name(name: str) -> str:
    n = name.strip().upper()
    stripped = True
    while stripped:
        stripped = False
        for prefix in _FUNCTION_PREFIXES:
            if n.startswith(prefix):
                n = n[len(prefix):]
                stripped = True
    return n


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Token:
    kind: str  # NUMBER STRING BOOL ERROR REF FUNC OP LPAREN RPAREN COMMA COLON
    value: object
    pos: int


_RE_WS = re.compile(r"\s+")
_RE_NUMBER = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_RE_STRING = re.compile(r'"((?:[^"]|"")*)"')
_RE_FUNC = re.compile(r"((?:[^\W\d]|\\)[\w.]*)\s*\(")
_RE_SHEET = re.compile(r"([^\W\d][\w.]*)!")
_RE_QUOTED_SHEET = re.compile(r"'((?:[^']|'')+)'!")
_RE_BOOK = re.compile(r"\[([^\]]+)\]")
_RE_BOOK_IN_SHEET = re.compile(r"^(.*?)\[([^\]]+)\](.*)$")
_RE_CELL_AREA = re.compile(
    r"(\$?)([A-Za-z]{1,3})(\$?)(\d+)(?::(\$?)([A-Za-z]{1,3})(\$?)(\d+))?(?![\w(.!\[])"
)
_RE_COL_AREA = re.compile(r"(\$?)([A-Za-z]{1,3}):(\$?)([A-Za-z]{1,3})(?![\w(.!\[])")
_RE_ROW_AREA = re.compile(r"(\$?)(\d+):(\$?)(\d+)(?![\w(.!\[])")
_RE_BOOL = re.compile(r"(TRUE|FALSE)(?![\w.(\[!])", re.IGNORECASE)
_RE_NAME = re.compile(r"(?:[^\W\d]|\\)[\w.\\?]*")
_RE_CELL_LIKE = re.compile(r"[A-Za-z]{1,3}\d+|R\d*C\d*|TRUE|FALSE", re.IGNORECASE)

_TWO_CHAR_OPS = ("<=", ">=", "<>")
_ONE_CHAR_OPS = "+-*/^&=<>%"


def _cell(col_abs: str, col: str, row_abs: str, row: str, sheet: Optional[str]) -> Optional[CellRef]:
    c = column_index_from_string(col.upper())
    r = int(row)
    if c > MAX_COLUMN or r < 1 or r > MAX_ROW:
        return None
    return CellRef(col=c, row=r, sheet=sheet, col_absolute=bool(col_abs), row_absolute=bool(row_abs))


class _Lexer:
    def __init__(self, text: str, start: int) -> None:
        self.text = text
        self.pos = start
        self.tokens: List[_Token] = []

    def error(self, message: str, pos: Optional[int] = None) -> FormulaError:
        return FormulaError(message, self.pos if pos is None else pos, self.text)

    def run(self) -> List[_Token]:
        text = self.text
        while self.pos < len(text):
            m = _RE_WS.match(text, self.pos)
            if m:
                self.pos = m.end()
                continue
            start = self.pos
            ch = text[start]
            if ch == '"':
                m = _RE_STRING.match(text, start)
                if not m:
                    raise self.error("unterminated string literal")
                self._emit("STRING", m.group(1).replace('""', '"'), m.end())
            elif ch == "#":
                code = self._error_code(start)
                self.tokens.append(_Token("ERROR", code, start))
            elif ch.isdigit() or (ch == "." and text[start + 1:start + 2].isdigit()):
                self._number_or_rows(start)
            elif ch == "'":
                self._quoted_reference(start)
            elif ch == "[":
                m = _RE_BOOK.match(text, start)
                if not m:
                    raise self.error("unterminated external book reference")
                self.pos = m.end()
                self._after_book(m.group(1), start)
            elif ch == "(":
                self._emit("LPAREN", ch, start + 1)
            elif ch == ")":
                self._emit("RPAREN", ch, start + 1)
            elif ch == ",":
                self._emit("COMMA", ch, start + 1)
            elif ch == ":":
                self._emit("COLON", ch, start + 1)
            elif text.startswith(_TWO_CHAR_OPS, start):
                self._emit("OP", text[start:start + 2], start + 2)
            elif ch in _ONE_CHAR_OPS:
                self._emit("OP", ch, start + 1)
            elif ch == "{":
                raise self.error("array constants are not supported")
            elif ch == "$" or ch == "_" or ch == "\\" or ch.isalpha():
                self._word(start)
            else:
                raise self.error(f"unexpected character {ch!r}")
        return self.tokens

    def _emit(self, kind: str, value: object, end: int, pos: Optional[int] = None) -> None:
        self.tokens.append(_Token(kind, value, self.pos if pos is None else pos))
        self.pos = end

    def _error_code(self, start: int) -> str:
        upper = self.text[start:start + 14].upper()
        for code in ERROR_CODES:
            if upper.startswith(code):
                self.pos = start + len(code)
                return code
        raise self.error("unknown error literal")

    def _number_or_rows(self, start: int) -> None:
        m = _RE_ROW_AREA.match(self.text, start)
        if m:
            ref = self._row_area(m, None)
            if ref is not None:
                self._emit("REF", ref, m.end())
                return
        m = _RE_NUMBER.match(self.text, start)
        if not m:
            raise self.error("malformed number")
        self._emit("NUMBER", float(m.group(0)), m.end())

    def _quoted_reference(self, start: int) -> None:
        m = _RE_QUOTED_SHEET.match(self.text, start)
        if not m:
            raise self.error("unterminated quoted sheet name")
        sheet = m.group(1).replace("''", "'")
        self.pos = m.end()
        ext = _RE_BOOK_IN_SHEET.match(sheet)
        if ext:
            path, book, rest = ext.groups()
            inner = self._area(rest or None, start)
            self.tokens.append(_Token("REF", ExternalRef(book=f"{path}{book}", inner=inner), start))
            return
        self._push_area(sheet, start)

    def _after_book(self, book: str, start: int) -> None:
        if self.text.startswith("!", self.pos):
            self.pos += 1
            sheet = None
        else:
            m = _RE_SHEET.match(self.text, self.pos)
            if not m:
                raise self.error("external reference without sheet")
            sheet = m.group(1)
            self.pos = m.end()
        inner = self._area(sheet, start)
        self.tokens.append(_Token("REF", ExternalRef(book=book, inner=inner), start))

    def _word(self, start: int) -> None:
        text = self.text
        m = _RE_FUNC.match(text, start)
        if m:
            self._emit("FUNC", canonical_function_name(m.group(1)), m.end() - 1)
            return
        m = _RE_SHEET.match(text, start)
        if m:
            self.pos = m.end()
            self._push_area(m.group(1), start)
            return
        m = _RE_BOOL.match(text, start)
        if m:
            self._emit("BOOL", m.group(1).upper() == "TRUE", m.end())
            return
        self._push_area(None, start)

    def _push_area(self, sheet: Optional[str], start: int) -> None:
        if self.text.startswith("#", self.pos):
            self.tokens.append(_Token("ERROR", self._error_code(self.pos), start))
            return
        self.tokens.append(_Token("REF", self._area(sheet, start), start))

    def _area(self, sheet: Optional[str], start: int) -> Union[CellRef, RangeRef, NamedRangeRef]:
        text, pos = self.text, self.pos
        m = _RE_CELL_AREA.match(text, pos)
        if m:
            first = _cell(m.group(1), m.group(2), m.group(3), m.group(4), sheet)
            if first is not None:
                self.pos = m.end()
                if m.group(6) is None:
                    return first
                last = _cell(m.group(5), m.group(6), m.group(7), m.group(8), sheet)
                if last is None:
                    raise self.error("cell reference out of bounds", pos)
                return RangeRef(first, last, "area")
        m = _RE_COL_AREA.match(text, pos)
        if m:
            first, last = (m.group(2).upper(), m.group(4).upper())
            c1, c2 = column_index_from_string(first), column_index_from_string(last)
            if c1 <= MAX_COLUMN and c2 <= MAX_COLUMN:
                self.pos = m.end()
                return RangeRef(
                    CellRef(c1, 0, sheet, bool(m.group(1)), False),
                    CellRef(c2, 0, sheet, bool(m.group(3)), False),
                    "column",
                )
        m = _RE_ROW_AREA.match(text, pos)
        if m:
            ref = self._row_area(m, sheet)
            if ref is not None:
                self.pos = m.end()
                return ref
        m = _RE_NAME.match(text, pos)
        if not m:
            raise self.error("expected a reference", pos)
        name = m.group(0)
        self.pos = m.end()
        selector = None
        if text.startswith("[", self.pos):
            selector = self._structured_selector()
        return NamedRangeRef(name=name, sheet=sheet, selector=selector)

    def _row_area(self, m: "re.Match[str]", sheet: Optional[str]) -> Optional[RangeRef]:
        r1, r2 = int(m.group(2)), int(m.group(4))
        if not (1 <= r1 <= MAX_ROW and 1 <= r2 <= MAX_ROW):
            return None
        return RangeRef(
            CellRef(0, r1, sheet, False, bool(m.group(1))),
            CellRef(0, r2, sheet, False, bool(m.group(3))),
            "row",
        )

    def _structured_selector(self) -> str:
        depth = 0
        start = self.pos
        for i in range(start, len(self.text)):
            ch = self.text[i]
            if ch == "[":
                depth += 1
            elif ch == "]":
                depth -= 1
                if depth == 0:
                    self.pos = i + 1
                    return self.text[start:self.pos]
        raise self.error("unterminated structured reference", start)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

# A pending operator is applied once an operator of equal or lower strength
# arrives, which makes every binary level left-associative.
_BINARY_STRENGTH = {
    "&": 1,
    "=": 2, "<>": 2, "<": 2, ">": 2, "<=": 2, ">=": 2,
    "+": 3, "-": 3,
    "*": 4, "/": 4,
    "^": 6,
    ":": 8,
}
_PREFIX_STRENGTH = 5        # -2^2 is -(2^2)
_POWER_PREFIX_STRENGTH = 7  # 2^-3^2 is (2^-3)^2
_PERCENT_STRENGTH = 8       # 5%^2 is (5%)^2, A1:B2% is (A1:B2)%

# what the next operand may start with
_UNARY = "unary"
_POWER = "power"
_PRIMARY = "primary"


def _range(left: Node, right: Node) -> Node:
    if (
        isinstance(left, CellRef)
        and isinstance(right, CellRef)
        and (right.sheet is None or (left.sheet or "").lower() == right.sheet.lower())
    ):
        return RangeRef(left, CellRef(right.col, right.row, left.sheet, right.col_absolute, right.row_absolute))
    return BinaryOp(":", left, right)


class _Group:
    """The top level, one pair of parentheses, or the argument list of one call."""

    def __init__(self, kind: str, name: str = "") -> None:
        self.kind = kind  # "top" | "paren" | "call"
        self.name = name
        self.args: List[Node] = []
        self.operands: List[Node] = []
        self.operators: List[Tuple[str, int, bool]] = []  # (op, strength, is_prefix)

    def reduce(self, strength: int) -> None:
        while self.operators and self.operators[-1][1] >= strength:
            op, _, is_prefix = self.operators.pop()
            if is_prefix:
                self.operands.append(UnaryOp(op, self.operands.pop()))
                continue
            right = self.operands.pop()
            left = self.operands.pop()
            self.operands.append(_range(left, right) if op == ":" else BinaryOp(op, left, right))

    def finish(self) -> Node:
        self.reduce(0)
        return self.operands.pop()


class _Parser:
    """
    Operator-precedence parser. Parentheses and calls open a new _Group on an
    explicit stack, so nesting depth is bounded by the input, not by the
    interpreter's recursion limit.
    """

    def __init__(self, text: str, tokens: List[_Token]) -> None:
        self.text = text
        self.tokens = tokens
        self.i = 0

    def error(self, message: str) -> FormulaError:
        pos = self.tokens[self.i].pos if self.i < len(self.tokens) else len(self.text)
        return FormulaError(message, pos, self.text)

    def peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def expect(self, kind: str) -> _Token:
        tok = self.peek()
        if tok is None or tok.kind != kind:
            raise self.error(f"expected {kind.lower()}")
        self.i += 1
        return tok

    @staticmethod
    def atom(tok: _Token) -> Optional[Node]:
        if tok.kind == "NUMBER":
            return Literal(tok.value, "number")
        if tok.kind == "STRING":
            return Literal(tok.value, "text")
        if tok.kind == "BOOL":
            return Literal(tok.value, "boolean")
        if tok.kind == "ERROR":
            return Literal(tok.value, "error")
        if tok.kind == "REF":
            return tok.value
        return None

    def start_argument(self, groups: List[_Group]) -> bool:
        """Take empty arguments at the start of an argument; True if that closed the call."""
        call = groups[-1]
        while True:
            tok = self.peek()
            if tok is None or tok.kind not in ("COMMA", "RPAREN"):
                return False
            call.args.append(Literal(None, "empty"))
            self.i += 1
            if tok.kind == "RPAREN":
                groups.pop()
                groups[-1].operands.append(FunctionCall(call.name, tuple(call.args)))
                return True

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaError("empty formula", len(self.text), self.text)
        groups = [_Group("top")]
        expecting: Optional[str] = _UNARY  # None once an operand is complete
        ranged = False  # the last operand may be the left side of ':'

        while True:
            group = groups[-1]
            tok = self.peek()

            if expecting is not None:
                if tok is None:
                    raise self.error("unexpected end of formula")
                if tok.kind == "OP" and tok.value in ("-", "+") and expecting != _PRIMARY:
                    self.i += 1
                    strength = _POWER_PREFIX_STRENGTH if expecting == _POWER else _PREFIX_STRENGTH
                    group.operators.append((str(tok.value), strength, True))
                    continue
                self.i += 1
                if tok.kind == "LPAREN":
                    groups.append(_Group("paren"))
                    expecting = _UNARY
                    continue
                if tok.kind == "FUNC":
                    name = str(tok.value)
                    self.expect("LPAREN")
                    closing = self.peek()
                    if closing is not None and closing.kind == "RPAREN":
                        self.i += 1
                        if name in ("TRUE", "FALSE"):
                            group.operands.append(Literal(name == "TRUE", "boolean"))
                        else:
                            group.operands.append(FunctionCall(name, ()))
                        expecting, ranged = None, True
                        continue
                    groups.append(_Group("call", name))
                    if self.start_argument(groups):
                        expecting, ranged = None, True
                    else:
                        expecting = _UNARY
                    continue
                node = self.atom(tok)
                if node is None:
                    self.i -= 1
                    raise self.error(f"unexpected {tok.value!r}")
                group.operands.append(node)
                expecting, ranged = None, True
                continue

            if tok is not None and tok.kind == "OP":
                self.i += 1
                op = str(tok.value)
                if op == "%":
                    group.reduce(_PERCENT_STRENGTH)
                    group.operands.append(UnaryOp("%", group.operands.pop()))
                    ranged = False
                    continue
                strength = _BINARY_STRENGTH[op]
                group.reduce(strength)
                group.operators.append((op, strength, False))
                expecting = _POWER if op == "^" else _UNARY
                continue
            if tok is not None and tok.kind == "COLON" and ranged:
                self.i += 1
                group.reduce(_BINARY_STRENGTH[":"])
                group.operators.append((":", _BINARY_STRENGTH[":"], False))
                expecting = _PRIMARY
                continue

            # the expression of the innermost group is complete
            if group.kind == "top":
                if tok is not None:
                    raise self.error(f"unexpected {tok.value!r}")
                return group.finish()
            if group.kind == "paren":
                if tok is None or tok.kind != "RPAREN":
                    raise self.error("expected rparen")
                self.i += 1
                groups.pop()
                groups[-1].operands.append(group.finish())
                ranged = True
                continue
            if tok is None:
                raise self.error(f"unclosed call to {group.name}")
            if tok.kind not in ("COMMA", "RPAREN"):
                raise self.error("expected ',' or ')'")
            self.i += 1
            group.args.append(group.finish())
            if tok.kind == "RPAREN":
                groups.pop()
                groups[-1].operands.append(FunctionCall(group.name, tuple(group.args)))
                ranged = True
            elif self.start_argument(groups):
                ranged = True
            else:
                expecting = _UNARY


def parse_formula(text: str) -> Node:
    """Parse formula text (with or without the leading '=') into an AST."""
    if text is None:
        raise FormulaError("empty formula", 0, "")
    start = 0
    while start < len(text) and text[start].isspace():
        start += 1
    if text.startswith("=", start):
        start += 1
    tokens = _Lexer(text, start).run()
    return _Parser(text, tokens).parse()


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_PREFIX_PRECEDENCE = 5
_PERCENT_PRECEDENCE = 7
_ATOM_PRECEDENCE = 9


def _precedence(node: Node) -> int:
    if isinstance(node, BinaryOp):
        return _BINARY_STRENGTH[node.op]
    if isinstance(node, UnaryOp):
        return _PERCENT_PRECEDENCE if node.op == "%" else _PREFIX_PRECEDENCE
    return _ATOM_PRECEDENCE


def format_number(value: float) -> str:
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value)).upper()


def quote_sheet(sheet: str) -> str:
    if re.fullmatch(r"[^\W\d][\w.]*", sheet) and not _RE_CELL_LIKE.fullmatch(sheet):
        return sheet
    return "'" + sheet.replace("'", "''") + "'"


def sheet_prefix(sheet: Optional[str], book: Optional[str] = None) -> str:
    if book is None:
        return f"{quote_sheet(sheet)}!" if sheet else ""
    if not sheet:
        return f"[{book}]!"
    quoted = quote_sheet(sheet)
    if quoted.startswith("'"):
        return f"'[{book}]{quoted[1:-1]}'!"
    return f"[{book}]{sheet}!"


def _endpoint(ref: CellRef, origin: Optional[Tuple[int, int]]) -> str:
    if origin is None:
        col = (("$" if ref.col_absolute else "") + get_column_letter(ref.col)) if ref.col else ""
        row = (("$" if ref.row_absolute else "") + str(ref.row)) if ref.row else ""
        return col + row
    # R1C1 shape relative to the formula's own cell
    row_part = ""
    col_part = ""
    if ref.row:
        row_part = f"R{ref.row}" if ref.row_absolute else f"R[{ref.row - origin[0]}]"
    if ref.col:
        col_part = f"C{ref.col}" if ref.col_absolute else f"C[{ref.col - origin[1]}]"
    return row_part + col_part


def _reference(node: Node, origin: Optional[Tuple[int, int]], book: Optional[str] = None) -> str:
    if isinstance(node, CellRef):
        return sheet_prefix(node.sheet, book) + _endpoint(node, origin)
    if isinstance(node, RangeRef):
        return sheet_prefix(node.sheet, book) + _endpoint(node.start, origin) + ":" + _endpoint(node.end, origin)
    return sheet_prefix(node.sheet, book) + node.name + (node.selector or "")


def _leaf(node: Node, origin: Optional[Tuple[int, int]]) -> str:
    if isinstance(node, Literal):
        if node.kind == "number":
            return format_number(node.value)
        if node.kind == "text":
            return '"' + str(node.value).replace('"', '""') + '"'
        if node.kind == "boolean":
            return "TRUE" if node.value else "FALSE"
        if node.kind == "error":
            return str(node.value)
        return ""
    if isinstance(node, (CellRef, RangeRef, NamedRangeRef)):
        return _reference(node, origin)
    if isinstance(node, ExternalRef):
        return _reference(node.inner, origin, node.book)
    raise TypeError(f"not a formula node: {node!r}")


def _children(node: Node) -> Tuple[Node, ...]:
    if isinstance(node, FunctionCall):
        return node.args
    if isinstance(node, UnaryOp):
        return (node.operand,)
    if isinstance(node, BinaryOp):
        return (node.left, node.right)
    return ()


def _compose(node: Node, parts: List[str]) -> str:
    if isinstance(node, FunctionCall):
        return f"{node.name}(" + ",".join(parts) + ")"
    if isinstance(node, UnaryOp):
        inner = parts[0]
        if node.op == "%":
            if _precedence(node.operand) < _PERCENT_PRECEDENCE:
                inner = f"({inner})"
            return inner + "%"
        if _precedence(node.operand) < _PREFIX_PRECEDENCE:
            inner = f"({inner})"
        return node.op + inner
    p = _BINARY_STRENGTH[node.op]
    left, right = parts
    if _precedence(node.left) < p:
        left = f"({left})"
    if _precedence(node.right) <= p:
        right = f"({right})"
    return f"{left}{node.op}{right}"


def render(node: Node, origin: Optional[Tuple[int, int]] = None) -> str:
    """Canonical formula text without the leading '='.

    With `origin=(row, col)` relative references are written as R1C1 offsets
    from that cell, which gives the copy-invariant "shape" of the formula.
    Operators and calls are rendered after their operands, from an explicit
    stack, so deeply nested formulas render as well as they parse.
    """
    out: List[str] = []
    stack: List[Tuple[Node, bool]] = [(node, False)]
    while stack:
        current, operands_done = stack.pop()
        if not isinstance(current, (FunctionCall, UnaryOp, BinaryOp)):
            out.append(_leaf(current, origin))
        elif operands_done:
            cut = len(out) - len(_children(current))
            parts = out[cut:]
            del out[cut:]
            out.append(_compose(current, parts))
        else:
            stack.append((current, True))
            stack.extend((child, False) for child in reversed(_children(current)))
    return out[0]
