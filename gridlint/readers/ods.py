"""
gridlint/readers/ods.py

OpenDocument spreadsheet backend (.ods).

content.xml and styles.xml are decoded with ElementTree straight from the zip
container. OpenFormula text (`of:=SUM([.A1:.B2];1)`) is rewritten into the
same grammar the OOXML backend stores, so both dialects end up with identical
canonical formulas, number format codes and hidden spans.

External documents referenced from formulas (`['file:///x.ods'#$Sheet1.A1]`)
are given book indexes in order of first appearance, mirroring the numbered
external-link table of an OOXML package.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, Iterator, List, Optional, Set, Tuple

from openpyxl.utils.datetime import from_ISO8601, to_excel

from gridlint.core.errors import CorruptWorkbookError
from gridlint.core.formula import MAX_COLUMN, MAX_ROW, sheet_prefix
from gridlint.core.model import EMPTY, Boolean, CellRange, CellValue, ErrorCode, Number, Text, Workbook
from gridlint.readers.base import (
    SheetBuilder,
    WorkbookBuilder,
    is_well_formed,
    make_formula,
    open_archive,
    parse_xml,
    probe_members,
    read_part,
)

logger = logging.getLogger(__name__)

MIMETYPE = "application/vnd.oasis.opendocument.spreadsheet"
CONTENT_PART = "content.xml"
STYLES_PART = "styles.xml"

NS = {
    "office": "urn:oasis:names:tc:opendocument:xmlns:office:1.0",
    "table": "urn:oasis:names:tc:opendocument:xmlns:table:1.0",
    "text": "urn:oasis:names:tc:opendocument:xmlns:text:1.0",
    "style": "urn:oasis:names:tc:opendocument:xmlns:style:1.0",
    "number": "urn:oasis:names:tc:opendocument:xmlns:datastyle:1.0",
    "calcext": "urn:org:documentfoundation:names:experimental:calc:xmlns:calcext:1.0",
    "xlink": "http://www.w3.org/1999/xlink",
}


def _q(qname: str) -> str:
    prefix, local = qname.split(":", 1)
    return f"{{{NS[prefix]}}}{local}"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


T_TABLE = _q("table:table")
T_ROW = _q("table:table-row")
T_COLUMN = _q("table:table-column")
T_CELL = _q("table:table-cell")
T_COVERED = _q("table:covered-table-cell")
T_NAMED = _q("table:named-expressions")
T_NAMED_RANGE = _q("table:named-range")
T_NAMED_EXPRESSION = _q("table:named-expression")
T_TEXT_P = _q("text:p")
T_TEXT_S = _q("text:s")
T_TEXT_TAB = _q("text:tab")
T_TEXT_BREAK = _q("text:line-break")

_ROW_CONTAINERS = {_q("table:table-row-group"), _q("table:table-header-rows"), _q("table:table-rows")}
_COLUMN_CONTAINERS = {
    _q("table:table-column-group"),
    _q("table:table-header-columns"),
    _q("table:table-columns"),
}
_HIDDEN_VISIBILITY = ("collapse", "filter")

_DATA_STYLES = {
    "number-style",
    "currency-style",
    "percentage-style",
    "date-style",
    "time-style",
    "boolean-style",
    "text-style",
}


def sniff(names: Set[str], mimetype: Optional[bytes]) -> bool:
    if mimetype is not None and mimetype.strip().decode("ascii", "replace") == MIMETYPE:
        return True
    return CONTENT_PART in names and "META-INF/manifest.xml" in names


# ---------------------------------------------------------------------------
# OpenFormula -> grammar text
# ---------------------------------------------------------------------------

_RE_NAMESPACE = re.compile(r"^\s*(?:of|oooc|msoxl)\s*:")
_RE_EXTERNAL = re.compile(r"^'((?:[^']|'')*)'#(.*)$")
_RE_PART = re.compile(r"^\$?(?:'((?:[^']|'')*)'|([^.']*))\.(.*)$")


class LinkTable:
    """Book indexes for external documents, in order of first appearance."""

    def __init__(self) -> None:
        self._index: Dict[str, int] = {}

    def index_for(self, target: str) -> int:
        if target not in self._index:
            self._index[target] = len(self._index) + 1
        return self._index[target]

    def items(self) -> List[Tuple[int, str]]:
        return sorted((i, t) for t, i in self._index.items())


def _split_parts(address: str) -> List[str]:
    """Split "$'a:b'.A1:.B2" on colons outside quotes."""
    parts: List[str] = []
    quoted = False
    start = 0
    for i, ch in enumerate(address):
        if ch == "'":
            quoted = not quoted
        elif ch == ":" and not quoted:
            parts.append(address[start:i])
            start = i + 1
    parts.append(address[start:])
    return parts


def _split_part(part: str) -> Optional[Tuple[str, str]]:
    m = _RE_PART.match(part.strip())
    if not m:
        return None
    sheet = m.group(1).replace("''", "'") if m.group(1) is not None else m.group(2)
    return sheet, m.group(3)


def convert_reference(address: str, links: Optional[LinkTable] = None) -> str:
    """
    One OpenFormula reference (the text between the brackets, or a
    cell-range-address attribute) as grammar text:

        .A1            -> A1
        $Sheet1.$A$1   -> Sheet1!$A$1
        .A1:.B2        -> A1:B2
        .A:.A / .1:.1  -> A:A / 1:1
        'file'#$S.A1   -> [n]S!A1
    """
    address = address.strip()
    book = None
    m = _RE_EXTERNAL.match(address)
    if m:
        target = m.group(1).replace("''", "'")
        book = str(links.index_for(target)) if links is not None else target
        address = m.group(2)
    if "#REF!" in address.upper():
        return "#REF!"

    pieces = [_split_part(p) for p in _split_parts(address)]
    if not pieces or any(p is None for p in pieces):
        return address
    first_sheet, first_addr = pieces[0]
    out = sheet_prefix(first_sheet or None, book) + first_addr
    for sheet, addr in pieces[1:]:
        if sheet and sheet != first_sheet:
            out += ":" + sheet_prefix(sheet, book) + addr
        else:
            out += ":" + addr
    return out


def convert_formula(text: str, links: Optional[LinkTable] = None) -> str:
    """`of:=SUM([.A1:.B2];1)` -> `=SUM(A1:B2,1)`"""
    body = _RE_NAMESPACE.sub("", text, count=1)
    if not body.startswith("="):
        body = "=" + body
    out: List[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == '"':
            j = i + 1
            while j < len(body):
                if body[j] == '"':
                    if body.startswith('""', j):
                        j += 2
                        continue
                    break
                j += 1
            out.append(body[i:j + 1])
            i = j + 1
        elif ch == "[":
            j = i + 1
            quoted = False
            while j < len(body) and (body[j] != "]" or quoted):
                if body[j] == "'":
                    quoted = not quoted
                j += 1
            out.append(convert_reference(body[i + 1:j], links))
            i = j + 1
        elif ch == ";":
            out.append(",")
            i += 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def convert_range_list(addresses: str, links: Optional[LinkTable] = None) -> str:
    """Space separated cell-range-address list -> comma separated union."""
    items = _split_outside_quotes(addresses, " ")
    return ",".join(convert_reference(a, links) for a in items)


def local_range(address: str) -> str:
    """Sheet-local form of a target range: "Sheet1.A1:Sheet1.A10" -> "A1:A10"."""
    pieces = [_split_part(p) for p in _split_parts(address.strip())]
    if not pieces or any(p is None for p in pieces):
        return address.strip()
    return ":".join(addr.replace("$", "") for _, addr in pieces)


def _split_outside_quotes(text: str, sep: str) -> List[str]:
    items: List[str] = []
    quoted = False
    start = 0
    for i, ch in enumerate(text):
        if ch == "'":
            quoted = not quoted
        elif ch == sep and not quoted:
            items.append(text[start:i])
            start = i + 1
    items.append(text[start:])
    return [i for i in items if i.strip()]


# ---------------------------------------------------------------------------
# Styles
# ---------------------------------------------------------------------------

_LITERAL_CHARS = set("-/.:, ()")


def _text_piece(text: str) -> str:
    if not text:
        return ""
    if set(text) <= _LITERAL_CHARS or text in ("%", "$", "€", "£"):
        return text
    return '"' + text.replace('"', "") + '"'


def _long(el: ET.Element) -> bool:
    return el.get(_q("number:style")) == "long"


def _data_style_code(el: ET.Element) -> str:
    kind = _local(el.tag)
    if kind == "boolean-style":
        return "BOOLEAN"
    parts: List[str] = []
    for child in el:
        local = _local(child.tag)
        if local == "number":
            decimals = int(child.get(_q("number:decimal-places"), "0") or 0)
            code = "#,##0" if child.get(_q("number:grouping")) == "true" else "0"
            if decimals:
                code += "." + "0" * decimals
            parts.append(code)
        elif local == "scientific-number":
            decimals = int(child.get(_q("number:decimal-places"), "0") or 0)
            parts.append("0" + ("." + "0" * decimals if decimals else "") + "E+00")
        elif local == "fraction":
            parts.append("# ?/?")
        elif local == "text":
            parts.append(_text_piece(child.text or ""))
        elif local == "text-content":
            parts.append("@")
        elif local == "currency-symbol":
            parts.append(_text_piece(child.text or ""))
        elif local == "day":
            parts.append("dd" if _long(child) else "d")
        elif local == "month":
            if child.get(_q("number:textual")) == "true":
                parts.append("mmmm" if _long(child) else "mmm")
            else:
                parts.append("mm" if _long(child) else "m")
        elif local == "year":
            parts.append("yyyy" if _long(child) else "yy")
        elif local == "day-of-week":
            parts.append("dddd" if _long(child) else "ddd")
        elif local == "hours":
            parts.append("hh" if _long(child) else "h")
        elif local == "minutes":
            parts.append("mm" if _long(child) else "m")
        elif local == "seconds":
            decimals = int(child.get(_q("number:decimal-places"), "0") or 0)
            parts.append(("ss" if _long(child) else "s") + ("." + "0" * decimals if decimals else ""))
        elif local == "am-pm":
            parts.append("AM/PM")
    code = "".join(parts)
    if kind == "text-style" and not code:
        return "@"
    return code


class _Styles:
    """Data styles, cell styles and table styles from both style containers."""

    def __init__(self) -> None:
        self.data_codes: Dict[str, str] = {}
        self.cell_data_style: Dict[str, str] = {}
        self.cell_parent: Dict[str, str] = {}
        self.hidden_tables: Set[str] = set()
        self.column_cell_style: Dict[str, str] = {}

    def load(self, root: ET.Element) -> None:
        for container in (_q("office:styles"), _q("office:automatic-styles")):
            for section in root.iter(container):
                for el in section:
                    self._style(el)

    def _style(self, el: ET.Element) -> None:
        local = _local(el.tag)
        name = el.get(_q("style:name"))
        if name is None:
            return
        if local in _DATA_STYLES:
            self.data_codes[name] = _data_style_code(el)
            return
        if local != "style":
            return
        family = el.get(_q("style:family"))
        if family == "table-cell":
            data_style = el.get(_q("style:data-style-name"))
            if data_style:
                self.cell_data_style[name] = data_style
            parent = el.get(_q("style:parent-style-name"))
            if parent:
                self.cell_parent[name] = parent
        elif family == "table":
            props = el.find(_q("style:table-properties"))
            if props is not None and props.get(_q("table:display")) == "false":
                self.hidden_tables.add(name)

    def number_format(self, cell_style: Optional[str]) -> Optional[str]:
        seen: Set[str] = set()
        while cell_style and cell_style not in seen:
            seen.add(cell_style)
            data_style = self.cell_data_style.get(cell_style)
            if data_style is not None:
                return self.data_codes.get(data_style)
            cell_style = self.cell_parent.get(cell_style)
        return None


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------

def _repeat(el: ET.Element, attr: str) -> int:
    try:
        return max(1, int(el.get(_q(attr), "1")))
    except ValueError:
        return 1


def _paragraph_text(p: ET.Element) -> str:
    out: List[str] = [p.text or ""]
    for child in p:
        tag = child.tag
        if tag == T_TEXT_S:
            out.append(" " * _repeat(child, "text:c"))
        elif tag == T_TEXT_TAB:
            out.append("\t")
        elif tag == T_TEXT_BREAK:
            out.append("\n")
        else:
            out.append(_paragraph_text(child))
        out.append(child.tail or "")
    return "".join(out)


def _cell_text(cell: ET.Element) -> Optional[str]:
    paragraphs = cell.findall(T_TEXT_P)
    if not paragraphs:
        return None
    return "\n".join(_paragraph_text(p) for p in paragraphs)


def _temporal(text: str) -> Optional[float]:
    try:
        value = from_ISO8601(text.strip())
    except (ValueError, TypeError):
        return None
    return float(to_excel(value))


def _value(cell: ET.Element) -> CellValue:
    value_type = cell.get(_q("office:value-type"))
    ext_type = cell.get(_q("calcext:value-type"))
    text = _cell_text(cell)
    if ext_type == "error":
        return ErrorCode((text or cell.get(_q("calcext:value")) or "#VALUE!").strip())
    if value_type in ("float", "percentage", "currency"):
        raw = cell.get(_q("office:value"))
        try:
            return Number(float(raw))
        except (TypeError, ValueError):
            return Text(text) if text else EMPTY
    if value_type == "date":
        serial = _temporal(cell.get(_q("office:date-value"), ""))
        if serial is not None:
            return Number(serial)
        return Text(text) if text else EMPTY
    if value_type == "time":
        serial = _temporal(cell.get(_q("office:time-value"), ""))
        if serial is not None:
            return Number(serial)
        return Text(text) if text else EMPTY
    if value_type == "boolean":
        return Boolean(cell.get(_q("office:boolean-value"), "false").lower() == "true")
    if value_type == "string":
        string_value = cell.get(_q("office:string-value"))
        if string_value is not None:
            return Text(string_value) if string_value else EMPTY
        return Text(text) if text else EMPTY
    if text:
        return Text(text)
    return EMPTY


def _iter_children(parent: ET.Element, leaf: str, containers: Set[str]) -> Iterator[ET.Element]:
    for child in parent:
        if child.tag == leaf:
            yield child
        elif child.tag in containers:
            yield from _iter_children(child, leaf, containers)


class _TableReader:
    def __init__(self, sb: SheetBuilder, styles: _Styles, links: LinkTable) -> None:
        self.sb = sb
        self.styles = styles
        self.links = links
        self.column_styles: Dict[int, str] = {}

    def read(self, table: ET.Element) -> None:
        self._columns(table)
        row = 1
        for row_el in _iter_children(table, T_ROW, _ROW_CONTAINERS):
            if row > MAX_ROW:
                break
            repeat = min(_repeat(row_el, "table:number-rows-repeated"), MAX_ROW - row + 1)
            if row_el.get(_q("table:visibility")) in _HIDDEN_VISIBILITY:
                self.sb.hide_rows(row, row + repeat - 1)
            self._row(row_el, row, repeat)
            row += repeat

    def _columns(self, table: ET.Element) -> None:
        col = 1
        for col_el in _iter_children(table, T_COLUMN, _COLUMN_CONTAINERS):
            if col > MAX_COLUMN:
                break
            repeat = min(_repeat(col_el, "table:number-columns-repeated"), MAX_COLUMN - col + 1)
            if col_el.get(_q("table:visibility")) in _HIDDEN_VISIBILITY:
                self.sb.hide_columns(col, col + repeat - 1)
            default_style = col_el.get(_q("table:default-cell-style-name"))
            if default_style and default_style != "Default" and repeat <= 1024:
                for c in range(col, col + repeat):
                    self.column_styles[c] = default_style
            col += repeat

    def _row(self, row_el: ET.Element, row: int, row_repeat: int) -> None:
        row_style = row_el.get(_q("table:default-cell-style-name"))
        col = 1
        for cell in row_el:
            if cell.tag not in (T_CELL, T_COVERED):
                continue
            if col > MAX_COLUMN:
                break
            repeat = min(_repeat(cell, "table:number-columns-repeated"), MAX_COLUMN - col + 1)
            if cell.tag == T_CELL:
                self._cell(cell, row, col, row_repeat, repeat, row_style)
            else:
                # covered by a merge; part of the extent like OOXML's merged cells
                self.sb.touch(row + row_repeat - 1, col + repeat - 1)
            col += repeat

    def _cell(
        self,
        cell: ET.Element,
        row: int,
        col: int,
        row_repeat: int,
        col_repeat: int,
        row_style: Optional[str],
    ) -> None:
        sb = self.sb
        style = cell.get(_q("table:style-name"))
        rows_spanned = _repeat(cell, "table:number-rows-spanned")
        cols_spanned = _repeat(cell, "table:number-columns-spanned")
        if rows_spanned > 1 or cols_spanned > 1:
            sb.add_merged(CellRange(row, col, row + rows_spanned - 1, col + cols_spanned - 1))

        raw_formula = cell.get(_q("table:formula"))
        value = _value(cell)
        if raw_formula is None and value == EMPTY:
            if style is not None:
                sb.touch(row + row_repeat - 1, col + col_repeat - 1)
            return

        number_format = self.styles.number_format(style or row_style or self.column_styles.get(col))
        formula = None
        if raw_formula is not None:
            formula = make_formula(convert_formula(raw_formula, self.links), raw_formula)
        for r in range(row, row + row_repeat):
            for c in range(col, col + col_repeat):
                sb.add_cell(r, c, value, formula, number_format)


# ---------------------------------------------------------------------------
# Workbook
# ---------------------------------------------------------------------------

def _named_expressions(builder: WorkbookBuilder, container: Optional[ET.Element], scope: Optional[str], links: LinkTable) -> None:
    if container is None:
        return
    for el in container:
        name = el.get(_q("table:name"))
        if not name:
            continue
        if el.tag == T_NAMED_RANGE:
            address = el.get(_q("table:cell-range-address"), "")
            builder.add_named_range(name, convert_range_list(address, links), scope=scope)
        elif el.tag == T_NAMED_EXPRESSION:
            expression = convert_formula(el.get(_q("table:expression"), ""), links)
            builder.add_named_range(name, expression[1:], scope=scope)


def _macro_parts(names: Set[str]) -> bool:
    return any(n.startswith(("Basic/", "Scripts/")) and not n.endswith("/") for n in names)


def read_ods(data: bytes) -> Workbook:
    zf = open_archive(data)
    names = set(zf.namelist())
    if CONTENT_PART not in names:
        raise CorruptWorkbookError(f"missing mandatory part {CONTENT_PART}")
    bad = probe_members(zf)
    if CONTENT_PART in bad:
        raise CorruptWorkbookError(f"mandatory part {CONTENT_PART} is unreadable")

    builder = WorkbookBuilder("ods")
    builder.has_macros = _macro_parts(names)
    for part in sorted(bad):
        builder.note_corruption(f"part {part} is unreadable and was ignored")

    styles = _Styles()
    styles_data = read_part(zf, STYLES_PART, bad)
    if styles_data is not None:
        if is_well_formed(styles_data):
            styles.load(parse_xml(styles_data, STYLES_PART))
        else:
            builder.note_corruption(f"{STYLES_PART} is not well-formed XML; styles ignored")
    content = parse_xml(zf.read(CONTENT_PART), CONTENT_PART)
    styles.load(content)

    spreadsheet = content.find(f"{_q('office:body')}/{_q('office:spreadsheet')}")
    if spreadsheet is None:
        raise CorruptWorkbookError("content.xml has no spreadsheet body")

    links = LinkTable()
    for table in spreadsheet.findall(T_TABLE):
        name = table.get(_q("table:name"), "")
        sb = builder.add_sheet(name)
        if table.get(_q("table:style-name")) in styles.hidden_tables:
            sb.visibility = "hidden"
        _TableReader(sb, styles, links).read(table)

        source = table.find(_q("table:table-source"))
        if source is not None and source.get(_q("xlink:href")):
            links.index_for(source.get(_q("xlink:href")))

        print_ranges = table.get(_q("table:print-ranges"))
        if print_ranges:
            builder.add_named_range("Print_Area", convert_range_list(print_ranges, links), scope=name, reserved=True)
        _named_expressions(builder, table.find(T_NAMED), name, links)

        for cf in table.iter(_q("calcext:conditional-format")):
            target = cf.get(_q("calcext:target-range-address"), "")
            ref = " ".join(local_range(a) for a in _split_outside_quotes(target, " "))
            sb.add_conditional_format(ref, len(list(cf)))

    _named_expressions(builder, spreadsheet.find(T_NAMED), None, links)
    for idx, target in links.items():
        builder.add_external_link(idx, target)

    out = builder.build()
    logger.debug("ods parsed %s", out.stats())
    return out
