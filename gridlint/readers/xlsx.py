"""
gridlint/readers/xlsx.py

OOXML backend (.xlsx / .xlsm).

openpyxl decodes cells, styles, merges, dimensions, conditional formatting and
defined names. The package parts openpyxl does not expose (external-link
relationship targets, the VBA project part) are read straight from the zip
container with ElementTree.

Damaged sheet bodies are dropped from an in-memory copy of the archive before
openpyxl sees it; openpyxl skips sheets whose part is missing, so the rest of
the workbook still loads and the damage is recorded as a corruption note.
"""

from __future__ import annotations

import datetime
import io
import logging
import posixpath
import zipfile
from typing import Any, Dict, List, Optional, Set, Tuple

from openpyxl import load_workbook
from openpyxl.utils.datetime import to_excel
from openpyxl.utils.exceptions import InvalidFileException

from gridlint.core.errors import CorruptWorkbookError, MalformedWorkbookError
from gridlint.core.formula import quote_sheet
from gridlint.core.model import EMPTY, Boolean, CellRange, CellValue, ErrorCode, Number, Text, Workbook
from gridlint.readers.base import (
    WorkbookBuilder,
    is_well_formed,
    make_formula,
    merge_spans,
    open_archive,
    parse_xml,
    probe_members,
    read_part,
)

logger = logging.getLogger(__name__)

NS_MAIN = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
NS_DOC_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
NS_PKG_REL = "http://schemas.openxmlformats.org/package/2006/relationships"

CONTENT_TYPES = "[Content_Types].xml"
WORKBOOK_PART = "xl/workbook.xml"
WORKBOOK_RELS = "xl/_rels/workbook.xml.rels"
SHARED_STRINGS = "xl/sharedStrings.xml"

_VISIBILITY = {"visible": "visible", "hidden": "hidden", "veryHidden": "very_hidden"}

# openpyxl raises a wide range of exceptions on structurally odd parts.
_OPENPYXL_ERRORS = (
    InvalidFileException,
    zipfile.BadZipFile,
    KeyError,
    ValueError,
    TypeError,
    AttributeError,
    IndexError,
    SyntaxError,  # xml.etree ParseError and lxml XMLSyntaxError derive from it
)


def sniff(names: Set[str]) -> bool:
    return WORKBOOK_PART in names or (CONTENT_TYPES in names and any(n.startswith("xl/") for n in names))


# ---------------------------------------------------------------------------
# Package parts
# ---------------------------------------------------------------------------

def _resolve_target(base_dir: str, target: str) -> str:
    if target.startswith("/"):
        return target.lstrip("/")
    return posixpath.normpath(posixpath.join(base_dir, target))


def _relationships(zf: zipfile.ZipFile, rels_part: str, bad: Set[str]) -> Dict[str, Dict[str, str]]:
    data = read_part(zf, rels_part, bad)
    if data is None or not is_well_formed(data):
        return {}
    root = parse_xml(data, rels_part)
    out: Dict[str, Dict[str, str]] = {}
    for rel in root.findall(f"{{{NS_PKG_REL}}}Relationship"):
        out[rel.get("Id", "")] = {
            "target": rel.get("Target", ""),
            "type": rel.get("Type", ""),
            "mode": rel.get("TargetMode", ""),
        }
    return out


def _sheet_parts(zf: zipfile.ZipFile, wb_root, bad: Set[str]) -> List[Tuple[str, str]]:
    """(sheet name, part path) for every sheet listed in workbook.xml."""
    rels = _relationships(zf, WORKBOOK_RELS, bad)
    out: List[Tuple[str, str]] = []
    sheets = wb_root.find(f"{{{NS_MAIN}}}sheets")
    if sheets is None:
        return out
    for sh in sheets.findall(f"{{{NS_MAIN}}}sheet"):
        rid = sh.get(f"{{{NS_DOC_REL}}}id", "")
        rel = rels.get(rid)
        if rel is None or not rel["type"].endswith("/worksheet"):
            continue
        out.append((sh.get("name", ""), _resolve_target("xl", rel["target"])))
    return out


def _external_links(zf: zipfile.ZipFile, wb_root, bad: Set[str]) -> List[Tuple[int, str]]:
    """Book index -> target, in the order of <externalReferences>; [1] is the first entry."""
    refs = wb_root.find(f"{{{NS_MAIN}}}externalReferences")
    if refs is None:
        return []
    rels = _relationships(zf, WORKBOOK_RELS, bad)
    out: List[Tuple[int, str]] = []
    for idx, ref in enumerate(refs.findall(f"{{{NS_MAIN}}}externalReference"), start=1):
        rel = rels.get(ref.get(f"{{{NS_DOC_REL}}}id", ""))
        if rel is None:
            continue
        part = _resolve_target("xl", rel["target"])
        part_dir, part_file = posixpath.split(part)
        link_rels = _relationships(zf, posixpath.join(part_dir, "_rels", part_file + ".rels"), bad)
        targets = [r["target"] for r in link_rels.values() if r["mode"] == "External"]
        out.append((idx, targets[0] if targets else part))
    return out


def _repaired(zf: zipfile.ZipFile, drop: Set[str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as out:
        for info in zf.infolist():
            if info.filename in drop:
                continue
            out.writestr(info, zf.read(info.filename))
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------

def _value(data_type: str, value: Any, epoch) -> CellValue:
    if value is None:
        return EMPTY
    if data_type == "e":
        return ErrorCode(str(value))
    if data_type == "b" or isinstance(value, bool):
        return Boolean(bool(value))
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time, datetime.timedelta)):
        return Number(float(to_excel(value, epoch)))
    if isinstance(value, (int, float)):
        return Number(float(value))
    return Text(str(value))


def _iter_cells(ws):
    # Fast path: openpyxl keeps a dict of materialized cells.
    cells = getattr(ws, "_cells", None)
    if isinstance(cells, dict):
        for key in sorted(cells):
            yield cells[key]
        return
    for row in ws.iter_rows():
        for c in row:
            yield c


def _formula_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    text = getattr(value, "text", None)  # ArrayFormula
    if isinstance(text, str):
        return text if text.startswith("=") else "=" + text
    return None


def _cached_values(data: bytes) -> Dict[str, Dict[Tuple[int, int], CellValue]]:
    """Cached results of formula cells, from a data_only pass."""
    out: Dict[str, Dict[Tuple[int, int], CellValue]] = {}
    wb = load_workbook(io.BytesIO(data), data_only=True, read_only=True)
    try:
        for ws in wb.worksheets:
            values: Dict[Tuple[int, int], CellValue] = {}
            for row in ws.iter_rows():
                for c in row:
                    r = getattr(c, "row", None)
                    if r is None or c.value is None:
                        continue
                    values[(r, c.column)] = _value(c.data_type, c.value, wb.epoch)
            out[ws.title] = values
    finally:
        wb.close()
    return out


def _read_sheet(sb, ws, cached: Dict[Tuple[int, int], CellValue], epoch) -> None:
    sb.visibility = _VISIBILITY.get(ws.sheet_state, "visible")

    for c in _iter_cells(ws):
        if c.data_type == "f":
            text = _formula_text(c.value)
            if text is None:
                sb.touch(c.row, c.column)
                continue
            sb.add_cell(
                c.row,
                c.column,
                cached.get((c.row, c.column), EMPTY),
                make_formula(text),
                c.number_format,
            )
            continue
        sb.add_cell(c.row, c.column, _value(c.data_type, c.value, epoch), None, c.number_format)

    for rng in ws.merged_cells.ranges:
        sb.add_merged(CellRange(rng.min_row, rng.min_col, rng.max_row, rng.max_col))

    for cf in ws.conditional_formatting:
        sb.add_conditional_format(str(cf.sqref), len(cf.rules))

    sb_rows = [idx for idx, dim in ws.row_dimensions.items() if dim.hidden]
    for first, last in merge_spans(sb_rows):
        sb.hide_rows(first, last)
    for dim in ws.column_dimensions.values():
        if dim.hidden and dim.min:
            sb.hide_columns(dim.min, dim.max or dim.min)


def read_xlsx(data: bytes) -> Workbook:
    zf = open_archive(data)
    names = set(zf.namelist())
    for part in (CONTENT_TYPES, WORKBOOK_PART):
        if part not in names:
            raise CorruptWorkbookError(f"missing mandatory part {part}")

    bad = probe_members(zf)
    for part in (CONTENT_TYPES, WORKBOOK_PART, SHARED_STRINGS):
        if part in bad:
            raise CorruptWorkbookError(f"mandatory part {part} is unreadable")

    builder = WorkbookBuilder("xlsx")
    wb_root = parse_xml(zf.read(WORKBOOK_PART), WORKBOOK_PART)

    drop = set(bad)
    readable = 0
    for sheet_name, part in _sheet_parts(zf, wb_root, bad):
        if part in bad or part not in names:
            builder.note_corruption(f"sheet '{sheet_name}' body {part} is missing or unreadable; sheet skipped")
            continue
        if not is_well_formed(zf.read(part)):
            drop.add(part)
            builder.note_corruption(f"sheet '{sheet_name}' body {part} is not well-formed XML; sheet skipped")
            continue
        readable += 1
    if readable == 0:
        raise CorruptWorkbookError("no readable sheet body in workbook")
    for part in sorted(bad):
        if not part.startswith("xl/worksheets/"):
            builder.note_corruption(f"part {part} is unreadable and was ignored")

    payload = _repaired(zf, drop) if drop else data
    builder.has_macros = any(n.lower().endswith("vbaproject.bin") for n in names)
    for idx, target in _external_links(zf, wb_root, bad):
        builder.add_external_link(idx, target)

    try:
        wb = load_workbook(io.BytesIO(payload), data_only=False, keep_vba=False, keep_links=True)
        cached = _cached_values(payload)
    except _OPENPYXL_ERRORS as e:
        raise MalformedWorkbookError(f"workbook could not be decoded: {type(e).__name__}: {e}") from e

    for ws in wb.worksheets:
        sb = builder.add_sheet(ws.title)
        _read_sheet(sb, ws, cached.get(ws.title, {}), wb.epoch)

        for name, defn in ws.defined_names.items():
            builder.add_named_range(name, defn.attr_text or "", scope=ws.title)
        if ws.print_area:
            builder.add_named_range("Print_Area", ws.print_area, scope=ws.title, reserved=True)
        titles = [t for t in (ws.print_title_rows, ws.print_title_cols) if t]
        if titles:
            expr = ",".join(f"{quote_sheet(ws.title)}!{t}" for t in titles)
            builder.add_named_range("Print_Titles", expr, scope=ws.title, reserved=True)

    for name, defn in wb.defined_names.items():
        builder.add_named_range(name, defn.attr_text or "")

    out = builder.build()
    logger.debug("xlsx parsed %s", out.stats())
    return out
