"""Shared fixtures: in-memory workbook models, xlsx files via openpyxl, hand-written ods archives."""

from __future__ import annotations

import io
import zipfile
from typing import Any, Callable, Dict, List, Optional

import pytest
from openpyxl import Workbook as OpenpyxlWorkbook
from openpyxl.utils.cell import coordinate_to_tuple

from gridlint.core.formula import ERROR_CODES
from gridlint.core.model import EMPTY, Boolean, ErrorCode, Number, Text, Workbook
from gridlint.core.violation import Violation
from gridlint.engine.executor import lint
from gridlint.readers.base import SheetBuilder, WorkbookBuilder, make_formula


def _value(value: Any):
    if isinstance(value, bool):
        return Boolean(value)
    if isinstance(value, (int, float)):
        return Number(float(value))
    if value in ERROR_CODES:
        return ErrorCode(value)
    return Text(value)


class ModelBuilder:
    """Builds a Workbook model directly, without any file format in between."""

    def __init__(self, fmt: str = "xlsx") -> None:
        self.wb = WorkbookBuilder(fmt)

    def sheet(self, name: str, cells: Optional[Dict[str, Any]] = None, formats: Optional[Dict[str, str]] = None) -> SheetBuilder:
        sb = self.wb.add_sheet(name)
        formats = formats or {}
        for coord, value in (cells or {}).items():
            row, col = coordinate_to_tuple(coord)
            fmt = formats.get(coord)
            if isinstance(value, str) and value.startswith("="):
                sb.add_cell(row, col, EMPTY, make_formula(value), fmt)
            else:
                sb.add_cell(row, col, _value(value), None, fmt)
        return sb

    def name(self, name: str, expression: str, scope: Optional[str] = None) -> "ModelBuilder":
        self.wb.add_named_range(name, expression, scope=scope)
        return self

    def build(self) -> Workbook:
        return self.wb.build()


@pytest.fixture
def make_model() -> Callable[..., ModelBuilder]:
    return ModelBuilder


@pytest.fixture
def lint_only() -> Callable[..., List[Violation]]:
    """Run a single rule (plus params) and return its violations."""

    def run(workbook: Workbook, rule_id: str, **params: Any) -> List[Violation]:
        config: Dict[str, Any] = {"global": {"enabled_rules": [rule_id]}}
        if params:
            config["global"][rule_id] = params
        result = lint(workbook, config, max_workers=2)
        assert not result.partial, result.errors
        return [v for v in result.violations if v.rule_id == rule_id]

    return run


# ---------------------------------------------------------------------------
# xlsx
# ---------------------------------------------------------------------------

def xlsx_bytes(populate: Callable[[OpenpyxlWorkbook], None]) -> bytes:
    wb = OpenpyxlWorkbook()
    populate(wb)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def rewrite_zip(data: bytes, replace: Dict[str, Optional[bytes]]) -> bytes:
    """Copy an archive, replacing (or with None, dropping) members; new names are appended."""
    src = zipfile.ZipFile(io.BytesIO(data))
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as out:
        for info in src.infolist():
            if info.filename in replace:
                if replace[info.filename] is not None:
                    out.writestr(info.filename, replace[info.filename])
                continue
            out.writestr(info, src.read(info.filename))
        for name, payload in replace.items():
            if name not in src.namelist() and payload is not None:
                out.writestr(name, payload)
    return buf.getvalue()


@pytest.fixture
def make_xlsx() -> Callable[[Callable[[OpenpyxlWorkbook], None]], bytes]:
    return xlsx_bytes


@pytest.fixture
def patch_zip() -> Callable[[bytes, Dict[str, Optional[bytes]]], bytes]:
    return rewrite_zip


# ---------------------------------------------------------------------------
# ods
# ---------------------------------------------------------------------------

ODS_NAMESPACES = (
    'xmlns:office="urn:oasis:names:tc:opendocument:xmlns:office:1.0" '
    'xmlns:table="urn:oasis:names:tc:opendocument:xmlns:table:1.0" '
    'xmlns:text="urn:oasis:names:tc:opendocument:xmlns:text:1.0" '
    'xmlns:style="urn:oasis:names:tc:opendocument:xmlns:style:1.0" '
    'xmlns:number="urn:oasis:names:tc:opendocument:xmlns:datastyle:1.0" '
    'xmlns:fo="urn:oasis:names:tc:opendocument:xmlns:xsl-fo-compatible:1.0" '
    'xmlns:calcext="urn:org:documentfoundation:names:experimental:calc:xmlns:calcext:1.0" '
    'xmlns:xlink="http://www.w3.org/1999/xlink"'
)

MANIFEST = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<manifest:manifest xmlns:manifest="urn:oasis:names:tc:opendocument:xmlns:manifest:1.0">'
    '<manifest:file-entry manifest:full-path="/" manifest:media-type="application/vnd.oasis.opendocument.spreadsheet"/>'
    '<manifest:file-entry manifest:full-path="content.xml" manifest:media-type="text/xml"/>'
    "</manifest:manifest>"
)


def ods_content(body: str, automatic_styles: str = "") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<office:document-content {ODS_NAMESPACES} office:version="1.2">'
        f"<office:automatic-styles>{automatic_styles}</office:automatic-styles>"
        f"<office:body><office:spreadsheet>{body}</office:spreadsheet></office:body>"
        "</office:document-content>"
    )


def ods_bytes(body: str, automatic_styles: str = "", extra: Optional[Dict[str, bytes]] = None, content: Optional[str] = None) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(zipfile.ZipInfo("mimetype"), "application/vnd.oasis.opendocument.spreadsheet")
        zf.writestr("META-INF/manifest.xml", MANIFEST)
        if content is None:
            content = ods_content(body, automatic_styles)
        zf.writestr("content.xml", content)
        for name, payload in (extra or {}).items():
            zf.writestr(name, payload)
    return buf.getvalue()


@pytest.fixture
def make_ods() -> Callable[..., bytes]:
    return ods_bytes
