"""
gridlint/readers/__init__.py

Entry point of the parsing layer.

  - parse(file_bytes, format_hint=None) -> Workbook
  - parse_file(path) -> Workbook

The dialect is sniffed from the archive members; the hint ("xlsx", "xlsm",
"ods") only settles a container that looks like neither or both.
"""

from __future__ import annotations

import logging
import os
import time
import zipfile
import zlib
from dataclasses import replace
from types import MappingProxyType
from typing import Callable, Dict, Optional

from gridlint.core.errors import CorruptWorkbookError, UnsupportedFormatError
from gridlint.core.model import Workbook
from gridlint.readers import ods, xlsx
from gridlint.readers.base import open_archive

logger = logging.getLogger(__name__)

Backend = Callable[[bytes], Workbook]

BACKENDS: "MappingProxyType[str, Backend]" = MappingProxyType({
    "xlsx": xlsx.read_xlsx,
    "ods": ods.read_ods,
})

_HINT_ALIASES: Dict[str, str] = {
    "xlsx": "xlsx",
    "xlsm": "xlsx",
    "ooxml": "xlsx",
    "ods": "ods",
    "opendocument": "ods",
}


def _normalise_hint(format_hint: Optional[str]) -> Optional[str]:
    if format_hint is None:
        return None
    key = format_hint.strip().lower().lstrip(".")
    if key not in _HINT_ALIASES:
        raise UnsupportedFormatError(f"unsupported format hint: {format_hint!r}")
    return _HINT_ALIASES[key]


def detect_format(file_bytes: bytes, format_hint: Optional[str] = None) -> str:
    hint = _normalise_hint(format_hint)
    if not file_bytes:
        raise CorruptWorkbookError("empty input")
    with open_archive(file_bytes) as zf:
        names = set(zf.namelist())
        mimetype = None
        if "mimetype" in names:
            try:
                mimetype = zf.read("mimetype")
            except (zipfile.BadZipFile, zlib.error):
                mimetype = None
    candidates = []
    if ods.sniff(names, mimetype):
        candidates.append("ods")
    if xlsx.sniff(names):
        candidates.append("xlsx")
    if len(candidates) == 1:
        return candidates[0]
    if hint is not None and (not candidates or hint in candidates):
        return hint
    if candidates:
        return candidates[0]
    raise UnsupportedFormatError("archive is neither an OOXML nor an OpenDocument spreadsheet")


def parse(file_bytes: bytes, format_hint: Optional[str] = None) -> Workbook:
    fmt = detect_format(file_bytes, format_hint)
    t0 = time.perf_counter()
    workbook = BACKENDS[fmt](file_bytes)
    logger.debug("parsed format=%s elapsed=%.3fs %s", fmt, time.perf_counter() - t0, workbook.stats())
    return workbook


def parse_file(path: str) -> Workbook:
    with open(path, "rb") as fh:
        data = fh.read()
    ext = os.path.splitext(path)[1].lower().lstrip(".")
    workbook = parse(data, ext if ext in _HINT_ALIASES else None)
    return replace(workbook, source_path=os.path.abspath(path))
