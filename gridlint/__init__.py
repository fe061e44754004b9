"""
gridlint

Spreadsheet linter for OOXML (.xlsx/.xlsm) and OpenDocument (.ods) workbooks.

    from gridlint import parse_file, lint

    result = lint(parse_file("book.xlsx"), {"global": {"disabled_rules": ["UX"]}})
    for v in result:
        print(v.rule_id, v.location.describe(), v.message)
"""

from __future__ import annotations

import logging

from gridlint.core.errors import (
    ConfigError,
    CorruptWorkbookError,
    FormulaError,
    GridlintError,
    MalformedWorkbookError,
    ParseError,
    RuleExecutionError,
    UnsupportedFormatError,
)
from gridlint.core.violation import Category, Location, Severity, Violation
from gridlint.engine.config import ResolvedConfig, load_config, resolve_config
from gridlint.engine.executor import LintResult, lint, run
from gridlint.readers import parse, parse_file

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Category",
    "ConfigError",
    "CorruptWorkbookError",
    "FormulaError",
    "GridlintError",
    "LintResult",
    "Location",
    "MalformedWorkbookError",
    "ParseError",
    "ResolvedConfig",
    "RuleExecutionError",
    "Severity",
    "UnsupportedFormatError",
    "Violation",
    "lint",
    "load_config",
    "parse",
    "parse_file",
    "resolve_config",
    "run",
]
