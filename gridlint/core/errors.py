"""
gridlint/core/errors.py

Exception taxonomy shared by every layer.

Fatal (abort before any violation is produced):
  - ConfigError
  - ParseError and its Corrupt / Malformed / UnsupportedFormat subclasses

Recoverable (collected into the lint result):
  - FormulaError        one cell
  - RuleExecutionError  one rule id
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GridlintError(Exception):
    """Base class for every error raised by gridlint."""


class ConfigError(GridlintError):
    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        super().__init__(f"{key}: {message}" if key else message)


class ParseError(GridlintError):
    kind = "malformed"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CorruptWorkbookError(ParseError):
    kind = "corrupt"


class MalformedWorkbookError(ParseError):
    kind = "malformed"


class UnsupportedFormatError(ParseError):
    kind = "unsupported_format"


class FormulaError(GridlintError):
    """A formula could not be parsed. `position` is the 0-based offset into the text."""

    def __init__(self, message: str, position: int, formula: str = "") -> None:
        self.message = message
        self.position = position
        self.formula = formula
        super().__init__(f"{message} at offset {position}")

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "position": self.position, "formula": self.formula}


class RuleExecutionError(GridlintError):
    def __init__(self, rule_id: str, cause: BaseException, sheet: Optional[str] = None) -> None:
        self.rule_id = rule_id
        self.cause = cause
        self.sheet = sheet
        super().__init__(f"rule {rule_id} failed: {type(cause).__name__}: {cause}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": "rule",
            "type": type(self.cause).__name__,
            "rule": self.rule_id,
            "sheet": self.sheet,
            "details": f"{type(self.cause).__name__}: {self.cause}",
        }
