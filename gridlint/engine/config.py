"""
gridlint/engine/config.py

Configuration resolution: built-in defaults -> global section -> per-sheet
section, most specific wins.

Document shape (YAML or an equivalent dict):

    global:
      enabled_rules: [ALL | rule ids | category prefixes]
      disabled_rules: [rule ids | category prefixes]
      FORM006: {max_depth: 4}
    sheets:
      Summary:
        disabled_rules: [PERF]
        UX003: {max_blank_rows: 10}

Selection inside one layer:
  - an empty / missing enabled_rules keeps every default-on rule
  - a category prefix selects the default-on rules of that category
  - opt-in rules (default_enabled=False) need their exact id or ALL
  - disabled_rules beats enabled_rules
A sheet layer only changes what it names; everything else follows the
global decision.

Validation is complete and fail-fast: resolve_config() either returns a fully
checked ResolvedConfig or raises ConfigError, before any workbook is touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

import yaml

from gridlint.core.errors import ConfigError
from gridlint.rules.base import RuleSpec
from gridlint.rules.registry import REGISTRY, category_for, rules_in_category

logger = logging.getLogger(__name__)

ALL = "ALL"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "rules.yaml"
_SELECTION_KEYS = ("enabled_rules", "disabled_rules")
_TOP_LEVEL_KEYS = ("global", "sheets")


@dataclass(frozen=True)
class _Layer:
    enabled: Optional[FrozenSet[str]]  # None = not stated in this layer
    disabled: FrozenSet[str]
    params: Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class ResolvedConfig:
    """Validated configuration; sheet names are matched case-insensitively."""

    global_enabled: FrozenSet[str]
    global_params: Mapping[str, Mapping[str, Any]]
    sheets: Mapping[str, _Layer] = field(default_factory=lambda: MappingProxyType({}))

    def _sheet_layer(self, sheet: Optional[str]) -> Optional[_Layer]:
        if sheet is None:
            return None
        return self.sheets.get(sheet.lower())

    def is_enabled(self, rule_id: str, sheet: Optional[str] = None) -> bool:
        layer = self._sheet_layer(sheet)
        if layer is not None:
            if rule_id in layer.disabled:
                return False
            if layer.enabled is not None and rule_id in layer.enabled:
                return True
        return rule_id in self.global_enabled

    def is_enabled_anywhere(self, rule_id: str) -> bool:
        if rule_id in self.global_enabled:
            return True
        return any(
            layer.enabled is not None and rule_id in layer.enabled and rule_id not in layer.disabled
            for layer in self.sheets.values()
        )

    def params(self, rule_id: str, sheet: Optional[str] = None) -> Mapping[str, Any]:
        spec = REGISTRY[rule_id]
        merged = spec.defaults()
        merged.update(self.global_params.get(rule_id, {}))
        layer = self._sheet_layer(sheet)
        if layer is not None:
            merged.update(layer.params.get(rule_id, {}))
        return MappingProxyType(merged)

    def enabled_rules(self) -> List[str]:
        return sorted(self.global_enabled)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _expand(token: Any, where: str, disabling: bool) -> FrozenSet[str]:
    """
    A rule id, a category prefix or ALL. Enabling a category selects its
    default-on rules; disabling one covers every rule in it.
    """
    if not isinstance(token, str):
        raise ConfigError(f"rule selectors must be strings, got {token!r}", where)
    key = token.strip().upper()
    if key == ALL:
        if disabling:
            raise ConfigError("'ALL' is not allowed in disabled_rules", where)
        return frozenset(REGISTRY)
    if key in REGISTRY:
        return frozenset((key,))
    category = category_for(key)
    if category is not None:
        return frozenset(s.rule_id for s in rules_in_category(category) if s.default_enabled or disabling)
    raise ConfigError(f"unknown rule or category {token!r}", where)


def _selection(raw: Any, where: str, disabling: bool) -> FrozenSet[str]:
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ConfigError(f"expected a list of rule ids, got {raw!r}", where)
    out: set = set()
    for token in raw:
        out |= _expand(token, where, disabling)
    return frozenset(out)


def _rule_params(spec: RuleSpec, raw: Any, where: str) -> Mapping[str, Any]:
    if raw is None:
        return MappingProxyType({})
    if not isinstance(raw, Mapping):
        raise ConfigError(f"parameters must be a mapping, got {raw!r}", where)
    out: Dict[str, Any] = {}
    for name, value in raw.items():
        param = spec.param(str(name))
        if param is None:
            known = ", ".join(p.name for p in spec.params) or "none"
            raise ConfigError(f"unknown parameter {name!r} for {spec.rule_id} (known: {known})", where)
        out[param.name] = param.validate(value, f"{where}.{param.name}")
    return MappingProxyType(out)


def _layer(raw: Any, where: str) -> _Layer:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"section must be a mapping, got {type(raw).__name__}", where)
    enabled: Optional[FrozenSet[str]] = None
    if raw.get("enabled_rules"):
        enabled = _selection(raw["enabled_rules"], f"{where}.enabled_rules", disabling=False)
    disabled = _selection(raw.get("disabled_rules"), f"{where}.disabled_rules", disabling=True)
    params: Dict[str, Mapping[str, Any]] = {}
    for key, value in raw.items():
        if key in _SELECTION_KEYS:
            continue
        rule_id = str(key).strip().upper()
        spec = REGISTRY.get(rule_id)
        if spec is None:
            raise ConfigError(f"unknown rule {key!r}", where)
        params[rule_id] = _rule_params(spec, value, f"{where}.{rule_id}")
    return _Layer(enabled, disabled, MappingProxyType(params))


def resolve_config(document: Optional[Mapping[str, Any]] = None) -> ResolvedConfig:
    """Validate a configuration document and resolve the global rule selection."""
    if document is None:
        document = {}
    if isinstance(document, ResolvedConfig):
        return document
    if not isinstance(document, Mapping):
        raise ConfigError(f"configuration must be a mapping, got {type(document).__name__}")
    unknown = [k for k in document if k not in _TOP_LEVEL_KEYS]
    if unknown:
        raise ConfigError(f"unknown top-level key(s): {', '.join(map(str, unknown))}")

    glob = _layer(document.get("global"), "global")
    if glob.enabled is None:
        selected = frozenset(rid for rid, spec in REGISTRY.items() if spec.default_enabled)
    else:
        selected = glob.enabled
    global_enabled = selected - glob.disabled

    raw_sheets = document.get("sheets") or {}
    if not isinstance(raw_sheets, Mapping):
        raise ConfigError(f"section must be a mapping, got {type(raw_sheets).__name__}", "sheets")
    sheets: Dict[str, _Layer] = {}
    for name, raw in raw_sheets.items():
        key = str(name).lower()
        if key in sheets:
            raise ConfigError(f"sheet {name!r} is configured twice", "sheets")
        sheets[key] = _layer(raw, f"sheets.{name}")

    resolved = ResolvedConfig(
        global_enabled=global_enabled,
        global_params=glob.params,
        sheets=MappingProxyType(sheets),
    )
    logger.debug(
        "config resolved enabled=%d sheet_overrides=%d", len(global_enabled), len(sheets)
    )
    return resolved


def load_config(path: Optional[str] = None) -> ResolvedConfig:
    """Read a YAML configuration document (default: the bundled rules.yaml) and resolve it."""
    if path is None:
        path = str(DEFAULT_CONFIG_PATH)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            document = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"cannot read configuration file: {e}", path) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}", path) from e
    return resolve_config(document or {})

