"""
gridlint/rules/registry.py

The rule registry: rule id -> RuleSpec, built once at import and read-only
afterwards.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, List, Optional

from gridlint.core.violation import Category
from gridlint.rules import errors, formulas, performance, security, structure, usability
from gridlint.rules.base import RuleSpec


def _build() -> "MappingProxyType[str, RuleSpec]":
    table: Dict[str, RuleSpec] = {}
    for module in (errors, security, performance, usability, structure, formulas):
        for spec in module.RULES:
            if spec.rule_id in table:
                raise ValueError(f"duplicate rule id {spec.rule_id}")
            if not spec.rule_id.startswith(spec.category.value):
                raise ValueError(f"rule id {spec.rule_id} does not match its category {spec.category.value}")
            table[spec.rule_id] = spec
    return MappingProxyType(dict(sorted(table.items())))


REGISTRY = _build()

CATEGORY_PREFIXES = tuple(c.value for c in Category)


def get_rule(rule_id: str) -> Optional[RuleSpec]:
    return REGISTRY.get(rule_id.strip().upper())


def category_for(token: str) -> Optional[Category]:
    """Category named by a bare prefix such as "SEC" or "form"."""
    key = token.strip().upper()
    for category in Category:
        if category.value == key:
            return category
    return None


def rules_in_category(category: Category) -> List[RuleSpec]:
    return [spec for spec in REGISTRY.values() if spec.category is category]
