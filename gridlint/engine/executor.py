"""
gridlint/engine/executor.py

Runs the enabled rules over one workbook.

  phase 1  per-(sheet, rule) tasks for sheet-scope rules, plus the dependency
           graph build, all on one bounded thread pool
  barrier  wait for the graph
  phase 2  workbook-scope rules; rules that need the graph get the finished,
           read-only graph

A rule that raises is recorded as a RuleExecutionError and the run goes on.
A failed graph build fails only the rules that need the graph. The final
violation list is sorted, so scheduling order never shows in the output.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from gridlint.core.errors import RuleExecutionError
from gridlint.core.graph import DependencyGraph, build_dependency_graph
from gridlint.core.model import Workbook
from gridlint.core.violation import Violation
from gridlint.engine.config import ResolvedConfig, resolve_config
from gridlint.readers import parse
from gridlint.rules.base import SHEET, LinkProbe, RuleContext, RuleSpec
from gridlint.rules.registry import REGISTRY

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
GRAPH_OPTIONS_RULE = "ERR003"

ConfigLike = Union[ResolvedConfig, Mapping[str, Any], None]


@dataclass(frozen=True)
class LintResult:
    """
    violations:   sorted violations
    failed_rules: ids of rules that raised (the run is then partial)
    errors:       one RuleExecutionError per failed (rule, sheet) task
    diagnostics:  unparseable formulas, one dict per cell
    """

    violations: Tuple[Violation, ...] = ()
    failed_rules: Tuple[str, ...] = ()
    errors: Tuple[RuleExecutionError, ...] = ()
    diagnostics: Tuple[Dict[str, Any], ...] = ()
    graph_stats: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @property
    def partial(self) -> bool:
        return bool(self.failed_rules)

    def __iter__(self) -> Iterator[Violation]:
        return iter(self.violations)

    def __len__(self) -> int:
        return len(self.violations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partial": self.partial,
            "violations": [v.to_dict() for v in self.violations],
            "failed_rules": list(self.failed_rules),
            "errors": [e.to_dict() for e in self.errors],
            "diagnostics": list(self.diagnostics),
        }


def _formula_diagnostics(workbook: Workbook) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for sheet in workbook.sheets:
        failed = 0
        for cell in sheet.formula_cells():
            if cell.formula.parsed:
                continue
            failed += 1
            entry = {"scope": "formula", "sheet": sheet.name, "cell": cell.coordinate}
            if cell.formula.error is not None:
                entry.update(cell.formula.error.to_dict())
            else:
                entry["formula"] = cell.formula.raw
            out.append(entry)
        if failed:
            logger.debug("formula diagnostics sheet=%s count=%d", sheet.name, failed)
    return out


def _run_check(ctx: RuleContext) -> List[Violation]:
    return list(ctx.rule.check(ctx))


class _Run:
    def __init__(
        self,
        workbook: Workbook,
        config: ResolvedConfig,
        link_probe: Optional[LinkProbe],
    ) -> None:
        self.workbook = workbook
        self.config = config
        self.link_probe = link_probe
        self.violations: List[Violation] = []
        self.errors: List[RuleExecutionError] = []

    def selected(self) -> List[RuleSpec]:
        return [spec for rid, spec in REGISTRY.items() if self.config.is_enabled_anywhere(rid)]

    def sheet_context(self, spec: RuleSpec, sheet) -> RuleContext:
        return RuleContext(
            workbook=self.workbook,
            rule=spec,
            params=self.config.params(spec.rule_id, sheet.name),
            sheet=sheet,
            link_probe=self.link_probe,
        )

    def workbook_context(self, spec: RuleSpec, graph: Optional[DependencyGraph]) -> RuleContext:
        rid = spec.rule_id
        return RuleContext(
            workbook=self.workbook,
            rule=spec,
            params=self.config.params(rid),
            graph=graph,
            sheet_params=lambda sh: self.config.params(rid, sh.name),
            link_probe=self.link_probe,
        )

    def keep(self, violation: Violation) -> bool:
        sheet = violation.location.sheet
        if sheet is None:
            return violation.rule_id in self.config.global_enabled
        return self.config.is_enabled(violation.rule_id, sheet)

    def collect(self, spec: RuleSpec, sheet: Optional[str], fut: "Future[List[Violation]]") -> None:
        try:
            found = fut.result()
        except Exception as e:
            logger.warning(
                "rule failed rule=%s sheet=%s error=%s: %s", spec.rule_id, sheet, type(e).__name__, e
            )
            self.errors.append(RuleExecutionError(spec.rule_id, e, sheet))
            return
        if spec.scope != SHEET:
            found = [v for v in found if self.keep(v)]
        self.violations.extend(found)

    def graph_options(self) -> Tuple[bool, int]:
        params = self.config.params(GRAPH_OPTIONS_RULE)
        return params["expand_ranges"], params["max_expanded_cells"]


def lint(
    workbook: Workbook,
    config: ConfigLike = None,
    *,
    max_workers: Optional[int] = None,
    link_probe: Optional[LinkProbe] = None,
) -> LintResult:
    """
    Lint a parsed workbook. `config` is a ResolvedConfig or a raw document,
    which is validated first (ConfigError before any rule runs).
    """
    resolved = resolve_config(config)
    run = _Run(workbook, resolved, link_probe)
    selected = run.selected()
    sheet_rules = [s for s in selected if s.scope == SHEET]
    workbook_rules = [s for s in selected if s.scope != SHEET]
    needs_graph = any(s.needs_graph for s in workbook_rules)
    workers = max_workers or min(DEFAULT_MAX_WORKERS, os.cpu_count() or 1)

    t0 = time.perf_counter()
    diagnostics = _formula_diagnostics(workbook)
    graph: Optional[DependencyGraph] = None
    graph_error: Optional[BaseException] = None

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gridlint") as pool:
        pending: List[Tuple[RuleSpec, Optional[str], Future]] = []
        for spec in sheet_rules:
            for sheet in workbook.sheets:
                if not resolved.is_enabled(spec.rule_id, sheet.name):
                    continue
                fut = pool.submit(_run_check, run.sheet_context(spec, sheet))
                pending.append((spec, sheet.name, fut))

        graph_future = None
        if needs_graph:
            expand, max_cells = run.graph_options()
            graph_future = pool.submit(build_dependency_graph, workbook, expand, max_cells)

        # barrier: whole-workbook rules start once the graph is complete
        if graph_future is not None:
            try:
                graph = graph_future.result()
            except Exception as e:
                graph_error = e
                logger.warning("dependency graph build failed error=%s: %s", type(e).__name__, e)

        for spec in workbook_rules:
            if spec.needs_graph and graph is None:
                run.errors.append(RuleExecutionError(spec.rule_id, graph_error))
                continue
            fut = pool.submit(_run_check, run.workbook_context(spec, graph if spec.needs_graph else None))
            pending.append((spec, None, fut))

        for spec, sheet_name, fut in pending:
            run.collect(spec, sheet_name, fut)

    violations = sorted(run.violations, key=lambda v: v.sort_key())
    errors = sorted(run.errors, key=lambda e: (e.rule_id, e.sheet or ""))
    failed = tuple(sorted({e.rule_id for e in errors}))
    logger.debug(
        "lint finished rules=%d violations=%d failed=%d elapsed=%.3fs",
        len(selected),
        len(violations),
        len(failed),
        time.perf_counter() - t0,
    )
    return LintResult(
        violations=tuple(violations),
        failed_rules=failed,
        errors=tuple(errors),
        diagnostics=tuple(diagnostics),
        graph_stats=graph.stats() if graph is not None else None,
    )


def run(
    file_bytes: bytes,
    config: ConfigLike = None,
    format_hint: Optional[str] = None,
    *,
    max_workers: Optional[int] = None,
    link_probe: Optional[LinkProbe] = None,
) -> LintResult:
    """Validate the configuration, then parse and lint. Config errors win over parse errors."""
    resolved = resolve_config(config)
    workbook = parse(file_bytes, format_hint)
    return lint(workbook, resolved, max_workers=max_workers, link_probe=link_probe)
