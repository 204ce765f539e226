# src/hubflow/engine/compiler.py
"""PipelineCompiler: turns a PipelineDefinition into an ExecutionPlan.

Compilation is pure. It collects every finding instead of stopping at the
first one, so validate() can report all problems of a definition at once:

Errors (block compilation):
    DUPLICATE_KEY, DANGLING_EDGE, CYCLE, UNKNOWN_ADAPTER,
    ADAPTER_TYPE_MISMATCH, INVALID_EXPRESSION, config schema violations
Warnings (errors under ValidationLevel.STRICT where noted):
    UNKNOWN_BRANCH (strict: error), MISSING_BRANCH, UNREACHABLE,
    INEFFECTIVE_RETRY
Strict-only errors:
    INVALID_ROOT_COUNT, INVALID_ROOT_TYPE, NO_LOAD_REACHABLE
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog
from pydantic import BaseModel, ValidationError

from hubflow.contracts.adapter import AdapterDefinition
from hubflow.contracts.definition import PipelineDefinition, PipelineStepDefinition, RouteConfig, ThroughputConfig
from hubflow.contracts.enums import StepType, ValidationLevel
from hubflow.contracts.errors import CompileError, IssueCode, ValidationIssue
from hubflow.contracts.results import ValidationReport
from hubflow.core.dag import EdgeInfo, GraphValidationError, StepGraph, suggest_similar
from hubflow.engine.expression_parser import ExpressionParser, check_expression, parse_expression
from hubflow.plugins.config_schema import build_config
from hubflow.plugins.manager import AdapterRegistry

slog = structlog.get_logger(__name__)

_ROOT_TYPES = frozenset({StepType.EXTRACT, StepType.TRIGGER})


@dataclass(frozen=True, slots=True)
class CompiledEdge:
    edge_id: str
    from_key: str
    to_key: str
    branch: str | None = None
    condition: ExpressionParser | None = None


@dataclass(frozen=True)
class CompiledStep:
    """A step with everything resolved that execution needs."""

    definition: PipelineStepDefinition
    adapter: AdapterDefinition | None
    config: BaseModel | None
    throughput: ThroughputConfig | None
    condition: ExpressionParser | None
    incoming: tuple[CompiledEdge, ...] = ()
    outgoing: tuple[CompiledEdge, ...] = ()
    route: RouteConfig | None = None

    @property
    def key(self) -> str:
        return self.definition.key

    @property
    def type(self) -> StepType:
        return self.definition.type

    @property
    def is_root(self) -> bool:
        return not self.incoming


@dataclass(frozen=True)
class ExecutionPlan:
    """Stages of step keys plus the compiled steps.

    Steps sharing a stage have no path between them and may run in
    parallel; every step's predecessors sit in earlier stages.
    """

    definition: PipelineDefinition
    stages: tuple[tuple[str, ...], ...]
    steps: Mapping[str, CompiledStep]
    warnings: tuple[ValidationIssue, ...] = field(default=())

    def step(self, key: str) -> CompiledStep:
        return self.steps[key]

    @property
    def step_keys(self) -> list[str]:
        return [key for stage in self.stages for key in stage]

    def roots(self) -> list[str]:
        return [key for key in self.step_keys if self.steps[key].is_root]

    def subplan(self, from_key: str) -> ExecutionPlan:
        """The plan restricted to ``from_key`` and everything downstream of it.

        ``from_key`` becomes a root: its incoming edges are removed.

        Raises:
            KeyError: If the step is not in the plan
        """
        if from_key not in self.steps:
            raise KeyError(f"Step not found: {from_key}")
        keep = {from_key}
        frontier = [from_key]
        while frontier:
            current = frontier.pop()
            for edge in self.steps[current].outgoing:
                if edge.to_key not in keep:
                    keep.add(edge.to_key)
                    frontier.append(edge.to_key)

        steps: dict[str, CompiledStep] = {}
        for key in keep:
            step = self.steps[key]
            incoming = () if key == from_key else tuple(e for e in step.incoming if e.from_key in keep)
            steps[key] = CompiledStep(
                definition=step.definition,
                adapter=step.adapter,
                config=step.config,
                throughput=step.throughput,
                condition=step.condition,
                incoming=incoming,
                outgoing=step.outgoing,
                route=step.route,
            )
        stages = tuple(s for s in (tuple(k for k in stage if k in keep) for stage in self.stages) if s)
        return ExecutionPlan(definition=self.definition, stages=stages, steps=MappingProxyType(steps), warnings=self.warnings)


class PipelineCompiler:
    """Validates definitions and builds execution plans.

    Example:
        compiler = PipelineCompiler(registry)
        report = compiler.validate(definition, ValidationLevel.STRICT)
        plan = compiler.compile(definition)
    """

    def __init__(self, registry: AdapterRegistry) -> None:
        self._registry = registry

    def validate(self, definition: PipelineDefinition, level: ValidationLevel = ValidationLevel.WARN) -> ValidationReport:
        """Report every issue in the definition without executing anything."""
        issues, warnings, _ = self._analyze(definition, level)
        return ValidationReport(is_valid=not issues, issues=issues, warnings=warnings)

    def compile(self, definition: PipelineDefinition, level: ValidationLevel = ValidationLevel.WARN) -> ExecutionPlan:
        """Compile a definition.

        Raises:
            CompileError: With every blocking issue found
        """
        issues, warnings, plan = self._analyze(definition, level)
        if issues or plan is None:
            raise CompileError(issues)
        for warning in warnings:
            slog.warning("pipeline_compile_warning", code=warning.code.value, step_key=warning.step_key, message=warning.message)
        return plan

    # === Analysis ===

    def _analyze(
        self, definition: PipelineDefinition, level: ValidationLevel
    ) -> tuple[list[ValidationIssue], list[ValidationIssue], ExecutionPlan | None]:
        issues: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        graph = StepGraph()
        nodes: dict[str, PipelineStepDefinition] = {}
        for node in definition.nodes:
            if node.key in nodes:
                issues.append(ValidationIssue(IssueCode.DUPLICATE_KEY, f"Duplicate step key '{node.key}'", step_key=node.key))
                continue
            nodes[node.key] = node
            graph.add_step(node.key, node.type, order=node.order)

        edges: list[EdgeInfo] = []
        for edge in definition.all_edges():
            try:
                edges.append(graph.add_edge(edge.from_, edge.to, branch=edge.branch, condition=edge.condition, edge_id=edge.id))
            except GraphValidationError as e:
                hints = [h for key in e.node_ids for h in suggest_similar(key, list(nodes))]
                suffix = f" (did you mean: {', '.join(hints)}?)" if hints else ""
                issues.append(ValidationIssue(IssueCode.DANGLING_EDGE, f"{e}{suffix}", step_key=edge.from_))
                continue
            if edge.condition is not None and (problem := check_expression(edge.condition)) is not None:
                issues.append(
                    ValidationIssue(IssueCode.INVALID_EXPRESSION, f"Edge {edge.from_} -> {edge.to}: {problem}", step_key=edge.from_, field="condition")
                )

        cyclic = graph.cycle_nodes()
        if cyclic:
            try:
                graph.validate()
            except GraphValidationError as e:
                issues.append(ValidationIssue(IssueCode.CYCLE, f"{e} (steps: {', '.join(cyclic)})"))

        resolved: dict[str, tuple[AdapterDefinition | None, BaseModel | None, RouteConfig | None]] = {}
        for key, node in nodes.items():
            resolved[key] = self._check_step(node, graph, issues, warnings, level)
        if level == ValidationLevel.STRICT and nodes and not cyclic:
            issues.extend(self._check_topology(graph, nodes))

        if issues:
            return issues, warnings, None

        stages = tuple(graph.stages())
        steps: dict[str, CompiledStep] = {}
        fallback_throughput = definition.context.throughput
        for key, node in nodes.items():
            adapter, config, route = resolved[key]
            steps[key] = CompiledStep(
                definition=node,
                adapter=adapter,
                config=config,
                throughput=node.throughput or fallback_throughput,
                condition=parse_expression(node.condition) if node.condition else None,
                incoming=tuple(self._compiled_edge(e) for e in graph.in_edges(key)),
                outgoing=tuple(self._compiled_edge(e) for e in graph.out_edges(key)),
                route=route,
            )
        plan = ExecutionPlan(definition=definition, stages=stages, steps=MappingProxyType(steps), warnings=tuple(warnings))
        return issues, warnings, plan

    @staticmethod
    def _check_topology(graph: StepGraph, nodes: Mapping[str, PipelineStepDefinition]) -> list[ValidationIssue]:
        """Strict entry-point and destination rules.

        Any number of TRIGGER roots, at most one other root which must be an
        EXTRACT, and at least one destination step reachable from the roots
        when the pipeline declares any.
        """
        found: list[ValidationIssue] = []
        roots = graph.roots()
        execution_roots = [key for key in roots if nodes[key].type != StepType.TRIGGER]
        if len(execution_roots) > 1:
            found.append(
                ValidationIssue(
                    IssueCode.INVALID_ROOT_COUNT,
                    f"Graph has {len(execution_roots)} disconnected entry points ({', '.join(execution_roots)}); expected one EXTRACT",
                )
            )
        for key in execution_roots:
            if nodes[key].type not in _ROOT_TYPES:
                found.append(
                    ValidationIssue(
                        IssueCode.INVALID_ROOT_TYPE,
                        f"Root step '{key}' is {nodes[key].type.value}; entry points must be TRIGGER or EXTRACT",
                        step_key=key,
                    )
                )
        destinations = [key for key, node in nodes.items() if node.type.has_side_effects]
        reachable = graph.reachable_from(roots)
        if destinations and not any(key in reachable for key in destinations):
            found.append(ValidationIssue(IssueCode.NO_LOAD_REACHABLE, "No LOAD or SINK step is reachable from an entry point"))
        return found

    @staticmethod
    def _compiled_edge(edge: EdgeInfo) -> CompiledEdge:
        return CompiledEdge(
            edge_id=edge.edge_id,
            from_key=edge.from_key,
            to_key=edge.to_key,
            branch=edge.branch,
            condition=parse_expression(edge.condition) if edge.condition else None,
        )

    def _check_step(
        self,
        node: PipelineStepDefinition,
        graph: StepGraph,
        issues: list[ValidationIssue],
        warnings: list[ValidationIssue],
        level: ValidationLevel,
    ) -> tuple[AdapterDefinition | None, BaseModel | None, RouteConfig | None]:
        key = node.key

        if node.condition is not None and (problem := check_expression(node.condition)) is not None:
            issues.append(ValidationIssue(IssueCode.INVALID_EXPRESSION, f"Step condition: {problem}", step_key=key, field="condition"))

        if not graph.predecessors(key) and node.type not in _ROOT_TYPES:
            warnings.append(
                ValidationIssue(IssueCode.UNREACHABLE, f"{node.type.value} step '{key}' has no inputs and will receive no records", step_key=key)
            )

        adapter: AdapterDefinition | None = None
        config: BaseModel | None = None
        if node.adapter_code is None:
            if node.type != StepType.TRIGGER:
                issues.append(ValidationIssue(IssueCode.REQUIRED, f"Step '{key}' requires an adapterCode", step_key=key, field="adapterCode"))
        else:
            adapter = self._registry.get(node.adapter_code)
            if adapter is None:
                hints = suggest_similar(node.adapter_code, self._registry.codes())
                suffix = f" (did you mean: {', '.join(hints)}?)" if hints else ""
                issues.append(
                    ValidationIssue(IssueCode.UNKNOWN_ADAPTER, f"Unknown adapter '{node.adapter_code}'{suffix}", step_key=key, field="adapterCode")
                )
            elif adapter.type != node.type:
                issues.append(
                    ValidationIssue(
                        IssueCode.ADAPTER_TYPE_MISMATCH,
                        f"Adapter '{adapter.code}' serves {adapter.type.value} steps, not {node.type.value}",
                        step_key=key,
                        field="adapterCode",
                    )
                )
            else:
                config, config_issues = build_config(adapter, node.config, step_key=key)
                issues.extend(config_issues)
                if not adapter.retryable and (node.retries or node.timeout_ms):
                    warnings.append(
                        ValidationIssue(
                            IssueCode.INEFFECTIVE_RETRY,
                            f"Adapter '{adapter.code}' is not retryable; retries/timeoutMs on '{key}' have no retry effect",
                            step_key=key,
                        )
                    )

        route: RouteConfig | None = None
        if node.type == StepType.ROUTE:
            route = config if isinstance(config, RouteConfig) else self._route_config(node)
        self._check_branches(node, route, graph, issues, warnings, level)
        return adapter, config, route

    @staticmethod
    def _route_config(node: PipelineStepDefinition) -> RouteConfig | None:
        try:
            return RouteConfig.model_validate(node.config)
        except ValidationError:
            return None

    @staticmethod
    def _check_branches(
        node: PipelineStepDefinition,
        route: RouteConfig | None,
        graph: StepGraph,
        issues: list[ValidationIssue],
        warnings: list[ValidationIssue],
        level: ValidationLevel,
    ) -> None:
        stray_target = issues if level == ValidationLevel.STRICT else warnings
        for edge in graph.out_edges(node.key):
            if node.type != StepType.ROUTE:
                if edge.branch is not None:
                    warnings.append(
                        ValidationIssue(
                            IssueCode.UNKNOWN_BRANCH,
                            f"Edge {edge.from_key} -> {edge.to_key} names branch '{edge.branch}' but '{node.key}' is not a ROUTE step",
                            step_key=node.key,
                        )
                    )
                continue
            if edge.branch is None:
                warnings.append(
                    ValidationIssue(
                        IssueCode.MISSING_BRANCH,
                        f"ROUTE edge {edge.from_key} -> {edge.to_key} has no branch; it receives every routed record",
                        step_key=node.key,
                    )
                )
            elif route is not None and edge.branch not in route.branch_names:
                hints = suggest_similar(edge.branch, sorted(route.branch_names))
                suffix = f" (did you mean: {', '.join(hints)}?)" if hints else ""
                stray_target.append(
                    ValidationIssue(
                        IssueCode.UNKNOWN_BRANCH,
                        f"Edge {edge.from_key} -> {edge.to_key} references undeclared branch '{edge.branch}'{suffix}",
                        step_key=node.key,
                        field="branch",
                    )
                )
