"""
DAG Validator - static checks on a pipeline definition before execution.

Every check yields its own ValidationCode and the validator collects all
of them in a single pass, so a caller can surface every problem at once.
The definition is never mutated.

Graph checks:
- exactly one root (a TRIGGER step without incoming edges)
- no cycles: depth-first search with white/gray/black colouring; an edge
  into a gray node closes a cycle
- every LOAD/EXPORT/FEED/SINK step reachable from the root

Edge checks: known endpoints, no self loops, no duplicates, and branch
labels on exactly the edges that leave a ROUTE step.
"""

import heapq
import logging
from collections import deque
from typing import Dict, List, Optional, Sequence, Set, Tuple

from core.exceptions import ConfigValidationError, CycleDetectedError, PipelineValidationError, UnreachableStepError
from engine.adapters import STEP_ROLES
from engine.registry import AdapterRegistry
from schemas.pipeline import (
    ADAPTER_STEP_TYPES,
    TERMINAL_STEP_TYPES,
    Edge,
    PipelineDefinition,
    Step,
    StepType,
)
from schemas.validation import TopologyInfo, ValidationCode, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


def topological_order(steps: Sequence[Step], edges: Sequence[Edge]) -> List[str]:
    """
    Step keys in dependency order (Kahn's algorithm).

    Among steps that are ready at the same time, the one declared first
    comes first. Edges with unknown endpoints are ignored.

    Raises:
        CycleDetectedError: If the edges contain a cycle
    """
    index: Dict[str, int] = {}
    for position, step in enumerate(steps):
        index.setdefault(step.key, position)

    incoming: Dict[str, int] = {key: 0 for key in index}
    outgoing: Dict[str, List[str]] = {key: [] for key in index}
    for edge in edges:
        if edge.source in index and edge.target in index:
            outgoing[edge.source].append(edge.target)
            incoming[edge.target] += 1

    ready = [(index[key], key) for key, count in incoming.items() if count == 0]
    heapq.heapify(ready)
    order: List[str] = []

    while ready:
        _, key = heapq.heappop(ready)
        order.append(key)
        for target in outgoing[key]:
            incoming[target] -= 1
            if incoming[target] == 0:
                heapq.heappush(ready, (index[target], target))

    if len(order) != len(index):
        placed = set(order)
        remaining = sorted((k for k in index if k not in placed), key=index.get)
        raise CycleDetectedError(
            "Cycle detected in step graph",
            context={"steps": remaining}
        )
    return order


class DagValidator:
    """
    Structural validator for pipeline definitions.

    With a registry, adapter codes are resolved and each adapter step's
    config is checked against the adapter's config model.
    """

    def __init__(self, registry: Optional[AdapterRegistry] = None):
        self.registry = registry

    def validate(self, definition: PipelineDefinition) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if not definition.steps:
            errors.append(ValidationIssue(code=ValidationCode.EMPTY_PIPELINE, message="Pipeline has no steps"))
            return ValidationResult(valid=False, errors=errors)

        self._check_version(definition, errors)
        steps = self._check_steps(definition, errors)
        self._check_context(definition, errors)
        edges = self._check_edges(definition, steps, errors)

        roots = self._check_roots(definition, steps, edges, errors)
        has_cycle = self._check_cycles(definition, edges, errors)
        if len(roots) == 1:
            self._check_reachability(definition, roots[0], edges, errors, warnings)

        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
        if result.valid and not has_cycle:
            result.topology = self._topology(definition, roots[0], edges)

        if errors:
            logger.info(
                f"Pipeline {definition.code} failed validation with {len(errors)} error(s): "
                f"{', '.join(sorted({e.code.value for e in errors}))}"
            )
        return result

    def ensure_valid(self, definition: PipelineDefinition) -> ValidationResult:
        """
        Validate and raise when invalid.

        Raises:
            CycleDetectedError: The graph has a cycle
            UnreachableStepError: A terminal step cannot be reached
            PipelineValidationError: Any other defect
        """
        result = self.validate(definition)
        if result.valid:
            return result

        context = {"pipeline_code": definition.code}
        if result.has_error(ValidationCode.CYCLE_DETECTED):
            raise CycleDetectedError("Pipeline graph contains a cycle", issues=result.errors, context=context)
        if result.has_error(ValidationCode.UNREACHABLE_STEP):
            raise UnreachableStepError("Pipeline has unreachable terminal steps", issues=result.errors, context=context)
        raise PipelineValidationError(
            f"Pipeline is invalid ({len(result.errors)} error(s))",
            issues=result.errors,
            context=context
        )

    # ------------------------------------------------------------------
    # Definition-level checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_version(definition: PipelineDefinition, errors: List[ValidationIssue]) -> None:
        version = definition.version
        if isinstance(version, int):
            ok = version >= 1
        else:
            ok = bool(str(version).strip())
        if not ok:
            errors.append(ValidationIssue(
                code=ValidationCode.INVALID_VERSION,
                message=f"Invalid pipeline version {version!r}"
            ))

    @staticmethod
    def _check_context(definition: PipelineDefinition, errors: List[ValidationIssue]) -> None:
        parallel = definition.context.parallel_execution
        if parallel.max_concurrent_steps is not None and parallel.max_concurrent_steps < 1:
            errors.append(ValidationIssue(
                code=ValidationCode.INVALID_CONCURRENCY,
                message=f"maxConcurrentSteps must be at least 1, got {parallel.max_concurrent_steps}"
            ))

        threshold = definition.context.error_handling.error_threshold_percent
        if threshold is not None and not 0 <= threshold <= 100:
            errors.append(ValidationIssue(
                code=ValidationCode.INVALID_STEP_OPTION,
                message=f"errorThresholdPercent must be between 0 and 100, got {threshold}"
            ))

    # ------------------------------------------------------------------
    # Step checks
    # ------------------------------------------------------------------

    def _check_steps(self, definition: PipelineDefinition, errors: List[ValidationIssue]) -> Dict[str, Step]:
        """Per-step checks; returns the first step declared under each key"""
        steps: Dict[str, Step] = {}

        for step in definition.steps:
            if not step.key or not step.key.strip():
                errors.append(ValidationIssue(
                    code=ValidationCode.INVALID_STEP_OPTION,
                    message="Step key must not be empty",
                    step_key=step.key
                ))
            if step.key in steps:
                errors.append(ValidationIssue(
                    code=ValidationCode.DUPLICATE_STEP_KEY,
                    message=f"Duplicate step key '{step.key}'",
                    step_key=step.key
                ))
            else:
                steps[step.key] = step

            step_type = step.step_type
            if step_type is None:
                errors.append(ValidationIssue(
                    code=ValidationCode.UNKNOWN_STEP_TYPE,
                    message=f"Step '{step.key}' has unknown type '{step.type}'",
                    step_key=step.key
                ))
            elif step_type in ADAPTER_STEP_TYPES:
                self._check_adapter(step, step_type, errors)
            elif step_type == StepType.ROUTE:
                self._check_route(step, errors)

            if step.concurrency is not None and step.concurrency < 1:
                errors.append(ValidationIssue(
                    code=ValidationCode.INVALID_CONCURRENCY,
                    message=f"Step '{step.key}' concurrency must be a positive integer",
                    step_key=step.key
                ))

            for problem in self._option_problems(step):
                errors.append(ValidationIssue(
                    code=ValidationCode.INVALID_STEP_OPTION,
                    message=f"Step '{step.key}': {problem}",
                    step_key=step.key
                ))

        return steps

    @staticmethod
    def _option_problems(step: Step) -> List[str]:
        problems = []
        if step.retries is not None and step.retries < 0:
            problems.append("retries must not be negative")
        if step.retry_delay_ms is not None and step.retry_delay_ms < 0:
            problems.append("retryDelayMs must not be negative")
        if step.timeout_ms is not None and step.timeout_ms <= 0:
            problems.append("timeoutMs must be positive")
        if step.throughput is not None:
            if step.throughput.batch_size is not None and step.throughput.batch_size <= 0:
                problems.append("throughput.batchSize must be positive")
            if step.throughput.rate_limit_rps is not None and step.throughput.rate_limit_rps <= 0:
                problems.append("throughput.rateLimitRps must be positive")
        return problems

    def _check_adapter(self, step: Step, step_type: StepType, errors: List[ValidationIssue]) -> None:
        if not step.adapter_code:
            errors.append(ValidationIssue(
                code=ValidationCode.MISSING_CONFIG,
                message=f"Step '{step.key}' requires config.adapterCode",
                step_key=step.key
            ))
            return

        if self.registry is None:
            return

        adapter = self.registry.find(STEP_ROLES[step_type], step.adapter_code)
        if adapter is None:
            errors.append(ValidationIssue(
                code=ValidationCode.UNKNOWN_ADAPTER,
                message=f"Step '{step.key}' references unknown {STEP_ROLES[step_type].value} adapter '{step.adapter_code}'",
                step_key=step.key
            ))
            return

        try:
            adapter.parse_config(step.config.as_adapter_input(), step_key=step.key)
        except ConfigValidationError as e:
            fields = ", ".join(err["field"] for err in e.context.get("field_errors", []))
            errors.append(ValidationIssue(
                code=ValidationCode(e.code),
                message=f"Step '{step.key}' config rejected by adapter '{step.adapter_code}': {fields}",
                step_key=step.key
            ))

    @staticmethod
    def _check_route(step: Step, errors: List[ValidationIssue]) -> None:
        branches = step.config.branches or []
        if not branches:
            errors.append(ValidationIssue(
                code=ValidationCode.ROUTE_WITHOUT_BRANCHES,
                message=f"ROUTE step '{step.key}' declares no branches",
                step_key=step.key
            ))

        names: Set[str] = set()
        for branch in branches:
            name = branch.name.strip()
            if not name:
                errors.append(ValidationIssue(
                    code=ValidationCode.EMPTY_BRANCH_NAME,
                    message=f"ROUTE step '{step.key}' has a branch without a name",
                    step_key=step.key
                ))
            elif name in names:
                errors.append(ValidationIssue(
                    code=ValidationCode.DUPLICATE_BRANCH_NAME,
                    message=f"ROUTE step '{step.key}' declares branch '{name}' twice",
                    step_key=step.key
                ))
            names.add(name)

        default = step.config.default_branch
        if default is not None and default not in names:
            errors.append(ValidationIssue(
                code=ValidationCode.INVALID_DEFAULT_BRANCH,
                message=f"ROUTE step '{step.key}' default branch '{default}' is not declared",
                step_key=step.key
            ))

    # ------------------------------------------------------------------
    # Edge and graph checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_edges(
        definition: PipelineDefinition,
        steps: Dict[str, Step],
        errors: List[ValidationIssue],
    ) -> List[Edge]:
        """Report bad edges; returns the edges usable for graph checks"""
        usable: List[Edge] = []
        seen: Set[Tuple[str, str, Optional[str]]] = set()

        for edge in definition.resolved_edges():
            identity = (edge.source, edge.target, edge.branch)
            if identity in seen:
                errors.append(ValidationIssue(
                    code=ValidationCode.DUPLICATE_EDGE,
                    message=f"Edge {edge.describe()} is declared more than once",
                    step_key=edge.source,
                    edge=edge
                ))
                continue
            seen.add(identity)

            ok = True
            if edge.source not in steps:
                ok = False
                errors.append(ValidationIssue(
                    code=ValidationCode.UNKNOWN_EDGE_SOURCE,
                    message=f"Edge {edge.describe()} references unknown source '{edge.source}'",
                    edge=edge
                ))
            if edge.target not in steps:
                ok = False
                errors.append(ValidationIssue(
                    code=ValidationCode.UNKNOWN_EDGE_TARGET,
                    message=f"Edge {edge.describe()} references unknown target '{edge.target}'",
                    edge=edge
                ))
            if edge.source == edge.target:
                ok = False
                errors.append(ValidationIssue(
                    code=ValidationCode.SELF_LOOP,
                    message=f"Edge {edge.describe()} connects a step to itself",
                    step_key=edge.source,
                    edge=edge
                ))

            source = steps.get(edge.source)
            if edge.branch is not None and source is not None:
                if source.step_type != StepType.ROUTE:
                    errors.append(ValidationIssue(
                        code=ValidationCode.BRANCH_ON_NON_ROUTE,
                        message=f"Edge {edge.describe()} has a branch label but '{edge.source}' is not a ROUTE step",
                        step_key=edge.source,
                        edge=edge
                    ))
                elif edge.branch not in {b.name for b in source.config.branches or []}:
                    errors.append(ValidationIssue(
                        code=ValidationCode.UNDECLARED_BRANCH,
                        message=f"Edge {edge.describe()} uses branch '{edge.branch}' not declared by '{edge.source}'",
                        step_key=edge.source,
                        edge=edge
                    ))
            elif source is not None and source.step_type == StepType.ROUTE:
                # ROUTE output only travels along labelled edges
                errors.append(ValidationIssue(
                    code=ValidationCode.UNLABELED_ROUTE_EDGE,
                    message=f"Edge {edge.describe()} leaves ROUTE step '{edge.source}' without a branch label",
                    step_key=edge.source,
                    edge=edge
                ))

            if ok:
                usable.append(edge)

        return usable

    @staticmethod
    def _adjacency(definition: PipelineDefinition, edges: List[Edge]) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {key: [] for key in definition.step_map()}
        for edge in edges:
            if edge.target not in adjacency[edge.source]:
                adjacency[edge.source].append(edge.target)
        return adjacency

    @staticmethod
    def _check_roots(
        definition: PipelineDefinition,
        steps: Dict[str, Step],
        edges: List[Edge],
        errors: List[ValidationIssue],
    ) -> List[str]:
        targets = {edge.target for edge in edges}
        roots = [
            key for key, step in steps.items()
            if step.step_type == StepType.TRIGGER and key not in targets
        ]
        if not roots:
            errors.append(ValidationIssue(
                code=ValidationCode.NO_ROOT,
                message="Pipeline has no root: a TRIGGER step without incoming edges is required"
            ))
        elif len(roots) > 1:
            errors.append(ValidationIssue(
                code=ValidationCode.MULTIPLE_ROOTS,
                message=f"Pipeline has {len(roots)} roots ({', '.join(roots)}); exactly one is allowed"
            ))
        return roots

    def _check_cycles(self, definition: PipelineDefinition, edges: List[Edge], errors: List[ValidationIssue]) -> bool:
        """Three-colour DFS; one CYCLE_DETECTED per back edge"""
        adjacency = self._adjacency(definition, edges)
        color: Dict[str, int] = {key: WHITE for key in adjacency}
        found = False

        for start in adjacency:
            if color[start] != WHITE:
                continue
            color[start] = GRAY
            path: List[str] = [start]
            stack: List[Tuple[str, int]] = [(start, 0)]

            while stack:
                node, position = stack[-1]
                children = adjacency[node]
                if position >= len(children):
                    stack.pop()
                    path.pop()
                    color[node] = BLACK
                    continue

                stack[-1] = (node, position + 1)
                child = children[position]
                if color[child] == GRAY:
                    found = True
                    cycle = path[path.index(child):] + [child]
                    errors.append(ValidationIssue(
                        code=ValidationCode.CYCLE_DETECTED,
                        message=f"Cycle detected: {' -> '.join(cycle)}",
                        step_key=child,
                        edge=Edge(source=node, target=child)
                    ))
                elif color[child] == WHITE:
                    color[child] = GRAY
                    path.append(child)
                    stack.append((child, 0))

        return found

    def _check_reachability(
        self,
        definition: PipelineDefinition,
        root: str,
        edges: List[Edge],
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ) -> None:
        adjacency = self._adjacency(definition, edges)
        reached = self._reachable(adjacency, root)

        terminal_reached = False
        for key, step in definition.step_map().items():
            is_terminal = step.step_type in TERMINAL_STEP_TYPES
            if key in reached:
                terminal_reached = terminal_reached or is_terminal
                continue
            if is_terminal:
                errors.append(ValidationIssue(
                    code=ValidationCode.UNREACHABLE_STEP,
                    message=f"{step.type} step '{key}' is not reachable from root '{root}' and can never run",
                    step_key=key
                ))
            else:
                warnings.append(ValidationIssue(
                    code=ValidationCode.ORPHAN_STEP,
                    message=f"Step '{key}' is not reachable from root '{root}'",
                    step_key=key
                ))

        if not terminal_reached:
            warnings.append(ValidationIssue(
                code=ValidationCode.NO_TERMINAL_STEP,
                message="No LOAD, EXPORT, FEED or SINK step is reachable; the pipeline produces no output"
            ))

    @staticmethod
    def _reachable(adjacency: Dict[str, List[str]], root: str) -> Set[str]:
        reached = {root}
        queue = deque([root])
        while queue:
            node = queue.popleft()
            for child in adjacency.get(node, []):
                if child not in reached:
                    reached.add(child)
                    queue.append(child)
        return reached

    def _topology(self, definition: PipelineDefinition, root: str, edges: List[Edge]) -> TopologyInfo:
        adjacency = self._adjacency(definition, edges)
        order = topological_order(definition.steps, edges)

        depth: Dict[str, int] = {root: 0}
        for key in order:
            if key not in depth:
                continue
            for child in adjacency[key]:
                depth[child] = max(depth.get(child, 0), depth[key] + 1)

        return TopologyInfo(
            root=root,
            leaves=[key for key in order if not adjacency[key]],
            execution_order=order,
            max_depth=max(depth.values()) if depth else 0,
            has_parallel_paths=any(len(children) > 1 for children in adjacency.values()),
        )
