"""
Graph Builder

Architectural Intent:
- Turns declarations into a ResourceGraph (or PipelineGraph) ready for
  scheduling; the only writer of node dependencies
- Every reference found in an attribute template becomes an edge from the
  referencing node to the referenced one, merged with explicit depends_on
- All structural checks run before anything touches the control plane

Failure Order:
1. ValidationError listing every declaration/variable problem at once
2. UnknownReferenceError for the first reference to a missing node/field
3. CyclicDependencyError with the offending path
4. Conditional resolution (UnsatisfiedDependencyError), then a second cycle
   check over the rewritten live edges
"""

from __future__ import annotations
import logging
from typing import Any, Mapping, Optional

from converge.domain.entities.build_step import BuildStepNode
from converge.domain.entities.resource_graph import PipelineGraph, ResourceGraph
from converge.domain.entities.resource_node import ResourceNode
from converge.domain.errors import (
    CyclicDependencyError,
    UnknownReferenceError,
    ValidationError,
)
from converge.domain.services.conditional_resolver import ConditionalResolver
from converge.domain.services.expressions import (
    RESERVED_ROOTS,
    STEP_ROOT,
    TRIGGER_ROOT,
    VAR_ROOT,
    Ref,
    evaluate,
    iter_refs,
    parse_condition,
    references,
    scoped_resolver,
)
from converge.domain.services.scheduler import find_cycle
from converge.domain.value_objects.declarations import Declarations
from converge.domain.value_objects.trigger_event import TRIGGER_FIELDS

logger = logging.getLogger(__name__)

STEP_FIELDS = ("stdout", "digest", "exit_code")
NO_WAIT = "-"


class GraphBuilder:
    def __init__(
        self,
        declarations: Declarations,
        resolver: Optional[ConditionalResolver] = None,
    ) -> None:
        self.declarations = declarations
        self.resolver = resolver or ConditionalResolver()

    # -- Variables -----------------------------------------------------------

    def bind_variables(
        self, values: Mapping[str, Any], problems: list[str]
    ) -> dict[str, Any]:
        declared = {v.name: v for v in self.declarations.variables}
        for name in sorted(values):
            if name not in declared:
                problems.append(f"value given for undeclared variable '{name}'")

        bound: dict[str, Any] = {}
        for variable in self.declarations.variables:
            if variable.name in values:
                raw = values[variable.name]
            elif not variable.required:
                raw = variable.default
            else:
                problems.append(
                    f"variable '{variable.name}' has no value and no default"
                )
                continue
            try:
                value = variable.coerce(raw)
            except ValueError as e:
                problems.append(f"variable '{variable.name}': {e}")
                continue
            problems.extend(variable.check(value))
            bound[variable.name] = value

        resolve = scoped_resolver({VAR_ROOT: bound})
        for variable in self.declarations.variables:
            if variable.name not in bound:
                continue
            for rule in variable.validations:
                try:
                    result = evaluate(parse_condition(rule.condition), resolve)
                except (ValidationError, UnknownReferenceError) as e:
                    problems.append(
                        f"variable '{variable.name}': invalid validation rule: {e}"
                    )
                    continue
                if result is not True:
                    problems.append(f"variable '{variable.name}': {rule.error_message}")
        return bound

    def _check_refs(
        self,
        owner: str,
        refs: set[Ref],
        problems: list[str],
        allowed_roots: frozenset[str] = frozenset({VAR_ROOT}),
    ) -> None:
        declared = {v.name for v in self.declarations.variables}
        for ref in sorted(refs, key=str):
            if ref.root == VAR_ROOT and ref.field not in declared:
                problems.append(f"{owner}: reference to undeclared variable '{ref}'")
            elif ref.root in RESERVED_ROOTS and ref.root not in allowed_roots:
                problems.append(f"{owner}: '{ref.root}.*' is not available here")
            elif ref.root == TRIGGER_ROOT and ref.field not in TRIGGER_FIELDS:
                problems.append(f"{owner}: unknown trigger field '{ref}'")
            elif ref.root == STEP_ROOT and ref.field not in STEP_FIELDS:
                problems.append(f"{owner}: unknown step field '{ref}'")

    def _parse_refs(self, owner: str, value: Any, problems: list[str]) -> set[Ref]:
        try:
            return references(value)
        except ValidationError as e:
            problems.extend(f"{owner}: {p}" for p in e.problems)
            return set()

    def _check_condition(
        self, owner: str, text: Optional[str], problems: list[str]
    ) -> None:
        if text is None:
            return
        try:
            refs = set(iter_refs(parse_condition(text)))
        except ValidationError as e:
            problems.extend(f"{owner}: {p}" for p in e.problems)
            return
        for ref in refs:
            if ref.root != VAR_ROOT:
                problems.append(
                    f"{owner}: conditions may only read variables, found '{ref}'"
                )
        self._check_refs(owner, refs, problems)

    # -- Resources -----------------------------------------------------------

    def build(self, values: Optional[Mapping[str, Any]] = None) -> ResourceGraph:
        problems: list[str] = []
        variables = self.bind_variables(values or {}, problems)
        nodes, node_refs = self._build_nodes(problems)
        self._validate_branches(nodes, problems)
        output_refs = self._validate_outputs(problems)
        if problems:
            raise ValidationError(problems)

        static_deps = self._link(nodes, node_refs, output_refs)
        cycle = find_cycle(static_deps)
        if cycle:
            raise CyclicDependencyError(cycle)

        resolution = self.resolver.resolve(
            nodes, self.declarations.branches, variables
        )
        for node_id, node in nodes.items():
            node.instance_count = resolution.instance_counts[node_id]
            node.dependencies = set(resolution.dependencies[node_id])
            node.substitutions = dict(resolution.substitutions[node_id])

        cycle = find_cycle({k: n.dependencies for k, n in nodes.items()})
        if cycle:
            raise CyclicDependencyError(cycle)

        graph = ResourceGraph(
            nodes=nodes,
            variables=variables,
            branches={b.name: b for b in self.declarations.branches},
            outputs=self.declarations.outputs,
            schemas=self.declarations.resource_types,
        )
        logger.info(
            "Built graph: %d node(s), %d active, %d excluded",
            len(nodes),
            len(graph.active_nodes()),
            len(graph.excluded_ids()),
        )
        return graph

    def _build_nodes(
        self, problems: list[str]
    ) -> tuple[dict[str, ResourceNode], dict[str, set[Ref]]]:
        nodes: dict[str, ResourceNode] = {}
        node_refs: dict[str, set[Ref]] = {}
        for decl in self.declarations.resources:
            owner = f"resource '{decl.id}'"
            if decl.id in nodes:
                problems.append(f"{owner}: duplicate id")
                continue
            if decl.id in RESERVED_ROOTS:
                problems.append(f"{owner}: '{decl.id}' is a reserved name")
                continue
            schema = self.declarations.schema_for(decl.type)
            for required in schema.required:
                if required not in decl.attributes:
                    problems.append(
                        f"{owner}: missing required attribute '{required}' "
                        f"for type '{decl.type}'"
                    )
            refs = self._parse_refs(owner, dict(decl.attributes), problems)
            self._check_refs(owner, refs, problems)
            self._check_condition(owner, decl.condition, problems)
            node_refs[decl.id] = {r for r in refs if r.is_node_ref}
            nodes[decl.id] = ResourceNode(
                id=decl.id,
                type=decl.type,
                attributes=dict(decl.attributes),
                explicit_dependencies=frozenset(decl.depends_on),
                condition=decl.condition,
                ignore_changes=frozenset(decl.ignore_changes),
                timeout_seconds=schema.timeout_seconds,
            )
        return nodes, node_refs

    def _validate_branches(
        self, nodes: dict[str, ResourceNode], problems: list[str]
    ) -> None:
        seen_names: set[str] = set()
        member_of: dict[str, str] = {}
        for branch in self.declarations.branches:
            owner = f"branch '{branch.name}'"
            if branch.name in seen_names:
                problems.append(f"{owner}: duplicate branch name")
            seen_names.add(branch.name)
            if branch.when_true == branch.when_false:
                problems.append(f"{owner}: both arms name '{branch.when_true}'")
            self._check_condition(owner, branch.selector, problems)
            for member in branch.members:
                node = nodes.get(member)
                if node is None:
                    problems.append(f"{owner}: unknown member '{member}'")
                    continue
                if node.condition is not None:
                    problems.append(
                        f"{owner}: member '{member}' may not have its own condition"
                    )
                if member in member_of and member_of[member] != branch.name:
                    problems.append(
                        f"{owner}: '{member}' already belongs to branch "
                        f"'{member_of[member]}'"
                    )
                member_of[member] = branch.name
                node.branch = branch.name

    def _validate_outputs(self, problems: list[str]) -> dict[str, set[Ref]]:
        output_refs: dict[str, set[Ref]] = {}
        for output in self.declarations.outputs:
            owner = f"output '{output.name}'"
            refs = self._parse_refs(owner, output.value, problems)
            self._check_refs(owner, refs, problems)
            output_refs[output.name] = {r for r in refs if r.is_node_ref}
        return output_refs

    def _check_field(self, owner: str, ref: Ref) -> None:
        decl = self.declarations.resource(ref.root)
        if decl is None:
            raise UnknownReferenceError(owner, str(ref), "no such node")
        schema = self.declarations.schema_for(decl.type)
        if ref.field not in schema.fields(decl.attributes):
            raise UnknownReferenceError(
                owner, str(ref), f"'{decl.type}' has no field '{ref.field}'"
            )

    def _link(
        self,
        nodes: dict[str, ResourceNode],
        node_refs: dict[str, set[Ref]],
        output_refs: dict[str, set[Ref]],
    ) -> dict[str, set[str]]:
        static: dict[str, set[str]] = {}
        for node_id, node in nodes.items():
            owner = f"resource '{node_id}'"
            deps: set[str] = set()
            for dep in sorted(node.explicit_dependencies):
                if dep not in nodes:
                    raise UnknownReferenceError(owner, dep, "no such node")
                deps.add(dep)
            for ref in sorted(node_refs[node_id], key=str):
                self._check_field(owner, ref)
                deps.add(ref.root)
            static[node_id] = deps
        for name, refs in output_refs.items():
            for ref in sorted(refs, key=str):
                self._check_field(f"output '{name}'", ref)
        return static

    # -- Pipeline ------------------------------------------------------------

    def build_pipeline(self, values: Optional[Mapping[str, Any]] = None) -> PipelineGraph:
        problems: list[str] = []
        variables = self.bind_variables(values or {}, problems)
        steps: dict[str, BuildStepNode] = {}
        declared_ids = [s.id for s in self.declarations.steps]
        artifact_names = {
            s.id: set(s.artifacts) for s in self.declarations.steps
        }
        step_refs: dict[str, set[Ref]] = {}

        for index, decl in enumerate(self.declarations.steps):
            owner = f"step '{decl.id}'"
            if decl.id in steps:
                problems.append(f"{owner}: duplicate id")
                continue
            if decl.id in RESERVED_ROOTS:
                problems.append(f"{owner}: '{decl.id}' is a reserved name")
                continue
            if decl.wait_for is None:
                wait_for = set(declared_ids[:index])
            elif NO_WAIT in decl.wait_for:
                if len(decl.wait_for) > 1:
                    problems.append(f"{owner}: '-' cannot be combined with other steps")
                wait_for = set()
            else:
                wait_for = set(decl.wait_for)
            param_refs = self._parse_refs(owner, dict(decl.action.params), problems)
            self._check_refs(
                owner, param_refs, problems, frozenset({VAR_ROOT, TRIGGER_ROOT})
            )
            artifact_refs = self._parse_refs(owner, dict(decl.artifacts), problems)
            self._check_refs(
                owner,
                artifact_refs,
                problems,
                frozenset({VAR_ROOT, TRIGGER_ROOT, STEP_ROOT}),
            )
            if decl.action.kind == "deploy":
                self._check_deploy_action(owner, decl.action.params, problems)
            step_refs[decl.id] = {
                r for r in param_refs | artifact_refs if r.is_node_ref
            }
            steps[decl.id] = BuildStepNode(
                id=decl.id,
                action=decl.action,
                wait_for=frozenset(wait_for),
                artifacts=dict(decl.artifacts),
                timeout_seconds=decl.timeout_seconds,
            )
        if problems:
            raise ValidationError(problems)

        for step_id, step in steps.items():
            owner = f"step '{step_id}'"
            deps: set[str] = set()
            for dep in sorted(step.wait_for):
                if dep not in steps:
                    raise UnknownReferenceError(owner, dep, "no such step")
                deps.add(dep)
            for ref in sorted(step_refs[step_id], key=str):
                if ref.root not in steps:
                    raise UnknownReferenceError(owner, str(ref), "no such step")
                if ref.field not in artifact_names[ref.root]:
                    raise UnknownReferenceError(
                        owner, str(ref), f"step '{ref.root}' declares no such artifact"
                    )
                deps.add(ref.root)
            step.dependencies = deps

        cycle = find_cycle({k: s.dependencies for k, s in steps.items()})
        if cycle:
            raise CyclicDependencyError(cycle)
        return PipelineGraph(steps=steps, variables=variables)

    def _check_deploy_action(
        self, owner: str, params: Mapping[str, Any], problems: list[str]
    ) -> None:
        resource = params.get("resource")
        if not resource or self.declarations.resource(resource) is None:
            problems.append(f"{owner}: deploy target '{resource}' is not a declared resource")
        attributes = params.get("attributes")
        if not isinstance(attributes, Mapping) or not attributes:
            problems.append(f"{owner}: deploy action needs a non-empty 'attributes' mapping")
