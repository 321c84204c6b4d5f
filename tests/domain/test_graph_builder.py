"""Tests for GraphBuilder: edges, validation, cycles and the pipeline DAG."""

import pytest

from converge.domain.errors import (
    CyclicDependencyError,
    UnknownReferenceError,
    ValidationError,
)
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.services.scheduler import schedule_batches


class TestResourceEdges:
    def test_references_become_edges(self, chain):
        graph = GraphBuilder(chain).build()
        assert graph.node("a").dependencies == set()
        assert graph.node("b").dependencies == {"a"}
        assert graph.node("c").dependencies == {"b"}

    def test_explicit_depends_on_merged(self, declare):
        declarations = declare(
            {
                "resources": [
                    {"id": "a", "type": "t"},
                    {"id": "b", "type": "t"},
                    {"id": "c", "type": "t", "attributes": {"x": "${a.id}"}, "depends_on": ["b"]},
                ]
            }
        )
        graph = GraphBuilder(declarations).build()
        assert graph.node("c").dependencies == {"a", "b"}

    def test_batches_respect_every_edge(self, declare):
        declarations = declare(
            {
                "resources": [
                    {"id": "net", "type": "t"},
                    {"id": "sub1", "type": "t", "attributes": {"n": "${net.id}"}},
                    {"id": "sub2", "type": "t", "attributes": {"n": "${net.id}"}},
                    {"id": "vm", "type": "t", "attributes": {"s": ["${sub1.id}", "${sub2.id}"]}},
                    {"id": "dns", "type": "t"},
                ]
            }
        )
        graph = GraphBuilder(declarations).build()
        batches = schedule_batches(graph.dependency_map())
        assert batches == [["dns", "net"], ["sub1", "sub2"], ["vm"]]
        position = {n: i for i, batch in enumerate(batches) for n in batch}
        for node in graph.active_nodes():
            for dep in node.dependencies:
                assert position[dep] < position[node.id]

    def test_variables_bound_on_graph(self, declare):
        declarations = declare(
            {"variables": {"region": {"default": "eu"}}, "resources": []}
        )
        assert GraphBuilder(declarations).build().variables == {"region": "eu"}


class TestResourceFailures:
    def test_cycle_detected_before_anything_runs(self, declare):
        declarations = declare(
            {
                "resources": [
                    {"id": "a", "type": "t", "attributes": {"x": "${c.id}"}},
                    {"id": "b", "type": "t", "attributes": {"x": "${a.id}"}},
                    {"id": "c", "type": "t", "attributes": {"x": "${b.id}"}},
                ]
            }
        )
        with pytest.raises(CyclicDependencyError) as exc:
            GraphBuilder(declarations).build()
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_self_reference_is_a_cycle(self, declare):
        declarations = declare(
            {"resources": [{"id": "a", "type": "t", "attributes": {"x": "${a.id}"}}]}
        )
        with pytest.raises(CyclicDependencyError):
            GraphBuilder(declarations).build()

    def test_unknown_node(self, declare):
        declarations = declare(
            {"resources": [{"id": "a", "type": "t", "attributes": {"x": "${ghost.id}"}}]}
        )
        with pytest.raises(UnknownReferenceError, match="ghost.id"):
            GraphBuilder(declarations).build()

    def test_unknown_field(self, declare):
        declarations = declare(
            {
                "resources": [
                    {"id": "a", "type": "t", "attributes": {"name": "a"}},
                    {"id": "b", "type": "t", "attributes": {"x": "${a.address}"}},
                ]
            }
        )
        with pytest.raises(UnknownReferenceError, match="no field 'address'"):
            GraphBuilder(declarations).build()

    def test_computed_fields_from_schema(self, declare):
        declarations = declare(
            {
                "resource_types": {"ip": {"computed": ["id", "address"]}},
                "resources": [
                    {"id": "a", "type": "ip"},
                    {"id": "b", "type": "t", "attributes": {"x": "${a.address}"}},
                ],
            }
        )
        assert GraphBuilder(declarations).build().node("b").dependencies == {"a"}

    def test_unknown_depends_on(self, declare):
        declarations = declare(
            {"resources": [{"id": "a", "type": "t", "depends_on": ["nope"]}]}
        )
        with pytest.raises(UnknownReferenceError):
            GraphBuilder(declarations).build()

    def test_problems_are_aggregated(self, declare):
        declarations = declare(
            {
                "resource_types": {"cert": {"required": ["domains"]}},
                "resources": [
                    {"id": "a", "type": "t"},
                    {"id": "a", "type": "t"},
                    {"id": "var", "type": "t"},
                    {"id": "c", "type": "cert"},
                    {"id": "d", "type": "t", "attributes": {"x": "${var.undeclared}"}},
                    {"id": "e", "type": "t", "condition": "a.id == 'x'"},
                ],
                "outputs": {"o": {"value": "${var.nothing}"}},
            }
        )
        with pytest.raises(ValidationError) as exc:
            GraphBuilder(declarations).build()
        problems = "\n".join(exc.value.problems)
        assert "duplicate id" in problems
        assert "reserved name" in problems
        assert "missing required attribute 'domains'" in problems
        assert "undeclared variable 'var.undeclared'" in problems
        assert "conditions may only read variables" in problems
        assert "output 'o'" in problems

    def test_trigger_not_available_to_resources(self, declare):
        declarations = declare(
            {"resources": [{"id": "a", "type": "t", "attributes": {"r": "${trigger.revision}"}}]}
        )
        with pytest.raises(ValidationError, match="not available here"):
            GraphBuilder(declarations).build()

    def test_output_unknown_node(self, declare):
        declarations = declare(
            {"resources": [], "outputs": {"o": {"value": "${gone.id}"}}}
        )
        with pytest.raises(UnknownReferenceError, match="output 'o'"):
            GraphBuilder(declarations).build()


class TestPipeline:
    def _steps(self, declare, steps, variables=None):
        return declare({"variables": variables or {}, "pipeline": {"steps": steps}})

    def test_default_waits_for_all_previous(self, declare):
        declarations = self._steps(
            declare,
            [
                {"id": "a", "action": {"kind": "command", "command": "true"}},
                {"id": "b", "action": {"kind": "command", "command": "true"}},
                {"id": "c", "action": {"kind": "command", "command": "true"}},
            ],
        )
        graph = GraphBuilder(declarations).build_pipeline()
        assert graph.step("a").dependencies == set()
        assert graph.step("b").dependencies == {"a"}
        assert graph.step("c").dependencies == {"a", "b"}
        assert graph.order == ["a", "b", "c"]

    def test_no_wait(self, declare):
        declarations = self._steps(
            declare,
            [
                {"id": "a", "action": {"kind": "command", "command": "true"}},
                {"id": "b", "action": {"kind": "command", "command": "true"}, "wait_for": ["-"]},
            ],
        )
        assert GraphBuilder(declarations).build_pipeline().step("b").dependencies == set()

    def test_artifact_reference_adds_edge(self, declare):
        declarations = self._steps(
            declare,
            [
                {
                    "id": "build",
                    "action": {"kind": "command", "command": "make"},
                    "artifacts": {"image": "app:${trigger.short_revision}"},
                },
                {"id": "lint", "action": {"kind": "command", "command": "lint"}, "wait_for": ["-"]},
                {
                    "id": "push",
                    "action": {"kind": "command", "command": "push ${build.image}"},
                    "wait_for": ["lint"],
                },
            ],
        )
        assert GraphBuilder(declarations).build_pipeline().step("push").dependencies == {
            "build",
            "lint",
        }

    def test_undeclared_artifact(self, declare):
        declarations = self._steps(
            declare,
            [
                {"id": "build", "action": {"kind": "command", "command": "make"}},
                {"id": "push", "action": {"kind": "command", "command": "push ${build.image}"}},
            ],
        )
        with pytest.raises(UnknownReferenceError, match="declares no such artifact"):
            GraphBuilder(declarations).build_pipeline()

    def test_unknown_wait_for(self, declare):
        declarations = self._steps(
            declare,
            [{"id": "a", "action": {"kind": "command", "command": "x"}, "wait_for": ["zzz"]}],
        )
        with pytest.raises(UnknownReferenceError):
            GraphBuilder(declarations).build_pipeline()

    def test_cycle(self, declare):
        declarations = self._steps(
            declare,
            [
                {"id": "a", "action": {"kind": "command", "command": "x"}, "wait_for": ["b"]},
                {"id": "b", "action": {"kind": "command", "command": "x"}, "wait_for": ["a"]},
            ],
        )
        with pytest.raises(CyclicDependencyError):
            GraphBuilder(declarations).build_pipeline()

    def test_step_scope_only_in_artifacts(self, declare):
        declarations = self._steps(
            declare,
            [{"id": "a", "action": {"kind": "command", "command": "echo ${step.digest}"}}],
        )
        with pytest.raises(ValidationError, match="not available here"):
            GraphBuilder(declarations).build_pipeline()

    def test_deploy_needs_declared_resource(self, declare):
        declarations = self._steps(
            declare,
            [{"id": "d", "action": {"kind": "deploy", "resource": "svc", "attributes": {}}}],
        )
        with pytest.raises(ValidationError) as exc:
            GraphBuilder(declarations).build_pipeline()
        assert len(exc.value.problems) == 2
