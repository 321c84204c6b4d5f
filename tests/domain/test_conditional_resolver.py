"""Tests for conditions and exclusive branch selection."""

import pytest

from converge.domain.errors import UnsatisfiedDependencyError, ValidationError
from converge.domain.services.graph_builder import GraphBuilder
from converge.domain.services.scheduler import schedule_batches


@pytest.fixture
def ssl_declarations(declare):
    return declare(
        {
            "variables": {"enable_ssl": {"type": "bool", "default": True}},
            "resources": [
                {"id": "url_map", "type": "t"},
                {
                    "id": "cert",
                    "type": "t",
                    "attributes": {"domains": ["example.com"]},
                    "condition": "var.enable_ssl",
                },
                {
                    "id": "https_proxy",
                    "type": "t",
                    "attributes": {"map": "${url_map.id}", "cert": "${cert.id}"},
                },
                {"id": "http_proxy", "type": "t", "attributes": {"map": "${url_map.id}"}},
                {
                    "id": "rule",
                    "type": "t",
                    "attributes": {"target": "${https_proxy.id}"},
                },
            ],
            "branches": [
                {
                    "name": "proxy",
                    "selector": "var.enable_ssl",
                    "when_true": "https_proxy",
                    "when_false": "http_proxy",
                }
            ],
        }
    )


class TestConditions:
    def test_false_condition_excludes_node(self, declare):
        declarations = declare(
            {
                "variables": {"monitoring": {"type": "bool", "default": False}},
                "resources": [
                    {"id": "app", "type": "t"},
                    {"id": "alerts", "type": "t", "condition": "var.monitoring"},
                ],
            }
        )
        graph = GraphBuilder(declarations).build()
        assert graph.node("alerts").instance_count == 0
        assert graph.excluded_ids() == {"alerts"}
        batches = schedule_batches(graph.dependency_map())
        assert all("alerts" not in batch for batch in batches)

    def test_true_condition_keeps_node(self, declare):
        declarations = declare(
            {
                "variables": {"monitoring": {"type": "bool", "default": False}},
                "resources": [{"id": "alerts", "type": "t", "condition": "var.monitoring"}],
            }
        )
        graph = GraphBuilder(declarations).build({"monitoring": "true"})
        assert graph.node("alerts").instance_count == 1

    def test_non_boolean_condition(self, declare):
        declarations = declare(
            {
                "variables": {"env": {"default": "prod"}},
                "resources": [{"id": "a", "type": "t", "condition": "var.env"}],
            }
        )
        with pytest.raises(ValidationError, match="must be a boolean"):
            GraphBuilder(declarations).build()

    def test_required_input_excluded(self, declare):
        declarations = declare(
            {
                "variables": {"on": {"type": "bool", "default": False}},
                "resources": [
                    {"id": "db", "type": "t", "condition": "var.on"},
                    {"id": "app", "type": "t", "attributes": {"db": "${db.id}"}},
                ],
            }
        )
        with pytest.raises(UnsatisfiedDependencyError) as exc:
            GraphBuilder(declarations).build()
        assert exc.value.node_id == "app"
        assert exc.value.missing == "db"

    def test_ordering_edge_to_excluded_node_dropped(self, declare):
        declarations = declare(
            {
                "variables": {"on": {"type": "bool", "default": False}},
                "resources": [
                    {"id": "db", "type": "t", "condition": "var.on"},
                    {"id": "app", "type": "t", "depends_on": ["db"]},
                ],
            }
        )
        assert GraphBuilder(declarations).build().node("app").dependencies == set()

    def test_ternary_on_variable_skips_dead_reference(self, declare):
        declarations = declare(
            {
                "variables": {"on": {"type": "bool", "default": False}},
                "resources": [
                    {"id": "db", "type": "t", "condition": "var.on"},
                    {"id": "app", "type": "t", "attributes": {"db": "${var.on ? db.id : 'none'}"}},
                ],
            }
        )
        assert GraphBuilder(declarations).build().node("app").dependencies == set()


class TestBranches:
    def test_ssl_on_selects_https(self, ssl_declarations):
        graph = GraphBuilder(ssl_declarations).build({"enable_ssl": True})
        assert graph.node("https_proxy").present
        assert not graph.node("http_proxy").present
        assert graph.node("cert").present
        assert graph.node("rule").dependencies == {"https_proxy"}

    def test_ssl_off_selects_http_and_rewrites_edges(self, ssl_declarations):
        graph = GraphBuilder(ssl_declarations).build({"enable_ssl": False})
        assert graph.node("http_proxy").present
        assert not graph.node("https_proxy").present
        assert not graph.node("cert").present
        assert graph.node("rule").dependencies == {"http_proxy"}
        assert graph.node("rule").substitutions == {"https_proxy": "http_proxy"}

    def test_exactly_one_member_present(self, ssl_declarations):
        for value in (True, False):
            graph = GraphBuilder(ssl_declarations).build({"enable_ssl": value})
            present = [m for m in ("https_proxy", "http_proxy") if graph.node(m).present]
            assert len(present) == 1

    def test_member_with_own_condition_rejected(self, declare):
        declarations = declare(
            {
                "variables": {"on": {"type": "bool", "default": True}},
                "resources": [
                    {"id": "a", "type": "t", "condition": "var.on"},
                    {"id": "b", "type": "t"},
                ],
                "branches": [
                    {"name": "x", "selector": "var.on", "when_true": "a", "when_false": "b"}
                ],
            }
        )
        with pytest.raises(ValidationError, match="may not have its own condition"):
            GraphBuilder(declarations).build()

    def test_unknown_member(self, declare):
        declarations = declare(
            {
                "variables": {"on": {"type": "bool", "default": True}},
                "resources": [{"id": "a", "type": "t"}],
                "branches": [
                    {"name": "x", "selector": "var.on", "when_true": "a", "when_false": "zz"}
                ],
            }
        )
        with pytest.raises(ValidationError, match="unknown member 'zz'"):
            GraphBuilder(declarations).build()
