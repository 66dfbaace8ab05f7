"""Tests for dependency resolution."""

import numpy as np
import pytest

from scinimpy import operations as ops
from scinimpy.model import relations as rel
from scinimpy.model.dependencies import DependencyResolver
from scinimpy.model.graph import ModelGraph

# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def chain_graph() -> ModelGraph:
    """a -> b -> c through stochastic nodes, with deterministic links."""
    return ModelGraph(
        [
            rel.stochastic("a", "normal", mean=0.0, sd=1.0),
            rel.deterministic("a2", rel.ref("a") * 2),
            rel.stochastic("b", "normal", mean=rel.ref("a2"), sd=1.0),
            rel.deterministic("b1", rel.ref("b") + 1),
            rel.deterministic("b2", ops.exp(rel.ref("b1"))),
            rel.stochastic("c", "normal", mean=rel.ref("b2"), sd=1.0, data=0.5),
        ],
        seed=0,
    )


@pytest.fixture
def diamond_graph() -> ModelGraph:
    """One stochastic node feeding two deterministic nodes that meet again."""
    return ModelGraph(
        [
            rel.stochastic("a", "normal", mean=0.0, sd=1.0),
            rel.deterministic("left", rel.ref("a") + 1),
            rel.deterministic("right", rel.ref("a") * 2),
            rel.stochastic(
                "y", "normal", mean=rel.ref("left"), sd=ops.exp(rel.ref("right"))
            ),
        ],
        seed=0,
    )


# ── TestDownstream ───────────────────────────────────────────────────────────


class TestDownstream:
    """Downstream dependency sets."""

    def test_through_deterministic_to_first_stochastic(self, regression_graph) -> None:
        assert regression_graph.get_dependencies("b0") == ("b0", "p", "y")

    def test_stops_at_stochastic_nodes(self, chain_graph) -> None:
        assert chain_graph.get_dependencies("a") == ("a", "a2", "b")
        assert chain_graph.get_dependencies("b") == ("b", "b1", "b2", "c")

    def test_through_stochastic(self, chain_graph) -> None:
        assert chain_graph.get_dependencies("a", through_stochastic=True) == (
            "a",
            "a2",
            "b",
            "b1",
            "b2",
            "c",
        )

    def test_each_node_once(self, diamond_graph) -> None:
        assert diamond_graph.get_dependencies("a") == ("a", "left", "right", "y")

    def test_multiple_targets(self, regression_graph) -> None:
        assert regression_graph.get_dependencies(["b1", "b0"]) == ("b0", "b1", "p", "y")

    def test_constant_target(self, regression_graph) -> None:
        assert regression_graph.get_dependencies("x") == ("x", "p", "y")

    @pytest.mark.parametrize(
        "kwargs, expected",
        [
            ({"include_self": False}, ("p", "y")),
            ({"include_stochastic": False}, ("b0", "p")),
            ({"include_deterministic": False}, ("b0", "y")),
            ({"include_data": False}, ("b0", "p")),
            ({"include_self": False, "include_deterministic": False}, ("y",)),
        ],
    )
    def test_filters(self, regression_graph, kwargs, expected) -> None:
        assert regression_graph.get_dependencies("b0", **kwargs) == expected

    def test_data_filter_follows_current_flags(self, regression_graph) -> None:
        regression_graph.reset_data()
        assert regression_graph.get_dependencies("b0", include_data=False) == (
            "b0",
            "p",
            "y",
        )

    def test_result_is_deterministic(self, regression_graph) -> None:
        results = {regression_graph.get_dependencies(["b0", "b1"]) for _ in range(10)}
        assert len(results) == 1


# ── TestUpstream ─────────────────────────────────────────────────────────────


class TestUpstream:
    """Upstream dependency sets."""

    def test_all_ancestors(self, regression_graph) -> None:
        dependencies = regression_graph.get_dependencies("y", direction="upstream")
        assert dependencies == ("x", "b0", "b1", "p", "y")

        # Every node comes after everything it depends on
        for name in ("b0", "b1", "p"):
            assert dependencies.index(name) < dependencies.index("y")

    def test_upstream_through_stochastic(self, chain_graph) -> None:
        assert chain_graph.get_dependencies("c", direction="upstream") == (
            "a",
            "a2",
            "b",
            "b1",
            "b2",
            "c",
        )

    def test_upstream_stopping_at_stochastic(self, chain_graph) -> None:
        assert chain_graph.get_dependencies(
            "c", direction="upstream", through_stochastic=False
        ) == ("b", "b1", "b2", "c")

    def test_upstream_deterministic_only(self, chain_graph) -> None:
        assert chain_graph.get_dependencies(
            "c",
            direction="upstream",
            through_stochastic=False,
            include_stochastic=False,
        ) == ("b1", "b2", "c")


# ── TestResolver ─────────────────────────────────────────────────────────────


class TestResolver:
    """The resolver and its graph-level helpers."""

    def test_unknown_target(self, regression_graph) -> None:
        with pytest.raises(KeyError):
            regression_graph.get_dependencies("nope")

    def test_unknown_direction(self, regression_graph) -> None:
        with pytest.raises(ValueError):
            regression_graph.get_dependencies("b0", direction="sideways")

    def test_topological_order(self, chain_graph) -> None:
        resolver = DependencyResolver(chain_graph.digraph, chain_graph.nodes)
        assert resolver.topological_order() == tuple(range(len(chain_graph)))

    def test_index_level_resolution(self, regression_graph) -> None:
        assert regression_graph.resolve_dependencies([1]) == (1, 3, 4)

    def test_resolver_without_data_flags(self, regression_graph) -> None:
        resolver = DependencyResolver(regression_graph.digraph, regression_graph.nodes)
        assert resolver.resolve([1], include_data=False) == (1, 3, 4)
        assert resolver.resolve(
            [1], include_data=False, is_data=np.array([False] * 4 + [True])
        ) == (1, 3)

    def test_downstream_data(self, chain_graph, predictive_graph) -> None:
        assert chain_graph.has_downstream_data("a")
        assert chain_graph.has_downstream_data("b")
        assert not chain_graph.has_downstream_data("c")
        assert predictive_graph.has_downstream_data("mu")
        assert not predictive_graph.has_downstream_data("ypred")
