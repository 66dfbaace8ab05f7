"""Tests for sampler assignment, MCMC configurations and pipelines."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
import pytest

from scinimpy.algorithms import samplers
from scinimpy.algorithms.assembly import (
    MCMCConfiguration,
    Pipeline,
    SamplerAssignment,
    assemble,
    default_sampler,
)
from scinimpy.exceptions import NoApplicableAlgorithm, ShapeIncompatible
from scinimpy.model import relations as rel
from scinimpy.model.graph import ModelGraph

# ── Helpers ──────────────────────────────────────────────────────────────────


def _assigned(configuration):
    """Map each sampled node to the name of its sampler."""
    return {
        target: assignment.template.NAME
        for assignment in configuration.get_samplers()
        for target in assignment.targets
    }


def _discrete_graph(distribution, **params) -> ModelGraph:
    """A single discrete latent node observed through a normal."""
    graph = ModelGraph(
        [
            rel.stochastic("z", distribution, **params),
            rel.stochastic("y", "normal", mean=rel.ref("z"), sd=1.0, data=[1.0]),
        ],
        seed=6,
    )
    graph.initialize()
    return graph


# ── TestDefaultSampler ───────────────────────────────────────────────────────


class TestDefaultSampler:
    """The default choice for each kind of latent node."""

    def test_predictive_graph(self, predictive_graph) -> None:
        assert _assigned(MCMCConfiguration(predictive_graph)) == {
            "mu": "conjugate",
            "sigma": "RW",
            "ypred": "posterior_predictive",
        }

    def test_without_conjugacy(self, predictive_graph) -> None:
        configuration = MCMCConfiguration(predictive_graph, use_conjugacy=False)
        assert _assigned(configuration)["mu"] == "RW"

    def test_regression_graph(self, regression_graph) -> None:
        assert _assigned(MCMCConfiguration(regression_graph)) == {"b0": "RW", "b1": "RW"}

    def test_conjugate_rate(self, gamma_poisson_graph) -> None:
        assert default_sampler(gamma_poisson_graph, "lam") is samplers.Conjugate
        assert default_sampler(gamma_poisson_graph, "lam", use_conjugacy=False) is samplers.RW

    @pytest.mark.parametrize(
        "distribution, params, expected",
        [
            ("bern", {"prob": 0.5}, samplers.Binary),
            ("cat", {"prob": [0.2, 0.8]}, samplers.Categorical),
            ("pois", {"lambda_": 2.0}, samplers.Slice),
            ("binom", {"prob": 0.5, "size": 4.0}, samplers.Slice),
        ],
    )
    def test_discrete_scalar(self, distribution, params, expected) -> None:
        assert default_sampler(_discrete_graph(distribution, **params), "z") is expected

    def test_discrete_vector(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("k", "pois", lambda_=np.full(3, 2.0)),
                rel.stochastic("y", "normal", mean=rel.ref("k"), sd=1.0, data=[1.0, 2.0, 3.0]),
            ],
            seed=0,
        )
        with pytest.raises(NoApplicableAlgorithm, match="'k'"):
            default_sampler(graph, "k")
        with pytest.raises(NoApplicableAlgorithm):
            MCMCConfiguration(graph)

    def test_continuous_vector(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("v", "normal", mean=np.zeros(3), sd=1.0),
                rel.stochastic("y", "normal", mean=rel.ref("v"), sd=1.0, data=[1.0, 2.0, 3.0]),
            ],
            seed=0,
        )
        assert default_sampler(graph, "v", use_conjugacy=False) is samplers.RWBlock
        assert default_sampler(graph, "v") is samplers.Conjugate


# ── TestPrecedence ───────────────────────────────────────────────────────────


class TestPrecedence:
    """Overrides, distribution names and families."""

    def test_distribution_name(self, regression_graph) -> None:
        configuration = MCMCConfiguration(regression_graph, node_to_algorithm={"normal": "slice"})
        assert _assigned(configuration) == {"b0": "slice", "b1": "slice"}

    def test_name_beats_family(self, predictive_graph) -> None:
        configuration = MCMCConfiguration(
            predictive_graph,
            node_to_algorithm={"normal": samplers.RW, "continuous": "slice"},
        )
        assert _assigned(configuration) == {"mu": "RW", "sigma": "slice", "ypred": "RW"}

    def test_override_beats_mapping(self, predictive_graph) -> None:
        configuration = MCMCConfiguration(
            predictive_graph,
            node_to_algorithm={"normal": "RW"},
            overrides={"mu": samplers.Slice()},
        )
        assert _assigned(configuration)["mu"] == "slice"
        assert _assigned(configuration)["ypred"] == "RW"

    @pytest.mark.parametrize("name", ["y", "p", "nope"])
    def test_override_must_be_latent(self, regression_graph, name) -> None:
        with pytest.raises(KeyError, match=name):
            MCMCConfiguration(regression_graph, overrides={name: "RW"})

    def test_unknown_sampler_name(self, regression_graph) -> None:
        with pytest.raises(KeyError, match="Options are"):
            MCMCConfiguration(regression_graph, overrides={"b0": "NUTS"})

    def test_incompatible_override(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="bern"):
            assemble(regression_graph, overrides={"b0": "binary"})

    def test_shared_control(self, predictive_graph) -> None:
        """Control values only reach samplers that declare them."""
        configuration = MCMCConfiguration(predictive_graph, control={"scale": 0.3})
        controls = {s.targets[0]: s.control for s in configuration.get_samplers()}
        assert controls == {"mu": {}, "sigma": {"scale": 0.3}, "ypred": {}}

        pipeline = configuration.build_pipeline()
        assert pipeline[1].state.scale == 0.3


# ── TestConfiguration ────────────────────────────────────────────────────────


class TestConfiguration:
    """Editing a configuration before building its pipeline."""

    def test_default_monitors(self, predictive_graph) -> None:
        assert MCMCConfiguration(predictive_graph).monitors == ("mu", "sigma", "ypred")

    def test_explicit_monitors(self, regression_graph) -> None:
        configuration = MCMCConfiguration(regression_graph, monitors=["b1", "p"])
        assert configuration.monitors == ("b1", "p")
        configuration.add_monitors("b0")
        configuration.add_monitors(["p", "y"])
        assert configuration.monitors == ("b1", "p", "b0", "y")

    def test_unknown_monitor(self, regression_graph) -> None:
        configuration = MCMCConfiguration(regression_graph)
        with pytest.raises(KeyError):
            configuration.add_monitors("nope")

    def test_add_and_remove(self, regression_graph) -> None:
        configuration = MCMCConfiguration(regression_graph)
        configuration.add_sampler(["b0", "b1"], "RW_block", control={"scale": 0.1})
        assert len(configuration.get_samplers()) == 3
        assert len(configuration.get_samplers("b0")) == 2
        assert configuration.get_samplers()[-1].control == {"scale": 0.1}

        configuration.remove_samplers("b1")
        assert [s.targets for s in configuration.get_samplers()] == [("b0",)]

        configuration.remove_samplers()
        assert configuration.get_samplers() == []
        assert len(configuration.build_pipeline()) == 0

    def test_add_unknown_node(self, regression_graph) -> None:
        configuration = MCMCConfiguration(regression_graph)
        with pytest.raises(KeyError, match="nope"):
            configuration.add_sampler("nope", "RW")

    def test_set_sampler_order(self, regression_graph) -> None:
        configuration = MCMCConfiguration(regression_graph)
        configuration.set_sampler_order([1, 0, 1])
        assert [s.targets for s in configuration.get_samplers()] == [("b1",), ("b0",), ("b1",)]

    def test_summary(self, predictive_graph) -> None:
        summary = MCMCConfiguration(predictive_graph).summary()
        assert isinstance(summary, pd.DataFrame)
        assert list(summary.columns) == ["sampler", "targets", "control"]
        assert list(summary["sampler"]) == ["conjugate", "RW", "posterior_predictive"]

    def test_str(self, regression_graph) -> None:
        text = str(MCMCConfiguration(regression_graph))
        assert text.splitlines() == [
            "[0] RW sampler: b0",
            "[1] RW sampler: b1",
            "Monitors: b0, b1",
        ]

    def test_sampler_assignment(self, regression_graph) -> None:
        assignment = SamplerAssignment(samplers.RW(), ("b0",), {"scale": 2.0})
        assert repr(assignment) == "RW sampler: b0, {'scale': 2.0}"
        instance = assignment.specialize(regression_graph)
        assert instance.name == "RW(b0)"
        assert instance.state.scale == 2.0


# ── TestPipeline ─────────────────────────────────────────────────────────────


class TestPipeline:
    """Ordered execution of specialized instances."""

    def test_assemble(self, predictive_graph) -> None:
        pipeline = assemble(predictive_graph)
        assert isinstance(pipeline, Pipeline)
        assert pipeline.names == ("conjugate(mu)", "RW(sigma)", "posterior_predictive(ypred)")
        assert len(pipeline) == 3
        assert [instance.name for instance in pipeline] == list(pipeline.names)

    def test_assemble_with_order(self, predictive_graph) -> None:
        pipeline = assemble(predictive_graph, order=[2, "conjugate(mu)"])
        assert pipeline.names == ("posterior_predictive(ypred)", "conjugate(mu)")

    def test_reorder(self, regression_graph) -> None:
        pipeline = assemble(regression_graph)
        pipeline.reorder(["RW(b1)", 0])
        assert pipeline.names == ("RW(b1)", "RW(b0)")
        with pytest.raises(KeyError, match="RW\\(p\\)"):
            pipeline.reorder(["RW(p)"])

    def test_run_updates_every_node(self, predictive_graph) -> None:
        pipeline = assemble(predictive_graph)
        before = {name: predictive_graph.get_value(name) for name in ("mu", "sigma", "ypred")}
        for _ in range(20):
            pipeline.run()
        for name, value in before.items():
            assert predictive_graph[name] != value
        assert predictive_graph.get_log_prob() == pytest.approx(
            predictive_graph.calculate_log_prob()
        )

    def test_reset(self, regression_graph) -> None:
        pipeline = assemble(regression_graph)
        for _ in range(10):
            pipeline.run()
        assert all(instance.state.n_proposed == 10 for instance in pipeline)
        pipeline.reset()
        assert all(instance.state.n_proposed == 0 for instance in pipeline)

    def test_fresh(self, regression_graph) -> None:
        pipeline = assemble(regression_graph)
        pipeline.run()
        fresh = pipeline.fresh()
        assert fresh.names == pipeline.names
        for old, new in zip(pipeline, fresh):
            assert new is not old
            assert new.state.n_proposed == 0
        assert pipeline[0].state.n_proposed == 1

    def test_run_against_copy(self, regression_graph) -> None:
        pipeline = assemble(regression_graph)
        before = regression_graph.get_value("b0")
        copy = regression_graph.copy(seed=3)
        for _ in range(50):
            pipeline.run(store=copy.store)
        assert regression_graph["b0"] == before
        assert copy["b0"] != before

    def test_threads_on_copies(self, regression_graph) -> None:
        """Pipelines on disjoint copies give the same draws in threads as in sequence."""
        configuration = MCMCConfiguration(regression_graph)
        seeds = [101, 102, 103, 104]

        def chain(seed):
            graph = regression_graph.copy(seed=seed)
            pipeline = configuration.build_pipeline(graph)
            draws = []
            for _ in range(100):
                pipeline.run()
                draws.append((float(graph["b0"]), float(graph["b1"])))
            return draws

        sequential = [chain(seed) for seed in seeds]
        with ThreadPoolExecutor(max_workers=len(seeds)) as executor:
            threaded = list(executor.map(chain, seeds))

        assert threaded == sequential
        assert sequential[0] != sequential[1]
