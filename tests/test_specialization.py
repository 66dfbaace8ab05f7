"""Tests for the two-stage specialization of algorithm templates."""

from types import MappingProxyType

import numpy as np
import pytest

from scipy import optimize, special, stats

from scinimpy.algorithms.objectives import (
    LogProbabilityCalculator,
    NodeSimulator,
    ObjectiveFunction,
)
from scinimpy.algorithms.samplers import RW, Binary, RWBlock
from scinimpy.algorithms.specialization import (
    Binding,
    RunState,
    SpecializedAlgorithm,
    specialize,
)
from scinimpy.algorithms.template import (
    AlgorithmTemplate,
    DependencySpec,
    FlatLayout,
    ScratchSpec,
)
from scinimpy.exceptions import (
    ShapeIncompatible,
    SpecializationError,
    UnresolvedTarget,
)
from scinimpy.model import relations as rel
from scinimpy.model.graph import ModelGraph

# ── Helpers ──────────────────────────────────────────────────────────────────


class Recorder(AlgorithmTemplate):
    """Counts its runs and records the log probability of its plan on each."""

    TARGETS = ("target", "other")
    MAX_TARGET_NODES = None
    DEPENDENCIES = {
        "calc": DependencySpec(),
        "both": DependencySpec(("target", "other"), include_data=False),
    }
    SAVED = ("calc",)
    SCRATCH = {
        "fixed": ScratchSpec((2, 3)),
        "like_target": ScratchSpec("target"),
        "flat": ScratchSpec("other:flat", fill=-1.0),
        "formula": ScratchSpec(lambda shapes, control: (control["width"], len(shapes["other"]))),
    }
    CONTROL = {"width": 4}

    def initial_state(self, binding, control):
        return {"calls": 0, "seen": []}

    def run(self, instance, store):
        instance.state.calls += 1
        instance.state.seen.append(instance.binding.plans["calc"].calculate(store))
        return instance.state.calls


# ── TestTargets ──────────────────────────────────────────────────────────────


class TestTargets:
    """Resolution of target arguments."""

    def test_unknown_target(self, regression_graph) -> None:
        with pytest.raises(UnresolvedTarget, match="nope"):
            specialize(RW, regression_graph, target="nope")

    def test_unresolved_target_is_key_error(self, regression_graph) -> None:
        with pytest.raises(KeyError):
            specialize(RW, regression_graph, target="nope")

    def test_empty_target(self, regression_graph) -> None:
        with pytest.raises(UnresolvedTarget, match="No nodes"):
            specialize(RW, regression_graph, target=[])

    def test_missing_target(self, regression_graph) -> None:
        with pytest.raises(TypeError, match="missing"):
            specialize(RW, regression_graph)

    def test_unexpected_target(self, regression_graph) -> None:
        with pytest.raises(TypeError, match="unexpected"):
            specialize(RW, regression_graph, target="b0", extra="b1")

    def test_template_instance_accepted(self, regression_graph) -> None:
        rw = specialize(RW(), regression_graph, target="b0")
        assert rw.name == "RW(b0)"
        assert rw.target_names == ("b0",)

    def test_multi_node_target(self, regression_graph) -> None:
        block = specialize(RWBlock, regression_graph, target=["b1", "b0"])
        assert block.target_names == ("b1", "b0")
        assert block.name == "RW_block(b1, b0)"


# ── TestShapeChecks ──────────────────────────────────────────────────────────


class TestShapeChecks:
    """Capability checks against resolved nodes."""

    def test_scalar_only(self) -> None:
        graph = ModelGraph([rel.stochastic("v", "normal", mean=np.zeros(3), sd=1.0)], seed=0)
        with pytest.raises(ShapeIncompatible, match="scalar-only"):
            specialize(RW, graph, target="v")

    def test_continuous_only(self) -> None:
        graph = ModelGraph([rel.stochastic("k", "pois", lambda_=3.0)], seed=0)
        with pytest.raises(ShapeIncompatible, match="continuous-only"):
            specialize(RW, graph, target="k")

    def test_supported_distributions(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="bern"):
            specialize(Binary, regression_graph, target="b0")

    def test_stochastic_only(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="stochastic"):
            specialize(RW, regression_graph, target="p")

    def test_data_targets_rejected(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="data node"):
            specialize(RW, regression_graph, target="y")

    def test_too_many_nodes(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="at most 1"):
            specialize(RW, regression_graph, target=["b0", "b1"])

    def test_bad_proposal_covariance(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="prop_cov"):
            specialize(
                RWBlock,
                regression_graph,
                target=["b0", "b1"],
                control={"prop_cov": np.eye(3)},
            )

    def test_shape_incompatible_is_specialization_error(self, regression_graph) -> None:
        with pytest.raises(SpecializationError):
            specialize(RW, regression_graph, target="p")

    def test_is_applicable(self, regression_graph) -> None:
        assert RW().is_applicable(regression_graph, target="b0")
        assert not RW().is_applicable(regression_graph, target="y")
        assert not Binary().is_applicable(regression_graph, target="b0")


# ── TestBinding ──────────────────────────────────────────────────────────────


class TestBinding:
    """The immutable product of the setup stage."""

    def test_plans_are_resolved(self, regression_graph) -> None:
        rw = specialize(RW, regression_graph, target="b0")
        assert rw.binding.plans["calc"].names == ("b0", "p", "y")
        assert rw.binding.backups["calc"].indices == (1, 3, 4)

    def test_fields_are_read_only(self, regression_graph) -> None:
        binding = specialize(RW, regression_graph, target="b0").binding
        assert isinstance(binding.plans, MappingProxyType)
        with pytest.raises(TypeError):
            binding.control["scale"] = 3.0
        with pytest.raises(AttributeError):
            binding.control = {}

    def test_replace_creates_new_binding(self, regression_graph) -> None:
        binding = specialize(RW, regression_graph, target="b0").binding
        replaced = binding.replace(extras={"log": True})
        assert isinstance(replaced, Binding)
        assert replaced is not binding
        assert replaced.extras["log"] is True
        assert binding.extras["log"] is False
        assert replaced.plans["calc"] is binding.plans["calc"]

    def test_control_overrides(self, regression_graph) -> None:
        rw = specialize(RW, regression_graph, target="b0", control={"scale": 0.5})
        assert rw.control["scale"] == 0.5
        assert rw.state.scale == 0.5
        assert RW.CONTROL["scale"] == 1.0

    def test_scratch_shapes(self, regression_graph) -> None:
        recorder = specialize(
            Recorder, regression_graph, target="b0", other=["b1", "b0"], control={"width": 2}
        )
        scratch = recorder.binding.scratch
        assert scratch["fixed"].shape == (2, 3)
        assert scratch["like_target"].shape == ()
        assert scratch["flat"].shape == (2,)
        assert np.all(scratch["flat"] == -1.0)
        assert scratch["formula"].shape == (2, 2)

    def test_scratch_like_multi_node_target(self, regression_graph) -> None:
        with pytest.raises(ShapeIncompatible, match="exactly one node"):
            specialize(Recorder, regression_graph, target=["b0", "b1"], other="b1")

    def test_plan_seeded_by_several_targets(self, regression_graph) -> None:
        recorder = specialize(Recorder, regression_graph, target="b0", other="b1")
        assert recorder.binding.plans["both"].names == ("b0", "b1", "p")

    def test_flat_layout(self, regression_graph) -> None:
        layout = FlatLayout((regression_graph.node("b1"), regression_graph.node("x")))
        assert layout.size == 5
        vector = layout.gather(regression_graph.store, np.empty(5))
        assert vector[0] == regression_graph["b1"]
        np.testing.assert_array_equal(vector[1:], regression_graph["x"])


# ── TestRunStage ─────────────────────────────────────────────────────────────


class TestRunStage:
    """Running specialized instances against value stores."""

    def test_run_and_call(self, regression_graph) -> None:
        recorder = specialize(Recorder, regression_graph, target="b0", other="b1")
        assert recorder.run() == 1
        assert recorder() == 2
        assert recorder.state.calls == 2

    def test_other_structure_rejected(self, regression_graph, regression_relations) -> None:
        rw = specialize(RW, regression_graph, target="b0")
        other = ModelGraph(regression_relations, seed=1)
        with pytest.raises(SpecializationError, match="different model structure"):
            rw.run(store=other.store)

    def test_copy_store_accepted(self, regression_graph) -> None:
        """A copy shares the structure, so its store can be used."""
        rw = specialize(RW, regression_graph, target="b0", control={"scale": 5.0})
        before = regression_graph["b0"]
        copy = regression_graph.copy(seed=1)
        for _ in range(100):
            rw.run(store=copy.store)

        assert regression_graph["b0"] == before
        assert rw.state.n_proposed == 100
        assert copy["b0"] != before

    def test_reset(self, regression_graph) -> None:
        rw = specialize(RW, regression_graph, target="b0", control={"adapt_interval": 5})
        for _ in range(10):
            rw.run()
        assert rw.state.n_proposed == 10
        rw.reset()
        assert rw.state.n_proposed == 0
        assert rw.state.scale == 1.0
        assert rw.state.scale_history == []

    def test_fresh(self, regression_graph) -> None:
        """Fresh instances share plans but not mutable buffers or state."""
        block = specialize(RWBlock, regression_graph, target=["b0", "b1"])
        block.run()
        fresh = block.fresh()

        assert fresh.binding.plans["calc"] is block.binding.plans["calc"]
        assert fresh.binding.backups["calc"] is not block.binding.backups["calc"]
        assert fresh.binding.scratch["current"] is not block.binding.scratch["current"]
        assert fresh.state is not block.state
        assert fresh.state.n_proposed == 0
        assert block.state.n_proposed == 1

    def test_run_state(self) -> None:
        state = RunState({"count": 0, "items": []})
        state.count += 1
        state.items.append(1)
        state.extra = True
        assert state.as_dict() == {"count": 1, "items": [1], "extra": True}
        state.reset()
        assert state.as_dict() == {"count": 0, "items": []}

    def test_acceptance_rate(self, regression_graph) -> None:
        rw = specialize(RW, regression_graph, target="b0")
        assert np.isnan(rw.acceptance_rate)
        for _ in range(50):
            rw.run()
        assert 0.0 <= rw.acceptance_rate <= 1.0
        assert rw.acceptance_rate == rw.state.n_accepted / 50

    def test_acceptance_rate_untracked(self, predictive_graph) -> None:
        simulator = specialize(NodeSimulator, predictive_graph, target="ypred")
        simulator.run()
        assert np.isnan(simulator.acceptance_rate)

    def test_unknown_attribute(self, regression_graph) -> None:
        rw = specialize(RW, regression_graph, target="b0")
        with pytest.raises(AttributeError):
            rw.pack()

    def test_repr(self, regression_graph) -> None:
        rw = specialize(RW, regression_graph, target="b0")
        assert isinstance(rw, SpecializedAlgorithm)
        assert repr(rw) == "SpecializedAlgorithm(RW(b0))"
        assert repr(rw.binding) == "Binding(RW: b0)"


# ── TestTemplateValidation ───────────────────────────────────────────────────


class TestTemplateValidation:
    """Declarations are checked when a template class is defined."""

    def test_name_defaults_to_class_name(self) -> None:
        assert Recorder.NAME == "Recorder"

    def test_empty_targets(self) -> None:
        with pytest.raises(TypeError, match="TARGETS"):

            class NoTargets(AlgorithmTemplate):  # pylint: disable=unused-variable
                TARGETS = ()

                def run(self, instance, store):
                    pass

    def test_targets_must_be_tuple(self) -> None:
        with pytest.raises(TypeError, match="TARGETS"):

            class ListTargets(AlgorithmTemplate):  # pylint: disable=unused-variable
                TARGETS = ["target"]

                def run(self, instance, store):
                    pass

    def test_dependency_must_be_spec(self) -> None:
        with pytest.raises(TypeError, match="DependencySpec"):

            class BadDependency(AlgorithmTemplate):  # pylint: disable=unused-variable
                DEPENDENCIES = {"calc": "target"}

                def run(self, instance, store):
                    pass

    def test_dependency_undeclared_seed(self) -> None:
        with pytest.raises(TypeError, match="undeclared target"):

            class BadSeed(AlgorithmTemplate):  # pylint: disable=unused-variable
                DEPENDENCIES = {"calc": DependencySpec("wrt")}

                def run(self, instance, store):
                    pass

    def test_saved_undeclared_plan(self) -> None:
        with pytest.raises(TypeError, match="SAVED"):

            class BadSaved(AlgorithmTemplate):  # pylint: disable=unused-variable
                SAVED = ("calc",)

                def run(self, instance, store):
                    pass

    def test_scratch_must_be_spec(self) -> None:
        with pytest.raises(TypeError, match="ScratchSpec"):

            class BadScratch(AlgorithmTemplate):  # pylint: disable=unused-variable
                SCRATCH = {"buffer": (3,)}

                def run(self, instance, store):
                    pass

    def test_conflicting_flags(self) -> None:
        with pytest.raises(TypeError, match="continuous-only and discrete-only"):

            class Conflicted(AlgorithmTemplate):  # pylint: disable=unused-variable
                CONTINUOUS_ONLY = True
                DISCRETE_ONLY = True

                def run(self, instance, store):
                    pass

    def test_missing_method(self) -> None:
        with pytest.raises(TypeError, match="missing method 'gradient'"):

            class NoGradient(AlgorithmTemplate):  # pylint: disable=unused-variable
                METHODS = ("gradient",)

                def run(self, instance, store):
                    pass


# ── TestSamplerSetup ─────────────────────────────────────────────────────────


class TestSamplerSetup:
    """Setup-stage products of the built-in samplers."""

    def test_log_scale_chosen_from_support(self, gamma_poisson_graph, regression_graph) -> None:
        assert specialize(RW, gamma_poisson_graph, target="lam").binding.extras["log"]
        assert not specialize(RW, regression_graph, target="b0").binding.extras["log"]

    def test_log_scale_needs_non_negative_support(self, regression_graph) -> None:
        with pytest.raises(SpecializationError, match="non-negative"):
            specialize(RW, regression_graph, target="b0", control={"log": True})

    def test_log_scale_can_be_disabled(self, gamma_poisson_graph) -> None:
        rw = specialize(RW, gamma_poisson_graph, target="lam", control={"log": False})
        assert not rw.binding.extras["log"]


# ── TestObjectives ───────────────────────────────────────────────────────────


class TestObjectives:
    """Log probability, objective function and simulation templates."""

    def test_log_probability_recomputes_deterministic_parents(self, regression_graph) -> None:
        calculator = specialize(LogProbabilityCalculator, regression_graph, target="y")
        regression_graph.set_value("b0", 1.0)

        prob = special.expit(1.0 + regression_graph["b1"] * regression_graph["x"])
        expected = stats.bernoulli.logpmf([0, 0, 1, 1], prob).sum()
        assert calculator.run() == pytest.approx(expected)

    def test_log_probability_of_several_nodes(self, regression_graph) -> None:
        calculator = specialize(LogProbabilityCalculator, regression_graph, target=["b0", "b1"])
        expected = stats.norm.logpdf(
            [regression_graph["b0"], regression_graph["b1"]], 0.0, 2.0
        ).sum()
        assert calculator.run() == pytest.approx(expected)

    def test_objective_pack_and_unpack(self, regression_graph) -> None:
        objective = specialize(ObjectiveFunction, regression_graph, wrt=["b1", "b0"])
        packed = objective.pack()
        np.testing.assert_array_equal(
            packed, [regression_graph["b1"], regression_graph["b0"]]
        )

        objective.unpack(np.array([0.25, -0.5]))
        assert regression_graph["b1"] == 0.25
        assert regression_graph["b0"] == -0.5

        with pytest.raises(ValueError, match="size 2"):
            objective.unpack(np.zeros(3))

    def test_objective_value(self, regression_graph) -> None:
        objective = specialize(ObjectiveFunction, regression_graph, wrt=["b0", "b1"])
        negated = specialize(
            ObjectiveFunction, regression_graph, wrt=["b0", "b1"], control={"negate": True}
        )
        value = objective.run(np.array([0.1, 0.2]))
        assert value == pytest.approx(regression_graph.calculate())
        assert negated.run() == pytest.approx(-value)

    def test_objective_is_minimizable(self) -> None:
        """The maximum a posteriori estimate of a normal mean."""
        data = np.array([1.0, 2.0, 3.0])
        graph = ModelGraph(
            [
                rel.stochastic("mu", "normal", mean=0.0, sd=10.0),
                rel.stochastic("y", "normal", mean=rel.ref("mu"), sd=1.0, data=data),
            ],
            inits={"mu": 0.0},
            seed=0,
        )
        graph.initialize()
        objective = specialize(ObjectiveFunction, graph, wrt="mu", control={"negate": True})

        result = optimize.minimize(objective.run, objective.pack())
        assert result.x[0] == pytest.approx(data.sum() / (len(data) + 0.01), rel=1e-4)

    def test_objective_rejects_discrete_nodes(self) -> None:
        graph = ModelGraph([rel.stochastic("k", "pois", lambda_=3.0)], seed=0)
        with pytest.raises(ShapeIncompatible):
            specialize(ObjectiveFunction, graph, wrt="k")

    def test_node_simulator(self, predictive_graph) -> None:
        simulator = specialize(NodeSimulator, predictive_graph, target=["ypred", "y"])
        observed = predictive_graph["y"]
        draws = set()
        for _ in range(5):
            simulator.run()
            draws.add(float(predictive_graph["ypred"]))
        assert len(draws) == 5
        np.testing.assert_array_equal(predictive_graph["y"], observed)

    def test_node_simulator_including_data(self, predictive_graph) -> None:
        simulator = specialize(
            NodeSimulator, predictive_graph, target="y", control={"include_data": True}
        )
        observed = predictive_graph["y"]
        simulator.run()
        assert not np.array_equal(predictive_graph["y"], observed)
        assert predictive_graph.is_data("y")
