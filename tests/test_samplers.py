"""Tests for the built-in samplers and the conjugacy rules behind them."""

import numpy as np
import pytest

from scipy import stats

from scinimpy.algorithms import samplers
from scinimpy.algorithms.samplers import (
    RW,
    Binary,
    Categorical,
    Conjugate,
    PosteriorPredictive,
    RWBlock,
    Slice,
    find_conjugate_dependents,
    get_sampler,
)
from scinimpy.algorithms.specialization import specialize
from scinimpy.distributions import conjugacy
from scinimpy.distributions.conjugacy import (
    ConjugacyRule,
    find_conjugacy_rule,
    reduce_to_shape,
    register_conjugacy_rule,
)
from scinimpy.exceptions import SpecializationError
from scinimpy.model import relations as rel
from scinimpy.model.graph import ModelGraph

# ── Helpers ──────────────────────────────────────────────────────────────────


def _draws(instance, graph, name, n):
    """Run an instance n times, recording a node's value after each run."""
    draws = []
    for _ in range(n):
        instance.run()
        draws.append(graph[name])
    return np.array(draws)


def _assert_cache_consistent(graph):
    """Cached log probabilities must match a fresh calculation."""
    for name in graph.get_node_names("stochastic"):
        assert graph.get_log_prob(name) == pytest.approx(graph.calculate_log_prob(name))


@pytest.fixture
def normal_mean_graph() -> ModelGraph:
    """A normal mean with a wide prior and three observations."""
    graph = ModelGraph(
        [
            rel.stochastic("mu", "normal", mean=0.0, sd=10.0),
            rel.stochastic("y", "normal", mean=rel.ref("mu"), sd=1.0, data=[1.0, 2.0, 3.0]),
        ],
        inits={"mu": 0.0},
        seed=21,
    )
    graph.initialize()
    return graph


# ── TestMetropolisHastings ───────────────────────────────────────────────────


class TestMetropolisHastings:
    """The shared accept/reject policy."""

    def test_rejection_restores_state_exactly(self, predictive_graph) -> None:
        """Proposals far outside the support are rejected without a trace."""
        rw = specialize(
            RW, predictive_graph, target="sigma", control={"scale": 1e6, "adaptive": False}
        )
        store = predictive_graph.store
        values = [value.copy() for value in store.values]
        logprobs = store.logprobs.copy()

        for _ in range(10):
            assert rw.run() is False

        for before, after in zip(values, store.values):
            np.testing.assert_array_equal(before, after)
        np.testing.assert_array_equal(logprobs, store.logprobs)
        assert rw.state.n_proposed == 10
        assert rw.state.n_accepted == 0
        assert rw.acceptance_rate == 0.0

    def test_acceptance_counted(self, normal_mean_graph) -> None:
        rw = specialize(RW, normal_mean_graph, target="mu", control={"scale": 0.5})
        accepted = sum(rw.run() for _ in range(200))
        assert rw.state.n_accepted == accepted
        assert 0 < accepted < 200
        _assert_cache_consistent(normal_mean_graph)


# ── TestRW ───────────────────────────────────────────────────────────────────


class TestRW:
    """Adaptive univariate random walk."""

    def test_adaptation(self, normal_mean_graph) -> None:
        rw = specialize(
            RW,
            normal_mean_graph,
            target="mu",
            control={"scale": 1e-3, "adapt_interval": 10, "scale_history": True},
        )
        for _ in range(40):
            rw.run()

        assert rw.state.times_adapted == 4
        assert rw.state.times_ran == 0
        assert len(rw.state.scale_history) == 4
        assert rw.state.scale_history[-1] == rw.state.scale

        # Nearly every tiny step is accepted, so the scale must grow
        assert rw.state.scale > 1e-3
        assert np.all(np.diff(rw.state.scale_history) > 0)

    def test_no_adaptation(self, normal_mean_graph) -> None:
        rw = specialize(
            RW, normal_mean_graph, target="mu", control={"adaptive": False, "adapt_interval": 10}
        )
        for _ in range(50):
            rw.run()
        assert rw.state.scale == 1.0
        assert rw.state.times_adapted == 0
        assert rw.state.scale_history == []

    def test_posterior_mean(self, normal_mean_graph) -> None:
        rw = specialize(RW, normal_mean_graph, target="mu")
        draws = _draws(rw, normal_mean_graph, "mu", 5000)[1000:]
        assert draws.mean() == pytest.approx(6.0 / 3.01, abs=0.1)
        assert draws.std() == pytest.approx(1 / np.sqrt(3.01), abs=0.1)

    def test_log_scale_walk(self, gamma_poisson_graph) -> None:
        rw = specialize(RW, gamma_poisson_graph, target="lam")
        draws = _draws(rw, gamma_poisson_graph, "lam", 5000)
        assert np.all(draws > 0)
        assert draws[1000:].mean() == pytest.approx(16 / 6, abs=0.15)
        _assert_cache_consistent(gamma_poisson_graph)


# ── TestRWBlock ──────────────────────────────────────────────────────────────


class TestRWBlock:
    """Adaptive multivariate random walk."""

    def test_joint_update(self, regression_graph) -> None:
        block = specialize(RWBlock, regression_graph, target=["b0", "b1"])
        before = regression_graph.get_value("b0"), regression_graph.get_value("b1")
        accepted = [block.run() for _ in range(50)]
        assert any(accepted)
        assert regression_graph["b0"] != before[0]
        assert regression_graph["b1"] != before[1]
        _assert_cache_consistent(regression_graph)

    def test_adaptation(self, regression_graph) -> None:
        block = specialize(
            RWBlock,
            regression_graph,
            target=["b0", "b1"],
            control={"adapt_interval": 50, "scale_history": True},
        )
        for _ in range(300):
            block.run()

        assert block.state.times_adapted == 6
        assert len(block.state.scale_history) == 6
        assert block.binding.scratch["history"].shape == (50, 2)
        prop_cov = block.state.prop_cov
        np.testing.assert_allclose(prop_cov, prop_cov.T)
        np.testing.assert_allclose(block.state.chol @ block.state.chol.T, prop_cov)

    def test_initial_covariance(self, regression_graph) -> None:
        block = specialize(
            RWBlock,
            regression_graph,
            target=["b0", "b1"],
            control={"prop_cov": [[1.0, 0.5], [0.5, 2.0]]},
        )
        np.testing.assert_allclose(
            block.state.chol @ block.state.chol.T, [[1.0, 0.5], [0.5, 2.0]]
        )

    def test_vector_node(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("v", "normal", mean=np.zeros(3), sd=1.0),
                rel.stochastic("y", "normal", mean=rel.ref("v"), sd=1.0, data=[1.0, 0.0, -1.0]),
            ],
            seed=2,
        )
        graph.initialize()
        block = specialize(RWBlock, graph, target="v")
        draws = _draws(block, graph, "v", 6000)
        assert draws.shape == (6000, 3)
        np.testing.assert_allclose(draws[1000:].mean(axis=0), [0.5, 0.0, -0.5], atol=0.15)


# ── TestSlice ────────────────────────────────────────────────────────────────


class TestSlice:
    """Univariate slice sampling."""

    def test_posterior_mean(self, normal_mean_graph) -> None:
        slicer = specialize(Slice, normal_mean_graph, target="mu")
        draws = _draws(slicer, normal_mean_graph, "mu", 3000)[500:]
        assert draws.mean() == pytest.approx(6.0 / 3.01, abs=0.1)
        _assert_cache_consistent(normal_mean_graph)

    def test_discrete_node(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("k", "pois", lambda_=3.0),
                rel.stochastic("y", "normal", mean=rel.ref("k"), sd=1.0, data=[4.2]),
            ],
            seed=4,
        )
        graph.initialize()
        slicer = specialize(Slice, graph, target="k")
        draws = _draws(slicer, graph, "k", 500)
        assert np.all(draws >= 0)
        np.testing.assert_array_equal(draws, np.floor(draws))
        assert len(np.unique(draws)) > 1

    def test_width_adapts(self, normal_mean_graph) -> None:
        slicer = specialize(
            Slice, normal_mean_graph, target="mu", control={"width": 50.0, "adapt_interval": 20}
        )
        for _ in range(100):
            slicer.run()
        assert slicer.state.times_adapted == 5
        assert slicer.state.width < 50.0


# ── TestGibbs ────────────────────────────────────────────────────────────────


class TestGibbs:
    """Samplers that draw from exact conditional distributions."""

    def test_binary(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("z", "bern", prob=0.3),
                rel.deterministic("m", rel.ref("z") * 3.0),
                rel.stochastic("y", "normal", mean=rel.ref("m"), sd=1.0, data=[1.4]),
            ],
            seed=8,
        )
        graph.initialize()
        binary = specialize(Binary, graph, target="z")
        draws = _draws(binary, graph, "z", 4000)

        weights = np.array([0.7, 0.3]) * stats.norm.pdf(1.4, [0.0, 3.0], 1.0)
        assert set(np.unique(draws)) <= {0.0, 1.0}
        assert draws.mean() == pytest.approx(weights[1] / weights.sum(), abs=0.03)

        # The deterministic child follows the draw
        assert graph["m"] == 3.0 * graph["z"]
        _assert_cache_consistent(graph)

    def test_categorical(self) -> None:
        prob = np.array([0.2, 0.3, 0.5])
        graph = ModelGraph(
            [
                rel.stochastic("z", "cat", prob=prob),
                rel.stochastic("y", "normal", mean=rel.ref("z"), sd=1.0, data=[2.0]),
            ],
            seed=9,
        )
        graph.initialize()
        categorical = specialize(Categorical, graph, target="z")
        np.testing.assert_array_equal(categorical.binding.extras["categories"], [1, 2, 3])
        assert categorical.state.logprobs.shape == (3,)

        draws = _draws(categorical, graph, "z", 4000)
        weights = prob * stats.norm.pdf(2.0, [1.0, 2.0, 3.0], 1.0)
        frequencies = [(draws == k).mean() for k in (1, 2, 3)]
        np.testing.assert_allclose(frequencies, weights / weights.sum(), atol=0.03)
        _assert_cache_consistent(graph)

    def test_categorical_with_unnormalized_weights(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("z", "cat", prob=[1.0, 0.0, 3.0]),
                rel.stochastic("y", "normal", mean=rel.ref("z"), sd=1.0, data=[2.0]),
            ],
            seed=10,
        )
        graph.initialize()
        categorical = specialize(Categorical, graph, target="z")
        draws = _draws(categorical, graph, "z", 500)
        assert not np.any(draws == 2)


# ── TestConjugate ────────────────────────────────────────────────────────────


class TestConjugate:
    """Draws from closed-form conditional posteriors."""

    def test_gamma_poisson(self, gamma_poisson_graph) -> None:
        conjugate = specialize(Conjugate, gamma_poisson_graph, target="lam")
        assert conjugate.binding.extras["rule"].link == "lambda_"
        assert [d.name for d in conjugate.binding.extras["dependents"]] == ["y"]

        # A single update leaves a finite positive scalar
        conjugate.run()
        assert np.shape(gamma_poisson_graph["lam"]) == ()
        assert np.isfinite(gamma_poisson_graph["lam"]) and gamma_poisson_graph["lam"] > 0

        draws = _draws(conjugate, gamma_poisson_graph, "lam", 4000)
        assert draws.mean() == pytest.approx(16 / 6, abs=0.05)
        assert draws.var() == pytest.approx(16 / 36, abs=0.05)
        _assert_cache_consistent(gamma_poisson_graph)

    def test_beta_binomial(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("p", "beta", shape1=1.0, shape2=1.0),
                rel.stochastic("y", "binom", prob=rel.ref("p"), size=10, data=3),
            ],
            seed=13,
        )
        graph.initialize()
        conjugate = specialize(Conjugate, graph, target="p")

        draws = _draws(conjugate, graph, "p", 4000)
        assert draws.mean() == pytest.approx(4 / 12, abs=0.02)
        _assert_cache_consistent(graph)

    def test_gamma_normal_precision(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("tau", "gamma", alpha=1.0, beta=1.0),
                rel.stochastic(
                    "y", "normal", mean=0.0, tau=rel.ref("tau"), data=[1.0, -1.0, 2.0, -2.0]
                ),
            ],
            seed=12,
        )
        graph.initialize()
        conjugate = specialize(Conjugate, graph, target="tau")
        draws = _draws(conjugate, graph, "tau", 4000)
        assert draws.mean() == pytest.approx(3 / 6, abs=0.03)

    def test_normal_mean(self, normal_mean_graph) -> None:
        conjugate = specialize(Conjugate, normal_mean_graph, target="mu")
        draws = _draws(conjugate, normal_mean_graph, "mu", 4000)
        assert draws.mean() == pytest.approx(6.0 / 3.01, abs=0.05)
        assert draws.std() == pytest.approx(1 / np.sqrt(3.01), abs=0.05)

    def test_vector_prior_with_broadcast_dependent(self) -> None:
        """Statistics are summed over the dimensions the prior was broadcast along."""
        graph = ModelGraph(
            [
                rel.stochastic("lam", "gamma", alpha=np.ones(2), beta=1.0),
                rel.stochastic(
                    "y", "pois", lambda_=rel.ref("lam"), data=[[1, 10], [3, 20], [2, 30]]
                ),
            ],
            seed=13,
        )
        graph.initialize()
        conjugate = specialize(Conjugate, graph, target="lam")
        draws = _draws(conjugate, graph, "lam", 2000)
        np.testing.assert_allclose(draws.mean(axis=0), [7 / 4, 61 / 4], rtol=0.05)

    def test_not_conjugate(self, regression_graph) -> None:
        with pytest.raises(SpecializationError, match="not conjugate"):
            specialize(Conjugate, regression_graph, target="b0")

    def test_find_conjugate_dependents(
        self, gamma_poisson_graph, predictive_graph, regression_graph
    ) -> None:
        rule, dependents = find_conjugate_dependents(predictive_graph, "mu")
        assert (rule.prior, rule.dependent, rule.link) == ("normal", "normal", "mean")
        assert tuple(d.name for d in dependents) == ("y", "ypred")

        assert find_conjugate_dependents(gamma_poisson_graph, "lam") is not None
        assert find_conjugate_dependents(predictive_graph, "sigma") is None
        assert find_conjugate_dependents(regression_graph, "b0") is None
        assert find_conjugate_dependents(regression_graph, "p") is None

    def test_transformed_link_is_not_conjugate(self) -> None:
        graph = ModelGraph(
            [
                rel.stochastic("lam", "gamma", alpha=2.0, beta=1.0),
                rel.stochastic("y", "pois", lambda_=rel.ref("lam") * 2, data=[3, 1]),
            ],
            seed=0,
        )
        assert find_conjugate_dependents(graph, "lam") is None


# ── TestPosteriorPredictive ──────────────────────────────────────────────────


class TestPosteriorPredictive:
    """Prior draws for nodes without downstream data."""

    def test_draws_node(self, predictive_graph) -> None:
        predictive = specialize(PosteriorPredictive, predictive_graph, target="ypred")
        draws = _draws(predictive, predictive_graph, "ypred", 20)
        assert len(np.unique(draws)) == 20
        _assert_cache_consistent(predictive_graph)

    def test_rejects_node_with_downstream_data(self, predictive_graph) -> None:
        with pytest.raises(SpecializationError, match="downstream data"):
            specialize(PosteriorPredictive, predictive_graph, target="mu")


# ── TestRegistry ─────────────────────────────────────────────────────────────


class TestRegistry:
    """Sampler lookup by name."""

    @pytest.mark.parametrize(
        "name, template",
        [
            ("RW", RW),
            ("RW_block", RWBlock),
            ("slice", Slice),
            ("binary", Binary),
            ("categorical", Categorical),
            ("conjugate", Conjugate),
            ("posterior_predictive", PosteriorPredictive),
        ],
    )
    def test_get_sampler(self, name, template) -> None:
        assert get_sampler(name) is template
        assert samplers.SAMPLERS[name] is template

    def test_unknown_sampler(self) -> None:
        with pytest.raises(KeyError, match="Options are"):
            get_sampler("HMC")


# ── TestConjugacyRules ───────────────────────────────────────────────────────


class TestConjugacyRules:
    """The table of conjugate pairs."""

    @pytest.mark.parametrize(
        "shape, expected",
        [
            ((3,), [4.0, 4.0, 4.0]),
            ((4, 1), [[3.0], [3.0], [3.0], [3.0]]),
            ((1, 3), [[4.0, 4.0, 4.0]]),
            ((), 12.0),
            ((4, 3), np.ones((4, 3))),
        ],
    )
    def test_reduce_to_shape(self, shape, expected) -> None:
        reduced = reduce_to_shape(np.ones((4, 3)), shape)
        assert reduced.shape == shape
        np.testing.assert_array_equal(reduced, expected)

    @pytest.mark.parametrize("array", [np.ones(4), np.ones((2, 2)), np.array(4.0)])
    def test_reduce_to_scalar(self, array) -> None:
        reduced = reduce_to_shape(array, ())
        assert isinstance(reduced, np.ndarray)
        assert reduced.shape == ()
        assert float(reduced) == 4.0

    @pytest.mark.parametrize(
        "prior, dependent, link",
        [
            ("beta", "bern", "prob"),
            ("beta", "binom", "prob"),
            ("gamma", "pois", "lambda_"),
            ("gamma", "exp", "rate"),
            ("gamma", "normal", "tau"),
            ("normal", "normal", "mean"),
        ],
    )
    def test_known_rules(self, prior, dependent, link) -> None:
        rule = find_conjugacy_rule(prior, dependent, link)
        assert (rule.prior, rule.dependent, rule.link) == (prior, dependent, link)

    def test_unknown_rule(self) -> None:
        assert find_conjugacy_rule("normal", "normal", "sd") is None

    def test_beta_binomial_update(self) -> None:
        rule = find_conjugacy_rule("beta", "binom", "prob")
        posterior = rule.update(
            {"shape1": np.array(1.0), "shape2": np.array(2.0)},
            [(np.array([3.0, 5.0]), {"prob": np.array(0.5), "size": np.array([10.0, 10.0])})],
            (),
        )
        assert float(posterior["shape1"]) == 9.0
        assert float(posterior["shape2"]) == 14.0

    def test_register_rule(self, monkeypatch) -> None:
        monkeypatch.setattr(conjugacy, "CONJUGACY_RULES", list(conjugacy.CONJUGACY_RULES))
        n_rules = len(conjugacy.CONJUGACY_RULES)

        def posterior(prior, stats_):
            return {"alpha": prior["alpha"] + stats_["shape"], "beta": prior["beta"]}

        rule = ConjugacyRule("gamma", "pois", "lambda_", lambda x, p: {"shape": x}, posterior)
        register_conjugacy_rule(rule)
        assert len(conjugacy.CONJUGACY_RULES) == n_rules
        assert find_conjugacy_rule("gamma", "pois", "lambda_") is rule

        register_conjugacy_rule(
            ConjugacyRule("gamma", "gamma", "beta", lambda x, p: {}, posterior)
        )
        assert len(conjugacy.CONJUGACY_RULES) == n_rules + 1
