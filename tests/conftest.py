"""Shared fixtures for SciNimPy tests.

Provides small model graphs covering the node kinds and sampler defaults: a
logistic regression with a deterministic node between stochastic parents and
observed data, a gamma-Poisson model with a conjugate rate, and a model with a
latent node that has no observed descendants.
"""

import numpy as np
import pytest

import scinimpy as snp

from scinimpy import operations as ops
from scinimpy.distributions.builtin import register_builtin_distributions
from scinimpy.distributions.registry import DistributionRegistry
from scinimpy.model import relations as rel
from scinimpy.model.graph import ModelGraph

# ── Seeding ──────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def seed_global_rng():
    """Make graphs built without an explicit seed reproducible."""
    snp.manual_seed(1025)


# ── Registries ───────────────────────────────────────────────────────────────


@pytest.fixture
def empty_registry() -> DistributionRegistry:
    """A registry with nothing registered."""
    return DistributionRegistry()


@pytest.fixture
def builtin_registry() -> DistributionRegistry:
    """An isolated registry holding the built-in catalogue."""
    registry = DistributionRegistry()
    register_builtin_distributions(registry)
    return registry


# ── Graphs ───────────────────────────────────────────────────────────────────


def _regression_relations() -> list:
    """y ~ bern(p), p <- expit(b0 + b1 * x)."""
    return [
        rel.constant("x", [-1.5, -0.5, 0.5, 1.5]),
        rel.stochastic("b0", "normal", mean=0.0, sd=2.0),
        rel.stochastic("b1", "normal", mean=0.0, sd=2.0),
        rel.deterministic("p", ops.expit(rel.ref("b0") + rel.ref("b1") * rel.ref("x"))),
        rel.stochastic("y", "bern", prob=rel.ref("p"), data=[0, 0, 1, 1]),
    ]


@pytest.fixture
def regression_relations() -> list:
    """Relations of the logistic regression."""
    return _regression_relations()


@pytest.fixture
def regression_graph() -> ModelGraph:
    """Logistic regression with observed outcomes."""
    graph = ModelGraph(_regression_relations(), seed=11)
    graph.initialize()
    return graph


@pytest.fixture
def gamma_poisson_graph() -> ModelGraph:
    """Poisson counts with a gamma-distributed rate."""
    graph = ModelGraph(
        [
            rel.stochastic("lam", "gamma", alpha=2.0, beta=1.0),
            rel.stochastic("y", "pois", lambda_=rel.ref("lam"), data=[3, 1, 4, 1, 5]),
        ],
        seed=5,
    )
    graph.initialize()
    return graph


@pytest.fixture
def predictive_graph() -> ModelGraph:
    """A normal mean with data, plus a prediction node with no data below it."""
    graph = ModelGraph(
        [
            rel.stochastic("mu", "normal", mean=0.0, sd=5.0),
            rel.stochastic("sigma", "unif", min=0.0, max=10.0),
            rel.stochastic(
                "y",
                "normal",
                mean=rel.ref("mu"),
                sd=rel.ref("sigma"),
                data=np.array([0.3, -0.2, 1.1, 0.8, 0.4, 0.9]),
            ),
            rel.stochastic("ypred", "normal", mean=rel.ref("mu"), sd=rel.ref("sigma")),
        ],
        inits={"mu": 0.0, "sigma": 1.0},
        seed=3,
    )
    graph.initialize()
    return graph
