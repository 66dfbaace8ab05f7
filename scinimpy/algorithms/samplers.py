# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""MCMC sampler templates.

Every sampler updates the values of its target node(s) in place, leaving the
target, its downstream deterministic nodes and the cached log probabilities of the
affected stochastic nodes consistent with one another.

Metropolis-Hastings samplers share one rejection policy: the state touched by the
proposal is saved before proposing, and restored exactly when the proposal is
rejected. A proposal is always rejected when the change in log probability is NaN,
so a proposal with a log probability of ``-inf`` is never accepted from a state
with a finite one.

Available samplers:

    - :py:class:`RW`: adaptive univariate random walk Metropolis-Hastings
    - :py:class:`RWBlock`: adaptive multivariate random walk Metropolis-Hastings
    - :py:class:`Slice`: univariate slice sampling with stepping out and shrinkage
    - :py:class:`Binary`: Gibbs sampling of Bernoulli nodes
    - :py:class:`Categorical`: Gibbs sampling of categorical nodes
    - :py:class:`Conjugate`: draws from closed-form conditional posteriors
    - :py:class:`PosteriorPredictive`: draws nodes without downstream data from
      their priors

All samplers expect the cached log probabilities of the graph to be up to date
when they run, which :py:meth:`~scinimpy.model.graph.ModelGraph.initialize`
ensures.
"""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

import numpy as np

from scinimpy import utils
from scinimpy.algorithms.template import (
    AlgorithmTemplate,
    DependencySpec,
    FlatLayout,
    ScratchSpec,
)
from scinimpy.defaults import (
    DEFAULT_ADAPT,
    DEFAULT_ADAPT_FACTOR_EXPONENT,
    DEFAULT_ADAPT_INTERVAL,
    DEFAULT_RW_BLOCK_OPTIMAL_ACCEPTANCE,
    DEFAULT_RW_OPTIMAL_ACCEPTANCE,
    DEFAULT_SCALE,
    DEFAULT_SCALE_HISTORY,
    DEFAULT_SLICE_ADAPT_INTERVAL,
    DEFAULT_SLICE_MAX_STEPS,
    DEFAULT_SLICE_WIDTH,
)
from scinimpy.distributions.conjugacy import ConjugacyRule, find_conjugacy_rule
from scinimpy.exceptions import ShapeIncompatible, SpecializationError

if TYPE_CHECKING:
    from scinimpy.algorithms.specialization import Binding, SpecializedAlgorithm
    from scinimpy.model.calculation import ValueStore
    from scinimpy.model.components.abstract_model_component import AbstractNode
    from scinimpy.model.graph import ModelGraph


def _metropolis_hastings(
    instance: "SpecializedAlgorithm",
    store: "ValueStore",
    log_proposal_ratio: float = 0.0,
) -> bool:
    """Accept or reject the proposal already written to the target(s).

    The "calc" plan is recalculated and the saved state restored on rejection.
    """
    binding = instance.binding
    log_ratio = binding.plans["calc"].calculate_diff(store) + log_proposal_ratio

    # NaN ratios are always rejected
    accepted = bool(np.log(store.rng.uniform()) < log_ratio)
    if not accepted:
        binding.backups["calc"].restore(store)

    instance.state.n_proposed += 1
    instance.state.n_accepted += int(accepted)
    return accepted


def _adaptation_factor(times_adapted: int, exponent: float) -> float:
    return 1 / ((times_adapted + 3) ** exponent)


class RW(AlgorithmTemplate):
    """Adaptive random walk Metropolis-Hastings for scalar continuous nodes.

    Proposals are normal with standard deviation ``scale``. When the node's
    support is ``[0, inf)`` the walk is made on the log scale, with the Jacobian of
    the transformation included in the acceptance ratio.

    Every ``adapt_interval`` iterations, the scale is multiplied by
    ``exp(10 * g * (acceptance - 0.44))``, where ``g`` decays with the number of
    adaptations made so far.

    Control values:

        - ``adaptive``: Whether the scale adapts
        - ``adapt_interval``: Iterations between adaptations
        - ``adapt_factor_exponent``: Decay exponent of the adaptation
        - ``scale``: Initial proposal standard deviation
        - ``log``: Walk on the log scale. None chooses from the support.
        - ``scale_history``: Whether to record the scale after each adaptation
    """

    NAME = "RW"
    DEPENDENCIES = {"calc": DependencySpec()}
    SAVED = ("calc",)
    SCALAR_ONLY = True
    CONTINUOUS_ONLY = True
    CONTROL = {
        "adaptive": DEFAULT_ADAPT,
        "adapt_interval": DEFAULT_ADAPT_INTERVAL,
        "adapt_factor_exponent": DEFAULT_ADAPT_FACTOR_EXPONENT,
        "scale": DEFAULT_SCALE,
        "log": None,
        "scale_history": DEFAULT_SCALE_HISTORY,
    }

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        lower, upper = binding.target.support
        log = binding.control["log"]
        if log is None:
            log = lower == 0 and upper == np.inf
        elif log and lower < 0:
            raise SpecializationError(
                f"A log-scale walk needs non-negative support; '{binding.target.name}' "
                f"has support ({lower}, {upper})"
            )
        return {"log": bool(log)}

    def initial_state(self, binding: "Binding", control: dict[str, Any]) -> dict[str, Any]:
        return {
            "scale": float(control["scale"]),
            "times_ran": 0,
            "times_accepted": 0,
            "times_adapted": 0,
            "n_proposed": 0,
            "n_accepted": 0,
            "scale_history": [],
        }

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> bool:
        binding, state = instance.binding, instance.state
        value = store.values[binding.target.index]
        current = float(value.reshape(-1)[0])

        # Save, then propose
        binding.backups["calc"].save(store)
        if binding.extras["log"]:
            step = store.rng.normal(0.0, state.scale)
            value[...] = current * np.exp(step)
            log_proposal_ratio = step
        else:
            value[...] = current + store.rng.normal(0.0, state.scale)
            log_proposal_ratio = 0.0

        accepted = _metropolis_hastings(instance, store, log_proposal_ratio)
        if binding.control["adaptive"]:
            self._adapt(instance, accepted)
        return accepted

    @staticmethod
    def _adapt(instance: "SpecializedAlgorithm", accepted: bool) -> None:
        control, state = instance.control, instance.state
        state.times_ran += 1
        state.times_accepted += int(accepted)
        if state.times_ran % control["adapt_interval"] != 0:
            return

        # Move the scale toward the optimal acceptance rate
        acceptance = state.times_accepted / state.times_ran
        state.times_adapted += 1
        gamma1 = _adaptation_factor(state.times_adapted, control["adapt_factor_exponent"])
        state.scale *= np.exp(10 * gamma1 * (acceptance - DEFAULT_RW_OPTIMAL_ACCEPTANCE))
        if control["scale_history"]:
            state.scale_history.append(state.scale)
        state.times_ran = 0
        state.times_accepted = 0


class RWBlock(AlgorithmTemplate):
    """Adaptive multivariate random walk Metropolis-Hastings.

    Updates one or more continuous nodes jointly with multivariate normal proposals
    ``scale * L z``, where ``L`` is the Cholesky factor of the proposal covariance.
    Both the scale and the proposal covariance adapt: every ``adapt_interval``
    iterations the scale moves toward an acceptance rate of 0.234 and the
    covariance moves toward the empirical covariance of the recent samples.

    Control values are those of :py:class:`RW` (without ``log``) plus
    ``prop_cov``, the initial proposal covariance (None for the identity).
    """

    NAME = "RW_block"
    MAX_TARGET_NODES = None
    DEPENDENCIES = {"calc": DependencySpec()}
    SAVED = ("calc",)
    SCRATCH = {
        "current": ScratchSpec("target:flat"),
        "history": ScratchSpec(
            lambda shapes, control: (
                control["adapt_interval"],
                int(sum(np.prod(s, dtype=int) for s in shapes["target"])),
            )
        ),
    }
    CONTINUOUS_ONLY = True
    CONTROL = {
        "adaptive": DEFAULT_ADAPT,
        "adapt_interval": DEFAULT_ADAPT_INTERVAL,
        "adapt_factor_exponent": DEFAULT_ADAPT_FACTOR_EXPONENT,
        "scale": DEFAULT_SCALE,
        "prop_cov": None,
        "scale_history": DEFAULT_SCALE_HISTORY,
    }

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        layout = FlatLayout(binding.targets["target"])
        prop_cov = binding.control["prop_cov"]
        if prop_cov is not None and np.shape(prop_cov) != (layout.size, layout.size):
            raise ShapeIncompatible(
                f"prop_cov must have shape {(layout.size, layout.size)}, got "
                f"{np.shape(prop_cov)}"
            )
        return {"layout": layout}

    def initial_state(self, binding: "Binding", control: dict[str, Any]) -> dict[str, Any]:
        size = binding.extras["layout"].size
        prop_cov = (
            np.eye(size)
            if control["prop_cov"] is None
            else np.array(control["prop_cov"], dtype=np.float64)
        )
        return {
            "scale": float(control["scale"]),
            "prop_cov": prop_cov,
            "chol": np.linalg.cholesky(prop_cov),
            "times_ran": 0,
            "times_accepted": 0,
            "times_adapted": 0,
            "n_proposed": 0,
            "n_accepted": 0,
            "scale_history": [],
        }

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> bool:
        binding, state = instance.binding, instance.state
        layout = binding.extras["layout"]
        current = layout.gather(store, binding.scratch["current"])

        # Save, then propose
        binding.backups["calc"].save(store)
        step = state.chol @ store.rng.standard_normal(layout.size)
        layout.scatter(store, current + state.scale * step)

        accepted = _metropolis_hastings(instance, store)
        if binding.control["adaptive"]:
            self._adapt(instance, store, accepted)
        return accepted

    @staticmethod
    def _adapt(instance: "SpecializedAlgorithm", store: "ValueStore", accepted: bool) -> None:
        binding, control, state = instance.binding, instance.control, instance.state
        history = binding.scratch["history"]
        binding.extras["layout"].gather(store, history[state.times_ran])
        state.times_ran += 1
        state.times_accepted += int(accepted)
        if state.times_ran % control["adapt_interval"] != 0:
            return

        # Adapt the scale
        acceptance = state.times_accepted / state.times_ran
        state.times_adapted += 1
        gamma1 = _adaptation_factor(state.times_adapted, control["adapt_factor_exponent"])
        state.scale *= np.exp(
            10 * gamma1 * (acceptance - DEFAULT_RW_BLOCK_OPTIMAL_ACCEPTANCE)
        )
        if control["scale_history"]:
            state.scale_history.append(state.scale)

        # Adapt the covariance. The Cholesky factor is kept if the update is not
        # positive definite.
        if state.times_accepted > 0:
            empirical = np.atleast_2d(np.cov(history, rowvar=False))
            prop_cov = state.prop_cov + gamma1 * (empirical - state.prop_cov)
            try:
                state.chol = np.linalg.cholesky(prop_cov)
                state.prop_cov = prop_cov
            except np.linalg.LinAlgError:
                pass
        state.times_ran = 0
        state.times_accepted = 0


class Slice(AlgorithmTemplate):
    """Univariate slice sampler with stepping out and shrinkage.

    Works for continuous and discrete scalar nodes. Discrete nodes are evaluated
    at the floor of each candidate. The slice width adapts toward twice the mean
    jump size.

    Control values:

        - ``adaptive``: Whether the width adapts
        - ``adapt_interval``: Iterations between adaptations
        - ``adapt_factor_exponent``: Decay exponent of the adaptation
        - ``width``: Initial slice width
        - ``max_steps``: Maximum number of stepping-out steps
        - ``max_contractions``: Maximum number of shrinkage steps before the
          current value is kept
    """

    NAME = "slice"
    DEPENDENCIES = {"calc": DependencySpec()}
    SAVED = ("calc",)
    SCALAR_ONLY = True
    CONTROL = {
        "adaptive": DEFAULT_ADAPT,
        "adapt_interval": DEFAULT_SLICE_ADAPT_INTERVAL,
        "adapt_factor_exponent": DEFAULT_ADAPT_FACTOR_EXPONENT,
        "width": DEFAULT_SLICE_WIDTH,
        "max_steps": DEFAULT_SLICE_MAX_STEPS,
        "max_contractions": 1000,
    }

    def initial_state(self, binding: "Binding", control: dict[str, Any]) -> dict[str, Any]:
        return {
            "width": float(control["width"]),
            "times_ran": 0,
            "times_adapted": 0,
            "sum_jumps": 0.0,
            "n_contraction_failures": 0,
        }

    @staticmethod
    def _log_prob_at(
        instance: "SpecializedAlgorithm", store: "ValueStore", x: float
    ) -> float:
        target = instance.binding.target
        store.values[target.index][...] = np.floor(x) if target.discrete else x
        logprob = instance.binding.plans["calc"].calculate(store)
        return -np.inf if np.isnan(logprob) else logprob

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> float:
        binding, control, state = instance.binding, instance.control, instance.state
        rng = store.rng
        x0 = float(store.values[binding.target.index].reshape(-1)[0])
        binding.backups["calc"].save(store)

        # Height of the slice
        height = binding.plans["calc"].get_log_prob(store) - rng.exponential()

        # Step out
        width = state.width
        left = x0 - rng.uniform() * width
        right = left + width
        j = int(np.floor(rng.uniform() * control["max_steps"]))
        k = control["max_steps"] - 1 - j
        while j > 0 and self._log_prob_at(instance, store, left) > height:
            left -= width
            j -= 1
        while k > 0 and self._log_prob_at(instance, store, right) > height:
            right += width
            k -= 1

        # Shrink until a point inside the slice is found
        for _ in range(control["max_contractions"]):
            x1 = left + rng.uniform() * (right - left)
            if self._log_prob_at(instance, store, x1) >= height:
                break
            if x1 < x0:
                left = x1
            else:
                right = x1
        else:
            state.n_contraction_failures += 1
            binding.backups["calc"].restore(store)
            x1 = x0

        x1 = float(store.values[binding.target.index].reshape(-1)[0])
        if control["adaptive"]:
            self._adapt(instance, abs(x1 - x0))
        return x1

    @staticmethod
    def _adapt(instance: "SpecializedAlgorithm", jump: float) -> None:
        control, state = instance.control, instance.state
        state.times_ran += 1
        state.sum_jumps += jump
        if state.times_ran % control["adapt_interval"] != 0:
            return
        state.times_adapted += 1
        factor = _adaptation_factor(state.times_adapted, control["adapt_factor_exponent"])
        mean_jump = state.sum_jumps / state.times_ran
        state.width += (2 * mean_jump - state.width) * factor
        state.times_ran = 0
        state.sum_jumps = 0.0


class Binary(AlgorithmTemplate):
    """Gibbs sampler for scalar Bernoulli nodes.

    Both values are evaluated and one is drawn in proportion to the conditional
    posterior.
    """

    NAME = "binary"
    DEPENDENCIES = {"calc": DependencySpec()}
    SAVED = ("calc",)
    SCALAR_ONLY = True
    SUPPORTED_DISTRIBUTIONS = ("bern",)

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> float:
        binding = instance.binding
        plan = binding.plans["calc"]
        value = store.values[binding.target.index]
        current = float(value.reshape(-1)[0])

        # Evaluate the other value
        current_logprob = plan.get_log_prob(store)
        binding.backups["calc"].save(store)
        value[...] = 1.0 - current
        other_logprob = plan.calculate(store)

        # Keep the other value with its conditional probability
        prob_other = utils.stable_sigmoid(np.array(other_logprob - current_logprob))
        if not store.rng.uniform() < prob_other:
            binding.backups["calc"].restore(store)
            return current
        return 1.0 - current


class Categorical(AlgorithmTemplate):
    """Gibbs sampler for scalar categorical nodes.

    Every category is evaluated and one is drawn in proportion to the conditional
    posterior. The number of categories is fixed at setup from the shape of the
    node's ``prob`` parameter.
    """

    NAME = "categorical"
    DEPENDENCIES = {"calc": DependencySpec()}
    SAVED = ("calc",)
    SCALAR_ONLY = True
    SUPPORTED_DISTRIBUTIONS = ("cat",)

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        n_categories = graph.get_param(binding.target.name, "prob").shape[-1]
        return {"categories": np.arange(1, n_categories + 1, dtype=np.float64)}

    def initial_state(self, binding: "Binding", control: dict[str, Any]) -> dict[str, Any]:
        return {"logprobs": np.full(len(binding.extras["categories"]), -np.inf)}

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> float:
        binding = instance.binding
        plan = binding.plans["calc"]
        logprobs = instance.state.logprobs
        categories = binding.extras["categories"]
        value = store.values[binding.target.index]
        binding.backups["calc"].save(store)

        # Evaluate every category
        for i, category in enumerate(categories):
            value[...] = category
            logprobs[i] = plan.calculate(store)
        logprobs[np.isnan(logprobs)] = -np.inf

        # Nothing has positive probability
        top = logprobs.max()
        if not np.isfinite(top):
            binding.backups["calc"].restore(store)
            return float(value.reshape(-1)[0])

        # Draw and set the category
        weights = np.exp(logprobs - top)
        choice = categories[store.rng.choice(len(categories), p=weights / weights.sum())]
        value[...] = choice
        plan.calculate(store)
        return float(choice)


def find_conjugate_dependents(
    graph: "ModelGraph", name: str
) -> tuple[ConjugacyRule, tuple["AbstractNode", ...]] | None:
    """Find the conjugacy rule and dependents of a node, if it is conjugate.

    A node is conjugate when it has no deterministic descendants on the way to its
    stochastic dependents, every dependent references it through exactly one
    supplied parameter with no transformation, and every (prior, dependent,
    parameter) triple has a rule with the same posterior update.

    :param graph: Graph to inspect
    :type graph: ModelGraph
    :param name: Name of the candidate node
    :type name: str

    :returns: The first rule and the dependents, or None if the node is not
        conjugate
    :rtype: Optional[tuple[ConjugacyRule, tuple[AbstractNode, ...]]]
    """
    target = graph.node(name)
    if not target.is_stochastic:
        return None
    dependents = tuple(graph.node(n) for n in graph.get_dependencies(name, include_self=False))
    if not dependents or any(not node.is_stochastic for node in dependents):
        return None

    rules = []
    for dependent in dependents:
        links = dependent.linking_params(name)
        if len(links) != 1 or not dependent.links_directly(links[0], name):
            return None
        rule = find_conjugacy_rule(target.distribution, dependent.distribution, links[0])
        if rule is None:
            return None
        rules.append(rule)

    if any(rule.posterior is not rules[0].posterior for rule in rules[1:]):
        return None
    return rules[0], dependents


class Conjugate(AlgorithmTemplate):
    """Draws a node from its closed-form conditional posterior.

    The matching :py:class:`~scinimpy.distributions.conjugacy.ConjugacyRule` and
    the dependents are found at setup. Each run evaluates the prior and dependent
    parameters, computes the posterior parameters, and draws from the prior's
    distribution with them.
    """

    NAME = "conjugate"
    DEPENDENCIES = {"calc": DependencySpec()}

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        found = find_conjugate_dependents(graph, binding.target.name)
        if found is None:
            raise SpecializationError(f"Node '{binding.target.name}' is not conjugate")
        rule, dependents = found
        return {"rule": rule, "dependents": dependents}

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> None:
        binding = instance.binding
        target = binding.target
        posterior = binding.extras["rule"].update(
            target.params(store),
            [(store.values[d.index], d.params(store)) for d in binding.extras["dependents"]],
            target.shape,
        )
        store.values[target.index][...] = target.descriptor.sample(
            posterior, target.shape, store.rng
        )
        binding.plans["calc"].calculate(store)


class PosteriorPredictive(AlgorithmTemplate):
    """Draws a node with no downstream data from its prior.

    The node and its downstream deterministic nodes are simulated, then the log
    probabilities of the node and its stochastic dependents are recalculated.
    """

    NAME = "posterior_predictive"
    DEPENDENCIES = {
        "simulate": DependencySpec(include_stochastic=False),
        "calc": DependencySpec(),
    }

    def setup(self, graph: "ModelGraph", binding: "Binding") -> dict[str, Any]:
        if graph.has_downstream_data(binding.target.name):
            raise SpecializationError(
                f"Node '{binding.target.name}' has downstream data"
            )
        return {}

    def run(self, instance: "SpecializedAlgorithm", store: "ValueStore") -> None:
        plans = instance.binding.plans
        plans["simulate"].simulate(store, store.rng)
        plans["calc"].calculate(store)


SAMPLERS: dict[str, type[AlgorithmTemplate]] = {
    sampler.NAME: sampler
    for sampler in (RW, RWBlock, Slice, Binary, Categorical, Conjugate, PosteriorPredictive)
}
"""Sampler templates by name."""


def get_sampler(name: str) -> type[AlgorithmTemplate]:
    """Get a sampler template by name.

    :raises KeyError: If there is no such sampler
    """
    try:
        return SAMPLERS[name]
    except KeyError as error:
        raise KeyError(
            f"Unknown sampler '{name}'. Options are: {', '.join(SAMPLERS)}"
        ) from error
