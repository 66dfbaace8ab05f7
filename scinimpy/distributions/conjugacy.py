# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Conjugate prior/likelihood pairs and their posterior updates.

A :py:class:`ConjugacyRule` states that a prior of one distribution family,
combined with dependents of another family that use the prior node *directly* as
one of their supplied parameters, has a posterior in the prior's family. Each rule
turns every dependent into a small set of sufficient statistics. The statistics
are summed over dependents and combined with the prior parameters to give the
posterior parameters.

Rules are matched on registry names: the prior node's distribution name, the
dependent node's distribution name, and the name of the parameter (as supplied by
the user, so ``tau`` for a normal written with precision) that references the
prior node.
"""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np
import numpy.typing as npt


def reduce_to_shape(array: npt.NDArray, shape: tuple[int, ...]) -> npt.NDArray:
    """Sum an array down to a shape it was broadcast from.

    :param array: Array to reduce
    :type array: npt.NDArray
    :param shape: Target shape. Broadcasting ``shape`` against the array's shape
        must give the array's shape.
    :type shape: tuple[int, ...]

    :returns: Reduced array with the target shape
    :rtype: npt.NDArray
    """
    reduced = np.asarray(array, dtype=np.float64)

    # Sum away leading dimensions
    n_extra = reduced.ndim - len(shape)
    if n_extra > 0:
        reduced = np.asarray(reduced.sum(axis=tuple(range(n_extra))))

    # Sum over dimensions that were broadcast from size 1
    axes = tuple(
        i
        for i, (have, want) in enumerate(zip(reduced.shape, shape))
        if want == 1 and have != 1
    )
    if axes:
        reduced = np.asarray(reduced.sum(axis=axes, keepdims=True))

    return np.broadcast_to(reduced, shape)


class ConjugacyRule:
    """A conjugate prior/dependent pair.

    :param prior: Registry name of the prior distribution
    :type prior: str
    :param dependent: Registry name of the dependent distribution
    :type dependent: str
    :param link: Supplied parameter of the dependent that must be exactly the
        prior node
    :type link: str
    :param statistics: Function ``(value, params) -> dict`` giving the sufficient
        statistics contributed by one dependent. ``params`` holds the dependent's
        canonical parameters.
    :type statistics: Callable
    :param posterior: Function ``(prior_params, stats) -> dict`` giving the
        canonical posterior parameters from the prior's canonical parameters and
        the summed statistics
    :type posterior: Callable
    """

    def __init__(
        self,
        prior: str,
        dependent: str,
        link: str,
        statistics: Callable[[npt.NDArray, dict], dict],
        posterior: Callable[[dict, dict], dict],
    ):
        self.prior = prior
        self.dependent = dependent
        self.link = link
        self.statistics = statistics
        self.posterior = posterior

    def update(
        self,
        prior_params: dict[str, npt.NDArray],
        dependents: list[tuple[npt.NDArray, dict[str, npt.NDArray]]],
        shape: tuple[int, ...],
    ) -> dict[str, npt.NDArray]:
        """Compute posterior parameters.

        :param prior_params: Canonical parameters of the prior node
        :type prior_params: dict[str, npt.NDArray]
        :param dependents: ``(value, canonical params)`` for each dependent
        :type dependents: list[tuple[npt.NDArray, dict[str, npt.NDArray]]]
        :param shape: Shape of the prior node
        :type shape: tuple[int, ...]

        :returns: Canonical posterior parameters
        :rtype: dict[str, npt.NDArray]
        """
        totals: dict[str, npt.NDArray] = {}
        for value, params in dependents:
            for name, stat in self.statistics(value, params).items():
                reduced = reduce_to_shape(
                    np.broadcast_to(stat, np.shape(value)), shape
                )
                totals[name] = totals.get(name, 0.0) + reduced
        return {
            name: np.asarray(value, dtype=np.float64)
            for name, value in self.posterior(prior_params, totals).items()
        }

    def __repr__(self) -> str:
        return f"ConjugacyRule({self.prior} -> {self.dependent}[{self.link}])"


def _beta_posterior(prior: dict, stats: dict) -> dict:
    return {
        "shape1": prior["shape1"] + stats["successes"],
        "shape2": prior["shape2"] + stats["failures"],
    }


def _gamma_posterior(prior: dict, stats: dict) -> dict:
    return {"alpha": prior["alpha"] + stats["shape"], "beta": prior["beta"] + stats["rate"]}


def _normal_posterior(prior: dict, stats: dict) -> dict:
    prior_precision = 1 / prior["sd"] ** 2
    precision = prior_precision + stats["precision"]
    mean = (prior["mean"] * prior_precision + stats["weighted"]) / precision
    return {"mean": mean, "sd": 1 / np.sqrt(precision)}


CONJUGACY_RULES: list[ConjugacyRule] = [
    ConjugacyRule(
        "beta",
        "bern",
        "prob",
        lambda x, p: {"successes": x, "failures": 1 - x},
        _beta_posterior,
    ),
    ConjugacyRule(
        "beta",
        "binom",
        "prob",
        lambda x, p: {"successes": x, "failures": p["size"] - x},
        _beta_posterior,
    ),
    ConjugacyRule(
        "gamma",
        "pois",
        "lambda_",
        lambda x, p: {"shape": x, "rate": np.ones_like(x)},
        _gamma_posterior,
    ),
    ConjugacyRule(
        "gamma",
        "exp",
        "rate",
        lambda x, p: {"shape": np.ones_like(x), "rate": x},
        _gamma_posterior,
    ),
    ConjugacyRule(
        "gamma",
        "normal",
        "tau",
        lambda x, p: {"shape": np.full_like(x, 0.5), "rate": (x - p["mean"]) ** 2 / 2},
        _gamma_posterior,
    ),
    ConjugacyRule(
        "normal",
        "normal",
        "mean",
        lambda x, p: {"precision": 1 / p["sd"] ** 2, "weighted": x / p["sd"] ** 2},
        _normal_posterior,
    ),
]
"""Known conjugate pairs. Extend with :py:func:`register_conjugacy_rule`."""


def register_conjugacy_rule(rule: ConjugacyRule) -> None:
    """Add a conjugacy rule, replacing any rule for the same triple.

    :param rule: Rule to add
    :type rule: ConjugacyRule
    """
    CONJUGACY_RULES[:] = [
        existing
        for existing in CONJUGACY_RULES
        if (existing.prior, existing.dependent, existing.link)
        != (rule.prior, rule.dependent, rule.link)
    ] + [rule]


def find_conjugacy_rule(
    prior: str, dependent: str, link: str
) -> Optional[ConjugacyRule]:
    """Find the rule for a prior, dependent and linking parameter.

    :param prior: Registry name of the prior distribution
    :type prior: str
    :param dependent: Registry name of the dependent distribution
    :type dependent: str
    :param link: Supplied parameter of the dependent referencing the prior
    :type link: str

    :returns: Matching rule, or None if there is none
    :rtype: Optional[ConjugacyRule]
    """
    for rule in CONJUGACY_RULES:
        if (rule.prior, rule.dependent, rule.link) == (prior, dependent, link):
            return rule
    return None
