# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Built-in distribution catalogue.

Most built-in distributions wrap a ``scipy.stats`` distribution. Canonical
parameter names are mapped to SciPy argument names through ``NAME_TO_SCIPY_NAMES``
and, where the two parameterizations differ, converted through
``NAME_TO_SCIPY_TRANSFORMS`` (for instance, a rate becomes a SciPy scale).

The following distributions are registered by
:py:func:`register_builtin_distributions`:

Continuous Univariate
^^^^^^^^^^^^^^^^^^^^^
- ``normal``: :py:class:`Normal`
- ``lnorm``: :py:class:`LogNormal`
- ``exp``: :py:class:`Exponential`
- ``gamma``: :py:class:`Gamma`
- ``invgamma``: :py:class:`InverseGamma`
- ``beta``: :py:class:`Beta`
- ``unif``: :py:class:`Uniform`
- ``t``: :py:class:`StudentT`

Continuous Multivariate
^^^^^^^^^^^^^^^^^^^^^^^
- ``dirch``: :py:class:`Dirichlet`

Discrete Univariate
^^^^^^^^^^^^^^^^^^^
- ``bern``: :py:class:`Bernoulli`
- ``binom``: :py:class:`Binomial`
- ``pois``: :py:class:`Poisson`
- ``cat``: :py:class:`Categorical`
"""

from __future__ import annotations

from typing import Any, Callable, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scipy import special, stats

from scinimpy.distributions.descriptor import (
    DistributionDescriptor,
    ParameterInfo,
    Parameterization,
)

if TYPE_CHECKING:
    from scinimpy.distributions.registry import DistributionRegistry


def _inverse_transform(x: npt.NDArray) -> npt.NDArray:
    """Convert a rate to a scale and vice versa."""
    return np.asarray(1 / x)


def _exp_transform(x: npt.NDArray) -> npt.NDArray:
    """Convert a log-scale location to a SciPy scale."""
    return np.asarray(np.exp(x))


class ScipyDistribution(DistributionDescriptor):
    """Descriptor backed by a ``scipy.stats`` distribution.

    :cvar SCIPY_DIST: SciPy distribution object
    :cvar NAME_TO_SCIPY_NAMES: Mapping from canonical parameter names to SciPy
        argument names
    :cvar NAME_TO_SCIPY_TRANSFORMS: Functions converting canonical parameter values
        to SciPy argument values. Parameters without an entry pass through.
    """

    SCIPY_DIST: stats.rv_continuous | stats.rv_discrete | None = None
    """The SciPy distribution wrapped by this descriptor."""

    NAME_TO_SCIPY_NAMES: dict[str, str] = {}
    """Canonical parameter name to SciPy argument name."""

    NAME_TO_SCIPY_TRANSFORMS: dict[str, Callable[[npt.NDArray], npt.NDArray]] = {}
    """Canonical parameter value to SciPy argument value."""

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)

        # Every canonical parameter needs a SciPy name unless the subclass
        # builds its own SciPy arguments
        if (
            cls.SCIPY_DIST is not None
            and cls._scipy_kwargs is ScipyDistribution._scipy_kwargs
            and (missing := {p.name for p in cls.PARAMETERS} - set(cls.NAME_TO_SCIPY_NAMES))
        ):
            raise TypeError(
                f"{cls.__name__} does not map parameters to SciPy names: "
                f"{', '.join(sorted(missing))}"
            )

    def _scipy_kwargs(self, **params: npt.NDArray) -> dict[str, npt.NDArray]:
        """Convert canonical parameters to SciPy keyword arguments.

        Parameters declared with an integer dtype are passed as integers when they
        are finite.
        """
        integer_params = {p.name for p in self.PARAMETERS if p.dtype == "integer"}
        kwargs = {}
        for name, value in params.items():
            if name in integer_params and np.all(np.isfinite(value)):
                value = np.asarray(np.rint(value)).astype(np.int64)
            transform = self.NAME_TO_SCIPY_TRANSFORMS.get(name, lambda x: x)
            kwargs[self.NAME_TO_SCIPY_NAMES[name]] = transform(value)
        return kwargs

    def _logpdf(self, x: npt.NDArray, **params: npt.NDArray) -> Any:
        kwargs = self._scipy_kwargs(**params)
        if self.DISCRETE:
            return self.SCIPY_DIST.logpmf(x, **kwargs)
        return self.SCIPY_DIST.logpdf(x, **kwargs)

    def _rvs(
        self, shape: tuple[int, ...], rng: np.random.Generator, **params: npt.NDArray
    ) -> Any:
        return self.SCIPY_DIST.rvs(
            **self._scipy_kwargs(**params), size=shape, random_state=rng
        )


class Normal(ScipyDistribution):
    r"""Normal distribution parameterized by mean and standard deviation.

    Alternate parameterizations use the precision ``tau`` or the variance ``var``
    in place of ``sd``.

    Mathematical Definition:
        .. math::
            P(x | \mu, \sigma) = \frac{1}{\sigma\sqrt{2\pi}} *
            \exp\left(-\frac{((x-\mu)/\sigma)^2}{2}\right)
    """

    PARAMETERS = (ParameterInfo("mean"), ParameterInfo("sd"))
    PARAMETERIZATIONS = (
        Parameterization(["mean", "tau"], sd=lambda tau: 1 / np.sqrt(tau)),
        Parameterization(["mean", "var"], sd=lambda var: np.sqrt(var)),
    )
    ALT_PARAMS = {"tau": lambda sd: 1 / sd**2, "var": lambda sd: sd**2}
    SCIPY_DIST = stats.norm
    NAME_TO_SCIPY_NAMES = {"mean": "loc", "sd": "scale"}


class LogNormal(ScipyDistribution):
    """Log-normal distribution parameterized on the log scale."""

    PARAMETERS = (ParameterInfo("meanlog"), ParameterInfo("sdlog"))
    PARAMETERIZATIONS = (
        Parameterization(["meanlog", "taulog"], sdlog=lambda taulog: 1 / np.sqrt(taulog)),
    )
    ALT_PARAMS = {"taulog": lambda sdlog: 1 / sdlog**2}
    LOWER_BOUND = 0.0
    SCIPY_DIST = stats.lognorm
    NAME_TO_SCIPY_NAMES = {"meanlog": "scale", "sdlog": "s"}
    NAME_TO_SCIPY_TRANSFORMS = {"meanlog": _exp_transform}


class Exponential(ScipyDistribution):
    r"""Exponential distribution parameterized by its rate.

    Mathematical Definition:
        .. math::
            P(x | \lambda) = \lambda e^{-\lambda x} \text{ for } x \geq 0
    """

    PARAMETERS = (ParameterInfo("rate"),)
    PARAMETERIZATIONS = (Parameterization(["scale"], rate=lambda scale: 1 / scale),)
    ALT_PARAMS = {"scale": lambda rate: 1 / rate}
    LOWER_BOUND = 0.0
    SCIPY_DIST = stats.expon
    NAME_TO_SCIPY_NAMES = {"rate": "scale"}
    NAME_TO_SCIPY_TRANSFORMS = {"rate": _inverse_transform}


class Gamma(ScipyDistribution):
    r"""Gamma distribution parameterized by shape (alpha) and rate (beta).

    Mathematical Definition:
        .. math::
            P(x | \alpha, \beta) = \frac{\beta^\alpha}{\Gamma(\alpha)} *
            x^{\alpha - 1} e^{-\beta x} \text{ for } x > 0

    The distribution can also be specified through ``alpha`` and ``scale``, or
    through its ``mean`` and ``sd``.
    """

    PARAMETERS = (ParameterInfo("alpha"), ParameterInfo("beta"))
    PARAMETERIZATIONS = (
        Parameterization(["alpha", "scale"], beta=lambda scale: 1 / scale),
        Parameterization(
            ["mean", "sd"],
            alpha=lambda mean, sd: mean**2 / sd**2,
            beta=lambda mean, sd: mean / sd**2,
        ),
    )
    ALT_PARAMS = {
        "scale": lambda beta: 1 / beta,
        "mean": lambda alpha, beta: alpha / beta,
        "sd": lambda alpha, beta: np.sqrt(alpha) / beta,
    }
    LOWER_BOUND = 0.0
    SCIPY_DIST = stats.gamma
    NAME_TO_SCIPY_NAMES = {"alpha": "a", "beta": "scale"}
    NAME_TO_SCIPY_TRANSFORMS = {"beta": _inverse_transform}


class InverseGamma(ScipyDistribution):
    """Inverse-gamma distribution parameterized by shape (alpha) and scale (beta)."""

    PARAMETERS = (ParameterInfo("alpha"), ParameterInfo("beta"))
    PARAMETERIZATIONS = (Parameterization(["alpha", "rate"], beta=lambda rate: 1 / rate),)
    ALT_PARAMS = {
        "rate": lambda beta: 1 / beta,
        "mean": lambda alpha, beta: beta / (alpha - 1),
    }
    LOWER_BOUND = 0.0
    SCIPY_DIST = stats.invgamma
    NAME_TO_SCIPY_NAMES = {"alpha": "a", "beta": "scale"}


class Beta(ScipyDistribution):
    """Beta distribution parameterized by its two shape parameters, or by its mean
    and standard deviation.
    """

    PARAMETERS = (ParameterInfo("shape1"), ParameterInfo("shape2"))
    PARAMETERIZATIONS = (
        Parameterization(
            ["mean", "sd"],
            shape1=lambda mean, sd: mean * (mean * (1 - mean) / sd**2 - 1),
            shape2=lambda mean, sd: (1 - mean) * (mean * (1 - mean) / sd**2 - 1),
        ),
    )
    ALT_PARAMS = {"mean": lambda shape1, shape2: shape1 / (shape1 + shape2)}
    LOWER_BOUND = 0.0
    UPPER_BOUND = 1.0
    SCIPY_DIST = stats.beta
    NAME_TO_SCIPY_NAMES = {"shape1": "a", "shape2": "b"}


class Uniform(ScipyDistribution):
    """Continuous uniform distribution on ``[min, max]``.

    The support of a node depends on its parameters, so values outside
    ``[min, max]`` are handled by the density rather than the support check.
    """

    PARAMETERS = (ParameterInfo("min"), ParameterInfo("max"))
    SCIPY_DIST = stats.uniform

    def _scipy_kwargs(self, **params: npt.NDArray) -> dict[str, npt.NDArray]:
        return {"loc": params["min"], "scale": np.asarray(params["max"] - params["min"])}


class StudentT(ScipyDistribution):
    """Location-scale Student-t distribution."""

    PARAMETERS = (ParameterInfo("mu"), ParameterInfo("sigma"), ParameterInfo("df"))
    PARAMETERIZATIONS = (
        Parameterization(["mu", "tau", "df"], sigma=lambda tau: 1 / np.sqrt(tau)),
    )
    ALT_PARAMS = {"tau": lambda sigma: 1 / sigma**2}
    SCIPY_DIST = stats.t
    NAME_TO_SCIPY_NAMES = {"mu": "loc", "sigma": "scale", "df": "df"}


class Bernoulli(ScipyDistribution):
    """Bernoulli distribution on ``{0, 1}``."""

    PARAMETERS = (ParameterInfo("prob"),)
    LOWER_BOUND = 0.0
    UPPER_BOUND = 1.0
    DISCRETE = True
    SCIPY_DIST = stats.bernoulli
    NAME_TO_SCIPY_NAMES = {"prob": "p"}


class Binomial(ScipyDistribution):
    """Binomial distribution with success probability ``prob`` and ``size`` trials."""

    PARAMETERS = (ParameterInfo("prob"), ParameterInfo("size", dtype="integer"))
    ALT_PARAMS = {"mean": lambda prob, size: prob * size}
    LOWER_BOUND = 0.0
    DISCRETE = True
    SCIPY_DIST = stats.binom
    NAME_TO_SCIPY_NAMES = {"prob": "p", "size": "n"}


class Poisson(ScipyDistribution):
    """Poisson distribution with rate ``lambda_``."""

    PARAMETERS = (ParameterInfo("lambda_"),)
    LOWER_BOUND = 0.0
    DISCRETE = True
    SCIPY_DIST = stats.poisson
    NAME_TO_SCIPY_NAMES = {"lambda_": "mu"}


class Categorical(DistributionDescriptor):
    """Categorical distribution over ``1, ..., K``.

    The probability vector occupies the last dimension of ``prob`` and is
    normalized before use, so unnormalized weights are accepted.
    """

    PARAMETERS = (ParameterInfo("prob", rank=1),)
    LOWER_BOUND = 1.0
    DISCRETE = True

    @staticmethod
    def _normalize(prob: npt.NDArray) -> npt.NDArray:
        prob = np.asarray(prob, dtype=np.float64)
        return prob / prob.sum(axis=-1, keepdims=True)

    def _logpdf(self, x: npt.NDArray, **params: npt.NDArray) -> Any:
        prob = self._normalize(params["prob"])

        # Categories beyond the length of the probability vector are impossible
        x = np.asarray(x)
        if np.any(x > prob.shape[-1]):
            return -np.inf

        # Pick out the probability of each observed category
        prob = np.broadcast_to(prob, x.shape + prob.shape[-1:])
        picked = np.take_along_axis(prob, x.astype(int)[..., None] - 1, axis=-1)
        return np.log(picked)

    def _rvs(
        self, shape: tuple[int, ...], rng: np.random.Generator, **params: npt.NDArray
    ) -> Any:
        prob = self._normalize(params["prob"])
        cdf = np.cumsum(np.broadcast_to(prob, shape + prob.shape[-1:]), axis=-1)
        draws = rng.uniform(size=shape + (1,))
        return np.minimum((draws > cdf).sum(axis=-1) + 1, prob.shape[-1])


class Dirichlet(DistributionDescriptor):
    r"""Dirichlet distribution over the probability simplex.

    Mathematical Definition:
        .. math::
            P(x | \alpha) = \frac{\Gamma(\sum_i \alpha_i)}{\prod_i \Gamma(\alpha_i)}
            \prod_i x_i^{\alpha_i - 1}

    Values whose last dimension does not sum to one lie outside the support.
    """

    PARAMETERS = (ParameterInfo("alpha", rank=1),)
    LOWER_BOUND = 0.0
    UPPER_BOUND = 1.0
    VALUE_RANK = 1

    def in_support(self, x: npt.NDArray) -> bool:
        return super().in_support(x) and bool(
            np.allclose(np.sum(x, axis=-1), 1.0, atol=1e-8)
        )

    def _logpdf(self, x: npt.NDArray, **params: npt.NDArray) -> Any:
        alpha = np.asarray(params["alpha"], dtype=np.float64)
        return (
            np.sum(special.xlogy(alpha - 1, x), axis=-1)
            + special.gammaln(alpha.sum(axis=-1))
            - special.gammaln(alpha).sum(axis=-1)
        )

    def _rvs(
        self, shape: tuple[int, ...], rng: np.random.Generator, **params: npt.NDArray
    ) -> Any:
        draws = rng.gamma(np.broadcast_to(params["alpha"], shape))
        return draws / draws.sum(axis=-1, keepdims=True)


BUILTIN_DISTRIBUTIONS: dict[str, type[DistributionDescriptor]] = {
    "normal": Normal,
    "lnorm": LogNormal,
    "exp": Exponential,
    "gamma": Gamma,
    "invgamma": InverseGamma,
    "beta": Beta,
    "unif": Uniform,
    "t": StudentT,
    "bern": Bernoulli,
    "binom": Binomial,
    "pois": Poisson,
    "cat": Categorical,
    "dirch": Dirichlet,
}
"""Built-in distribution names and the descriptor classes implementing them."""


def register_builtin_distributions(registry: "DistributionRegistry") -> None:
    """Add the built-in catalogue to a registry.

    :param registry: Registry to populate
    :type registry: DistributionRegistry
    """
    for name, descriptor_class in BUILTIN_DISTRIBUTIONS.items():
        registry.register(name, descriptor_class(name))
