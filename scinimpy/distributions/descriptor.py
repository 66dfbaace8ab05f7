# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Distribution descriptors: the capability interface behind stochastic nodes.

Every distribution that can be attached to a stochastic node is described by an
instance of :py:class:`DistributionDescriptor`. The descriptor is the only thing
the engine knows about a distribution, and it is resolved exactly once, when the
model graph is built. From then on, stochastic nodes call the descriptor directly;
there is no name-based dispatch at run time.

A descriptor exposes:

    - **Parameter metadata**: ordered canonical parameters with type and rank
    - **Log density**: ``log_density(x, params)``, always returning a scalar and
      returning ``-inf`` for values outside the support
    - **Sampling**: ``sample(params, shape, rng)``, returning a node-shaped value
    - **Alternate parameterizations**: alternative sets of parameter names that are
      mapped onto the canonical parameters before any density or sampling call
    - **Alternate parameters**: named expressions over canonical parameters,
      available through :py:meth:`DistributionDescriptor.get_param`
    - **Support**: a ``(lower, upper)`` interval, each bound possibly infinite

Two concrete flavours are provided. :py:class:`UserDistribution` wraps plain
procedures, which is the path used to register new distributions from user code.
:py:class:`~scinimpy.distributions.builtin.ScipyDistribution` wraps a
``scipy.stats`` distribution and is used for the built-in catalogue.

Example:
    >>> import numpy as np
    >>> def logpdf(x, rate, log=True):
    ...     logprob = np.log(rate) - x * rate
    ...     return logprob if log else np.exp(logprob)
    >>> def rvs(rate, *, shape, rng):
    ...     return rng.exponential(1 / rate, size=shape)
    >>> my_exp = UserDistribution(
    ...     ["rate"],
    ...     logpdf=logpdf,
    ...     rvs=rvs,
    ...     parameterizations=[Parameterization(["scale"], rate=lambda scale: 1 / scale)],
    ...     alt_params={"scale": lambda rate: 1 / rate},
    ...     support=(0.0, np.inf),
    ... )
"""

from __future__ import annotations

import copy
import inspect

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Literal, Optional, Sequence, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from scinimpy import utils
from scinimpy.exceptions import InvalidDescriptor, UnsupportedParameterization

if TYPE_CHECKING:
    from scinimpy import custom_types


def _call_with_declared(function: Callable, values: dict[str, Any]) -> Any:
    """Call a function with only the keyword arguments its signature declares.

    :param function: Function to call
    :type function: Callable
    :param values: Candidate keyword arguments
    :type values: dict[str, Any]

    :returns: Result of the call
    :rtype: Any
    """
    names = _declared_names(function)
    return function(**{name: values[name] for name in names})


def _declared_names(function: Callable) -> tuple[str, ...]:
    """Get the names of the named parameters of a function.

    :param function: Function to inspect
    :type function: Callable

    :returns: Names of positional-or-keyword and keyword-only parameters
    :rtype: tuple[str, ...]
    """
    signature = inspect.signature(function)
    return tuple(
        name
        for name, param in signature.parameters.items()
        if param.kind
        in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
    )


class ParameterInfo:
    """Type metadata for one canonical distribution parameter.

    :param name: Parameter name
    :type name: str
    :param dtype: Scalar type of the parameter. Defaults to "double".
    :type dtype: Literal["double", "integer"]
    :param rank: Number of trailing dimensions that belong to a single parameter
        value (0 for scalars, 1 for vectors such as probability vectors). Defaults
        to 0.
    :type rank: custom_types.Integer

    :raises ValueError: If the rank is negative
    """

    def __init__(
        self,
        name: str,
        dtype: Literal["double", "integer"] = "double",
        rank: "custom_types.Integer" = 0,
    ):
        if rank < 0:
            raise ValueError("Parameter rank must be non-negative")
        self.name = name
        self.dtype = dtype
        self.rank = int(rank)

    def __repr__(self) -> str:
        return f"ParameterInfo({self.name!r}, dtype={self.dtype!r}, rank={self.rank})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterInfo):
            return NotImplemented
        return (self.name, self.dtype, self.rank) == (other.name, other.dtype, other.rank)

    def __hash__(self) -> int:
        return hash((self.name, self.dtype, self.rank))


class Parameterization:
    """An alternate set of parameter names for a distribution.

    A parameterization lists the parameter names a user may supply and, for each
    canonical parameter that is not itself supplied, a function computing it from
    the supplied parameters. The functions must only use arithmetic operators and
    NumPy ufuncs so that they work on plain numbers as well as on graph
    expressions.

    :param supplied: Names of the parameters supplied by the user
    :type supplied: Iterable[str]
    :param to_canonical: Functions computing canonical parameters. Each function's
        argument names must be a subset of ``supplied``.
    :type to_canonical: Callable

    Example:
        >>> # Normal distribution parameterized by precision instead of sd
        >>> Parameterization(["mean", "tau"], sd=lambda tau: 1 / np.sqrt(tau))
    """

    def __init__(self, supplied: Iterable[str], **to_canonical: Callable):
        self.supplied: frozenset[str] = frozenset(supplied)
        self.to_canonical: dict[str, Callable] = dict(to_canonical)

    def validate(self, canonical: Sequence[str]) -> None:
        """Check that this parameterization produces every canonical parameter.

        :param canonical: Canonical parameter names of the distribution
        :type canonical: Sequence[str]

        :raises InvalidDescriptor: If a canonical parameter cannot be produced, if
            a conversion is not callable, or if a conversion uses names that are
            not supplied
        """
        # Every canonical parameter must be either supplied or computed
        if missing := set(canonical) - self.supplied - set(self.to_canonical):
            raise InvalidDescriptor(
                f"Parameterization {sorted(self.supplied)} does not define canonical "
                f"parameters: {', '.join(sorted(missing))}"
            )

        # Conversions can only target canonical parameters and use supplied ones
        for name, function in self.to_canonical.items():
            if name not in canonical:
                raise InvalidDescriptor(
                    f"Parameterization {sorted(self.supplied)} converts to unknown "
                    f"parameter '{name}'"
                )
            if not callable(function):
                raise InvalidDescriptor(
                    f"Conversion for parameter '{name}' must be callable"
                )
            if extra := set(_declared_names(function)) - self.supplied:
                raise InvalidDescriptor(
                    f"Conversion for parameter '{name}' uses parameters that are not "
                    f"supplied: {', '.join(sorted(extra))}"
                )

    def __call__(self, canonical: Sequence[str], supplied: dict[str, Any]) -> dict:
        """Map supplied parameter values to canonical parameter values.

        :param canonical: Canonical parameter names, in order
        :type canonical: Sequence[str]
        :param supplied: Supplied parameter values keyed by name. Values may be
            numbers, arrays, or graph expressions.
        :type supplied: dict[str, Any]

        :returns: Canonical parameter values keyed by name, in canonical order
        :rtype: dict
        """
        return {
            name: (
                supplied[name]
                if name in supplied and name not in self.to_canonical
                else _call_with_declared(self.to_canonical[name], supplied)
            )
            for name in canonical
        }

    def __repr__(self) -> str:
        return f"Parameterization({sorted(self.supplied)})"


class DistributionDescriptor(ABC):
    """Abstract capability interface that every registered distribution implements.

    :cvar PARAMETERS: Ordered canonical parameters
    :cvar PARAMETERIZATIONS: Alternate parameterizations
    :cvar ALT_PARAMS: Functions of canonical parameters exposed through
        :py:meth:`get_param`
    :cvar LOWER_BOUND: Lower bound of the support. ``-inf`` if unbounded.
    :cvar UPPER_BOUND: Upper bound of the support. ``inf`` if unbounded.
    :cvar DISCRETE: Whether the distribution has a discrete sample space
    :cvar VALUE_RANK: Number of trailing dimensions of a single draw (0 for
        univariate distributions, 1 for vector-valued ones such as the Dirichlet)

    Subclasses implement :py:meth:`_logpdf` and :py:meth:`_rvs`. The public
    methods :py:meth:`log_density` and :py:meth:`sample` wrap them with support
    checks, reduction to a scalar, and shape validation.
    """

    PARAMETERS: tuple[ParameterInfo, ...] = ()
    """Ordered canonical parameters of the distribution."""

    PARAMETERIZATIONS: tuple[Parameterization, ...] = ()
    """Alternate parameterizations of the distribution."""

    ALT_PARAMS: dict[str, Callable] = {}
    """Alternate parameters, each a function of canonical parameters."""

    LOWER_BOUND: float = -np.inf
    """Lower bound of the support."""

    UPPER_BOUND: float = np.inf
    """Upper bound of the support."""

    DISCRETE: bool = False
    """Whether the distribution has a discrete sample space."""

    VALUE_RANK: int = 0
    """Number of trailing dimensions belonging to a single draw."""

    def __init__(self, name: str = ""):
        self.name = name

    @abstractmethod
    def _logpdf(self, x: npt.NDArray, **params: npt.NDArray) -> Any:
        """Compute the (elementwise or total) log density at ``x``."""

    @abstractmethod
    def _rvs(
        self, shape: tuple[int, ...], rng: np.random.Generator, **params: npt.NDArray
    ) -> Any:
        """Draw a value of the given shape."""

    def validate(self) -> None:
        """Check that the descriptor is complete and internally consistent.

        :raises InvalidDescriptor: If the descriptor is malformed
        """
        names = self.parameter_names

        # Parameter names must be unique
        if len(set(names)) != len(names):
            raise InvalidDescriptor(f"Duplicate parameter names in {names}")
        if any(not isinstance(param, ParameterInfo) for param in self.PARAMETERS):
            raise InvalidDescriptor("Parameters must be `ParameterInfo` instances")

        # The support must be a valid interval
        if not self.LOWER_BOUND <= self.UPPER_BOUND:
            raise InvalidDescriptor(
                f"Lower bound {self.LOWER_BOUND} exceeds upper bound {self.UPPER_BOUND}"
            )
        if self.VALUE_RANK not in (0, 1):
            raise InvalidDescriptor("Only value ranks of 0 and 1 are supported")

        # Every alternate parameterization must be complete and distinct from
        # the canonical one
        seen = {frozenset(names)}
        for parameterization in self.PARAMETERIZATIONS:
            if not isinstance(parameterization, Parameterization):
                raise InvalidDescriptor(
                    "Alternate parameterizations must be `Parameterization` instances"
                )
            parameterization.validate(names)
            if parameterization.supplied in seen:
                raise InvalidDescriptor(
                    f"Parameterization {sorted(parameterization.supplied)} is "
                    "defined more than once"
                )
            seen.add(parameterization.supplied)

        # Alternate parameters are functions of canonical parameters only
        for alt_name, function in self.ALT_PARAMS.items():
            if not callable(function):
                raise InvalidDescriptor(f"Alternate parameter '{alt_name}' is not callable")
            if extra := set(_declared_names(function)) - set(names):
                raise InvalidDescriptor(
                    f"Alternate parameter '{alt_name}' uses unknown parameters: "
                    f"{', '.join(sorted(extra))}"
                )

    def renamed(self, name: str) -> "DistributionDescriptor":
        """Return a shallow copy of this descriptor under a different name.

        :param name: New name
        :type name: str

        :returns: Renamed copy
        :rtype: DistributionDescriptor
        """
        duplicate = copy.copy(self)
        duplicate.name = name
        return duplicate

    def match_parameterization(self, supplied: Iterable[str]) -> Parameterization:
        """Find the parameterization matching a set of supplied parameter names.

        :param supplied: Supplied parameter names
        :type supplied: Iterable[str]

        :returns: The matching parameterization. The canonical parameterization is
            returned as an identity :py:class:`Parameterization`.
        :rtype: Parameterization

        :raises UnsupportedParameterization: If no parameterization matches
        """
        supplied = frozenset(supplied)

        # Canonical names are the first option
        if supplied == frozenset(self.parameter_names):
            return Parameterization(supplied)

        # Then the alternates
        for parameterization in self.PARAMETERIZATIONS:
            if parameterization.supplied == supplied:
                return parameterization

        options = [sorted(self.parameter_names)] + [
            sorted(p.supplied) for p in self.PARAMETERIZATIONS
        ]
        raise UnsupportedParameterization(
            f"Parameters {sorted(supplied)} do not match any parameterization of "
            f"distribution '{self.name}'. Options are: {options}"
        )

    def resolve(self, supplied: dict[str, Any]) -> dict[str, Any]:
        """Map supplied parameters (possibly alternate) to canonical parameters.

        :param supplied: Supplied parameter values. Values may be numbers, arrays,
            or graph expressions.
        :type supplied: dict[str, Any]

        :returns: Canonical parameter values keyed by name, in canonical order
        :rtype: dict[str, Any]

        :raises UnsupportedParameterization: If no parameterization matches
        """
        parameterization = self.match_parameterization(supplied.keys())
        return parameterization(self.parameter_names, supplied)

    def get_param(self, name: str, canonical: dict[str, Any]) -> Any:
        """Get a canonical or alternate parameter from canonical parameter values.

        :param name: Name of the parameter
        :type name: str
        :param canonical: Canonical parameter values
        :type canonical: dict[str, Any]

        :returns: Value of the parameter
        :rtype: Any

        :raises KeyError: If the name is neither canonical nor alternate
        """
        if name in canonical:
            return canonical[name]
        if name in self.ALT_PARAMS:
            return _call_with_declared(self.ALT_PARAMS[name], canonical)
        raise KeyError(
            f"Distribution '{self.name}' has no parameter '{name}'. Options are: "
            f"{list(self.parameter_names) + list(self.ALT_PARAMS)}"
        )

    def in_support(self, x: npt.NDArray) -> bool:
        """Check whether every element of a value lies within the support.

        :param x: Value to check
        :type x: npt.NDArray

        :returns: ``True`` if every element is within the support and, for
            discrete distributions, integer-valued
        :rtype: bool
        """
        x = np.asarray(x)
        if np.any(np.isnan(x)):
            return False
        if np.any(x < self.LOWER_BOUND) or np.any(x > self.UPPER_BOUND):
            return False
        return not self.DISCRETE or bool(np.all(np.floor(x) == x))

    def log_density(self, x: npt.NDArray, params: dict[str, npt.NDArray]) -> float:
        """Compute the total log density of a value.

        :param x: Value at which to evaluate the density
        :type x: npt.NDArray
        :param params: Canonical parameter values
        :type params: dict[str, npt.NDArray]

        :returns: Sum of the log density over all elements. Values outside the
            support and non-finite densities give ``-inf``.
        :rtype: float
        """
        if not self.in_support(x):
            return -np.inf
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            return utils.finite_or_neg_inf(np.sum(self._logpdf(x, **params)))

    def sample(
        self,
        params: dict[str, npt.NDArray],
        shape: tuple[int, ...],
        rng: np.random.Generator,
    ) -> npt.NDArray:
        """Draw a node-shaped value.

        :param params: Canonical parameter values
        :type params: dict[str, npt.NDArray]
        :param shape: Shape of the node being drawn
        :type shape: tuple[int, ...]
        :param rng: Random number generator
        :type rng: np.random.Generator

        :returns: Drawn value with the requested shape
        :rtype: npt.NDArray

        :raises ValueError: If the procedure returns a value of the wrong size
        """
        draw = np.asarray(self._rvs(tuple(shape), rng, **params), dtype=np.float64)
        if draw.shape != tuple(shape):
            if draw.size != int(np.prod(shape)):
                raise ValueError(
                    f"Sampler of distribution '{self.name}' returned shape "
                    f"{draw.shape}, expected {tuple(shape)}"
                )
            draw = draw.reshape(shape)
        return draw

    @property
    def parameter_names(self) -> tuple[str, ...]:
        """Canonical parameter names, in order."""
        return tuple(param.name for param in self.PARAMETERS)

    @property
    def parameter_info(self) -> dict[str, ParameterInfo]:
        """Canonical parameter metadata keyed by name."""
        return {param.name: param for param in self.PARAMETERS}

    @property
    def support(self) -> tuple[float, float]:
        """The ``(lower, upper)`` support interval."""
        return (self.LOWER_BOUND, self.UPPER_BOUND)

    @property
    def family(self) -> Literal["continuous", "discrete"]:
        """Either "continuous" or "discrete"."""
        return "discrete" if self.DISCRETE else "continuous"

    def __repr__(self) -> str:
        params = ", ".join(self.parameter_names)
        return f"{self.__class__.__name__}('{self.name}', {params})"


class UserDistribution(DistributionDescriptor):
    """A distribution defined by user-supplied procedures.

    This is the class used to plug new distributions into a registry without
    subclassing. Construction never fails; completeness and consistency are
    checked by :py:meth:`validate`, which the registry runs on registration.

    :param parameters: Canonical parameters, as names or
        :py:class:`ParameterInfo` instances
    :type parameters: Sequence[Union[str, ParameterInfo]]
    :param logpdf: Density procedure with signature
        ``logpdf(x, <canonical parameters>, log=True)``
    :type logpdf: Optional[Callable]
    :param rvs: Sampling procedure with signature
        ``rvs(<canonical parameters>, *, shape, rng)``
    :type rvs: Optional[Callable]
    :param parameterizations: Alternate parameterizations. Defaults to ().
    :type parameterizations: Iterable[Parameterization]
    :param alt_params: Alternate parameters as functions of canonical parameters.
        Defaults to None.
    :type alt_params: Optional[dict[str, Callable]]
    :param support: ``(lower, upper)`` support interval. Defaults to the real line.
    :type support: tuple[custom_types.Float, custom_types.Float]
    :param discrete: Whether the sample space is discrete. Defaults to False.
    :type discrete: bool
    :param value_rank: Number of trailing dimensions of one draw. Defaults to 0.
    :type value_rank: custom_types.Integer
    :param name: Name of the distribution. Registering under another name stores
        a renamed copy.
    :type name: str
    """

    def __init__(
        self,
        parameters: Sequence,
        *,
        logpdf: Any = None,
        rvs: Any = None,
        parameterizations: Iterable[Parameterization] = (),
        alt_params: Optional[dict[str, Callable]] = None,
        support: tuple["custom_types.Float", "custom_types.Float"] = (-np.inf, np.inf),
        discrete: bool = False,
        value_rank: "custom_types.Integer" = 0,
        name: str = "",
    ):
        super().__init__(name)

        # Record the procedures
        self.logpdf = logpdf
        self.rvs = rvs

        # Record the metadata. Instance attributes shadow the class defaults.
        self.PARAMETERS = tuple(  # pylint: disable=invalid-name
            param if isinstance(param, ParameterInfo) else ParameterInfo(param)
            for param in parameters
        )
        self.PARAMETERIZATIONS = tuple(parameterizations)  # pylint: disable=invalid-name
        self.ALT_PARAMS = dict(alt_params or {})  # pylint: disable=invalid-name
        self.LOWER_BOUND, self.UPPER_BOUND = (  # pylint: disable=invalid-name
            float(support[0]),
            float(support[1]),
        )
        self.DISCRETE = discrete  # pylint: disable=invalid-name
        self.VALUE_RANK = int(value_rank)  # pylint: disable=invalid-name

    def validate(self) -> None:
        """Check the procedures in addition to the metadata.

        :raises InvalidDescriptor: If a procedure is missing or not callable, or if
            the parameter names accepted by ``logpdf`` and ``rvs`` disagree with
            each other or with the canonical parameters
        """
        # Both procedures are required
        for procname in ("logpdf", "rvs"):
            procedure = getattr(self, procname)
            if procedure is None:
                raise InvalidDescriptor(f"Missing required procedure `{procname}`")
            if not callable(procedure):
                raise InvalidDescriptor(f"Procedure `{procname}` is not callable")

        # The density takes the value first, then the parameters, then a log flag
        density_names = _declared_names(self.logpdf)
        if len(density_names) == 0 or "log" not in density_names:
            raise InvalidDescriptor(
                "`logpdf` must accept the value as its first argument and a `log` flag"
            )
        density_params = set(density_names[1:]) - {"log"}

        # The sampler takes the parameters plus `shape` and `rng`
        sampler_names = set(_declared_names(self.rvs))
        if not {"shape", "rng"} <= sampler_names:
            raise InvalidDescriptor("`rvs` must accept `shape` and `rng` arguments")
        sampler_params = sampler_names - {"shape", "rng"}

        # Parameter lists must be consistent
        if density_params != sampler_params:
            raise InvalidDescriptor(
                "Parameter names of `logpdf` and `rvs` disagree: "
                f"{sorted(density_params)} vs {sorted(sampler_params)}"
            )
        if density_params != set(self.parameter_names):
            raise InvalidDescriptor(
                f"Procedure parameters {sorted(density_params)} do not match the "
                f"declared parameters {list(self.parameter_names)}"
            )

        # Now the metadata
        super().validate()

    def _logpdf(self, x: npt.NDArray, **params: npt.NDArray) -> Any:
        return self.logpdf(x, **params, log=True)

    def _rvs(
        self, shape: tuple[int, ...], rng: np.random.Generator, **params: npt.NDArray
    ) -> Any:
        return self.rvs(**params, shape=shape, rng=rng)
