# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Registry mapping distribution names to their descriptors.

The registry is the single place where distribution names are resolved. Model
graphs look up every distribution they use exactly once, at build time, and hold
direct references to the descriptors from then on. Registering or replacing a
distribution afterwards therefore never affects a graph that has already been
built.

Registration is atomic: a descriptor is fully validated before it becomes
visible, so concurrent lookups see either the old entry or the new one and never
a partially-registered descriptor.

The process-wide registry, :py:data:`REGISTRY`, starts empty. The built-in
catalogue is added to it when :py:mod:`scinimpy` is imported. Independent
registries can be created for isolated use (tests, alternate catalogues) and
passed to :py:class:`~scinimpy.model.graph.ModelGraph`.
"""

from __future__ import annotations

import threading

from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from scinimpy.distributions.descriptor import (
    DistributionDescriptor,
    Parameterization,
    UserDistribution,
)
from scinimpy.exceptions import InvalidDescriptor, UnknownDistribution


class DistributionRegistry:
    """Thread-safe mapping from distribution names to descriptors.

    Example:
        >>> registry = DistributionRegistry()
        >>> registry.register("myexp", my_exp)
        >>> registry.lookup("myexp").parameter_names
        ('rate',)
    """

    def __init__(self):
        self._entries: dict[str, DistributionDescriptor] = {}
        self._lock = threading.RLock()

    def register(self, name: Any, descriptor: Any) -> DistributionDescriptor:
        """Register a descriptor under a name, replacing any existing entry.

        :param name: Name under which the distribution is registered
        :type name: str
        :param descriptor: Descriptor to register. If its name differs from
            ``name``, a renamed copy is registered and ``descriptor`` itself is left
            unchanged.
        :type descriptor: DistributionDescriptor

        :returns: The registered descriptor
        :rtype: DistributionDescriptor

        :raises InvalidDescriptor: If the name is empty, if ``descriptor`` is not a
            :py:class:`DistributionDescriptor`, or if it fails validation
        """
        # Check the inputs
        if not isinstance(name, str) or not name:
            raise InvalidDescriptor("Distribution names must be non-empty strings")
        if not isinstance(descriptor, DistributionDescriptor):
            raise InvalidDescriptor(
                f"Expected a DistributionDescriptor, got {type(descriptor).__name__}"
            )

        # Validate before it becomes visible
        descriptor.validate()

        # Name the descriptor
        if descriptor.name != name:
            descriptor = descriptor.renamed(name)

        # Publish
        with self._lock:
            self._entries[name] = descriptor

        return descriptor

    def unregister(self, name: str) -> DistributionDescriptor:
        """Remove a distribution from the registry.

        :param name: Name of the distribution
        :type name: str

        :returns: The removed descriptor
        :rtype: DistributionDescriptor

        :raises UnknownDistribution: If the name is not registered
        """
        with self._lock:
            try:
                return self._entries.pop(name)
            except KeyError as error:
                raise UnknownDistribution(
                    f"Distribution '{name}' is not registered"
                ) from error

    def lookup(self, name: str) -> DistributionDescriptor:
        """Get the descriptor registered under a name.

        :param name: Name of the distribution
        :type name: str

        :returns: The registered descriptor
        :rtype: DistributionDescriptor

        :raises UnknownDistribution: If the name is not registered
        """
        with self._lock:
            descriptor = self._entries.get(name)
        if descriptor is None:
            raise UnknownDistribution(
                f"Distribution '{name}' is not registered. Options are: "
                f"{', '.join(self.names())}"
            )
        return descriptor

    def resolve_parameterization(self, name: str, supplied: dict[str, Any]) -> dict:
        """Map supplied parameter values to canonical parameter values.

        :param name: Name of the distribution
        :type name: str
        :param supplied: Supplied parameter values keyed by parameter name
        :type supplied: dict[str, Any]

        :returns: Canonical parameter values keyed by name, in canonical order
        :rtype: dict

        :raises UnknownDistribution: If the name is not registered
        :raises UnsupportedParameterization: If the supplied names match no
            parameterization of the distribution
        """
        return self.lookup(name).resolve(supplied)

    def resolve_parameter_names(
        self, name: str, supplied_names: Iterable[str]
    ) -> Parameterization:
        """Find the parameterization that applies to a set of supplied names.

        :param name: Name of the distribution
        :type name: str
        :param supplied_names: Names of the supplied parameters
        :type supplied_names: Iterable[str]

        :returns: Matching parameterization
        :rtype: Parameterization

        :raises UnknownDistribution: If the name is not registered
        :raises UnsupportedParameterization: If no parameterization matches
        """
        return self.lookup(name).match_parameterization(supplied_names)

    def names(self) -> tuple[str, ...]:
        """Names of all registered distributions, sorted."""
        with self._lock:
            return tuple(sorted(self._entries))

    def copy(self) -> "DistributionRegistry":
        """Create an independent registry holding the same descriptors.

        :returns: New registry
        :rtype: DistributionRegistry
        """
        new = DistributionRegistry()
        with self._lock:
            new._entries = dict(self._entries)  # pylint: disable=protected-access
        return new

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self) -> str:
        return f"DistributionRegistry({', '.join(self.names())})"


REGISTRY = DistributionRegistry()
"""Process-wide distribution registry used when no registry is given."""


def register_distribution(
    name: str,
    parameters: Sequence,
    *,
    logpdf: Any = None,
    rvs: Any = None,
    parameterizations: Iterable[Parameterization] = (),
    alt_params: Optional[dict[str, Callable]] = None,
    support: tuple[float, float] = (float("-inf"), float("inf")),
    discrete: bool = False,
    value_rank: int = 0,
    registry: Optional[DistributionRegistry] = None,
) -> DistributionDescriptor:
    """Build a :py:class:`UserDistribution` from procedures and register it.

    :param name: Name under which the distribution is registered
    :type name: str
    :param parameters: Canonical parameters
    :type parameters: Sequence
    :param logpdf: Density procedure ``logpdf(x, <params>, log=True)``
    :type logpdf: Optional[Callable]
    :param rvs: Sampling procedure ``rvs(<params>, *, shape, rng)``
    :type rvs: Optional[Callable]
    :param parameterizations: Alternate parameterizations. Defaults to ().
    :type parameterizations: Iterable[Parameterization]
    :param alt_params: Alternate parameters. Defaults to None.
    :type alt_params: Optional[dict[str, Callable]]
    :param support: Support interval. Defaults to the real line.
    :type support: tuple[float, float]
    :param discrete: Whether the sample space is discrete. Defaults to False.
    :type discrete: bool
    :param value_rank: Trailing dimensions of one draw. Defaults to 0.
    :type value_rank: int
    :param registry: Registry to add to. Defaults to :py:data:`REGISTRY`.
    :type registry: Optional[DistributionRegistry]

    :returns: The registered descriptor
    :rtype: DistributionDescriptor

    :raises InvalidDescriptor: If the procedures or metadata are invalid
    """
    descriptor = UserDistribution(
        parameters,
        logpdf=logpdf,
        rvs=rvs,
        parameterizations=parameterizations,
        alt_params=alt_params,
        support=support,
        discrete=discrete,
        value_rank=value_rank,
        name=name,
    )
    return (REGISTRY if registry is None else registry).register(name, descriptor)
