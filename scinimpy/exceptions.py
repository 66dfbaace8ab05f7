"""Custom exception classes for the SciNimPy package.

This module defines the hierarchy of exceptions raised while registering
distributions, building model graphs, and specializing algorithms. All custom
exceptions inherit from the base SciNimPyError class to allow for unified
exception handling when needed.

Errors are grouped by the stage that raises them:

    - :py:class:`RegistryError`: distribution registration and lookup
    - :py:class:`GraphBuildError`: model graph construction. Build aborts and no
      partial graph is returned.
    - :py:class:`SpecializationError`: binding an algorithm template to a graph.
      Only the specialization attempt fails; the graph remains valid.

Non-finite log densities are never reported through exceptions. They are
represented as ``-inf`` values that algorithms are expected to handle.
"""


class SciNimPyError(Exception):
    """Base class for all exceptions in the SciNimPy package.

    Example:
        >>> try:
        ...     graph = ModelGraph(relations)
        ... except SciNimPyError as e:
        ...     print(f"SciNimPy error occurred: {e}")
    """


class RegistryError(SciNimPyError):
    """Base class for errors raised by the distribution registry."""


class InvalidDescriptor(RegistryError, ValueError):
    """Raised when a distribution descriptor cannot be registered.

    A descriptor is invalid if a required procedure (log density or sampler) is
    missing, if the parameter names accepted by the procedures disagree with the
    declared canonical parameters, if an alternate parameterization does not
    produce every canonical parameter, or if the support interval is malformed.
    """


class UnknownDistribution(RegistryError, KeyError):
    """Raised when a distribution name is not present in the registry."""

    def __str__(self) -> str:
        # KeyError quotes its argument; we want the message verbatim
        return str(self.args[0]) if self.args else ""


class UnsupportedParameterization(RegistryError, ValueError):
    """Raised when supplied parameter names match no known parameterization."""


class GraphBuildError(SciNimPyError):
    """Base class for errors raised while building a model graph."""


class CyclicDependency(GraphBuildError):
    """Raised when a relation references a node that is not yet defined.

    Relations must reference only previously-declared nodes. A reference to the
    node itself or to a node declared later would introduce a cycle (or a forward
    reference) into the dependency graph.
    """


class ShapeMismatch(GraphBuildError, ValueError):
    """Raised when a declared shape disagrees with the shape implied by a node's
    distribution parameters or defining expression, or when a value of the wrong
    shape is written to a node.
    """


class SpecializationError(SciNimPyError):
    """Base class for errors raised while specializing or running an algorithm."""


class UnresolvedTarget(SpecializationError, KeyError):
    """Raised when a named target does not exist in the model graph."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ShapeIncompatible(SpecializationError, ValueError):
    """Raised when an algorithm template cannot operate on a resolved node.

    Examples are a scalar-only sampler applied to a vector node, or a discrete
    sampler applied to a continuous node.
    """


class NoApplicableAlgorithm(SpecializationError):
    """Raised when assembly finds neither an override nor a default algorithm for
    a stochastic node.
    """
