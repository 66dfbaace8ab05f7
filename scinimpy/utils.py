# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Shared helpers for SciNimPy.

Shape normalization and broadcasting checks used while building graphs, random
number generator resolution, a numerically stable logistic function, lazy
submodule imports, and a context manager that switches ArviZ over to Dask.
"""

from __future__ import annotations

import importlib.util
import sys

from typing import Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from arviz.utils import Dask

if TYPE_CHECKING:
    from scinimpy import custom_types


def lazy_import(name: str):
    """Get a module whose body runs on first attribute access.

    Used by the package ``__init__`` to expose submodules that themselves import
    the package, without creating an import cycle.

    :param name: Fully qualified module name
    :type name: str

    :returns: The module, or a lazily loaded stand-in registered in
        ``sys.modules``
    :rtype: module

    :raises ImportError: If no module with that name exists
    """
    if (module := sys.modules.get(name)) is not None:
        return module

    spec = importlib.util.find_spec(name)
    if spec is None:
        raise ImportError(f"No module named '{name}'")

    # Defer execution of the module body until it is first used
    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def normalize_shape(
    shape: "custom_types.ShapeType",
) -> tuple[int, ...]:
    """Convert a shape declaration to a tuple of positive Python integers.

    :param shape: Shape declaration. A bare integer is a one-dimensional shape.
    :type shape: custom_types.ShapeType

    :returns: Normalized shape
    :rtype: tuple[int, ...]

    :raises ValueError: If any dimension is not a positive integer

    Example:
        >>> normalize_shape(3)
        (3,)
        >>> normalize_shape(())
        ()
    """
    # Convert shape to the appropriate type
    try:
        len(shape)
    except TypeError:
        shape = (shape,)

    # Every dimension must be a positive integer
    normalized = []
    for dimsize in shape:
        if isinstance(dimsize, (bool, np.bool_)) or not isinstance(
            dimsize, (int, np.integer)
        ):
            raise ValueError(f"Shape dimensions must be integers, got {shape}")
        if dimsize < 1:
            raise ValueError(f"Shape dimensions must be positive, got {shape}")
        normalized.append(int(dimsize))

    return tuple(normalized)


def broadcasts_to(
    shape: tuple[int, ...], target: tuple[int, ...]
) -> bool:
    """Check whether an array of one shape broadcasts to another shape unchanged.

    :param shape: Shape of the array being broadcast
    :type shape: tuple[int, ...]
    :param target: Shape to broadcast to
    :type target: tuple[int, ...]

    :returns: ``True`` if broadcasting ``shape`` against ``target`` yields ``target``
    :rtype: bool
    """
    try:
        return np.broadcast_shapes(shape, target) == tuple(target)
    except ValueError:
        return False


def as_value_array(
    value: "custom_types.SampleType", shape: Optional[tuple[int, ...]] = None
) -> npt.NDArray[np.floating]:
    """Convert a value to a float64 array, optionally checking its shape.

    :param value: Value to convert
    :type value: custom_types.SampleType
    :param shape: Required shape. Scalars are not broadcast. Defaults to None.
    :type shape: Optional[tuple[int, ...]]

    :returns: Float64 copy of the value
    :rtype: npt.NDArray[np.floating]

    :raises ValueError: If ``shape`` is given and the value's shape differs
    """
    array = np.array(value, dtype=np.float64)
    if shape is not None and array.shape != tuple(shape):
        raise ValueError(
            f"Expected a value of shape {tuple(shape)}, got shape {array.shape}"
        )
    return array


def get_rng(
    seed: Union["custom_types.Integer", np.random.Generator, None] = None,
) -> np.random.Generator:
    """Get a random number generator.

    :param seed: Optional seed or generator. Defaults to None.
    :type seed: Union[custom_types.Integer, np.random.Generator, None]

    :returns: NumPy random number generator
    :rtype: np.random.Generator

    Returns a generator spawned from the global :py:obj:`scinimpy.RNG` if no seed
    is provided, the generator itself if one is passed, and otherwise a new
    generator with the specified seed.
    """
    # Generators pass straight through
    if isinstance(seed, np.random.Generator):
        return seed

    # Derive from the global generator if no seed is provided. Otherwise, return
    # a new random number generator with the provided seed.
    if seed is None:
        import scinimpy  # pylint: disable=import-outside-toplevel

        return np.random.default_rng(scinimpy.RNG.integers(0, 2**63 - 1))
    return np.random.default_rng(seed)


def stable_sigmoid(exponent: "custom_types.SampleType") -> npt.NDArray[np.floating]:
    r"""Logistic function that does not overflow for large ``|x|``.

    :param exponent: Input values
    :type exponent: custom_types.SampleType

    :returns: :math:`1 / (1 + e^{-x})` with the shape of the input
    :rtype: npt.NDArray[np.floating]

    Only :math:`e^{-|x|}` is ever computed, using

    .. math::

        \sigma(x) = \frac{1}{1 + e^{-|x|}}, \quad x \geq 0; \qquad
        \sigma(x) = \frac{e^{-|x|}}{1 + e^{-|x|}}, \quad x < 0
    """
    exponent = np.asarray(exponent, dtype=np.float64)
    decayed = np.exp(-np.abs(exponent))
    return np.asarray(
        np.where(exponent >= 0, 1 / (1 + decayed), decayed / (1 + decayed))
    )


def finite_or_neg_inf(value: "custom_types.Float") -> float:
    """Map a log-density to a float, replacing NaN and ``+inf`` with ``-inf``.

    :param value: Raw log-density
    :type value: custom_types.Float

    :returns: The value as a Python float if finite, otherwise ``-inf``
    :rtype: float
    """
    value = float(value)
    if np.isfinite(value):
        return value
    return -np.inf


class az_dask:  # pylint: disable=invalid-name
    """Run ArviZ statistics through ``xarray.apply_ufunc`` with Dask enabled.

    :param dask_type: Value of the ``dask`` argument given to ``apply_ufunc``.
        Defaults to "parallelized".
    :type dask_type: str
    :param output_dtypes: Output dtypes of the wrapped functions. Defaults to
        ``[float]``.
    :type output_dtypes: Optional[list[object]]

    Example:
        >>> with az_dask():
        ...     ess = az.ess(samples)
    """

    def __init__(
        self, dask_type: str = "parallelized", output_dtypes: Optional[list[object]] = None
    ):
        self.dask_kwargs = {"dask": dask_type, "output_dtypes": output_dtypes or [float]}

    def __enter__(self):
        Dask.enable_dask(dask_kwargs=self.dask_kwargs)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        Dask.disable_dask()
