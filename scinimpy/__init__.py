# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
SciNimPy: Probabilistic graphical models with two-stage algorithm specialization.

SciNimPy is a Python package for declaring probabilistic graphical models as
directed acyclic graphs of stochastic, deterministic, and constant nodes, and for
running algorithms (MCMC samplers, log-probability objectives) against them. Each
algorithm is written once as a generic template and specialized against a concrete
model before it is executed.

Key Features:
    - Pluggable distribution registry with alternate parameterizations
    - Model graphs built from declarative relation lists
    - Stable, reproducible dependency resolution
    - Setup/run specialization of algorithm templates
    - Default and customizable MCMC sampler assembly
    - ArviZ-compatible results with convergence diagnostics

Global Variables:
    RNG: Global random number generator for reproducible computations
    REGISTRY: Process-wide distribution registry
    __version__: Package version string

Example:
    >>> import scinimpy as snp
    >>> from scinimpy.model import relations as rel
    >>> snp.manual_seed(42)
    >>> graph = snp.ModelGraph(
    ...     [
    ...         rel.stochastic("mu", "normal", mean=0.0, sd=10.0),
    ...         rel.stochastic("y", "normal", shape=(5,), mean=rel.ref("mu"), sd=1.0,
    ...                        data=[0.1, -0.3, 0.8, 1.2, 0.4]),
    ...     ]
    ... )
    >>> results = snp.run_mcmc(graph, niter=2000, nburnin=500)
"""

from typing import Optional, TYPE_CHECKING

from typeguard import install_import_hook

import numpy as np

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("scinimpy")

# Define the global random number generator
RNG: np.random.Generator
"""Global random number generator for SciNimPy.

Model graphs built without an explicit seed derive their own generators from this
one. It can be seeded using the manual_seed() function to ensure consistent
results across runs.

:type: np.random.Generator
"""

# Get custom types if TYPE_CHECKING is True
if TYPE_CHECKING:
    from scinimpy import custom_types


def manual_seed(seed: Optional["custom_types.Integer"] = None):
    """Set the seed for the global random number generator.

    :param seed: Seed value for random number generation. If None, uses
                system entropy to generate a random seed.
    :type seed: Union[custom_types.Integer, None]

    Example:
        >>> import scinimpy as snp
        >>> snp.manual_seed(42)
        >>> random_data = snp.RNG.normal(0, 1, size=100)

    Note:
        This function modifies global state and should typically be called
        once at the beginning of a script or analysis for reproducibility.
    """
    global RNG  # pylint: disable=global-statement
    RNG = np.random.default_rng(seed)


manual_seed()  # Set the seed for the global random number generator

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from scinimpy import utils
from scinimpy.distributions.builtin import register_builtin_distributions
from scinimpy.distributions.descriptor import DistributionDescriptor, Parameterization
from scinimpy.distributions.registry import DistributionRegistry, REGISTRY

# The process-wide registry starts empty; built-ins are published explicitly
register_builtin_distributions(REGISTRY)

from scinimpy.model.graph import build, ModelGraph
from scinimpy.algorithms.assembly import assemble, MCMCConfiguration
from scinimpy.algorithms.mcmc import build_mcmc, run_mcmc
from scinimpy.algorithms.specialization import specialize

operations = utils.lazy_import("scinimpy.operations")
samplers = utils.lazy_import("scinimpy.algorithms.samplers")
relations = utils.lazy_import("scinimpy.model.relations")
