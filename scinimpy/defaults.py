# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for SciNimPy package components.

This module centralizes default values used across the SciNimPy package,
including sampler control settings, MCMC run settings, naming conventions, and
diagnostic thresholds.

The module is organized into logical groups covering:
    - Sampler adaptation and proposal defaults
    - MCMC execution defaults
    - Variable and dimension naming conventions
    - Diagnostic thresholds for sampler validation

Default values cannot be programmatically altered. Individual sampler instances
accept a ``control`` dictionary that overrides these values for that instance only.
"""

import string

# Sampler adaptation defaults
DEFAULT_ADAPT: bool = True
"""Default setting for whether samplers adapt their proposals during a run.

:type: bool
"""

DEFAULT_ADAPT_INTERVAL: int = 200
"""Default number of iterations between two adaptation steps.

:type: int
"""

DEFAULT_ADAPT_FACTOR_EXPONENT: float = 0.8
"""Default exponent controlling how quickly adaptation decays over time.

The adaptation step size after ``k`` adaptation steps is proportional to
``1 / (k + 3) ** DEFAULT_ADAPT_FACTOR_EXPONENT``.

:type: float
"""

DEFAULT_SCALE: float = 1.0
"""Default initial proposal scale for random walk samplers.

:type: float
"""

DEFAULT_RW_OPTIMAL_ACCEPTANCE: float = 0.44
"""Target acceptance rate for univariate random walk samplers.

:type: float
"""

DEFAULT_RW_BLOCK_OPTIMAL_ACCEPTANCE: float = 0.234
"""Target acceptance rate for block random walk samplers.

:type: float
"""

DEFAULT_SCALE_HISTORY: bool = False
"""Default setting for whether random walk samplers record their scale history.

:type: bool
"""

DEFAULT_SLICE_WIDTH: float = 1.0
"""Default initial slice width for slice samplers.

:type: float
"""

DEFAULT_SLICE_MAX_STEPS: int = 100
"""Default maximum number of stepping-out steps for slice samplers.

:type: int
"""

DEFAULT_SLICE_ADAPT_INTERVAL: int = 200
"""Default number of iterations between two slice width adaptations.

:type: int
"""

# MCMC defaults
DEFAULT_N_ITER: int = 10000
"""Default total number of MCMC iterations per chain, including burn-in.

:type: int
"""

DEFAULT_N_BURNIN: int = 0
"""Default number of initial iterations discarded from each chain.

:type: int
"""

DEFAULT_THIN: int = 1
"""Default thinning interval for recorded samples.

:type: int
"""

DEFAULT_N_CHAINS: int = 1
"""Default number of MCMC chains.

:type: int
"""

DEFAULT_PROGRESS_BAR: bool = True
"""Default setting for whether MCMC runs display a progress bar.

:type: bool
"""

# Default names for the dimensions of recorded samples
DEFAULT_DIM_NAMES: tuple[str, ...] = tuple(
    l for l in string.ascii_lowercase if l not in {"n"}
)
"""Default names for node dimensions in sample datasets, excluding 'n'.

:type: tuple[str, ...]
"""

# Defaults for MCMC diagnostics
DEFAULT_ESS_THRESH: int = 100  # Per chain
"""Default threshold for Effective Sample Size (ESS) per chain.

Minimum effective sample size considered adequate for reliable
posterior inference from each MCMC chain.

:type: int
"""

DEFAULT_RHAT_THRESH: float = 1.01
"""Default threshold for R-hat convergence diagnostic.

Values above this threshold indicate potential convergence issues
in MCMC sampling across chains.

:type: float
"""

DEFAULT_MIN_ACCEPTANCE: float = 0.05
"""Default acceptance rate below which a sampler is reported as stuck.

:type: float
"""
