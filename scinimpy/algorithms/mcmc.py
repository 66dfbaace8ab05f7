# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Running MCMC pipelines and collecting samples.

An :py:class:`MCMC` pairs a pipeline specialized from an
:py:class:`~scinimpy.algorithms.assembly.MCMCConfiguration` with the graph it was
specialized against. :py:func:`run_mcmc` is the one-call interface: it configures
samplers, runs any number of chains on independent copies of the graph (optionally
in parallel on dask's threaded scheduler) and returns an
:py:class:`~scinimpy.results.mcmc.MCMCResults`.

Example:
    >>> results = run_mcmc(graph, niter=5000, nburnin=1000, nchains=4, seed=1)
    >>> results.summary()
"""

from __future__ import annotations

import warnings

from typing import Any, Callable, Optional, TYPE_CHECKING, Union

import dask
import numpy as np
import numpy.typing as npt

from tqdm import tqdm

from scinimpy import utils
from scinimpy.algorithms.assembly import MCMCConfiguration
from scinimpy.defaults import (
    DEFAULT_N_BURNIN,
    DEFAULT_N_CHAINS,
    DEFAULT_N_ITER,
    DEFAULT_PROGRESS_BAR,
    DEFAULT_THIN,
)
from scinimpy.results.mcmc import MCMCResults

if TYPE_CHECKING:
    from scinimpy import custom_types
    from scinimpy.model.graph import ModelGraph

InitsType = Union[
    dict[str, Any], list[dict[str, Any]], Callable[[int], dict[str, Any]], None
]


def _check_run_args(
    niter: "custom_types.Integer",
    nburnin: "custom_types.Integer",
    thin: "custom_types.Integer",
) -> None:
    if niter < 1:
        raise ValueError(f"niter must be positive, got {niter}")
    if not 0 <= nburnin < niter:
        raise ValueError(f"nburnin must be in [0, niter), got {nburnin}")
    if thin < 1:
        raise ValueError(f"thin must be positive, got {thin}")


class MCMC:
    """A runnable MCMC algorithm for one graph.

    :param configuration: Sampler and monitor configuration
    :type configuration: MCMCConfiguration
    :param graph: Graph to run against. Defaults to None, meaning the configured
        graph. Copies of the configured graph are accepted.
    :type graph: Optional[ModelGraph]
    """

    def __init__(
        self,
        configuration: MCMCConfiguration,
        graph: Optional["ModelGraph"] = None,
    ):
        self.configuration = configuration
        self.graph = configuration.graph if graph is None else graph
        self.pipeline = configuration.build_pipeline(self.graph)
        self.monitors = configuration.monitors
        self.samples: Optional[dict[str, npt.NDArray]] = None

    def run(
        self,
        niter: "custom_types.Integer" = DEFAULT_N_ITER,
        nburnin: "custom_types.Integer" = DEFAULT_N_BURNIN,
        thin: "custom_types.Integer" = DEFAULT_THIN,
        reset: bool = True,
        progress_bar: bool = DEFAULT_PROGRESS_BAR,
        chain: "custom_types.Integer" = 0,
    ) -> dict[str, npt.NDArray]:
        """Run the pipeline and record the monitored nodes.

        :param niter: Total number of iterations, including burn-in. Defaults to
            10000.
        :type niter: custom_types.Integer
        :param nburnin: Number of initial iterations not recorded. Defaults to 0.
        :type nburnin: custom_types.Integer
        :param thin: Record every ``thin``-th iteration after burn-in. Defaults
            to 1.
        :type thin: custom_types.Integer
        :param reset: Whether to reset sampler states and initialize the graph
            first. When False, the run continues from the current state.
            Defaults to True.
        :type reset: bool
        :param progress_bar: Whether to display a progress bar. Defaults to True.
        :type progress_bar: bool
        :param chain: Chain number, used to label and position the progress bar.
            Defaults to 0.
        :type chain: custom_types.Integer

        :returns: Recorded values keyed by node name, each with a leading draw
            dimension
        :rtype: dict[str, npt.NDArray]

        :raises ValueError: If the iteration arguments are inconsistent
        """
        _check_run_args(niter, nburnin, thin)

        # Start from a consistent state
        if reset:
            self.pipeline.reset()
            self.graph.initialize()

        # Allocate the sample buffers
        n_saved = len(range(nburnin, niter, thin))
        samples = {
            name: np.empty((n_saved, *self.graph.node(name).shape), dtype=np.float64)
            for name in self.monitors
        }
        values = [
            (samples[name], self.graph.store.values[self.graph.node(name).index])
            for name in self.monitors
        ]

        # Run
        saved = 0
        for iteration in tqdm(
            range(niter),
            desc=f"Chain {chain}",
            disable=not progress_bar,
            position=chain,
            leave=True,
        ):
            self.pipeline.run()
            if iteration >= nburnin and (iteration - nburnin) % thin == 0:
                for buffer, value in values:
                    buffer[saved] = value
                saved += 1

        # Report samplers that never moved
        for instance in self.pipeline:
            if instance.acceptance_rate == 0:
                warnings.warn(
                    f"Sampler {instance.name} did not accept any proposals in chain "
                    f"{chain}"
                )

        self.samples = samples
        return samples

    def acceptance(self) -> dict[str, float]:
        """Acceptance rate of every sampler that tracks one, keyed by name."""
        return {
            instance.name: instance.acceptance_rate
            for instance in self.pipeline
            if not np.isnan(instance.acceptance_rate)
        }


def build_mcmc(
    configuration: Union[MCMCConfiguration, "ModelGraph"],
    **kwargs: Any,
) -> MCMC:
    """Build an MCMC algorithm.

    :param configuration: Configuration, or a graph to configure with defaults
    :type configuration: Union[MCMCConfiguration, ModelGraph]
    :param kwargs: Passed to :py:class:`MCMCConfiguration` when a graph is given

    :returns: The MCMC algorithm
    :rtype: MCMC
    """
    if not isinstance(configuration, MCMCConfiguration):
        configuration = MCMCConfiguration(configuration, **kwargs)
    elif kwargs:
        raise TypeError("Configuration options can only be given with a graph")
    return MCMC(configuration)


def _run_chain(
    mcmc: MCMC,
    chain: "custom_types.Integer",
    niter: "custom_types.Integer",
    nburnin: "custom_types.Integer",
    thin: "custom_types.Integer",
    progress_bar: bool,
) -> tuple[dict[str, npt.NDArray], dict[str, float]]:
    samples = mcmc.run(
        niter=niter,
        nburnin=nburnin,
        thin=thin,
        reset=True,
        progress_bar=progress_bar,
        chain=chain,
    )
    return samples, mcmc.acceptance()


def _chain_inits(inits: InitsType, chain: "custom_types.Integer") -> dict[str, Any]:
    if inits is None:
        return {}
    if callable(inits):
        return inits(chain)
    if isinstance(inits, list):
        return inits[chain]
    return inits


def run_mcmc(
    graph: "ModelGraph",
    niter: "custom_types.Integer" = DEFAULT_N_ITER,
    nburnin: "custom_types.Integer" = DEFAULT_N_BURNIN,
    thin: "custom_types.Integer" = DEFAULT_THIN,
    nchains: "custom_types.Integer" = DEFAULT_N_CHAINS,
    inits: InitsType = None,
    seed: Optional["custom_types.Integer"] = None,
    parallel: bool = False,
    monitors: Optional["custom_types.NodeNames"] = None,
    configuration: Optional[MCMCConfiguration] = None,
    progress_bar: bool = DEFAULT_PROGRESS_BAR,
    use_dask: bool = False,
) -> MCMCResults:
    """Configure, build and run MCMC on independent copies of a graph.

    Each chain runs on its own copy of the graph, with its own random number
    generator spawned from ``seed``. The original graph is not modified. Latent
    nodes without a value or an init are drawn from their priors separately in
    every chain.

    :param graph: Graph to sample
    :type graph: ModelGraph
    :param niter: Iterations per chain, including burn-in. Defaults to 10000.
    :type niter: custom_types.Integer
    :param nburnin: Burn-in iterations per chain. Defaults to 0.
    :type nburnin: custom_types.Integer
    :param thin: Thinning interval. Defaults to 1.
    :type thin: custom_types.Integer
    :param nchains: Number of chains. Defaults to 1.
    :type nchains: custom_types.Integer
    :param inits: Initial values: one dictionary for all chains, a list with one
        per chain, or a function of the chain number. Defaults to None.
    :type inits: InitsType
    :param seed: Seed for reproducible runs. Defaults to None, meaning a seed drawn
        from :py:data:`scinimpy.RNG`.
    :type seed: Optional[custom_types.Integer]
    :param parallel: Whether chains run in parallel on dask's threaded scheduler.
        Defaults to False.
    :type parallel: bool
    :param monitors: Nodes to record, added to the configuration's monitors.
        Defaults to None.
    :type monitors: Optional[custom_types.NodeNames]
    :param configuration: Sampler configuration. Defaults to None, meaning the
        default configuration of ``graph``.
    :type configuration: Optional[MCMCConfiguration]
    :param progress_bar: Whether to display progress bars. Defaults to True.
    :type progress_bar: bool
    :param use_dask: Whether the results compute summaries with dask. Defaults to
        False.
    :type use_dask: bool

    :returns: Samples from every chain
    :rtype: MCMCResults

    :raises ValueError: If the iteration arguments are inconsistent, or a list of
        inits does not have one entry per chain
    """
    _check_run_args(niter, nburnin, thin)
    if nchains < 1:
        raise ValueError(f"nchains must be positive, got {nchains}")
    if isinstance(inits, list) and len(inits) != nchains:
        raise ValueError(f"Expected {nchains} sets of inits, got {len(inits)}")

    # Configure
    if configuration is None:
        configuration = MCMCConfiguration(graph)
    if monitors is not None:
        configuration.add_monitors(monitors)

    # One generator per chain
    if seed is None:
        seed = int(utils.get_rng().integers(0, 2**63 - 1))
    chain_seeds = np.random.SeedSequence(seed).spawn(nchains)

    # Build every chain on its own copy of the graph
    mcmcs = []
    for chain, chain_seed in enumerate(chain_seeds):
        chain_graph = graph.copy(seed=int(chain_seed.generate_state(1)[0]))
        chain_graph.set_inits(_chain_inits(inits, chain))
        mcmcs.append(MCMC(configuration, chain_graph))

    # Run
    run_args = (niter, nburnin, thin, progress_bar)
    if parallel:
        chains = dask.compute(
            *[
                dask.delayed(_run_chain)(mcmc, chain, *run_args)
                for chain, mcmc in enumerate(mcmcs)
            ],
            scheduler="threads",
        )
    else:
        chains = [_run_chain(mcmc, chain, *run_args) for chain, mcmc in enumerate(mcmcs)]

    return MCMCResults.from_chains(
        [samples for samples, _ in chains],
        [acceptance for _, acceptance in chains],
        graph,
        use_dask=use_dask,
    )
