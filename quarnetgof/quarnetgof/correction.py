"""Simulation-based correction for dependence between 4-taxon sets.

Outlier p-values of overlapping 4-taxon sets are correlated, so the z-value
of the goodness-of-fit test does not have variance 1 under the null. The
null distribution is estimated by simulating gene trees along the network,
recomputing the z-value on each replicate and taking
sigma = sqrt(mean(z_sim ** 2)).
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from functools import partial
import logging
import math
import os
from pathlib import Path
import tempfile
from typing import Sequence, Tuple
import warnings

import numpy as np

from .coalescent import simulate_coalescent, write_gene_trees
from .networks import PhyloNetwork
from .outliers import gof_zvalue, outlier_pvalues, resolve_quartet_statistic
from .quartets import QuartetData, Taxon, count_quartets_in_trees, expected_cf_ordered, get_leaf_set

logger = logging.getLogger(__name__)

MAX_SEED = 10_000_000_000


def replicate_seeds(seed: int, nsim: int) -> np.ndarray:
    """One seed per replicate, drawn from the master seed."""
    rng = np.random.default_rng(seed)
    return rng.integers(1, MAX_SEED, size=nsim, endpoint=True)


def _simulate_replicate(
    irep: int,
    rep_seed: int,
    *,
    net: PhyloNetwork,
    expected: np.ndarray,
    taxa: Sequence[Taxon],
    ngenes: int,
    statistic: str,
    inheritance_correlation: float,
    genetree_dir: str | None,
    verbose: bool,
) -> float:
    if verbose:
        logger.info("starting replicate %d", irep + 1)
    rng = np.random.default_rng(int(rep_seed))
    trees = simulate_coalescent(net, ngenes, rng=rng, inheritance_correlation=inheritance_correlation)
    if genetree_dir is not None:
        write_gene_trees(trees, Path(genetree_dir) / f"genetrees_rep{irep + 1}.trees")
    counts, _ = count_quartets_in_trees(trees, taxa)
    if irep == 0:
        simulated: set[Taxon] = set()
        for tree in trees:
            simulated |= get_leaf_set(tree)
        if simulated != set(taxa) or not np.all(counts[:, 3] == ngenes):
            raise RuntimeError("simulated gene trees and the network have different taxa")
    pvalues = outlier_pvalues(statistic, counts[:, :3], expected, counts[:, 3])
    return gof_zvalue(pvalues)


def simulation_correction(
    net: PhyloNetwork,
    data: QuartetData,
    statistic,
    seed: int = 1234,
    nsim: int = 1000,
    verbose: bool = False,
    keepfiles: bool = False,
    inheritance_correlation: float = 0.0,
    n_workers: int = 1,
) -> Tuple[float, np.ndarray]:
    """Estimate sigma, the standard deviation of the z-value under the network.

    ``data`` must hold every 4-taxon set with expected CFs from ``net``.
    Each replicate simulates ceil(median number of genes) gene trees with its
    own seed, so the results do not depend on ``n_workers``.
    Returns sigma and the simulated z-values.
    """
    statistic = resolve_quartet_statistic(statistic).value
    if nsim < 1:
        raise ValueError("nsim must be >= 1")
    if n_workers < 1:
        raise ValueError("n_workers must be >= 1")
    expected, taxa = expected_cf_ordered(data, net)
    ngenes = math.ceil(float(np.median(data.ngenes())))
    seeds = [int(s) for s in replicate_seeds(seed, nsim)]
    genetree_dir = None
    if keepfiles:
        genetree_dir = tempfile.mkdtemp(prefix="qgof_", dir=os.getcwd())
        logger.info("simulated gene trees will be stored in %s", genetree_dir)

    run = partial(
        _simulate_replicate,
        net=net,
        expected=expected,
        taxa=taxa,
        ngenes=ngenes,
        statistic=statistic,
        inheritance_correlation=inheritance_correlation,
        genetree_dir=genetree_dir,
        verbose=verbose,
    )
    sim_z = np.empty(nsim, dtype=float)
    if n_workers == 1:
        for irep, rep_seed in enumerate(seeds):
            sim_z[irep] = run(irep, rep_seed)
    else:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            for irep, z in enumerate(executor.map(run, range(nsim), seeds)):
                sim_z[irep] = z

    mean_z2 = float(np.mean(sim_z ** 2))
    sigma = math.sqrt(mean_z2)
    mean_z = float(np.mean(sim_z))
    if nsim > 1:
        var_z = mean_z2 - mean_z ** 2
        with np.errstate(divide="ignore", invalid="ignore"):
            ratio = np.abs(np.float64(mean_z) / np.sqrt(np.float64(var_z) / nsim))
        if not ratio < 4.0:
            warnings.warn(
                f"The z-values from simulated data have a mean ({mean_z:.3f}) far from 0 "
                f"(|mean|/SE = {ratio:.1f}). Their average square is used as the null variance; "
                "an empirical p-value, the proportion of simulated z-values at or above the "
                "observed z-value, may be preferable.",
                RuntimeWarning,
                stacklevel=2,
            )
    if verbose:
        logger.info("simulated z-values: mean %.4f, sigma %.4f over %d replicates", mean_z, sigma, nsim)
    return sigma, sim_z
