"""Quartet goodness-of-fit test of a network against concordance-factor data."""

from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np
from scipy.stats import norm

from .branch_lengths import optimize_branch_lengths, quartet_pseudo_loglik
from .correction import simulation_correction
from .networks import PhyloNetwork
from .outliers import gof_zvalue, outlier_pvalues, quartet_gof_zvalue, resolve_quartet_statistic
from .quarnet import check_inheritance_correlation, expected_cf, network_expected_cf, quartet_expected_cfs
from .quartets import QuartetData

__all__ = [
    "CORRECTIONS",
    "GoFResult",
    "aggregate_z",
    "compute_expected_cf",
    "network_expected_cf",
    "outlier_pvalues",
    "quarnet_gof_test",
    "run_simulation_correction",
    "update_expected_cf",
]

logger = logging.getLogger(__name__)

CORRECTIONS = ("simulation", "none")


@dataclass(frozen=True)
class GoFResult:
    """Outcome of :func:`quarnet_gof_test`.

    ``pvalue`` is the overall p-value, ``zvalue`` the uncorrected z-value and
    ``sigma`` its estimated null standard deviation (1 without correction).
    ``outlier_pvalues`` follow the order of the input quartets, and
    ``network`` is the copy used for expected CFs.
    """

    pvalue: float
    zvalue: float
    sigma: float
    outlier_pvalues: np.ndarray
    network: PhyloNetwork
    sim_zvalues: np.ndarray | None
    loglik: float

    def empirical_pvalue(self) -> float | None:
        if self.sim_zvalues is None:
            return None
        return float(np.mean(self.sim_zvalues >= self.zvalue))


def update_expected_cf(net: PhyloNetwork, data: QuartetData, inheritance_correlation: float = 0.0) -> float:
    """Attach expected CFs from ``net`` to every quartet; return the pseudo log-likelihood."""
    expected = quartet_expected_cfs(net, [q.taxa for q in data], inheritance_correlation)
    for q, cf in zip(data, expected):
        q.exp_cf = cf
    return quartet_pseudo_loglik(data)


def quarnet_gof_test(
    net: PhyloNetwork,
    data: QuartetData,
    optbl: bool = False,
    *,
    quartetstat="LRT",
    correction: str = "simulation",
    seed: int = 1234,
    nsim: int = 1000,
    verbose: bool = False,
    keepfiles: bool = False,
    inheritance_correlation: float = 0.0,
    n_workers: int = 1,
) -> GoFResult:
    """Test the fit of ``net`` to the quartet CFs in ``data``.

    Each 4-taxon set gets an outlier p-value comparing observed to expected
    CFs. The proportion of p-values below 0.05 gives a z-value, corrected for
    dependence between 4-taxon sets by simulation unless ``correction="none"``.
    Expected CFs are attached to ``data``; ``net`` itself is not modified.
    The simulation correction needs all 4-taxon sets in ``data``.
    """
    if correction not in CORRECTIONS:
        raise ValueError(f"correction ({correction}) must be one of 'none' or 'simulation'")
    statistic = resolve_quartet_statistic(quartetstat)
    rho = check_inheritance_correlation(inheritance_correlation)

    if optbl:
        if verbose:
            logger.info("optimizing branch lengths and γ's")
        work = optimize_branch_lengths(net, data, inheritance_correlation=rho)
    else:
        work = net.copy()
    work.ultrametrize()
    loglik = update_expected_cf(work, data, rho)
    if verbose:
        logger.info("quartet pseudo log-likelihood: %.5f", loglik)

    zvalue, pvalues = quartet_gof_zvalue(data.quartets, statistic)
    sigma = 1.0
    sim_z = None
    if correction == "simulation":
        sigma, sim_z = simulation_correction(
            work,
            data,
            statistic,
            seed=seed,
            nsim=nsim,
            verbose=verbose,
            keepfiles=keepfiles,
            inheritance_correlation=rho,
            n_workers=n_workers,
        )
    pvalue = float(norm.sf(zvalue / sigma))
    return GoFResult(
        pvalue=pvalue,
        zvalue=float(zvalue),
        sigma=float(sigma),
        outlier_pvalues=pvalues,
        network=work,
        sim_zvalues=sim_z,
        loglik=float(loglik),
    )


# short names for the individual steps of the test
compute_expected_cf = expected_cf
aggregate_z = gof_zvalue
run_simulation_correction = simulation_correction
