"""Outlier p-values of 4-taxon sets and the goodness-of-fit z-value."""

from __future__ import annotations

from enum import Enum
import math
from typing import Sequence, Tuple
import warnings

import numpy as np
from scipy.stats import chi2

from .quartets import Quartet

_EPS = np.finfo(float).eps
OUTLIER_LEVEL = 0.05


class QuartetStatistic(str, Enum):
    LRT = "LRT"
    QLOG = "Qlog"
    PEARSON = "pearson"


def resolve_quartet_statistic(name: str | QuartetStatistic) -> QuartetStatistic:
    if isinstance(name, QuartetStatistic):
        return name
    lookup = {s.value.lower(): s for s in QuartetStatistic}
    try:
        return lookup[str(name).lower()]
    except KeyError:
        raise ValueError(
            f"{name} is not a valid quartetstat option: use 'LRT', 'Qlog' or 'pearson'"
        ) from None


def _as_arrays(observed, expected, ngenes) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    obs = np.atleast_2d(np.asarray(observed, dtype=float))
    exp = np.atleast_2d(np.asarray(expected, dtype=float))
    n = np.atleast_1d(np.asarray(ngenes, dtype=float))
    if obs.shape[1] != 3 or obs.shape != exp.shape:
        raise ValueError("observed and expected CFs must both have shape (n, 3)")
    if n.shape != (obs.shape[0],):
        raise ValueError("one number of genes is needed per 4-taxon set")
    return obs, exp, n


def lrt_statistic(observed, expected, ngenes) -> np.ndarray:
    """G statistic 2n Σ p̂ log(p̂/p), skipping resolutions with p̂ ≈ 0."""
    obs, exp, n = _as_arrays(observed, expected, ngenes)
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(obs > _EPS, obs * np.log(obs / exp), 0.0)
    return 2.0 * n * terms.sum(axis=1)


def qlog_statistic(observed, expected, ngenes) -> np.ndarray:
    """2n Σ (p̂ - p)² / (p (log p̂ - log p))."""
    obs, exp, n = _as_arrays(observed, expected, ngenes)
    keep = (obs > _EPS) & (np.abs(obs - exp) > 1e-20)
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(keep, (obs - exp) ** 2 / (exp * (np.log(obs) - np.log(exp))), 0.0)
    return 2.0 * n * terms.sum(axis=1)


def pearson_statistic(observed, expected, ngenes) -> np.ndarray:
    obs, exp, n = _as_arrays(observed, expected, ngenes)
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = (obs - exp) ** 2 / exp
    return n * terms.sum(axis=1)


_STATISTICS = {
    QuartetStatistic.LRT: lrt_statistic,
    QuartetStatistic.QLOG: qlog_statistic,
    QuartetStatistic.PEARSON: pearson_statistic,
}


def outlier_pvalues(statistic, observed, expected, ngenes) -> np.ndarray:
    """Upper-tail chi-squared (2 df) p-value of each 4-taxon set."""
    stat = _STATISTICS[resolve_quartet_statistic(statistic)](observed, expected, ngenes)
    return chi2.sf(stat, df=2)


def gof_zvalue(pvalues: Sequence[float]) -> float:
    """z-value for the proportion of outlier p-values below 0.05.

    Under the null this proportion is 0.05, with variance 0.05 * 0.95 / N.
    Non-finite p-values are left out of N, with a warning.
    """
    p = np.asarray(pvalues, dtype=float)
    finite = np.isfinite(p)
    ntot = int(finite.sum())
    if ntot < p.size:
        warnings.warn(
            f"{p.size - ntot} outlier p-value(s) are Inf or NaN and are ignored",
            RuntimeWarning,
            stacklevel=2,
        )
    if ntot == 0:
        raise ValueError("no finite outlier p-value to compute a z-value from")
    nsmall = int(np.count_nonzero(p[finite] < OUTLIER_LEVEL))
    variance = OUTLIER_LEVEL * (1.0 - OUTLIER_LEVEL) / ntot
    return (nsmall / ntot - OUTLIER_LEVEL) / math.sqrt(variance)


def quartet_gof_zvalue(quartets: Sequence[Quartet], statistic) -> Tuple[float, np.ndarray]:
    """z-value and outlier p-values of observed vs expected CFs.

    Every quartet needs a positive number of genes and expected CFs.
    """
    statistic = resolve_quartet_statistic(statistic)
    for q in quartets:
        if not q.ngenes > 0:
            raise ValueError(f"quartet {q.taxa} does not have info on number of genes")
        if q.exp_cf is None:
            raise ValueError(f"quartet {q.taxa} has no expected CFs")
    obs = np.array([q.obs_cf for q in quartets], dtype=float).reshape(-1, 3)
    exp = np.array([q.exp_cf for q in quartets], dtype=float).reshape(-1, 3)
    ngenes = np.array([q.ngenes for q in quartets], dtype=float)
    pvalues = outlier_pvalues(statistic, obs, exp, ngenes)
    return gof_zvalue(pvalues), pvalues
