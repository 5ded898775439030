"""Branch-length and γ estimation from quartet concordance factors."""

from __future__ import annotations

from typing import List, Tuple

import numpy as np
from scipy.optimize import minimize

from .networks import PhyloNetwork
from .quarnet import quartet_expected_cfs
from .quartets import QuartetData

_EPS = np.finfo(float).eps
_MIN_CF = 1e-12


def quartet_pseudo_loglik(data: QuartetData) -> float:
    """Σ over quartets of Σ p̂ log(p/p̂); 0 when expected CFs match observed ones."""
    total = 0.0
    for q in data:
        if q.exp_cf is None:
            raise ValueError(f"quartet {q.taxa} has no expected CFs")
        keep = q.obs_cf > _EPS
        with np.errstate(divide="ignore"):
            total += float(np.sum(q.obs_cf[keep] * np.log(q.exp_cf[keep] / q.obs_cf[keep])))
    return total


def _free_parameters(net: PhyloNetwork) -> Tuple[List[int], List[int]]:
    """Internal edges, and the minor edge of each hybrid with 2 parents."""
    lengths = [key for _, child, key in net.edges() if not net.is_leaf(child)]
    gammas = []
    for hyb in net.hybrid_nodes():
        parents = net.parent_edges(hyb)
        if len(parents) == 2:
            gammas.extend(key for _, _, key in parents if not net.is_major_edge(key))
    return lengths, sorted(gammas)


def _apply(net: PhyloNetwork, lengths: List[int], gammas: List[int], x: np.ndarray) -> None:
    for key, value in zip(lengths, x[: len(lengths)]):
        net.set_edge_length(key, value)
    for key, value in zip(gammas, x[len(lengths) :]):
        hyb = net.edge_endpoints(key)[1]
        for _, _, other in net.parent_edges(hyb):
            net.set_edge_gamma(other, value if other == key else 1.0 - value)


def optimize_branch_lengths(
    net: PhyloNetwork,
    data: QuartetData,
    inheritance_correlation: float = 0.0,
    max_length: float = 10.0,
) -> PhyloNetwork:
    """Copy of ``net`` with internal edge lengths and γ's fitted to ``data``.

    Maximizes the composite likelihood Σ ngenes Σ p̂ log p over quartets with
    L-BFGS-B. Missing lengths are first filled in by ultrametrization.
    """
    work = net.copy()
    work.ultrametrize()
    lengths, gammas = _free_parameters(work)
    if not lengths and not gammas:
        return work
    four_taxa_sets = [q.taxa for q in data]
    observed = data.observed()
    weights = data.ngenes()[:, None]

    init = np.array(
        [min(max(work.edge_length(k), 0.0), max_length) for k in lengths]
        + [work.edge_gamma(k) for k in gammas],
        dtype=float,
    )
    bounds = [(0.0, max_length)] * len(lengths) + [(0.0, 1.0)] * len(gammas)

    def objective(x: np.ndarray) -> float:
        _apply(work, lengths, gammas, x)
        expected = np.array(quartet_expected_cfs(work, four_taxa_sets, inheritance_correlation))
        return -float(np.sum(weights * observed * np.log(np.clip(expected, _MIN_CF, 1.0))))

    res = minimize(objective, x0=init, method="L-BFGS-B", bounds=bounds)
    x_opt = np.asarray(res.x, dtype=float)
    if not res.fun <= objective(init):
        x_opt = init
    _apply(work, lengths, gammas, np.clip(x_opt, [b[0] for b in bounds], [b[1] for b in bounds]))
    return work
