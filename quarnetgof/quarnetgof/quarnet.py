"""Expected quartet concordance factors under the network multispecies coalescent.

For a 4-taxon set the network is restricted to the 4 taxa and simplified,
then the lowest hybrid node is resolved recursively:

* 3 or 4 taxa below it (or no hybrid left): the quartet follows the tree
  formula on the edge(s) below the node where those taxa meet.
* 1 taxon below it: the CF is the γ-weighted average over its parent edges.
* 2 taxa below it: they either coalesce along the edge below the hybrid, or
  they reach the hybrid as 2 lineages that pick parents jointly. With
  inheritance correlation ρ, 2 lineages take the same parent i with
  probability γi(γi(1-ρ) + ρ) and different parents i, j with γiγj(1-ρ).
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import List, Sequence, Tuple

import numpy as np

from .networks import PhyloNetwork
from .quartets import FourTaxa, Taxon, iter_quartets, n_quartets, sort_taxa

logger = logging.getLogger(__name__)

# CF slots swapped when the 2 taxa below a hybrid trade parents, by the slot
# of the resolution that groups them together.
_FLIP_PAIR = {0: [0, 2, 1], 1: [2, 1, 0], 2: [1, 0, 2]}


@dataclass
class QuartetCF:
    rank: int
    taxonnumber: Tuple[int, int, int, int]
    taxa: FourTaxa
    cf: np.ndarray


def check_inheritance_correlation(rho: float) -> float:
    rho = float(rho)
    if not 0.0 <= rho <= 1.0:
        raise ValueError(f"inheritance correlation must be in [0, 1], got {rho}")
    return rho


def d2_pair_weights(gammas: Sequence[float], funnel_length: float, rho: float = 0.0) -> np.ndarray:
    """Probability that 2 uncoalesced lineages go to parents (i, j) of a hybrid.

    Entry (i, j) includes the factor exp(-funnel_length) for not coalescing
    below the hybrid, so the matrix sums to that factor when the γ's sum to 1.
    """
    g = np.asarray(gammas, dtype=float)
    nocoal = math.exp(-funnel_length)
    weights = np.outer(g, g) * (1.0 - rho)
    weights[np.diag_indices_from(weights)] += g * rho
    return nocoal * weights


def _resolution_vector(slot: int, major: float, minor: float) -> np.ndarray:
    out = np.full(3, minor, dtype=float)
    out[slot] = major
    return out


def _sister_slot(cluster: Sequence[bool]) -> int:
    """CF slot of the resolution grouping taxon 1 with its side of a split."""
    for j in (1, 2, 3):
        if cluster[j] == cluster[0]:
            return j - 1
    return 0


def _tree_like_cf(net: PhyloNetwork, fourtaxa: FourTaxa, below: int | None) -> np.ndarray:
    if below is None:
        pool = net.edges()
    else:
        pool = net.child_edges(below)
    pool = [ref for ref in pool if not net.is_leaf(ref[1])]
    if below is None and len(pool) > 1:
        raise RuntimeError(
            f"2+ cut edges, yet 4-taxon tree, degree-3 root and no degree-2 nodes. taxa: {fourtaxa}"
        )
    slot = 0  # star: any slot works
    internal_length = 0.0
    for _, _, key in pool:
        internal_length += net.edge_length(key)
        slot = _sister_slot(net.hardwired_cluster(key, fourtaxa))
    minor = math.exp(-internal_length) / 3.0
    return _resolution_vector(slot, 1.0 - 2.0 * minor, minor)


def _expected_cf_4taxa(net: PhyloNetwork, fourtaxa: FourTaxa, rho: float) -> np.ndarray:
    """Expected CFs on a network already restricted to ``fourtaxa``. Modifies ``net``."""
    net.trim_above_lsa()
    if len(net.child_edges(net.root)) <= 2:
        net.fuse_root_edges()
    net.remove_external_blobs()

    if net.num_hybrids == 0:
        return _tree_like_cf(net, fourtaxa, None)

    hyb = [node for node in net.preorder() if net.is_hybrid(node)][-1]
    funnel = net.child_edges(hyb)
    polytomy = len(funnel) > 1
    ndes = len(net.descendant_taxa(hyb))
    n2 = hyb if polytomy else funnel[0][1]
    if ndes > 2:
        if net.is_leaf(n2):
            raise RuntimeError(f"hybrid node {hyb} has {ndes} descendant taxa but a leaf child")
        return _tree_like_cf(net, fourtaxa, n2)
    if ndes == 0:
        raise RuntimeError(f"hybrid node {hyb} has no descendant taxa among {fourtaxa}")

    keys = [key for _, _, key in net.parent_edges(hyb)]
    gammas = [net.edge_gamma(key) for key in keys]

    if ndes == 1:
        qcf = np.zeros(3, dtype=float)
        for i, key_i in enumerate(keys):
            simpler = net.copy()
            for key in keys:
                if key != key_i and simpler.has_edge(key):
                    simpler.delete_hybrid_edge(key)
            qcf += gammas[i] * _expected_cf_4taxa(simpler, fourtaxa, rho)
        return qcf

    slot = _sister_slot(net.hardwired_cluster(keys[0], fourtaxa))
    funnel_length = 0.0 if polytomy else net.edge_length(funnel[0][2])
    qcf = np.zeros(3, dtype=float)
    qcf[slot] = 1.0 - math.exp(-funnel_length)
    if not polytomy:
        net.shrink_edge(funnel[0][2])
    children = net.child_edges(hyb)
    if len(children) != 2:
        raise RuntimeError(f"2-taxon subtree below hybrid {hyb}, but not 2 child edges after shrinking")
    if not all(net.is_leaf(w) for _, w, _ in children):
        raise RuntimeError(f"2-taxon subtree below hybrid {hyb}, but its child edges don't lead to leaves")
    moved = children[1][2]
    weights = d2_pair_weights(gammas, funnel_length, rho)
    for i in range(len(keys)):
        for j in range(i if rho == 1.0 else 0, i + 1):
            simpler = net.copy()
            for k, key in enumerate(keys):
                if k not in (i, j) and simpler.has_edge(key):
                    simpler.delete_hybrid_edge(key)
            if i != j:
                new_parent = simpler.edge_endpoints(keys[j])[0]
                simpler.reattach_child_edge(moved, new_parent)
                simpler.delete_hybrid_edge(keys[j])
            sub = _expected_cf_4taxa(simpler, fourtaxa, rho)
            if i == j:
                qcf += weights[i, i] * sub
            else:
                qcf += weights[i, j] * (sub + sub[_FLIP_PAIR[slot]])
    return qcf


def expected_cf(net: PhyloNetwork, four_taxa: Sequence[Taxon], inheritance_correlation: float = 0.0) -> np.ndarray:
    """Expected CFs (t1t2|t3t4, t1t3|t2t4, t1t4|t2t3) of ``four_taxa`` on ``net``.

    ``net`` is not modified. Raises ValueError if an edge length or a γ is
    missing, and RuntimeError if the network violates the level-1 assumptions.
    """
    fourtaxa = tuple(str(t) for t in four_taxa)
    if len(fourtaxa) != 4 or len(set(fourtaxa)) != 4:
        raise ValueError(f"expected 4 distinct taxa, got {fourtaxa}")
    rho = check_inheritance_correlation(inheritance_correlation)
    net.check_expected_cf_ready()
    return _expected_cf_4taxa(net.restrict_to_taxa(fourtaxa), fourtaxa, rho)


def quartet_expected_cfs(
    net: PhyloNetwork,
    four_taxa_sets: Sequence[Sequence[Taxon]],
    inheritance_correlation: float = 0.0,
) -> List[np.ndarray]:
    """Expected CFs of several 4-taxon sets, validating the network once."""
    rho = check_inheritance_correlation(inheritance_correlation)
    net.check_expected_cf_ready()
    out = []
    for four in four_taxa_sets:
        fourtaxa = tuple(str(t) for t in four)
        out.append(_expected_cf_4taxa(net.restrict_to_taxa(fourtaxa), fourtaxa, rho))
    return out


def network_expected_cf(
    net: PhyloNetwork,
    inheritance_correlation: float = 0.0,
    showprogress: bool = False,
) -> Tuple[List[QuartetCF], List[Taxon]]:
    """Expected CFs of every 4-taxon set of the network, in increasing rank."""
    rho = check_inheritance_correlation(inheritance_correlation)
    net.check_expected_cf_ready()
    taxa = sort_taxa(net.taxa())
    numq = n_quartets(len(taxa))
    if showprogress:
        logger.info("calculating expected CFs for %d quartets", numq)
    step = max(1, numq // 20)
    out: List[QuartetCF] = []
    for rank, idx in enumerate(iter_quartets(len(taxa))):
        fourtaxa = tuple(taxa[i] for i in idx)
        cf = _expected_cf_4taxa(net.restrict_to_taxa(fourtaxa), fourtaxa, rho)
        out.append(QuartetCF(rank=rank, taxonnumber=idx, taxa=fourtaxa, cf=cf))
        if showprogress and (rank + 1) % step == 0:
            logger.info("%d/%d quartets done", rank + 1, numq)
    return out, taxa
