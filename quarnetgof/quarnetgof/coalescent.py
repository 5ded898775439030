"""Gene tree simulation under the network multispecies coalescent."""

from __future__ import annotations

import math
from typing import Dict, List, Sequence

import numpy as np
import treeswift

from .networks import PhyloNetwork


def _coalesce_along(
    lineages: List[treeswift.Node],
    length: float,
    rng: np.random.Generator,
) -> List[treeswift.Node]:
    """Run the Kingman coalescent for ``length`` coalescent units.

    Each lineage's ``edge_length`` accumulates the time it spends uncoalesced.
    """
    lineages = list(lineages)
    elapsed = 0.0
    while len(lineages) > 1:
        k = len(lineages)
        wait = rng.exponential(2.0 / (k * (k - 1)))
        if elapsed + wait > length:
            break
        elapsed += wait
        for lineage in lineages:
            lineage.edge_length += wait
        i, j = (int(x) for x in rng.choice(k, size=2, replace=False))
        parent = treeswift.Node(edge_length=0.0)
        parent.add_child(lineages[i])
        parent.add_child(lineages[j])
        lineages = [lin for idx, lin in enumerate(lineages) if idx not in (i, j)]
        lineages.append(parent)
    if math.isfinite(length):
        for lineage in lineages:
            lineage.edge_length += length - elapsed
    return lineages


def assign_parents(
    nlineages: int,
    gammas: Sequence[float],
    rng: np.random.Generator,
    inheritance_correlation: float = 0.0,
) -> List[int]:
    """Parent edge chosen by each lineage at a hybrid node.

    Lineage m follows the parent of an earlier lineage, picked uniformly, with
    probability mρ / (mρ + 1 - ρ), and otherwise draws a parent from the γ's.
    """
    probs = np.asarray(gammas, dtype=float)
    probs = probs / probs.sum()
    rho = float(inheritance_correlation)
    choices: List[int] = []
    for m in range(nlineages):
        if m > 0 and rho > 0.0 and rng.random() < m * rho / (m * rho + 1.0 - rho):
            choices.append(choices[int(rng.integers(m))])
        else:
            choices.append(int(rng.choice(len(probs), p=probs)))
    return choices


def _simulate_one(
    net: PhyloNetwork,
    postorder: Sequence[int],
    rng: np.random.Generator,
    rho: float,
) -> treeswift.Tree:
    arriving: Dict[int, List[treeswift.Node]] = {}
    for node in postorder:
        if net.is_leaf(node):
            lineages = [treeswift.Node(label=net.taxon(node), edge_length=0.0)]
        else:
            lineages = []
            for _, _, key in net.child_edges(node):
                lineages.extend(_coalesce_along(arriving.pop(key), net.edge_length(key), rng))
        parents = net.parent_edges(node)
        if not parents:
            root = _coalesce_along(lineages, math.inf, rng)[0]
            root.edge_length = None
            tree = treeswift.Tree()
            tree.root = root
            return tree
        if len(parents) == 1:
            arriving[parents[0][2]] = lineages
            continue
        for _, _, key in parents:
            arriving[key] = []
        gammas = [net.edge_gamma(key) for _, _, key in parents]
        for lineage, choice in zip(lineages, assign_parents(len(lineages), gammas, rng, rho)):
            arriving[parents[choice][2]].append(lineage)
    raise RuntimeError("the network has no root")


def simulate_coalescent(
    net: PhyloNetwork,
    n_genes: int,
    rng: np.random.Generator | None = None,
    inheritance_correlation: float = 0.0,
    seed: int | None = None,
) -> List[treeswift.Tree]:
    """Simulate ``n_genes`` gene trees (one individual per taxon) along ``net``.

    Branch lengths of the gene trees are in coalescent units.
    """
    if n_genes < 1:
        raise ValueError("n_genes must be >= 1")
    rho = float(inheritance_correlation)
    if not 0.0 <= rho <= 1.0:
        raise ValueError(f"inheritance correlation must be in [0, 1], got {rho}")
    net.check_expected_cf_ready()
    if rng is None:
        rng = np.random.default_rng(seed)
    postorder = list(reversed(net.preorder()))
    return [_simulate_one(net, postorder, rng, rho) for _ in range(n_genes)]


def write_gene_trees(trees: Sequence[treeswift.Tree], path) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        for tree in trees:
            handle.write(tree.newick() + "\n")
