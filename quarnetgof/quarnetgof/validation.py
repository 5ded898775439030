"""msprime cross-checks: networks as demographies with admixture."""

from __future__ import annotations

import io
from typing import Dict, List, Sequence

import msprime
import treeswift

from .networks import PhyloNetwork
from .quartets import count_quartets_in_trees


def _read_tree(newick: str) -> treeswift.Tree:
    if hasattr(treeswift, "read_tree_newick"):
        return treeswift.read_tree_newick(newick)
    return treeswift.read_tree(io.StringIO(newick), "newick")


def node_times(net: PhyloNetwork, tolerance: float = 1e-8) -> Dict[int, float]:
    """Age of every node, requiring a time-consistent network with leaves at time 0."""
    times: Dict[int, float] = {}
    for node in reversed(net.preorder()):
        children = net.child_edges(node)
        if not children:
            times[node] = 0.0
            continue
        ages = [times[w] + net.edge_length(key) for _, w, key in children]
        if max(ages) - min(ages) > tolerance:
            raise ValueError(f"network is not time-consistent below node {node}: ages {ages}")
        times[node] = max(ages)
    return times


def network_demography(net: PhyloNetwork) -> tuple[msprime.Demography, List[str]]:
    """msprime demography of a time-consistent network, in coalescent units.

    Each node is a population of size 1 (haploid), and each hybrid edge gets
    its own population so that an admixture at the hybrid node can send
    lineages to the parents' sides. Returns the demography and the sampled
    population names in taxon order.
    """
    net.check_expected_cf_ready()
    times = node_times(net)
    dem = msprime.Demography()
    for node in net.preorder():
        dem.add_population(name=f"pop{node}", initial_size=1)
    for _, _, key in net.edges():
        if net.is_hybrid_edge(key):
            dem.add_population(name=f"edge{key}", initial_size=1)

    # events added from the leaves up, so that sorting by time keeps a split
    # before the admixture out of the same node
    for node in reversed(net.preorder()):
        children = net.child_edges(node)
        if children:
            derived = [f"edge{key}" if net.is_hybrid(w) else f"pop{w}" for _, w, key in children]
            dem.add_population_split(time=times[node], derived=derived, ancestral=f"pop{node}")
        if net.is_hybrid(node):
            parents = net.parent_edges(node)
            dem.add_admixture(
                time=times[node],
                derived=f"pop{node}",
                ancestral=[f"edge{key}" for _, _, key in parents],
                proportions=[net.edge_gamma(key) for _, _, key in parents],
            )
    dem.sort_events()
    leaves = sorted(net.leaves(), key=lambda n: str(net.taxon(n)))
    return dem, [f"pop{leaf}" for leaf in leaves]


def simulate_gene_trees_msprime(net: PhyloNetwork, n_genes: int, seed: int) -> list[treeswift.Tree]:
    """Gene trees along ``net`` simulated by msprime (independent inheritance)."""
    dem, populations = network_demography(net)
    taxa = sorted(net.taxa())
    labels = {i: taxa[i] for i in range(len(taxa))}
    out = []
    for ts in msprime.sim_ancestry(
        samples={p: 1 for p in populations},
        demography=dem,
        ploidy=1,
        sequence_length=1,
        recombination_rate=0,
        num_replicates=int(n_genes),
        random_seed=int(seed),
    ):
        out.append(_read_tree(ts.first().as_newick(node_labels=labels)))
    return out


def observed_cf_frequencies(trees: Sequence[treeswift.Tree], four_taxa: Sequence[str]) -> List[float]:
    """Fraction of gene trees displaying each resolution of ``four_taxa``."""
    counts, _ = count_quartets_in_trees(trees, list(four_taxa))
    return [float(x) for x in counts[0, :3]]
