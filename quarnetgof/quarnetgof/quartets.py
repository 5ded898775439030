"""Four-taxon sets: canonical ranking, CF tables and quartet counts from gene trees."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from math import comb
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple
from weakref import WeakKeyDictionary

import numpy as np
import treeswift

Taxon = str
FourTaxa = Tuple[Taxon, Taxon, Taxon, Taxon]
CF_COLUMNS = ("CF12_34", "CF13_24", "CF14_23")
TAXON_COLUMNS = ("t1", "t2", "t3", "t4")

_LEAF_SET_CACHE: "WeakKeyDictionary[treeswift.Tree, set[Taxon]]" = WeakKeyDictionary()


@dataclass
class Quartet:
    """Observed (and optionally expected) CFs for one 4-taxon set.

    CFs are ordered as t1t2|t3t4, t1t3|t2t4, t1t4|t2t3 for ``taxa = (t1, t2, t3, t4)``.
    """

    taxa: FourTaxa
    obs_cf: np.ndarray
    ngenes: float = 0.0
    exp_cf: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.taxa = tuple(str(t) for t in self.taxa)
        if len(self.taxa) != 4 or len(set(self.taxa)) != 4:
            raise ValueError(f"a quartet needs 4 distinct taxa, got {self.taxa}")
        self.obs_cf = np.asarray(self.obs_cf, dtype=float)
        if self.obs_cf.shape != (3,):
            raise ValueError("a quartet needs 3 observed concordance factors")
        self.ngenes = float(self.ngenes)
        if self.exp_cf is not None:
            self.exp_cf = np.asarray(self.exp_cf, dtype=float)


@dataclass
class QuartetData:
    quartets: List[Quartet] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.quartets)

    def __iter__(self) -> Iterator[Quartet]:
        return iter(self.quartets)

    def taxa(self) -> List[Taxon]:
        labels = set()
        for q in self.quartets:
            labels.update(q.taxa)
        return sort_taxa(labels)

    def observed(self) -> np.ndarray:
        return np.array([q.obs_cf for q in self.quartets], dtype=float).reshape(-1, 3)

    def expected(self) -> np.ndarray:
        if any(q.exp_cf is None for q in self.quartets):
            raise ValueError("expected CFs are missing: compute them from a network first")
        return np.array([q.exp_cf for q in self.quartets], dtype=float).reshape(-1, 3)

    def ngenes(self) -> np.ndarray:
        return np.array([q.ngenes for q in self.quartets], dtype=float)


def sort_taxa(labels: Iterable[Taxon]) -> List[Taxon]:
    """Taxon order used for numbering: numeric if every label is an integer."""
    taxa = [str(t) for t in labels]
    try:
        return sorted(taxa, key=int)
    except ValueError:
        return sorted(taxa)


def n_quartets(ntax: int) -> int:
    return comb(ntax, 4) if ntax >= 4 else 0


def quartet_rank(i: int, j: int, k: int, l: int) -> int:
    """Colex rank of the 4-taxon set with taxon numbers ``0 <= i < j < k < l``."""
    if not 0 <= i < j < k < l:
        raise ValueError(f"taxon numbers must be increasing and non-negative, got {(i, j, k, l)}")
    return comb(l, 4) + comb(k, 3) + comb(j, 2) + i


def quartet_unrank(rank: int) -> Tuple[int, int, int, int]:
    if rank < 0:
        raise ValueError("rank must be non-negative")
    remaining = int(rank)
    out: list[int] = []
    for size in (4, 3, 2, 1):
        top = size - 1
        while comb(top + 1, size) <= remaining:
            top += 1
        out.append(top)
        remaining -= comb(top, size)
    return (out[3], out[2], out[1], out[0])


def iter_quartets(ntax: int) -> Iterator[Tuple[int, int, int, int]]:
    """All 4-taxon sets of ``ntax`` taxa, in increasing rank."""
    if ntax < 4:
        return
    ts = [0, 1, 2, 3]
    for _ in range(comb(ntax, 4)):
        yield (ts[0], ts[1], ts[2], ts[3])
        ind = next((p for p in range(3) if ts[p + 1] - ts[p] > 1), 3)
        ts[ind] += 1
        for p in range(ind):
            ts[p] = p


def quartet_index_array(ntax: int) -> np.ndarray:
    return np.array(list(iter_quartets(ntax)), dtype=np.int64).reshape(-1, 4)


def resolution_permutation(taxon_numbers: Sequence[int]) -> List[int]:
    """Indices ``perm`` such that ``cf[perm]`` is in canonical order.

    ``taxon_numbers`` are the numbers of the 4 taxa in the order they have in
    the record whose CFs ``cf`` we want to reorder.
    """
    order = sorted(range(4), key=lambda p: taxon_numbers[p])
    first = order[0]
    perm: list[int] = []
    for m in (1, 2, 3):
        pair = {first, order[m]}
        for slot in (1, 2, 3):
            rpair = {0, slot}
            if rpair == pair or rpair == {0, 1, 2, 3} - pair:
                perm.append(slot - 1)
                break
    return perm


def expected_cf_ordered(data: QuartetData, net) -> Tuple[np.ndarray, List[Taxon]]:
    """Expected CFs of ``data`` as an (nq, 3) array in canonical rank and CF order.

    ``data`` must list every 4-taxon set of the network's taxa once, with
    expected CFs already attached.
    """
    taxa = sort_taxa(net.taxa())
    number = {t: i for i, t in enumerate(taxa)}
    nq = len(data)
    if nq != n_quartets(len(taxa)):
        raise ValueError(
            f"data are assumed to contain ALL {n_quartets(len(taxa))} four-taxon sets, "
            f"but contains {nq} only"
        )
    out = np.zeros((nq, 3), dtype=float)
    filled = np.zeros(nq, dtype=bool)
    for q in data:
        if q.exp_cf is None:
            raise ValueError(f"expected CFs are missing for {q.taxa}")
        try:
            numbers = [number[t] for t in q.taxa]
        except KeyError as exc:
            raise ValueError(f"taxon {exc.args[0]} is not in the network") from None
        rank = quartet_rank(*sorted(numbers))
        if filled[rank]:
            raise ValueError(f"4-taxon set {q.taxa} is listed more than once")
        out[rank] = q.exp_cf[resolution_permutation(numbers)]
        filled[rank] = True
    return out, taxa


def read_cf_table(path: str) -> QuartetData:
    """Read a CSV table of quartet CFs (t1..t4, CF12_34, CF13_24, CF14_23, ngenes)."""
    quartets: List[Quartet] = []
    with open(path, "r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        columns = reader.fieldnames or []
        missing = [c for c in TAXON_COLUMNS + CF_COLUMNS if c not in columns]
        if missing:
            raise ValueError(f"CF table {path} lacks columns: {', '.join(missing)}")
        for row in reader:
            ngenes = row.get("ngenes")
            quartets.append(
                Quartet(
                    taxa=tuple(row[c].strip() for c in TAXON_COLUMNS),
                    obs_cf=[float(row[c]) for c in CF_COLUMNS],
                    ngenes=float(ngenes) if ngenes not in (None, "") else 0.0,
                )
            )
    return QuartetData(quartets)


def write_cf_table(data: QuartetData, path: str, pvalues: Sequence[float] | None = None) -> None:
    with_expected = len(data) > 0 and all(q.exp_cf is not None for q in data)
    header = list(TAXON_COLUMNS + CF_COLUMNS) + ["ngenes"]
    if with_expected:
        header += ["exp" + c for c in CF_COLUMNS]
    if pvalues is not None:
        header.append("p_value")
    with open(path, "w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        for i, q in enumerate(data):
            row = list(q.taxa) + [float(x) for x in q.obs_cf] + [q.ngenes]
            if with_expected:
                row += [float(x) for x in q.exp_cf]
            if pvalues is not None:
                row.append(float(pvalues[i]))
            writer.writerow(row)


def read_gene_trees(path: str) -> List[treeswift.Tree]:
    """Read Newick trees from a file (one per line)."""
    trees: List[treeswift.Tree] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            if hasattr(treeswift, "read_tree_newick"):
                tree = treeswift.read_tree_newick(line)
            else:
                tree = treeswift.read_tree(io.StringIO(line), "newick")
            trees.append(tree)
    return trees


def get_leaf_set(tree: treeswift.Tree) -> set[Taxon]:
    cached = _LEAF_SET_CACHE.get(tree)
    if cached is not None:
        return set(cached)
    leaves = set()
    for node in tree.root.traverse_preorder():
        if node.label is None:
            continue
        if node.is_leaf():
            leaves.add(str(node.label))
    _LEAF_SET_CACHE[tree] = set(leaves)
    return leaves


def _leaf_distances(tree: treeswift.Tree, index: Dict[Taxon, int], ntax: int) -> Tuple[np.ndarray, np.ndarray]:
    """Number of edges between every pair of leaves, and which taxa the tree has."""
    dist = np.zeros((ntax, ntax), dtype=np.int64)
    present = np.zeros(ntax, dtype=bool)
    below: dict[treeswift.Node, dict[int, int]] = {}
    for node in tree.root.traverse_postorder():
        if node.is_leaf():
            i = index.get(str(node.label)) if node.label is not None else None
            below[node] = {} if i is None else {i: 0}
            if i is not None:
                present[i] = True
            continue
        merged: dict[int, int] = {}
        for child in node.children:
            depths = {leaf: d + 1 for leaf, d in below.pop(child).items()}
            for a, da in depths.items():
                for b, db in merged.items():
                    dist[a, b] = dist[b, a] = da + db
            merged.update(depths)
        below[node] = merged
    return dist, present


def count_quartets_in_trees(
    trees: Sequence[treeswift.Tree],
    taxa: Sequence[Taxon] | None = None,
) -> Tuple[np.ndarray, List[Taxon]]:
    """Quartet CFs observed in gene trees, for all 4-taxon sets in rank order.

    Returns an (nq, 4) array of CF12_34, CF13_24, CF14_23 and the number of
    genes with all 4 taxa, plus the taxon list used for numbering. A gene tree
    unresolved for a 4-taxon set counts 1/3 toward each resolution.
    """
    if taxa is None:
        labels: set[Taxon] = set()
        for tree in trees:
            labels |= get_leaf_set(tree)
        taxa = sort_taxa(labels)
    else:
        taxa = [str(t) for t in taxa]
    ntax = len(taxa)
    index = {t: i for i, t in enumerate(taxa)}
    quartets = quartet_index_array(ntax)
    a, b, c, d = quartets.T
    counts = np.zeros((len(quartets), 4), dtype=float)
    for tree in trees:
        dist, present = _leaf_distances(tree, index, ntax)
        mask = present[a] & present[b] & present[c] & present[d]
        # four-point condition: the resolution with the smallest sum is displayed
        sums = np.stack(
            [dist[a, b] + dist[c, d], dist[a, c] + dist[b, d], dist[a, d] + dist[b, c]],
            axis=1,
        )
        winners = sums == sums.min(axis=1, keepdims=True)
        nwin = winners.sum(axis=1)
        resolved = mask & (nwin == 1)
        unresolved = mask & (nwin > 1)
        counts[resolved, :3] += winners[resolved]
        counts[unresolved, :3] += 1.0 / 3.0
        counts[mask, 3] += 1.0
    ngenes = counts[:, 3:4]
    with np.errstate(divide="ignore", invalid="ignore"):
        cf = np.where(ngenes > 0, counts[:, :3] / ngenes, 0.0)
    return np.column_stack([cf, counts[:, 3]]), list(taxa)


def quartet_data_from_gene_trees(trees: Sequence[treeswift.Tree]) -> QuartetData:
    """Quartet CF data from gene trees, skipping 4-taxon sets that no gene has."""
    counts, taxa = count_quartets_in_trees(trees)
    quartets = []
    for row, idx in zip(counts, iter_quartets(len(taxa))):
        if row[3] <= 0:
            continue
        quartets.append(Quartet(tuple(taxa[i] for i in idx), row[:3], row[3]))
    return QuartetData(quartets)
