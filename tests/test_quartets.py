"""Tests for quartet ranking, CF tables and quartet counting in gene trees."""

from __future__ import annotations

import io
from itertools import combinations

import numpy as np
import pytest
import treeswift

from quarnetgof.networks import read_network_newick
from quarnetgof.quarnet import network_expected_cf
from quarnetgof.quartets import (
    Quartet,
    QuartetData,
    count_quartets_in_trees,
    expected_cf_ordered,
    iter_quartets,
    n_quartets,
    quartet_data_from_gene_trees,
    quartet_index_array,
    quartet_rank,
    quartet_unrank,
    read_cf_table,
    resolution_permutation,
    sort_taxa,
    write_cf_table,
)


def _read_tree(newick: str) -> treeswift.Tree:
    if hasattr(treeswift, "read_tree_newick"):
        return treeswift.read_tree_newick(newick)
    return treeswift.read_tree(io.StringIO(newick), "newick")


def test_sort_taxa_numeric_and_lexicographic():
    assert sort_taxa(["10", "2", "1"]) == ["1", "2", "10"]
    assert sort_taxa(["b", "10", "a"]) == ["10", "a", "b"]


def test_rank_is_dense_and_matches_iteration_order():
    ntax = 8
    quartets = list(iter_quartets(ntax))
    assert len(quartets) == n_quartets(ntax) == 70
    assert [quartet_rank(*q) for q in quartets] == list(range(70))
    # colex order: sorted by largest taxon number first
    assert quartets == sorted(combinations(range(ntax), 4), key=lambda q: q[::-1])
    assert quartet_index_array(ntax).shape == (70, 4)


def test_unrank_round_trip():
    for rank in [0, 1, 4, 69, 1000, 123456]:
        assert quartet_rank(*quartet_unrank(rank)) == rank
    assert quartet_unrank(4) == (1, 2, 3, 4)


def test_rank_rejects_unsorted_numbers():
    with pytest.raises(ValueError):
        quartet_rank(2, 1, 3, 4)
    with pytest.raises(ValueError):
        quartet_unrank(-1)


def test_resolution_permutation():
    assert resolution_permutation([0, 1, 2, 3]) == [0, 1, 2]
    # record (b, a, c, d): ba|cd, bc|ad, bd|ac
    assert resolution_permutation([1, 0, 2, 3]) == [0, 2, 1]
    # record (d, c, b, a): dc|ba, db|ca, da|cb
    assert resolution_permutation([3, 2, 1, 0]) == [0, 1, 2]
    # record (a, c, b, d): ac|bd, ab|cd, ad|cb
    assert resolution_permutation([0, 2, 1, 3]) == [1, 0, 2]


def test_expected_cf_ordered_reorders_records():
    net = read_network_newick("((((A:1,B:1):0.2,E:1):0.3,C:1):0.4,D:1);")
    canonical, _ = network_expected_cf(net)
    rng = np.random.default_rng(3)
    records = []
    for q in reversed(canonical):
        order = rng.permutation(4)
        taxa = tuple(q.taxa[i] for i in order)
        numbers = [int(i) for i in order]
        # CFs of the record, in the record's own taxon order
        exp = np.empty(3)
        exp[resolution_permutation(numbers)] = q.cf
        records.append(Quartet(taxa, exp, 10, exp_cf=exp))
    out, taxa = expected_cf_ordered(QuartetData(records), net)
    assert taxa == ["A", "B", "C", "D", "E"]
    assert out == pytest.approx(np.array([q.cf for q in canonical]))


def test_expected_cf_ordered_needs_all_quartets():
    net = read_network_newick("((((A:1,B:1):0.2,E:1):0.3,C:1):0.4,D:1);")
    canonical, _ = network_expected_cf(net)
    data = QuartetData([Quartet(q.taxa, q.cf, 10, exp_cf=q.cf) for q in canonical[:4]])
    with pytest.raises(ValueError):
        expected_cf_ordered(data, net)
    data = QuartetData([Quartet(q.taxa, q.cf, 10) for q in canonical])
    with pytest.raises(ValueError):
        expected_cf_ordered(data, net)


def test_count_quartets_in_trees():
    trees = [_read_tree("((A,B),(C,D));")] * 3 + [_read_tree("((A,C),(B,D));"), _read_tree("(A,B,C,D);")]
    counts, taxa = count_quartets_in_trees(trees)
    assert taxa == ["A", "B", "C", "D"]
    assert counts.shape == (1, 4)
    assert counts[0, :3] == pytest.approx([(3 + 1 / 3) / 5, (1 + 1 / 3) / 5, (1 / 3) / 5])
    assert counts[0, 3] == 5


def test_count_quartets_with_missing_taxa():
    trees = [
        _read_tree("(((A,B),C),(D,E));"),
        _read_tree("((A,B),(C,D));"),
    ]
    counts, taxa = count_quartets_in_trees(trees)
    assert taxa == ["A", "B", "C", "D", "E"]
    # ABCD is in both trees, quartets with E only in the first
    assert counts[:, 3].tolist() == [2, 1, 1, 1, 1]
    assert counts[0, :3] == pytest.approx([1.0, 0.0, 0.0])
    # ACDE: (A,C) vs (D,E) in the first tree
    assert counts[3, :3] == pytest.approx([1.0, 0.0, 0.0])


def test_quartet_data_from_gene_trees_skips_absent_quartets():
    trees = [_read_tree("((A,B),(C,D));"), _read_tree("((A,B),(C,E));")]
    data = quartet_data_from_gene_trees(trees)
    assert [q.taxa for q in data] == [("A", "B", "C", "D"), ("A", "B", "C", "E")]
    assert [q.ngenes for q in data] == [1.0, 1.0]


def test_cf_table_round_trip(tmp_path):
    data = QuartetData(
        [
            Quartet(("A", "B", "C", "D"), [0.8, 0.1, 0.1], 50),
            Quartet(("A", "B", "C", "E"), [0.5, 0.3, 0.2], 40),
        ]
    )
    path = tmp_path / "cf.csv"
    write_cf_table(data, str(path), pvalues=[0.5, 0.01])
    header = path.read_text(encoding="utf-8").splitlines()[0]
    assert header.endswith("p_value")
    again = read_cf_table(str(path))
    assert [q.taxa for q in again] == [q.taxa for q in data]
    assert again.observed() == pytest.approx(data.observed())
    assert again.ngenes().tolist() == [50.0, 40.0]


def test_cf_table_missing_columns(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("t1,t2,t3,t4,CF12_34\nA,B,C,D,1\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_cf_table(str(path))
