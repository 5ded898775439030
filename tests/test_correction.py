"""Tests for the simulation-based correction of the z-value."""

from __future__ import annotations

import io
import warnings

import numpy as np
import pytest
import treeswift

from quarnetgof import correction
from quarnetgof.correction import replicate_seeds, simulation_correction
from quarnetgof.networks import read_network_newick
from quarnetgof.quarnet import network_expected_cf
from quarnetgof.quartets import Quartet, QuartetData

NET5 = "((((A:1,B:1):0.8,E:1):0.6,C:1):0.4,D:1);"
# all-equal simulated z-values from few 4-taxon sets can trip the mean check
SIMULATED_MEAN_WARNING = "ignore:The z-values from simulated data:RuntimeWarning"


def _exact_data(net, ngenes=40):
    quartets, _ = network_expected_cf(net)
    return QuartetData([Quartet(q.taxa, q.cf, ngenes, exp_cf=q.cf) for q in quartets])


def test_replicate_seeds_deterministic():
    a = replicate_seeds(42, 10)
    b = replicate_seeds(42, 10)
    assert np.array_equal(a, b)
    assert a.shape == (10,)
    assert (a >= 1).all()
    assert not np.array_equal(a, replicate_seeds(43, 10))
    # seeds of the first replicates do not depend on nsim
    assert np.array_equal(replicate_seeds(42, 3), a[:3])


@pytest.mark.filterwarnings(SIMULATED_MEAN_WARNING)
def test_simulation_correction_is_reproducible():
    net = read_network_newick(NET5)
    data = _exact_data(net)
    sigma1, z1 = simulation_correction(net, data, "LRT", seed=1, nsim=6)
    sigma2, z2 = simulation_correction(net, data, "LRT", seed=1, nsim=6)
    assert z1.shape == (6,)
    assert np.array_equal(z1, z2)
    assert sigma1 == sigma2
    assert sigma1 == pytest.approx(np.sqrt(np.mean(z1 ** 2)))
    assert sigma1 > 0


@pytest.mark.filterwarnings(SIMULATED_MEAN_WARNING)
def test_parallel_matches_sequential():
    net = read_network_newick(NET5)
    data = _exact_data(net)
    _, z_seq = simulation_correction(net, data, "Qlog", seed=5, nsim=4, n_workers=1)
    _, z_par = simulation_correction(net, data, "Qlog", seed=5, nsim=4, n_workers=2)
    assert np.array_equal(z_seq, z_par)


@pytest.mark.filterwarnings(SIMULATED_MEAN_WARNING)
def test_keepfiles_writes_gene_trees(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    net = read_network_newick(NET5)
    data = _exact_data(net, ngenes=7)
    simulation_correction(net, data, "pearson", seed=2, nsim=2, keepfiles=True)
    (folder,) = [p for p in tmp_path.iterdir() if p.name.startswith("qgof_")]
    files = sorted(p.name for p in folder.iterdir())
    assert files == ["genetrees_rep1.trees", "genetrees_rep2.trees"]
    lines = (folder / "genetrees_rep1.trees").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 7


def test_simulation_correction_needs_all_quartets():
    net = read_network_newick(NET5)
    data = _exact_data(net)
    data.quartets.pop()
    with pytest.raises(ValueError):
        simulation_correction(net, data, "LRT", nsim=2)
    with pytest.raises(ValueError):
        simulation_correction(net, _exact_data(net), "LRT", nsim=0)



def _wrong_expectation(net, ngenes=50):
    quartets, _ = network_expected_cf(net)
    return QuartetData([Quartet(q.taxa, q.cf, ngenes, exp_cf=[0.2, 0.4, 0.4]) for q in quartets])


def test_warns_when_simulated_mean_is_far_from_zero():
    net = read_network_newick(NET5)
    with pytest.warns(RuntimeWarning, match="far from 0"):
        simulation_correction(net, _wrong_expectation(net), "LRT", seed=3, nsim=20)


def test_single_replicate_skips_mean_check():
    net = read_network_newick(NET5)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        sigma, z = simulation_correction(net, _wrong_expectation(net), "LRT", seed=3, nsim=1)
    assert sigma == pytest.approx(abs(z[0]))


def _read_tree(newick: str) -> treeswift.Tree:
    if hasattr(treeswift, "read_tree_newick"):
        return treeswift.read_tree_newick(newick)
    return treeswift.read_tree(io.StringIO(newick), "newick")


def test_simulated_trees_missing_a_taxon_are_rejected(monkeypatch):
    def without_e(net, n_genes, **kwargs):
        return [_read_tree("((A:1,B:1):1,(C:1,D:1):1);") for _ in range(n_genes)]

    monkeypatch.setattr(correction, "simulate_coalescent", without_e)
    net = read_network_newick(NET5)
    with pytest.raises(RuntimeError, match="different taxa"):
        simulation_correction(net, _exact_data(net), "LRT", seed=1, nsim=2)
