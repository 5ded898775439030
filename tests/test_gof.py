"""Tests for the quartet goodness-of-fit test."""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy.stats import norm

from quarnetgof import correction, gof, outliers, quarnet
from quarnetgof.gof import GoFResult, quarnet_gof_test, update_expected_cf
from quarnetgof.networks import read_network_newick, write_network_newick
from quarnetgof.quarnet import network_expected_cf
from quarnetgof.quartets import Quartet, QuartetData

NET5 = "((((A:1,B:1):0.8,E:1):0.6,C:1):0.4,D:1);"
WRONG5 = "((((A:1,C:1):0.8,E:1):0.6,B:1):0.4,D:1);"


def _data(newick: str, ngenes: float = 100) -> QuartetData:
    quartets, _ = network_expected_cf(read_network_newick(newick))
    return QuartetData([Quartet(q.taxa, q.cf, ngenes) for q in quartets])


def test_perfect_fit_without_correction():
    net = read_network_newick(NET5)
    before = write_network_newick(net)
    data = _data(NET5)
    result = quarnet_gof_test(net, data, correction="none")
    assert isinstance(result, GoFResult)
    assert result.outlier_pvalues == pytest.approx(np.ones(5))
    assert result.zvalue == pytest.approx(-0.05 / math.sqrt(0.0475 / 5))
    assert result.sigma == 1.0
    assert result.pvalue == pytest.approx(norm.sf(result.zvalue))
    assert result.sim_zvalues is None
    assert result.empirical_pvalue() is None
    assert result.loglik == pytest.approx(0.0, abs=1e-12)
    # expected CFs are attached to the data, the network is not modified
    assert all(q.exp_cf is not None for q in data)
    assert write_network_newick(net) == before


def test_wrong_topology_is_rejected():
    data = _data(NET5, ngenes=300)
    result = quarnet_gof_test(read_network_newick(WRONG5), data, correction="none")
    assert (result.outlier_pvalues < 0.05).sum() >= 3
    assert result.pvalue < 0.05


def test_quartet_statistics_agree_on_outliers():
    data = _data(NET5, ngenes=300)
    net = read_network_newick(WRONG5)
    flags = []
    for stat in ("LRT", "Qlog", "pearson"):
        result = quarnet_gof_test(net, data, quartetstat=stat, correction="none")
        flags.append(result.outlier_pvalues < 0.05)
    assert np.array_equal(flags[0], flags[1])
    assert np.array_equal(flags[0], flags[2])


@pytest.mark.filterwarnings("ignore:The z-values from simulated data:RuntimeWarning")
def test_simulation_correction_sets_sigma():
    data = _data(NET5, ngenes=30)
    result = quarnet_gof_test(read_network_newick(NET5), data, seed=3, nsim=8)
    assert result.sim_zvalues.shape == (8,)
    assert result.sigma > 0
    assert result.sigma == pytest.approx(np.sqrt(np.mean(result.sim_zvalues ** 2)))
    assert result.pvalue == pytest.approx(norm.sf(result.zvalue / result.sigma))
    assert 0.0 <= result.empirical_pvalue() <= 1.0


def test_optbl_improves_fit():
    data = _data(NET5)
    start = read_network_newick("((((A:1,B:1):0.1,E:1):0.1,C:1):0.1,D:1);")
    plain = quarnet_gof_test(start, data, correction="none")
    fitted = quarnet_gof_test(start, data, optbl=True, correction="none")
    assert fitted.loglik > plain.loglik
    assert fitted.loglik == pytest.approx(0.0, abs=1e-4)


def test_update_expected_cf_returns_loglik():
    data = _data(NET5)
    assert update_expected_cf(read_network_newick(NET5), data) == pytest.approx(0.0, abs=1e-12)
    assert update_expected_cf(read_network_newick(WRONG5), data) < 0


def test_invalid_options():
    net = read_network_newick(NET5)
    data = _data(NET5)
    with pytest.raises(ValueError):
        quarnet_gof_test(net, data, correction="bootstrap")
    with pytest.raises(ValueError):
        quarnet_gof_test(net, data, quartetstat="chisq", correction="none")
    with pytest.raises(ValueError):
        quarnet_gof_test(net, data, correction="none", inheritance_correlation=1.5)
    with pytest.raises(ValueError):
        quarnet_gof_test(net, _data(NET5, ngenes=0), correction="none")


def test_step_functions_are_exposed():
    assert gof.compute_expected_cf is quarnet.expected_cf
    assert gof.network_expected_cf is quarnet.network_expected_cf
    assert gof.aggregate_z is outliers.gof_zvalue
    assert gof.outlier_pvalues is outliers.outlier_pvalues
    assert gof.run_simulation_correction is correction.simulation_correction
    assert all(hasattr(gof, name) for name in gof.__all__)
