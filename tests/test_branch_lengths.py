"""Tests for edge length and γ estimation from quartet CFs."""

from __future__ import annotations

import math

import numpy as np
import pytest

from quarnetgof.branch_lengths import optimize_branch_lengths, quartet_pseudo_loglik
from quarnetgof.networks import read_network_newick
from quarnetgof.quarnet import expected_cf, network_expected_cf
from quarnetgof.quartets import Quartet, QuartetData


def _tree_cf(length: float) -> list[float]:
    minor = math.exp(-length) / 3
    return [1 - 2 * minor, minor, minor]


def test_pseudo_loglik_zero_at_perfect_fit():
    cf = _tree_cf(0.7)
    data = QuartetData([Quartet(("A", "B", "C", "D"), cf, 50, exp_cf=cf)])
    assert quartet_pseudo_loglik(data) == pytest.approx(0.0, abs=1e-14)


def test_pseudo_loglik_negative_otherwise():
    data = QuartetData([Quartet(("A", "B", "C", "D"), _tree_cf(0.7), 50, exp_cf=[1 / 3] * 3)])
    assert quartet_pseudo_loglik(data) < 0


def test_pseudo_loglik_needs_expected_cf():
    data = QuartetData([Quartet(("A", "B", "C", "D"), _tree_cf(0.7), 50)])
    with pytest.raises(ValueError):
        quartet_pseudo_loglik(data)


def test_optimize_recovers_internal_length():
    net = read_network_newick("((A:1,B:1):0.2,C:1,D:1);")
    data = QuartetData([Quartet(("A", "B", "C", "D"), _tree_cf(1.0), 100)])
    fitted = optimize_branch_lengths(net, data)
    assert expected_cf(fitted, ["A", "B", "C", "D"]) == pytest.approx(_tree_cf(1.0), abs=1e-3)
    (internal,) = [key for _, child, key in fitted.edges() if not fitted.is_leaf(child)]
    assert fitted.edge_length(internal) == pytest.approx(1.0, abs=1e-2)
    # the input network is left alone
    (orig,) = [key for _, child, key in net.edges() if not net.is_leaf(child)]
    assert net.edge_length(orig) == 0.2


def test_optimize_recovers_gamma():
    truth = read_network_newick("((A:2,((B:1,C:1):0.5)#H1:0.5::0.7):1,#H1:1.5::0.3,D:3);")
    quartets, _ = network_expected_cf(truth)
    data = QuartetData([Quartet(q.taxa, q.cf, 200) for q in quartets])
    start = read_network_newick("((A:2,((B:1,C:1):0.5)#H1:0.5::0.5):1,#H1:1.5::0.5,D:3);")
    fitted = optimize_branch_lengths(start, data)
    fitted_cf = network_expected_cf(fitted)[0][0].cf
    assert np.asarray(fitted_cf) == pytest.approx(quartets[0].cf, abs=5e-3)
