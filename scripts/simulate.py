#!/usr/bin/env python3
"""Simulate gene trees along a network, for testing the goodness-of-fit workflow."""

from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np

from quarnetgof.coalescent import simulate_coalescent, write_gene_trees
from quarnetgof.networks import read_network
from quarnetgof.quartets import quartet_data_from_gene_trees, write_cf_table


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("network", help="Extended Newick network, or a file holding one.")
    parser.add_argument("--n-gene-trees", type=int, default=300)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--inheritance-correlation", type=float, default=0.0)
    parser.add_argument(
        "--engine",
        choices=["internal", "msprime"],
        default="internal",
        help="msprime needs a time-consistent network and ignores --inheritance-correlation.",
    )
    parser.add_argument("--output", required=True, help="Output Newick file path.")
    parser.add_argument("--cf-table", default=None, help="Optional CSV of the observed quartet CFs.")
    args = parser.parse_args()

    net = read_network(args.network)
    net.ultrametrize()
    if args.engine == "msprime":
        from quarnetgof.validation import simulate_gene_trees_msprime

        trees = simulate_gene_trees_msprime(net, args.n_gene_trees, seed=args.seed)
    else:
        rng = np.random.default_rng(args.seed)
        trees = simulate_coalescent(
            net, args.n_gene_trees, rng=rng, inheritance_correlation=args.inheritance_correlation
        )
    out = Path(args.output)
    out.parent.mkdir(parents=True, exist_ok=True)
    write_gene_trees(trees, out)
    if args.cf_table:
        write_cf_table(quartet_data_from_gene_trees(trees), args.cf_table)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
