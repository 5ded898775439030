"""quarnetgof command-line interface."""

from __future__ import annotations

import argparse
import csv
import logging
import sys
from typing import Sequence

from .gof import CORRECTIONS, quarnet_gof_test
from .networks import read_network
from .outliers import QuartetStatistic
from .quarnet import network_expected_cf
from .quartets import (
    CF_COLUMNS,
    TAXON_COLUMNS,
    quartet_data_from_gene_trees,
    read_cf_table,
    read_gene_trees,
    write_cf_table,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quarnetgof",
        description="Quartet goodness-of-fit test of a phylogenetic network under the network coalescent.",
    )
    parser.add_argument(
        "network",
        help="Network in extended Newick format, or path to a file whose first line holds one.",
    )
    parser.add_argument(
        "data",
        nargs="?",
        default=None,
        help="CSV table of quartet CFs (t1..t4, CF12_34, CF13_24, CF14_23, ngenes), "
        "or gene trees with --gene-trees. Required for --mode gof.",
    )
    parser.add_argument(
        "--gene-trees",
        action="store_true",
        help="Read DATA as gene trees (Newick, one per line) and count their quartets.",
    )
    parser.add_argument(
        "--mode",
        choices=["gof", "expected"],
        default="gof",
        help="gof: run the goodness-of-fit test. expected: write expected CFs of all 4-taxon sets.",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output CSV: CF table with outlier p-values (gof), or expected CFs (expected; default stdout).",
    )
    parser.add_argument(
        "--optbl",
        action="store_true",
        help="Optimize edge lengths and γ's before testing.",
    )
    parser.add_argument(
        "--quartetstat",
        choices=[s.value for s in QuartetStatistic],
        default=QuartetStatistic.LRT.value,
        help="Statistic for outlier p-values of 4-taxon sets.",
    )
    parser.add_argument(
        "--correction",
        choices=list(CORRECTIONS),
        default="simulation",
        help="Correction for dependence between 4-taxon sets.",
    )
    parser.add_argument("--seed", type=int, default=1234, help="Master seed for the simulation correction.")
    parser.add_argument("--nsim", type=int, default=1000, help="Number of simulated replicates.")
    parser.add_argument(
        "--inheritance-correlation",
        type=float,
        default=0.0,
        help="Correlation in [0, 1] of inheritance between lineages at hybrid nodes.",
    )
    parser.add_argument("--workers", type=int, default=1, help="Processes for the simulation replicates.")
    parser.add_argument("--verbose", action="store_true", help="Log progress to stderr.")
    parser.add_argument(
        "--keepfiles",
        action="store_true",
        help="Keep simulated gene trees in a new directory under the working directory.",
    )
    return parser


def _write_expected(quartets, handle) -> None:
    writer = csv.writer(handle)
    writer.writerow(list(TAXON_COLUMNS + CF_COLUMNS))
    for q in quartets:
        writer.writerow(list(q.taxa) + [float(x) for x in q.cf])


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.nsim < 1:
        print("error: --nsim must be >= 1", file=sys.stderr)
        return 2
    if args.workers < 1:
        print("error: --workers must be >= 1", file=sys.stderr)
        return 2
    if not 0.0 <= args.inheritance_correlation <= 1.0:
        print("error: --inheritance-correlation must be in [0, 1]", file=sys.stderr)
        return 2
    if args.mode == "gof" and args.data is None:
        print("error: DATA is required for --mode gof", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="[%(asctime)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        net = read_network(args.network)
    except Exception as exc:  # pragma: no cover - error path
        print(f"error: failed reading network: {exc}", file=sys.stderr)
        return 1

    if args.mode == "expected":
        work = net.copy()
        work.ultrametrize()
        try:
            quartets, _ = network_expected_cf(
                work,
                inheritance_correlation=args.inheritance_correlation,
                showprogress=args.verbose,
            )
        except (ValueError, RuntimeError) as exc:
            print(f"error: expected CF calculation failed: {exc}", file=sys.stderr)
            return 1
        if args.output:
            with open(args.output, "w", encoding="utf-8", newline="") as handle:
                _write_expected(quartets, handle)
        else:
            _write_expected(quartets, sys.stdout)
        return 0

    try:
        if args.gene_trees:
            data = quartet_data_from_gene_trees(read_gene_trees(args.data))
        else:
            data = read_cf_table(args.data)
    except Exception as exc:  # pragma: no cover - error path
        print(f"error: failed reading data: {exc}", file=sys.stderr)
        return 1
    if len(data) == 0:
        print("error: no 4-taxon set in the data", file=sys.stderr)
        return 1

    try:
        result = quarnet_gof_test(
            net,
            data,
            optbl=args.optbl,
            quartetstat=args.quartetstat,
            correction=args.correction,
            seed=args.seed,
            nsim=args.nsim,
            verbose=args.verbose,
            keepfiles=args.keepfiles,
            inheritance_correlation=args.inheritance_correlation,
            n_workers=args.workers,
        )
    except (ValueError, RuntimeError) as exc:
        print(f"error: goodness-of-fit test failed: {exc}", file=sys.stderr)
        return 1

    print(f"p-value\t{result.pvalue:.6g}")
    print(f"z-value\t{result.zvalue:.6g}")
    print(f"sigma\t{result.sigma:.6g}")
    nout = int((result.outlier_pvalues < 0.05).sum())
    print(f"outliers\t{nout}/{len(result.outlier_pvalues)}")

    if args.output:
        try:
            write_cf_table(data, args.output, pvalues=result.outlier_pvalues)
        except Exception as exc:  # pragma: no cover - error path
            print(f"error: failed writing output: {exc}", file=sys.stderr)
            return 1
    return 0
