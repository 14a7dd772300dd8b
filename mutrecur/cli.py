#!/usr/bin/env python3
"""
mutrecur CLI - score hypotheses for event recurrence from tab-separated tables.

Inputs are TSV (or Parquet) tables with a header row and at least the columns
chrom, start, end (0-based, half-open). Convert BED/MAF/GTF files first.

Outputs (in --output-dir):
- scores.tsv: one row per hypothesis
- sets.tsv: one row per set (only with --sets)
- diagnostics.json: lambda, alpha, coefficient table
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import pandas as pd

from .config import Config, setup_logging
from .covariates import Covariate
from .intervals import IntervalSet
from .model import ScoringModel

logger = logging.getLogger(__name__)


def load_table(path: str) -> pd.DataFrame:
    """Load a table from Parquet (.parquet/.parq) or tab-separated text."""
    p = Path(path)
    if p.suffix in (".parquet", ".parq"):
        return pd.read_parquet(p)
    return pd.read_csv(p, sep="\t", comment="#")


def read_intervals(path: str) -> IntervalSet:
    """Read an interval table; column names are matched case-insensitively."""
    df = load_table(path)
    df = df.rename(columns={c: c.lower() for c in df.columns if c.lower() in ("chrom", "start", "end", "strand")})
    logger.info(f"Loaded {len(df):,} intervals from {path}")
    return IntervalSet(df)


def parse_covariate(spec: str) -> Covariate:
    """NAME:TYPE:PATH[:FIELD] -> Covariate."""
    parts = spec.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(f"Covariate must be NAME:TYPE:PATH[:FIELD], got {spec!r}")
    name, cov_type, path = parts[:3]
    field = parts[3] if len(parts) == 4 else None
    if cov_type == "numeric" and field is None:
        raise argparse.ArgumentTypeError(f"Numeric covariate {name!r} needs a FIELD")
    return Covariate(read_intervals(path), type=cov_type, field=field, name=name)


def read_sets(path: str, by_index: bool) -> dict:
    """Long-format TSV: set<TAB>hypothesis (index, or identifier with --id-field)."""
    df = pd.read_csv(path, sep="\t", comment="#", header=None, names=["set", "hypothesis"], dtype=str)
    df = df.dropna()
    if by_index:
        df["hypothesis"] = pd.to_numeric(df["hypothesis"], errors="raise").astype(int)
    return {name: sub["hypothesis"].tolist() for name, sub in df.groupby("set", sort=False)}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Covariate-corrected recurrence testing of somatic mutations",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    p.add_argument("--hypotheses", required=True, help="Hypothesis TSV (chrom,start,end + metadata)")
    p.add_argument("--events", required=True, help="Event TSV (chrom,start,end + sample column)")
    p.add_argument("--eligible", default=None, help="Eligible territory TSV (default: all hypothesis bases)")
    p.add_argument("--covariate", action="append", default=[], metavar="NAME:TYPE:PATH[:FIELD]",
                   help="Covariate track; TYPE is numeric or interval. Repeatable")
    p.add_argument("--sets", default=None, help="Set membership TSV: set<TAB>hypothesis")
    p.add_argument("--by", default=None, help="Group hypothesis intervals by this column")
    p.add_argument("--id-field", default=None,
                   help="Hypothesis column used to resolve set members (default: row index)")

    p.add_argument("--dedup-key", default="sample", help="Event column used for per-sample deduplication")
    p.add_argument("--no-dedup", action="store_true", help="Count every event")
    p.add_argument("--idcap", type=int, default=1, help="Max events per sample per hypothesis")
    p.add_argument("--workers", type=int, default=1)
    p.add_argument("--max-iter", type=int, default=25)
    p.add_argument("--tol", type=float, default=1e-6)
    p.add_argument("--fdr-method", default="fdr_bh", help="statsmodels multipletests method")
    p.add_argument("--min-eligible", type=int, default=1, help="Minimum eligible bases to enter the fit")
    p.add_argument("--lambda-method", choices=["ols", "huber"], default="ols")
    p.add_argument("--progress", action="store_true", help="Show progress bars")

    p.add_argument("--output-dir", default="output", help="Directory to write outputs")
    p.add_argument("-v", "--verbose", action="count", default=1)
    p.add_argument("-q", "--quiet", action="store_true")
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(0 if args.quiet else args.verbose)

    cfg = Config(
        dedup_key=None if args.no_dedup else args.dedup_key,
        idcap=args.idcap,
        workers=args.workers,
        max_iter=args.max_iter,
        tol=args.tol,
        fdr_method=args.fdr_method,
        min_eligible=args.min_eligible,
        lambda_method=args.lambda_method,
        progress=args.progress,
    )

    covariate = Covariate.concat(parse_covariate(s) for s in args.covariate)
    model = ScoringModel(
        read_intervals(args.hypotheses),
        events=read_intervals(args.events),
        eligible=read_intervals(args.eligible) if args.eligible else None,
        covariates=covariate,
        config=cfg,
        by=args.by,
    )

    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    scores = model.score()
    scores.to_csv(out_dir / "scores.tsv", sep="\t", index=False)
    logger.info(f"Wrote {out_dir / 'scores.tsv'}")

    if args.sets:
        sets = read_sets(args.sets, by_index=args.id_field is None)
        results = model.aggregate(sets, id_field=args.id_field)
        results.table.to_csv(out_dir / "sets.tsv", sep="\t")
        logger.info(f"Wrote {out_dir / 'sets.tsv'}")

    with open(out_dir / "diagnostics.json", "w") as f:
        json.dump(model.diagnostics.to_dict(), f, indent=2, default=str)
    logger.info(f"Wrote {out_dir / 'diagnostics.json'}")

    n_sig = int((scores["fdr"] < 0.1).sum())
    logger.info(f"{n_sig:,} hypotheses with FDR < 0.1")
    return 0


if __name__ == "__main__":
    sys.exit(main())
