#!/usr/bin/env python3
"""Generate synthetic hypotheses, events and covariates for the model tests."""
import sys
from pathlib import Path

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from mutrecur import IntervalSet

WIDTH = 1000      # bases per hypothesis
SPACING = 2000    # hypothesis start-to-start distance
BETA = (-6.0, 0.8)  # per-base log rate: intercept, x


def layout(n: int) -> pd.DataFrame:
    """n hypotheses of WIDTH bases on chr1, named H0000.."""
    starts = 1000 + SPACING * np.arange(n)
    return pd.DataFrame({
        "chrom": "chr1",
        "start": starts,
        "end": starts + WIDTH,
        "name": [f"H{i:04d}" for i in range(n)],
    })


def make_events(hyps: pd.DataFrame, counts, rng) -> IntervalSet:
    """Single-base events placed uniformly in each hypothesis, one sample per event."""
    rows = []
    for i, (start, c) in enumerate(zip(hyps["start"], counts)):
        for k, pos in enumerate(rng.integers(start, start + WIDTH, size=int(c))):
            rows.append(("chr1", int(pos), int(pos) + 1, f"S{i}_{k}"))
    return IntervalSet(pd.DataFrame(rows, columns=["chrom", "start", "end", "sample"]))


def make_dataset(n: int = 300, alpha: float = 0.0, seed: int = 0,
                 paired_noise: bool = False, n_planted: int = 0, planted_count: int = 20) -> dict:
    """
    Counts ~ Poisson (alpha=0) or NB2 with mean WIDTH * exp(b0 + b1 * x).

    With ``paired_noise`` the hypotheses come in two copies with identical x
    and counts, and the "noise" covariate is +z on the first copy and -z on
    the second, so its fitted coefficient is exactly zero.
    Planted hits get ``planted_count`` events regardless of the model.
    """
    rng = np.random.default_rng(seed)
    n_base = n // 2 if paired_noise else n
    x = rng.normal(size=n_base)
    z = rng.normal(size=n_base)
    mu = WIDTH * np.exp(BETA[0] + BETA[1] * x)
    if alpha > 0:
        size = 1.0 / alpha
        counts = rng.negative_binomial(size, size / (size + mu))
    else:
        counts = rng.poisson(mu)

    planted = np.argsort(np.abs(x))[:n_planted]
    counts[planted] = planted_count

    if paired_noise:
        x = np.concatenate([x, x])
        counts = np.concatenate([counts, counts])
        noise = np.concatenate([z, -z])
        planted = np.concatenate([planted, planted + n_base])
    else:
        noise = z

    hyps = layout(len(x))
    cov = hyps[["chrom", "start", "end"]].copy()
    cov["x"] = x
    cov["noise"] = noise
    return {
        "hypotheses": IntervalSet(hyps),
        "events": make_events(hyps, counts, rng),
        "covariates": IntervalSet(cov),
        "counts": counts,
        "x": x,
        "planted": np.sort(planted),
    }
