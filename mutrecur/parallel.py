"""
Execution helper for per-hypothesis work.

Work is split into contiguous hypothesis chunks; every unit reads shared
inputs and returns its own slot, and results come back in unit order, so the
output does not depend on the worker count.
"""

import logging

import numpy as np
from joblib import Parallel, delayed
from tqdm import tqdm

from .config import Config

logger = logging.getLogger(__name__)


def hypothesis_chunks(n: int, workers: int) -> list:
    """Split 0..n into at most ``workers`` contiguous (lo, hi) ranges."""
    if n <= 0:
        return []
    k = max(1, min(workers, n))
    edges = np.linspace(0, n, k + 1).astype(np.int64)
    return [(int(lo), int(hi)) for lo, hi in zip(edges[:-1], edges[1:]) if hi > lo]


def run_units(func, units: list, config: Config, desc: str = "Units") -> list:
    """Run ``func(*unit)`` for every unit, in order."""
    if config.workers == 1 or len(units) <= 1:
        return [func(*u) for u in tqdm(units, desc=desc, disable=not config.progress)]
    logger.debug(f"Running {len(units)} units on {config.workers} workers ({config.backend})")
    return Parallel(n_jobs=config.workers, backend=config.backend,
                    verbose=5 if config.progress else 0)(delayed(func)(*u) for u in units)
