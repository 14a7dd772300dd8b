"""
Eligible territory and event counting.

For each hypothesis:
- the eligible slice is the hypothesis (its intervals reduced) intersected
  with the reduced eligible territory
- eligible bases = total width of the slice
- observed count = events overlapping the slice; with a deduplication key each
  sample contributes at most ``idcap`` events per hypothesis
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from .hypotheses import Hypotheses
from .intervals import IntervalSet, UNSTRANDED, find_overlaps

logger = logging.getLogger(__name__)


def eligible_slices(hypotheses: Hypotheses, territory: Optional[IntervalSet] = None) -> IntervalSet:
    """
    Eligible sub-territory of every hypothesis.

    Returns an IntervalSet with a ``hid`` column, sorted by hid then position.
    Hypotheses with no eligible bases have no rows. With ``territory=None``
    every hypothesis base is eligible.
    """
    reduced = hypotheses.intervals.reduce(by="hid")
    if territory is None:
        df = reduced.frame
    else:
        terr = territory.reduce()
        hits = find_overlaps(reduced, terr)
        df = pd.DataFrame({
            "chrom": hits["chrom"].to_numpy(),
            "start": hits["start"].to_numpy(),
            "end": hits["end"].to_numpy(),
            "strand": UNSTRANDED,
            "hid": reduced.column("hid")[hits["query"].to_numpy()].astype(np.int64),
        })
    df = df.sort_values(["hid", "chrom", "start"], kind="mergesort")
    return IntervalSet._wrap(df[["chrom", "start", "end", "strand", "hid"]])


def eligible_bases(slices: IntervalSet, n: int) -> np.ndarray:
    """Total eligible width per hypothesis."""
    return np.bincount(slices.column("hid").astype(np.int64), weights=slices.widths,
                       minlength=n).astype(np.int64)


def count_events(slices: IntervalSet, events: Optional[IntervalSet], n: int,
                 dedup_key: Optional[str] = "sample", idcap: int = 1,
                 strand_aware: bool = False) -> np.ndarray:
    """
    Events per hypothesis, restricted to eligible slices.

    An event touching several slices of one hypothesis counts once. With
    ``dedup_key`` set, at most ``idcap`` events per distinct key value count
    towards each hypothesis; with ``dedup_key=None`` every event counts.
    Every event needs a value in the ``dedup_key`` column.
    """
    if events is None or len(events) == 0 or len(slices) == 0:
        return np.zeros(n, dtype=np.int64)
    if dedup_key is not None and dedup_key not in events.meta_columns:
        raise ValueError(f"Events have no '{dedup_key}' column to deduplicate on; "
                         f"available: {events.meta_columns}")
    if dedup_key is not None:
        n_missing = int(pd.isna(events.column(dedup_key)).sum())
        if n_missing:
            raise ValueError(f"Deduplication field '{dedup_key}' is missing for {n_missing:,} event(s)")

    hits = find_overlaps(events, slices, strand_aware=strand_aware)
    pairs = pd.DataFrame({
        "event": hits["query"].to_numpy(),
        "hid": slices.column("hid")[hits["ref"].to_numpy()].astype(np.int64),
    }).drop_duplicates()

    if dedup_key is None:
        return np.bincount(pairs["hid"].to_numpy(), minlength=n).astype(np.int64)

    pairs["key"] = events.column(dedup_key)[pairs["event"].to_numpy()]
    per_key = pairs.groupby(["hid", "key"], sort=False).size().clip(upper=idcap)
    hid = per_key.index.get_level_values("hid").to_numpy(dtype=np.int64)
    n_dropped = len(pairs) - int(per_key.sum())
    if n_dropped:
        logger.debug(f"Deduplication on '{dedup_key}' removed {n_dropped:,} event-hypothesis hits")
    return np.bincount(hid, weights=per_key.to_numpy(), minlength=n).astype(np.int64)
