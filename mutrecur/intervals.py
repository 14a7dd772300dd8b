"""
Genomic intervals and overlap queries.

Coordinates are 0-based and half-open, ``[start, end)``, as in BED. An
IntervalSet is a thin wrapper over a pandas DataFrame with the columns
``chrom, start, end, strand`` followed by any metadata columns.

Overlap queries use a sorted sweep per chromosome:
- references are sorted by start and carry a running maximum of their ends
- for each query, ``searchsorted`` on the running maximum gives the first
  reference that can reach the query, and ``searchsorted`` on the starts gives
  the first reference beyond it
- the candidate window is expanded with vectorized numpy and filtered
This is O((|A| + |B|) log |B|) plus the size of the output.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import numpy as np
import pandas as pd

from .errors import MalformedInterval

logger = logging.getLogger(__name__)

CORE_COLS = ["chrom", "start", "end", "strand"]
OVERLAP_COLS = ["query", "ref", "chrom", "start", "end", "width"]
UNSTRANDED = "*"


@dataclass(frozen=True, order=True)
class GenomicInterval:
    """A single interval; compares by (chrom, start, end) only."""
    chrom: str
    start: int
    end: int
    strand: str = field(default=UNSTRANDED, compare=False)
    meta: Mapping = field(default_factory=dict, compare=False, hash=False, repr=False)

    def __post_init__(self):
        if pd.isna(self.chrom) or str(self.chrom).strip() == "":
            raise MalformedInterval(f"Interval has no chromosome: {self.start}-{self.end}")
        start, end = int(self.start), int(self.end)
        if start < 0 or start >= end:
            raise MalformedInterval(f"Malformed interval {self.chrom}:{start}-{end} (need 0 <= start < end)")
        object.__setattr__(self, "chrom", str(self.chrom))
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)
        object.__setattr__(self, "strand", self.strand or UNSTRANDED)
        object.__setattr__(self, "meta", MappingProxyType(dict(self.meta)))

    @property
    def width(self) -> int:
        return self.end - self.start

    def overlap(self, other: "GenomicInterval") -> int:
        """Number of bases shared with ``other`` (0 if disjoint)."""
        if self.chrom != other.chrom:
            return 0
        return max(0, min(self.end, other.end) - max(self.start, other.start))

    def __str__(self):
        return f"{self.chrom}:{self.start}-{self.end}"


def _validate_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Check and normalize an interval table; raise MalformedInterval on bad rows."""
    missing = [c for c in ("chrom", "start", "end") if c not in df.columns]
    if missing:
        raise MalformedInterval(f"Interval table is missing column(s): {missing}")

    df = df.reset_index(drop=True).copy()
    chrom = df["chrom"]
    start = pd.to_numeric(df["start"], errors="coerce")
    end = pd.to_numeric(df["end"], errors="coerce")

    bad = (chrom.isna() | (chrom.astype(str).str.strip() == "")
           | start.isna() | end.isna() | (start < 0) | (start >= end))
    if bad.any():
        rows = np.flatnonzero(bad.to_numpy())
        raise MalformedInterval(
            f"{len(rows)} malformed interval(s) (missing chromosome or start >= end); "
            f"first offending rows: {rows[:5].tolist()}"
        )

    df["chrom"] = chrom.astype(str)
    df["start"] = start.astype(np.int64)
    df["end"] = end.astype(np.int64)
    if "strand" in df.columns:
        df["strand"] = df["strand"].fillna(UNSTRANDED).astype(str)
    else:
        df["strand"] = UNSTRANDED

    meta = [c for c in df.columns if c not in CORE_COLS]
    return df[CORE_COLS + meta]


class IntervalSet:
    """Ordered collection of genomic intervals backed by a DataFrame."""

    def __init__(self, frame: Optional[pd.DataFrame] = None):
        if frame is None:
            frame = pd.DataFrame(columns=["chrom", "start", "end"])
        self._df = _validate_frame(frame)

    @classmethod
    def _wrap(cls, df: pd.DataFrame) -> "IntervalSet":
        # df is already normalized
        obj = cls.__new__(cls)
        obj._df = df.reset_index(drop=True)
        return obj

    @classmethod
    def from_frame(cls, df: pd.DataFrame, chrom: str = "chrom", start: str = "start",
                   end: str = "end", strand: Optional[str] = None) -> "IntervalSet":
        """Build from a DataFrame whose coordinate columns may have other names."""
        renames = {chrom: "chrom", start: "start", end: "end"}
        if strand is not None:
            renames[strand] = "strand"
        return cls(df.rename(columns=renames))

    @classmethod
    def from_intervals(cls, intervals: Iterable[GenomicInterval]) -> "IntervalSet":
        rows = [{"chrom": iv.chrom, "start": iv.start, "end": iv.end, "strand": iv.strand, **iv.meta}
                for iv in intervals]
        if not rows:
            return cls()
        return cls(pd.DataFrame(rows))

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __len__(self):
        return len(self._df)

    def __iter__(self):
        meta_cols = self.meta_columns
        for d in self._df.to_dict("records"):
            yield GenomicInterval(d["chrom"], d["start"], d["end"], d["strand"],
                                  {c: d[c] for c in meta_cols})

    def __getitem__(self, key):
        if isinstance(key, (int, np.integer)):
            row = self._df.iloc[int(key)]
            return GenomicInterval(row["chrom"], row["start"], row["end"], row["strand"],
                                   {c: row[c] for c in self.meta_columns})
        return IntervalSet._wrap(self._df.iloc[key])

    def __repr__(self):
        return f"IntervalSet({len(self)} intervals, {self._df['chrom'].nunique()} chromosomes)"

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def frame(self) -> pd.DataFrame:
        return self._df.copy()

    @property
    def meta_columns(self) -> list:
        return [c for c in self._df.columns if c not in CORE_COLS]

    @property
    def chroms(self) -> list:
        return list(pd.unique(self._df["chrom"]))

    @property
    def widths(self) -> np.ndarray:
        return (self._df["end"] - self._df["start"]).to_numpy(dtype=np.int64)

    @property
    def total_width(self) -> int:
        return int(self.widths.sum())

    def column(self, name: str) -> np.ndarray:
        return self._df[name].to_numpy()

    # ------------------------------------------------------------------
    # Set operations
    # ------------------------------------------------------------------

    def pad(self, n: int) -> "IntervalSet":
        """Widen every interval by ``n`` bases on both sides (start clipped at 0)."""
        if n == 0:
            return self
        if n < 0:
            raise ValueError(f"pad must be >= 0, got {n}")
        df = self._df.copy()
        df["start"] = (df["start"] - n).clip(lower=0)
        df["end"] = df["end"] + n
        return IntervalSet._wrap(df)

    def reduce(self, by: Optional[str] = None) -> "IntervalSet":
        """
        Merge overlapping or adjacent intervals into maximal disjoint spans,
        sorted per chromosome. With ``by``, intervals are only merged within
        groups sharing that metadata value and the column is kept.
        """
        keys = ([by] if by else []) + ["chrom"]
        out_cols = keys + ["start", "end"]
        if len(self._df) == 0:
            df = pd.DataFrame({c: pd.Series(dtype=self._df[c].dtype) for c in out_cols})
            df["strand"] = pd.Series(dtype=object)
            return IntervalSet._wrap(df[CORE_COLS + ([by] if by else [])])

        d = self._df.sort_values(keys + ["start", "end"], kind="mergesort")
        run_end = d.groupby(keys, sort=False)["end"].cummax()
        prev_end = run_end.groupby([d[k] for k in keys], sort=False).shift()
        new_block = prev_end.isna() | (d["start"] > prev_end)
        block = new_block.cumsum().to_numpy()

        agg = {k: "first" for k in keys}
        agg.update({"start": "min", "end": "max"})
        merged = d.groupby(block, sort=False).agg(agg).reset_index(drop=True)
        merged["start"] = merged["start"].astype(np.int64)
        merged["end"] = merged["end"].astype(np.int64)
        merged["strand"] = UNSTRANDED
        return IntervalSet._wrap(merged[CORE_COLS + ([by] if by else [])])

    def union(self, other: "IntervalSet") -> "IntervalSet":
        both = pd.concat([self._df[CORE_COLS], other._df[CORE_COLS]], ignore_index=True)
        return IntervalSet._wrap(both).reduce()

    def intersect(self, other: "IntervalSet") -> "IntervalSet":
        """Bases covered by both sets, as reduced disjoint spans."""
        a, b = self.reduce(), other.reduce()
        hits = find_overlaps(a, b)
        df = hits[["chrom", "start", "end"]].copy()
        df["strand"] = UNSTRANDED
        return IntervalSet._wrap(df).reduce()


def _empty_overlaps() -> pd.DataFrame:
    return pd.DataFrame({
        "query": pd.Series(dtype=np.int64),
        "ref": pd.Series(dtype=np.int64),
        "chrom": pd.Series(dtype=object),
        "start": pd.Series(dtype=np.int64),
        "end": pd.Series(dtype=np.int64),
        "width": pd.Series(dtype=np.int64),
    })


def find_overlaps(query: IntervalSet, ref: IntervalSet, mode: str = "any",
                  strand_aware: bool = False) -> pd.DataFrame:
    """
    Find every (query, reference) pair that overlaps.

    Args:
        query: intervals to look up
        ref: intervals to look up against
        mode: "any" (at least one shared base) or "within" (query contained in ref)
        strand_aware: require equal strands; "*" matches either strand

    Returns:
        DataFrame with columns query, ref (positional indices), chrom, start, end
        and width of the shared piece. Rows are ordered by query index, then by
        reference start.
    """
    if mode not in ("any", "within"):
        raise ValueError(f"mode must be 'any' or 'within', got {mode!r}")
    q, r = query._df, ref._df
    if len(q) == 0 or len(r) == 0:
        return _empty_overlaps()

    q_start, q_end = q["start"].to_numpy(), q["end"].to_numpy()
    r_start_all, r_end_all = r["start"].to_numpy(), r["end"].to_numpy()
    q_strand, r_strand = q["strand"].to_numpy(), r["strand"].to_numpy()
    ref_groups = r.groupby("chrom", sort=False).indices

    pieces = []
    for chrom, q_idx in q.groupby("chrom", sort=False).indices.items():
        r_idx = ref_groups.get(chrom)
        if r_idx is None:
            continue
        order = np.lexsort((r_end_all[r_idx], r_start_all[r_idx]))
        r_idx = r_idx[order]
        rs, re_ = r_start_all[r_idx], r_end_all[r_idx]
        run_max = np.maximum.accumulate(re_)

        qs, qe = q_start[q_idx], q_end[q_idx]
        lo = np.searchsorted(run_max, qs, side="right")
        hi = np.searchsorted(rs, qe, side="left")
        n = np.clip(hi - lo, 0, None)
        total = int(n.sum())
        if total == 0:
            continue

        qi = np.repeat(np.arange(len(q_idx)), n)
        ri = np.repeat(lo, n) + (np.arange(total) - np.repeat(np.cumsum(n) - n, n))

        keep = re_[ri] > qs[qi]
        if mode == "within":
            keep &= (rs[ri] <= qs[qi]) & (re_[ri] >= qe[qi])
        if strand_aware:
            a, b = q_strand[q_idx][qi], r_strand[r_idx][ri]
            keep &= (a == b) | (a == UNSTRANDED) | (b == UNSTRANDED)
        qi, ri = qi[keep], ri[keep]
        if len(qi) == 0:
            continue

        s = np.maximum(qs[qi], rs[ri])
        e = np.minimum(qe[qi], re_[ri])
        pieces.append(pd.DataFrame({
            "query": q_idx[qi].astype(np.int64),
            "ref": r_idx[ri].astype(np.int64),
            "chrom": chrom,
            "start": s.astype(np.int64),
            "end": e.astype(np.int64),
            "width": (e - s).astype(np.int64),
        }))

    if not pieces:
        return _empty_overlaps()
    hits = pd.concat(pieces, ignore_index=True)
    return hits.sort_values("query", kind="mergesort", ignore_index=True)


def overlaps_any(query: IntervalSet, ref: IntervalSet, strand_aware: bool = False) -> np.ndarray:
    """Boolean mask over ``query``: True where at least one reference overlaps."""
    mask = np.zeros(len(query), dtype=bool)
    hits = find_overlaps(query, ref, strand_aware=strand_aware)
    mask[hits["query"].to_numpy()] = True
    return mask


def covered_width(query: IntervalSet, ref: IntervalSet) -> np.ndarray:
    """Per query interval, number of bases covered by ``ref`` (reference reduced first)."""
    hits = find_overlaps(query, ref.reduce())
    return np.bincount(hits["query"].to_numpy(), weights=hits["width"].to_numpy(),
                       minlength=len(query)).astype(np.int64)
