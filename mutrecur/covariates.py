"""
Covariates and the covariate annotator.

A Covariate is an ordered list of tracks. Each track has a name and a type:
- numeric: a scalar field on the covariate intervals, summarized per
  hypothesis as the mean over its eligible slice weighted by overlap width
- interval: membership in the covariate intervals, summarized per hypothesis
  as the fraction of its eligible slice they cover

Building one Covariate from several numeric fields gives several tracks that
share the same interval geometry. Covariates concatenate with ``+`` and
subset with indexing; downstream code only ever sees the flat track list.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import Config
from .intervals import IntervalSet, find_overlaps
from .parallel import hypothesis_chunks, run_units

logger = logging.getLogger(__name__)

NUMERIC = "numeric"
INTERVAL = "interval"
COVARIATE_TYPES = (NUMERIC, INTERVAL)

# Column names used by the annotation and score tables
RESERVED_NAMES = frozenset({
    "const", "hid", "count", "eligible",
    "count_pred", "count_density", "count_pred_density", "effect_size",
    "p", "p_neg", "fdr", "fdr_neg", "included", "excluded_reason",
})


@dataclass(frozen=True)
class CovariateTrack:
    """One covariate column and the geometry it is computed from."""
    name: str
    type: str
    intervals: IntervalSet = field(repr=False, compare=False)
    field: Optional[str] = None
    pad: int = 0
    log: bool = False
    na_rm: bool = True
    default: Optional[float] = None


def _as_list(x) -> list:
    if x is None:
        return []
    if isinstance(x, str):
        return [x]
    return list(x)


class Covariate:
    """
    Ordered list of covariate tracks.

    Args:
        intervals: covariate geometry (None builds an empty list)
        type: "numeric" or "interval"
        field: numeric field name(s); one track per field
        name: track name(s); default to the field names (numeric) or
            "interval" (interval)
        pad: bases added on each side of every covariate interval
        log: numeric only; natural log of the annotated value, values <= 0
            become missing
        na_rm: numeric only; ignore intervals whose field value is NaN
        default: value used in the model when a hypothesis has no annotation
    """

    def __init__(self, intervals: Optional[IntervalSet] = None, type: str = NUMERIC,
                 field: Union[str, Sequence[str], None] = None,
                 name: Union[str, Sequence[str], None] = None,
                 pad: int = 0, log: bool = False, na_rm: bool = True,
                 default: Optional[float] = None):
        if intervals is None:
            self._tracks = ()
            return
        if type not in COVARIATE_TYPES:
            raise ValueError(f"Covariate type must be one of {COVARIATE_TYPES}, got {type!r}")

        fields = _as_list(field)
        names = _as_list(name)
        if type == NUMERIC:
            if not fields:
                raise ValueError("Numeric covariates need at least one field")
            missing = [f for f in fields if f not in intervals.meta_columns]
            if missing:
                raise ValueError(f"Covariate field(s) {missing} not found; available: {intervals.meta_columns}")
            names = names or fields
            if len(names) != len(fields):
                raise ValueError(f"Got {len(names)} names for {len(fields)} fields")
        else:
            if fields:
                raise ValueError("Interval covariates take no field")
            if log:
                raise ValueError("log transform applies to numeric covariates only")
            names = names or [INTERVAL]
            if len(names) != 1:
                raise ValueError("Interval covariates have exactly one name")

        geom = intervals.pad(pad)
        if type == NUMERIC:
            df = geom.frame
            for f in fields:
                df[f] = pd.to_numeric(df[f], errors="raise").astype(float)
            geom = IntervalSet._wrap(df)
        else:
            geom = geom.reduce()

        if type == NUMERIC:
            tracks = [CovariateTrack(n, type, geom, f, pad, log, na_rm, default)
                      for n, f in zip(names, fields)]
        else:
            tracks = [CovariateTrack(names[0], type, geom, None, pad, False, True, default)]
        self._tracks = tuple(tracks)
        _check_names(self._tracks)

    @classmethod
    def from_tracks(cls, tracks: Iterable[CovariateTrack]) -> "Covariate":
        obj = cls.__new__(cls)
        obj._tracks = tuple(tracks)
        _check_names(obj._tracks)
        return obj

    def __len__(self):
        return len(self._tracks)

    def __iter__(self):
        return iter(self._tracks)

    def __getitem__(self, key) -> "Covariate":
        if isinstance(key, (int, np.integer)):
            return Covariate.from_tracks([self._tracks[key]])
        if isinstance(key, slice):
            return Covariate.from_tracks(self._tracks[key])
        by_name = {t.name: t for t in self._tracks}
        picked = []
        for k in key:
            if isinstance(k, str):
                if k not in by_name:
                    raise KeyError(f"No covariate named {k!r}")
                picked.append(by_name[k])
            else:
                picked.append(self._tracks[int(k)])
        return Covariate.from_tracks(picked)

    def __add__(self, other: "Covariate") -> "Covariate":
        if not isinstance(other, Covariate):
            return NotImplemented
        return Covariate.from_tracks(self._tracks + other._tracks)

    def __repr__(self):
        desc = ", ".join(f"{t.name}:{t.type}" for t in self._tracks)
        return f"Covariate([{desc}])"

    @property
    def names(self) -> list:
        return [t.name for t in self._tracks]

    @property
    def types(self) -> list:
        return [t.type for t in self._tracks]

    @property
    def defaults(self) -> dict:
        return {t.name: t.default for t in self._tracks if t.default is not None}

    @staticmethod
    def concat(covariates: Iterable["Covariate"]) -> "Covariate":
        tracks = []
        for c in covariates:
            tracks.extend(c)
        return Covariate.from_tracks(tracks)


def _check_names(tracks):
    names = [t.name for t in tracks]
    dups = sorted({n for n in names if names.count(n) > 1})
    if dups:
        raise ValueError(f"Duplicate covariate name(s): {dups}")
    clash = sorted(set(names) & RESERVED_NAMES)
    if clash:
        raise ValueError(f"Covariate name(s) {clash} are reserved")


# ============================================================================
# Annotation
# ============================================================================

def _annotate_chunk(track: CovariateTrack, slices: IntervalSet, lo: int, hi: int,
                    eligible: np.ndarray) -> np.ndarray:
    """Values of one track for hypotheses lo..hi-1; ``slices`` holds only their rows."""
    n = hi - lo
    hits = find_overlaps(slices, track.intervals)
    h = slices.column("hid")[hits["query"].to_numpy()].astype(np.int64) - lo
    w = hits["width"].to_numpy().astype(float)

    with np.errstate(invalid="ignore", divide="ignore"):
        if track.type == NUMERIC:
            v = track.intervals.column(track.field)[hits["ref"].to_numpy()].astype(float)
            if track.na_rm:
                ok = ~np.isnan(v)
                h, w, v = h[ok], w[ok], v[ok]
            num = np.bincount(h, weights=w * v, minlength=n)
            den = np.bincount(h, weights=w, minlength=n)
            out = np.where(den > 0, num / np.where(den > 0, den, 1.0), np.nan)
            if track.log:
                out = np.where(out > 0, np.log(np.where(out > 0, out, 1.0)), np.nan)
        else:
            covered = np.bincount(h, weights=w, minlength=n)
            elig = eligible[lo:hi].astype(float)
            out = np.where(elig > 0, covered / np.where(elig > 0, elig, 1.0), np.nan)
    return out


def annotate(covariate: Covariate, slices: IntervalSet, eligible: np.ndarray,
             config: Optional[Config] = None) -> pd.DataFrame:
    """
    Annotate every hypothesis with every covariate track.

    Args:
        covariate: tracks to compute
        slices: eligible slices with ``hid``, sorted by hid
        eligible: eligible bases per hypothesis
        config: execution settings (``workers``, ``backend``)

    Returns:
        DataFrame with one column per track, in track order, one row per hypothesis.
    """
    config = config or Config()
    n = len(eligible)
    if len(covariate) == 0:
        return pd.DataFrame(index=pd.RangeIndex(n))

    hid = slices.column("hid").astype(np.int64)
    chunks = hypothesis_chunks(n, config.workers)
    chunk_slices = []
    for lo, hi in chunks:
        a, b = np.searchsorted(hid, [lo, hi], side="left")
        chunk_slices.append(slices[int(a):int(b)])

    units = [(track, chunk_slices[i], lo, hi, eligible)
             for track in covariate for i, (lo, hi) in enumerate(chunks)]
    logger.info(f"Annotating {n:,} hypotheses with {len(covariate)} covariate(s) "
                f"({len(units)} units, {config.workers} worker(s))")
    parts = run_units(_annotate_chunk, units, config, desc="Annotating")

    cols = {}
    k = len(chunks)
    for j, track in enumerate(covariate):
        vals = np.concatenate(parts[j * k:(j + 1) * k]) if k else np.zeros(0)
        n_missing = int(np.isnan(vals).sum())
        if n_missing:
            logger.info(f"Covariate '{track.name}': {n_missing:,} hypotheses without a value")
        cols[track.name] = vals
    return pd.DataFrame(cols, index=pd.RangeIndex(n))
