"""
Hypothesis table: the ordered regions under test.

A hypothesis is either a single interval or the union of every interval that
shares a grouping value (e.g. all exons of a gene). Identity is the position
0..n-1 in the table. Interval rows carry the owning hypothesis in a ``hid``
column.
"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .intervals import CORE_COLS, IntervalSet

logger = logging.getLogger(__name__)


class Hypotheses:
    """Ordered hypotheses with pass-through metadata."""

    def __init__(self, intervals: IntervalSet, by: Optional[str] = None):
        df = intervals.frame
        if "hid" in df.columns:
            raise ValueError("Hypothesis intervals may not carry a 'hid' column")

        if by is None:
            meta = df.copy()
            df["hid"] = np.arange(len(df), dtype=np.int64)
        else:
            if by not in df.columns:
                raise ValueError(f"Grouping field '{by}' not found in hypothesis columns: {list(df.columns)}")
            if df[by].isna().any():
                raise ValueError(f"Grouping field '{by}' has missing values")
            codes, _ = pd.factorize(df[by], sort=False)
            df["hid"] = codes.astype(np.int64)
            agg = {c: "first" for c in df.columns if c not in ("hid", "start", "end")}
            agg.update({"start": "min", "end": "max"})
            grouped = df.groupby("hid", sort=True)
            meta = grouped.agg(agg)
            meta["n_intervals"] = grouped.size()
            meta = meta.reset_index(drop=True)
            meta = meta[[c for c in CORE_COLS if c in meta.columns]
                        + [c for c in meta.columns if c not in CORE_COLS]]
            logger.info(f"Grouped {len(df):,} intervals into {len(meta):,} hypotheses by '{by}'")

        self._intervals = IntervalSet._wrap(df)
        self._meta = meta.reset_index(drop=True)
        self.by = by

    @classmethod
    def _from_parts(cls, intervals: pd.DataFrame, meta: pd.DataFrame, by: Optional[str]) -> "Hypotheses":
        obj = cls.__new__(cls)
        obj._intervals = IntervalSet._wrap(intervals)
        obj._meta = meta.reset_index(drop=True)
        obj.by = by
        return obj

    def __len__(self):
        return len(self._meta)

    def __repr__(self):
        return f"Hypotheses({len(self)} hypotheses, {len(self._intervals)} intervals)"

    @property
    def meta(self) -> pd.DataFrame:
        return self._meta.copy()

    @property
    def intervals(self) -> IntervalSet:
        """Member intervals with their ``hid``."""
        return self._intervals

    def subset(self, indices: Sequence[int]) -> "Hypotheses":
        """Keep the hypotheses at ``indices`` (in that order), renumbering them 0..k-1."""
        idx = np.asarray(indices, dtype=np.int64)
        remap = np.full(len(self), -1, dtype=np.int64)
        remap[idx] = np.arange(len(idx), dtype=np.int64)

        df = self._intervals.frame
        new_hid = remap[df["hid"].to_numpy()]
        df = df.loc[new_hid >= 0].copy()
        df["hid"] = new_hid[new_hid >= 0]
        df = df.sort_values("hid", kind="mergesort")
        return Hypotheses._from_parts(df, self._meta.iloc[idx], self.by)

    def lookup(self, values, field: str) -> dict:
        """Map identifier values in metadata column ``field`` to hypothesis indices."""
        if field not in self._meta.columns:
            raise ValueError(f"Identifier field '{field}' not found in hypothesis metadata")
        col = self._meta[field]
        dups = col[col.duplicated()]
        if len(dups):
            raise ValueError(f"Identifier field '{field}' is not unique (e.g. {dups.iloc[0]!r})")
        index = dict(zip(col.tolist(), range(len(col))))
        return {v: index[v] for v in values if v in index}
