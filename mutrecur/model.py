"""
ScoringModel - owns hypotheses, events, eligible territory and covariates,
and caches everything derived from them.

Cached pieces and what invalidates them:
- eligible slices, eligible bases: hypotheses, eligible territory
- event counts: hypotheses, events, eligible territory; kept per
  (dedup_key, idcap, strand_aware) so a per-call config counts its own way
- one value array per covariate: hypotheses, eligible territory
- fit and scores: any of the above, or the covariate list

Operations never mutate an existing model; they return a new one that shares
every cache still valid. Row subsets reuse annotation values directly since a
hypothesis's annotation never depends on the other hypotheses.
"""

import copy
import logging
from typing import Callable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from . import covariates as cov_mod
from . import regression, sets as sets_mod
from .config import Config
from .covariates import RESERVED_NAMES, Covariate
from .hypotheses import Hypotheses
from .intervals import IntervalSet
from .territory import count_events, eligible_bases, eligible_slices

logger = logging.getLogger(__name__)


class ScoringModel:
    """
    Recurrence model over a fixed set of hypotheses.

    Args:
        hypotheses: Hypotheses, or an IntervalSet (one hypothesis per
            interval, or grouped by metadata field ``by``)
        events: event intervals with the deduplication column
        eligible: eligible territory; None means every base is eligible
        covariates: ordered covariate list
        config: default execution/model configuration
    """

    def __init__(self, hypotheses: Union[Hypotheses, IntervalSet], events: Optional[IntervalSet] = None,
                 eligible: Optional[IntervalSet] = None, covariates: Optional[Covariate] = None,
                 config: Optional[Config] = None, by: Optional[str] = None):
        if isinstance(hypotheses, IntervalSet):
            hypotheses = Hypotheses(hypotheses, by=by)
        clash = sorted(set(hypotheses.meta.columns) & RESERVED_NAMES)
        if clash:
            raise ValueError(f"Hypothesis metadata column(s) {clash} clash with result columns")

        self._hyp = hypotheses
        self._events = events
        self._eligible = eligible
        self._cov = covariates if covariates is not None else Covariate()
        self.config = config or Config()
        self._check_covariate_names(self._cov)

        self._slices = None
        self._bases = None
        self._counts = {}
        self._cov_values = {}
        self._fit = None
        self._scores = None
        self._diagnostics = None
        logger.info(f"Model with {len(self._hyp):,} hypotheses, "
                    f"{0 if events is None else len(events):,} events, {len(self._cov)} covariate(s)")

    def _check_covariate_names(self, covariate: Covariate):
        clash = sorted(set(covariate.names) & set(self._hyp.meta.columns))
        if clash:
            raise ValueError(f"Covariate name(s) {clash} clash with hypothesis metadata columns")

    def _derive(self, **changes) -> "ScoringModel":
        new = copy.copy(self)
        new._cov_values = dict(self._cov_values)
        new._counts = dict(self._counts)
        new._fit = None
        new._scores = None
        new._diagnostics = None
        for k, v in changes.items():
            setattr(new, k, v)
        return new

    def __len__(self):
        return len(self._hyp)

    def __repr__(self):
        state = "scored" if self._scores is not None else "unscored"
        return f"ScoringModel({len(self)} hypotheses, covariates={self._cov.names}, {state})"

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def hypotheses(self) -> Hypotheses:
        return self._hyp

    @property
    def events(self) -> Optional[IntervalSet]:
        return self._events

    @property
    def eligible(self) -> Optional[IntervalSet]:
        return self._eligible

    @property
    def covariates(self) -> Covariate:
        return self._cov

    # ------------------------------------------------------------------
    # Annotation
    # ------------------------------------------------------------------

    @property
    def slices(self) -> IntervalSet:
        """Eligible slices of every hypothesis (``hid`` column)."""
        if self._slices is None:
            self._slices = eligible_slices(self._hyp, self._eligible)
        return self._slices

    @property
    def eligible_bases(self) -> np.ndarray:
        if self._bases is None:
            self._bases = eligible_bases(self.slices, len(self._hyp))
            n_empty = int((self._bases == 0).sum())
            if n_empty:
                logger.warning(f"{n_empty:,} hypotheses have no eligible territory")
        return self._bases

    @staticmethod
    def _count_key(config: Config) -> tuple:
        return config.dedup_key, config.idcap, config.strand_aware

    def event_counts(self, config: Optional[Config] = None) -> np.ndarray:
        """Per-hypothesis event counts under the counting settings of ``config``."""
        config = config or self.config
        key = self._count_key(config)
        if key not in self._counts:
            counts = count_events(self.slices, self._events, len(self._hyp),
                                  dedup_key=config.dedup_key, idcap=config.idcap,
                                  strand_aware=config.strand_aware)
            logger.info(f"Counted {int(counts.sum()):,} events across {len(self._hyp):,} hypotheses")
            self._counts[key] = counts
        return self._counts[key]

    @property
    def counts(self) -> np.ndarray:
        return self.event_counts()

    def annotate(self, config: Optional[Config] = None) -> pd.DataFrame:
        """
        Annotation table: hypothesis metadata, count, eligible and one column
        per covariate. Only covariates without cached values are computed.
        """
        config = config or self.config
        todo = [t for t in self._cov if t.name not in self._cov_values]
        if todo:
            values = cov_mod.annotate(Covariate.from_tracks(todo), self.slices, self.eligible_bases, config)
            for name in values.columns:
                self._cov_values[name] = values[name].to_numpy()

        table = self._hyp.meta
        table["count"] = self.event_counts(config)
        table["eligible"] = self.eligible_bases
        for name in self._cov.names:
            table[name] = self._cov_values[name]
        return table

    @property
    def annotations(self) -> pd.DataFrame:
        return self.annotate()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, config: Optional[Config] = None) -> pd.DataFrame:
        """Fit the count model and score every hypothesis."""
        config = config or self.config
        table = self.annotate(config)
        fit_result = regression.fit(table, self._cov.names, config, self._cov.defaults)
        scores = regression.score(table, fit_result, config)
        self._fit = fit_result
        self._scores = scores
        self._diagnostics = regression.diagnostics(scores, fit_result, config)
        logger.info(f"Scored {len(scores):,} hypotheses; lambda={self._diagnostics.lambda_:.3f}, "
                    f"alpha={fit_result.alpha:.4g}")
        return scores.copy()

    @property
    def scores(self) -> Optional[pd.DataFrame]:
        """Score table of the last ``score()`` call, or None."""
        return None if self._scores is None else self._scores.copy()

    @property
    def fit(self) -> Optional[regression.FitResult]:
        return self._fit

    @property
    def diagnostics(self) -> Optional[regression.Diagnostics]:
        return self._diagnostics

    def aggregate(self, sets: dict, id_field: Optional[str] = None,
                  config: Optional[Config] = None) -> sets_mod.SetResults:
        """Score sets of hypotheses; scores the model first if needed."""
        config = config or self.config
        if self._scores is None:
            self.score(config)
        resolved = sets_mod.build_sets(sets, self._hyp, id_field=id_field)
        return sets_mod.aggregate(self._scores, resolved, self._fit, config)

    # ------------------------------------------------------------------
    # Derived models
    # ------------------------------------------------------------------

    def _row_indices(self, selector) -> np.ndarray:
        n = len(self._hyp)
        if callable(selector):
            table = self._scores if self._scores is not None else self.annotate()
            selector = np.asarray(selector(table))
        idx = np.asarray(selector)
        if idx.dtype == bool:
            if len(idx) != n:
                raise ValueError(f"Boolean row mask has length {len(idx)}, expected {n}")
            return np.flatnonzero(idx)
        idx = idx.astype(np.int64).ravel()
        if len(idx) and (idx.min() < 0 or idx.max() >= n):
            raise IndexError(f"Row indices out of range 0..{n - 1}")
        if len(np.unique(idx)) != len(idx):
            raise ValueError("Row indices contain duplicates")
        return idx

    def subset_rows(self, selector: Union[Sequence[int], np.ndarray, Callable]) -> "ScoringModel":
        """
        Keep a subsequence of hypotheses.

        ``selector`` is an index sequence, a boolean mask, or a predicate taking
        the current score table (annotation table if unscored) and returning a
        mask. Cached annotations are carried over; scores are dropped.
        """
        idx = self._row_indices(selector)
        changes = {"_hyp": self._hyp.subset(idx)}
        if self._slices is not None:
            remap = np.full(len(self._hyp), -1, dtype=np.int64)
            remap[idx] = np.arange(len(idx), dtype=np.int64)
            df = self._slices.frame
            new_hid = remap[df["hid"].to_numpy()]
            df = df.loc[new_hid >= 0].copy()
            df["hid"] = new_hid[new_hid >= 0]
            changes["_slices"] = IntervalSet._wrap(df.sort_values(["hid", "chrom", "start"], kind="mergesort"))
        if self._bases is not None:
            changes["_bases"] = self._bases[idx]
        new = self._derive(**changes)
        new._counts = {k: v[idx] for k, v in self._counts.items()}
        new._cov_values = {k: v[idx] for k, v in self._cov_values.items()}
        logger.info(f"Row subset: {len(self._hyp):,} -> {len(idx):,} hypotheses")
        return new

    def subset_columns(self, selector: Sequence[Union[int, str]]) -> "ScoringModel":
        """Keep a subsequence of covariates (by position or name); no re-annotation."""
        if isinstance(selector, (str, int, np.integer)):
            selector = [selector]
        cov = self._cov[list(selector)]
        new = self._derive(_cov=cov)
        new._cov_values = {k: v for k, v in self._cov_values.items() if k in cov.names}
        return new

    def merge_covariates(self, covariate: Covariate) -> "ScoringModel":
        """Append covariates; existing columns are kept as computed."""
        merged = self._cov + covariate
        self._check_covariate_names(covariate)
        return self._derive(_cov=merged)

    def replace_events(self, events: Optional[IntervalSet]) -> "ScoringModel":
        """New events; counts and scores are recomputed, covariates kept."""
        return self._derive(_events=events, _counts={})

    def replace_eligible(self, eligible: Optional[IntervalSet]) -> "ScoringModel":
        """New eligible territory; everything derived is recomputed."""
        new = self._derive(_eligible=eligible, _slices=None, _bases=None, _counts={})
        new._cov_values = {}
        return new

    def with_config(self, config: Config) -> "ScoringModel":
        """Same inputs and caches under a new default configuration."""
        return self._derive(config=config)
