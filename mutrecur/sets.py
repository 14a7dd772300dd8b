"""
Set Aggregator - score user-defined groups of hypotheses (e.g. pathways).

Set-level quantities reuse the per-hypothesis fit, no refit:
- count, eligible and count_pred are sums over the included members
- p / p_neg use the same NB2 (or Poisson) tail with the fitted alpha
- FDR is computed across sets

Sets sharing members are scored independently. A hypothesis that is a strong
hit on its own lifts every set that contains it ("celebrity gene" effect);
no cross-set correction is attempted.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .config import Config
from .errors import InvalidSetReference
from .hypotheses import Hypotheses
from .regression import FitResult, adjust_pvalues, lower_tail, upper_tail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HypothesisSet:
    name: str
    members: tuple  # sorted, unique hypothesis indices


@dataclass
class SetResult:
    """Aggregated row for one set plus the score rows of its members."""
    name: str
    row: pd.Series
    members: pd.DataFrame


def build_sets(mapping: Mapping[str, Sequence], hypotheses: Hypotheses,
               id_field: Optional[str] = None) -> list:
    """
    Resolve set definitions to hypothesis indices.

    Members are integer indices, or identifiers from metadata column
    ``id_field`` when it is given. Duplicates are dropped and order is ignored.

    Raises:
        InvalidSetReference: a member does not match any hypothesis
    """
    n = len(hypotheses)
    sets = []
    for name, refs in mapping.items():
        refs = list(refs)
        if id_field is not None:
            found = hypotheses.lookup(refs, id_field)
            unknown = [r for r in refs if r not in found]
            if unknown:
                raise InvalidSetReference(
                    f"Set '{name}' references unknown {id_field} value(s): {unknown[:5]}")
            idx = [found[r] for r in refs]
        else:
            idx = []
            for r in refs:
                if isinstance(r, (bool, np.bool_)) or not isinstance(r, (int, np.integer)):
                    raise InvalidSetReference(f"Set '{name}' member {r!r} is not a hypothesis index")
                if not 0 <= int(r) < n:
                    raise InvalidSetReference(
                        f"Set '{name}' references hypothesis {int(r)}; valid range is 0..{n - 1}")
                idx.append(int(r))
        sets.append(HypothesisSet(str(name), tuple(sorted(set(idx)))))
    logger.info(f"Built {len(sets):,} sets")
    return sets


class SetResults:
    """Set-level score table with access to member rows."""

    def __init__(self, table: pd.DataFrame, scores: pd.DataFrame, sets: Sequence[HypothesisSet]):
        self.table = table
        self._scores = scores
        self._sets = {s.name: s for s in sets}

    def __len__(self):
        return len(self.table)

    def __iter__(self):
        for name in self.table.index:
            yield self[name]

    def __getitem__(self, name: str) -> SetResult:
        return SetResult(name, self.table.loc[name], self.members(name))

    def __repr__(self):
        return f"SetResults({len(self)} sets)"

    def members(self, name: str) -> pd.DataFrame:
        """Score rows of every member, excluded ones included."""
        return self._scores.iloc[list(self._sets[name].members)]

    def containing(self, hypothesis: int) -> "SetResults":
        keep = [s for s in self.table.index if hypothesis in self._sets[s].members]
        return self._restrict(keep)

    def excluding(self, hypothesis: int) -> "SetResults":
        keep = [s for s in self.table.index if hypothesis not in self._sets[s].members]
        return self._restrict(keep)

    def _restrict(self, names) -> "SetResults":
        return SetResults(self.table.loc[names], self._scores, [self._sets[n] for n in names])


def aggregate(scores: pd.DataFrame, sets: Sequence[HypothesisSet], fit_result: FitResult,
              config: Optional[Config] = None) -> SetResults:
    """Aggregate per-hypothesis scores over each set."""
    config = config or Config()
    included = scores["included"].to_numpy(dtype=bool)
    count = scores["count"].to_numpy(dtype=float)
    eligible = scores["eligible"].to_numpy(dtype=float)
    pred = scores["count_pred"].to_numpy(dtype=float)

    rows = []
    for s in sets:
        idx = np.asarray(s.members, dtype=np.int64)
        idx = idx[included[idx]] if len(idx) else idx
        c, e, mu = count[idx].sum(), eligible[idx].sum(), pred[idx].sum()
        scored = len(idx) > 0
        rows.append({
            "set": s.name,
            "n_members": len(s.members),
            "n_included": len(idx),
            "count": c,
            "eligible": e,
            "count_pred": mu if scored else np.nan,
            "count_density": c / e if e > 0 else np.nan,
            "count_pred_density": mu / e if scored and e > 0 else np.nan,
            "effect_size": c / mu if scored and mu > 0 else np.nan,
            "p": float(upper_tail(c, mu, fit_result.alpha)) if scored else np.nan,
            "p_neg": float(lower_tail(c, mu, fit_result.alpha)) if scored else np.nan,
        })

    cols = ["set", "n_members", "n_included", "count", "eligible", "count_pred",
            "count_density", "count_pred_density", "effect_size", "p", "p_neg"]
    table = pd.DataFrame(rows, columns=cols)
    table["fdr"] = adjust_pvalues(table["p"].to_numpy(), config.fdr_method)
    table["fdr_neg"] = adjust_pvalues(table["p_neg"].to_numpy(), config.fdr_method)
    table = table.set_index("set")

    n_empty = int((table["n_included"] == 0).sum())
    if n_empty:
        logger.warning(f"{n_empty:,} set(s) have no scorable members")
    return SetResults(table, scores, sets)
