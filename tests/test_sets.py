#!/usr/bin/env python3
"""
Unit tests for set aggregation.
"""
import pytest
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mutrecur.covariates import Covariate
from mutrecur.errors import InvalidSetReference
from mutrecur.intervals import IntervalSet
from mutrecur.model import ScoringModel
from mutrecur.regression import lower_tail, upper_tail

from synthetic_data import make_dataset


@pytest.fixture(scope="module")
def model():
    data = make_dataset(n=120, seed=21)
    m = ScoringModel(data["hypotheses"], events=data["events"],
                     covariates=Covariate(data["covariates"], field="x"))
    m.score()
    return m


def test_set_sums_are_additive(model):
    """count, eligible and count_pred are member sums; no refit"""
    members = [3, 17, 40, 41]
    res = model.aggregate({"S": members})
    row = res.table.loc["S"]
    scores = model.scores
    assert row["count"] == scores.loc[members, "count"].sum()
    assert row["eligible"] == scores.loc[members, "eligible"].sum()
    assert row["count_pred"] == pytest.approx(scores.loc[members, "count_pred"].sum())
    assert row["n_members"] == 4
    assert row["n_included"] == 4


def test_set_p_value_uses_fitted_alpha(model):
    """Set p-values use the aggregated counts and the per-hypothesis alpha"""
    res = model.aggregate({"S": [0, 1, 2], "T": [5, 6]})
    alpha = model.fit.alpha
    for name in ("S", "T"):
        row = res.table.loc[name]
        assert row["p"] == pytest.approx(float(upper_tail(row["count"], row["count_pred"], alpha)))
        assert row["p_neg"] == pytest.approx(float(lower_tail(row["count"], row["count_pred"], alpha)))
        assert row["effect_size"] == pytest.approx(row["count"] / row["count_pred"])
    assert res.table["fdr"].notna().all()


def test_single_member_set_matches_hypothesis(model):
    """A one-member set reproduces that hypothesis's score"""
    res = model.aggregate({"one": [7]})
    row = res.table.loc["one"]
    hyp = model.scores.loc[7]
    assert row["count_pred"] == pytest.approx(hyp["count_pred"])
    assert row["p"] == pytest.approx(hyp["p"])


def test_duplicates_and_order_ignored(model):
    """Members are deduplicated and order-insensitive"""
    res = model.aggregate({"a": [9, 2, 9, 4], "b": [2, 4, 9]})
    assert res.table.loc["a", "n_members"] == 3
    assert res.table.loc["a", "p"] == pytest.approx(res.table.loc["b", "p"])
    assert list(res.members("a").index) == [2, 4, 9]


def test_invalid_references(model):
    """Out-of-range indices and unknown identifiers raise"""
    with pytest.raises(InvalidSetReference):
        model.aggregate({"bad": [0, 10_000]})
    with pytest.raises(InvalidSetReference):
        model.aggregate({"bad": [-1]})
    with pytest.raises(InvalidSetReference):
        model.aggregate({"bad": ["H0001"]})
    with pytest.raises(KeyError):
        model.aggregate({"bad": ["H0001", "nope"]}, id_field="name")


def test_members_by_identifier(model):
    """Members resolved through a metadata column"""
    by_id = model.aggregate({"S": ["H0003", "H0017"]}, id_field="name")
    by_idx = model.aggregate({"S": [3, 17]})
    assert by_id.table.loc["S", "p"] == pytest.approx(by_idx.table.loc["S", "p"])


def test_excluded_members_not_aggregated():
    """Members without eligible territory are left out of the sums"""
    data = make_dataset(n=60, seed=22)
    hyps = data["hypotheses"].frame
    terr = IntervalSet(hyps.iloc[1:][["chrom", "start", "end"]])
    m = ScoringModel(data["hypotheses"], events=data["events"], eligible=terr,
                     covariates=Covariate(data["covariates"], field="x"))
    res = m.aggregate({"S": [0, 1, 2], "E": [0]})
    scores = m.scores
    row = res.table.loc["S"]
    assert row["n_members"] == 3
    assert row["n_included"] == 2
    assert row["count"] == scores.loc[[1, 2], "count"].sum()
    assert row["eligible"] == scores.loc[[1, 2], "eligible"].sum()

    empty = res.table.loc["E"]
    assert empty["n_included"] == 0
    assert np.isnan(empty["p"])
    assert np.isnan(empty["fdr"])
    # member rows are still available for inspection
    assert len(res["E"].members) == 1


def test_containing_and_excluding(model):
    """Filter sets by whether they contain a hypothesis"""
    res = model.aggregate({"a": [1, 2], "b": [2, 3], "c": [4]})
    assert list(res.containing(2).table.index) == ["a", "b"]
    assert list(res.excluding(2).table.index) == ["c"]
    assert len(res) == 3
    assert [r.name for r in res] == ["a", "b", "c"]
    assert res["b"].members["count"].tolist() == model.scores.loc[[2, 3], "count"].tolist()


def test_aggregate_scores_model_first():
    """aggregate on an unscored model scores it"""
    data = make_dataset(n=60, seed=23)
    m = ScoringModel(data["hypotheses"], events=data["events"],
                     covariates=Covariate(data["covariates"], field="x"))
    assert m.scores is None
    m.aggregate({"S": [0, 1]})
    assert m.scores is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
