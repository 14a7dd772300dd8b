#!/usr/bin/env python3
"""
Unit tests for ScoringModel: caching, subsets, merges and determinism.
"""
import pytest
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import mutrecur.covariates as cov_mod
from mutrecur.config import Config
from mutrecur.covariates import Covariate
from mutrecur.intervals import IntervalSet
from mutrecur.model import ScoringModel

from synthetic_data import make_dataset


@pytest.fixture
def data():
    return make_dataset(n=200, seed=31)


@pytest.fixture
def annotate_calls(monkeypatch):
    """Record the covariate names each annotation pass computes."""
    calls = []
    real = cov_mod.annotate

    def spy(covariate, *args, **kwargs):
        calls.append(covariate.names)
        return real(covariate, *args, **kwargs)

    monkeypatch.setattr(cov_mod, "annotate", spy)
    return calls


def make_model(data, fields=("x", "noise"), **kwargs):
    return ScoringModel(data["hypotheses"], events=data["events"],
                        covariates=Covariate(data["covariates"], field=list(fields)), **kwargs)


def test_annotation_table_layout(data):
    """Metadata, count, eligible, then covariates in insertion order"""
    table = make_model(data).annotations
    assert list(table.columns) == ["chrom", "start", "end", "strand", "name", "count", "eligible", "x", "noise"]
    assert table["count"].tolist() == data["counts"].tolist()
    np.testing.assert_allclose(table["x"], data["x"])
    assert (table["eligible"] == 1000).all()


def test_annotation_is_cached(data, annotate_calls):
    """Repeated annotation and scoring never recompute covariates"""
    model = make_model(data)
    first = model.annotate()
    second = model.annotate()
    model.score()
    model.score()
    pd.testing.assert_frame_equal(first, second)
    assert annotate_calls == [["x", "noise"]]


def test_score_is_repeatable(data):
    """Scoring twice gives identical tables"""
    model = make_model(data)
    pd.testing.assert_frame_equal(model.score(), model.score())


def test_merge_computes_only_new_columns(data, annotate_calls):
    """Merging keeps existing columns and rows, computes only the new one"""
    model = make_model(data, fields=("x",))
    before = model.annotations
    extra = Covariate(data["covariates"], field="noise", name="noise2")
    merged = model.merge_covariates(extra)
    after = merged.annotations

    assert annotate_calls == [["x"], ["noise2"]]
    assert len(after) == len(before)
    pd.testing.assert_frame_equal(after[before.columns], before)
    assert list(after.columns)[-1] == "noise2"
    # the original model is unchanged
    assert model.covariates.names == ["x"]


def test_merge_rejects_duplicate_names(data):
    """A merged covariate may not reuse a name"""
    model = make_model(data, fields=("x",))
    with pytest.raises(ValueError):
        model.merge_covariates(Covariate(data["covariates"], field="x"))
    with pytest.raises(ValueError):
        model.merge_covariates(Covariate(data["covariates"], field="x", name="name"))


def test_reserved_metadata_rejected(data):
    """Hypothesis metadata may not collide with result columns"""
    frame = data["hypotheses"].frame
    frame["count"] = 0
    with pytest.raises(ValueError):
        ScoringModel(IntervalSet(frame))


def test_column_subset_reuses_annotations(data, annotate_calls):
    """Dropping covariates keeps cached values and clears scores"""
    model = make_model(data)
    model.score()
    sub = model.subset_columns(["x"])
    assert sub.scores is None
    assert sub.covariates.names == ["x"]
    table = sub.annotations
    assert "noise" not in table.columns
    assert sub.subset_columns("x").covariates.names == ["x"]
    assert sub.subset_columns(0).covariates.names == ["x"]
    assert annotate_calls == [["x", "noise"]]
    assert model.scores is not None


def test_row_subset_matches_fresh_model(data, annotate_calls):
    """A row subset has the same annotations as a model built on those rows"""
    model = make_model(data)
    model.score()
    keep = list(range(20, 80))
    sub = model.subset_rows(keep)
    assert sub.scores is None
    assert len(sub) == 60

    hyps = IntervalSet(data["hypotheses"].frame.iloc[keep])
    fresh = ScoringModel(hyps, events=data["events"],
                         covariates=Covariate(data["covariates"], field=["x", "noise"]))
    pd.testing.assert_frame_equal(sub.annotations, fresh.annotations)
    # only the fresh model annotated again
    assert annotate_calls == [["x", "noise"], ["x", "noise"]]

    sub_scores = sub.score()
    assert len(sub_scores) == 60
    assert sub_scores["name"].tolist() == [f"H{i:04d}" for i in keep]


def test_row_subset_selectors(data):
    """Predicate, boolean mask and invalid indices"""
    model = make_model(data)
    scored = model.score()
    with_events = model.subset_rows(lambda t: t["count"] > 0)
    assert len(with_events) == int((scored["count"] > 0).sum())
    assert (with_events.annotations["count"] > 0).all()

    mask = np.zeros(len(model), dtype=bool)
    mask[[1, 5]] = True
    assert model.subset_rows(mask).annotations["name"].tolist() == ["H0001", "H0005"]

    # order of the selection is kept
    assert model.subset_rows([5, 1]).annotations["name"].tolist() == ["H0005", "H0001"]

    with pytest.raises(IndexError):
        model.subset_rows([0, 10_000])
    with pytest.raises(ValueError):
        model.subset_rows([1, 1])
    with pytest.raises(ValueError):
        model.subset_rows(np.ones(3, dtype=bool))


def test_replace_events_keeps_covariates(data, annotate_calls):
    """New events change counts but not covariate values"""
    model = make_model(data)
    model.score()
    no_events = model.replace_events(IntervalSet(data["events"].frame.iloc[:0]))
    table = no_events.annotations
    assert (table["count"] == 0).all()
    np.testing.assert_allclose(table["x"], data["x"])
    assert annotate_calls == [["x", "noise"]]
    assert no_events.scores is None


def test_replace_eligible_recomputes(data, annotate_calls):
    """New territory recomputes eligible bases, counts and covariates"""
    model = make_model(data)
    before = model.annotations
    hyps = data["hypotheses"].frame
    half = hyps[["chrom", "start"]].copy()
    half["end"] = half["start"] + 500
    narrowed = model.replace_eligible(IntervalSet(half))
    after = narrowed.annotations
    assert (after["eligible"] == 500).all()
    assert (after["count"] <= before["count"]).all()
    assert annotate_calls == [["x", "noise"], ["x", "noise"]]


def test_with_config_recounts_on_dedup_change(data):
    """Changing the deduplication settings recomputes counts"""
    events = data["events"].frame
    events["sample"] = "same_donor"
    model = ScoringModel(data["hypotheses"], events=IntervalSet(events),
                         covariates=Covariate(data["covariates"], field="x"))
    dedup = model.annotations["count"]
    assert dedup.max() <= 1
    raw = model.with_config(Config(dedup_key=None)).annotations["count"]
    assert raw.tolist() == data["counts"].tolist()
    assert (raw >= dedup).all()


def test_score_counts_under_call_config():
    """A config passed to score() sets how events are counted for that call"""
    hyps = IntervalSet(pd.DataFrame({"chrom": ["chr1"] * 4, "start": [0, 100, 200, 300],
                                     "end": [100, 200, 300, 400]}))
    positions = [10, 20, 30, 150, 210, 220]
    events = IntervalSet(pd.DataFrame({"chrom": ["chr1"] * len(positions), "start": positions,
                                       "end": [p + 1 for p in positions], "sample": ["s1"] * len(positions)}))
    model = ScoringModel(hyps, events=events)

    raw = model.score(Config(dedup_key=None))
    assert raw["count"].tolist() == [3, 1, 2, 0]
    assert model.annotate(Config(dedup_key=None))["count"].tolist() == [3, 1, 2, 0]

    # the model's own config still deduplicates by sample
    assert model.score()["count"].tolist() == [1, 1, 1, 0]
    assert model.counts.tolist() == [1, 1, 1, 0]
    assert model.event_counts(Config(idcap=2)).tolist() == [2, 1, 2, 0]


def test_results_independent_of_worker_count(data):
    """Serial and parallel runs give the same score table"""
    serial = make_model(data, config=Config(workers=1)).score()
    parallel = make_model(data, config=Config(workers=2)).score()
    pd.testing.assert_frame_equal(serial, parallel)


def test_dropping_null_covariate_keeps_hits():
    """Removing a covariate with no effect leaves the significant set unchanged"""
    data = make_dataset(n=2000, seed=32, paired_noise=True, n_planted=3, planted_count=20)
    full = make_model(data, fields=("x", "noise"))
    full_scores = full.score()
    assert full.fit.coefficients.loc["noise", "p"] > 0.5

    reduced = full.subset_columns(["x"])
    reduced_scores = reduced.score()

    hits_full = set(np.flatnonzero(full_scores["fdr"] < 0.1))
    hits_reduced = set(np.flatnonzero(reduced_scores["fdr"] < 0.1))
    assert hits_full == hits_reduced
    assert set(data["planted"].tolist()) <= hits_reduced


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
