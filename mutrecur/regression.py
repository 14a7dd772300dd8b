"""
Regression Engine - overdispersed count model of events per hypothesis.

Model: count ~ covariates, log link, offset = log(eligible bases).

Parameterization (NB2): mean mu, variance mu + alpha * mu^2, theta = 1 / alpha.
alpha = 0 is the Poisson boundary and is a valid fit, not an error.

Fit procedure:
1. Poisson GLM (statsmodels) for starting coefficients
2. Overdispersion score sum((y - mu)^2 - y); if <= 0 the fit stays Poisson
3. theta by method of moments at the Poisson means, refined by Newton steps on
   the NB2 profile log-likelihood (estimate_alpha)
4. Alternate until converged or max_iter: NB GLM refit at the current alpha,
   then re-estimate alpha at the new means
   Convergence: |dLL| / sqrt(2 * max(1, dof)) + |dtheta| / theta <= tol, both
   taken between consecutive alpha estimates

When no hypothesis can enter the fit, the fit is empty (family "none", NaN
coefficients) and every row is scored as excluded.

Scoring: predicted count = exp(offset + X beta); p = P(X >= count),
p_neg = P(X <= count) under NB(mu=predicted, alpha) or Poisson(predicted);
FDR over included rows only.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.special import digamma, polygamma
from sklearn.linear_model import HuberRegressor, LinearRegression
from statsmodels.stats.multitest import multipletests

from .config import Config
from .errors import (BELOW_MIN_ELIGIBLE, EMPTY_ELIGIBLE_TERRITORY, MISSING_COVARIATE_VALUE,
                     FitNonConvergence, SingularDesignError)
from .parallel import hypothesis_chunks, run_units

logger = logging.getLogger(__name__)

THETA_MAX = 1e8


# ============================================================================
# Fit result and diagnostics
# ============================================================================

@dataclass
class FitResult:
    """Fitted count model."""
    names: list                 # design columns, "const" first
    params: np.ndarray
    bse: np.ndarray
    zvalues: np.ndarray
    pvalues: np.ndarray
    alpha: float
    family: str                 # "negbin", "poisson", or "none" for an empty fit
    converged: bool
    n_iter: int
    loglik: float
    n_fit: int
    min_eligible: int = 1
    defaults: dict = field(default_factory=dict)

    @property
    def covariates(self) -> list:
        return self.names[1:]

    @property
    def theta(self) -> float:
        return np.inf if self.alpha == 0 else 1.0 / self.alpha

    @property
    def coefficients(self) -> pd.DataFrame:
        return pd.DataFrame({
            "estimate": self.params,
            "std_error": self.bse,
            "z": self.zvalues,
            "p": self.pvalues,
        }, index=pd.Index(self.names, name="term"))

    def linear_predictor(self, X: np.ndarray, offset: np.ndarray) -> np.ndarray:
        # column-by-column sum keeps each row independent of its neighbours
        eta = np.asarray(offset, dtype=float).copy()
        for j in range(X.shape[1]):
            eta += X[:, j] * self.params[j]
        return eta


@dataclass
class Diagnostics:
    """Global fit diagnostics."""
    lambda_: float
    alpha: float
    coefficients: pd.DataFrame
    converged: bool
    family: str
    n_fit: int
    n_excluded: int

    def to_dict(self) -> dict:
        coefs = self.coefficients.reset_index().to_dict(orient="records")
        return {
            "lambda": None if np.isnan(self.lambda_) else float(self.lambda_),
            "alpha": None if np.isnan(self.alpha) else float(self.alpha),
            "converged": bool(self.converged),
            "family": self.family,
            "n_fit": int(self.n_fit),
            "n_excluded": int(self.n_excluded),
            "coefficients": coefs,
        }


# ============================================================================
# Design
# ============================================================================

def design_matrix(table: pd.DataFrame, names: Sequence[str],
                  defaults: Optional[Mapping[str, float]] = None) -> pd.DataFrame:
    """Intercept plus one column per covariate; missing values filled from ``defaults``."""
    defaults = defaults or {}
    cols = {"const": np.ones(len(table))}
    for name in names:
        col = table[name].astype(float)
        if defaults.get(name) is not None:
            col = col.fillna(float(defaults[name]))
        cols[name] = col.to_numpy()
    return pd.DataFrame(cols, index=table.index)


def exclusion_reasons(table: pd.DataFrame, X: pd.DataFrame, min_eligible: int = 1) -> np.ndarray:
    """Per-row exclusion label, or None for rows that enter the fit."""
    eligible = table["eligible"].to_numpy()
    reasons = np.full(len(table), None, dtype=object)
    missing = X.isna().any(axis=1).to_numpy()
    reasons[missing] = MISSING_COVARIATE_VALUE
    reasons[eligible < max(1, min_eligible)] = BELOW_MIN_ELIGIBLE
    reasons[eligible == 0] = EMPTY_ELIGIBLE_TERRITORY
    return reasons


def check_rank(X: np.ndarray, names: Sequence[str]):
    """
    Raise SingularDesignError if any column is a linear combination of the
    columns before it (e.g. a covariate constant across all fit rows).
    """
    n, k = X.shape
    if n < k:
        raise SingularDesignError(list(names), f"Only {n} fit rows for {k} design columns")
    norms = np.linalg.norm(X, axis=0)
    Xs = X / np.where(norms > 0, norms, 1.0)
    basis, bad = [], []
    for j in range(k):
        if norms[j] > 0 and np.linalg.matrix_rank(Xs[:, basis + [j]]) > len(basis):
            basis.append(j)
        else:
            bad.append(names[j])
    if bad:
        raise SingularDesignError(bad)


# ============================================================================
# Dispersion
# ============================================================================

def overdispersion_score(y: np.ndarray, mu: np.ndarray) -> float:
    """Score statistic for alpha at the Poisson boundary (up to a factor 1/2)."""
    return float(np.sum((y - mu) ** 2 - y))


def _theta_score(theta, y, mu):
    return np.sum(digamma(theta + y) - digamma(theta) + np.log(theta) + 1
                  - np.log(theta + mu) - (y + theta) / (mu + theta))


def _theta_info(theta, y, mu):
    return np.sum(-polygamma(1, theta + y) + polygamma(1, theta) - 1 / theta
                  + 2 / (mu + theta) - (y + theta) / (mu + theta) ** 2)


def estimate_alpha(y: np.ndarray, mu: np.ndarray, dof: Optional[int] = None,
                   max_iter: int = 25, tol: float = 1e-8) -> tuple:
    """
    NB2 dispersion for fixed means.

    Method-of-moments start, then Newton steps on the profile log-likelihood
    in theta = 1/alpha. Theta beyond THETA_MAX is the Poisson boundary.

    Returns:
        (alpha, converged, n_iter)
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    if len(y) == 0 or overdispersion_score(y, mu) <= 0:
        return 0.0, True, 0

    dof = len(y) if dof is None else max(int(dof), 1)
    alpha_mom = float(np.sum(((y - mu) ** 2 - mu) / mu ** 2) / dof)
    theta = 1.0 / alpha_mom if alpha_mom > 0 else len(y) / float(np.sum((y / mu - 1) ** 2))
    if not np.isfinite(theta) or theta <= 0:
        theta = 1.0

    for it in range(1, max_iter + 1):
        s = _theta_score(theta, y, mu)
        info = _theta_info(theta, y, mu)
        if np.isfinite(s) and np.isfinite(info) and info > 0:
            new = theta + s / info
            if new <= 0:
                new = theta / 2
        else:
            # outside the concave region: step towards the likelihood increase
            new = theta * 2 if s > 0 else theta / 2
        if new > THETA_MAX:
            return 0.0, True, it
        delta = abs(new - theta)
        theta = new
        if delta <= tol * theta:
            return 1.0 / theta, True, it
    return 1.0 / theta, False, max_iter


# ============================================================================
# Fit
# ============================================================================

def _glm(y, X, offset, alpha, start_params=None):
    family = sm.families.Poisson() if alpha == 0 else sm.families.NegativeBinomial(alpha=alpha)
    return sm.GLM(y, X, family=family, offset=offset).fit(start_params=start_params)


def _empty_fit(names: list, config: Config, defaults: dict) -> FitResult:
    k = len(names)
    return FitResult(names=names, params=np.full(k, np.nan), bse=np.full(k, np.nan),
                     zvalues=np.full(k, np.nan), pvalues=np.full(k, np.nan),
                     alpha=np.nan, family="none", converged=False, n_iter=0, loglik=np.nan,
                     n_fit=0, min_eligible=config.min_eligible, defaults=defaults)


def nb_loglik(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """NB2 log-likelihood; Poisson when alpha == 0."""
    if alpha == 0:
        return float(np.sum(stats.poisson.logpmf(y, mu)))
    size = 1.0 / alpha
    return float(np.sum(stats.nbinom.logpmf(y, size, size / (size + mu))))


def fit(table: pd.DataFrame, names: Sequence[str], config: Optional[Config] = None,
        defaults: Optional[Mapping[str, float]] = None) -> FitResult:
    """
    Fit the count model on the annotation table.

    Args:
        table: annotation table with ``count``, ``eligible`` and covariate columns
        names: covariate columns entering the design, in order
        config: ``max_iter``, ``tol``, ``min_eligible``
        defaults: per-covariate fill values for missing annotations

    Returns an empty fit (NaN coefficients, ``n_fit=0``) when every row is
    excluded.

    Raises:
        SingularDesignError: linearly dependent design columns, or fewer fit
            rows than design columns
    """
    config = config or Config()
    names = list(names)
    defaults = dict(defaults or {})

    X_all = design_matrix(table, names, defaults)
    reasons = exclusion_reasons(table, X_all, config.min_eligible)
    keep = pd.isna(reasons)
    n_excluded = int((~keep).sum())
    if n_excluded:
        counts = pd.Series(reasons[~keep]).value_counts().to_dict()
        logger.warning(f"Excluding {n_excluded:,} of {len(table):,} hypotheses from the fit: {counts}")
    if n_excluded == len(table):
        logger.warning("No hypotheses left to fit; returning an empty fit")
        return _empty_fit(list(X_all.columns), config, defaults)

    X = X_all.loc[keep]
    y = table.loc[keep, "count"].to_numpy(dtype=float)
    offset = np.log(table.loc[keep, "eligible"].to_numpy(dtype=float))
    check_rank(X.to_numpy(), list(X.columns))
    if y.sum() == 0:
        logger.warning("No events in any fitted hypothesis; coefficients will be degenerate")

    dof = len(y) - X.shape[1]
    logger.info(f"Fitting Poisson GLM on {len(y):,} hypotheses, {X.shape[1]} design columns")
    result = _glm(y, X, offset, 0.0)
    alpha, family, n_iter = 0.0, "poisson", 0
    converged = True

    if overdispersion_score(y, result.mu) > 0:
        converged = False
        d1 = np.sqrt(2 * max(1, dof))
        # dispersion at the Poisson means; each pass refits at the current
        # alpha and compares the re-estimated alpha and log-likelihood to it
        next_alpha, alpha_ok, _ = estimate_alpha(y, result.mu, dof, config.max_iter, config.tol)
        prev_ll = nb_loglik(y, result.mu, next_alpha)
        for it in range(1, config.max_iter + 1):
            n_iter = it
            if next_alpha == 0.0:
                result = _glm(y, X, offset, 0.0, start_params=result.params)
                alpha, family, converged = 0.0, "poisson", alpha_ok
                break
            result = _glm(y, X, offset, next_alpha, start_params=result.params)
            alpha, family = next_alpha, "negbin"
            next_alpha, alpha_ok, _ = estimate_alpha(y, result.mu, dof, config.max_iter, config.tol)
            ll = nb_loglik(y, result.mu, next_alpha)
            if next_alpha > 0:
                theta, next_theta = 1.0 / alpha, 1.0 / next_alpha
                change = abs(ll - prev_ll) / d1 + abs(next_theta - theta) / next_theta
                if alpha_ok and change <= config.tol:
                    converged = True
                    break
            prev_ll = ll

    if not converged:
        msg = (f"Dispersion fit did not converge in {config.max_iter} iterations; "
               f"returning best estimate (alpha={alpha:.4g})")
        logger.warning(msg)
        warnings.warn(msg, FitNonConvergence, stacklevel=2)

    logger.info(f"Fit done: family={family}, alpha={alpha:.4g}, iterations={n_iter}, loglik={result.llf:.2f}")
    return FitResult(
        names=list(X.columns),
        params=np.asarray(result.params, dtype=float),
        bse=np.asarray(result.bse, dtype=float),
        zvalues=np.asarray(result.tvalues, dtype=float),
        pvalues=np.asarray(result.pvalues, dtype=float),
        alpha=float(alpha),
        family=family,
        converged=converged,
        n_iter=n_iter,
        loglik=float(result.llf),
        n_fit=int(len(y)),
        min_eligible=config.min_eligible,
        defaults=defaults,
    )


# ============================================================================
# Scoring
# ============================================================================

def upper_tail(count, mu, alpha: float) -> np.ndarray:
    """P(X >= count) for X ~ NB2(mu, alpha), or Poisson(mu) when alpha == 0."""
    count = np.asarray(count, dtype=float)
    mu = np.asarray(mu, dtype=float)
    if alpha > 0:
        size = 1.0 / alpha
        return stats.nbinom.sf(count - 1, size, size / (size + mu))
    return stats.poisson.sf(count - 1, mu)


def lower_tail(count, mu, alpha: float) -> np.ndarray:
    """P(X <= count) for X ~ NB2(mu, alpha), or Poisson(mu) when alpha == 0."""
    count = np.asarray(count, dtype=float)
    mu = np.asarray(mu, dtype=float)
    if alpha > 0:
        size = 1.0 / alpha
        return stats.nbinom.cdf(count, size, size / (size + mu))
    return stats.poisson.cdf(count, mu)


def adjust_pvalues(p: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Multiple-testing correction over the finite entries; NaN stays NaN."""
    p = np.asarray(p, dtype=float)
    q = np.full(len(p), np.nan)
    ok = np.isfinite(p)
    if ok.any():
        q[ok] = multipletests(p[ok], method=method)[1]
    return q


def _score_chunk(fit_result: FitResult, X: np.ndarray, offset: np.ndarray, count: np.ndarray) -> tuple:
    pred = np.exp(fit_result.linear_predictor(X, offset))
    return (pred,
            upper_tail(count, pred, fit_result.alpha),
            lower_tail(count, pred, fit_result.alpha))


def score(table: pd.DataFrame, fit_result: FitResult, config: Optional[Config] = None) -> pd.DataFrame:
    """
    Score every hypothesis against a fitted model.

    The returned table has one row per input row; rows outside the fit keep
    their annotation, get NaN results, ``included=False`` and an
    ``excluded_reason``.
    """
    config = config or Config()
    X_all = design_matrix(table, fit_result.covariates, fit_result.defaults)
    reasons = exclusion_reasons(table, X_all, fit_result.min_eligible)
    included = pd.isna(reasons).astype(bool)
    idx = np.flatnonzero(included)

    X = X_all.to_numpy()[idx]
    eligible = table["eligible"].to_numpy(dtype=float)
    count = table["count"].to_numpy(dtype=float)
    offset = np.log(eligible[idx])

    chunks = hypothesis_chunks(len(idx), config.workers)
    units = [(fit_result, X[lo:hi], offset[lo:hi], count[idx][lo:hi]) for lo, hi in chunks]
    parts = run_units(_score_chunk, units, config, desc="Scoring")

    n = len(table)
    pred, p, p_neg = np.full(n, np.nan), np.full(n, np.nan), np.full(n, np.nan)
    if parts:
        pred[idx] = np.concatenate([x[0] for x in parts])
        p[idx] = np.concatenate([x[1] for x in parts])
        p_neg[idx] = np.concatenate([x[2] for x in parts])

    out = table.copy()
    with np.errstate(invalid="ignore", divide="ignore"):
        out["count_pred"] = pred
        out["count_density"] = np.where(eligible > 0, count / np.where(eligible > 0, eligible, 1.0), np.nan)
        out["count_pred_density"] = np.where(eligible > 0, pred / np.where(eligible > 0, eligible, 1.0), np.nan)
        out["effect_size"] = np.where(pred > 0, count / np.where(pred > 0, pred, 1.0), np.nan)
    out["p"] = p
    out["p_neg"] = p_neg
    out["fdr"] = adjust_pvalues(p, config.fdr_method)
    out["fdr_neg"] = adjust_pvalues(p_neg, config.fdr_method)
    out["included"] = included
    out["excluded_reason"] = reasons
    return out


# ============================================================================
# QQ diagnostics
# ============================================================================

def qq_data(p) -> pd.DataFrame:
    """Observed vs expected -log10 p-values, sorted; expected from (i - 0.5) / n."""
    p = np.asarray(p, dtype=float)
    p = np.sort(p[np.isfinite(p)])
    n = len(p)
    expected = -np.log10((np.arange(1, n + 1) - 0.5) / n)
    observed = -np.log10(np.clip(p, np.finfo(float).tiny, 1.0))
    return pd.DataFrame({"expected": expected, "observed": observed})


def qq_lambda(p, method: str = "ols") -> float:
    """Slope through the origin of observed on expected -log10 p-values."""
    qq = qq_data(p)
    if len(qq) < 2:
        return np.nan
    x = qq[["expected"]].to_numpy()
    y = qq["observed"].to_numpy()
    if method == "huber":
        model = HuberRegressor(fit_intercept=False, max_iter=500)
    else:
        model = LinearRegression(fit_intercept=False)
    model.fit(x, y)
    return float(model.coef_[0])


def diagnostics(scores: pd.DataFrame, fit_result: FitResult, config: Optional[Config] = None) -> Diagnostics:
    config = config or Config()
    return Diagnostics(
        lambda_=qq_lambda(scores.loc[scores["included"], "p"], config.lambda_method),
        alpha=fit_result.alpha,
        coefficients=fit_result.coefficients,
        converged=fit_result.converged,
        family=fit_result.family,
        n_fit=fit_result.n_fit,
        n_excluded=int((~scores["included"]).sum()),
    )
