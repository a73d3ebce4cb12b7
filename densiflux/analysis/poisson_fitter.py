"""Poisson count regressions on per-feature histograms.

Both fitters model the expected bin count as
    log(mu) = log(exposure) + eta(group, x)
with the exposure as a fixed offset, and differ in how eta depends on x:

  - PolynomialPoissonModel: group + x^1..x^d (+ group:x^1..x^k), IRLS via statsmodels GLM
  - SmoothPoissonModel: group + penalized B-spline of x (one curve per group with `by_group`)
"""

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import bs
from scipy.optimize import linprog, minimize_scalar
from scipy.special import gammaln, xlogy
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from densiflux.analysis.model_family import (
    ModelVariant,
    design_matrix,
    group_column_name,
    interaction_names,
)
from densiflux.analysis.results_schema import COL_COUNT, COL_EXPOSURE, COL_GROUP, COL_MIDPOINT


class FitFailedError(RuntimeError):
    """The fit of one (feature, model) pair did not produce usable estimates."""


@dataclass
class FitResult:
    variant: ModelVariant
    params: pd.Series
    llf: float
    deviance: float
    n_params: float
    df_resid: float
    fitted: np.ndarray
    cov_params: Optional[pd.DataFrame] = None
    interaction_names: List[str] = field(default_factory=list)
    penalty: Optional[float] = None
    converged: bool = True

    @property
    def name(self) -> str:
        return self.variant.name

    def log_likelihood(self) -> float:
        return self.llf

    def parameter_count(self) -> float:
        """Estimated parameters; effective degrees of freedom for penalized fits."""
        return self.n_params

    def coefficient_covariance(self) -> Optional[pd.DataFrame]:
        return self.cov_params


def poisson_loglik(y: np.ndarray, mu: np.ndarray) -> float:
    return float(np.sum(xlogy(y, mu) - mu - gammaln(y + 1)))


def poisson_deviance(y: np.ndarray, mu: np.ndarray) -> float:
    return float(2 * np.sum(xlogy(y, y / mu) - (y - mu)))


def separating_direction_exists(X: np.ndarray, y: np.ndarray) -> bool:
    """
    True when the Poisson log-likelihood on design `X` has no finite maximum.

    That happens iff some direction d keeps the linear predictor unchanged on
    every non-zero count (X_pos d = 0) and lowers it on the zero counts
    (X_zero d <= 0, not all zero), so the fit can push those expected
    counts to zero forever. Checked as a linear feasibility problem with
    the sum over zero rows normalized to -1.
    """
    zero = y == 0
    if not zero.any():
        return False
    X_pos, X_zero = X[~zero], X[zero]
    A_eq = np.vstack([X_pos, X_zero.sum(axis=0, keepdims=True)])
    b_eq = np.concatenate([np.zeros(len(X_pos)), [-1.0]])
    res = linprog(
        c=np.zeros(X.shape[1]),
        A_ub=X_zero,
        b_ub=np.zeros(len(X_zero)),
        A_eq=A_eq,
        b_eq=b_eq,
        bounds=[(None, None)] * X.shape[1],
        method="highs",
    )
    return res.status == 0


def _levels_of(table: pd.DataFrame, levels: Optional[Sequence]) -> List[str]:
    present = set(table[COL_GROUP].astype(str))
    if levels is None:
        return sorted(present)
    return [str(lvl) for lvl in levels if str(lvl) in present]


class Fittable(ABC):
    """One member of the model family, fittable on a long-format histogram table."""

    def __init__(self, variant: ModelVariant):
        self.variant = variant

    @abstractmethod
    def fit(self, table: pd.DataFrame, levels: Optional[Sequence] = None) -> FitResult:
        ...

    @staticmethod
    def _response(table: pd.DataFrame):
        y = table[COL_COUNT].to_numpy(dtype=float)
        exposure = table[COL_EXPOSURE].to_numpy(dtype=float)
        if np.any(exposure <= 0):
            raise FitFailedError("non-positive exposure in histogram table")
        return y, np.log(exposure)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.variant.name})"


class PolynomialPoissonModel(Fittable):
    """
    Poisson GLM (log link, log-exposure offset) on explicit polynomial terms.

    Fits whose likelihood has no finite maximum are rejected before IRLS runs
    (see `separating_direction_exists`). Near-unbounded fits that IRLS still
    reports as converged are caught by their standard errors: on the
    standardized measurement axis a standard error above MAX_STD_ERROR means
    the coefficients are drifting, not estimated.
    """

    MAX_STD_ERROR = 1e3

    def __init__(self, variant: ModelVariant, maxiter: int = 100):
        if variant.smooth:
            raise ValueError(f"{variant.name} is not a polynomial variant")
        super().__init__(variant)
        self.maxiter = maxiter

    def fit(self, table: pd.DataFrame, levels: Optional[Sequence] = None) -> FitResult:
        levels = _levels_of(table, levels)
        y, offset = self._response(table)
        X = design_matrix(self.variant, table[COL_GROUP], table[COL_MIDPOINT], levels)

        if np.linalg.matrix_rank(X.to_numpy()) < X.shape[1]:
            raise FitFailedError(f"rank-deficient design ({X.shape[1]} columns)")
        if separating_direction_exists(X.to_numpy(), y):
            raise FitFailedError("likelihood unbounded: zero bins separable from occupied bins")

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                res = sm.GLM(y, X, family=sm.families.Poisson(), offset=offset).fit(maxiter=self.maxiter)
            except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as err:
                raise FitFailedError(f"GLM fit error: {err}") from err

        problems = [
            w for w in caught
            if issubclass(w.category, (ConvergenceWarning, PerfectSeparationWarning))
        ]
        if problems:
            raise FitFailedError(f"GLM did not converge: {problems[0].message}")
        if not getattr(res, "converged", True):
            raise FitFailedError("GLM did not converge")

        params = res.params
        cov = res.cov_params()
        if not (np.all(np.isfinite(params)) and np.all(np.isfinite(cov.to_numpy()))):
            raise FitFailedError("non-finite coefficients or covariance")
        max_se = float(np.sqrt(np.clip(np.diag(cov.to_numpy()), 0, None)).max())
        if max_se > self.MAX_STD_ERROR:
            raise FitFailedError(f"diverging coefficients (max standard error {max_se:.3g})")

        return FitResult(
            variant=self.variant,
            params=params,
            llf=float(res.llf),
            deviance=float(res.deviance),
            n_params=float(X.shape[1]),
            df_resid=float(res.df_resid),
            fitted=np.asarray(res.fittedvalues, dtype=float),
            cov_params=cov,
            interaction_names=interaction_names(self.variant, levels),
        )


class SmoothPoissonModel(Fittable):
    """
    Poisson GAM with a P-spline (cubic B-spline basis, second-order difference
    penalty) of the measurement.

    The smoothing weight is selected by minimizing UBRE (deviance + 2 * edf,
    scale fixed at 1 for Poisson) over log(lambda), unless a fixed `penalty`
    is given. With `by_group` each group level gets its own curve; all curves
    share the selected weight.
    """

    LOG_LAMBDA_BOUNDS = (-8.0, 12.0)
    MAX_HALVINGS = 30

    def __init__(
        self,
        variant: ModelVariant,
        basis_size: int = 10,
        maxiter: int = 100,
        tol: float = 1e-8,
        penalty: Optional[float] = None,
    ):
        if not variant.smooth:
            raise ValueError(f"{variant.name} is not a smooth variant")
        if penalty is not None and not penalty > 0:
            raise ValueError(f"penalty must be positive, got {penalty}")
        super().__init__(variant)
        self.basis_size = basis_size
        self.maxiter = maxiter
        self.tol = tol
        self.penalty = penalty

    def _design(self, table: pd.DataFrame, levels: List[str]):
        groups = table[COL_GROUP].astype(str).to_numpy()
        x = table[COL_MIDPOINT].to_numpy(dtype=float)

        fixed = {"Intercept": np.ones_like(x)}
        for lvl in levels[1:]:
            fixed[group_column_name(lvl)] = (groups == lvl).astype(float)

        basis = np.asarray(bs(x, df=self.basis_size, degree=3))
        k = basis.shape[1]
        diff = np.diff(np.eye(k), n=2, axis=0)
        block = diff.T @ diff

        smooth_cols: Dict[str, np.ndarray] = {}
        blocks = []
        if self.variant.by_group:
            for lvl in levels:
                ind = (groups == lvl).astype(float)
                for j in range(k):
                    smooth_cols[f"s(x):{group_column_name(lvl)}.{j + 1}"] = basis[:, j] * ind
                blocks.append(block)
        else:
            for j in range(k):
                smooth_cols[f"s(x).{j + 1}"] = basis[:, j]
            blocks.append(block)

        X = pd.DataFrame({**fixed, **smooth_cols})
        n_fixed = len(fixed)
        penalty = np.zeros((X.shape[1], X.shape[1]))
        start = n_fixed
        for b in blocks:
            penalty[start:start + b.shape[0], start:start + b.shape[0]] = b
            start += b.shape[0]
        return X, penalty

    @staticmethod
    def _evaluate(X, y, offset, S, beta):
        """Expected counts, deviance and penalized deviance at `beta` (None if mu overflows)."""
        with np.errstate(over="ignore"):
            mu = np.exp(X @ beta + offset)
        if not np.all(np.isfinite(mu)) or np.any(mu <= 0):
            return None
        dev = poisson_deviance(y, mu)
        return mu, dev, dev + float(beta @ S @ beta)

    def _pirls(self, X: np.ndarray, y: np.ndarray, offset: np.ndarray, penalty: np.ndarray, lam: float) -> dict:
        """
        Penalized IRLS with step halving.

        Starts from the penalized least-squares fit of the damped log counts,
        then takes Newton steps; a step that overflows or raises the penalized
        deviance is halved back towards the previous coefficients.
        """
        S = lam * penalty
        eta0 = np.log(y + 0.1) - offset
        beta = np.linalg.solve(X.T @ X + S, X.T @ eta0)
        current = self._evaluate(X, y, offset, S, beta)
        if current is None:
            raise FitFailedError("penalized IRLS start overflowed")
        mu, dev, pdev = current

        converged = False
        for _ in range(self.maxiter):
            z = np.log(mu) - offset + (y - mu) / mu
            XtW = X.T * mu
            proposal = np.linalg.solve(XtW @ X + S, XtW @ z)

            step = None
            for _ in range(self.MAX_HALVINGS):
                step = self._evaluate(X, y, offset, S, proposal)
                if step is not None and step[2] <= pdev + self.tol * (abs(pdev) + 0.1):
                    break
                proposal = (proposal + beta) / 2
                step = None
            if step is None:
                raise FitFailedError("penalized IRLS step halving failed")

            beta = proposal
            mu, dev, pdev_new = step
            if abs(pdev - pdev_new) <= self.tol * (abs(pdev_new) + 0.1):
                converged = True
                break
            pdev = pdev_new

        if not converged:
            raise FitFailedError(f"penalized IRLS did not converge in {self.maxiter} iterations")

        info = (X.T * mu) @ X
        edf = float(np.trace(np.linalg.solve(info + S, info)))
        return {"beta": beta, "mu": mu, "deviance": dev, "edf": edf}

    def fit(self, table: pd.DataFrame, levels: Optional[Sequence] = None) -> FitResult:
        levels = _levels_of(table, levels)
        y, offset = self._response(table)
        X_df, penalty = self._design(table, levels)
        X = X_df.to_numpy()

        if self.penalty is not None:
            try:
                fit = self._pirls(X, y, offset, penalty, self.penalty)
            except np.linalg.LinAlgError as err:
                raise FitFailedError(f"penalized IRLS singular system: {err}") from err
            return self._result(X_df, y, fit, self.penalty)

        fits: Dict[float, dict] = {}

        def ubre(log_lam: float) -> float:
            try:
                fit = self._pirls(X, y, offset, penalty, float(np.exp(log_lam)))
            except (FitFailedError, np.linalg.LinAlgError):
                return np.inf
            fits[log_lam] = fit
            return fit["deviance"] + 2 * fit["edf"]

        opt = minimize_scalar(ubre, bounds=self.LOG_LAMBDA_BOUNDS, method="bounded", options={"xatol": 1e-2})
        if not fits:
            raise FitFailedError("penalized IRLS failed for every smoothing weight")

        best = min(fits, key=lambda r: fits[r]["deviance"] + 2 * fits[r]["edf"])
        if np.isfinite(opt.fun) and opt.x in fits:
            best = opt.x
        return self._result(X_df, y, fits[best], float(np.exp(best)))

    def _result(self, X_df: pd.DataFrame, y: np.ndarray, fit: dict, lam: float) -> FitResult:
        return FitResult(
            variant=self.variant,
            params=pd.Series(fit["beta"], index=X_df.columns),
            llf=poisson_loglik(y, fit["mu"]),
            deviance=fit["deviance"],
            n_params=fit["edf"],
            df_resid=float(len(y) - fit["edf"]),
            fitted=fit["mu"],
            penalty=lam,
        )


def fitter_for(variant: ModelVariant, smooth_basis_size: int = 10) -> Fittable:
    if variant.smooth:
        return SmoothPoissonModel(variant, basis_size=smooth_basis_size)
    return PolynomialPoissonModel(variant)
