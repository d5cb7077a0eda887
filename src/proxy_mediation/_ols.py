"""Ordinary least squares helpers shared by the three estimators.

Three entry points, one per cost / information trade-off:

* :func:`fit_ols` — statsmodels ``OLS`` on the observed sample.
  Returns coefficients together with analytic standard errors, Wald
  t-test p-values and confidence intervals:

      t_j = β̂_j / SE(β̂_j),   p = 2·P(|T| > |t_j|),   T ~ t(n − k)

  where SE(β̂_j) = σ̂ · √[(X'X)⁻¹]_{jj}.

* :func:`lstsq_coefs` — bare ``numpy.linalg.lstsq`` for the inner
  bootstrap loop, where only point estimates are needed and the
  statsmodels result object would dominate the run time.

* :func:`fit_predict` — scikit-learn ``LinearRegression`` for stages
  that need fitted values rather than coefficients (the PGC bridge).

All three refuse rank-deficient designs.  ``lstsq`` and the
pseudoinverse used by statsmodels would happily return a minimum-norm
solution for a singular X'X; that solution is not identified and its
coefficients depend on the arbitrary null-space choice, so the helpers
raise :class:`~proxy_mediation.exceptions.SingularFitError` instead.
"""

from __future__ import annotations

import warnings
from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np
import statsmodels.api as sm
from sklearn.linear_model import LinearRegression

from .exceptions import SingularFitError

INTERCEPT = "const"


@dataclass(frozen=True, eq=False)
class OLSFit:
    """Coefficient table from one analytic OLS fit.

    Arrays are aligned with :attr:`names`; the intercept is included
    under the name ``"const"``.
    """

    names: tuple[str, ...]
    params: np.ndarray
    bse: np.ndarray
    pvalues: np.ndarray
    conf_int: np.ndarray
    """Interval bounds, shape ``(k, 2)``."""
    rsquared: float
    fitted: np.ndarray

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"No term {name!r} in fit; have {self.names}.") from None

    def coef(self, name: str) -> float:
        return float(self.params[self.index(name)])


def design_matrix(columns: Mapping[str, np.ndarray]) -> tuple[np.ndarray, tuple[str, ...]]:
    """Stack *columns* behind an intercept column.

    Returns:
        ``(X, names)`` with ``X`` of shape ``(n, 1 + len(columns))``.
    """
    cols = [np.asarray(v, dtype=float) for v in columns.values()]
    n = cols[0].shape[0]
    X = np.column_stack([np.ones(n), *cols])
    return X, (INTERCEPT, *columns.keys())


def check_rank(X: np.ndarray, label: str = "design") -> None:
    """Raise :class:`SingularFitError` unless *X* has full column rank."""
    n, k = X.shape
    if n <= k:
        raise SingularFitError(
            f"{label}: {n} observations cannot identify {k} coefficients."
        )
    rank = int(np.linalg.matrix_rank(X))
    if rank < k:
        raise SingularFitError(
            f"{label}: design matrix is rank-deficient (rank {rank} < {k} columns)."
        )


def fit_ols(
    y: np.ndarray,
    columns: Mapping[str, np.ndarray],
    *,
    confidence_level: float = 0.95,
    label: str = "OLS",
) -> OLSFit:
    """Analytic OLS fit via statsmodels.

    Args:
        y: Response vector ``(n,)``.
        columns: Ordered mapping of term name → regressor values.  An
            intercept is prepended.
        confidence_level: Level of the Wald intervals.
        label: Name used in error messages.

    Raises:
        SingularFitError: If the design is rank-deficient, has no
            residual degrees of freedom, or the solver fails to converge.
    """
    X, names = design_matrix(columns)
    check_rank(X, label)
    with warnings.catch_warnings():
        # Near-singular X'X that still passes the rank check, or a
        # constant response, can trigger floating-point warnings in the
        # lazily computed SE / R² attributes, so every attribute is
        # read inside this block.
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        try:
            res = sm.OLS(np.asarray(y, dtype=float), X).fit()
            return OLSFit(
                names=names,
                params=np.asarray(res.params),
                bse=np.asarray(res.bse),
                pvalues=np.asarray(res.pvalues),
                conf_int=np.asarray(res.conf_int(alpha=1.0 - confidence_level)),
                rsquared=float(res.rsquared),
                fitted=np.asarray(res.fittedvalues),
            )
        except np.linalg.LinAlgError as exc:
            raise SingularFitError(f"{label}: {exc}") from exc


def lstsq_coefs(y: np.ndarray, X: np.ndarray, label: str = "OLS") -> np.ndarray:
    """Point estimates only, for use inside bootstrap loops.

    *X* must already contain the intercept column (see
    :func:`design_matrix`).

    Raises:
        SingularFitError: If *X* is rank-deficient.
    """
    n, k = X.shape
    if n <= k:
        raise SingularFitError(
            f"{label}: {n} observations cannot identify {k} coefficients."
        )
    coef, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
    if rank < k:
        raise SingularFitError(
            f"{label}: design matrix is rank-deficient (rank {rank} < {k} columns)."
        )
    return coef


def fit_predict(
    y: np.ndarray,
    columns: Mapping[str, np.ndarray],
    label: str = "OLS",
) -> tuple[np.ndarray, LinearRegression]:
    """Fit ``y ~ columns`` with an intercept and return fitted values.

    The rank check runs on the centred regressors, so a constant column
    (which the intercept already absorbs) counts as a rank drop.

    Returns:
        ``(fitted_values, model)``.

    Raises:
        SingularFitError: If the regressors are collinear or constant.
    """
    X = np.column_stack([np.asarray(v, dtype=float) for v in columns.values()])
    n, p = X.shape
    if n <= p + 1:
        raise SingularFitError(
            f"{label}: {n} observations cannot identify {p + 1} coefficients."
        )
    rank = int(np.linalg.matrix_rank(X - X.mean(axis=0)))
    if rank < p:
        raise SingularFitError(
            f"{label}: regressors are rank-deficient (rank {rank} < {p})."
        )
    model = LinearRegression(fit_intercept=True)
    try:
        model.fit(X, y)
    except np.linalg.LinAlgError as exc:
        raise SingularFitError(f"{label}: {exc}") from exc
    return model.predict(X), model


__all__ = [
    "INTERCEPT",
    "OLSFit",
    "check_rank",
    "design_matrix",
    "fit_ols",
    "fit_predict",
    "lstsq_coefs",
]
