"""Term builders shared by the estimators."""

from __future__ import annotations

import numpy as np

from .._ols import OLSFit
from .._results import TermEstimate
from ..bootstrap import BootstrapInterval


def _finite_or_none(value: float) -> float | None:
    value = float(value)
    return value if np.isfinite(value) else None


def analytic_term(fit: OLSFit, name: str, role: str) -> TermEstimate:
    """Coefficient *name* of *fit* with its OLS SE, p-value and interval."""
    j = fit.index(name)
    return TermEstimate(
        estimate=float(fit.params[j]),
        std_error=_finite_or_none(fit.bse[j]),
        p_value=_finite_or_none(fit.pvalues[j]),
        ci_lower=_finite_or_none(fit.conf_int[j, 0]),
        ci_upper=_finite_or_none(fit.conf_int[j, 1]),
        ci_method="analytic",
        role=role,
    )


def bootstrap_term(estimate: float, interval: BootstrapInterval, role: str) -> TermEstimate:
    """Derived quantity with bootstrap SE and percentile interval."""
    return TermEstimate(
        estimate=float(estimate),
        std_error=interval.std_error,
        p_value=None,
        ci_lower=interval.lower,
        ci_upper=interval.upper,
        ci_method="bootstrap",
        role=role,
        n_finite=interval.n_finite,
    )


def named_coefs(coefs: np.ndarray, names: tuple[str, ...]) -> dict[str, float]:
    """Map a coefficient vector onto its design-column names."""
    return {name: float(c) for name, c in zip(names, coefs)}
