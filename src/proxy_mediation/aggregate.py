"""Result aggregation — long results table and per-term rejection rates.

:func:`results_table` flattens unit results into one row per
``(unit, method, term)``.  A failed estimator still contributes one
row per canonical term of its method (``status="failed"``), so the
table always has the same shape per unit and failures stay visible.

Significance policy
~~~~~~~~~~~~~~~~~~~
The rule applied to each term is fixed by its role and is not
configurable:

============  ==============================  ==========================
Role          Rule                            Why this evidence
============  ==============================  ==========================
``effect``    interval excludes zero          products / ratios / two-
                                              stage effects have no
                                              trustworthy analytic p
``path``      analytic p-value < alpha        single OLS coefficient
``nuisance``  analytic p-value < alpha        single OLS coefficient
============  ==============================  ==========================

A row that cannot be evaluated under its rule (failed estimator, term
not produced, interval withheld, p-value missing) is excluded from the
denominator of that term's rejection rate and counted in
``n_units_failed`` instead.

Monte-Carlo band
~~~~~~~~~~~~~~~~
Under the null a well-calibrated test rejects with probability alpha,
so the number of rejections among *N* evaluated units is
Binomial(N, alpha).  :func:`nominal_rejection_band` returns the central
``level`` interval of that distribution as a rate; an observed rate
outside it is evidence of miscalibration at that level.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from scipy import stats

from ._results import METHOD_TERMS, METHODS, TERM_ROLES, UnitResult

RULE_INTERVAL = "interval_excludes_zero"
RULE_P_VALUE = "p_value_below_alpha"

SIGNIFICANCE_RULES: Mapping[str, str] = {
    "effect": RULE_INTERVAL,
    "path": RULE_P_VALUE,
    "nuisance": RULE_P_VALUE,
}

TABLE_COLUMNS: tuple[str, ...] = (
    "unit",
    "label",
    "method",
    "term",
    "role",
    "estimate",
    "std_error",
    "p_value",
    "ci_lower",
    "ci_upper",
    "ci_method",
    "ci_available",
    "significant",
    "status",
    "error_kind",
)

STATUS_OK = "ok"
STATUS_PARTIAL = "partial"
STATUS_ABSENT = "absent"
STATUS_FAILED = "failed"


def _nan(value: float | None) -> float:
    return np.nan if value is None else float(value)


# ------------------------------------------------------------------ #
# Results table
# ------------------------------------------------------------------ #


def _unit_rows(unit: UnitResult) -> Iterator[dict[str, Any]]:
    for method, res in unit.estimators().items():
        roles = TERM_ROLES[method]
        base = {"unit": unit.unit_index, "label": unit.label, "method": method}
        if res.failed:
            for term in METHOD_TERMS[method]:
                yield {
                    **base,
                    "term": term,
                    "role": roles[term],
                    "status": STATUS_FAILED,
                    "error_kind": res.error_kind,
                }
            continue
        # A COCA result with its interval withheld is kept, flagged partial.
        status = STATUS_OK if getattr(res, "ci_available", True) else STATUS_PARTIAL
        for term, est in res.terms().items():
            if est is None:
                yield {**base, "term": term, "role": roles[term], "status": STATUS_ABSENT}
                continue
            yield {
                **base,
                "term": term,
                "role": est.role,
                "estimate": est.estimate,
                "std_error": _nan(est.std_error),
                "p_value": _nan(est.p_value),
                "ci_lower": _nan(est.ci_lower),
                "ci_upper": _nan(est.ci_upper),
                "ci_method": est.ci_method,
                "status": status,
            }


def _evaluate_significance(frame: pd.DataFrame, alpha: float) -> pd.Series:
    """Apply the fixed policy row by row; ``<NA>`` where not evaluable."""
    failed = frame["status"].isin([STATUS_FAILED, STATUS_ABSENT])
    by_interval = frame["role"].map(SIGNIFICANCE_RULES) == RULE_INTERVAL

    lo = frame["ci_lower"].astype(float)
    hi = frame["ci_upper"].astype(float)
    p = frame["p_value"].astype(float)
    has_ci = lo.notna() & hi.notna()

    out = pd.Series(pd.NA, index=frame.index, dtype="boolean")
    ci_rows = by_interval & has_ci & ~failed
    out[ci_rows] = (lo[ci_rows] > 0) | (hi[ci_rows] < 0)
    p_rows = ~by_interval & p.notna() & ~failed
    out[p_rows] = p[p_rows] < alpha
    return out


def results_table(
    unit_results: Iterable[UnitResult],
    *,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """Flatten unit results into a long table.

    Args:
        unit_results: Results, e.g. ``RunOutput.results``.
        alpha: Threshold for the p-value rule in the ``significant``
            column.

    Returns:
        DataFrame with columns :data:`TABLE_COLUMNS`, ordered by unit,
        then by method and term in canonical order.  ``significant`` is
        a nullable boolean, ``<NA>`` where the row cannot be evaluated.
    """
    rows = [row for unit in unit_results for row in _unit_rows(unit)]
    frame = pd.DataFrame(rows, columns=list(TABLE_COLUMNS))
    for col in ("estimate", "std_error", "p_value", "ci_lower", "ci_upper"):
        frame[col] = frame[col].astype(float)
    frame["ci_available"] = frame["ci_lower"].notna() & frame["ci_upper"].notna()
    frame["significant"] = _evaluate_significance(frame, alpha)
    frame = frame.sort_values("unit", kind="stable").reset_index(drop=True)
    return frame


# ------------------------------------------------------------------ #
# Rejection rates
# ------------------------------------------------------------------ #


def nominal_rejection_band(
    n: int,
    alpha: float = 0.05,
    level: float = 0.95,
) -> tuple[float, float] | tuple[None, None]:
    """Central *level* interval of Binomial(n, alpha) / n.

    Returns ``(None, None)`` when *n* is zero.
    """
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must lie in (0, 1), got {alpha}.")
    if n <= 0:
        return None, None
    lo, hi = stats.binom.interval(level, n, alpha)
    return float(lo) / n, float(hi) / n


@dataclass(frozen=True)
class RejectionRate:
    """Rejection rate of one ``(method, term)`` across units."""

    method: str
    term: str
    role: str
    rule: str
    rejection_rate: float | None
    n_units_evaluated: int
    n_units_failed: int
    band_lower: float | None = None
    band_upper: float | None = None

    @property
    def within_band(self) -> bool | None:
        """Whether the rate lies inside the nominal Monte-Carlo band."""
        if (
            self.rejection_rate is None
            or self.band_lower is None
            or self.band_upper is None
        ):
            return None
        return self.band_lower <= self.rejection_rate <= self.band_upper


@dataclass(frozen=True)
class AggregateReport(Mapping):
    """Rejection rates keyed by ``(method, term)``.

    Attributes:
        rates: One :class:`RejectionRate` per canonical term.
        alpha: Nominal level the p-value rule and band were computed at.
        n_units: Units in the input.
        failures: Units whose estimator failed outright, per method.
    """

    rates: dict[tuple[str, str], RejectionRate]
    alpha: float
    n_units: int
    failures: dict[str, int] = field(default_factory=dict)

    def __getitem__(self, key: tuple[str, str]) -> RejectionRate:
        return self.rates[key]

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.rates)

    def __len__(self) -> int:
        return len(self.rates)

    def failures_by_method(self) -> dict[str, int]:
        """Failed-unit counts per method (every method present)."""
        return {m: self.failures.get(m, 0) for m in METHODS}

    def to_frame(self) -> pd.DataFrame:
        """One row per ``(method, term)``."""
        rows = [
            {
                "method": r.method,
                "term": r.term,
                "role": r.role,
                "rule": r.rule,
                "rejection_rate": _nan(r.rejection_rate),
                "n_units_evaluated": r.n_units_evaluated,
                "n_units_failed": r.n_units_failed,
                "band_lower": _nan(r.band_lower),
                "band_upper": _nan(r.band_upper),
                "within_band": r.within_band,
            }
            for r in self.rates.values()
        ]
        return pd.DataFrame(rows)


def rejection_rates(
    results: Iterable[UnitResult] | pd.DataFrame,
    *,
    alpha: float = 0.05,
    confidence_level: float = 0.95,
) -> AggregateReport:
    """Fraction of evaluable units in which each term is significant.

    Args:
        results: Unit results (or a ``RunOutput``) or a table from
            :func:`results_table`.
        alpha: Threshold for the p-value rule and nominal rate of the
            Monte-Carlo band.
        confidence_level: Coverage of the Monte-Carlo band.

    Returns:
        An :class:`AggregateReport` with an entry for every canonical
        ``(method, term)``, even when no unit could be evaluated.
    """
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must lie in (0, 1), got {alpha}.")
    if isinstance(results, pd.DataFrame):
        frame = results
    else:
        frame = results_table(getattr(results, "results", results), alpha=alpha)

    significant = _evaluate_significance(frame, alpha)
    n_units = int(frame["unit"].nunique())

    rates: dict[tuple[str, str], RejectionRate] = {}
    for method in METHODS:
        for term in METHOD_TERMS[method]:
            mask = (frame["method"] == method) & (frame["term"] == term)
            sig = significant[mask]
            evaluated = sig.dropna()
            n_eval = int(len(evaluated))
            role = TERM_ROLES[method][term]
            band = nominal_rejection_band(n_eval, alpha, confidence_level)
            rates[(method, term)] = RejectionRate(
                method=method,
                term=term,
                role=role,
                rule=SIGNIFICANCE_RULES[role],
                rejection_rate=float(evaluated.astype(bool).mean()) if n_eval else None,
                n_units_evaluated=n_eval,
                n_units_failed=int(mask.sum()) - n_eval,
                band_lower=band[0],
                band_upper=band[1],
            )

    failed = frame[frame["status"] == STATUS_FAILED]
    failures = failed.groupby("method")["unit"].nunique().to_dict()
    return AggregateReport(
        rates=rates,
        alpha=alpha,
        n_units=n_units,
        failures={str(k): int(v) for k, v in failures.items()},
    )


def export_table(
    frame: pd.DataFrame | AggregateReport,
    path: str | os.PathLike[str],
    sep: str = ",",
) -> None:
    """Write *frame* as delimited text without the index."""
    if isinstance(frame, AggregateReport):
        frame = frame.to_frame()
    frame.to_csv(path, sep=sep, index=False)


__all__ = [
    "RULE_INTERVAL",
    "RULE_P_VALUE",
    "SIGNIFICANCE_RULES",
    "TABLE_COLUMNS",
    "AggregateReport",
    "RejectionRate",
    "export_table",
    "nominal_rejection_band",
    "rejection_rates",
    "results_table",
]
