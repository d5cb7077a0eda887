"""Typed result objects for per-unit estimation.

Frozen dataclasses that provide:

* **Attribute access** — ``result.indirect_m0``, ``result.unit_index``.
* **Dict-like access** — ``result["psi"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python, and
  ``.from_dict()`` rebuilds the object (used by the checkpoint).

Every estimator result names each of its terms as an explicit optional
field.  A term that a degenerate fit could not produce is ``None``; it
is never silently shifted into another term's position.

Result variants:

* :class:`MediationResult` — moderated-mediation path model.
* :class:`CocaResult` — control-outcome calibration ratio.
* :class:`PgcResult` — proximal g-computation.
* :class:`FitFailure` — an estimator (or the whole unit) failed; carries
  the error kind instead of estimates.

:class:`UnitResult` bundles the three for one unit.  All types are
frozen to communicate that results are a snapshot of a completed task.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

import numpy as np
from typing_extensions import Self

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested result objects, dicts, lists, np.ndarray,
    np.integer, and np.floating so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    value = float(value)
    return value if np.isfinite(value) else None


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test
    """

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            result[f.name] = _numpy_to_python(getattr(self, f.name))
        return result


# ------------------------------------------------------------------ #
# TermEstimate
# ------------------------------------------------------------------ #

ROLE_EFFECT = "effect"
ROLE_PATH = "path"
ROLE_NUISANCE = "nuisance"


@dataclass(frozen=True)
class TermEstimate(_DictAccessMixin):
    """One named estimate with its uncertainty.

    ``role`` classifies the term for aggregation: ``"effect"`` terms are
    the effects of interest, ``"path"`` terms are single regression
    paths, and ``"nuisance"`` terms are moderator main effects and
    interactions.
    """

    estimate: float
    std_error: float | None
    p_value: float | None
    ci_lower: float | None
    ci_upper: float | None
    ci_method: str
    """``"analytic"`` (OLS Wald interval) or ``"bootstrap"`` (percentile)."""
    role: str
    n_finite: int | None = None
    """Finite bootstrap replicates behind the interval (bootstrap only)."""

    @property
    def ci_available(self) -> bool:
        return self.ci_lower is not None and self.ci_upper is not None

    @property
    def significant(self) -> bool | None:
        """Whether the interval excludes zero (``None`` without one)."""
        if self.ci_lower is None or self.ci_upper is None:
            return None
        return bool(self.ci_lower > 0 or self.ci_upper < 0)

    def without_interval(self) -> TermEstimate:
        """Copy with the interval withheld."""
        return TermEstimate(
            estimate=self.estimate,
            std_error=self.std_error,
            p_value=self.p_value,
            ci_lower=None,
            ci_upper=None,
            ci_method=self.ci_method,
            role=self.role,
            n_finite=self.n_finite,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            estimate=float(data["estimate"]),
            std_error=_opt_float(data.get("std_error")),
            p_value=_opt_float(data.get("p_value")),
            ci_lower=_opt_float(data.get("ci_lower")),
            ci_upper=_opt_float(data.get("ci_upper")),
            ci_method=str(data["ci_method"]),
            role=str(data["role"]),
            n_finite=None if data.get("n_finite") is None else int(data["n_finite"]),
        )


# ------------------------------------------------------------------ #
# Estimator results
# ------------------------------------------------------------------ #


class _EstimatorResultMixin(_DictAccessMixin):
    """Shared behaviour of the three successful result variants."""

    method: ClassVar[str]
    TERMS: ClassVar[tuple[str, ...]]

    @property
    def failed(self) -> bool:
        return False

    def terms(self) -> dict[str, TermEstimate | None]:
        """All terms by name, in canonical order (``None`` = not estimated)."""
        return {name: getattr(self, name) for name in self.TERMS}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.method, **super().to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        kwargs: dict[str, Any] = {}
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name in cls.TERMS:
                value = None if value is None else TermEstimate.from_dict(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class MediationResult(_EstimatorResultMixin):
    """Moderated-mediation estimates for one unit.

    Regression paths (analytic OLS inference):

    * ``a_*`` — mediator ~ exposure + moderator + exposure:moderator
    * ``b_*`` / ``direct`` — outcome ~ mediator + moderator +
      mediator:moderator + exposure

    Derived effects (bootstrap SE and percentile interval):

    * ``indirect_m0 = a1·b1``, ``indirect_m1 = (a1 + a3)·(b1 + b3)``
    * ``total_m0/m1 = direct + indirect_m0/m1``
    * ``index_moderated_mediation = indirect_m1 − indirect_m0``
    """

    method: ClassVar[str] = "mediation"
    TERMS: ClassVar[tuple[str, ...]] = (
        "a_exposure",
        "a_moderator",
        "a_interaction",
        "b_mediator",
        "b_moderator",
        "b_interaction",
        "direct",
        "indirect_m0",
        "indirect_m1",
        "total_m0",
        "total_m1",
        "index_moderated_mediation",
    )

    unit_index: int
    a_exposure: TermEstimate | None = None
    a_moderator: TermEstimate | None = None
    a_interaction: TermEstimate | None = None
    b_mediator: TermEstimate | None = None
    b_moderator: TermEstimate | None = None
    b_interaction: TermEstimate | None = None
    direct: TermEstimate | None = None
    indirect_m0: TermEstimate | None = None
    indirect_m1: TermEstimate | None = None
    total_m0: TermEstimate | None = None
    total_m1: TermEstimate | None = None
    index_moderated_mediation: TermEstimate | None = None
    n_bootstrap: int = 0
    n_failed_resamples: int = 0


@dataclass(frozen=True)
class CocaResult(_EstimatorResultMixin):
    """Control-outcome calibration estimates for one unit.

    Calibration regression: proxy ~ exposure + outcome + outcome:moderator.
    ``psi = −β_exposure / β_outcome`` is the calibrated exposure effect;
    ``psi_m1 = −β_exposure / (β_outcome + β_interaction)`` is its
    moderator = 1 counterpart.

    ``ci_available`` is ``False`` when too few bootstrap ratios were
    finite; the point estimates are still reported and ``instability``
    explains why the interval was withheld.
    """

    method: ClassVar[str] = "coca"
    TERMS: ClassVar[tuple[str, ...]] = (
        "beta_exposure",
        "beta_outcome",
        "beta_interaction",
        "psi",
        "psi_m1",
    )

    unit_index: int
    beta_exposure: TermEstimate | None = None
    beta_outcome: TermEstimate | None = None
    beta_interaction: TermEstimate | None = None
    psi: TermEstimate | None = None
    psi_m1: TermEstimate | None = None
    ci_available: bool = True
    instability: str | None = None
    n_bootstrap: int = 0
    n_failed_resamples: int = 0


@dataclass(frozen=True)
class PgcResult(_EstimatorResultMixin):
    """Proximal g-computation estimates for one unit.

    ``effect_m0`` is the exposure coefficient of the stage-2 model
    (moderator = 0 stratum); ``effect_m1`` adds the exposure:moderator
    interaction.  ``moderator`` and ``interaction`` are the stage-2
    nuisance coefficients.
    """

    method: ClassVar[str] = "pgc"
    TERMS: ClassVar[tuple[str, ...]] = (
        "effect_m0",
        "effect_m1",
        "moderator",
        "interaction",
    )

    unit_index: int
    effect_m0: TermEstimate | None = None
    effect_m1: TermEstimate | None = None
    moderator: TermEstimate | None = None
    interaction: TermEstimate | None = None
    bridge_r_squared: float | None = None
    mean_shift: float | None = None
    """|mean(adjusted outcome) − mean(outcome)| on the observed sample."""
    n_bootstrap: int = 0
    n_failed_resamples: int = 0


@dataclass(frozen=True)
class FitFailure(_DictAccessMixin):
    """An estimator produced no estimates for a unit."""

    method: str
    unit_index: int
    error_kind: str
    """``kind`` of the :class:`~proxy_mediation.exceptions.UnitError`."""
    message: str = ""

    @property
    def failed(self) -> bool:
        return True

    def terms(self) -> dict[str, TermEstimate | None]:
        return dict.fromkeys(METHOD_TERMS[self.method])

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "failure", **super().to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            method=str(data["method"]),
            unit_index=int(data["unit_index"]),
            error_kind=str(data["error_kind"]),
            message=str(data.get("message", "")),
        )


EstimatorResult = MediationResult | CocaResult | PgcResult | FitFailure

METHODS: tuple[str, ...] = ("mediation", "coca", "pgc")

METHOD_TERMS: dict[str, tuple[str, ...]] = {
    MediationResult.method: MediationResult.TERMS,
    CocaResult.method: CocaResult.TERMS,
    PgcResult.method: PgcResult.TERMS,
}

# Role of every canonical term, also for terms a failed estimator never
# produced.
TERM_ROLES: dict[str, dict[str, str]] = {
    "mediation": {
        "a_exposure": ROLE_PATH,
        "a_moderator": ROLE_NUISANCE,
        "a_interaction": ROLE_NUISANCE,
        "b_mediator": ROLE_PATH,
        "b_moderator": ROLE_NUISANCE,
        "b_interaction": ROLE_NUISANCE,
        "direct": ROLE_EFFECT,
        "indirect_m0": ROLE_EFFECT,
        "indirect_m1": ROLE_EFFECT,
        "total_m0": ROLE_EFFECT,
        "total_m1": ROLE_EFFECT,
        "index_moderated_mediation": ROLE_EFFECT,
    },
    "coca": {
        "beta_exposure": ROLE_PATH,
        "beta_outcome": ROLE_PATH,
        "beta_interaction": ROLE_NUISANCE,
        "psi": ROLE_EFFECT,
        "psi_m1": ROLE_EFFECT,
    },
    "pgc": {
        "effect_m0": ROLE_EFFECT,
        "effect_m1": ROLE_EFFECT,
        "moderator": ROLE_NUISANCE,
        "interaction": ROLE_NUISANCE,
    },
}

_RESULT_TYPES: dict[str, type[_EstimatorResultMixin]] = {
    MediationResult.method: MediationResult,
    CocaResult.method: CocaResult,
    PgcResult.method: PgcResult,
}


def estimator_result_from_dict(data: dict[str, Any]) -> EstimatorResult:
    """Rebuild any :data:`EstimatorResult` variant from ``to_dict()`` output."""
    kind = data.get("kind")
    if kind == "failure":
        return FitFailure.from_dict(data)
    cls = _RESULT_TYPES.get(str(kind))
    if cls is None:
        raise ValueError(f"Unknown estimator result kind {kind!r}.")
    payload = {k: v for k, v in data.items() if k != "kind"}
    return cls.from_dict(payload)  # type: ignore[return-value]


# ------------------------------------------------------------------ #
# UnitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class UnitResult(_DictAccessMixin):
    """The three estimator outcomes for one unit."""

    unit_index: int
    mediation: EstimatorResult
    coca: EstimatorResult
    pgc: EstimatorResult
    label: str | None = field(default=None, compare=False)

    def estimators(self) -> dict[str, EstimatorResult]:
        """Results keyed by method name, in canonical order."""
        return {m: getattr(self, m) for m in METHODS}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            unit_index=int(data["unit_index"]),
            mediation=estimator_result_from_dict(data["mediation"]),
            coca=estimator_result_from_dict(data["coca"]),
            pgc=estimator_result_from_dict(data["pgc"]),
            label=data.get("label"),
        )


__all__ = [
    "METHODS",
    "METHOD_TERMS",
    "ROLE_EFFECT",
    "ROLE_NUISANCE",
    "ROLE_PATH",
    "TERM_ROLES",
    "CocaResult",
    "EstimatorResult",
    "FitFailure",
    "MediationResult",
    "PgcResult",
    "TermEstimate",
    "UnitResult",
    "estimator_result_from_dict",
]
