"""Generic nonparametric bootstrap engine.

Given a :class:`~proxy_mediation.assembly.UnitDataset` of *n* subjects
and a statistic mapping a dataset to a fixed-length vector of named
estimates, the engine

1. draws *R* resamples of *n* subject indices **with replacement**.
   Resampling is at the subject level — every variable of a drawn
   subject moves together — so within-subject correlation between
   exposure, mediator, proxy and outcome is preserved;
2. evaluates the statistic on each resample.  A resample whose fit
   raises :class:`~proxy_mediation.exceptions.SingularFitError` (e.g.
   all subjects drawn from one moderator stratum) is recorded as
   **absent**, as is any individual non-finite estimate;
3. reads a percentile interval per estimate from the finite entries
   only.  Absent entries never reach the quantile arithmetic: they are
   masked out explicitly rather than left as NaN for ``np.quantile``
   to trip over.

If the finite fraction for an estimate falls below a threshold the
interval is reported as unavailable instead of being computed from too
few draws.

Percentile interval
~~~~~~~~~~~~~~~~~~~
For a level 1 − α the interval is [q_{α/2}, q_{1−α/2}] of the finite
bootstrap replicates.  Unlike the BCa interval it needs no jackknife
pass, which matters here because every estimator is run on thousands
of units; the three estimators' derived quantities (products and
ratios of coefficients) are exactly the case where the normal-theory
delta method is least trustworthy at small *n*.

Random streams
~~~~~~~~~~~~~~
Each unit owns its streams, derived from ``(base_seed, unit_index)``
through :class:`numpy.random.SeedSequence`, and each estimator within
the unit gets an independent child stream.  Results therefore do not
depend on which worker ran a unit or in which order units completed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from ._typing import StatisticFn
from .assembly import UnitDataset
from .exceptions import SingularFitError, UnitTimeoutError

logger = logging.getLogger(__name__)

# Resample failures that mean "this draw is degenerate", not "the
# program is broken".  Anything else propagates.
_RESAMPLE_ERRORS: tuple[type[BaseException], ...] = (
    SingularFitError,
    np.linalg.LinAlgError,
    FloatingPointError,
)


# ------------------------------------------------------------------ #
# Seeding
# ------------------------------------------------------------------ #


def unit_seed_sequence(base_seed: int, unit_index: int) -> np.random.SeedSequence:
    """Seed sequence for one unit, keyed by ``(base_seed, unit_index)``."""
    if unit_index < 0:
        raise ValueError(f"unit_index must be >= 0, got {unit_index}.")
    return np.random.SeedSequence(entropy=base_seed, spawn_key=(unit_index,))


def spawn_estimator_generators(
    base_seed: int,
    unit_index: int,
    methods: Sequence[str],
) -> dict[str, np.random.Generator]:
    """One independent generator per estimator for a single unit.

    The child streams are assigned in the order of *methods*, so the
    same method tuple must be used on every run for reproducibility.
    """
    children = unit_seed_sequence(base_seed, unit_index).spawn(len(methods))
    return {m: np.random.default_rng(ss) for m, ss in zip(methods, children)}


# ------------------------------------------------------------------ #
# Time budget
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Deadline:
    """Cooperative per-unit time budget.

    Long-running work calls :meth:`check` at safe points (before each
    estimator, between bootstrap resamples).  ``budget=None`` never
    expires.
    """

    budget: float | None
    unit_index: int | None = None
    started: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def expired(self) -> bool:
        return self.budget is not None and self.elapsed() > self.budget

    def check(self, where: str = "") -> None:
        """Raise :class:`UnitTimeoutError` if the budget is spent."""
        if self.expired():
            suffix = f" during {where}" if where else ""
            raise UnitTimeoutError(
                f"unit exceeded its {self.budget:g}s budget{suffix} "
                f"(elapsed {self.elapsed():.3f}s).",
                unit_index=self.unit_index,
            )


# ------------------------------------------------------------------ #
# Distribution and intervals
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class BootstrapInterval:
    """Percentile interval for one named estimate."""

    lower: float | None
    upper: float | None
    std_error: float | None
    n_finite: int
    n_resamples: int

    @property
    def available(self) -> bool:
        return self.lower is not None and self.upper is not None


@dataclass(frozen=True, eq=False)
class BootstrapDistribution:
    """Replicate matrix from one bootstrap run.

    Attributes:
        names: Estimate names, aligned with the columns of
            :attr:`replicates`.
        replicates: Array ``(R, k)``; absent entries hold NaN but are
            identified by :attr:`valid`, never by NaN checks downstream.
        valid: Boolean mask ``(R, k)`` of finite, present entries.
        n_failed: Resamples whose statistic raised a fit error.
    """

    names: tuple[str, ...]
    replicates: np.ndarray
    valid: np.ndarray
    n_failed: int

    @property
    def n_resamples(self) -> int:
        return int(self.replicates.shape[0])

    def _column(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"No bootstrap estimate named {name!r}.") from None

    def values(self, name: str) -> np.ndarray:
        """Finite replicates of *name* (absent entries removed)."""
        j = self._column(name)
        return self.replicates[self.valid[:, j], j]

    def finite_fraction(self, name: str) -> float:
        if self.n_resamples == 0:
            return 0.0
        return float(self.valid[:, self._column(name)].mean())

    def interval(
        self,
        name: str,
        confidence_level: float = 0.95,
        min_finite_fraction: float = 0.5,
    ) -> BootstrapInterval:
        """Percentile interval for *name*, or an unavailable one.

        The standard error is the sample SD of the finite replicates
        and is reported whenever at least two are present, even if the
        interval itself is withheld.
        """
        vals = self.values(name)
        n_finite = int(vals.shape[0])
        se = float(np.std(vals, ddof=1)) if n_finite > 1 else None
        if n_finite == 0 or self.finite_fraction(name) < min_finite_fraction:
            return BootstrapInterval(None, None, se, n_finite, self.n_resamples)
        alpha = 1.0 - confidence_level
        lo, hi = np.quantile(vals, [alpha / 2, 1 - alpha / 2])
        return BootstrapInterval(float(lo), float(hi), se, n_finite, self.n_resamples)


def bootstrap_distribution(
    dataset: UnitDataset,
    statistic: StatisticFn,
    names: Sequence[str],
    n_resamples: int,
    rng: np.random.Generator,
    *,
    deadline: Deadline | None = None,
) -> BootstrapDistribution:
    """Evaluate *statistic* on *n_resamples* subject-level resamples.

    Args:
        dataset: The unit's dataset.
        statistic: Callable returning a vector aligned with *names*.
            May raise :class:`SingularFitError` for a degenerate
            resample.
        names: Names of the statistic's components.
        n_resamples: Number of resamples *R*.
        rng: The estimator's own generator.
        deadline: Optional time budget checked between resamples.

    Returns:
        A :class:`BootstrapDistribution`.

    Raises:
        UnitTimeoutError: If *deadline* expires.
        ValueError: If the statistic returns the wrong length.
    """
    names = tuple(names)
    k = len(names)
    n = dataset.n
    replicates = np.full((n_resamples, k), np.nan)
    valid = np.zeros((n_resamples, k), dtype=bool)
    n_failed = 0

    for b in range(n_resamples):
        if deadline is not None:
            deadline.check("bootstrap")
        # Drawn one resample at a time so memory stays O(n) for
        # large R; the stream is consumed identically either way.
        idx = rng.integers(0, n, size=n)
        try:
            stat = np.asarray(statistic(dataset.take(idx)), dtype=float).ravel()
        except _RESAMPLE_ERRORS as exc:
            n_failed += 1
            logger.debug("unit %d resample %d absent: %s", dataset.unit_index, b, exc)
            continue
        if stat.shape[0] != k:
            raise ValueError(
                f"statistic returned {stat.shape[0]} values, expected {k} ({names})."
            )
        finite = np.isfinite(stat)
        replicates[b, finite] = stat[finite]
        valid[b] = finite

    if n_failed:
        logger.debug(
            "unit %d: %d/%d resamples failed to fit",
            dataset.unit_index,
            n_failed,
            n_resamples,
        )
    return BootstrapDistribution(
        names=names, replicates=replicates, valid=valid, n_failed=n_failed
    )


def percentile_intervals(
    distribution: BootstrapDistribution,
    confidence_level: float = 0.95,
    min_finite_fraction: float = 0.5,
) -> dict[str, BootstrapInterval]:
    """Percentile interval for every estimate in *distribution*."""
    return {
        name: distribution.interval(name, confidence_level, min_finite_fraction)
        for name in distribution.names
    }


__all__ = [
    "BootstrapDistribution",
    "BootstrapInterval",
    "Deadline",
    "bootstrap_distribution",
    "percentile_intervals",
    "spawn_estimator_generators",
    "unit_seed_sequence",
]
