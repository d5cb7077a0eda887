"""Unit engine — per-unit task and parallel orchestration.

:func:`run_unit_task` is the whole of the work for one unit:

1. **Assembly** — join covariates, mediator and proxy into a
   :class:`~proxy_mediation.assembly.UnitDataset`.
2. **Streams** — derive one generator per estimator from
   ``(base_seed, unit_index)``.
3. **Estimation** — run the mediation, COCA and PGC estimators
   independently, converting each estimator's
   :class:`~proxy_mediation.exceptions.UnitError` into a
   :class:`~proxy_mediation._results.FitFailure` (or, for an unstable
   COCA interval, into its partial result).

The task is a pure function of its arguments, so it can run in any
worker process or thread.  Assembly errors and timeouts fail all three
estimators of the unit; every other error is scoped to one estimator.

:class:`UnitEngine` validates the shared covariates once, resolves the
joblib backend, and schedules one task per unit.  Results are collected
as they complete and returned sorted by unit index, so the output does
not depend on the worker count or on completion order.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import pandas as pd
from joblib import Parallel, delayed

from ._compat import DataFrameLike
from ._config import EstimationSettings, get_backend
from ._estimators import resolve_estimator
from ._results import METHODS, EstimatorResult, FitFailure, UnitResult
from .assembly import UnitInput, assemble_unit_dataset, validate_covariates
from .bootstrap import Deadline, spawn_estimator_generators
from .exceptions import (
    AssemblyError,
    BootstrapInstabilityError,
    EmptyUnitSetError,
    UnitError,
    UnitTimeoutError,
)

logger = logging.getLogger(__name__)

_BACKENDS = ("loky", "threading", "sequential")


# ------------------------------------------------------------------ #
# Unit task
# ------------------------------------------------------------------ #


def _failure(method: str, unit_index: int, exc: UnitError) -> FitFailure:
    return FitFailure(
        method=method,
        unit_index=unit_index,
        error_kind=exc.kind,
        message=str(exc),
    )


def _failed_unit(unit_input: UnitInput, exc: UnitError) -> UnitResult:
    idx = unit_input.unit_index
    failures = {m: _failure(m, idx, exc) for m in METHODS}
    return UnitResult(unit_index=idx, label=unit_input.label, **failures)


def run_unit_task(
    unit_input: UnitInput,
    covariates: DataFrameLike,
    settings: EstimationSettings,
) -> UnitResult:
    """Assemble one unit and run the three estimators on it.

    Args:
        unit_input: The unit's mediator column and proxy table.
        covariates: Shared covariate table, raw or in the canonical
            form returned by
            :func:`~proxy_mediation.assembly.validate_covariates`.
        settings: Run-level estimation settings.

    Returns:
        A :class:`UnitResult`.  Unit-scoped errors are recorded in it
        rather than raised.

    Raises:
        ValueError: If *covariates* are invalid (a caller error, not a
            unit failure).
    """
    idx = unit_input.unit_index
    deadline = Deadline(settings.unit_timeout, unit_index=idx)

    try:
        dataset = assemble_unit_dataset(
            covariates, unit_input.mediator, unit_input.proxy, unit_index=idx
        )
    except AssemblyError as exc:
        logger.debug("unit %d: assembly failed (%s): %s", idx, exc.kind, exc)
        return _failed_unit(unit_input, exc)

    rngs = spawn_estimator_generators(settings.base_seed, idx, METHODS)
    outcomes: dict[str, EstimatorResult] = {}

    for method in METHODS:
        try:
            deadline.check(method)
            outcomes[method] = resolve_estimator(method).estimate(
                dataset, rngs[method], settings, deadline=deadline
            )
        except UnitTimeoutError as exc:
            logger.debug("unit %d: %s", idx, exc)
            return _failed_unit(unit_input, exc)
        except BootstrapInstabilityError as exc:
            if exc.partial is not None:
                outcomes[method] = exc.partial
            else:
                outcomes[method] = _failure(method, idx, exc)
        except UnitError as exc:
            logger.debug("unit %d %s failed (%s): %s", idx, method, exc.kind, exc)
            outcomes[method] = _failure(method, idx, exc)

    return UnitResult(unit_index=idx, label=unit_input.label, **outcomes)


# ------------------------------------------------------------------ #
# Orchestration
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RunOutput:
    """What a run produced.

    Attributes:
        results: Completed unit results, sorted by unit index.
        cancelled: ``True`` if the run stopped before every unit
            finished.
        pending_units: Indices of units that did not complete, sorted.
    """

    results: tuple[UnitResult, ...]
    cancelled: bool = False
    pending_units: tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.results)


class UnitEngine:
    """Runs the unit task over many units with a joblib worker pool.

    The engine is immutable after construction: it captures the
    validated covariates, the settings and the resolved backend.

    Attributes:
        settings: Estimation settings shared by every unit.
        backend_name: Resolved joblib backend (``"loky"``,
            ``"threading"`` or ``"sequential"``).
        n_jobs: Worker count passed to joblib.
    """

    def __init__(
        self,
        covariates: DataFrameLike,
        settings: EstimationSettings,
        *,
        n_jobs: int = 1,
        backend: str | None = None,
    ) -> None:
        if not isinstance(settings, EstimationSettings):
            raise TypeError(
                f"settings must be EstimationSettings, got {type(settings).__name__}."
            )
        self._covariates: pd.DataFrame = validate_covariates(covariates)
        self.settings = settings

        name = "auto" if backend is None else backend.strip().lower()
        if name == "auto":
            name = get_backend()
        if name not in _BACKENDS:
            raise ValueError(
                f"Unknown backend '{backend}'. Choose from: {list(_BACKENDS)}"
            )
        self.backend_name: str = name

        if n_jobs == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores).")
        self.n_jobs: int = n_jobs
        if n_jobs != 1 and name == "sequential":
            warnings.warn(
                "n_jobs is ignored when the sequential backend is active.  "
                "Falling back to n_jobs=1.",
                UserWarning,
                stacklevel=2,
            )
            self.n_jobs = 1

    @property
    def covariates(self) -> pd.DataFrame:
        """The validated covariate table (a copy)."""
        return self._covariates.copy()

    @property
    def n_subjects(self) -> int:
        return len(self._covariates)

    def run(
        self,
        units: Iterable[UnitInput],
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> RunOutput:
        """Run every unit and collect the results.

        Args:
            units: The units to process.  Unit indices must be unique.
            should_stop: Optional callable polled after each completed
                unit; returning ``True`` cancels the remaining units.

        Returns:
            A :class:`RunOutput`.  On cancellation (``should_stop`` or
            ``KeyboardInterrupt``) it holds the units completed so far.

        Raises:
            EmptyUnitSetError: If *units* is empty.
            ValueError: If two units share an index.
        """
        units = list(units)
        if not units:
            raise EmptyUnitSetError("No units to process.")
        indices = [u.unit_index for u in units]
        dupes = sorted(i for i, count in Counter(indices).items() if count > 1)
        if dupes:
            raise ValueError(f"Duplicate unit index(es): {dupes}.")

        completed: dict[int, UnitResult] = {}
        cancelled = False
        started = time.monotonic()
        logger.info(
            "Running %d unit(s) on %d subjects (backend=%s, n_jobs=%d, B=%d)",
            len(units),
            self.n_subjects,
            self.backend_name,
            self.n_jobs,
            self.settings.n_bootstrap,
        )

        if should_stop is not None and should_stop():
            cancelled = True
        else:
            parallel = Parallel(
                n_jobs=self.n_jobs,
                backend=self.backend_name,
                return_as="generator_unordered",
            )
            outputs = parallel(
                delayed(run_unit_task)(u, self._covariates, self.settings)
                for u in units
            )
            try:
                for result in outputs:
                    completed[result.unit_index] = result
                    logger.debug(
                        "unit %d done (%d/%d)",
                        result.unit_index,
                        len(completed),
                        len(units),
                    )
                    if (
                        should_stop is not None
                        and len(completed) < len(units)
                        and should_stop()
                    ):
                        cancelled = True
                        break
            except KeyboardInterrupt:
                cancelled = True
            finally:
                outputs.close()

        pending = tuple(sorted(set(indices) - completed.keys()))
        if cancelled:
            logger.warning(
                "Run cancelled: %d of %d unit(s) completed, %d pending",
                len(completed),
                len(units),
                len(pending),
            )
        else:
            logger.info(
                "Finished %d unit(s) in %.1fs", len(completed), time.monotonic() - started
            )
        return RunOutput(
            results=tuple(completed[i] for i in sorted(completed)),
            cancelled=cancelled,
            pending_units=pending,
        )


def run_units(
    covariates: DataFrameLike,
    units: Iterable[UnitInput],
    settings: EstimationSettings,
    *,
    n_jobs: int = 1,
    backend: str | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> RunOutput:
    """Build a :class:`UnitEngine` and run *units* through it."""
    engine = UnitEngine(covariates, settings, n_jobs=n_jobs, backend=backend)
    return engine.run(units, should_stop=should_stop)


__all__ = [
    "RunOutput",
    "UnitEngine",
    "run_unit_task",
    "run_units",
]
