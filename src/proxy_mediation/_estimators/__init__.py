"""Estimator registry and protocol.

Each estimator encapsulates one fixed causal-estimation design and
exposes a uniform ``estimate()`` interface that the unit task calls
once per unit:

* ``"mediation"`` — moderated-mediation path model
  (:class:`~.mediation.MediationEstimator`).
* ``"coca"`` — control-outcome calibration ratio
  (:class:`~.coca.CocaEstimator`).
* ``"pgc"`` — two-stage proximal g-computation
  (:class:`~.pgc.PgcEstimator`).

Every estimator takes its own random generator, so the three never
share a stream and a failure in one cannot shift another's draws.

The set is closed: the package implements exactly these three designs
and does not choose among them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import numpy as np

    from .._config import EstimationSettings
    from .._results import EstimatorResult
    from ..assembly import UnitDataset
    from ..bootstrap import Deadline

# ------------------------------------------------------------------ #
# Estimator protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class Estimator(Protocol):
    """Interface that every estimator must satisfy."""

    name: str
    """Method name used as the result key (e.g. ``"coca"``)."""

    def estimate(
        self,
        dataset: UnitDataset,
        rng: np.random.Generator,
        settings: EstimationSettings,
        *,
        deadline: Deadline | None = None,
    ) -> EstimatorResult:
        """Fit the design on *dataset* and bootstrap its intervals.

        Args:
            dataset: The unit's joined dataset.
            rng: Generator dedicated to this estimator on this unit.
            settings: Run-level bootstrap and interval settings.
            deadline: Optional per-unit time budget.

        Raises:
            SingularFitError: If the observed-sample design is
                rank-deficient.
            BootstrapInstabilityError: Ratio estimators only.
            UnitTimeoutError: If *deadline* expires.
        """
        ...


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

# Lazy imports to avoid circular dependencies at module load time.

_ESTIMATOR_REGISTRY: dict[str, type[Estimator]] = {}


def _ensure_registry() -> None:
    """Populate the registry on first access."""
    if _ESTIMATOR_REGISTRY:
        return

    from .coca import CocaEstimator
    from .mediation import MediationEstimator
    from .pgc import PgcEstimator

    _ESTIMATOR_REGISTRY.update(
        {
            "mediation": MediationEstimator,
            "coca": CocaEstimator,
            "pgc": PgcEstimator,
        }
    )


def resolve_estimator(method: str) -> Estimator:
    """Return an estimator instance for the given method string.

    Args:
        method: One of ``"mediation"``, ``"coca"``, ``"pgc"``.

    Raises:
        ValueError: If *method* is not recognised.
    """
    _ensure_registry()
    cls = _ESTIMATOR_REGISTRY.get(method)
    if cls is None:
        valid = ", ".join(sorted(_ESTIMATOR_REGISTRY))
        raise ValueError(f"Invalid method '{method}'. Choose from: {valid}.")
    return cls()


__all__ = [
    "Estimator",
    "resolve_estimator",
]
