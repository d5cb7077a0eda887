"""Run configuration for the proxy_mediation package.

Two concerns live here:

* :class:`EstimationSettings` — the per-run statistical knobs shared by
  every unit task (bootstrap size, base seed, interval level, finite
  fraction threshold, per-unit time budget).  The bootstrap size has no
  default: it trades interval accuracy for cost and must be stated for
  every run.
* The joblib backend used by the orchestrator.

Backend resolution order (first match wins):
    1. Programmatic override via :func:`set_backend`.
    2. The ``PROXY_MEDIATION_BACKEND`` environment variable.
    3. The default, ``"loky"`` (process-based workers).

Valid backend names are ``"loky"``, ``"threading"`` and
``"sequential"`` (case-insensitive); ``"auto"`` restores the default
resolution order.

Examples:
    Force in-process execution from the shell::

        export PROXY_MEDIATION_BACKEND=sequential

    Switch to threads programmatically::

        import proxy_mediation
        proxy_mediation.set_backend("threading")
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass

_VALID_BACKENDS = {"loky", "threading", "sequential", "auto"}
_DEFAULT_BACKEND = "loky"

# Sentinel indicating "no programmatic override has been set".
_backend_override: str | None = None


def get_backend() -> str:
    """Return the active joblib backend name.

    Resolution order:
        1. Value set by :func:`set_backend` (unless ``"auto"``).
        2. ``PROXY_MEDIATION_BACKEND`` environment variable.
        3. ``"loky"``.

    Returns:
        ``"loky"``, ``"threading"`` or ``"sequential"``.
    """
    # 1. Programmatic override
    if _backend_override is not None and _backend_override != "auto":
        return _backend_override

    # 2. Environment variable
    env = os.environ.get("PROXY_MEDIATION_BACKEND", "").strip().lower()
    if env in ("loky", "threading", "sequential"):
        return env

    # 3. Default
    return _DEFAULT_BACKEND


def set_backend(name: str) -> None:
    """Override the backend selection.

    Args:
        name: One of ``"loky"``, ``"threading"``, ``"sequential"`` or
            ``"auto"`` (case-insensitive).  ``"auto"`` restores the
            default resolution order.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised


@dataclass(frozen=True)
class EstimationSettings:
    """Statistical settings shared by every unit task in a run.

    Attributes:
        n_bootstrap: Number of bootstrap resamples per estimator call.
        base_seed: Run-level seed.  Each unit derives its own streams
            from ``(base_seed, unit_index)``.
        confidence_level: Two-sided interval level (0.95 → 2.5th and
            97.5th percentiles).
        min_finite_fraction: Minimum fraction of resamples that must
            yield a finite value before an interval is reported.
        unit_timeout: Per-unit time budget in seconds, or ``None`` for
            no limit.
    """

    n_bootstrap: int
    base_seed: int = 0
    confidence_level: float = 0.95
    min_finite_fraction: float = 0.5
    unit_timeout: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.n_bootstrap, bool) or not isinstance(
            self.n_bootstrap, int
        ):
            raise ValueError(
                f"n_bootstrap must be an integer, got {self.n_bootstrap!r}."
            )
        if self.n_bootstrap < 1:
            raise ValueError(f"n_bootstrap must be >= 1, got {self.n_bootstrap}.")
        if self.base_seed < 0:
            raise ValueError(f"base_seed must be >= 0, got {self.base_seed}.")
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(
                f"confidence_level must lie in (0, 1), got {self.confidence_level}."
            )
        if not 0.0 < self.min_finite_fraction <= 1.0:
            raise ValueError(
                "min_finite_fraction must lie in (0, 1], "
                f"got {self.min_finite_fraction}."
            )
        if self.unit_timeout is not None and not (
            self.unit_timeout > 0 and math.isfinite(self.unit_timeout)
        ):
            raise ValueError(
                f"unit_timeout must be a positive number or None, "
                f"got {self.unit_timeout}."
            )
