"""Control-outcome calibration (COCA) — a ratio estimator.

The negative-control proxy P is assumed to be affected by the exposure
X only through the same latent confounding U that biases the outcome
Y, never through a causal path.  Regressing the proxy on exposure and
outcome

    P = g0 + g1·X + g2·Y + g3·(Y·W) + e

and reading off the ratio

    ψ    = −g1 / g2                  (moderator W = 0)
    ψ_m1 = −g1 / (g2 + g3)           (moderator W = 1)

gives the calibrated exposure effect: under linearity the shared bias
appears in both coefficients and cancels in the ratio (Tchetgen
Tchetgen, 2014).

Instability
~~~~~~~~~~~
The ratio is undefined when g2 = 0 and heavy-tailed when g2 is small
relative to its sampling spread — exactly the case when the proxy
carries no information about the outcome.  The estimator therefore

* raises :class:`~proxy_mediation.exceptions.BootstrapInstabilityError`
  with no partial result when the observed g2 is exactly zero (never
  returning ±inf or an unflagged NaN), and
* raises it *with* a partial :class:`~proxy_mediation._results.CocaResult`
  (point estimates kept, interval withheld) when fewer than
  ``min_finite_fraction`` of the bootstrap resamples give a finite ψ.

Resamples whose denominator is zero, or whose design is singular, are
absent from the bootstrap distribution rather than entering it as inf.

Reference:
    Tchetgen Tchetgen, E. (2014). The control outcome calibration
    approach for causal inference with unobserved confounding.
    *American Journal of Epidemiology*, 179(5), 633–640.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import TYPE_CHECKING

import numpy as np

from .._ols import design_matrix, fit_ols, lstsq_coefs
from .._results import ROLE_EFFECT, ROLE_NUISANCE, ROLE_PATH, CocaResult
from ..bootstrap import bootstrap_distribution, percentile_intervals
from ..exceptions import BootstrapInstabilityError
from ._common import analytic_term, bootstrap_term, named_coefs

if TYPE_CHECKING:
    from .._config import EstimationSettings
    from ..assembly import UnitDataset
    from ..bootstrap import Deadline

logger = logging.getLogger(__name__)

RATIO_TERMS: tuple[str, ...] = ("psi", "psi_m1")


def _calibration_columns(ds: UnitDataset) -> dict[str, np.ndarray]:
    return {
        "exposure": ds.exposure,
        "outcome": ds.outcome,
        "outcome:moderator": ds.outcome * ds.moderator,
    }


def calibrated_ratio(beta_exposure: float, beta_outcome: float) -> float:
    """Return ``−beta_exposure / beta_outcome``.

    Raises:
        BootstrapInstabilityError: If *beta_outcome* is exactly zero or
            the ratio is not finite.
    """
    if beta_outcome == 0.0:
        raise BootstrapInstabilityError(
            "outcome coefficient of the calibration model is exactly zero; "
            "the calibrated ratio is undefined."
        )
    ratio = -beta_exposure / beta_outcome
    if not math.isfinite(ratio):
        raise BootstrapInstabilityError(
            f"calibrated ratio is not finite ({beta_exposure!r} / {beta_outcome!r})."
        )
    return ratio


def coca_statistic(ds: UnitDataset) -> np.ndarray:
    """Bootstrap statistic: ``[ψ, ψ_m1]`` on one resample.

    A zero denominator yields a non-finite entry, which the bootstrap
    engine records as absent.
    """
    X, names = design_matrix(_calibration_columns(ds))
    g = named_coefs(lstsq_coefs(ds.proxy, X, "calibration model"), names)
    num = -g["exposure"]
    den = np.array([g["outcome"], g["outcome"] + g["outcome:moderator"]])
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        return num / den


class CocaEstimator:
    """Control-outcome calibration ratio with percentile bootstrap CIs."""

    name: str = "coca"

    def estimate(
        self,
        dataset: UnitDataset,
        rng: np.random.Generator,
        settings: EstimationSettings,
        *,
        deadline: Deadline | None = None,
    ) -> CocaResult:
        """Fit the calibration model and bootstrap the ratio.

        Raises:
            SingularFitError: If the observed design is rank-deficient.
            BootstrapInstabilityError: If the ratio is undefined (no
                partial result) or its interval is unreliable (partial
                result attached).
            UnitTimeoutError: If *deadline* expires.
        """
        level = settings.confidence_level
        fit = fit_ols(
            dataset.proxy,
            _calibration_columns(dataset),
            confidence_level=level,
            label="calibration model",
        )
        g1 = fit.coef("exposure")
        g2 = fit.coef("outcome")
        g3 = fit.coef("outcome:moderator")

        try:
            psi = calibrated_ratio(g1, g2)
        except BootstrapInstabilityError as exc:
            exc.unit_index = dataset.unit_index
            raise

        # The W = 1 ratio is optional: its own denominator may vanish
        # while the baseline ratio is well defined.
        try:
            psi_m1: float | None = calibrated_ratio(g1, g2 + g3)
        except BootstrapInstabilityError:
            psi_m1 = None

        dist = bootstrap_distribution(
            dataset,
            coca_statistic,
            RATIO_TERMS,
            settings.n_bootstrap,
            rng,
            deadline=deadline,
        )
        intervals = percentile_intervals(dist, level, settings.min_finite_fraction)

        result = CocaResult(
            unit_index=dataset.unit_index,
            beta_exposure=analytic_term(fit, "exposure", ROLE_PATH),
            beta_outcome=analytic_term(fit, "outcome", ROLE_PATH),
            beta_interaction=analytic_term(fit, "outcome:moderator", ROLE_NUISANCE),
            psi=bootstrap_term(psi, intervals["psi"], ROLE_EFFECT),
            psi_m1=(
                None
                if psi_m1 is None
                else bootstrap_term(psi_m1, intervals["psi_m1"], ROLE_EFFECT)
            ),
            ci_available=intervals["psi"].available,
            n_bootstrap=dist.n_resamples,
            n_failed_resamples=dist.n_failed,
        )

        if not result.ci_available:
            message = (
                f"only {dist.finite_fraction('psi'):.0%} of {dist.n_resamples} "
                f"bootstrap ratios were finite (minimum "
                f"{settings.min_finite_fraction:.0%}); interval withheld."
            )
            logger.debug("unit %d coca: %s", dataset.unit_index, message)
            # Both ratio intervals are withheld together.
            partial = dataclasses.replace(
                result,
                psi_m1=None if result.psi_m1 is None else result.psi_m1.without_interval(),
                instability=message,
            )
            raise BootstrapInstabilityError(
                message,
                partial=partial,
                unit_index=dataset.unit_index,
            )

        logger.debug(
            "unit %d coca: psi=%.4g [%s, %s]",
            dataset.unit_index,
            psi,
            result.psi.ci_lower if result.psi else None,
            result.psi.ci_upper if result.psi else None,
        )
        return result
