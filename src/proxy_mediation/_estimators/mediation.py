"""Moderated mediation — product-of-coefficients with a binary moderator.

Two linked linear models are fitted on the unit's dataset:

  Mediator model (a paths):
      M = a0 + a1·X + a2·W + a3·(X·W) + e_M

  Outcome model (b paths and direct effect):
      Y = b0 + b1·M + b2·W + b3·(M·W) + c·X + e_Y

where X is the exposure, W the binary moderator, M the mediator and Y
the outcome.  Within each moderator stratum the model reduces to a
simple mediation model, so the conditional indirect effects are

  W = 0:   indirect_m0 = a1 · b1
  W = 1:   indirect_m1 = (a1 + a3) · (b1 + b3)

with the direct effect c common to both strata and the total effect
per stratum equal to c + indirect.  The difference indirect_m1 −
indirect_m0 is the index of moderated mediation: a test of whether the
indirect effect itself depends on W.

Inference
~~~~~~~~~
The eight regression coefficients get analytic OLS standard errors and
p-values.  The derived quantities are products and sums of jointly
estimated coefficients; their sampling distribution is skewed at small
n, so instead of the delta method they get bootstrap standard errors
and percentile intervals (Preacher & Hayes, 2004, 2008).  Each
resample re-fits both models on the same resampled subjects.

References:
    Preacher, K. J. & Hayes, A. F. (2004). SPSS and SAS procedures for
    estimating indirect effects in simple mediation models.  *Behavior
    Research Methods*, 36(4), 717–731.

    Preacher, K. J., Rucker, D. D. & Hayes, A. F. (2007). Addressing
    moderated mediation hypotheses.  *Multivariate Behavioral
    Research*, 42(1), 185–227.

    Hayes, A. F. (2015). An index and test of linear moderated
    mediation.  *Multivariate Behavioral Research*, 50(1), 1–22.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from .._ols import design_matrix, fit_ols, lstsq_coefs
from .._results import ROLE_EFFECT, ROLE_NUISANCE, ROLE_PATH, MediationResult
from ..bootstrap import bootstrap_distribution, percentile_intervals
from ._common import analytic_term, bootstrap_term, named_coefs

if TYPE_CHECKING:
    from .._config import EstimationSettings
    from ..assembly import UnitDataset
    from ..bootstrap import Deadline

logger = logging.getLogger(__name__)

DERIVED_TERMS: tuple[str, ...] = (
    "indirect_m0",
    "indirect_m1",
    "total_m0",
    "total_m1",
    "index_moderated_mediation",
)


def _mediator_columns(ds: UnitDataset) -> dict[str, np.ndarray]:
    return {
        "exposure": ds.exposure,
        "moderator": ds.moderator,
        "exposure:moderator": ds.exposure * ds.moderator,
    }


def _outcome_columns(ds: UnitDataset) -> dict[str, np.ndarray]:
    return {
        "mediator": ds.mediator,
        "moderator": ds.moderator,
        "mediator:moderator": ds.mediator * ds.moderator,
        "exposure": ds.exposure,
    }


def derived_effects(a1: float, a3: float, b1: float, b3: float, c: float) -> np.ndarray:
    """Conditional indirect, total and moderated-mediation effects.

    Returns:
        Array aligned with :data:`DERIVED_TERMS`.
    """
    indirect_m0 = a1 * b1
    indirect_m1 = (a1 + a3) * (b1 + b3)
    return np.array(
        [
            indirect_m0,
            indirect_m1,
            c + indirect_m0,
            c + indirect_m1,
            indirect_m1 - indirect_m0,
        ]
    )


def mediation_statistic(ds: UnitDataset) -> np.ndarray:
    """Bootstrap statistic: re-fit both models, return the derived effects.

    Raises:
        SingularFitError: If either resampled design is rank-deficient.
    """
    X_a, names_a = design_matrix(_mediator_columns(ds))
    a = named_coefs(lstsq_coefs(ds.mediator, X_a, "mediator model"), names_a)
    X_b, names_b = design_matrix(_outcome_columns(ds))
    b = named_coefs(lstsq_coefs(ds.outcome, X_b, "outcome model"), names_b)
    return derived_effects(
        a["exposure"],
        a["exposure:moderator"],
        b["mediator"],
        b["mediator:moderator"],
        b["exposure"],
    )


class MediationEstimator:
    """Product-of-coefficients moderated mediation with bootstrap CIs."""

    name: str = "mediation"

    def estimate(
        self,
        dataset: UnitDataset,
        rng: np.random.Generator,
        settings: EstimationSettings,
        *,
        deadline: Deadline | None = None,
    ) -> MediationResult:
        """Fit both path models and bootstrap the derived effects.

        Raises:
            SingularFitError: If either observed design is
                rank-deficient (e.g. constant exposure, or a moderator
                that takes only one level).
            UnitTimeoutError: If *deadline* expires during the
                bootstrap.
        """
        level = settings.confidence_level
        fit_a = fit_ols(
            dataset.mediator,
            _mediator_columns(dataset),
            confidence_level=level,
            label="mediator model",
        )
        fit_b = fit_ols(
            dataset.outcome,
            _outcome_columns(dataset),
            confidence_level=level,
            label="outcome model",
        )

        observed = derived_effects(
            fit_a.coef("exposure"),
            fit_a.coef("exposure:moderator"),
            fit_b.coef("mediator"),
            fit_b.coef("mediator:moderator"),
            fit_b.coef("exposure"),
        )

        dist = bootstrap_distribution(
            dataset,
            mediation_statistic,
            DERIVED_TERMS,
            settings.n_bootstrap,
            rng,
            deadline=deadline,
        )
        intervals = percentile_intervals(dist, level, settings.min_finite_fraction)
        derived = {
            name: bootstrap_term(value, intervals[name], ROLE_EFFECT)
            for name, value in zip(DERIVED_TERMS, observed)
        }

        logger.debug(
            "unit %d mediation: indirect_m0=%.4g indirect_m1=%.4g (%d/%d resamples failed)",
            dataset.unit_index,
            observed[0],
            observed[1],
            dist.n_failed,
            dist.n_resamples,
        )

        return MediationResult(
            unit_index=dataset.unit_index,
            a_exposure=analytic_term(fit_a, "exposure", ROLE_PATH),
            a_moderator=analytic_term(fit_a, "moderator", ROLE_NUISANCE),
            a_interaction=analytic_term(fit_a, "exposure:moderator", ROLE_NUISANCE),
            b_mediator=analytic_term(fit_b, "mediator", ROLE_PATH),
            b_moderator=analytic_term(fit_b, "moderator", ROLE_NUISANCE),
            b_interaction=analytic_term(fit_b, "mediator:moderator", ROLE_NUISANCE),
            direct=analytic_term(fit_b, "exposure", ROLE_EFFECT),
            n_bootstrap=dist.n_resamples,
            n_failed_resamples=dist.n_failed,
            **derived,
        )
