"""Proximal g-computation (PGC) — two-stage proxy adjustment.

Stage 1 (outcome bridge):
    P = h0 + h1·M + h2·Y + h3·(Y·W) + e

The fitted values b̂ = ĥ(M, Y, W) form the bridge: the part of the
proxy explained by the mediator and outcome, i.e. the footprint of the
latent confounder that the proxy shares with them.

Centred residualisation:
    Ỹ = Y − (b̂ − mean(b̂))

Subtracting the *centred* bridge removes the confounding footprint
from each subject's outcome without moving the outcome's mean, so
mean(Ỹ) = mean(Y) holds exactly on every sample (up to floating-point
rounding).  :func:`adjusted_outcome` is the single implementation used
for the observed sample and for every resample.

Stage 2 (effect model):
    Ỹ = d0 + d1·X + d2·W + d3·(X·W) + e

    effect_m0 = d1              (moderator W = 0)
    effect_m1 = d1 + d3         (moderator W = 1)

Inference
~~~~~~~~~
The stage-2 OLS standard errors ignore the estimation error in the
bridge, so the two stratum effects get percentile bootstrap intervals
in which *both* stages are re-fitted on the identical resampled subject
set — never resampled independently per stage, which would break the
dependence between the bridge and the outcome it adjusts.  The
moderator and interaction coefficients are nuisance terms and keep
their stage-2 analytic p-values.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from .._ols import design_matrix, fit_ols, fit_predict, lstsq_coefs
from .._results import ROLE_EFFECT, ROLE_NUISANCE, PgcResult
from ..bootstrap import bootstrap_distribution, percentile_intervals
from ._common import analytic_term, bootstrap_term, named_coefs

if TYPE_CHECKING:
    from .._config import EstimationSettings
    from ..assembly import UnitDataset
    from ..bootstrap import Deadline

logger = logging.getLogger(__name__)

EFFECT_TERMS: tuple[str, ...] = ("effect_m0", "effect_m1")


def _bridge_columns(ds: UnitDataset) -> dict[str, np.ndarray]:
    return {
        "mediator": ds.mediator,
        "outcome": ds.outcome,
        "outcome:moderator": ds.outcome * ds.moderator,
    }


def _effect_columns(ds: UnitDataset) -> dict[str, np.ndarray]:
    return {
        "exposure": ds.exposure,
        "moderator": ds.moderator,
        "exposure:moderator": ds.exposure * ds.moderator,
    }


def bridge_predictions(ds: UnitDataset) -> np.ndarray:
    """Stage 1: fitted proxy values from mediator and outcome.

    Raises:
        SingularFitError: If the bridge regressors are collinear.
    """
    fitted, _ = fit_predict(ds.proxy, _bridge_columns(ds), label="bridge model")
    return fitted


def adjusted_outcome(ds: UnitDataset) -> np.ndarray:
    """Outcome minus the centred bridge prediction.

    The result has the same mean as ``ds.outcome``.
    """
    bridge = bridge_predictions(ds)
    return ds.outcome - (bridge - bridge.mean())


def pgc_statistic(ds: UnitDataset) -> np.ndarray:
    """Bootstrap statistic: both stages on one resample → ``[m0, m1]``."""
    y_adj = adjusted_outcome(ds)
    X, names = design_matrix(_effect_columns(ds))
    d = named_coefs(lstsq_coefs(y_adj, X, "effect model"), names)
    return np.array([d["exposure"], d["exposure"] + d["exposure:moderator"]])


def _r_squared(y: np.ndarray, fitted: np.ndarray) -> float | None:
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    if ss_tot == 0.0:
        return None
    return 1.0 - float(np.sum((y - fitted) ** 2)) / ss_tot


class PgcEstimator:
    """Two-stage proximal g-computation with joint bootstrap CIs."""

    name: str = "pgc"

    def estimate(
        self,
        dataset: UnitDataset,
        rng: np.random.Generator,
        settings: EstimationSettings,
        *,
        deadline: Deadline | None = None,
    ) -> PgcResult:
        """Run both stages on the observed sample and bootstrap them jointly.

        Raises:
            SingularFitError: If either stage's observed design is
                rank-deficient.
            UnitTimeoutError: If *deadline* expires.
        """
        level = settings.confidence_level
        bridge = bridge_predictions(dataset)
        y_adj = dataset.outcome - (bridge - bridge.mean())
        mean_shift = abs(float(y_adj.mean()) - float(dataset.outcome.mean()))

        fit = fit_ols(
            y_adj,
            _effect_columns(dataset),
            confidence_level=level,
            label="effect model",
        )
        d1 = fit.coef("exposure")
        d3 = fit.coef("exposure:moderator")
        observed = (d1, d1 + d3)

        dist = bootstrap_distribution(
            dataset,
            pgc_statistic,
            EFFECT_TERMS,
            settings.n_bootstrap,
            rng,
            deadline=deadline,
        )
        intervals = percentile_intervals(dist, level, settings.min_finite_fraction)

        logger.debug(
            "unit %d pgc: effect_m0=%.4g effect_m1=%.4g mean_shift=%.2e",
            dataset.unit_index,
            observed[0],
            observed[1],
            mean_shift,
        )

        return PgcResult(
            unit_index=dataset.unit_index,
            effect_m0=bootstrap_term(observed[0], intervals["effect_m0"], ROLE_EFFECT),
            effect_m1=bootstrap_term(observed[1], intervals["effect_m1"], ROLE_EFFECT),
            moderator=analytic_term(fit, "moderator", ROLE_NUISANCE),
            interaction=analytic_term(fit, "exposure:moderator", ROLE_NUISANCE),
            bridge_r_squared=_r_squared(dataset.proxy, bridge),
            mean_shift=mean_shift,
            n_bootstrap=dist.n_resamples,
            n_failed_resamples=dist.n_failed,
        )
