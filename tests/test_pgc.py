"""Tests for the proximal g-computation (PGC) estimator."""

from __future__ import annotations

import numpy as np
import pytest
from _synthetic import make_unit_data

from proxy_mediation._config import EstimationSettings
from proxy_mediation._estimators.pgc import (
    PgcEstimator,
    adjusted_outcome,
    bridge_predictions,
    pgc_statistic,
)
from proxy_mediation._results import PgcResult
from proxy_mediation.assembly import assemble_unit_dataset
from proxy_mediation.exceptions import SingularFitError

_SETTINGS = EstimationSettings(n_bootstrap=150, base_seed=0)


def _estimate(ds, settings=_SETTINGS, seed=0):
    return PgcEstimator().estimate(ds, np.random.default_rng(seed), settings)


@pytest.fixture()
def dataset():
    return assemble_unit_dataset(*make_unit_data(n=300, seed=17, c=0.5), unit_index=1)


class TestAdjustedOutcome:
    def test_mean_preserved(self, dataset):
        y_adj = adjusted_outcome(dataset)
        assert y_adj.mean() == pytest.approx(dataset.outcome.mean(), rel=1e-9, abs=1e-12)

    def test_mean_preserved_on_resamples(self, dataset):
        rng = np.random.default_rng(0)
        for _ in range(20):
            sub = dataset.take(rng.integers(0, dataset.n, size=dataset.n))
            y_adj = adjusted_outcome(sub)
            assert y_adj.mean() == pytest.approx(sub.outcome.mean(), rel=1e-9, abs=1e-12)

    def test_removes_centred_bridge(self, dataset):
        bridge = bridge_predictions(dataset)
        np.testing.assert_allclose(
            adjusted_outcome(dataset), dataset.outcome - (bridge - bridge.mean())
        )

    def test_collinear_bridge_is_singular(self, dataset):
        from proxy_mediation.assembly import UnitDataset

        degenerate = UnitDataset(
            unit_index=0,
            subject_id=dataset.subject_id,
            exposure=dataset.exposure,
            moderator=dataset.moderator,
            outcome=dataset.outcome,
            mediator=2.0 * dataset.outcome,
            proxy=dataset.proxy,
        )
        with pytest.raises(SingularFitError, match="bridge model"):
            adjusted_outcome(degenerate)


class TestPgcEstimator:
    def test_result_structure(self, dataset):
        res = _estimate(dataset)
        assert isinstance(res, PgcResult)
        assert res.unit_index == 1
        assert res.n_bootstrap == 150
        assert res.effect_m0.role == "effect"
        assert res.effect_m0.ci_method == "bootstrap"
        assert res.effect_m0.p_value is None
        assert res.moderator.role == "nuisance"
        assert res.interaction.role == "nuisance"
        assert res.moderator.ci_method == "analytic"
        assert res.interaction.p_value is not None
        assert res.mean_shift == pytest.approx(0.0, abs=1e-9)
        assert 0.0 <= res.bridge_r_squared <= 1.0

    def test_effects_match_statistic(self, dataset):
        res = _estimate(dataset)
        stat = pgc_statistic(dataset)
        assert res.effect_m0.estimate == pytest.approx(stat[0], rel=1e-8)
        assert res.effect_m1.estimate == pytest.approx(stat[1], rel=1e-8)

    def test_stratum_effects(self, dataset):
        res = _estimate(dataset)
        assert res.effect_m1.estimate == pytest.approx(
            res.effect_m0.estimate + res.interaction.estimate
        )

    def test_intervals_bracket_estimates(self, dataset):
        res = _estimate(dataset)
        for term in (res.effect_m0, res.effect_m1):
            assert term.ci_lower <= term.estimate <= term.ci_upper
            assert term.n_finite == 150

    def test_deterministic_given_generator(self, dataset):
        assert _estimate(dataset, seed=3) == _estimate(dataset, seed=3)

    def test_different_generators_differ(self, dataset):
        a, b = _estimate(dataset, seed=3), _estimate(dataset, seed=4)
        assert a.effect_m0.estimate == b.effect_m0.estimate
        assert a.effect_m0.ci_lower != b.effect_m0.ci_lower
