"""Tests for the moderated-mediation estimator."""

from __future__ import annotations

import numpy as np
import pytest
from _synthetic import make_unit_data

from proxy_mediation._config import EstimationSettings
from proxy_mediation._estimators import resolve_estimator
from proxy_mediation._estimators.mediation import (
    DERIVED_TERMS,
    MediationEstimator,
    derived_effects,
    mediation_statistic,
)
from proxy_mediation._results import MediationResult
from proxy_mediation.assembly import assemble_unit_dataset
from proxy_mediation.exceptions import SingularFitError

_SETTINGS = EstimationSettings(n_bootstrap=200, base_seed=1)


def _estimate(ds, settings=_SETTINGS, seed=0):
    return MediationEstimator().estimate(ds, np.random.default_rng(seed), settings)


class TestDerivedEffects:
    def test_formulas(self):
        a1, a3, b1, b3, c = 0.3, 0.2, 0.4, -0.1, 0.05
        out = dict(zip(DERIVED_TERMS, derived_effects(a1, a3, b1, b3, c)))
        assert out["indirect_m0"] == pytest.approx(0.12)
        assert out["indirect_m1"] == pytest.approx(0.5 * 0.3)
        assert out["total_m0"] == pytest.approx(0.17)
        assert out["total_m1"] == pytest.approx(0.2)
        assert out["index_moderated_mediation"] == pytest.approx(0.15 - 0.12)

    def test_statistic_matches_point_estimate(self):
        ds = assemble_unit_dataset(*make_unit_data(n=300, seed=2))
        res = _estimate(ds)
        stat = mediation_statistic(ds)
        for name, value in zip(DERIVED_TERMS, stat):
            assert res[name].estimate == pytest.approx(value, rel=1e-8, abs=1e-12)


class TestMediationEstimator:
    def test_registry(self):
        assert isinstance(resolve_estimator("mediation"), MediationEstimator)

    def test_result_structure(self):
        ds = assemble_unit_dataset(*make_unit_data(n=200, seed=4), unit_index=9)
        res = _estimate(ds)
        assert isinstance(res, MediationResult)
        assert res.unit_index == 9
        assert not res.failed
        assert res.n_bootstrap == 200
        assert all(t is not None for t in res.terms().values())

    def test_roles_and_inference_methods(self):
        ds = assemble_unit_dataset(*make_unit_data(n=200, seed=4))
        res = _estimate(ds)
        assert res.a_exposure.role == "path"
        assert res.b_mediator.role == "path"
        for name in ("a_moderator", "a_interaction", "b_moderator", "b_interaction"):
            assert res[name].role == "nuisance"
            assert res[name].ci_method == "analytic"
            assert res[name].p_value is not None
        assert res.direct.role == "effect"
        assert res.direct.ci_method == "analytic"
        for name in DERIVED_TERMS:
            term = res[name]
            assert term.role == "effect"
            assert term.ci_method == "bootstrap"
            assert term.p_value is None
            assert term.n_finite == 200
            assert term.ci_lower <= term.ci_upper

    def test_recovers_indirect_effect(self):
        # a1 = 0.3, b1 = 0.4 → indirect 0.12 in both strata.
        ds = assemble_unit_dataset(*make_unit_data(n=5000, seed=21))
        res = _estimate(ds, EstimationSettings(n_bootstrap=200))
        assert res.a_exposure.estimate == pytest.approx(0.3, abs=0.02)
        assert res.b_mediator.estimate == pytest.approx(0.4, abs=0.02)
        assert res.indirect_m0.estimate == pytest.approx(0.12, rel=0.1)
        assert res.indirect_m1.estimate == pytest.approx(0.12, rel=0.1)
        assert res.indirect_m0.significant
        assert res.indirect_m0.ci_lower < 0.12 < res.indirect_m0.ci_upper
        assert res.direct.estimate == pytest.approx(0.0, abs=0.02)

    def test_recovers_moderated_paths(self):
        ds = assemble_unit_dataset(
            *make_unit_data(n=3000, seed=6, a1=0.3, a3=0.3, b1=0.4, b3=0.2)
        )
        res = _estimate(ds)
        assert res.indirect_m1.estimate == pytest.approx(0.6 * 0.6, rel=0.1)
        assert res.index_moderated_mediation.estimate == pytest.approx(0.24, rel=0.15)
        assert res.index_moderated_mediation.significant

    def test_deterministic_given_generator(self):
        ds = assemble_unit_dataset(*make_unit_data(n=100, seed=4))
        a, b = _estimate(ds, seed=5), _estimate(ds, seed=5)
        assert a == b

    def test_constant_exposure_is_singular(self):
        covariates, mediator, proxy = make_unit_data(n=50, seed=1)
        covariates = covariates.assign(exposure=1.0)
        ds = assemble_unit_dataset(covariates, mediator, proxy)
        with pytest.raises(SingularFitError, match="mediator model"):
            _estimate(ds)

    def test_single_moderator_level_is_singular(self):
        covariates, mediator, proxy = make_unit_data(n=50, seed=1)
        covariates = covariates.assign(moderator=0)
        ds = assemble_unit_dataset(covariates, mediator, proxy)
        with pytest.raises(SingularFitError):
            _estimate(ds)


@pytest.mark.slow
class TestIndirectEffectPower:
    """At n=5000 the indirect-effect interval excludes zero in repeated runs."""

    def test_interval_excludes_zero_across_seeds(self):
        seeds = range(100, 120)
        settings = EstimationSettings(n_bootstrap=100)
        significant = []
        for seed in seeds:
            ds = assemble_unit_dataset(*make_unit_data(n=5000, seed=seed))
            res = _estimate(ds, settings, seed=seed)
            significant.append(bool(res.indirect_m0.significant))
        assert np.mean(significant) > 0.95, significant
