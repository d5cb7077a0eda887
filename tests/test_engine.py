"""Tests for the unit task and the parallel orchestrator."""

from __future__ import annotations

import time

import numpy as np
import pytest
from _synthetic import make_covariates, make_null_units, make_unit_data

import proxy_mediation._config as _cfg
from proxy_mediation import UnitInput
from proxy_mediation._config import EstimationSettings
from proxy_mediation._results import CocaResult, FitFailure, MediationResult, PgcResult
from proxy_mediation.engine import RunOutput, UnitEngine, run_unit_task, run_units
from proxy_mediation.exceptions import EmptyUnitSetError

_SETTINGS = EstimationSettings(n_bootstrap=40, base_seed=123)


@pytest.fixture(autouse=True)
def _reset_backend(monkeypatch):
    monkeypatch.setattr(_cfg, "_backend_override", None)
    monkeypatch.delenv("PROXY_MEDIATION_BACKEND", raising=False)


@pytest.fixture()
def covariates():
    return make_covariates(n=80, seed=0)


@pytest.fixture()
def units(covariates):
    return make_null_units(covariates, 6, seed=1)


def _assert_same_results(a, b):
    """Field-by-field comparison with a tight numerical tolerance."""
    assert [r.unit_index for r in a] == [r.unit_index for r in b]
    for ra, rb in zip(a, b):
        for method, ea in ra.estimators().items():
            eb = rb.estimators()[method]
            assert type(ea) is type(eb)
            for name, ta in ea.terms().items():
                tb = eb.terms()[name]
                if ta is None:
                    assert tb is None
                    continue
                for field in ("estimate", "std_error", "ci_lower", "ci_upper"):
                    va, vb = getattr(ta, field), getattr(tb, field)
                    if va is None:
                        assert vb is None
                    else:
                        np.testing.assert_allclose(va, vb, rtol=1e-12, atol=1e-14)


# ------------------------------------------------------------------ #
# run_unit_task
# ------------------------------------------------------------------ #


class TestRunUnitTask:
    def test_three_estimators(self, covariates, units):
        res = run_unit_task(units[0], covariates, _SETTINGS)
        assert res.unit_index == 0
        assert res.label == "unit0"
        assert isinstance(res.mediation, MediationResult)
        assert isinstance(res.pgc, PgcResult)
        assert isinstance(res.coca, CocaResult)

    def test_pure(self, covariates, units):
        a = run_unit_task(units[2], covariates, _SETTINGS)
        b = run_unit_task(units[2], covariates, _SETTINGS)
        assert a == b

    def test_seed_changes_intervals(self, covariates, units):
        a = run_unit_task(units[2], covariates, _SETTINGS)
        other = EstimationSettings(n_bootstrap=40, base_seed=124)
        b = run_unit_task(units[2], covariates, other)
        assert a.mediation.indirect_m0.estimate == b.mediation.indirect_m0.estimate
        assert a.mediation.indirect_m0.ci_lower != b.mediation.indirect_m0.ci_lower

    def test_missing_subject_fails_whole_unit(self, covariates, units):
        u = units[0]
        broken = UnitInput(unit_index=0, mediator=u.mediator.iloc[1:], proxy=u.proxy)
        res = run_unit_task(broken, covariates, _SETTINGS)
        for method, est in res.estimators().items():
            assert isinstance(est, FitFailure)
            assert est.method == method
            assert est.error_kind == "missing_subject"

    def test_missing_value_fails_whole_unit(self, covariates, units):
        u = units[0]
        proxy = u.proxy.copy()
        proxy.iloc[0, 0] = np.nan
        res = run_unit_task(
            UnitInput(unit_index=0, mediator=u.mediator, proxy=proxy), covariates, _SETTINGS
        )
        assert {e.error_kind for e in res.estimators().values()} == {"missing_value"}

    def test_non_numeric_proxy_fails_whole_unit(self, covariates, units):
        u = units[0]
        proxy = u.proxy.astype(object)
        proxy.iloc[4, 0] = "NA"
        res = run_unit_task(
            UnitInput(unit_index=0, mediator=u.mediator, proxy=proxy), covariates, _SETTINGS
        )
        assert {e.error_kind for e in res.estimators().values()} == {"missing_value"}
        assert "non-numeric" in res.mediation.message

    def test_non_numeric_mediator_fails_whole_unit(self, covariates, units):
        u = units[0]
        mediator = u.mediator.astype(object)
        mediator.iloc[2] = "n/a"
        res = run_unit_task(
            UnitInput(unit_index=0, mediator=mediator, proxy=u.proxy), covariates, _SETTINGS
        )
        assert {e.error_kind for e in res.estimators().values()} == {"missing_value"}

    def test_solver_failure_is_scoped(self, covariates, units, monkeypatch):
        import proxy_mediation._ols as ols_mod

        class _Diverging:
            def __init__(self, endog, exog):
                pass

            def fit(self):
                raise np.linalg.LinAlgError("SVD did not converge")

        monkeypatch.setattr(ols_mod.sm, "OLS", _Diverging)
        res = run_unit_task(units[0], covariates, _SETTINGS)
        for method, est in res.estimators().items():
            assert isinstance(est, FitFailure)
            assert est.method == method
            assert est.error_kind == "singular_fit"

    def test_coca_failure_is_scoped(self, covariates, units):
        u = units[0]
        flat = u.proxy * 0.0
        res = run_unit_task(
            UnitInput(unit_index=0, mediator=u.mediator, proxy=flat), covariates, _SETTINGS
        )
        assert isinstance(res.coca, FitFailure)
        assert res.coca.error_kind == "bootstrap_instability"
        assert isinstance(res.mediation, MediationResult)
        assert isinstance(res.pgc, PgcResult)

    def test_singular_bridge_is_scoped(self, covariates, units):
        u = units[0]
        # Mediator equal to the outcome makes the bridge collinear; the
        # mediation and calibration models stay identified.
        ids = covariates.set_index("subject_id")
        mediator = ids["outcome"] * 2.0
        res = run_unit_task(
            UnitInput(unit_index=0, mediator=mediator, proxy=u.proxy), covariates, _SETTINGS
        )
        assert isinstance(res.pgc, FitFailure)
        assert res.pgc.error_kind == "singular_fit"
        assert isinstance(res.coca, CocaResult)

    def test_timeout_fails_all_estimators(self, covariates, units, monkeypatch):
        import proxy_mediation.engine as engine_mod
        from proxy_mediation.bootstrap import Deadline

        def expired(budget, unit_index=None):
            return Deadline(budget, unit_index=unit_index, started=time.monotonic() - 100)

        monkeypatch.setattr(engine_mod, "Deadline", expired)
        settings = EstimationSettings(n_bootstrap=40, unit_timeout=1.0)
        res = run_unit_task(units[1], covariates, settings)
        assert {e.error_kind for e in res.estimators().values()} == {"timeout"}
        assert all(isinstance(e, FitFailure) for e in res.estimators().values())


# ------------------------------------------------------------------ #
# UnitEngine
# ------------------------------------------------------------------ #


class TestUnitEngine:
    def test_results_sorted_by_index(self, covariates, units):
        out = UnitEngine(covariates, _SETTINGS, backend="sequential").run(units[::-1])
        assert isinstance(out, RunOutput)
        assert [r.unit_index for r in out.results] == list(range(6))
        assert not out.cancelled
        assert out.pending_units == ()
        assert len(out) == 6

    def test_worker_count_does_not_change_results(self, covariates, units):
        one = UnitEngine(covariates, _SETTINGS, n_jobs=1, backend="threading").run(units)
        two = UnitEngine(covariates, _SETTINGS, n_jobs=2, backend="threading").run(units)
        _assert_same_results(one.results, two.results)

    def test_process_workers_match_in_process(self, covariates, units):
        seq = UnitEngine(covariates, _SETTINGS, backend="sequential").run(units[:3])
        loky = UnitEngine(covariates, _SETTINGS, n_jobs=2, backend="loky").run(units[:3])
        _assert_same_results(seq.results, loky.results)

    def test_subset_matches_full_run(self, covariates, units):
        full = UnitEngine(covariates, _SETTINGS, backend="sequential").run(units)
        part = UnitEngine(covariates, _SETTINGS, backend="sequential").run(units[3:5])
        assert part.results == full.results[3:5]

    def test_empty_unit_set(self, covariates):
        engine = UnitEngine(covariates, _SETTINGS, backend="sequential")
        with pytest.raises(EmptyUnitSetError):
            engine.run([])

    def test_duplicate_indices(self, covariates, units):
        engine = UnitEngine(covariates, _SETTINGS, backend="sequential")
        with pytest.raises(ValueError, match="Duplicate unit index"):
            engine.run([units[0], units[0]])

    def test_invalid_covariates_raise_at_construction(self, covariates):
        with pytest.raises(ValueError, match="missing required column"):
            UnitEngine(covariates.drop(columns="outcome"), _SETTINGS)

    def test_unknown_backend(self, covariates):
        with pytest.raises(ValueError, match="Unknown backend"):
            UnitEngine(covariates, _SETTINGS, backend="dask")

    def test_backend_from_config(self, covariates, monkeypatch):
        monkeypatch.setenv("PROXY_MEDIATION_BACKEND", "threading")
        assert UnitEngine(covariates, _SETTINGS).backend_name == "threading"
        assert UnitEngine(covariates, _SETTINGS, backend="sequential").backend_name == (
            "sequential"
        )

    def test_auto_defers_to_config(self, covariates, monkeypatch):
        monkeypatch.setenv("PROXY_MEDIATION_BACKEND", "sequential")
        assert UnitEngine(covariates, _SETTINGS, backend="auto").backend_name == (
            "sequential"
        )

    def test_sequential_ignores_n_jobs(self, covariates):
        with pytest.warns(UserWarning, match="n_jobs is ignored"):
            engine = UnitEngine(covariates, _SETTINGS, n_jobs=4, backend="sequential")
        assert engine.n_jobs == 1

    def test_failure_does_not_abort_run(self, covariates, units):
        u = units[2]
        broken = UnitInput(unit_index=2, mediator=u.mediator.iloc[5:], proxy=u.proxy)
        batch = [units[0], units[1], broken, units[3]]
        out = UnitEngine(covariates, _SETTINGS, backend="sequential").run(batch)
        assert [r.unit_index for r in out.results] == [0, 1, 2, 3]
        assert out.results[2].mediation.failed
        assert not out.results[3].mediation.failed

    def test_non_numeric_unit_does_not_abort_run(self, covariates, units):
        u = units[1]
        proxy = u.proxy.astype(object)
        proxy.iloc[0, 0] = "NA"
        batch = [units[0], UnitInput(unit_index=1, mediator=u.mediator, proxy=proxy), units[2]]
        out = UnitEngine(covariates, _SETTINGS, backend="sequential").run(batch)
        assert not out.cancelled
        assert [r.unit_index for r in out.results] == [0, 1, 2]
        assert out.results[1].coca.error_kind == "missing_value"
        assert isinstance(out.results[0].mediation, MediationResult)
        assert isinstance(out.results[2].pgc, PgcResult)


class TestCancellation:
    def test_should_stop_returns_completed(self, covariates, units):
        calls = {"n": 0}

        def stop_after_two():
            calls["n"] += 1
            return calls["n"] > 2

        engine = UnitEngine(covariates, _SETTINGS, backend="sequential")
        out = engine.run(units, should_stop=stop_after_two)
        assert out.cancelled
        assert len(out.results) >= 1
        done = {r.unit_index for r in out.results}
        assert done.isdisjoint(out.pending_units)
        assert done | set(out.pending_units) == set(range(6))
        assert list(out.pending_units) == sorted(out.pending_units)

    def test_stop_before_start(self, covariates, units):
        engine = UnitEngine(covariates, _SETTINGS, backend="sequential")
        out = engine.run(units, should_stop=lambda: True)
        assert out.cancelled
        assert out.results == ()
        assert out.pending_units == tuple(range(6))

    def test_keyboard_interrupt_keeps_completed(self, covariates, units, monkeypatch):
        import proxy_mediation.engine as engine_mod

        real_task = engine_mod.run_unit_task

        def interrupting(unit_input, cov, settings):
            if unit_input.unit_index == 3:
                raise KeyboardInterrupt
            return real_task(unit_input, cov, settings)

        monkeypatch.setattr(engine_mod, "run_unit_task", interrupting)
        out = UnitEngine(covariates, _SETTINGS, backend="sequential").run(units)
        assert out.cancelled
        assert [r.unit_index for r in out.results] == [0, 1, 2]
        assert out.pending_units == (3, 4, 5)

    def test_completed_results_match_uninterrupted(self, covariates, units):
        full = run_units(covariates, units, _SETTINGS, backend="sequential")
        polls = {"n": 0}

        def stop_after_two():
            polls["n"] += 1
            return polls["n"] > 2

        partial = run_units(
            covariates, units, _SETTINGS, backend="sequential", should_stop=stop_after_two
        )
        assert partial.cancelled
        by_index = {r.unit_index: r for r in full.results}
        for r in partial.results:
            assert r == by_index[r.unit_index]


class TestEndToEnd:
    def test_single_unit_mediation_recovery(self):
        covariates, mediator, proxy = make_unit_data(n=1500, seed=40)
        out = run_units(
            covariates,
            [UnitInput(unit_index=0, mediator=mediator, proxy=proxy)],
            EstimationSettings(n_bootstrap=100, base_seed=9),
            backend="sequential",
        )
        med = out.results[0].mediation
        assert med.indirect_m0.estimate == pytest.approx(0.12, rel=0.2)
        assert med.indirect_m0.significant
