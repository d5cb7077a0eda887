"""Tests for result objects and the JSON checkpoint."""

from __future__ import annotations

import json

import pytest

from proxy_mediation._results import (
    METHOD_TERMS,
    TERM_ROLES,
    CocaResult,
    FitFailure,
    MediationResult,
    PgcResult,
    TermEstimate,
    UnitResult,
    estimator_result_from_dict,
)
from proxy_mediation.checkpoint import (
    FORMAT_VERSION,
    load_unit_results,
    save_unit_results,
)


def _term(estimate=0.5, lo=0.1, hi=0.9, p=None, role="effect", method="bootstrap"):
    return TermEstimate(
        estimate=estimate,
        std_error=0.2,
        p_value=p,
        ci_lower=lo,
        ci_upper=hi,
        ci_method=method,
        role=role,
        n_finite=100 if method == "bootstrap" else None,
    )


def _unit(idx, *, coca_failed=False):
    mediation = MediationResult(
        unit_index=idx,
        a_exposure=_term(0.3, 0.2, 0.4, p=0.001, role="path", method="analytic"),
        indirect_m0=_term(),
        n_bootstrap=100,
    )
    if coca_failed:
        coca = FitFailure("coca", idx, "bootstrap_instability", "outcome coefficient is zero")
    else:
        coca = CocaResult(
            unit_index=idx,
            psi=_term(-0.4, None, None),
            ci_available=False,
            instability="only 30% finite",
        )
    pgc = PgcResult(unit_index=idx, effect_m0=_term(0.0, -0.1, 0.1), mean_shift=0.0)
    return UnitResult(unit_index=idx, mediation=mediation, coca=coca, pgc=pgc, label=f"u{idx}")


class TestTermEstimate:
    def test_significant_uses_interval(self):
        assert _term(lo=0.1, hi=0.9).significant is True
        assert _term(lo=-0.9, hi=-0.1).significant is True
        assert _term(lo=-0.1, hi=0.1).significant is False

    def test_no_interval_means_unknown(self):
        term = _term(lo=None, hi=None)
        assert not term.ci_available
        assert term.significant is None

    def test_one_sided_interval_means_unknown(self):
        assert _term(lo=0.2, hi=None).significant is None
        assert _term(lo=None, hi=0.2).significant is None

    def test_without_interval(self):
        stripped = _term().without_interval()
        assert stripped.ci_lower is None and stripped.ci_upper is None
        assert stripped.estimate == 0.5

    def test_dict_access(self):
        term = _term()
        assert term["estimate"] == 0.5
        assert term.get("missing", 7) == 7
        assert "role" in term
        with pytest.raises(KeyError):
            term["missing"]


class TestEstimatorResults:
    def test_terms_in_canonical_order(self):
        res = _unit(0).mediation
        assert tuple(res.terms()) == MediationResult.TERMS
        assert res.terms()["b_mediator"] is None

    def test_failure_terms(self):
        failure = FitFailure("pgc", 3, "singular_fit")
        assert failure.failed
        assert tuple(failure.terms()) == METHOD_TERMS["pgc"]
        assert all(v is None for v in failure.terms().values())

    def test_term_roles_cover_every_term(self):
        for method, terms in METHOD_TERMS.items():
            assert tuple(TERM_ROLES[method]) == terms

    def test_to_dict_is_json_serialisable(self):
        payload = _unit(2).to_dict()
        text = json.dumps(payload)
        assert json.loads(text)["coca"]["kind"] == "coca"

    @pytest.mark.parametrize("method", ["mediation", "coca", "pgc"])
    def test_from_dict_inverts_to_dict(self, method):
        res = getattr(_unit(1), method)
        assert estimator_result_from_dict(res.to_dict()) == res

    def test_failure_from_dict(self):
        failure = FitFailure("coca", 4, "timeout", "too slow")
        assert estimator_result_from_dict(failure.to_dict()) == failure

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown estimator result kind"):
            estimator_result_from_dict({"kind": "ivreg"})

    def test_frozen(self):
        with pytest.raises(AttributeError):
            _unit(0).mediation.n_bootstrap = 5  # type: ignore[misc]


class TestCheckpoint:
    def test_save_and_load(self, tmp_path):
        results = [_unit(3), _unit(0, coca_failed=True), _unit(1)]
        path = save_unit_results(results, tmp_path / "run.json")
        loaded = load_unit_results(path)
        assert [r.unit_index for r in loaded] == [0, 1, 3]
        assert loaded[0] == results[1]
        assert loaded[0].label == "u0"
        assert loaded[0].coca.failed
        assert loaded[2].coca.instability == "only 30% finite"

    def test_file_layout(self, tmp_path):
        path = save_unit_results([_unit(5)], tmp_path / "run.json")
        data = json.loads(path.read_text())
        assert data["format_version"] == FORMAT_VERSION
        assert list(data["units"]) == ["5"]
        assert not (tmp_path / "run.json.tmp").exists()

    def test_duplicate_index_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Duplicate unit index"):
            save_unit_results([_unit(1), _unit(1)], tmp_path / "run.json")

    def test_rejects_other_versions(self, tmp_path):
        path = tmp_path / "old.json"
        path.write_text(json.dumps({"format_version": 99, "units": {}}))
        with pytest.raises(ValueError, match="format_version"):
            load_unit_results(path)

    def test_rejects_non_checkpoint(self, tmp_path):
        path = tmp_path / "other.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(ValueError, match="not a unit-result checkpoint"):
            load_unit_results(path)
