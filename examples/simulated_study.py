"""
Simulated multi-locus study
Shared subject covariates, one mediator and one proxy table per locus

Demonstrates:
- ``iter_unit_inputs`` — building unit inputs from a subjects × loci table
- ``run_units`` — all three estimators per locus, in parallel
- ``results_table`` / ``rejection_rates`` — long-format results and the
  per-term rejection rates with their nominal binomial band
- ``save_unit_results`` / ``load_unit_results`` — resuming a cancelled run
"""

import tempfile
from pathlib import Path

import numpy as np
import pandas as pd

from proxy_mediation import (
    EstimationSettings,
    export_table,
    iter_unit_inputs,
    load_unit_results,
    rejection_rates,
    results_table,
    run_units,
    save_unit_results,
)

# ============================================================================
# Simulate data
# ============================================================================

rng = np.random.default_rng(2024)
n_subjects, n_loci = 150, 40
subject_id = [f"S{i:04d}" for i in range(n_subjects)]
index = pd.Index(subject_id, name="subject_id")

exposure = rng.uniform(0.5, 5.5, n_subjects)
moderator = rng.integers(0, 2, n_subjects)
outcome = rng.normal(0.0, 1.0, n_subjects)
covariates = pd.DataFrame(
    {
        "subject_id": subject_id,
        "exposure": exposure,
        "moderator": moderator,
        "outcome": outcome,
    }
)

# The first five loci carry a real exposure → mediator path; the rest
# are null.
mediators = pd.DataFrame(index=index)
proxies = {}
for j in range(n_loci):
    name = f"locus{j:03d}"
    a1 = 0.3 if j < 5 else 0.0
    mediators[name] = a1 * exposure + rng.normal(0.0, 1.0, n_subjects)
    proxies[name] = pd.DataFrame(
        {
            f"probe{k}": 0.8 * outcome + rng.normal(0.0, 0.5, n_subjects)
            for k in range(3)
        },
        index=index,
    )

units = list(iter_unit_inputs(mediators, proxies))
settings = EstimationSettings(n_bootstrap=200, base_seed=7)

# ============================================================================
# Full run
# ============================================================================

out = run_units(covariates, units, settings, n_jobs=-1)
table = results_table(out.results)
print(
    table.loc[table["term"] == "a_exposure", ["label", "estimate", "p_value", "significant"]]
    .head(8)
    .to_string(index=False)
)

report = rejection_rates(out, alpha=0.05)
print()
print(report.to_frame().to_string(index=False))
print()
print("Failures by method:", report.failures_by_method())

# ============================================================================
# Cancel part-way, checkpoint, resume
# ============================================================================

polls = {"n": 0}


def stop_after_ten():
    polls["n"] += 1
    return polls["n"] >= 10


first = run_units(covariates, units, settings, backend="sequential", should_stop=stop_after_ten)
print(f"\nCancelled after {len(first)} of {len(units)} loci.")

with tempfile.TemporaryDirectory() as tmp:
    ckpt = save_unit_results(first.results, Path(tmp) / "run.json")
    done = load_unit_results(ckpt)
    remaining = [u for u in units if u.unit_index in first.pending_units]
    second = run_units(covariates, remaining, settings)
    merged = sorted([*done, *second.results], key=lambda r: r.unit_index)
    assert tuple(merged) == out.results
    print("Resumed run matches the uninterrupted run.")

    export_table(table, Path(tmp) / "results.csv")
