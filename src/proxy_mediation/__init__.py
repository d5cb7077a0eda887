"""proxy_mediation — Moderated mediation with proxy-based confounding adjustment.

Runs three fixed causal-estimation designs on every measurement unit
(e.g. every genomic locus) of a study that shares one set of subject
covariates: a product-of-coefficients moderated-mediation model, the
control-outcome calibration (COCA) ratio, and two-stage proximal
g-computation (PGC).  Each unit gets subject-level percentile bootstrap
intervals from its own deterministically seeded random streams, units
run in parallel through joblib, and per-unit failures are recorded
instead of aborting the run.  Aggregation reports per-term rejection
rates under a fixed significance policy.

Public API:
    .. autosummary::
        run_units
        run_unit_task
        UnitEngine
        RunOutput
        assemble_unit_dataset
        iter_unit_inputs
        validate_covariates
        UnitInput
        UnitDataset
        EstimationSettings
        results_table
        rejection_rates
        nominal_rejection_band
        export_table
        AggregateReport
        RejectionRate
        save_unit_results
        load_unit_results
        get_backend
        set_backend
        TermEstimate
        MediationResult
        CocaResult
        PgcResult
        FitFailure
        UnitResult
"""

from ._config import EstimationSettings, get_backend, set_backend
from ._results import (
    CocaResult,
    FitFailure,
    MediationResult,
    PgcResult,
    TermEstimate,
    UnitResult,
)
from .aggregate import (
    AggregateReport,
    RejectionRate,
    export_table,
    nominal_rejection_band,
    rejection_rates,
    results_table,
)
from .assembly import (
    UnitDataset,
    UnitInput,
    assemble_unit_dataset,
    iter_unit_inputs,
    validate_covariates,
)
from .checkpoint import load_unit_results, save_unit_results
from .engine import RunOutput, UnitEngine, run_unit_task, run_units
from .exceptions import (
    BootstrapInstabilityError,
    DuplicateSubjectError,
    EmptyUnitSetError,
    MissingSubjectError,
    MissingValueError,
    SingularFitError,
    UnitError,
    UnitTimeoutError,
)

__all__ = [
    "EstimationSettings",
    "get_backend",
    "set_backend",
    "UnitInput",
    "UnitDataset",
    "assemble_unit_dataset",
    "iter_unit_inputs",
    "validate_covariates",
    "UnitEngine",
    "RunOutput",
    "run_unit_task",
    "run_units",
    "results_table",
    "rejection_rates",
    "nominal_rejection_band",
    "export_table",
    "AggregateReport",
    "RejectionRate",
    "save_unit_results",
    "load_unit_results",
    "TermEstimate",
    "MediationResult",
    "CocaResult",
    "PgcResult",
    "FitFailure",
    "UnitResult",
    "UnitError",
    "MissingSubjectError",
    "DuplicateSubjectError",
    "MissingValueError",
    "SingularFitError",
    "BootstrapInstabilityError",
    "UnitTimeoutError",
    "EmptyUnitSetError",
]

__version__ = "0.1.0"
