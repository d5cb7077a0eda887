"""Unit dataset assembly.

A **unit** is one measurement feature (e.g. one genomic locus).  Every
unit shares the same subject-level covariates — exposure, binary
moderator, outcome — and contributes its own mediator column and its
own proxy sub-table (one or more probe readings per subject).

:func:`assemble_unit_dataset` reduces the proxy sub-table to a single
scalar per subject (row mean across probes) and joins it with the
covariates and the mediator on subject id.  The join is strict: the
three subject-id sets must be identical.  Any mismatch raises
:class:`~proxy_mediation.exceptions.MissingSubjectError` listing the
offending ids rather than silently dropping rows, so a unit's dataset
always has exactly *n* rows.

Rows are sorted by subject id.  Downstream computations — in
particular the bootstrap, which draws subject indices — therefore
depend only on the *content* of the inputs, never on the row order in
which the external generator happened to emit them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from ._compat import SUBJECT_ID, DataFrameLike, subject_indexed, to_pandas_frame
from .exceptions import DuplicateSubjectError, MissingSubjectError, MissingValueError

logger = logging.getLogger(__name__)

COVARIATE_COLUMNS: tuple[str, ...] = ("subject_id", "exposure", "moderator", "outcome")

_ARRAY_FIELDS: tuple[str, ...] = (
    "subject_id",
    "exposure",
    "moderator",
    "outcome",
    "mediator",
    "proxy",
)


# ------------------------------------------------------------------ #
# Records
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class UnitInput:
    """Raw per-unit data as supplied by the external generator.

    Attributes:
        unit_index: Integer key of the unit; also seeds its random
            streams.
        mediator: Mediator values indexed by subject id.
        proxy: Proxy readings indexed by subject id, one column per
            probe (at least one).
        label: Optional human-readable unit name.
    """

    unit_index: int
    mediator: pd.Series
    proxy: pd.DataFrame
    label: str | None = None


@dataclass(frozen=True, eq=False)
class UnitDataset:
    """Immutable joined dataset for one unit.

    All array fields have the same length *n* and are read-only.  Rows
    are ordered by subject id.
    """

    unit_index: int
    subject_id: np.ndarray
    exposure: np.ndarray
    moderator: np.ndarray
    outcome: np.ndarray
    mediator: np.ndarray
    proxy: np.ndarray
    n_proxy_columns: int = field(default=1)

    def __post_init__(self) -> None:
        lengths = set()
        for name in _ARRAY_FIELDS:
            arr = np.asarray(getattr(self, name))
            if name != "subject_id":
                arr = arr.astype(float, copy=False)
            if arr.ndim != 1:
                raise ValueError(f"UnitDataset.{name} must be 1-D, got shape {arr.shape}.")
            if arr.flags.writeable:
                arr = arr.copy()
                arr.setflags(write=False)
            object.__setattr__(self, name, arr)
            lengths.add(arr.shape[0])
        if len(lengths) != 1:
            raise ValueError(f"UnitDataset arrays have unequal lengths: {sorted(lengths)}.")

    @property
    def n(self) -> int:
        """Number of subjects."""
        return int(self.exposure.shape[0])

    def take(self, indices: np.ndarray) -> UnitDataset:
        """Return the dataset restricted to (or resampled at) *indices*.

        All variables of a subject move together, so within-subject
        correlation is preserved under resampling.
        """
        return UnitDataset(
            unit_index=self.unit_index,
            subject_id=self.subject_id[indices],
            exposure=self.exposure[indices],
            moderator=self.moderator[indices],
            outcome=self.outcome[indices],
            mediator=self.mediator[indices],
            proxy=self.proxy[indices],
            n_proxy_columns=self.n_proxy_columns,
        )

    def to_frame(self) -> pd.DataFrame:
        """Return the dataset as a DataFrame with one row per subject."""
        return pd.DataFrame({name: getattr(self, name) for name in _ARRAY_FIELDS})


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


def validate_covariates(covariates: DataFrameLike) -> pd.DataFrame:
    """Check the shared covariate table and return it in canonical form.

    The covariates are a run-wide input, so problems here are caller
    errors (``ValueError``) rather than per-unit failures.

    Args:
        covariates: Table with columns ``exposure``, ``moderator`` and
            ``outcome`` and subject ids in a ``subject_id`` column or
            index.  The canonical form returned here is accepted.

    Returns:
        A copy indexed by ``subject_id`` (sorted), with float
        ``exposure`` / ``outcome`` and integer ``moderator`` columns.

    Raises:
        ValueError: On missing columns, an empty table, duplicated
            subject ids, a non-positive exposure, a non-binary
            moderator, or non-finite values.
    """
    df = to_pandas_frame(covariates, name="covariates")
    missing = [
        c
        for c in COVARIATE_COLUMNS
        if c not in df.columns and not (c == SUBJECT_ID and df.index.name == SUBJECT_ID)
    ]
    if missing:
        raise ValueError(f"covariates is missing required column(s): {missing}.")
    if len(df) == 0:
        raise ValueError("covariates must contain at least one subject.")

    df = subject_indexed(df, name="covariates")
    dupes = df.index[df.index.duplicated()]
    if len(dupes) > 0:
        raise ValueError(
            f"covariates has {len(dupes)} duplicated subject_id value(s), "
            f"e.g. {dupes[0]!r}."
        )

    out = df.loc[:, list(COVARIATE_COLUMNS[1:])].sort_index()
    for col in ("exposure", "moderator", "outcome"):
        try:
            out[col] = pd.to_numeric(out[col]).astype(float)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"covariates column '{col}' must be numeric.") from exc
        if not np.isfinite(out[col].to_numpy()).all():
            raise ValueError(f"covariates column '{col}' contains NaN or inf.")

    if (out["exposure"] <= 0).any():
        raise ValueError(
            f"exposure must be > 0, found minimum {out['exposure'].min():g}."
        )
    levels = set(np.unique(out["moderator"].to_numpy()))
    if not levels <= {0.0, 1.0}:
        raise ValueError(
            f"moderator must be binary (0/1), found levels {sorted(levels)}."
        )
    out["moderator"] = out["moderator"].astype(int)
    return out


# ------------------------------------------------------------------ #
# Assembly
# ------------------------------------------------------------------ #


def reduce_proxy(proxy: DataFrameLike, *, unit_index: int | None = None) -> pd.Series:
    """Collapse a proxy sub-table to one value per subject (row mean).

    A ``subject_id`` column, when present, is moved into the index.
    NaN readings are not skipped: a subject with any missing probe gets
    a NaN mean, which assembly then reports as a missing value.

    Raises:
        MissingValueError: If the table has no probe columns or holds a
            value that is not numeric.
    """
    df = subject_indexed(proxy, name="proxy")
    if df.shape[1] == 0:
        raise MissingValueError("proxy has no probe columns.", unit_index=unit_index)
    try:
        values = df.astype(float)
    except (TypeError, ValueError) as exc:
        raise MissingValueError(
            f"proxy holds a non-numeric value: {exc}", unit_index=unit_index
        ) from exc
    return values.mean(axis=1, skipna=False)


def assemble_unit_dataset(
    covariates: DataFrameLike,
    mediator: pd.Series,
    proxy: DataFrameLike,
    *,
    unit_index: int = 0,
) -> UnitDataset:
    """Join covariates, one mediator column and one proxy table.

    Args:
        covariates: Shared covariate table (see
            :func:`validate_covariates`).
        mediator: Mediator values indexed by subject id.
        proxy: Proxy readings indexed by subject id (or with a
            ``subject_id`` column), one column per probe.
        unit_index: Unit key recorded on the dataset and on errors.

    Returns:
        A :class:`UnitDataset` with exactly one row per covariate
        subject, sorted by subject id.

    Raises:
        MissingSubjectError: If the subject-id sets differ.
        DuplicateSubjectError: If the mediator or proxy repeats an id.
        MissingValueError: If any joined value is NaN, infinite or not
            numeric, or the proxy has no probe columns.
    """
    cov = validate_covariates(covariates)
    if not isinstance(mediator, pd.Series):
        raise TypeError(
            f"'mediator' must be a pandas Series indexed by subject id, "
            f"got {type(mediator).__name__}."
        )
    proxy_df = subject_indexed(proxy, name="proxy")
    if proxy_df.shape[1] == 0:
        raise MissingValueError("proxy has no probe columns.", unit_index=unit_index)

    for label, index in (("mediator", mediator.index), ("proxy", proxy_df.index)):
        if index.has_duplicates:
            dup = index[index.duplicated()][0]
            raise DuplicateSubjectError(
                f"{label} repeats subject id {dup!r}.", unit_index=unit_index
            )

    # ---- Strict join validation -----------------------------------
    #
    # Enumerate the symmetric difference of every pair of id sets
    # against the covariates.  Anything non-empty is a hard error.
    cov_ids = set(cov.index)
    med_ids = set(mediator.index)
    prox_ids = set(proxy_df.index)
    if not (cov_ids == med_ids == prox_ids):
        raise MissingSubjectError(
            missing_from_mediator=cov_ids - med_ids,
            missing_from_proxy=cov_ids - prox_ids,
            unknown_in_mediator=med_ids - cov_ids,
            unknown_in_proxy=prox_ids - cov_ids,
            unit_index=unit_index,
        )

    proxy_mean = reduce_proxy(proxy_df, unit_index=unit_index).reindex(cov.index)
    try:
        mediator_vals = pd.to_numeric(mediator.reindex(cov.index)).astype(float)
    except (TypeError, ValueError) as exc:
        raise MissingValueError(
            f"mediator holds a non-numeric value: {exc}", unit_index=unit_index
        ) from exc

    for label, values in (("mediator", mediator_vals), ("proxy", proxy_mean)):
        bad = ~np.isfinite(values.to_numpy())
        if bad.any():
            raise MissingValueError(
                f"{label} has {int(bad.sum())} NaN/inf value(s) "
                f"(e.g. subject {values.index[bad][0]!r}).",
                unit_index=unit_index,
            )

    logger.debug(
        "Assembled unit %d: n=%d subjects, %d proxy column(s)",
        unit_index,
        len(cov),
        proxy_df.shape[1],
    )

    return UnitDataset(
        unit_index=unit_index,
        subject_id=cov.index.to_numpy(),
        exposure=cov["exposure"].to_numpy(),
        moderator=cov["moderator"].to_numpy(),
        outcome=cov["outcome"].to_numpy(),
        mediator=mediator_vals.to_numpy(),
        proxy=proxy_mean.to_numpy(),
        n_proxy_columns=int(proxy_df.shape[1]),
    )


def iter_unit_inputs(
    mediators: DataFrameLike,
    proxies: Mapping[object, DataFrameLike],
) -> Iterator[UnitInput]:
    """Yield one :class:`UnitInput` per mediator column.

    Args:
        mediators: Subjects × units table indexed by subject id.  Unit
            indices are the column positions; the column labels become
            :attr:`UnitInput.label`.
        proxies: Mapping from mediator column label to that unit's proxy
            sub-table.

    Raises:
        ValueError: If a mediator column has no proxy table.
    """
    med = subject_indexed(mediators, name="mediators")
    absent = [col for col in med.columns if col not in proxies]
    if absent:
        raise ValueError(
            f"{len(absent)} mediator column(s) have no proxy table, "
            f"e.g. {absent[0]!r}."
        )
    for position, col in enumerate(med.columns):
        yield UnitInput(
            unit_index=position,
            mediator=med[col],
            proxy=subject_indexed(proxies[col], name=f"proxies[{col!r}]"),
            label=str(col),
        )


__all__ = [
    "COVARIATE_COLUMNS",
    "UnitDataset",
    "UnitInput",
    "assemble_unit_dataset",
    "iter_unit_inputs",
    "reduce_proxy",
    "validate_covariates",
]
