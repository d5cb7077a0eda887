"""Subject-keyed table normalisation at the input boundary.

Every table the package accepts (the covariates, each unit's proxy
sub-table, the subjects × units mediator matrix) is keyed by subject
id.  Callers may carry that id in the pandas index or in a
``subject_id`` column; Polars frames have no index, so for them the
column is the only option.  :func:`subject_indexed` accepts any of
these and returns a pandas ``DataFrame`` whose index is the subject id,
which is the only shape the assembler works with.

Polars is an optional extra.  Without it, only pandas frames are
accepted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _POLARS_FRAMES: tuple[type, ...] = (pl.DataFrame, pl.LazyFrame)
except ImportError:
    _POLARS_FRAMES = ()

SUBJECT_ID = "subject_id"


def to_pandas_frame(obj: DataFrameLike, *, name: str) -> pd.DataFrame:
    """Return *obj* as a pandas ``DataFrame``; a LazyFrame is collected.

    Raises:
        TypeError: If *obj* is neither a pandas nor a Polars frame.
    """
    if isinstance(obj, pd.DataFrame):
        return obj
    if _POLARS_FRAMES and isinstance(obj, _POLARS_FRAMES):
        frame = obj.collect() if isinstance(obj, pl.LazyFrame) else obj
        return frame.to_pandas()
    accepted = "a pandas or Polars DataFrame" if _POLARS_FRAMES else "a pandas DataFrame"
    raise TypeError(f"'{name}' must be {accepted}, got {type(obj).__name__}.")


def subject_indexed(obj: DataFrameLike, *, name: str) -> pd.DataFrame:
    """Return *obj* as a pandas frame indexed by subject id.

    A ``subject_id`` column is moved into the index.  A frame without
    one is taken to be indexed by subject id already; its index is
    renamed to ``subject_id``.

    Args:
        obj: A pandas or Polars DataFrame (or LazyFrame).
        name: Label used in error messages (e.g. ``"covariates"``).

    Raises:
        TypeError: If *obj* is not a recognised frame type.
    """
    df = to_pandas_frame(obj, name=name)
    if SUBJECT_ID in df.columns:
        return df.set_index(SUBJECT_ID)
    if df.index.name == SUBJECT_ID:
        return df
    return df.rename_axis(SUBJECT_ID)


__all__ = ["SUBJECT_ID", "DataFrameLike", "subject_indexed", "to_pandas_frame"]
