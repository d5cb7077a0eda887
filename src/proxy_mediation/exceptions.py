"""Error taxonomy for per-unit estimation.

Every error raised while processing a single measurement unit derives
from :class:`UnitError` and carries a short machine-readable ``kind``
string.  The unit task converts these into
:class:`~proxy_mediation._results.FitFailure` records so that one
unit's failure never aborts the run.

Scope of each error:

* :class:`MissingSubjectError`, :class:`DuplicateSubjectError`,
  :class:`MissingValueError` — raised at assembly time; fatal to the
  whole unit.
* :class:`SingularFitError` — degenerate regression design; fatal to
  one estimator call (or, inside a bootstrap resample, to that
  resample only).
* :class:`BootstrapInstabilityError` — undefined or unreliable ratio
  estimate.  Non-fatal when a partial result is attached: the point
  estimate is kept and the interval withheld.
* :class:`UnitTimeoutError` — the unit exceeded its time budget;
  fatal to that unit only.

:class:`EmptyUnitSetError` is the single whole-run error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from collections.abc import Iterable


class UnitError(Exception):
    """Base class for errors scoped to a single unit or estimator."""

    kind: ClassVar[str] = "unit_error"

    def __init__(self, message: str, *, unit_index: int | None = None) -> None:
        super().__init__(message)
        self.unit_index = unit_index


class AssemblyError(UnitError):
    """Unit inputs could not be joined into a dataset."""

    kind: ClassVar[str] = "assembly"


class MissingSubjectError(AssemblyError):
    """Subject-id sets of covariates, mediator and proxy differ.

    The symmetric differences are kept on the instance so callers can
    see exactly which subjects failed to join.
    """

    kind: ClassVar[str] = "missing_subject"

    def __init__(
        self,
        *,
        missing_from_mediator: Iterable[Any] = (),
        missing_from_proxy: Iterable[Any] = (),
        unknown_in_mediator: Iterable[Any] = (),
        unknown_in_proxy: Iterable[Any] = (),
        unit_index: int | None = None,
    ) -> None:
        self.missing_from_mediator = sorted(missing_from_mediator, key=str)
        self.missing_from_proxy = sorted(missing_from_proxy, key=str)
        self.unknown_in_mediator = sorted(unknown_in_mediator, key=str)
        self.unknown_in_proxy = sorted(unknown_in_proxy, key=str)
        parts = []
        for label, ids in (
            ("missing from mediator", self.missing_from_mediator),
            ("missing from proxy", self.missing_from_proxy),
            ("not in covariates (mediator)", self.unknown_in_mediator),
            ("not in covariates (proxy)", self.unknown_in_proxy),
        ):
            if ids:
                parts.append(f"{len(ids)} {label} (e.g. {_preview(ids)})")
        super().__init__(
            "Subject ids do not match across inputs: " + "; ".join(parts),
            unit_index=unit_index,
        )


class DuplicateSubjectError(AssemblyError):
    """A subject id occurs more than once in a unit input."""

    kind: ClassVar[str] = "duplicate_subject"


class MissingValueError(AssemblyError):
    """A joined value is NaN or infinite."""

    kind: ClassVar[str] = "missing_value"


class SingularFitError(UnitError):
    """A regression design matrix is rank-deficient."""

    kind: ClassVar[str] = "singular_fit"


class BootstrapInstabilityError(UnitError):
    """A ratio estimate is undefined or its interval is unreliable.

    ``partial`` holds the estimator result with point estimates but no
    interval when one could still be computed; it is ``None`` when the
    point estimate itself is undefined.
    """

    kind: ClassVar[str] = "bootstrap_instability"

    def __init__(
        self,
        message: str,
        *,
        partial: Any = None,
        unit_index: int | None = None,
    ) -> None:
        super().__init__(message, unit_index=unit_index)
        self.partial = partial


class UnitTimeoutError(UnitError, TimeoutError):
    """A unit task exceeded its time budget."""

    kind: ClassVar[str] = "timeout"


class EmptyUnitSetError(ValueError):
    """The run was given no units to process."""


def _preview(ids: list[Any], limit: int = 3) -> str:
    shown = ", ".join(repr(i) for i in ids[:limit])
    return shown + (", ..." if len(ids) > limit else "")


__all__ = [
    "AssemblyError",
    "BootstrapInstabilityError",
    "DuplicateSubjectError",
    "EmptyUnitSetError",
    "MissingSubjectError",
    "MissingValueError",
    "SingularFitError",
    "UnitError",
    "UnitTimeoutError",
]
