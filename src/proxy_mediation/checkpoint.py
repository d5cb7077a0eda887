"""JSON checkpoint of completed unit results.

A checkpoint is a single JSON document::

    {
      "format_version": 1,
      "units": {"<unit_index>": UnitResult.to_dict(), ...}
    }

Saving after a cancelled run and loading later lets a caller skip the
units already done: re-running only ``RunOutput.pending_units`` gives
the same results as an uninterrupted run, because every unit's random
streams depend only on ``(base_seed, unit_index)``.

Non-finite floats never reach the file; the result objects store an
unavailable value as ``None`` (JSON ``null``).
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path

from ._results import UnitResult

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def save_unit_results(
    results: Iterable[UnitResult],
    path: str | os.PathLike[str],
) -> Path:
    """Write *results* to *path* as a checkpoint.

    The file is written to a temporary sibling first and then moved
    into place, so an interrupted save never leaves a truncated
    checkpoint behind.

    Raises:
        ValueError: If two results share a unit index.
    """
    units: dict[str, dict] = {}
    for res in sorted(results, key=lambda r: r.unit_index):
        key = str(res.unit_index)
        if key in units:
            raise ValueError(f"Duplicate unit index {res.unit_index} in results.")
        units[key] = res.to_dict()

    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    payload = {"format_version": FORMAT_VERSION, "units": units}
    tmp.write_text(json.dumps(payload, allow_nan=False, indent=1), encoding="utf-8")
    os.replace(tmp, path)
    logger.debug("Saved %d unit result(s) to %s", len(units), path)
    return path


def load_unit_results(path: str | os.PathLike[str]) -> tuple[UnitResult, ...]:
    """Read a checkpoint written by :func:`save_unit_results`.

    Returns:
        The unit results, sorted by unit index.

    Raises:
        ValueError: If the file is not a checkpoint of a supported
            format version.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict) or "units" not in data:
        raise ValueError(f"{path} is not a unit-result checkpoint.")
    version = data.get("format_version")
    if version != FORMAT_VERSION:
        raise ValueError(
            f"Unsupported checkpoint format_version {version!r} "
            f"(expected {FORMAT_VERSION})."
        )
    results = [UnitResult.from_dict(d) for d in data["units"].values()]
    return tuple(sorted(results, key=lambda r: r.unit_index))


__all__ = [
    "FORMAT_VERSION",
    "load_unit_results",
    "save_unit_results",
]
