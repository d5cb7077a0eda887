"""Shared type aliases for the proxy_mediation package."""

from collections.abc import Callable

import numpy as np

from .assembly import UnitDataset

# A bootstrap statistic: dataset in, fixed-length vector of named
# estimates out (names are supplied alongside the callable).
StatisticFn = Callable[[UnitDataset], np.ndarray]
