"""Utilities
---------

Cross-cutting helpers shared by the statistics, the layer pipeline and the
command line tools.  The module groups:

- the warning helper
- numeric helpers for density estimation (normal reference bandwidth, the
  bivariate grid KDE and grid binning)
- dataframe helpers (polars conversion, discrete column detection) and
  config file readers

If you need a generic helper, check this file before adding another bespoke
version elsewhere.
"""

from __future__ import annotations

__all__ = [
    "warn",
    "is_missing",
    "is_discrete",
    "to_pandas",
    "bandwidth_nrd",
    "kde2d",
    "grid_bin",
    "read_json",
    "read_yaml",
]

import json
import math
import warnings
from typing import Sequence, Tuple

import numpy as np
import pandas as pd
import polars as pl
import scipy.stats as sps
import yaml

JSONValue = str | int | float | bool | None | dict[str, "JSONValue"] | list["JSONValue"]


# convenience for warnings that gives a more useful stack frame (fn calling the warning, not warning fn itself)
def warn(msg: str, *args: object) -> None:
    """Emit a warning while pointing at the caller instead of this helper.

    Args:
        msg: Warning message to display.
        *args: Additional positional arguments forwarded to `warnings.warn`.
    """
    # mypy doesn't handle *args well with warn overloads
    warnings.warn(msg, *args, stacklevel=3)  # type: ignore[call-overload]


def is_missing(v: object) -> bool:
    """Scalar missing-value check that tolerates strings and callables."""

    if v is None:
        return True
    if isinstance(v, float) and math.isnan(v):
        return True
    return v is pd.NA or v is pd.NaT


def is_discrete(s: pd.Series) -> bool:
    """Return True for columns that should define groups (strings, categories, bools)."""

    return bool(
        isinstance(s.dtype, pd.CategoricalDtype)
        or pd.api.types.is_object_dtype(s)
        or pd.api.types.is_string_dtype(s)
        or pd.api.types.is_bool_dtype(s)
    )


def to_pandas(data: pd.DataFrame | pl.DataFrame | pl.LazyFrame) -> pd.DataFrame:
    """Accept both pandas and polars frames and return pandas."""

    if isinstance(data, pl.LazyFrame):
        data = data.collect()
    if isinstance(data, pl.DataFrame):
        return data.to_pandas()
    if not isinstance(data, pd.DataFrame):
        raise ValueError(f"Expected a pandas or polars DataFrame, got {type(data).__name__}")
    return data


# --------------------------------------------------------
#          DENSITY ESTIMATION
# --------------------------------------------------------


def bandwidth_nrd(x: Sequence[float]) -> float:
    """Normal reference bandwidth: ``4 * 1.06 * min(sd, IQR / 1.34) * n^(-1/5)``.

    Scaled for use with :func:`kde2d`, which divides bandwidths by four.
    """

    ar = np.asarray(x, dtype=float)
    q1, q3 = np.quantile(ar, [0.25, 0.75])
    iqr_sd = (q3 - q1) / 1.34
    return float(4 * 1.06 * min(np.std(ar, ddof=1), iqr_sd) * len(ar) ** (-1 / 5))


def kde2d(
    x: Sequence[float],
    y: Sequence[float],
    h: Tuple[float, float],
    n: Tuple[int, int],
    lims: Tuple[float, float, float, float],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Bivariate normal kernel density evaluated on a regular grid.

    Args:
        x, y: Coordinates of the observations.
        h: Bandwidths along x and y (normal reference scale, divided by four here).
        n: Number of grid points along x and y.
        lims: ``(xmin, xmax, ymin, ymax)`` of the grid.

    Returns:
        Tuple ``(gx, gy, z)`` where ``z[i, j]`` is the density at ``(gx[i], gy[j])``.
    """

    xa, ya = np.asarray(x, dtype=float), np.asarray(y, dtype=float)
    hx, hy = h[0] / 4, h[1] / 4
    gx = np.linspace(lims[0], lims[1], int(n[0]))
    gy = np.linspace(lims[2], lims[3], int(n[1]))
    ax = sps.norm.pdf((gx[:, None] - xa[None, :]) / hx)
    ay = sps.norm.pdf((gy[:, None] - ya[None, :]) / hy)
    z = ax @ ay.T / (len(xa) * hx * hy)
    return gx, gy, z


def grid_bin(v: Sequence[float], grid: np.ndarray) -> np.ndarray:
    """Index of the grid interval each value falls in.

    Intervals are open on the left with the lowest edge included, and values
    outside the grid clamp to the first or last interval.
    """

    idx = np.searchsorted(grid, np.asarray(v, dtype=float), side="left") - 1
    return np.clip(idx, 0, max(len(grid) - 2, 0))


# --------------------------------------------------------
#          FILES
# --------------------------------------------------------


def read_json(fname: str) -> JSONValue:
    """Load JSON file with extension sanity checks."""

    if ".json" not in fname:
        raise FileNotFoundError(f"Expecting {fname} to have a .json extension")
    with open(fname, "r") as jf:
        meta = json.load(jf)
    return meta


def read_yaml(fname: str) -> JSONValue:
    """Load YAML file with extension sanity checks."""

    if ".yaml" not in fname and ".yml" not in fname:
        raise FileNotFoundError(f"Expecting {fname} to have a .yaml extension")
    with open(fname) as stream:
        return yaml.safe_load(stream)
