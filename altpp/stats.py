"""Statistic Implementations
--------------------------

All registry-backed statistics.  Each compute function receives the mapped
data of one panel (or one group within a panel), the trained scales and the
layer parameters, and returns a dataframe.  The module covers:

- density based selection of labels and points (`dens2d_labels`,
  `dens2d_filter`, `dens2d_filter_g`) using a bivariate grid KDE
- observation counts per panel and per group with named anchor positions
  (`panel_counts`, `group_counts`, `compute_npcx`, `compute_npcy`)
- the public `stat_*` layer constructors wrapping them
"""

from __future__ import annotations

__all__ = [
    "compute_npcx",
    "compute_npcy",
    "resolve_keep_these",
    "dens2d_keep",
    "dens2d_labels",
    "dens2d_filter",
    "panel_counts",
    "group_counts",
    "stat_dens2d_labels",
    "stat_dens2d_filter",
    "stat_dens2d_filter_g",
    "stat_panel_counts",
    "stat_group_counts",
]

import logging
import math
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from altpp import utils
from altpp.layer import Layer, Scales, make_layer, stk_stat

logger = logging.getLogger(__name__)

KeepThese = bool | str | int | Sequence[Any] | np.ndarray | pd.Series | Callable[[pd.Series], Any] | None
LabelFill = str | None | Callable[[pd.Series], Any]
Anchor = str | float | Sequence[str | float]

npc_margin = 0.05


def _first_panel(data: pd.DataFrame) -> bool:
    """Notices are only shown while computing the first panel."""
    return "PANEL" not in data.columns or len(data) == 0 or int(data["PANEL"].iloc[0]) == 1


# --------------------------------------------------------
#          DENSITY BASED SELECTION
# --------------------------------------------------------


def _check_keep_params(keep_fraction: float, keep_number: float) -> None:
    if utils.is_missing(keep_fraction) or keep_fraction < 0 or keep_fraction > 1:
        raise ValueError(f"Out of range or missing value for 'keep_fraction': {keep_fraction}")
    if utils.is_missing(keep_number) or keep_number < 0:
        raise ValueError(f"Out of range or missing value for 'keep_number': {keep_number}")


def _check_label_fill(label_fill: Any) -> LabelFill:
    """Normalise ``label_fill`` to a string, None (missing) or a callable."""

    if isinstance(label_fill, (list, tuple, np.ndarray, pd.Series)):
        if len(label_fill) != 1:
            raise ValueError(f"Length for 'label_fill' is not 1: {label_fill}")
        label_fill = list(label_fill)[0]
    if callable(label_fill) or isinstance(label_fill, str):
        return label_fill
    if utils.is_missing(label_fill):
        return None
    raise ValueError(f"'label_fill' is {type(label_fill).__name__} instead of 'str' or a function.")


def resolve_keep_these(keep_these: KeepThese, labels: pd.Series) -> np.ndarray:
    """Turn the ``keep_these`` selector into a boolean mask over ``labels``.

    Accepted shapes:

    - a function, called with the labels; its result is resolved again
    - a string or strings, matched against the labels
    - integers, taken as 0-based row positions
    - booleans, taken as a mask (a single value applies to every row)

    Missing entries in a boolean mask count as False, with a warning.
    """

    n = len(labels)
    if callable(keep_these):
        keep_these = keep_these(labels)
    if keep_these is None or isinstance(keep_these, (bool, np.bool_)):
        return np.full(n, bool(keep_these))
    if isinstance(keep_these, (str, int, np.integer)):
        keep_these = [keep_these]

    vals = list(keep_these)
    present = [v for v in vals if not utils.is_missing(v)]
    if len(vals) == 0:
        return np.zeros(n, dtype=bool)

    if all(isinstance(v, (bool, np.bool_)) for v in present):
        if len(present) < len(vals):
            utils.warn("Discarding missing values in keep_these")
        mask = np.array([bool(v) if not utils.is_missing(v) else False for v in vals], dtype=bool)
        if len(mask) == 1:
            return np.repeat(mask, n)
        if len(mask) != n:
            raise ValueError(f"Logical 'keep_these' has length {len(mask)} but data has {n} rows")
        return mask

    if all(isinstance(v, str) for v in present):
        return labels.isin(present).to_numpy(dtype=bool)

    if all(isinstance(v, (int, np.integer)) for v in present):
        mask = np.zeros(n, dtype=bool)
        try:
            mask[np.asarray(present, dtype=int)] = True
        except IndexError as exc:
            raise ValueError(f"Row positions in 'keep_these' out of range for {n} rows") from exc
        return mask

    raise ValueError("'keep_these' must be a function, strings, integer positions or booleans")


def _bandwidths(data: pd.DataFrame, h: Optional[float | Sequence[float]]) -> tuple[float, float]:
    if h is None:
        bw = (utils.bandwidth_nrd(data["x"]), utils.bandwidth_nrd(data["y"]))
        if not all(np.isfinite(b) and b > 0 for b in bw):
            panel = int(data["PANEL"].iloc[0]) if "PANEL" in data.columns else 1
            raise ValueError(
                f"Panel {panel} has too few distinct points for density estimation (bandwidths {bw}); "
                "pass 'h' explicitly or use keep_fraction 0 or 1"
            )
    elif np.isscalar(h):
        bw = (float(h), float(h))  # type: ignore[arg-type]
    else:
        hs = list(h)  # type: ignore[arg-type]
        if len(hs) != 2:
            raise ValueError(f"'h' must be a scalar or a pair, got {h}")
        bw = (float(hs[0]), float(hs[1]))
    if not all(np.isfinite(b) and b > 0 for b in bw):
        raise ValueError(f"Bandwidths must be positive and finite, got {bw}")
    return bw


def _grid_size(n_obs: int, n: Optional[int | Sequence[int]]) -> tuple[int, int]:
    if n is None:
        side = int(math.sqrt(n_obs)) * 8
        return side, side
    if np.isscalar(n):
        return int(n), int(n)  # type: ignore[arg-type]
    ns = list(n)  # type: ignore[arg-type]
    if len(ns) != 2:
        raise ValueError(f"'n' must be a scalar or a pair, got {n}")
    return int(ns[0]), int(ns[1])


def dens2d_keep(
    data: pd.DataFrame,
    scales: Scales,
    keep_fraction: float,
    keep_number: float,
    keep_sparse: bool,
    h: Optional[float | Sequence[float]] = None,
    n: Optional[int | Sequence[int]] = None,
) -> np.ndarray:
    """Boolean mask of the observations selected by local 2D density.

    The density is estimated on a grid spanning the scale limits, so that the
    selection matches what is visible in the plot.
    """

    n_obs = len(data)
    if n_obs * keep_fraction > keep_number:
        keep_fraction = keep_number / n_obs

    if keep_fraction == 1:
        return np.ones(n_obs, dtype=bool)
    if keep_fraction == 0:
        return np.zeros(n_obs, dtype=bool)

    bw = _bandwidths(data, h)
    grid = _grid_size(n_obs, n)
    lims = (*scales.x.dimension(), *scales.y.dimension())
    gx, gy, z = utils.kde2d(data["x"], data["y"], h=bw, n=grid, lims=lims)

    # Density at the grid cell of each observation
    kz = z[utils.grid_bin(data["x"], gx), utils.grid_bin(data["y"], gy)]

    if keep_sparse:
        return kz < np.quantile(kz, keep_fraction)
    return kz >= np.quantile(kz, 1 - keep_fraction)


def _selection(
    data: pd.DataFrame,
    scales: Scales,
    keep_fraction: float,
    keep_number: float,
    keep_sparse: bool,
    keep_these: KeepThese,
    invert_selection: bool,
    h: Optional[float | Sequence[float]],
    n: Optional[int | Sequence[int]],
) -> np.ndarray:
    labels = data["label"] if "label" in data.columns else pd.Series(data.index.astype(str), index=data.index)
    selected = dens2d_keep(data, scales, keep_fraction, keep_number, keep_sparse, h=h, n=n)
    selected = selected | resolve_keep_these(keep_these, labels)
    return ~selected if invert_selection else selected


_dens2d_args = {
    "keep_fraction": "float",
    "keep_number": "float",
    "keep_sparse": "bool",
    "keep_these": "any",
    "invert_selection": "bool",
    "h": "float",
    "n": "int",
}


@stk_stat(
    "dens2d_labels",
    required_aes=["x", "y"],
    default_geom="text",
    retains_rows=True,
    args={**_dens2d_args, "label_fill": "any"},
)
def dens2d_labels(
    data: pd.DataFrame,
    scales: Scales,
    keep_fraction: float = 0.10,
    keep_number: float = math.inf,
    keep_sparse: bool = True,
    keep_these: KeepThese = False,
    invert_selection: bool = False,
    h: Optional[float | Sequence[float]] = None,
    n: Optional[int | Sequence[int]] = None,
    label_fill: LabelFill = "",
) -> pd.DataFrame:
    """Replace the labels of observations not selected by local density.

    All rows are returned in their original order; only ``label`` changes.
    Labels are kept for observations in the sparsest (``keep_sparse``) or
    densest regions, plus those picked by ``keep_these``, and the rest get
    ``label_fill`` (a string, None, or a function of the labels).
    """

    label_fill = _check_label_fill(label_fill)
    _check_keep_params(keep_fraction, keep_number)
    data = data.copy()

    if "label" not in data.columns:
        if _first_panel(data):
            logger.info("Mapping the row index to missing 'label' aesthetic")
        data["label"] = data.index.astype(str)
    if len(data) == 0:
        return data

    keep = _selection(data, scales, keep_fraction, keep_number, keep_sparse, keep_these, invert_selection, h, n)

    labels = data["label"].to_numpy(dtype=object)
    if callable(label_fill):
        fill: Any = np.asarray(label_fill(data["label"]), dtype=object)
    else:
        fill = label_fill
    data["label"] = np.where(keep, labels, fill)
    return data


@stk_stat("dens2d_filter", required_aes=["x", "y"], default_geom="point", retains_rows=True, args=_dens2d_args)
def dens2d_filter(
    data: pd.DataFrame,
    scales: Scales,
    keep_fraction: float = 0.10,
    keep_number: float = math.inf,
    keep_sparse: bool = True,
    keep_these: KeepThese = False,
    invert_selection: bool = False,
    h: Optional[float | Sequence[float]] = None,
    n: Optional[int | Sequence[int]] = None,
) -> pd.DataFrame:
    """Keep only the observations selected by local density, dropping the rest."""

    _check_keep_params(keep_fraction, keep_number)
    if len(data) == 0:
        return data
    keep = _selection(data, scales, keep_fraction, keep_number, keep_sparse, keep_these, invert_selection, h, n)
    return data[keep]


# Same selection, but with the density computed separately within each group
stk_stat(
    "dens2d_filter_g",
    compute="group",
    required_aes=["x", "y"],
    default_geom="point",
    retains_rows=True,
    args=_dens2d_args,
)(dens2d_filter)


# --------------------------------------------------------
#          PANEL & GROUP COUNTS
# --------------------------------------------------------

# Named anchors: base position and the direction consecutive groups step in
_x_anchors = {"right": (1.0, -1), "left": (0.0, 1), "center": (0.5, 1), "centre": (0.5, 1), "middle": (0.5, 1)}
_y_anchors = {"top": (1.0, -1), "bottom": (0.0, 1), "center": (0.5, -1), "centre": (0.5, -1), "middle": (0.5, -1)}


def _compute_npc(
    value: str | float,
    anchors: Mapping[str, tuple[float, int]],
    group: int,
    step: float,
    margin_npc: float,
) -> float:
    if not isinstance(value, str):
        return float(value)
    if value not in anchors:
        raise ValueError(f"Unknown anchor '{value}', expected one of {list(anchors)}")
    base, direction = anchors[value]
    if base == 1.0:
        base -= margin_npc
    elif base == 0.0:
        base += margin_npc
    return base + direction * (abs(group) - 1) * step


def compute_npcx(x: str | float, group: int = 1, h_step: float = 0.1, margin_npc: float = npc_margin) -> float:
    """Horizontal npc position of a named anchor, stepped inwards for later groups."""
    return _compute_npc(x, _x_anchors, group, h_step, margin_npc)


def compute_npcy(y: str | float, group: int = 1, v_step: float = 0.1, margin_npc: float = npc_margin) -> float:
    """Vertical npc position of a named anchor, stepped inwards for later groups."""
    return _compute_npc(y, _y_anchors, group, v_step, margin_npc)


def _pick(value: Optional[Anchor], idx: int) -> Optional[str | float]:
    """Element ``idx`` (1-based) of a per-group/per-panel sequence, or the first one."""

    if value is None or isinstance(value, str) or np.isscalar(value):
        return value  # type: ignore[return-value]
    vals = list(value)  # type: ignore[arg-type]
    if len(vals) >= idx:
        return vals[idx - 1]
    return vals[0]


def _anchor_position(
    data: pd.DataFrame,
    axis: str,
    value: Optional[str | float],
    npc_used: bool,
    group: int = 1,
    step: float = 0.0,
    show_notice: bool = True,
) -> float:
    """Resolve a label position; named anchors become npc or native data units."""

    if value is None:
        return math.nan
    if not isinstance(value, str):
        return float(value)
    margin = npc_margin if npc_used else 0.0
    fn = compute_npcx if axis == "x" else compute_npcy
    pos = fn(value, group, step, margin)
    if npc_used:
        return pos
    if axis in data.columns:
        vals = pd.to_numeric(data[axis])
        lo = float(vals.min())
        return pos * abs(float(vals.max()) - lo) + lo
    if show_notice:
        logger.info(f"No '{axis}' mapping; 'label_{axis}' requires a numeric argument in data units")
    return math.nan


def _count_row(count: int, x: float, y: float, npc_used: bool) -> Dict[str, Any]:
    if npc_used:
        return {"count": count, "npcx": x, "x": math.nan, "npcy": y, "y": math.nan}
    return {"count": count, "x": x, "npcx": math.nan, "y": y, "npcy": math.nan}


def _setup_counts(params: Dict[str, Any], geom: str) -> Dict[str, Any]:
    for name in ["label_x", "label_y"]:
        value = params.get(name)
        if value is not None and not isinstance(value, (str, int, float, list, tuple, np.ndarray)):
            raise ValueError(f"'{name}' must be numeric, a named anchor or a sequence of those")
    params["npc_used"] = "_npc" in geom
    return params


def _setup_group_counts(params: Dict[str, Any], geom: str) -> Dict[str, Any]:
    params = _setup_counts(params, geom)
    if params.get("vstep") is None:
        params["vstep"] = 0.10 if "label" in geom else 0.05
    return params


_count_aes = {"label": "n={count}", "hjust": "inward", "vjust": "inward"}


@stk_stat(
    "panel_counts",
    setup=_setup_counts,
    required_aes=["x|y"],
    default_aes=_count_aes,
    default_geom="text_npc",
    args={"label_x": "any", "label_y": "any", "npc_used": "bool"},
)
def panel_counts(
    data: pd.DataFrame,
    scales: Scales,
    label_x: Anchor = "right",
    label_y: Anchor = "top",
    npc_used: bool = True,
) -> pd.DataFrame:
    """Number of observations in the panel, with one label position."""

    panel = int(data["PANEL"].iloc[0]) if "PANEL" in data.columns and len(data) else 1
    show = _first_panel(data)
    x = _anchor_position(data, "x", _pick(label_x, panel), npc_used, show_notice=show)
    y = _anchor_position(data, "y", _pick(label_y, panel), npc_used, show_notice=show)
    return pd.DataFrame([_count_row(len(data), x, y, npc_used)])


@stk_stat(
    "group_counts",
    setup=_setup_group_counts,
    compute="group",
    required_aes=["x|y"],
    default_aes=_count_aes,
    default_geom="text_npc",
    args={"label_x": "any", "label_y": "any", "hstep": "float", "vstep": "float", "npc_used": "bool"},
)
def group_counts(
    data: pd.DataFrame,
    scales: Scales,
    label_x: Anchor = "right",
    label_y: Anchor = "top",
    hstep: float = 0.0,
    vstep: Optional[float] = None,
    npc_used: bool = True,
) -> pd.DataFrame:
    """Number of observations in one group, with label positions stepped by group."""

    group = int(data["group"].iloc[0]) if "group" in data.columns and len(data) else 1
    group_idx = abs(group)
    if vstep is None:
        vstep = 0.05

    if "grp_label" in data.columns:
        if data["grp_label"].nunique(dropna=False) > 1:
            utils.warn(f"Non-unique value in 'grp_label' using group index {group} as label.")
            grp_label = str(group)
        else:
            grp_label = str(data["grp_label"].iloc[0])
    else:
        grp_label = str(group)

    show = _first_panel(data) and group_idx == 1
    x = _anchor_position(data, "x", _pick(label_x, group_idx), npc_used, group_idx, hstep, show)
    y = _anchor_position(data, "y", _pick(label_y, group_idx), npc_used, group_idx, vstep, show)
    row = _count_row(len(data), x, y, npc_used)
    row["grp_label"] = grp_label
    return pd.DataFrame([row])


# --------------------------------------------------------
#          LAYER CONSTRUCTORS
# --------------------------------------------------------


def stat_dens2d_labels(
    mapping: Optional[Mapping[str, str]] = None,
    data: Optional[pd.DataFrame] = None,
    geom: str = "text",
    keep_fraction: float = 0.10,
    keep_number: float = math.inf,
    keep_sparse: bool = True,
    keep_these: KeepThese = False,
    invert_selection: bool = False,
    h: Optional[float | Sequence[float]] = None,
    n: Optional[int | Sequence[int]] = None,
    label_fill: LabelFill = "",
    na_rm: bool = True,
) -> Layer:
    """Labels replaced by ``label_fill`` outside the sparsest (or densest) regions.

    Every observation is kept, so the layer can sit on top of the scatter it
    annotates; only the selected observations show their label text.
    """

    _check_label_fill(label_fill)
    _check_keep_params(keep_fraction, keep_number)
    return make_layer(
        "dens2d_labels",
        geom=geom,
        mapping=mapping,
        data=data,
        na_rm=na_rm,
        keep_fraction=keep_fraction,
        keep_number=keep_number,
        keep_sparse=keep_sparse,
        keep_these=keep_these,
        invert_selection=invert_selection,
        h=h,
        n=n,
        label_fill=label_fill,
    )


def stat_dens2d_filter(
    mapping: Optional[Mapping[str, str]] = None,
    data: Optional[pd.DataFrame] = None,
    geom: str = "point",
    keep_fraction: float = 0.10,
    keep_number: float = math.inf,
    keep_sparse: bool = True,
    keep_these: KeepThese = False,
    invert_selection: bool = False,
    h: Optional[float | Sequence[float]] = None,
    n: Optional[int | Sequence[int]] = None,
    na_rm: bool = True,
    per_group: bool = False,
) -> Layer:
    """Only the observations in the sparsest (or densest) regions of each panel.

    With ``per_group`` the density is estimated within each group instead.
    """

    _check_keep_params(keep_fraction, keep_number)
    return make_layer(
        "dens2d_filter_g" if per_group else "dens2d_filter",
        geom=geom,
        mapping=mapping,
        data=data,
        na_rm=na_rm,
        keep_fraction=keep_fraction,
        keep_number=keep_number,
        keep_sparse=keep_sparse,
        keep_these=keep_these,
        invert_selection=invert_selection,
        h=h,
        n=n,
    )


def stat_dens2d_filter_g(
    mapping: Optional[Mapping[str, str]] = None, data: Optional[pd.DataFrame] = None, **kwargs: Any
) -> Layer:
    """Per-group variant of :func:`stat_dens2d_filter`."""
    return stat_dens2d_filter(mapping, data, per_group=True, **kwargs)


def stat_panel_counts(
    mapping: Optional[Mapping[str, str]] = None,
    data: Optional[pd.DataFrame] = None,
    geom: str = "text_npc",
    label_x: Anchor = "right",
    label_y: Anchor = "top",
    after_stat: Optional[Mapping[str, str]] = None,
    na_rm: bool = False,
) -> Layer:
    """Observation count of each panel, by default in its top right corner.

    Grouping is ignored. Only one of the x/y aesthetics is required. With an
    ``_npc`` geom the positions are in npc units and stay put across panels;
    other geoms take positions in data units.
    """

    return make_layer(
        "panel_counts",
        geom=geom,
        mapping=mapping,
        data=data,
        after_stat=after_stat,
        na_rm=na_rm,
        label_x=label_x,
        label_y=label_y,
    )


def stat_group_counts(
    mapping: Optional[Mapping[str, str]] = None,
    data: Optional[pd.DataFrame] = None,
    geom: str = "text_npc",
    label_x: Anchor = "right",
    label_y: Anchor = "top",
    hstep: float = 0.0,
    vstep: Optional[float] = None,
    after_stat: Optional[Mapping[str, str]] = None,
    na_rm: bool = False,
) -> Layer:
    """Observation count of each group, stacked by ``hstep``/``vstep`` npc steps.

    ``vstep`` defaults to 0.10 for label geoms and 0.05 otherwise.
    """

    return make_layer(
        "group_counts",
        geom=geom,
        mapping=mapping,
        data=data,
        after_stat=after_stat,
        na_rm=na_rm,
        label_x=label_x,
        label_y=label_y,
        hstep=hstep,
        vstep=vstep,
    )
