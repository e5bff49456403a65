"""Layer Pipeline
----------------

The glue between raw data, the registered statistics and the Altair marks.
A `Layer` records which statistic and geometry to use together with the
aesthetic mapping and the statistic parameters.  Computing a layer:

- maps data columns to aesthetics and assigns `group` and `PANEL` ordinals
- drops rows with missing required aesthetics and trains the x/y scales
- runs the registered compute function once per panel or once per group per
  panel (`@stk_stat(...)` decides which), re-attaching panel/group columns
- evaluates `after_stat` templates such as ``"n={count}"``

`compose` computes several layers against shared scales and renders them as a
single (optionally faceted) Altair chart.
"""

from __future__ import annotations

# These are the only functions that should be exposed to the public
__all__ = [
    "Layer",
    "ScaleRange",
    "Scales",
    "stk_stat",
    "get_stat_fn",
    "get_stat_meta",
    "make_layer",
    "map_aesthetics",
    "add_group",
    "add_panel",
    "train_scales",
    "compose",
    "chart_from_spec",
    "geom_point",
    "geom_text",
]

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, cast

import altair as alt
import numpy as np
import pandas as pd
import polars as pl

from altpp import utils
from altpp.validation import ChartSpec, PBase, hard_validate

logger = logging.getLogger(__name__)

# Type alias for all Altair chart types that geoms and compose may return
AltairChart = alt.Chart | alt.LayerChart | alt.FacetChart | alt.VConcatChart | alt.HConcatChart | alt.ConcatChart

AESTHETICS = ["x", "y", "label", "group", "grp_label", "colour", "fill", "shape"]
_aes_aliases = {"color": "colour"}

# Aesthetics never used to split data into groups
_non_grouping = {"x", "y", "label", "grp_label"}

_row_col = "_row"


# --------------------------------------------------------
#          SCALES
# --------------------------------------------------------


@dataclass
class ScaleRange:
    """Continuous range of one positional aesthetic."""

    limits: Optional[Tuple[float, float]] = None
    explicit: bool = False  # Limits were set by the user rather than trained

    def train(self, values: pd.Series) -> "ScaleRange":
        """Expand the range to include ``values`` unless limits are explicit."""

        if self.explicit:
            return self
        vals = pd.to_numeric(values, errors="coerce").dropna()
        if len(vals) == 0:
            return self
        lo, hi = float(vals.min()), float(vals.max())
        if self.limits is not None:
            lo, hi = min(lo, self.limits[0]), max(hi, self.limits[1])
        self.limits = (lo, hi)
        return self

    @property
    def trained(self) -> bool:
        return self.limits is not None

    def dimension(self) -> Tuple[float, float]:
        """Limits of the scale, as used for the density grid."""

        if self.limits is None:
            raise ValueError("Scale has no range: the aesthetic is not mapped or has no finite values")
        return self.limits


@dataclass
class Scales:
    x: ScaleRange = field(default_factory=ScaleRange)
    y: ScaleRange = field(default_factory=ScaleRange)


def train_scales(
    df: pd.DataFrame,
    free: bool = False,
    xlim: Optional[Tuple[float, float]] = None,
    ylim: Optional[Tuple[float, float]] = None,
) -> Dict[int, Scales]:
    """Train x/y ranges, shared across panels unless ``free``. Returns a dict keyed by PANEL."""

    def _new() -> Scales:
        return Scales(
            x=ScaleRange(tuple(xlim), explicit=True) if xlim is not None else ScaleRange(),  # type: ignore[arg-type]
            y=ScaleRange(tuple(ylim), explicit=True) if ylim is not None else ScaleRange(),  # type: ignore[arg-type]
        )

    panels = sorted(df["PANEL"].unique()) if "PANEL" in df.columns and len(df) else [1]
    if free:
        res = {}
        for panel in panels:
            sc, pdf = _new(), df[df["PANEL"] == panel]
            for axis in ["x", "y"]:
                if axis in pdf.columns:
                    getattr(sc, axis).train(pdf[axis])
            res[int(panel)] = sc
        return res

    shared = _new()
    for axis in ["x", "y"]:
        if axis in df.columns:
            getattr(shared, axis).train(df[axis])
    return {int(panel): shared for panel in panels}


# --------------------------------------------------------
#          STAT REGISTRY
# --------------------------------------------------------


class StatMeta(PBase):
    """Metadata registered for each statistic via ``@stk_stat``."""

    name: str
    compute: Literal["panel", "group"] = "panel"
    required_aes: List[str] = []  # Entries like 'x|y' need at least one of the alternatives
    default_aes: Dict[str, str] = {}  # after_stat templates applied when the column is absent
    default_geom: str = "point"
    retains_rows: bool = False  # Output rows are a subset of the input rows, in input order
    args: Dict[str, str] = {}


registry: Dict[str, Callable[..., pd.DataFrame]] = {}
registry_meta: Dict[str, StatMeta] = {}
registry_setup: Dict[str, Callable[[Dict[str, Any], str], Dict[str, Any]]] = {}
_registry_bootstrapped = False


def _ensure_stat_registry_loaded() -> None:
    """Import the stats module lazily to populate the registry."""
    global _registry_bootstrapped
    if _registry_bootstrapped:
        return
    import altpp.stats  # noqa: F401

    _registry_bootstrapped = True


def _ensure_stat_args_sync(func: Callable[..., Any], declared: Mapping[str, str]) -> None:
    """Verify that declared args match the compute function signature (after ``data`` and ``scales``)."""

    sig = inspect.signature(func)
    params = list(sig.parameters.values())[2:]
    seen = {p.name for p in params if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)}
    if seen != set(declared):
        raise ValueError(
            f"Stat '{func.__name__}' signature args {sorted(seen)} do not match declared args {sorted(declared)}"
        )


def stk_stat(
    stat_name: str,
    setup: Callable[[Dict[str, Any], str], Dict[str, Any]] | None = None,
    **r_kwargs: Any,
) -> Callable[[Callable[..., pd.DataFrame]], Callable[..., pd.DataFrame]]:
    """Register a compute function inside the global stat registry.

    ``setup`` optionally adjusts layer parameters once the geom is known.
    """

    def _decorator(sfunc: Callable[..., pd.DataFrame]) -> Callable[..., pd.DataFrame]:
        _ensure_stat_args_sync(sfunc, cast(Mapping[str, str], r_kwargs.get("args", {})))
        registry[stat_name] = sfunc
        registry_meta[stat_name] = StatMeta.model_validate({"name": stat_name, **r_kwargs})
        if setup is not None:
            registry_setup[stat_name] = setup
        return sfunc

    return _decorator


def _stk_deregister(stat_name: str) -> None:
    """Remove a stat from the registry (used in tests)."""

    del registry[stat_name]
    del registry_meta[stat_name]
    registry_setup.pop(stat_name, None)


def get_stat_fn(stat_name: str) -> Callable[..., pd.DataFrame]:
    """Retrieve a registered compute function by name."""

    _ensure_stat_registry_loaded()
    if stat_name not in registry:
        raise ValueError(f"Unknown stat '{stat_name}'. Registered: {sorted(registry)}")
    return registry[stat_name]


def get_stat_meta(stat_name: str) -> StatMeta:
    """Retrieve the metadata of a registered stat."""

    _ensure_stat_registry_loaded()
    if stat_name not in registry_meta:
        raise ValueError(f"Unknown stat '{stat_name}'. Registered: {sorted(registry_meta)}")
    return registry_meta[stat_name]


# Identity statistic used by plain geoms
@stk_stat("identity", retains_rows=True, default_geom="point")
def _identity(data: pd.DataFrame, scales: Scales) -> pd.DataFrame:
    return data


# --------------------------------------------------------
#          DATA PREPARATION
# --------------------------------------------------------


def map_aesthetics(data: pd.DataFrame, mapping: Mapping[str, str]) -> pd.DataFrame:
    """Select the mapped columns and rename them to aesthetic names, keeping the index."""

    df = pd.DataFrame(index=data.index)
    for aes, col in mapping.items():
        aes = _aes_aliases.get(aes, aes)
        if aes not in AESTHETICS:
            raise ValueError(f"Unknown aesthetic '{aes}'. Known: {AESTHETICS}")
        if col not in data.columns:
            raise ValueError(f"Column '{col}' mapped to '{aes}' not found in data")
        df[aes] = data[col]
    return df


def add_group(df: pd.DataFrame) -> pd.DataFrame:
    """Assign 1-based group ordinals from the interaction of discrete aesthetics.

    Without any discrete aesthetic all rows get group -1.
    """

    gcols = [c for c in df.columns if c == "group" or (c not in _non_grouping and utils.is_discrete(df[c]))]
    if not gcols:
        df["group"] = -1
    else:
        df["group"] = df.groupby(gcols, sort=True, dropna=False, observed=True).ngroup().to_numpy() + 1
    return df


def add_panel(df: pd.DataFrame, facet_values: Optional[pd.Series] = None) -> pd.DataFrame:
    """Assign 1-based PANEL ordinals (and the original value as ``panel_label``)."""

    if facet_values is None:
        df["PANEL"] = 1
        df["panel_label"] = ""
        return df
    cat = facet_values if isinstance(facet_values.dtype, pd.CategoricalDtype) else pd.Categorical(facet_values)
    codes = pd.Categorical(cat).codes
    if (codes < 0).any():
        raise ValueError("Facet column contains missing values")
    df["PANEL"] = codes + 1
    df["panel_label"] = facet_values.astype(str).to_numpy()
    return df


def _check_required_aes(meta: StatMeta, df: pd.DataFrame) -> None:
    for req in meta.required_aes:
        alternatives = req.split("|")
        if not any(a in df.columns for a in alternatives):
            raise ValueError(f"stat '{meta.name}' requires the following missing aesthetics: {' or '.join(alternatives)}")


def _remove_missing(df: pd.DataFrame, meta: StatMeta, na_rm: bool) -> pd.DataFrame:
    cols = [a for req in meta.required_aes for a in req.split("|") if a in df.columns]
    if not cols:
        return df
    missing = df[cols].isna().any(axis=1)
    if missing.any():
        if not na_rm:
            utils.warn(f"Removed {int(missing.sum())} rows containing missing values (stat '{meta.name}').")
        df = df[~missing]
    return df


def _carry_constants(res: pd.DataFrame, src: pd.DataFrame) -> pd.DataFrame:
    """Copy columns that are constant within ``src`` onto the computed rows."""

    for col in src.columns:
        if col in res.columns or col == _row_col:
            continue
        vals = src[col]
        if len(vals) and vals.nunique(dropna=False) == 1:
            res[col] = vals.iloc[0]
    return res


def _apply_after_stat(df: pd.DataFrame, templates: Mapping[str, str], overwrite: bool) -> pd.DataFrame:
    for aes, tmpl in templates.items():
        if aes in df.columns and not overwrite:
            continue
        records = df.to_dict("records")
        df[aes] = [tmpl.format(**rec) for rec in records]
    return df


# --------------------------------------------------------
#          LAYERS
# --------------------------------------------------------


@dataclass
class Layer:
    """A statistic + geometry pair with its mapping and parameters."""

    stat: str
    geom: str
    mapping: Dict[str, str] = field(default_factory=dict)
    data: Optional[pd.DataFrame | pl.DataFrame] = None
    params: Dict[str, Any] = field(default_factory=dict)
    after_stat: Dict[str, str] = field(default_factory=dict)
    na_rm: bool = False

    def build(
        self,
        data: Optional[pd.DataFrame | pl.DataFrame] = None,
        mapping: Optional[Mapping[str, str]] = None,
        facet: Optional[str] = None,
    ) -> pd.DataFrame:
        """Return the mapped data (aesthetics, group, PANEL) before the stat runs."""

        source = self.data if self.data is not None else data
        if source is None:
            raise ValueError(f"Layer '{self.stat}' has no data")
        pdata = utils.to_pandas(source)
        df = map_aesthetics(pdata, {**(mapping or {}), **self.mapping})
        df = add_group(df)
        df = add_panel(df, pdata[facet] if facet is not None else None)
        df[_row_col] = np.arange(len(df))
        return df

    def compute(
        self,
        data: Optional[pd.DataFrame | pl.DataFrame] = None,
        mapping: Optional[Mapping[str, str]] = None,
        facet: Optional[str] = None,
        scales: Optional[Dict[int, Scales]] = None,
    ) -> pd.DataFrame:
        """Run the statistic and return the computed data."""

        meta, fn = get_stat_meta(self.stat), get_stat_fn(self.stat)
        df = self.build(data, mapping, facet)
        _check_required_aes(meta, df)
        df = _remove_missing(df, meta, self.na_rm)
        if scales is None:
            scales = train_scales(df)

        logger.debug(f"Computing stat '{self.stat}' per {meta.compute} on {len(df)} rows")
        parts: List[pd.DataFrame] = []
        for panel, pdf in df.groupby("PANEL", sort=True):
            pscales = scales.get(int(panel)) or Scales()
            if meta.compute == "group":
                for _, gdf in pdf.groupby("group", sort=True):
                    parts.append(_carry_constants(fn(gdf.copy(), pscales, **self.params), gdf))
            else:
                parts.append(_carry_constants(fn(pdf.copy(), pscales, **self.params), pdf))

        out = pd.concat(parts) if parts else df.iloc[0:0].copy()
        if meta.retains_rows and _row_col in out.columns:
            out = out.sort_values(_row_col, kind="stable")
        out = out.drop(columns=[_row_col], errors="ignore")
        out = _apply_after_stat(out, meta.default_aes, overwrite=False)
        return _apply_after_stat(out, self.after_stat, overwrite=True)

    def to_chart(
        self,
        data: Optional[pd.DataFrame | pl.DataFrame] = None,
        mapping: Optional[Mapping[str, str]] = None,
        width: int = 400,
        height: int = 300,
    ) -> AltairChart:
        """Render this single layer on its own."""

        return compose(self, data=data, mapping=mapping, width=width, height=height)


def make_layer(
    stat: str,
    geom: Optional[str] = None,
    mapping: Optional[Mapping[str, str]] = None,
    data: Optional[pd.DataFrame | pl.DataFrame] = None,
    after_stat: Optional[Mapping[str, str]] = None,
    na_rm: bool = False,
    **params: Any,
) -> Layer:
    """Build a validated layer for a registered stat and geom."""

    from altpp.geoms import get_geom_fn

    meta = get_stat_meta(stat)
    geom = geom or meta.default_geom
    get_geom_fn(geom)  # Fail early on unknown geoms

    unknown = set(params) - set(meta.args)
    if unknown:
        raise ValueError(f"Unknown parameters for stat '{stat}': {sorted(unknown)}")
    if stat in registry_setup:
        params = registry_setup[stat](dict(params), geom)

    return Layer(
        stat=stat,
        geom=geom,
        mapping=dict(mapping or {}),
        data=data,
        params=dict(params),
        after_stat=dict(after_stat or {}),
        na_rm=na_rm,
    )


def geom_point(mapping: Optional[Mapping[str, str]] = None, data: Optional[pd.DataFrame] = None) -> Layer:
    """Plain scatter layer."""
    return make_layer("identity", geom="point", mapping=mapping, data=data)


def geom_text(mapping: Optional[Mapping[str, str]] = None, data: Optional[pd.DataFrame] = None) -> Layer:
    """Plain text layer."""
    return make_layer("identity", geom="text", mapping=mapping, data=data)


# --------------------------------------------------------
#          COMPOSITION
# --------------------------------------------------------


def compose(
    *layers: Layer,
    data: Optional[pd.DataFrame | pl.DataFrame] = None,
    mapping: Optional[Mapping[str, str]] = None,
    facet: Optional[str] = None,
    width: int = 400,
    height: int = 300,
    xlim: Optional[Tuple[float, float]] = None,
    ylim: Optional[Tuple[float, float]] = None,
    scales: Literal["fixed", "free"] = "fixed",
) -> AltairChart:
    """Compute ``layers`` on shared scales and return one layered Altair chart.

    With ``facet`` the layers are rendered once per panel through an Altair facet.
    """

    from altpp.geoms import draw_geom, prepare_geom_data

    if not layers:
        raise ValueError("compose needs at least one layer")

    built = [layer.build(data, mapping, facet) for layer in layers]
    trained = train_scales(pd.concat(built, ignore_index=True), free=(scales == "free"), xlim=xlim, ylim=ylim)
    # Panel 1 provides the axis domain; with free scales vega-lite resolves one per facet
    domain_scales = trained.get(1) or next(iter(trained.values()))
    titles = {**(mapping or {})}

    frames = []
    for i, layer in enumerate(layers):
        out = layer.compute(data, mapping, facet, scales=trained)
        out = prepare_geom_data(layer.geom, out, width, height, domain_scales)
        frames.append(out.assign(layer=i))

    if facet is None:
        charts = [
            draw_geom(layer.geom, alt.Chart(frame), frame, domain_scales, {**titles, **layer.mapping})
            for layer, frame in zip(layers, frames)
        ]
        return alt.layer(*charts).properties(width=width, height=height)

    combined = pd.concat(frames, ignore_index=True)
    charts = [
        draw_geom(
            layer.geom,
            alt.Chart().transform_filter(alt.datum.layer == i),
            frame,
            domain_scales,
            {**titles, **layer.mapping},
        )
        for i, (layer, frame) in enumerate(zip(layers, frames))
    ]
    chart = alt.layer(*charts, data=combined).properties(width=width, height=height)
    chart = chart.facet(facet=alt.Facet("panel_label:N", title=facet))
    if scales == "free":
        chart = chart.resolve_scale(x="independent", y="independent")
    return chart


def chart_from_spec(spec: ChartSpec | Dict[str, Any], data: pd.DataFrame | pl.DataFrame) -> AltairChart:
    """Build a chart from a (validated) chart spec, e.g. one read from YAML."""

    cspec = hard_validate(spec) if isinstance(spec, dict) else spec
    layers: Sequence[Layer] = [
        make_layer(
            ls.stat,
            geom=ls.geom,
            mapping=ls.mapping,
            after_stat=ls.after_stat,
            na_rm=ls.na_rm,
            **ls.params,
        )
        for ls in cspec.layers
    ]
    return compose(
        *layers,
        data=data,
        mapping=cspec.mapping,
        facet=cspec.facet,
        width=cspec.width,
        height=cspec.height,
        xlim=cspec.xlim,
        ylim=cspec.ylim,
        scales=cspec.scales,
    )
