"""Geometry Renderers
-------------------

Altair renderers for computed layer data, registered with `@stk_geom(...)`.
Rendering happens in two steps so that faceted charts can share one dataset:

- `prepare_geom_data` adds the columns marks need (pixel positions for npc
  geoms, resolved text alignment)
- `draw_geom` builds marks on a given base chart, which is either a chart
  holding the layer data or a filter over the combined facet data

Geoms whose names end in ``_npc`` place marks in normalised panel
coordinates, independent of the data range.
"""

from __future__ import annotations

__all__ = ["stk_geom", "get_geom_fn", "prepare_geom_data", "draw_geom"]

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import altair as alt
import numpy as np
import pandas as pd

from altpp.layer import AltairChart, ScaleRange, Scales

GeomFn = Callable[[alt.Chart, pd.DataFrame, Scales, Mapping[str, str]], AltairChart]

registry: Dict[str, GeomFn] = {}
npc_geoms: set[str] = set()


def stk_geom(geom_name: str, npc: bool = False) -> Callable[[GeomFn], GeomFn]:
    """Register a geom renderer."""

    def _decorator(gfunc: GeomFn) -> GeomFn:
        registry[geom_name] = gfunc
        if npc:
            npc_geoms.add(geom_name)
        return gfunc

    return _decorator


def get_geom_fn(geom_name: str) -> GeomFn:
    if geom_name not in registry:
        raise ValueError(f"Unknown geom '{geom_name}'. Registered: {sorted(registry)}")
    return registry[geom_name]


# --------------------------------------------------------
#          DATA PREPARATION
# --------------------------------------------------------

_hjust_names = {0.0: "left", 0.5: "center", 1.0: "right"}
_vjust_names = {0.0: "bottom", 0.5: "middle", 1.0: "top"}


def _justify(just: object, pos: float, center: float, names: Mapping[float, str]) -> str:
    """Resolve ggplot-style justification (numbers, names, 'inward'/'outward') to a vega value."""

    if isinstance(just, str):
        if just in ("inward", "outward"):
            if not np.isfinite(pos) or pos == center:
                return names[0.5]
            towards_high = pos > center
            if just == "outward":
                towards_high = not towards_high
            return names[1.0] if towards_high else names[0.0]
        if just in names.values():
            return just
        if just == "centre":
            return names[0.5]
        raise ValueError(f"Unknown justification '{just}'")
    return names[min(names, key=lambda k: abs(k - float(just)))]  # type: ignore[arg-type]


def _center(rng: ScaleRange, vals: pd.Series) -> float:
    if rng.trained:
        lo, hi = rng.dimension()
    else:
        finite = pd.to_numeric(vals, errors="coerce").dropna()
        if len(finite) == 0:
            return np.nan
        lo, hi = float(finite.min()), float(finite.max())
    return (lo + hi) / 2


def prepare_geom_data(
    geom_name: str,
    df: pd.DataFrame,
    width: int,
    height: int,
    scales: Optional[Scales] = None,
) -> pd.DataFrame:
    """Add pixel positions (npc geoms) and text alignment columns."""

    get_geom_fn(geom_name)
    df = df.copy()
    scales = scales or Scales()
    npc = geom_name in npc_geoms
    if npc:
        df["npcx_px"] = pd.to_numeric(df["npcx"]) * width
        df["npcy_px"] = (1 - pd.to_numeric(df["npcy"])) * height
        xs, ys = pd.to_numeric(df["npcx"]), pd.to_numeric(df["npcy"])
        cx, cy = 0.5, 0.5
    else:
        xs = pd.to_numeric(df["x"]) if "x" in df.columns else pd.Series(np.nan, index=df.index)
        ys = pd.to_numeric(df["y"]) if "y" in df.columns else pd.Series(np.nan, index=df.index)
        cx, cy = _center(scales.x, xs), _center(scales.y, ys)

    hjust = df["hjust"] if "hjust" in df.columns else pd.Series(0.5, index=df.index)
    vjust = df["vjust"] if "vjust" in df.columns else pd.Series(0.5, index=df.index)
    df["text_align"] = [_justify(j, p, cx, _hjust_names) for j, p in zip(hjust, xs)]
    df["text_baseline"] = [_justify(j, p, cy, _vjust_names) for j, p in zip(vjust, ys)]
    return df


# --------------------------------------------------------
#          RENDERERS
# --------------------------------------------------------


def _axis_scale(rng: ScaleRange) -> alt.Scale:
    if rng.explicit and rng.limits is not None:
        return alt.Scale(domain=list(rng.limits), zero=False, nice=False)
    return alt.Scale(zero=False)


def _position(df: pd.DataFrame, scales: Scales, titles: Mapping[str, str], npc: bool) -> Dict[str, Any]:
    if npc:
        return {
            "x": alt.X("npcx_px:Q", scale=None, axis=None),
            "y": alt.Y("npcy_px:Q", scale=None, axis=None),
        }
    return {
        "x": alt.X("x:Q", title=titles.get("x"), scale=_axis_scale(scales.x)),
        "y": alt.Y("y:Q", title=titles.get("y"), scale=_axis_scale(scales.y)),
    }


def _extra(df: pd.DataFrame, titles: Mapping[str, str]) -> Dict[str, Any]:
    enc: Dict[str, Any] = {}
    if "colour" in df.columns:
        enc["color"] = alt.Color("colour:N", title=titles.get("colour", titles.get("color")))
    return enc


def _alignments(df: pd.DataFrame) -> List[Tuple[str, str]]:
    combos = df[["text_align", "text_baseline"]].drop_duplicates()
    pairs = [(str(a), str(b)) for a, b in combos.itertuples(index=False)]
    return pairs or [("center", "middle")]


def _text_marks(
    base: alt.Chart,
    df: pd.DataFrame,
    scales: Scales,
    titles: Mapping[str, str],
    npc: bool,
    **mark_kwargs: Any,
) -> List[alt.Chart]:
    """One text mark per alignment combination (alignment is not an encoding channel in vega-lite)."""

    enc = {**_position(df, scales, titles, npc), **_extra(df, titles), "text": alt.Text("label:N")}
    return [
        base.transform_filter((alt.datum.text_align == align) & (alt.datum.text_baseline == baseline))
        .mark_text(align=align, baseline=baseline, **mark_kwargs)  # type: ignore[arg-type]
        .encode(**enc)
        for align, baseline in _alignments(df)
    ]


def _label_marks(
    base: alt.Chart,
    df: pd.DataFrame,
    scales: Scales,
    titles: Mapping[str, str],
    npc: bool,
) -> AltairChart:
    halo = _text_marks(base, df, scales, titles, npc, stroke="white", strokeWidth=4, strokeJoin="round")
    text = _text_marks(base, df, scales, titles, npc, fontWeight="bold")
    return alt.layer(*halo, *text)


@stk_geom("point")
def point(base: alt.Chart, df: pd.DataFrame, scales: Scales, titles: Mapping[str, str]) -> AltairChart:
    enc = {**_position(df, scales, titles, npc=False), **_extra(df, titles)}
    if "shape" in df.columns:
        enc["shape"] = alt.Shape("shape:N", title=titles.get("shape"))
    return base.mark_point(filled=True).encode(**enc)


@stk_geom("text")
def text(base: alt.Chart, df: pd.DataFrame, scales: Scales, titles: Mapping[str, str]) -> AltairChart:
    return alt.layer(*_text_marks(base, df, scales, titles, npc=False))


@stk_geom("label")
def label(base: alt.Chart, df: pd.DataFrame, scales: Scales, titles: Mapping[str, str]) -> AltairChart:
    return _label_marks(base, df, scales, titles, npc=False)


@stk_geom("text_npc", npc=True)
def text_npc(base: alt.Chart, df: pd.DataFrame, scales: Scales, titles: Mapping[str, str]) -> AltairChart:
    return alt.layer(*_text_marks(base, df, scales, titles, npc=True))


@stk_geom("label_npc", npc=True)
def label_npc(base: alt.Chart, df: pd.DataFrame, scales: Scales, titles: Mapping[str, str]) -> AltairChart:
    return _label_marks(base, df, scales, titles, npc=True)


def draw_geom(
    geom_name: str,
    base: alt.Chart,
    df: pd.DataFrame,
    scales: Scales,
    titles: Mapping[str, str],
) -> AltairChart:
    """Render prepared layer data with the named geom."""

    return get_geom_fn(geom_name)(base, df, scales, titles)
