"""Validation Models
------------------

Pydantic models describing chart and layer specifications that can be kept in
YAML or JSON files.  It defines:

- the strict base model (`PBase`) shared by every schema in the package
- layer and chart specs (`LayerSpec`, `ChartSpec`) consumed by
  `altpp.layer.chart_from_spec` and the `altpp_render` command
- strict and lenient validation helpers (`hard_validate`, `soft_validate`)
"""

__all__ = [
    "PBase",
    "LayerSpec",
    "ChartSpec",
    "hard_validate",
    "soft_validate",
]

from typing import Any, Dict, List, Literal, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator


# Define a new base that is more strict towards unknown inputs
class PBase(BaseModel):
    model_config = ConfigDict(extra="forbid", protected_namespaces=(), arbitrary_types_allowed=True)


# --------------------------------------------------------
#          CHART SPECS (YAML / JSON)
# --------------------------------------------------------


class LayerSpec(PBase):
    stat: str = "identity"  # Registered stat name, e.g. 'dens2d_labels' or 'group_counts'
    geom: Optional[str] = None  # Registered geom name; None uses the stat's default geom
    mapping: Dict[str, str] = {}  # Aesthetic -> column overrides for this layer only
    params: Dict[str, Any] = {}  # Parameters forwarded to the stat compute function
    after_stat: Dict[str, str] = {}  # Format templates evaluated on computed columns, e.g. {'label': 'n={count}'}
    na_rm: bool = False  # Drop rows with missing required aesthetics silently


class ChartSpec(PBase):
    mapping: Dict[str, str] = {}  # Aesthetic -> column mapping shared by all layers
    facet: Optional[str] = None  # Column whose values define panels
    width: int = 400  # Panel width in pixels
    height: int = 300  # Panel height in pixels
    xlim: Optional[Tuple[float, float]] = None  # Explicit x scale limits
    ylim: Optional[Tuple[float, float]] = None  # Explicit y scale limits
    scales: Literal["fixed", "free"] = "fixed"  # Train scales over all panels or per panel
    layers: List[LayerSpec] = []

    @field_validator("xlim", "ylim")
    @classmethod
    def check_limits(cls, v: Optional[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
        if v is not None and v[0] >= v[1]:
            raise ValueError(f"Limits must be increasing, got {v}")
        return v


M = TypeVar("M", bound=BaseModel)


def hard_validate(m: dict[str, object] | ChartSpec) -> ChartSpec:
    """Validate a chart spec, raising errors on failure.

    Args:
        m: Dictionary or ChartSpec object to validate.

    Raises:
        ValueError: If validation fails.
    """
    return ChartSpec.model_validate(m)


def soft_validate(m: dict[str, object], model: type[M]) -> Optional[M]:
    """Validate a dictionary against a pydantic model, printing errors instead of raising.

    Args:
        m: Dictionary to validate.
        model: Pydantic model class to validate against.
    """
    try:
        return model.model_validate(m)
    except ValueError as e:
        print(e)
        return None
