"""altpp public API proxy.

The submodules are loaded explicitly and the symbols listed in their
``__all__`` are forwarded here, so ``import altpp as app`` gives access to the
layer constructors, the pipeline and the helpers in one namespace.
"""

from __future__ import annotations

from typing import Dict

from . import geoms as _geoms
from . import layer as _layer
from . import stats as _stats
from . import utils as _utils
from . import validation as _validation

__all__ = [  # pyright: ignore[reportUnsupportedDunderAll]
    *getattr(_utils, "__all__", []),
    *getattr(_validation, "__all__", []),
    *getattr(_layer, "__all__", []),
    *getattr(_stats, "__all__", []),
    *getattr(_geoms, "__all__", []),
]


def _export(module: object, namespace: Dict[str, object]) -> None:
    """Export all symbols from a module's __all__ into the given namespace.

    Args:
        module: Module object to export from.
        namespace: Dictionary (typically globals()) to populate with exported symbols.
    """
    for name in getattr(module, "__all__", []):
        namespace[name] = getattr(module, name)


_export(_utils, globals())
_export(_validation, globals())
_export(_layer, globals())
_export(_stats, globals())
_export(_geoms, globals())
