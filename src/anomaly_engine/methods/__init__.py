"""
Statistical methods available to the model detector, looked up by name.
"""

from typing import Any, Optional

from .base import AnomalyDetectionMethod, DetectionResult, ModelComponents
from .stl_zscore import STLZScoreMethod
from .zscore import ZScoreMethod

METHOD_REGISTRY: dict[str, type[AnomalyDetectionMethod]] = {
    "stl_zscore": STLZScoreMethod,
    "zscore": ZScoreMethod,
}


def get_method(name: str, config: Optional[dict[str, Any]] = None) -> AnomalyDetectionMethod:
    """Instantiate a registered method.

    Raises:
        ValueError: Unknown method name
        TypeError: `config` has keys the method does not accept
    """
    try:
        method_class = METHOD_REGISTRY[name]
    except KeyError:
        raise ValueError(
            f"Unknown method '{name}'. Available methods: {', '.join(list_methods())}"
        ) from None
    return method_class(config or {})


def list_methods() -> list[str]:
    return sorted(METHOD_REGISTRY)


__all__ = [
    "METHOD_REGISTRY",
    "AnomalyDetectionMethod",
    "DetectionResult",
    "ModelComponents",
    "STLZScoreMethod",
    "ZScoreMethod",
    "get_method",
    "list_methods",
]
