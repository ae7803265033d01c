"""
Base abstract interface for statistical anomaly detection methods.

All methods must inherit from AnomalyDetectionMethod and implement:
- fit(): learn components from a medicine's history
- predict(): score the current observation against fitted components
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any

import pandas as pd


@dataclass
class DetectionResult:
    """Result of scoring one observation"""

    is_anomaly: bool
    score: float  # 0 to 1
    expected_value: float | None
    actual_value: float
    details: dict[str, Any]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ModelComponents:
    """Fitted model components (serializable for caching)"""

    method_name: str
    entity_id: str  # medicine id
    metric_name: str  # stock or price
    components: dict[str, Any]
    trained_at: str
    metadata: dict[str, Any]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ModelComponents":
        return cls(**data)


class AnomalyDetectionMethod(ABC):
    """Abstract base class for all detection methods"""

    @abstractmethod
    def fit(self, history: Sequence[float], entity_id: str, metric_name: str) -> ModelComponents:
        """Fit on a history series

        Args:
            history: Observed values, oldest first, evenly spaced
            entity_id: Medicine identifier
            metric_name: Name of the metric (stock, price)

        Returns:
            ModelComponents with the fitted parameters

        Raises:
            ValueError: If the history is unusable
        """
        pass

    @abstractmethod
    def predict(
        self, current_value: float, model: ModelComponents, steps_ahead: int = 1
    ) -> DetectionResult:
        """Score an observation made `steps_ahead` periods after the fitted history"""
        pass

    @abstractmethod
    def get_config(self) -> dict[str, Any]:
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def min_points(self) -> int:
        """Shortest history fit() accepts"""
        pass

    def validate_history(self, history: Sequence[float]) -> pd.Series:
        """Return the history as a clean float series

        Raises:
            ValueError: If nothing usable remains
        """
        if history is None or len(history) == 0:
            raise ValueError("History is empty")

        series = pd.to_numeric(pd.Series(list(history), dtype="object"), errors="coerce")
        series = series.dropna().reset_index(drop=True).astype(float)
        if series.empty:
            raise ValueError("History has no valid values")
        return series

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(config={self.get_config()})"
