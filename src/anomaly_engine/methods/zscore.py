"""
Plain z-score of the current value against the history distribution.

Used for short histories where a seasonal decomposition is not meaningful.
"""

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from .base import AnomalyDetectionMethod, DetectionResult, ModelComponents


@dataclass
class ZScoreConfig:
    z_score_threshold: float = 3.0
    min_points: int = 5
    min_std_ratio: float = 0.01


class ZScoreMethod(AnomalyDetectionMethod):
    """Mean / standard deviation baseline"""

    def __init__(self, config: dict):
        self.config = ZScoreConfig(**config)

    @property
    def name(self) -> str:
        return "zscore"

    @property
    def min_points(self) -> int:
        return self.config.min_points

    def get_config(self) -> dict[str, Any]:
        return asdict(self.config)

    def fit(self, history: Sequence[float], entity_id: str, metric_name: str) -> ModelComponents:
        ts = self.validate_history(history)
        if len(ts) < self.min_points:
            raise ValueError(f"Insufficient data points: {len(ts)} < {self.min_points}")

        mean = float(ts.mean())
        std = float(ts.std()) if len(ts) > 1 else 0.0
        std = max(std, self.config.min_std_ratio * abs(mean), 1e-9)

        return ModelComponents(
            method_name=self.name,
            entity_id=entity_id,
            metric_name=metric_name,
            components={"mean": mean, "std": std},
            trained_at=datetime.now(UTC).isoformat(),
            metadata={"n_training_points": len(ts)},
        )

    def predict(
        self, current_value: float, model: ModelComponents, steps_ahead: int = 1
    ) -> DetectionResult:
        mean = model.components["mean"]
        z_score = (current_value - mean) / model.components["std"]

        return DetectionResult(
            is_anomaly=abs(z_score) > self.config.z_score_threshold,
            score=min(1.0, abs(z_score) / 5.0),
            expected_value=mean,
            actual_value=float(current_value),
            details={
                "z_score": round(z_score, 4),
                "threshold": self.config.z_score_threshold,
            },
        )
