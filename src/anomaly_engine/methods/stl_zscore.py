"""
STL + Z-Score anomaly detection over a medicine's history.

The history is decomposed into Trend + Seasonal + Residual with STL. The current
value is compared with the extrapolated trend plus the matching seasonal offset,
and the deviation is expressed as a z-score against the residual distribution.
"""

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

import numpy as np
import pandas as pd
import structlog
from statsmodels.tsa.seasonal import STL

from .base import AnomalyDetectionMethod, DetectionResult, ModelComponents

logger = structlog.get_logger(__name__)


@dataclass
class STLZScoreConfig:
    """Configuration for STL + Z-Score method"""

    seasonal_period: int = 7  # weekly cycle in daily snapshots
    trend_period: int = 15  # must be odd and > seasonal_period
    z_score_threshold: float = 3.0
    min_points: int = 14
    min_std_ratio: float = 0.01  # residual std floor, as a fraction of the trend level


class STLZScoreMethod(AnomalyDetectionMethod):
    """STL decomposition + Z-score on residuals"""

    def __init__(self, config: dict):
        self.config = STLZScoreConfig(**config)

    @property
    def name(self) -> str:
        return "stl_zscore"

    @property
    def min_points(self) -> int:
        return max(self.config.min_points, 2 * self.config.seasonal_period)

    def get_config(self) -> dict[str, Any]:
        return asdict(self.config)

    def fit(self, history: Sequence[float], entity_id: str, metric_name: str) -> ModelComponents:
        ts = self.validate_history(history)

        if len(ts) < self.min_points:
            raise ValueError(f"Insufficient data points: {len(ts)} < {self.min_points}")

        period = self.config.seasonal_period
        # STL requires odd smoothers, and a trend window longer than the period
        seasonal = period if period % 2 == 1 else period + 1
        trend = max(self.config.trend_period, period + 1)
        if trend % 2 == 0:
            trend += 1

        try:
            stl = STL(ts, period=period, seasonal=seasonal, trend=trend).fit()
        except Exception as e:
            logger.error("STL fit failed", entity_id=entity_id, metric=metric_name, error=str(e))
            raise

        trend_last = float(stl.trend.iloc[-1])
        residual_std = float(stl.resid.std())
        std_floor = max(self.config.min_std_ratio * abs(trend_last), 1e-9)

        components = {
            # Last seasonal cycle; index 0 is the phase of the next observation
            "seasonal_pattern": stl.seasonal.iloc[-period:].tolist(),
            "trend_last_value": trend_last,
            "trend_slope": self._compute_trend_slope(stl.trend),
            "residual_mean": float(stl.resid.mean()),
            "residual_std": max(residual_std, std_floor),
        }

        logger.debug(
            "STL model fitted",
            entity_id=entity_id,
            metric=metric_name,
            n_points=len(ts),
            residual_std=round(components["residual_std"], 4),
            trend_slope=round(components["trend_slope"], 5),
        )

        return ModelComponents(
            method_name=self.name,
            entity_id=entity_id,
            metric_name=metric_name,
            components=components,
            trained_at=datetime.now(UTC).isoformat(),
            metadata={
                "seasonal_period": period,
                "trend_period": trend,
                "n_training_points": len(ts),
            },
        )

    def predict(
        self, current_value: float, model: ModelComponents, steps_ahead: int = 1
    ) -> DetectionResult:
        comp = model.components

        trend_value = comp["trend_last_value"] + comp["trend_slope"] * steps_ahead
        pattern = comp["seasonal_pattern"]
        seasonal_value = pattern[(steps_ahead - 1) % len(pattern)]
        expected = trend_value + seasonal_value

        residual = current_value - expected
        z_score = (residual - comp["residual_mean"]) / comp["residual_std"]
        is_anomaly = abs(z_score) > self.config.z_score_threshold

        # z=3 -> 0.6, z>=5 -> 1.0
        score = min(1.0, abs(z_score) / 5.0)

        return DetectionResult(
            is_anomaly=bool(is_anomaly),
            score=float(score),
            expected_value=float(expected),
            actual_value=float(current_value),
            details={
                "z_score": round(float(z_score), 4),
                "residual": round(float(residual), 4),
                "trend": round(float(trend_value), 4),
                "seasonal": round(float(seasonal_value), 4),
                "threshold": self.config.z_score_threshold,
            },
        )

    def _compute_trend_slope(self, trend: pd.Series) -> float:
        """Slope of a linear fit on the last 20% of the trend (at least 10 points)"""
        n = max(10, len(trend) // 5)
        recent_trend = trend.iloc[-n:]

        x = np.arange(len(recent_trend))
        y = recent_trend.values
        slope = np.polyfit(x, y, 1)[0]

        return float(slope)
