"""
Default model detector: per-medicine statistical models over stock and price history.

Models are fitted lazily from each data point's own history and cached in Redis
so later ticks reuse them until the TTL expires.
"""

from collections.abc import Sequence

import structlog

from .cache import RedisCache
from .errors import LoadError, PredictError
from .interfaces import ModelDetector
from .methods import AnomalyDetectionMethod, DetectionResult, ModelComponents, get_method
from .models import DataPoint, EngineConfig, ModelPrediction

logger = structlog.get_logger(__name__)

# metric name -> (current value attribute, history attribute)
METRIC_FIELDS = {
    "stock": ("current_stock", "stock_history"),
    "price": ("current_price", "price_history"),
}


def severity_from_score(score: float) -> str:
    """Map a 0-1 anomaly score to a severity level"""
    if score >= 0.8:
        return "critical"
    elif score >= 0.6:
        return "high"
    elif score >= 0.4:
        return "medium"
    else:
        return "low"


class ModelManager(ModelDetector):
    """Scores batches of data points with the configured detection method"""

    def __init__(self, config: EngineConfig, cache: RedisCache | None = None):
        self.config = config
        self.cache = cache
        self.method: AnomalyDetectionMethod | None = None

        self.stats = {
            "predictions": 0,
            "anomalies": 0,
            "models_fitted": 0,
            "cache_hits": 0,
            "insufficient_history": 0,
        }

    def load_models(self) -> None:
        unknown = [m for m in self.config.metrics if m not in METRIC_FIELDS]
        if unknown:
            raise LoadError(f"Unknown metrics {unknown}. Available: {list(METRIC_FIELDS)}")

        try:
            self.method = get_method(self.config.method_name, self.config.method_config)
        except (ValueError, TypeError) as e:
            raise LoadError(f"Cannot load method '{self.config.method_name}': {e}") from e

        if self.cache is not None:
            try:
                self.cache.ping()
            except Exception as e:
                raise LoadError(f"Model cache unavailable: {e}") from e

        logger.info(
            "Models loaded",
            method=self.method.name,
            metrics=self.config.metrics,
            cache=type(self.cache).__name__ if self.cache else None,
        )

    def predict(self, data_points: Sequence[DataPoint]) -> list[ModelPrediction]:
        if self.method is None:
            raise PredictError("Models not loaded")

        try:
            predictions = [self._predict_one(point) for point in data_points]
        except Exception as e:
            raise PredictError(f"Model scoring failed: {e}") from e

        anomalies = sum(1 for p in predictions if p.is_anomaly)
        self.stats["predictions"] += len(predictions)
        self.stats["anomalies"] += anomalies
        logger.debug("Batch scored", data_points=len(predictions), anomalies=anomalies)
        return predictions

    def _predict_one(self, point: DataPoint) -> ModelPrediction:
        results: dict[str, DetectionResult] = {}

        for metric in self.config.metrics:
            value_attr, history_attr = METRIC_FIELDS[metric]
            history = getattr(point, history_attr)

            model = self._get_model(point.medicine_id, metric, history)
            if model is None:
                continue

            trained_on = model.metadata.get("n_training_points", len(history))
            steps_ahead = max(1, len(history) - trained_on + 1)
            results[metric] = self.method.predict(getattr(point, value_attr), model, steps_ahead)

        if not results:
            return ModelPrediction(is_anomaly=False, confidence=0.0)

        anomalous = {m: r for m, r in results.items() if r.is_anomaly}
        candidates = anomalous or results
        metric, result = max(candidates.items(), key=lambda item: item[1].score)

        details = {
            "metric": metric,
            "actualValue": result.actual_value,
            "expectedValue": result.expected_value,
            **result.details,
        }

        if not anomalous:
            return ModelPrediction(is_anomaly=False, confidence=result.score, details=details)

        label = point.medicine_name or point.medicine_id
        return ModelPrediction(
            is_anomaly=True,
            confidence=result.score,
            severity=severity_from_score(result.score),
            anomaly_type=f"{self.method.name}_{metric}",
            message=f"Unusual {metric} level for {label}",
            details=details,
        )

    def _get_model(
        self, medicine_id: str, metric: str, history: Sequence[float]
    ) -> ModelComponents | None:
        if self.cache is not None:
            cached = self.cache.load_model(medicine_id, metric, self.method.name)
            if cached is not None:
                self.stats["cache_hits"] += 1
                return cached

        if len(history) < self.method.min_points:
            self.stats["insufficient_history"] += 1
            logger.debug(
                "Insufficient history, skipping",
                medicine_id=medicine_id,
                metric=metric,
                points=len(history),
                required=self.method.min_points,
            )
            return None

        try:
            model = self.method.fit(history, medicine_id, metric)
        except ValueError as e:
            logger.warning(
                "Model fit rejected history", medicine_id=medicine_id, metric=metric, error=str(e)
            )
            return None

        self.stats["models_fitted"] += 1
        if self.cache is not None:
            self.cache.save_model(model)
        return model

    def close(self):
        if self.cache is not None:
            self.cache.close()
