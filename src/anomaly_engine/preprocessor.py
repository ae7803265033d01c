"""
Default preprocessor: cleans data points and derives supply metrics.
"""

from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import numpy as np
import pandas as pd
import structlog

from .errors import PreprocessError
from .interfaces import Preprocessor
from .models import DataPoint

logger = structlog.get_logger(__name__)

DECLINE_WINDOW = 3  # history points used for the current decline rate


def clean_series(values: Sequence) -> tuple[float, ...]:
    """Drop missing and non-numeric entries, keep order"""
    if not values:
        return ()
    series = pd.to_numeric(pd.Series(list(values), dtype="object"), errors="coerce")
    series = series.replace([np.inf, -np.inf], np.nan).dropna()
    return tuple(float(v) for v in series)


def decline_rate(stock_history: Sequence[float]) -> float | None:
    """Average per-period stock decline over the most recent points

    Returns None when there are fewer than three points.
    """
    if len(stock_history) < DECLINE_WINDOW:
        return None
    recent = stock_history[-DECLINE_WINDOW:]
    return (recent[0] - recent[-1]) / (DECLINE_WINDOW - 1)


def days_of_supply(current_stock: float, daily_consumption: float) -> float | None:
    if daily_consumption <= 0:
        return None
    return max(0.0, current_stock) / daily_consumption


def projected_stockout_date(
    current_stock: float, daily_consumption: float, now: datetime | None = None
) -> str | None:
    """Date stock runs out at the current consumption, None if not depleting"""
    if current_stock <= 0 or daily_consumption <= 0:
        return None
    days_remaining = int(current_stock // daily_consumption)
    return ((now or datetime.now(UTC)) + timedelta(days=days_remaining)).isoformat()


def _as_float(value, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return default if np.isnan(result) else result


class DataPreprocessor(Preprocessor):
    """Normalizes numeric fields and computes derived supply metrics"""

    def preprocess(self, data_points: Sequence[DataPoint]) -> list[DataPoint]:
        processed = []
        dropped = 0

        try:
            for point in data_points:
                if not point.medicine_id:
                    dropped += 1
                    continue
                processed.append(self._clean(point))
        except Exception as e:
            raise PreprocessError(f"Failed to preprocess batch: {e}") from e

        if dropped:
            logger.warning("Dropped data points without medicine id", dropped=dropped)

        logger.debug("Batch preprocessed", input=len(data_points), output=len(processed))
        return processed

    def _clean(self, point: DataPoint) -> DataPoint:
        stock = max(0.0, _as_float(point.current_stock))
        consumption = max(0.0, _as_float(point.daily_consumption))
        stock_history = clean_series(point.stock_history)
        average_price = point.average_market_price
        if average_price is not None:
            average_price = _as_float(average_price)

        return replace(
            point,
            current_stock=stock,
            current_price=max(0.0, _as_float(point.current_price)),
            critical_threshold=max(0.0, _as_float(point.critical_threshold)),
            average_market_price=average_price,
            daily_consumption=consumption,
            supplier_delay=max(0.0, _as_float(point.supplier_delay)),
            stock_history=stock_history,
            price_history=clean_series(point.price_history),
            decline_rate=decline_rate(stock_history),
            days_of_supply=days_of_supply(stock, consumption),
            projected_stockout_date=projected_stockout_date(stock, consumption),
        )
