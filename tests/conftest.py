"""
Pytest configuration and shared fixtures.
"""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.anomaly_engine.detector import AnomalyDetector
from src.anomaly_engine.events import EngineEvent
from src.anomaly_engine.interfaces import (
    AlertDispatcher,
    DataSource,
    ModelDetector,
    PersistenceSink,
    Preprocessor,
    RuleDetector,
)
from src.anomaly_engine.models import DataPoint, EngineConfig, ModelPrediction


# Engine fixtures
@pytest.fixture
def engine_config():
    """Engine configuration with synchronous persistence and a long interval."""
    return EngineConfig(
        processing_interval_seconds=60.0,
        persist_async=False,
        use_model_cache=False,
    )


@pytest.fixture
def make_data_point():
    """Factory for healthy data points; override any field."""

    def _make(medicine_id="MED-001", **overrides):
        values = {
            "medicine_name": "Amoxicillin 500mg",
            "generic_name": "Amoxicillin",
            "company": "Acme Pharma",
            "disease": "Bacterial infection",
            "current_stock": 500.0,
            "current_price": 10.0,
            "location": "Central Warehouse",
            "supplier": "MedSupply Ltd",
            "critical_threshold": 100.0,
            "average_market_price": 10.0,
            "daily_consumption": 20.0,
            "stock_history": (560.0, 540.0, 520.0),
            "price_history": (10.0, 10.0, 10.0),
            "supplier_delay": 1.0,
        }
        values.update(overrides)
        return DataPoint(medicine_id=medicine_id, **values)

    return _make


@pytest.fixture
def collaborators():
    """Mocked collaborators; the preprocessor passes data through unchanged."""
    data_source = MagicMock(spec=DataSource)
    data_source.fetch_pending_data_points.return_value = []

    preprocessor = MagicMock(spec=Preprocessor)
    preprocessor.preprocess.side_effect = lambda points: list(points)

    rule_detector = MagicMock(spec=RuleDetector)
    rule_detector.evaluate.return_value = []

    model_detector = MagicMock(spec=ModelDetector)
    model_detector.predict.side_effect = lambda points: [
        ModelPrediction(is_anomaly=False) for _ in points
    ]

    return SimpleNamespace(
        data_source=data_source,
        preprocessor=preprocessor,
        persistence=MagicMock(spec=PersistenceSink),
        rule_detector=rule_detector,
        model_detector=model_detector,
        alert_dispatcher=MagicMock(spec=AlertDispatcher),
    )


@pytest.fixture
def build_detector(engine_config, collaborators):
    """Build an AnomalyDetector around the mocked collaborators."""

    def _build(**config_overrides):
        config = replace(engine_config, **config_overrides)
        return AnomalyDetector(
            config,
            data_source=collaborators.data_source,
            preprocessor=collaborators.preprocessor,
            persistence=collaborators.persistence,
            rule_detector=collaborators.rule_detector,
            model_detector=collaborators.model_detector,
            alert_dispatcher=collaborators.alert_dispatcher,
        )

    return _build


@pytest.fixture
def recorded_events():
    """Subscribe to every event of a detector and record (event, payload) pairs."""

    def _record(detector):
        events = []
        for event in EngineEvent:
            detector.events.subscribe(event, lambda payload, e=event: events.append((e, payload)))
        return events

    return _record
