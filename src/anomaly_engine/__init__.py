"""
Medicine Supply Anomaly Engine

Periodically scans medicine supply data (stock, price, consumption) and flags
anomalies with two independent strategies.

Architecture:
- Batch Orchestrator: lifecycle state machine firing one detection batch per tick
- Rule Detector: declarative supply rules evaluated per data point
- Model Detector: STL / z-score models scored over the whole batch
- Normalizer: turns every finding into one canonical Anomaly record
- Persistence + Alert Gate: stores each anomaly, alerts above a confidence threshold

Usage:
    python -m src.anomaly_engine.detect
"""

from .detector import AnomalyDetector
from .events import EngineEvent, ErrorEvent, EventBus
from .models import (
    Anomaly,
    BatchOutcome,
    BatchRun,
    DataPoint,
    DetectionType,
    EngineConfig,
    EngineState,
    ModelPrediction,
    RawFinding,
)
from .normalizer import normalize_details, normalize_finding

__all__ = [
    "AnomalyDetector",
    "Anomaly",
    "BatchOutcome",
    "BatchRun",
    "DataPoint",
    "DetectionType",
    "EngineConfig",
    "EngineEvent",
    "EngineState",
    "ErrorEvent",
    "EventBus",
    "ModelPrediction",
    "RawFinding",
    "normalize_details",
    "normalize_finding",
]
