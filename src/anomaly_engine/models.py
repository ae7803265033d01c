"""
Data models and configuration for the medicine supply anomaly engine.
"""

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

NOT_SPECIFIED = "Not specified"


class DetectionType(str, Enum):
    """Which detector produced a finding"""

    RULE_BASED = "rule-based"
    MODEL_BASED = "model-based"


class EngineState(str, Enum):
    """Lifecycle of an AnomalyDetector"""

    STOPPED = "stopped"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    FAILED = "failed"


class BatchOutcome(str, Enum):
    """How a single tick ended"""

    SUCCESS = "success"
    PARTIAL = "partial"
    EMPTY = "empty"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class EngineConfig:
    """Configuration for the anomaly engine"""

    enable_rule_engine: bool = True
    enable_ml_models: bool = True
    processing_interval_seconds: float = 30.0
    alert_threshold: float = 0.7

    # Batch behavior
    batch_limit: int = 500  # Max data points fetched per tick
    persist_async: bool = True  # Hand anomalies to a worker pool instead of blocking the batch
    persist_workers: int = 2

    # Statistical model
    method_name: str = "stl_zscore"
    method_config: dict = field(
        default_factory=lambda: {
            "seasonal_period": 7,  # weekly pattern in daily snapshots
            "trend_period": 15,  # odd and > seasonal_period
            "z_score_threshold": 3.0,
            "min_points": 14,  # two full seasonal cycles
        }
    )
    metrics: list[str] = field(default_factory=lambda: ["stock", "price"])
    cache_ttl_seconds: int = 3600

    # PostgreSQL settings
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "medwatch"
    postgres_user: str = "medwatch"
    postgres_password: str = "medwatch_password"

    # Redis settings (model cache)
    use_model_cache: bool = True
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    # Alert delivery
    alert_transport: str = "log"  # 'log' or 'kafka'
    kafka_bootstrap_servers: str = "localhost:9092"
    alert_topic: str = "medicine-anomaly-alerts"

    def __post_init__(self):
        if self.processing_interval_seconds <= 0:
            raise ValueError(
                "processing_interval_seconds must be positive, "
                f"got {self.processing_interval_seconds}"
            )
        if not 0.0 <= self.alert_threshold <= 1.0:
            raise ValueError(f"alert_threshold must be within [0, 1], got {self.alert_threshold}")
        if self.alert_transport not in ("log", "kafka"):
            raise ValueError(f"Unknown alert transport '{self.alert_transport}'")


# Legacy document keys, as written by the original dashboard
_CAMEL_CASE_KEYS = {
    "medicineID": "medicine_id",
    "medicineName": "medicine_name",
    "genericName": "generic_name",
    "currentStock": "current_stock",
    "currentPrice": "current_price",
    "criticalThreshold": "critical_threshold",
    "averageMarketPrice": "average_market_price",
    "dailyConsumption": "daily_consumption",
    "stockHistory": "stock_history",
    "priceHistory": "price_history",
    "supplierDelay": "supplier_delay",
    "lastUpdatedAt": "last_updated_at",
    "causesOfShortage": "causes_of_shortage",
}


@dataclass(frozen=True)
class DataPoint:
    """One medicine's observed supply state at a point in time"""

    medicine_id: str
    medicine_name: Optional[str] = None
    generic_name: Optional[str] = None
    company: Optional[str] = None
    disease: Optional[str] = None
    current_stock: float = 0.0
    current_price: float = 0.0
    location: Optional[str] = None
    supplier: Optional[str] = None
    critical_threshold: float = 0.0
    average_market_price: Optional[float] = None
    daily_consumption: float = 0.0
    stock_history: tuple[float, ...] = ()  # oldest first
    price_history: tuple[float, ...] = ()  # oldest first
    supplier_delay: float = 0.0  # days
    last_updated_at: Any = None  # source timestamp, echoed back on acknowledgement
    description: Optional[str] = None
    causes_of_shortage: Optional[str] = None

    # Derived by the preprocessor
    decline_rate: Optional[float] = None
    days_of_supply: Optional[float] = None
    projected_stockout_date: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DataPoint":
        """Build from a database row or JSON document (snake_case or camelCase keys)"""
        known = cls.__dataclass_fields__.keys()
        values = {}
        for key, value in record.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name in known and value is not None:
                values[name] = value

        for series in ("stock_history", "price_history"):
            raw = values.get(series)
            if isinstance(raw, str):
                raw = json.loads(raw) if raw.strip() else []
            if raw is not None:
                values[series] = tuple(raw)

        if "medicine_id" not in values:
            raise ValueError("Record has no medicine id")
        values["medicine_id"] = str(values["medicine_id"])
        return cls(**values)


@dataclass
class RawFinding:
    """Detector output before normalization"""

    severity: Optional[str] = None
    message: Optional[str] = None
    description: Optional[str] = None
    details: Any = None  # mapping, JSON text, any other value, or None
    assigned_to: Optional[str] = None
    confidence: Optional[float] = None
    type: Optional[str] = None
    causes_of_shortages: Optional[str] = None
    data_point: Optional[DataPoint] = None


@dataclass
class ModelPrediction:
    """Model detector output for one data point"""

    is_anomaly: bool
    confidence: float = 0.0
    severity: Optional[str] = None
    anomaly_type: Optional[str] = None
    message: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    assigned_to: Optional[str] = None
    causes_of_shortages: Optional[str] = None


@dataclass
class Anomaly:
    """Canonical anomaly record, persisted once per finding"""

    detection_type: str
    severity: str
    message: str
    description: str
    confidence: float
    type: str
    details: dict[str, Any]
    medicine_data_id: Optional[str]
    disease: Optional[str]
    assigned_to: str = ""
    status: str = "active"
    timestamp: str = ""
    reviewed_at: Optional[str] = None

    def to_dict(self) -> dict:
        """Object form, used for alerts and events"""
        return asdict(self)

    def to_db_dict(self) -> dict:
        """Convert to dict for database insertion"""
        record = asdict(self)
        record["details"] = json.dumps(self.details, default=str)
        return record


@dataclass
class BatchRun:
    """Outcome of one tick of the detection pipeline"""

    batch_id: str
    started_at: str
    finished_at: Optional[str] = None
    data_points: int = 0
    outcome: BatchOutcome = BatchOutcome.SUCCESS
    anomalies_detected: int = 0
    alerts_sent: int = 0
    errors: list[str] = field(default_factory=list)

    def record_error(self, stage: str, error: Exception) -> None:
        self.errors.append(f"{stage}: {error}")
