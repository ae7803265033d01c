"""
Alert dispatchers for anomalies above the confidence threshold.
"""

import json

import structlog
from kafka import KafkaProducer

from .errors import DispatchError
from .interfaces import AlertDispatcher
from .models import Anomaly, EngineConfig

logger = structlog.get_logger(__name__)


class LogAlertDispatcher(AlertDispatcher):
    """Writes alerts to the structured log"""

    def __init__(self):
        self.sent = 0

    def send_alert(self, anomaly: Anomaly) -> None:
        self.sent += 1
        logger.warning(
            "ALERT",
            medicine_id=anomaly.medicine_data_id,
            disease=anomaly.disease,
            severity=anomaly.severity,
            confidence=round(anomaly.confidence, 3),
            type=anomaly.type,
            message=anomaly.message,
        )


class KafkaAlertDispatcher(AlertDispatcher):
    """Publishes alerts as JSON to a Kafka topic, keyed by medicine id"""

    def __init__(self, config: EngineConfig, producer: KafkaProducer | None = None):
        self.topic = config.alert_topic
        try:
            self.producer = producer or KafkaProducer(
                bootstrap_servers=config.kafka_bootstrap_servers,
                key_serializer=lambda k: k.encode("utf-8") if k else None,
                value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
                acks="all",
            )
            logger.info(
                "Kafka alert producer initialized",
                bootstrap_servers=config.kafka_bootstrap_servers,
                topic=self.topic,
            )
        except Exception as e:
            logger.error("Failed to initialize Kafka producer", error=str(e))
            raise

    def send_alert(self, anomaly: Anomaly) -> None:
        try:
            self.producer.send(self.topic, key=anomaly.medicine_data_id, value=anomaly.to_dict())
        except Exception as e:
            raise DispatchError(
                f"Failed to publish alert for medicine {anomaly.medicine_data_id}: {e}"
            ) from e

        logger.debug("Alert published", topic=self.topic, medicine_id=anomaly.medicine_data_id)

    def close(self):
        self.producer.flush()
        self.producer.close()
        logger.info("Kafka alert producer closed")


def build_alert_dispatcher(config: EngineConfig) -> AlertDispatcher:
    if config.alert_transport == "kafka":
        return KafkaAlertDispatcher(config)
    return LogAlertDispatcher()
