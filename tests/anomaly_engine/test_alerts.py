"""
Tests for alert dispatchers.
"""

from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from src.anomaly_engine.alerts import (
    KafkaAlertDispatcher,
    LogAlertDispatcher,
    build_alert_dispatcher,
)
from src.anomaly_engine.errors import DispatchError
from src.anomaly_engine.models import RawFinding
from src.anomaly_engine.normalizer import normalize_finding


@pytest.fixture
def anomaly(make_data_point):
    return normalize_finding(
        "model-based",
        RawFinding(severity="high", confidence=0.9, data_point=make_data_point("MED-777")),
    )


@pytest.fixture
def mock_producer():
    return MagicMock()


class TestLogAlertDispatcher:
    """Tests for LogAlertDispatcher class."""

    def test_counts_alerts(self, anomaly):
        dispatcher = LogAlertDispatcher()

        dispatcher.send_alert(anomaly)
        dispatcher.send_alert(anomaly)

        assert dispatcher.sent == 2


class TestKafkaAlertDispatcher:
    """Tests for KafkaAlertDispatcher class."""

    def test_send_alert(self, engine_config, mock_producer, anomaly):
        dispatcher = KafkaAlertDispatcher(engine_config, producer=mock_producer)

        dispatcher.send_alert(anomaly)

        mock_producer.send.assert_called_once_with(
            "medicine-anomaly-alerts", key="MED-777", value=anomaly.to_dict()
        )

    def test_custom_topic(self, engine_config, mock_producer, anomaly):
        config = replace(engine_config, alert_topic="pharmacy-alerts")
        dispatcher = KafkaAlertDispatcher(config, producer=mock_producer)

        dispatcher.send_alert(anomaly)

        assert mock_producer.send.call_args[0][0] == "pharmacy-alerts"

    def test_send_failure_raises_dispatch_error(self, engine_config, mock_producer, anomaly):
        mock_producer.send.side_effect = Exception("NoBrokersAvailable")
        dispatcher = KafkaAlertDispatcher(engine_config, producer=mock_producer)

        with pytest.raises(DispatchError, match="MED-777"):
            dispatcher.send_alert(anomaly)

    def test_close_flushes(self, engine_config, mock_producer):
        dispatcher = KafkaAlertDispatcher(engine_config, producer=mock_producer)

        dispatcher.close()

        mock_producer.flush.assert_called_once()
        mock_producer.close.assert_called_once()

    @patch("src.anomaly_engine.alerts.KafkaProducer")
    def test_builds_producer_from_config(self, mock_producer_class, engine_config):
        config = replace(engine_config, kafka_bootstrap_servers="kafka:29092")

        KafkaAlertDispatcher(config)

        kwargs = mock_producer_class.call_args[1]
        assert kwargs["bootstrap_servers"] == "kafka:29092"
        assert kwargs["acks"] == "all"
        assert kwargs["key_serializer"]("MED-1") == b"MED-1"
        assert kwargs["key_serializer"](None) is None

    @patch("src.anomaly_engine.alerts.KafkaProducer")
    def test_producer_failure_propagates(self, mock_producer_class, engine_config):
        mock_producer_class.side_effect = Exception("NoBrokersAvailable")

        with pytest.raises(Exception, match="NoBrokersAvailable"):
            KafkaAlertDispatcher(engine_config)


class TestBuildAlertDispatcher:
    """Tests for build_alert_dispatcher."""

    def test_log_transport(self, engine_config):
        assert isinstance(build_alert_dispatcher(engine_config), LogAlertDispatcher)

    @patch("src.anomaly_engine.alerts.KafkaProducer")
    def test_kafka_transport(self, mock_producer_class, engine_config):
        dispatcher = build_alert_dispatcher(replace(engine_config, alert_transport="kafka"))

        assert isinstance(dispatcher, KafkaAlertDispatcher)
        assert dispatcher.producer is mock_producer_class.return_value
