"""
Tests for the AnomalyDetector lifecycle and batch procedure.
"""

import threading
import time

import pytest

from src.anomaly_engine.errors import (
    DispatchError,
    EvalError,
    FetchError,
    InitializationError,
    LoadError,
    PersistError,
    PredictError,
    PreprocessError,
)
from src.anomaly_engine.events import EngineEvent
from src.anomaly_engine.models import (
    BatchOutcome,
    DetectionType,
    EngineState,
    ModelPrediction,
    RawFinding,
)


def events_named(events, name):
    return [payload for event, payload in events if event == name]


def saved_anomalies(collaborators):
    return [c.args[0] for c in collaborators.persistence.save_anomaly.call_args_list]


def set_predictions(collaborators, predictions):
    collaborators.model_detector.predict.side_effect = None
    collaborators.model_detector.predict.return_value = predictions


class TestInitialization:
    """Tests for the Stopped -> Initializing -> Ready transition."""

    def test_initialize_loads_rules_and_models(
        self, build_detector, collaborators, recorded_events
    ):
        detector = build_detector()
        events = recorded_events(detector)

        assert detector.state == EngineState.STOPPED
        assert detector.initialize() is True

        assert detector.state == EngineState.READY
        collaborators.rule_detector.load_rules.assert_called_once()
        collaborators.model_detector.load_models.assert_called_once()
        assert events_named(events, EngineEvent.INITIALIZED) == [EngineState.READY]

    def test_models_not_loaded_when_disabled(self, build_detector, collaborators):
        detector = build_detector(enable_ml_models=False)

        assert detector.initialize() is True
        collaborators.rule_detector.load_rules.assert_called_once()
        collaborators.model_detector.load_models.assert_not_called()

    def test_load_failure_surfaces_error_event(
        self, build_detector, collaborators, recorded_events
    ):
        collaborators.rule_detector.load_rules.side_effect = LoadError("bad rules")
        detector = build_detector()
        events = recorded_events(detector)

        # Must not raise
        assert detector.initialize() is False

        assert detector.state == EngineState.FAILED
        errors = events_named(events, EngineEvent.ERROR)
        assert len(errors) == 1
        assert errors[0].stage == "initialize"
        assert isinstance(errors[0].error, InitializationError)
        assert isinstance(errors[0].error.__cause__, LoadError)
        assert events_named(events, EngineEvent.INITIALIZED) == []

    def test_failed_engine_does_not_start_or_retry(self, build_detector, collaborators):
        collaborators.model_detector.load_models.side_effect = LoadError("no artifacts")
        detector = build_detector()

        detector.start()
        assert detector.state == EngineState.FAILED
        detector.start()

        assert detector.state == EngineState.FAILED
        assert detector.is_running is False
        collaborators.model_detector.load_models.assert_called_once()

    def test_missing_rule_detector_fails_initialization(self, engine_config, collaborators):
        from src.anomaly_engine.detector import AnomalyDetector

        detector = AnomalyDetector(
            engine_config,
            data_source=collaborators.data_source,
            preprocessor=collaborators.preprocessor,
            persistence=collaborators.persistence,
            model_detector=collaborators.model_detector,
        )

        assert detector.initialize() is False
        assert detector.state == EngineState.FAILED


class TestStartStop:
    """Tests for the Ready <-> Running transitions."""

    def test_start_initializes_and_runs(self, build_detector, recorded_events):
        detector = build_detector()
        events = recorded_events(detector)

        detector.start()
        try:
            assert detector.state == EngineState.RUNNING
            assert detector.is_running is True
            assert events_named(events, EngineEvent.STARTED) == [EngineState.RUNNING]
        finally:
            detector.stop()

    def test_first_tick_waits_one_interval(self, build_detector, collaborators):
        detector = build_detector()

        detector.start()
        try:
            collaborators.data_source.fetch_pending_data_points.assert_not_called()
        finally:
            detector.stop()

    def test_double_start_keeps_single_timer(self, build_detector, recorded_events):
        detector = build_detector()
        events = recorded_events(detector)

        detector.start()
        timer = detector._timer
        detector.start()
        try:
            assert detector._timer is timer
            assert timer.is_alive is True
            assert len(events_named(events, EngineEvent.STARTED)) == 1
        finally:
            detector.stop()

    def test_stop_when_not_running_is_noop(self, build_detector, recorded_events):
        detector = build_detector()
        events = recorded_events(detector)

        detector.stop()

        assert detector.state == EngineState.STOPPED
        assert events_named(events, EngineEvent.STOPPED) == []

    def test_stop_cancels_timer_and_is_idempotent(self, build_detector, recorded_events):
        detector = build_detector()
        events = recorded_events(detector)

        detector.start()
        timer = detector._timer
        detector.stop()
        detector.stop()

        assert detector.state == EngineState.STOPPED
        assert detector._timer is None
        timer.cancel(wait=True, timeout=2)
        assert timer.is_alive is False
        assert len(events_named(events, EngineEvent.STOPPED)) == 1

    def test_restart_does_not_reload_rules(self, build_detector, collaborators):
        detector = build_detector()

        detector.start()
        detector.stop()
        detector.start()
        try:
            assert detector.state == EngineState.RUNNING
            collaborators.rule_detector.load_rules.assert_called_once()
        finally:
            detector.stop()

    def test_ticks_run_batches(self, build_detector, collaborators):
        fetched = threading.Event()

        def fetch():
            fetched.set()
            return []

        collaborators.data_source.fetch_pending_data_points.side_effect = fetch
        detector = build_detector(processing_interval_seconds=0.05)

        detector.start()
        try:
            assert fetched.wait(timeout=2)
        finally:
            detector.stop()


class TestProcessBatch:
    """Tests for the batch procedure."""

    def test_not_initialized_does_nothing(self, build_detector, collaborators):
        detector = build_detector()

        run = detector.process_batch()

        assert run.outcome == BatchOutcome.FAILED
        collaborators.data_source.fetch_pending_data_points.assert_not_called()

    def test_empty_batch_emits_nothing(self, build_detector, collaborators, recorded_events):
        detector = build_detector()
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        assert run.outcome == BatchOutcome.EMPTY
        assert run.anomalies_detected == 0
        assert events_named(events, EngineEvent.BATCH_PROCESSED) == []
        collaborators.preprocessor.preprocess.assert_not_called()
        collaborators.persistence.save_anomaly.assert_not_called()

    def test_fetch_error_fails_batch(self, build_detector, collaborators, recorded_events):
        collaborators.data_source.fetch_pending_data_points.side_effect = FetchError("db down")
        detector = build_detector()
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        assert run.outcome == BatchOutcome.FAILED
        assert [e.stage for e in events_named(events, EngineEvent.ERROR)] == ["fetch"]
        assert events_named(events, EngineEvent.BATCH_PROCESSED) == []

    def test_preprocess_error_aborts_batch(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.preprocessor.preprocess.side_effect = PreprocessError("bad batch")
        detector = build_detector()
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        assert run.outcome == BatchOutcome.FAILED
        assert [e.stage for e in events_named(events, EngineEvent.ERROR)] == ["preprocess"]
        assert events_named(events, EngineEvent.BATCH_PROCESSED) == []
        collaborators.rule_detector.evaluate.assert_not_called()
        collaborators.model_detector.predict.assert_not_called()

    @pytest.mark.parametrize(
        "severity,expected",
        [("critical", 1.0), ("high", 0.8), ("medium", 0.8), ("low", 0.8), (None, 0.8)],
    )
    def test_rule_confidence(
        self, build_detector, collaborators, make_data_point, severity, expected
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [
            RawFinding(severity=severity, confidence=0.1)
        ]
        detector = build_detector(enable_ml_models=False)
        detector.initialize()

        detector.process_batch()

        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.confidence == expected
        assert anomaly.detection_type == DetectionType.RULE_BASED.value

    def test_model_scenario_single_anomaly_and_alert(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        points = [make_data_point(f"MED-00{i}") for i in range(1, 4)]
        collaborators.data_source.fetch_pending_data_points.return_value = points
        set_predictions(
            collaborators,
            [
                ModelPrediction(is_anomaly=False),
                ModelPrediction(is_anomaly=True, confidence=0.9),
                ModelPrediction(is_anomaly=False),
            ],
        )
        detector = build_detector(enable_rule_engine=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        collaborators.model_detector.predict.assert_called_once_with(points)
        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.detection_type == "model-based"
        assert anomaly.confidence == 0.9
        assert anomaly.medicine_data_id == "MED-002"
        collaborators.alert_dispatcher.send_alert.assert_called_once_with(anomaly)
        assert events_named(events, EngineEvent.ANOMALY_DETECTED) == [anomaly]

        (batch,) = events_named(events, EngineEvent.BATCH_PROCESSED)
        assert batch is run
        assert run.outcome == BatchOutcome.SUCCESS
        assert run.data_points == 3
        assert run.anomalies_detected == 1
        assert run.alerts_sent == 1

    @pytest.mark.parametrize(
        "confidence,alerts",
        [(0.7, 1), (0.95, 1), (0.69, 0), (0.0, 0)],
    )
    def test_alert_threshold_is_inclusive(
        self, build_detector, collaborators, make_data_point, confidence, alerts
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        set_predictions(collaborators, [ModelPrediction(is_anomaly=True, confidence=confidence)])
        detector = build_detector(enable_rule_engine=False)
        detector.initialize()

        detector.process_batch()

        collaborators.persistence.save_anomaly.assert_called_once()
        assert collaborators.alert_dispatcher.send_alert.call_count == alerts

    def test_rule_error_isolated_per_data_point(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        points = [make_data_point("MED-001"), make_data_point("MED-002")]
        collaborators.data_source.fetch_pending_data_points.return_value = points
        collaborators.rule_detector.evaluate.side_effect = [
            EvalError("broken rule"),
            [RawFinding(severity="high")],
        ]
        detector = build_detector(enable_ml_models=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.medicine_data_id == "MED-002"
        assert run.outcome == BatchOutcome.PARTIAL
        errors = events_named(events, EngineEvent.ERROR)
        assert [e.stage for e in errors] == ["rules"]
        assert errors[0].context["medicine_id"] == "MED-001"
        assert len(events_named(events, EngineEvent.BATCH_PROCESSED)) == 1

    def test_model_error_does_not_suppress_rules(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="critical")]
        collaborators.model_detector.predict.side_effect = PredictError("model crashed")
        detector = build_detector()
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.detection_type == "rule-based"
        assert run.outcome == BatchOutcome.PARTIAL
        assert [e.stage for e in events_named(events, EngineEvent.ERROR)] == ["models"]

    def test_prediction_count_mismatch_is_model_error(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [
            make_data_point("MED-001"),
            make_data_point("MED-002"),
        ]
        set_predictions(collaborators, [ModelPrediction(is_anomaly=True, confidence=0.9)])
        detector = build_detector(enable_rule_engine=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        collaborators.persistence.save_anomaly.assert_not_called()
        (error,) = events_named(events, EngineEvent.ERROR)
        assert error.stage == "models"
        assert isinstance(error.error, PredictError)
        assert run.outcome == BatchOutcome.PARTIAL

    def test_persist_failure_isolated_per_finding(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [
            RawFinding(severity="critical", type="out_of_stock"),
            RawFinding(severity="high", type="price_spike"),
        ]
        collaborators.persistence.save_anomaly.side_effect = [PersistError("disk full"), None]
        detector = build_detector(enable_ml_models=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        assert collaborators.persistence.save_anomaly.call_count == 2
        # The anomaly was validly detected, so it is still announced and alerted
        assert len(events_named(events, EngineEvent.ANOMALY_DETECTED)) == 2
        assert collaborators.alert_dispatcher.send_alert.call_count == 2
        assert [e.stage for e in events_named(events, EngineEvent.ERROR)] == ["persist"]
        assert run.anomalies_detected == 2

    def test_alert_failure_isolated_per_finding(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [
            RawFinding(severity="critical"),
            RawFinding(severity="critical"),
        ]
        collaborators.alert_dispatcher.send_alert.side_effect = [DispatchError("smtp"), None]
        detector = build_detector(enable_ml_models=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        assert collaborators.persistence.save_anomaly.call_count == 2
        assert run.alerts_sent == 1
        assert [e.stage for e in events_named(events, EngineEvent.ERROR)] == ["alert"]

    def test_unparseable_confidence_isolated_per_finding(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        points = [make_data_point("MED-001"), make_data_point("MED-002")]
        collaborators.data_source.fetch_pending_data_points.return_value = points
        set_predictions(
            collaborators,
            [
                ModelPrediction(is_anomaly=True, confidence="high"),
                ModelPrediction(is_anomaly=True, confidence=0.9),
            ],
        )
        detector = build_detector(enable_rule_engine=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.medicine_data_id == "MED-002"
        (error,) = events_named(events, EngineEvent.ERROR)
        assert error.stage == "normalize"
        assert error.context["medicine_id"] == "MED-001"
        assert run.anomalies_detected == 1
        assert run.outcome == BatchOutcome.PARTIAL

    def test_model_prediction_fields_reach_anomaly(
        self, build_detector, collaborators, make_data_point
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        set_predictions(
            collaborators,
            [
                ModelPrediction(
                    is_anomaly=True,
                    confidence=0.9,
                    description="Stock level 4.2 std below trend",
                    assigned_to="pharmacy-ops",
                    causes_of_shortages="Port closure",
                )
            ],
        )
        detector = build_detector(enable_rule_engine=False)
        detector.initialize()

        detector.process_batch()

        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.description == "Stock level 4.2 std below trend"
        assert anomaly.assigned_to == "pharmacy-ops"
        assert anomaly.details["causesOfShortages"] == "Port closure"

    def test_both_detectors_contribute(self, build_detector, collaborators, make_data_point):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="high")]
        set_predictions(collaborators, [ModelPrediction(is_anomaly=True, confidence=0.5)])
        detector = build_detector()
        detector.initialize()

        run = detector.process_batch()

        types = [a.detection_type for a in saved_anomalies(collaborators)]
        assert types == ["rule-based", "model-based"]
        assert run.anomalies_detected == 2
        # 0.8 >= 0.7 alerts, 0.5 does not
        assert run.alerts_sent == 1

    def test_overlapping_batch_is_skipped(self, build_detector, collaborators, make_data_point):
        detector = build_detector()
        detector.initialize()
        inner_runs = []

        def fetch():
            inner_runs.append(detector.process_batch())
            return []

        collaborators.data_source.fetch_pending_data_points.side_effect = fetch

        outer = detector.process_batch()

        assert outer.outcome == BatchOutcome.EMPTY
        assert [r.outcome for r in inner_runs] == [BatchOutcome.SKIPPED]
        assert collaborators.data_source.fetch_pending_data_points.call_count == 1

    def test_preprocessed_points_reach_detectors(
        self, build_detector, collaborators, make_data_point
    ):
        raw = make_data_point(current_stock=-5.0)
        cleaned = make_data_point(current_stock=0.0)
        collaborators.data_source.fetch_pending_data_points.return_value = [raw]
        collaborators.preprocessor.preprocess.side_effect = None
        collaborators.preprocessor.preprocess.return_value = [cleaned]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="critical")]
        detector = build_detector()
        detector.initialize()

        detector.process_batch()

        collaborators.rule_detector.evaluate.assert_called_once_with(cleaned)
        collaborators.model_detector.predict.assert_called_once_with([cleaned])
        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.disease == cleaned.disease


class TestAcknowledgement:
    """Tests for marking fetched data points processed."""

    def test_points_acknowledged_after_detection(
        self, build_detector, collaborators, make_data_point
    ):
        points = [make_data_point("MED-001"), make_data_point("MED-002")]
        collaborators.data_source.fetch_pending_data_points.return_value = points
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="high")]
        detector = build_detector(enable_ml_models=False)
        detector.initialize()
        order = []
        collaborators.persistence.save_anomaly.side_effect = lambda a: order.append("save")
        collaborators.data_source.mark_processed.side_effect = lambda p: order.append("ack")

        run = detector.process_batch()

        collaborators.data_source.mark_processed.assert_called_once_with(points)
        assert order == ["save", "save", "ack"]
        assert run.outcome == BatchOutcome.SUCCESS

    def test_empty_batch_acknowledges_nothing(self, build_detector, collaborators):
        detector = build_detector()
        detector.initialize()

        detector.process_batch()

        collaborators.data_source.mark_processed.assert_not_called()

    def test_preprocess_failure_leaves_points_for_next_tick(
        self, build_detector, collaborators, make_data_point
    ):
        points = [make_data_point("MED-001")]
        collaborators.data_source.fetch_pending_data_points.return_value = points
        collaborators.preprocessor.preprocess.side_effect = [
            PreprocessError("bad batch"),
            list(points),
        ]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="critical")]
        detector = build_detector(enable_ml_models=False)
        detector.initialize()

        first = detector.process_batch()

        assert first.outcome == BatchOutcome.FAILED
        collaborators.data_source.mark_processed.assert_not_called()

        second = detector.process_batch()

        assert second.outcome == BatchOutcome.SUCCESS
        (anomaly,) = saved_anomalies(collaborators)
        assert anomaly.medicine_data_id == "MED-001"
        collaborators.data_source.mark_processed.assert_called_once_with(points)

    def test_fetch_failure_acknowledges_nothing(self, build_detector, collaborators):
        collaborators.data_source.fetch_pending_data_points.side_effect = FetchError("db down")
        detector = build_detector()
        detector.initialize()

        detector.process_batch()

        collaborators.data_source.mark_processed.assert_not_called()

    def test_partial_batch_is_still_acknowledged(
        self, build_detector, collaborators, make_data_point
    ):
        points = [make_data_point()]
        collaborators.data_source.fetch_pending_data_points.return_value = points
        collaborators.model_detector.predict.side_effect = PredictError("model crashed")
        detector = build_detector()
        detector.initialize()

        run = detector.process_batch()

        assert run.outcome == BatchOutcome.PARTIAL
        collaborators.data_source.mark_processed.assert_called_once_with(points)

    def test_acknowledge_failure_makes_batch_partial(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="high")]
        collaborators.data_source.mark_processed.side_effect = FetchError("lock timeout")
        detector = build_detector(enable_ml_models=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()

        collaborators.persistence.save_anomaly.assert_called_once()
        assert [e.stage for e in events_named(events, EngineEvent.ERROR)] == ["acknowledge"]
        assert run.outcome == BatchOutcome.PARTIAL
        assert len(events_named(events, EngineEvent.BATCH_PROCESSED)) == 1


class TestAsyncPersistence:
    """Tests for fire-and-forget persistence."""

    def test_close_drains_pending_saves(self, build_detector, collaborators, make_data_point):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="high")]
        detector = build_detector(persist_async=True, enable_ml_models=False)
        detector.initialize()

        detector.process_batch()
        detector.close()

        collaborators.persistence.save_anomaly.assert_called_once()

    def test_async_persist_failure_is_reported(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [RawFinding(severity="high")]
        collaborators.persistence.save_anomaly.side_effect = PersistError("timeout")
        detector = build_detector(persist_async=True, enable_ml_models=False)
        detector.initialize()
        events = recorded_events(detector)

        run = detector.process_batch()
        detector.close()

        (error,) = events_named(events, EngineEvent.ERROR)
        assert error.stage == "persist"
        assert error.context["medicine_id"] == "MED-001"
        # Reported after the batch finished, so the batch itself succeeded
        assert run.outcome == BatchOutcome.SUCCESS
        assert collaborators.alert_dispatcher.send_alert.call_count == 1

    def test_close_waits_for_in_flight_batch(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [
            RawFinding(severity="critical", type="out_of_stock"),
            RawFinding(severity="critical", type="below_critical_threshold"),
            RawFinding(severity="critical", type="low_days_of_supply"),
        ]
        collaborators.persistence.save_anomaly.side_effect = lambda anomaly: time.sleep(0.05)
        detector = build_detector(persist_async=True, enable_ml_models=False)
        detector.initialize()
        events = recorded_events(detector)
        closer = threading.Thread(target=detector.close)
        blocked = []

        def first_alert(anomaly):
            if collaborators.alert_dispatcher.send_alert.call_count == 1:
                closer.start()
                closer.join(timeout=0.2)
                blocked.append(closer.is_alive())

        collaborators.alert_dispatcher.send_alert.side_effect = first_alert

        run = detector.process_batch()
        closer.join(timeout=5)

        assert blocked == [True]
        assert not closer.is_alive()
        assert run.outcome == BatchOutcome.SUCCESS
        assert run.anomalies_detected == 3
        assert run.alerts_sent == 3
        assert collaborators.persistence.save_anomaly.call_count == 3
        assert events_named(events, EngineEvent.ERROR) == []

    def test_submit_after_shutdown_is_persist_error(
        self, build_detector, collaborators, make_data_point, recorded_events
    ):
        collaborators.data_source.fetch_pending_data_points.return_value = [make_data_point()]
        collaborators.rule_detector.evaluate.return_value = [
            RawFinding(severity="critical"),
            RawFinding(severity="critical"),
        ]
        detector = build_detector(persist_async=True, enable_ml_models=False)
        detector.initialize()
        detector._executor.shutdown(wait=True)
        events = recorded_events(detector)

        run = detector.process_batch()

        errors = events_named(events, EngineEvent.ERROR)
        assert [e.stage for e in errors] == ["persist", "persist"]
        assert errors[0].context["medicine_id"] == "MED-001"
        # Later findings are still announced and alerted
        assert len(events_named(events, EngineEvent.ANOMALY_DETECTED)) == 2
        assert collaborators.alert_dispatcher.send_alert.call_count == 2
        assert run.outcome == BatchOutcome.PARTIAL

    def test_close_closes_collaborators_once(self, build_detector, collaborators):
        detector = build_detector()
        detector.persistence = detector.data_source
        calls = []
        detector.data_source.close = lambda: calls.append("closed")

        detector.close()

        assert calls == ["closed"]
