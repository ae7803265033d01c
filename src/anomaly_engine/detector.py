"""
Batch orchestrator for medicine supply anomaly detection.

Owns the engine lifecycle (stopped -> initializing -> ready -> running -> stopped),
fires one detection batch per tick, fans each batch out to the rule and model
detectors, and turns every finding into a persisted, optionally alerted, Anomaly.
"""

import threading
import uuid
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import UTC, datetime
from functools import partial
from typing import Any

import structlog

from .errors import InitializationError, PredictError
from .events import EngineEvent, ErrorEvent, EventBus
from .interfaces import (
    AlertDispatcher,
    DataSource,
    ModelDetector,
    PersistenceSink,
    Preprocessor,
    RuleDetector,
)
from .models import (
    Anomaly,
    BatchOutcome,
    BatchRun,
    DataPoint,
    DetectionType,
    EngineConfig,
    EngineState,
    RawFinding,
)
from .normalizer import normalize_finding
from .scheduler import PeriodicTimer

logger = structlog.get_logger(__name__)

CRITICAL_RULE_CONFIDENCE = 1.0
DEFAULT_RULE_CONFIDENCE = 0.8


def rule_confidence(severity: str | None) -> float:
    """Rules signal severity, not probability: critical findings are certain"""
    return CRITICAL_RULE_CONFIDENCE if severity == "critical" else DEFAULT_RULE_CONFIDENCE


def _utcnow() -> str:
    return datetime.now(UTC).isoformat()


class AnomalyDetector:
    """Periodic anomaly detection engine"""

    def __init__(
        self,
        config: EngineConfig,
        data_source: DataSource,
        preprocessor: Preprocessor,
        persistence: PersistenceSink,
        rule_detector: RuleDetector | None = None,
        model_detector: ModelDetector | None = None,
        alert_dispatcher: AlertDispatcher | None = None,
        events: EventBus | None = None,
    ):
        self.config = config
        self.data_source = data_source
        self.preprocessor = preprocessor
        self.persistence = persistence
        self.rule_detector = rule_detector
        self.model_detector = model_detector
        self.alert_dispatcher = alert_dispatcher
        self.events = events or EventBus()

        self._state = EngineState.STOPPED
        self._initialized = False
        self._timer: PeriodicTimer | None = None
        self._state_lock = threading.RLock()
        self._batch_lock = threading.Lock()
        self._batch_thread: threading.Thread | None = None

        self._executor: ThreadPoolExecutor | None = None
        if config.persist_async:
            self._executor = ThreadPoolExecutor(
                max_workers=config.persist_workers, thread_name_prefix="anomaly-persist"
            )

        logger.info(
            "Anomaly detector created",
            rule_engine=config.enable_rule_engine,
            ml_models=config.enable_ml_models,
            interval_seconds=config.processing_interval_seconds,
            alert_threshold=config.alert_threshold,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    # ========================================
    # Lifecycle
    # ========================================

    def initialize(self) -> bool:
        """Load rules and, when enabled, model artifacts

        Failures move the engine to FAILED and are published as an ERROR event;
        nothing is raised and nothing is retried.

        Returns:
            True once the engine is ready
        """
        with self._state_lock:
            if self._initialized:
                return True
            if self._state not in (EngineState.STOPPED, EngineState.FAILED):
                return False
            self._state = EngineState.INITIALIZING

        logger.info("Initializing anomaly detection engine")

        try:
            self._load_detectors()
        except Exception as e:
            error = e if isinstance(e, InitializationError) else InitializationError(str(e))
            if error is not e:
                error.__cause__ = e
            with self._state_lock:
                self._state = EngineState.FAILED
            logger.error("Failed to initialize anomaly detection engine", error=str(error))
            self.events.emit(EngineEvent.ERROR, ErrorEvent(stage="initialize", error=error))
            return False

        with self._state_lock:
            self._initialized = True
            self._state = EngineState.READY
        logger.info("Anomaly detection engine initialized")
        self.events.emit(EngineEvent.INITIALIZED, EngineState.READY)
        return True

    def _load_detectors(self):
        if self.config.enable_rule_engine and self.rule_detector is None:
            raise InitializationError("Rule engine enabled but no rule detector configured")
        if self.config.enable_ml_models and self.model_detector is None:
            raise InitializationError("ML models enabled but no model detector configured")

        if self.rule_detector is not None:
            self.rule_detector.load_rules()
        if self.config.enable_ml_models:
            self.model_detector.load_models()

    def start(self):
        """Arm the periodic timer. The first batch runs one interval from now."""
        with self._state_lock:
            if self._state == EngineState.RUNNING:
                logger.info("Anomaly detection engine is already running")
                return
            if self._state == EngineState.FAILED:
                logger.warning("Anomaly detection engine failed to initialize, not starting")
                return
            needs_init = not self._initialized

        if needs_init and not self.initialize():
            logger.warning("Anomaly detection engine not started", state=self._state.value)
            return

        with self._state_lock:
            if self._state == EngineState.RUNNING:
                return
            timer = PeriodicTimer(
                self.config.processing_interval_seconds, self._on_tick, name="anomaly-batch"
            )
            timer.start()
            self._timer = timer
            self._state = EngineState.RUNNING

        logger.info(
            "Anomaly detection engine started",
            interval_seconds=self.config.processing_interval_seconds,
        )
        self.events.emit(EngineEvent.STARTED, EngineState.RUNNING)

    def stop(self):
        """Cancel future ticks; a batch already in flight runs to completion"""
        with self._state_lock:
            if self._state != EngineState.RUNNING:
                return
            timer, self._timer = self._timer, None
            self._state = EngineState.STOPPED

        if timer is not None:
            timer.cancel()
        logger.info("Anomaly detection engine stopped")
        self.events.emit(EngineEvent.STOPPED, EngineState.STOPPED)

    def close(self):
        """Stop, then release resources once any in-flight batch has finished"""
        self.stop()

        # Called from inside a batch (e.g. by a subscriber): the lock is ours already
        in_batch = self._batch_thread is threading.current_thread()
        if not in_batch:
            self._batch_lock.acquire()
        try:
            self._close_resources()
        finally:
            if not in_batch:
                self._batch_lock.release()
        logger.info("Anomaly detector closed")

    def _close_resources(self):
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

        closed = set()
        for collaborator in (
            self.data_source,
            self.preprocessor,
            self.persistence,
            self.rule_detector,
            self.model_detector,
            self.alert_dispatcher,
        ):
            if collaborator is None or id(collaborator) in closed:
                continue
            closed.add(id(collaborator))
            close = getattr(collaborator, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.error(
                        "Failed to close collaborator",
                        collaborator=type(collaborator).__name__,
                        error=str(e),
                    )

    def _on_tick(self):
        self.process_batch()

    # ========================================
    # Batch processing
    # ========================================

    def process_batch(self) -> BatchRun:
        """Run one detection cycle. Never raises.

        A call made while another batch is in flight is skipped rather than
        run concurrently.
        """
        run = BatchRun(batch_id=uuid.uuid4().hex[:12], started_at=_utcnow())

        if not self._initialized:
            logger.warning("Engine not initialized, batch not run", state=self._state.value)
            run.outcome = BatchOutcome.FAILED
            run.errors.append("initialize: engine not initialized")
            run.finished_at = _utcnow()
            return run

        if not self._batch_lock.acquire(blocking=False):
            logger.warning("Previous batch still in flight, skipping", batch_id=run.batch_id)
            run.outcome = BatchOutcome.SKIPPED
            run.finished_at = _utcnow()
            return run

        self._batch_thread = threading.current_thread()
        try:
            self._run_batch(run)
        except Exception as e:
            # Failure outside the per-stage guards
            run.outcome = BatchOutcome.FAILED
            self._report_error("batch", e, run)
        finally:
            run.finished_at = _utcnow()
            self._batch_thread = None
            self._batch_lock.release()

        return run

    def _run_batch(self, run: BatchRun):
        log = logger.bind(batch_id=run.batch_id)
        log.info("Starting new processing batch")

        try:
            data_points = list(self.data_source.fetch_pending_data_points())
        except Exception as e:
            run.outcome = BatchOutcome.FAILED
            self._report_error("fetch", e, run)
            return

        if not data_points:
            run.outcome = BatchOutcome.EMPTY
            log.info("No new data to process in this batch")
            return

        run.data_points = len(data_points)
        log.info("Processing batch", data_points=run.data_points)

        try:
            processed = list(self.preprocessor.preprocess(data_points))
        except Exception as e:
            run.outcome = BatchOutcome.FAILED
            self._report_error("preprocess", e, run)
            return

        if self.config.enable_rule_engine:
            for finding in self._run_rule_based_detection(processed, run):
                self._handle_finding(DetectionType.RULE_BASED, finding, run)

        if self.config.enable_ml_models:
            for finding in self._run_model_based_detection(processed, run):
                self._handle_finding(DetectionType.MODEL_BASED, finding, run)

        self._acknowledge(data_points, run)

        run.outcome = BatchOutcome.PARTIAL if run.errors else BatchOutcome.SUCCESS
        log.info(
            "Batch processed",
            outcome=run.outcome.value,
            data_points=run.data_points,
            anomalies=run.anomalies_detected,
            alerts=run.alerts_sent,
            errors=len(run.errors),
        )
        self.events.emit(EngineEvent.BATCH_PROCESSED, run)

    def _run_rule_based_detection(
        self, data_points: Sequence[DataPoint], run: BatchRun
    ) -> list[RawFinding]:
        findings = []
        for data_point in data_points:
            try:
                results = self.rule_detector.evaluate(data_point)
            except Exception as e:
                self._report_error("rules", e, run, medicine_id=data_point.medicine_id)
                continue

            for finding in results:
                findings.append(
                    replace(
                        finding,
                        data_point=data_point,
                        confidence=rule_confidence(finding.severity),
                    )
                )
        return findings

    def _run_model_based_detection(
        self, data_points: Sequence[DataPoint], run: BatchRun
    ) -> list[RawFinding]:
        try:
            predictions = list(self.model_detector.predict(data_points))
            if len(predictions) != len(data_points):
                raise PredictError(
                    f"Model returned {len(predictions)} predictions "
                    f"for {len(data_points)} data points"
                )
        except Exception as e:
            self._report_error("models", e, run)
            return []

        return [
            RawFinding(
                severity=prediction.severity,
                message=prediction.message,
                description=prediction.description,
                details=prediction.details,
                assigned_to=prediction.assigned_to,
                confidence=prediction.confidence,
                type=prediction.anomaly_type,
                causes_of_shortages=prediction.causes_of_shortages,
                data_point=data_point,
            )
            for data_point, prediction in zip(data_points, predictions, strict=True)
            if prediction.is_anomaly
        ]

    def _handle_finding(self, detection_type: DetectionType, finding: RawFinding, run: BatchRun):
        medicine_id = finding.data_point.medicine_id if finding.data_point else None

        try:
            anomaly = normalize_finding(detection_type, finding)
        except Exception as e:
            self._report_error("normalize", e, run, medicine_id=medicine_id)
            return

        run.anomalies_detected += 1
        self._persist(anomaly, run)
        self.events.emit(EngineEvent.ANOMALY_DETECTED, anomaly)

        logger.info(
            "Anomaly detected",
            batch_id=run.batch_id,
            detection_type=anomaly.detection_type,
            medicine_id=medicine_id,
            severity=anomaly.severity,
            type=anomaly.type,
            confidence=round(anomaly.confidence, 3),
        )

        if anomaly.confidence >= self.config.alert_threshold:
            self._dispatch_alert(anomaly, run)

    def _persist(self, anomaly: Anomaly, run: BatchRun):
        executor = self._executor
        if executor is not None:
            try:
                future = executor.submit(self.persistence.save_anomaly, anomaly)
            except RuntimeError as e:
                # Executor shut down under a running batch
                self._report_error("persist", e, run, medicine_id=anomaly.medicine_data_id)
                return
            future.add_done_callback(partial(self._on_persisted, anomaly))
            return

        try:
            self.persistence.save_anomaly(anomaly)
        except Exception as e:
            self._report_error("persist", e, run, medicine_id=anomaly.medicine_data_id)

    def _on_persisted(self, anomaly: Anomaly, future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._report_error("persist", error, None, medicine_id=anomaly.medicine_data_id)

    def _acknowledge(self, data_points: Sequence[DataPoint], run: BatchRun):
        try:
            self.data_source.mark_processed(data_points)
        except Exception as e:
            self._report_error("acknowledge", e, run)

    def _dispatch_alert(self, anomaly: Anomaly, run: BatchRun):
        if self.alert_dispatcher is None:
            logger.debug("No alert dispatcher configured", medicine_id=anomaly.medicine_data_id)
            return
        try:
            self.alert_dispatcher.send_alert(anomaly)
            run.alerts_sent += 1
        except Exception as e:
            self._report_error("alert", e, run, medicine_id=anomaly.medicine_data_id)

    def _report_error(self, stage: str, error: Exception, run: BatchRun | None, **context: Any):
        if run is not None:
            run.record_error(stage, error)
            context["batch_id"] = run.batch_id
        logger.error(
            "Batch stage failed",
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
            **context,
        )
        self.events.emit(EngineEvent.ERROR, ErrorEvent(stage=stage, error=error, context=context))
