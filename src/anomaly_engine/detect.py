"""
CLI for the periodic medicine supply anomaly engine.

Usage:
    python -m src.anomaly_engine.detect [options]
"""

import argparse
import logging
import os
import sys
import threading

import structlog

from src.core.logger import setup_logging

from .alerts import build_alert_dispatcher
from .cache import RedisCache
from .database import MedicineDatabase
from .detector import AnomalyDetector
from .events import EngineEvent
from .methods import list_methods
from .model_manager import ModelManager
from .models import EngineConfig
from .preprocessor import DataPreprocessor
from .rules import RuleEngine

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Periodic anomaly detection over medicine supply data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Basic usage (one batch every 30 seconds)
        python -m src.anomaly_engine.detect

        # Rules only, alerts to Kafka
        python -m src.anomaly_engine.detect \\
            --no-models \\
            --alert-transport kafka \\
            --kafka-servers kafka:9092

        # Single batch, then exit
        python -m src.anomaly_engine.detect --once
        """,
    )

    # Engine settings
    parser.add_argument(
        "--interval",
        type=float,
        default=float(os.getenv("PROCESSING_INTERVAL_SECONDS", "30")),
        help="Seconds between batches (default: 30)",
    )
    parser.add_argument(
        "--alert-threshold",
        type=float,
        default=float(os.getenv("ALERT_THRESHOLD", "0.7")),
        help="Minimum confidence that triggers an alert (default: 0.7)",
    )
    parser.add_argument(
        "--batch-limit",
        type=int,
        default=500,
        help="Max medicines fetched per batch (default: 500)",
    )
    parser.add_argument("--no-rules", action="store_true", help="Disable the rule engine")
    parser.add_argument("--no-models", action="store_true", help="Disable statistical models")

    # Method configuration
    parser.add_argument(
        "--method",
        default="stl_zscore",
        choices=list_methods(),
        help="Statistical method (default: stl_zscore)",
    )
    parser.add_argument(
        "--metrics",
        nargs="+",
        default=["stock", "price"],
        help="Metrics scored by the model (default: stock price)",
    )
    parser.add_argument(
        "--z-score-threshold",
        type=float,
        default=3.0,
        help="Z-score threshold (default: 3.0)",
    )
    parser.add_argument(
        "--seasonal-period",
        type=int,
        default=7,
        help="STL seasonal period in history points (default: 7)",
    )

    # PostgreSQL settings
    parser.add_argument(
        "--postgres-host",
        default=os.getenv("POSTGRES_HOST", "localhost"),
        help="PostgreSQL host",
    )
    parser.add_argument(
        "--postgres-port",
        type=int,
        default=int(os.getenv("POSTGRES_PORT", "5432")),
        help="PostgreSQL port",
    )
    parser.add_argument(
        "--postgres-db",
        default=os.getenv("POSTGRES_DB", "medwatch"),
        help="PostgreSQL database",
    )
    parser.add_argument(
        "--postgres-user",
        default=os.getenv("POSTGRES_USER", "medwatch"),
        help="PostgreSQL user",
    )
    parser.add_argument(
        "--postgres-password",
        default=os.getenv("POSTGRES_PASSWORD", "medwatch_password"),
        help="PostgreSQL password",
    )
    parser.add_argument(
        "--ensure-schema",
        action="store_true",
        help="Create the anomalies table before starting",
    )

    # Redis configuration
    parser.add_argument(
        "--redis-host",
        default=os.getenv("REDIS_HOST", "localhost"),
        help="Redis host (default: localhost or REDIS_HOST env var)",
    )
    parser.add_argument("--no-cache", action="store_true", help="Refit models on every batch")

    # Alert delivery
    parser.add_argument(
        "--alert-transport",
        choices=["log", "kafka"],
        default=os.getenv("ALERT_TRANSPORT", "log"),
        help="Where alerts are sent (default: log)",
    )
    parser.add_argument(
        "--kafka-servers",
        default=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092"),
        help="Kafka bootstrap servers (default: localhost:9092)",
    )
    parser.add_argument(
        "--alert-topic",
        default=os.getenv("ALERT_TOPIC", "medicine-anomaly-alerts"),
        help="Kafka topic for alerts",
    )

    # Runtime settings
    parser.add_argument(
        "--duration",
        type=int,
        help="Run for N seconds then stop (default: infinite)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_method_config(args) -> dict:
    if args.method == "stl_zscore":
        return {
            "seasonal_period": args.seasonal_period,
            "trend_period": 2 * args.seasonal_period + 1,
            "z_score_threshold": args.z_score_threshold,
            "min_points": 2 * args.seasonal_period,
        }
    return {"z_score_threshold": args.z_score_threshold}


def build_config(args) -> EngineConfig:
    """Build configuration from arguments"""
    return EngineConfig(
        enable_rule_engine=not args.no_rules,
        enable_ml_models=not args.no_models,
        processing_interval_seconds=args.interval,
        alert_threshold=args.alert_threshold,
        batch_limit=args.batch_limit,
        method_name=args.method,
        method_config=build_method_config(args),
        metrics=args.metrics,
        postgres_host=args.postgres_host,
        postgres_port=args.postgres_port,
        postgres_database=args.postgres_db,
        postgres_user=args.postgres_user,
        postgres_password=args.postgres_password,
        use_model_cache=not args.no_cache,
        redis_host=args.redis_host,
        alert_transport=args.alert_transport,
        kafka_bootstrap_servers=args.kafka_servers,
        alert_topic=args.alert_topic,
    )


def build_detector(config: EngineConfig) -> AnomalyDetector:
    """Wire the default collaborators around an AnomalyDetector"""
    database = MedicineDatabase(config)
    if not database.check_health():
        raise RuntimeError("Database health check failed")

    model_detector = None
    if config.enable_ml_models:
        cache = RedisCache(config) if config.use_model_cache else None
        model_detector = ModelManager(config, cache=cache)

    return AnomalyDetector(
        config,
        data_source=database,
        preprocessor=DataPreprocessor(),
        persistence=database,
        rule_detector=RuleEngine() if config.enable_rule_engine else None,
        model_detector=model_detector,
        alert_dispatcher=build_alert_dispatcher(config),
    )


def log_batch(run):
    logger.info(
        "Batch summary",
        batch_id=run.batch_id,
        outcome=run.outcome.value,
        data_points=run.data_points,
        anomalies=run.anomalies_detected,
        alerts=run.alerts_sent,
    )


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    log_level = getattr(logging, args.log_level)
    setup_logging(level=log_level)

    logger.info("Starting medicine anomaly engine")

    detector = None
    try:
        config = build_config(args)
        detector = build_detector(config)

        if args.ensure_schema:
            detector.persistence.ensure_tables_exist()

        if args.once:
            if not detector.initialize():
                return 1
            run = detector.process_batch()
            logger.info("Single batch completed", outcome=run.outcome.value, batch=run)
            return 0

        detector.events.subscribe(EngineEvent.BATCH_PROCESSED, log_batch)

        detector.start()
        if not detector.is_running:
            return 1

        # Block until interrupted or the duration elapses
        threading.Event().wait(timeout=args.duration)

        logger.info("Engine completed successfully")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Engine failed", error=str(e), exc_info=True)
        return 1

    finally:
        if detector is not None:
            detector.close()


if __name__ == "__main__":
    sys.exit(main())
