"""
PostgreSQL operations for the anomaly engine.

Handles:
- Fetching medicines updated since they were last processed
- Acknowledging medicines once their batch has run
- Inserting canonical anomalies
"""

import threading
from collections.abc import Sequence
from typing import Any

import structlog

from src.core.database import PostgresConnection

from .errors import FetchError, PersistError
from .interfaces import DataSource, PersistenceSink
from .models import Anomaly, DataPoint, EngineConfig

logger = structlog.get_logger(__name__)

MEDICINE_COLUMNS = """
    medicine_id, medicine_name, generic_name, company, disease,
    current_stock, current_price, location, supplier, critical_threshold,
    average_market_price, daily_consumption, stock_history, price_history,
    supplier_delay, last_updated_at, description, causes_of_shortage
"""


class MedicineDatabase(PostgresConnection, DataSource, PersistenceSink):
    """Data source and anomaly sink backed by PostgreSQL"""

    def __init__(self, config: EngineConfig):
        super().__init__(
            host=config.postgres_host,
            port=config.postgres_port,
            database=config.postgres_database,
            user=config.postgres_user,
            password=config.postgres_password,
        )
        self.config = config
        # One connection is shared by the tick thread and the persistence workers
        self._lock = threading.Lock()

    def fetch_pending_data_points(self) -> list[DataPoint]:
        """Read medicines not processed since their last update

        Nothing is marked here; the orchestrator calls mark_processed() once the
        batch has run through detection, so an aborted batch is fetched again.
        Malformed rows are acknowledged straight away since only a new update can
        fix them.
        """
        select_query = f"""
            SELECT {MEDICINE_COLUMNS}
            FROM medicines
            WHERE processed_at IS NULL
               OR last_updated_at > processed_at
            ORDER BY last_updated_at NULLS FIRST
            LIMIT %s
        """

        try:
            with self._lock, self.get_cursor(as_dict=True) as cursor:
                cursor.execute(select_query, (self.config.batch_limit,))
                rows = [dict(row) for row in cursor.fetchall()]
        except Exception as e:
            raise FetchError(f"Failed to fetch pending medicines: {e}") from e

        data_points = []
        malformed = []
        for row in rows:
            try:
                data_points.append(DataPoint.from_record(row))
            except (TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed medicine row",
                    medicine_id=row.get("medicine_id"),
                    error=str(e),
                )
                if row.get("medicine_id") is not None:
                    malformed.append((str(row["medicine_id"]), row.get("last_updated_at")))

        if malformed:
            try:
                self._mark(malformed)
            except FetchError as e:
                logger.warning("Could not acknowledge malformed rows", error=str(e))

        logger.debug("Fetched pending medicines", rows=len(rows), data_points=len(data_points))
        return data_points

    def mark_processed(self, data_points: Sequence[DataPoint]) -> None:
        """Set processed_at for the fetched version of each medicine

        A medicine updated again since it was fetched keeps its old marker and
        is picked up by the next fetch.
        """
        self._mark([(point.medicine_id, point.last_updated_at) for point in data_points])

    def _mark(self, seen: list[tuple[str, Any]]):
        if not seen:
            return
        query = """
            UPDATE medicines AS m
            SET processed_at = NOW()
            FROM unnest(%s::text[], %s::timestamptz[]) AS seen(medicine_id, last_updated_at)
            WHERE m.medicine_id::text = seen.medicine_id
              AND m.last_updated_at IS NOT DISTINCT FROM seen.last_updated_at
        """
        ids = [medicine_id for medicine_id, _ in seen]
        versions = [version for _, version in seen]

        try:
            with self._lock, self.get_cursor() as cursor:
                cursor.execute(query, (ids, versions))
                marked = cursor.rowcount
        except Exception as e:
            raise FetchError(f"Failed to mark medicines processed: {e}") from e

        logger.debug("Marked medicines processed", requested=len(ids), marked=marked)

    def save_anomaly(self, anomaly: Anomaly) -> None:
        query = """
            INSERT INTO anomalies (
                detection_type, severity, message, description, confidence,
                type, details, medicine_data_id, disease, assigned_to,
                status, timestamp, reviewed_at
            ) VALUES (
                %(detection_type)s, %(severity)s, %(message)s, %(description)s, %(confidence)s,
                %(type)s, %(details)s::jsonb, %(medicine_data_id)s, %(disease)s, %(assigned_to)s,
                %(status)s, %(timestamp)s, %(reviewed_at)s
            )
        """

        try:
            with self._lock, self.get_cursor() as cursor:
                cursor.execute(query, anomaly.to_db_dict())
        except Exception as e:
            raise PersistError(
                f"Failed to insert anomaly for medicine {anomaly.medicine_data_id}: {e}"
            ) from e

        logger.debug(
            "Anomaly inserted",
            medicine_id=anomaly.medicine_data_id,
            detection_type=anomaly.detection_type,
            severity=anomaly.severity,
        )

    def ensure_tables_exist(self):
        """Create the anomalies table and the processing marker if missing"""
        query = """
            CREATE TABLE IF NOT EXISTS anomalies (
                id SERIAL PRIMARY KEY,
                detection_type VARCHAR(20) NOT NULL,
                severity VARCHAR(20) NOT NULL,
                message TEXT NOT NULL,
                description TEXT NOT NULL,
                confidence DOUBLE PRECISION NOT NULL,
                type VARCHAR(100) NOT NULL,
                details JSONB NOT NULL,
                medicine_data_id VARCHAR(100),
                disease VARCHAR(200),
                assigned_to VARCHAR(200) NOT NULL DEFAULT '',
                status VARCHAR(20) NOT NULL DEFAULT 'active',
                timestamp TIMESTAMPTZ NOT NULL,
                reviewed_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_anomalies_medicine
            ON anomalies(medicine_data_id, timestamp);

            ALTER TABLE medicines ADD COLUMN IF NOT EXISTS processed_at TIMESTAMPTZ;
        """

        with self._lock, self.get_cursor() as cursor:
            cursor.execute(query)
        logger.info("Ensured anomalies table exists")
