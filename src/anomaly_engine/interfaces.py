"""
Collaborator interfaces consumed by the AnomalyDetector.

Concrete implementations live in database.py, preprocessor.py, rules.py,
model_manager.py and alerts.py; tests substitute their own.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from .models import Anomaly, DataPoint, ModelPrediction, RawFinding


class DataSource(ABC):
    """Supplies the data points for a batch"""

    @abstractmethod
    def fetch_pending_data_points(self) -> list[DataPoint]:
        """Return data points not yet processed, without marking them

        Raises:
            FetchError: If the source cannot be read
        """
        pass

    @abstractmethod
    def mark_processed(self, data_points: Sequence[DataPoint]) -> None:
        """Acknowledge data points whose batch ran through detection

        Unacknowledged points are returned again by the next fetch.

        Raises:
            FetchError: If the acknowledgement cannot be written
        """
        pass


class Preprocessor(ABC):
    """Cleans raw data points before detection"""

    @abstractmethod
    def preprocess(self, data_points: Sequence[DataPoint]) -> list[DataPoint]:
        """Return cleaned data points

        Raises:
            PreprocessError: If the batch cannot be cleaned
        """
        pass


class RuleDetector(ABC):
    """Evaluates rule predicates against one data point at a time"""

    @abstractmethod
    def load_rules(self) -> None:
        """Raises LoadError if the rule set is unusable"""
        pass

    @abstractmethod
    def evaluate(self, data_point: DataPoint) -> list[RawFinding]:
        """Return one finding per rule that fired

        Raises:
            EvalError: If evaluation fails
        """
        pass


class ModelDetector(ABC):
    """Scores a whole batch for anomaly likelihood"""

    @abstractmethod
    def load_models(self) -> None:
        """Raises LoadError if model artifacts are unavailable"""
        pass

    @abstractmethod
    def predict(self, data_points: Sequence[DataPoint]) -> list[ModelPrediction]:
        """Return one prediction per input data point, in the same order

        Raises:
            PredictError: If scoring fails
        """
        pass


class PersistenceSink(ABC):
    """Durably stores canonical anomalies"""

    @abstractmethod
    def save_anomaly(self, anomaly: Anomaly) -> None:
        """Raises PersistError on failure"""
        pass


class AlertDispatcher(ABC):
    """Delivers notifications for anomalies above the alert threshold"""

    @abstractmethod
    def send_alert(self, anomaly: Anomaly) -> None:
        """Raises DispatchError on failure"""
        pass
