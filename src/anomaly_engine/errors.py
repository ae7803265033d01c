"""
Error taxonomy for the anomaly engine.

Collaborators raise these so the orchestrator can tell which stage of a batch
failed. Library exceptions are chained with ``raise ... from e``.
"""


class AnomalyEngineError(Exception):
    """Base class for every engine error"""


class InitializationError(AnomalyEngineError):
    """Rule or model loading failed; the engine stays non-operational"""


class LoadError(AnomalyEngineError):
    """A detector could not load its rules or model artifacts"""


class FetchError(AnomalyEngineError):
    """The data source could not return pending data points"""


class PreprocessError(AnomalyEngineError):
    """Cleaning a batch of data points failed"""


class EvalError(AnomalyEngineError):
    """Rule evaluation failed for a data point"""


class PredictError(AnomalyEngineError):
    """Model scoring failed for a batch"""


class PersistError(AnomalyEngineError):
    """An anomaly could not be stored"""


class DispatchError(AnomalyEngineError):
    """An alert could not be delivered"""
