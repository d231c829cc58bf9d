"""Error taxonomy for experiment assignment and metric recording.

Read-path errors are caught by the engine and degrade to "no assignment".
Write-path errors are logged and the metric event is dropped.
"""


class ExperimentError(Exception):
    """Base class for all experiment engine errors."""


class NotFound(ExperimentError, LookupError):
    def __init__(self, key: str):
        super().__init__(f"Experiment not found: {key}")
        self.key = key


class InvalidExperiment(ExperimentError, ValueError):
    """Structurally invalid definition (bad weights, no variants, bad targeting)."""


class NoAssignment(ExperimentError):
    """Subject is not eligible: experiment not running, targeting mismatch,
    or anonymous with no fallback subject."""


class StoreUnavailable(ExperimentError):
    """A backing store timed out or failed."""


class InvalidMetricValue(ExperimentError, ValueError):
    pass
