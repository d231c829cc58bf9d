"""Engine configuration.

Defaults suit a single web process talking to a local DuckDB file and an
optional Redis instance. Every store call is bounded by store_timeout.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    # Seconds a loaded experiment definition is served from cache.
    # A status change (e.g. pause) is visible only after the entry expires.
    cache_ttl: float = 30.0
    # Upper bound for any single store call, in seconds
    store_timeout: float = 0.5
    # Confidence required to flag a candidate winner
    confidence: float = 0.95

    # Context keys checked, in order, for a stable subject id
    subject_keys: tuple[str, ...] = ("subjectId", "userId")
    # Subject used when the context carries no id. All anonymous traffic
    # lands in the same bucket. None disables assignment for anonymous traffic.
    anonymous_subject: str | None = "anonymous"

    # Worker threads used for store calls and fire-and-forget metrics
    max_workers: int = 8

    def __post_init__(self):
        if self.cache_ttl < 0:
            raise ValueError(f"cache_ttl must be >= 0, got {self.cache_ttl}")
        if self.store_timeout <= 0:
            raise ValueError(f"store_timeout must be > 0, got {self.store_timeout}")
        if not 0.0 < self.confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {self.confidence}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
