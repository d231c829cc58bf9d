"""Counter stores: running count / sum / sum_sq per (experiment, variant, metric).

Counters are a derived view of the results log. They are fast enough for a
live dashboard but may lag or under-count it; rebuild them from the log when
they diverge (see MetricRecorder.rebuild_counters).
"""

import threading
from collections import defaultdict

import redis

from src.ab.stores import counter_key
from src.collector.schemas import AggregateRow

COUNT_FIELD = "count"
SUM_FIELD = "sum"
SUM_SQ_FIELD = "sum_sq"


def _split_key(key: str, experiment_id: str) -> tuple[str, str] | None:
    prefix = counter_key(experiment_id, "", "")[:-1]  # "exp:<id>:"
    if not key.startswith(prefix):
        return None
    parts = key[len(prefix):].split(":")
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


class RedisCounterStore:
    """Counters kept in Redis hashes.

    Each increment is one MULTI/EXEC round trip (HINCRBY + 2x HINCRBYFLOAT),
    so parallel writers never lose updates.
    """

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 0.5) -> "RedisCounterStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client)

    def increment(self, key: str, value: float) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.hincrby(key, COUNT_FIELD, 1)
        pipe.hincrbyfloat(key, SUM_FIELD, value)
        pipe.hincrbyfloat(key, SUM_SQ_FIELD, value * value)
        pipe.execute()

    def snapshot(self, experiment_id: str) -> list[AggregateRow]:
        pattern = counter_key(experiment_id, "*", "*")
        keys = sorted(self._redis.scan_iter(match=pattern, count=500))
        if not keys:
            return []

        pipe = self._redis.pipeline(transaction=False)
        for key in keys:
            pipe.hgetall(key)
        hashes = pipe.execute()

        rows = []
        for key, fields in zip(keys, hashes):
            if isinstance(key, bytes):
                key = key.decode()
            ids = _split_key(key, experiment_id)
            if ids is None or not fields:
                continue
            fields = {
                (k.decode() if isinstance(k, bytes) else k): v for k, v in fields.items()
            }
            rows.append(AggregateRow(
                variant_id=ids[0],
                metric_id=ids[1],
                count=int(fields.get(COUNT_FIELD, 0)),
                sum=float(fields.get(SUM_FIELD, 0.0)),
                sum_sq=float(fields.get(SUM_SQ_FIELD, 0.0)),
            ))
        return rows

    def reset(self, key: str, count: int, total: float, total_sq: float) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping={
            COUNT_FIELD: count,
            SUM_FIELD: repr(float(total)),
            SUM_SQ_FIELD: repr(float(total_sq)),
        })
        pipe.execute()


class LocalCounterStore:
    """In-process counters for single-process deployments and tests.

    Increments are atomic with respect to other threads in the same process.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, list[float]] = defaultdict(lambda: [0, 0.0, 0.0])

    def increment(self, key: str, value: float) -> None:
        with self._lock:
            counter = self._counters[key]
            counter[0] += 1
            counter[1] += value
            counter[2] += value * value

    def snapshot(self, experiment_id: str) -> list[AggregateRow]:
        with self._lock:
            items = sorted((k, list(v)) for k, v in self._counters.items())
        rows = []
        for key, (count, total, total_sq) in items:
            ids = _split_key(key, experiment_id)
            if ids is None:
                continue
            rows.append(AggregateRow(
                variant_id=ids[0],
                metric_id=ids[1],
                count=int(count),
                sum=total,
                sum_sq=total_sq,
            ))
        return rows

    def reset(self, key: str, count: int, total: float, total_sq: float) -> None:
        with self._lock:
            self._counters[key] = [count, float(total), float(total_sq)]

    def get(self, key: str) -> tuple[int, float, float]:
        with self._lock:
            count, total, total_sq = self._counters.get(key, (0, 0.0, 0.0))
        return int(count), total, total_sq
