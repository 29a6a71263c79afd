"""
neuro_racer/services/persistence.py

Key-value persistence for evolution results.

The engine only ever sees the KeyValueStore port. Three backends:
- InMemoryStore: tests and throwaway runs
- JsonFileStore: one JSON document per key in a directory
- RedisStore: shared store for long-running or multi-process setups

What gets stored: the all-time best brain (as an ordered list of
{weights, biases} per layer) and the generation history. Loading is
forgiving: shape mismatches become fresh random layers, malformed
history records are skipped, and nothing aborts the whole load.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from neuro_racer.core.brain import Brain

logger = logging.getLogger(__name__)


BEST_BRAIN_KEY = "bestBrain"
BEST_FITNESS_KEY = "bestFitness"
HISTORY_KEY = "generationHistory"

HISTORY_FIELDS = ("generation", "bestFitness", "avgFitness", "avgTop10")


class KeyValueStore(ABC):
    """JSON-compatible values under string keys."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent or unreadable."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class InMemoryStore(KeyValueStore):
    """
    Dictionary-backed store.

    Values are round-tripped through JSON so callers never share mutable
    state with the store, and so non-serializable values fail here just
    as they would against a real backend.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


class JsonFileStore(KeyValueStore):
    """One `<key>.json` file per key under a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            return None

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(value, f)
            tmp.replace(path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


class RedisStore(KeyValueStore):
    """
    Redis-backed store with lazy connection.

    Connection or command failures are logged and degrade to "no data",
    so a flaky Redis never stops a run.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "neuro_racer:"):
        self.redis_url = redis_url
        self.prefix = prefix
        self._redis = None

    def _get_redis(self):
        if self._redis is None:
            import redis
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._get_redis().get(self.prefix + key)
        except Exception as e:
            logger.warning(f"Redis get {key} failed: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Redis value for {key} is not JSON: {e}")
            return None

    def set(self, key: str, value: Any) -> None:
        try:
            self._get_redis().set(self.prefix + key, json.dumps(value))
        except Exception as e:
            logger.warning(f"Redis set {key} failed: {e}")

    def delete(self, key: str) -> None:
        try:
            self._get_redis().delete(self.prefix + key)
        except Exception as e:
            logger.warning(f"Redis delete {key} failed: {e}")


def create_store(url: Optional[str] = None) -> KeyValueStore:
    """
    Factory for a key-value store.

    Args:
        url: "memory", "redis://...", "file://<dir>" or a plain directory.
             Defaults to $NEURO_RACER_STORE, then "memory".
    """
    url = url or os.environ.get("NEURO_RACER_STORE", "memory")
    if url == "memory":
        return InMemoryStore()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisStore(redis_url=url)
    if url.startswith("file://"):
        return JsonFileStore(url[len("file://"):])
    return JsonFileStore(url)


class BrainArchive:
    """
    Reads and writes the all-time best brain and the generation history.

    The expected topology is fixed at construction so a stored brain from
    a differently shaped run can be partially recovered.
    """

    def __init__(
        self,
        store: KeyValueStore,
        input_count: int,
        hidden_layers: Sequence[int],
        output_count: int,
    ):
        self.store = store
        self.input_count = input_count
        self.hidden_layers = list(hidden_layers)
        self.output_count = output_count

    def save_best(self, brain: Brain, fitness: float) -> None:
        self.store.set(BEST_BRAIN_KEY, brain.to_list())
        self.store.set(BEST_FITNESS_KEY, float(fitness))

    def load_best(self, rng: np.random.Generator) -> Optional[Brain]:
        """Stored best brain, with mismatched layers re-randomized."""
        data = self.store.get(BEST_BRAIN_KEY)
        if data is None:
            return None
        return Brain.from_list(
            data, self.input_count, self.hidden_layers, self.output_count, rng=rng
        )

    def load_best_fitness(self) -> float:
        value = self.store.get(BEST_FITNESS_KEY)
        try:
            return float(value) if value is not None else 0.0
        except (TypeError, ValueError):
            logger.warning(f"Stored best fitness unreadable: {value!r}")
            return 0.0

    def save_history(self, records: List[Dict[str, Any]]) -> None:
        self.store.set(HISTORY_KEY, records)

    def load_history(self) -> List[Dict[str, Any]]:
        """History records with all fields present; others are skipped."""
        data = self.store.get(HISTORY_KEY)
        if data is None:
            return []
        if not isinstance(data, list):
            logger.warning("Stored generation history is not a list, ignoring it")
            return []

        records = []
        for i, record in enumerate(data):
            if not isinstance(record, dict) or any(k not in record for k in HISTORY_FIELDS):
                logger.warning(f"Skipping malformed history record {i}: {record!r}")
                continue
            records.append({k: record[k] for k in HISTORY_FIELDS})
        return records

    def clear(self) -> None:
        for key in (BEST_BRAIN_KEY, BEST_FITNESS_KEY, HISTORY_KEY):
            self.store.delete(key)
