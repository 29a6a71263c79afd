"""
Tests for neuro_racer/services/persistence.py

Stores, the store factory, and the brain archive.
"""

import json
from unittest.mock import MagicMock

import numpy as np
import pytest

from neuro_racer.core.brain import Brain
from neuro_racer.services.persistence import (
    BEST_BRAIN_KEY,
    BEST_FITNESS_KEY,
    HISTORY_KEY,
    BrainArchive,
    InMemoryStore,
    JsonFileStore,
    RedisStore,
    create_store,
)


# ==================== Store Tests ====================

class TestInMemoryStore:
    """Tests for InMemoryStore."""

    def test_round_trip(self):
        store = InMemoryStore()
        store.set("k", {"a": [1, 2.5]})
        assert store.get("k") == {"a": [1, 2.5]}
        assert store.keys() == ["k"]

    def test_missing_key(self):
        assert InMemoryStore().get("nope") is None

    def test_values_are_copied(self):
        store = InMemoryStore()
        value = {"a": [1]}
        store.set("k", value)
        value["a"].append(2)
        assert store.get("k") == {"a": [1]}

    def test_delete(self):
        store = InMemoryStore()
        store.set("k", 1)
        store.delete("k")
        store.delete("never-set")
        assert store.get("k") is None

    def test_rejects_non_json(self):
        with pytest.raises(TypeError):
            InMemoryStore().set("k", object())


class TestJsonFileStore:
    """Tests for JsonFileStore."""

    def test_round_trip(self, tmp_path):
        store = JsonFileStore(tmp_path / "runs")
        store.set("bestBrain", [{"weights": [[0.5]], "biases": [0.1]}])

        assert (tmp_path / "runs" / "bestBrain.json").exists()
        assert store.get("bestBrain") == [{"weights": [[0.5]], "biases": [0.1]}]

    def test_survives_reopen(self, tmp_path):
        JsonFileStore(tmp_path).set("k", 42)
        assert JsonFileStore(tmp_path).get("k") == 42

    def test_corrupt_file_reads_as_missing(self, tmp_path):
        store = JsonFileStore(tmp_path)
        (tmp_path / "k.json").write_text("{not json")
        assert store.get("k") is None

    def test_unsafe_key_is_sanitized(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.set("../escape", 1)
        assert store.get("../escape") == 1
        assert not (tmp_path.parent / "escape.json").exists()

    def test_delete(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.set("k", 1)
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None


class TestRedisStore:
    """Tests for RedisStore with a mocked client."""

    def _store(self):
        store = RedisStore(prefix="test:")
        store._redis = MagicMock()
        return store

    def test_set_prefixes_and_encodes(self):
        store = self._store()
        store.set("bestFitness", 12.5)
        store._redis.set.assert_called_once_with("test:bestFitness", "12.5")

    def test_get_decodes(self):
        store = self._store()
        store._redis.get.return_value = json.dumps([1, 2])
        assert store.get("k") == [1, 2]
        store._redis.get.assert_called_once_with("test:k")

    def test_get_missing(self):
        store = self._store()
        store._redis.get.return_value = None
        assert store.get("k") is None

    def test_connection_failure_degrades(self):
        store = self._store()
        store._redis.get.side_effect = ConnectionError("down")
        store._redis.set.side_effect = ConnectionError("down")
        assert store.get("k") is None
        store.set("k", 1)  # Logged, not raised

    def test_non_json_value(self):
        store = self._store()
        store._redis.get.return_value = "{broken"
        assert store.get("k") is None

    def test_delete(self):
        store = self._store()
        store.delete("k")
        store._redis.delete.assert_called_once_with("test:k")


class TestCreateStore:
    """Tests for the store factory."""

    def test_memory(self):
        assert isinstance(create_store("memory"), InMemoryStore)

    def test_redis(self):
        store = create_store("redis://example:6379/1")
        assert isinstance(store, RedisStore)
        assert store.redis_url == "redis://example:6379/1"

    def test_file_url(self, tmp_path):
        store = create_store(f"file://{tmp_path}")
        assert isinstance(store, JsonFileStore)
        assert store.directory == tmp_path

    def test_plain_directory(self, tmp_path):
        assert isinstance(create_store(str(tmp_path / "d")), JsonFileStore)

    def test_environment_default(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NEURO_RACER_STORE", str(tmp_path))
        assert isinstance(create_store(), JsonFileStore)

        monkeypatch.delenv("NEURO_RACER_STORE")
        assert isinstance(create_store(), InMemoryStore)


# ==================== Archive Tests ====================

class TestBrainArchive:
    """Tests for BrainArchive."""

    def test_best_brain_round_trip(self, brain, rng):
        archive = BrainArchive(InMemoryStore(), 11, [16, 8], 3)
        archive.save_best(brain, 123.5)

        loaded = archive.load_best(rng)
        assert loaded.same_parameters(brain)
        assert archive.load_best_fitness() == 123.5

    def test_missing_brain(self, rng):
        archive = BrainArchive(InMemoryStore(), 11, [16, 8], 3)
        assert archive.load_best(rng) is None
        assert archive.load_best_fitness() == 0.0

    def test_shape_mismatch_partially_recovers(self, rng):
        """A stored brain with a different hidden width keeps what fits."""
        stored = Brain(11, [16, 4], 3, rng=rng)
        store = InMemoryStore()
        store.set(BEST_BRAIN_KEY, stored.to_list())

        loaded = BrainArchive(store, 11, [16, 8], 3).load_best(rng)
        assert loaded.shape == [11, 16, 8, 3]
        assert np.array_equal(loaded.layers[0].weights, stored.layers[0].weights)

    def test_unreadable_fitness(self):
        store = InMemoryStore()
        store.set(BEST_FITNESS_KEY, "lots")
        assert BrainArchive(store, 11, [16, 8], 3).load_best_fitness() == 0.0

    def test_history_round_trip(self):
        archive = BrainArchive(InMemoryStore(), 11, [16, 8], 3)
        records = [
            {"generation": 0, "bestFitness": 5.0, "avgFitness": 1.0, "avgTop10": 3.0},
            {"generation": 1, "bestFitness": 7.0, "avgFitness": 2.0, "avgTop10": 4.0},
        ]
        archive.save_history(records)
        assert archive.load_history() == records

    def test_malformed_history_records_are_skipped(self):
        store = InMemoryStore()
        store.set(HISTORY_KEY, [
            {"generation": 0, "bestFitness": 5.0, "avgFitness": 1.0, "avgTop10": 3.0},
            {"generation": 1},
            "junk",
            {"generation": 2, "bestFitness": 9.0, "avgFitness": 2.0, "avgTop10": 4.0, "extra": 1},
        ])
        history = BrainArchive(store, 11, [16, 8], 3).load_history()
        assert [r["generation"] for r in history] == [0, 2]
        assert "extra" not in history[1]

    def test_history_not_a_list(self):
        store = InMemoryStore()
        store.set(HISTORY_KEY, {"oops": True})
        assert BrainArchive(store, 11, [16, 8], 3).load_history() == []

    def test_clear(self, brain):
        store = InMemoryStore()
        archive = BrainArchive(store, 11, [16, 8], 3)
        archive.save_best(brain, 1.0)
        archive.save_history([])
        archive.clear()
        assert store.keys() == []
