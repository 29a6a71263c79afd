"""
Tests for supervised training-data collection.
"""

import json

import numpy as np
import pytest

from neuro_racer.core.brain import Brain
from neuro_racer.core.vehicle import Vehicle
from neuro_racer.errors import ConfigurationError
from neuro_racer.services.persistence import InMemoryStore
from neuro_racer.services.training_data import (
    TRAINING_DATA_KEY,
    TrainingDataCollector,
    TrainingDataConfig,
    TrainingSample,
)


def _moving_vehicle(rng, speed=5.0):
    vehicle = Vehicle(7, Brain(3, [2], 3, rng=rng), 1, np.zeros(2), 0.0)
    vehicle.velocity = np.array([speed, 0.0])
    vehicle.telemetry.distance_traveled = 12.0
    return vehicle


class TestTrainingDataConfig:
    def test_defaults(self):
        config = TrainingDataConfig()
        assert config.max_samples == 10000
        assert config.sampling_rate == 1
        assert config.min_speed == 0.5

    def test_validation(self):
        with pytest.raises(ConfigurationError):
            TrainingDataCollector(TrainingDataConfig(sampling_rate=0))


class TestRecording:
    """Tests for the sampling rules."""

    def test_records_copies(self):
        collector = TrainingDataCollector()
        inputs = [0.1, 0.2, 0.3]
        assert collector.record(inputs, [1.0, 0.0, 0.5])
        inputs[0] = 99.0
        assert collector.get_data()[0].inputs == [0.1, 0.2, 0.3]

    def test_sampling_rate(self):
        collector = TrainingDataCollector(TrainingDataConfig(sampling_rate=3))
        kept = [collector.record([float(i)], [0.0]) for i in range(9)]
        assert kept == [False, False, True] * 3
        assert [s.inputs[0] for s in collector.get_data()] == [2.0, 5.0, 8.0]

    def test_max_samples(self):
        collector = TrainingDataCollector(TrainingDataConfig(max_samples=2))
        for _ in range(5):
            collector.record([0.0], [0.0])
        assert collector.count == 2
        assert collector.is_full

    def test_slow_vehicle_skipped(self, rng):
        collector = TrainingDataCollector()
        assert not collector.record([0.0], [0.0], _moving_vehicle(rng, speed=0.1))
        assert collector.record([0.0], [0.0], _moving_vehicle(rng, speed=2.0))
        assert collector.count == 1

    def test_vehicle_metadata(self, rng):
        collector = TrainingDataCollector()
        collector.record([0.0], [0.0], _moving_vehicle(rng))
        sample = collector.get_data()[0]
        assert sample.vehicle_id == 7
        assert sample.fitness == 12.0

    def test_clear_resets_counter(self):
        collector = TrainingDataCollector(TrainingDataConfig(sampling_rate=2))
        collector.record([0.0], [0.0])
        collector.clear()
        assert collector.count == 0
        assert not collector.record([0.0], [0.0])
        assert collector.record([0.0], [0.0])


class TestStorage:
    """Tests for save, load and export."""

    def test_save_and_load(self, rng):
        store = InMemoryStore()
        collector = TrainingDataCollector()
        collector.record([0.5, 0.25], [1.0, -1.0, 0.0], _moving_vehicle(rng))
        collector.record([0.1, 0.2], [0.0, 0.0, 1.0])
        collector.save(store)

        saved = store.get(TRAINING_DATA_KEY)
        assert saved["config"]["maxSamples"] == 10000
        assert "timestamp" in saved

        restored = TrainingDataCollector()
        assert restored.load(store)
        assert restored.count == 2
        assert restored.get_data()[0].vehicle_id == 7
        assert restored.get_data()[1].vehicle_id is None

    def test_load_nothing(self):
        assert not TrainingDataCollector().load(InMemoryStore())

    def test_load_skips_malformed_samples(self):
        store = InMemoryStore()
        store.set(TRAINING_DATA_KEY, {"data": [{"inputs": [1.0], "outputs": [0.0]}, {"inputs": "x"}]})
        collector = TrainingDataCollector()
        assert collector.load(store)
        assert collector.count == 1

    def test_export(self):
        collector = TrainingDataCollector()
        collector.record([0.5], [0.25])
        exported = json.loads(collector.export())
        assert exported["samples"] == 1
        assert exported["data"] == [{"inputs": [0.5], "outputs": [0.25]}]
        assert exported["config"]["samplingRate"] == 1

    def test_sample_round_trip(self):
        sample = TrainingSample([1.0], [2.0], vehicle_id=3, fitness=4.0)
        assert TrainingSample.from_dict(sample.to_dict()) == sample


class TestStats:
    def test_empty(self):
        stats = TrainingDataCollector().get_stats()
        assert stats["count"] == 0
        assert stats["avg_inputs"] == []

    def test_means_and_ranges(self):
        collector = TrainingDataCollector()
        collector.record([0.0, 1.0], [1.0])
        collector.record([1.0, 3.0], [0.0])
        stats = collector.get_stats()

        assert stats["count"] == 2
        assert stats["avg_inputs"] == pytest.approx([0.5, 2.0])
        assert stats["avg_outputs"] == pytest.approx([0.5])
        assert stats["input_ranges"]["min"] == [0.0, 1.0]
        assert stats["input_ranges"]["max"] == [1.0, 3.0]
