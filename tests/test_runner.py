"""
Tests for the headless runner and run configuration.
"""

import logging

import pytest
import yaml

from neuro_racer.environments.track import EditableTrack, ProceduralTrack
from neuro_racer.errors import ConfigurationError
from neuro_racer.evolution.engine import GenerationSummary
from neuro_racer.services.persistence import HISTORY_KEY, InMemoryStore
from neuro_racer.services.training_data import TrainingDataConfig
from neuro_racer.services.runner import (
    RunConfig,
    build_engine,
    build_track,
    log_generation,
    main,
    run_headless,
)


def _small_config(**evolution):
    settings = dict(population_size=4, elite_count=1, generation_time=0.05, seed=11)
    settings.update(evolution)
    return RunConfig.from_dict({
        "evolution": settings,
        "track": {"kind": "editable"},
    })


class TestRunConfig:
    """Tests for RunConfig loading and validation."""

    def test_defaults(self):
        config = RunConfig.from_dict(None)
        assert config.evolution.population_size == 50
        assert config.sensors.count == 9
        assert config.track.kind == "procedural"
        assert config.training is None

    def test_nested_sections(self):
        config = RunConfig.from_dict({
            "evolution": {"population_size": 20, "elite_count": 5, "hidden_layers": [8]},
            "sensors": {"count": 5},
            "fitness": {"stagnation": 100.0},
            "training": {"max_samples": 50},
        })
        assert config.evolution.population_size == 20
        assert config.evolution.hidden_layers == (8,)
        assert config.sensors.input_count == 7
        assert config.fitness.stagnation == 100.0
        assert config.training.max_samples == 50

    def test_unknown_section(self):
        with pytest.raises(ConfigurationError):
            RunConfig.from_dict({"physics": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError):
            RunConfig.from_dict({"evolution": {"populaton_size": 10}})

    def test_invalid_values(self):
        with pytest.raises(ConfigurationError):
            RunConfig.from_dict({"evolution": {"population_size": 5, "elite_count": 10}})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump({
            "evolution": {"population_size": 10, "elite_count": 3},
            "track": {"seed": 7, "track_width": 25.0},
        }))
        config = RunConfig.from_yaml(path)
        assert config.evolution.population_size == 10
        assert config.track.seed == 7
        assert config.track.track_width == 25.0


class TestBuild:
    """Tests for assembling an engine."""

    def test_build_track(self):
        assert isinstance(build_track(RunConfig().track), ProceduralTrack)

    def test_editable_track_from_store(self):
        store = InMemoryStore()
        saved = EditableTrack()
        saved.add_point(0.0, 200.0)
        saved.save(store)

        config = _small_config()
        track = build_track(config.track, store)
        assert len(track.control_points) == 9

    def test_build_engine(self):
        engine = build_engine(_small_config())
        assert len(engine.vehicles) == 4
        assert engine.training_collector is None


class TestRunHeadless:
    """Tests for headless runs."""

    def test_runs_requested_generations(self):
        store = InMemoryStore()
        engine, history = run_headless(_small_config(), generations=2, store=store)
        assert len(history) == 2
        assert engine.generation == 2
        assert len(store.get(HISTORY_KEY)) == 2

    def test_tick_budget(self):
        engine, history = run_headless(_small_config(generation_time=10.0), generations=5, max_ticks=3)
        assert history == []
        assert engine.total_ticks == 3

    def test_training_data_saved(self):
        config = _small_config()
        config.training = TrainingDataConfig(min_speed=0.0)
        store = InMemoryStore()
        engine, _ = run_headless(config, generations=1, store=store)
        assert store.get("supervisedTrainingData")["data"]

    def test_log_generation(self, caplog):
        with caplog.at_level(logging.INFO, logger="neuro_racer.services.runner"):
            log_generation(GenerationSummary(4, 12.0, 3.0, 9.0, end_reason="time_limit"))
        assert "Generation 4" in caplog.text
        assert "time_limit" in caplog.text


class TestMain:
    def test_main_with_overrides(self, tmp_path, caplog):
        config = tmp_path / "run.yaml"
        config.write_text(yaml.safe_dump({
            "evolution": {"generation_time": 0.05},
            "track": {"kind": "editable"},
        }))
        store_dir = tmp_path / "store"

        with caplog.at_level(logging.INFO):
            main([
                "--config", str(config),
                "--generations", "1",
                "--population-size", "3",
                "--seed", "5",
                "--store", str(store_dir),
            ])

        assert (store_dir / "generationHistory.json").exists()
        assert "Finished" in caplog.text
