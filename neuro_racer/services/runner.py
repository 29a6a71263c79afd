#!/usr/bin/env python3
"""
Headless Evolution Runner

Builds a track, a pymunk world and an evolution engine from one config,
then ticks generations as fast as the CPU allows.

Usage:
    # Defaults: procedural track, 50 vehicles, in-memory store
    neuro-racer --generations 20

    # YAML config, results persisted in Redis
    neuro-racer --config run.yaml --store redis://localhost:6379

    # Keep results on disk and draw the run at the end
    neuro-racer --store ./runs/default --plot run.png

YAML layout (every section and key optional):

    evolution: {population_size: 50, elite_count: 15, seed: 42}
    sensors:   {count: 9, length: 50}
    vehicle:   {max_speed: 30}
    fitness:   {track_progress: 100, stagnation: 500}
    track:     {kind: procedural, seed: 300, track_width: 30}
    training:  {max_samples: 10000}
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import yaml

from neuro_racer.core.perception import SensorConfig
from neuro_racer.core.vehicle import VehicleConfig
from neuro_racer.environments.pymunk_world import PymunkWorld
from neuro_racer.environments.track import EditableTrack, Track, TrackConfig, create_track
from neuro_racer.errors import ConfigurationError
from neuro_racer.evolution.engine import EvolutionConfig, EvolutionEngine, GenerationSummary
from neuro_racer.evolution.fitness import FitnessWeights
from .persistence import KeyValueStore, create_store
from .training_data import TrainingDataCollector, TrainingDataConfig

logger = logging.getLogger(__name__)


def _section(cls, data: Optional[Dict[str, Any]], name: str):
    """Build one config dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}': {sorted(unknown)}")
    values = dict(data)
    if "hidden_layers" in values:
        values["hidden_layers"] = tuple(values["hidden_layers"])
    return cls(**values)


@dataclass
class RunConfig:
    """Everything one run needs."""
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    sensors: SensorConfig = field(default_factory=SensorConfig)
    vehicle: VehicleConfig = field(default_factory=VehicleConfig)
    fitness: FitnessWeights = field(default_factory=FitnessWeights)
    track: TrackConfig = field(default_factory=TrackConfig)
    training: Optional[TrainingDataConfig] = None    # None disables collection

    def validate(self) -> None:
        self.evolution.validate()
        self.sensors.validate()
        self.vehicle.validate()
        self.fitness.validate()
        self.track.validate()
        if self.training is not None:
            self.training.validate()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RunConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Run config must be a mapping")
        sections = {"evolution", "sensors", "vehicle", "fitness", "track", "training"}
        unknown = set(data) - sections
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {sorted(unknown)}")

        config = cls(
            evolution=_section(EvolutionConfig, data.get("evolution"), "evolution"),
            sensors=_section(SensorConfig, data.get("sensors"), "sensors"),
            vehicle=_section(VehicleConfig, data.get("vehicle"), "vehicle"),
            fitness=_section(FitnessWeights, data.get("fitness"), "fitness"),
            track=_section(TrackConfig, data.get("track"), "track"),
            training=(
                _section(TrainingDataConfig, data["training"], "training")
                if data.get("training") is not None else None
            ),
        )
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RunConfig":
        with open(path) as f:
            return cls.from_dict(yaml.safe_load(f))


def build_track(config: TrackConfig, store: Optional[KeyValueStore] = None) -> Track:
    """Editable tracks come from the store when one was saved there."""
    if config.kind == "editable" and store is not None:
        return EditableTrack.load(
            store, resolution=config.spline_resolution, track_width=config.track_width
        )
    return create_track(config)


def build_engine(
    config: RunConfig,
    store: Optional[KeyValueStore] = None,
) -> EvolutionEngine:
    config.validate()
    track = build_track(config.track, store)
    collector = TrainingDataCollector(config.training) if config.training is not None else None

    return EvolutionEngine(
        track,
        PymunkWorld(),
        config=config.evolution,
        sensor_config=config.sensors,
        vehicle_config=config.vehicle,
        fitness_weights=config.fitness,
        store=store,
        rng=np.random.default_rng(config.evolution.seed),
        training_collector=collector,
    )


def log_generation(summary: GenerationSummary) -> None:
    """Generation subscriber: one log line per finished generation."""
    logger.info(
        f"Generation {summary.generation}: best={summary.best_fitness:.1f} "
        f"avg={summary.avg_fitness:.1f} top10={summary.avg_top10_fitness:.1f} "
        f"mutation={summary.mutation_rate:.3f} ({summary.end_reason})"
    )


def run_headless(
    config: RunConfig,
    generations: int,
    store: Optional[KeyValueStore] = None,
    max_ticks: Optional[int] = None,
) -> Tuple[EvolutionEngine, List[GenerationSummary]]:
    """Run `generations` generations (or until max_ticks) and save the results."""
    engine = build_engine(config, store)
    engine.subscribe(log_generation)
    history = engine.run(generations=generations, max_ticks=max_ticks)
    engine.save()

    if engine.training_collector is not None and store is not None:
        engine.training_collector.save(store)
    return engine, history


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Evolve neural-network drivers on a 2D track",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=str, default=None, help="YAML run config")
    parser.add_argument("--generations", type=int, default=10)
    parser.add_argument("--max-ticks", type=int, default=None, help="Hard cap on simulation ticks")
    parser.add_argument("--population-size", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None, help="Evolution RNG seed")
    parser.add_argument("--track", choices=["procedural", "editable"], default=None)
    parser.add_argument("--track-seed", type=int, default=None)
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help="memory, redis://..., or a directory (default: $NEURO_RACER_STORE or memory)",
    )
    parser.add_argument("--collect-training-data", action="store_true")
    parser.add_argument("--plot", type=str, default=None, help="Save a picture of the run here")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    config = RunConfig.from_yaml(args.config) if args.config else RunConfig()
    if args.population_size is not None:
        config.evolution.population_size = args.population_size
        config.evolution.elite_count = min(config.evolution.elite_count, args.population_size)
    if args.seed is not None:
        config.evolution.seed = args.seed
    if args.track is not None:
        config.track.kind = args.track
    if args.track_seed is not None:
        config.track.seed = args.track_seed
    if args.collect_training_data and config.training is None:
        config.training = TrainingDataConfig()

    store = create_store(args.store)
    engine, history = run_headless(config, args.generations, store, args.max_ticks)

    logger.info(f"Finished: {engine}, best fitness ever {engine.best_fitness_ever:.1f}")
    if engine.training_collector is not None:
        logger.info(f"Training samples collected: {engine.training_collector.count}")

    if args.plot:
        from neuro_racer.observations.visualize import plot_run
        plot_run(engine.track, history, args.plot, engine.vehicles)
        logger.info(f"Plot saved to {args.plot}")


if __name__ == "__main__":
    main()
