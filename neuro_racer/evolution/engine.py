"""
evolution/engine.py

The generation lifecycle.

    RUNNING --(time up | extinct | no improvement | too few alive)-->
    EVALUATING --> SPAWNING --> RUNNING ...

One external tick drives one full population pass:
perceive -> think -> actuate for every live vehicle, one shared physics
step, then telemetry and collision bookkeeping. When a generation ends,
vehicles are ranked, the history grows by one record, the mutation rate
adapts, and the next population is bred from the best.

The engine exclusively owns the physics world's dynamic bodies. Every
previous-generation body is removed before any new one is created.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING
import logging

import numpy as np

from neuro_racer.core.brain import Brain, crossover, mutate
from neuro_racer.core.perception import PerceptionModel, SensorConfig
from neuro_racer.core.vehicle import Vehicle, VehicleConfig
from neuro_racer.errors import ConfigurationError
from neuro_racer.services.persistence import BrainArchive, KeyValueStore
from .fitness import FitnessEvaluator, FitnessWeights, summarize

if TYPE_CHECKING:
    from neuro_racer.environments.physics import PhysicsWorld
    from neuro_racer.environments.track import Track
    from neuro_racer.services.training_data import TrainingDataCollector

logger = logging.getLogger(__name__)


class GenerationPhase(Enum):
    """Where the engine is in the generation lifecycle."""
    RUNNING = "running"
    EVALUATING = "evaluating"
    SPAWNING = "spawning"
    STOPPED = "stopped"


@dataclass
class EvolutionConfig:
    """Population, selection and lifecycle parameters."""
    population_size: int = 50
    elite_count: int = 15
    parent_pool_min: int = 10           # Parents come from the top max(elite_count, this)

    # Mutation rate control
    mutation_rate: float = 0.1
    min_mutation_rate: float = 0.05
    max_mutation_rate: float = 0.2
    mutation_decay_rate: float = 0.98   # Per generation
    plateau_window: int = 20            # Generations per comparison window
    plateau_threshold: float = 0.05     # Relative improvement below this is a plateau
    plateau_boost: float = 1.5

    # Generation end triggers
    generation_time: float = 60.0       # Seconds of simulated time
    no_improvement_timeout: float = 15.0
    alive_fraction_threshold: float = 0.25

    # Brain topology (inputs come from the sensor layout)
    hidden_layers: Tuple[int, ...] = (16, 8)
    output_count: int = 3               # left, right, forward

    tick_rate: float = 60.0
    seed: Optional[int] = 42
    seed_from_best: bool = True         # Put the stored best brain into generation 0

    def validate(self) -> None:
        if self.population_size <= 0:
            raise ConfigurationError("population_size must be positive")
        if not 0 <= self.elite_count <= self.population_size:
            raise ConfigurationError(
                f"elite_count ({self.elite_count}) must be within [0, population_size "
                f"({self.population_size})]"
            )
        if self.parent_pool_min <= 0:
            raise ConfigurationError("parent_pool_min must be positive")
        if self.min_mutation_rate > self.max_mutation_rate:
            raise ConfigurationError(
                f"Mutation rate bounds are inverted: min {self.min_mutation_rate} > "
                f"max {self.max_mutation_rate}"
            )
        if not 0 <= self.min_mutation_rate <= 1 or not 0 <= self.max_mutation_rate <= 1:
            raise ConfigurationError("Mutation rate bounds must lie within [0, 1]")
        if not self.min_mutation_rate <= self.mutation_rate <= self.max_mutation_rate:
            raise ConfigurationError("mutation_rate must lie within its bounds")
        if not 0 < self.mutation_decay_rate <= 1:
            raise ConfigurationError("mutation_decay_rate must be within (0, 1]")
        if self.plateau_window <= 0:
            raise ConfigurationError("plateau_window must be positive")
        if self.plateau_threshold < 0:
            raise ConfigurationError("plateau_threshold must be non-negative")
        if self.plateau_boost <= 1:
            raise ConfigurationError("plateau_boost must be greater than 1")
        if self.generation_time <= 0 or self.no_improvement_timeout <= 0:
            raise ConfigurationError("Generation timers must be positive")
        if not 0 <= self.alive_fraction_threshold < 1:
            raise ConfigurationError("alive_fraction_threshold must be within [0, 1)")
        if any(h <= 0 for h in self.hidden_layers):
            raise ConfigurationError("Hidden layer widths must be positive")
        if self.output_count < 3:
            raise ConfigurationError("output_count must be at least 3 (left, right, forward)")
        if self.tick_rate <= 0:
            raise ConfigurationError("tick_rate must be positive")


@dataclass
class GenerationSummary:
    """One row of the generation history."""
    generation: int
    best_fitness: float
    avg_fitness: float
    avg_top10_fitness: float

    # Not persisted
    end_reason: str = ""
    mutation_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "bestFitness": self.best_fitness,
            "avgFitness": self.avg_fitness,
            "avgTop10": self.avg_top10_fitness,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationSummary":
        return cls(
            generation=int(data["generation"]),
            best_fitness=float(data["bestFitness"]),
            avg_fitness=float(data["avgFitness"]),
            avg_top10_fitness=float(data["avgTop10"]),
        )


@dataclass
class TelemetrySnapshot:
    """Per-tick view for renderers and HUDs."""
    generation: int
    phase: GenerationPhase
    time_remaining: float
    alive_count: int
    total_count: int
    best_vehicle: Optional[Vehicle]
    best_fitness_ever: float
    mutation_rate: float
    history: List[GenerationSummary] = field(default_factory=list)


GenerationListener = Callable[[GenerationSummary], None]


class EvolutionEngine:
    """
    Owns the population and runs the generation state machine.

    The random source and the store are injected; nothing here reaches
    for globals. With a fixed seed and a deterministic physics world, a
    run is reproducible.
    """

    def __init__(
        self,
        track: Track,
        physics: PhysicsWorld,
        config: Optional[EvolutionConfig] = None,
        sensor_config: Optional[SensorConfig] = None,
        vehicle_config: Optional[VehicleConfig] = None,
        fitness_weights: Optional[FitnessWeights] = None,
        store: Optional[KeyValueStore] = None,
        rng: Optional[np.random.Generator] = None,
        training_collector: Optional[TrainingDataCollector] = None,
    ):
        self.config = config or EvolutionConfig()
        self.config.validate()
        self.vehicle_config = vehicle_config or VehicleConfig()
        self.vehicle_config.validate()

        self.track = track
        self.physics = physics
        self.perception = PerceptionModel(sensor_config)
        self.fitness = FitnessEvaluator(fitness_weights, tick_rate=self.config.tick_rate)
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self.training_collector = training_collector

        self.archive: Optional[BrainArchive] = None
        if store is not None:
            self.archive = BrainArchive(
                store,
                self.perception.input_count,
                self.config.hidden_layers,
                self.config.output_count,
            )

        # Population state
        self.generation = 0
        self.mutation_rate = self.config.mutation_rate
        self.history: List[GenerationSummary] = []
        self.best_fitness_ever = 0.0
        self.best_brain_ever: Optional[Brain] = None
        self.vehicles: List[Vehicle] = []
        self.ranked: List[Vehicle] = []
        self.plateau_detected = False

        # Generation clock
        self.phase = GenerationPhase.SPAWNING
        self.generation_elapsed = 0.0
        self.generation_best_fitness = 0.0
        self.time_since_improvement = 0.0
        self.total_ticks = 0

        self._next_vehicle_id = 0
        self._listeners: List[GenerationListener] = []
        self._stop_requested = False

        self.track.attach(self.physics)
        if self.archive is not None:
            self.restore()
        self.spawn_generation(self._initial_brains())

        logger.info(
            f"Engine initialized: population={self.config.population_size}, "
            f"elite={self.config.elite_count}, brain={self.vehicles[0].brain.shape}"
        )

    # ==================== Brains ====================

    def new_brain(self) -> Brain:
        return Brain(
            self.perception.input_count,
            self.config.hidden_layers,
            self.config.output_count,
            rng=self.rng,
        )

    def _initial_brains(self) -> List[Brain]:
        brains = [self.new_brain() for _ in range(self.config.population_size)]
        if self.config.seed_from_best and self.best_brain_ever is not None:
            brains[0] = self.best_brain_ever.clone()
        return brains

    # ==================== Tick ====================

    @property
    def dt(self) -> float:
        return 1.0 / self.config.tick_rate

    @property
    def alive_vehicles(self) -> List[Vehicle]:
        return [v for v in self.vehicles if v.alive]

    def tick(self) -> TelemetrySnapshot:
        """
        Advance the whole population by one fixed timestep.

        Stop requests are honoured here, before any work, never mid-tick.
        """
        if self._stop_requested:
            self.phase = GenerationPhase.STOPPED
        if self.phase is not GenerationPhase.RUNNING:
            return self.snapshot()

        dt = self.dt
        registered = [v for v in self.vehicles if self.physics.has_body(v.handle)]
        live = [v for v in registered if v.alive]
        exclude = frozenset(v.handle for v in registered)

        for vehicle in live:
            readings, inputs = self.perception.perceive(vehicle, self.physics, exclude)
            vehicle.sensors = readings
            outputs = vehicle.think(inputs)
            vehicle.actuate(outputs, self.physics, dt)

        self.physics.step(dt)

        for vehicle in live:
            vehicle.sync(self.physics)
            self.fitness.update(vehicle, self.track)

        self._handle_collisions()

        self.generation_elapsed += dt
        self.total_ticks += 1
        self._track_improvement(dt)
        self._collect_training_sample()

        reason = self.end_reason()
        if reason is not None:
            self.end_generation(reason)

        return self.snapshot()

    def _handle_collisions(self) -> None:
        walls = set(self.track.wall_handles)
        by_handle = {v.handle: v for v in self.vehicles}
        for a, b in self.physics.drain_collision_events():
            for own, other in ((a, b), (b, a)):
                vehicle = by_handle.get(own)
                if vehicle is not None and vehicle.alive and other in walls:
                    vehicle.kill()

    def _track_improvement(self, dt: float) -> None:
        """Running fitness of everyone; reset the no-improvement clock on a new best."""
        current_best = 0.0
        for vehicle in self.vehicles:
            vehicle.fitness = self.fitness.calculate(vehicle)
            current_best = max(current_best, vehicle.fitness)

        if current_best > self.generation_best_fitness:
            self.generation_best_fitness = current_best
            self.time_since_improvement = 0.0
        else:
            self.time_since_improvement += dt

    def _collect_training_sample(self) -> None:
        if self.training_collector is None:
            return
        leader = self.best_vehicle()
        if leader is not None and leader.inputs is not None and leader.outputs is not None:
            self.training_collector.record(leader.inputs, leader.outputs, leader)

    def best_vehicle(self) -> Optional[Vehicle]:
        """Highest running fitness among live vehicles; ties go to the first."""
        best = None
        for vehicle in self.vehicles:
            if vehicle.alive and (best is None or vehicle.fitness > best.fitness):
                best = vehicle
        return best

    # ==================== Lifecycle ====================

    def end_reason(self) -> Optional[str]:
        """Why the current generation should end, or None to keep running."""
        cfg = self.config
        alive = len(self.alive_vehicles)
        if self.generation_elapsed >= cfg.generation_time:
            return "time_limit"
        if alive == 0:
            return "extinct"
        if self.time_since_improvement > cfg.no_improvement_timeout:
            return "no_improvement"
        if alive / len(self.vehicles) <= cfg.alive_fraction_threshold:
            return "few_alive"
        return None

    def end_generation(self, reason: str = "manual") -> GenerationSummary:
        """Evaluate, adapt, breed and spawn the next generation."""
        self.phase = GenerationPhase.EVALUATING
        summary = self.evaluate_generation()
        summary.end_reason = reason

        summary.mutation_rate = self.adapt_mutation_rate()

        brains = self.breed(self.ranked)
        self.generation += 1
        self.spawn_generation(brains)

        for listener in list(self._listeners):
            listener(summary)
        return summary

    def evaluate_generation(self) -> GenerationSummary:
        """
        Final fitness for every vehicle, alive or dead, and one history row.

        The all-time best brain is updated (and persisted) independently of
        elitism.
        """
        self.ranked = self.fitness.rank(self.vehicles)
        stats = summarize(np.array([v.fitness for v in self.ranked]), top=10)
        summary = GenerationSummary(
            generation=self.generation,
            best_fitness=stats["best"],
            avg_fitness=stats["avg"],
            avg_top10_fitness=stats["avg_top"],
        )
        self.history.append(summary)

        leader = self.ranked[0]
        if self.best_brain_ever is None or leader.fitness > self.best_fitness_ever:
            self.best_fitness_ever = leader.fitness
            self.best_brain_ever = leader.brain.clone()
            if self.archive is not None:
                self.archive.save_best(self.best_brain_ever, self.best_fitness_ever)

        if self.archive is not None:
            self.archive.save_history([h.to_dict() for h in self.history])
        return summary

    def adapt_mutation_rate(self) -> float:
        """
        Boost the rate on a plateau, otherwise decay it toward the floor.

        A plateau is a relative improvement below the threshold between the
        mean best fitness of the last window and the window before it. With
        a zero-mean older window the comparison is skipped.
        """
        cfg = self.config
        window = cfg.plateau_window
        self.plateau_detected = False

        bests = [h.best_fitness for h in self.history]
        if len(bests) >= 2 * window:
            recent = float(np.mean(bests[-window:]))
            older = float(np.mean(bests[-2 * window:-window]))
            if older != 0:
                improvement = (recent - older) / abs(older)
                if improvement < cfg.plateau_threshold:
                    self.plateau_detected = True
                    self.mutation_rate = min(self.mutation_rate * cfg.plateau_boost, cfg.max_mutation_rate)
                    return self.mutation_rate

        decayed = cfg.mutation_rate * cfg.mutation_decay_rate ** len(self.history)
        self.mutation_rate = min(cfg.max_mutation_rate, max(cfg.min_mutation_rate, decayed))
        return self.mutation_rate

    def breed(self, ranked: List[Vehicle]) -> List[Brain]:
        """
        Next generation's brains from a best-first ranking.

        The first elite_count are untouched clones; the rest are mutated
        crossovers of two parents drawn uniformly from the top
        max(elite_count, parent_pool_min).
        """
        cfg = self.config
        brains = [v.brain.clone() for v in ranked[:cfg.elite_count]]

        pool_size = min(len(ranked), max(cfg.elite_count, cfg.parent_pool_min))
        pool = ranked[:pool_size]
        while len(brains) < cfg.population_size:
            first = pool[int(self.rng.integers(pool_size))]
            second = pool[int(self.rng.integers(pool_size))]
            child = crossover(first.brain, second.brain, self.rng)
            mutate(child, self.mutation_rate, self.rng)
            brains.append(child)
        return brains

    def spawn_generation(self, brains: List[Brain]) -> None:
        """Remove every old body, then create one vehicle per brain at the start line."""
        expected = self.perception.input_count
        for brain in brains:
            if brain.input_count != expected:
                raise ConfigurationError(
                    f"Brain expects {brain.input_count} inputs but the sensors "
                    f"produce {expected}"
                )

        self.phase = GenerationPhase.SPAWNING
        for vehicle in self.vehicles:
            vehicle.despawn(self.physics)
        self.vehicles = []
        self.physics.drain_collision_events()

        position = self.track.start_position
        heading = self.track.start_heading
        for brain in brains:
            self.vehicles.append(Vehicle.spawn(
                self._next_vehicle_id, brain, self.physics, position, heading, self.vehicle_config
            ))
            self._next_vehicle_id += 1

        self.generation_elapsed = 0.0
        self.generation_best_fitness = 0.0
        self.time_since_improvement = 0.0
        self.phase = GenerationPhase.RUNNING

    def set_track(self, track: Track) -> None:
        """Swap tracks and restart the current generation with the same brains."""
        self.track.detach()
        self.track = track
        self.track.attach(self.physics)
        self.spawn_generation([v.brain for v in self.vehicles])
        logger.info(f"Track replaced; generation {self.generation} restarted")

    def run(
        self,
        generations: Optional[int] = None,
        max_ticks: Optional[int] = None,
    ) -> List[GenerationSummary]:
        """Tick until `generations` more have finished, the tick budget runs out, or stop()."""
        target = self.generation + generations if generations is not None else None
        ticks = 0
        while self.phase is not GenerationPhase.STOPPED:
            if target is not None and self.generation >= target:
                break
            if max_ticks is not None and ticks >= max_ticks:
                break
            self.tick()
            ticks += 1
        return list(self.history)

    def stop(self) -> None:
        """Request a stop; takes effect at the next tick boundary."""
        self._stop_requested = True

    # ==================== Telemetry ====================

    def subscribe(self, listener: GenerationListener) -> Callable[[], None]:
        """Call `listener` with every GenerationSummary. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(
            generation=self.generation,
            phase=self.phase,
            time_remaining=max(0.0, self.config.generation_time - self.generation_elapsed),
            alive_count=len(self.alive_vehicles),
            total_count=len(self.vehicles),
            best_vehicle=self.best_vehicle(),
            best_fitness_ever=self.best_fitness_ever,
            mutation_rate=self.mutation_rate,
            history=list(self.history),
        )

    # ==================== Persistence ====================

    def save(self) -> None:
        if self.archive is None:
            return
        if self.best_brain_ever is not None:
            self.archive.save_best(self.best_brain_ever, self.best_fitness_ever)
        self.archive.save_history([h.to_dict() for h in self.history])

    def restore(self) -> None:
        """Load history and the all-time best brain from the store."""
        if self.archive is None:
            return
        history = []
        for record in self.archive.load_history():
            try:
                history.append(GenerationSummary.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable history record {record!r}: {e}")
        self.history = history
        if history:
            self.generation = history[-1].generation + 1

        self.best_brain_ever = self.archive.load_best(self.rng)
        if self.best_brain_ever is not None:
            self.best_fitness_ever = self.archive.load_best_fitness()
        logger.info(
            f"Restored {len(history)} generations, "
            f"best brain {'found' if self.best_brain_ever else 'absent'}"
        )

    def __repr__(self) -> str:
        return (
            f"EvolutionEngine(generation={self.generation}, "
            f"phase={self.phase.value}, "
            f"alive={len(self.alive_vehicles)}/{len(self.vehicles)})"
        )
