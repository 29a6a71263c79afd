"""
evolution/fitness.py

Fitness is what we optimize. Telemetry is what we measure.

Every tick, each live vehicle's telemetry is updated against the track:
how far along it has ever been, how far from the center it drifts, how
jerky its steering is. At the end of a generation those accumulators are
folded into one non-negative score.

Progress dominates. Everything else exists to break ties and to stop the
population from gaming the score by parking or spinning in place.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import numpy as np

from neuro_racer.errors import ConfigurationError

if TYPE_CHECKING:
    from neuro_racer.core.vehicle import Vehicle, VehicleTelemetry
    from neuro_racer.environments.track import Track


@dataclass
class FitnessWeights:
    """
    Weights and constants of the fitness function.

    Zeroing every weight except track_progress (and setting
    progress_exponent to 1) reduces the score to plain distance along
    the track.
    """
    track_progress: float = 100.0
    center_deviation: float = 50.0
    speed: float = 10.0
    smoothness: float = 20.0
    survival: float = 1.0
    survival_rate: float = 0.5      # Bonus per second alive
    survival_cap: float = 10.0
    stagnation: float = 500.0       # Penalty per (second beyond threshold)^2
    stagnation_seconds: float = 3.0
    progress_exponent: float = 1.5
    progress_epsilon: float = 0.1   # Minimum per-tick gain that counts as progress

    def validate(self) -> None:
        for name, value in asdict(self).items():
            if value < 0:
                raise ConfigurationError(f"Fitness weight {name} must be non-negative")
        if self.progress_exponent <= 0:
            raise ConfigurationError("progress_exponent must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FitnessEvaluator:
    """
    Per-tick telemetry bookkeeping plus the final score.

    tick_rate is the fixed simulation rate; the stagnation threshold is
    expressed in frames at that rate.
    """

    def __init__(self, weights: Optional[FitnessWeights] = None, tick_rate: float = 60.0):
        if tick_rate <= 0:
            raise ConfigurationError("tick_rate must be positive")
        self.weights = weights or FitnessWeights()
        self.weights.validate()
        self.tick_rate = tick_rate

    @property
    def dt(self) -> float:
        return 1.0 / self.tick_rate

    @property
    def stagnation_threshold(self) -> int:
        """Frames without progress tolerated before the penalty starts."""
        return int(round(self.weights.stagnation_seconds * self.tick_rate))

    # ==================== Per-tick ====================

    def update(self, vehicle: Vehicle, track: Track) -> None:
        """
        Advance one vehicle's telemetry by one tick.

        track_progress is the furthest point ever reached (waypoint index
        plus whole laps) and never decreases.
        """
        path_length = len(track)
        if path_length == 0:
            return
        tel = vehicle.telemetry

        nearest, distance = track.nearest_waypoint(vehicle.position)

        # Signed waypoint step, wrapped so crossing the start line in either
        # direction is a small step rather than a whole lap
        half = path_length // 2
        step = (nearest - tel.last_waypoint + half) % path_length - half
        tel.last_waypoint = nearest
        tel.waypoint_position += step

        # Progress is the furthest position reached; reversing goes negative
        # and has to be driven back before anything counts
        previous = tel.track_progress
        if tel.waypoint_position > previous:
            tel.track_progress = float(tel.waypoint_position)
            tel.laps_completed = tel.waypoint_position // path_length

        if tel.track_progress <= previous + self.weights.progress_epsilon:
            tel.frames_without_progress += 1
        else:
            tel.frames_without_progress = 0

        tel.center_deviation += distance
        tel.time_alive += self.dt

        spin = abs(vehicle.angular_velocity)
        spin_change = abs(spin - tel.previous_angular_velocity)
        tel.smoothness += max(0.0, 1.0 - spin_change)
        tel.previous_angular_velocity = spin

    # ==================== Scoring ====================

    def stagnation_penalty(self, telemetry: VehicleTelemetry) -> float:
        """Zero below the threshold, then quadratic in the stalled seconds past it."""
        frames = telemetry.frames_without_progress
        if frames < self.stagnation_threshold:
            return 0.0
        # The threshold frame itself already counts as one stalled frame
        seconds = (frames - self.stagnation_threshold + 1) / self.tick_rate
        return self.weights.stagnation * seconds ** 2

    def components(self, telemetry: VehicleTelemetry) -> Dict[str, float]:
        """Every term of the score, for inspection."""
        w = self.weights
        time_alive = max(1.0, telemetry.time_alive)
        progress = max(0.0, telemetry.track_progress)

        avg_deviation = telemetry.center_deviation / time_alive
        return {
            "progress": w.track_progress * progress ** w.progress_exponent,
            "center": max(0.0, w.center_deviation - avg_deviation * 2),
            "speed": w.speed * telemetry.distance_traveled / time_alive,
            "smoothness": w.smoothness * telemetry.smoothness,
            "survival": w.survival * min(telemetry.time_alive * w.survival_rate, w.survival_cap),
            "stagnation": self.stagnation_penalty(telemetry),
        }

    def score(self, telemetry: VehicleTelemetry) -> float:
        parts = self.components(telemetry)
        bonus = sum(value for key, value in parts.items() if key != "stagnation")
        return float(max(0.0, bonus - parts["stagnation"]))

    def calculate(self, vehicle: Vehicle) -> float:
        """Final, never-negative fitness of one vehicle."""
        return self.score(vehicle.telemetry)

    def rank(self, vehicles: List[Vehicle]) -> List[Vehicle]:
        """
        Score every vehicle and sort best first.

        The sort is stable: ties keep array order.
        """
        for vehicle in vehicles:
            vehicle.fitness = self.calculate(vehicle)
        return sorted(vehicles, key=lambda v: v.fitness, reverse=True)


def summarize(fitnesses: np.ndarray, top: int = 10) -> Dict[str, float]:
    """Best, mean and mean-of-top-k of a fitness array."""
    fitnesses = np.sort(np.asarray(fitnesses, dtype=np.float64))[::-1]
    if fitnesses.size == 0:
        return {"best": 0.0, "avg": 0.0, "avg_top": 0.0}
    return {
        "best": float(fitnesses[0]),
        "avg": float(fitnesses.mean()),
        "avg_top": float(fitnesses[:top].mean()),
    }
