"""
core/perception.py

What a vehicle knows about the world, squeezed into a bounded vector.

Exteroception: a fan of rays across the field of view. Each reading is
1 - distance/length on a hit (closer wall = stronger signal), 0 when clear.
Proprioception: forward speed and angular velocity, both normalized.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, TYPE_CHECKING
import math

import numpy as np

from neuro_racer.errors import ConfigurationError

if TYPE_CHECKING:
    from neuro_racer.environments.physics import PhysicsWorld, RayHit
    from .vehicle import Vehicle


@dataclass
class SensorConfig:
    """Ray fan layout."""
    count: int = 9
    length: float = 50.0
    fov: float = math.pi * 0.7
    angular_velocity_scale: float = 5.0    # tanh(omega / scale)

    @property
    def input_count(self) -> int:
        """Rays plus speed plus angular velocity."""
        return self.count + 2

    def validate(self) -> None:
        if self.count <= 0:
            raise ConfigurationError("Sensor count must be positive")
        if self.length <= 0:
            raise ConfigurationError("Sensor length must be positive")
        if not 0 <= self.fov <= 2 * math.pi:
            raise ConfigurationError("Sensor field of view must be within [0, 2*pi]")
        if self.angular_velocity_scale <= 0:
            raise ConfigurationError("angular_velocity_scale must be positive")


@dataclass
class SensorReading:
    """One ray for one tick. Not persisted."""
    origin: np.ndarray
    direction: np.ndarray
    hit: Optional[RayHit] = None
    value: float = 0.0

    @property
    def end(self) -> np.ndarray:
        """Where the ray stopped (hit point, or full length if clear)."""
        if self.hit is not None:
            return self.hit.point
        return self.origin + self.direction


class PerceptionModel:
    """
    Turns pose + ray casts into brain inputs.

    Other vehicles never block rays: the caller passes every vehicle
    collider in the exclusion set.
    """

    def __init__(self, config: Optional[SensorConfig] = None):
        self.config = config or SensorConfig()
        self.config.validate()

    @property
    def input_count(self) -> int:
        return self.config.input_count

    def ray_angles(self, heading: float) -> np.ndarray:
        count = self.config.count
        if count == 1:
            return np.array([heading])
        fov = self.config.fov
        return heading - fov / 2 + fov * np.arange(count) / (count - 1)

    def sense(
        self,
        position: np.ndarray,
        heading: float,
        physics: PhysicsWorld,
        exclude: Iterable[int] = (),
    ) -> List[SensorReading]:
        """Cast every ray and normalize the hits."""
        length = self.config.length
        exclude = frozenset(exclude)
        origin = np.asarray(position, dtype=np.float64)

        readings = []
        for angle in self.ray_angles(heading):
            direction = np.array([math.cos(angle), math.sin(angle)])
            hit = physics.cast_ray(origin, direction, length, exclude)
            value = 0.0
            if hit is not None:
                value = 1.0 - min(hit.distance, length) / length
            readings.append(SensorReading(
                origin=origin.copy(),
                direction=direction * length,
                hit=hit,
                value=value,
            ))
        return readings

    def build_inputs(
        self,
        readings: List[SensorReading],
        speed: float,
        angular_velocity: float,
        max_speed: float,
    ) -> np.ndarray:
        """Sensor values, then min(speed/max, 1), then tanh(omega/k)."""
        normalized_speed = min(speed / max_speed, 1.0) if max_speed > 0 else 0.0
        normalized_spin = math.tanh(angular_velocity / self.config.angular_velocity_scale)
        return np.array(
            [r.value for r in readings] + [normalized_speed, normalized_spin],
            dtype=np.float64,
        )

    def perceive(
        self,
        vehicle: Vehicle,
        physics: PhysicsWorld,
        exclude: Iterable[int] = (),
    ) -> Tuple[List[SensorReading], np.ndarray]:
        """Full input vector for one live vehicle."""
        readings = self.sense(vehicle.position, vehicle.heading, physics, exclude)
        speed = float(np.linalg.norm(vehicle.velocity))
        inputs = self.build_inputs(
            readings, speed, vehicle.angular_velocity, vehicle.config.max_speed
        )
        return readings, inputs
