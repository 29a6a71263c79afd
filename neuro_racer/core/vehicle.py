"""
core/vehicle.py

A vehicle is a body, a brain and a logbook.

The body lives in the physics world; we only hold its handle and a cached
copy of its pose. The brain decides. The logbook (telemetry) records what
happened this generation so fitness can be judged afterwards.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple, TYPE_CHECKING
import math

import numpy as np

from neuro_racer.errors import ConfigurationError
from neuro_racer.environments.physics import BodySpec, VEHICLES

if TYPE_CHECKING:
    from neuro_racer.environments.physics import PhysicsWorld
    from .brain import Brain
    from .perception import SensorReading


@dataclass
class VehicleConfig:
    """Body and actuator constants, set at birth."""
    max_speed: float = 30.0
    max_force: float = 150.0
    max_torque: float = 150.0
    width: float = 2.0
    length: float = 3.0
    mass: float = 1.0
    linear_damping: float = 2.0
    angular_damping: float = 5.0

    def validate(self) -> None:
        for name in ("max_speed", "max_force", "max_torque", "width", "length", "mass"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"Vehicle {name} must be positive")
        if self.linear_damping < 0 or self.angular_damping < 0:
            raise ConfigurationError("Vehicle damping must be non-negative")

    def body_spec(self) -> BodySpec:
        """Triangle pointing along +x (heading 0)."""
        half_l = self.length / 2
        half_w = self.width / 2
        return BodySpec(
            vertices=[(half_l, 0.0), (-half_l, half_w), (-half_l, -half_w)],
            mass=self.mass,
            linear_damping=self.linear_damping,
            angular_damping=self.angular_damping,
            groups=VEHICLES,
        )


@dataclass
class VehicleTelemetry:
    """Per-generation accumulators consumed by the fitness evaluator."""
    distance_traveled: float = 0.0
    track_progress: float = 0.0
    center_deviation: float = 0.0
    time_alive: float = 0.0
    smoothness: float = 0.0
    frames_without_progress: int = 0
    laps_completed: int = 0
    previous_angular_velocity: float = 0.0
    last_waypoint: int = 0
    waypoint_position: int = 0           # Signed waypoints travelled, start line = 0


class Vehicle:
    """
    One member of the population.

    Created at generation spawn, owns its brain exclusively, and has its
    body removed when the next generation spawns.
    """

    def __init__(
        self,
        vehicle_id: int,
        brain: Brain,
        handle: int,
        position: np.ndarray,
        heading: float,
        config: Optional[VehicleConfig] = None,
    ):
        self.id = vehicle_id
        self.brain = brain
        self.handle = handle
        self.config = config or VehicleConfig()

        self.position = np.asarray(position, dtype=np.float64).copy()
        self.heading = float(heading)
        self.velocity = np.zeros(2)
        self.angular_velocity = 0.0

        self.telemetry = VehicleTelemetry()
        self.alive = True
        self.fitness = 0.0

        # Last tick's perception and decision, for observers
        self.sensors: List[SensorReading] = []
        self.inputs: Optional[np.ndarray] = None
        self.outputs: Optional[np.ndarray] = None

    @classmethod
    def spawn(
        cls,
        vehicle_id: int,
        brain: Brain,
        physics: PhysicsWorld,
        position: np.ndarray,
        heading: float,
        config: Optional[VehicleConfig] = None,
    ) -> "Vehicle":
        """Create the physics body and wrap it."""
        config = config or VehicleConfig()
        handle = physics.create_vehicle(position, heading, config.body_spec())
        return cls(vehicle_id, brain, handle, position, heading, config)

    # ==================== Core loop ====================

    def think(self, inputs: np.ndarray) -> np.ndarray:
        """Feed the brain; inputs must match its input width."""
        if len(inputs) != self.brain.input_count:
            raise ValueError(
                f"Vehicle {self.id}: {len(inputs)} inputs for a brain expecting "
                f"{self.brain.input_count}"
            )
        self.inputs = inputs
        self.outputs = self.brain.feed_forward(inputs)
        return self.outputs

    def actuate(self, outputs: np.ndarray, physics: PhysicsWorld, dt: float) -> None:
        """
        Turn [left, right, forward] into impulses.

        Torque is signed by right - left; thrust only when forward > 0.
        """
        left, right, forward = float(outputs[0]), float(outputs[1]), float(outputs[2])

        steer = right - left
        if steer != 0.0:
            physics.apply_torque_impulse(self.handle, steer * self.config.max_torque * dt)

        if forward > 0.0:
            speed = float(np.linalg.norm(self.velocity))
            if speed < self.config.max_speed:
                direction = np.array([math.cos(self.heading), math.sin(self.heading)])
                physics.apply_impulse(
                    self.handle, direction * forward * self.config.max_force * dt
                )

    def sync(self, physics: PhysicsWorld) -> float:
        """
        Pull the new pose from the physics world.

        Returns the distance moved since the last sync.
        """
        position, heading = physics.get_pose(self.handle)
        moved = float(np.linalg.norm(position - self.position))
        self.position = position
        self.heading = heading
        self.velocity = physics.get_linear_velocity(self.handle)
        self.angular_velocity = physics.get_angular_velocity(self.handle)
        self.telemetry.distance_traveled += moved
        return moved

    def kill(self) -> None:
        """Wall contact: a normal transition, not an error."""
        self.alive = False
        self.sensors = []

    def despawn(self, physics: PhysicsWorld) -> None:
        physics.remove_body(self.handle)
        self.alive = False

    @property
    def pose(self) -> Tuple[np.ndarray, float]:
        return self.position.copy(), self.heading

    def __repr__(self) -> str:
        return (
            f"Vehicle(id={self.id}, "
            f"pos=[{self.position[0]:.2f}, {self.position[1]:.2f}], "
            f"progress={self.telemetry.track_progress:.1f}, "
            f"alive={self.alive})"
        )
