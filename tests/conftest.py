"""
Shared test helpers.

FakePhysicsWorld is a tiny deterministic stand-in for the pymunk adapter:
point-mass bodies, exact ray/segment intersection against static
polylines, and a contact whenever a body centre comes within its radius
of a wall.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pytest

from neuro_racer.core.brain import Brain
from neuro_racer.environments.physics import BodySpec, PhysicsWorld, RayHit, WALLS
from neuro_racer.environments.track import EditableTrack


@dataclass
class FakeBody:
    position: np.ndarray
    heading: float
    spec: BodySpec
    velocity: np.ndarray
    angular_velocity: float = 0.0


class FakePhysicsWorld(PhysicsWorld):
    """Deterministic kinematic world recording every call that matters."""

    def __init__(self, body_radius: float = 1.0):
        self.body_radius = body_radius
        self.bodies: Dict[int, FakeBody] = {}
        self.statics: Dict[int, np.ndarray] = {}
        self.operations: List[Tuple[str, int]] = []
        self.step_count = 0
        self._next_handle = 1
        self._contacts = set()
        self._events: List[Tuple[int, int]] = []

    def _allocate(self) -> int:
        handle = self._next_handle
        self._next_handle += 1
        return handle

    def create_vehicle(self, position, heading, spec):
        handle = self._allocate()
        self.bodies[handle] = FakeBody(
            position=np.asarray(position, dtype=np.float64).copy(),
            heading=float(heading),
            spec=spec,
            velocity=np.zeros(2),
        )
        self.operations.append(("create", handle))
        return handle

    def remove_body(self, handle):
        if self.bodies.pop(handle, None) is not None:
            self.operations.append(("remove", handle))
        self._contacts = {pair for pair in self._contacts if handle not in pair}

    def has_body(self, handle):
        return handle in self.bodies

    def create_static_polyline(self, points, groups=WALLS):
        handle = self._allocate()
        self.statics[handle] = np.asarray(points, dtype=np.float64).copy()
        return handle

    def remove_static(self, handle):
        self.statics.pop(handle, None)

    def apply_impulse(self, handle, impulse):
        body = self.bodies[handle]
        body.velocity = body.velocity + np.asarray(impulse) / body.spec.mass

    def apply_torque_impulse(self, handle, torque):
        body = self.bodies[handle]
        body.angular_velocity += torque / body.spec.mass

    def get_pose(self, handle):
        body = self.bodies[handle]
        return body.position.copy(), body.heading

    def get_linear_velocity(self, handle):
        return self.bodies[handle].velocity.copy()

    def get_angular_velocity(self, handle):
        return self.bodies[handle].angular_velocity

    def cast_ray(self, origin, direction, max_length, exclude: Iterable[int] = ()) -> Optional[RayHit]:
        origin = np.asarray(origin, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        ray = direction / np.linalg.norm(direction) * max_length
        excluded = set(exclude)

        best_t = None
        for handle, points in self.statics.items():
            if handle in excluded:
                continue
            a = points[:-1]
            edge = points[1:] - a
            denom = ray[0] * edge[:, 1] - ray[1] * edge[:, 0]
            to_a = a - origin
            with np.errstate(divide="ignore", invalid="ignore"):
                t = (to_a[:, 0] * edge[:, 1] - to_a[:, 1] * edge[:, 0]) / denom
                u = (to_a[:, 0] * ray[1] - to_a[:, 1] * ray[0]) / denom
            valid = (np.abs(denom) > 1e-12) & (t >= 0) & (t <= 1) & (u >= 0) & (u <= 1)
            if valid.any():
                t_min = float(t[valid].min())
                if best_t is None or t_min < best_t:
                    best_t = t_min

        if best_t is None:
            return None
        return RayHit(distance=best_t * max_length, point=origin + ray * best_t)

    def step(self, dt):
        self.step_count += 1
        touching = set()
        for handle, body in self.bodies.items():
            body.position = body.position + body.velocity * dt
            body.heading += body.angular_velocity * dt
            body.velocity = body.velocity / (1.0 + dt * body.spec.linear_damping)
            body.angular_velocity /= (1.0 + dt * body.spec.angular_damping)

            for static, points in self.statics.items():
                if _polyline_distance(body.position, points) <= self.body_radius:
                    touching.add((handle, static))

        self._events.extend(sorted(touching - self._contacts))
        self._contacts = touching

    def drain_collision_events(self):
        events = self._events
        self._events = []
        return events

    def teleport(self, handle, position, velocity=(0.0, 0.0)):
        body = self.bodies[handle]
        body.position = np.asarray(position, dtype=np.float64)
        body.velocity = np.asarray(velocity, dtype=np.float64)


def _polyline_distance(point: np.ndarray, points: np.ndarray) -> float:
    a = points[:-1]
    edge = points[1:] - a
    length_sq = np.maximum((edge ** 2).sum(axis=1), 1e-12)
    t = np.clip(((point - a) * edge).sum(axis=1) / length_sq, 0.0, 1.0)
    closest = a + edge * t[:, None]
    return float(np.linalg.norm(closest - point, axis=1).min())


@pytest.fixture
def physics():
    return FakePhysicsWorld()


@pytest.fixture
def track():
    return EditableTrack()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def brain(rng):
    return Brain(11, [16, 8], 3, rng=rng)
