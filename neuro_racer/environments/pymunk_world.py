"""
environments/pymunk_world.py

PhysicsWorld backed by pymunk (Chipmunk2D).

Gravity is zero: this is a top-down world. Per-body damping is applied in
a custom velocity function since pymunk only damps globally. Collision
begin events are derived by polling each vehicle's arbiters after every
step and reporting pairs that were not touching on the previous step.
"""

from __future__ import annotations
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
import logging

import numpy as np
import pymunk

from .physics import BodySpec, PhysicsWorld, RayHit, WALLS, split_groups

logger = logging.getLogger(__name__)


def _shape_filter(groups: int) -> pymunk.ShapeFilter:
    membership, filter_mask = split_groups(groups)
    return pymunk.ShapeFilter(categories=membership, mask=filter_mask)


def _damped_velocity(linear_damping: float, angular_damping: float):
    """Velocity integrator with per-body linear and angular damping."""
    def velocity_func(body, gravity, damping, dt):
        pymunk.Body.update_velocity(body, gravity, damping, dt)
        body.velocity = body.velocity * (1.0 / (1.0 + dt * linear_damping))
        body.angular_velocity = body.angular_velocity / (1.0 + dt * angular_damping)
    return velocity_func


class PymunkWorld(PhysicsWorld):
    """
    Top-down rigid-body world.

    Walls are chains of thin static segments; vehicles are dynamic bodies
    with one convex polygon each.
    """

    def __init__(self, wall_radius: float = 0.5):
        self.space = pymunk.Space()
        self.space.gravity = (0.0, 0.0)
        self.wall_radius = wall_radius

        self._next_handle = 1
        self._bodies: Dict[int, pymunk.Body] = {}
        self._statics: Dict[int, List[pymunk.Segment]] = {}
        self._shape_handles: Dict[pymunk.Shape, int] = {}

        self._contacts: Set[FrozenSet[int]] = set()
        self._events: List[Tuple[int, int]] = []

    def _allocate_handle(self) -> int:
        handle = self._next_handle
        self._next_handle += 1
        return handle

    # ==================== Bodies ====================

    def create_vehicle(
        self,
        position: np.ndarray,
        heading: float,
        spec: BodySpec,
    ) -> int:
        vertices = [tuple(v) for v in spec.vertices]
        body = pymunk.Body(spec.mass, pymunk.moment_for_poly(spec.mass, vertices))
        body.position = (float(position[0]), float(position[1]))
        body.angle = float(heading)
        body.velocity_func = _damped_velocity(spec.linear_damping, spec.angular_damping)

        shape = pymunk.Poly(body, vertices)
        shape.filter = _shape_filter(spec.groups)
        self.space.add(body, shape)

        handle = self._allocate_handle()
        self._bodies[handle] = body
        self._shape_handles[shape] = handle
        return handle

    def remove_body(self, handle: int) -> None:
        body = self._bodies.pop(handle, None)
        if body is None:
            return
        shapes = list(body.shapes)
        for shape in shapes:
            self._shape_handles.pop(shape, None)
        self.space.remove(body, *shapes)
        self._contacts = {pair for pair in self._contacts if handle not in pair}

    def has_body(self, handle: int) -> bool:
        return handle in self._bodies

    def create_static_polyline(self, points: np.ndarray, groups: int = WALLS) -> int:
        points = np.asarray(points, dtype=np.float64)
        if len(points) < 2:
            raise ValueError("A polyline needs at least two points")

        handle = self._allocate_handle()
        shape_filter = _shape_filter(groups)
        segments = []
        for a, b in zip(points[:-1], points[1:]):
            segment = pymunk.Segment(
                self.space.static_body,
                (float(a[0]), float(a[1])),
                (float(b[0]), float(b[1])),
                self.wall_radius,
            )
            segment.filter = shape_filter
            segments.append(segment)
            self._shape_handles[segment] = handle

        self.space.add(*segments)
        self._statics[handle] = segments
        logger.debug(f"Static polyline {handle} with {len(segments)} segments")
        return handle

    def remove_static(self, handle: int) -> None:
        segments = self._statics.pop(handle, None)
        if not segments:
            return
        for segment in segments:
            self._shape_handles.pop(segment, None)
        self.space.remove(*segments)
        self._contacts = {pair for pair in self._contacts if handle not in pair}

    # ==================== Dynamics ====================

    def apply_impulse(self, handle: int, impulse: np.ndarray) -> None:
        body = self._bodies[handle]
        body.apply_impulse_at_world_point(
            (float(impulse[0]), float(impulse[1])), body.position
        )

    def apply_torque_impulse(self, handle: int, torque: float) -> None:
        body = self._bodies[handle]
        body.angular_velocity += float(torque) / body.moment

    def get_pose(self, handle: int) -> Tuple[np.ndarray, float]:
        body = self._bodies[handle]
        return np.array([body.position.x, body.position.y]), float(body.angle)

    def get_linear_velocity(self, handle: int) -> np.ndarray:
        velocity = self._bodies[handle].velocity
        return np.array([velocity.x, velocity.y])

    def get_angular_velocity(self, handle: int) -> float:
        return float(self._bodies[handle].angular_velocity)

    # ==================== Queries ====================

    def cast_ray(
        self,
        origin: np.ndarray,
        direction: np.ndarray,
        max_length: float,
        exclude: Iterable[int] = (),
    ) -> Optional[RayHit]:
        origin = np.asarray(origin, dtype=np.float64)
        direction = np.asarray(direction, dtype=np.float64)
        norm = np.linalg.norm(direction)
        if norm == 0 or max_length <= 0:
            return None
        end = origin + direction / norm * max_length

        excluded = set(exclude)
        best = None
        for info in self.space.segment_query(
            (float(origin[0]), float(origin[1])),
            (float(end[0]), float(end[1])),
            0.0,
            pymunk.ShapeFilter(),
        ):
            owner = self._shape_handles.get(info.shape)
            if owner is None or owner in excluded:
                continue
            if best is None or info.alpha < best.alpha:
                best = info

        if best is None:
            return None
        return RayHit(
            distance=float(best.alpha) * max_length,
            point=np.array([best.point.x, best.point.y]),
        )

    def step(self, dt: float) -> None:
        self.space.step(dt)

        touching: Set[FrozenSet[int]] = set()
        for handle, body in self._bodies.items():
            def collect(arbiter, handle=handle):
                for shape in arbiter.shapes:
                    other = self._shape_handles.get(shape)
                    if other is not None and other != handle:
                        touching.add(frozenset((handle, other)))
            body.each_arbiter(collect)

        started = sorted(tuple(sorted(pair)) for pair in touching - self._contacts)
        self._events.extend(started)
        self._contacts = touching

    def drain_collision_events(self) -> List[Tuple[int, int]]:
        events = self._events
        self._events = []
        return events

    def __repr__(self) -> str:
        return (
            f"PymunkWorld(bodies={len(self._bodies)}, "
            f"statics={len(self._statics)})"
        )
