"""
environments/physics.py

The boundary between the evolution core and a 2D rigid-body engine.

The core never touches engine objects directly. It creates and removes
bodies, pushes them around with impulses, casts rays and listens for
collisions, all through integer handles.

Collision groups follow the usual 32-bit interaction-mask layout:
the high 16 bits say which groups a shape belongs to, the low 16 bits
which groups it is willing to touch.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import numpy as np


# Walls touch vehicles; vehicles touch walls but never each other.
WALLS = 0x00020001
VEHICLES = 0x00010002


def interaction_groups(membership: int, filter_mask: int) -> int:
    """Pack membership and filter bits into one interaction mask."""
    return ((membership & 0xFFFF) << 16) | (filter_mask & 0xFFFF)


def split_groups(groups: int) -> Tuple[int, int]:
    """Unpack an interaction mask into (membership, filter)."""
    return (groups >> 16) & 0xFFFF, groups & 0xFFFF


def groups_interact(a: int, b: int) -> bool:
    """Two shapes interact iff each belongs to a group the other accepts."""
    a_member, a_filter = split_groups(a)
    b_member, b_filter = split_groups(b)
    return bool(a_member & b_filter) and bool(b_member & a_filter)


@dataclass
class RayHit:
    """Nearest intersection of a ray cast."""
    distance: float
    point: np.ndarray

    def __post_init__(self):
        self.point = np.asarray(self.point, dtype=np.float64)


@dataclass
class BodySpec:
    """Shape and damping of a dynamic vehicle body."""
    vertices: List[Tuple[float, float]]
    mass: float = 1.0
    linear_damping: float = 2.0
    angular_damping: float = 5.0
    groups: int = VEHICLES


class PhysicsWorld(ABC):
    """
    Port to the physics engine.

    Handles are plain ints. A vehicle body carries exactly one collider, so
    its body handle doubles as its collider handle in collision events and
    ray-cast exclusion sets.
    """

    @abstractmethod
    def create_vehicle(
        self,
        position: np.ndarray,
        heading: float,
        spec: BodySpec,
    ) -> int:
        """Create a dynamic body with one convex polygon collider."""
        pass

    @abstractmethod
    def remove_body(self, handle: int) -> None:
        """Remove a dynamic body and its collider."""
        pass

    @abstractmethod
    def has_body(self, handle: int) -> bool:
        pass

    @abstractmethod
    def create_static_polyline(self, points: np.ndarray, groups: int = WALLS) -> int:
        """Create a static chain of segments through `points`."""
        pass

    @abstractmethod
    def remove_static(self, handle: int) -> None:
        pass

    @abstractmethod
    def apply_impulse(self, handle: int, impulse: np.ndarray) -> None:
        """Linear impulse at the body's center of mass."""
        pass

    @abstractmethod
    def apply_torque_impulse(self, handle: int, torque: float) -> None:
        pass

    @abstractmethod
    def get_pose(self, handle: int) -> Tuple[np.ndarray, float]:
        """Return (position, heading angle in radians)."""
        pass

    @abstractmethod
    def get_linear_velocity(self, handle: int) -> np.ndarray:
        pass

    @abstractmethod
    def get_angular_velocity(self, handle: int) -> float:
        pass

    @abstractmethod
    def cast_ray(
        self,
        origin: np.ndarray,
        direction: np.ndarray,
        max_length: float,
        exclude: Iterable[int] = (),
    ) -> Optional[RayHit]:
        """Nearest hit along the ray, ignoring colliders in `exclude`."""
        pass

    @abstractmethod
    def step(self, dt: float) -> None:
        """Integrate every body once."""
        pass

    @abstractmethod
    def drain_collision_events(self) -> List[Tuple[int, int]]:
        """
        Collision-begin events since the last drain.

        Each event is a (handle, handle) pair; order within a pair is not
        meaningful.
        """
        pass
