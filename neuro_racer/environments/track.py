"""
environments/track.py

Closed racing tracks and their collision boundaries.

Two ways to get a centerline:
- ProceduralTrack: seeded random points -> convex hull -> displaced
  midpoints -> corner-cutting smoothing. Organic, reproducible.
- EditableTrack: user control points -> closed Catmull-Rom spline.

Both share boundary synthesis: every path vertex is pushed out and in by
half the track width along a normal estimated from its neighbours.
The two closed polylines are the only geometry the physics world sees.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING
import logging

import numpy as np

from neuro_racer.errors import ConfigurationError
from .physics import WALLS

if TYPE_CHECKING:
    from .physics import PhysicsWorld
    from neuro_racer.services.persistence import KeyValueStore

logger = logging.getLogger(__name__)


TRACK_STORE_KEY = "trackControlPoints"


@dataclass
class TrackConfig:
    """Geometry knobs for both track flavours."""
    kind: str = "procedural"        # "procedural" or "editable"
    width: float = 800.0            # World rectangle the random points live in
    height: float = 600.0
    track_width: float = 30.0
    seed: int = 300
    point_count: int = 20
    margin: float = 40.0
    displacement: float = 0.7       # Midpoint offset, as a fraction of edge length
    smoothing_passes: int = 5
    spline_resolution: int = 20     # Catmull-Rom samples per control segment

    def validate(self) -> None:
        if self.kind not in ("procedural", "editable"):
            raise ConfigurationError(f"Unknown track kind: {self.kind}")
        if self.track_width <= 0:
            raise ConfigurationError("track_width must be positive")
        if self.width <= 2 * self.margin or self.height <= 2 * self.margin:
            raise ConfigurationError("Track area must be larger than twice the margin")
        if self.point_count < 3:
            raise ConfigurationError("point_count must be at least 3")
        if self.smoothing_passes < 0:
            raise ConfigurationError("smoothing_passes must be non-negative")
        if self.spline_resolution < 1:
            raise ConfigurationError("spline_resolution must be at least 1")


# ==================== Geometry helpers ====================

def _cross(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: np.ndarray) -> np.ndarray:
    """
    Monotone-chain convex hull.

    Sorts by x then y and keeps only strict left turns, so collinear
    points are dropped. Returns hull vertices counter-clockwise.
    """
    pts = sorted(map(tuple, np.asarray(points, dtype=np.float64)))
    if len(pts) < 3:
        return np.array(pts, dtype=np.float64)

    lower: List[Tuple[float, float]] = []
    for p in pts:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Tuple[float, float]] = []
    for p in reversed(pts):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    return np.array(lower[:-1] + upper[:-1], dtype=np.float64)


def chaikin_smooth(polygon: np.ndarray, passes: int) -> np.ndarray:
    """Closed corner cutting; each pass doubles the vertex count."""
    path = np.asarray(polygon, dtype=np.float64)
    for _ in range(passes):
        nxt = np.roll(path, -1, axis=0)
        q = 0.75 * path + 0.25 * nxt
        r = 0.25 * path + 0.75 * nxt
        path = np.empty((2 * len(path), 2))
        path[0::2] = q
        path[1::2] = r
    return path


def catmull_rom_closed(control_points: np.ndarray, resolution: int) -> np.ndarray:
    """
    Uniform Catmull-Rom through a closed loop of control points.

    Each segment p[i] -> p[i+1] is sampled at t = k/resolution for
    k in [0, resolution), so the loop is not explicitly closed: the last
    sample sits one step before the first.
    """
    cps = np.asarray(control_points, dtype=np.float64)
    n = len(cps)
    samples = []
    ts = np.arange(resolution) / resolution
    for i in range(n):
        p0 = cps[(i - 1) % n]
        p1 = cps[i]
        p2 = cps[(i + 1) % n]
        p3 = cps[(i + 2) % n]
        for t in ts:
            t2 = t * t
            t3 = t2 * t
            samples.append(0.5 * (
                2 * p1
                + (-p0 + p2) * t
                + (2 * p0 - 5 * p1 + 4 * p2 - p3) * t2
                + (-p0 + 3 * p1 - 3 * p2 + p3) * t3
            ))
    return np.array(samples)


def signed_area(polygon: np.ndarray) -> float:
    """Shoelace area; positive for counter-clockwise loops."""
    pts = np.asarray(polygon, dtype=np.float64)
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))


def point_segment_distance_sq(
    point: np.ndarray,
    a: np.ndarray,
    b: np.ndarray,
) -> float:
    """Squared distance from point to segment ab (projection clamped to [0, 1])."""
    ab = b - a
    length_sq = float(np.dot(ab, ab))
    if length_sq == 0:
        d = point - a
        return float(np.dot(d, d))
    t = float(np.dot(point - a, ab)) / length_sq
    t = max(0.0, min(1.0, t))
    d = point - (a + t * ab)
    return float(np.dot(d, d))


# ==================== Track ====================

class Track:
    """
    A closed centerline plus inner and outer boundary loops.

    path is an (N, 2) array, implicitly closed. inner_loop and outer_loop
    are (N + 1, 2) arrays with the first vertex repeated at the end.
    """

    def __init__(self, track_width: float = 30.0):
        if track_width <= 0:
            raise ConfigurationError("track_width must be positive")
        self.track_width = float(track_width)
        self.path = np.zeros((0, 2))
        self.inner_loop = np.zeros((0, 2))
        self.outer_loop = np.zeros((0, 2))

        # Physics registration
        self._physics: Optional[PhysicsWorld] = None
        self._wall_handles: List[int] = []

    # ==================== Derived geometry ====================

    @property
    def half_width(self) -> float:
        return self.track_width / 2

    @property
    def start_position(self) -> np.ndarray:
        return self.path[0].copy()

    @property
    def start_heading(self) -> float:
        direction = self.path[1 % len(self.path)] - self.path[0]
        return float(np.arctan2(direction[1], direction[0]))

    def __len__(self) -> int:
        return len(self.path)

    def _set_path(self, path: np.ndarray) -> None:
        self.path = np.asarray(path, dtype=np.float64)
        self.build_boundaries()
        self._refresh_walls()

    def build_boundaries(self) -> None:
        """
        Offset the path by +/- half the width.

        The normal at vertex i is the left normal of the centered tangent
        p[i+1] - p[i-1]. For a counter-clockwise path the left normal
        points inward, so the sign is picked from the path's winding to
        keep outer_loop outside.
        """
        path = self.path
        if len(path) < 3:
            self.inner_loop = np.zeros((0, 2))
            self.outer_loop = np.zeros((0, 2))
            return

        tangents = np.roll(path, -1, axis=0) - np.roll(path, 1, axis=0)
        normals = np.stack([-tangents[:, 1], tangents[:, 0]], axis=1)
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = normals / np.maximum(lengths, 1e-12)

        outward = -1.0 if signed_area(path) > 0 else 1.0
        offset = normals * self.half_width * outward

        outer = path + offset
        inner = path - offset
        self.outer_loop = np.vstack([outer, outer[:1]])
        self.inner_loop = np.vstack([inner, inner[:1]])

    def set_width(self, track_width: float) -> None:
        if track_width <= 0:
            raise ConfigurationError("track_width must be positive")
        self.track_width = float(track_width)
        self.build_boundaries()
        self._refresh_walls()

    # ==================== Queries ====================

    def nearest_waypoint(self, point: np.ndarray) -> Tuple[int, float]:
        """Index of and distance to the closest path vertex (linear scan)."""
        if len(self.path) == 0:
            return 0, 0.0
        distances = np.linalg.norm(self.path - np.asarray(point, dtype=np.float64), axis=1)
        index = int(np.argmin(distances))
        return index, float(distances[index])

    def is_point_on_track(self, x: float, y: float) -> bool:
        """
        True when (x, y) lies within half the width of some path segment.

        Cheaper than physics collisions, but point sampling can miss a fast
        vehicle tunnelling through a wall between ticks.
        """
        path = self.path
        if len(path) < 2:
            return False
        point = np.array([x, y], dtype=np.float64)
        min_sq = min(
            point_segment_distance_sq(point, path[i], path[(i + 1) % len(path)])
            for i in range(len(path))
        )
        return min_sq <= self.half_width ** 2

    # ==================== Physics ====================

    def attach(self, physics: PhysicsWorld) -> None:
        """Register both boundary loops as static walls."""
        self.detach()
        self._physics = physics
        self._create_walls()

    def detach(self) -> None:
        if self._physics is None:
            return
        for handle in self._wall_handles:
            self._physics.remove_static(handle)
        self._wall_handles = []
        self._physics = None

    @property
    def wall_handles(self) -> List[int]:
        return list(self._wall_handles)

    def _create_walls(self) -> None:
        if self._physics is None or len(self.outer_loop) == 0:
            return
        self._wall_handles = [
            self._physics.create_static_polyline(self.inner_loop, WALLS),
            self._physics.create_static_polyline(self.outer_loop, WALLS),
        ]

    def _refresh_walls(self) -> None:
        if self._physics is None:
            return
        for handle in self._wall_handles:
            self._physics.remove_static(handle)
        self._wall_handles = []
        self._create_walls()

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(waypoints={len(self.path)}, "
            f"width={self.track_width:.1f})"
        )


class ProceduralTrack(Track):
    """Seeded random track: hull, displaced midpoints, Chaikin smoothing."""

    def __init__(self, config: Optional[TrackConfig] = None):
        self.config = config or TrackConfig()
        self.config.validate()
        super().__init__(self.config.track_width)
        self.seed = self.config.seed
        self.generate()

    def generate(self) -> None:
        cfg = self.config
        rng = np.random.default_rng(self.seed)

        avail_w = cfg.width - 2 * cfg.margin
        avail_h = cfg.height - 2 * cfg.margin
        points = np.column_stack([
            (rng.random(cfg.point_count) - 0.5) * avail_w,
            (rng.random(cfg.point_count) - 0.5) * avail_h,
        ])

        hull = convex_hull(points)

        # Displace each edge midpoint along the edge normal
        complex_path = []
        for i in range(len(hull)):
            p1 = hull[i]
            p2 = hull[(i + 1) % len(hull)]
            complex_path.append(p1)

            edge = p2 - p1
            length = float(np.linalg.norm(edge))
            if length == 0:
                continue
            normal = np.array([-edge[1], edge[0]]) / length
            offset = (rng.random() - 0.5) * length * cfg.displacement
            complex_path.append((p1 + p2) / 2 + normal * offset)

        path = chaikin_smooth(np.array(complex_path), cfg.smoothing_passes)
        self._set_path(path)
        logger.info(f"Generated procedural track (seed={self.seed}, waypoints={len(path)})")

    def regenerate(self, seed: int) -> None:
        """Build a fresh track from a new seed."""
        self.seed = seed
        self.generate()


def default_control_points(
    center: Tuple[float, float] = (0.0, 0.0),
    radii: Tuple[float, float] = (250.0, 180.0),
    count: int = 8,
) -> np.ndarray:
    """Evenly spaced points on an ellipse."""
    angles = np.arange(count) * 2 * np.pi / count
    return np.column_stack([
        center[0] + radii[0] * np.cos(angles),
        center[1] + radii[1] * np.sin(angles),
    ])


class EditableTrack(Track):
    """Closed Catmull-Rom track through user-placed control points."""

    MIN_POINTS = 3

    def __init__(
        self,
        control_points: Optional[Sequence[Sequence[float]]] = None,
        track_width: float = 30.0,
        resolution: int = 20,
    ):
        if resolution < 1:
            raise ConfigurationError("resolution must be at least 1")
        super().__init__(track_width)
        self.resolution = resolution

        if control_points is None:
            control_points = default_control_points()
        points = np.asarray(control_points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 2 or len(points) < self.MIN_POINTS:
            raise ConfigurationError(
                f"An editable track needs at least {self.MIN_POINTS} 2D control points"
            )
        self.control_points: List[np.ndarray] = [p.copy() for p in points]
        self.rebuild()

    def rebuild(self) -> None:
        """Regenerate path and boundaries from the control points."""
        path = catmull_rom_closed(np.array(self.control_points), self.resolution)
        self._set_path(path)

    # ==================== Editing ====================

    def add_point(self, x: float, y: float) -> int:
        """
        Insert a control point next to the nearest segment.

        The point goes right after whichever endpoint of that segment is
        closer (the segment start on a tie). Returns the insertion index.
        """
        point = np.array([x, y], dtype=np.float64)
        n = len(self.control_points)
        best_index = 0
        best_dist = float("inf")
        for i in range(n):
            d = point_segment_distance_sq(
                point, self.control_points[i], self.control_points[(i + 1) % n]
            )
            if d < best_dist:
                best_dist = d
                best_index = i

        end_index = (best_index + 1) % n
        start_dist = np.linalg.norm(point - self.control_points[best_index])
        end_dist = np.linalg.norm(point - self.control_points[end_index])
        anchor = end_index if end_dist < start_dist else best_index

        insert_at = anchor + 1
        self.control_points.insert(insert_at, point)
        self.rebuild()
        return insert_at

    def remove_point(self, index: int) -> bool:
        """Delete a control point; refused when fewer than 3 would remain."""
        if len(self.control_points) - 1 < self.MIN_POINTS:
            logger.info("Refusing to remove control point: track needs at least 3")
            return False
        if not 0 <= index < len(self.control_points):
            raise IndexError(f"Control point index out of range: {index}")
        del self.control_points[index]
        self.rebuild()
        return True

    def move_point(self, index: int, x: float, y: float) -> None:
        if not 0 <= index < len(self.control_points):
            raise IndexError(f"Control point index out of range: {index}")
        self.control_points[index] = np.array([x, y], dtype=np.float64)
        self.rebuild()

    def nearest_control_point(self, x: float, y: float) -> Tuple[int, float]:
        """Index of and distance to the closest control point."""
        cps = np.array(self.control_points)
        distances = np.linalg.norm(cps - np.array([x, y]), axis=1)
        index = int(np.argmin(distances))
        return index, float(distances[index])

    def reset(self) -> None:
        """Back to the default ellipse."""
        self.control_points = [p.copy() for p in default_control_points()]
        self.rebuild()

    # ==================== Serialization ====================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "controlPoints": [[float(p[0]), float(p[1])] for p in self.control_points],
            "trackWidth": self.track_width,
        }

    @classmethod
    def from_dict(
        cls,
        data: Any,
        resolution: int = 20,
        track_width: float = 30.0,
    ) -> "EditableTrack":
        """Rebuild from stored data; malformed data gives the default track."""
        try:
            points = np.asarray(data["controlPoints"], dtype=np.float64)
            width = float(data.get("trackWidth", track_width))
            return cls(points, track_width=width, resolution=resolution)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Stored track unreadable ({e}), using default track")
            return cls(track_width=track_width, resolution=resolution)

    def save(self, store: KeyValueStore, key: str = TRACK_STORE_KEY) -> None:
        store.set(key, self.to_dict())

    @classmethod
    def load(
        cls,
        store: KeyValueStore,
        key: str = TRACK_STORE_KEY,
        resolution: int = 20,
        track_width: float = 30.0,
    ) -> "EditableTrack":
        data = store.get(key)
        if data is None:
            return cls(track_width=track_width, resolution=resolution)
        return cls.from_dict(data, resolution=resolution, track_width=track_width)


def create_track(config: TrackConfig) -> Track:
    """Factory for the configured track flavour."""
    config.validate()
    if config.kind == "editable":
        return EditableTrack(
            track_width=config.track_width,
            resolution=config.spline_resolution,
        )
    return ProceduralTrack(config)
