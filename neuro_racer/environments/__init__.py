"""
neuro_racer/environments/

The world a racer lives in: track geometry and the physics port.
"""

from .physics import (
    WALLS,
    VEHICLES,
    BodySpec,
    PhysicsWorld,
    RayHit,
    groups_interact,
    interaction_groups,
    split_groups,
)
from .track import (
    EditableTrack,
    ProceduralTrack,
    Track,
    TrackConfig,
    create_track,
)
from .pymunk_world import PymunkWorld

__all__ = [
    "WALLS",
    "VEHICLES",
    "BodySpec",
    "PhysicsWorld",
    "RayHit",
    "groups_interact",
    "interaction_groups",
    "split_groups",
    "EditableTrack",
    "ProceduralTrack",
    "Track",
    "TrackConfig",
    "create_track",
    "PymunkWorld",
]
