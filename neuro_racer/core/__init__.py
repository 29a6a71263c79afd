"""
Core components of a racer.

- brain: Feedforward network and its genetic operators
- perception: Ray-fan sensing and input normalization
- vehicle: Body handle, brain and per-generation telemetry
"""

from .brain import Brain, Layer, crossover, mutate
from .perception import PerceptionModel, SensorConfig, SensorReading
from .vehicle import Vehicle, VehicleConfig, VehicleTelemetry

__all__ = [
    "Brain",
    "Layer",
    "crossover",
    "mutate",
    "PerceptionModel",
    "SensorConfig",
    "SensorReading",
    "Vehicle",
    "VehicleConfig",
    "VehicleTelemetry",
]
