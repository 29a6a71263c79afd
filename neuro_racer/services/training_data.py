"""
neuro_racer/services/training_data.py

Records (network input -> control output) pairs while vehicles drive,
for supervised training outside this project.

Samples are taken every `sampling_rate` calls, only while the vehicle
moves faster than `min_speed` (slow vehicles are usually stuck or
spinning), and only until `max_samples` is reached.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

import numpy as np

from neuro_racer.errors import ConfigurationError

if TYPE_CHECKING:
    from neuro_racer.core.vehicle import Vehicle
    from .persistence import KeyValueStore

logger = logging.getLogger(__name__)


TRAINING_DATA_KEY = "supervisedTrainingData"


@dataclass
class TrainingDataConfig:
    max_samples: int = 10000
    sampling_rate: int = 1      # Record every Nth call
    min_speed: float = 0.5

    def validate(self) -> None:
        if self.max_samples <= 0:
            raise ConfigurationError("max_samples must be positive")
        if self.sampling_rate <= 0:
            raise ConfigurationError("sampling_rate must be positive")
        if self.min_speed < 0:
            raise ConfigurationError("min_speed must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxSamples": self.max_samples,
            "samplingRate": self.sampling_rate,
            "minSpeed": self.min_speed,
        }


@dataclass
class TrainingSample:
    inputs: List[float]
    outputs: List[float]
    vehicle_id: Optional[int] = None
    fitness: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"inputs": self.inputs, "outputs": self.outputs}
        if self.vehicle_id is not None:
            data["vehicleId"] = self.vehicle_id
        if self.fitness is not None:
            data["fitness"] = self.fitness
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingSample":
        return cls(
            inputs=[float(x) for x in data["inputs"]],
            outputs=[float(x) for x in data["outputs"]],
            vehicle_id=data.get("vehicleId"),
            fitness=data.get("fitness"),
        )


class TrainingDataCollector:
    """Bounded in-memory buffer of training samples."""

    def __init__(self, config: Optional[TrainingDataConfig] = None):
        self.config = config or TrainingDataConfig()
        self.config.validate()
        self._samples: List[TrainingSample] = []
        self._frame_counter = 0

    def record(
        self,
        inputs: Sequence[float],
        outputs: Sequence[float],
        vehicle: Optional[Vehicle] = None,
    ) -> bool:
        """
        Offer one sample. Returns True if it was kept.

        The sampling counter advances on every call, kept or not.
        """
        self._frame_counter += 1

        if self._frame_counter % self.config.sampling_rate != 0:
            return False
        if len(self._samples) >= self.config.max_samples:
            return False
        if vehicle is not None:
            speed = float(np.linalg.norm(vehicle.velocity))
            if speed < self.config.min_speed:
                return False

        self._samples.append(TrainingSample(
            inputs=[float(x) for x in inputs],
            outputs=[float(x) for x in outputs],
            vehicle_id=vehicle.id if vehicle is not None else None,
            fitness=vehicle.telemetry.distance_traveled if vehicle is not None else None,
        ))
        return True

    def get_data(self) -> List[TrainingSample]:
        return list(self._samples)

    @property
    def count(self) -> int:
        return len(self._samples)

    @property
    def is_full(self) -> bool:
        return len(self._samples) >= self.config.max_samples

    def clear(self) -> None:
        self._samples = []
        self._frame_counter = 0

    # ==================== Persistence ====================

    def save(self, store: KeyValueStore, key: str = TRAINING_DATA_KEY) -> None:
        store.set(key, {
            "data": [s.to_dict() for s in self._samples],
            "config": self.config.to_dict(),
            "timestamp": int(time.time() * 1000),
        })
        logger.info(f"Saved {len(self._samples)} training samples under {key}")

    def load(self, store: KeyValueStore, key: str = TRAINING_DATA_KEY) -> bool:
        """Replace the buffer with stored samples. False if nothing usable was stored."""
        saved = store.get(key)
        if not isinstance(saved, dict):
            return False

        samples = []
        for i, record in enumerate(saved.get("data") or []):
            try:
                samples.append(TrainingSample.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed training sample {i}: {e}")
        self._samples = samples
        logger.info(f"Loaded {len(samples)} training samples from {key}")
        return True

    def export(self) -> str:
        """Pretty JSON document for external analysis."""
        return json.dumps({
            "samples": len(self._samples),
            "config": self.config.to_dict(),
            "data": [s.to_dict() for s in self._samples],
        }, indent=2)

    # ==================== Statistics ====================

    def get_stats(self) -> Dict[str, Any]:
        """Sample count, per-dimension means, and input min/max."""
        if not self._samples:
            return {
                "count": 0,
                "avg_inputs": [],
                "avg_outputs": [],
                "input_ranges": {"min": [], "max": []},
            }

        inputs = np.array([s.inputs for s in self._samples], dtype=np.float64)
        outputs = np.array([s.outputs for s in self._samples], dtype=np.float64)
        return {
            "count": len(self._samples),
            "avg_inputs": inputs.mean(axis=0).tolist(),
            "avg_outputs": outputs.mean(axis=0).tolist(),
            "input_ranges": {
                "min": inputs.min(axis=0).tolist(),
                "max": inputs.max(axis=0).tolist(),
            },
        }

    def __repr__(self) -> str:
        return f"TrainingDataCollector(samples={self.count}/{self.config.max_samples})"
