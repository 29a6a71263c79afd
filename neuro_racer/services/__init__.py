"""
neuro_racer/services/

Everything around the engine.

- persistence: Key-value stores (memory, JSON files, Redis) and the brain archive
- training_data: Supervised (input -> output) sample collection
- runner: Headless CLI (import neuro_racer.services.runner directly)
"""

from .persistence import (
    BrainArchive,
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    RedisStore,
    create_store,
)
from .training_data import TrainingDataCollector, TrainingDataConfig, TrainingSample

__all__ = [
    "BrainArchive",
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
    "RedisStore",
    "create_store",
    "TrainingDataCollector",
    "TrainingDataConfig",
    "TrainingSample",
]
