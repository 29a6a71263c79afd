"""
neuro_racer/evolution/

Scoring and breeding.

- fitness: Per-tick telemetry updates and the final score
- engine: The generation state machine (run, evaluate, adapt, spawn)
"""

from .fitness import FitnessEvaluator, FitnessWeights, summarize
from .engine import (
    EvolutionConfig,
    EvolutionEngine,
    GenerationPhase,
    GenerationSummary,
    TelemetrySnapshot,
)

__all__ = [
    "FitnessEvaluator",
    "FitnessWeights",
    "summarize",
    "EvolutionConfig",
    "EvolutionEngine",
    "GenerationPhase",
    "GenerationSummary",
    "TelemetrySnapshot",
]
