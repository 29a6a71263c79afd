"""
core/brain.py

A small, fixed-topology feedforward network and its genetic operators.

The brain is the genotype. Nothing here learns by gradient:
weights only change through mutation and crossover between generations.

Hidden layers squash with the logistic sigmoid (0..1), the final layer
with tanh (-1..1) so steering comes out naturally signed.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np

from neuro_racer.errors import ConfigurationError

logger = logging.getLogger(__name__)


# Every weight and bias lives in [-WEIGHT_LIMIT, WEIGHT_LIMIT]
WEIGHT_LIMIT = 2.0

# Mutation mix: small gaussian nudge, larger uniform nudge, full re-roll
GAUSSIAN_SHARE = 0.40
UNIFORM_SHARE = 0.35
GAUSSIAN_SIGMA = 0.3
UNIFORM_STEP = 0.8


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


class Layer:
    """
    One affine + activation stage.

    weights has shape (input_count, output_count), biases (output_count,).
    """

    def __init__(
        self,
        input_count: int,
        output_count: int,
        is_output: bool = False,
        rng: Optional[np.random.Generator] = None,
    ):
        if input_count <= 0 or output_count <= 0:
            raise ConfigurationError(
                f"Layer widths must be positive, got {input_count}x{output_count}"
            )
        self.input_count = input_count
        self.output_count = output_count
        self.is_output = is_output

        rng = rng if rng is not None else np.random.default_rng()
        self.weights = rng.uniform(-WEIGHT_LIMIT, WEIGHT_LIMIT, size=(input_count, output_count))
        self.biases = rng.uniform(-WEIGHT_LIMIT, WEIGHT_LIMIT, size=output_count)

    @classmethod
    def from_arrays(
        cls,
        weights: np.ndarray,
        biases: np.ndarray,
        is_output: bool = False,
    ) -> "Layer":
        """Build a layer around explicit parameter arrays (copied)."""
        weights = np.array(weights, dtype=np.float64)
        biases = np.array(biases, dtype=np.float64)
        if weights.ndim != 2 or biases.shape != (weights.shape[1],):
            raise ValueError(
                f"Inconsistent layer arrays: weights {weights.shape}, biases {biases.shape}"
            )
        layer = cls.__new__(cls)
        layer.input_count, layer.output_count = weights.shape
        layer.is_output = is_output
        layer.weights = weights
        layer.biases = biases
        return layer

    def feed_forward(self, inputs: np.ndarray) -> np.ndarray:
        activation = inputs @ self.weights + self.biases
        if self.is_output:
            return np.tanh(activation)
        return _sigmoid(activation)

    def clone(self) -> "Layer":
        return Layer.from_arrays(self.weights.copy(), self.biases.copy(), self.is_output)

    def __repr__(self) -> str:
        kind = "tanh" if self.is_output else "sigmoid"
        return f"Layer({self.input_count}->{self.output_count}, {kind})"


class Brain:
    """
    Ordered sequence of layers.

    Layer i's output width equals layer i+1's input width. The first input
    width and last output width are fixed at construction.
    """

    def __init__(
        self,
        input_count: int,
        hidden_layers: Sequence[int],
        output_count: int,
        rng: Optional[np.random.Generator] = None,
    ):
        if input_count <= 0 or output_count <= 0:
            raise ConfigurationError("Brain inputs and outputs must be positive")
        if any(h <= 0 for h in hidden_layers):
            raise ConfigurationError("All hidden layer sizes must be positive")

        rng = rng if rng is not None else np.random.default_rng()
        self.layers: List[Layer] = []

        width = input_count
        for hidden in hidden_layers:
            self.layers.append(Layer(width, hidden, is_output=False, rng=rng))
            width = hidden
        self.layers.append(Layer(width, output_count, is_output=True, rng=rng))

    @classmethod
    def from_layers(cls, layers: Sequence[Layer]) -> "Brain":
        """Assemble a brain from existing layers (not copied)."""
        if not layers:
            raise ConfigurationError("A brain needs at least one layer")
        for prev, nxt in zip(layers, layers[1:]):
            if prev.output_count != nxt.input_count:
                raise ConfigurationError(
                    f"Layer widths do not chain: {prev} -> {nxt}"
                )
        brain = cls.__new__(cls)
        brain.layers = list(layers)
        return brain

    # ==================== Shape ====================

    @property
    def input_count(self) -> int:
        return self.layers[0].input_count

    @property
    def output_count(self) -> int:
        return self.layers[-1].output_count

    @property
    def hidden_layers(self) -> List[int]:
        return [layer.output_count for layer in self.layers[:-1]]

    @property
    def shape(self) -> List[int]:
        return [self.input_count] + [layer.output_count for layer in self.layers]

    # ==================== Behaviour ====================

    def feed_forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Propagate inputs through every layer.

        len(inputs) must equal input_count; callers guard this.
        """
        outputs = np.asarray(inputs, dtype=np.float64)
        for layer in self.layers:
            outputs = layer.feed_forward(outputs)
        return outputs

    def clone(self) -> "Brain":
        """Deep value copy. The clone shares no arrays with the original."""
        return Brain.from_layers([layer.clone() for layer in self.layers])

    def copy_from(self, other: "Brain") -> None:
        """Overwrite every parameter with a copy of `other`'s. Shapes must match."""
        if self.shape != other.shape:
            raise ValueError(f"Cannot copy brain of shape {other.shape} into {self.shape}")
        self.layers = [layer.clone() for layer in other.layers]

    def same_parameters(self, other: "Brain") -> bool:
        """True when every weight and bias is bit-for-bit equal."""
        if self.shape != other.shape:
            return False
        return all(
            np.array_equal(a.weights, b.weights) and np.array_equal(a.biases, b.biases)
            for a, b in zip(self.layers, other.layers)
        )

    # ==================== Serialization ====================

    def to_list(self) -> List[Dict[str, Any]]:
        """Serialize as an ordered list of {weights, biases} per layer."""
        return [
            {"weights": layer.weights.tolist(), "biases": layer.biases.tolist()}
            for layer in self.layers
        ]

    @classmethod
    def from_list(
        cls,
        data: Any,
        input_count: int,
        hidden_layers: Sequence[int],
        output_count: int,
        rng: Optional[np.random.Generator] = None,
    ) -> "Brain":
        """
        Rebuild a brain of the expected topology from serialized layers.

        Any entry whose shape does not match (or is missing) is replaced by a
        freshly randomized layer; the load continues with the next entry.
        """
        brain = cls(input_count, hidden_layers, output_count, rng=rng)
        entries = data if isinstance(data, list) else []
        if not isinstance(data, list):
            logger.warning(f"Stored brain is not a layer list ({type(data).__name__}), using random brain")

        for i, layer in enumerate(brain.layers):
            if i >= len(entries):
                logger.warning(f"Stored brain missing layer {i}, using random layer")
                continue
            entry = entries[i]
            try:
                weights = np.array(entry["weights"], dtype=np.float64)
                biases = np.array(entry["biases"], dtype=np.float64)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Stored layer {i} unreadable ({e}), using random layer")
                continue

            expected_w = (layer.input_count, layer.output_count)
            if weights.shape != expected_w or biases.shape != (layer.output_count,):
                logger.warning(
                    f"Stored layer {i} shape {weights.shape}/{biases.shape} "
                    f"does not match {expected_w}, using random layer"
                )
                continue

            brain.layers[i] = Layer.from_arrays(weights, biases, layer.is_output)

        if len(entries) > len(brain.layers):
            logger.warning(
                f"Stored brain has {len(entries)} layers, expected {len(brain.layers)}; extra ignored"
            )
        return brain

    def __repr__(self) -> str:
        return f"Brain(shape={self.shape})"


# ==================== Genetic operators ====================

def _mutate_array(values: np.ndarray, rate: float, rng: np.random.Generator) -> None:
    """Mutate an array in place; each element independently with probability rate."""
    if rate <= 0:
        return
    for idx in np.ndindex(values.shape):
        if rng.random() >= rate:
            continue
        roll = rng.random()
        if roll < GAUSSIAN_SHARE:
            value = values[idx] + rng.normal(0.0, GAUSSIAN_SIGMA)
        elif roll < GAUSSIAN_SHARE + UNIFORM_SHARE:
            value = values[idx] + rng.uniform(-UNIFORM_STEP, UNIFORM_STEP)
        else:
            value = rng.uniform(-WEIGHT_LIMIT, WEIGHT_LIMIT)
        values[idx] = min(WEIGHT_LIMIT, max(-WEIGHT_LIMIT, value))


def mutate(brain: Brain, rate: float, rng: np.random.Generator) -> None:
    """
    Mutate every weight and bias of a brain in place.

    Each value is touched with probability `rate`; a touched value gets one
    of: a small gaussian nudge (40%), a larger uniform nudge (35%) or a full
    re-randomization (25%), then is clamped back into the init range.
    """
    for layer in brain.layers:
        _mutate_array(layer.weights, rate, rng)
        _mutate_array(layer.biases, rate, rng)


def _crossover_layer(first: Layer, second: Layer, rng: np.random.Generator) -> Layer:
    child = first.clone()

    if rng.random() < 0.5:
        # Uniform: each value independently from either parent
        weight_mask = rng.random(child.weights.shape) < 0.5
        bias_mask = rng.random(child.biases.shape) < 0.5
        child.weights[weight_mask] = second.weights[weight_mask]
        child.biases[bias_mask] = second.biases[bias_mask]
    else:
        # Single-point: rows at/after the cut come from the second parent
        point = int(rng.integers(child.weights.shape[0]))
        child.weights[point:, :] = second.weights[point:, :]
        child.biases[point:] = second.biases[point:]

    return child


def crossover(
    parent1: Brain,
    parent2: Brain,
    rng: np.random.Generator,
) -> Brain:
    """
    Combine two brains layer by layer.

    Each layer independently uses uniform or single-point crossover.
    crossover(a, a) is behaviorally identical to a.
    """
    if parent1.shape != parent2.shape:
        raise ValueError(
            f"Cannot crossover brains of different shapes: {parent1.shape} vs {parent2.shape}"
        )
    return Brain.from_layers([
        _crossover_layer(a, b, rng)
        for a, b in zip(parent1.layers, parent2.layers)
    ])
