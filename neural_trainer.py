"""
Neural Trainer - Dense Network Engine
-------------------------------------
Feed-forward networks of dense layers trained example by example with
backpropagation. Activation, loss and weight initialization are pluggable.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

Array = np.ndarray


class NeuronGradient(NamedTuple):
    weight_gradients: Array
    bias_gradient: float


class NeuronUpdate(NamedTuple):
    weight_deltas: Array
    bias_delta: float


LayerGradients = List[NeuronGradient]
LayerUpdates = List[NeuronUpdate]


def _as_vector(values: Iterable[float]) -> Array:
    return np.asarray(list(values), dtype=np.float64)


def _check_finite(values: Array, name: str) -> None:
    if not np.all(np.isfinite(values)):
        raise ValueError(f"{name} must contain only finite values")


# ============================================================================
#                           ACTIVATION FUNCTIONS
# ============================================================================

class ActivationFunction:
    """Scalar activation; the derivative is expressed in terms of the output."""

    def activate(self, x: float) -> float:
        raise NotImplementedError("Subclasses must implement activate()")

    def derivative(self, y: float) -> float:
        raise NotImplementedError("Subclasses must implement derivative()")

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Sigmoid(ActivationFunction):
    def activate(self, x: float) -> float:
        # Clip input to prevent overflow in exp
        x_clipped = min(max(x, -500.0), 500.0)
        return float(1.0 / (1.0 + np.exp(-x_clipped)))

    def derivative(self, y: float) -> float:
        return y * (1.0 - y)


class Tanh(ActivationFunction):
    def activate(self, x: float) -> float:
        return float(np.tanh(x))

    def derivative(self, y: float) -> float:
        return 1.0 - y * y


class ReLU(ActivationFunction):
    def activate(self, x: float) -> float:
        return max(0.0, float(x))

    def derivative(self, y: float) -> float:
        # Only the output is known here, so an input of exactly 0 looks
        # the same as a negative one and gets a zero slope.
        return 1.0 if y > 0 else 0.0


class ActivationFunctionType(Enum):
    SIGMOID = "sigmoid"
    TANH = "tanh"
    RELU = "relu"


class ActivationFunctionFactory:
    def __init__(self, default_type: ActivationFunctionType = ActivationFunctionType.SIGMOID):
        """Initialize factory with the type returned by get_default()."""
        self.default_type = default_type

    def get_default(self) -> ActivationFunction:
        return self.get(self.default_type)

    def get(self, activation_type: ActivationFunctionType) -> ActivationFunction:
        if activation_type is ActivationFunctionType.SIGMOID:
            return Sigmoid()
        if activation_type is ActivationFunctionType.TANH:
            return Tanh()
        if activation_type is ActivationFunctionType.RELU:
            return ReLU()
        raise ValueError(f"Unknown activation function type {activation_type!r}")


# ============================================================================
#                           WEIGHT INITIALIZATION
# ============================================================================

class WeightInitializer:
    """Produces initial weights and biases from an injected random source."""

    def __init__(self, rng: np.random.RandomState):
        self.rng = rng

    def initialize_weight(self, fan_in: int = 1, fan_out: int = 1) -> float:
        raise NotImplementedError("Subclasses must implement initialize_weight()")

    def initialize_bias(self) -> float:
        return 0.0


class UniformRandomInitializer(WeightInitializer):
    def __init__(self, rng: np.random.RandomState, min_value: float = -1.0, max_value: float = 1.0):
        """Initialize with the [min_value, max_value] sampling range."""
        if not min_value < max_value:
            raise ValueError(
                f"min_value ({min_value}) must be smaller than max_value ({max_value})"
            )
        super().__init__(rng)
        self.min_value = min_value
        self.max_value = max_value

    def initialize_weight(self, fan_in: int = 1, fan_out: int = 1) -> float:
        return float(self.rng.uniform(self.min_value, self.max_value))

    def initialize_bias(self) -> float:
        return float(self.rng.uniform(self.min_value, self.max_value))


class HeInitializer(WeightInitializer):
    """He (Kaiming) scaling for rectified units: limit = sqrt(2 / fan_in)."""

    def initialize_weight(self, fan_in: int = 1, fan_out: int = 1) -> float:
        limit = math.sqrt(2.0 / fan_in)
        return float(self.rng.uniform(-limit, limit))


class XavierInitializer(WeightInitializer):
    """Xavier/Glorot scaling for saturating units: limit = sqrt(2 / (fan_in + fan_out))."""

    def initialize_weight(self, fan_in: int = 1, fan_out: int = 1) -> float:
        limit = math.sqrt(2.0 / (fan_in + fan_out))
        return float(self.rng.uniform(-limit, limit))


class WeightInitializerType(Enum):
    UNIFORM = "uniform"
    HE = "he"
    XAVIER = "xavier"


class WeightInitializerFactory:
    def __init__(self, default_type: WeightInitializerType = WeightInitializerType.UNIFORM,
                 seed: Optional[int] = None):
        """Initialize factory; every initializer it creates gets its own RandomState(seed)."""
        self.default_type = default_type
        self.seed = seed

    def get_default(self) -> WeightInitializer:
        return self.get(self.default_type)

    def get(self, initializer_type: WeightInitializerType) -> WeightInitializer:
        rng = np.random.RandomState(self.seed)
        if initializer_type is WeightInitializerType.UNIFORM:
            return UniformRandomInitializer(rng)
        if initializer_type is WeightInitializerType.HE:
            return HeInitializer(rng)
        if initializer_type is WeightInitializerType.XAVIER:
            return XavierInitializer(rng)
        raise ValueError(f"Unknown weight initializer type {initializer_type!r}")


# ============================================================================
#                               LOSS FUNCTION
# ============================================================================

class SquaredErrorLoss:
    """Squared error; the derivative leaves out the factor of 2 (absorbed by the learning rate)."""

    def calculate(self, predicted, target) -> float:
        if np.ndim(predicted) == 0 and np.ndim(target) == 0:
            error = float(target) - float(predicted)
            return error * error

        predicted, target = self._pair(predicted, target)
        return float(np.mean((target - predicted) ** 2))

    def derivative(self, predicted, target):
        if np.ndim(predicted) == 0 and np.ndim(target) == 0:
            return -(float(target) - float(predicted))

        predicted, target = self._pair(predicted, target)
        return -(target - predicted)

    @staticmethod
    def _pair(predicted, target) -> Tuple[Array, Array]:
        predicted = _as_vector(np.ravel(predicted))
        target = _as_vector(np.ravel(target))
        if predicted.shape != target.shape:
            raise ValueError(
                f"predicted and target must have the same length "
                f"(got {predicted.size} and {target.size})"
            )
        if predicted.size == 0:
            raise ValueError("predicted and target must not be empty")
        return predicted, target


# ============================================================================
#                                   NEURON
# ============================================================================

class Neuron:
    def __init__(self, weights: Sequence[float], bias: float, activation_function: ActivationFunction):
        """Initialize neuron with explicit weights and bias."""
        self._weights = _as_vector(weights)
        if self._weights.size == 0:
            raise ValueError("weights must not be empty")
        self._bias = float(bias)
        self.activation_function = activation_function

        # Cache for calculate_gradients(), valid until the next forward()
        self._last_pre_activation: Optional[float] = None
        self._last_output: Optional[float] = None

    @classmethod
    def create(cls, input_size: int, activation_function: ActivationFunction,
               weight_initializer: WeightInitializer, fan_out: int = 1) -> "Neuron":
        """Build a neuron with input_size weights drawn from the initializer."""
        if input_size <= 0:
            raise ValueError(f"input_size must be positive (got {input_size})")
        weights = [weight_initializer.initialize_weight(input_size, fan_out) for _ in range(input_size)]
        return cls(weights, weight_initializer.initialize_bias(), activation_function)

    @property
    def input_size(self) -> int:
        return self._weights.size

    @property
    def weights(self) -> Array:
        return self._weights.copy()

    @property
    def bias(self) -> float:
        return self._bias

    def forward(self, inputs: Sequence[float]) -> float:
        inputs = _as_vector(inputs)
        if inputs.size != self._weights.size:
            raise ValueError(
                f"Input size mismatch: expected {self._weights.size}, got {inputs.size}"
            )

        self._last_pre_activation = self._bias + float(np.dot(inputs, self._weights))
        self._last_output = self.activation_function.activate(self._last_pre_activation)
        return self._last_output

    def calculate_gradients(self, inputs: Sequence[float], output_gradient: float) -> NeuronGradient:
        """Gradients of the loss w.r.t. this neuron's weights and bias.

        Must directly follow forward() on the same inputs, since the
        activation derivative is taken from the cached output.
        """
        assert self._last_output is not None, "Must call forward() before calculate_gradients()"
        if not math.isfinite(output_gradient):
            raise ValueError(f"output_gradient must be finite (got {output_gradient})")

        inputs = _as_vector(inputs)
        if inputs.size != self._weights.size:
            raise ValueError(
                f"Input size mismatch: expected {self._weights.size}, got {inputs.size}"
            )

        neuron_gradient = output_gradient * self.activation_function.derivative(self._last_output)
        return NeuronGradient(neuron_gradient * inputs, float(neuron_gradient))

    def update_parameters(self, weight_deltas: Sequence[float], bias_delta: float) -> None:
        weight_deltas = _as_vector(weight_deltas)
        if weight_deltas.size != self._weights.size:
            raise ValueError(
                f"Weight size mismatch: expected {self._weights.size}, got {weight_deltas.size}"
            )
        _check_finite(weight_deltas, "weight_deltas")
        if not math.isfinite(bias_delta):
            raise ValueError(f"bias_delta must be finite (got {bias_delta})")

        self._weights += weight_deltas
        self._bias += float(bias_delta)


# ============================================================================
#                               DENSE LAYER
# ============================================================================

class DenseLayer:
    def __init__(self, neurons: Sequence[Neuron]):
        """Initialize layer from neurons that all share one input size."""
        self.neurons: List[Neuron] = list(neurons)
        if not self.neurons:
            raise ValueError("neurons must not be empty")

        input_size = self.neurons[0].input_size
        for idx, neuron in enumerate(self.neurons):
            if neuron.input_size != input_size:
                raise ValueError(
                    f"Neuron {idx} has input size {neuron.input_size}, expected {input_size}"
                )

    @classmethod
    def create(cls, input_size: int, output_size: int, activation_function: ActivationFunction,
               weight_initializer: WeightInitializer) -> "DenseLayer":
        if output_size <= 0:
            raise ValueError(f"output_size must be positive (got {output_size})")
        return cls([
            Neuron.create(input_size, activation_function, weight_initializer, fan_out=output_size)
            for _ in range(output_size)
        ])

    @classmethod
    def from_weights(cls, weights: Sequence[Sequence[float]], biases: Sequence[float],
                     activation_function: ActivationFunction) -> "DenseLayer":
        """Build a layer from one weight row and one bias per neuron."""
        if len(weights) != len(biases):
            raise ValueError(
                f"Got {len(weights)} weight rows but {len(biases)} biases"
            )
        return cls([
            Neuron(row, bias, activation_function)
            for row, bias in zip(weights, biases)
        ])

    @property
    def input_size(self) -> int:
        return self.neurons[0].input_size

    @property
    def output_size(self) -> int:
        return len(self.neurons)

    def forward(self, inputs: Sequence[float]) -> Array:
        inputs = _as_vector(inputs)
        return _as_vector(neuron.forward(inputs) for neuron in self.neurons)

    def calculate_gradients(self, inputs: Sequence[float],
                            output_gradients: Sequence[float]) -> LayerGradients:
        output_gradients = _as_vector(output_gradients)
        if output_gradients.size != len(self.neurons):
            raise ValueError(
                f"Gradient size mismatch: expected {len(self.neurons)}, got {output_gradients.size}"
            )

        inputs = _as_vector(inputs)
        return [
            neuron.calculate_gradients(inputs, float(gradient))
            for neuron, gradient in zip(self.neurons, output_gradients)
        ]

    def update_parameters(self, weight_deltas: Sequence[Sequence[float]],
                          bias_deltas: Sequence[float]) -> None:
        if len(weight_deltas) != len(self.neurons) or len(bias_deltas) != len(self.neurons):
            raise ValueError(
                f"Update size mismatch: expected {len(self.neurons)} neurons, "
                f"got {len(weight_deltas)} weight rows and {len(bias_deltas)} biases"
            )

        for neuron, deltas, bias_delta in zip(self.neurons, weight_deltas, bias_deltas):
            neuron.update_parameters(deltas, bias_delta)

    def weight_matrix(self) -> Array:
        """Return the (output_size, input_size) matrix of current weights."""
        return np.vstack([neuron.weights for neuron in self.neurons])

    def biases(self) -> Array:
        return _as_vector(neuron.bias for neuron in self.neurons)


# ============================================================================
#                               NEURAL NETWORK
# ============================================================================

class NeuralNetwork:
    def __init__(self, layers: Sequence[DenseLayer]):
        """Initialize network, checking that adjacent layer sizes chain."""
        self.layers: List[DenseLayer] = list(layers)
        if not self.layers:
            raise ValueError("layers must not be empty")

        for idx in range(1, len(self.layers)):
            expected = self.layers[idx - 1].output_size
            actual = self.layers[idx].input_size
            if expected != actual:
                raise ValueError(
                    f"Layer {idx} input size mismatch: expected {expected} "
                    f"(output size of layer {idx - 1}), got {actual}"
                )

    @classmethod
    def from_layer_sizes(cls, layer_sizes: Sequence[int], activation_function: ActivationFunction,
                         weight_initializer: WeightInitializer) -> "NeuralNetwork":
        """Build one dense layer per adjacent pair in [input, hidden..., output]."""
        if len(layer_sizes) < 2:
            raise ValueError(
                f"layer_sizes needs at least an input and an output size (got {list(layer_sizes)})"
            )
        return cls([
            DenseLayer.create(fan_in, fan_out, activation_function, weight_initializer)
            for fan_in, fan_out in zip(layer_sizes[:-1], layer_sizes[1:])
        ])

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int:
        return self.layers[-1].output_size

    def forward(self, inputs: Sequence[float]) -> Array:
        x = _as_vector(inputs)
        for layer in self.layers:
            x = layer.forward(x)
        return x

    def backpropagate(self, inputs: Sequence[float],
                      output_gradients: Sequence[float]) -> List[LayerGradients]:
        """Per-layer, per-neuron gradients of the loss for one example.

        output_gradients is dL/d(output) of the final layer. Runs its own
        forward pass first, so the neuron caches always match the inputs.
        """
        output_gradients = _as_vector(output_gradients)
        if output_gradients.size != self.output_size:
            raise ValueError(
                f"Gradient size mismatch: expected {self.output_size}, got {output_gradients.size}"
            )

        # Forward pass, recording every layer's input
        layer_inputs = []
        x = _as_vector(inputs)
        for layer in self.layers:
            layer_inputs.append(x)
            x = layer.forward(x)

        current_gradients = output_gradients
        all_gradients: List[LayerGradients] = []

        for idx in reversed(range(len(self.layers))):
            layer = self.layers[idx]
            layer_gradients = layer.calculate_gradients(layer_inputs[idx], current_gradients)
            all_gradients.insert(0, layer_gradients)

            if idx > 0:
                # dL/d(input_j) = sum_k delta_k * w_kj, with delta_k the bias gradient
                deltas = _as_vector(g.bias_gradient for g in layer_gradients)
                current_gradients = deltas @ layer.weight_matrix()

        return all_gradients

    def update_all_layers(self, layer_updates: Sequence[Sequence[NeuronUpdate]]) -> None:
        if len(layer_updates) != len(self.layers):
            raise ValueError(
                f"Expected updates for {len(self.layers)} layers, got {len(layer_updates)}"
            )

        for layer, updates in zip(self.layers, layer_updates):
            layer.update_parameters(
                [weight_deltas for weight_deltas, _ in updates],
                [bias_delta for _, bias_delta in updates],
            )


# ============================================================================
#                           TRAINING DATA & PROGRESS
# ============================================================================

@dataclass(frozen=True)
class TrainingExample:
    inputs: Tuple[float, ...]
    targets: Tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(float(v) for v in self.inputs))
        object.__setattr__(self, "targets", tuple(float(v) for v in self.targets))

    def __str__(self) -> str:
        inputs = ", ".join(f"{v:g}" for v in self.inputs)
        targets = ", ".join(f"{v:g}" for v in self.targets)
        return f"Inputs: [{inputs}], expected: [{targets}]"


@dataclass(frozen=True)
class TrainingStatistics:
    epoch: int
    average_loss: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ProgressReporter:
    def report_progress(self, epoch: int, average_loss: float) -> None:
        raise NotImplementedError("Subclasses must implement report_progress()")


class NullProgressReporter(ProgressReporter):
    def report_progress(self, epoch: int, average_loss: float) -> None:
        pass


class StatisticsProgressReporter(ProgressReporter):
    """Collects one TrainingStatistics record per reported epoch."""

    def __init__(self):
        self._statistics: List[TrainingStatistics] = []

    @property
    def statistics(self) -> Tuple[TrainingStatistics, ...]:
        return tuple(self._statistics)

    def report_progress(self, epoch: int, average_loss: float) -> None:
        self._statistics.append(TrainingStatistics(epoch, average_loss))


class CompositeProgressReporter(ProgressReporter):
    def __init__(self, *reporters: ProgressReporter):
        """Initialize with the reporters that receive every report, in order."""
        self.reporters: List[ProgressReporter] = list(reporters)

    def report_progress(self, epoch: int, average_loss: float) -> None:
        for reporter in self.reporters:
            reporter.report_progress(epoch, average_loss)


# ============================================================================
#                                   TRAINERS
# ============================================================================

def _validate_learning_rate(learning_rate: float) -> None:
    if not math.isfinite(learning_rate):
        raise ValueError(f"learning_rate must be a finite number (got {learning_rate})")
    if learning_rate <= 0:
        raise ValueError(f"learning_rate must be positive (got {learning_rate})")
    if learning_rate > 1:
        raise ValueError(
            f"learning_rate should not exceed 1 for stable training (got {learning_rate})"
        )


class Trainer:
    """Stochastic gradient descent: parameters are updated after every example."""

    def __init__(self, learning_rate: float, loss_function: SquaredErrorLoss,
                 progress_reporter: ProgressReporter):
        _validate_learning_rate(learning_rate)
        if loss_function is None:
            raise ValueError("loss_function must not be None")
        if progress_reporter is None:
            raise ValueError("progress_reporter must not be None")

        self.learning_rate = learning_rate
        self.loss_function = loss_function
        self.progress_reporter = progress_reporter

    def train(self, network: NeuralNetwork, examples: Iterable[TrainingExample], epochs: int) -> None:
        if epochs <= 0:
            raise ValueError(f"epochs must be positive (got {epochs})")
        examples = list(examples)
        if not examples:
            raise ValueError("examples must not be empty")

        self._start(network)

        for epoch in range(epochs):
            total_loss = 0.0

            for example in examples:
                # Forward pass
                outputs = network.forward(example.inputs)
                total_loss += self.loss_function.calculate(outputs, example.targets)

                # Backward pass
                error_gradients = self.loss_function.derivative(outputs, example.targets)
                layer_gradients = network.backpropagate(example.inputs, error_gradients)

                # Update parameters
                network.update_all_layers(self._deltas(layer_gradients))

            self.progress_reporter.report_progress(epoch, total_loss / len(examples))

    def _start(self, network: NeuralNetwork) -> None:
        pass

    def _deltas(self, layer_gradients: List[LayerGradients]) -> List[LayerUpdates]:
        raise NotImplementedError("Subclasses must implement _deltas()")


class GradientDescentTrainer(Trainer):
    def _deltas(self, layer_gradients: List[LayerGradients]) -> List[LayerUpdates]:
        lr = self.learning_rate
        return [
            [NeuronUpdate(-lr * weight_gradients, -lr * bias_gradient)
             for weight_gradients, bias_gradient in gradients]
            for gradients in layer_gradients
        ]


class MomentumTrainer(Trainer):
    """Gradient descent where each delta keeps momentum * the previous delta."""

    def __init__(self, learning_rate: float, momentum: float, loss_function: SquaredErrorLoss,
                 progress_reporter: ProgressReporter):
        super().__init__(learning_rate, loss_function, progress_reporter)
        if not math.isfinite(momentum) or not 0 <= momentum < 1:
            raise ValueError(f"momentum must be in [0, 1) (got {momentum})")

        self.momentum = momentum
        self._previous: List[LayerUpdates] = []

    def _start(self, network: NeuralNetwork) -> None:
        # One velocity per weight and bias, reset for every run
        self._previous = [
            [NeuronUpdate(np.zeros(neuron.input_size), 0.0) for neuron in layer.neurons]
            for layer in network.layers
        ]

    def _deltas(self, layer_gradients: List[LayerGradients]) -> List[LayerUpdates]:
        lr, mu = self.learning_rate, self.momentum
        deltas = [
            [NeuronUpdate(-lr * weight_gradients + mu * prev.weight_deltas,
                          -lr * bias_gradient + mu * prev.bias_delta)
             for (weight_gradients, bias_gradient), prev in zip(gradients, previous)]
            for gradients, previous in zip(layer_gradients, self._previous)
        ]
        self._previous = deltas
        return deltas
