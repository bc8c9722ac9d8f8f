import numpy as np
import pytest

from neural_trainer import (
    DenseLayer,
    NeuralNetwork,
    NeuronUpdate,
    ReLU,
    Sigmoid,
    Tanh,
    UniformRandomInitializer,
)


def _two_layer_network(activation) -> NeuralNetwork:
    hidden = DenseLayer.from_weights(
        [[0.5, -0.3], [0.8, 0.2], [-0.6, 0.4]], [0.1, -0.2, 0.05], activation
    )
    output = DenseLayer.from_weights([[0.3, -0.7, 0.5], [-0.4, 0.6, 0.9]], [0.2, -0.1], activation)
    return NeuralNetwork([hidden, output])


def test_layer_forward_collects_one_output_per_neuron() -> None:
    layer = DenseLayer.from_weights([[2.0], [0.0]], [-1.0, 0.0], Sigmoid())
    np.testing.assert_allclose(layer.forward([0.5]), [0.5, 0.5])
    assert layer.input_size == 1
    assert layer.output_size == 2


def test_layer_rejects_neurons_with_different_input_sizes() -> None:
    with pytest.raises(ValueError, match="Neuron 1"):
        DenseLayer.from_weights([[1.0, 2.0], [1.0]], [0.0, 0.0], Sigmoid())


def test_layer_gradient_size_mismatch() -> None:
    layer = DenseLayer.from_weights([[1.0], [1.0]], [0.0, 0.0], Sigmoid())
    layer.forward([1.0])
    with pytest.raises(ValueError, match="Gradient size mismatch"):
        layer.calculate_gradients([1.0], [0.1])


def test_layer_update_size_mismatch() -> None:
    layer = DenseLayer.from_weights([[1.0], [1.0]], [0.0, 0.0], Sigmoid())
    with pytest.raises(ValueError, match="Update size mismatch"):
        layer.update_parameters([[0.1]], [0.0, 0.0])


def test_network_rejects_unchained_layers() -> None:
    first = DenseLayer.from_weights([[1.0, 1.0], [1.0, 1.0]], [0.0, 0.0], Sigmoid())
    second = DenseLayer.from_weights([[1.0, 1.0, 1.0]], [0.0], Sigmoid())
    with pytest.raises(ValueError, match="Layer 1 input size mismatch: expected 2"):
        NeuralNetwork([first, second])


def test_network_rejects_empty_layer_list() -> None:
    with pytest.raises(ValueError, match="layers"):
        NeuralNetwork([])


def test_from_layer_sizes() -> None:
    initializer = UniformRandomInitializer(np.random.RandomState(0))
    network = NeuralNetwork.from_layer_sizes([2, 3, 4, 1], Sigmoid(), initializer)
    assert [(layer.input_size, layer.output_size) for layer in network.layers] == [(2, 3), (3, 4), (4, 1)]
    assert network.input_size == 2
    assert network.output_size == 1
    assert network.forward([0.0, 1.0]).shape == (1,)


def test_from_layer_sizes_needs_two_sizes() -> None:
    initializer = UniformRandomInitializer(np.random.RandomState(0))
    with pytest.raises(ValueError, match="layer_sizes"):
        NeuralNetwork.from_layer_sizes([2], Sigmoid(), initializer)


def test_forward_chains_layers() -> None:
    network = _two_layer_network(Sigmoid())
    hidden = network.layers[0].forward([0.7, -1.2])
    expected = network.layers[1].forward(hidden)
    np.testing.assert_allclose(network.forward([0.7, -1.2]), expected)


def test_forward_input_size_mismatch() -> None:
    with pytest.raises(ValueError, match="Input size mismatch"):
        _two_layer_network(Sigmoid()).forward([1.0, 2.0, 3.0])


def _three_layer_network(activation) -> NeuralNetwork:
    first = DenseLayer.from_weights(
        [[0.5, -0.3], [0.8, 0.2], [-0.6, 0.4]], [0.1, -0.2, 0.05], activation
    )
    second = DenseLayer.from_weights(
        [[0.4, -0.5, 0.3], [-0.2, 0.7, 0.6], [0.9, 0.1, -0.4]], [0.05, 0.1, -0.3], activation
    )
    third = DenseLayer.from_weights([[0.3, -0.7, 0.5], [-0.4, 0.6, 0.9]], [0.2, -0.1], activation)
    return NeuralNetwork([first, second, third])


def _assert_matches_finite_differences(network: NeuralNetwork, x, target) -> None:
    target = np.asarray(target)

    def loss() -> float:
        return 0.5 * float(np.sum((network.forward(x) - target) ** 2))

    gradients = network.backpropagate(x, network.forward(x) - target)
    assert [len(g) for g in gradients] == [layer.output_size for layer in network.layers]

    eps = 1e-6
    for layer, layer_gradients in zip(network.layers, gradients):
        for neuron, (weight_gradients, bias_gradient) in zip(layer.neurons, layer_gradients):
            for j in range(neuron.input_size):
                bump = np.zeros(neuron.input_size)
                bump[j] = eps
                neuron.update_parameters(bump, 0.0)
                plus = loss()
                neuron.update_parameters(-2 * bump, 0.0)
                minus = loss()
                neuron.update_parameters(bump, 0.0)
                assert weight_gradients[j] == pytest.approx((plus - minus) / (2 * eps), abs=1e-7)

            zeros = np.zeros(neuron.input_size)
            neuron.update_parameters(zeros, eps)
            plus = loss()
            neuron.update_parameters(zeros, -2 * eps)
            minus = loss()
            neuron.update_parameters(zeros, eps)
            assert bias_gradient == pytest.approx((plus - minus) / (2 * eps), abs=1e-7)


@pytest.mark.parametrize("activation", [Sigmoid(), Tanh()])
def test_backpropagate_matches_finite_differences(activation) -> None:
    _assert_matches_finite_differences(_two_layer_network(activation), [0.7, -1.2], [1.0, 0.0])


@pytest.mark.parametrize("activation", [Sigmoid(), Tanh(), ReLU()])
def test_backpropagate_three_layers_matches_finite_differences(activation) -> None:
    # with ReLU every pre-activation sits at least 0.02 away from the kink at 0
    _assert_matches_finite_differences(_three_layer_network(activation), [0.7, -1.2], [1.0, 0.0])


def test_backpropagate_relu_dead_neuron_gets_zero_gradients() -> None:
    network = _three_layer_network(ReLU())
    gradients = network.backpropagate([0.7, -1.2], network.forward([0.7, -1.2]) - np.array([1.0, 0.0]))
    # third neuron of the first layer has pre-activation -0.85
    weight_gradients, bias_gradient = gradients[0][2]
    assert bias_gradient == 0.0
    assert list(weight_gradients) == [0.0, 0.0]


def test_backpropagate_single_layer_gradients() -> None:
    network = NeuralNetwork([DenseLayer.from_weights([[2.0]], [-1.0], Sigmoid())])
    [[(weight_gradients, bias_gradient)]] = network.backpropagate([0.5], [-0.5])
    assert bias_gradient == pytest.approx(-0.125)
    assert list(weight_gradients) == pytest.approx([-0.0625])


def test_backpropagate_leaves_parameters_untouched() -> None:
    network = _two_layer_network(Sigmoid())
    before = [layer.weight_matrix() for layer in network.layers]
    network.backpropagate([0.7, -1.2], [0.3, -0.2])
    for layer, weights in zip(network.layers, before):
        np.testing.assert_array_equal(layer.weight_matrix(), weights)


def test_backpropagate_gradient_size_mismatch() -> None:
    with pytest.raises(ValueError, match="Gradient size mismatch"):
        _two_layer_network(Sigmoid()).backpropagate([0.7, -1.2], [0.1])


def test_update_all_layers() -> None:
    network = _two_layer_network(Sigmoid())
    updates = [
        [NeuronUpdate(np.array([0.1, 0.1]), 0.5)] * 3,
        [NeuronUpdate(np.array([0.0, 0.0, 1.0]), -0.1)] * 2,
    ]
    network.update_all_layers(updates)
    np.testing.assert_allclose(network.layers[0].weight_matrix()[0], [0.6, -0.2])
    np.testing.assert_allclose(network.layers[0].biases(), [0.6, 0.3, 0.55])
    np.testing.assert_allclose(network.layers[1].weight_matrix()[:, 2], [1.5, 1.9])
    np.testing.assert_allclose(network.layers[1].biases(), [0.1, -0.2])


def test_update_all_layers_count_mismatch() -> None:
    with pytest.raises(ValueError, match="Expected updates for 2 layers, got 1"):
        _two_layer_network(Sigmoid()).update_all_layers([[]])
