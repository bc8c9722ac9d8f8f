"""
Logic Gate Training - Command Line Application
----------------------------------------------
Trains one network per logic gate and reports loss curves and predictions.
"""
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from neural_trainer import (
    ActivationFunctionFactory,
    ActivationFunctionType,
    CompositeProgressReporter,
    GradientDescentTrainer,
    MomentumTrainer,
    NeuralNetwork,
    ProgressReporter,
    SquaredErrorLoss,
    StatisticsProgressReporter,
    Trainer,
    TrainingExample,
    TrainingStatistics,
    WeightInitializerFactory,
    WeightInitializerType,
)

# ============= DATA =============

def _truth_table(outputs: Sequence[int]) -> List[TrainingExample]:
    inputs = [(0, 0), (0, 1), (1, 0), (1, 1)]
    return [TrainingExample(x, (y,)) for x, y in zip(inputs, outputs)]


GATES: Dict[str, List[TrainingExample]] = {
    "NOT": [TrainingExample((0,), (1,)), TrainingExample((1,), (0,))],
    "AND": _truth_table([0, 0, 0, 1]),
    "NAND": _truth_table([1, 1, 1, 0]),
    "OR": _truth_table([0, 1, 1, 1]),
    "NOR": _truth_table([1, 0, 0, 0]),
    # Not linearly separable: these need at least one hidden layer (--hidden 2)
    "XOR": _truth_table([0, 1, 1, 0]),
    "XNOR": _truth_table([1, 0, 0, 1]),
}

# ============= SETTINGS =============

@dataclass
class AppSettings:
    debug: bool = False
    activation: ActivationFunctionType = ActivationFunctionType.SIGMOID
    initializer: WeightInitializerType = WeightInitializerType.UNIFORM
    learning_rate: float = 0.1
    momentum: float = 0.0
    epochs: int = 10000
    hidden_layers: List[int] = field(default_factory=list)
    report_interval: int = 1000
    seed: Optional[int] = None
    gates: List[str] = field(default_factory=lambda: list(GATES))
    output_dir: Optional[str] = None


def _enum_value(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls[str(value).upper()]
    except KeyError:
        choices = ", ".join(member.name.lower() for member in enum_cls)
        raise ValueError(f"Unknown {enum_cls.__name__} '{value}' (choose from {choices})") from None


def _check_gates(gates: Sequence[str]) -> List[str]:
    names = [g.upper() for g in gates]
    unknown = [g for g in names if g not in GATES]
    if unknown:
        raise ValueError(f"Unknown gates {unknown} (choose from {', '.join(GATES)})")
    return names


def load_settings(path: Optional[str]) -> AppSettings:
    """Read settings from a JSON file; a missing file gives the defaults."""
    settings = AppSettings()
    if path is None or not Path(path).exists():
        return settings

    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: settings must be a JSON object")

    known = {f.name for f in fields(AppSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"{path}: unknown settings {unknown}")

    for name, value in data.items():
        setattr(settings, name, _setting_value(path, name, value))
    return settings


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _setting_value(path: str, name: str, value):
    """Check one JSON value against the type of the AppSettings field it sets."""
    def fail(expected: str):
        raise ValueError(f"{path}: setting '{name}' must be {expected} (got {value!r})")

    if name == "debug":
        if not isinstance(value, bool):
            fail("true or false")
        return value
    if name == "activation":
        return _enum_value(ActivationFunctionType, value)
    if name == "initializer":
        return _enum_value(WeightInitializerType, value)
    if name in ("learning_rate", "momentum"):
        if not (_is_int(value) or isinstance(value, float)):
            fail("a number")
        return float(value)
    if name in ("epochs", "report_interval"):
        if not _is_int(value):
            fail("an integer")
        return value
    if name == "seed":
        if value is not None and not _is_int(value):
            fail("an integer or null")
        return value
    if name == "hidden_layers":
        if not isinstance(value, list) or not all(_is_int(h) for h in value):
            fail("a list of integers")
        return list(value)
    if name == "gates":
        if not isinstance(value, list) or not all(isinstance(g, str) for g in value):
            fail("a list of gate names")
        return _check_gates(value)
    if name == "output_dir":
        if value is not None and not isinstance(value, str):
            fail("a path string or null")
        return value
    fail("a known setting")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Neural Trainer: learn logic gates with a dense network")
    parser.add_argument("--config", type=str, default="appsettings.json",
                        help="Path to the JSON configuration file")
    parser.add_argument("--debug", action="store_true", default=None,
                        help="Print layer weights after training")
    parser.add_argument("--activation", type=str, choices=[t.name.lower() for t in ActivationFunctionType])
    parser.add_argument("--initializer", type=str, choices=[t.name.lower() for t in WeightInitializerType])
    parser.add_argument("--lr", type=float, dest="learning_rate")
    parser.add_argument("--momentum", type=float)
    parser.add_argument("--epochs", type=int)
    parser.add_argument("--hidden", type=int, nargs="*", dest="hidden_layers",
                        help="Hidden layer sizes, e.g. --hidden 2")
    parser.add_argument("--report-interval", type=int)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--gates", type=str, nargs="+", help=f"Subset of {', '.join(GATES)}")
    parser.add_argument("--output-dir", type=str, help="Write loss plots and per-epoch CSVs here")
    return parser


def resolve_settings(args: argparse.Namespace) -> AppSettings:
    """Settings from the config file, overridden by any flag given on the command line."""
    settings = load_settings(args.config)
    for name in ("debug", "learning_rate", "momentum", "epochs", "hidden_layers",
                 "report_interval", "seed", "output_dir"):
        value = getattr(args, name)
        if value is not None:
            setattr(settings, name, value)
    if args.activation is not None:
        settings.activation = _enum_value(ActivationFunctionType, args.activation)
    if args.initializer is not None:
        settings.initializer = _enum_value(WeightInitializerType, args.initializer)
    if args.gates is not None:
        settings.gates = _check_gates(args.gates)
    return settings

# ============= REPORTING =============

class ConsoleProgressReporter(ProgressReporter):
    def __init__(self, report_interval: int = 1000):
        """Initialize reporter that prints every report_interval epochs."""
        if report_interval <= 0:
            raise ValueError(f"report_interval must be positive (got {report_interval})")
        self.report_interval = report_interval

    def report_progress(self, epoch: int, average_loss: float) -> None:
        if epoch % self.report_interval == 0:
            print(f"Epoch {epoch:5d} | Loss: {average_loss:.6f}")


def statistics_frame(statistics: Sequence[TrainingStatistics]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "epoch": [s.epoch for s in statistics],
            "average_loss": [s.average_loss for s in statistics],
            "timestamp": [s.timestamp for s in statistics],
        }
    )


def plot_loss_curve(statistics: Sequence[TrainingStatistics], name: str, output_dir: str) -> Path:
    """Save the per-epoch average loss as <name>_loss.png - non-blocking."""
    frame = statistics_frame(statistics)
    path = Path(output_dir) / f"{name}_loss.png"
    path.parent.mkdir(parents=True, exist_ok=True)

    plt.figure(figsize=(8, 5))
    plt.plot(frame["epoch"], frame["average_loss"], label="Train", linewidth=2)
    plt.xlabel("Epoch"); plt.ylabel("Average Loss")
    plt.title(f"{name} gate")
    plt.legend(); plt.grid(alpha=0.3)
    plt.savefig(path, dpi=200, bbox_inches="tight")
    plt.close()
    return path

# ============= TRAINING =============

@dataclass
class GateResult:
    name: str
    network: NeuralNetwork
    statistics: Sequence[TrainingStatistics]
    final_loss: float
    accuracy: float


def build_network(input_size: int, output_size: int, settings: AppSettings) -> NeuralNetwork:
    activation = ActivationFunctionFactory(settings.activation).get_default()
    initializer = WeightInitializerFactory(settings.initializer, seed=settings.seed).get_default()
    sizes = [input_size] + list(settings.hidden_layers) + [output_size]
    return NeuralNetwork.from_layer_sizes(sizes, activation, initializer)


def build_trainer(settings: AppSettings, reporter: ProgressReporter) -> Trainer:
    loss_fn = SquaredErrorLoss()
    if settings.momentum > 0:
        return MomentumTrainer(settings.learning_rate, settings.momentum, loss_fn, reporter)
    return GradientDescentTrainer(settings.learning_rate, loss_fn, reporter)


def print_layers(network: NeuralNetwork) -> None:
    for idx, layer in enumerate(network.layers):
        print(f"Layer {idx} ({layer.input_size} -> {layer.output_size})")
        print(f"  weights: {np.array2string(layer.weight_matrix(), precision=4)}")
        print(f"  biases:  {np.array2string(layer.biases(), precision=4)}")


def train_gate(name: str, examples: Sequence[TrainingExample], settings: AppSettings) -> GateResult:
    print()
    print("=" * 60)
    print(f"Training Neural Network to learn {name} gate...")
    print("=" * 60)

    network = build_network(len(examples[0].inputs), len(examples[0].targets), settings)
    stats = StatisticsProgressReporter()
    reporter = CompositeProgressReporter(ConsoleProgressReporter(settings.report_interval), stats)
    build_trainer(settings, reporter).train(network, examples, settings.epochs)

    # Test the trained network
    print("\nTesting trained network:")
    loss_fn = SquaredErrorLoss()
    total_loss, correct = 0.0, 0
    for example in examples:
        outputs = network.forward(example.inputs)
        total_loss += loss_fn.calculate(outputs, example.targets)
        predicted = (outputs >= 0.5).astype(int)
        hit = bool(np.all(predicted == np.asarray(example.targets, dtype=int)))
        correct += hit
        actual = ", ".join(f"{v:.4f}" for v in outputs)
        print(f"  {example}, actual: [{actual}]  {'✓' if hit else '✗'}")

    if settings.debug:
        print()
        print_layers(network)
    print("-" * 60)

    return GateResult(
        name=name,
        network=network,
        statistics=stats.statistics,
        final_loss=total_loss / len(examples),
        accuracy=correct / len(examples),
    )


def summarize(results: Sequence[GateResult]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "gate": [r.name for r in results],
            "final_loss": [r.final_loss for r in results],
            "accuracy": [r.accuracy for r in results],
        }
    ).set_index("gate")


def run(settings: AppSettings) -> List[GateResult]:
    results = []
    for name in settings.gates:
        result = train_gate(name, GATES[name], settings)
        results.append(result)

        if settings.output_dir:
            plot_loss_curve(result.statistics, name, settings.output_dir)
            statistics_frame(result.statistics).to_csv(
                Path(settings.output_dir) / f"{name}_stats.csv", index=False
            )

    print(f"\n{'=' * 60}")
    print("SUMMARY")
    print(f"{'=' * 60}")
    print(summarize(results).to_string(float_format=lambda v: f"{v:.6f}"))
    return results

# ============= MAIN =============

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        run(resolve_settings(args))
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print("Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
