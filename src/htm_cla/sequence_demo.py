"""Train a temporal memory on a repeating symbol sequence and report how well it predicts.

Each symbol is mapped to a fixed random set of columns (or, with
``--spatial-pooler``, to random input bits that a spatial pooler turns into
columns). The sequence is presented ``repetitions`` times with a reset in
between, then replayed without learning to measure prediction quality.
"""
from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from .connections import Connections
from .monitor import TemporalMemoryMonitor, format_statistics
from .parameters import Parameters
from .spatial_pooler import SpatialPooler
from .temporal_memory import TemporalMemory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DemoConfig:
    sequence: str = "ABCD"
    repetitions: int = 10
    num_columns: int = 2048
    cells_per_column: int = 32
    columns_per_symbol: int = 40
    input_size: int = 1024
    bits_per_symbol: int = 80
    use_spatial_pooler: bool = False
    seed: int = 42


def _resolve_config(config: dict[str, Any] | DemoConfig | None) -> DemoConfig:
    if config is None:
        return DemoConfig()
    if isinstance(config, DemoConfig):
        return config
    return DemoConfig(**config)


def default_parameters(config: DemoConfig) -> Parameters:
    if config.use_spatial_pooler:
        return Parameters(
            input_dimensions=(config.input_size,),
            column_dimensions=(config.num_columns,),
            cells_per_column=config.cells_per_column,
            potential_radius=config.input_size,
            potential_pct=0.85,
            global_inhibition=True,
            local_area_density=config.columns_per_symbol / config.num_columns,
            seed=config.seed,
        )
    return Parameters(
        input_dimensions=(config.num_columns,),
        column_dimensions=(config.num_columns,),
        cells_per_column=config.cells_per_column,
        seed=config.seed,
    )


def symbol_encoding(symbols: str, size: int, active: int, seed: int) -> dict[str, np.ndarray]:
    """Fixed random sorted index set of `active` out of `size` per distinct symbol."""
    rng = np.random.default_rng(seed)
    return {
        symbol: np.sort(rng.choice(size, size=active, replace=False))
        for symbol in dict.fromkeys(symbols)
    }


class SequenceModel:
    """Optional spatial pooler in front of a monitored temporal memory."""

    def __init__(self, config: DemoConfig, parameters: Parameters) -> None:
        self.config = config
        self.connections = Connections(parameters)
        self.spatial_pooler = SpatialPooler() if config.use_spatial_pooler else None
        if self.spatial_pooler is not None:
            self.spatial_pooler.init(self.connections)
            self.encoding = symbol_encoding(config.sequence, config.input_size, config.bits_per_symbol, config.seed)
        else:
            self.encoding = symbol_encoding(
                config.sequence, parameters.num_columns, config.columns_per_symbol, config.seed
            )
        self.monitor = TemporalMemoryMonitor(TemporalMemory(), self.connections, name="sequence")

    def columns_for(self, symbol: str, learn: bool) -> np.ndarray:
        indices = self.encoding[symbol]
        if self.spatial_pooler is None:
            return indices
        input_vector = np.zeros(self.config.input_size, dtype=np.int8)
        input_vector[indices] = 1
        return self.spatial_pooler.compute(self.connections, input_vector, learn=learn)

    def step(self, symbol: str, learn: bool = True):
        return self.monitor.compute(self.columns_for(symbol, learn), learn=learn)

    def reset(self) -> None:
        self.monitor.reset()


def train(model: SequenceModel) -> list[int]:
    burst_counts = []
    for _ in tqdm(range(model.config.repetitions), desc="Training"):
        model.reset()
        for symbol in model.config.sequence:
            cycle = model.step(symbol, learn=True)
            burst_counts.append(int(cycle.bursting_columns.size))
    return burst_counts


def evaluate(model: SequenceModel) -> dict[str, Any]:
    """Replay the sequence without learning and score each prediction."""
    sequence = model.config.sequence
    cells_per_column = model.connections.cells_per_column
    model.reset()
    overlaps = []
    bursts = []
    for position, symbol in enumerate(sequence):
        cycle = model.step(symbol, learn=False)
        bursts.append(int(cycle.bursting_columns.size))
        if position + 1 < len(sequence):
            expected = model.columns_for(sequence[position + 1], learn=False)
            predicted = cycle.predicted_columns(cells_per_column)
            hit = np.intersect1d(predicted, expected).size
            overlaps.append(hit / max(1, expected.size))
    return {
        "prediction_overlap": [float(v) for v in overlaps],
        "mean_prediction_overlap": float(np.mean(overlaps)) if overlaps else 0.0,
        "evaluation_bursting_columns": bursts,
    }


def plot_bursting(burst_counts: list[int], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    plt.figure(figsize=(14, 6))
    plt.plot(burst_counts, label="Bursting columns", alpha=0.8)
    plt.xlabel("Time Step")
    plt.ylabel("Columns")
    plt.title("Bursting columns during training")
    plt.legend()
    plt.tight_layout()
    plt.savefig(path, dpi=150)
    plt.close()


def run_demo(
    config: dict[str, Any] | DemoConfig | None = None,
    parameters: Parameters | None = None,
) -> dict[str, Any]:
    config_obj = _resolve_config(config)
    model = SequenceModel(config_obj, parameters or default_parameters(config_obj))
    burst_counts = train(model)
    results = evaluate(model)
    results["train_burst_counts"] = burst_counts
    results["config"] = asdict(config_obj)
    logger.info("Mean prediction overlap %.3f", results["mean_prediction_overlap"])
    model.monitor.log_summary()
    logger.info("\n%s", format_statistics(model.connections))
    return results


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Train a temporal memory on a repeating symbol sequence and report prediction overlap."
    )
    parser.add_argument("--sequence", default=DemoConfig.sequence)
    parser.add_argument("--repetitions", type=int, default=DemoConfig.repetitions)
    parser.add_argument("--num-columns", type=int, default=DemoConfig.num_columns)
    parser.add_argument("--cells-per-column", type=int, default=DemoConfig.cells_per_column)
    parser.add_argument("--columns-per-symbol", type=int, default=DemoConfig.columns_per_symbol)
    parser.add_argument("--input-size", type=int, default=DemoConfig.input_size)
    parser.add_argument("--bits-per-symbol", type=int, default=DemoConfig.bits_per_symbol)
    parser.add_argument("--spatial-pooler", action="store_true", help="Feed symbols through a spatial pooler.")
    parser.add_argument("--seed", type=int, default=DemoConfig.seed)
    parser.add_argument("--params", type=Path, help="JSON file overriding Parameters fields.")
    parser.add_argument("--plot", type=Path, help="Save a plot of bursting columns to this path.")
    parser.add_argument("--output", type=Path, help="Write results as JSON to this path.")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    config = DemoConfig(
        sequence=args.sequence,
        repetitions=args.repetitions,
        num_columns=args.num_columns,
        cells_per_column=args.cells_per_column,
        columns_per_symbol=args.columns_per_symbol,
        input_size=args.input_size,
        bits_per_symbol=args.bits_per_symbol,
        use_spatial_pooler=args.spatial_pooler,
        seed=args.seed,
    )
    parameters = default_parameters(config)
    if args.params is not None:
        overrides = json.loads(args.params.read_text(encoding="utf-8"))
        parameters = parameters.replace(**overrides)

    results = run_demo(config, parameters)
    print(f"Mean prediction overlap: {results['mean_prediction_overlap']:.3f}")
    print("Evaluation bursting columns:", results["evaluation_bursting_columns"])
    if args.plot is not None:
        plot_bursting(results["train_burst_counts"], args.plot)
        print(f"Saved plot to {args.plot}")
    if args.output is not None:
        args.output.write_text(json.dumps(results, indent=2), encoding="utf-8")


if __name__ == "__main__":
    main()
