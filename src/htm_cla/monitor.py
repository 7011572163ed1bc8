"""Per-step traces and graph statistics for a temporal memory."""
import logging
from statistics import fmean, pstdev
from typing import Any, Dict, Iterable, List, Tuple

import numpy as np
import pandas as pd

from .connections import Connections
from .temporal_memory import ComputeCycle, TemporalMemory

logger = logging.getLogger(__name__)

TRACE_COLUMNS = [
    "iteration",
    "reset",
    "active_columns",
    "predicted_active_columns",
    "bursting_columns",
    "active_cells",
    "winner_cells",
    "predictive_cells",
    "segments",
    "synapses",
]


class TemporalMemoryMonitor:
    """Wraps a TemporalMemory and records what every compute step did."""

    def __init__(self, temporal_memory: TemporalMemory, connections: Connections, name: str = "tm") -> None:
        self.temporal_memory = temporal_memory
        self.connections = connections
        self.name = name
        self._records: List[Dict[str, Any]] = []
        self._pending_reset = False

    def compute(self, active_columns: Iterable[int], learn: bool = True) -> ComputeCycle:
        columns = np.unique(np.asarray(list(active_columns)))
        cycle = self.temporal_memory.compute(self.connections, columns, learn=learn)
        self._records.append(
            {
                "iteration": len(self._records),
                "reset": self._pending_reset,
                "active_columns": int(columns.size),
                "predicted_active_columns": int(cycle.predicted_active_columns.size),
                "bursting_columns": int(cycle.bursting_columns.size),
                "active_cells": int(cycle.active_cells.size),
                "winner_cells": int(cycle.winner_cells.size),
                "predictive_cells": int(cycle.predictive_cells.size),
                "segments": self.connections.num_segments(),
                "synapses": self.connections.num_synapses(),
            }
        )
        self._pending_reset = False
        return cycle

    def reset(self) -> None:
        self.temporal_memory.reset(self.connections)
        self._pending_reset = True

    def clear_history(self) -> None:
        self._records = []

    def traces(self) -> pd.DataFrame:
        """One row per recorded step."""
        return pd.DataFrame.from_records(self._records, columns=TRACE_COLUMNS)

    def summary(self, exclude_resets: bool = True) -> pd.DataFrame:
        """mean / std / min / max / sum of each trace.

        The step right after a reset is skipped by default since nothing can
        be predicted there.
        """
        frame = self.traces()
        if exclude_resets and not frame.empty:
            frame = frame[~frame["reset"]]
        numeric = frame.drop(columns=["iteration", "reset"])
        return numeric.agg(["mean", "std", "min", "max", "sum"]).T

    def log_summary(self) -> None:
        logger.info("%s trace summary:\n%s", self.name, self.summary().to_string())


def _describe(values: List[float]) -> Tuple[int, float, float, float, float]:
    if not values:
        return 0, 0.0, 0.0, 0.0, 0.0
    count = len(values)
    mean_val = fmean(values)
    std_val = pstdev(values) if count > 1 else 0.0
    return count, mean_val, std_val, min(values), max(values)


def graph_statistics(connections: Connections) -> Dict[str, Tuple[int, float, float, float, float]]:
    """(count, mean, std, min, max) for segment, synapse, permanence and duty-cycle distributions."""
    segments_per_cell = [float(connections.num_segments(cell)) for cell in range(connections.num_cells)]
    synapses_per_segment = [float(len(seg.synapses)) for seg in connections.iter_segments()]
    permanences = [syn.permanence for syn in connections.iter_synapses()]
    return {
        "Segments per cell": _describe(segments_per_cell),
        "Synapses per segment": _describe(synapses_per_segment),
        "Permanence": _describe(permanences),
        "Column duty cycle": _describe(connections.active_duty_cycles.tolist()),
        "Cell duty cycle": _describe(connections.cell_active_duty_cycles.tolist()),
        "Boost factor": _describe(connections.boost_factors.tolist()),
    }


def format_statistics(connections: Connections) -> str:
    """Render `graph_statistics` as an ASCII table."""

    def format_metric(
        label: str,
        stats: Tuple[int, float, float, float, float],
        value_precision: str = ".2f",
        extrema_precision: str = ".0f",
    ) -> str:
        _, mean_val, std_val, min_val, max_val = stats
        mean_str = format(mean_val, value_precision)
        std_str = format(std_val, value_precision)
        min_str = format(min_val, extrema_precision)
        max_str = format(max_val, extrema_precision)
        return f"| {label:<22}| {mean_str:>8} ± {std_str:<8}| {min_str:>8} | {max_str:>8} |"

    stats = graph_statistics(connections)
    connected = sum(seg.num_connected for seg in connections.iter_segments())
    total = connections.num_synapses()
    connected_ratio = connected / total if total else 0.0

    lines = [
        "+------------------------+--------------------+----------+----------+",
        "| Metric                 |   Mean ± Std       |      Min |      Max |",
        "+------------------------+--------------------+----------+----------+",
    ]
    for label, values in stats.items():
        if label in ("Segments per cell", "Synapses per segment"):
            lines.append(format_metric(label, values))
        else:
            lines.append(format_metric(label, values, value_precision=".3f", extrema_precision=".3f"))
    lines.append("+------------------------+--------------------+----------+----------+")
    lines.append(
        f"Segments: {connections.num_segments()}  Synapses: {connections.num_synapses()}  "
        f"Connected: {connected} ({connected_ratio:.1%})"
    )
    return "\n".join(lines)


def log_statistics(connections: Connections) -> None:
    logger.info("Connections statistics:\n%s", format_statistics(connections))
