from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


class ConfigurationError(ValueError):
    """Raised when a parameter set can never produce a working model."""


@dataclass
class Parameters:
    """Every knob of the spatial pooler and temporal memory in one place.

    Values are checked on construction; an invalid combination raises
    `ConfigurationError` instead of failing halfway through a compute cycle.
    """

    input_dimensions: Tuple[int, ...] = (64,)
    """
    * Shape of the input space. The flat input vector has prod(dims) bits.
    """
    column_dimensions: Tuple[int, ...] = (2048,)
    """
    * Shape of the column space.
    """
    cells_per_column: int = 32

    # ----- Spatial pooler -----
    potential_radius: int = 16
    """
    * Radius (in input coordinates) of the neighborhood a column's potential
    * pool is sampled from.
    """
    potential_pct: float = 0.5
    """
    * Fraction of the potential neighborhood that ends up in the pool.
    """
    global_inhibition: bool = False
    local_area_density: float = -1.0
    """
    * Target fraction of active columns in an inhibition area. Used when > 0,
    * otherwise "num_active_columns_per_inh_area" decides.
    """
    num_active_columns_per_inh_area: float = 10.0
    stimulus_threshold: float = 0.0
    """
    * Minimum overlap for a column to take part in inhibition.
    """
    syn_perm_inactive_dec: float = 0.01
    syn_perm_active_inc: float = 0.1
    syn_perm_connected: float = 0.10
    syn_perm_below_stimulus_inc: float = 0.01
    syn_perm_trim_threshold: float = 0.05
    """
    * Proximal permanences below this value are set to 0 after learning.
    """
    init_connected_pct: float = 0.5
    min_pct_overlap_duty_cycles: float = 0.001
    min_pct_active_duty_cycles: float = 0.001
    duty_cycle_period: int = 1000
    update_period: Optional[int] = None
    """
    * Cycles between inhibition-radius and minimum-duty-cycle maintenance.
    * Defaults to "duty_cycle_period".
    """
    max_boost: float = 10.0
    wrap_around: bool = True

    # ----- Temporal memory -----
    activation_threshold: int = 13
    """
    * Connected synapses to active cells needed for a segment to be active.
    """
    min_threshold: int = 10
    """
    * Potential synapses to active cells needed for a segment to be matching.
    """
    max_new_synapse_count: int = 20
    max_synapses_per_segment: int = 255
    max_segments_per_cell: int = 255
    initial_permanence: float = 0.21
    connected_permanence: float = 0.5
    permanence_increment: float = 0.10
    permanence_decrement: float = 0.10
    predicted_segment_decrement: float = 0.0

    seed: int = 42

    def __post_init__(self) -> None:
        self.input_dimensions = _as_dimensions(self.input_dimensions, "input_dimensions")
        self.column_dimensions = _as_dimensions(self.column_dimensions, "column_dimensions")
        if self.update_period is None:
            self.update_period = self.duty_cycle_period
        self.validate()

    @property
    def num_inputs(self) -> int:
        return math.prod(self.input_dimensions)

    @property
    def num_columns(self) -> int:
        return math.prod(self.column_dimensions)

    @property
    def num_cells(self) -> int:
        return self.num_columns * self.cells_per_column

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid value."""
        if len(self.input_dimensions) != len(self.column_dimensions):
            raise ConfigurationError(
                f"input_dimensions {self.input_dimensions} and column_dimensions "
                f"{self.column_dimensions} must have the same number of axes."
            )
        if self.cells_per_column < 1:
            raise ConfigurationError(f"cells_per_column must be >= 1, got {self.cells_per_column}.")
        if self.potential_radius < 0:
            raise ConfigurationError(f"potential_radius must be >= 0, got {self.potential_radius}.")
        if not 0.0 < self.potential_pct <= 1.0:
            raise ConfigurationError(f"potential_pct must be in (0, 1], got {self.potential_pct}.")
        if self.local_area_density > 0.5:
            raise ConfigurationError(
                f"local_area_density must be <= 0.5, got {self.local_area_density}."
            )
        if self.local_area_density <= 0 and self.num_active_columns_per_inh_area <= 0:
            raise ConfigurationError(
                "Inhibition parameters are invalid: set local_area_density > 0 "
                "or num_active_columns_per_inh_area > 0."
            )
        if self.stimulus_threshold < 0:
            raise ConfigurationError(f"stimulus_threshold must be >= 0, got {self.stimulus_threshold}.")
        for name in (
            "syn_perm_inactive_dec",
            "syn_perm_active_inc",
            "syn_perm_connected",
            "syn_perm_below_stimulus_inc",
            "syn_perm_trim_threshold",
            "init_connected_pct",
            "min_pct_overlap_duty_cycles",
            "min_pct_active_duty_cycles",
            "initial_permanence",
            "connected_permanence",
            "permanence_increment",
            "permanence_decrement",
            "predicted_segment_decrement",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1], got {value}.")
        if self.syn_perm_trim_threshold >= self.syn_perm_connected:
            raise ConfigurationError(
                f"syn_perm_trim_threshold {self.syn_perm_trim_threshold} must be below "
                f"syn_perm_connected {self.syn_perm_connected}."
            )
        if self.stimulus_threshold > 0 and self.syn_perm_below_stimulus_inc <= 0.0:
            raise ConfigurationError(
                f"syn_perm_below_stimulus_inc must be > 0 when stimulus_threshold is {self.stimulus_threshold}."
            )
        if self.duty_cycle_period < 1:
            raise ConfigurationError(f"duty_cycle_period must be >= 1, got {self.duty_cycle_period}.")
        if self.update_period < 1:
            raise ConfigurationError(f"update_period must be >= 1, got {self.update_period}.")
        if self.max_boost < 1.0:
            raise ConfigurationError(f"max_boost must be >= 1, got {self.max_boost}.")
        if self.activation_threshold < 1:
            raise ConfigurationError(f"activation_threshold must be >= 1, got {self.activation_threshold}.")
        if self.min_threshold < 1:
            raise ConfigurationError(f"min_threshold must be >= 1, got {self.min_threshold}.")
        if self.max_new_synapse_count < 1:
            raise ConfigurationError(
                f"max_new_synapse_count must be >= 1, got {self.max_new_synapse_count}."
            )
        if self.max_synapses_per_segment < 1:
            raise ConfigurationError(
                f"max_synapses_per_segment must be >= 1, got {self.max_synapses_per_segment}."
            )
        if self.max_segments_per_cell < 1:
            raise ConfigurationError(
                f"max_segments_per_cell must be >= 1, got {self.max_segments_per_cell}."
            )

    def replace(self, **changes: Any) -> "Parameters":
        """Return a validated copy with `changes` applied."""
        unknown = sorted(set(changes) - {f.name for f in fields(self)})
        if unknown:
            raise ConfigurationError(f"Unknown parameter(s): {', '.join(unknown)}.")
        if "duty_cycle_period" in changes and "update_period" not in changes:
            if self.update_period == self.duty_cycle_period:
                changes["update_period"] = None
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["input_dimensions"] = list(self.input_dimensions)
        data["column_dimensions"] = list(self.column_dimensions)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Parameters":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown parameter(s): {', '.join(unknown)}.")
        return cls(**dict(data))

    @classmethod
    def from_json(cls, source: str | Path) -> "Parameters":
        """Load parameters from a JSON file path or a JSON document string."""
        path = Path(source) if not str(source).lstrip().startswith("{") else None
        text = path.read_text(encoding="utf-8") if path is not None else str(source)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Parameters are not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError("Parameters JSON must be an object.")
        return cls.from_dict(data)


def resolve_parameters(config: Mapping[str, Any] | Parameters | None) -> Parameters:
    if config is None:
        return Parameters()
    if isinstance(config, Parameters):
        return config
    return Parameters.from_dict(config)


def _as_dimensions(value: Any, name: str) -> Tuple[int, ...]:
    if isinstance(value, int):
        value = (value,)
    dims = tuple(int(d) for d in value)
    if not dims or any(d < 1 for d in dims):
        raise ConfigurationError(f"{name} must be a non-empty sequence of positive sizes, got {value}.")
    return dims
