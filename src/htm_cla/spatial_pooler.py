import logging
from dataclasses import dataclass
from typing import (
    Dict,
    Optional,
    Sequence,
    Union,
)

import numpy as np

from .connections import Connections
from .parameters import ConfigurationError

logger = logging.getLogger(__name__)

# Input variants accepted by SpatialPooler.compute
InputField = Union[np.ndarray, Sequence[int]]
InputComposite = Union[
    np.ndarray,
    Sequence[int],
    Sequence[InputField],
    Dict[str, InputField],
]


def combine_input_fields(input_vector: InputComposite, input_size: int) -> np.ndarray:
    """Prepare / combine input fields into a single binary numpy array.

    Accepted forms:
      - 1D array-like of 0/1 values (already concatenated)
      - list / tuple of field arrays => concatenated
      - dict[str, field array] => concatenated in insertion order

    Returns: np.ndarray (dtype=int8) of length == `input_size`.
    Raises: ValueError if the combined length mismatches `input_size` or a
    value other than 0/1 is present.
    """
    if isinstance(input_vector, dict):
        arrays = [np.asarray(arr, dtype=np.int64).ravel() for arr in input_vector.values()]
        combined = np.concatenate(arrays) if arrays else np.array([], dtype=np.int64)
    elif isinstance(input_vector, (list, tuple)) and any(np.ndim(v) > 0 for v in input_vector):
        arrays = [np.asarray(v, dtype=np.int64).ravel() for v in input_vector]
        combined = np.concatenate(arrays) if arrays else np.array([], dtype=np.int64)
    else:
        combined = np.asarray(input_vector).ravel()

    if combined.shape[0] != input_size:
        raise ValueError(
            f"Combined input length {combined.shape[0]} != expected input size {input_size}."
        )
    if combined.size and not np.all((combined == 0) | (combined == 1)):
        raise ValueError("Input vector must be binary (only 0 and 1 values).")
    return combined.astype(np.int8)


@dataclass
class _LearningUpdate:
    """Everything one learning cycle changes, committed in a single step."""

    permanences: Dict[int, np.ndarray]
    overlap_duty_cycles: np.ndarray
    active_duty_cycles: np.ndarray
    boost_factors: np.ndarray


class SpatialPooler:
    """Turns a binary input vector into a sparse set of active columns.

    Columns compete on their overlap with the input: the count of connected
    proximal synapses on active input bits, scaled by a boost factor while
    learning. Global inhibition keeps the top columns of the whole region;
    local inhibition keeps the top columns of each inhibition neighborhood.
    Ties go to the lower column index. All state lives in the `Connections`
    passed to each call, so one pooler can serve many regions.
    """

    def init(self, connections: Connections) -> None:
        """Create every column's potential pool and set the inhibition radius."""
        p = connections.parameters
        for column in range(connections.num_columns):
            potential = self.map_potential(connections, column, p.wrap_around)
            if potential.size < p.stimulus_threshold:
                raise ConfigurationError(
                    f"Column {column} has {potential.size} potential synapses, fewer than "
                    f"stimulus_threshold {p.stimulus_threshold}."
                )
            perm = self.init_permanence(connections, potential)
            connections.set_pool(column, potential, perm[potential])

        connections.inhibition_radius = self.compute_inhibition_radius(connections)
        logger.info(
            "Spatial pooler initialised: %d inputs -> %d columns, inhibition radius %d, mean connected %.1f",
            connections.num_inputs,
            connections.num_columns,
            connections.inhibition_radius,
            float(connections.connected_counts.mean()),
        )

    def compute(
        self,
        connections: Connections,
        input_vector: InputComposite,
        active_array: Optional[np.ndarray] = None,
        learn: bool = True,
    ) -> np.ndarray:
        """Run one cycle; returns sorted active column indices.

        When `active_array` is given it is overwritten with a 0/1 vector
        marking the active columns. With `learn=False` no permanence, duty
        cycle or boost factor changes.
        """
        inputs = combine_input_fields(input_vector, connections.num_inputs)
        if active_array is not None and len(active_array) != connections.num_columns:
            raise ValueError(
                f"Active array length {len(active_array)} != number of columns {connections.num_columns}."
            )

        connections.sp_iteration_num += 1
        if learn:
            connections.sp_iteration_learn_num += 1

        overlaps = self.calculate_overlap(connections, inputs)
        if learn:
            boosted = overlaps * connections.boost_factors
        else:
            boosted = overlaps.astype(np.float64)
        active_columns = self.inhibit_columns(connections, boosted)
        connections.overlaps = overlaps
        connections.boosted_overlaps = boosted

        if learn:
            update = self._stage_learning(connections, inputs, overlaps, active_columns)
            self._commit(connections, update)

        if active_array is not None:
            active_array[:] = 0
            active_array[active_columns] = 1
        return active_columns

    # ----- Initialisation -----

    def map_column(self, connections: Connections, column: int) -> int:
        """Input index at the center of `column`'s receptive field."""
        column_dims = np.array(connections.column_topology.dimensions, dtype=np.float64)
        input_dims = np.array(connections.input_topology.dimensions, dtype=np.float64)
        column_coords = np.array(connections.column_topology.coordinates_from_index(column), dtype=np.float64)
        input_coords = input_dims * (column_coords / column_dims) + 0.5 * (input_dims / column_dims)
        input_coords = np.minimum(input_coords.astype(np.int64), input_dims.astype(np.int64) - 1)
        return connections.input_topology.index_from_coordinates(input_coords)

    def map_potential(self, connections: Connections, column: int, wrap_around: bool = True) -> np.ndarray:
        """Sample the potential pool of `column` from its input neighborhood."""
        p = connections.parameters
        center = self.map_column(connections, column)
        topology = connections.input_topology
        if wrap_around:
            neighborhood = topology.wrapping_neighborhood(center, p.potential_radius)
        else:
            neighborhood = topology.neighborhood(center, p.potential_radius)
        num_potential = max(1, int(neighborhood.size * p.potential_pct + 0.5))
        selected = connections.random.choice(neighborhood, size=num_potential, replace=False)
        return np.sort(selected)

    def init_permanence(self, connections: Connections, potential: np.ndarray) -> np.ndarray:
        """Random dense permanences; about `init_connected_pct` of the pool starts connected."""
        p = connections.parameters
        rng = connections.random
        perm = np.zeros(connections.num_inputs, dtype=np.float64)
        connected = rng.random(potential.size) <= p.init_connected_pct
        draws = rng.random(potential.size)
        values = np.where(
            connected,
            p.syn_perm_connected + (1.0 - p.syn_perm_connected) * draws,
            p.syn_perm_connected * draws,
        )
        values = np.floor(values * 100000) / 100000
        values[values < p.syn_perm_trim_threshold] = 0.0
        perm[potential] = values
        self.raise_permanence_to_threshold(connections, perm, potential)
        return perm

    def raise_permanence_to_threshold(
        self, connections: Connections, perm: np.ndarray, potential: np.ndarray
    ) -> None:
        """Raise the whole pool until at least `stimulus_threshold` synapses are connected."""
        p = connections.parameters
        if potential.size < p.stimulus_threshold:
            raise ConfigurationError(
                f"A pool of {potential.size} inputs can never reach stimulus_threshold {p.stimulus_threshold}."
            )
        while np.count_nonzero(perm[potential] >= p.syn_perm_connected) < p.stimulus_threshold:
            perm[potential] = np.minimum(1.0, perm[potential] + p.syn_perm_below_stimulus_inc)

    def _finalize_permanences(
        self, connections: Connections, column: int, perm: np.ndarray, raise_perm: bool = True
    ) -> np.ndarray:
        p = connections.parameters
        potential = connections.pool(column).input_indices
        if raise_perm:
            self.raise_permanence_to_threshold(connections, perm, potential)
        perm[perm < p.syn_perm_trim_threshold] = 0.0
        np.clip(perm, 0.0, 1.0, out=perm)
        return perm

    # ----- Overlap and inhibition -----

    def calculate_overlap(self, connections: Connections, inputs: np.ndarray) -> np.ndarray:
        active_inputs = np.flatnonzero(inputs)
        return connections.connected_matrix[:, active_inputs].sum(axis=1).astype(np.int64)

    def inhibition_density(self, connections: Connections) -> float:
        p = connections.parameters
        if p.local_area_density > 0:
            return p.local_area_density
        diameter = 2 * connections.inhibition_radius + 1
        inhibition_area = min(connections.num_columns, diameter ** len(p.column_dimensions))
        return min(0.5, p.num_active_columns_per_inh_area / inhibition_area)

    def inhibit_columns(self, connections: Connections, overlaps: np.ndarray) -> np.ndarray:
        """Pick the winning columns for these (boosted) overlaps."""
        p = connections.parameters
        density = self.inhibition_density(connections)
        if p.global_inhibition or connections.inhibition_radius > max(p.column_dimensions):
            return self.inhibit_columns_global(connections, overlaps, density)
        return self.inhibit_columns_local(connections, overlaps, density)

    def inhibit_columns_global(
        self, connections: Connections, overlaps: np.ndarray, density: float
    ) -> np.ndarray:
        """Keep the top `density * num_columns` columns of the whole region."""
        stimulus = connections.parameters.stimulus_threshold
        num_active = max(1, int(density * connections.num_columns + 0.5))
        # Descending overlap, ascending index among equals
        order = np.lexsort((np.arange(overlaps.size), -overlaps))
        winners = order[:num_active]
        winners = winners[(overlaps[winners] > 0) & (overlaps[winners] >= stimulus)]
        return np.sort(winners).astype(np.int64)

    def inhibit_columns_local(
        self, connections: Connections, overlaps: np.ndarray, density: float
    ) -> np.ndarray:
        """A column wins when fewer than its neighborhood's quota beat it."""
        stimulus = connections.parameters.stimulus_threshold
        if overlaps.size == 0 or overlaps.max() <= 0:
            return np.empty(0, dtype=np.int64)
        add_to_winners = overlaps.max() / 1000.0
        tie_broken = overlaps.astype(np.float64).copy()
        winners = []
        for column in range(connections.num_columns):
            own = overlaps[column]
            if own <= 0 or own < stimulus:
                continue
            neighborhood = self.column_neighborhood(connections, column)
            num_active = max(1, int(0.5 + density * neighborhood.size))
            num_bigger = int(np.count_nonzero(tie_broken[neighborhood] > own))
            if num_bigger < num_active:
                winners.append(column)
                tie_broken[column] += add_to_winners
        return np.array(winners, dtype=np.int64)

    def column_neighborhood(self, connections: Connections, column: int) -> np.ndarray:
        topology = connections.column_topology
        if connections.parameters.wrap_around:
            return topology.wrapping_neighborhood(column, connections.inhibition_radius)
        return topology.neighborhood(column, connections.inhibition_radius)

    # ----- Learning -----

    def _stage_learning(
        self,
        connections: Connections,
        inputs: np.ndarray,
        overlaps: np.ndarray,
        active_columns: np.ndarray,
    ) -> _LearningUpdate:
        p = connections.parameters
        staged = self.adapt_synapses(connections, inputs, active_columns)

        period = max(1, min(p.duty_cycle_period, connections.sp_iteration_num))
        overlapping = (overlaps > 0).astype(np.float64)
        active = np.zeros(connections.num_columns, dtype=np.float64)
        active[active_columns] = 1.0
        overlap_duty = self.update_duty_cycles_helper(connections.overlap_duty_cycles, overlapping, period)
        active_duty = self.update_duty_cycles_helper(connections.active_duty_cycles, active, period)

        self.bump_up_weak_columns(connections, overlap_duty, staged)
        boost = self.compute_boost_factors(
            connections.boost_factors, active_duty, connections.min_active_duty_cycles, p.max_boost
        )
        return _LearningUpdate(staged, overlap_duty, active_duty, boost)

    def _commit(self, connections: Connections, update: _LearningUpdate) -> None:
        p = connections.parameters
        for column in sorted(update.permanences):
            connections.set_proximal_permanences(column, update.permanences[column])
        connections.overlap_duty_cycles = update.overlap_duty_cycles
        connections.active_duty_cycles = update.active_duty_cycles
        connections.boost_factors = update.boost_factors

        if connections.sp_iteration_num % p.update_period == 0:
            connections.inhibition_radius = self.compute_inhibition_radius(connections)
            self.update_min_duty_cycles(connections)
            logger.debug(
                "Update round at iteration %d: inhibition radius %d",
                connections.sp_iteration_num,
                connections.inhibition_radius,
            )

    def adapt_synapses(
        self, connections: Connections, inputs: np.ndarray, active_columns: np.ndarray
    ) -> Dict[int, np.ndarray]:
        """New dense permanences for each active column; nothing is written yet."""
        p = connections.parameters
        delta = np.where(inputs > 0, p.syn_perm_active_inc, -p.syn_perm_inactive_dec)
        staged: Dict[int, np.ndarray] = {}
        for column in active_columns:
            column = int(column)
            perm = connections.proximal_permanences(column)
            potential = connections.pool(column).input_indices
            perm[potential] += delta[potential]
            staged[column] = self._finalize_permanences(connections, column, perm, raise_perm=True)
        return staged

    def bump_up_weak_columns(
        self, connections: Connections, overlap_duty_cycles: np.ndarray, staged: Dict[int, np.ndarray]
    ) -> None:
        """Raise every pool permanence of columns whose overlap duty cycle fell too low."""
        p = connections.parameters
        weak = np.flatnonzero(overlap_duty_cycles < connections.min_overlap_duty_cycles)
        for column in weak:
            column = int(column)
            perm = staged.get(column)
            if perm is None:
                perm = connections.proximal_permanences(column)
            potential = connections.pool(column).input_indices
            perm[potential] += p.syn_perm_below_stimulus_inc
            staged[column] = self._finalize_permanences(connections, column, perm, raise_perm=False)

    @staticmethod
    def update_duty_cycles_helper(duty_cycles: np.ndarray, new_input: np.ndarray, period: int) -> np.ndarray:
        """Moving average: (old * (period - 1) + new) / period."""
        if period < 1:
            raise ValueError(f"Duty cycle period must be >= 1, got {period}.")
        return (duty_cycles * (period - 1.0) + new_input) / period

    @staticmethod
    def compute_boost_factors(
        boost_factors: np.ndarray,
        active_duty_cycles: np.ndarray,
        min_active_duty_cycles: np.ndarray,
        max_boost: float,
    ) -> np.ndarray:
        """Linear boost: `max_boost` at zero activity down to 1 at the minimum duty cycle."""
        boost = boost_factors.copy()
        mask = min_active_duty_cycles > 0
        if not mask.any():
            return boost
        boost[mask] = (
            (1.0 - max_boost) / min_active_duty_cycles[mask] * active_duty_cycles[mask] + max_boost
        )
        boost[active_duty_cycles > min_active_duty_cycles] = 1.0
        return boost

    def update_min_duty_cycles(self, connections: Connections) -> None:
        p = connections.parameters
        if p.global_inhibition or connections.inhibition_radius > max(p.column_dimensions):
            connections.min_overlap_duty_cycles = np.full(
                connections.num_columns, p.min_pct_overlap_duty_cycles * connections.overlap_duty_cycles.max()
            )
            connections.min_active_duty_cycles = np.full(
                connections.num_columns, p.min_pct_active_duty_cycles * connections.active_duty_cycles.max()
            )
            return

        min_overlap = np.zeros(connections.num_columns, dtype=np.float64)
        min_active = np.zeros(connections.num_columns, dtype=np.float64)
        for column in range(connections.num_columns):
            neighborhood = self.column_neighborhood(connections, column)
            min_overlap[column] = connections.overlap_duty_cycles[neighborhood].max() * p.min_pct_overlap_duty_cycles
            min_active[column] = connections.active_duty_cycles[neighborhood].max() * p.min_pct_active_duty_cycles
        connections.min_overlap_duty_cycles = min_overlap
        connections.min_active_duty_cycles = min_active

    # ----- Inhibition radius -----

    def compute_inhibition_radius(self, connections: Connections) -> int:
        """Average connected receptive field size, expressed in columns."""
        p = connections.parameters
        if p.global_inhibition:
            return int(max(p.column_dimensions))
        spans = [self.avg_connected_span_for_column(connections, c) for c in range(connections.num_columns)]
        diameter = float(np.mean(spans)) * self.avg_columns_per_input(connections)
        radius = max(1.0, (diameter - 1.0) / 2.0)
        return int(radius + 0.5)

    def avg_columns_per_input(self, connections: Connections) -> float:
        column_dims = np.array(connections.column_topology.dimensions, dtype=np.float64)
        input_dims = np.array(connections.input_topology.dimensions, dtype=np.float64)
        return float(np.mean(column_dims / input_dims))

    def avg_connected_span_for_column(self, connections: Connections, column: int) -> float:
        """Mean extent, over input axes, of the bits `column` is connected to."""
        connected = np.flatnonzero(connections.connected_matrix[column])
        if connected.size == 0:
            return 0.0
        coords = np.array(np.unravel_index(connected, connections.input_topology.dimensions))
        spans = coords.max(axis=1) - coords.min(axis=1) + 1
        return float(np.mean(spans))

    def strip_unlearned_columns(self, connections: Connections, active_array: np.ndarray) -> np.ndarray:
        """Zero entries of `active_array` for columns that have never been active."""
        never_learned = np.flatnonzero(connections.active_duty_cycles == 0)
        active_array[never_learned] = 0
        return active_array
