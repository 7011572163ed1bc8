import logging
from dataclasses import dataclass, field
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

import numpy as np

from .connections import EPSILON, Connections

logger = logging.getLogger(__name__)


@dataclass
class ComputeCycle:
    """Outputs of one temporal memory step."""

    active_cells: np.ndarray
    winner_cells: np.ndarray
    predictive_cells: np.ndarray
    active_segments: List[int]
    matching_segments: List[int]
    predicted_active_columns: np.ndarray
    bursting_columns: np.ndarray

    def predicted_columns(self, cells_per_column: int) -> np.ndarray:
        """Columns holding at least one predictive cell."""
        return np.unique(self.predictive_cells // cells_per_column)


@dataclass
class _PendingLearning:
    """Segment changes collected while activating cells, applied afterwards."""

    reinforce: List[Tuple[int, int]] = field(default_factory=list)  # (segment, synapses to grow)
    punish: List[int] = field(default_factory=list)
    new_segments: List[Tuple[int, int]] = field(default_factory=list)  # (cell, synapses to grow)


class TemporalMemory:
    """Learns transitions between successive sets of active columns.

    A column that was predicted (holds a cell with an active distal segment)
    activates just those cells. Any other active column bursts: every cell
    turns on and one winner cell is picked to learn the transition, either
    the owner of the best matching segment or the least used cell, which
    then grows a new segment onto the previous winner cells.
    """

    def compute(
        self,
        connections: Connections,
        active_columns: Iterable[int],
        learn: bool = True,
    ) -> ComputeCycle:
        columns = self._validate_columns(connections, active_columns)
        p = connections.parameters

        prev_active_cells = connections.active_cells
        prev_winner_cells = connections.winner_cells
        num_active_potential = connections.num_active_potential
        active_by_column = self._group_by_column(connections, connections.active_segments)
        matching_by_column = self._group_by_column(connections, connections.matching_segments)

        active_cells: List[int] = []
        winner_cells: List[int] = []
        predicted_active: List[int] = []
        bursting: List[int] = []
        pending = _PendingLearning()

        for column in columns:
            column = int(column)
            column_active_segments = active_by_column.get(column)
            if column_active_segments:
                cells = self.activate_predicted_column(connections, column_active_segments)
                active_cells.extend(cells)
                winner_cells.extend(cells)
                predicted_active.append(column)
                if learn:
                    for segment in column_active_segments:
                        pending.reinforce.append(
                            (segment, self._num_to_grow(p.max_new_synapse_count, num_active_potential, segment))
                        )
            else:
                cells, winner, learning_segment = self.burst_column(
                    connections, column, matching_by_column.get(column, []), num_active_potential
                )
                active_cells.extend(cells)
                winner_cells.append(winner)
                bursting.append(column)
                if learn:
                    if learning_segment is not None:
                        pending.reinforce.append(
                            (learning_segment, self._num_to_grow(p.max_new_synapse_count, num_active_potential, learning_segment))
                        )
                    elif prev_winner_cells.size:
                        pending.new_segments.append(
                            (winner, min(p.max_new_synapse_count, int(prev_winner_cells.size)))
                        )

        if learn and p.predicted_segment_decrement > 0.0:
            active_set = set(int(c) for c in columns)
            for column in sorted(matching_by_column):
                if column not in active_set:
                    pending.punish.extend(matching_by_column[column])

        if learn:
            self._apply_learning(connections, pending, prev_active_cells, prev_winner_cells)

        cycle = self.activate_dendrites(
            connections,
            np.array(active_cells, dtype=np.int64),
            np.array(sorted(winner_cells), dtype=np.int64),
            learn,
        )
        cycle.predicted_active_columns = np.array(predicted_active, dtype=np.int64)
        cycle.bursting_columns = np.array(bursting, dtype=np.int64)
        return cycle

    def reset(self, connections: Connections) -> None:
        """Forget the previous step; the next input is treated as a sequence start."""
        connections.clear_temporal_state()
        logger.debug("Temporal memory reset at iteration %d", connections.tm_iteration)

    # ----- Cell activation -----

    def activate_predicted_column(self, connections: Connections, segments: Sequence[int]) -> List[int]:
        """Cells owning the column's active segments become active and winners."""
        return sorted({connections.segment(s).cell for s in segments})

    def burst_column(
        self,
        connections: Connections,
        column: int,
        matching_segments: Sequence[int],
        num_active_potential: np.ndarray,
    ) -> Tuple[List[int], int, Optional[int]]:
        """Activate every cell of `column` and choose the cell that learns.

        Returns (active cells, winner cell, best matching segment or None).
        """
        cells = [int(c) for c in connections.cells_for_column(column)]
        best = self.best_matching_segment(matching_segments, num_active_potential)
        if best is not None:
            return cells, connections.segment(best).cell, best
        return cells, self.least_used_cell(connections, column), None

    def best_matching_segment(
        self, matching_segments: Sequence[int], num_active_potential: np.ndarray
    ) -> Optional[int]:
        """Matching segment with most potential synapses to previously active cells.

        `matching_segments` arrive ordered by (cell, creation order), so the
        first of equal candidates wins.
        """
        best, best_score = None, -1
        for segment in matching_segments:
            score = int(num_active_potential[segment])
            if score > best_score:
                best, best_score = segment, score
        return best

    def least_used_cell(self, connections: Connections, column: int) -> int:
        """Random cell among those of `column` with the fewest segments."""
        cells = connections.cells_for_column(column)
        counts = np.array([connections.num_segments(int(c)) for c in cells])
        candidates = cells[counts == counts.min()]
        return int(candidates[connections.random.integers(candidates.size)])

    # ----- Learning -----

    def _apply_learning(
        self,
        connections: Connections,
        pending: _PendingLearning,
        prev_active_cells: np.ndarray,
        prev_winner_cells: np.ndarray,
    ) -> None:
        p = connections.parameters
        prev_active = set(int(c) for c in prev_active_cells)

        for segment, num_new in pending.reinforce:
            self.adapt_segment(connections, segment, prev_active, p.permanence_increment, p.permanence_decrement)
            if num_new > 0:
                self.grow_synapses(connections, segment, num_new, prev_winner_cells)
            self._destroy_if_empty(connections, segment)

        for segment in pending.punish:
            self.adapt_segment(connections, segment, prev_active, -p.predicted_segment_decrement, 0.0)
            self._destroy_if_empty(connections, segment)

        for cell, num_new in pending.new_segments:
            segment = connections.create_segment(cell)
            self.grow_synapses(connections, segment, num_new, prev_winner_cells)
            self._destroy_if_empty(connections, segment)

        if pending.new_segments:
            logger.debug(
                "Iteration %d: grew %d segment(s), %d total",
                connections.tm_iteration,
                len(pending.new_segments),
                connections.num_segments(),
            )

    def adapt_segment(
        self,
        connections: Connections,
        segment: int,
        prev_active: set,
        increment: float,
        decrement: float,
    ) -> None:
        """Move synapses onto previously active cells up by `increment`, the rest down by `decrement`."""
        for synapse in connections.synapses_for_segment(segment):
            syn = connections.synapse(synapse)
            if syn.presynaptic in prev_active:
                permanence = syn.permanence + increment
            else:
                permanence = syn.permanence - decrement
            permanence = min(1.0, max(0.0, permanence))
            if permanence < EPSILON:
                connections.destroy_synapse(synapse, destroy_empty_segment=False)
            else:
                connections.update_synapse_permanence(synapse, permanence)

    def grow_synapses(
        self,
        connections: Connections,
        segment: int,
        num_new: int,
        prev_winner_cells: np.ndarray,
    ) -> None:
        """Connect `segment` to up to `num_new` previous winners it is not yet connected to."""
        existing = {connections.synapse(s).presynaptic for s in connections.synapses_for_segment(segment)}
        candidates = np.array(sorted({int(c) for c in prev_winner_cells} - existing), dtype=np.int64)
        if candidates.size == 0:
            return
        chosen = connections.random.choice(candidates, size=min(num_new, candidates.size), replace=False)
        initial = connections.parameters.initial_permanence
        for cell in chosen:
            connections.create_synapse(segment, int(cell), initial)

    @staticmethod
    def _destroy_if_empty(connections: Connections, segment: int) -> None:
        if connections.num_synapses(segment) == 0:
            connections.destroy_segment(segment)

    @staticmethod
    def _num_to_grow(max_new: int, num_active_potential: np.ndarray, segment: int) -> int:
        already = int(num_active_potential[segment]) if segment < num_active_potential.size else 0
        return max(0, max_new - already)

    # ----- Prediction -----

    def activate_dendrites(
        self,
        connections: Connections,
        active_cells: np.ndarray,
        winner_cells: np.ndarray,
        learn: bool,
    ) -> ComputeCycle:
        """Compute segment activity for the new active cells and store the step's state."""
        p = connections.parameters
        activity = connections.compute_activity(active_cells, p.connected_permanence)
        active_segments = self._sorted_segments(
            connections, np.flatnonzero(activity.num_active_connected >= p.activation_threshold)
        )
        matching_segments = self._sorted_segments(
            connections, np.flatnonzero(activity.num_active_potential >= p.min_threshold)
        )
        predictive_cells = np.array(
            sorted({connections.segment(s).cell for s in active_segments}), dtype=np.int64
        )

        if learn:
            for segment in active_segments:
                connections.record_segment_activity(segment)
            connections.start_new_iteration()
            self._update_cell_duty_cycles(connections, active_cells)

        connections.active_cells = active_cells
        connections.winner_cells = winner_cells
        connections.predictive_cells = predictive_cells
        connections.active_segments = active_segments
        connections.matching_segments = matching_segments
        connections.num_active_potential = activity.num_active_potential

        return ComputeCycle(
            active_cells=active_cells,
            winner_cells=winner_cells,
            predictive_cells=predictive_cells,
            active_segments=list(active_segments),
            matching_segments=list(matching_segments),
            predicted_active_columns=np.empty(0, dtype=np.int64),
            bursting_columns=np.empty(0, dtype=np.int64),
        )

    def _update_cell_duty_cycles(self, connections: Connections, active_cells: np.ndarray) -> None:
        window = max(1, min(connections.parameters.duty_cycle_period, connections.tm_iteration))
        alpha = 1.0 / window
        active = np.zeros(connections.num_cells, dtype=np.float64)
        active[active_cells] = 1.0
        connections.cell_active_duty_cycles += alpha * (active - connections.cell_active_duty_cycles)

    # ----- Helpers -----

    @staticmethod
    def _sorted_segments(connections: Connections, segments: Iterable[int]) -> List[int]:
        def key(segment: int) -> Tuple[int, int]:
            seg = connections.segment(segment)
            return seg.cell, seg.ordinal

        return sorted((int(s) for s in segments), key=key)

    @staticmethod
    def _group_by_column(connections: Connections, segments: Iterable[int]) -> Dict[int, List[int]]:
        grouped: Dict[int, List[int]] = {}
        for segment in segments:
            grouped.setdefault(connections.column_for_segment(segment), []).append(segment)
        return grouped

    @staticmethod
    def _validate_columns(connections: Connections, active_columns: Iterable[int]) -> np.ndarray:
        columns = np.asarray(list(active_columns) if not isinstance(active_columns, np.ndarray) else active_columns)
        if columns.size == 0:
            return np.empty(0, dtype=np.int64)
        if columns.ndim != 1 or not np.issubdtype(columns.dtype, np.integer):
            raise ValueError("Active columns must be a 1D sequence of column indices.")
        if columns.min() < 0 or columns.max() >= connections.num_columns:
            raise ValueError(
                f"Active column index out of range [0, {connections.num_columns}): "
                f"min {columns.min()}, max {columns.max()}."
            )
        return np.unique(columns).astype(np.int64)
