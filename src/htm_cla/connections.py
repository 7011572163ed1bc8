"""Shared store of columns, cells, dendrite segments and synapses.

Both the spatial pooler and the temporal memory keep all of their state here.
Distal segments and synapses live in flat, index-addressed lists; destroyed
slots go on a free list and are reused by the next creation, so indices stay
dense and lookups stay O(degree).
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np

from .parameters import Parameters
from .topology import Topology

logger = logging.getLogger(__name__)

EPSILON = 0.00001  # Permanences below this are treated as zero
SNAPSHOT_VERSION = 1


# ===== Basic Building Blocks =====

class Synapse:
    """Weighted connection from a presynaptic source onto a segment."""

    __slots__ = ("index", "segment", "presynaptic", "permanence", "ordinal")

    def __init__(
        self,
        index: int,
        segment: int,
        presynaptic: int,
        permanence: float,
        ordinal: int = 0,
    ) -> None:
        self.index: int = index
        self.segment: int = segment
        self.presynaptic: int = presynaptic
        self.permanence: float = permanence
        self.ordinal: int = ordinal

    def __repr__(self) -> str:
        return (
            f"Synapse(index={self.index}, segment={self.segment}, "
            f"presynaptic={self.presynaptic}, permanence={self.permanence:.3f})"
        )

    def __getstate__(self):
        return tuple(getattr(self, name) for name in self.__slots__)

    def __setstate__(self, state) -> None:
        for name, value in zip(self.__slots__, state):
            setattr(self, name, value)


class Pool:
    """Potential input bits of one column together with their permanences."""

    def __init__(self, input_indices: Iterable[int], permanences: Iterable[float]) -> None:
        self.input_indices: np.ndarray = np.asarray(list(input_indices), dtype=np.int64)
        self.permanences: np.ndarray = np.asarray(list(permanences), dtype=np.float64)
        if self.input_indices.shape != self.permanences.shape:
            raise ValueError(
                f"Pool has {self.input_indices.size} inputs but {self.permanences.size} permanences."
            )

    def __len__(self) -> int:
        return int(self.input_indices.size)

    def __contains__(self, input_index: int) -> bool:
        return bool(np.any(self.input_indices == input_index))

    def dense_permanences(self, num_inputs: int) -> np.ndarray:
        """Return a length `num_inputs` vector with zeros outside the pool."""
        dense = np.zeros(num_inputs, dtype=np.float64)
        dense[self.input_indices] = self.permanences
        return dense

    def connected_inputs(self, threshold: float) -> np.ndarray:
        return self.input_indices[self.permanences >= threshold]


class Segment:
    """Index plus synapses; the shape shared by proximal and distal dendrites."""

    def __init__(self, index: int) -> None:
        self.index: int = index

    def __repr__(self) -> str:
        return f"{type(self).__name__}(index={self.index})"


class ProximalDendrite(Segment):
    """Feed-forward dendrite of a column, one per column, backed by a `Pool`."""

    def __init__(self, index: int) -> None:
        super().__init__(index)
        self.pool: Optional[Pool] = None

    @property
    def column(self) -> int:
        return self.index

    @property
    def synapses(self) -> List[Synapse]:
        """Materialise the pool as Synapse records keyed by input bit."""
        if self.pool is None:
            return []
        return [
            Synapse(slot, self.index, int(source), float(perm), slot)
            for slot, (source, perm) in enumerate(zip(self.pool.input_indices, self.pool.permanences))
        ]


class DistalDendrite(Segment):
    """Lateral dendrite owned by a cell, with synapses to other cells."""

    def __init__(self, index: int, cell: int, ordinal: int, last_used_iteration: int) -> None:
        super().__init__(index)
        self.cell: int = cell
        self.ordinal: int = ordinal
        self.last_used_iteration: int = last_used_iteration
        self.synapses: List[int] = []
        self.num_connected: int = 0

    def __repr__(self) -> str:
        return f"DistalDendrite(index={self.index}, cell={self.cell}, synapses={len(self.synapses)})"


@dataclass
class SegmentActivity:
    """Per-segment active synapse counts, indexed by segment flat index."""

    num_active_connected: np.ndarray
    num_active_potential: np.ndarray


class Connections:
    """Owns the column/cell/segment/synapse graph and its statistics."""

    def __init__(self, parameters: Optional[Parameters] = None) -> None:
        self.parameters: Parameters = parameters if parameters is not None else Parameters()
        p = self.parameters
        self.input_topology = Topology(p.input_dimensions)
        self.column_topology = Topology(p.column_dimensions)
        self.num_inputs: int = p.num_inputs
        self.num_columns: int = p.num_columns
        self.cells_per_column: int = p.cells_per_column
        self.num_cells: int = p.num_cells
        self.random: np.random.Generator = np.random.default_rng(p.seed)

        # Proximal side
        self.proximal_dendrites: List[ProximalDendrite] = [
            ProximalDendrite(column) for column in range(self.num_columns)
        ]
        self._connected_matrix = np.zeros((self.num_columns, self.num_inputs), dtype=bool)
        self.connected_counts = np.zeros(self.num_columns, dtype=np.int64)
        self.overlaps = np.zeros(self.num_columns, dtype=np.int64)
        self.boosted_overlaps = np.zeros(self.num_columns, dtype=np.float64)
        self.overlap_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.active_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.min_overlap_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.min_active_duty_cycles = np.zeros(self.num_columns, dtype=np.float64)
        self.boost_factors = np.ones(self.num_columns, dtype=np.float64)
        self.inhibition_radius: int = 0
        self.sp_iteration_num: int = 0
        self.sp_iteration_learn_num: int = 0

        # Distal side
        self._segments: List[Optional[DistalDendrite]] = []
        self._free_segment_idxs: List[int] = []
        self._segments_for_cell: Dict[int, List[int]] = {}
        self._synapses: List[Optional[Synapse]] = []
        self._free_synapse_idxs: List[int] = []
        self._receptor_synapses: Dict[int, Set[int]] = {}
        self._next_segment_ordinal: int = 0
        self._next_synapse_ordinal: int = 0
        self._num_segments: int = 0
        self._num_synapses: int = 0
        self.tm_iteration: int = 0
        self.cell_active_duty_cycles = np.zeros(self.num_cells, dtype=np.float64)

        # Temporal state carried between compute cycles
        self.active_cells = np.empty(0, dtype=np.int64)
        self.winner_cells = np.empty(0, dtype=np.int64)
        self.predictive_cells = np.empty(0, dtype=np.int64)
        self.active_segments: List[int] = []
        self.matching_segments: List[int] = []
        self.num_active_potential = np.zeros(0, dtype=np.int64)

    def __repr__(self) -> str:
        return (
            f"Connections(columns={self.num_columns}, cells={self.num_cells}, "
            f"segments={self._num_segments}, synapses={self._num_synapses})"
        )

    # ----- Index mapping -----

    def cell_index(self, column: int, offset: int) -> int:
        if not 0 <= offset < self.cells_per_column:
            raise ValueError(f"Cell offset {offset} outside [0, {self.cells_per_column}).")
        return int(column) * self.cells_per_column + int(offset)

    def column_for_cell(self, cell: int) -> int:
        return int(cell) // self.cells_per_column

    def cells_for_column(self, column: int) -> np.ndarray:
        start = int(column) * self.cells_per_column
        return np.arange(start, start + self.cells_per_column, dtype=np.int64)

    def column_for_segment(self, segment: int) -> int:
        return self.column_for_cell(self.segment(segment).cell)

    # ----- Proximal dendrites -----

    def proximal_dendrite(self, column: int) -> ProximalDendrite:
        return self.proximal_dendrites[column]

    def pool(self, column: int) -> Pool:
        pool = self.proximal_dendrites[column].pool
        if pool is None:
            raise ValueError(f"Column {column} has no potential pool; run SpatialPooler.init first.")
        return pool

    def set_pool(self, column: int, input_indices: Iterable[int], permanences: Iterable[float]) -> None:
        """Attach a potential pool to `column` and refresh its connected row."""
        indices = np.asarray(list(input_indices), dtype=np.int64)
        pool = Pool(indices, np.zeros(indices.size, dtype=np.float64))
        self.proximal_dendrites[column].pool = pool
        dense = np.zeros(self.num_inputs, dtype=np.float64)
        dense[indices] = np.asarray(list(permanences), dtype=np.float64)
        self.set_proximal_permanences(column, dense)

    def proximal_permanences(self, column: int) -> np.ndarray:
        """Dense permanence vector of `column` over the whole input space."""
        return self.pool(column).dense_permanences(self.num_inputs)

    def set_proximal_permanences(self, column: int, permanences: np.ndarray) -> None:
        """Write a dense permanence vector into the pool of `column`.

        Entries outside the pool are ignored. Values are clipped to [0, 1] and
        only this column's row of the connected matrix is recomputed.
        """
        pool = self.pool(column)
        permanences = np.asarray(permanences, dtype=np.float64)
        if permanences.shape != (self.num_inputs,):
            raise ValueError(
                f"Permanence vector length {permanences.size} != number of inputs {self.num_inputs}."
            )
        pool.permanences = np.clip(permanences[pool.input_indices], 0.0, 1.0)
        row = self._connected_matrix[column]
        row[:] = False
        row[pool.connected_inputs(self.parameters.syn_perm_connected)] = True
        self.connected_counts[column] = int(row.sum())

    @property
    def connected_matrix(self) -> np.ndarray:
        """Read-only (columns x inputs) view of connected proximal synapses."""
        view = self._connected_matrix.view()
        view.setflags(write=False)
        return view

    # ----- Distal segments -----

    def segment(self, segment: int) -> DistalDendrite:
        found = self._segments[segment] if 0 <= segment < len(self._segments) else None
        if found is None:
            raise KeyError(f"Segment {segment} does not exist.")
        return found

    def segment_flat_list_length(self) -> int:
        """Upper bound (exclusive) on segment indices; sizes activity arrays."""
        return len(self._segments)

    def segments_for_cell(self, cell: int) -> List[int]:
        return list(self._segments_for_cell.get(int(cell), ()))

    def segments_for_column(self, column: int) -> List[int]:
        segments: List[int] = []
        for cell in self.cells_for_column(column):
            segments.extend(self._segments_for_cell.get(int(cell), ()))
        return segments

    def create_segment(self, cell: int) -> int:
        """Create a distal segment on `cell`, evicting its least recently used one at the cap."""
        cell = int(cell)
        if not 0 <= cell < self.num_cells:
            raise ValueError(f"Cell {cell} outside [0, {self.num_cells}).")
        owned = self._segments_for_cell.setdefault(cell, [])
        while len(owned) >= self.parameters.max_segments_per_cell:
            victim = min(owned, key=lambda s: (self._segments[s].last_used_iteration, self._segments[s].ordinal))
            logger.debug("Cell %d at segment capacity, evicting segment %d", cell, victim)
            self.destroy_segment(victim)
        owned = self._segments_for_cell.setdefault(cell, [])

        if self._free_segment_idxs:
            index = self._free_segment_idxs.pop()
        else:
            index = len(self._segments)
            self._segments.append(None)
        self._segments[index] = DistalDendrite(index, cell, self._next_segment_ordinal, self.tm_iteration)
        self._next_segment_ordinal += 1
        owned.append(index)
        self._num_segments += 1
        return index

    def destroy_segment(self, segment: int) -> None:
        seg = self.segment(segment)
        for syn_idx in seg.synapses:
            self._remove_synapse_from_lookups(self._synapses[syn_idx])
        seg.synapses = []
        owned = self._segments_for_cell[seg.cell]
        owned.remove(segment)
        if not owned:
            del self._segments_for_cell[seg.cell]
        self._segments[segment] = None
        self._free_segment_idxs.append(segment)
        self._num_segments -= 1

    def record_segment_activity(self, segment: int) -> None:
        self.segment(segment).last_used_iteration = self.tm_iteration

    def start_new_iteration(self) -> None:
        self.tm_iteration += 1

    # ----- Distal synapses -----

    def synapse(self, synapse: int) -> Synapse:
        found = self._synapses[synapse] if 0 <= synapse < len(self._synapses) else None
        if found is None:
            raise KeyError(f"Synapse {synapse} does not exist.")
        return found

    def synapses_for_segment(self, segment: int) -> List[int]:
        return list(self.segment(segment).synapses)

    def presynaptic_synapses(self, cell: int) -> List[int]:
        return sorted(self._receptor_synapses.get(int(cell), ()))

    def create_synapse(self, segment: int, presynaptic_cell: int, permanence: float) -> int:
        """Connect `segment` to `presynaptic_cell`, evicting the weakest synapse at the cap."""
        seg = self.segment(segment)
        while len(seg.synapses) >= self.parameters.max_synapses_per_segment:
            weakest = min(seg.synapses, key=lambda s: (self._synapses[s].permanence, self._synapses[s].ordinal))
            logger.debug("Segment %d at synapse capacity, evicting synapse %d", segment, weakest)
            self.destroy_synapse(weakest, destroy_empty_segment=False)

        if self._free_synapse_idxs:
            index = self._free_synapse_idxs.pop()
        else:
            index = len(self._synapses)
            self._synapses.append(None)
        permanence = float(min(1.0, max(0.0, permanence)))
        synapse = Synapse(index, segment, int(presynaptic_cell), permanence, self._next_synapse_ordinal)
        self._next_synapse_ordinal += 1
        self._synapses[index] = synapse
        seg.synapses.append(index)
        if permanence >= self.parameters.connected_permanence:
            seg.num_connected += 1
        self._receptor_synapses.setdefault(synapse.presynaptic, set()).add(index)
        self._num_synapses += 1
        return index

    def destroy_synapse(self, synapse: int, destroy_empty_segment: bool = True) -> None:
        """Remove a synapse; its segment goes too once it has no synapses left."""
        syn = self.synapse(synapse)
        seg = self.segment(syn.segment)
        seg.synapses.remove(synapse)
        self._remove_synapse_from_lookups(syn)
        if destroy_empty_segment and not seg.synapses:
            self.destroy_segment(seg.index)

    def update_synapse_permanence(self, synapse: int, permanence: float) -> None:
        syn = self.synapse(synapse)
        threshold = self.parameters.connected_permanence
        permanence = float(min(1.0, max(0.0, permanence)))
        was_connected = syn.permanence >= threshold
        is_connected = permanence >= threshold
        syn.permanence = permanence
        if was_connected != is_connected:
            self._segments[syn.segment].num_connected += 1 if is_connected else -1

    def _remove_synapse_from_lookups(self, syn: Synapse) -> None:
        receptors = self._receptor_synapses[syn.presynaptic]
        receptors.discard(syn.index)
        if not receptors:
            del self._receptor_synapses[syn.presynaptic]
        if syn.permanence >= self.parameters.connected_permanence:
            self._segments[syn.segment].num_connected -= 1
        self._synapses[syn.index] = None
        self._free_synapse_idxs.append(syn.index)
        self._num_synapses -= 1

    def num_segments(self, cell: Optional[int] = None) -> int:
        if cell is None:
            return self._num_segments
        return len(self._segments_for_cell.get(int(cell), ()))

    def num_synapses(self, segment: Optional[int] = None) -> int:
        if segment is None:
            return self._num_synapses
        return len(self.segment(segment).synapses)

    def iter_segments(self) -> Iterable[DistalDendrite]:
        return (seg for seg in self._segments if seg is not None)

    def iter_synapses(self) -> Iterable[Synapse]:
        return (syn for syn in self._synapses if syn is not None)

    def compute_activity(self, active_cells: Iterable[int], connected_permanence: float) -> SegmentActivity:
        """Count, per segment, synapses onto `active_cells` (connected and potential)."""
        size = self.segment_flat_list_length()
        num_connected = np.zeros(size, dtype=np.int64)
        num_potential = np.zeros(size, dtype=np.int64)
        for cell in active_cells:
            for syn_idx in self._receptor_synapses.get(int(cell), ()):
                syn = self._synapses[syn_idx]
                num_potential[syn.segment] += 1
                if syn.permanence >= connected_permanence:
                    num_connected[syn.segment] += 1
        return SegmentActivity(num_connected, num_potential)

    def clear_temporal_state(self) -> None:
        self.active_cells = np.empty(0, dtype=np.int64)
        self.winner_cells = np.empty(0, dtype=np.int64)
        self.predictive_cells = np.empty(0, dtype=np.int64)
        self.active_segments = []
        self.matching_segments = []
        self.num_active_potential = np.zeros(0, dtype=np.int64)

    # ----- Snapshot -----

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the complete state, restorable with `Connections.restore`."""
        state = {name: value for name, value in self.__dict__.items()}
        return {"version": SNAPSHOT_VERSION, "state": copy.deepcopy(state)}

    @classmethod
    def restore(cls, snapshot: Dict[str, Any]) -> "Connections":
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version {snapshot.get('version')!r}.")
        connections = cls.__new__(cls)
        connections.__dict__.update(copy.deepcopy(snapshot["state"]))
        return connections
