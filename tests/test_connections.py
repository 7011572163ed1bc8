import sys
import pathlib
import unittest

import numpy as np
import pytest

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent / "src"))
from htm_cla.connections import Connections, DistalDendrite, ProximalDendrite
from htm_cla.parameters import Parameters


def small_connections(**overrides):
    settings = dict(input_dimensions=(16,), column_dimensions=(8,), cells_per_column=4)
    settings.update(overrides)
    return Connections(Parameters(**settings))


def test_cell_index_round_trip():
    connections = small_connections()
    seen = set()
    for column in range(connections.num_columns):
        for offset in range(connections.cells_per_column):
            cell = connections.cell_index(column, offset)
            assert connections.column_for_cell(cell) == column
            assert cell in connections.cells_for_column(column)
            seen.add(cell)
    assert seen == set(range(connections.num_cells))


def test_cell_index_rejects_bad_offset():
    connections = small_connections()
    with pytest.raises(ValueError):
        connections.cell_index(0, 4)


def test_segment_and_synapse_lookups():
    connections = small_connections()
    segment = connections.create_segment(5)
    synapse = connections.create_synapse(segment, 12, 0.3)

    assert isinstance(connections.segment(segment), DistalDendrite)
    assert connections.segments_for_cell(5) == [segment]
    assert connections.segments_for_column(1) == [segment]
    assert connections.column_for_segment(segment) == 1
    assert connections.synapses_for_segment(segment) == [synapse]
    assert connections.presynaptic_synapses(12) == [synapse]
    assert connections.synapse(synapse).presynaptic == 12
    assert connections.num_segments() == 1
    assert connections.num_synapses() == 1


def test_destroying_last_synapse_destroys_segment():
    connections = small_connections()
    segment = connections.create_segment(5)
    synapse = connections.create_synapse(segment, 12, 0.3)

    connections.destroy_synapse(synapse)

    assert connections.num_segments() == 0
    assert connections.num_synapses() == 0
    assert connections.segments_for_cell(5) == []
    assert connections.presynaptic_synapses(12) == []
    with pytest.raises(KeyError):
        connections.segment(segment)


def test_destroyed_indices_are_reused():
    connections = small_connections()
    first = connections.create_segment(0)
    connections.create_segment(1)
    connections.destroy_segment(first)
    assert connections.create_segment(2) == first


def test_least_recently_used_segment_is_evicted_at_capacity():
    connections = small_connections(max_segments_per_cell=2)
    kept = connections.create_segment(0)
    connections.start_new_iteration()
    connections.create_segment(0)
    connections.start_new_iteration()
    connections.record_segment_activity(kept)

    newest = connections.create_segment(0)

    assert connections.num_segments(0) == 2
    assert connections.segments_for_cell(0) == [kept, newest]
    assert connections.segment(kept).ordinal == 0
    assert connections.segment(newest).ordinal == 2


def test_eviction_at_capacity_one_keeps_the_new_segment_indexed():
    connections = small_connections(max_segments_per_cell=1)
    old = connections.create_segment(0)
    connections.start_new_iteration()
    new = connections.create_segment(0)

    assert connections.segments_for_cell(0) == [new]
    assert connections.segments_for_column(0) == [new]
    assert connections.num_segments(0) == connections.num_segments() == 1
    # The evicted slot is reused for the new segment.
    assert new == old
    assert connections.segment(new).ordinal == 1

    synapse = connections.create_synapse(new, 9, 0.3)
    connections.destroy_synapse(synapse)
    assert connections.num_segments() == 0
    assert connections.segments_for_cell(0) == []


def test_weakest_synapse_is_evicted_at_capacity():
    connections = small_connections(max_synapses_per_segment=3)
    segment = connections.create_segment(0)
    connections.create_synapse(segment, 10, 0.3)
    connections.create_synapse(segment, 11, 0.1)
    connections.create_synapse(segment, 12, 0.5)

    connections.create_synapse(segment, 13, 0.2)

    assert connections.num_synapses(segment) == 3
    presynaptic = sorted(connections.synapse(s).presynaptic for s in connections.synapses_for_segment(segment))
    assert presynaptic == [10, 12, 13]
    assert connections.presynaptic_synapses(11) == []


def test_permanence_updates_are_clipped_and_tracked():
    connections = small_connections(connected_permanence=0.5)
    segment = connections.create_segment(0)
    synapse = connections.create_synapse(segment, 10, 0.3)
    assert connections.segment(segment).num_connected == 0

    connections.update_synapse_permanence(synapse, 0.6)
    assert connections.segment(segment).num_connected == 1

    connections.update_synapse_permanence(synapse, 1.7)
    assert connections.synapse(synapse).permanence == 1.0
    assert connections.segment(segment).num_connected == 1

    connections.update_synapse_permanence(synapse, -0.2)
    assert connections.synapse(synapse).permanence == 0.0
    assert connections.segment(segment).num_connected == 0


def test_compute_activity_counts_connected_and_potential():
    connections = small_connections(connected_permanence=0.5)
    segment = connections.create_segment(0)
    other = connections.create_segment(20)
    connections.create_synapse(segment, 1, 0.6)
    connections.create_synapse(segment, 2, 0.3)
    connections.create_synapse(segment, 3, 0.6)
    connections.create_synapse(other, 3, 0.9)

    activity = connections.compute_activity([1, 2], 0.5)

    assert activity.num_active_connected[segment] == 1
    assert activity.num_active_potential[segment] == 2
    assert activity.num_active_connected[other] == 0
    assert activity.num_active_potential[other] == 0


def test_clear_temporal_state():
    connections = small_connections()
    connections.active_cells = np.array([1, 2])
    connections.active_segments = [0]
    connections.clear_temporal_state()
    assert connections.active_cells.size == 0
    assert connections.winner_cells.size == 0
    assert connections.predictive_cells.size == 0
    assert connections.active_segments == []
    assert connections.matching_segments == []


class TestProximalPools(unittest.TestCase):

    def setUp(self):
        self.connections = small_connections(syn_perm_connected=0.1)
        self.connections.set_pool(0, [1, 3, 5], [0.05, 0.2, 1.5])

    def test_connected_row_follows_permanences(self):
        """Only pool entries at or above the threshold count as connected."""
        self.assertEqual(self.connections.connected_counts[0], 2)
        self.assertEqual(np.flatnonzero(self.connections.connected_matrix[0]).tolist(), [3, 5])
        self.assertEqual(self.connections.pool(0).permanences.tolist(), [0.05, 0.2, 1.0])

    def test_set_permanences_ignores_inputs_outside_pool(self):
        """Dense writes only touch the pool and only this column's row."""
        dense = np.full(16, 0.5)
        self.connections.set_proximal_permanences(0, dense)
        self.assertEqual(self.connections.connected_counts[0], 3)
        self.assertEqual(self.connections.proximal_permanences(0)[0], 0.0)
        self.assertEqual(self.connections.connected_counts[1], 0)

    def test_wrong_length_is_rejected(self):
        with self.assertRaises(ValueError):
            self.connections.set_proximal_permanences(0, np.zeros(5))

    def test_missing_pool_is_reported(self):
        with self.assertRaises(ValueError):
            self.connections.pool(1)

    def test_connected_matrix_is_read_only(self):
        with self.assertRaises(ValueError):
            self.connections.connected_matrix[0, 0] = True

    def test_proximal_dendrite_synapses(self):
        dendrite = self.connections.proximal_dendrite(0)
        self.assertIsInstance(dendrite, ProximalDendrite)
        self.assertEqual(dendrite.column, 0)
        self.assertEqual([s.presynaptic for s in dendrite.synapses], [1, 3, 5])


class TestSnapshot(unittest.TestCase):

    def test_restore_is_independent_of_original(self):
        """Changes after the snapshot do not leak into the restored copy."""
        connections = small_connections()
        segment = connections.create_segment(3)
        connections.create_synapse(segment, 7, 0.4)
        snapshot = connections.snapshot()

        connections.create_segment(4)
        restored = Connections.restore(snapshot)

        self.assertEqual(restored.num_segments(), 1)
        self.assertEqual(restored.num_synapses(), 1)
        self.assertEqual(restored.synapse(0).permanence, 0.4)
        self.assertEqual(connections.num_segments(), 2)

    def test_random_state_is_restored(self):
        connections = small_connections()
        connections.random.random()
        snapshot = connections.snapshot()
        expected = connections.random.random(5)
        restored = Connections.restore(snapshot)
        np.testing.assert_array_equal(restored.random.random(5), expected)

    def test_unknown_version_is_rejected(self):
        snapshot = small_connections().snapshot()
        snapshot["version"] = 99
        with self.assertRaises(ValueError):
            Connections.restore(snapshot)

    def test_neighborhood_cache_is_left_out(self):
        connections = small_connections()
        connections.column_topology.neighborhood(2, 1)
        restored = Connections.restore(connections.snapshot())
        self.assertEqual(restored.column_topology._neighborhoods, {})
        self.assertEqual(restored.column_topology.neighborhood(2, 1).tolist(), [1, 2, 3])
