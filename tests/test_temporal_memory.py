import sys
import pathlib
import unittest

import numpy as np
import pytest

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent / "src"))
from htm_cla.connections import Connections
from htm_cla.parameters import Parameters
from htm_cla.temporal_memory import TemporalMemory

A = [0, 1, 2]
B = [3, 4, 5]
C = [6, 7, 8]


def make_tm(**overrides):
    settings = dict(
        input_dimensions=(32,),
        column_dimensions=(32,),
        cells_per_column=4,
        activation_threshold=3,
        min_threshold=2,
        max_new_synapse_count=4,
        initial_permanence=0.21,
        connected_permanence=0.5,
        permanence_increment=0.1,
        permanence_decrement=0.1,
        predicted_segment_decrement=0.0,
        seed=42,
    )
    settings.update(overrides)
    return TemporalMemory(), Connections(Parameters(**settings))


def train(tm, connections, sequence, repetitions):
    for _ in range(repetitions):
        tm.reset(connections)
        for columns in sequence:
            tm.compute(connections, columns, learn=True)


def all_permanences(connections):
    return {syn.index: syn.permanence for syn in connections.iter_synapses()}


def test_unpredicted_columns_burst():
    tm, connections = make_tm()
    cycle = tm.compute(connections, A)
    assert cycle.active_cells.tolist() == list(range(12))
    assert cycle.bursting_columns.tolist() == A
    assert cycle.predicted_active_columns.size == 0
    assert len(cycle.winner_cells) == 3
    assert sorted({connections.column_for_cell(c) for c in cycle.winner_cells}) == A
    # No previous winners, nothing to learn from.
    assert connections.num_segments() == 0


def test_bursting_grows_one_segment_on_the_winner():
    tm, connections = make_tm()
    first = tm.compute(connections, A)
    second = tm.compute(connections, [3])

    assert connections.num_segments() == 1
    (segment,) = connections.segments_for_column(3)
    assert connections.segment(segment).cell == second.winner_cells[0]
    presynaptic = {connections.synapse(s).presynaptic for s in connections.synapses_for_segment(segment)}
    assert presynaptic == set(first.winner_cells.tolist())
    for s in connections.synapses_for_segment(segment):
        assert connections.synapse(s).permanence == pytest.approx(0.21)


def test_one_segment_per_bursting_column():
    tm, connections = make_tm()
    tm.compute(connections, A)
    cycle = tm.compute(connections, B)
    assert connections.num_segments() == 3
    for column, winner in zip(B, cycle.winner_cells):
        (segment,) = connections.segments_for_column(column)
        assert connections.segment(segment).cell == winner


def test_learned_transition_is_predicted():
    tm, connections = make_tm()
    train(tm, connections, [A, B], repetitions=5)

    tm.reset(connections)
    cycle = tm.compute(connections, A, learn=False)
    assert cycle.predicted_columns(4).tolist() == B

    cycle = tm.compute(connections, B, learn=False)
    assert cycle.bursting_columns.size == 0
    assert cycle.predicted_active_columns.tolist() == B
    assert len(cycle.active_cells) == len(B)


def test_inference_does_not_change_segments():
    tm, connections = make_tm()
    train(tm, connections, [A, B, C], repetitions=3)
    permanences = all_permanences(connections)
    num_segments = connections.num_segments()
    duty = connections.cell_active_duty_cycles.copy()
    iteration = connections.tm_iteration

    tm.reset(connections)
    for columns in (A, B, C, [20, 21], [30]):
        tm.compute(connections, columns, learn=False)

    assert all_permanences(connections) == permanences
    assert connections.num_segments() == num_segments
    assert connections.tm_iteration == iteration
    np.testing.assert_array_equal(connections.cell_active_duty_cycles, duty)


def test_wrong_predictions_are_punished():
    tm, connections = make_tm(predicted_segment_decrement=0.05)
    train(tm, connections, [A, B], repetitions=5)

    tm.reset(connections)
    tm.compute(connections, A)
    segments_b = [s for column in B for s in connections.segments_for_column(column)]
    before = {
        s: connections.synapse(s).permanence
        for segment in segments_b
        for s in connections.synapses_for_segment(segment)
    }

    tm.compute(connections, C)

    for synapse, permanence in before.items():
        assert connections.synapse(synapse).permanence == pytest.approx(permanence - 0.05)


def test_fully_punished_segment_is_destroyed():
    tm, connections = make_tm(predicted_segment_decrement=1.0)
    train(tm, connections, [A, [3]], repetitions=1)
    assert connections.num_segments() == 1

    tm.reset(connections)
    tm.compute(connections, A)
    tm.compute(connections, [6])

    assert connections.segments_for_column(3) == []
    assert len(connections.segments_for_column(6)) == 1
    assert connections.num_segments() == 1


def test_reset_clears_temporal_state():
    tm, connections = make_tm()
    train(tm, connections, [A, B], repetitions=5)
    tm.reset(connections)
    tm.compute(connections, A, learn=False)
    assert connections.predictive_cells.size > 0

    tm.reset(connections)
    assert connections.active_cells.size == 0
    assert connections.winner_cells.size == 0
    assert connections.predictive_cells.size == 0
    assert connections.active_segments == []
    assert connections.matching_segments == []

    cycle = tm.compute(connections, B, learn=False)
    assert cycle.bursting_columns.tolist() == B


@pytest.mark.parametrize("columns", [[0, 32], [-1], [0.5, 1.5]])
def test_invalid_columns_raise_without_changes(columns):
    tm, connections = make_tm()
    tm.compute(connections, A)
    active = connections.active_cells.copy()
    with pytest.raises(ValueError):
        tm.compute(connections, columns)
    np.testing.assert_array_equal(connections.active_cells, active)


def test_duplicate_and_unsorted_columns_are_normalised():
    tm, connections = make_tm()
    cycle = tm.compute(connections, [2, 0, 2, 1])
    assert cycle.bursting_columns.tolist() == A


def test_empty_input_is_allowed():
    tm, connections = make_tm()
    cycle = tm.compute(connections, [])
    assert cycle.active_cells.size == 0
    assert cycle.predictive_cells.size == 0


def test_segment_cap_evicts_least_recently_used():
    tm, connections = make_tm(cells_per_column=1, max_segments_per_cell=1, min_threshold=1, activation_threshold=1)
    tm.compute(connections, [0])
    tm.compute(connections, [1])
    assert connections.num_segments(1) == 1

    tm.reset(connections)
    tm.compute(connections, [2])
    tm.compute(connections, [1])

    (segment,) = connections.segments_for_cell(1)
    presynaptic = [connections.synapse(s).presynaptic for s in connections.synapses_for_segment(segment)]
    assert presynaptic == [2]


def test_synapse_cap_is_respected():
    tm, connections = make_tm(max_synapses_per_segment=2)
    tm.compute(connections, A)
    tm.compute(connections, [3])
    (segment,) = connections.segments_for_column(3)
    assert connections.num_synapses(segment) == 2


def test_cell_duty_cycles_track_activity():
    tm, connections = make_tm()
    cycle = tm.compute(connections, A)
    expected = np.zeros(connections.num_cells)
    expected[cycle.active_cells] = 1.0
    np.testing.assert_array_equal(connections.cell_active_duty_cycles, expected)


class TestCellSelection(unittest.TestCase):

    def setUp(self):
        self.tm, self.connections = make_tm()

    def test_least_used_cell_has_fewest_segments(self):
        """Cells 0-2 of column 0 own segments, so cell 3 must be chosen."""
        for cell in (0, 1, 2):
            self.connections.create_segment(cell)
        for _ in range(10):
            self.assertEqual(self.tm.least_used_cell(self.connections, 0), 3)

    def test_best_matching_segment_prefers_most_active_then_first(self):
        scores = np.array([2, 4, 4, 1])
        self.assertEqual(self.tm.best_matching_segment([0, 1, 2, 3], scores), 1)
        self.assertIsNone(self.tm.best_matching_segment([], scores))

    def test_determinism_with_equal_seeds(self):
        """Two models with the same seed and inputs produce identical outputs."""
        other_tm, other = make_tm()
        rng = np.random.default_rng(9)
        for _ in range(30):
            columns = rng.choice(32, size=4, replace=False)
            mine = self.tm.compute(self.connections, columns)
            theirs = other_tm.compute(other, columns)
            np.testing.assert_array_equal(mine.active_cells, theirs.active_cells)
            np.testing.assert_array_equal(mine.winner_cells, theirs.winner_cells)
            np.testing.assert_array_equal(mine.predictive_cells, theirs.predictive_cells)
        self.assertEqual(self.connections.num_synapses(), other.num_synapses())
