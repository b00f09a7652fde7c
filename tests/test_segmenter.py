"""
Tests for smaccess.inference.segmenter.
"""
import numpy as np
import pytest

from conftest import make_scored_read
from smaccess.core.config import PipelineConfig
from smaccess.core.errors import ReadProcessingError
from smaccess.core.records import ACCESSIBLE, INACCESSIBLE, ScoredRead
from smaccess.inference.segmenter import (
    assign_blocks, detect_runs, segment_read, smooth_calls,
)


def _summary(segments):
    return [(s.start_position, s.end_position, s.state) for s in segments]


class TestRunDetection:
    def test_reference_example(self):
        read = make_scored_read([(10, 2.1), (11, 1.8), (12, -0.5), (13, -1.2), (20, 0.9)])
        segments = segment_read(read, PipelineConfig(max_gap=3))
        assert _summary(segments) == [
            (10, 11, ACCESSIBLE),
            (12, 13, INACCESSIBLE),
            (20, 20, ACCESSIBLE),
        ]
        assert segments[0].mean_score == pytest.approx((2.1 + 1.8) / 2)
        assert segments[1].n_positions == 2

    def test_gap_closes_same_state_run(self):
        read = make_scored_read([(10, 1.0), (11, 1.0), (20, 1.0), (21, 1.0)])
        segments = segment_read(read, PipelineConfig(max_gap=3))
        assert _summary(segments) == [(10, 11, ACCESSIBLE), (20, 21, ACCESSIBLE)]

    def test_gap_within_tolerance_keeps_run(self):
        read = make_scored_read([(10, 1.0), (14, 1.0)])
        assert _summary(segment_read(read, PipelineConfig(max_gap=3))) == [(10, 14, ACCESSIBLE)]
        assert len(segment_read(read, PipelineConfig(max_gap=2))) == 2

    def test_gap_in_positions(self):
        read = make_scored_read([(10, 1.0), (11, None), (12, None), (500, 1.0)])
        config = PipelineConfig(max_gap=2, gap_unit='positions')
        assert _summary(segment_read(read, config)) == [(10, 500, ACCESSIBLE)]
        config = PipelineConfig(max_gap=1, gap_unit='positions')
        assert len(segment_read(read, config)) == 2

    def test_zero_llr_is_accessible(self):
        read = make_scored_read([(1, 0.0)])
        assert segment_read(read)[0].state == ACCESSIBLE

    def test_single_position_read(self):
        segments = segment_read(make_scored_read([(5, -3.0)]))
        assert _summary(segments) == [(5, 5, INACCESSIBLE)]
        assert segments[0].mean_score == -3.0

    def test_strand_and_ids_carried(self):
        read = make_scored_read([(1, 1.0)], read_id='abc', contig='chrX', strand='-')
        seg = segment_read(read)[0]
        assert (seg.read_id, seg.contig, seg.strand) == ('abc', 'chrX', '-')


class TestUnscoredPositions:
    def test_unscored_do_not_close_run_by_default(self):
        read = make_scored_read([(1, 1.0), (2, None), (3, 1.0)])
        segments = segment_read(read)
        assert _summary(segments) == [(1, 3, ACCESSIBLE)]
        assert segments[0].n_positions == 2
        assert segments[0].member_positions == (1, 3)

    def test_unscored_breaks_runs(self):
        read = make_scored_read([(1, 1.0), (2, None), (3, 1.0)])
        segments = segment_read(read, PipelineConfig(unscored_breaks_runs=True))
        assert _summary(segments) == [(1, 1, ACCESSIBLE), (3, 3, ACCESSIBLE)]

    def test_empty_and_fully_unscored_reads(self):
        assert segment_read(ScoredRead('r', 'chr1', '+', ())) == []
        assert segment_read(make_scored_read([(1, None), (2, None)])) == []

    def test_unordered_positions_rejected(self):
        read = make_scored_read([(5, 1.0), (3, 1.0)])
        with pytest.raises(ReadProcessingError):
            segment_read(read)

    def test_duplicate_positions_rejected(self):
        read = make_scored_read([(5, 1.0), (5, 1.0)])
        with pytest.raises(ReadProcessingError):
            segment_read(read)


class TestSmoothing:
    def test_single_flip_removed(self):
        read = make_scored_read([(1, 1.0), (2, 1.0), (3, -1.0), (4, 1.0), (5, 1.0)])
        segments = segment_read(read, PipelineConfig(smoothing_window=3))
        assert _summary(segments) == [(1, 5, ACCESSIBLE)]
        # Scores stay raw after smoothing
        assert segments[0].mean_score == pytest.approx(3.0 / 5)

    def test_no_smoothing_by_default(self):
        read = make_scored_read([(1, 1.0), (2, 1.0), (3, -1.0), (4, 1.0), (5, 1.0)])
        assert len(segment_read(read)) == 3

    def test_tie_at_block_edge_keeps_raw_call(self):
        calls = np.array([True, False, False])
        blocks = np.zeros(3, dtype=int)
        np.testing.assert_array_equal(smooth_calls(calls, blocks, 3), [True, False, False])

    def test_window_truncated_at_breaks(self):
        calls = np.array([True, True, False, True, True])
        blocks = np.array([0, 0, 1, 2, 2])
        np.testing.assert_array_equal(smooth_calls(calls, blocks, 3), calls)


class TestShortSegments:
    # calls: A A A I A A A
    PAIRS = [(1, 1.0), (2, 1.0), (3, 1.0), (4, -2.0), (5, 1.0), (6, 1.0), (7, 1.0)]

    def test_drop_then_coalesce(self):
        config = PipelineConfig(min_segment_length=2, short_segment_policy='drop')
        segments = segment_read(make_scored_read(self.PAIRS), config)
        assert _summary(segments) == [(1, 7, ACCESSIBLE)]
        assert segments[0].n_positions == 6
        assert 4 not in segments[0].member_positions
        assert segments[0].mean_score == pytest.approx(1.0)

    def test_merge_into_neighbour(self):
        config = PipelineConfig(min_segment_length=2, short_segment_policy='merge')
        segments = segment_read(make_scored_read(self.PAIRS), config)
        assert _summary(segments) == [(1, 7, ACCESSIBLE)]
        assert segments[0].n_positions == 7
        assert segments[0].mean_score == pytest.approx(4.0 / 7)

    def test_merge_order_shortest_leftmost_first(self):
        # runs: A(3) I(1) A(1) I(3); I(1) is folded first into the larger A(3)
        pairs = [(0, 1.0), (1, 1.0), (2, 1.0), (3, -1.0), (4, 1.0), (5, -1.0), (6, -1.0), (7, -1.0)]
        config = PipelineConfig(min_segment_length=2, short_segment_policy='merge')
        segments = segment_read(make_scored_read(pairs), config)
        assert _summary(segments) == [(0, 4, ACCESSIBLE), (5, 7, INACCESSIBLE)]
        assert segments[0].mean_score == pytest.approx(0.6)

    def test_drop_same_input(self):
        pairs = [(0, 1.0), (1, 1.0), (2, 1.0), (3, -1.0), (4, 1.0), (5, -1.0), (6, -1.0), (7, -1.0)]
        config = PipelineConfig(min_segment_length=2, short_segment_policy='drop')
        segments = segment_read(make_scored_read(pairs), config)
        assert _summary(segments) == [(0, 2, ACCESSIBLE), (5, 7, INACCESSIBLE)]

    def test_isolated_short_run_dropped_by_merge(self):
        pairs = [(0, 1.0), (1, 1.0), (100, -1.0)]
        config = PipelineConfig(max_gap=10, min_segment_length=2, short_segment_policy='merge')
        segments = segment_read(make_scored_read(pairs), config)
        assert _summary(segments) == [(0, 1, ACCESSIBLE)]

    def test_merge_stays_within_block(self):
        pairs = [(0, 1.0), (1, 1.0), (2, 1.0), (100, -1.0), (101, 1.0), (102, 1.0)]
        config = PipelineConfig(max_gap=10, min_segment_length=2, short_segment_policy='merge')
        segments = segment_read(make_scored_read(pairs), config)
        assert _summary(segments) == [(0, 2, ACCESSIBLE), (100, 102, ACCESSIBLE)]


class TestProperties:
    @pytest.fixture
    def random_reads(self):
        rng = np.random.default_rng(2024)
        reads = []
        for i in range(60):
            n = int(rng.integers(0, 40))
            positions = np.cumsum(rng.integers(1, 8, size=n))
            pairs = []
            for pos in positions:
                llr = None if rng.random() < 0.2 else float(rng.normal())
                pairs.append((int(pos), llr))
            reads.append(make_scored_read(pairs, read_id=f'r{i}'))
        return reads

    @pytest.mark.parametrize('options', [
        {},
        {'smoothing_window': 3},
        {'min_segment_length': 3, 'short_segment_policy': 'drop'},
        {'min_segment_length': 3, 'short_segment_policy': 'merge'},
        {'max_gap': 2, 'smoothing_window': 5, 'min_segment_length': 2},
        {'unscored_breaks_runs': True, 'min_segment_length': 2},
        {'gap_unit': 'positions', 'max_gap': 1},
    ])
    def test_invariants(self, random_reads, options):
        config = PipelineConfig(**options)
        for read in random_reads:
            segments = segment_read(read, config)
            unscored = {p.reference_position for p in read if not p.is_scored}
            for seg in segments:
                assert seg.end_position >= seg.start_position
                assert seg.n_positions == len(seg.member_positions)
                assert not unscored & set(seg.member_positions)
                if config.unscored_breaks_runs:
                    assert not any(seg.start_position <= u <= seg.end_position for u in unscored)
            for prev, cur in zip(segments, segments[1:]):
                assert prev.end_position < cur.start_position
                if prev.state == cur.state:
                    # Same-state neighbours must be separated by a break
                    assert not _no_break_between(read, prev, cur, config)

    def test_segments_are_pure_function(self, random_reads):
        config = PipelineConfig(smoothing_window=3, min_segment_length=2)
        for read in random_reads[:10]:
            assert segment_read(read, config) == segment_read(read, config)


def _no_break_between(read, prev, cur, config):
    scored = [p for p in read if p.is_scored]
    ref = [p.reference_position for p in scored]
    idx = [i for i, p in enumerate(read.positions) if p.is_scored]
    blocks = assign_blocks(ref, idx, config.max_gap, config.gap_unit, config.unscored_breaks_runs)
    block_of = dict(zip(ref, blocks))
    return block_of[prev.end_position] == block_of[cur.start_position]


def test_detect_runs_state_machine():
    calls = np.array([True, True, False, False, True])
    blocks = np.array([0, 0, 0, 1, 1])
    runs = detect_runs(calls, blocks)
    assert [(r.state, r.members) for r in runs] == [
        (ACCESSIBLE, [0, 1]),
        (INACCESSIBLE, [2]),
        (INACCESSIBLE, [3]),
        (ACCESSIBLE, [4]),
    ]
