"""
Single-molecule segmentation.

Turns one read's ordered ScoredPosition sequence into maximal same-state
runs (MoleculeSegment), in four passes:

1. Breaks: consecutive scored positions further apart than max_gap (bases
   or positions), and optionally any unscored position between them, split
   the read into independent blocks. Breaks do not depend on state.
2. Calls: accessible iff LLR >= 0, optionally smoothed by a centred
   majority vote within each block (ties keep the raw call).
3. Runs: a left-to-right state machine opens, extends and closes runs.
4. Short runs: runs below min_segment_length are dropped or merged into a
   neighbour in the same block, then same-state neighbours are coalesced.

Unscored positions never become segment members. With the default
unscored_breaks_runs=False they neither join nor close a run, so an
unscored position can still lie inside a segment's [start, end] range.
unscored_breaks_runs=True (--unscored-breaks-runs) makes each of them a
break, which guarantees that no segment range covers an unscored position.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from smaccess.core.config import PipelineConfig
from smaccess.core.errors import ReadProcessingError
from smaccess.core.records import ACCESSIBLE, INACCESSIBLE, MoleculeSegment, ScoredRead


# Run-detection states
NO_ACTIVE_RUN = 'no_active_run'
SCANNING_ACCESSIBLE = 'scanning_accessible'
SCANNING_INACCESSIBLE = 'scanning_inaccessible'

_SCANNING = {ACCESSIBLE: SCANNING_ACCESSIBLE, INACCESSIBLE: SCANNING_INACCESSIBLE}


@dataclass
class _Run:
    state: str
    block: int
    members: List[int] = field(default_factory=list)  # indices into the scored arrays

    def __len__(self):
        return len(self.members)


def check_order(read: ScoredRead):
    """Raise ReadProcessingError unless positions strictly increase."""
    positions = [p.reference_position for p in read.positions]
    for prev, cur in zip(positions, positions[1:]):
        if cur <= prev:
            raise ReadProcessingError(
                f"read {read.read_id}: positions not strictly increasing ({prev} then {cur})")


def call_states(llrs: Sequence[float]) -> np.ndarray:
    """Boolean array, True where the position is called accessible."""
    return np.asarray(llrs, dtype=float) >= 0


def assign_blocks(ref_positions: Sequence[int], input_indices: Sequence[int],
                  max_gap: int, gap_unit: str = 'bases',
                  unscored_breaks_runs: bool = False) -> np.ndarray:
    """
    Block id for each scored position; a new block starts after every break.

    Args:
        ref_positions: Reference positions of the scored positions
        input_indices: Index of each scored position within the read's full
            position list (unscored included)
        max_gap: Largest gap that keeps a run open
        gap_unit: 'bases' (next - prev - 1) or 'positions' (read positions
            strictly between the two)
        unscored_breaks_runs: Also break wherever an unscored position lies
            between two scored ones
    """
    n = len(ref_positions)
    blocks = np.zeros(n, dtype=int)
    for i in range(1, n):
        if gap_unit == 'bases':
            gap = ref_positions[i] - ref_positions[i - 1] - 1
        else:
            gap = input_indices[i] - input_indices[i - 1] - 1
        has_unscored = input_indices[i] - input_indices[i - 1] > 1
        brk = gap > max_gap or (unscored_breaks_runs and has_unscored)
        blocks[i] = blocks[i - 1] + (1 if brk else 0)
    return blocks


def smooth_calls(calls: np.ndarray, blocks: np.ndarray, window: int) -> np.ndarray:
    """Centred majority vote within each block; windows are cut at block edges."""
    if window <= 1 or len(calls) == 0:
        return calls.copy()
    half = window // 2
    smoothed = calls.copy()
    n = len(calls)
    start = 0
    while start < n:
        end = start
        while end + 1 < n and blocks[end + 1] == blocks[start]:
            end += 1
        for j in range(start, end + 1):
            lo = max(start, j - half)
            hi = min(end, j + half)
            n_acc = int(np.sum(calls[lo:hi + 1]))
            n_inacc = (hi - lo + 1) - n_acc
            if n_acc > n_inacc:
                smoothed[j] = True
            elif n_inacc > n_acc:
                smoothed[j] = False
        start = end + 1
    return smoothed


def detect_runs(calls: np.ndarray, blocks: np.ndarray) -> List[_Run]:
    """Left-to-right run detection over (call, block) pairs."""
    runs = []
    scan_state = NO_ACTIVE_RUN
    current: Optional[_Run] = None

    for i in range(len(calls)):
        state = ACCESSIBLE if calls[i] else INACCESSIBLE
        if scan_state == NO_ACTIVE_RUN:
            current = _Run(state, int(blocks[i]), [i])
        elif blocks[i] != current.block or _SCANNING[state] != scan_state:
            runs.append(current)
            current = _Run(state, int(blocks[i]), [i])
        else:
            current.members.append(i)
        scan_state = _SCANNING[state]

    # End of read flushes the open run
    if current is not None:
        runs.append(current)
    return runs


def coalesce_runs(runs: List[_Run]) -> List[_Run]:
    """Join neighbouring runs that share block and state."""
    out: List[_Run] = []
    for run in runs:
        if out and out[-1].block == run.block and out[-1].state == run.state:
            out[-1].members.extend(run.members)
        else:
            out.append(_Run(run.state, run.block, list(run.members)))
    return out


def drop_short_runs(runs: List[_Run], min_length: int) -> List[_Run]:
    return coalesce_runs([r for r in runs if len(r) >= min_length])


def merge_short_runs(runs: List[_Run], min_length: int) -> List[_Run]:
    """
    Fold short runs into a neighbour until none remain.

    The shortest short run goes first (leftmost on ties) and joins its larger
    neighbour in the same block (the preceding one on ties). A short run with
    no neighbour in its block is dropped.
    """
    runs = coalesce_runs(runs)
    while True:
        short = [i for i, r in enumerate(runs) if len(r) < min_length]
        if not short:
            return runs
        idx = min(short, key=lambda i: (len(runs[i]), i))
        run = runs[idx]

        prev_run = runs[idx - 1] if idx > 0 and runs[idx - 1].block == run.block else None
        next_run = runs[idx + 1] if idx + 1 < len(runs) and runs[idx + 1].block == run.block else None

        if prev_run is None and next_run is None:
            del runs[idx]
            continue
        if next_run is None or (prev_run is not None and len(prev_run) >= len(next_run)):
            target = prev_run
        else:
            target = next_run
        target.members = sorted(target.members + run.members)
        del runs[idx]
        runs = coalesce_runs(runs)


class MoleculeSegmenter:
    """Segments scored reads according to a PipelineConfig."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = (config or PipelineConfig()).validate()

    def segment(self, read: ScoredRead) -> List[MoleculeSegment]:
        """
        Segment one read. Empty or fully unscored reads give [].

        Raises:
            ReadProcessingError: positions are not strictly increasing
        """
        check_order(read)
        cfg = self.config

        input_indices = [i for i, p in enumerate(read.positions) if p.is_scored]
        if not input_indices:
            return []
        scored = [read.positions[i] for i in input_indices]
        ref_positions = [p.reference_position for p in scored]
        llrs = np.array([p.log_likelihood_ratio for p in scored], dtype=float)

        blocks = assign_blocks(ref_positions, input_indices, cfg.max_gap,
                               cfg.gap_unit, cfg.unscored_breaks_runs)
        calls = smooth_calls(call_states(llrs), blocks, cfg.smoothing_window)
        runs = detect_runs(calls, blocks)

        if cfg.min_segment_length > 1:
            if cfg.short_segment_policy == 'drop':
                runs = drop_short_runs(runs, cfg.min_segment_length)
            else:
                runs = merge_short_runs(runs, cfg.min_segment_length)

        segments = []
        for run in runs:
            members = sorted(run.members)
            segments.append(MoleculeSegment(
                read_id=read.read_id,
                contig=read.contig,
                start_position=ref_positions[members[0]],
                end_position=ref_positions[members[-1]],
                state=run.state,
                mean_score=float(np.mean(llrs[members])),
                n_positions=len(members),
                strand=read.strand,
                member_positions=tuple(ref_positions[m] for m in members),
            ))
        return segments


def segment_read(read: ScoredRead, config: Optional[PipelineConfig] = None) -> List[MoleculeSegment]:
    """Segment one scored read (see MoleculeSegmenter.segment)."""
    return MoleculeSegmenter(config).segment(read)
