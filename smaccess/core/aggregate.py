"""
Position aggregation.

Collapses raw per-event measurements into one summary per
(read, reference position). Re-segmentation of the raw signal can place
several events on the same base; they are merged by a reducer (default:
mean, dwell-weighted when every merged event has a dwell time).

Two entry points:
- aggregate(): buffers the whole stream, so events may arrive in any order
- iter_reads(): streams, assuming events of one read arrive together
  (eventalign output is grouped this way)

When the config names a region (region_contig, region_start, region_stop),
positions outside it are dropped before reduction and counted under
region_filtered_positions.
"""

import math
import warnings
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Union

import numpy as np

from smaccess.core.config import PipelineConfig
from smaccess.core.context import ReferenceContext
from smaccess.core.errors import DataQualityWarning
from smaccess.core.records import STRANDS, AggregatedPosition, AggregatedRead, RawEvent
from smaccess.core.stats import PipelineStats


Reducer = Callable[[np.ndarray, np.ndarray], float]


def mean_reducer(values: np.ndarray, weights: np.ndarray) -> float:
    return float(np.sum(values * weights) / np.sum(weights))


def median_reducer(values: np.ndarray, weights: np.ndarray) -> float:
    # weights here are integer event counts
    return float(np.median(np.repeat(values, weights.astype(int))))


def _event_problem(event: RawEvent, need_context: bool) -> Optional[str]:
    """Reason an event is unusable, or None if it is fine."""
    if not isinstance(event.read_id, str) or not event.read_id:
        return 'missing read id'
    if not isinstance(event.contig, str) or not event.contig:
        return 'missing contig'
    if isinstance(event.reference_position, bool) or not isinstance(event.reference_position, (int, np.integer)):
        return 'non-integer position'
    if event.reference_position < 0:
        return 'negative position'
    try:
        signal = float(event.signal_value)
    except (TypeError, ValueError):
        return 'non-numeric signal'
    if not math.isfinite(signal):
        return 'non-finite signal'
    if event.dwell_time is not None:
        try:
            dwell = float(event.dwell_time)
        except (TypeError, ValueError):
            return 'non-numeric dwell time'
        if not math.isfinite(dwell) or dwell < 0:
            return 'invalid dwell time'
    if isinstance(event.event_count, bool) or not isinstance(event.event_count, (int, np.integer)):
        return 'non-integer event count'
    if event.event_count < 1:
        return 'event count < 1'
    if event.strand not in STRANDS:
        return 'invalid strand'
    if need_context and not event.sequence_context:
        return 'missing sequence context'
    return None


def _usable_id(read_id) -> bool:
    return isinstance(read_id, str) and bool(read_id)


class _ReadBuffer:
    """Events of one read, grouped by reference position."""
    __slots__ = ('read_id', 'contig', 'strand', 'skipped', 'positions', 'filtered')

    def __init__(self, read_id: str, contig: str, strand: str):
        self.read_id = read_id
        self.contig = contig
        self.strand = strand
        self.skipped = False
        self.positions: Dict[int, list] = {}
        self.filtered: Set[int] = set()


class PositionAggregator:
    """
    Builds AggregatedRead records from RawEvent streams.

    Args:
        config: Pipeline configuration (reducer, k-mer size, anchor)
        reference: Optional reference lookup; when given, contexts come from
            the reference rather than from the events
        alignments: Optional read id -> ReadAlignment map; reads without a
            primary alignment are skipped and the alignment strand is used
        stats: Collector for skip counters (a new one is made if omitted)
        reducer: Callable overriding config.reducer
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 reference: Optional[ReferenceContext] = None,
                 alignments: Optional[Mapping] = None,
                 stats: Optional[PipelineStats] = None,
                 reducer: Optional[Reducer] = None):
        self.config = (config or PipelineConfig()).validate()
        self.reference = reference
        self.alignments = alignments
        self.stats = stats if stats is not None else PipelineStats()
        if reducer is not None:
            self._reducer = reducer
        elif self.config.reducer == 'median':
            self._reducer = median_reducer
        else:
            self._reducer = mean_reducer
        self._dwell_weighted = reducer is None and self.config.reducer == 'mean'
        self._batch_counts: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def aggregate(self, events: Iterable[RawEvent]) -> List[AggregatedRead]:
        """Aggregate an arbitrarily ordered event stream. Reads keep first-seen order."""
        self._batch_counts = {}
        buffers: Dict[str, _ReadBuffer] = {}
        for event in events:
            buf = buffers.get(event.read_id) if _usable_id(event.read_id) else None
            if buf is None:
                buf = self._open_read(event)
                if buf is None:
                    continue
                buffers[event.read_id] = buf
            self._add_event(buf, event)

        reads = []
        for buf in buffers.values():
            read = self._finalize(buf)
            if read is not None:
                reads.append(read)
        self._warn_batch()
        return reads

    def iter_reads(self, events: Iterable[RawEvent]) -> Iterator[AggregatedRead]:
        """
        Aggregate a stream whose events are grouped by read, yielding reads lazily.

        Only the current read's events are buffered. The id of every
        finished read is kept until the stream ends so that a read id coming
        back later is recognised as interleaved rather than emitted twice.
        Memory therefore grows with the number of reads in the stream, by
        one id per read; events of finished reads are never retained.
        """
        self._batch_counts = {}
        current: Optional[_ReadBuffer] = None
        finished = set()
        interleaved = set()

        for event in events:
            if not _usable_id(event.read_id):
                self._open_read(event)
                continue
            if current is not None and event.read_id == current.read_id:
                self._add_event(current, event)
                continue

            if event.read_id in finished:
                if event.read_id not in interleaved:
                    interleaved.add(event.read_id)
                    self._count('interleaved_reads')
                continue

            if current is not None:
                finished.add(current.read_id)
                read = self._finalize(current)
                if read is not None:
                    yield read
                current = None

            buf = self._open_read(event)
            if buf is not None:
                current = buf
                self._add_event(current, event)

        if current is not None:
            read = self._finalize(current)
            if read is not None:
                yield read
        self._warn_batch()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _count(self, name: str, n: int = 1):
        self.stats.increment(name, n)
        self._batch_counts[name] = self._batch_counts.get(name, 0) + n

    def _open_read(self, event: RawEvent) -> Optional[_ReadBuffer]:
        if _event_problem(event, need_context=self.reference is None) is not None:
            self._count('malformed_events')
            return None

        strand = event.strand
        buf = _ReadBuffer(event.read_id, event.contig, strand)
        if self.alignments is not None:
            alignment = self.alignments.get(event.read_id)
            if alignment is None or not alignment.is_primary:
                self._count('non_primary_reads')
                buf.skipped = True
            else:
                buf.strand = alignment.strand
        return buf

    def _add_event(self, buf: _ReadBuffer, event: RawEvent):
        if buf.skipped:
            return
        if _event_problem(event, need_context=self.reference is None) is not None \
                or event.contig != buf.contig:
            self._count('malformed_events')
            return
        pos = int(event.reference_position)
        if not self._in_region(buf.contig, pos):
            buf.filtered.add(pos)
            return
        buf.positions.setdefault(pos, []).append(event)

    def _in_region(self, contig: str, pos: int) -> bool:
        config = self.config
        if config.region_contig is None:
            return True
        if contig != config.region_contig:
            return False
        if config.region_start is not None and pos < config.region_start:
            return False
        return config.region_stop is None or pos <= config.region_stop

    def _reduce(self, events: List[RawEvent]) -> float:
        if len(events) == 1:
            return float(events[0].signal_value)
        values = np.array([e.signal_value for e in events], dtype=float)
        counts = np.array([e.event_count for e in events], dtype=float)
        if self._dwell_weighted and all(e.dwell_time is not None and e.dwell_time > 0 for e in events):
            weights = counts * np.array([e.dwell_time for e in events], dtype=float)
        else:
            weights = counts
        return self._reducer(values, weights)

    def _finalize(self, buf: _ReadBuffer) -> Optional[AggregatedRead]:
        if buf.skipped:
            return None
        if buf.filtered:
            # outside the requested region; counted, never warned about
            self.stats.increment('region_filtered_positions', len(buf.filtered))

        positions = []
        for pos in sorted(buf.positions):
            events = buf.positions[pos]
            if self.reference is not None:
                context = self.reference.context_at(buf.contig, pos, buf.strand)
                if context is None:
                    self._count('out_of_bounds_positions')
                    continue
            else:
                context = events[0].sequence_context

            positions.append(AggregatedPosition(
                read_id=buf.read_id,
                contig=buf.contig,
                reference_position=pos,
                sequence_context=context,
                summary_value=self._reduce(events),
                n_events=sum(e.event_count for e in events),
                strand=buf.strand,
            ))

        if not positions:
            if buf.positions:
                self._count('empty_reads')
            return None

        self.stats.add_aggregated_read(len(positions))
        return AggregatedRead(buf.read_id, buf.contig, buf.strand, tuple(positions))

    def _warn_batch(self):
        skipped = {k: v for k, v in self._batch_counts.items() if v > 0}
        if skipped:
            details = ', '.join(f"{k}={v:,}" for k, v in sorted(skipped.items()))
            warnings.warn(f"Aggregation skipped units: {details}", DataQualityWarning, stacklevel=3)


def aggregate_events(events: Iterable[RawEvent], config: Optional[PipelineConfig] = None,
                     reference: Optional[ReferenceContext] = None,
                     alignments: Optional[Mapping] = None,
                     stats: Optional[PipelineStats] = None,
                     reducer: Union[Reducer, None] = None) -> List[AggregatedRead]:
    """Convenience wrapper around PositionAggregator.aggregate()."""
    aggregator = PositionAggregator(config, reference=reference, alignments=alignments,
                                    stats=stats, reducer=reducer)
    return aggregator.aggregate(events)
