"""smaccess run statistics: skip counters, scoring and segment summaries."""

import threading
from collections import Counter
from typing import Iterable, List, Optional, Tuple

import numpy as np

from smaccess.core.records import ACCESSIBLE, INACCESSIBLE, MoleculeSegment, ScoredRead


# Counters for units skipped at each stage (recoverable-per-unit errors)
SKIP_COUNTERS = (
    'malformed_events',
    'out_of_bounds_positions',
    'motif_filtered_positions',
    'region_filtered_positions',
    'non_primary_reads',
    'interleaved_reads',
    'empty_reads',
    'failed_reads',
)


class PipelineStats:
    """
    Collects per-run diagnostics.

    Safe to update from several worker threads. Exceptions that cause reads to
    be skipped are not re-raised; only their counts and messages end up here.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.counters = Counter({name: 0 for name in SKIP_COUNTERS})
        self.unscored_reasons = Counter()
        self.reads_aggregated = 0
        self.reads_processed = 0
        self.reads_without_segments = 0
        self.positions_aggregated = 0
        self.scored_positions = 0
        self.unscored_positions = 0
        self.segments_by_state = Counter({ACCESSIBLE: 0, INACCESSIBLE: 0})
        self.segment_positions: List[int] = []
        self.segment_spans: List[int] = []
        self.failures: List[Tuple[str, str]] = []

    def increment(self, name: str, n: int = 1):
        with self._lock:
            self.counters[name] += n

    def add_aggregated_read(self, n_positions: int):
        with self._lock:
            self.reads_aggregated += 1
            self.positions_aggregated += n_positions

    def record_failure(self, read_id: str, error: BaseException):
        with self._lock:
            self.counters['failed_reads'] += 1
            self.failures.append((read_id, f"{type(error).__name__}: {error}"))

    def add_read_result(self, scored: ScoredRead, segments: Iterable[MoleculeSegment]):
        segments = list(segments)
        with self._lock:
            self.reads_processed += 1
            for p in scored.positions:
                if p.is_scored:
                    self.scored_positions += 1
                else:
                    self.unscored_positions += 1
                    self.unscored_reasons[p.unscored_reason] += 1
            if not segments:
                self.reads_without_segments += 1
            for seg in segments:
                self.segments_by_state[seg.state] += 1
                self.segment_positions.append(seg.n_positions)
                self.segment_spans.append(seg.span)

    def merge(self, other: 'PipelineStats') -> 'PipelineStats':
        """Fold another collector's counts into this one."""
        with self._lock:
            self.counters.update(other.counters)
            self.unscored_reasons.update(other.unscored_reasons)
            self.reads_aggregated += other.reads_aggregated
            self.reads_processed += other.reads_processed
            self.reads_without_segments += other.reads_without_segments
            self.positions_aggregated += other.positions_aggregated
            self.scored_positions += other.scored_positions
            self.unscored_positions += other.unscored_positions
            self.segments_by_state.update(other.segments_by_state)
            self.segment_positions.extend(other.segment_positions)
            self.segment_spans.extend(other.segment_spans)
            self.failures.extend(other.failures)
        return self

    def get_summary(self) -> dict:
        """Generate summary statistics."""
        total_positions = self.scored_positions + self.unscored_positions
        summary = {
            'reads_aggregated': self.reads_aggregated,
            'positions_aggregated': self.positions_aggregated,
            'reads_processed': self.reads_processed,
            'reads_without_segments': self.reads_without_segments,
            'scored_positions': self.scored_positions,
            'unscored_positions': self.unscored_positions,
            'pct_scored': 100 * self.scored_positions / total_positions if total_positions > 0 else 0,
            'segments_accessible': self.segments_by_state[ACCESSIBLE],
            'segments_inaccessible': self.segments_by_state[INACCESSIBLE],
        }
        for name in SKIP_COUNTERS:
            summary[f'skipped_{name}'] = self.counters[name]
        for reason, count in sorted(self.unscored_reasons.items()):
            summary[f'unscored_{reason}'] = count

        if self.segment_positions:
            summary['segment_positions_median'] = float(np.median(self.segment_positions))
            summary['segment_positions_mean'] = float(np.mean(self.segment_positions))
            summary['segment_span_median'] = float(np.median(self.segment_spans))
            summary['segment_span_mean'] = float(np.mean(self.segment_spans))

        return summary

    def write_summary(self, filepath: str, max_failures: Optional[int] = 20):
        """Write summary statistics to a text file."""
        summary = self.get_summary()

        with open(filepath, 'w') as f:
            f.write("smaccess Run Summary\n")
            f.write("=" * 50 + "\n\n")

            f.write("Reads\n")
            f.write("-" * 30 + "\n")
            f.write(f"Reads aggregated:           {summary['reads_aggregated']:,}\n")
            f.write(f"Reads processed:            {summary['reads_processed']:,}\n")
            f.write(f"Reads without segments:     {summary['reads_without_segments']:,}\n")
            f.write("\n")

            f.write("Positions\n")
            f.write("-" * 30 + "\n")
            f.write(f"Positions aggregated:       {summary['positions_aggregated']:,}\n")
            f.write(f"Scored:                     {summary['scored_positions']:,} ({summary['pct_scored']:.1f}%)\n")
            f.write(f"Unscored:                   {summary['unscored_positions']:,}\n")
            for reason, count in sorted(self.unscored_reasons.items()):
                f.write(f"  {reason + ':':<26}{count:,}\n")
            f.write("\n")

            f.write("Skipped Units\n")
            f.write("-" * 30 + "\n")
            for name in SKIP_COUNTERS:
                label = name.replace('_', ' ').capitalize() + ':'
                f.write(f"{label:<28}{self.counters[name]:,}\n")
            f.write("\n")

            f.write("Segments\n")
            f.write("-" * 30 + "\n")
            f.write(f"Accessible:                 {summary['segments_accessible']:,}\n")
            f.write(f"Inaccessible:               {summary['segments_inaccessible']:,}\n")
            if 'segment_positions_median' in summary:
                f.write(f"Positions (median):         {summary['segment_positions_median']:.0f}\n")
                f.write(f"Span (median):              {summary['segment_span_median']:.0f} bp\n")
                f.write(f"Span (mean):                {summary['segment_span_mean']:.1f} bp\n")

            if self.failures:
                f.write("\nFailed Reads\n")
                f.write("-" * 30 + "\n")
                shown = self.failures if max_failures is None else self.failures[:max_failures]
                for read_id, message in shown:
                    f.write(f"{read_id}\t{message}\n")
                if len(shown) < len(self.failures):
                    f.write(f"... and {len(self.failures) - len(shown):,} more\n")
