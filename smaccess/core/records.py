"""
Record types passed between pipeline stages.

raw events -> AggregatedPosition/AggregatedRead -> ScoredPosition/ScoredRead
-> MoleculeSegment

All records are frozen dataclasses so they can be shared between worker
threads without copying.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple


POSITIVE = 'positive'
NEGATIVE = 'negative'
LABELS = (POSITIVE, NEGATIVE)

ACCESSIBLE = 'accessible'
INACCESSIBLE = 'inaccessible'

STRANDS = ('+', '-', '.')


@dataclass(frozen=True)
class RawEvent:
    """One signal measurement assigned to a reference position of a read."""
    read_id: str
    contig: str
    reference_position: int  # 0-based, contig-relative
    signal_value: float
    sequence_context: Optional[str] = None
    dwell_time: Optional[float] = None
    strand: str = '.'
    event_count: int = 1  # >1 only when re-feeding aggregated records


@dataclass(frozen=True)
class AggregatedPosition:
    """Summary of all events of one read at one reference position."""
    read_id: str
    contig: str
    reference_position: int
    sequence_context: str
    summary_value: float
    n_events: int
    strand: str = '.'


@dataclass(frozen=True)
class AggregatedRead:
    """A read's aggregated positions, strictly increasing by position."""
    read_id: str
    contig: str
    strand: str
    positions: Tuple[AggregatedPosition, ...]

    def __len__(self) -> int:
        return len(self.positions)

    def __iter__(self) -> Iterator[AggregatedPosition]:
        return iter(self.positions)

    @property
    def start(self) -> Optional[int]:
        return self.positions[0].reference_position if self.positions else None

    @property
    def end(self) -> Optional[int]:
        return self.positions[-1].reference_position if self.positions else None


@dataclass(frozen=True)
class ScoredPosition:
    """
    An aggregated position plus its log-likelihood ratio.

    ``log_likelihood_ratio`` is None when the position could not be scored;
    ``unscored_reason`` then says why. A missing score is never replaced by 0.
    """
    position: AggregatedPosition
    log_likelihood_ratio: Optional[float]
    unscored_reason: Optional[str] = None

    @property
    def is_scored(self) -> bool:
        return self.log_likelihood_ratio is not None

    @property
    def reference_position(self) -> int:
        return self.position.reference_position

    @property
    def read_id(self) -> str:
        return self.position.read_id


@dataclass(frozen=True)
class ScoredRead:
    read_id: str
    contig: str
    strand: str
    positions: Tuple[ScoredPosition, ...]

    def __len__(self) -> int:
        return len(self.positions)

    def __iter__(self) -> Iterator[ScoredPosition]:
        return iter(self.positions)

    @property
    def n_scored(self) -> int:
        return sum(1 for p in self.positions if p.is_scored)


@dataclass(frozen=True)
class MoleculeSegment:
    """Maximal same-state run of scored positions within one read."""
    read_id: str
    contig: str
    start_position: int
    end_position: int  # inclusive
    state: str
    mean_score: float
    n_positions: int
    strand: str = '.'
    member_positions: Tuple[int, ...] = field(default=(), repr=False, compare=False)

    @property
    def span(self) -> int:
        """Reference bases covered, inclusive of both ends."""
        return self.end_position - self.start_position + 1


def events_from_aggregated(read: AggregatedRead) -> List[RawEvent]:
    """Turn an aggregated read back into one event per position."""
    return [
        RawEvent(
            read_id=p.read_id,
            contig=p.contig,
            reference_position=p.reference_position,
            signal_value=p.summary_value,
            sequence_context=p.sequence_context,
            strand=p.strand,
            event_count=p.n_events,
        )
        for p in read.positions
    ]
