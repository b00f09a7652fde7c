"""
Position scoring.

Each aggregated position gets the log-likelihood ratio

    LLR = log p_positive(value | context) - log p_negative(value | context)

with both densities floored at density_floor, so the result is always
finite. Positions whose context lacks a model in either set are kept but
left unscored with a reason; a missing score is never treated as 0.
"""

from collections import defaultdict
from typing import Iterable, Optional, Sequence, Union

import numpy as np

from smaccess.core.context import Motif
from smaccess.core.errors import ModelStoreError, ReadProcessingError
from smaccess.core.model_io import ReferenceModels
from smaccess.core.records import AggregatedPosition, AggregatedRead, ScoredPosition, ScoredRead
from smaccess.core.stats import PipelineStats


NO_MODELS = 'no_models'
NO_POSITIVE_MODEL = 'no_positive_model'
NO_NEGATIVE_MODEL = 'no_negative_model'


class PositionScorer:
    """
    Scores positions against a pair of reference model sets.

    Args:
        models: Positive and negative model sets
        density_floor: Lower bound applied to both densities
        motifs: Optional motif filters ("2:GC" strings or Motif objects);
            when given, positions whose context matches none are dropped
        stats: Collector for motif-filter counts

    Raises:
        ModelStoreError: either model set is empty
    """

    def __init__(self, models: ReferenceModels, density_floor: float = 1e-300,
                 motifs: Iterable[Union[str, Motif]] = (),
                 stats: Optional[PipelineStats] = None):
        if len(models.positive) == 0 or len(models.negative) == 0:
            raise ModelStoreError(
                f"Cannot score with an empty model set "
                f"(positive={len(models.positive)}, negative={len(models.negative)})")
        if not (0.0 < density_floor < 1.0):
            raise ValueError(f"density_floor must be in (0, 1), got {density_floor}")
        self.models = models
        self.density_floor = density_floor
        self.motifs = tuple(m if isinstance(m, Motif) else Motif.parse(m) for m in motifs)
        self.stats = stats if stats is not None else PipelineStats()

    def passes_motif(self, context: str) -> bool:
        if not self.motifs:
            return True
        return any(m.matches(context) for m in self.motifs)

    def missing_reason(self, context: str) -> Optional[str]:
        has_pos = context in self.models.positive
        has_neg = context in self.models.negative
        if not has_pos and not has_neg:
            return NO_MODELS
        if not has_pos:
            return NO_POSITIVE_MODEL
        if not has_neg:
            return NO_NEGATIVE_MODEL
        return None

    def score_values(self, context: str, values: Sequence[float]) -> Optional[np.ndarray]:
        """Vectorised LLR for many values sharing a context; None if a model is missing."""
        if self.missing_reason(context) is not None:
            return None
        x = np.asarray(values, dtype=float)
        lp = self.models.positive[context].log_density(x, self.density_floor)
        ln = self.models.negative[context].log_density(x, self.density_floor)
        return np.asarray(lp - ln, dtype=float)

    def score_position(self, position: AggregatedPosition) -> ScoredPosition:
        reason = self.missing_reason(position.sequence_context)
        if reason is not None:
            return ScoredPosition(position, None, reason)
        llr = self.score_values(position.sequence_context, [position.summary_value])[0]
        return ScoredPosition(position, float(llr))

    def score_read(self, read: AggregatedRead) -> ScoredRead:
        """
        Score every position of a read, keeping position order.

        Raises:
            ReadProcessingError: a position belongs to another read or contig
        """
        kept = []
        n_filtered = 0
        for pos in read.positions:
            if pos.read_id != read.read_id or pos.contig != read.contig:
                raise ReadProcessingError(
                    f"read {read.read_id}: position {pos.reference_position} belongs to "
                    f"{pos.read_id}/{pos.contig}")
            if not self.passes_motif(pos.sequence_context):
                n_filtered += 1
                continue
            kept.append(pos)
        if n_filtered:
            self.stats.increment('motif_filtered_positions', n_filtered)

        # One density evaluation per context
        by_context = defaultdict(list)
        for i, pos in enumerate(kept):
            by_context[pos.sequence_context].append(i)

        scored = [None] * len(kept)
        for context, indices in by_context.items():
            reason = self.missing_reason(context)
            if reason is not None:
                for i in indices:
                    scored[i] = ScoredPosition(kept[i], None, reason)
                continue
            llrs = self.score_values(context, [kept[i].summary_value for i in indices])
            for i, llr in zip(indices, llrs):
                scored[i] = ScoredPosition(kept[i], float(llr))

        return ScoredRead(read.read_id, read.contig, read.strand, tuple(scored))
