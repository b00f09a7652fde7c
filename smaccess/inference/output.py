"""Writers for scored positions (TSV) and molecule segments (BED)."""

from typing import Iterable, List

import numpy as np
import pandas as pd

from smaccess.core.records import MoleculeSegment, ScoredRead


SCORE_COLUMNS = ['read_id', 'contig', 'position', 'strand', 'context',
                 'value', 'n_events', 'llr', 'unscored_reason']


def write_segments_bed(segments: Iterable[MoleculeSegment], filepath: str) -> int:
    """
    Write segments as BED6+3.

    Columns: contig, start, end (exclusive), read id, score, strand, state,
    mean LLR, number of positions. Coordinates are 0-based half-open.

    Returns:
        Number of lines written
    """
    n = 0
    with open(filepath, 'w') as f:
        for seg in segments:
            score = min(1000, seg.n_positions)
            f.write(f"{seg.contig}\t{seg.start_position}\t{seg.end_position + 1}\t{seg.read_id}\t"
                    f"{score}\t{seg.strand}\t{seg.state}\t{seg.mean_score:.6g}\t{seg.n_positions}\n")
            n += 1
    return n


def scored_reads_to_frame(reads: Iterable[ScoredRead]) -> pd.DataFrame:
    """One row per position; unscored positions have NaN llr and a reason."""
    rows: List[dict] = []
    for read in reads:
        for sp in read.positions:
            pos = sp.position
            rows.append({
                'read_id': read.read_id,
                'contig': read.contig,
                'position': pos.reference_position,
                'strand': read.strand,
                'context': pos.sequence_context,
                'value': pos.summary_value,
                'n_events': pos.n_events,
                'llr': sp.log_likelihood_ratio if sp.is_scored else np.nan,
                'unscored_reason': sp.unscored_reason or '',
            })
    return pd.DataFrame(rows, columns=SCORE_COLUMNS)


def write_scores_tsv(reads: Iterable[ScoredRead], filepath: str) -> int:
    df = scored_reads_to_frame(reads)
    df.to_csv(filepath, sep='\t', index=False, na_rep='NA')
    return len(df)
