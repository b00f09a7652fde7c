"""Position scoring, molecule segmentation and read-parallel processing."""

from smaccess.inference.scorer import PositionScorer
from smaccess.inference.segmenter import MoleculeSegmenter, segment_read
from smaccess.inference.parallel import ReadResult, process_reads, run_pipeline, sort_results
from smaccess.inference.output import scored_reads_to_frame, write_scores_tsv, write_segments_bed

__all__ = [
    'PositionScorer',
    'MoleculeSegmenter',
    'segment_read',
    'ReadResult',
    'process_reads',
    'run_pipeline',
    'sort_results',
    'scored_reads_to_frame',
    'write_scores_tsv',
    'write_segments_bed',
]
