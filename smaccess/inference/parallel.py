"""smaccess read-parallel scoring and segmentation."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from itertools import islice
from typing import Iterable, Iterator, List, Mapping, Optional, Tuple

from tqdm import tqdm

from smaccess.core.aggregate import PositionAggregator
from smaccess.core.config import PipelineConfig
from smaccess.core.context import ReferenceContext
from smaccess.core.model_io import ReferenceModels
from smaccess.core.records import AggregatedRead, MoleculeSegment, RawEvent, ScoredRead
from smaccess.core.stats import PipelineStats
from smaccess.inference.scorer import PositionScorer
from smaccess.inference.segmenter import MoleculeSegmenter


CHUNK_SIZE = 1000


@dataclass(frozen=True)
class ReadResult:
    """Scores and segments of one read."""
    scored: ScoredRead
    segments: Tuple[MoleculeSegment, ...]

    @property
    def read_id(self) -> str:
        return self.scored.read_id


def _process_read(read: AggregatedRead, scorer: PositionScorer,
                  segmenter: MoleculeSegmenter, stats: PipelineStats) -> Optional[ReadResult]:
    """Score and segment one read. Failures are recorded and give None."""
    try:
        scored = scorer.score_read(read)
        segments = segmenter.segment(scored)
    except Exception as e:
        stats.record_failure(read.read_id, e)
        return None
    stats.add_read_result(scored, segments)
    return ReadResult(scored, tuple(segments))


def _chunks(reads: Iterable[AggregatedRead], size: int) -> Iterator[List[AggregatedRead]]:
    it = iter(reads)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            return
        yield chunk


def process_reads(reads: Iterable[AggregatedRead], scorer: PositionScorer,
                  config: Optional[PipelineConfig] = None,
                  stats: Optional[PipelineStats] = None,
                  n_workers: Optional[int] = None,
                  verbose: bool = False) -> List[ReadResult]:
    """
    Score and segment reads, in parallel when n_workers > 1.

    Reads are independent and the models are read-only, so workers share the
    scorer without locking. An exception inside one read is recorded in
    stats and that read is skipped; it never stops the run.

    Returns:
        Results of successfully processed reads, in input order
    """
    config = (config or PipelineConfig()).validate()
    stats = stats if stats is not None else scorer.stats
    n_workers = n_workers or config.n_workers
    segmenter = MoleculeSegmenter(config)

    results = []
    pbar = tqdm(desc="Reads", unit="read", disable=not verbose)

    if n_workers == 1:
        for read in reads:
            result = _process_read(read, scorer, segmenter, stats)
            if result is not None:
                results.append(result)
            pbar.update(1)
        pbar.close()
        return results

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        for chunk in _chunks(reads, CHUNK_SIZE):
            futures = [executor.submit(_process_read, read, scorer, segmenter, stats)
                       for read in chunk]
            for future in futures:
                result = future.result()
                if result is not None:
                    results.append(result)
                pbar.update(1)
    pbar.close()
    return results


def sort_results(results: Iterable[ReadResult]) -> List[ReadResult]:
    """Deterministic order: contig, first position, read id."""
    def key(result: ReadResult):
        positions = result.scored.positions
        start = positions[0].reference_position if positions else -1
        return (result.scored.contig, start, result.read_id)
    return sorted(results, key=key)


def run_pipeline(events: Iterable[RawEvent], models: ReferenceModels,
                 config: Optional[PipelineConfig] = None,
                 reference: Optional[ReferenceContext] = None,
                 alignments: Optional[Mapping] = None,
                 stats: Optional[PipelineStats] = None,
                 n_workers: Optional[int] = None,
                 streaming: bool = False,
                 verbose: bool = False) -> Tuple[List[ReadResult], PipelineStats]:
    """
    Aggregate, score and segment an event stream.

    Configuration and models are validated before the first event is read,
    so ConfigurationError and ModelStoreError abort the run up front.

    Args:
        events: RawEvent stream
        models: Positive/negative model sets
        config: Pipeline configuration
        reference: Optional reference for context lookup
        alignments: Optional read id -> ReadAlignment map
        stats: Collector (a new one is made if omitted)
        n_workers: Worker threads (default config.n_workers)
        streaming: Events arrive grouped by read; aggregate lazily
        verbose: Show a progress bar

    Returns:
        (results sorted by contig/start/read id, stats)
    """
    config = (config or PipelineConfig()).validate()
    stats = stats if stats is not None else PipelineStats()
    scorer = PositionScorer(models, density_floor=config.density_floor,
                            motifs=config.motifs, stats=stats)

    aggregator = PositionAggregator(config, reference=reference, alignments=alignments, stats=stats)
    reads = aggregator.iter_reads(events) if streaming else aggregator.aggregate(events)

    results = process_reads(reads, scorer, config, stats=stats,
                            n_workers=n_workers, verbose=verbose)
    return sort_results(results), stats
