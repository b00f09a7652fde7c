"""
BAM reader module for smaccess

Two uses of alignment files:
1. load_alignment_index(): read id -> ReadAlignment (strand, primary flag),
   used by the aggregator to drop reads without a primary alignment and to
   assign strand to events that carry none
2. iter_modification_events(): RawEvents from base-modification calls
   (MM/ML tags), one event per called base, with the ML value converted to
   a probability as the signal value
"""

import warnings
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

import pysam

from smaccess.core.context import VALID_BASES, kmer_window, reverse_complement
from smaccess.core.errors import DataQualityWarning
from smaccess.core.records import RawEvent
from smaccess.core.stats import PipelineStats


# ChEBI codes pysam reports for numeric modification codes
CHEBI_CODES = {'a': 21839, 'm': 27551, 'h': 76792}


@dataclass(frozen=True)
class ReadAlignment:
    """Alignment summary of one read across all of its records."""
    read_id: str
    contig: Optional[str]
    strand: str
    is_primary: bool
    n_records: int = 1


def ml_to_probability(ml: int) -> float:
    """Convert an ML tag value (0-255) to the centre of its probability bin."""
    return (ml + 0.5) / 256


def _strand(read: pysam.AlignedSegment) -> str:
    return '-' if read.is_reverse else '+'


def load_alignment_index(bam_path: str) -> Dict[str, ReadAlignment]:
    """
    Build read id -> ReadAlignment from every mapped record in a BAM/SAM.

    A read whose records disagree on strand gets strand '.'; one
    DataQualityWarning reports how many reads were affected.
    """
    state = {}
    with pysam.AlignmentFile(bam_path, check_sq=False) as bam:
        for read in bam.fetch(until_eof=True):
            if read.is_unmapped:
                continue
            entry = state.get(read.query_name)
            primary = not (read.is_secondary or read.is_supplementary)
            if entry is None:
                state[read.query_name] = {
                    'contig': read.reference_name if primary else None,
                    'strand': _strand(read),
                    'is_primary': primary,
                    'n_records': 1,
                }
                continue
            entry['n_records'] += 1
            if entry['strand'] != _strand(read):
                entry['strand'] = '.'
            if primary:
                entry['is_primary'] = True
                entry['contig'] = read.reference_name

    n_swapped = sum(1 for entry in state.values() if entry['strand'] == '.')
    if n_swapped:
        warnings.warn(
            f"{n_swapped:,} multimapped reads have conflicting strands; strand set to unknown",
            DataQualityWarning, stacklevel=2)

    return {read_id: ReadAlignment(read_id=read_id, **entry) for read_id, entry in state.items()}


def iter_modification_events(bam_path: str, mod_base: str = 'A', mod_code: str = 'a',
                             kmer_size: int = 6, stats: Optional[PipelineStats] = None,
                             contig: Optional[str] = None, start: Optional[int] = None,
                             stop: Optional[int] = None, min_mapq: int = 0,
                             anchor: str = 'start') -> Iterator[RawEvent]:
    """
    Yield one RawEvent per modification call on an aligned reference base.

    Args:
        bam_path: BAM with MM/ML tags
        mod_base: Canonical base carrying the modification
        mod_code: Modification code as written in the MM tag
        kmer_size: Length of the context
        stats: Collector for skipped reads/positions
        contig, start, stop: Optional region (0-based, stop inclusive). Only
            used to fetch from an indexed BAM; an unindexed BAM is read
            whole and the aggregator applies the region
        min_mapq: Minimum mapping quality
        anchor: 'start' or 'center', placing the k-mer window on the
            reference exactly as ReferenceContext does

    The context is read from the bases aligned to that reference window and
    reverse-complemented for reverse reads, so it equals the reference
    k-mer wherever the read matches the reference. Calls whose window is not
    fully covered by aligned, unambiguous bases are counted as
    out_of_bounds_positions. Events of one read are yielded together, in
    query order.
    """
    if anchor not in ('start', 'center'):
        raise ValueError(f"Unknown anchor: {anchor}")
    if anchor == 'center' and kmer_size % 2 == 0:
        raise ValueError("kmer_size must be odd for a centred anchor")
    codes = {mod_code, CHEBI_CODES.get(mod_code)}

    with pysam.AlignmentFile(bam_path, check_sq=False) as bam:
        if contig is not None and bam.has_index():
            iterator = bam.fetch(contig, start, None if stop is None else stop + 1)
        else:
            iterator = bam.fetch(until_eof=True)
        for read in iterator:
            if read.is_unmapped or read.is_secondary or read.is_supplementary:
                if stats is not None:
                    stats.increment('non_primary_reads')
                continue
            if read.mapping_quality < min_mapq or read.query_sequence is None:
                continue

            mod_bases = read.modified_bases
            if not mod_bases:
                continue

            sequence = read.query_sequence.upper()
            pairs = read.get_aligned_pairs(matches_only=True)
            query_to_ref = dict(pairs)
            ref_to_query = {r: q for q, r in pairs}
            strand = _strand(read)

            calls = []
            for (base, _, code), positions in mod_bases.items():
                if base != mod_base or code not in codes:
                    continue
                calls.extend(positions)
            calls.sort()

            for qpos, ml in calls:
                ref_pos = query_to_ref.get(qpos)
                if ref_pos is None or ml < 0:
                    if stats is not None:
                        stats.increment('malformed_events')
                    continue
                window = kmer_window(ref_pos, kmer_size, anchor)
                context = _aligned_kmer(sequence, ref_to_query, *window)
                if context is None:
                    if stats is not None:
                        stats.increment('out_of_bounds_positions')
                    continue
                if read.is_reverse:
                    context = reverse_complement(context)

                yield RawEvent(
                    read_id=read.query_name,
                    contig=read.reference_name,
                    reference_position=ref_pos,
                    signal_value=ml_to_probability(ml),
                    sequence_context=context,
                    strand=strand,
                )


def _aligned_kmer(sequence: str, ref_to_query: Dict[int, int], start: int, end: int) -> Optional[str]:
    bases = []
    for ref in range(start, end):
        qpos = ref_to_query.get(ref)
        if qpos is None:
            return None
        bases.append(sequence[qpos])
    kmer = ''.join(bases)
    if not set(kmer) <= VALID_BASES:
        return None
    return kmer
