#!/usr/bin/env python3
"""
smaccess apply CLI entry point.
Scores positions against trained reference models and segments each molecule
into accessible/inaccessible intervals.
"""

import argparse
import os
import sys
import warnings

from smaccess.core.bam_reader import iter_modification_events, load_alignment_index
from smaccess.core.context import ReferenceContext
from smaccess.core.errors import SmaccessError
from smaccess.core.model_io import load_reference_models
from smaccess.core.stats import PipelineStats
from smaccess.core.tables import INPUT_TYPES, events_from_frame, read_table
from smaccess.inference.output import write_scores_tsv, write_segments_bed
from smaccess.inference.parallel import run_pipeline
from smaccess.cli.common import (
    add_config_args, add_context_args, add_output_args, add_parallel_args,
    add_region_args, add_scoring_args, add_segmentation_args, add_verbose_args,
    add_version_args, config_from_args,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Score chromatin accessibility and segment single molecules',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Output:
  <name>.scores.tsv    one row per position (llr, or NA plus a reason)
  <name>.segments.bed  BED6+3 accessible/inaccessible segments
  <name>.summary.txt   counts of processed and skipped units

Segments:
  Each segment lists the range of its first and last member position. By
  default unscored positions neither join nor close a run, so one may lie
  inside a segment range without being a member. Use --unscored-breaks-runs
  to close runs at unscored positions, so no segment range covers one.

Examples:
  smaccess-apply -i events.tsv --pos-model models/positive.model.json \\
      --neg-model models/negative.model.json -o out/

  # Modification calls from a BAM, smoothed, 8 threads
  smaccess-apply --bam calls.bam --pos-model P.json --neg-model N.json -o out/ \\
      --smoothing-window 5 --min-segment-length 3 -c 8

  # Only chr2 positions 10,000 to 20,000
  smaccess-apply -i events.tsv --pos-model P.json --neg-model N.json -o out/ \\
      --chrom chr2 --start 10000 --stop 20000
'''
    )

    add_version_args(parser)

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('-i', '--input', default=None,
                        help='Events or aggregated-positions table (TSV)')
    source.add_argument('--bam', default=None,
                        help='BAM with base-modification calls (MM/ML tags)')
    parser.add_argument('--input-type', choices=INPUT_TYPES, default='events',
                        help='Layout of the --input table (default: events)')
    parser.add_argument('--mod-base', default='A',
                        help='Modified canonical base in --bam (default: A)')
    parser.add_argument('--mod-code', default='a',
                        help='Modification code in --bam (default: a)')

    parser.add_argument('--pos-model', required=True,
                        help='Positive (accessible) model store (.json)')
    parser.add_argument('--neg-model', required=True,
                        help='Negative (inaccessible) model store (.json)')
    parser.add_argument('--reference', default=None,
                        help='Indexed FASTA used for context lookup')
    parser.add_argument('--alignments', default=None,
                        help='BAM used for strand and primary-alignment filtering')
    add_output_args(parser)
    parser.add_argument('--name', default=None,
                        help='Output file prefix (default: input file name)')

    add_config_args(parser)
    add_context_args(parser)
    add_region_args(parser)
    add_scoring_args(parser)
    add_segmentation_args(parser)
    add_parallel_args(parser)
    add_verbose_args(parser)
    return parser


def _dataset_name(args) -> str:
    if args.name:
        return args.name
    path = args.input or args.bam
    name = os.path.basename(path)
    for ext in ('.gz', '.tsv', '.txt', '.bam'):
        if name.endswith(ext):
            name = name[:-len(ext)]
    return name


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # Structural problems abort before any read is touched
    try:
        config = config_from_args(args)
        models = load_reference_models(args.pos_model, args.neg_model)
    except SmaccessError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(f"Models: {len(models.positive):,} {models.positive.label} / "
          f"{len(models.negative):,} {models.negative.label} contexts")
    model_k = models.positive.metadata.get('kmer_size')
    if model_k is not None and model_k != config.kmer_size:
        print(f"  WARNING: models were trained with k={model_k}, scoring with k={config.kmer_size}")

    name = _dataset_name(args)
    os.makedirs(args.outdir, exist_ok=True)
    stats = PipelineStats()
    reference = None

    print(f"\nProcessing: {args.input or args.bam}")
    print(f"  Context: k={config.kmer_size} ({config.context_anchor})")
    print(f"  Smoothing window: {config.smoothing_window}")
    print(f"  Max gap: {config.max_gap} {config.gap_unit}")
    print(f"  Min segment length: {config.min_segment_length} ({config.short_segment_policy})")
    if config.motifs:
        print(f"  Motifs: {', '.join(config.motifs)}")
    if config.region_contig is not None:
        print(f"  Region: {config.region_contig}:{config.region_start or 0}-"
              f"{'end' if config.region_stop is None else config.region_stop}")
    print(f"  Threads: {config.n_workers}")
    print()

    try:
        if args.reference:
            reference = ReferenceContext(args.reference, kmer_size=config.kmer_size,
                                         anchor=config.context_anchor)
        alignments = load_alignment_index(args.alignments) if args.alignments else None

        if args.bam:
            events = iter_modification_events(args.bam, mod_base=args.mod_base,
                                              mod_code=args.mod_code,
                                              kmer_size=config.kmer_size, stats=stats,
                                              contig=config.region_contig,
                                              start=config.region_start,
                                              stop=config.region_stop,
                                              anchor=config.context_anchor)
            streaming = True
        else:
            events = events_from_frame(read_table(args.input, args.input_type), args.input_type)
            streaming = False

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            results, stats = run_pipeline(
                events, models, config,
                reference=reference,
                alignments=alignments,
                stats=stats,
                streaming=streaming,
                verbose=args.verbose,
            )
        for w in caught:
            print(f"  WARNING: {w.message}")
    except (SmaccessError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if reference is not None:
            reference.close()

    scores_path = os.path.join(args.outdir, f"{name}.scores.tsv")
    bed_path = os.path.join(args.outdir, f"{name}.segments.bed")
    summary_path = os.path.join(args.outdir, f"{name}.summary.txt")

    n_positions = write_scores_tsv((r.scored for r in results), scores_path)
    n_segments = write_segments_bed((seg for r in results for seg in r.segments), bed_path)
    stats.write_summary(summary_path)

    summary = stats.get_summary()
    print(f"Processed {summary['reads_processed']:,} reads -> {n_segments:,} segments")
    print(f"  Positions: {n_positions:,} ({summary['pct_scored']:.1f}% scored)")
    if summary['skipped_failed_reads']:
        print(f"  Failed reads: {summary['skipped_failed_reads']:,} (see summary)")
    print(f"Scores: {scores_path}")
    print(f"Segments: {bed_path}")
    print(f"Summary: {summary_path}")
    print("\nDone!")
    return 0


if __name__ == '__main__':
    sys.exit(main())
