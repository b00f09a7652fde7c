#!/usr/bin/env python3
"""
smaccess train CLI entry point.
Fits positive and negative reference models from control datasets.
"""

import argparse
import os
import sys
import warnings

from smaccess.core.aggregate import PositionAggregator
from smaccess.core.config import save_config
from smaccess.core.context import ReferenceContext
from smaccess.core.errors import SmaccessError
from smaccess.core.model_io import save_model_set
from smaccess.core.records import NEGATIVE, POSITIVE
from smaccess.core.stats import PipelineStats
from smaccess.core.tables import INPUT_TYPES, events_from_frame, read_table
from smaccess.training.trainer import ControlDataset, rank_contexts, train_reference_models
from smaccess.cli.common import (
    add_config_args, add_context_args, add_model_args, add_output_args,
    add_parallel_args, add_region_args, add_verbose_args, add_version_args,
    config_from_args,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Train smaccess reference models from accessible/inaccessible controls',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Input tables (tab-separated, with header):
  events:     read_id, contig, position, signal[, context, dwell, strand]
  aggregated: read_id, contig, position, context, value[, n_events, strand]

Output:
  positive.model.json, negative.model.json, context_ranks.tsv,
  training_summary.txt, run_config.json

Examples:
  smaccess-train --positive open.tsv --negative closed.tsv -o models/

  # Contexts from the reference, 4 threads
  smaccess-train --positive open.tsv --negative closed.tsv -o models/ \\
      --reference genome.fa -c 4
'''
    )

    add_version_args(parser)

    parser.add_argument('--positive', required=True,
                        help='Control table for the accessible (positive) state')
    parser.add_argument('--negative', required=True,
                        help='Control table for the inaccessible (negative) state')
    parser.add_argument('--input-type', choices=INPUT_TYPES, default='events',
                        help='Layout of the input tables (default: events)')
    parser.add_argument('--reference', default=None,
                        help='Indexed FASTA used for context lookup (events input)')
    add_output_args(parser)

    add_config_args(parser)
    add_model_args(parser)
    add_context_args(parser)
    add_region_args(parser)
    add_parallel_args(parser)
    parser.add_argument('--rank-samples', type=int, default=10000,
                        help='Monte-Carlo draws per context for KL ranking (default: 10000)')
    add_verbose_args(parser)
    return parser


def _load_dataset(label, path, args, config, reference, stats) -> ControlDataset:
    df = read_table(path, args.input_type)
    print(f"  {label}: {len(df):,} rows from {path}")
    if args.input_type == 'aggregated' and reference is None and config.region_contig is None:
        return ControlDataset.from_frame(label, df, sample_range=config.sample_range)
    aggregator = PositionAggregator(config, reference=reference, stats=stats)
    reads = aggregator.aggregate(events_from_frame(df, args.input_type))
    return ControlDataset.from_reads(label, reads, sample_range=config.sample_range)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except SmaccessError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    os.makedirs(args.outdir, exist_ok=True)
    stats = PipelineStats()
    reference = None

    try:
        if args.reference:
            reference = ReferenceContext(args.reference, kmer_size=config.kmer_size,
                                         anchor=config.context_anchor)

        print("Loading control data...")
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            positive = _load_dataset(POSITIVE, args.positive, args, config, reference, stats)
            negative = _load_dataset(NEGATIVE, args.negative, args, config, reference, stats)
        for w in caught:
            print(f"  WARNING: {w.message}")
        print(f"  {POSITIVE}: {positive.n_samples:,} samples in {len(positive.samples):,} contexts")
        print(f"  {NEGATIVE}: {negative.n_samples:,} samples in {len(negative.samples):,} contexts")

        print(f"\nFitting {config.n_components}-component mixtures "
              f"(tol={config.em_tolerance}, max_iter={config.em_max_iter}, "
              f"threads={config.n_workers})...")
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            models, pos_report, neg_report = train_reference_models(
                positive, negative, config, verbose=args.verbose)
        for w in caught:
            print(f"  WARNING: {w.message}")
    except (SmaccessError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if reference is not None:
            reference.close()

    pos_path = save_model_set(models.positive, os.path.join(args.outdir, 'positive.model.json'))
    neg_path = save_model_set(models.negative, os.path.join(args.outdir, 'negative.model.json'))
    print(f"  {POSITIVE}: {len(models.positive):,} contexts -> {pos_path}")
    print(f"  {NEGATIVE}: {len(models.negative):,} contexts -> {neg_path}")

    ranks = rank_contexts(models, n_samples=args.rank_samples, seed=config.seed)
    ranks_path = os.path.join(args.outdir, 'context_ranks.tsv')
    ranks.to_csv(ranks_path, sep='\t', index=False)
    if len(ranks) > 0:
        top = ', '.join(ranks['context'].head(5))
        print(f"  Most separating contexts: {top}")

    summary_path = os.path.join(args.outdir, 'training_summary.txt')
    pos_report.write_summary(summary_path, mode='w')
    neg_report.write_summary(summary_path, mode='a')
    save_config(config, os.path.join(args.outdir, 'run_config.json'))

    print(f"\nSummary: {summary_path}")
    print("Done!")
    return 0


if __name__ == '__main__':
    sys.exit(main())
