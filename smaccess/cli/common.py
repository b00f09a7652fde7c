"""Shared argparse argument factories for smaccess CLI tools.

Each function adds a group of related arguments to an ArgumentParser.
Options that map onto PipelineConfig default to None so that a --config
file supplies the value unless the option is given explicitly;
config_from_args() does the merge.
"""

import argparse
from dataclasses import fields
from typing import Optional

from smaccess.core.config import (
    CONTEXT_ANCHORS, GAP_UNITS, REDUCERS, SHORT_SEGMENT_POLICIES,
    PipelineConfig, load_config,
)


_DEFAULTS = PipelineConfig()
_CONFIG_FIELDS = {f.name for f in fields(PipelineConfig)}


def add_config_args(parser: argparse.ArgumentParser) -> None:
    """Add --config argument."""
    parser.add_argument(
        '--config', default=None,
        help="JSON configuration file; explicit options override it"
    )


def add_model_args(parser: argparse.ArgumentParser) -> None:
    """Add mixture fitting arguments."""
    group = parser.add_argument_group('model fitting')
    group.add_argument(
        '--n-components', type=int, default=None,
        help=f"Mixture components per context (default: {_DEFAULTS.n_components})"
    )
    group.add_argument(
        '--em-tolerance', type=float, default=None,
        help=f"EM convergence tolerance (default: {_DEFAULTS.em_tolerance})"
    )
    group.add_argument(
        '--em-max-iter', type=int, default=None,
        help=f"Maximum EM iterations (default: {_DEFAULTS.em_max_iter})"
    )
    group.add_argument(
        '--n-init', type=int, default=None,
        help=f"EM restarts, best kept (default: {_DEFAULTS.n_init})"
    )
    group.add_argument(
        '--min-samples', type=int, default=None,
        help=f"Minimum samples to fit a context (default: {_DEFAULTS.min_samples})"
    )
    group.add_argument(
        '--max-samples-per-context', type=int, default=None,
        help=f"Subsample contexts above this size (default: {_DEFAULTS.max_samples_per_context:,})"
    )
    group.add_argument(
        '--variance-floor', type=float, default=None,
        help=f"Lower bound on component variances (default: {_DEFAULTS.variance_floor})"
    )
    group.add_argument(
        '--sample-range', type=float, nargs=2, default=None, metavar=('LOW', 'HIGH'),
        help="Discard training values outside [LOW, HIGH]"
    )
    group.add_argument(
        '--seed', type=int, default=None,
        help=f"Random seed (default: {_DEFAULTS.seed})"
    )


def add_context_args(parser: argparse.ArgumentParser) -> None:
    """Add aggregation and sequence context arguments."""
    group = parser.add_argument_group('aggregation and context')
    group.add_argument(
        '--kmer-size', '-k', type=int, default=None,
        help=f"Context k-mer size (default: {_DEFAULTS.kmer_size})"
    )
    group.add_argument(
        '--context-anchor', choices=CONTEXT_ANCHORS, default=None,
        help=f"Where the position sits in its k-mer (default: {_DEFAULTS.context_anchor})"
    )
    group.add_argument(
        '--reducer', choices=REDUCERS, default=None,
        help=f"How repeated events at one position are combined (default: {_DEFAULTS.reducer})"
    )


def add_region_args(parser: argparse.ArgumentParser) -> None:
    """Add --chrom, --start and --stop arguments."""
    group = parser.add_argument_group('region')
    group.add_argument(
        '--chrom', dest='region_contig', default=None,
        help="Only use positions on this contig"
    )
    group.add_argument(
        '--start', dest='region_start', type=int, default=None,
        help="Only use positions at or after this 0-based position (requires --chrom)"
    )
    group.add_argument(
        '--stop', dest='region_stop', type=int, default=None,
        help="Only use positions at or before this 0-based position (requires --chrom)"
    )


def add_scoring_args(parser: argparse.ArgumentParser) -> None:
    """Add --motif and --density-floor arguments."""
    group = parser.add_argument_group('scoring')
    group.add_argument(
        '--motif', dest='motifs', action='append', default=None,
        help="Only score contexts starting with this motif, as POS:MOTIF (e.g. 2:GC); repeatable"
    )
    group.add_argument(
        '--density-floor', type=float, default=None,
        help=f"Lower bound on model densities (default: {_DEFAULTS.density_floor})"
    )


def add_segmentation_args(parser: argparse.ArgumentParser) -> None:
    """Add segmentation arguments."""
    group = parser.add_argument_group('segmentation')
    group.add_argument(
        '--smoothing-window', type=int, default=None,
        help=f"Odd majority-vote window, 1 = off (default: {_DEFAULTS.smoothing_window})"
    )
    group.add_argument(
        '--max-gap', type=int, default=None,
        help=f"Largest gap that keeps a run open (default: {_DEFAULTS.max_gap})"
    )
    group.add_argument(
        '--gap-unit', choices=GAP_UNITS, default=None,
        help=f"Unit of --max-gap (default: {_DEFAULTS.gap_unit})"
    )
    group.add_argument(
        '--unscored-breaks-runs', action='store_true', default=None,
        help="Close runs at unscored positions"
    )
    group.add_argument(
        '--min-segment-length', type=int, default=None,
        help=f"Minimum positions per segment (default: {_DEFAULTS.min_segment_length})"
    )
    group.add_argument(
        '--short-segment-policy', choices=SHORT_SEGMENT_POLICIES, default=None,
        help=f"What happens to short segments (default: {_DEFAULTS.short_segment_policy})"
    )


def add_parallel_args(parser: argparse.ArgumentParser, default_cores: int = 1) -> None:
    """Add --cores argument."""
    parser.add_argument(
        '--cores', '-c', type=int, default=None,
        help=f"Worker threads (0=auto, default: {default_cores})"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    required: bool = True,
                    help_text: str = "Output directory") -> None:
    """Add -o/--outdir argument."""
    parser.add_argument(
        '-o', '--outdir', required=required,
        help=help_text
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output (progress bars)"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from smaccess import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )


def resolve_cores(cores: Optional[int]) -> Optional[int]:
    """0 means all CPUs; None leaves the config value in place."""
    if cores == 0:
        import os
        return os.cpu_count() or 1
    return cores


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """
    Build a validated PipelineConfig from parsed arguments.

    Starts from --config (or the defaults) and applies every option the user
    gave explicitly. Raises ConfigurationError for invalid values.
    """
    config_path = getattr(args, 'config', None)
    config = load_config(config_path) if config_path else PipelineConfig()

    changes = {}
    for name, value in vars(args).items():
        if name in _CONFIG_FIELDS and value is not None:
            changes[name] = value
    if 'motifs' in changes:
        changes['motifs'] = tuple(changes['motifs'])
    if 'sample_range' in changes:
        changes['sample_range'] = tuple(changes['sample_range'])

    cores = resolve_cores(getattr(args, 'cores', None))
    if cores is not None:
        changes['n_workers'] = cores

    return config.with_options(**changes)
