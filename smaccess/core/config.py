"""
Run configuration for training, scoring and segmentation.

A single frozen PipelineConfig is validated once, up front; invalid values
raise ConfigurationError before any read is touched. Configs round-trip
through JSON (``run_config.json`` next to trained models).
"""

import json
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

from smaccess.core.errors import ConfigurationError, MotifError


REDUCERS = ('mean', 'median')
CONTEXT_ANCHORS = ('start', 'center')
GAP_UNITS = ('bases', 'positions')
SHORT_SEGMENT_POLICIES = ('drop', 'merge')


@dataclass(frozen=True)
class PipelineConfig:
    # Reference model fitting
    n_components: int = 2
    em_tolerance: float = 1e-4
    em_max_iter: int = 100
    n_init: int = 1
    min_samples: int = 30
    max_samples_per_context: Optional[int] = 50000
    variance_floor: float = 1e-6
    sample_range: Optional[Tuple[float, float]] = None
    seed: int = 2456

    # Aggregation and context
    reducer: str = 'mean'
    kmer_size: int = 6
    context_anchor: str = 'start'
    # Region filter: 0-based, start and stop inclusive
    region_contig: Optional[str] = None
    region_start: Optional[int] = None
    region_stop: Optional[int] = None

    # Scoring
    density_floor: float = 1e-300
    motifs: Tuple[str, ...] = ()

    # Segmentation. smoothing_window=1 means no smoothing.
    smoothing_window: int = 1
    max_gap: int = 50
    gap_unit: str = 'bases'
    unscored_breaks_runs: bool = False
    min_segment_length: int = 1
    short_segment_policy: str = 'merge'

    # Execution
    n_workers: int = 1

    def validate(self) -> 'PipelineConfig':
        """Check every option; returns self so calls can be chained."""
        _require_int(self.n_components, 'n_components', minimum=1)
        _require_positive(self.em_tolerance, 'em_tolerance')
        _require_int(self.em_max_iter, 'em_max_iter', minimum=1)
        _require_int(self.n_init, 'n_init', minimum=1)
        _require_int(self.min_samples, 'min_samples', minimum=1)
        if self.min_samples < self.n_components:
            raise ConfigurationError(
                f"min_samples ({self.min_samples}) must be >= n_components ({self.n_components})")
        if self.max_samples_per_context is not None:
            _require_int(self.max_samples_per_context, 'max_samples_per_context', minimum=1)
            if self.max_samples_per_context < self.min_samples:
                raise ConfigurationError(
                    f"max_samples_per_context ({self.max_samples_per_context}) "
                    f"must be >= min_samples ({self.min_samples})")
        _require_positive(self.variance_floor, 'variance_floor')
        if self.sample_range is not None:
            if len(self.sample_range) != 2:
                raise ConfigurationError("sample_range must be a (low, high) pair")
            low, high = self.sample_range
            if not low < high:
                raise ConfigurationError(f"sample_range low ({low}) must be < high ({high})")
        _require_int(self.seed, 'seed', minimum=0)

        if self.reducer not in REDUCERS:
            raise ConfigurationError(f"reducer must be one of {REDUCERS}, got {self.reducer!r}")
        _require_int(self.kmer_size, 'kmer_size', minimum=1)
        if self.context_anchor not in CONTEXT_ANCHORS:
            raise ConfigurationError(
                f"context_anchor must be one of {CONTEXT_ANCHORS}, got {self.context_anchor!r}")
        if self.context_anchor == 'center' and self.kmer_size % 2 == 0:
            raise ConfigurationError("kmer_size must be odd when context_anchor is 'center'")
        if self.region_contig is not None and (not isinstance(self.region_contig, str) or not self.region_contig):
            raise ConfigurationError(f"region_contig must be a non-empty string, got {self.region_contig!r}")
        if self.region_contig is None and (self.region_start is not None or self.region_stop is not None):
            raise ConfigurationError("region_start and region_stop require region_contig")
        if self.region_start is not None:
            _require_int(self.region_start, 'region_start', minimum=0)
        if self.region_stop is not None:
            _require_int(self.region_stop, 'region_stop', minimum=0)
        if self.region_start is not None and self.region_stop is not None \
                and self.region_start > self.region_stop:
            raise ConfigurationError(
                f"region_start ({self.region_start}) must be <= region_stop ({self.region_stop})")

        if not (0.0 < self.density_floor < 1.0):
            raise ConfigurationError(f"density_floor must be in (0, 1), got {self.density_floor}")
        from smaccess.core.context import Motif
        for motif in self.motifs:
            try:
                Motif.parse(motif)
            except MotifError as e:
                raise ConfigurationError(f"invalid motif {motif!r}: {e}") from e

        _require_int(self.smoothing_window, 'smoothing_window', minimum=1)
        if self.smoothing_window % 2 == 0:
            raise ConfigurationError(f"smoothing_window must be odd, got {self.smoothing_window}")
        _require_int(self.max_gap, 'max_gap', minimum=0)
        if self.gap_unit not in GAP_UNITS:
            raise ConfigurationError(f"gap_unit must be one of {GAP_UNITS}, got {self.gap_unit!r}")
        if not isinstance(self.unscored_breaks_runs, bool):
            raise ConfigurationError("unscored_breaks_runs must be a bool")
        _require_int(self.min_segment_length, 'min_segment_length', minimum=1)
        if self.short_segment_policy not in SHORT_SEGMENT_POLICIES:
            raise ConfigurationError(
                f"short_segment_policy must be one of {SHORT_SEGMENT_POLICIES}, "
                f"got {self.short_segment_policy!r}")

        _require_int(self.n_workers, 'n_workers', minimum=1)
        return self

    def with_options(self, **changes) -> 'PipelineConfig':
        """Copy with some options replaced. The result is validated."""
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['motifs'] = list(self.motifs)
        if self.sample_range is not None:
            d['sample_range'] = list(self.sample_range)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'PipelineConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        values = dict(d)
        if values.get('motifs') is not None:
            values['motifs'] = tuple(values['motifs'])
        if values.get('sample_range') is not None:
            values['sample_range'] = tuple(values['sample_range'])
        return cls(**values).validate()


def load_config(filepath: str) -> PipelineConfig:
    """Load and validate a JSON configuration file."""
    try:
        with open(filepath, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration {filepath}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration {filepath} must hold a JSON object")
    return PipelineConfig.from_dict(data)


def save_config(config: PipelineConfig, filepath: str):
    with open(filepath, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)


def _require_int(value, name: str, minimum: int):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")


def _require_positive(value, name: str):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if not value > 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}")
