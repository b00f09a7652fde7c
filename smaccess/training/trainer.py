"""
Reference model training.

Fits one Gaussian mixture per sequence context from a labelled control
dataset (fully accessible = positive, fully inaccessible = negative).
Contexts are independent, so they are fitted on a thread pool; each context
draws from its own generator seeded by (seed, crc32(context)), which makes
the result independent of worker count and scheduling order.
"""

import warnings
import zlib
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from smaccess.core.config import PipelineConfig
from smaccess.core.errors import ConvergenceWarning, TrainingError
from smaccess.core.mixture import MixtureModel, fit_mixture, kl_divergence
from smaccess.core.model_io import ModelSet, ReferenceModels
from smaccess.core.records import LABELS, NEGATIVE, POSITIVE, AggregatedRead


@dataclass(frozen=True, eq=False)
class ControlDataset:
    """Signal samples of one control label, grouped by sequence context."""
    label: str
    samples: Mapping[str, np.ndarray]
    n_discarded: int = 0

    def __post_init__(self):
        if self.label not in LABELS:
            raise ValueError(f"label must be one of {LABELS}, got {self.label!r}")
        frozen = {}
        for ctx, values in self.samples.items():
            arr = np.array(values, dtype=float).ravel()
            arr.setflags(write=False)
            frozen[ctx] = arr
        object.__setattr__(self, 'samples', MappingProxyType(frozen))

    @property
    def contexts(self) -> List[str]:
        return sorted(self.samples)

    @property
    def n_samples(self) -> int:
        return sum(len(v) for v in self.samples.values())

    @classmethod
    def from_reads(cls, label: str, reads: Iterable[AggregatedRead],
                   sample_range: Optional[Tuple[float, float]] = None) -> 'ControlDataset':
        """Collect aggregated values per context, dropping values outside sample_range."""
        grouped = defaultdict(list)
        discarded = 0
        for read in reads:
            for pos in read.positions:
                value = pos.summary_value
                if sample_range is not None and not (sample_range[0] <= value <= sample_range[1]):
                    discarded += 1
                    continue
                grouped[pos.sequence_context].append(value)
        return cls(label=label, samples=grouped, n_discarded=discarded)

    @classmethod
    def from_frame(cls, label: str, df: pd.DataFrame,
                   sample_range: Optional[Tuple[float, float]] = None,
                   context_col: str = 'context', value_col: str = 'value') -> 'ControlDataset':
        """Build from a table with one row per aggregated position."""
        for col in (context_col, value_col):
            if col not in df.columns:
                raise ValueError(f"Missing required column '{col}'")
        data = df[[context_col, value_col]].dropna()
        data = data[np.isfinite(data[value_col].astype(float))]
        n_before = len(data)
        if sample_range is not None:
            low, high = sample_range
            data = data[(data[value_col] >= low) & (data[value_col] <= high)]
        samples = {ctx: group[value_col].to_numpy(dtype=float)
                   for ctx, group in data.groupby(context_col, sort=True)}
        return cls(label=label, samples=samples, n_discarded=n_before - len(data))


@dataclass
class TrainingReport:
    """Outcome of fitting one model set."""
    label: str
    fitted: List[str] = field(default_factory=list)
    skipped: Dict[str, int] = field(default_factory=dict)  # context -> n samples
    non_converged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    n_samples_used: Dict[str, int] = field(default_factory=dict)
    n_discarded: int = 0

    def get_summary(self) -> dict:
        used = list(self.n_samples_used.values())
        return {
            'label': self.label,
            'contexts_fitted': len(self.fitted),
            'contexts_skipped': len(self.skipped),
            'contexts_non_converged': len(self.non_converged),
            'contexts_failed': len(self.failed),
            'samples_used': int(sum(used)),
            'samples_discarded': self.n_discarded,
            'median_samples_per_context': float(np.median(used)) if used else 0.0,
        }

    def write_summary(self, filepath: str, mode: str = 'w'):
        """Write summary statistics to a text file."""
        summary = self.get_summary()
        with open(filepath, mode) as f:
            f.write(f"smaccess Training Summary ({self.label})\n")
            f.write("=" * 50 + "\n\n")
            f.write(f"Contexts fitted:            {summary['contexts_fitted']:,}\n")
            f.write(f"Contexts skipped:           {summary['contexts_skipped']:,}\n")
            f.write(f"Contexts not converged:     {summary['contexts_non_converged']:,}\n")
            f.write(f"Contexts failed:            {summary['contexts_failed']:,}\n")
            f.write(f"Samples used:               {summary['samples_used']:,}\n")
            f.write(f"Samples discarded:          {summary['samples_discarded']:,}\n")
            f.write(f"Median samples/context:     {summary['median_samples_per_context']:.0f}\n")
            if self.non_converged:
                f.write("\nNot converged: " + ', '.join(sorted(self.non_converged)) + "\n")
            for ctx, message in sorted(self.failed.items()):
                f.write(f"Failed {ctx}: {message}\n")
            f.write("\n")


def context_seed(seed: int, context: str) -> List[int]:
    """Seed material for one context's generator."""
    return [seed, zlib.crc32(context.encode('ascii', 'replace'))]


def _fit_context(context: str, samples: np.ndarray, config: PipelineConfig) -> Tuple[MixtureModel, int]:
    rng = np.random.default_rng(context_seed(config.seed, context))
    cap = config.max_samples_per_context
    if cap is not None and len(samples) > cap:
        idx = np.sort(rng.choice(len(samples), size=cap, replace=False))
        samples = samples[idx]
    model = fit_mixture(
        samples,
        n_components=config.n_components,
        tolerance=config.em_tolerance,
        max_iter=config.em_max_iter,
        variance_floor=config.variance_floor,
        n_init=config.n_init,
        seed=int(rng.integers(2**32)),
        warn=False,
    )
    return model, len(samples)


def train_model_set(dataset: ControlDataset, config: Optional[PipelineConfig] = None,
                    n_workers: Optional[int] = None,
                    verbose: bool = False) -> Tuple[ModelSet, TrainingReport]:
    """
    Fit a ModelSet from a control dataset.

    Contexts with fewer than config.min_samples samples are skipped and
    recorded. Non-converged fits are kept (best iterate) and reported with a
    single ConvergenceWarning.

    Raises:
        ConfigurationError: invalid config
        TrainingError: no context could be fitted
    """
    config = (config or PipelineConfig()).validate()
    n_workers = n_workers or config.n_workers
    report = TrainingReport(label=dataset.label, n_discarded=dataset.n_discarded)

    to_fit = []
    for ctx in dataset.contexts:
        n = len(dataset.samples[ctx])
        if n < config.min_samples:
            report.skipped[ctx] = n
        else:
            to_fit.append(ctx)

    models = {}
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = {executor.submit(_fit_context, ctx, dataset.samples[ctx], config): ctx
                   for ctx in to_fit}
        completed = as_completed(futures)
        if verbose:
            completed = tqdm(completed, total=len(futures), desc=f"Fitting {dataset.label}", leave=False)
        for future in completed:
            ctx = futures[future]
            try:
                model, n_used = future.result()
            except (ValueError, FloatingPointError) as e:
                report.failed[ctx] = str(e)
                continue
            models[ctx] = model
            report.n_samples_used[ctx] = n_used
            if not model.converged:
                report.non_converged.append(ctx)

    if not models:
        raise TrainingError(
            f"No {dataset.label} context could be fitted "
            f"({len(report.skipped)} below min_samples={config.min_samples}, "
            f"{len(report.failed)} failed)")

    report.fitted = sorted(models)
    report.non_converged.sort()
    if report.non_converged:
        warnings.warn(
            f"{len(report.non_converged):,} {dataset.label} contexts did not converge "
            f"within {config.em_max_iter} iterations", ConvergenceWarning, stacklevel=2)

    metadata = {
        'kmer_size': config.kmer_size,
        'context_anchor': config.context_anchor,
        'n_components': config.n_components,
        'seed': config.seed,
    }
    return ModelSet(label=dataset.label, models=models, metadata=metadata), report


def train_reference_models(positive: ControlDataset, negative: ControlDataset,
                           config: Optional[PipelineConfig] = None,
                           n_workers: Optional[int] = None,
                           verbose: bool = False) -> Tuple[ReferenceModels, TrainingReport, TrainingReport]:
    """Fit the positive and negative model sets concurrently."""
    if positive.label != POSITIVE or negative.label != NEGATIVE:
        raise ValueError(f"Expected ({POSITIVE}, {NEGATIVE}) datasets, "
                         f"got ({positive.label}, {negative.label})")
    config = (config or PipelineConfig()).validate()

    with ThreadPoolExecutor(max_workers=2) as executor:
        pos_future = executor.submit(train_model_set, positive, config, n_workers, verbose)
        neg_future = executor.submit(train_model_set, negative, config, n_workers, verbose)
        pos_models, pos_report = pos_future.result()
        neg_models, neg_report = neg_future.result()

    return ReferenceModels(positive=pos_models, negative=neg_models), pos_report, neg_report


def rank_contexts(models: ReferenceModels, n_samples: int = 10000, seed: int = 2456) -> pd.DataFrame:
    """
    Rank contexts shared by both sets by symmetric KL divergence.

    Higher divergence means the context separates accessible from
    inaccessible signal better.
    """
    rows = []
    for ctx in sorted(set(models.positive) & set(models.negative)):
        pos_model = models.positive[ctx]
        neg_model = models.negative[ctx]
        kl_pn = kl_divergence(pos_model, neg_model, n_samples=n_samples, seed=seed)
        kl_np = kl_divergence(neg_model, pos_model, n_samples=n_samples, seed=seed)
        rows.append({
            'context': ctx,
            'kl_pos_neg': kl_pn,
            'kl_neg_pos': kl_np,
            'symmetric_kl': kl_pn + kl_np,
        })

    df = pd.DataFrame(rows, columns=['context', 'kl_pos_neg', 'kl_neg_pos', 'symmetric_kl'])
    if len(df) > 0:
        df = df.sort_values(['symmetric_kl', 'context'], ascending=[False, True]).reset_index(drop=True)
        df['rank'] = np.arange(1, len(df) + 1)
    else:
        df['rank'] = pd.Series(dtype=int)
    return df
