"""
Shared pytest fixtures for smaccess tests.
"""
import pytest
import numpy as np

from smaccess.core.config import PipelineConfig
from smaccess.core.mixture import MixtureModel
from smaccess.core.model_io import ModelSet, ReferenceModels
from smaccess.core.records import AggregatedPosition, RawEvent, ScoredPosition, ScoredRead


@pytest.fixture
def reference_sequences():
    """Two small contigs with known sequence."""
    return {
        'chr1': 'ACGTACGTAAGGCCTTACGTACGTAAGGCCTTACGTACGT',
        'chr2': 'GGGGCCCCAAAATTTTNNNNACGTACGT',
    }


@pytest.fixture
def two_state_samples():
    """Signal samples for an open (high) and closed (low) control."""
    rng = np.random.default_rng(7)
    positive = np.concatenate([rng.normal(100.0, 2.0, 400), rng.normal(110.0, 2.0, 400)])
    negative = np.concatenate([rng.normal(80.0, 2.0, 400), rng.normal(90.0, 2.0, 400)])
    return positive, negative


@pytest.fixture
def reference_models():
    """Hand-built model sets: AAAAAA has both labels, CCCCCC only positive."""
    pos = MixtureModel(weights=[0.5, 0.5], means=[100.0, 110.0], variances=[4.0, 4.0])
    neg = MixtureModel(weights=[0.5, 0.5], means=[80.0, 90.0], variances=[4.0, 4.0])
    return ReferenceModels(
        positive=ModelSet('positive', {'AAAAAA': pos, 'CCCCCC': pos}),
        negative=ModelSet('negative', {'AAAAAA': neg, 'GGGGGG': neg}),
    )


@pytest.fixture
def default_config():
    return PipelineConfig()


def make_events(read_id, positions, values, context='AAAAAA', contig='chr1', strand='+', dwell=None):
    """One RawEvent per (position, value) pair."""
    return [
        RawEvent(read_id=read_id, contig=contig, reference_position=p, signal_value=v,
                 sequence_context=context, dwell_time=dwell, strand=strand)
        for p, v in zip(positions, values)
    ]


def make_scored_read(pairs, read_id='read1', contig='chr1', strand='+'):
    """ScoredRead from (position, llr) pairs; llr None means unscored."""
    positions = []
    for pos, llr in pairs:
        agg = AggregatedPosition(read_id=read_id, contig=contig, reference_position=pos,
                                 sequence_context='AAAAAA', summary_value=0.0, n_events=1,
                                 strand=strand)
        reason = None if llr is not None else 'no_models'
        positions.append(ScoredPosition(agg, llr, reason))
    return ScoredRead(read_id, contig, strand, tuple(positions))
