"""
smaccess - chromatin accessibility scoring and single-molecule segmentation
from per-position signal measurements.
"""

__version__ = "1.0.0"

from smaccess.core.config import PipelineConfig, load_config, save_config
from smaccess.core.records import (
    RawEvent, AggregatedPosition, AggregatedRead,
    ScoredPosition, ScoredRead, MoleculeSegment,
)
from smaccess.core.mixture import MixtureModel, fit_mixture
from smaccess.core.model_io import ModelSet, ReferenceModels, load_reference_models, save_model_set
