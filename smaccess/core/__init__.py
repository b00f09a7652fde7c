"""Records, configuration, sequence context, mixtures and model storage."""

from smaccess.core.config import PipelineConfig
from smaccess.core.aggregate import PositionAggregator, aggregate_events
from smaccess.core.context import Motif, ReferenceContext
from smaccess.core.mixture import GaussianMixture, MixtureModel, fit_mixture, kl_divergence
from smaccess.core.model_io import ModelSet, ReferenceModels, load_model_set, save_model_set
from smaccess.core.stats import PipelineStats
