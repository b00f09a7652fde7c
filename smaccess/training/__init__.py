"""Reference model training from control datasets."""

from smaccess.training.trainer import (
    ControlDataset,
    TrainingReport,
    rank_contexts,
    train_model_set,
    train_reference_models,
)
