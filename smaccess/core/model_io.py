"""
smaccess model I/O module

A model store holds one ModelSet (context -> MixtureModel) for one control
label. Stores are JSON: human-readable and portable, and Python floats
round-trip through json exactly, so a reloaded model scores identically.

Saving is JSON-only. A non-.json path gets its extension replaced and a
warning is issued.
"""

import json
import os
import warnings
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional

from smaccess.core.errors import ModelStoreError
from smaccess.core.mixture import MixtureModel
from smaccess.core.records import LABELS, NEGATIVE, POSITIVE


STORE_TYPE = 'smaccess.ModelSet'
STORE_VERSION = '1.0'


@dataclass(frozen=True)
class ModelSet(Mapping):
    """Immutable mapping from sequence context to fitted mixture, for one label."""
    label: str
    models: Mapping[str, MixtureModel]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.label, str) or self.label not in LABELS:
            raise ValueError(f"label must be one of {LABELS}, got {self.label!r}")
        if not isinstance(self.models, Mapping):
            raise ValueError(f"models must be a mapping, got {type(self.models).__name__}")
        if not isinstance(self.metadata, Mapping):
            raise ValueError(f"metadata must be a mapping, got {type(self.metadata).__name__}")
        object.__setattr__(self, 'models', MappingProxyType(dict(self.models)))
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    def __getitem__(self, context: str) -> MixtureModel:
        return self.models[context]

    def __iter__(self) -> Iterator[str]:
        return iter(self.models)

    def __len__(self) -> int:
        return len(self.models)

    def __eq__(self, other):
        if not isinstance(other, ModelSet):
            return NotImplemented
        return self.label == other.label and dict(self.models) == dict(other.models)

    __hash__ = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model_type': STORE_TYPE,
            'version': STORE_VERSION,
            'label': self.label,
            'metadata': dict(self.metadata),
            'models': {ctx: self.models[ctx].to_dict() for ctx in sorted(self.models)},
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ModelSet':
        if d.get('model_type') != STORE_TYPE:
            raise ValueError(f"Not a smaccess model store (model_type={d.get('model_type')!r})")
        models_data = d.get('models')
        if not isinstance(models_data, dict):
            raise ValueError("'models' must be an object mapping context -> mixture")
        models = {}
        for ctx, model_data in models_data.items():
            try:
                models[ctx] = MixtureModel.from_dict(model_data)
            except ValueError as e:
                raise ValueError(f"context {ctx}: {e}") from e
        metadata = d.get('metadata')
        if metadata is None:
            metadata = {}
        elif not isinstance(metadata, dict):
            raise ValueError(f"'metadata' must be an object, got {type(metadata).__name__}")
        return cls(label=d.get('label'), models=models, metadata=metadata)


@dataclass(frozen=True)
class ReferenceModels:
    """The positive and negative model sets used for scoring."""
    positive: ModelSet
    negative: ModelSet

    def __post_init__(self):
        if self.positive.label != POSITIVE or self.negative.label != NEGATIVE:
            raise ModelStoreError(
                f"Expected ({POSITIVE}, {NEGATIVE}) model sets, got "
                f"({self.positive.label}, {self.negative.label})")

    def swapped(self) -> 'ReferenceModels':
        """Exchange the roles of the two sets (scores change sign)."""
        return ReferenceModels(
            positive=ModelSet(POSITIVE, self.negative.models, self.negative.metadata),
            negative=ModelSet(NEGATIVE, self.positive.models, self.positive.metadata),
        )


# =============================================================================
# Saving (JSON only)
# =============================================================================

def save_model_set(model_set: ModelSet, filepath: str) -> str:
    """
    Save a model set to JSON.

    Args:
        model_set: Models to save
        filepath: Output path (.json)

    Returns:
        The path actually written
    """
    if not filepath.endswith('.json'):
        old_path = filepath
        base, _ = os.path.splitext(filepath)
        filepath = base + '.json'
        warnings.warn(
            f"Only JSON format is supported for saving. "
            f"Saving to '{filepath}' instead of '{old_path}'."
        )

    with open(filepath, 'w') as f:
        json.dump(model_set.to_dict(), f, indent=2)
    return filepath


# =============================================================================
# Loading
# =============================================================================

def load_model_set(filepath: str, label: Optional[str] = None) -> ModelSet:
    """
    Load a model set.

    Args:
        filepath: Path to a store written by save_model_set
        label: If given, the stored label must match

    Raises:
        ModelStoreError: file missing, unreadable, corrupt, or label mismatch
    """
    try:
        with open(filepath, 'r') as f:
            data = json.load(f)
    except OSError as e:
        raise ModelStoreError(f"Cannot read model store {filepath}: {e}") from e
    except json.JSONDecodeError as e:
        raise ModelStoreError(f"Model store {filepath} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ModelStoreError(f"Model store {filepath} must hold a JSON object")
    try:
        model_set = ModelSet.from_dict(data)
    except (ValueError, TypeError) as e:
        raise ModelStoreError(f"Invalid model store {filepath}: {e}") from e

    if label is not None and model_set.label != label:
        raise ModelStoreError(
            f"Model store {filepath} holds '{model_set.label}' models, expected '{label}'")
    return model_set


def load_reference_models(positive_path: str, negative_path: str) -> ReferenceModels:
    """Load both model sets, checking that each carries the expected label."""
    return ReferenceModels(
        positive=load_model_set(positive_path, label=POSITIVE),
        negative=load_model_set(negative_path, label=NEGATIVE),
    )
