"""
Identification configuration
Shared settings for preprocessing, model construction, training and comparison.
"""

from dataclasses import dataclass, field, fields, replace, asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
import yaml


# Names used by the persisted model document and older configuration files
CAMEL_CASE_ALIASES = {
    'imageSize': 'image_size',
    'featureSize': 'feature_size',
    'batchSize': 'batch_size',
    'validationSplit': 'validation_split',
    'learningRate': 'learning_rate',
    'predictionThreshold': 'prediction_threshold',
    'taskName': 'task_name',
    'localStorageKey': 'storage_key',
    'storageKey': 'storage_key',
}

SUPPORTED_DEVICES = ('auto', 'cpu', 'cuda')

# Three 2x2 max-pool stages in the feature extractor
MIN_IMAGE_SIZE = 8


@dataclass(frozen=True)
class IdentificationConfig:
    """Complete identification configuration"""
    # Image / model geometry
    image_size: int = 224
    feature_size: int = 256
    augment: bool = True

    # Training hyperparameters
    epochs: int = 100
    batch_size: int = 4
    validation_split: float = 0.2
    optimizer: str = "adam"
    learning_rate: float = 0.0001
    loss: str = "binary_crossentropy"
    metrics: Tuple[str, ...] = field(default_factory=lambda: ("accuracy",))

    # Comparison
    prediction_threshold: float = 0.7

    # Bookkeeping
    task_name: str = "pet-identification"
    storage_key: str = "pair-array"
    device: str = "auto"
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration"""
        if isinstance(self.metrics, (list, str)):
            metrics = (self.metrics,) if isinstance(self.metrics, str) else tuple(self.metrics)
            object.__setattr__(self, 'metrics', metrics)

        if self.image_size < MIN_IMAGE_SIZE:
            raise ValueError(f"Image size must be >= {MIN_IMAGE_SIZE}, got {self.image_size}")

        if self.feature_size < 1:
            raise ValueError(f"Feature size must be >= 1, got {self.feature_size}")

        if self.epochs < 1:
            raise ValueError("Epochs must be >= 1")

        if self.batch_size < 1:
            raise ValueError("Batch size must be >= 1")

        if not 0.0 <= self.validation_split < 1.0:
            raise ValueError(f"Validation split must be in [0, 1), got {self.validation_split}")

        if not 0.0 <= self.prediction_threshold <= 1.0:
            raise ValueError(f"Prediction threshold must be in [0, 1], got {self.prediction_threshold}")

        if self.learning_rate <= 0:
            raise ValueError("Learning rate must be > 0")

        if self.device not in SUPPORTED_DEVICES:
            raise ValueError(f"Invalid device: {self.device}. Must be one of {SUPPORTED_DEVICES}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IdentificationConfig":
        """
        Build a configuration from a plain record.

        Unspecified fields fall back to their defaults. Both snake_case and the
        camelCase names of the persisted document are accepted.
        """
        known = {f.name for f in fields(cls)}
        values = {}

        for key, value in data.items():
            name = CAMEL_CASE_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown configuration field: {key}")
            values[name] = value

        return cls(**values)

    @classmethod
    def from_yaml(cls, config_path: str = "config.yaml", section: str = "identification") -> "IdentificationConfig":
        """Load configuration from YAML file"""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        return cls.from_dict(config_data.get(section) or {})

    def with_overrides(self, **overrides) -> "IdentificationConfig":
        """Return a copy with the given fields replaced"""
        if not overrides:
            return self
        normalized = {CAMEL_CASE_ALIASES.get(k, k): v for k, v in overrides.items()}
        return replace(self, **normalized)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        data = asdict(self)
        data['metrics'] = list(self.metrics)
        return data


def load_config(config_path: Optional[str] = None, **overrides) -> IdentificationConfig:
    """
    Convenience function to load the identification configuration

    Args:
        config_path: Path to config.yaml, or None for defaults
        **overrides: Fields replaced after loading

    Returns:
        IdentificationConfig instance
    """
    config = IdentificationConfig.from_yaml(config_path) if config_path else IdentificationConfig()
    return config.with_overrides(**overrides)
