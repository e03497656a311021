"""
Feature Extractor
Convolutional network mapping an [N, H, W, 3] image tensor to a tanh-bounded embedding.
"""

import logging
from typing import Any, Dict

import torch
import torch.nn as nn

from .config import IdentificationConfig, MIN_IMAGE_SIZE
from .errors import Failure, ModelBuildError, Result, Success


CONV_FILTERS = (32, 64, 128, 256)
CONV_DROPOUT_RATES = (0.10, 0.15, 0.20)
DENSE_UNITS = 512
DENSE_DROPOUT_RATE = 0.30
KERNEL_SIZE = 3


class FeatureExtractor(nn.Module):
    """
    Four conv blocks followed by global average pooling and a dense embedding head.

    The first three blocks are conv -> ReLU -> 2x2 max-pool -> dropout; the fourth
    is conv -> ReLU -> global average pooling. The embedding is squashed with tanh
    so feature magnitudes stay comparable between the two branches of a pair.
    """

    def __init__(self, image_size: int = 224, feature_size: int = 256):
        """
        Initialize the feature extractor.

        Args:
            image_size: Edge length of the square input images
            feature_size: Dimension of the output embedding
        """
        super(FeatureExtractor, self).__init__()

        if image_size < MIN_IMAGE_SIZE:
            raise ValueError(f"Image size must be >= {MIN_IMAGE_SIZE}, got {image_size}")
        if feature_size < 1:
            raise ValueError(f"Feature size must be >= 1, got {feature_size}")

        self.image_size = image_size
        self.feature_size = feature_size
        self.logger = logging.getLogger(__name__)

        layers = []
        in_channels = 3
        for index, filters in enumerate(CONV_FILTERS):
            layers.append(nn.Conv2d(in_channels, filters, KERNEL_SIZE, padding='same'))
            layers.append(nn.ReLU(inplace=True))
            if index < len(CONV_DROPOUT_RATES):
                layers.append(nn.MaxPool2d(2))
                layers.append(nn.Dropout(CONV_DROPOUT_RATES[index]))
            in_channels = filters

        layers.append(nn.AdaptiveAvgPool2d(1))
        layers.append(nn.Flatten())
        self.backbone = nn.Sequential(*layers)

        self.embedding_head = nn.Sequential(
            nn.Linear(CONV_FILTERS[-1], DENSE_UNITS),
            nn.ReLU(inplace=True),
            nn.Dropout(DENSE_DROPOUT_RATE),
            nn.Linear(DENSE_UNITS, feature_size),
            nn.Tanh()
        )

        self._initialize_weights()

        self.logger.info(f"Initialized feature extractor: image_size={image_size}, feature_size={feature_size}")

    def _initialize_weights(self):
        """Glorot-uniform weights and zero biases."""
        for m in self.modules():
            if isinstance(m, (nn.Conv2d, nn.Linear)):
                nn.init.xavier_uniform_(m.weight)
                if m.bias is not None:
                    nn.init.constant_(m.bias, 0)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: Image tensor of shape (batch_size, height, width, 3)

        Returns:
            Embedding tensor of shape (batch_size, feature_size)
        """
        if x.dim() != 4 or x.shape[-1] != 3:
            raise ValueError(f"Expected input of shape [N, H, W, 3], got {list(x.shape)}")

        features = self.backbone(x.permute(0, 3, 1, 2))
        return self.embedding_head(features)

    def topology(self) -> Dict[str, Any]:
        """Architecture description stored alongside the weights."""
        return {
            'class_name': 'FeatureExtractor',
            'config': {
                'name': 'feature_extractor',
                'image_size': self.image_size,
                'feature_size': self.feature_size,
                'conv_filters': list(CONV_FILTERS),
                'kernel_size': KERNEL_SIZE,
                'conv_dropout_rates': list(CONV_DROPOUT_RATES),
                'dense_units': DENSE_UNITS,
                'dense_dropout_rate': DENSE_DROPOUT_RATE,
                'embedding_activation': 'tanh',
            },
        }

    @classmethod
    def from_topology(cls, topology: Dict[str, Any]) -> "FeatureExtractor":
        """Rebuild an (untrained) extractor from a stored architecture description."""
        if topology.get('class_name') != 'FeatureExtractor':
            raise ValueError(f"Not a feature extractor topology: {topology.get('class_name')}")

        config = topology.get('config', {})
        if list(config.get('conv_filters', CONV_FILTERS)) != list(CONV_FILTERS):
            raise ValueError(f"Unsupported conv filters: {config.get('conv_filters')}")

        return cls(image_size=int(config['image_size']), feature_size=int(config['feature_size']))


def build_feature_extractor(config: IdentificationConfig) -> Result:
    """
    Factory function to create the feature extractor from configuration.

    Construction failures are returned as a ``Failure`` so the caller decides
    whether to abort initialization.

    Args:
        config: Identification configuration

    Returns:
        Success(FeatureExtractor) or Failure
    """
    try:
        return Success(FeatureExtractor(image_size=config.image_size, feature_size=config.feature_size))
    except Exception as e:
        logging.getLogger(__name__).error(f"Feature extractor creation failed: {e}")
        return Failure.from_exception(ModelBuildError(f"Feature extractor creation failed: {e}"))
