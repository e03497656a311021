"""
Siamese Network Architecture
Two weight-sharing feature extractor branches feeding a binary similarity head.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import torch
import torch.nn as nn
import torch.optim as optim

from .config import IdentificationConfig
from .errors import ModelBuildError, TrainingError
from .feature_extractor import FeatureExtractor


DECISION_UNITS = (256, 128, 64)
DECISION_DROPOUT_RATES = (0.3, 0.2)

EpochCallback = Callable[[int, Dict[str, float]], None]


class SiameseNetwork(nn.Module):
    """
    Siamese network deciding whether two images show the same animal.

    Both inputs go through the *same* feature extractor instance; the two
    embeddings are concatenated and passed through a dense decision head ending
    in a sigmoid, read as P(same animal).
    """

    def __init__(self, feature_extractor: FeatureExtractor):
        """
        Initialize the Siamese network.

        Args:
            feature_extractor: Shared embedding network applied to both inputs
        """
        super(SiameseNetwork, self).__init__()

        self.feature_extractor = feature_extractor
        self.logger = logging.getLogger(__name__)

        first, second, third = DECISION_UNITS
        self.decision_head = nn.Sequential(
            nn.Linear(feature_extractor.feature_size * 2, first),
            nn.ReLU(inplace=True),
            nn.Dropout(DECISION_DROPOUT_RATES[0]),
            nn.Linear(first, second),
            nn.ReLU(inplace=True),
            nn.Dropout(DECISION_DROPOUT_RATES[1]),
            nn.Linear(second, third),
            nn.ReLU(inplace=True),
            nn.Linear(third, 1),
            nn.Sigmoid()
        )

        self._initialize_weights()

        self.logger.info(f"Initialized Siamese network, feature_size={feature_extractor.feature_size}")

    @property
    def image_size(self) -> int:
        return self.feature_extractor.image_size

    def _initialize_weights(self):
        """Initialize the weights of the decision head."""
        for m in self.decision_head.modules():
            if isinstance(m, nn.Linear):
                nn.init.xavier_uniform_(m.weight)
                if m.bias is not None:
                    nn.init.constant_(m.bias, 0)

    def forward(self, image_a: torch.Tensor, image_b: torch.Tensor) -> torch.Tensor:
        """
        Forward pass for Siamese network.

        Args:
            image_a: First image tensor of shape (batch_size, height, width, 3)
            image_b: Second image tensor of shape (batch_size, height, width, 3)

        Returns:
            Similarity scores of shape (batch_size, 1)
        """
        features_a = self.feature_extractor(image_a)
        features_b = self.feature_extractor(image_b)
        concatenated = torch.cat([features_a, features_b], dim=1)
        return self.decision_head(concatenated)

    def topology(self) -> Dict[str, Any]:
        return {
            'class_name': 'SiameseNetwork',
            'config': {
                'name': 'siamese_network',
                'inputs': ['image_a', 'image_b'],
                'merge': 'concatenate',
                'decision_units': list(DECISION_UNITS),
                'decision_dropout_rates': list(DECISION_DROPOUT_RATES),
                'output_activation': 'sigmoid',
                'feature_extractor': self.feature_extractor.topology(),
            },
        }

    @classmethod
    def from_topology(cls, topology: Dict[str, Any],
                      feature_extractor: Optional[FeatureExtractor] = None) -> "SiameseNetwork":
        """
        Rebuild a network from a stored architecture description.

        When ``feature_extractor`` is given it is used as the shared branch,
        otherwise one is rebuilt from the nested extractor topology.
        """
        if topology.get('class_name') != 'SiameseNetwork':
            raise ValueError(f"Not a siamese network topology: {topology.get('class_name')}")

        config = topology.get('config', {})
        if list(config.get('decision_units', DECISION_UNITS)) != list(DECISION_UNITS):
            raise ValueError(f"Unsupported decision head: {config.get('decision_units')}")

        if feature_extractor is None:
            feature_extractor = FeatureExtractor.from_topology(config['feature_extractor'])

        return cls(feature_extractor)


def create_optimizer(parameters, config: IdentificationConfig) -> optim.Optimizer:
    """Create the optimizer named in the configuration."""
    optimizer_type = config.optimizer.lower()
    if optimizer_type == 'adam':
        return optim.Adam(parameters, lr=config.learning_rate)
    elif optimizer_type == 'sgd':
        return optim.SGD(parameters, lr=config.learning_rate, momentum=0.9)
    elif optimizer_type == 'rmsprop':
        return optim.RMSprop(parameters, lr=config.learning_rate)
    else:
        raise ValueError(f"Unsupported optimizer: {config.optimizer}")


def create_loss_function(config: IdentificationConfig) -> nn.Module:
    """Create the loss function named in the configuration."""
    if config.loss in ('binary_crossentropy', 'binaryCrossentropy'):
        return nn.BCELoss()
    else:
        raise ValueError(f"Unsupported loss type: {config.loss}")


def _check_metrics(metrics: Tuple[str, ...]) -> List[str]:
    supported = []
    for metric in metrics:
        if metric not in ('accuracy', 'acc'):
            raise ValueError(f"Unsupported metric: {metric}")
        supported.append('acc')
    return supported


class CompiledModel:
    """
    A siamese network bundled with its optimizer, loss and metrics.

    ``fit`` is a coroutine that yields to the event loop after every epoch;
    ``predict`` runs inference in eval mode without gradients.
    """

    def __init__(self, network: SiameseNetwork, config: IdentificationConfig, device: str = 'cpu'):
        self.network = network
        self.device = device
        self.logger = logging.getLogger(__name__)

        self.network.to(device)
        self.optimizer = create_optimizer(self.network.parameters(), config)
        self.criterion = create_loss_function(config)
        self.metrics = _check_metrics(config.metrics)

        self.logger.info(
            f"Compiled siamese model: optimizer={config.optimizer}, lr={config.learning_rate}, "
            f"loss={config.loss}, device={device}"
        )

    @property
    def feature_extractor(self) -> FeatureExtractor:
        return self.network.feature_extractor

    def predict(self, image_a: torch.Tensor, image_b: torch.Tensor) -> torch.Tensor:
        """Similarity scores of shape (batch_size, 1), on the CPU."""
        self.network.eval()
        with torch.no_grad():
            scores = self.network(image_a.to(self.device), image_b.to(self.device))
        return scores.cpu()

    def _run_batches(self, images_a: torch.Tensor, images_b: torch.Tensor, labels: torch.Tensor,
                     indices: torch.Tensor, batch_size: int, train: bool) -> Tuple[float, float]:
        total_loss = 0.0
        correct = 0
        count = 0

        self.network.train(train)

        for start in range(0, len(indices), batch_size):
            batch = indices[start:start + batch_size]
            a = images_a[batch].to(self.device)
            b = images_b[batch].to(self.device)
            y = labels[batch].to(self.device)

            if train:
                self.optimizer.zero_grad()
                scores = self.network(a, b).squeeze(1)
                loss = self.criterion(scores, y)
                loss.backward()
                self.optimizer.step()
            else:
                with torch.no_grad():
                    scores = self.network(a, b).squeeze(1)
                    loss = self.criterion(scores, y)

            total_loss += loss.item() * len(batch)
            correct += ((scores.detach() > 0.5).float() == y).sum().item()
            count += len(batch)

            self.logger.debug(f"Batch {start // batch_size}: loss={loss.item():.4f}")

        if count == 0:
            return 0.0, 0.0
        return total_loss / count, correct / count

    async def fit(self, images_a: torch.Tensor, images_b: torch.Tensor, labels: torch.Tensor,
                  epochs: int, batch_size: int, validation_split: float = 0.0,
                  shuffle: bool = True, on_epoch_end: Optional[EpochCallback] = None,
                  generator: Optional[torch.Generator] = None) -> Dict[str, List[float]]:
        """
        Train on batched pairs.

        The last ``validation_split`` fraction of the samples (before shuffling)
        is held out for validation; the rest is reshuffled every epoch.

        Args:
            images_a: First images, shape (N, H, W, 3)
            images_b: Second images, shape (N, H, W, 3)
            labels: Float labels (1 = same animal), shape (N,)
            epochs: Number of epochs
            batch_size: Samples per optimizer step
            validation_split: Fraction of samples held out
            shuffle: Reshuffle training samples each epoch
            on_epoch_end: Called with (epoch_index, logs) after each epoch
            generator: Random generator for shuffling

        Returns:
            History dict with loss/acc (and val_loss/val_acc when validating)
        """
        total = images_a.shape[0]
        if images_b.shape[0] != total or labels.shape[0] != total:
            raise TrainingError("Inputs and labels must have the same number of samples")

        split_at = int(total * (1 - validation_split)) if validation_split > 0 else total
        if split_at < 1:
            raise TrainingError(f"Validation split {validation_split} leaves no training samples")

        val_indices = torch.arange(split_at, total)
        history: Dict[str, List[float]] = {'loss': [], 'acc': []}
        if len(val_indices) > 0:
            history['val_loss'] = []
            history['val_acc'] = []

        for epoch in range(epochs):
            if shuffle:
                train_indices = torch.randperm(split_at, generator=generator)
            else:
                train_indices = torch.arange(split_at)

            loss, accuracy = self._run_batches(images_a, images_b, labels, train_indices, batch_size, train=True)
            logs = {'loss': loss, 'acc': accuracy}

            if len(val_indices) > 0:
                val_loss, val_accuracy = self._run_batches(
                    images_a, images_b, labels, val_indices, batch_size, train=False
                )
                logs['val_loss'] = val_loss
                logs['val_acc'] = val_accuracy

            for key, value in logs.items():
                history[key].append(value)

            self.logger.debug(f"Epoch {epoch + 1}/{epochs}: loss={loss:.4f}, acc={accuracy:.4f}")

            if on_epoch_end is not None:
                on_epoch_end(epoch, logs)

            # Cooperative yield point between epochs
            await asyncio.sleep(0)

        self.network.eval()
        return history


def compile_model(network: SiameseNetwork, config: IdentificationConfig, device: str = 'cpu') -> CompiledModel:
    """Attach optimizer, loss and metrics to a siamese network."""
    return CompiledModel(network, config, device)


def build_siamese_model(config: IdentificationConfig, feature_extractor: FeatureExtractor,
                        device: str = 'cpu') -> CompiledModel:
    """
    Factory function to create the compiled siamese model.

    Args:
        config: Identification configuration
        feature_extractor: Extractor shared by both branches

    Returns:
        CompiledModel

    Raises:
        ModelBuildError: construction or compilation failed
    """
    try:
        if feature_extractor.image_size != config.image_size:
            raise ValueError(
                f"Feature extractor expects {feature_extractor.image_size}px images, "
                f"config has {config.image_size}px"
            )
        network = SiameseNetwork(feature_extractor)
        return compile_model(network, config, device)
    except Exception as e:
        raise ModelBuildError(f"Siamese model creation failed: {e}") from e
