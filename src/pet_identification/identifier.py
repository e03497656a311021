"""
Animal Identifier
Facade gathering every identification operation on one context.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

from .comparison import compare, extract_features, test_model_integrity
from .config import IdentificationConfig
from .context import IdentificationContext, ModelState, initialize
from .errors import Failure, Result, Success
from .events import StatusKind, StatusListener
from .pair_store import add_training_pair
from .persistence import (default_model_name, export_model, import_model, load_model_file,
                          load_training_pairs, save_model, save_training_pairs)
from .storage import KeyValueStore
from .trainer import TrainingOrchestrator


class AnimalIdentifier:
    """
    Siamese pet identification session.

    Wraps an ``IdentificationContext`` and a ``TrainingOrchestrator``; every
    method returns a ``Success``/``Failure`` result instead of raising.
    """

    def __init__(self, config: Optional[IdentificationConfig] = None,
                 store: Optional[KeyValueStore] = None,
                 context: Optional[IdentificationContext] = None):
        """
        Initialize the identifier.

        Args:
            config: Identification configuration (defaults when None)
            store: Key/value slot for the pair snapshot (in-memory when None)
            context: Pre-built context; overrides config and store
        """
        self.context = context if context is not None else IdentificationContext(config=config, store=store)
        self.trainer = TrainingOrchestrator(self.context)
        self.logger = logging.getLogger(__name__)

    @property
    def config(self) -> IdentificationConfig:
        return self.context.config

    @property
    def is_initialized(self) -> bool:
        return self.context.model.is_ready

    @property
    def is_training(self) -> bool:
        return self.context.is_training

    def subscribe(self, listener: StatusListener):
        """Register a status listener; returns the unsubscribe callable."""
        return self.context.emitter.subscribe(listener)

    def initialize(self, force: bool = False) -> Result:
        """Build the models; a second call is a no-op success unless forced."""
        if self.context.model.is_ready and not force:
            self.logger.debug("Identification system already initialized")
            return Success(self.context.model)
        return initialize(self.context, force=True)

    def add_training_pair(self, images: Sequence[Any], is_same_animal: bool,
                          urls: Optional[Sequence[str]] = None) -> Result:
        return add_training_pair(self.context, images, is_same_animal, urls=urls)

    async def start_training(self, **overrides) -> Result:
        return await self.trainer.start_training(**overrides)

    def compare(self, images: Sequence[Any], **overrides) -> Result:
        return compare(self.context, images, **overrides)

    def extract_features(self, image: Any) -> Result:
        return extract_features(self.context, image)

    def test_model_integrity(self) -> Result:
        return test_model_integrity(self.context)

    def reset(self) -> Result:
        """
        Drop every training pair and the model, then build a fresh model.

        Refused while a training run is active.
        """
        context = self.context
        if context.is_training:
            return Failure(status=400, message="Cannot reset while training is in progress")

        context.pairs.clear()
        context.comparison_count = 0
        context.final_accuracy = 0.0
        context.last_epoch = 0
        context.last_loss = None
        context.model = ModelState()

        self.logger.info("Identification system reset")
        return initialize(context, force=True)

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of the session statistics."""
        context = self.context
        balance = context.pairs.balance()
        return {
            'trainingPairs': balance.total,
            'positivePairs': balance.positive,
            'negativePairs': balance.negative,
            'comparisonCount': context.comparison_count,
            'isInitialized': context.model.is_ready,
            'isTraining': context.is_training,
            'backend': context.device,
            'lastEpoch': context.last_epoch,
            'lastLoss': context.last_loss,
            'finalAccuracy': context.final_accuracy,
            'liveTensors': context.registry.live_count,
        }

    def export_training_data(self, name: Optional[str] = None) -> Result:
        """JSON-ready summary of the training pairs (labels only, no pixels)."""
        config = self.context.config
        name = name or f"{default_model_name(config)}-training-data-{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        summary = self.context.pairs.describe(name, config.task_name, config.image_size)
        self.context.emit(StatusKind.STORAGE, f"Training data summary '{name}' exported",
                          total=summary['metadata']['totalPairs'])
        return Success(summary)

    def export_model(self, name: Optional[str] = None) -> Result:
        return export_model(self.context, name)

    async def import_model(self, document: Dict[str, Any], restore_pairs: bool = True) -> Result:
        return await import_model(self.context, document, restore_pairs=restore_pairs)

    def save_model(self, path: Union[str, Path], name: Optional[str] = None) -> Result:
        return save_model(self.context, path, name)

    async def load_model_file(self, path: Union[str, Path], restore_pairs: bool = True) -> Result:
        return await load_model_file(self.context, path, restore_pairs=restore_pairs)

    def save_training_pairs(self) -> Result:
        return save_training_pairs(self.context)

    async def load_training_pairs(self) -> Result:
        return await load_training_pairs(self.context)

    def close(self):
        """Release every pair tensor and report anything still live."""
        self.context.pairs.clear()
        leaked = self.context.registry.check_leaks()
        if leaked:
            self.logger.warning(f"{leaked} tensors leaked on close")
