"""
Identification context
The explicit state object threaded through every component: configuration,
model pair, training pairs, tensor registry, key/value slot and status events.
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional

import torch

from .config import IdentificationConfig
from .errors import Failure, ModelBuildError, Result, Success
from .events import StatusEmitter, StatusKind
from .feature_extractor import FeatureExtractor, build_feature_extractor
from .pair_store import TrainingPairStore
from .siamese_network import CompiledModel, build_siamese_model
from .storage import InMemoryKeyValueStore, KeyValueStore
from .tensor_scope import TensorRegistry


logger = logging.getLogger(__name__)


@dataclass
class ModelState:
    """The feature extractor and siamese model, treated as one unit."""
    feature_extractor: Optional[FeatureExtractor] = None
    siamese_model: Optional[CompiledModel] = None
    is_initialized: bool = False

    @property
    def is_ready(self) -> bool:
        return (self.is_initialized
                and self.feature_extractor is not None
                and self.siamese_model is not None)


class IdentificationContext:
    """
    All mutable state of one identification session.

    Construct once at application start and pass it to the components; several
    independent contexts can coexist (e.g. in tests).
    """

    def __init__(self, config: Optional[IdentificationConfig] = None,
                 store: Optional[KeyValueStore] = None,
                 emitter: Optional[StatusEmitter] = None,
                 registry: Optional[TensorRegistry] = None,
                 rng: Optional[random.Random] = None):
        self.config = config if config is not None else IdentificationConfig()
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.emitter = emitter if emitter is not None else StatusEmitter()
        self.registry = registry if registry is not None else TensorRegistry()
        self.rng = rng if rng is not None else random.Random(self.config.seed)

        self.generator = torch.Generator()
        if self.config.seed is not None:
            self.generator.manual_seed(self.config.seed)

        self.model = ModelState()
        self.pairs = TrainingPairStore(self.registry)
        self.device: Optional[str] = None

        # Session statistics
        self.comparison_count = 0
        self.is_training = False
        self.final_accuracy = 0.0
        self.last_epoch = 0
        self.last_loss: Optional[float] = None

    def emit(self, kind: StatusKind, message: str, **details):
        return self.emitter.emit(kind, message, **details)


def select_backend(preferred: str = 'auto') -> str:
    """Pick the execution backend, falling back to the CPU."""
    if preferred == 'cpu':
        logger.info("Using CPU backend")
        return 'cpu'

    if torch.cuda.is_available():
        logger.info("CUDA available, using GPU backend")
        return 'cuda'

    if preferred == 'cuda':
        logger.warning("CUDA requested but not available, falling back to CPU")
    else:
        logger.info("CUDA not available, using CPU backend")
    return 'cpu'


def initialize(context: IdentificationContext, force: bool = False) -> Result:
    """
    Build and compile the feature extractor and siamese model.

    Args:
        context: Identification context to initialize
        force: Rebuild even when a model is already initialized

    Returns:
        Success(ModelState) or Failure
    """
    if context.model.is_initialized and not force:
        return Failure(status=400, message="Identification system already initialized")

    context.emit(StatusKind.INITIALIZING, "Initializing models")
    config = context.config

    try:
        context.device = select_backend(config.device)

        if config.seed is not None:
            torch.manual_seed(config.seed)

        extractor_result = build_feature_extractor(config)
        if not extractor_result.success:
            raise ModelBuildError(extractor_result.message)

        siamese_model = build_siamese_model(config, extractor_result.value, device=context.device)
    except Exception as e:
        logger.error(f"Initialization failed: {e}")
        return Failure.from_exception(e, prefix="Initialization failed: ")

    context.model = ModelState(
        feature_extractor=extractor_result.value,
        siamese_model=siamese_model,
        is_initialized=True,
    )
    context.emit(StatusKind.DONE, "Models initialized", backend=context.device)
    return Success(context.model)


def ensure_initialized(context: IdentificationContext) -> bool:
    """Lazily initialize the models; True when a compiled model is available."""
    if context.model.is_ready:
        return True

    result = initialize(context, force=True)
    if not result.success:
        logger.error(result.message)
    return context.model.is_ready
