"""
Siamese Network Trainer
Training orchestrator: precondition guards, batched fit loop and progress reporting.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import torch

from .config import IdentificationConfig
from .context import IdentificationContext, ensure_initialized
from .errors import Failure, Result, Success
from .events import StatusKind


MIN_TRAINING_PAIRS = 4
IMBALANCE_RATIO = 1.2


class TrainingState(str, Enum):
    IDLE = "idle"
    PRECONDITION_CHECK = "precondition-check"
    TRAINING = "training"
    DONE = "done"
    REJECTED = "rejected"


@dataclass
class TrainingProgress:
    epoch: int
    epochs: int
    loss: float
    accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None


@dataclass
class TrainingSummary:
    epochs: int
    final_loss: float
    final_accuracy: float
    training_time: float
    history: Dict[str, List[float]] = field(default_factory=dict)


class TrainingOrchestrator:
    """
    Runs training on the pairs held by an identification context.

    States: idle -> precondition-check -> training -> done -> idle, or
    idle -> precondition-check -> rejected -> idle. A request arriving while a
    run is active is rejected without touching the active run's state or
    progress; requests are never queued.
    """

    def __init__(self, context: IdentificationContext):
        """
        Initialize the training orchestrator.

        Args:
            context: Identification context holding the model and the pairs
        """
        self.context = context
        self.logger = logging.getLogger(__name__)

        self.state = TrainingState.IDLE
        self.state_history: List[TrainingState] = [self.state]
        self.progress: Optional[TrainingProgress] = None
        self.last_error: Optional[Failure] = None

    def _set_state(self, state: TrainingState):
        self.logger.debug(f"Training state: {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)

    def _check_preconditions(self) -> Optional[Failure]:
        """Evaluate the guards in order; the first failing one wins."""
        context = self.context
        pair_count = len(context.pairs)

        if pair_count < MIN_TRAINING_PAIRS:
            return Failure(
                status=400,
                message=f"Not enough pairs for training: {pair_count} (need at least {MIN_TRAINING_PAIRS})",
            )

        if context.is_training:
            return Failure(status=400, message="Training already in progress")

        if not ensure_initialized(context):
            return Failure(status=500, message="Initialization failed")

        balance = context.pairs.balance()
        if balance.is_imbalanced(IMBALANCE_RATIO):
            return Failure(
                status=400,
                message=f"Data imbalance detected: {balance.positive} positives, {balance.negative} negatives",
            )

        return None

    def _reject(self, failure: Failure, was_busy: bool) -> Failure:
        self.logger.warning(f"Training rejected: {failure.message}")
        if not was_busy:
            self.last_error = failure
            self._set_state(TrainingState.REJECTED)
            self._set_state(TrainingState.IDLE)
        return failure

    def _on_epoch_end(self, epoch: int, logs: Dict[str, float], epochs: int):
        self.progress = TrainingProgress(
            epoch=epoch + 1,
            epochs=epochs,
            loss=logs['loss'],
            accuracy=logs['acc'],
            val_loss=logs.get('val_loss'),
            val_accuracy=logs.get('val_acc'),
        )
        self.context.last_epoch = epoch + 1
        self.context.last_loss = logs['loss']

        self.context.emit(
            StatusKind.TRAINING,
            f"Epoch {epoch + 1}/{epochs}: loss={logs['loss']:.4f}, accuracy={logs['acc']:.4f}",
            epoch=epoch + 1,
            epochs=epochs,
            loss=logs['loss'],
            accuracy=logs['acc'],
        )

    async def start_training(self, **overrides) -> Result:
        """
        Train the siamese model on every stored pair.

        Args:
            **overrides: Per-call configuration fields (epochs, batch_size, ...)

        Returns:
            Success(TrainingSummary) or Failure
        """
        context = self.context
        was_busy = context.is_training

        try:
            config: IdentificationConfig = context.config.with_overrides(**overrides)
        except (TypeError, ValueError) as e:
            return self._reject(Failure(status=400, message=f"Invalid training configuration: {e}"), was_busy)

        if not was_busy:
            self._set_state(TrainingState.PRECONDITION_CHECK)

        failure = self._check_preconditions()
        if failure is not None:
            return self._reject(failure, was_busy)

        context.is_training = True
        self.progress = None
        self.last_error = None
        self._set_state(TrainingState.TRAINING)

        pairs = context.pairs.pairs
        model = context.model.siamese_model
        context.emit(
            StatusKind.TRAINING,
            f"Training started on {len(pairs)} pairs",
            epochs=config.epochs,
            batch_size=config.batch_size,
        )
        self.logger.info(f"Training with {config.to_dict()}")

        start_time = time.time()
        try:
            with context.registry.scope() as scope:
                images_a = scope.track(torch.cat([pair.image1 for pair in pairs], dim=0))
                images_b = scope.track(torch.cat([pair.image2 for pair in pairs], dim=0))
                labels = scope.track(torch.tensor([float(pair.label) for pair in pairs], dtype=torch.float32))

                history = await model.fit(
                    images_a, images_b, labels,
                    epochs=config.epochs,
                    batch_size=config.batch_size,
                    validation_split=config.validation_split,
                    shuffle=True,
                    on_epoch_end=lambda epoch, logs: self._on_epoch_end(epoch, logs, config.epochs),
                    generator=context.generator,
                )
        except Exception as e:
            self.logger.error(f"Training failed: {e}")
            failure = Failure(status=500, message=f"Training failed: {e}")
            self.last_error = failure
            self._set_state(TrainingState.REJECTED)
            self._set_state(TrainingState.IDLE)
            return failure
        finally:
            context.is_training = False

        training_time = time.time() - start_time
        summary = TrainingSummary(
            epochs=len(history['loss']),
            final_loss=history['loss'][-1],
            final_accuracy=history['acc'][-1],
            training_time=training_time,
            history=history,
        )
        context.final_accuracy = summary.final_accuracy

        self._set_state(TrainingState.DONE)
        context.emit(
            StatusKind.DONE,
            f"Training completed in {training_time:.2f} seconds",
            epochs=summary.epochs,
            loss=summary.final_loss,
            accuracy=summary.final_accuracy,
        )
        self._set_state(TrainingState.IDLE)
        return Success(summary)
