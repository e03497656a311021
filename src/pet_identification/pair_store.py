"""
Training Pair Store
In-memory ordered collection of labeled pair tensors and their durable records.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence

import torch

from .errors import BadRequestError, Failure, Result, Success, TensorLifecycleError
from .events import StatusKind
from .image_sources import record_url, require_image_pair
from .preprocessing import preprocess
from .tensor_scope import TensorRegistry

if TYPE_CHECKING:
    from .config import IdentificationConfig
    from .context import IdentificationContext


logger = logging.getLogger(__name__)


@dataclass
class TrainingPair:
    image1: torch.Tensor
    image2: torch.Tensor
    label: int


@dataclass(frozen=True)
class PairRecord:
    """Tensor-free counterpart of a TrainingPair, written to the key/value slot."""
    image1_url: str
    image2_url: str
    is_same_animal: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'image1Url': self.image1_url,
            'image2Url': self.image2_url,
            'isSameAnimal': self.is_same_animal,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PairRecord":
        try:
            image1_url = data['image1Url']
            image2_url = data['image2Url']
            is_same_animal = data['isSameAnimal']
        except (KeyError, TypeError) as e:
            raise BadRequestError(f"Invalid pair record: missing {e}")
        if not isinstance(is_same_animal, bool):
            raise BadRequestError(f"Invalid pair record: isSameAnimal must be a boolean, got {is_same_animal!r}")
        return cls(str(image1_url), str(image2_url), is_same_animal)


@dataclass(frozen=True)
class DataBalance:
    positive: int = 0
    negative: int = 0
    total: int = 0

    def is_imbalanced(self, ratio: float = 1.2) -> bool:
        return self.positive > self.negative * ratio or self.negative > self.positive * ratio

    def to_dict(self) -> Dict[str, int]:
        return {'positive': self.positive, 'negative': self.negative, 'total': self.total}


class TrainingPairStore:
    """
    Owns the training pairs and their tensors.

    ``pairs`` and ``records`` always have the same length and order; every
    mutation goes through ``add``, ``clear`` or ``replace``.
    """

    def __init__(self, registry: TensorRegistry):
        self.registry = registry
        self._pairs: List[TrainingPair] = []
        self._records: List[PairRecord] = []

    def __len__(self) -> int:
        return len(self._pairs)

    def __iter__(self) -> Iterator[TrainingPair]:
        return iter(list(self._pairs))

    @property
    def pairs(self) -> List[TrainingPair]:
        return list(self._pairs)

    @property
    def records(self) -> List[PairRecord]:
        return list(self._records)

    def add(self, pair: TrainingPair, record: PairRecord):
        if pair.label not in (0, 1):
            raise BadRequestError(f"Pair label must be 0 or 1, got {pair.label}")
        if bool(pair.label) != record.is_same_animal:
            raise BadRequestError("Pair label and record disagree")
        self._pairs.append(pair)
        self._records.append(record)

    def balance(self) -> DataBalance:
        positive = sum(1 for pair in self._pairs if pair.label == 1)
        negative = sum(1 for pair in self._pairs if pair.label == 0)
        return DataBalance(positive=positive, negative=negative, total=len(self._pairs))

    def clear(self):
        """
        Release every owned tensor, then drop the pairs and records.

        A tensor that was already released elsewhere is a lifecycle bug: the
        remaining tensors are still released and the store is still emptied,
        then the first TensorLifecycleError is raised.
        """
        errors = []
        for pair in self._pairs:
            for tensor in (pair.image1, pair.image2):
                try:
                    self.registry.release(tensor)
                except TensorLifecycleError as e:
                    errors.append(e)
        self._pairs = []
        self._records = []
        if errors:
            raise errors[0]

    def replace(self, pairs: Sequence[TrainingPair], records: Sequence[PairRecord]):
        if len(pairs) != len(records):
            raise BadRequestError(f"{len(pairs)} pairs but {len(records)} records")
        try:
            self.clear()
        finally:
            for pair, record in zip(pairs, records):
                self.add(pair, record)

    def snapshot(self) -> List[PairRecord]:
        return list(self._records)

    def describe(self, name: str, task_name: str, image_size: int) -> Dict[str, Any]:
        """Tensor-free summary of the training data for export."""
        return {
            'metadata': {
                'name': name,
                'taskName': task_name,
                'timestamp': datetime.now().isoformat(),
                'imageSize': image_size,
                'totalPairs': len(self._pairs),
            },
            'balance': self.balance().to_dict(),
            'pairsMetadata': [
                {
                    'index': index,
                    'label': pair.label,
                    'labelText': 'same animal' if pair.label == 1 else 'different animals',
                }
                for index, pair in enumerate(self._pairs)
            ],
        }


def build_training_pair(images: Sequence[Any], is_same_animal: bool, context: "IdentificationContext",
                        augment: bool = False, config: Optional["IdentificationConfig"] = None) -> TrainingPair:
    """
    Preprocess two images into a TrainingPair owned by the context registry.

    If the second image fails, the first tensor is released before the error
    propagates.
    """
    require_image_pair(images, "a training pair")

    registry = context.registry
    config = config if config is not None else context.config

    image1 = preprocess(images[0], config, augment=augment, rng=context.rng, registry=registry)
    try:
        image2 = preprocess(images[1], config, augment=augment, rng=context.rng, registry=registry)
    except Exception:
        registry.release(image1)
        raise

    return TrainingPair(image1=image1, image2=image2, label=1 if is_same_animal else 0)


def add_training_pair(context: "IdentificationContext", images: Sequence[Any], is_same_animal: bool,
                      urls: Optional[Sequence[str]] = None) -> Result:
    """
    Add a user-confirmed pair to the training set.

    Args:
        context: Identification context
        images: Exactly two decoded image handles
        is_same_animal: User verdict for the pair
        urls: URLs recorded for persistence; missing ones are derived from the handles

    Returns:
        Success(DataBalance) or Failure
    """
    try:
        require_image_pair(images, "a training pair")

        if urls is None:
            urls = [None, None]
        if len(urls) != 2:
            raise BadRequestError(f"Two image URLs are required, got {len(urls)}")
        urls = [url or record_url(image) for url, image in zip(urls, images)]

        record = PairRecord(image1_url=urls[0], image2_url=urls[1], is_same_animal=bool(is_same_animal))
        pair = build_training_pair(images, is_same_animal, context, augment=context.config.augment)
        context.pairs.add(pair, record)
    except Exception as e:
        logger.error(f"Failed to add training pair: {e}")
        return Failure.from_exception(e, prefix="Failed to add training pair: ")

    balance = context.pairs.balance()
    context.emit(
        StatusKind.ADDING,
        f"Pair added: {balance.total} training pairs",
        positive=balance.positive,
        negative=balance.negative,
        total=balance.total,
    )
    return Success(balance)
