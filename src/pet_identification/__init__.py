"""
Pet Identification
Siamese network deciding whether two pet photos show the same animal, trained
incrementally from user-confirmed pairs.
"""

from .config import IdentificationConfig, load_config
from .errors import Failure, IdentificationError, Result, Success
from .events import StatusEmitter, StatusEvent, StatusKind
from .context import IdentificationContext, ModelState
from .comparison import ComparisonResult
from .identifier import AnimalIdentifier
from .image_sources import LoadedImage, load_image
from .pair_store import DataBalance, PairRecord, TrainingPair
from .storage import InMemoryKeyValueStore, JsonFileKeyValueStore
from .trainer import TrainingOrchestrator, TrainingSummary

__version__ = "0.1.0"

__all__ = [
    'AnimalIdentifier',
    'IdentificationConfig',
    'load_config',
    'IdentificationContext',
    'ModelState',
    'TrainingOrchestrator',
    'TrainingSummary',
    'ComparisonResult',
    'TrainingPair',
    'PairRecord',
    'DataBalance',
    'LoadedImage',
    'load_image',
    'StatusEmitter',
    'StatusEvent',
    'StatusKind',
    'InMemoryKeyValueStore',
    'JsonFileKeyValueStore',
    'IdentificationError',
    'Success',
    'Failure',
    'Result',
]
