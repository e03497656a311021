"""
Persistence Codec
Exports the model pair to a portable JSON document (topology, weight specs and
raw weight bytes) and restores it; keeps the lightweight pair snapshot in the
key/value slot.
"""

import json
import logging
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type, Union

import numpy as np
import torch
import torch.nn as nn

from .config import IdentificationConfig
from .context import IdentificationContext, ModelState, select_backend
from .errors import (BadRequestError, Failure, NotFoundError, PersistenceError,
                     Result, Success)
from .events import StatusKind
from .feature_extractor import FeatureExtractor
from .image_sources import fetch_image
from .pair_store import PairRecord, TrainingPair, build_training_pair
from .siamese_network import SiameseNetwork, compile_model


logger = logging.getLogger(__name__)

# dtype name -> (little-endian numpy dtype, torch dtype)
WEIGHT_DTYPES = {
    'float32': ('<f4', torch.float32),
    'int32': ('<i4', torch.int32),
}

_TORCH_TO_NAME = {torch_dtype: name for name, (_, torch_dtype) in WEIGHT_DTYPES.items()}

MODEL_KEYS = ('siameseModel', 'featureExtractor')
ARTIFACT_KEYS = ('modelTopology', 'weightSpecs', 'weightData')


def default_model_name(config: IdentificationConfig) -> str:
    return f"animal-identifier-{config.task_name}"


def capture_artifacts(module: nn.Module) -> Dict[str, Any]:
    """
    Capture topology, weight specs and raw weight bytes of a module.

    Weights are concatenated in ``state_dict`` order as little-endian bytes and
    written out as a plain list of byte values.
    """
    specs = []
    chunks = []

    for name, tensor in module.state_dict().items():
        dtype_name = _TORCH_TO_NAME.get(tensor.dtype)
        if dtype_name is None:
            raise PersistenceError(f"Unsupported weight dtype for {name}: {tensor.dtype}")

        array = tensor.detach().cpu().contiguous().numpy().astype(WEIGHT_DTYPES[dtype_name][0])
        specs.append({'name': name, 'shape': list(tensor.shape), 'dtype': dtype_name})
        chunks.append(array.tobytes())

    weight_bytes = b''.join(chunks)
    return {
        'modelTopology': module.topology(),
        'weightSpecs': specs,
        'weightData': list(weight_bytes),
    }


def decode_weights(weight_specs: Sequence[Dict[str, Any]], weight_data: Sequence[int]) -> "OrderedDict[str, torch.Tensor]":
    """Rebuild a state dict from weight specs and a list of byte values."""
    try:
        buffer = bytes(bytearray(weight_data))
    except (TypeError, ValueError) as e:
        raise BadRequestError(f"Malformed weight data: {e}")

    state = OrderedDict()
    offset = 0

    for spec in weight_specs:
        try:
            name = spec['name']
            shape = [int(dim) for dim in spec['shape']]
            numpy_dtype, torch_dtype = WEIGHT_DTYPES[spec.get('dtype', 'float32')]
        except (KeyError, TypeError, ValueError) as e:
            raise BadRequestError(f"Malformed weight spec {spec!r}: {e}")

        count = int(np.prod(shape)) if shape else 1
        size = count * np.dtype(numpy_dtype).itemsize
        if offset + size > len(buffer):
            raise BadRequestError(f"Weight data too short for {name}: need {offset + size} bytes, have {len(buffer)}")

        array = np.frombuffer(buffer, dtype=numpy_dtype, count=count, offset=offset).reshape(shape)
        state[name] = torch.from_numpy(array.copy()).to(torch_dtype)
        offset += size

    if offset != len(buffer):
        raise BadRequestError(f"Weight data has {len(buffer) - offset} unused bytes")

    return state


def load_layers_model(artifacts: Dict[str, Any], model_class: Type[nn.Module],
                      feature_extractor: Optional[FeatureExtractor] = None) -> nn.Module:
    """
    Load handler replaying topology, then weights, into a fresh module.

    Args:
        artifacts: Dict with modelTopology, weightSpecs and weightData
        model_class: FeatureExtractor or SiameseNetwork
        feature_extractor: Shared branch to build a SiameseNetwork on

    Raises:
        BadRequestError: the artifacts do not describe a loadable model
    """
    if not isinstance(artifacts, dict) or any(key not in artifacts for key in ARTIFACT_KEYS):
        raise BadRequestError(f"Invalid data structure: {model_class.__name__} needs {', '.join(ARTIFACT_KEYS)}")

    try:
        if model_class is SiameseNetwork:
            module = SiameseNetwork.from_topology(artifacts['modelTopology'], feature_extractor=feature_extractor)
        else:
            module = model_class.from_topology(artifacts['modelTopology'])
    except (KeyError, TypeError, ValueError) as e:
        raise BadRequestError(f"Invalid model topology for {model_class.__name__}: {e}")

    state = decode_weights(artifacts['weightSpecs'], artifacts['weightData'])
    try:
        module.load_state_dict(state, strict=True)
    except RuntimeError as e:
        raise BadRequestError(f"Weights do not match {model_class.__name__} topology: {e}")

    module.eval()
    return module


def export_model(context: IdentificationContext, name: Optional[str] = None) -> Result:
    """
    Serialize the model pair and session metadata to a JSON-ready document.

    Returns:
        Success(document) or Failure (404 when there is no model)
    """
    if not context.model.is_ready:
        return Failure(status=404, message="No model to export")

    config = context.config
    name = name or default_model_name(config)

    try:
        document = {
            'metadata': {
                'name': name,
                'taskName': config.task_name,
                'timestamp': datetime.now().isoformat(),
                'imageSize': config.image_size,
                'featureSize': config.feature_size,
                'trainingPairsCount': len(context.pairs),
                'comparisonCount': context.comparison_count,
            },
            'siameseModel': capture_artifacts(context.model.siamese_model.network),
            'featureExtractor': capture_artifacts(context.model.feature_extractor),
        }
    except Exception as e:
        logger.error(f"Model export failed: {e}")
        return Failure.from_exception(e, prefix="Model export failed: ")

    context.emit(StatusKind.STORAGE, f"Model '{name}' exported", name=name)
    return Success(document)


def save_training_pairs(context: IdentificationContext) -> Result:
    """Write the PairRecord snapshot to the key/value slot."""
    records = context.pairs.snapshot()
    key = context.config.storage_key

    try:
        context.store.set(key, json.dumps([record.to_dict() for record in records]))
    except Exception as e:
        logger.error(f"Failed to save training pairs: {e}")
        return Failure.from_exception(PersistenceError(f"Failed to save training pairs: {e}"))

    logger.info(f"Saved {len(records)} pair records under '{key}'")
    context.emit(StatusKind.STORAGE, f"{len(records)} training pairs saved", count=len(records))
    return Success(len(records))


def read_pair_records(context: IdentificationContext) -> List[PairRecord]:
    """PairRecords stored in the key/value slot; empty when the slot is unset."""
    raw = context.store.get(context.config.storage_key)
    if raw is None:
        return []

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BadRequestError(f"Stored pair records are not valid JSON: {e}")

    if not isinstance(data, list):
        raise BadRequestError("Stored pair records must be a JSON array")

    return [PairRecord.from_dict(item) for item in data]


async def rehydrate_pairs(records: Sequence[PairRecord], context: IdentificationContext,
                          config: Optional[IdentificationConfig] = None) -> List[TrainingPair]:
    """
    Re-fetch and re-preprocess every record into a TrainingPair.

    All-or-nothing: if any record fails, the tensors of the pairs already built
    are released and the error propagates.
    """
    config = config if config is not None else context.config
    pairs: List[TrainingPair] = []

    try:
        for index, record in enumerate(records):
            logger.debug(f"Rehydrating pair {index + 1}/{len(records)}")
            image1 = await fetch_image(record.image1_url)
            image2 = await fetch_image(record.image2_url)
            pairs.append(build_training_pair([image1, image2], record.is_same_animal, context,
                                             augment=False, config=config))
    except Exception:
        _release_pairs(context, pairs)
        raise

    return pairs


def _release_pairs(context: IdentificationContext, pairs: Sequence[TrainingPair]):
    for pair in pairs:
        context.registry.release_all([pair.image1, pair.image2])


async def load_training_pairs(context: IdentificationContext) -> Result:
    """
    Replace the in-memory pairs with the ones stored in the key/value slot.
    Refused while a training run is active.

    Returns:
        Success(DataBalance) or Failure (404 when nothing is stored)
    """
    if context.is_training:
        return Failure(status=400, message="Cannot load training pairs while training is in progress")

    try:
        records = read_pair_records(context)
        if not records:
            raise NotFoundError("No stored training pairs")

        pairs = await rehydrate_pairs(records, context)
        if context.is_training:
            _release_pairs(context, pairs)
            raise BadRequestError("Training started while the pairs were loading")
        context.pairs.replace(pairs, records)
    except Exception as e:
        logger.error(f"Failed to load training pairs: {e}")
        return Failure.from_exception(e, prefix="Failed to load training pairs: ")

    balance = context.pairs.balance()
    context.emit(
        StatusKind.STORAGE,
        f"{balance.total} training pairs loaded",
        positive=balance.positive,
        negative=balance.negative,
        total=balance.total,
    )
    return Success(balance)


def _config_from_metadata(config: IdentificationConfig, metadata: Dict[str, Any]) -> IdentificationConfig:
    overrides = {key: metadata[key] for key in ('taskName', 'imageSize', 'featureSize') if key in metadata}
    try:
        return config.with_overrides(**overrides)
    except (TypeError, ValueError) as e:
        raise BadRequestError(f"Invalid metadata: {e}")


async def import_model(context: IdentificationContext, document: Dict[str, Any],
                       restore_pairs: bool = True) -> Result:
    """
    Restore the model pair (and optionally the stored pairs) from a document.

    Nothing on the context changes unless every step succeeds. Refused while
    a training run is active, including one that starts during the import.

    Returns:
        Success(ModelState) or Failure
    """
    if context.is_training:
        return Failure(status=400, message="Cannot import while training is in progress")

    try:
        if not isinstance(document, dict) or any(not isinstance(document.get(key), dict) for key in MODEL_KEYS):
            raise BadRequestError(f"Invalid data structure: document needs {' and '.join(MODEL_KEYS)}")

        metadata = document.get('metadata') or {}
        if not isinstance(metadata, dict):
            raise BadRequestError("Invalid data structure: metadata must be an object")

        config = _config_from_metadata(context.config, metadata)

        feature_extractor = load_layers_model(document['featureExtractor'], FeatureExtractor)
        if (feature_extractor.image_size, feature_extractor.feature_size) != (config.image_size, config.feature_size):
            raise BadRequestError(
                f"Metadata ({config.image_size}px, {config.feature_size} features) does not match the "
                f"feature extractor ({feature_extractor.image_size}px, {feature_extractor.feature_size} features)"
            )

        network = load_layers_model(document['siameseModel'], SiameseNetwork, feature_extractor=feature_extractor)
        device = select_backend(config.device)
        siamese_model = compile_model(network, config, device)

        records: List[PairRecord] = []
        pairs: List[TrainingPair] = []
        if restore_pairs:
            records = read_pair_records(context)
            if records:
                pairs = await rehydrate_pairs(records, context, config=config)
        if context.is_training:
            _release_pairs(context, pairs)
            raise BadRequestError("Training started while the model was importing")
    except Exception as e:
        logger.error(f"Model import failed: {e}")
        return Failure.from_exception(e, prefix="Model import failed: ")

    context.config = config
    context.device = device
    context.model = ModelState(
        feature_extractor=feature_extractor,
        siamese_model=siamese_model,
        is_initialized=True,
    )
    if pairs:
        context.pairs.replace(pairs, records)

    context.emit(
        StatusKind.DONE,
        f"Model '{metadata.get('name', default_model_name(config))}' imported",
        restored_pairs=len(pairs),
        backend=device,
    )
    return Success(context.model)


def save_model(context: IdentificationContext, path: Union[str, Path], name: Optional[str] = None) -> Result:
    """
    Write the exported document to ``path`` and save the pair snapshot.

    Returns:
        Success(Path) or Failure
    """
    exported = export_model(context, name)
    if not exported.success:
        return exported

    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(exported.value, f)
    except OSError as e:
        logger.error(f"Failed to write model file {path}: {e}")
        return Failure.from_exception(PersistenceError(f"Failed to write model file {path}: {e}"))

    saved = save_training_pairs(context)
    if not saved.success:
        return saved

    logger.info(f"Saved model to: {path}")
    context.emit(StatusKind.STORAGE, f"Model saved to {path}", path=str(path))
    return Success(path)


def read_model_document(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a model document from disk.

    Raises:
        NotFoundError: the file does not exist
        BadRequestError: the file is not valid JSON
    """
    path = Path(path)
    if not path.exists():
        raise NotFoundError(f"Model file not found: {path}")

    try:
        with open(path, 'r') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise BadRequestError(f"Model file is not valid JSON: {e}")


async def load_model_file(context: IdentificationContext, path: Union[str, Path],
                          restore_pairs: bool = True) -> Result:
    """Read a model document from disk and import it."""
    try:
        document = read_model_document(path)
    except Exception as e:
        logger.error(f"Failed to read model file {path}: {e}")
        return Failure.from_exception(e)

    result = await import_model(context, document, restore_pairs=restore_pairs)
    if result.success:
        logger.info(f"Loaded model from: {path}")
    return result
