"""
Comparison Engine
Runs two preprocessed images through the compiled model and turns the score into a verdict.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Sequence

import torch

from .context import IdentificationContext, ensure_initialized
from .errors import BadRequestError, Failure, Result, Success
from .events import StatusKind
from .image_sources import require_image_pair
from .preprocessing import preprocess


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComparisonResult:
    similarity_score: float
    same_animal: bool
    confidence: float
    threshold: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'similarityScore': self.similarity_score,
            'sameAnimal': self.same_animal,
            'confidence': self.confidence,
            'threshold': self.threshold,
        }


def score_to_result(score: float, threshold: float) -> ComparisonResult:
    """
    Turn a raw similarity score into a verdict.

    Confidence is the distance from the neutral midpoint 0.5, scaled to [0, 1];
    it does not depend on the decision threshold.
    """
    return ComparisonResult(
        similarity_score=score,
        same_animal=score > threshold,
        confidence=abs(score - 0.5) * 2,
        threshold=threshold,
    )


def compare(context: IdentificationContext, images: Sequence[Any], **overrides) -> Result:
    """
    Decide whether two images show the same animal.

    Args:
        context: Identification context (lazily initialized if needed)
        images: Exactly two decoded image handles
        **overrides: Per-call configuration fields (e.g. prediction_threshold)

    Returns:
        Success(ComparisonResult) or Failure
    """
    try:
        config = context.config.with_overrides(**overrides)
    except (TypeError, ValueError) as e:
        return Failure(status=400, message=f"Invalid comparison configuration: {e}")

    if not ensure_initialized(context):
        return Failure(status=500, message="Identification system not initialized")

    try:
        require_image_pair(images, "comparison")
    except BadRequestError as e:
        return Failure.from_exception(e)

    registry = context.registry
    model = context.model.siamese_model

    try:
        with registry.scope() as scope:
            image_a = scope.track(preprocess(images[0], config, augment=False, registry=registry))
            image_b = scope.track(preprocess(images[1], config, augment=False, registry=registry))
            prediction = scope.track(model.predict(image_a, image_b))
            score = float(prediction.reshape(-1)[0].item())
    except Exception as e:
        logger.error(f"Comparison failed: {e}")
        return Failure.from_exception(e, prefix="Comparison failed: ")

    context.comparison_count += 1
    result = score_to_result(score, config.prediction_threshold)

    context.emit(
        StatusKind.COMPARISON,
        f"Comparison {context.comparison_count}: score={score:.4f}",
        **result.to_dict(),
    )
    return Success(result)


def extract_features(context: IdentificationContext, image: Any) -> Result:
    """
    Embed a single image with the feature extractor.

    Returns:
        Success(tensor of shape [1, feature_size]) tracked by the context
        registry; the caller releases it
    """
    if not ensure_initialized(context):
        return Failure(status=500, message="Feature extractor not initialized")

    registry = context.registry
    extractor = context.model.feature_extractor

    try:
        with registry.scope() as scope:
            tensor = scope.track(preprocess(image, context.config, augment=False, registry=registry))
            extractor.eval()
            with torch.no_grad():
                device = next(extractor.parameters()).device
                features = scope.track(extractor(tensor.to(device)).cpu())
            return Success(scope.keep(features))
    except Exception as e:
        logger.error(f"Feature extraction failed: {e}")
        return Failure.from_exception(e, prefix="Feature extraction failed: ")


def test_model_integrity(context: IdentificationContext) -> Result:
    """
    Run random tensors through both models and check shapes and score range.

    Returns:
        Success(dict with feature shape and similarity) or Failure
    """
    if not context.model.is_ready:
        return Failure(status=400, message="Model not initialized")

    registry = context.registry
    extractor = context.model.feature_extractor
    model = context.model.siamese_model
    size = extractor.image_size

    try:
        with registry.scope() as scope:
            test_a = scope.track(torch.randn(1, size, size, 3, generator=context.generator))
            test_b = scope.track(torch.randn(1, size, size, 3, generator=context.generator))

            extractor.eval()
            with torch.no_grad():
                device = next(extractor.parameters()).device
                features = scope.track(extractor(test_a.to(device)).cpu())

            similarity = scope.track(model.predict(test_a, test_b))
            value = float(similarity.reshape(-1)[0].item())

            if tuple(features.shape) != (1, extractor.feature_size):
                return Failure(status=500, message=f"Unexpected feature shape {list(features.shape)}")
            if not 0.0 <= value <= 1.0:
                return Failure(status=500, message=f"Similarity out of range: {value}")

            logger.info(f"Model integrity check passed: features {list(features.shape)}, similarity={value:.4f}")
            return Success({'feature_shape': list(features.shape), 'similarity': value})
    except Exception as e:
        logger.error(f"Model integrity check failed: {e}")
        return Failure.from_exception(e, prefix="Model integrity check failed: ")
