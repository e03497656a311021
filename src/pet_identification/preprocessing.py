"""
Tensor Preprocessor
Turns a decoded image into a normalized, optionally augmented [1, H, W, 3] tensor.
"""

import random
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import torch
import torchvision.transforms.functional as TF
from PIL import Image
from torchvision.transforms import InterpolationMode

from .config import IdentificationConfig
from .errors import IdentificationError, PreprocessingError
from .image_sources import ImageSource, decode_image
from .tensor_scope import TensorRegistry, TensorScope


# ImageNet statistics, channel order R, G, B
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

HORIZONTAL_FLIP_PROBABILITY = 0.5
VERTICAL_FLIP_PROBABILITY = 0.1
ROTATION_PROBABILITY = 0.2
TRANSLATION_PROBABILITY = 0.2
BRIGHTNESS_PROBABILITY = 0.2
CONTRAST_PROBABILITY = 0.2

MAX_ROTATION_DEGREES = 15.0
MAX_TRANSLATION_PIXELS = 5
MAX_BRIGHTNESS_DELTA = 0.1
CONTRAST_RANGE = (0.85, 1.15)


@dataclass
class AugmentationPlan:
    """The random draws for one augmentation pass; None means the step is skipped."""
    flip_horizontal: bool = False
    flip_vertical: bool = False
    rotation_degrees: Optional[float] = None
    translation: Optional[Tuple[int, int]] = None
    brightness_delta: Optional[float] = None
    contrast_factor: Optional[float] = None

    @property
    def applied(self) -> List[str]:
        steps = []
        if self.flip_horizontal:
            steps.append('flip_horizontal')
        if self.flip_vertical:
            steps.append('flip_vertical')
        if self.rotation_degrees is not None:
            steps.append('rotation')
        if self.translation is not None:
            steps.append('translation')
        if self.brightness_delta is not None:
            steps.append('brightness')
        if self.contrast_factor is not None:
            steps.append('contrast')
        return steps


def sample_augmentation_plan(rng: random.Random) -> AugmentationPlan:
    """Draw every augmentation step independently, in pipeline order."""
    plan = AugmentationPlan()

    plan.flip_horizontal = rng.random() < HORIZONTAL_FLIP_PROBABILITY
    plan.flip_vertical = rng.random() < VERTICAL_FLIP_PROBABILITY

    if rng.random() < ROTATION_PROBABILITY:
        plan.rotation_degrees = rng.uniform(-MAX_ROTATION_DEGREES, MAX_ROTATION_DEGREES)

    if rng.random() < TRANSLATION_PROBABILITY:
        plan.translation = (
            rng.randint(-MAX_TRANSLATION_PIXELS, MAX_TRANSLATION_PIXELS),
            rng.randint(-MAX_TRANSLATION_PIXELS, MAX_TRANSLATION_PIXELS),
        )

    if rng.random() < BRIGHTNESS_PROBABILITY:
        plan.brightness_delta = rng.uniform(-MAX_BRIGHTNESS_DELTA, MAX_BRIGHTNESS_DELTA)

    if rng.random() < CONTRAST_PROBABILITY:
        plan.contrast_factor = rng.uniform(*CONTRAST_RANGE)

    return plan


def _spatial(tensor: torch.Tensor, transform) -> torch.Tensor:
    """Run a channels-first torchvision op on an HxWx3 tensor."""
    chw = tensor.permute(2, 0, 1)
    return transform(chw).permute(1, 2, 0).contiguous()


def apply_augmentation(tensor: torch.Tensor, plan: AugmentationPlan,
                       scope: Optional[TensorScope] = None) -> torch.Tensor:
    """
    Apply an augmentation plan to an HxWx3 float tensor in [0, 255].

    Each step reads the current tensor and may replace it. When a scope is
    given every intermediate is tracked by it.
    """
    track = scope.track if scope is not None else (lambda t: t)

    if plan.flip_horizontal:
        tensor = track(torch.flip(tensor, dims=[1]))

    if plan.flip_vertical:
        tensor = track(torch.flip(tensor, dims=[0]))

    if plan.rotation_degrees is not None:
        angle = plan.rotation_degrees
        tensor = track(_spatial(tensor, lambda t: TF.rotate(
            t, angle, interpolation=InterpolationMode.BILINEAR, fill=[0.0]
        )))

    if plan.translation is not None:
        dx, dy = plan.translation
        tensor = track(_spatial(tensor, lambda t: TF.affine(
            t, angle=0.0, translate=[dx, dy], scale=1.0, shear=[0.0, 0.0], fill=[0.0]
        )))

    if plan.brightness_delta is not None:
        tensor = track(tensor + plan.brightness_delta)

    if plan.contrast_factor is not None:
        mean = track(tensor.mean())
        tensor = track((tensor - mean) * plan.contrast_factor + mean)

    return tensor


def normalize(tensor: torch.Tensor) -> torch.Tensor:
    """Scale [0, 255] pixels to [0, 1] and standardize with ImageNet statistics."""
    mean = torch.tensor(IMAGENET_MEAN, dtype=tensor.dtype)
    std = torch.tensor(IMAGENET_STD, dtype=tensor.dtype)
    return (tensor / 255.0 - mean) / std


def preprocess(source: ImageSource, config: IdentificationConfig, augment: bool = False,
               rng: Optional[random.Random] = None,
               registry: Optional[TensorRegistry] = None) -> torch.Tensor:
    """
    Preprocess an image for the siamese model.

    Args:
        source: Decoded image handle (see ``image_sources.decode_image``)
        config: Configuration providing ``image_size``
        augment: Apply the random augmentation pipeline (training only)
        rng: Random source for augmentation; the module-level generator if None
        registry: Registry that will own the returned tensor

    Returns:
        Float tensor of shape [1, image_size, image_size, 3], tracked by
        ``registry``; the caller is responsible for releasing it

    Raises:
        PreprocessingError: decode, resize or augmentation failed
    """
    registry = registry if registry is not None else TensorRegistry()
    size = config.image_size

    with registry.scope() as scope:
        try:
            image = decode_image(source)
            image = image.resize((size, size), Image.Resampling.BILINEAR)

            pixels = np.asarray(image, dtype=np.float32)
            tensor = scope.track(torch.from_numpy(pixels.copy()))

            if augment:
                plan = sample_augmentation_plan(rng if rng is not None else random)
                tensor = apply_augmentation(tensor, plan, scope)

            tensor = scope.track(normalize(tensor))
            batched = scope.track(tensor.unsqueeze(0).contiguous())
        except IdentificationError:
            raise
        except Exception as e:
            raise PreprocessingError(f"Image preprocessing failed: {e}") from e

        return scope.keep(batched)
