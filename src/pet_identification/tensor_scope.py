"""
Tensor ownership tracking.

Every tensor handed between components is registered here and must be released
exactly once. ``TensorRegistry.scope()`` gives scoped acquisition: tensors
tracked through the scope are released when it exits, on every path, except
the ones explicitly promoted with ``keep``.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List

import torch

from .errors import TensorLifecycleError


class TensorScope:
    """Collects tensors allocated within one ``with`` block."""

    def __init__(self, registry: "TensorRegistry"):
        self.registry = registry
        self._owned: List[torch.Tensor] = []
        self._kept: set = set()

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        self.registry.track(tensor)
        self._owned.append(tensor)
        return tensor

    def keep(self, tensor: torch.Tensor) -> torch.Tensor:
        """Promote a tracked tensor out of the scope; the caller now owns it."""
        if not any(t is tensor for t in self._owned):
            raise TensorLifecycleError("Cannot keep a tensor that was not tracked by this scope")
        self._kept.add(id(tensor))
        return tensor

    def close(self):
        owned, self._owned = self._owned, []
        for tensor in owned:
            if id(tensor) not in self._kept and self.registry.is_live(tensor):
                self.registry.release(tensor)
        self._kept.clear()


class TensorRegistry:
    """
    Live-tensor bookkeeping for one identification context.

    Releasing drops the registry's reference so the backend can free the
    storage; releasing twice, or releasing something never tracked, raises
    ``TensorLifecycleError``.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._live: Dict[int, torch.Tensor] = {}
        self.total_tracked = 0
        self.total_released = 0

    @property
    def live_count(self) -> int:
        return len(self._live)

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        key = id(tensor)
        if key in self._live:
            return tensor
        self._live[key] = tensor
        self.total_tracked += 1
        return tensor

    def is_live(self, tensor: torch.Tensor) -> bool:
        return self._live.get(id(tensor)) is tensor

    def release(self, tensor: torch.Tensor):
        if not self.is_live(tensor):
            raise TensorLifecycleError(
                f"Tensor {tuple(tensor.shape)} released twice or never tracked"
            )
        del self._live[id(tensor)]
        self.total_released += 1

    def release_all(self, tensors):
        for tensor in tensors:
            self.release(tensor)

    @contextmanager
    def scope(self) -> Iterator[TensorScope]:
        scope = TensorScope(self)
        try:
            yield scope
        finally:
            scope.close()

    def check_leaks(self) -> int:
        """Log and return the number of tensors still live."""
        if self._live:
            shapes = [tuple(t.shape) for t in self._live.values()]
            self.logger.warning(f"{len(shapes)} tensors still live: {shapes[:10]}")
        return len(self._live)
