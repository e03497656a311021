"""
Error taxonomy and operation results.

Internal code raises ``IdentificationError`` subclasses to short-circuit a
function body; every public operation catches at its boundary and hands back a
``Success`` or ``Failure`` so callers can branch without try/except.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, TypeVar, Union


T = TypeVar('T')


class IdentificationError(Exception):
    """
    Base exception for all identification errors.

    Attributes:
        message: Human-readable error message
        status: HTTP-like status code
    """

    status = 500

    def __init__(self, message: str, status: int = None):
        self.message = message
        if status is not None:
            self.status = status
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a structured {status, message} pair."""
        return {"status": self.status, "message": self.message}


class BadRequestError(IdentificationError):
    """Malformed request or document, or a precondition the caller violated."""
    status = 400


class NotFoundError(IdentificationError):
    """Missing model or stored pairs."""
    status = 404


class PreprocessingError(IdentificationError):
    """Image decode, resize or augmentation failure."""
    status = 500


class ModelBuildError(IdentificationError):
    status = 500


class TrainingError(IdentificationError):
    status = 500


class PersistenceError(IdentificationError):
    """Save/load or key/value store failure."""
    status = 500


class TensorLifecycleError(IdentificationError):
    """A tensor was released twice or released without being tracked."""
    status = 500


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T = None
    success: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Failure:
    status: int
    message: str
    success: bool = field(default=False, init=False)

    @classmethod
    def from_exception(cls, error: Exception, prefix: str = "") -> "Failure":
        """Map an exception to a failure; anything unexpected is a 500."""
        if isinstance(error, IdentificationError):
            return cls(status=error.status, message=f"{prefix}{error.message}")
        return cls(status=500, message=f"{prefix}{error}")

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message}


Result = Union[Success[T], Failure]
