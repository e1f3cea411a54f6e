"""Typed failures shared by the compositor, stores, job client and API layer.

Every error carries a machine-checkable ``kind``, the HTTP status the API
surfaces it with, a human readable message and optional ``details`` (URLs,
storage keys) that keep partially completed work reconcilable.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class HeroFrameError(Exception):
    kind = "internal_error"
    status_code = 500
    retriable = False

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.kind
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


# -----------------------------------------------------------------------------
# Input errors
# -----------------------------------------------------------------------------


class InputError(HeroFrameError):
    kind = "invalid_input"
    status_code = 400


class NoImageProvided(InputError):
    """No image provided"""

    kind = "no_image_provided"


class InvalidFrameType(InputError):
    """Invalid frame type"""

    kind = "invalid_frame_type"


class UnknownFrame(InvalidFrameType):
    """Frame is not registered"""

    kind = "unknown_frame"


class ImageTooLarge(InputError):
    """Image exceeds the permitted upload size"""

    kind = "image_too_large"
    status_code = 413


class UnsupportedMediaType(InputError):
    """Unsupported image content type"""

    kind = "unsupported_media_type"
    status_code = 415


class RecordNotFound(HeroFrameError):
    """Generation not found"""

    kind = "record_not_found"
    status_code = 404


# -----------------------------------------------------------------------------
# Upstream (inference provider) errors
# -----------------------------------------------------------------------------


class UpstreamError(HeroFrameError):
    kind = "upstream_error"
    status_code = 502


class AuthenticationError(UpstreamError):
    """Inference credentials are missing or were rejected"""

    kind = "authentication_error"
    status_code = 500


class RateLimited(UpstreamError):
    """Inference provider rate limit reached"""

    kind = "rate_limited"
    status_code = 429
    retriable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if retry_after is not None:
            merged.setdefault("retry_after", retry_after)
        super().__init__(message, details=merged)
        self.retry_after = retry_after


class TransientNetworkError(UpstreamError):
    """Remote call timed out or the connection failed"""

    kind = "transient_network_error"
    status_code = 503
    retriable = True


class UpstreamProtocolError(UpstreamError):
    """Malformed response from the inference provider"""

    kind = "upstream_protocol_error"


class UpstreamUnavailable(UpstreamError):
    """Generation could not be started"""

    kind = "upstream_unavailable"


# -----------------------------------------------------------------------------
# Storage errors
# -----------------------------------------------------------------------------


class StorageError(HeroFrameError):
    kind = "storage_error"
    status_code = 503


class StorageUnavailable(StorageError):
    """Storage backend is unavailable"""

    kind = "storage_unavailable"


class StorageConflict(StorageError):
    """Storage key already exists"""

    kind = "storage_conflict"
    status_code = 409


# -----------------------------------------------------------------------------
# Compositor errors
# -----------------------------------------------------------------------------


class CompositeError(HeroFrameError):
    kind = "composite_error"


class DecodeError(CompositeError):
    """Portrait image could not be decoded"""

    kind = "decode_error"
    status_code = 422


class AssetMissing(CompositeError):
    """Frame asset not found"""

    kind = "asset_missing"


class EncodeError(CompositeError):
    """Composite image could not be encoded"""

    kind = "encode_error"


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """Outcome of a lifecycle sub-step: either ``value`` or ``error``."""

    value: Optional[T] = None
    error: Optional[HeroFrameError] = None

    @classmethod
    def success(cls, value: T) -> "StepResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: HeroFrameError) -> "StepResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = [
    "AssetMissing",
    "AuthenticationError",
    "CompositeError",
    "DecodeError",
    "EncodeError",
    "HeroFrameError",
    "ImageTooLarge",
    "InputError",
    "InvalidFrameType",
    "NoImageProvided",
    "RateLimited",
    "RecordNotFound",
    "StepResult",
    "StorageConflict",
    "StorageError",
    "StorageUnavailable",
    "TransientNetworkError",
    "UnknownFrame",
    "UnsupportedMediaType",
    "UpstreamError",
    "UpstreamProtocolError",
    "UpstreamUnavailable",
]
