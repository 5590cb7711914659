"""image2mesh: single image to 3D model with provider fallback."""

from .errors import (
    AuthError,
    GenerationCancelledError,
    GenerationError,
    GenerationExhaustedError,
    GenerationTimeoutError,
    MalformedResponse,
    ProviderReportedFailure,
    ReconstructionError,
    TransientNetworkError,
    ValidationError,
    make_error,
)
from .source_image import SourceImage, load_source_image

__all__ = [
    "SourceImage",
    "load_source_image",
    "GenerationError",
    "ValidationError",
    "AuthError",
    "TransientNetworkError",
    "ProviderReportedFailure",
    "GenerationTimeoutError",
    "MalformedResponse",
    "ReconstructionError",
    "GenerationCancelledError",
    "GenerationExhaustedError",
    "make_error",
]
