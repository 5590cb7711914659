"""Error taxonomy and user-facing error messages for image-to-3D generation."""

from __future__ import annotations

ERROR_DEFINITIONS = {
    "IMAGE_INVALID": {
        "message": "Image is too small or could not be read",
        "suggestion": "Use a JPG or PNG image larger than 1 KB",
    },
    "AUTH_FAILED": {
        "message": "Provider rejected the API key",
        "suggestion": "Check the API key for this provider",
    },
    "NETWORK_ERROR": {
        "message": "Could not reach the generation service",
        "suggestion": "Check your internet connection or retry later",
    },
    "PROVIDER_FAILED": {
        "message": "Generation service reported a failure",
        "suggestion": "Try a different image or provider",
    },
    "PROVIDER_TIMEOUT": {
        "message": "Generation service took too long",
        "suggestion": "Retry later or raise the provider timeout",
    },
    "MALFORMED_RESPONSE": {
        "message": "Generation service returned an invalid model",
        "suggestion": "Try a different provider",
    },
    "RECONSTRUCTION_FAILED": {
        "message": "Local 3D reconstruction failed",
        "suggestion": "Ensure the file is a valid image",
    },
    "OPERATION_CANCELLED": {
        "message": "Operation was cancelled",
        "suggestion": "Retry when ready",
    },
    "GENERATION_FAILED": {
        "message": "No provider could generate a 3D model",
        "suggestion": "Try a different image",
    },
    "FILE_IO_ERROR": {
        "message": "Could not save/load file",
        "suggestion": "Check disk space and permissions",
    },
}

SUPPORTED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".heic", ".heif"}


class GenerationError(Exception):
    """Base class for every error raised while producing a 3D asset."""

    error_code = "GENERATION_FAILED"

    def __init__(self, message: str = "", provider_id: str | None = None):
        super().__init__(message or ERROR_DEFINITIONS[self.error_code]["message"])
        self.provider_id = provider_id


class ValidationError(GenerationError):
    error_code = "IMAGE_INVALID"


class AuthError(GenerationError):
    error_code = "AUTH_FAILED"


class TransientNetworkError(GenerationError):
    error_code = "NETWORK_ERROR"


class ProviderReportedFailure(GenerationError):
    error_code = "PROVIDER_FAILED"


class GenerationTimeoutError(GenerationError, TimeoutError):
    error_code = "PROVIDER_TIMEOUT"


class MalformedResponse(GenerationError):
    error_code = "MALFORMED_RESPONSE"


class ReconstructionError(GenerationError):
    """Local reconstruction failed; there is no further fallback."""

    error_code = "RECONSTRUCTION_FAILED"


class GenerationCancelledError(GenerationError):
    error_code = "OPERATION_CANCELLED"


class GenerationExhaustedError(GenerationError):
    """Every provider in the queue, local reconstruction included, failed."""

    error_code = "GENERATION_FAILED"

    def __init__(self, message: str, attempts: list | None = None):
        super().__init__(message)
        self.attempts = attempts or []


def make_error(command: str, code: str) -> dict:
    details = ERROR_DEFINITIONS[code]
    return {
        "type": "error",
        "command": command,
        "errorCode": code,
        "message": details["message"],
        "suggestion": details["suggestion"],
    }


def error_from_exception(command: str, exc: GenerationError) -> dict:
    error = make_error(command, exc.error_code)
    error["detail"] = str(exc)
    if exc.provider_id:
        error["providerId"] = exc.provider_id
    return error
