"""
Error taxonomy for the background classifier service.

Startup errors (`ConfigError`, `ModelLoadError`) are fatal. Everything else is
raised per request and turned into a structured error response by the API.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for all errors raised by the service."""


class ConfigError(ServiceError):
    """A required setting is missing or invalid."""


class ModelLoadError(ServiceError):
    """The model or metadata file is missing, unreadable or malformed."""


class NotReadyError(ServiceError):
    """Inference was attempted before the model finished loading."""


class ImageFetchError(ServiceError):
    """The image could not be downloaded."""


class ImageFetchTimeoutError(ImageFetchError):
    """The download did not finish within the allowed time."""


class PayloadTooLargeError(ImageFetchError):
    """The image is larger than the configured byte limit."""


class ImageDecodeError(ServiceError):
    """The image bytes are corrupt or in an unsupported format."""


class InferenceError(ServiceError):
    """The forward pass failed or produced an unexpected output."""


class LabelMismatchError(ServiceError):
    """The label metadata does not contain the classes the decision needs."""
