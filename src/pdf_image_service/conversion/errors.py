"""Exceptions raised by the conversion pipeline."""

from __future__ import annotations


class ConversionError(Exception):
    """Base class for every failure the pipeline reports."""


class ValidationError(ConversionError):
    """Raised when the request input cannot be converted (client error)."""


class UploadTooLarge(ValidationError):
    """Raised when an upload exceeds the configured size limit."""


class RenderError(ConversionError):
    """Raised when a page or image could not be rasterized or encoded."""


class PageConversionError(RenderError):
    """Raised for the lowest-index page job that failed in a request."""

    def __init__(self, index: int, cause: BaseException) -> None:
        self.index = index
        self.cause = cause
        super().__init__(f"page {index + 1} failed: {cause}")


class ResourceError(ConversionError):
    """Raised when a scratch area could not be created or removed."""


class AssemblyError(ConversionError):
    """Raised when page results do not cover the expected indices exactly once."""


class RequestCancelled(ConversionError):
    """Raised when the client went away before the conversion finished."""


class JobCancelled(ConversionError):
    """Recorded as the cause for page jobs that were never admitted."""
