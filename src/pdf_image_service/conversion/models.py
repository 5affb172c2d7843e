from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Union

from .errors import ValidationError

POINTS_PER_INCH = 72.0
DEFAULT_SCALE = 2.0
MAX_SCALE = 10.0


class ImageKind(str, Enum):
    """Image types accepted as pages of a generated document."""

    PNG = "png"
    JPEG = "jpeg"


class ImageFormat(str, Enum):
    """Output formats for rasterized pages."""

    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"

    @property
    def extension(self) -> str:
        return "jpg" if self is ImageFormat.JPEG else self.value

    @property
    def mime(self) -> str:
        return f"image/{self.value}"

    @classmethod
    def parse(cls, value: str | None, default: "ImageFormat | None" = None) -> "ImageFormat":
        """Resolve a user supplied format name, falling back to ``default``."""
        fallback = default or cls.PNG
        if not value:
            return fallback
        name = value.strip().lower()
        if name == "jpg":
            name = "jpeg"
        try:
            return cls(name)
        except ValueError:
            return fallback


_KIND_BY_EXTENSION = {
    ".png": ImageKind.PNG,
    ".jpg": ImageKind.JPEG,
    ".jpeg": ImageKind.JPEG,
}
_GENERIC_MIME = {"", "application/octet-stream", "binary/octet-stream"}


@dataclass(frozen=True)
class RawImage:
    data: bytes
    kind: ImageKind
    filename: str = "image"

    @classmethod
    def from_upload(cls, data: bytes, content_type: str | None, filename: str | None) -> "RawImage":
        """Build a RawImage from an upload, resolving its kind from MIME type or extension."""
        name = filename or "image"
        if not data:
            raise ValidationError(f"image '{name}' is empty")
        ct = (content_type or "").strip().lower()
        kind: ImageKind | None = None
        if "png" in ct:
            kind = ImageKind.PNG
        elif "jpeg" in ct or "jpg" in ct:
            kind = ImageKind.JPEG
        elif ct in _GENERIC_MIME:
            kind = _KIND_BY_EXTENSION.get(Path(name).suffix.lower())
        if kind is None:
            raise ValidationError(f"image '{name}' has unsupported type '{content_type or 'unknown'}'")
        return cls(data=data, kind=kind, filename=name)


@dataclass(frozen=True)
class StagedImage:
    """An uploaded image written into a request's scratch area."""

    path: Path
    kind: ImageKind
    filename: str


@dataclass(frozen=True)
class DocumentHandle:
    path: Path
    page_count: int


@dataclass(frozen=True)
class PageRef:
    document: DocumentHandle
    page_number: int


@dataclass(frozen=True)
class PageJob:
    index: int
    source: Union[StagedImage, PageRef]


@dataclass(frozen=True)
class PageOk:
    index: int
    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class PageFailed:
    index: int
    cause: BaseException


PageResult = Union[PageOk, PageFailed]


@dataclass(frozen=True)
class ImagesToDocument:
    images: tuple[RawImage, ...]

    def __post_init__(self) -> None:
        if not self.images:
            raise ValidationError("at least one image is required")


@dataclass(frozen=True)
class DocumentToImages:
    document: Path
    format: ImageFormat = ImageFormat.PNG
    scale: float = DEFAULT_SCALE


ConversionRequest = Union[ImagesToDocument, DocumentToImages]


@dataclass(frozen=True)
class SingleArtifact:
    data: bytes
    mime: str
    filename: str


@dataclass(frozen=True)
class ArchiveArtifact:
    entries: tuple[tuple[str, bytes], ...]
    mime: str = "application/zip"
    filename: str = "pages.zip"


OutputArtifact = Union[SingleArtifact, ArchiveArtifact]


@dataclass(frozen=True)
class DocumentMetadata:
    producer: str = "pdf-image-service"
    creator: str = "pdf-image-service"
    title: str = "Images"
    created: datetime | None = None

    def as_pdf_info(self) -> dict[str, str]:
        created = self.created or datetime.now(timezone.utc)
        stamp = created.strftime("D:%Y%m%d%H%M%SZ")
        return {
            "/Producer": self.producer,
            "/Creator": self.creator,
            "/Title": self.title,
            "/CreationDate": stamp,
            "/ModDate": stamp,
        }


def _as_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_scale(
    scale: object = None,
    dpi: object = None,
    *,
    resolution: object = None,
    default: float = DEFAULT_SCALE,
    maximum: float = MAX_SCALE,
) -> float:
    """Resolve the render scale (a multiple of 72 DPI).

    ``scale``, its alias ``resolution`` and the legacy ``dpi`` field are tried
    in that order; the first valid one wins. Invalid or out-of-range input
    falls back to ``default`` instead of failing the request.
    """
    for candidate in (scale, resolution):
        value = _as_float(candidate)
        if value is not None and 0 < value <= maximum:
            return value
    dots = _as_float(dpi)
    if dots is not None and 1 <= dots <= POINTS_PER_INCH * maximum:
        return dots / POINTS_PER_INCH
    return default
