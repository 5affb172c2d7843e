from pathlib import Path
from typing import Protocol, Sequence

from PIL import Image

from .models import DocumentHandle, ImageFormat, PageOk


class PageRenderer(Protocol):
    def open(self) -> None:
        """Initialize process-wide renderer state. Called once at startup."""

    def close(self) -> None:
        """Release process-wide renderer state. Called once at shutdown."""

    def render(self, document: DocumentHandle, page_index: int, scale: float) -> Image.Image:
        """Rasterize one page of ``document`` at ``scale`` times 72 DPI.

        This is a blocking call; callers should offload to threads if needed.
        """


class ImageEncoder(Protocol):
    def encode(self, image: Image.Image, image_format: ImageFormat) -> bytes:
        ...


class DocumentBuilder(Protocol):
    def build(self, pages: Sequence[PageOk]) -> bytes:
        """Compose encoded page images into a single document, one image per page."""


class DocumentLoader(Protocol):
    def load(self, path: Path) -> DocumentHandle:
        ...


class KeyVerifier(Protocol):
    def verify(self, key: str | None) -> bool:
        ...
