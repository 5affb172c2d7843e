import io
import threading
from pathlib import Path
from typing import Sequence

import img2pdf
import pypdfium2 as pdfium
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from pdf2image import convert_from_path
from PIL import Image
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from ..log_utils import get_logger
from .errors import RenderError, ValidationError
from .interfaces import DocumentBuilder, DocumentLoader, ImageEncoder, KeyVerifier, PageRenderer
from .models import POINTS_PER_INCH, DocumentHandle, DocumentMetadata, ImageFormat, PageOk

LOGGER = get_logger("pdf_image_service.adapters")


def flatten_image(image: Image.Image) -> Image.Image:
    """Return an 8-bit RGB or L image, compositing any transparency onto white."""
    if image.mode in ("RGB", "L"):
        return image
    if image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


class PypdfLoader(DocumentLoader):
    def load(self, path: Path) -> DocumentHandle:
        try:
            reader = PdfReader(str(path))
            page_count = len(reader.pages)
        except (PyPdfError, OSError, ValueError, KeyError, TypeError) as exc:
            raise ValidationError(f"document could not be read: {exc}") from exc
        return DocumentHandle(path=Path(path), page_count=page_count)


class PdfiumRenderer(PageRenderer):
    """Library renderer backed by pypdfium2.

    pdfium is not thread-safe, so every native call goes through one lock
    held by the renderer. Build a single instance per process, ``open`` it
    at startup and ``close`` it at shutdown.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._opened = False

    @property
    def opened(self) -> bool:
        return self._opened

    def open(self) -> None:
        if self._opened:
            return
        self._opened = True
        LOGGER.info("pdfium renderer ready")

    def close(self) -> None:
        self._opened = False

    def render(self, document: DocumentHandle, page_index: int, scale: float) -> Image.Image:
        if not self._opened:
            raise RenderError("pdfium renderer is not open")
        with self._lock:
            pdf = pdfium.PdfDocument(str(document.path))
            try:
                page = pdf[page_index]
                try:
                    bitmap = page.render(scale=scale)
                    try:
                        # the PIL image shares the bitmap buffer until copied
                        return bitmap.to_pil().copy()
                    finally:
                        bitmap.close()
                finally:
                    page.close()
            finally:
                pdf.close()


class PopplerRenderer(PageRenderer):
    """Subprocess renderer: one ``pdftoppm`` invocation per page via pdf2image."""

    def __init__(self, poppler_path: str | None = None, timeout: int | None = None) -> None:
        self._poppler_path = poppler_path
        self._timeout = timeout

    def open(self) -> None:
        LOGGER.info("poppler renderer ready (poppler_path=%s)", self._poppler_path or "PATH")

    def close(self) -> None:
        pass

    def render(self, document: DocumentHandle, page_index: int, scale: float) -> Image.Image:
        page_number = page_index + 1
        images = convert_from_path(
            str(document.path),
            dpi=POINTS_PER_INCH * scale,
            first_page=page_number,
            last_page=page_number,
            poppler_path=self._poppler_path,
            timeout=self._timeout,
        )
        if not images:
            raise RenderError(f"pdftoppm produced no image for page {page_number}")
        return images[0]


RENDERERS = {
    "pdfium": PdfiumRenderer,
    "poppler": PopplerRenderer,
}


def build_renderer(name: str, *, poppler_path: str | None = None) -> PageRenderer:
    key = (name or "pdfium").strip().lower()
    if key not in RENDERERS:
        raise ValueError(f"unknown renderer '{name}'; expected one of {sorted(RENDERERS)}")
    if key == "poppler":
        return PopplerRenderer(poppler_path=poppler_path)
    return PdfiumRenderer()


class PillowEncoder(ImageEncoder):
    def __init__(self, *, jpeg_quality: int = 90, png_compress_level: int = 6) -> None:
        self.jpeg_quality = jpeg_quality
        self.png_compress_level = png_compress_level

    def encode(self, image: Image.Image, image_format: ImageFormat) -> bytes:
        buffer = io.BytesIO()
        if image_format is ImageFormat.JPEG:
            flatten_image(image).save(buffer, format="JPEG", quality=self.jpeg_quality)
        elif image_format is ImageFormat.WEBP:
            image.save(buffer, format="WEBP", quality=self.jpeg_quality)
        else:
            image.save(buffer, format="PNG", compress_level=self.png_compress_level)
        return buffer.getvalue()


class Img2PdfBuilder(DocumentBuilder):
    """Lay out encoded images one per page, 1 px to 1 pt, then stamp metadata."""

    def __init__(self, metadata: DocumentMetadata | None = None) -> None:
        self._metadata = metadata or DocumentMetadata()

    def build(self, pages: Sequence[PageOk]) -> bytes:
        if not pages:
            raise ValueError("cannot build a document without pages")
        layout = img2pdf.get_fixed_dpi_layout_fun((POINTS_PER_INCH, POINTS_PER_INCH))
        raw = img2pdf.convert([page.data for page in pages], layout_fun=layout)

        writer = PdfWriter(clone_from=PdfReader(io.BytesIO(raw)))
        writer.add_metadata(self._metadata.as_pdf_info())
        output = io.BytesIO()
        writer.write(output)
        return output.getvalue()


class OpenAccess(KeyVerifier):
    def verify(self, key: str | None) -> bool:
        return True


class Argon2KeyVerifier(KeyVerifier):
    def __init__(self, key_hash: str) -> None:
        self._hash = key_hash
        self._hasher = PasswordHasher()

    @classmethod
    def from_key(cls, key: str) -> "Argon2KeyVerifier":
        return cls(PasswordHasher().hash(key))

    def verify(self, key: str | None) -> bool:
        if not key:
            return False
        try:
            return self._hasher.verify(self._hash, key)
        except (VerificationError, InvalidHashError):
            return False
