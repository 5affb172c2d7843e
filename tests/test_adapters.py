from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image
from pypdf import PdfReader

from pdf_image_service.conversion import DocumentHandle, ImageFormat, PageOk, RenderError, ValidationError
from pdf_image_service.conversion import adapters
from pdf_image_service.conversion.adapters import (
    Argon2KeyVerifier,
    Img2PdfBuilder,
    OpenAccess,
    PdfiumRenderer,
    PillowEncoder,
    PopplerRenderer,
    PypdfLoader,
    build_renderer,
    flatten_image,
)
from pdf_image_service.conversion.models import DocumentMetadata


def test_loader_counts_pages(pdf_factory) -> None:
    handle = PypdfLoader().load(pdf_factory(3))

    assert handle.page_count == 3


def test_loader_rejects_garbage(tmp_path: Path) -> None:
    path = tmp_path / "garbage.pdf"
    path.write_bytes(b"%PDF-1.4 truncated")

    with pytest.raises(ValidationError):
        PypdfLoader().load(path)


def test_pdfium_renders_at_scale(pdf_factory) -> None:
    path = pdf_factory(2, size=(200, 100))
    renderer = PdfiumRenderer()
    renderer.open()
    try:
        image = renderer.render(DocumentHandle(path=path, page_count=2), 1, 2.0)
    finally:
        renderer.close()

    assert image.size == (400, 200)


def test_pdfium_must_be_opened_first(pdf_factory) -> None:
    renderer = PdfiumRenderer()

    with pytest.raises(RenderError):
        renderer.render(DocumentHandle(path=pdf_factory(1), page_count=1), 0, 1.0)


def test_poppler_renders_one_page_per_call(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: list[dict] = []

    def fake_convert_from_path(path: str, **kwargs: object) -> list[Image.Image]:
        calls.append({"path": path, **kwargs})
        return [Image.new("RGB", (5, 5))]

    monkeypatch.setattr(adapters, "convert_from_path", fake_convert_from_path)
    renderer = PopplerRenderer(poppler_path="/opt/poppler/bin")

    image = renderer.render(DocumentHandle(path=tmp_path / "doc.pdf", page_count=4), 2, 1.5)

    assert image.size == (5, 5)
    assert calls == [
        {
            "path": str(tmp_path / "doc.pdf"),
            "dpi": 108.0,
            "first_page": 3,
            "last_page": 3,
            "poppler_path": "/opt/poppler/bin",
            "timeout": None,
        }
    ]


def test_poppler_without_output_is_a_render_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(adapters, "convert_from_path", lambda *args, **kwargs: [])

    with pytest.raises(RenderError):
        PopplerRenderer().render(DocumentHandle(path=tmp_path / "doc.pdf", page_count=1), 0, 1.0)


def test_build_renderer() -> None:
    assert isinstance(build_renderer("pdfium"), PdfiumRenderer)
    assert isinstance(build_renderer(" Poppler "), PopplerRenderer)
    with pytest.raises(ValueError):
        build_renderer("ghostscript")


def test_flatten_composites_transparency_on_white() -> None:
    transparent = Image.new("RGBA", (2, 2), (0, 0, 0, 0))

    flat = flatten_image(transparent)

    assert flat.mode == "RGB"
    assert flat.getpixel((0, 0)) == (255, 255, 255)


@pytest.mark.parametrize(
    ("image_format", "pil_format"),
    [(ImageFormat.PNG, "PNG"), (ImageFormat.JPEG, "JPEG"), (ImageFormat.WEBP, "WEBP")],
)
def test_encoder_writes_requested_format(image_format: ImageFormat, pil_format: str) -> None:
    data = PillowEncoder().encode(Image.new("RGBA", (8, 6), (10, 20, 30, 128)), image_format)

    with Image.open(io.BytesIO(data)) as decoded:
        assert decoded.format == pil_format
        assert decoded.size == (8, 6)


def test_builder_stamps_metadata_and_sizes_pages(image_factory) -> None:
    pages = [
        PageOk(index=0, data=image_factory(100, 200), width=100, height=200),
        PageOk(index=1, data=image_factory(50, 50, "JPEG"), width=50, height=50),
    ]
    builder = Img2PdfBuilder(DocumentMetadata(producer="tests-producer", creator="tests-creator"))

    reader = PdfReader(io.BytesIO(builder.build(pages)))

    assert len(reader.pages) == 2
    assert float(reader.pages[0].mediabox.width) == 100.0
    assert float(reader.pages[0].mediabox.height) == 200.0
    assert reader.metadata.producer == "tests-producer"
    assert reader.metadata.creator == "tests-creator"


def test_builder_needs_pages() -> None:
    with pytest.raises(ValueError):
        Img2PdfBuilder().build([])


def test_argon2_verifier() -> None:
    verifier = Argon2KeyVerifier.from_key("s3cret")

    assert verifier.verify("s3cret")
    assert not verifier.verify("wrong")
    assert not verifier.verify(None)
    assert not Argon2KeyVerifier("not-a-hash").verify("s3cret")
    assert OpenAccess().verify(None)
