from __future__ import annotations

import io
import threading
import time
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from pypdf import PdfWriter

from pdf_image_service import webapi
from pdf_image_service.conversion import (
    ConversionPipeline,
    DocumentHandle,
    ScratchSpace,
)
from pdf_image_service.conversion.adapters import Img2PdfBuilder, PillowEncoder, PypdfLoader


def encode_image(width: int, height: int, fmt: str = "PNG", mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), "red" if mode != "L" else 128).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture()
def image_factory() -> Callable[..., bytes]:
    return encode_image


@pytest.fixture()
def pdf_factory(tmp_path: Path) -> Callable[..., Path]:
    def _create(pages: int, filename: str = "document.pdf", size: tuple[int, int] = (200, 200)) -> Path:
        path = tmp_path / "inputs" / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=size[0], height=size[1])
        with path.open("wb") as handle:
            writer.write(handle)
        return path

    return _create


@pytest.fixture()
def scratch_dir(tmp_path: Path) -> Path:
    return tmp_path / "scratch"


class FakeRenderer:
    """Renderer returning page images whose width encodes the page index.

    ``delays`` maps page index to seconds slept before returning, and
    ``failures`` maps page index to the exception raised instead.
    """

    def __init__(
        self,
        delays: dict[int, float] | None = None,
        failures: dict[int, Exception] | None = None,
    ) -> None:
        self.delays = delays or {}
        self.failures = failures or {}
        self.calls: list[tuple[int, float]] = []
        self._lock = threading.Lock()

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def render(self, document: DocumentHandle, page_index: int, scale: float) -> Image.Image:
        with self._lock:
            self.calls.append((page_index, scale))
        time.sleep(self.delays.get(page_index, 0))
        if page_index in self.failures:
            raise self.failures[page_index]
        return Image.new("RGB", (10 * (page_index + 1), 20), "white")


@pytest.fixture()
def pipeline_factory(scratch_dir: Path) -> Callable[..., ConversionPipeline]:
    def _create(renderer: object | None = None, **overrides: object) -> ConversionPipeline:
        options: dict[str, object] = {
            "renderer": renderer or FakeRenderer(),
            "page_encoder": PillowEncoder(),
            "upload_encoder": PillowEncoder(jpeg_quality=80, png_compress_level=3),
            "builder": Img2PdfBuilder(),
            "loader": PypdfLoader(),
            "scratch": ScratchSpace(scratch_dir),
        }
        options.update(overrides)
        return ConversionPipeline(**options)  # type: ignore[arg-type]

    return _create


@pytest.fixture()
def upload_dir(tmp_path: Path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, scratch_dir: Path, upload_dir: Path) -> Iterator[TestClient]:
    monkeypatch.setattr(webapi, "SCRATCH_DIR", scratch_dir)
    monkeypatch.setattr(webapi, "UPLOAD_DIR", upload_dir)
    monkeypatch.setattr(webapi, "RENDERER", "pdfium")
    monkeypatch.setattr(webapi, "INTERNAL_API_KEY", "")
    monkeypatch.setattr(webapi, "INTERNAL_API_KEY_HASH", "")
    monkeypatch.setattr(webapi, "WATCH_DISCONNECT", False)
    with TestClient(webapi.app) as test_client:
        yield test_client


def leftover_files(*directories: Path) -> list[Path]:
    found: list[Path] = []
    for directory in directories:
        if directory.exists():
            found.extend(directory.iterdir())
    return found
