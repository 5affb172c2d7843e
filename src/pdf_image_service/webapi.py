import asyncio
import contextlib
import os
import secrets
import tempfile
import time
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from pdf_image_service import __version__
from pdf_image_service.conversion import (
    ArchiveArtifact,
    AssemblyError,
    ConversionError,
    ConversionPipeline,
    DocumentMetadata,
    DocumentToImages,
    ImageFormat,
    ImagesToDocument,
    KeyVerifier,
    PageRenderer,
    RawImage,
    RenderError,
    RequestCancelled,
    ResourceError,
    ScratchSpace,
    UploadTooLarge,
    ValidationError,
    build_zip,
    parse_scale,
)
from pdf_image_service.conversion.adapters import (
    Argon2KeyVerifier,
    Img2PdfBuilder,
    OpenAccess,
    PillowEncoder,
    PypdfLoader,
    build_renderer,
)
from pdf_image_service.conversion.models import OutputArtifact
from pdf_image_service.log_utils import get_logger

app = FastAPI(
    title="PDF Image Service",
    version=os.getenv("PDF_IMAGE_SERVICE_VERSION", __version__),
    description="Converts uploaded images into a PDF and rasterizes uploaded PDFs into page images.",
)

LOGGER = get_logger("pdf_image_service.webapi")

# Global configuration defaults
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "100"))
IMAGES_CONCURRENCY = int(os.getenv("IMAGES_CONCURRENCY", "5"))
# rasterization is far heavier than re-encoding; keep this ceiling low
PAGES_CONCURRENCY = int(os.getenv("PAGES_CONCURRENCY", "2"))
RENDERER = os.getenv("RENDERER", "pdfium")
POPPLER_PATH = os.getenv("POPPLER_PATH") or None
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", tempfile.gettempdir()))
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", tempfile.gettempdir()))
DEFAULT_FORMAT = ImageFormat.parse(os.getenv("DEFAULT_FORMAT", "png"))
DEFAULT_SCALE = float(os.getenv("DEFAULT_SCALE", "2.0"))
MAX_SCALE = float(os.getenv("MAX_SCALE", "10"))
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "90"))
PNG_COMPRESS_LEVEL = int(os.getenv("PNG_COMPRESS_LEVEL", "6"))
DOCUMENT_PRODUCER = os.getenv("DOCUMENT_PRODUCER", "pdf-image-service")
DOCUMENT_CREATOR = os.getenv("DOCUMENT_CREATOR", "pdf-image-service")
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "")
INTERNAL_API_KEY_HASH = os.getenv("INTERNAL_API_KEY_HASH", "")
WATCH_DISCONNECT = os.getenv("WATCH_DISCONNECT", "true").lower() in {"1", "true", "yes", "on"}
DISCONNECT_POLL_SEC = 0.25

# Fixed re-encode policy applied to uploaded images before they become pages
UPLOAD_JPEG_QUALITY = 80
UPLOAD_PNG_COMPRESS_LEVEL = 3

SERVICE: ConversionPipeline | None = None
RENDERER_INSTANCE: PageRenderer | None = None
KEY_VERIFIER: KeyVerifier = OpenAccess()


class AuthenticationError(Exception):
    pass


def build_pipeline(renderer: PageRenderer) -> ConversionPipeline:
    return ConversionPipeline(
        renderer=renderer,
        page_encoder=PillowEncoder(jpeg_quality=JPEG_QUALITY, png_compress_level=PNG_COMPRESS_LEVEL),
        upload_encoder=PillowEncoder(
            jpeg_quality=UPLOAD_JPEG_QUALITY,
            png_compress_level=UPLOAD_PNG_COMPRESS_LEVEL,
        ),
        builder=Img2PdfBuilder(DocumentMetadata(producer=DOCUMENT_PRODUCER, creator=DOCUMENT_CREATOR)),
        loader=PypdfLoader(),
        scratch=ScratchSpace(SCRATCH_DIR),
        images_limit=IMAGES_CONCURRENCY,
        pages_limit=PAGES_CONCURRENCY,
    )


def build_key_verifier() -> KeyVerifier:
    if INTERNAL_API_KEY_HASH:
        return Argon2KeyVerifier(INTERNAL_API_KEY_HASH)
    if INTERNAL_API_KEY:
        return Argon2KeyVerifier.from_key(INTERNAL_API_KEY)
    LOGGER.warning("No internal API key configured; conversion routes are open")
    return OpenAccess()


def _error_response(status_code: int, error: str, details: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "details": details})


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    if isinstance(exc, UploadTooLarge):
        return _error_response(413, "Upload too large", str(exc))
    return _error_response(400, "Invalid input", str(exc))


@app.exception_handler(RequestCancelled)
async def _request_cancelled(request: Request, exc: RequestCancelled) -> JSONResponse:
    # 499: client closed request; nobody is left to read the body
    return _error_response(499, "Request cancelled", str(exc))


@app.exception_handler(ConversionError)
async def _conversion_error(request: Request, exc: ConversionError) -> JSONResponse:
    if isinstance(exc, ResourceError):
        return _error_response(500, "Temporary storage failure", str(exc))
    if isinstance(exc, AssemblyError):
        return _error_response(500, "Internal conversion error", str(exc))
    return _error_response(500, "Conversion failed. Check logs for details.", str(exc))


@app.exception_handler(AuthenticationError)
async def _authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
    return _error_response(401, "Unauthorized", str(exc))


async def verify_internal_key(x_internal_key: str | None = Header(None)) -> None:
    if not KEY_VERIFIER.verify(x_internal_key):
        LOGGER.warning("Rejected request with %s internal key", "invalid" if x_internal_key else "missing")
        raise AuthenticationError("missing or invalid X-Internal-Key header")


@app.on_event("startup")
async def _startup() -> None:
    # Renderer state is process-wide: opened once here, closed once on shutdown
    global SERVICE, RENDERER_INSTANCE, KEY_VERIFIER
    renderer = build_renderer(RENDERER, poppler_path=POPPLER_PATH)
    renderer.open()
    RENDERER_INSTANCE = renderer
    SERVICE = build_pipeline(renderer)
    KEY_VERIFIER = build_key_verifier()
    LOGGER.info(
        "Started with renderer=%s images_limit=%d pages_limit=%d",
        RENDERER,
        IMAGES_CONCURRENCY,
        PAGES_CONCURRENCY,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE, RENDERER_INSTANCE
    if RENDERER_INSTANCE is not None:
        RENDERER_INSTANCE.close()
    RENDERER_INSTANCE = None
    SERVICE = None


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok", "service": "pdf-image-service"}


async def _read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    size_bytes = 0
    CHUNK = 1024 * 1024
    while True:
        chunk = await upload.read(CHUNK)
        if not chunk:
            break
        size_bytes += len(chunk)
        if size_bytes > max_bytes:
            raise UploadTooLarge(f"'{upload.filename}' exceeds {MAX_UPLOAD_MB} MB")
        chunks.append(chunk)
    return b"".join(chunks)


async def _stage_upload(upload: UploadFile, max_bytes: int) -> Path:
    """Stream an upload to a uniquely named file under UPLOAD_DIR."""
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    unique_suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
    staged = UPLOAD_DIR / f"upload-{unique_suffix}.pdf"
    size_bytes = 0
    CHUNK = 1024 * 1024
    try:
        with staged.open("wb") as f_out:
            while True:
                chunk = await upload.read(CHUNK)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if size_bytes > max_bytes:
                    raise UploadTooLarge(f"'{upload.filename}' exceeds {MAX_UPLOAD_MB} MB")
                f_out.write(chunk)
        if size_bytes == 0:
            raise ValidationError(f"document '{upload.filename or 'upload'}' is empty")
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    return staged


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            LOGGER.info("Client disconnected from %s; cancelling conversion", request.url.path)
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SEC)


def _service() -> ConversionPipeline:
    if SERVICE is None:
        raise ResourceError("conversion service is not started")
    return SERVICE


async def _run_pipeline(
    request: Request,
    service: ConversionPipeline,
    conversion: ImagesToDocument | DocumentToImages,
) -> OutputArtifact:
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel)) if WATCH_DISCONNECT else None
    try:
        return await service.convert(conversion, cancel=cancel)
    except ConversionError:
        raise
    except Exception as exc:
        LOGGER.exception("Unexpected failure in %s", request.url.path)
        raise RenderError(str(exc) or type(exc).__name__) from exc
    finally:
        if watcher is not None:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher


async def _artifact_response(artifact: OutputArtifact) -> Response:
    if isinstance(artifact, ArchiveArtifact):
        data = await run_in_threadpool(build_zip, artifact.entries)
    else:
        data = artifact.data
    headers = {"Content-Disposition": f'attachment; filename="{artifact.filename}"'}
    return Response(content=data, media_type=artifact.mime, headers=headers)


@app.post("/convert/images-to-document", dependencies=[Depends(verify_internal_key)])
@app.post("/pdf/image-to-pdf", dependencies=[Depends(verify_internal_key)], include_in_schema=False)
async def images_to_document(
    request: Request,
    images: list[UploadFile] | None = File(None, description="Images to place one per page, in order."),
) -> Response:
    """Combine the uploaded PNG/JPEG images into a single PDF, one image per page.

    Pages keep the upload order and are sized exactly to their image.
    """
    service = _service()
    uploads = images or []
    max_bytes = MAX_UPLOAD_MB * 1024 * 1024
    raw_images = []
    for upload in uploads:
        data = await _read_upload(upload, max_bytes)
        raw_images.append(RawImage.from_upload(data, upload.content_type, upload.filename))
    conversion = ImagesToDocument(images=tuple(raw_images))

    artifact = await _run_pipeline(request, service, conversion)
    return await _artifact_response(artifact)


@app.post("/convert/document-to-images", dependencies=[Depends(verify_internal_key)])
@app.post("/pdf/pdf-to-image", dependencies=[Depends(verify_internal_key)], include_in_schema=False)
async def document_to_images(
    request: Request,
    document: UploadFile | None = File(None, description="PDF to rasterize."),
    pdf: UploadFile | None = File(None, description="Legacy field name for the PDF."),
    image_format: str | None = Form(None, alias="format"),
    scale: str | None = Form(None),
    resolution: str | None = Form(None),
    dpi: str | None = Form(None),
) -> Response:
    """Rasterize every page of the uploaded PDF.

    Returns the image itself for a one-page document, otherwise ``pages.zip``
    with ``page_1.<ext>`` … ``page_N.<ext>``. Invalid ``format``/``scale``
    values fall back to the configured defaults.
    """
    service = _service()
    upload = document or pdf
    if upload is None:
        raise ValidationError("a PDF document is required")

    conversion_format = ImageFormat.parse(image_format, DEFAULT_FORMAT)
    conversion_scale = parse_scale(
        scale, dpi, resolution=resolution, default=DEFAULT_SCALE, maximum=MAX_SCALE
    )
    staged = await _stage_upload(upload, MAX_UPLOAD_MB * 1024 * 1024)
    conversion = DocumentToImages(document=staged, format=conversion_format, scale=conversion_scale)

    artifact = await _run_pipeline(request, service, conversion)
    return await _artifact_response(artifact)


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("pdf_image_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
