import asyncio
import shutil
from enum import Enum
from pathlib import Path
from typing import Sequence

from PIL import Image, UnidentifiedImageError

from ..log_utils import get_logger
from .assembler import OrderedAssembler
from .adapters import flatten_image
from .errors import ConversionError, RequestCancelled, ResourceError, ValidationError
from .interfaces import DocumentBuilder, DocumentLoader, ImageEncoder, PageRenderer
from .models import (
    ConversionRequest,
    DocumentToImages,
    ImageFormat,
    ImagesToDocument,
    OutputArtifact,
    PageJob,
    PageOk,
    PageRef,
    RawImage,
    SingleArtifact,
    StagedImage,
)
from .pool import BoundedJobPool
from .scratch import ScratchArea, ScratchSpace

LOGGER = get_logger("pdf_image_service.pipeline")

DOCUMENT_FILENAME = "images.pdf"
DOCUMENT_MIME = "application/pdf"


class PipelineState(str, Enum):
    STAGED = "staged"
    DISPATCHED = "dispatched"
    COLLECTED = "collected"
    FINALIZED = "finalized"
    ABORTED = "aborted"


class ConversionPipeline:
    """Core domain service converting images to a PDF and PDFs to images.

    This service is framework-agnostic. Each call owns one scratch area and
    one bounded job pool; nothing is shared between calls except the
    injected collaborators.
    """

    def __init__(
        self,
        *,
        renderer: PageRenderer,
        page_encoder: ImageEncoder,
        upload_encoder: ImageEncoder,
        builder: DocumentBuilder,
        loader: DocumentLoader,
        scratch: ScratchSpace,
        images_limit: int = 5,
        pages_limit: int = 2,
    ) -> None:
        self._renderer = renderer
        self._page_encoder = page_encoder
        self._upload_encoder = upload_encoder
        self._builder = builder
        self._loader = loader
        self._scratch = scratch
        self._images_pool = BoundedJobPool(images_limit, name="images")
        self._pages_pool = BoundedJobPool(pages_limit, name="pages")
        self._assembler = OrderedAssembler()

    @property
    def scratch(self) -> ScratchSpace:
        return self._scratch

    async def convert(self, request: ConversionRequest, *, cancel: asyncio.Event | None = None) -> OutputArtifact:
        if isinstance(request, ImagesToDocument):
            return await self.images_to_document(request, cancel=cancel)
        if isinstance(request, DocumentToImages):
            return await self.document_to_images(request, cancel=cancel)
        raise TypeError(f"unsupported request type {type(request).__name__}")

    async def images_to_document(
        self, request: ImagesToDocument, *, cancel: asyncio.Event | None = None
    ) -> SingleArtifact:
        with self._scratch.acquire() as area:
            state = PipelineState.STAGED
            try:
                staged = await asyncio.to_thread(self._stage_images, area, request.images)
                self._enter(area, state, f"{len(staged)} image(s)")
                jobs = [PageJob(index=i, source=image) for i, image in enumerate(staged)]
                state = self._enter(area, PipelineState.DISPATCHED, f"{len(jobs)} job(s)")
                results = await self._images_pool.run(jobs, self._reencode_image, cancel=cancel)
                self._raise_if_cancelled(cancel)
                pages = self._assembler.collect(results, len(jobs))
                state = self._enter(area, PipelineState.COLLECTED, f"{len(pages)} page(s)")
                data = await asyncio.to_thread(self._builder.build, pages)
            except BaseException as exc:
                self._abort(area, state, exc)
                raise
            self._enter(area, PipelineState.FINALIZED, f"{len(data)} byte(s)")
            return SingleArtifact(data=data, mime=DOCUMENT_MIME, filename=DOCUMENT_FILENAME)

    async def document_to_images(
        self, request: DocumentToImages, *, cancel: asyncio.Event | None = None
    ) -> OutputArtifact:
        try:
            area = self._scratch.acquire()
        except ResourceError:
            Path(request.document).unlink(missing_ok=True)
            raise
        with area:
            # adopted so a failed move still removes the upload
            area.adopt(request.document)
            state = PipelineState.STAGED
            try:
                staged = await asyncio.to_thread(self._stage_document, area, Path(request.document))
                document = await asyncio.to_thread(self._loader.load, staged)
                if document.page_count == 0:
                    raise ValidationError("document has no pages")
                self._enter(area, state, f"{document.page_count} page(s)")
                jobs = [
                    PageJob(index=i, source=PageRef(document=document, page_number=i))
                    for i in range(document.page_count)
                ]
                state = self._enter(area, PipelineState.DISPATCHED, f"{len(jobs)} job(s)")

                def rasterize(job: PageJob) -> PageOk:
                    return self._rasterize_page(job, request.format, request.scale)

                results = await self._pages_pool.run(jobs, rasterize, cancel=cancel)
                self._raise_if_cancelled(cancel)
                artifact = self._assembler.assemble(results, len(jobs), request.format)
                state = self._enter(area, PipelineState.COLLECTED, f"{len(jobs)} page(s)")
            except BaseException as exc:
                self._abort(area, state, exc)
                raise
            self._enter(area, PipelineState.FINALIZED, type(artifact).__name__)
            return artifact

    @staticmethod
    def _stage_images(area: ScratchArea, images: Sequence[RawImage]) -> list[StagedImage]:
        staged: list[StagedImage] = []
        for index, image in enumerate(images):
            path = area.child(f"image_{index + 1}.{ImageFormat(image.kind.value).extension}")
            try:
                path.write_bytes(image.data)
            except OSError as exc:
                raise ResourceError(f"could not stage image '{image.filename}': {exc}") from exc
            staged.append(StagedImage(path=path, kind=image.kind, filename=image.filename))
        return staged

    @staticmethod
    def _stage_document(area: ScratchArea, upload: Path) -> Path:
        """Move the uploaded document into the area; rendering reads it from there."""
        target = area.child("input.pdf")
        try:
            return Path(shutil.move(str(upload), str(target)))
        except OSError as exc:
            raise ResourceError(f"could not stage document: {exc}") from exc

    def _reencode_image(self, job: PageJob) -> PageOk:
        image_source = job.source
        assert isinstance(image_source, StagedImage)
        try:
            with Image.open(image_source.path) as image:
                image.load()
                flat = flatten_image(image)
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError(f"image '{image_source.filename}' could not be decoded: {exc}") from exc
        data = self._upload_encoder.encode(flat, ImageFormat(image_source.kind.value))
        return PageOk(index=job.index, data=data, width=flat.width, height=flat.height)

    def _rasterize_page(self, job: PageJob, image_format: ImageFormat, scale: float) -> PageOk:
        ref = job.source
        assert isinstance(ref, PageRef)
        image = self._renderer.render(ref.document, ref.page_number, scale)
        data = self._page_encoder.encode(image, image_format)
        return PageOk(index=job.index, data=data, width=image.width, height=image.height)

    @staticmethod
    def _raise_if_cancelled(cancel: asyncio.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise RequestCancelled("client disconnected before conversion finished")

    @staticmethod
    def _enter(area: ScratchArea, state: PipelineState, detail: str) -> PipelineState:
        LOGGER.info("[%s] %s: %s", Path(area.path).name, state.value, detail)
        return state

    @staticmethod
    def _abort(area: ScratchArea, state: PipelineState, exc: BaseException) -> None:
        reason = str(exc) or type(exc).__name__
        if isinstance(exc, ConversionError):
            LOGGER.warning("[%s] %s after %s: %s", Path(area.path).name, PipelineState.ABORTED.value, state.value, reason)
        else:
            LOGGER.error("[%s] %s after %s: %s", Path(area.path).name, PipelineState.ABORTED.value, state.value, reason)
