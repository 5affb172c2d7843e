"""
Domain layer for image/PDF conversion.
Provides collaborator interfaces, the bounded page-job pool, ordered result
assembly, per-request scratch areas and the pipeline that ties them together,
so front-ends (HTTP or others) can use the same core logic.
"""

from .assembler import OrderedAssembler, build_zip
from .errors import (
    AssemblyError,
    ConversionError,
    JobCancelled,
    PageConversionError,
    RenderError,
    RequestCancelled,
    ResourceError,
    UploadTooLarge,
    ValidationError,
)
from .interfaces import DocumentBuilder, DocumentLoader, ImageEncoder, KeyVerifier, PageRenderer
from .models import (
    ArchiveArtifact,
    DocumentHandle,
    DocumentMetadata,
    DocumentToImages,
    ImageFormat,
    ImageKind,
    ImagesToDocument,
    PageFailed,
    PageJob,
    PageOk,
    PageRef,
    RawImage,
    SingleArtifact,
    StagedImage,
    parse_scale,
)
from .pool import BoundedJobPool
from .scratch import ScratchArea, ScratchSpace
from .service import ConversionPipeline, PipelineState
