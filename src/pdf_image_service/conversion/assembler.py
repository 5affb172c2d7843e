"""Reassemble page results in their original order."""

from __future__ import annotations

import io
from typing import Iterable, Sequence
from zipfile import ZIP_DEFLATED, ZipFile

from .errors import AssemblyError, PageConversionError
from .models import (
    ArchiveArtifact,
    ImageFormat,
    OutputArtifact,
    PageFailed,
    PageOk,
    PageResult,
    SingleArtifact,
)

ZIP_COMPRESSION_LEVEL = 1


def page_filename(index: int, image_format: ImageFormat) -> str:
    return f"page_{index + 1}.{image_format.extension}"


class OrderedAssembler:
    def collect(self, results: Iterable[PageResult], expected_count: int) -> list[PageOk]:
        """Return the successful results sorted by index.

        Raises :class:`AssemblyError` when the indices are not exactly
        ``0..expected_count-1``, and :class:`PageConversionError` for the
        lowest failing index when any job failed.
        """
        by_index: dict[int, PageResult] = {}
        for result in results:
            if not 0 <= result.index < expected_count:
                raise AssemblyError(f"result index {result.index} outside 0..{expected_count - 1}")
            if result.index in by_index:
                raise AssemblyError(f"duplicate result for index {result.index}")
            by_index[result.index] = result
        if len(by_index) != expected_count:
            missing = sorted(set(range(expected_count)) - by_index.keys())
            raise AssemblyError(f"missing results for indices {missing}")

        ordered = [by_index[index] for index in range(expected_count)]
        for result in ordered:
            if isinstance(result, PageFailed):
                raise PageConversionError(result.index, result.cause)
        return [result for result in ordered if isinstance(result, PageOk)]

    def assemble(
        self,
        results: Iterable[PageResult],
        expected_count: int,
        image_format: ImageFormat,
    ) -> OutputArtifact:
        pages = self.collect(results, expected_count)
        if len(pages) == 1:
            page = pages[0]
            return SingleArtifact(
                data=page.data,
                mime=image_format.mime,
                filename=page_filename(page.index, image_format),
            )
        return ArchiveArtifact(
            entries=tuple((page_filename(page.index, image_format), page.data) for page in pages)
        )


def build_zip(entries: Sequence[tuple[str, bytes]]) -> bytes:
    """Serialize archive entries to zip bytes, preserving their order."""
    buffer = io.BytesIO()
    with ZipFile(buffer, "w", compression=ZIP_DEFLATED, compresslevel=ZIP_COMPRESSION_LEVEL) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return buffer.getvalue()
