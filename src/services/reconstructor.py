"""Rebuild the translated document from a job's translated chunks."""

import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional, Sequence

from src.db.models import Chunk, DocumentKind, JobMethod, TranslationJob
from src.services import html_template, skeleton
from src.services.chunking import join_blocks, join_chunks
from src.services.docx_package import prepare_document_xml, write_document_xml
from src.services.exceptions import ReconstructionError
from src.services.pdf_overlay import PdfOverlayReconstructor
from src.services.storage import StorageService, translated_path, work_path

logger = logging.getLogger(__name__)

HTML_TEMPLATE_NAME = "template.html"

CONTENT_TYPES = {
    DocumentKind.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    DocumentKind.PPTX: "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    DocumentKind.PDF: "application/pdf",
    DocumentKind.HTML: "text/html; charset=utf-8",
    DocumentKind.TXT: "text/plain; charset=utf-8",
}


@dataclass
class ReconstructedDocument:
    content: bytes
    filename: str
    content_type: str


def output_filename(original_filename: str, source_language: str, target_language: str) -> str:
    """``report.docx`` -> ``report_EN_to_ES.docx``"""
    stem, ext = os.path.splitext(original_filename)
    return f"{stem}_{source_language.upper()}_to_{target_language.upper()}{ext}"


def check_chunks(job: TranslationJob, chunks: Sequence[Chunk]):
    """
    Refuse to rebuild from an incomplete chunk set.

    Raises:
        ReconstructionError: count or sequence mismatch, or an untranslated chunk
    """
    if len(chunks) != job.total_chunks:
        raise ReconstructionError(
            f"Expected {job.total_chunks} chunks, found {len(chunks)}",
            details={"job_id": job.id},
        )
    for expected, chunk in enumerate(chunks):
        if chunk.sequence_index != expected:
            raise ReconstructionError(
                f"Chunk sequence broken at position {expected} (found {chunk.sequence_index})",
                details={"job_id": job.id},
            )
        if chunk.translated_text is None:
            raise ReconstructionError(
                f"Chunk {expected + 1}/{len(chunks)} has no translation",
                details={"job_id": job.id},
            )


def rebuild_docx(original: bytes, chunks: Sequence[Chunk]) -> bytes:
    """
    Rebuild a DOCX from chunks that each carry a run of skeleton segments.

    The skeleton is derived again from the original; stripping is
    deterministic, so ordinals match the ones the chunks were cut from.
    Within a chunk, segments map onto ordinals starting at the chunk's
    ``block_index``. A chunk that comes back with a different number of
    segments than it was sent with cannot be mapped safely, so all of its
    runs keep their original text.
    """
    document_xml = prepare_document_xml(original)
    skeleton_map = skeleton.strip(document_xml)

    translations: dict[int, str] = {}
    for chunk in chunks:
        first_ordinal = chunk.block_index or 1
        expected = skeleton.split_segments(chunk.original_text, skeleton_map.delimiter)
        received = skeleton.split_segments(chunk.translated_text, skeleton_map.delimiter)
        if len(received) != len(expected):
            logger.warning(
                f"Chunk {chunk.sequence_index} returned {len(received)} segments "
                f"for {len(expected)} runs; keeping the original text of those runs"
            )
            continue
        for offset, segment in enumerate(received):
            translations[first_ordinal + offset] = segment

    translated_xml = skeleton.fill(
        skeleton_map.skeleton,
        skeleton_map.delimiter,
        translations,
        original_runs=skeleton_map.runs,
    )
    return write_document_xml(original, translated_xml)


def rebuild_html(template: str, chunks: Sequence[Chunk]) -> str:
    """Join each placeholder's chunks with a space and drop them into the template."""
    translated = defaultdict(list)
    originals = defaultdict(list)
    for chunk in chunks:
        translated[chunk.block_index].append(chunk.translated_text)
        originals[chunk.block_index].append(chunk.original_text)
    return html_template.reinsert(
        template,
        {index: " ".join(parts) for index, parts in translated.items()},
        {index: " ".join(parts) for index, parts in originals.items()},
    )


class DocumentReconstructor:
    """Dispatches reconstruction on job method and document kind."""

    def __init__(self, storage: StorageService, pdf_overlay: Optional[PdfOverlayReconstructor] = None):
        self.storage = storage
        self.pdf_overlay = pdf_overlay or PdfOverlayReconstructor()

    def reconstruct(
        self,
        job: TranslationJob,
        chunks: Sequence[Chunk],
        original: Optional[bytes] = None,
    ) -> ReconstructedDocument:
        """
        Build the translated document.

        Args:
            job: The job being finished
            chunks: All of its chunks, ordered by sequence_index
            original: Original file bytes when the caller already holds them

        Raises:
            ReconstructionError: chunks are incomplete or the method has no rebuild step
            StorageError: the original or an intermediate artifact can't be read
        """
        if job.method == JobMethod.NATIVE_PROVIDER_ASYNC:
            raise ReconstructionError("Native provider jobs are rebuilt by the provider")

        chunks = sorted(chunks, key=lambda c: c.sequence_index)
        check_chunks(job, chunks)

        kind = job.document_kind
        if kind == DocumentKind.TXT:
            content = join_blocks([(c.block_index, c.translated_text) for c in chunks]).encode("utf-8")
        elif kind == DocumentKind.HTML:
            template = self.storage.download(
                work_path(job.owner_id, job.id, HTML_TEMPLATE_NAME)
            ).decode("utf-8")
            content = rebuild_html(template, chunks).encode("utf-8")
        elif kind == DocumentKind.DOCX:
            content = rebuild_docx(self._original(job, original), chunks)
        elif kind == DocumentKind.PDF:
            translated_text = join_chunks([c.translated_text for c in chunks])
            content = self.pdf_overlay.reconstruct(self._original(job, original), translated_text)
        else:
            raise ReconstructionError(f"No reconstruction for {kind.value} documents")

        logger.info(f"Reconstructed {kind.value} document for job {job.id} from {len(chunks)} chunks")
        return ReconstructedDocument(
            content=content,
            filename=output_filename(job.original_filename, job.source_language, job.target_language),
            content_type=CONTENT_TYPES[kind],
        )

    def store(self, job: TranslationJob, document: ReconstructedDocument) -> str:
        """Upload the translated file and return its storage path."""
        path = translated_path(job.owner_id, job.id, document.filename)
        return self.storage.upload(document.content, path, document.content_type)

    def store_native_result(self, job: TranslationJob, content: bytes) -> str:
        """Store a document the native provider already translated."""
        return self.store(
            job,
            ReconstructedDocument(
                content=content,
                filename=output_filename(
                    job.original_filename, job.source_language, job.target_language
                ),
                content_type=CONTENT_TYPES[job.document_kind],
            ),
        )

    def _original(self, job: TranslationJob, original: Optional[bytes]) -> bytes:
        if original is not None:
            return original
        return self.storage.download(job.original_storage_path)
