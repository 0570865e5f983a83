"""
Overlay translated text on copies of the original PDF pages.

Images, vector art and backgrounds survive because the pages are copied as
they are; only the text areas get painted over and re-lettered.

The mapping of translated words to page regions is proportional: each
cluster of runs receives the share of the translated word stream that its
words represent in the original. That is an approximation, not a semantic
alignment, and it drifts for language pairs with very different word
counts.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import fitz  # PyMuPDF

from src.services.pdf_positions import TextPositionRecord, extract_text_positions, sort_records

logger = logging.getLogger(__name__)

BASE_FONT = "helv"
CUSTOM_FONT_NAME = "overlay"
LINE_SPACING = 1.2
BOX_PADDING = 2.0

# Base-14 fonts only cover Latin-1; common typographic characters get ASCII stand-ins
_PDF_REPLACEMENTS = {
    "→": "->",
    "←": "<-",
    "↑": "^",
    "↓": "v",
    "•": "*",
    "–": "-",
    "—": "--",
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "…": "...",
    "™": "(TM)",
}


@dataclass
class Cluster:
    """Runs that form one line or paragraph on a page."""

    records: list[TextPositionRecord]

    @property
    def page_index(self) -> int:
        return self.records[0].page_index

    @property
    def text(self) -> str:
        return " ".join(record.text for record in self.records)

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def font_size(self) -> float:
        return sum(record.font_size for record in self.records) / len(self.records)

    @property
    def rect(self) -> fitz.Rect:
        return fitz.Rect(
            min(r.x for r in self.records),
            min(r.y for r in self.records),
            max(r.x1 for r in self.records),
            max(r.y1 for r in self.records),
        )


@dataclass
class ClusterTranslation:
    cluster: Cluster
    translated: str


def group_clusters(records: list[TextPositionRecord]) -> list[Cluster]:
    """
    Group sorted runs into clusters.

    A run joins the current cluster while it stays on the same page and its
    distance from the previous run's top is smaller than its own height.
    """
    clusters: list[Cluster] = []
    current: list[TextPositionRecord] = []
    last: Optional[TextPositionRecord] = None

    for record in sort_records(records):
        same_cluster = (
            last is not None
            and record.page_index == last.page_index
            and abs(record.y - last.y) < record.height
        )
        if current and not same_cluster:
            clusters.append(Cluster(current))
            current = []
        current.append(record)
        last = record

    if current:
        clusters.append(Cluster(current))
    return clusters


def align_clusters(clusters: list[Cluster], translated_text: str) -> list[ClusterTranslation]:
    """
    Slice the translated word stream proportionally to each cluster's words.

    Boundaries come from rounding the cumulative original word count scaled
    by the translated/original ratio, so every translated word lands in
    exactly one cluster.
    """
    translated_words = translated_text.split()
    total_original = sum(cluster.word_count for cluster in clusters)
    if total_original == 0:
        return [ClusterTranslation(cluster, "") for cluster in clusters]

    ratio = len(translated_words) / total_original
    result: list[ClusterTranslation] = []
    consumed_original = 0
    start = 0
    for index, cluster in enumerate(clusters):
        consumed_original += cluster.word_count
        if index == len(clusters) - 1:
            end = len(translated_words)
        else:
            end = int(consumed_original * ratio + 0.5)
        result.append(ClusterTranslation(cluster, " ".join(translated_words[start:end])))
        start = end
    return result


def sanitize_for_pdf(text: str) -> str:
    """Map text onto what the base-14 Helvetica can show."""
    for original, replacement in _PDF_REPLACEMENTS.items():
        text = text.replace(original, replacement)
    return text.encode("latin-1", errors="replace").decode("latin-1")


def fit_font_size(original: str, translated: str, base_size: float, min_size: float) -> float:
    """Shrink by the length ratio when the translation is longer, never below ``min_size``."""
    if translated and len(translated) > len(original) > 0:
        return max(base_size * len(original) / len(translated), min_size)
    return base_size


def wrap_words(text: str, font: fitz.Font, font_size: float, max_width: float) -> list[str]:
    lines: list[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if current and font.text_length(candidate, fontsize=font_size) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


def _cover_rect(rect: fitz.Rect) -> fitz.Rect:
    return fitz.Rect(
        rect.x0 - BOX_PADDING,
        rect.y0 - BOX_PADDING,
        rect.x1 + BOX_PADDING,
        rect.y1 + BOX_PADDING,
    )


class PdfOverlayReconstructor:
    """Redraw translated text over the original page text."""

    def __init__(self, min_font_size: float = 8.0, font_file: Optional[str] = None):
        self.min_font_size = min_font_size
        self.font_file = font_file

    def reconstruct(self, original_pdf: bytes, translated_text: str) -> bytes:
        records = extract_text_positions(original_pdf)
        clusters = group_clusters(records)
        mappings = align_clusters(clusters, translated_text)

        source = fitz.open(stream=original_pdf, filetype="pdf")
        output = fitz.open()
        try:
            output.insert_pdf(source)

            if self.font_file:
                font = fitz.Font(fontfile=self.font_file)
                font_kwargs = {"fontname": CUSTOM_FONT_NAME, "fontfile": self.font_file}
            else:
                font = fitz.Font(BASE_FONT)
                font_kwargs = {"fontname": BASE_FONT}

            # Redactions must be applied before any translated text is drawn on the page
            for page_index in sorted({m.cluster.page_index for m in mappings}):
                page = output[page_index]
                for mapping in mappings:
                    if mapping.cluster.page_index == page_index:
                        page.add_redact_annot(_cover_rect(mapping.cluster.rect), fill=(1, 1, 1))
                page.apply_redactions(images=fitz.PDF_REDACT_IMAGE_NONE)

            for mapping in mappings:
                page = output[mapping.cluster.page_index]
                self._draw_cluster(page, mapping, font, font_kwargs)

            logger.info(f"Overlaid {len(mappings)} text clusters on {len(output)} pages")
            return output.tobytes(garbage=3, deflate=True)
        finally:
            output.close()
            source.close()

    def _draw_cluster(
        self,
        page: fitz.Page,
        mapping: ClusterTranslation,
        font: fitz.Font,
        font_kwargs: dict,
    ):
        cluster = mapping.cluster
        translated = mapping.translated
        if not self.font_file:
            translated = sanitize_for_pdf(translated)

        if not translated:
            return

        rect = cluster.rect

        font_size = fit_font_size(cluster.text, translated, cluster.font_size, self.min_font_size)
        if font.text_length(translated, fontsize=font_size) <= rect.width:
            lines = [translated]
        else:
            lines = wrap_words(translated, font, font_size, rect.width)

        # First baseline sits one font size below the box top; extra lines continue below
        baseline = rect.y0 + font_size
        for line in lines:
            page.insert_text(
                fitz.Point(rect.x0, baseline),
                line,
                fontsize=font_size,
                color=(0, 0, 0),
                **font_kwargs,
            )
            baseline += font_size * LINE_SPACING
