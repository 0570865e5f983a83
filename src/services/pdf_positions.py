"""Extract positioned text runs from PDF pages with PyMuPDF."""

import functools
from dataclasses import dataclass

import fitz  # PyMuPDF

from src.services.exceptions import InputValidationError

PDF_SIGNATURE = b"%PDF"

# Runs whose tops differ by less than this are treated as one line when sorting
LINE_TOLERANCE = 2.0


@dataclass
class TextPositionRecord:
    """One text run on one page. Coordinates in points, origin top-left."""

    text: str
    page_index: int
    x: float
    y: float
    width: float
    height: float
    font_size: float

    @property
    def x1(self) -> float:
        return self.x + self.width

    @property
    def y1(self) -> float:
        return self.y + self.height


def is_pdf(data: bytes) -> bool:
    return data[:4] == PDF_SIGNATURE


def extract_text_positions(pdf_bytes: bytes) -> list[TextPositionRecord]:
    """
    Return every non-blank span of every page in reading order.

    Raises:
        InputValidationError: the bytes are not a readable PDF
    """
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise InputValidationError(f"Invalid PDF file: {e}")

    records: list[TextPositionRecord] = []
    with doc:
        for page_index, page in enumerate(doc):
            data = page.get_text("dict", flags=fitz.TEXT_PRESERVE_WHITESPACE)
            for block in data["blocks"]:
                if block["type"] != 0:
                    continue
                for line in block["lines"]:
                    for span in line["spans"]:
                        text = span["text"].strip()
                        if not text:
                            continue
                        x0, y0, x1, y1 = span["bbox"]
                        records.append(
                            TextPositionRecord(
                                text=text,
                                page_index=page_index,
                                x=x0,
                                y=y0,
                                width=x1 - x0,
                                height=y1 - y0,
                                font_size=span["size"],
                            )
                        )

    return sort_records(records)


def sort_records(records: list[TextPositionRecord]) -> list[TextPositionRecord]:
    """Order by page, then top to bottom, then left to right within a line."""
    return sorted(records, key=functools.cmp_to_key(_compare))


def _compare(a: TextPositionRecord, b: TextPositionRecord) -> int:
    if a.page_index != b.page_index:
        return a.page_index - b.page_index
    if abs(a.y - b.y) > LINE_TOLERANCE:
        return -1 if a.y < b.y else 1
    if a.x != b.x:
        return -1 if a.x < b.x else 1
    return 0
