"""Tests for PDF text extraction and the translated overlay."""

import fitz
import pytest

from src.services.exceptions import InputValidationError
from src.services.pdf_overlay import (
    Cluster,
    PdfOverlayReconstructor,
    align_clusters,
    fit_font_size,
    group_clusters,
    sanitize_for_pdf,
)
from src.services.pdf_positions import TextPositionRecord, extract_text_positions, is_pdf


def _record(text: str, y: float, x: float = 72.0, page: int = 0) -> TextPositionRecord:
    return TextPositionRecord(
        text=text, page_index=page, x=x, y=y, width=10.0 * len(text), height=12.0, font_size=11.0
    )


def _make_pdf(lines: list[tuple[float, str]], pages: int = 1) -> bytes:
    doc = fitz.open()
    for _ in range(pages):
        page = doc.new_page()
        for y, text in lines:
            page.insert_text((72, y), text, fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


def test_cluster_gets_its_proportional_share_of_words():
    clusters = [Cluster([_record("Hello world", 100)]), Cluster([_record("Goodbye friend", 200)])]

    mapped = align_clusters(clusters, "uno dos tres cuatro cinco seis siete ocho")

    assert mapped[0].translated == "uno dos tres cuatro"
    assert len(mapped[0].translated.split()) == 4
    assert mapped[1].translated == "cinco seis siete ocho"


def test_alignment_uses_every_word_once():
    clusters = [
        Cluster([_record("a b c", 100)]),
        Cluster([_record("d", 200)]),
        Cluster([_record("e f", 300)]),
    ]
    translated = "one two three four five six seven"

    mapped = align_clusters(clusters, translated)

    assert " ".join(m.translated for m in mapped if m.translated).split() == translated.split()


def test_alignment_without_original_words():
    mapped = align_clusters([], "anything")
    assert mapped == []


def test_group_clusters_splits_on_line_gaps_and_pages():
    records = [
        _record("first", 100),
        _record("same line", 100, x=200),
        _record("next block", 140),
        _record("other page", 100, page=1),
    ]

    clusters = group_clusters(records)

    assert [c.text for c in clusters] == ["first same line", "next block", "other page"]


def test_fit_font_size_shrinks_for_longer_text():
    assert fit_font_size("short", "much longer text", 12.0, 8.0) == 8.0
    assert fit_font_size("hello", "hola", 12.0, 8.0) == 12.0
    assert fit_font_size("abcd", "abcdef", 12.0, 4.0) == pytest.approx(8.0)


def test_sanitize_for_pdf():
    assert sanitize_for_pdf("a → b – “c”") == 'a -> b - "c"'
    assert sanitize_for_pdf("日本") == "??"


def test_extract_text_positions_reads_spans_in_order():
    pdf = _make_pdf([(200, "Second line"), (100, "First line")])

    records = extract_text_positions(pdf)

    assert is_pdf(pdf)
    assert [r.text for r in records] == ["First line", "Second line"]
    assert records[0].y < records[1].y
    assert records[0].font_size == pytest.approx(12.0)


def test_extract_text_positions_rejects_garbage():
    with pytest.raises(InputValidationError):
        extract_text_positions(b"this is not a pdf")


def test_overlay_replaces_page_text():
    pdf = _make_pdf([(100, "Hello world"), (200, "Good morning")], pages=2)

    output = PdfOverlayReconstructor().reconstruct(pdf, "Hola mundo Buenos dias Hola mundo Buenos dias")

    doc = fitz.open(stream=output, filetype="pdf")
    try:
        assert len(doc) == 2
        for page in doc:
            text = page.get_text()
            for word in ("Hola", "mundo", "Buenos", "dias"):
                assert word in text
            assert "Hello" not in text
            assert "morning" not in text
    finally:
        doc.close()
