"""Tests for splitting text into provider-sized chunks."""

import pytest

from src.services.chunking import group_segments, join_blocks, join_chunks, split_blocks, split_text


def test_short_text_is_one_chunk():
    text = "First paragraph.\n\nSecond paragraph.\n\nThird paragraph."

    assert split_text(text, 5000) == [text]


def test_paragraphs_are_packed_up_to_the_limit():
    paragraphs = ["a" * 40, "b" * 40, "c" * 40]

    chunks = split_text("\n\n".join(paragraphs), 90)

    assert chunks == ["a" * 40 + "\n\n" + "b" * 40, "c" * 40]
    assert all(len(chunk) <= 90 for chunk in chunks)


def test_long_paragraph_splits_on_sentences():
    paragraph = "One two three. Four five six! Seven eight nine? Ten."

    chunks = split_text(paragraph, 20)

    assert chunks == ["One two three.", "Four five six!", "Seven eight nine?", "Ten."]


def test_oversized_sentence_is_kept_whole():
    sentence = "x" * 50

    assert split_text(sentence, 10) == [sentence]


def test_blank_input_gives_no_chunks():
    assert split_text("  \n\n \n", 100) == []


def test_invalid_limit():
    with pytest.raises(ValueError):
        split_text("text", 0)


def test_split_then_join_keeps_paragraphs():
    text = "Alpha.\n\nBeta.\n\nGamma."

    assert join_chunks(split_text(text, 8)) == text


def test_sentence_chunks_of_one_paragraph_share_a_block():
    text = "Intro.\n\nOne two three. Four five six! Seven eight nine?\n\nOutro."

    pieces = split_blocks(text, 20)

    assert [p.text for p in pieces] == [
        "Intro.",
        "One two three.",
        "Four five six!",
        "Seven eight nine?",
        "Outro.",
    ]
    assert [p.block for p in pieces] == [0, 1, 1, 1, 2]


def test_join_blocks_rebuilds_split_paragraphs():
    text = "Intro.\n\nOne two three. Four five six! Seven eight nine?\n\nOutro."
    pieces = split_blocks(text, 20)

    assert join_blocks([(p.block, p.text) for p in pieces]) == text
    assert join_blocks([(None, "a"), (None, "b")]) == "a\n\nb"


def test_group_segments_keeps_runs_whole():
    segments = ["Hello", " world", "Fish & chips", "Tail"]

    groups = group_segments(segments, 16, "§")

    assert [g.first_ordinal for g in groups] == [1, 3, 4]
    assert [g.count for g in groups] == [2, 1, 1]
    assert groups[0].text == "§Hello§ world§"
    assert groups[1].text == "§Fish & chips§"
    assert sum(g.count for g in groups) == len(segments)
