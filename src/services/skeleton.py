"""
Skeleton extraction and rebuilding for WordprocessingML.

``strip`` pulls every translatable ``<w:t>`` run out of ``word/document.xml``
and leaves a skeleton in which each run's content is a numbered marker
(``§1``, ``§2`` ...). The extracted runs are joined with the same delimiter
glyph so the whole document can be sent to the provider as one string.
``build`` splits the translated string on the delimiter and puts each segment
back behind its marker.
"""

import html
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence
from xml.sax.saxutils import escape

from src.services.exceptions import NoDelimiterAvailableError

# Rarely used glyphs, tried in order. The first one absent from the document wins.
SPECIAL_CHARACTERS = (
    "§",  # section sign
    "¶",  # pilcrow
    "¤",  # currency sign
    "☼",  # sun
    "♦",  # diamond
    "♫",  # beamed notes
    "♪",  # eighth note
    "✓",  # check mark
    "✗",  # ballot x
    "⚑",  # flag
    "⚡",  # high voltage
    "⚙",  # gear
)

# <w:t> and <w:t xml:space="preserve">, but not <w:tab/>, <w:tbl>, <w:t/> ...
_OPEN_RUN = r"<w:t(?:\s[^>]*?)?(?<!/)>"
_CLOSE_RUN = r"</w:t>"
TEXT_RUN_PATTERN = re.compile(f"({_OPEN_RUN})([^<]*)({_CLOSE_RUN})")

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


@dataclass
class SkeletonMap:
    """Skeleton XML plus the delimited text extracted from it."""

    skeleton: str
    text: str
    delimiter: str
    runs: list[str] = field(default_factory=list)

    @property
    def segments(self) -> int:
        return len(self.runs)

    def rebuild(self, translated_text: str) -> str:
        """Build the translated XML, keeping original runs for missing segments."""
        return build(translated_text, self.skeleton, self.delimiter, original_runs=self.runs)


def choose_delimiter(xml: str, decoded_text: str = "") -> str:
    """Pick the first palette glyph that occurs neither in the XML nor its decoded text."""
    for candidate in SPECIAL_CHARACTERS:
        if candidate not in xml and candidate not in decoded_text:
            return candidate
    raise NoDelimiterAvailableError(
        "No unique special character available. Document uses all reserved markers.",
        details={"palette": "".join(SPECIAL_CHARACTERS)},
    )


def escape_xml(text: str) -> str:
    """Escape ``& < > " '`` for element content."""
    return escape(text, _XML_ENTITIES)


def strip(xml: str) -> SkeletonMap:
    """
    Extract translatable text from document XML.

    Args:
        xml: Content of ``word/document.xml``

    Returns:
        SkeletonMap with the marker skeleton, the delimited text and the
        delimiter used.

    Raises:
        NoDelimiterAvailableError: every palette glyph already occurs in the input
    """
    matches = []
    runs = []
    for match in TEXT_RUN_PATTERN.finditer(xml):
        decoded = html.unescape(match.group(2))
        if not decoded.strip():
            continue
        matches.append(match)
        runs.append(decoded)

    delimiter = choose_delimiter(xml, "".join(runs))
    text = delimiter + delimiter.join(runs) + delimiter

    # Replace from the end so the spans of earlier matches stay valid.
    parts = []
    cursor = len(xml)
    for ordinal in range(len(matches), 0, -1):
        start, end = matches[ordinal - 1].span(2)
        parts.append(xml[end:cursor])
        parts.append(f"{delimiter}{ordinal}")
        cursor = start
    parts.append(xml[:cursor])
    skeleton = "".join(reversed(parts))

    return SkeletonMap(skeleton=skeleton, text=text, delimiter=delimiter, runs=runs)


def split_segments(translated_text: str, delimiter: str) -> list[str]:
    """Split provider output on the delimiter, dropping empty fragments."""
    return [part for part in translated_text.split(delimiter) if part.strip()]


def count_markers(skeleton: str, delimiter: str) -> int:
    return len(_marker_pattern(delimiter).findall(skeleton))


def fill(
    skeleton: str,
    delimiter: str,
    translations: Mapping[int, str],
    original_runs: Optional[Sequence[str]] = None,
) -> str:
    """
    Replace markers with translations keyed by ordinal.

    A marker without a translation gets its original run back when
    ``original_runs`` is given, otherwise it is left untouched. The marker
    number is captured whole up to ``</w:t>``, so ``§1`` can never match
    inside ``§12``.
    """

    def _replace(match: re.Match) -> str:
        ordinal = int(match.group(2))
        if ordinal in translations:
            value = translations[ordinal]
        elif original_runs is not None and 0 < ordinal <= len(original_runs):
            value = original_runs[ordinal - 1]
        else:
            return match.group(0)
        return f"{match.group(1)}{escape_xml(value)}{match.group(3)}"

    return _marker_pattern(delimiter).sub(_replace, skeleton)


def build(
    translated_text: str,
    skeleton: str,
    delimiter: str,
    original_runs: Optional[Sequence[str]] = None,
) -> str:
    """
    Rebuild document XML from the translated delimited text.

    Segment ``n`` goes behind marker ``n``. If the provider returned fewer
    segments than were sent, the remaining runs keep their original text.
    """
    segments = split_segments(translated_text, delimiter)
    translations = {ordinal: segment for ordinal, segment in enumerate(segments, start=1)}
    return fill(skeleton, delimiter, translations, original_runs=original_runs)


def _marker_pattern(delimiter: str) -> re.Pattern:
    return re.compile(f"({_OPEN_RUN}){re.escape(delimiter)}(\\d+)({_CLOSE_RUN})")
