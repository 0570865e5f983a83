"""Turn HTML into a placeholder template plus the text blocks it contained."""

import html
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import lxml.html
from lxml import etree

from src.services.exceptions import InputValidationError

_PLACEHOLDER = re.compile(r"__TEXT_(\d+)__")
_DOCUMENT = re.compile(r"<html[\s>]|<!doctype", re.IGNORECASE)
# Content of these elements is never translated
RAW_ELEMENTS = frozenset({"script", "style", "noscript", "template"})


@dataclass
class HtmlTemplate:
    template: str
    blocks: list[str] = field(default_factory=list)


def _translatable(element: etree._Element) -> bool:
    # comments and processing instructions have a non-string tag
    return isinstance(element.tag, str) and element.tag.lower() not in RAW_ELEMENTS


def _walk(element: etree._Element, take: Callable[[Optional[str]], Optional[str]]):
    """Visit text and tails in document order."""
    if not _translatable(element):
        return
    element.text = take(element.text)
    for child in element:
        _walk(child, take)
        child.tail = take(child.tail)


def _parse(html_text: str) -> tuple[etree._Element, bool]:
    try:
        if _DOCUMENT.search(html_text):
            return lxml.html.document_fromstring(html_text), True
        return lxml.html.fragment_fromstring(html_text, create_parent="div"), False
    except (etree.ParserError, ValueError) as e:
        raise InputValidationError(f"HTML could not be parsed: {e}")


def _serialize(root: etree._Element, is_document: bool) -> str:
    if is_document:
        return lxml.html.tostring(root.getroottree(), encoding="unicode")
    # drop the wrapper div the fragment parser added
    inner = html.escape(root.text or "", quote=False)
    return inner + "".join(lxml.html.tostring(child, encoding="unicode") for child in root)


def extract(html_text: str) -> HtmlTemplate:
    """
    Replace every non-blank text node with ``__TEXT_n__`` and collect the texts.

    Attributes, comments and the content of script-like elements stay in the
    template untouched. Whitespace around a text stays outside its placeholder.

    Raises:
        InputValidationError: the markup cannot be parsed at all
    """
    root, is_document = _parse(html_text)
    blocks: list[str] = []

    def _take(raw: Optional[str]) -> Optional[str]:
        if raw is None or not raw.strip():
            return raw
        text = raw.strip()
        leading = raw[: len(raw) - len(raw.lstrip())]
        trailing = raw[len(raw.rstrip()):]
        blocks.append(text)
        return f"{leading}__TEXT_{len(blocks) - 1}__{trailing}"

    _walk(root, _take)
    return HtmlTemplate(template=_serialize(root, is_document), blocks=blocks)


def reinsert(template: str, translations: Mapping[int, str], originals: Mapping[int, str] = None) -> str:
    """Fill placeholders; a block without a translation gets its original text back."""

    def _replace(match: re.Match) -> str:
        index = int(match.group(1))
        if index in translations:
            return html.escape(translations[index], quote=False)
        if originals and index in originals:
            return html.escape(originals[index], quote=False)
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)
