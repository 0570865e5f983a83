"""Read and repackage ``word/document.xml`` inside a DOCX archive."""

import re
import zipfile
from io import BytesIO

from src.services.exceptions import InputValidationError

DOCUMENT_XML = "word/document.xml"
ZIP_SIGNATURE = b"PK\x03\x04"

# Complex field: begin ... [instruction] ... separate ... [cached result] ... end
_FIELD_PATTERN = re.compile(
    r'<w:fldChar w:fldCharType="begin"[^>]*/>(.*?)<w:fldChar w:fldCharType="end"[^>]*/>',
    re.DOTALL,
)
_FIELD_RESULT_PATTERN = re.compile(
    r'<w:fldChar w:fldCharType="separate"[^>]*/>(.*)$',
    re.DOTALL,
)


def is_docx(data: bytes) -> bool:
    """DOCX files are ZIP archives."""
    return data[:4] == ZIP_SIGNATURE


def read_document_xml(data: bytes) -> str:
    """Extract ``word/document.xml`` as text."""
    try:
        with zipfile.ZipFile(BytesIO(data)) as archive:
            return archive.read(DOCUMENT_XML).decode("utf-8")
    except KeyError:
        raise InputValidationError("Invalid DOCX file: word/document.xml not found")
    except zipfile.BadZipFile as e:
        raise InputValidationError(f"Invalid DOCX file: {e}")


def write_document_xml(data: bytes, document_xml: str) -> bytes:
    """Return a copy of the DOCX with ``word/document.xml`` replaced."""
    output = BytesIO()
    with zipfile.ZipFile(BytesIO(data)) as source, zipfile.ZipFile(
        output, "w", compression=zipfile.ZIP_DEFLATED
    ) as target:
        for item in source.infolist():
            if item.filename == DOCUMENT_XML:
                target.writestr(item, document_xml.encode("utf-8"))
            else:
                target.writestr(item, source.read(item.filename))
    return output.getvalue()


def lock_field_codes(xml: str) -> str:
    """
    Replace complex fields (DATE, PAGE, ...) with their cached result.

    Word would otherwise recompute them on open and discard the translation.
    Fields without a cached result are left alone.
    """

    def _replace(match: re.Match) -> str:
        result = _FIELD_RESULT_PATTERN.search(match.group(1))
        if result:
            return result.group(1)
        return match.group(0)

    return _FIELD_PATTERN.sub(_replace, xml)


def prepare_document_xml(data: bytes) -> str:
    """Document XML with field codes locked, ready for skeleton extraction."""
    return lock_field_codes(read_document_xml(data))
