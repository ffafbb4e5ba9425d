"""
3MF print-profile extraction.

Usage:
    result = parse_3mf(data)
    if result.success:
        print(result.profile.printer_name)
"""

import io
import logging
import zipfile

from ..models import ParseFailure, ParseResult, ParseSuccess
from .bambu import BambuParser
from .base import (
    BaseParser,
    format_duration,
    parse_duration,
    read_zip_contents,
    summarize_filaments,
)
from .orca import OrcaParser
from .prusa import PrusaParser

logger = logging.getLogger(__name__)

# Priority order: the first parser whose markers match wins. Orca projects can
# carry Bambu-style config, so Bambu is checked first.
PARSERS: list[BaseParser] = [BambuParser(), OrcaParser(), PrusaParser()]

THUMBNAIL_PATHS = (
    "Metadata/plate_1.png",
    "Metadata/thumbnail.png",
    "Thumbnails/thumbnail.png",
)


def is_3mf_file(filename: str) -> bool:
    return filename.lower().endswith(".3mf")


def parse_3mf(data: bytes, parsers: list[BaseParser] | None = None) -> ParseResult:
    """Detect the slicer dialect of a 3MF container and extract its profile."""
    try:
        contents = read_zip_contents(data)
    except Exception as e:
        return ParseFailure(reason="parse_error", error=f"Failed to read 3MF archive: {e}")

    for parser in parsers if parsers is not None else PARSERS:
        if not parser.can_parse(contents):
            continue
        try:
            profile = parser.parse(contents)
        except Exception as e:
            logger.warning("%s parser failed: %s", parser.slicer_type.value, e)
            return ParseFailure(reason="parse_error", error=str(e) or type(e).__name__)
        return ParseSuccess(profile=profile)

    return ParseFailure(reason="unknown_format")


def extract_thumbnail(data: bytes) -> bytes | None:
    """Best-effort embedded preview image; never raises."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = set(zf.namelist())
            for path in THUMBNAIL_PATHS:
                if path in names:
                    return zf.read(path) or None
    except Exception as e:
        logger.debug("No thumbnail extracted: %s", e)
    return None


__all__ = [
    "PARSERS",
    "BaseParser",
    "BambuParser",
    "OrcaParser",
    "PrusaParser",
    "extract_thumbnail",
    "format_duration",
    "is_3mf_file",
    "parse_3mf",
    "parse_duration",
    "read_zip_contents",
    "summarize_filaments",
]
