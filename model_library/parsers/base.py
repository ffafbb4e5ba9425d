import io
import re
import zipfile
from abc import ABC, abstractmethod
from typing import Any

from ..matching import normalize_printer_name
from ..models import ParsedProfile, PrintProfileMetadata, SlicerType, UNKNOWN_PRINTER

# Only these members are ever read out of a 3MF container.
ALLOWED_PATHS = (
    # Bambu Studio / OrcaSlicer
    "Metadata/model_settings.config",
    "Metadata/project_settings.config",
    "Metadata/plate_1.json",
    "Metadata/plate_1.png",
    "Metadata/thumbnail.png",
    "Metadata/slice_info.config",
    # PrusaSlicer
    "slic3r_pe.config",
    "Metadata/Slic3r_PE.config",
    "Thumbnails/thumbnail.png",
    # Common 3MF
    "3D/3dmodel.model",
    "[Content_Types].xml",
)

# Per-entry cap on decompressed size; the mesh itself can be large.
MAX_ENTRY_SIZE = 256 * 1024 * 1024

ZipContents = dict[str, bytes]

_HOURS_RE = re.compile(r"(\d+)\s*h", re.IGNORECASE)
_MINUTES_RE = re.compile(r"(\d+)\s*m", re.IGNORECASE)
_SECONDS_RE = re.compile(r"(\d+)\s*s", re.IGNORECASE)
_NUMBER_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)")


def is_allowed_path(path: str) -> bool:
    if ".." in path or path.startswith("/"):
        return False
    return path in ALLOWED_PATHS


def read_zip_contents(data: bytes, max_entry_size: int = MAX_ENTRY_SIZE) -> ZipContents:
    """Extract the allowlisted members of a 3MF container.

    Raises:
        zipfile.BadZipFile: If ``data`` is not a ZIP archive.
        ValueError: If an allowlisted member exceeds ``max_entry_size``.
    """
    contents: ZipContents = {}
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        for info in zf.infolist():
            if info.is_dir() or not is_allowed_path(info.filename):
                continue
            if info.file_size > max_entry_size:
                raise ValueError(
                    f"{info.filename} is too large to inspect ({info.file_size} bytes)"
                )
            contents[info.filename] = zf.read(info)
    return contents


def decode(contents: ZipContents, path: str) -> str | None:
    raw = contents.get(path)
    if raw is None:
        return None
    return raw.decode("utf-8", errors="replace")


def parse_number(value: Any) -> float | None:
    """Leading float of ``value`` (``"0.2mm"`` → ``0.2``), or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER_RE.match(str(value))
    if not match:
        return None
    return float(match.group(0))


def parse_int(value: Any) -> int | None:
    """Leading integer of ``value`` (``"15%"`` → ``15``, ``"220.5"`` → ``220``)."""
    number = parse_number(value)
    if number is None:
        return None
    return int(number)


def parse_duration(text: str | None) -> int | None:
    """``"1h 30m 45s"`` → ``5445``. None when no unit is present."""
    if not text:
        return None
    total = 0
    matched = False
    for pattern, factor in ((_HOURS_RE, 3600), (_MINUTES_RE, 60), (_SECONDS_RE, 1)):
        match = pattern.search(text)
        if match:
            total += int(match.group(1)) * factor
            matched = True
    return total if matched else None


def format_duration(seconds: int) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def summarize_filaments(filaments: list[tuple[str, str | None]]) -> str | None:
    """Human summary of ``(type, color)`` pairs.

    Identical types are grouped: ``2x PLA (#FF0000, #0000FF) + PETG (#000000)``.
    Colors are upper-cased.
    """
    filaments = [(t, c) for t, c in filaments if t]
    if not filaments:
        return None

    if len(filaments) == 1:
        kind, color = filaments[0]
        return f"{kind} ({color.upper()})" if color else kind

    by_type: dict[str, list[str]] = {}
    for kind, color in filaments:
        colors = by_type.setdefault(kind, [])
        if color:
            colors.append(color.upper())

    parts = []
    for kind, colors in by_type.items():
        if len(colors) > 1:
            parts.append(f"{len(colors)}x {kind} ({', '.join(colors)})")
        elif colors:
            parts.append(f"{kind} ({colors[0]})")
        else:
            parts.append(kind)
    return " + ".join(parts)


class BaseParser(ABC):
    """One slicer dialect: recognizes its markers and extracts a profile."""

    @property
    @abstractmethod
    def slicer_type(self) -> SlicerType: ...

    thumbnail_paths: tuple[str, ...] = ()

    @abstractmethod
    def can_parse(self, contents: ZipContents) -> bool: ...

    @abstractmethod
    def parse(self, contents: ZipContents) -> ParsedProfile: ...

    def find_thumbnail(self, contents: ZipContents) -> bytes | None:
        for path in self.thumbnail_paths:
            if contents.get(path):
                return contents[path]
        return None

    def build_profile(
        self,
        printer_name: str | None,
        metadata: PrintProfileMetadata,
        contents: ZipContents,
    ) -> ParsedProfile:
        printer_name = (printer_name or "").strip() or UNKNOWN_PRINTER
        return ParsedProfile(
            printer_name=printer_name,
            printer_name_normalized=normalize_printer_name(printer_name),
            thumbnail=self.find_thumbnail(contents),
            slicer_type=self.slicer_type,
            metadata=metadata,
        )
