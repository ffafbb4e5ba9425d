"""
Upload limits: allowed extensions, per-extension size caps, MIME types.
"""

from .errors import EmptyUpload, FileTooLarge, TooManyFiles, UnsupportedType
from .keys import split_extension
from .models import UploadFile

MB = 1024 * 1024

# Per-extension size limits in bytes.
FILE_SIZE_LIMITS: dict[str, int] = {
    # Meshes
    "stl": 100 * MB,
    "obj": 150 * MB,
    "ply": 100 * MB,
    # Containers / CAD
    "3mf": 250 * MB,
    "step": 250 * MB,
    "stp": 250 * MB,
    # Slicer output
    "gcode": 50 * MB,
    # Images
    "jpg": 10 * MB,
    "jpeg": 10 * MB,
    "png": 10 * MB,
    "webp": 10 * MB,
    "gif": 10 * MB,
}

DEFAULT_SIZE_LIMIT = 10 * MB

MODEL_EXTENSIONS = ("stl", "obj", "ply", "3mf", "step", "stp", "gcode")
IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp", "gif")

# Extensions accepted by the version ingestion pipeline.
UPLOAD_EXTENSIONS = frozenset(MODEL_EXTENSIONS + IMAGE_EXTENSIONS)

MAX_FILES_PER_UPLOAD = 10

MIME_TYPES: dict[str, str] = {
    "stl": "application/sla",
    "3mf": "application/vnd.ms-package.3dmanufacturing-3dmodel+xml",
    "obj": "model/obj",
    "ply": "application/x-ply",
    "step": "model/step",
    "stp": "model/step",
    "gcode": "text/x.gcode",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def get_file_size_limit(extension: str) -> int:
    return FILE_SIZE_LIMITS.get(extension.lower().lstrip("."), DEFAULT_SIZE_LIMIT)


def guess_content_type(extension: str, declared: str | None = None) -> str:
    """Prefer the client-declared type, then the extension table."""
    if declared:
        return declared
    return MIME_TYPES.get(extension.lower(), DEFAULT_CONTENT_TYPE)


def format_bytes(size: int) -> str:
    """``1536`` → ``"1.5 KB"``."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size >= 1024 ** (i + 1) and i < len(units) - 1:
        i += 1
    value = round(size / 1024**i, 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[i]}"


def validate_upload(
    file: UploadFile,
    allowed: frozenset[str] = UPLOAD_EXTENSIONS,
) -> str:
    """Check one file's extension and size. Returns the lowercased extension."""
    _, extension = split_extension(file.filename)
    if extension not in allowed:
        raise UnsupportedType(extension, file.filename)
    limit = get_file_size_limit(extension)
    if file.size > limit:
        raise FileTooLarge(file.filename, extension, file.size, limit)
    return extension


def validate_batch(
    files: list[UploadFile],
    max_files: int = MAX_FILES_PER_UPLOAD,
    allowed: frozenset[str] = UPLOAD_EXTENSIONS,
) -> list[str]:
    """Validate a whole batch before any I/O; the first offending file wins."""
    if not files:
        raise EmptyUpload()
    if len(files) > max_files:
        raise TooManyFiles(len(files), max_files)
    return [validate_upload(f, allowed) for f in files]
