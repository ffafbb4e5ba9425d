"""
model_library - Multi-tenant 3D Model Library

Stores versioned 3D model files in an S3-compatible object store with their
metadata in a relational database, and extracts print profiles from the
3MF project files of Bambu Studio, OrcaSlicer and PrusaSlicer.
"""

from .models import (
    SlicerType,
    StorageKind,
    ConflictAction,
    UploadFile,
    IngestionOptions,
    AddVersionInput,
    CreateModelInput,
    ApiUploadInput,
    AddVersionResult,
    CreateModelResult,
    ParsedProfile,
    PrintProfileMetadata,
    PrintProfileInfo,
    BatchUploadResult,
    ArchiveReport,
)
from .config import Settings
from .db import Database
from .storage import ObjectStore
from .pipeline import IngestionPipeline
from .profiles import PrintProfileService
from .archive import ArchiveAssembler
from .parsers import parse_3mf, extract_thumbnail
from .matching import normalize_printer_name, find_conflict
from .errors import (
    LibraryError,
    ValidationError,
    NotFoundOrDenied,
    UsageLimitExceeded,
    StorageFailure,
    ObjectNotFound,
    PersistenceFailure,
)

__all__ = [
    # Enums
    "SlicerType",
    "StorageKind",
    "ConflictAction",
    # Models
    "UploadFile",
    "IngestionOptions",
    "AddVersionInput",
    "CreateModelInput",
    "ApiUploadInput",
    "AddVersionResult",
    "CreateModelResult",
    "ParsedProfile",
    "PrintProfileMetadata",
    "PrintProfileInfo",
    "BatchUploadResult",
    "ArchiveReport",
    # Infrastructure
    "Settings",
    "Database",
    "ObjectStore",
    # Services
    "IngestionPipeline",
    "PrintProfileService",
    "ArchiveAssembler",
    # Parsing & Matching
    "parse_3mf",
    "extract_thumbnail",
    "normalize_printer_name",
    "find_conflict",
    # Exceptions
    "LibraryError",
    "ValidationError",
    "NotFoundOrDenied",
    "UsageLimitExceeded",
    "StorageFailure",
    "ObjectNotFound",
    "PersistenceFailure",
]
