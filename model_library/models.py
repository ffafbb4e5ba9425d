from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field


class SlicerType(str, Enum):
    BAMBU = "bambu"
    ORCA = "orca"
    PRUSA = "prusa"
    UNKNOWN = "unknown"


class StorageKind(str, Enum):
    SOURCE = "source"
    SLICER = "slicer"
    ARTIFACT = "artifact"
    TEMP = "temp"


class ConflictAction(str, Enum):
    REPLACE = "replace"
    KEEP_BOTH = "keep_both"
    SKIP = "skip"


UNKNOWN_PRINTER = "Unknown Printer"


# --- Parsed 3MF metadata ---


class PrintSettings(BaseModel):
    layer_height_mm: float | None = None
    infill_percent: int | None = None
    nozzle_temp_c: int | None = None
    bed_temp_c: int | None = None


class PlateInfo(BaseModel):
    count: int = 1
    copies_per_plate: int


class PrintProfileMetadata(BaseModel):
    """Normalized slicer metadata, stored as JSON on the profile row."""

    print_time_seconds: int | None = None
    filament_summary: str | None = None  # "2x PLA (#FF0000, #0000FF) + PETG"
    filament_weight_grams: float | None = None
    settings: PrintSettings | None = None
    plates_info: PlateInfo | None = None


class ParsedProfile(BaseModel):
    """Output of a dialect parser for one 3MF container."""

    printer_name: str = UNKNOWN_PRINTER
    printer_name_normalized: str
    thumbnail: bytes | None = None
    slicer_type: SlicerType
    metadata: PrintProfileMetadata = Field(default_factory=PrintProfileMetadata)


class ParseSuccess(BaseModel):
    success: Literal[True] = True
    profile: ParsedProfile


class ParseFailure(BaseModel):
    success: Literal[False] = False
    reason: Literal["unknown_format", "parse_error"]
    error: str | None = None


ParseResult = Union[ParseSuccess, ParseFailure]


# --- Object store ---


class UploadResult(BaseModel):
    key: str
    size: int
    etag: str


class StoredObject(BaseModel):
    data: bytes
    content_type: str
    size: int


class ObjectInfo(BaseModel):
    size: int
    etag: str
    last_modified: datetime | None = None
    content_type: str = "application/octet-stream"


class DeleteFailure(BaseModel):
    key: str
    error: str


class DeleteManyResult(BaseModel):
    deleted: list[str] = Field(default_factory=list)
    failed: list[DeleteFailure] = Field(default_factory=list)


# --- Ingestion input/output ---


class UploadFile(BaseModel):
    """An in-memory upload as handed over by a request handler."""

    filename: str
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


class IngestionOptions(BaseModel):
    """Optional pipeline features, so every entry point shares one pipeline."""

    derive_thumbnail: bool = True
    auto_parse_profiles: bool = True


class AddVersionInput(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_id: str
    organization_id: str
    actor_id: str
    changelog: str = ""
    files: list[UploadFile]
    preview_image: UploadFile | None = None
    ip: str | None = None
    version_name: str | None = None


class CreateModelInput(BaseModel):
    organization_id: str
    actor_id: str
    name: str
    description: str | None = None
    files: list[UploadFile]
    preview_image: UploadFile | None = None
    ip: str | None = None


class ApiUploadInput(BaseModel):
    model_config = {"protected_namespaces": ()}

    organization_id: str
    actor_id: str
    model_id: str
    file: UploadFile
    version: str | None = None
    version_name: str | None = None
    description: str | None = None


class PreparedFile(BaseModel):
    """A file that has been written to the object store, pending its DB row."""

    storage_key: str
    storage_bucket: str
    filename: str
    original_name: str
    mime_type: str
    extension: str
    size: int


class StoredFileInfo(BaseModel):
    id: str
    filename: str
    original_name: str
    size: int
    mime_type: str
    extension: str
    storage_key: str
    storage_bucket: str
    storage_url: str | None = None


class AddVersionResult(BaseModel):
    version_id: str
    version_label: str
    files: list[StoredFileInfo]
    thumbnail_path: str | None = None
    profile_errors: list[str] = Field(default_factory=list)


class CreateModelResult(AddVersionResult):
    model_config = {"protected_namespaces": ()}

    model_id: str
    slug: str
    storage_root: str


# --- Print profiles ---


class PrintProfileInfo(BaseModel):
    id: str
    version_id: str
    printer_name: str
    printer_name_normalized: str
    file_id: str
    thumbnail_path: str | None = None
    slicer_type: SlicerType | None = None
    metadata: PrintProfileMetadata | None = None
    owns_file: bool = True
    created_at: datetime | None = None
    thumbnail_url: str | None = None


class ExistingProfileRef(BaseModel):
    id: str
    printer_name: str
    created_at: datetime | None = None


class NewProfileRef(BaseModel):
    printer_name: str
    metadata: PrintProfileMetadata | None = None


class ProfileConflictInfo(BaseModel):
    existing_profile: ExistingProfileRef
    new_profile: NewProfileRef
    filename: str


class ProfileCreated(BaseModel):
    success: Literal[True] = True
    profile: PrintProfileInfo


class ProfileConflict(BaseModel):
    conflict: Literal[True] = True
    conflict_info: ProfileConflictInfo


class ProfileRejected(BaseModel):
    success: Literal[False] = False
    reason: Literal["not_3mf", "unknown_format", "parse_error"]
    error: str | None = None


ProfileUploadResult = Union[ProfileCreated, ProfileConflict, ProfileRejected]


class FailedUpload(BaseModel):
    filename: str
    error: str


class BatchUploadResult(BaseModel):
    successful: list[PrintProfileInfo] = Field(default_factory=list)
    conflicts: list[ProfileConflictInfo] = Field(default_factory=list)
    failed: list[FailedUpload] = Field(default_factory=list)


class ProfileDownloadInfo(BaseModel):
    filename: str
    size: int
    mime_type: str
    download_url: str


# --- Archive ---


class ArchiveReport(BaseModel):
    filename: str
    version_label: str
    written: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    total_bytes: int = 0


def dump_metadata(metadata: PrintProfileMetadata | None) -> dict[str, Any] | None:
    """Serialize profile metadata for a JSON column."""
    if metadata is None:
        return None
    return metadata.model_dump(mode="json")
