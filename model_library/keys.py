"""
Deterministic object-store key naming.

Every key is reconstructible from {organization, model, version, kind,
stored filename}; uniqueness comes from the random suffix the caller bakes
into the stored filename, never from this module.
"""

import re
import time
import unicodedata
import uuid

from .models import StorageKind

FALLBACK_FILENAME = "model-file"

# Directory segment per storage kind.
_KIND_SEGMENTS: dict[StorageKind, str] = {
    StorageKind.SOURCE: "sources",
    StorageKind.SLICER: "slicer",
    StorageKind.ARTIFACT: "artifacts",
}

SLICER_EXTENSIONS = frozenset({"3mf"})

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def version_root(organization_id: str, model_id: str, version: str) -> str:
    return f"{organization_id}/{model_id}/{version}"


def storage_key(
    organization_id: str,
    model_id: str,
    version: str,
    filename: str,
    kind: StorageKind | str = StorageKind.SOURCE,
    now_ms: int | None = None,
) -> str:
    """Build the object key for a file.

    ``temp`` keys are not scoped to a tenant and carry an epoch-millisecond
    prefix; pass ``now_ms`` to keep the call reproducible.
    """
    kind = StorageKind(kind)
    if kind == StorageKind.TEMP:
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        return f"temp/{stamp}-{filename}"
    root = version_root(organization_id, model_id, version)
    return f"{root}/{_KIND_SEGMENTS[kind]}/{filename}"


def kind_from_key(key: str) -> StorageKind | None:
    """Recover the storage kind from a key produced by :func:`storage_key`."""
    if key.startswith("temp/"):
        return StorageKind.TEMP
    parts = key.split("/")
    if len(parts) < 5:
        return None
    for kind, segment in _KIND_SEGMENTS.items():
        if parts[3] == segment:
            return kind
    return None


def storage_kind_for(extension: str) -> StorageKind:
    """3MF project files live under ``slicer/``; everything else is a source."""
    if extension.lower() in SLICER_EXTENSIONS:
        return StorageKind.SLICER
    return StorageKind.SOURCE


def slugify(text: str, fallback: str = FALLBACK_FILENAME) -> str:
    """Lowercase ASCII slug with single dashes: ``"Benchy V2!"`` → ``"benchy-v2"``."""
    ascii_text = (
        unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    )
    slug = _NON_SLUG_RE.sub("-", ascii_text.lower()).strip("-")
    return slug or fallback


def split_extension(filename: str) -> tuple[str, str]:
    """Split ``"Part.Final.STL"`` into ``("Part.Final", "stl")``.

    A leading dot (``".hidden"``) or trailing dot is not an extension.
    """
    name = filename.strip()
    dot = name.rfind(".")
    if 0 < dot < len(name) - 1:
        return name[:dot], name[dot + 1:].lower()
    return name, ""


def short_suffix() -> str:
    return uuid.uuid4().hex[:8]


def stored_filename(original_name: str, suffix: str | None = None) -> tuple[str, str]:
    """Return ``(stored_filename, extension)`` for an upload.

    The stored name is ``slug(base)-{suffix}.{ext}``; the extension falls back
    to ``bin`` for the record when the upload has none.
    """
    base, extension = split_extension(original_name.strip() or FALLBACK_FILENAME)
    safe_base = slugify(base or FALLBACK_FILENAME)
    suffix = suffix or short_suffix()
    if extension:
        return f"{safe_base}-{suffix}.{extension}", extension
    return f"{safe_base}-{suffix}", "bin"
