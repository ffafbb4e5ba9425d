"""
Version download as a single ZIP.

Objects are streamed one at a time from storage straight into the archive,
so memory stays bounded by the chunk size regardless of version size.
"""

import logging
import zipfile
from typing import BinaryIO

from .db import Database
from .errors import ObjectNotFound
from .keys import split_extension
from .models import ArchiveReport
from .progress import NullProgressReporter, ProgressReporter, track_chunks
from .repository import get_model_for_org, get_version_by_label, list_version_files
from .storage import ObjectStore

logger = logging.getLogger(__name__)

COMPRESS_LEVEL = 6


def archive_filename(slug: str, version_label: str) -> str:
    return f"{slug}-{version_label}.zip"


def unique_entry_name(name: str, used: set[str]) -> str:
    """``part.stl``, then ``part (1).stl``, ``part (2).stl``..."""
    if name not in used:
        used.add(name)
        return name
    base, extension = split_extension(name)
    suffix = f".{extension}" if extension else ""
    counter = 1
    while f"{base} ({counter}){suffix}" in used:
        counter += 1
    candidate = f"{base} ({counter}){suffix}"
    used.add(candidate)
    return candidate


class ArchiveAssembler:
    def __init__(
        self,
        database: Database,
        store: ObjectStore,
        reporter: ProgressReporter | None = None,
    ):
        self.db = database
        self.store = store
        self.reporter: ProgressReporter = reporter or NullProgressReporter()

    def write_version_archive(
        self,
        model_id: str,
        organization_id: str,
        version_label: str,
        output: BinaryIO,
    ) -> ArchiveReport:
        """Write every file of a version into a ZIP on ``output``.

        Files missing from storage are skipped and listed in the report.

        Raises:
            NotFoundOrDenied: Unknown model or version for this organization.
            StorageFailure: Storage failed for a reason other than a missing object.
        """
        with self.db.session() as session:
            model = get_model_for_org(session, model_id, organization_id)
            version = get_version_by_label(session, model.id, version_label)
            files = [
                (row.original_name, row.storage_key, row.size)
                for row in list_version_files(session, version.id)
            ]
            report = ArchiveReport(
                filename=archive_filename(model.slug, version.version),
                version_label=version.version,
            )

        used: set[str] = set()
        with zipfile.ZipFile(
            output, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=COMPRESS_LEVEL
        ) as zf:
            for original_name, key, size in files:
                try:
                    chunks = self.store.get_stream(key)
                except ObjectNotFound:
                    logger.warning("Skipping %s: %s is missing from storage", original_name, key)
                    report.missing.append(original_name)
                    continue

                entry = unique_entry_name(original_name, used)
                written = 0
                with zf.open(entry, "w", force_zip64=size > 0x7FFFFFFF) as dest, \
                        self.reporter.transfer(size, entry) as bar:
                    for chunk in track_chunks(chunks, bar):
                        dest.write(chunk)
                        written += len(chunk)
                report.written.append(entry)
                report.total_bytes += written

        logger.info(
            "Archived %d file(s) of %s (%d missing)",
            len(report.written),
            report.version_label,
            len(report.missing),
        )
        return report
