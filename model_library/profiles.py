"""
Print profile service: explicit 3MF profile uploads, conflict resolution,
auto-parse of version files, listing and deletion.

A profile is either backed by a dedicated upload (``owns_file``; the 3MF was
stored just for the profile) or by a file already recorded in the version.
Deleting a profile only removes its object in the first case.
"""

import logging

from .compensation import CompensationStack
from .config import Settings
from .db import Database
from .errors import (
    LibraryError,
    NotFoundOrDenied,
    ObjectNotFound,
    PersistenceFailure,
    StorageFailure,
    UsageLimitExceeded,
    ValidationError,
)
from .keys import SLICER_EXTENSIONS, split_extension, storage_key, stored_filename
from .limits import guess_content_type, validate_upload
from .matching import disambiguate, find_conflict, is_conflict, normalize_printer_name
from .models import (
    BatchUploadResult,
    ConflictAction,
    ExistingProfileRef,
    FailedUpload,
    NewProfileRef,
    ParsedProfile,
    PrintProfileInfo,
    PrintProfileMetadata,
    ProfileConflict,
    ProfileConflictInfo,
    ProfileCreated,
    ProfileDownloadInfo,
    ProfileRejected,
    ProfileUploadResult,
    PreparedFile,
    SlicerType,
    StorageKind,
    UploadFile,
    dump_metadata,
)
from .parsers import is_3mf_file, parse_3mf
from .repository import (
    adjust_organization_usage,
    check_storage_limit,
    build_file_row,
    get_profile_with_access,
    get_version_with_access,
    list_version_profiles,
)
from .schema import ModelFile, PrintProfile, new_id
from .storage import ObjectStore

logger = logging.getLogger(__name__)

THUMBNAIL_CONTENT_TYPE = "image/png"


def _stem(stored_name: str) -> str:
    return split_extension(stored_name)[0]


class _VersionContext:
    """Identifiers needed to name keys for a version, read once per call."""

    def __init__(self, organization_id: str, model_id: str, version_id: str, label: str):
        self.organization_id = organization_id
        self.model_id = model_id
        self.version_id = version_id
        self.label = label

    def key(self, filename: str, kind: StorageKind) -> str:
        return storage_key(self.organization_id, self.model_id, self.label, filename, kind)


class PrintProfileService:
    """
    Usage:
        service = PrintProfileService(db, store)
        result = service.upload_profile(version_id, org_id, UploadFile(filename=..., data=...))
        if isinstance(result, ProfileConflict):
            service.resolve_conflict(version_id, org_id, file, ConflictAction.KEEP_BOTH)
    """

    def __init__(self, database: Database, store: ObjectStore, settings: Settings | None = None):
        self.db = database
        self.store = store
        self.settings = settings or Settings()

    # --- Queries ---

    def _context(self, version_id: str, organization_id: str) -> tuple[_VersionContext, list[PrintProfileInfo]]:
        with self.db.session() as session:
            version = get_version_with_access(session, version_id, organization_id)
            ctx = _VersionContext(organization_id, version.model_id, version.id, version.version)
            existing = [self._info(p) for p in list_version_profiles(session, version.id)]
        return ctx, existing

    def list_profiles(self, version_id: str, organization_id: str) -> list[PrintProfileInfo]:
        """Profiles of a version, with time-boxed thumbnail URLs."""
        _, profiles = self._context(version_id, organization_id)
        for profile in profiles:
            if not profile.thumbnail_path:
                continue
            try:
                profile.thumbnail_url = self.store.presign_download_url(
                    profile.thumbnail_path, self.settings.presign_ttl_minutes
                )
            except StorageFailure as e:
                logger.warning("No thumbnail URL for profile %s: %s", profile.id, e)
        return profiles

    def get_profile_download_info(self, profile_id: str, organization_id: str) -> ProfileDownloadInfo:
        with self.db.session() as session:
            profile = get_profile_with_access(session, profile_id, organization_id)
            row = profile.file
            filename, size, mime_type, key = row.original_name, row.size, row.mime_type, row.storage_key
        return ProfileDownloadInfo(
            filename=filename,
            size=size,
            mime_type=mime_type,
            download_url=self.store.presign_download_url(key, self.settings.presign_ttl_minutes),
        )

    # --- Uploads ---

    def upload_profile(
        self,
        version_id: str,
        organization_id: str,
        file: UploadFile,
        actor_id: str | None = None,
        ip: str | None = None,
    ) -> ProfileUploadResult:
        """Parse a 3MF and create its profile, unless it conflicts with an existing one."""
        ctx, existing = self._context(version_id, organization_id)

        if not is_3mf_file(file.filename):
            return ProfileRejected(reason="not_3mf", error="Only .3mf files can be print profiles")
        validate_upload(file, SLICER_EXTENSIONS)

        result = parse_3mf(file.data)
        if not result.success:
            return ProfileRejected(reason=result.reason, error=result.error)
        parsed = result.profile

        conflict = find_conflict(parsed.printer_name, existing)
        if conflict is not None:
            logger.info(
                "Profile for %r conflicts with existing %r in version %s",
                parsed.printer_name,
                conflict.printer_name,
                ctx.label,
            )
            return ProfileConflict(
                conflict_info=ProfileConflictInfo(
                    existing_profile=ExistingProfileRef(
                        id=conflict.id,
                        printer_name=conflict.printer_name,
                        created_at=conflict.created_at,
                    ),
                    new_profile=NewProfileRef(printer_name=parsed.printer_name, metadata=parsed.metadata),
                    filename=file.filename,
                )
            )

        return ProfileCreated(profile=self._create_dedicated(ctx, file, parsed, actor_id, ip))

    def batch_upload(
        self,
        version_id: str,
        organization_id: str,
        files: list[UploadFile],
        actor_id: str | None = None,
        ip: str | None = None,
    ) -> BatchUploadResult:
        """Upload several profiles; each file succeeds, conflicts or fails on its own."""
        self._context(version_id, organization_id)

        report = BatchUploadResult()
        for file in files:
            try:
                result = self.upload_profile(version_id, organization_id, file, actor_id, ip)
            except (ValidationError, UsageLimitExceeded, StorageFailure, PersistenceFailure) as e:
                report.failed.append(FailedUpload(filename=file.filename, error=str(e)))
                continue

            if isinstance(result, ProfileCreated):
                report.successful.append(result.profile)
            elif isinstance(result, ProfileConflict):
                report.conflicts.append(result.conflict_info)
            else:
                report.failed.append(
                    FailedUpload(filename=file.filename, error=result.error or result.reason)
                )
        return report

    def resolve_conflict(
        self,
        version_id: str,
        organization_id: str,
        file: UploadFile,
        action: ConflictAction | str,
        existing_profile_id: str | None = None,
        actor_id: str | None = None,
        ip: str | None = None,
    ) -> ProfileCreated | ProfileRejected | None:
        """Apply the caller's choice for a pending conflict. ``skip`` creates nothing."""
        action = ConflictAction(action)
        if action == ConflictAction.SKIP:
            logger.info("Skipped profile upload %s", file.filename)
            return None

        ctx, existing = self._context(version_id, organization_id)
        if not is_3mf_file(file.filename):
            return ProfileRejected(reason="not_3mf", error="Only .3mf files can be print profiles")
        validate_upload(file, SLICER_EXTENSIONS)

        result = parse_3mf(file.data)
        if not result.success:
            return ProfileRejected(reason=result.reason, error=result.error)
        parsed = result.profile

        if action == ConflictAction.REPLACE:
            if existing_profile_id is None:
                target = find_conflict(parsed.printer_name, existing)
            else:
                # Only a profile of this version can be replaced.
                target = next((p for p in existing if p.id == existing_profile_id), None)
                if target is None:
                    raise NotFoundOrDenied("Print profile")
            self._check_storage(ctx, file)
            if target is not None and is_conflict(target.printer_name, parsed.printer_name):
                self.delete_profile(target.id, organization_id)
            elif target is not None:
                logger.info(
                    "Kept profile %r: it does not conflict with %r", target.printer_name, parsed.printer_name
                )
        else:
            name = disambiguate(parsed.printer_name, [p.printer_name for p in existing])
            parsed = _renamed(parsed, name)

        return ProfileCreated(profile=self._create_dedicated(ctx, file, parsed, actor_id, ip))

    def _create_dedicated(
        self,
        ctx: _VersionContext,
        file: UploadFile,
        parsed: ParsedProfile,
        actor_id: str | None,
        ip: str | None,
    ) -> PrintProfileInfo:
        """Store the 3MF and its thumbnail, then record file and profile together."""
        self._check_storage(ctx, file)
        stored_name, extension = stored_filename(file.filename)
        prepared = PreparedFile(
            storage_key=ctx.key(stored_name, StorageKind.SLICER),
            storage_bucket=self.store.bucket,
            filename=stored_name,
            original_name=file.filename,
            mime_type=guess_content_type(extension, file.content_type),
            extension=extension,
            size=file.size,
        )

        undo = CompensationStack()
        thumbnail_key = None
        try:
            self.store.upload(prepared.storage_key, file.data, prepared.mime_type)
            undo.push_delete(self.store, prepared.storage_key)
            if parsed.thumbnail:
                thumbnail_key = ctx.key(f"{_stem(stored_name)}-thumb.png", StorageKind.ARTIFACT)
                self.store.upload(thumbnail_key, parsed.thumbnail, THUMBNAIL_CONTENT_TYPE)
                undo.push_delete(self.store, thumbnail_key)
        except StorageFailure:
            undo.unwind()
            raise

        try:
            with self.db.transaction() as session:
                get_version_with_access(session, ctx.version_id, ctx.organization_id)
                row = build_file_row(ctx.version_id, prepared, actor_id, ip, origin="print_profile")
                session.add(row)
                session.flush()
                profile = self._profile_row(ctx.version_id, row.id, parsed, thumbnail_key, owns_file=True)
                session.add(profile)
                session.flush()
                adjust_organization_usage(session, ctx.organization_id, storage_delta=prepared.size)
                info = self._info(profile)
        except LibraryError:
            undo.unwind()
            raise
        except Exception as e:
            undo.unwind()
            raise PersistenceFailure(f"Failed to save print profile for {file.filename}: {e}") from e

        undo.discard()
        logger.info("Created %s profile %r from %s", parsed.slicer_type.value, parsed.printer_name, file.filename)
        return info

    def create_profile_from_source_file(
        self,
        version_id: str,
        file_id: str,
        data: bytes | None = None,
    ) -> ProfileCreated | ProfileRejected:
        """Parse a 3MF already recorded in the version and attach a profile to it.

        Used after a version commits. Never raises: every failure comes back
        as a :class:`ProfileRejected`. No conflict check is made.
        """
        undo = CompensationStack()
        try:
            with self.db.session() as session:
                row = session.get(ModelFile, file_id)
                if row is None or row.version_id != version_id:
                    return ProfileRejected(reason="parse_error", error=f"File {file_id} is not in version")
                version = row.version
                ctx = _VersionContext(version.model.organization_id, version.model_id, version.id, version.version)
                stored_name, key = row.filename, row.storage_key

            if data is None:
                data = self.store.get_bytes(key).data

            result = parse_3mf(data)
            if not result.success:
                return ProfileRejected(reason=result.reason, error=result.error)
            parsed = result.profile

            thumbnail_key = None
            if parsed.thumbnail:
                thumbnail_key = ctx.key(f"{_stem(stored_name)}-profile-thumb.png", StorageKind.ARTIFACT)
                self.store.upload(thumbnail_key, parsed.thumbnail, THUMBNAIL_CONTENT_TYPE)
                undo.push_delete(self.store, thumbnail_key)

            with self.db.transaction() as session:
                profile = self._profile_row(version_id, file_id, parsed, thumbnail_key, owns_file=False)
                session.add(profile)
                session.flush()
                info = self._info(profile)
        except Exception as e:
            undo.unwind()
            logger.warning("Auto-parse of file %s failed: %s", file_id, e)
            return ProfileRejected(reason="parse_error", error=str(e) or type(e).__name__)

        undo.discard()
        return ProfileCreated(profile=info)

    # --- Deletion ---

    def delete_profile(self, profile_id: str, organization_id: str) -> None:
        """Delete a profile row; its 3MF goes too only when the upload was dedicated."""
        with self.db.transaction() as session:
            profile = get_profile_with_access(session, profile_id, organization_id)
            thumbnail_key = profile.thumbnail_path
            file_key = None
            if profile.owns_file:
                row = profile.file
                file_key = row.storage_key
                session.delete(profile)
                session.flush()
                session.delete(row)
                adjust_organization_usage(session, organization_id, storage_delta=-row.size)
            else:
                session.delete(profile)

        # Objects go after the commit; a failure here only leaves an orphan.
        for key in (file_key, thumbnail_key):
            if not key:
                continue
            try:
                self.store.delete(key)
            except ObjectNotFound:
                pass
            except StorageFailure as e:
                logger.warning("Could not delete %s for profile %s: %s", key, profile_id, e)

    # --- Row helpers ---

    def _check_storage(self, ctx: _VersionContext, file: UploadFile) -> None:
        with self.db.session() as session:
            check_storage_limit(session, ctx.organization_id, file.size)

    def _profile_row(
        self,
        version_id: str,
        file_id: str,
        parsed: ParsedProfile,
        thumbnail_key: str | None,
        owns_file: bool,
    ) -> PrintProfile:
        return PrintProfile(
            id=new_id(),
            version_id=version_id,
            printer_name=parsed.printer_name,
            printer_name_normalized=parsed.printer_name_normalized,
            file_id=file_id,
            thumbnail_path=thumbnail_key,
            slicer_type=parsed.slicer_type.value,
            profile_metadata=dump_metadata(parsed.metadata),
            owns_file=owns_file,
        )

    @staticmethod
    def _info(profile: PrintProfile) -> PrintProfileInfo:
        return PrintProfileInfo(
            id=profile.id,
            version_id=profile.version_id,
            printer_name=profile.printer_name,
            printer_name_normalized=profile.printer_name_normalized,
            file_id=profile.file_id,
            thumbnail_path=profile.thumbnail_path,
            slicer_type=SlicerType(profile.slicer_type) if profile.slicer_type else None,
            metadata=(
                PrintProfileMetadata.model_validate(profile.profile_metadata)
                if profile.profile_metadata
                else None
            ),
            owns_file=profile.owns_file,
            created_at=profile.created_at,
        )


def _renamed(parsed: ParsedProfile, printer_name: str) -> ParsedProfile:
    return parsed.model_copy(
        update={
            "printer_name": printer_name,
            "printer_name_normalized": normalize_printer_name(printer_name),
        }
    )
