"""
Version ingestion orchestrator: validate → reserve label → upload → thumbnail
→ commit → auto-parse.

Object storage and the relational store are kept consistent by compensation:
every stored object is recorded on an undo stack, and a failure before the
metadata transaction commits deletes them again in reverse order.
"""

import logging
from functools import partial

from .compensation import CompensationStack, PostCommitHooks
from .config import Settings
from .db import Database
from .errors import InvalidModelName, LibraryError, PersistenceFailure, StorageFailure
from .keys import (
    split_extension,
    storage_key,
    storage_kind_for,
    stored_filename,
)
from .limits import IMAGE_EXTENSIONS, guess_content_type, validate_batch, validate_upload
from .models import (
    AddVersionInput,
    AddVersionResult,
    ApiUploadInput,
    CreateModelInput,
    CreateModelResult,
    IngestionOptions,
    PreparedFile,
    ProfileRejected,
    StorageKind,
    UploadFile,
)
from .parsers import extract_thumbnail
from .profiles import PrintProfileService
from .progress import NullProgressReporter, ProgressReporter
from .repository import (
    adjust_organization_usage,
    build_file_row,
    check_model_limit,
    check_storage_limit,
    file_info,
    get_model_for_org,
    get_version_by_label,
    model_storage_used,
    record_version_commit,
    reserve_version_number,
    unique_slug,
)
from .schema import Model, ModelFile, ModelVersion, new_id, utcnow
from .storage import ObjectStore
from .versions import INITIAL_VERSION, format_version

logger = logging.getLogger(__name__)

MAX_MODEL_NAME_LENGTH = 255

PREVIEW_EXTENSIONS = frozenset(IMAGE_EXTENSIONS)


class IngestionPipeline:
    """
    Creates models and versions from uploaded files.

    Usage:
        db = Database(settings.database_url)
        pipeline = IngestionPipeline(db, ObjectStore.from_settings(settings), settings)

        result = pipeline.add_version(AddVersionInput(
            model_id=model_id,
            organization_id=org_id,
            actor_id=user_id,
            changelog="initial release",
            files=[UploadFile(filename="part.stl", data=data)],
        ))
        print(result.version_label)
    """

    def __init__(
        self,
        database: Database,
        store: ObjectStore,
        settings: Settings | None = None,
        reporter: ProgressReporter | None = None,
        profiles: PrintProfileService | None = None,
    ):
        self.db = database
        self.store = store
        self.settings = settings or Settings()
        self.reporter: ProgressReporter = reporter or NullProgressReporter()
        self.profiles = profiles or PrintProfileService(database, store, self.settings)

    # --- Public operations ---

    def add_version(
        self,
        request: AddVersionInput,
        options: IngestionOptions | None = None,
    ) -> AddVersionResult:
        """
        Create the next version of a model from a batch of files.

        Raises:
            ValidationError: Rejected input; nothing was written.
            NotFoundOrDenied: Model missing, deleted, or owned by another organization.
            UsageLimitExceeded: The organization's storage limit would be exceeded.
            StorageFailure: An upload failed; earlier uploads were deleted again.
            PersistenceFailure: The metadata transaction failed; every upload was deleted again.
        """
        options = options or IngestionOptions()
        self._validate(request.files, request.preview_image)
        total_bytes = sum(f.size for f in request.files)

        # Reserved in its own transaction so concurrent writers never share a label.
        with self.db.transaction() as session:
            check_storage_limit(session, request.organization_id, total_bytes)
            number = reserve_version_number(session, request.model_id, request.organization_id)
        label = format_version(number)
        self.reporter.update_status(f"Creating {label} with {len(request.files)} file(s)")

        undo = CompensationStack()
        prepared, thumbnail_key = self._store_objects(
            request.organization_id,
            request.model_id,
            label,
            request.files,
            request.preview_image,
            options,
            undo,
        )

        try:
            with self.db.transaction() as session:
                version, rows = self._insert_version(
                    session,
                    request.model_id,
                    label,
                    request.version_name,
                    request.changelog,
                    thumbnail_key,
                    prepared,
                    request.actor_id,
                    request.ip,
                )
                record_version_commit(session, request.model_id, label)
                adjust_organization_usage(session, request.organization_id, storage_delta=total_bytes)
                files = [file_info(row, self.store.file_url(row.storage_key)) for row in rows]
                version_id = version.id
        except Exception as e:
            undo.unwind()
            logger.error("Version %s of model %s not saved: %s", label, request.model_id, e)
            raise PersistenceFailure(f"Failed to save version {label}: {e}") from e
        undo.discard()

        profile_errors = self._after_commit(version_id, request.files, rows, options)
        logger.info("Created %s of model %s (%d files)", label, request.model_id, len(files))
        return AddVersionResult(
            version_id=version_id,
            version_label=label,
            files=files,
            thumbnail_path=thumbnail_key,
            profile_errors=profile_errors,
        )

    def create_model(
        self,
        request: CreateModelInput,
        options: IngestionOptions | None = None,
    ) -> CreateModelResult:
        """Create a model with its first version (``v1``) from a batch of files."""
        options = options or IngestionOptions()
        name = self._validate_name(request.name)
        self._validate(request.files, request.preview_image)
        total_bytes = sum(f.size for f in request.files)

        with self.db.session() as session:
            check_model_limit(session, request.organization_id)
            check_storage_limit(session, request.organization_id, total_bytes)

        model_id = new_id()
        label = INITIAL_VERSION
        self.reporter.update_status(f"Creating model {name!r} with {len(request.files)} file(s)")

        undo = CompensationStack()
        prepared, thumbnail_key = self._store_objects(
            request.organization_id,
            model_id,
            label,
            request.files,
            request.preview_image,
            options,
            undo,
        )

        try:
            with self.db.transaction() as session:
                slug = unique_slug(session, request.organization_id, name)
                session.add(
                    Model(
                        id=model_id,
                        organization_id=request.organization_id,
                        owner_id=request.actor_id,
                        name=name,
                        slug=slug,
                        description=request.description,
                        current_version=label,
                        total_versions=1,
                        last_version_number=1,
                    )
                )
                session.flush()
                version, rows = self._insert_version(
                    session,
                    model_id,
                    label,
                    None,
                    request.description or "",
                    thumbnail_key,
                    prepared,
                    request.actor_id,
                    request.ip,
                )
                adjust_organization_usage(
                    session, request.organization_id, storage_delta=total_bytes, model_delta=1
                )
                files = [file_info(row, self.store.file_url(row.storage_key)) for row in rows]
                version_id = version.id
        except Exception as e:
            undo.unwind()
            logger.error("Model %r not saved: %s", name, e)
            raise PersistenceFailure(f"Failed to save model {name!r}: {e}") from e
        undo.discard()

        profile_errors = self._after_commit(version_id, request.files, rows, options)
        logger.info("Created model %s (%s) with %d files", slug, model_id, len(files))
        return CreateModelResult(
            model_id=model_id,
            slug=slug,
            storage_root=f"{request.organization_id}/{model_id}",
            version_id=version_id,
            version_label=label,
            files=files,
            thumbnail_path=thumbnail_key,
            profile_errors=profile_errors,
        )

    def upload_file(self, request: ApiUploadInput) -> AddVersionResult:
        """Single-file programmatic upload.

        Without ``version`` a new version is created through :meth:`add_version`
        (no derived thumbnail). With ``version`` the file is appended to that
        existing version.
        """
        options = IngestionOptions(derive_thumbnail=False)
        if request.version is None:
            return self.add_version(
                AddVersionInput(
                    model_id=request.model_id,
                    organization_id=request.organization_id,
                    actor_id=request.actor_id,
                    changelog=request.description or "",
                    files=[request.file],
                    version_name=request.version_name,
                ),
                options,
            )

        self._validate([request.file], None)
        with self.db.session() as session:
            get_model_for_org(session, request.model_id, request.organization_id)
            version = get_version_by_label(session, request.model_id, request.version)
            version_id, label, thumbnail_key = version.id, version.version, version.thumbnail_path
            check_storage_limit(session, request.organization_id, request.file.size)

        undo = CompensationStack()
        prepared, _ = self._store_objects(
            request.organization_id,
            request.model_id,
            label,
            [request.file],
            None,
            options,
            undo,
        )

        try:
            with self.db.transaction() as session:
                get_model_for_org(session, request.model_id, request.organization_id)
                rows = [
                    build_file_row(version_id, p, request.actor_id, origin="api") for p in prepared
                ]
                session.add_all(rows)
                session.flush()
                adjust_organization_usage(
                    session, request.organization_id, storage_delta=request.file.size
                )
                files = [file_info(row, self.store.file_url(row.storage_key)) for row in rows]
        except LibraryError:
            undo.unwind()
            raise
        except Exception as e:
            undo.unwind()
            raise PersistenceFailure(f"Failed to add {request.file.filename} to {label}: {e}") from e
        undo.discard()

        profile_errors = self._after_commit(version_id, [request.file], rows, options)
        logger.info("Added %s to %s of model %s", request.file.filename, label, request.model_id)
        return AddVersionResult(
            version_id=version_id,
            version_label=label,
            files=files,
            thumbnail_path=thumbnail_key,
            profile_errors=profile_errors,
        )

    def delete_model(self, model_id: str, organization_id: str) -> int:
        """Soft-delete a model. Returns the bytes released from the usage counter.

        Stored objects are kept.
        """
        with self.db.transaction() as session:
            model = get_model_for_org(session, model_id, organization_id, lock=True)
            released = model_storage_used(session, model.id)
            model.deleted_at = utcnow()
            adjust_organization_usage(
                session, organization_id, storage_delta=-released, model_delta=-1
            )
        logger.info("Deleted model %s (%d bytes released)", model_id, released)
        return released

    # --- Steps ---

    def _validate(self, files: list[UploadFile], preview_image: UploadFile | None) -> None:
        validate_batch(files, self.settings.max_files_per_upload)
        if preview_image is not None:
            validate_upload(preview_image, PREVIEW_EXTENSIONS)

    def _validate_name(self, name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise InvalidModelName(name, "name is required")
        if len(name) > MAX_MODEL_NAME_LENGTH:
            raise InvalidModelName(name, f"name must be at most {MAX_MODEL_NAME_LENGTH} characters")
        return name

    def _store_objects(
        self,
        organization_id: str,
        model_id: str,
        label: str,
        files: list[UploadFile],
        preview_image: UploadFile | None,
        options: IngestionOptions,
        undo: CompensationStack,
    ) -> tuple[list[PreparedFile], str | None]:
        """Upload files, then the thumbnail. Unwinds ``undo`` before raising."""
        prepared: list[PreparedFile] = []
        try:
            for i, upload in enumerate(files, start=1):
                self.reporter.step(f"Uploading {upload.filename}", i, len(files))
                stored_name, extension = stored_filename(upload.filename)
                key = storage_key(
                    organization_id, model_id, label, stored_name, storage_kind_for(extension)
                )
                content_type = guess_content_type(extension, upload.content_type)
                self.store.upload(key, upload.data, content_type)
                undo.push_delete(self.store, key)
                prepared.append(
                    PreparedFile(
                        storage_key=key,
                        storage_bucket=self.store.bucket,
                        filename=stored_name,
                        original_name=upload.filename,
                        mime_type=content_type,
                        extension=extension,
                        size=upload.size,
                    )
                )

            if preview_image is not None:
                thumbnail_key = self._store_preview(
                    organization_id, model_id, label, preview_image, undo
                )
            elif options.derive_thumbnail:
                thumbnail_key = self._derive_thumbnail(
                    organization_id, model_id, label, files, undo
                )
            else:
                thumbnail_key = None
        except StorageFailure:
            undo.unwind()
            raise
        except Exception as e:
            undo.unwind()
            raise StorageFailure(f"Upload failed: {e}", operation="upload") from e
        return prepared, thumbnail_key

    def _store_preview(
        self,
        organization_id: str,
        model_id: str,
        label: str,
        preview_image: UploadFile,
        undo: CompensationStack,
    ) -> str:
        _, extension = split_extension(preview_image.filename)
        key = storage_key(
            organization_id, model_id, label, f"preview.{extension or 'png'}", StorageKind.ARTIFACT
        )
        self.store.upload(key, preview_image.data, guess_content_type(extension, preview_image.content_type))
        undo.push_delete(self.store, key)
        return key

    def _derive_thumbnail(
        self,
        organization_id: str,
        model_id: str,
        label: str,
        files: list[UploadFile],
        undo: CompensationStack,
    ) -> str | None:
        """Embedded preview of the first 3MF in the batch. Failures mean no thumbnail."""
        first_3mf = next((f for f in files if split_extension(f.filename)[1] == "3mf"), None)
        if first_3mf is None:
            return None
        image = extract_thumbnail(first_3mf.data)
        if not image:
            return None
        key = storage_key(organization_id, model_id, label, "preview-extracted.png", StorageKind.ARTIFACT)
        try:
            self.store.upload(key, image, "image/png")
        except StorageFailure as e:
            logger.warning("Thumbnail from %s not stored: %s", first_3mf.filename, e)
            return None
        undo.push_delete(self.store, key)
        return key

    def _insert_version(
        self,
        session,
        model_id: str,
        label: str,
        name: str | None,
        changelog: str,
        thumbnail_key: str | None,
        prepared: list[PreparedFile],
        actor_id: str,
        ip: str | None,
    ) -> tuple[ModelVersion, list[ModelFile]]:
        version = ModelVersion(
            id=new_id(),
            model_id=model_id,
            version=label,
            name=name or label,
            description=changelog,
            thumbnail_path=thumbnail_key,
        )
        session.add(version)
        session.flush()
        rows = [build_file_row(version.id, p, actor_id, ip) for p in prepared]
        session.add_all(rows)
        session.flush()
        return version, rows

    def _after_commit(
        self,
        version_id: str,
        uploads: list[UploadFile],
        rows: list[ModelFile],
        options: IngestionOptions,
    ) -> list[str]:
        """Best-effort profile extraction for every 3MF; returns collected errors."""
        if not options.auto_parse_profiles:
            return []
        hooks = PostCommitHooks()
        for upload, row in zip(uploads, rows):
            if row.extension != "3mf":
                continue
            hooks.add(
                f"parse {row.original_name}",
                partial(self._auto_parse, version_id, row.id, upload.data),
            )
        errors = hooks.run()
        for error in errors:
            self.reporter.warn(f"No print profile extracted ({error})")
        return errors

    def _auto_parse(self, version_id: str, file_id: str, data: bytes) -> str | None:
        result = self.profiles.create_profile_from_source_file(version_id, file_id, data)
        if isinstance(result, ProfileRejected):
            return result.error or result.reason
        return None
