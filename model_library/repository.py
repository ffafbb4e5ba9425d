"""
Relational queries shared by the pipeline and the profile service.

Every function takes an open session and leaves commit/rollback to the
caller. Counters are only touched through ``col = col + delta`` expressions.
"""

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import NotFoundOrDenied, UsageLimitExceeded
from .keys import slugify
from .models import PreparedFile, StoredFileInfo
from .schema import (
    Model,
    ModelFile,
    ModelVersion,
    Organization,
    PrintProfile,
    new_id,
    utcnow,
)
from .versions import next_version_number, parse_version_number


def get_organization(session: Session, organization_id: str) -> Organization:
    org = session.get(Organization, organization_id)
    if org is None:
        raise NotFoundOrDenied("Organization")
    return org


def get_model_for_org(
    session: Session,
    model_id: str,
    organization_id: str,
    lock: bool = False,
) -> Model:
    """Live model owned by the organization, optionally row-locked."""
    stmt = select(Model).where(
        Model.id == model_id,
        Model.organization_id == organization_id,
        Model.deleted_at.is_(None),
    )
    if lock:
        stmt = stmt.with_for_update()
    model = session.scalars(stmt).first()
    if model is None:
        raise NotFoundOrDenied("Model")
    return model


def reserve_version_number(session: Session, model_id: str, organization_id: str) -> int:
    """Hand out the next version number under a row lock.

    Must be committed on its own so concurrent writers see the reservation
    before any storage upload starts.
    """
    model = get_model_for_org(session, model_id, organization_id, lock=True)
    number = next_version_number(model.current_version, model.last_version_number)
    model.last_version_number = number
    return number


def record_version_commit(session: Session, model_id: str, label: str) -> None:
    """Bump the version count and move ``current_version`` forward only."""
    model = session.scalars(select(Model).where(Model.id == model_id).with_for_update()).one()
    values: dict = {"total_versions": Model.total_versions + 1, "updated_at": utcnow()}
    if parse_version_number(label) > parse_version_number(model.current_version):
        values["current_version"] = label
    session.execute(update(Model).where(Model.id == model_id).values(**values))


def get_version_by_label(session: Session, model_id: str, label: str) -> ModelVersion:
    version = session.scalars(
        select(ModelVersion).where(ModelVersion.model_id == model_id, ModelVersion.version == label)
    ).first()
    if version is None:
        raise NotFoundOrDenied("Version")
    return version


def get_version_with_access(session: Session, version_id: str, organization_id: str) -> ModelVersion:
    """Version whose live model belongs to the organization."""
    version = session.scalars(
        select(ModelVersion)
        .join(Model, ModelVersion.model_id == Model.id)
        .where(
            ModelVersion.id == version_id,
            Model.organization_id == organization_id,
            Model.deleted_at.is_(None),
        )
    ).first()
    if version is None:
        raise NotFoundOrDenied("Version")
    return version


def get_profile_with_access(session: Session, profile_id: str, organization_id: str) -> PrintProfile:
    profile = session.scalars(
        select(PrintProfile)
        .join(ModelVersion, PrintProfile.version_id == ModelVersion.id)
        .join(Model, ModelVersion.model_id == Model.id)
        .where(
            PrintProfile.id == profile_id,
            Model.organization_id == organization_id,
            Model.deleted_at.is_(None),
        )
    ).first()
    if profile is None:
        raise NotFoundOrDenied("Print profile")
    return profile


def list_version_profiles(session: Session, version_id: str) -> list[PrintProfile]:
    return list(
        session.scalars(
            select(PrintProfile)
            .where(PrintProfile.version_id == version_id)
            .order_by(PrintProfile.created_at, PrintProfile.id)
        )
    )


def list_version_files(session: Session, version_id: str) -> list[ModelFile]:
    return list(
        session.scalars(
            select(ModelFile)
            .where(ModelFile.version_id == version_id)
            .order_by(ModelFile.created_at, ModelFile.id)
        )
    )


# --- Usage ---


def live_storage_used(session: Session, organization_id: str) -> int:
    """Bytes held by files of the organization's live models."""
    total = session.scalar(
        select(func.coalesce(func.sum(ModelFile.size), 0))
        .join(ModelVersion, ModelFile.version_id == ModelVersion.id)
        .join(Model, ModelVersion.model_id == Model.id)
        .where(Model.organization_id == organization_id, Model.deleted_at.is_(None))
    )
    return int(total or 0)


def model_storage_used(session: Session, model_id: str) -> int:
    total = session.scalar(
        select(func.coalesce(func.sum(ModelFile.size), 0))
        .join(ModelVersion, ModelFile.version_id == ModelVersion.id)
        .where(ModelVersion.model_id == model_id)
    )
    return int(total or 0)


def live_model_count(session: Session, organization_id: str) -> int:
    count = session.scalar(
        select(func.count(Model.id)).where(
            Model.organization_id == organization_id, Model.deleted_at.is_(None)
        )
    )
    return int(count or 0)


def check_storage_limit(session: Session, organization_id: str, additional_bytes: int) -> None:
    org = get_organization(session, organization_id)
    if org.storage_limit is None:
        return
    used = live_storage_used(session, organization_id)
    if used + additional_bytes > org.storage_limit:
        raise UsageLimitExceeded("Storage", used, additional_bytes, org.storage_limit)


def check_model_limit(session: Session, organization_id: str) -> None:
    org = get_organization(session, organization_id)
    if org.model_limit is None:
        return
    count = live_model_count(session, organization_id)
    if count + 1 > org.model_limit:
        raise UsageLimitExceeded("Model", count, 1, org.model_limit)


def adjust_organization_usage(
    session: Session,
    organization_id: str,
    storage_delta: int = 0,
    model_delta: int = 0,
) -> None:
    values: dict = {}
    if storage_delta:
        values["current_storage"] = func.coalesce(Organization.current_storage, 0) + storage_delta
    if model_delta:
        values["current_model_count"] = (
            func.coalesce(Organization.current_model_count, 0) + model_delta
        )
    if values:
        session.execute(
            update(Organization).where(Organization.id == organization_id).values(**values)
        )


# --- Slugs ---


def unique_slug(session: Session, organization_id: str, name: str) -> str:
    """``benchy``, then ``benchy-1``, ``benchy-2``... Deleted models keep their slug."""
    base = slugify(name, fallback="model")
    taken = set(
        session.scalars(
            select(Model.slug).where(
                Model.organization_id == organization_id,
                Model.slug.like(f"{base}%"),
            )
        )
    )
    if base not in taken:
        return base
    counter = 1
    while f"{base}-{counter}" in taken:
        counter += 1
    return f"{base}-{counter}"


# --- File rows ---


def audit_metadata(actor_id: str | None, ip: str | None, origin: str) -> dict:
    return {
        "processed": False,
        "uploadedAt": utcnow().isoformat(),
        "uploadedBy": actor_id,
        "uploadedIp": ip,
        "origin": origin,
    }


def build_file_row(
    version_id: str,
    prepared: PreparedFile,
    actor_id: str | None,
    ip: str | None = None,
    origin: str = "upload",
) -> ModelFile:
    return ModelFile(
        id=new_id(),
        version_id=version_id,
        filename=prepared.filename,
        original_name=prepared.original_name,
        size=prepared.size,
        mime_type=prepared.mime_type,
        extension=prepared.extension,
        storage_key=prepared.storage_key,
        storage_bucket=prepared.storage_bucket,
        file_metadata=audit_metadata(actor_id, ip, origin),
    )


def file_info(row: ModelFile, storage_url: str | None = None) -> StoredFileInfo:
    return StoredFileInfo(
        id=row.id,
        filename=row.filename,
        original_name=row.original_name,
        size=row.size,
        mime_type=row.mime_type,
        extension=row.extension,
        storage_key=row.storage_key,
        storage_bucket=row.storage_bucket,
        storage_url=storage_url,
    )
