"""Relational schema: organizations, models, versions, files, print profiles."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    """A tenant. Storage and model counters are advisory; limits are checked live."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200))
    current_storage: Mapped[int] = mapped_column(BigInteger, default=0)  # bytes
    current_model_count: Mapped[int] = mapped_column(Integer, default=0)
    storage_limit: Mapped[int | None] = mapped_column(BigInteger)  # bytes, None = unlimited
    model_limit: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Model(Base):
    __tablename__ = "models"
    __table_args__ = (UniqueConstraint("organization_id", "slug", name="uq_models_org_slug"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), index=True)
    owner_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)

    current_version: Mapped[str] = mapped_column(String(20), default="v1")
    total_versions: Mapped[int] = mapped_column(Integer, default=1)
    # Highest version number ever handed out, committed or not.
    last_version_number: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    versions: Mapped[list["ModelVersion"]] = relationship(
        back_populates="model", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Model {self.slug} {self.current_version}>"


class ModelVersion(Base):
    __tablename__ = "model_versions"
    __table_args__ = (UniqueConstraint("model_id", "version", name="uq_model_versions_label"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    model_id: Mapped[str] = mapped_column(ForeignKey("models.id", ondelete="CASCADE"), index=True)
    version: Mapped[str] = mapped_column(String(20))  # v1, v2, ...
    name: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)  # changelog
    thumbnail_path: Mapped[str | None] = mapped_column(String(1024))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    model: Mapped[Model] = relationship(back_populates="versions")
    files: Mapped[list["ModelFile"]] = relationship(
        back_populates="version", cascade="all, delete-orphan"
    )
    print_profiles: Mapped[list["PrintProfile"]] = relationship(
        back_populates="version", cascade="all, delete-orphan"
    )


class ModelFile(Base):
    """One stored object. Immutable once created."""

    __tablename__ = "model_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    version_id: Mapped[str] = mapped_column(
        ForeignKey("model_versions.id", ondelete="CASCADE"), index=True
    )
    filename: Mapped[str] = mapped_column(String(255))  # stored name
    original_name: Mapped[str] = mapped_column(String(255))
    size: Mapped[int] = mapped_column(BigInteger)
    mime_type: Mapped[str] = mapped_column(String(255))
    extension: Mapped[str] = mapped_column(String(20))
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)
    storage_bucket: Mapped[str] = mapped_column(String(255))
    # processed, uploadedAt, uploadedBy, uploadedIp, origin
    file_metadata: Mapped[dict | None] = mapped_column("metadata", JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    version: Mapped[ModelVersion] = relationship(back_populates="files")


class PrintProfile(Base):
    __tablename__ = "print_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    version_id: Mapped[str] = mapped_column(
        ForeignKey("model_versions.id", ondelete="CASCADE"), index=True
    )
    printer_name: Mapped[str] = mapped_column(String(255))
    printer_name_normalized: Mapped[str] = mapped_column(String(255), index=True)
    file_id: Mapped[str] = mapped_column(ForeignKey("model_files.id", ondelete="CASCADE"))
    thumbnail_path: Mapped[str | None] = mapped_column(String(1024))
    slicer_type: Mapped[str | None] = mapped_column(String(20))  # bambu, orca, prusa, unknown
    profile_metadata: Mapped[dict | None] = mapped_column("metadata", JSON)
    # False when the profile was parsed from a file that belongs to the version itself.
    owns_file: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    version: Mapped[ModelVersion] = relationship(back_populates="print_profiles")
    file: Mapped[ModelFile] = relationship()
